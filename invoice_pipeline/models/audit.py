from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field
from invoice_pipeline.models.base import MongoModel
from invoice_pipeline.models.invoice import utcnow

class AuditAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    PROCESSED = "processed"
    FAILED = "failed"
    REPROCESSED = "reprocessed"
    STATUS_CHANGED = "status_changed"
    DUPLICATE_DETECTED = "duplicate_detected"
    VALIDATION_FAILED = "validation_failed"

class Actor(BaseModel):
    id: str
    name: str
    type: str = "SYSTEM" # SYSTEM, USER

SYSTEM_ACTOR = Actor(id="invoice_pipeline", name="Invoice Pipeline", type="SYSTEM")

class AuditEntry(MongoModel):
    """
    Append-only audit log entry.
    """
    event_id: str = Field(..., description="Unique event ID")
    invoice_id: Optional[str] = None
    action: AuditAction
    timestamp: datetime = Field(default_factory=utcnow)

    actor: Actor = SYSTEM_ACTOR
    correlation_id: Optional[str] = None

    changes: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "event_id": "EVT-3f2a",
            "invoice_id": "65a1c0ffee",
            "action": "duplicate_detected",
            "correlation_id": "9b1deb4d-3b7d-4bad-9bdd-2b0d7b3dcb6d",
            "changes": {"original_invoice_id": "65a1beef", "detection_method": "INVOICE_NUMBER"}
        }
    })
