from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, field_validator
from invoice_pipeline.models.base import MongoModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvoiceStatus(str, Enum):
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DUPLICATE = "DUPLICATE"


# Transitions into these states count as a processing attempt
ATTEMPT_STATES = {InvoiceStatus.PROCESSING, InvoiceStatus.COMPLETED, InvoiceStatus.FAILED}
REPROCESSABLE_STATES = {InvoiceStatus.FAILED, InvoiceStatus.DUPLICATE}


class InvoiceMetadata(BaseModel):
    """File information and extraction details captured at upload time."""
    original_file_name: str = ""
    file_size: int = 0
    mime_type: str = ""
    processing_time_ms: float = 0.0
    extraction_confidence: float = Field(0.0, ge=0.0, le=1.0)
    extractor_version: Optional[str] = None
    uploaded_by: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class StatusChange(BaseModel):
    """One entry of the record's processing history."""
    attempt_number: int
    status: InvoiceStatus
    timestamp: datetime = Field(default_factory=utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)


class InvoiceRecord(MongoModel):
    """
    Persisted result of one submission.
    """
    invoice_number: str = ""
    bill_to: str = ""
    due_date: Optional[datetime] = None
    total_amount: float = 0.0

    status: InvoiceStatus = Field(default=InvoiceStatus.UPLOADED)
    processing_attempts: int = 0
    last_processed_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    metadata: InvoiceMetadata = Field(default_factory=InvoiceMetadata)
    processing_history: List[StatusChange] = Field(default_factory=list)

    duplicate_of: Optional[str] = Field(None, description="ID of the original invoice if duplicate")
    content_hash: Optional[str] = None

    @field_validator("due_date", "last_processed_at", "created_at", "updated_at")
    @classmethod
    def assume_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def is_processing(self) -> bool:
        return self.status == InvoiceStatus.PROCESSING

    def can_reprocess(self) -> bool:
        return self.status in REPROCESSABLE_STATES

    def update_status(self, new_status: InvoiceStatus, details: Optional[Dict[str, Any]] = None):
        """Move to a new status, bumping the attempt counter where the transition counts as one."""
        now = utcnow()
        self.status = new_status
        self.updated_at = now
        if new_status in ATTEMPT_STATES:
            self.last_processed_at = now
            self.processing_attempts += 1

        self.processing_history.append(StatusChange(
            attempt_number=self.processing_attempts,
            status=new_status,
            timestamp=now,
            details=details or {}
        ))

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "invoice_number": "INV-2024-001",
            "bill_to": "Acme Corp",
            "due_date": "2024-01-15T00:00:00Z",
            "total_amount": 100.00,
            "status": "COMPLETED",
            "processing_attempts": 1
        }
    })
