from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from invoice_pipeline.models.invoice import utcnow


class UploadedFile(BaseModel):
    """An uploaded document as handed to the pipeline."""
    filename: str
    content_type: str
    content: bytes = b""

    @property
    def size(self) -> int:
        return len(self.content)


class ProcessingOptions(BaseModel):
    force_reprocess: bool = False
    skip_duplicate_check: bool = False
    skip_validation: bool = False
    user_id: Optional[str] = None
    correlation_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProcessingStatus(BaseModel):
    """Point-in-time snapshot of one pipeline run. Never mutated after it is published."""
    model_config = ConfigDict(frozen=True)

    invoice_id: Optional[str] = None
    status: str = "processing"
    progress: int = Field(0, ge=0, le=100)
    current_step: str = "initialization"
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ProcessingStep(BaseModel):
    name: str
    state: StepState = StepState.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None


class DetectionMethod(str, Enum):
    INVOICE_NUMBER = "INVOICE_NUMBER"
    CONTENT_HASH = "CONTENT_HASH"
    FUZZY_MATCH = "FUZZY_MATCH"
    COMBINED = "COMBINED"


class DuplicateDetectionResult(BaseModel):
    is_duplicate: bool
    original_invoice_id: Optional[str] = None
    similarity_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    detection_method: DetectionMethod
    confidence: float = Field(..., ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_original_reference(self):
        if self.is_duplicate and not self.original_invoice_id:
            raise ValueError("a duplicate result must reference the original invoice")
        if not self.is_duplicate and self.original_invoice_id:
            raise ValueError("a non-duplicate result cannot reference an original invoice")
        return self


class DuplicateCandidate(BaseModel):
    """The fields duplicate detection looks at."""
    invoice_number: Optional[str] = None
    bill_to: Optional[str] = None
    total_amount: Optional[float] = None
    due_date: Optional[datetime] = None


class FileValidationResult(BaseModel):
    is_valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ExtractionResult(BaseModel):
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    processing_time_ms: float = 0.0
    confidence: float = 0.0
    processor_version: str = "tesseract"


class ExtractedInvoiceData(BaseModel):
    """Normalized fields produced from the raw OCR output."""
    invoice_number: Optional[str] = None
    bill_to: Optional[str] = None
    due_date: Optional[datetime] = None
    total_amount: Optional[float] = None
    invoice_date: Optional[datetime] = None
    vendor_name: Optional[str] = None
    tax_amount: Optional[float] = None
    currency: Optional[str] = None
    confidence: float = 0.0

    @field_validator("due_date", "invoice_date")
    @classmethod
    def assume_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class ValidationIssue(BaseModel):
    field: str
    code: str
    message: str


class ValidationReport(BaseModel):
    is_valid: bool = True
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
