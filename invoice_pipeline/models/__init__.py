from invoice_pipeline.models.base import MongoModel
from invoice_pipeline.models.invoice import InvoiceRecord, InvoiceStatus, InvoiceMetadata, StatusChange
from invoice_pipeline.models.audit import AuditEntry, AuditAction, Actor
from invoice_pipeline.models.processing import (
    UploadedFile,
    ProcessingOptions,
    ProcessingStatus,
    ProcessingStep,
    StepState,
    DetectionMethod,
    DuplicateDetectionResult,
    DuplicateCandidate,
    FileValidationResult,
    ExtractionResult,
    ExtractedInvoiceData,
    ValidationIssue,
    ValidationReport,
)
