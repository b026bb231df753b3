from typing import Any, Callable, Optional, TypedDict

from invoice_pipeline.models.invoice import InvoiceRecord
from invoice_pipeline.models.processing import (
    DuplicateDetectionResult,
    ExtractedInvoiceData,
    ExtractionResult,
    FileValidationResult,
    ProcessingOptions,
    UploadedFile,
    ValidationReport,
)


class PipelineState(TypedDict, total=False):
    """
    Represents one submission as it flows through the processing steps.
    Each step receives the state and returns it with its own results added.
    """
    # Core Identity
    correlation_id: str
    file: UploadedFile
    options: ProcessingOptions
    started_at: float # perf_counter at run start

    # Step Results
    file_report: FileValidationResult
    extraction: ExtractionResult
    extracted_data: ExtractedInvoiceData
    validation_report: Optional[ValidationReport]
    content_hash: str
    duplicate_result: Optional[DuplicateDetectionResult]

    # Outcome
    invoice: Optional[InvoiceRecord]
    is_duplicate: bool

    # Set while the single-flight lock for content_hash is held
    release_lock: Optional[Callable[[], Any]]
