from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from invoice_pipeline.models.invoice import InvoiceRecord
from invoice_pipeline.models.processing import (
    DuplicateDetectionResult,
    ExtractedInvoiceData,
    ExtractionResult,
    FileValidationResult,
    UploadedFile,
    ValidationReport,
)

# Capabilities the orchestrator is built from. Concrete implementations live in
# invoice_pipeline.tools, .repositories, .guardrails and .monitoring.


class FileGuard(Protocol):
    async def validate_file(self, file: UploadedFile) -> FileValidationResult: ...


class DocumentExtractor(Protocol):
    async def process_document(self, file: UploadedFile) -> ExtractionResult: ...


class DataNormalizer(Protocol):
    async def extract_and_validate_data(self, raw_data: Optional[Dict[str, Any]]) -> ExtractedInvoiceData: ...


class InvoiceValidator(Protocol):
    async def validate_invoice_data(self, data: ExtractedInvoiceData) -> ValidationReport: ...


class DuplicateChecker(Protocol):
    async def check_for_duplicates(self, candidate: Any) -> DuplicateDetectionResult: ...

    def generate_content_hash(self, candidate: Any) -> str: ...


class InvoiceStore(Protocol):
    async def save(self, record: InvoiceRecord) -> InvoiceRecord: ...

    async def find_by_id(self, invoice_id: str) -> Optional[InvoiceRecord]: ...

    async def update(self, invoice_id: str, record: InvoiceRecord) -> InvoiceRecord: ...

    async def get_stats(self, date_from: Optional[datetime] = None) -> Dict[str, Any]: ...


class AuditSink(Protocol):
    async def log_invoice_created(self, invoice_id: str, invoice_data: Dict[str, Any],
                                  user_id: Optional[str] = None, correlation_id: Optional[str] = None): ...

    async def log_processing_event(self, invoice_id: Optional[str], event_type: str, details: Dict[str, Any],
                                   user_id: Optional[str] = None, correlation_id: Optional[str] = None): ...

    async def log_duplicate_detected(self, invoice_id: str, original_invoice_id: str,
                                     similarity_score: Optional[float], detection_method: str,
                                     user_id: Optional[str] = None, correlation_id: Optional[str] = None): ...

    async def log_validation_failed(self, invoice_id: Optional[str], validation_errors: List[Dict[str, Any]],
                                    validation_type: str, user_id: Optional[str] = None,
                                    correlation_id: Optional[str] = None): ...


class MetricsSink(Protocol):
    def record_processing_success(self, processing_time_ms: float): ...

    def record_processing_failure(self, processing_time_ms: float): ...

    def record_duplicate_detection(self, detection_method: str): ...

    def record_validation_failure(self, validation_type: str): ...

    def snapshot(self) -> Dict[str, Any]: ...
