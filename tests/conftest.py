from unittest.mock import AsyncMock

import pytest

from invoice_pipeline.guardrails.audit_logger import AuditLogger
from invoice_pipeline.models.processing import UploadedFile
from invoice_pipeline.monitoring.metrics import ProcessingMetrics
from invoice_pipeline.tools.data_normalizer import DataNormalizer
from invoice_pipeline.tools.duplicate_detector import DuplicateDetector
from invoice_pipeline.tools.file_guard import FileGuard
from invoice_pipeline.tools.invoice_validator import InvoiceValidator
from invoice_pipeline.workflow.orchestrator import InvoiceProcessingOrchestrator
from invoice_pipeline.workflow.status_tracker import ProcessingStatusTracker
from tests.fakes import PDF_BYTES, InMemoryAuditRepository, InMemoryInvoiceRepository, extraction_for


@pytest.fixture
def pdf_file():
    return UploadedFile(filename="invoice.pdf", content_type="application/pdf", content=PDF_BYTES)


@pytest.fixture
def invoice_repo():
    return InMemoryInvoiceRepository()


@pytest.fixture
def audit_repo():
    return InMemoryAuditRepository()


@pytest.fixture
def audit_logger(audit_repo):
    return AuditLogger(audit_repo)


@pytest.fixture
def metrics():
    return ProcessingMetrics()


@pytest.fixture
def extractor():
    mock = AsyncMock()
    mock.process_document = AsyncMock(return_value=extraction_for())
    mock.health_check = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def status_tracker():
    tracker = ProcessingStatusTracker(retention_seconds=300, max_entries=100)
    yield tracker
    tracker.clear()


@pytest.fixture
def orchestrator(invoice_repo, audit_logger, metrics, extractor, status_tracker):
    return InvoiceProcessingOrchestrator(
        file_guard=FileGuard(),
        extractor=extractor,
        normalizer=DataNormalizer(),
        validator=InvoiceValidator(),
        duplicate_detector=DuplicateDetector(invoice_repo),
        repository=invoice_repo,
        audit=audit_logger,
        metrics=metrics,
        status_tracker=status_tracker,
    )
