from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import uvicorn
import logging

from invoice_pipeline.config import settings
from invoice_pipeline.database import Database
from invoice_pipeline.errors import PipelineError
from invoice_pipeline.api import invoices
from invoice_pipeline.guardrails.audit_logger import AuditLogger
from invoice_pipeline.monitoring.metrics import ProcessingMetrics
from invoice_pipeline.tools.data_normalizer import DataNormalizer
from invoice_pipeline.tools.duplicate_detector import DuplicateDetector
from invoice_pipeline.tools.file_guard import FileGuard
from invoice_pipeline.tools.invoice_validator import InvoiceValidator
from invoice_pipeline.tools.ocr_tool import OCRTool
from invoice_pipeline.workflow.orchestrator import InvoiceProcessingOrchestrator
from invoice_pipeline.workflow.status_tracker import ProcessingStatusTracker

# Setup Logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def build_orchestrator(database: Database) -> InvoiceProcessingOrchestrator:
    """Wire the concrete collaborators into one orchestrator instance."""
    return InvoiceProcessingOrchestrator(
        file_guard=FileGuard(),
        extractor=OCRTool(),
        normalizer=DataNormalizer(),
        validator=InvoiceValidator(),
        duplicate_detector=DuplicateDetector(database.invoices),
        repository=database.invoices,
        audit=AuditLogger(database.audit),
        metrics=ProcessingMetrics(),
        status_tracker=ProcessingStatusTracker(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    database = Database()
    database.connect()
    app.state.orchestrator = build_orchestrator(database)
    logger.info(f"Invoice pipeline started ({settings.ENVIRONMENT})")
    try:
        yield
    finally:
        app.state.orchestrator.status_tracker.clear()
        app.state.orchestrator = None
        database.close()


app = FastAPI(
    title="Invoice Intake Pipeline API",
    description="Upload, extract, validate and deduplicate invoices",
    version="1.0.0",
    lifespan=lifespan
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_type.value} [{exc.correlation_id}] at {exc.step}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Router Registration
app.include_router(invoices.router)

# Health Check
@app.get("/health")
async def health_check(request: Request):
    orchestrator = getattr(request.app.state, "orchestrator", None)
    health = await orchestrator.health_check() if orchestrator else {"status": "starting"}
    return {**health, "environment": settings.ENVIRONMENT}

if __name__ == "__main__":
    uvicorn.run("invoice_pipeline.main:app", host="0.0.0.0", port=8000, reload=True)
