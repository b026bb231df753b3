from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, Request, Response, UploadFile
from pydantic import BaseModel

from invoice_pipeline.models.audit import AuditEntry
from invoice_pipeline.models.invoice import InvoiceRecord
from invoice_pipeline.models.processing import ProcessingOptions, ProcessingStatus, UploadedFile
from invoice_pipeline.workflow.orchestrator import InvoiceProcessingOrchestrator

router = APIRouter(prefix="/api/invoices", tags=["Invoices"])


# Request Models
class ReprocessRequest(BaseModel):
    force_reprocess: bool = False


def get_orchestrator(request: Request) -> InvoiceProcessingOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Invoice pipeline is not ready")
    return orchestrator


@router.post("/upload", response_model=InvoiceRecord, status_code=201)
async def upload_invoice(
    file: UploadFile = File(...),
    force_reprocess: bool = Query(False),
    skip_duplicate_check: bool = Query(False),
    skip_validation: bool = Query(False),
    x_correlation_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    orchestrator: InvoiceProcessingOrchestrator = Depends(get_orchestrator)
):
    content = await file.read()
    uploaded = UploadedFile(
        filename=file.filename or "",
        content_type=file.content_type or "application/octet-stream",
        content=content
    )
    options = ProcessingOptions(
        force_reprocess=force_reprocess,
        skip_duplicate_check=skip_duplicate_check,
        skip_validation=skip_validation,
        user_id=x_user_id,
        correlation_id=x_correlation_id,
        metadata={"source": "api_upload"}
    )
    return await orchestrator.process_invoice(uploaded, options)


@router.get("/statistics")
async def get_statistics(orchestrator: InvoiceProcessingOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return await orchestrator.get_processing_statistics()


@router.get("/metrics")
async def get_metrics(orchestrator: InvoiceProcessingOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    """In-process counters and latency histograms."""
    return orchestrator.metrics.snapshot()


@router.get("/{invoice_id}", response_model=InvoiceRecord)
async def get_invoice(invoice_id: str, orchestrator: InvoiceProcessingOrchestrator = Depends(get_orchestrator)):
    invoice = await orchestrator.repository.find_by_id(invoice_id)
    if not invoice:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return invoice


@router.post("/{invoice_id}/reprocess", response_model=InvoiceRecord)
async def reprocess_invoice(
    invoice_id: str,
    body: Optional[ReprocessRequest] = None,
    x_correlation_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    orchestrator: InvoiceProcessingOrchestrator = Depends(get_orchestrator)
):
    options = ProcessingOptions(
        force_reprocess=body.force_reprocess if body else False,
        user_id=x_user_id,
        correlation_id=x_correlation_id
    )
    return await orchestrator.reprocess_invoice(invoice_id, options)


@router.get("/{invoice_id}/status", response_model=ProcessingStatus)
async def get_processing_status(invoice_id: str, orchestrator: InvoiceProcessingOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.get_processing_status(invoice_id)


@router.post("/{invoice_id}/cancel", status_code=204)
async def cancel_processing(invoice_id: str, orchestrator: InvoiceProcessingOrchestrator = Depends(get_orchestrator)):
    await orchestrator.cancel_processing(invoice_id)
    return Response(status_code=204)


@router.get("/{invoice_id}/audit", response_model=List[AuditEntry])
async def get_audit_trail(invoice_id: str, orchestrator: InvoiceProcessingOrchestrator = Depends(get_orchestrator)):
    return await orchestrator.audit.get_audit_trail(invoice_id)
