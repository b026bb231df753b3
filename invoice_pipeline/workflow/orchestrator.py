import logging
import time
import uuid
from datetime import datetime, time as dt_time, timezone
from typing import Any, Dict, Optional

from invoice_pipeline.config import settings
from invoice_pipeline.errors import (
    ExternalServiceError,
    InvalidStateError,
    NotFoundError,
    PipelineError,
    ProcessingError,
    ValidationError,
)
from invoice_pipeline.models.invoice import InvoiceMetadata, InvoiceRecord, InvoiceStatus, StatusChange, utcnow
from invoice_pipeline.models.processing import ProcessingOptions, ProcessingStatus, UploadedFile
from invoice_pipeline.workflow.graph import PipelineGraph, PipelineStep, failed_step
from invoice_pipeline.workflow.interfaces import (
    AuditSink,
    DataNormalizer,
    DocumentExtractor,
    DuplicateChecker,
    FileGuard,
    InvoiceStore,
    InvoiceValidator,
    MetricsSink,
)
from invoice_pipeline.workflow.locks import KeyedLock
from invoice_pipeline.workflow.state import PipelineState
from invoice_pipeline.workflow.status_tracker import ProcessingStatusTracker

logger = logging.getLogger(__name__)

CANCEL_REASON = "Processing cancelled by user"

# Approximate status for records with no live tracking entry: (progress, current_step)
PERSISTED_STATUS_MAP = {
    InvoiceStatus.UPLOADED: (0, "pending"),
    InvoiceStatus.PROCESSING: (50, "processing"),
    InvoiceStatus.COMPLETED: (100, "completed"),
    InvoiceStatus.FAILED: (0, "failed"),
    InvoiceStatus.DUPLICATE: (100, "duplicate_detected"),
}


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class InvoiceProcessingOrchestrator:
    """
    Drives one uploaded document through validation, extraction, normalization,
    business validation, duplicate detection, persistence and auditing.

    All collaborators are injected; the orchestrator owns only its status
    tracker and the single-flight lock used around duplicate detection.
    """

    def __init__(self,
                 file_guard: FileGuard,
                 extractor: DocumentExtractor,
                 normalizer: DataNormalizer,
                 validator: InvoiceValidator,
                 duplicate_detector: DuplicateChecker,
                 repository: InvoiceStore,
                 audit: AuditSink,
                 metrics: MetricsSink,
                 status_tracker: Optional[ProcessingStatusTracker] = None,
                 single_flight: Optional[bool] = None):
        self.file_guard = file_guard
        self.extractor = extractor
        self.normalizer = normalizer
        self.validator = validator
        self.duplicate_detector = duplicate_detector
        self.repository = repository
        self.audit = audit
        self.metrics = metrics
        self.status_tracker = status_tracker or ProcessingStatusTracker()
        self.single_flight = settings.DUPLICATE_SINGLE_FLIGHT if single_flight is None else single_flight
        self._hash_locks = KeyedLock()

        self.graph = PipelineGraph([
            PipelineStep("file_validation", 10, self._validate_file),
            PipelineStep("document_processing", 25, self._process_document),
            PipelineStep("data_extraction", 45, self._extract_data),
            PipelineStep("data_validation", 60, self._validate_data,
                         skip_when=lambda state: state["options"].skip_validation),
            PipelineStep("duplicate_detection", 75, self._detect_duplicates,
                         skip_when=lambda state: state["options"].skip_duplicate_check),
            PipelineStep("invoice_creation", 90, self._create_invoice,
                         skip_when=lambda state: state.get("invoice") is not None),
            PipelineStep("audit_logging", 95, self._log_completion),
        ])

    # ------------------------------------------------------------------
    # Inbound operations
    # ------------------------------------------------------------------

    async def process_invoice(self, file: UploadedFile, options: Optional[ProcessingOptions] = None) -> InvoiceRecord:
        options = options or ProcessingOptions()
        correlation_id = options.correlation_id or str(uuid.uuid4())
        started = time.perf_counter()

        logger.info(f"[{correlation_id}] Starting invoice processing for {file.filename}")

        state: PipelineState = {
            "correlation_id": correlation_id,
            "file": file,
            "options": options,
            "started_at": started,
            "invoice": None,
            "is_duplicate": False,
            "release_lock": None,
        }
        records = self.graph.new_records()
        self.status_tracker.publish(correlation_id, ProcessingStatus())

        def on_step_start(step: PipelineStep, current: PipelineState):
            self._publish(correlation_id, current, progress=step.progress, current_step=step.name)

        try:
            state = await self.graph.run(state, records, on_step_start=on_step_start)
        except Exception as e:
            await self._handle_failure(correlation_id, state, records, e, started)
            raise
        else:
            elapsed = _elapsed_ms(started)
            self._publish(correlation_id, state, status="completed", progress=100, current_step="completed")
            self._record_metric(self.metrics.record_processing_success, elapsed)
        finally:
            self._release_hash_lock(state)
            self._schedule_eviction(correlation_id)

        invoice = state["invoice"]
        logger.info(f"[{correlation_id}] Invoice processing completed: {invoice.id} "
                    f"({invoice.status.value}) in {elapsed:.1f} ms")
        return invoice

    async def reprocess_invoice(self, invoice_id: str, options: Optional[ProcessingOptions] = None) -> InvoiceRecord:
        options = options or ProcessingOptions()
        correlation_id = options.correlation_id or str(uuid.uuid4())

        logger.info(f"[{correlation_id}] Reprocessing invoice {invoice_id}")

        invoice = await self.repository.find_by_id(invoice_id)
        if not invoice:
            raise NotFoundError(f"Invoice with ID {invoice_id} not found",
                                {"invoice_id": invoice_id}, correlation_id)

        if not invoice.can_reprocess() and not options.force_reprocess:
            raise InvalidStateError(
                f"Invoice {invoice_id} cannot be reprocessed in status {invoice.status.value}",
                {"invoice_id": invoice_id, "status": invoice.status.value},
                correlation_id
            )

        previous_status = invoice.status
        try:
            invoice.update_status(InvoiceStatus.PROCESSING, {"reason": "reprocess", "previous_status": previous_status.value})
            invoice = await self.repository.update(invoice_id, invoice)
            await self.audit.log_processing_event(invoice_id, "retried", {
                "previous_status": previous_status.value,
                "processing_attempts": invoice.processing_attempts,
            }, user_id=options.user_id, correlation_id=correlation_id)

            # File bytes are not retained, so there is nothing to re-extract
            invoice.update_status(InvoiceStatus.COMPLETED, {"reason": "reprocess"})
            invoice = await self.repository.update(invoice_id, invoice)
            await self.audit.log_processing_event(invoice_id, "completed", {
                "reprocessed": True,
                "processing_attempts": invoice.processing_attempts,
            }, user_id=options.user_id, correlation_id=correlation_id)
        except Exception as e:
            logger.error(f"[{correlation_id}] Reprocessing of invoice {invoice_id} failed: {e}")
            await self._mark_failed(invoice_id, invoice, str(e), correlation_id)
            if isinstance(e, PipelineError):
                e.correlation_id = e.correlation_id or correlation_id
            raise

        logger.info(f"[{correlation_id}] Invoice {invoice_id} reprocessed "
                    f"(attempt {invoice.processing_attempts})")
        return invoice

    async def get_processing_status(self, invoice_id: str) -> ProcessingStatus:
        live = self.status_tracker.find_by_invoice(invoice_id)
        if live:
            return live

        invoice = await self.repository.find_by_id(invoice_id)
        if not invoice:
            raise NotFoundError(f"Invoice with ID {invoice_id} not found", {"invoice_id": invoice_id})

        progress, current_step = PERSISTED_STATUS_MAP[invoice.status]
        return ProcessingStatus(
            invoice_id=invoice_id,
            status=invoice.status.value.lower(),
            progress=progress,
            current_step=current_step,
            started_at=invoice.created_at,
            updated_at=invoice.updated_at,
            error="Processing failed" if invoice.status == InvoiceStatus.FAILED else None,
        )

    async def cancel_processing(self, invoice_id: str):
        removed = self.status_tracker.remove_by_invoice(invoice_id)
        if removed:
            logger.info(f"Dropped {removed} live status entr{'y' if removed == 1 else 'ies'} for invoice {invoice_id}")

        try:
            invoice = await self.repository.find_by_id(invoice_id)
            if not invoice or not invoice.is_processing():
                return

            invoice.update_status(InvoiceStatus.FAILED, {
                "cancellation_reason": CANCEL_REASON,
                "cancelled_at": utcnow().isoformat(),
            })
            await self.repository.update(invoice_id, invoice)
        except Exception as e:
            logger.error(f"Error cancelling processing for invoice {invoice_id}: {e}")
            return

        await self.audit.log_processing_event(invoice_id, "failed", {"reason": CANCEL_REASON})
        logger.info(f"Processing cancelled for invoice {invoice_id}")

    async def get_processing_statistics(self) -> Dict[str, Any]:
        today = datetime.combine(utcnow().date(), dt_time.min, tzinfo=timezone.utc)
        stats = await self.repository.get_stats(date_from=today)
        by_status = stats.get("by_status", {})

        return {
            "active_processing": self.status_tracker.active_count(),
            "total_today": stats.get("total", 0),
            "completed_today": by_status.get(InvoiceStatus.COMPLETED.value, 0),
            "failed_today": by_status.get(InvoiceStatus.FAILED.value, 0),
            "duplicates_today": by_status.get(InvoiceStatus.DUPLICATE.value, 0),
            "average_processing_time": stats.get("average_processing_time", 0.0),
            "duplicate_rate": stats.get("duplicate_rate", 0.0),
            "success_rate": stats.get("success_rate", 0.0),
        }

    async def health_check(self) -> Dict[str, Any]:
        dependencies = {
            "file_validation": await self._probe(self.file_guard),
            "document_processing": await self._probe(self.extractor),
            "data_extraction": await self._probe(self.normalizer),
            "invoice_validation": await self._probe(self.validator),
            "duplicate_detection": await self._probe(self.duplicate_detector),
            "repository": await self._probe(self.repository),
            "audit": await self._probe(self.audit),
        }
        return {
            "status": "healthy" if all(dependencies.values()) else "degraded",
            "active_processing": self.status_tracker.active_count(),
            "dependencies": dependencies,
        }

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _validate_file(self, state: PipelineState) -> PipelineState:
        result = await self.file_guard.validate_file(state["file"])
        state["file_report"] = result
        if not result.is_valid:
            self._record_metric(self.metrics.record_validation_failure, "file")
            raise ValidationError(f"File validation failed: {', '.join(result.errors)}",
                                  {"errors": result.errors})
        for warning in result.warnings:
            logger.warning(f"[{state['correlation_id']}] {warning}")
        return state

    async def _process_document(self, state: PipelineState) -> PipelineState:
        try:
            result = await self.extractor.process_document(state["file"])
        except PipelineError:
            raise
        except Exception as e:
            raise ExternalServiceError(f"Document processing failed: {e}") from e

        if not result.success:
            raise ExternalServiceError(f"Document processing failed: {result.error or 'unknown error'}",
                                       {"processor_version": result.processor_version})
        state["extraction"] = result
        return state

    async def _extract_data(self, state: PipelineState) -> PipelineState:
        data = await self.normalizer.extract_and_validate_data(state["extraction"].data)
        if not data or not data.invoice_number:
            raise ProcessingError("Data extraction failed: Required fields missing",
                                  {"missing": ["invoice_number"]})
        if not data.confidence:
            data.confidence = state["extraction"].confidence
        state["extracted_data"] = data
        state["content_hash"] = self.duplicate_detector.generate_content_hash(data)
        return state

    async def _validate_data(self, state: PipelineState) -> PipelineState:
        report = await self.validator.validate_invoice_data(state["extracted_data"])
        state["validation_report"] = report
        if not report.is_valid:
            self._record_metric(self.metrics.record_validation_failure, "business_rules")
            errors = [issue.model_dump() for issue in report.errors]
            await self.audit.log_validation_failed(None, errors, "business_rules",
                                                   user_id=state["options"].user_id,
                                                   correlation_id=state["correlation_id"])
            raise ValidationError(
                f"Invoice validation failed: {'; '.join(issue.message for issue in report.errors)}",
                {"errors": errors}
            )
        return state

    async def _detect_duplicates(self, state: PipelineState) -> PipelineState:
        if self.single_flight:
            key = state["content_hash"]
            await self._hash_locks.acquire(key)
            state["release_lock"] = lambda: self._hash_locks.release(key)

        result = await self.duplicate_detector.check_for_duplicates(state["extracted_data"])
        state["duplicate_result"] = result
        if not result.is_duplicate:
            return state

        if state["options"].force_reprocess:
            logger.info(f"[{state['correlation_id']}] Duplicate of {result.original_invoice_id} "
                        f"ignored (force_reprocess)")
            return state

        invoice = await self.repository.save(self._build_record(
            state, InvoiceStatus.DUPLICATE, duplicate_of=result.original_invoice_id
        ))
        state["invoice"] = invoice
        state["is_duplicate"] = True
        self._publish(state["correlation_id"], state)

        await self.audit.log_duplicate_detected(
            invoice.id, result.original_invoice_id, result.similarity_score,
            result.detection_method.value,
            user_id=state["options"].user_id, correlation_id=state["correlation_id"]
        )
        self._record_metric(self.metrics.record_duplicate_detection, result.detection_method.value)
        logger.warning(f"[{state['correlation_id']}] Invoice {invoice.id} is a duplicate of "
                       f"{result.original_invoice_id} ({result.detection_method.value})")
        return state

    async def _create_invoice(self, state: PipelineState) -> PipelineState:
        invoice = await self.repository.save(self._build_record(state, InvoiceStatus.COMPLETED))
        state["invoice"] = invoice
        self._publish(state["correlation_id"], state)

        await self.audit.log_invoice_created(
            invoice.id, invoice.model_dump(mode="json", exclude={"processing_history"}),
            user_id=state["options"].user_id, correlation_id=state["correlation_id"]
        )
        return state

    async def _log_completion(self, state: PipelineState) -> PipelineState:
        invoice = state["invoice"]
        await self.audit.log_processing_event(invoice.id, "completed", {
            "outcome": "duplicate" if state["is_duplicate"] else "created",
            "status": invoice.status.value,
            "processing_time_ms": round(_elapsed_ms(state["started_at"]), 2),
        }, user_id=state["options"].user_id, correlation_id=state["correlation_id"])
        return state

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_record(self, state: PipelineState, status: InvoiceStatus,
                      duplicate_of: Optional[str] = None) -> InvoiceRecord:
        data = state["extracted_data"]
        file = state["file"]
        options = state["options"]
        now = utcnow()

        return InvoiceRecord(
            invoice_number=data.invoice_number,
            bill_to=data.bill_to or "",
            due_date=data.due_date,
            total_amount=data.total_amount or 0.0,
            status=status,
            processing_attempts=1,
            last_processed_at=now,
            created_at=now,
            updated_at=now,
            metadata=InvoiceMetadata(
                original_file_name=file.filename,
                file_size=file.size,
                mime_type=file.content_type,
                processing_time_ms=round(_elapsed_ms(state["started_at"]), 2),
                extraction_confidence=min(max(data.confidence, 0.0), 1.0),
                extractor_version=state["extraction"].processor_version,
                uploaded_by=options.user_id,
                extra=options.metadata,
            ),
            processing_history=[StatusChange(
                attempt_number=1,
                status=status,
                timestamp=now,
                details={"correlation_id": state["correlation_id"]}
            )],
            duplicate_of=duplicate_of,
            content_hash=state["content_hash"],
        )

    def _publish(self, correlation_id: str, state: PipelineState, **changes):
        current = self.status_tracker.get(correlation_id) or ProcessingStatus()
        invoice = state.get("invoice")
        if invoice is not None:
            changes.setdefault("invoice_id", invoice.id)
        changes["updated_at"] = utcnow()
        self.status_tracker.publish(correlation_id, current.model_copy(update=changes))

    async def _handle_failure(self, correlation_id: str, state: PipelineState, records,
                              error: Exception, started: float):
        step = failed_step(records)
        elapsed = _elapsed_ms(started)
        self._publish(correlation_id, state, status="failed", error=str(error))
        self._record_metric(self.metrics.record_processing_failure, elapsed)

        invoice = state.get("invoice")
        try:
            await self.audit.log_processing_event(
                invoice.id if invoice else None, "failed", {
                    "error": str(error),
                    "error_type": error.error_type.value if isinstance(error, PipelineError) else type(error).__name__,
                    "failed_step": step,
                    "processing_time_ms": round(elapsed, 2),
                }, user_id=state["options"].user_id, correlation_id=correlation_id
            )
        except Exception as audit_error:
            logger.error(f"[{correlation_id}] Could not audit failed run: {audit_error}")

        logger.error(f"[{correlation_id}] Invoice processing failed at step {step} "
                     f"after {elapsed:.1f} ms: {error}")

    async def _mark_failed(self, invoice_id: str, invoice: InvoiceRecord, reason: str, correlation_id: str):
        try:
            invoice.update_status(InvoiceStatus.FAILED, {"error": reason})
            await self.repository.update(invoice_id, invoice)
        except Exception as e:
            logger.error(f"[{correlation_id}] Could not mark invoice {invoice_id} as failed: {e}")

    def _release_hash_lock(self, state: PipelineState):
        release = state.get("release_lock")
        if release:
            state["release_lock"] = None
            release()

    def _schedule_eviction(self, correlation_id: str):
        try:
            self.status_tracker.schedule_eviction(correlation_id)
        except Exception as e:
            logger.error(f"[{correlation_id}] Could not schedule status eviction: {e}")

    @staticmethod
    def _record_metric(record, *args):
        try:
            record(*args)
        except Exception as e:
            logger.error(f"Failed to record metric {getattr(record, '__name__', record)}: {e}")

    @staticmethod
    async def _probe(dependency) -> bool:
        check = getattr(dependency, "health_check", None) or getattr(dependency, "ping", None)
        if check is None:
            return True
        try:
            return bool(await check())
        except Exception as e:
            logger.warning(f"Health check failed for {type(dependency).__name__}: {e}")
            return False
