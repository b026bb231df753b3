import logging
import uuid
from typing import List, Optional, Dict, Any, Union

from invoice_pipeline.models.audit import AuditEntry, AuditAction, Actor, SYSTEM_ACTOR

logger = logging.getLogger(__name__)

PROCESSING_EVENT_ACTIONS = {
    "started": AuditAction.PROCESSED,
    "completed": AuditAction.PROCESSED,
    "failed": AuditAction.FAILED,
    "retried": AuditAction.REPROCESSED,
}

class AuditLogger:
    """
    Append-only audit trail. Writes are fire-and-forget: a storage failure is
    logged and never propagated into the caller's operation.
    """

    def __init__(self, repository):
        self.repository = repository

    async def log_action(self,
                         invoice_id: Optional[str],
                         action: Union[str, AuditAction],
                         changes: Dict[str, Any],
                         metadata: Optional[Dict[str, Any]] = None,
                         user_id: Optional[str] = None,
                         correlation_id: Optional[str] = None):
        """
        Generic logging point.
        """
        try:
            entry = AuditEntry(
                event_id=f"EVT-{uuid.uuid4().hex}",
                invoice_id=invoice_id,
                action=AuditAction(action),
                actor=Actor(id=user_id, name=user_id, type="USER") if user_id else SYSTEM_ACTOR,
                correlation_id=correlation_id,
                changes=changes,
                metadata={**(metadata or {}), "source": "audit-logger"}
            )
            await self.repository.append(entry)
        except Exception as e:
            logger.error(f"Failed to create audit entry for invoice {invoice_id} ({action}): {e}")
            return

        logger.info(f"AUDIT [{entry.action.value}]: invoice={invoice_id} correlation_id={correlation_id}")

    async def log_invoice_created(self, invoice_id: str, invoice_data: Dict[str, Any],
                                  user_id: Optional[str] = None, correlation_id: Optional[str] = None):
        await self.log_action(invoice_id, AuditAction.CREATED, {"created": invoice_data},
                              user_id=user_id, correlation_id=correlation_id)

    async def log_processing_event(self, invoice_id: Optional[str], event_type: str, details: Dict[str, Any],
                                   user_id: Optional[str] = None, correlation_id: Optional[str] = None):
        """event_type is one of started, completed, failed, retried."""
        action = PROCESSING_EVENT_ACTIONS.get(event_type, AuditAction.PROCESSED)
        await self.log_action(invoice_id, action, {"event_type": event_type, **details},
                              user_id=user_id, correlation_id=correlation_id)

    async def log_duplicate_detected(self, invoice_id: str, original_invoice_id: str,
                                     similarity_score: Optional[float], detection_method: str,
                                     user_id: Optional[str] = None, correlation_id: Optional[str] = None):
        await self.log_action(invoice_id, AuditAction.DUPLICATE_DETECTED, {
            "original_invoice_id": original_invoice_id,
            "similarity_score": similarity_score,
            "detection_method": detection_method
        }, user_id=user_id, correlation_id=correlation_id)

    async def log_validation_failed(self, invoice_id: Optional[str], validation_errors: List[Dict[str, Any]],
                                    validation_type: str, user_id: Optional[str] = None,
                                    correlation_id: Optional[str] = None):
        await self.log_action(invoice_id, AuditAction.VALIDATION_FAILED, {
            "validation_type": validation_type,
            "errors": validation_errors
        }, user_id=user_id, correlation_id=correlation_id)

    async def get_audit_trail(self, invoice_id: str) -> List[AuditEntry]:
        return await self.repository.get_for_invoice(invoice_id)

    async def health_check(self) -> bool:
        return await self.repository.ping()
