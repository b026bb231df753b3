import pytest
from unittest.mock import AsyncMock, MagicMock

from invoice_pipeline.guardrails.audit_logger import AuditLogger
from invoice_pipeline.models.audit import AuditAction


@pytest.mark.asyncio
async def test_processing_events_map_to_actions(audit_repo, audit_logger):
    await audit_logger.log_processing_event("inv-1", "retried", {"previous_status": "FAILED"}, correlation_id="c-1")
    await audit_logger.log_processing_event("inv-1", "completed", {})
    await audit_logger.log_processing_event("inv-1", "failed", {"reason": "boom"})

    assert audit_repo.actions("inv-1") == ["reprocessed", "processed", "failed"]
    first = audit_repo.entries[0]
    assert first.changes == {"event_type": "retried", "previous_status": "FAILED"}
    assert first.correlation_id == "c-1"
    assert first.actor.type == "SYSTEM"
    assert first.event_id.startswith("EVT-")


@pytest.mark.asyncio
async def test_user_actor(audit_repo, audit_logger):
    await audit_logger.log_invoice_created("inv-1", {"invoice_number": "INV-1"}, user_id="alice")

    entry = audit_repo.entries[0]
    assert entry.action == AuditAction.CREATED
    assert entry.actor.id == "alice"
    assert entry.actor.type == "USER"


@pytest.mark.asyncio
async def test_duplicate_and_validation_events(audit_repo, audit_logger):
    await audit_logger.log_duplicate_detected("inv-2", "inv-1", 1.0, "INVOICE_NUMBER")
    await audit_logger.log_validation_failed(None, [{"field": "due_date", "code": "REQUIRED"}], "business_rules")

    duplicate, validation = audit_repo.entries
    assert duplicate.changes["original_invoice_id"] == "inv-1"
    assert duplicate.changes["detection_method"] == "INVOICE_NUMBER"
    assert validation.invoice_id is None
    assert validation.changes["validation_type"] == "business_rules"


@pytest.mark.asyncio
async def test_storage_failure_is_not_propagated():
    repo = MagicMock()
    repo.append = AsyncMock(side_effect=ConnectionError("mongo down"))
    logger = AuditLogger(repo)

    await logger.log_processing_event("inv-1", "failed", {"reason": "test"})

    repo.append.assert_awaited_once()


@pytest.mark.asyncio
async def test_audit_trail_and_health(audit_repo, audit_logger):
    await audit_logger.log_processing_event("inv-1", "completed", {})
    await audit_logger.log_processing_event("inv-2", "completed", {})

    trail = await audit_logger.get_audit_trail("inv-1")
    assert len(trail) == 1
    assert await audit_logger.health_check() is True
