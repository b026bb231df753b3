import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from bson import ObjectId

from invoice_pipeline.errors import NotFoundError
from invoice_pipeline.models.audit import AuditAction, AuditEntry
from invoice_pipeline.models.invoice import InvoiceRecord, InvoiceStatus
from invoice_pipeline.repositories.audit import AuditRepository
from invoice_pipeline.repositories.invoice import InvoiceRepository

OID = ObjectId("65a1c0ffee65a1c0ffee65a1")


def mock_collection(docs=None):
    collection = MagicMock()
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.skip.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=docs or [])
    collection.find.return_value = cursor
    collection.find_one = AsyncMock(return_value=None)
    collection.find_one_and_update = AsyncMock(return_value=None)
    collection.insert_one = AsyncMock(return_value=MagicMock(inserted_id=OID))
    return collection


@pytest.mark.asyncio
async def test_save_assigns_string_id_and_omits_it_from_document():
    collection = mock_collection()
    repo = InvoiceRepository(collection, InvoiceRecord)

    saved = await repo.save(InvoiceRecord(invoice_number="INV-1"))

    assert saved.id == str(OID)
    document = collection.insert_one.await_args.args[0]
    assert "_id" not in document and "id" not in document
    assert document["invoice_number"] == "INV-1"


@pytest.mark.asyncio
async def test_find_by_id_with_malformed_id_is_not_found():
    collection = mock_collection()
    repo = InvoiceRepository(collection, InvoiceRecord)

    assert await repo.find_by_id("not-an-object-id") is None
    collection.find_one.assert_not_called()


@pytest.mark.asyncio
async def test_update_missing_invoice_raises_not_found():
    repo = InvoiceRepository(mock_collection(), InvoiceRecord)

    with pytest.raises(NotFoundError):
        await repo.update(str(OID), InvoiceRecord(invoice_number="INV-1"))


@pytest.mark.asyncio
async def test_update_returns_stored_document():
    collection = mock_collection()
    collection.find_one_and_update.return_value = {"_id": OID, "invoice_number": "INV-1", "status": "COMPLETED"}
    repo = InvoiceRepository(collection, InvoiceRecord)

    updated = await repo.update(str(OID), InvoiceRecord(invoice_number="INV-1", status=InvoiceStatus.COMPLETED))

    assert updated.id == str(OID)
    assert updated.status == InvoiceStatus.COMPLETED
    query, change = collection.find_one_and_update.await_args.args
    assert query == {"_id": OID}
    assert change["$set"]["status"] == InvoiceStatus.COMPLETED


@pytest.mark.asyncio
async def test_lookups_only_consider_originals_oldest_first():
    collection = mock_collection(docs=[{"_id": OID, "invoice_number": "INV-1"}])
    repo = InvoiceRepository(collection, InvoiceRecord)

    found = await repo.find_by_invoice_number("INV-1")

    assert found.id == str(OID)
    collection.find.assert_called_once_with({"invoice_number": "INV-1", "status": {"$ne": "DUPLICATE"}})
    collection.find.return_value.sort.assert_called_once_with([("created_at", 1)])

    collection.find.return_value.to_list.return_value = []
    assert await repo.find_by_content_hash("abc") is None


@pytest.mark.asyncio
async def test_duplicate_candidates_filter_amount_and_due_date_window():
    collection = mock_collection()
    repo = InvoiceRepository(collection, InvoiceRecord)
    due = datetime(2024, 1, 15, tzinfo=timezone.utc)

    await repo.find_duplicate_candidates(100.0, due, window_days=7, limit=50)

    query = collection.find.call_args.args[0]
    assert query["total_amount"]["$gte"] == pytest.approx(99.995)
    assert query["total_amount"]["$lte"] == pytest.approx(100.005)
    assert query["due_date"] == {"$gte": datetime(2024, 1, 8, tzinfo=timezone.utc),
                                 "$lte": datetime(2024, 1, 22, tzinfo=timezone.utc)}
    assert query["status"] == {"$ne": "DUPLICATE"}
    collection.find.return_value.limit.assert_called_once_with(50)


@pytest.mark.asyncio
async def test_get_stats_aggregates_by_status():
    collection = mock_collection()
    collection.aggregate.return_value.to_list = AsyncMock(return_value=[
        {"_id": "COMPLETED", "count": 3, "avg_time": 100.0},
        {"_id": "DUPLICATE", "count": 1, "avg_time": 60.0},
    ])
    repo = InvoiceRepository(collection, InvoiceRecord)

    stats = await repo.get_stats()

    assert stats["total"] == 4
    assert stats["by_status"] == {"COMPLETED": 3, "DUPLICATE": 1}
    assert stats["average_processing_time"] == 90.0
    assert stats["duplicate_rate"] == 0.25
    assert stats["success_rate"] == 0.75


@pytest.mark.asyncio
async def test_audit_repository_appends_and_reads_in_order():
    collection = mock_collection(docs=[{"_id": OID, "event_id": "EVT-1", "invoice_id": "inv-1", "action": "created"}])
    repo = AuditRepository(collection, AuditEntry)

    await repo.append(AuditEntry(event_id="EVT-1", invoice_id="inv-1", action=AuditAction.CREATED))
    trail = await repo.get_for_invoice("inv-1")

    collection.insert_one.assert_awaited_once()
    collection.find.assert_called_once_with({"invoice_id": "inv-1"})
    collection.find.return_value.sort.assert_called_once_with([("timestamp", 1)])
    assert trail[0].action == AuditAction.CREATED
