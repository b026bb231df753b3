from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from pymongo import ASCENDING

from invoice_pipeline.errors import NotFoundError
from invoice_pipeline.repositories.base import BaseRepository
from invoice_pipeline.models.invoice import InvoiceRecord, InvoiceStatus

# Originals only: a DUPLICATE record must never be reported as the original of another one
_ORIGINALS = {"status": {"$ne": InvoiceStatus.DUPLICATE.value}}


class InvoiceRepository(BaseRepository[InvoiceRecord]):

    async def save(self, record: InvoiceRecord) -> InvoiceRecord:
        return await self.create(record)

    async def find_by_id(self, invoice_id: str) -> Optional[InvoiceRecord]:
        return await self.get(invoice_id)

    async def update(self, invoice_id: str, record: InvoiceRecord) -> InvoiceRecord:
        """Replace the stored fields of a record with the given model's."""
        updated = await super().update(invoice_id, record.to_mongo())
        if updated is None:
            raise NotFoundError(f"Invoice with ID {invoice_id} not found", {"invoice_id": invoice_id})
        return updated

    async def find_by_invoice_number(self, invoice_number: str) -> Optional[InvoiceRecord]:
        found = await self.list({"invoice_number": invoice_number, **_ORIGINALS},
                                limit=1, sort=[("created_at", ASCENDING)])
        return found[0] if found else None

    async def find_by_content_hash(self, content_hash: str) -> Optional[InvoiceRecord]:
        found = await self.list({"content_hash": content_hash, **_ORIGINALS},
                                limit=1, sort=[("created_at", ASCENDING)])
        return found[0] if found else None

    async def find_duplicate_candidates(self,
                                        total_amount: float,
                                        due_date: Optional[datetime],
                                        window_days: int,
                                        limit: int) -> List[InvoiceRecord]:
        """Invoices with the same amount (to the cent) and a due date close to the given one."""
        filter: Dict[str, Any] = {
            "total_amount": {"$gte": total_amount - 0.005, "$lte": total_amount + 0.005},
            **_ORIGINALS
        }
        if due_date is not None:
            filter["due_date"] = {
                "$gte": due_date - timedelta(days=window_days),
                "$lte": due_date + timedelta(days=window_days)
            }
        return await self.list(filter, limit=limit, sort=[("created_at", ASCENDING)])

    async def get_stats(self, date_from: Optional[datetime] = None) -> Dict[str, Any]:
        """Status breakdown, average processing time and duplicate rate since a date."""
        match: Dict[str, Any] = {}
        if date_from is not None:
            match["created_at"] = {"$gte": date_from}

        pipeline = [
            {"$match": match},
            {"$group": {
                "_id": "$status",
                "count": {"$sum": 1},
                "avg_time": {"$avg": "$metadata.processing_time_ms"}
            }}
        ]
        rows = await self.collection.aggregate(pipeline).to_list(length=None)

        by_status = {row["_id"]: row["count"] for row in rows}
        total = sum(by_status.values())
        weighted_time = sum((row.get("avg_time") or 0.0) * row["count"] for row in rows)

        return {
            "total": total,
            "by_status": by_status,
            "average_processing_time": round(weighted_time / total, 2) if total else 0.0,
            "duplicate_rate": round(by_status.get(InvoiceStatus.DUPLICATE.value, 0) / total, 4) if total else 0.0,
            "success_rate": round(by_status.get(InvoiceStatus.COMPLETED.value, 0) / total, 4) if total else 0.0,
        }

    async def ping(self) -> bool:
        await self.collection.database.command("ping")
        return True
