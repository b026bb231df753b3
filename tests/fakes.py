"""In-memory stand-ins for the Mongo-backed repositories."""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId

from invoice_pipeline.errors import NotFoundError
from invoice_pipeline.models.audit import AuditEntry
from invoice_pipeline.models.invoice import InvoiceRecord, InvoiceStatus
from invoice_pipeline.models.processing import ExtractionResult

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\n%%EOF"


class InMemoryInvoiceRepository:
    def __init__(self):
        self.records: Dict[str, InvoiceRecord] = {}
        self.saved: List[InvoiceRecord] = []

    async def save(self, record: InvoiceRecord) -> InvoiceRecord:
        stored = record.model_copy(deep=True, update={"id": str(ObjectId())})
        self.records[stored.id] = stored
        self.saved.append(stored)
        return stored.model_copy(deep=True)

    async def find_by_id(self, invoice_id: str) -> Optional[InvoiceRecord]:
        record = self.records.get(invoice_id)
        return record.model_copy(deep=True) if record else None

    async def update(self, invoice_id: str, record: InvoiceRecord) -> InvoiceRecord:
        if invoice_id not in self.records:
            raise NotFoundError(f"Invoice with ID {invoice_id} not found")
        self.records[invoice_id] = record.model_copy(deep=True, update={"id": invoice_id})
        return self.records[invoice_id].model_copy(deep=True)

    def _originals(self) -> List[InvoiceRecord]:
        ordered = sorted(self.records.values(), key=lambda r: r.created_at)
        return [r for r in ordered if r.status != InvoiceStatus.DUPLICATE]

    async def find_by_invoice_number(self, invoice_number: str) -> Optional[InvoiceRecord]:
        return next((r for r in self._originals() if r.invoice_number == invoice_number), None)

    async def find_by_content_hash(self, content_hash: str) -> Optional[InvoiceRecord]:
        return next((r for r in self._originals() if r.content_hash == content_hash), None)

    async def find_duplicate_candidates(self, total_amount: float, due_date: Optional[datetime],
                                        window_days: int, limit: int) -> List[InvoiceRecord]:
        found = []
        for record in self._originals():
            if abs(record.total_amount - total_amount) > 0.005:
                continue
            if due_date is not None and (record.due_date is None or
                                         abs(record.due_date - due_date) > timedelta(days=window_days)):
                continue
            found.append(record)
        return found[:limit]

    async def get_stats(self, date_from: Optional[datetime] = None) -> Dict[str, Any]:
        rows = [r for r in self.records.values() if date_from is None or r.created_at >= date_from]
        by_status: Dict[str, int] = {}
        for record in rows:
            by_status[record.status.value] = by_status.get(record.status.value, 0) + 1
        total = len(rows)
        return {
            "total": total,
            "by_status": by_status,
            "average_processing_time": (sum(r.metadata.processing_time_ms for r in rows) / total) if total else 0.0,
            "duplicate_rate": by_status.get("DUPLICATE", 0) / total if total else 0.0,
            "success_rate": by_status.get("COMPLETED", 0) / total if total else 0.0,
        }

    async def ping(self) -> bool:
        return True


class InMemoryAuditRepository:
    def __init__(self):
        self.entries: List[AuditEntry] = []

    async def append(self, entry: AuditEntry) -> AuditEntry:
        stored = entry.model_copy(update={"id": str(ObjectId())})
        self.entries.append(stored)
        return stored

    async def get_for_invoice(self, invoice_id: str, limit: int = 500) -> List[AuditEntry]:
        return [e for e in self.entries if e.invoice_id == invoice_id][:limit]

    async def ping(self) -> bool:
        return True

    def actions(self, invoice_id: Optional[str] = None) -> List[str]:
        return [e.action.value for e in self.entries if invoice_id is None or e.invoice_id == invoice_id]


def extraction_for(invoice_number="INV-001", bill_to="Acme Corp", total_amount=100.00, due_date="2024-01-15"):
    """Extractor output carrying structured fields, as a layout-aware OCR engine would return them."""
    return ExtractionResult(
        success=True,
        data={
            "fields": {
                "invoiceNumber": invoice_number,
                "billTo": bill_to,
                "totalAmount": total_amount,
                "dueDate": due_date,
            },
            "confidence": 0.9,
        },
        confidence=0.9,
        processor_version="test-ocr"
    )
