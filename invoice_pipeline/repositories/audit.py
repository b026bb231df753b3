from typing import List
from pymongo import ASCENDING

from invoice_pipeline.repositories.base import BaseRepository
from invoice_pipeline.models.audit import AuditEntry

class AuditRepository(BaseRepository[AuditEntry]):

    async def append(self, entry: AuditEntry) -> AuditEntry:
        """Audit entries are only ever inserted."""
        return await self.create(entry)

    async def get_for_invoice(self, invoice_id: str, limit: int = 500) -> List[AuditEntry]:
        """Retrieve all audit events for a specific invoice, oldest first."""
        return await self.list({"invoice_id": invoice_id}, limit=limit, sort=[("timestamp", ASCENDING)])

    async def ping(self) -> bool:
        await self.collection.database.command("ping")
        return True
