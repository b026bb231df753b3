import logging
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorClient
from invoice_pipeline.config import settings
from invoice_pipeline.repositories.invoice import InvoiceRepository
from invoice_pipeline.repositories.audit import AuditRepository
from invoice_pipeline.models.invoice import InvoiceRecord
from invoice_pipeline.models.audit import AuditEntry

logger = logging.getLogger(__name__)

class Database:
    client: Optional[AsyncIOMotorClient] = None

    # Repositories
    invoices: Optional[InvoiceRepository] = None
    audit: Optional[AuditRepository] = None

    def connect(self, url: Optional[str] = None, db_name: Optional[str] = None):
        """Initialize database connection and repositories."""
        self.client = AsyncIOMotorClient(url or settings.MONGODB_URL, tz_aware=True)
        db = self.client[db_name or settings.DB_NAME]

        self.invoices = InvoiceRepository(db.invoices, InvoiceRecord)
        self.audit = AuditRepository(db.audit_log, AuditEntry)

        logger.info("Connected to MongoDB")

    def close(self):
        """Close database connection."""
        if self.client:
            self.client.close()
            self.client = None
            logger.info("Disconnected from MongoDB")
