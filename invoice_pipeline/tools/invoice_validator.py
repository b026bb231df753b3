import logging
import re
from datetime import timedelta
from typing import List, Optional

from invoice_pipeline.config import settings
from invoice_pipeline.models.invoice import utcnow
from invoice_pipeline.models.processing import ExtractedInvoiceData, ValidationIssue, ValidationReport

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ["invoice_number", "total_amount", "due_date"]
INVOICE_NUMBER_FORMAT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9\-/_. ]{0,49}$")


class InvoiceValidator:
    """Business rules applied to normalized invoice data."""

    def __init__(self,
                 min_amount: Optional[float] = None,
                 max_amount: Optional[float] = None,
                 max_due_date_drift_days: Optional[int] = None):
        self.min_amount = settings.MIN_AMOUNT if min_amount is None else min_amount
        self.max_amount = settings.MAX_AMOUNT if max_amount is None else max_amount
        self.max_due_date_drift = timedelta(days=max_due_date_drift_days or settings.MAX_DUE_DATE_DRIFT_DAYS)

    async def validate_invoice_data(self, data: ExtractedInvoiceData) -> ValidationReport:
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        for field in REQUIRED_FIELDS:
            if getattr(data, field) in (None, ""):
                errors.append(ValidationIssue(field=field, code="REQUIRED", message=f"{field} is required"))

        if data.invoice_number and not INVOICE_NUMBER_FORMAT.match(data.invoice_number):
            errors.append(ValidationIssue(
                field="invoice_number", code="INVALID_FORMAT",
                message=f"Invoice number '{data.invoice_number}' has an invalid format"
            ))

        if data.total_amount is not None:
            if data.total_amount < self.min_amount:
                errors.append(ValidationIssue(
                    field="total_amount", code="AMOUNT_TOO_LOW",
                    message=f"Total amount {data.total_amount} is below the minimum of {self.min_amount}"
                ))
            elif data.total_amount > self.max_amount:
                errors.append(ValidationIssue(
                    field="total_amount", code="AMOUNT_TOO_HIGH",
                    message=f"Total amount {data.total_amount} exceeds the maximum of {self.max_amount}"
                ))

            if data.tax_amount is not None and data.tax_amount > data.total_amount:
                warnings.append(ValidationIssue(
                    field="tax_amount", code="TAX_EXCEEDS_TOTAL",
                    message="Tax amount is larger than the invoice total"
                ))

        if data.due_date is not None:
            now = utcnow()
            if data.due_date > now + self.max_due_date_drift:
                errors.append(ValidationIssue(
                    field="due_date", code="DUE_DATE_TOO_FAR",
                    message=f"Due date {data.due_date.date()} is too far in the future"
                ))
            elif data.due_date < now - self.max_due_date_drift:
                warnings.append(ValidationIssue(
                    field="due_date", code="DUE_DATE_STALE",
                    message=f"Due date {data.due_date.date()} is more than a year in the past"
                ))

            if data.invoice_date is not None and data.invoice_date > data.due_date:
                warnings.append(ValidationIssue(
                    field="invoice_date", code="INVOICE_AFTER_DUE",
                    message="Invoice date is after the due date"
                ))

        report = ValidationReport(is_valid=not errors, errors=errors, warnings=warnings)
        if not report.is_valid:
            logger.info(f"Invoice {data.invoice_number} failed validation: {[e.code for e in errors]}")
        return report

    async def health_check(self) -> bool:
        return True
