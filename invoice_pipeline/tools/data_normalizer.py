import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from invoice_pipeline.errors import ProcessingError
from invoice_pipeline.models.processing import ExtractedInvoiceData

logger = logging.getLogger(__name__)

DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
]

# Patterns applied to raw OCR text: (field, regex)
TEXT_PATTERNS = {
    "invoice_number": r"(?:Invoice|Inv)\s*(?:No\.?|Number|#)?\s*[:#]?\s*([A-Z0-9][A-Z0-9\-/]*\d[A-Z0-9\-/]*)",
    "due_date": r"\b(?:Due\s*Date|Payment\s*Due\s*Date|Date\s*Due)\s*[:\-]?\s*([A-Za-z0-9,./\- ]{6,20}?\d{2,4})\b",
    "invoice_date": r"(?:Invoice\s*Date|Date\s*of\s*Issue|Issued)\s*[:\-]?\s*([A-Za-z0-9,./\- ]{6,20}?\d{2,4})\b",
    "bill_to": r"(?:Bill\s*To|Billed\s*To|Customer)\s*[:\-]?\s*\n?\s*([^\n]+)",
    "total_amount": r"\b(?:Grand\s*Total|Total\s*Due|Amount\s*Due|Balance\s*Due|Total)\s*[:\-]?\s*[$€£]?\s*([\d,]+(?:\.\d{1,2})?)",
    "tax_amount": r"\b(?:VAT|Tax|GST)\s*(?:Amount)?\s*[:\-]?\s*[$€£]?\s*([\d,]+(?:\.\d{1,2})?)",
}

CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP"}

# Accept camelCase keys from upstream processors as well
FIELD_ALIASES = {
    "invoiceNumber": "invoice_number",
    "billTo": "bill_to",
    "dueDate": "due_date",
    "totalAmount": "total_amount",
    "invoiceDate": "invoice_date",
    "supplierName": "vendor_name",
    "vendorName": "vendor_name",
    "taxAmount": "tax_amount",
}


def parse_date(value: Any) -> Optional[datetime]:
    """Parse a date in any of the supported formats into a UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = " ".join(str(value).replace(",", ", ").split()).replace(" ,", ",")
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def parse_amount(value: Any) -> Optional[float]:
    """'$1,234.50' -> 1234.5"""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    cleaned = re.sub(r"[^\d.\-]", "", str(value))
    try:
        return float(cleaned)
    except ValueError:
        return None


class DataNormalizer:
    """Maps raw extractor output (structured fields or plain OCR text) onto ExtractedInvoiceData."""

    async def extract_and_validate_data(self, raw_data: Optional[Dict[str, Any]]) -> ExtractedInvoiceData:
        try:
            return self.normalize(raw_data or {})
        except Exception as e:
            logger.error(f"Error during data extraction: {e}")
            raise ProcessingError(
                "Data extraction failed due to internal error",
                {"original_error": str(e)}
            ) from e

    def normalize(self, raw_data: Dict[str, Any]) -> ExtractedInvoiceData:
        fields: Dict[str, Any] = {}
        if raw_data.get("raw_text"):
            fields.update(self.parse_text(raw_data["raw_text"]))

        structured = raw_data.get("fields") or {
            k: v for k, v in raw_data.items() if k not in ("raw_text", "confidence")
        }
        for key, value in structured.items():
            if value not in (None, ""):
                fields[FIELD_ALIASES.get(key, key)] = value

        data = ExtractedInvoiceData(
            invoice_number=self._clean_text(fields.get("invoice_number")),
            bill_to=self._clean_text(fields.get("bill_to")),
            due_date=parse_date(fields.get("due_date")),
            total_amount=parse_amount(fields.get("total_amount")),
            invoice_date=parse_date(fields.get("invoice_date")),
            vendor_name=self._clean_text(fields.get("vendor_name")),
            tax_amount=parse_amount(fields.get("tax_amount")),
            currency=fields.get("currency"),
            confidence=float(raw_data.get("confidence") or 0.0)
        )
        logger.debug(f"Normalized invoice data: number={data.invoice_number} total={data.total_amount}")
        return data

    @staticmethod
    def parse_text(text: str) -> Dict[str, Any]:
        found: Dict[str, Any] = {}
        for field, pattern in TEXT_PATTERNS.items():
            match = re.search(pattern, text, re.IGNORECASE)
            if match:
                found[field] = match.group(1).strip()
        for symbol, code in CURRENCY_SYMBOLS.items():
            if symbol in text:
                found["currency"] = code
                break
        return found

    @staticmethod
    def _clean_text(value: Any) -> Optional[str]:
        if value is None:
            return None
        cleaned = " ".join(str(value).split())
        return cleaned or None

    async def health_check(self) -> bool:
        return True
