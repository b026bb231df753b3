import hashlib
import json
import logging
import math
import re
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, Optional, Tuple

import Levenshtein

from invoice_pipeline.config import settings
from invoice_pipeline.errors import ExternalServiceError, PipelineError, ValidationError
from invoice_pipeline.models.processing import DetectionMethod, DuplicateDetectionResult

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_CENTS = Decimal("0.01")


def normalize_string(value: Any) -> str:
    """Trim, collapse inner whitespace and lowercase. Anything unusable becomes ''."""
    if value is None:
        return ""
    try:
        return _WHITESPACE.sub(" ", str(value)).strip().lower()
    except Exception:
        return ""


def normalize_amount(value: Any) -> float:
    """Round to cents (half-up). Missing, non-numeric and non-finite amounts become 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(amount):
        return 0.0
    try:
        return float(Decimal(repr(amount)).quantize(_CENTS, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return 0.0


def normalize_date(value: Any) -> str:
    """Truncate to the UTC calendar date (YYYY-MM-DD). Missing or unparseable dates become ''."""
    if value is None or value == "":
        return ""
    try:
        if isinstance(value, str):
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                value = value.astimezone(timezone.utc)
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
    except (ValueError, TypeError, OverflowError):
        pass
    return ""


def _as_utc_midnight(normalized_date: str) -> Optional[datetime]:
    if not normalized_date:
        return None
    return datetime.fromisoformat(normalized_date).replace(tzinfo=timezone.utc)


def string_similarity(a: Any, b: Any) -> float:
    """1 - levenshtein(a, b) / max(len(a), len(b)) over normalized strings."""
    left, right = normalize_string(a), normalize_string(b)
    if left == right:
        return 1.0
    longest = max(len(left), len(right))
    return 1.0 - (Levenshtein.distance(left, right) / longest)


class DuplicateDetector:
    """
    Decides whether a submission duplicates a stored invoice.

    Three strategies run in fixed priority order and the first hit wins:
    exact invoice number, content hash, then fuzzy similarity over the
    invoice number and bill-to of stored invoices with the same amount
    and a nearby due date.
    """

    def __init__(self,
                 repository,
                 fuzzy_threshold: Optional[float] = None,
                 candidate_limit: Optional[int] = None,
                 due_date_window_days: Optional[int] = None):
        self.repository = repository
        self.fuzzy_threshold = settings.FUZZY_MATCH_THRESHOLD if fuzzy_threshold is None else fuzzy_threshold
        self.candidate_limit = candidate_limit or settings.FUZZY_CANDIDATE_LIMIT
        self.due_date_window_days = (settings.FUZZY_DUE_DATE_WINDOW_DAYS
                                     if due_date_window_days is None else due_date_window_days)

    async def check_for_duplicates(self, candidate: Any) -> DuplicateDetectionResult:
        if candidate is None:
            raise ValidationError("Invoice data is required for duplicate detection")

        invoice_number = getattr(candidate, "invoice_number", None)
        logger.debug(f"Checking for duplicates of invoice {invoice_number or 'unknown'}")

        try:
            result = await self._check_by_invoice_number(invoice_number)
            if result:
                logger.warning(f"Duplicate found by invoice number: {invoice_number}")
                return result

            result = await self._check_by_content_hash(self.generate_content_hash(candidate))
            if result:
                logger.warning(f"Duplicate found by content hash for invoice: {invoice_number}")
                return result

            result = await self._check_by_fuzzy_match(candidate)
            if result:
                logger.warning(f"Potential duplicate found by fuzzy matching for invoice: {invoice_number} "
                               f"(score {result.similarity_score:.3f})")
                return result

        except PipelineError:
            raise
        except Exception as e:
            logger.error(f"Error checking for duplicates: {e}")
            raise ExternalServiceError(
                f"Failed to check for duplicates: {e}",
                {"invoice_number": invoice_number}
            ) from e

        logger.debug(f"No duplicates found for invoice: {invoice_number}")
        return DuplicateDetectionResult(
            is_duplicate=False,
            detection_method=DetectionMethod.COMBINED,
            confidence=1.0
        )

    async def health_check(self) -> bool:
        """Duplicate lookups need the invoice store."""
        return bool(await self.repository.ping())

    def generate_content_hash(self, invoice: Any) -> str:
        """SHA-256 over the canonical, key-sorted form of the normalized fields. Never raises."""
        normalized = self.normalized_fields(invoice)
        payload = json.dumps(normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    @staticmethod
    def normalized_fields(invoice: Any) -> Dict[str, Any]:
        return {
            "invoice_number": normalize_string(getattr(invoice, "invoice_number", None)),
            "bill_to": normalize_string(getattr(invoice, "bill_to", None)),
            "total_amount": normalize_amount(getattr(invoice, "total_amount", None)),
            "due_date": normalize_date(getattr(invoice, "due_date", None)),
        }

    async def _check_by_invoice_number(self, invoice_number: Optional[str]) -> Optional[DuplicateDetectionResult]:
        if not invoice_number:
            return None
        existing = await self.repository.find_by_invoice_number(invoice_number)
        if not existing:
            return None
        return DuplicateDetectionResult(
            is_duplicate=True,
            original_invoice_id=existing.id,
            similarity_score=1.0,
            detection_method=DetectionMethod.INVOICE_NUMBER,
            confidence=1.0
        )

    async def _check_by_content_hash(self, content_hash: str) -> Optional[DuplicateDetectionResult]:
        existing = await self.repository.find_by_content_hash(content_hash)
        if not existing:
            return None
        return DuplicateDetectionResult(
            is_duplicate=True,
            original_invoice_id=existing.id,
            similarity_score=1.0,
            detection_method=DetectionMethod.CONTENT_HASH,
            confidence=0.95
        )

    async def _check_by_fuzzy_match(self, candidate: Any) -> Optional[DuplicateDetectionResult]:
        fields = self.normalized_fields(candidate)
        stored = await self.repository.find_duplicate_candidates(
            total_amount=fields["total_amount"],
            due_date=_as_utc_midnight(fields["due_date"]),
            window_days=self.due_date_window_days,
            limit=self.candidate_limit
        )

        best: Optional[Tuple[float, Any]] = None
        for existing in stored:
            score = self.similarity(candidate, existing)
            if best is None or score > best[0]:
                best = (score, existing)

        if best is None or best[0] < self.fuzzy_threshold:
            return None

        return DuplicateDetectionResult(
            is_duplicate=True,
            original_invoice_id=best[1].id,
            similarity_score=round(best[0], 4),
            detection_method=DetectionMethod.FUZZY_MATCH,
            confidence=0.8
        )

    @staticmethod
    def similarity(candidate: Any, existing: Any) -> float:
        """Mean string similarity of invoice number and bill-to."""
        number_score = string_similarity(getattr(candidate, "invoice_number", None),
                                         getattr(existing, "invoice_number", None))
        bill_to_score = string_similarity(getattr(candidate, "bill_to", None),
                                          getattr(existing, "bill_to", None))
        return (number_score + bill_to_score) / 2
