import asyncio
import logging
from collections import OrderedDict
from typing import Dict, Optional

from invoice_pipeline.config import settings
from invoice_pipeline.models.processing import ProcessingStatus

logger = logging.getLogger(__name__)


class ProcessingStatusTracker:
    """
    Bounded, in-memory map of correlation id -> latest ProcessingStatus.

    Entries are replaced wholesale on every update, so a reader always sees a
    complete snapshot. Terminated runs are evicted after a retention delay;
    when the map is full the oldest entry is dropped to make room.
    """

    def __init__(self,
                 retention_seconds: Optional[float] = None,
                 max_entries: Optional[int] = None):
        self.retention_seconds = settings.STATUS_RETENTION_SECONDS if retention_seconds is None else retention_seconds
        self.max_entries = max_entries or settings.STATUS_TRACKER_MAX_ENTRIES
        self._entries: "OrderedDict[str, ProcessingStatus]" = OrderedDict()
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def publish(self, correlation_id: str, status: ProcessingStatus):
        if correlation_id not in self._entries:
            while len(self._entries) >= self.max_entries:
                oldest, _ = self._entries.popitem(last=False)
                self._cancel_timer(oldest)
                logger.warning(f"Status tracker full, dropped oldest entry {oldest}")
        # Any pending eviction belongs to an earlier run under this id
        self._cancel_timer(correlation_id)
        self._entries[correlation_id] = status

    def get(self, correlation_id: str) -> Optional[ProcessingStatus]:
        return self._entries.get(correlation_id)

    def find_by_invoice(self, invoice_id: str) -> Optional[ProcessingStatus]:
        # Most recent run wins
        for status in reversed(self._entries.values()):
            if status.invoice_id == invoice_id:
                return status
        return None

    def remove(self, correlation_id: str) -> bool:
        self._cancel_timer(correlation_id)
        return self._entries.pop(correlation_id, None) is not None

    def remove_by_invoice(self, invoice_id: str) -> int:
        keys = [cid for cid, status in self._entries.items() if status.invoice_id == invoice_id]
        for cid in keys:
            self.remove(cid)
        return len(keys)

    def schedule_eviction(self, correlation_id: str, delay: Optional[float] = None):
        """Drop the entry after `delay` seconds (defaults to the retention period)."""
        delay = self.retention_seconds if delay is None else delay
        self._cancel_timer(correlation_id)
        if delay <= 0:
            self._entries.pop(correlation_id, None)
            return

        loop = asyncio.get_running_loop()
        self._timers[correlation_id] = loop.call_later(delay, self._evict, correlation_id)

    def _evict(self, correlation_id: str):
        self._timers.pop(correlation_id, None)
        if self._entries.pop(correlation_id, None) is not None:
            logger.debug(f"Evicted processing status {correlation_id}")

    def _cancel_timer(self, correlation_id: str):
        handle = self._timers.pop(correlation_id, None)
        if handle:
            handle.cancel()

    def clear(self):
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._entries.clear()

    def active_count(self) -> int:
        return sum(1 for status in self._entries.values() if status.status == "processing")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, correlation_id: str) -> bool:
        return correlation_id in self._entries
