import logging
import time
from collections import deque
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_THRESHOLDS = {
    "SLIP_OCR_FAILED": 5,
    "SLIP_PERSIST_FAILED": 3,
    "RATE_LIMIT_BLOCKED": 20,
}


class AuditAlertTracker:
    """Counts selected audit actions per sliding window and warns at each multiple of the threshold."""

    def __init__(self, window_seconds: int, thresholds: dict[str, int]) -> None:
        self._window_seconds = window_seconds
        self._thresholds = thresholds
        self._events: dict[str, deque[float]] = {}
        self._lock = Lock()

    def record(self, action: str, metadata: Optional[dict] = None) -> bool:
        """Returns True when this occurrence raised an alert."""
        limit = self._thresholds.get(action)
        if not limit:
            return False
        now = time.monotonic()
        with self._lock:
            events = self._events.setdefault(action, deque())
            while events and events[0] <= now - self._window_seconds:
                events.popleft()
            events.append(now)
            count = len(events)
        if count % limit:
            return False
        logger.warning(
            "ALERT audit_action=%s count=%s window_seconds=%s metadata=%s",
            action,
            count,
            self._window_seconds,
            metadata or {},
        )
        return True

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


alert_tracker = AuditAlertTracker(DEFAULT_WINDOW_SECONDS, DEFAULT_THRESHOLDS)
