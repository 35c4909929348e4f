"""Clock used for token expiry and ledger timestamps.

Wall-clock UTC by default; tests and local tooling can shift it forward to
exercise token expiry and rotation without sleeping.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from iap_license.logging_config import get_logger

logger = get_logger(__name__)


class Clock:
    """UTC clock with an adjustable forward offset."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._lock = threading.RLock()
        self._offset = timedelta(0)
        if start is not None:
            self._offset = _as_utc(start) - _utc_now()

    def now(self) -> datetime:
        """Current (possibly shifted) UTC time."""
        with self._lock:
            return _utc_now() + self._offset

    def advance(self, seconds: float = 0, minutes: float = 0, hours: float = 0) -> datetime:
        """Shift the clock forward.

        Returns:
            The new current time

        Raises:
            ValueError: If any value is negative
        """
        if seconds < 0 or minutes < 0 or hours < 0:
            raise ValueError("Cannot move the clock backwards, negative values are not allowed")

        delta = timedelta(seconds=seconds, minutes=minutes, hours=hours)
        with self._lock:
            self._offset += delta
            new_time = _utc_now() + self._offset

        logger.debug("clock_advanced", advanced_seconds=delta.total_seconds(), now=new_time.isoformat())
        return new_time

    def reset(self) -> None:
        """Return to wall-clock time."""
        with self._lock:
            self._offset = timedelta(0)

    @property
    def offset_seconds(self) -> float:
        with self._lock:
            return self._offset.total_seconds()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
