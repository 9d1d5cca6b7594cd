"""Time sources. Injected everywhere expiry arithmetic happens so it stays deterministic."""
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise to aware UTC. Naive values are taken to already be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TimeSource(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime):
        self._now = ensure_utc(start)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)

    def advance(self, **delta) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now
