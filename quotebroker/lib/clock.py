"""
Time sources.

The engine never calls datetime.now() directly in decision paths; the
service asks its clock so tests can pin the current instant.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(instant: Optional[datetime]) -> Optional[datetime]:
    """Normalise to aware UTC. Naive values are taken to already be UTC."""
    if instant is None:
        return None
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return utcnow()


class FixedClock:
    """A clock that only moves when told to."""

    def __init__(self, instant: datetime | None = None):
        self.instant = instant or utcnow()

    def now(self) -> datetime:
        return self.instant

    def set(self, instant: datetime) -> None:
        self.instant = instant

    def advance(self, **kwargs) -> datetime:
        """Move forward by a timedelta built from kwargs (e.g. days=1)."""
        self.instant = self.instant + timedelta(**kwargs)
        return self.instant
