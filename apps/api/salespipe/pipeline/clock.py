from __future__ import annotations

from datetime import date, datetime, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

DEFAULT_BUSINESS_TIMEZONE = "America/Costa_Rica"


@lru_cache
def business_zone(name: str = DEFAULT_BUSINESS_TIMEZONE) -> ZoneInfo:
    return ZoneInfo(name)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(moment: datetime) -> datetime:
    # Storage hands back naive UTC on SQLite.
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def civil_date(moment: datetime, zone: ZoneInfo) -> date:
    """Calendar date of ``moment`` as seen in ``zone``, whatever the host's local zone is."""
    return as_aware(moment).astimezone(zone).date()


def today(zone: ZoneInfo, now: datetime | None = None) -> date:
    return civil_date(now or utcnow(), zone)


def to_utc(moment: datetime | None) -> datetime | None:
    if moment is None:
        return None
    return as_aware(moment).astimezone(timezone.utc)
