from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo


def to_facility_time(now: datetime, time_zone: str) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ZoneInfo(time_zone))


def local_hhmm(now: datetime, time_zone: str) -> str:
    return to_facility_time(now, time_zone).strftime('%H:%M')


def operational_day_for(now: datetime, time_zone: str) -> date:
    return to_facility_time(now, time_zone).date()
