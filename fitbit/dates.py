import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db import Profile

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes read back from the database as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def zone_or_utc(tz_name: str):
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def date_key_in_timezone(instant: datetime, tz_name: str) -> str:
    """YYYY-MM-DD of `instant` as seen in the IANA zone `tz_name` (UTC if unknown)."""
    return as_utc(instant).astimezone(zone_or_utc(tz_name)).date().isoformat()


def local_to_utc(date_key: str, time_text: str, tz_name: str) -> Optional[datetime]:
    """Wall-clock `date_key` + `time_text` (HH:MM[:SS]) in `tz_name`, as a UTC instant.

    Inside a DST gap or overlap the earlier offset wins. None if unparseable.
    """
    try:
        local = datetime.combine(date.fromisoformat(date_key), time.fromisoformat(time_text))
    except ValueError:
        return None
    return local.replace(tzinfo=zone_or_utc(tz_name)).astimezone(timezone.utc)


def add_days(date_key: str, days: int) -> str:
    return (date.fromisoformat(date_key) + timedelta(days=days)).isoformat()


def window_date_keys(today_key: str, days: int = 7) -> List[str]:
    """The `days` calendar days ending at `today_key`, newest first."""
    return [add_days(today_key, -i) for i in range(days)]


def user_timezone_or_utc(db: Session, user_id: str) -> str:
    try:
        tz = db.execute(select(Profile.timezone).where(Profile.user_id == user_id)).scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.warning("timezone lookup failed for %s: %s", user_id, e)
        db.rollback()
        return "UTC"
    if isinstance(tz, str) and tz.strip():
        return tz.strip()
    return "UTC"
