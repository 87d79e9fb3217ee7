"""Weight sync: Fitbit body-weight logs into weight_log.

Fitbit reports kilograms and a local wall-clock date/time per log. Rows are
stored in pounds with a UTC `weighed_at`, keyed by (source, external_id) so a
re-sync updates instead of duplicating. A local day holds at most
MAX_LOGS_PER_DAY logs; past the cap the day's most recent row is overwritten.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db import FitbitConnection, Profile, StorageError, WeightLog
from fitbit import cooldown
from fitbit.classify import failure_for
from fitbit.dates import add_days, as_utc, date_key_in_timezone, local_to_utc, user_timezone_or_utc, utcnow
from fitbit.results import SyncResult, Unauthorized, WeightSynced, WeightSyncFailed
from fitbit.sync import get_weight_logs
from fitbit.tokens import access_token_or_failure, delete_tokens

logger = logging.getLogger(__name__)

WEIGHT_SOURCE = "fitbit"
KG_TO_LB = 2.2046226218
MAX_LOGS_PER_DAY = 10
MAX_RANGE_DAYS = 31
INITIAL_LOOKBACK = timedelta(days=90)
RESYNC_OVERLAP = timedelta(days=2)

INSERTED = "inserted"
UPDATED_EXISTING = "updated_existing"
UPDATED_CAPPED = "updated_capped"


def kg_to_lb(kg: float) -> float:
    return round(kg * KG_TO_LB, 3)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def parse_weight_log(raw: Any, tz_name: str) -> Optional[Dict[str, Any]]:
    """Column values for one Fitbit log, or None if it cannot be used."""
    if not isinstance(raw, dict):
        return None
    log_id = raw.get("logId")
    if isinstance(log_id, bool) or not isinstance(log_id, (int, str)):
        return None
    date_key, time_text, weight, fat = raw.get("date"), raw.get("time"), raw.get("weight"), raw.get("fat")
    if not isinstance(date_key, str) or not isinstance(time_text, str):
        return None
    if not _is_number(weight) or weight <= 0:
        return None
    weighed_at = local_to_utc(date_key, time_text, tz_name)
    if weighed_at is None:
        return None
    return {
        "external_id": str(log_id),
        "weighed_at": weighed_at,
        "weight_lb": kg_to_lb(weight),
        "body_fat_percent": round(fat, 3) if _is_number(fat) and fat >= 0 else None,
    }


def window_start(db: Session, user_id: str, previous_sync: Optional[datetime], now: datetime) -> datetime:
    """90 days back, further if the last sync (minus overlap) is older, never before signup."""
    start = now - INITIAL_LOOKBACK
    previous_sync = as_utc(previous_sync)
    if previous_sync is not None and previous_sync - RESYNC_OVERLAP < start:
        start = previous_sync - RESYNC_OVERLAP

    created_at = db.execute(select(Profile.created_at).where(Profile.user_id == user_id)).scalar_one_or_none()
    created_at = as_utc(created_at) if isinstance(created_at, datetime) else None
    if created_at is not None and created_at > start:
        start = created_at
    return start


def date_ranges(start_key: str, end_key: str, max_days: int = MAX_RANGE_DAYS) -> List[Tuple[str, str]]:
    """Split [start_key, end_key] into consecutive inclusive ranges of at most max_days."""
    ranges = []
    cursor = start_key
    while cursor <= end_key:
        chunk_end = min(add_days(cursor, max_days - 1), end_key)
        ranges.append((cursor, chunk_end))
        cursor = add_days(chunk_end, 1)
    return ranges


def _apply(row: WeightLog, values: Dict[str, Any]) -> None:
    row.weighed_at = values["weighed_at"]
    row.weight_lb = values["weight_lb"]
    row.body_fat_percent = values["body_fat_percent"]
    row.source = WEIGHT_SOURCE
    row.external_id = values["external_id"]


def save_weight_log(db: Session, user_id: str, tz_name: str, values: Dict[str, Any]) -> str:
    """Insert or update one synced log. Returns which of the three paths it took."""
    existing = db.execute(
        select(WeightLog)
        .where(WeightLog.user_id == user_id)
        .where(WeightLog.source == WEIGHT_SOURCE)
        .where(WeightLog.external_id == values["external_id"])
    ).scalars().first()
    if existing is not None:
        _apply(existing, values)
        return UPDATED_EXISTING

    day_key = date_key_in_timezone(values["weighed_at"], tz_name)
    day_start = local_to_utc(day_key, "00:00:00", tz_name)
    next_day_start = local_to_utc(add_days(day_key, 1), "00:00:00", tz_name)
    same_day = (
        WeightLog.user_id == user_id,
        WeightLog.weighed_at >= day_start,
        WeightLog.weighed_at < next_day_start,
    )

    count = db.execute(select(func.count()).select_from(WeightLog).where(*same_day)).scalar_one()
    latest = None
    if count >= MAX_LOGS_PER_DAY:
        latest = db.execute(
            select(WeightLog).where(*same_day)
            .order_by(WeightLog.weighed_at.desc(), WeightLog.id.desc())
            .limit(1)
        ).scalars().first()
    if latest is None:
        db.add(WeightLog(user_id=user_id, note=None, source=WEIGHT_SOURCE, **values))
        return INSERTED

    _apply(latest, values)
    return UPDATED_CAPPED


def _fetch_and_write(db: Session, user_id: str, previous_sync: Optional[datetime], now: datetime) -> SyncResult:
    access_token, failure = access_token_or_failure(db, user_id, now)
    if failure is not None:
        return failure

    tz = user_timezone_or_utc(db, user_id)
    start_key = date_key_in_timezone(window_start(db, user_id, previous_sync, now), tz)
    end_key = date_key_in_timezone(now, tz)

    counts = {INSERTED: 0, UPDATED_EXISTING: 0, UPDATED_CAPPED: 0}
    for range_start, range_end in date_ranges(start_key, end_key):
        status, body = get_weight_logs(access_token, start_ymd=range_start, end_ymd=range_end)
        failure = failure_for(status, body)
        if isinstance(failure, Unauthorized):
            delete_tokens(db, user_id)
        if failure is not None:
            return failure

        logs = body.get("weight") if isinstance(body, dict) else None
        try:
            for raw in logs if isinstance(logs, list) else []:
                values = parse_weight_log(raw, tz)
                if values is not None:
                    counts[save_weight_log(db, user_id, tz, values)] += 1
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"WEIGHT_LOG_WRITE_FAILED:{e.__class__.__name__}") from None

    logger.debug("[%s] weight logs %s", user_id, counts)
    return WeightSynced(
        processed=sum(counts.values()),
        inserted=counts[INSERTED],
        updated_existing=counts[UPDATED_EXISTING],
        updated_capped=counts[UPDATED_CAPPED],
        last_weight_sync_at=now,
    )


def sync_weight(db: Session, user_id: str, now: Optional[datetime] = None) -> SyncResult:
    """Sync weight logs for `user_id`. Cooldown is on last_weight_sync_at.

    Unlike steps and burn, the outcome is not written to the connection status.
    """
    now = now or utcnow()
    result = cooldown.run_claimed(
        db, user_id, FitbitConnection.last_weight_sync_at, now,
        attempt=lambda previous: _fetch_and_write(db, user_id, previous, now),
        error_type=WeightSyncFailed,
        record_status=False,
    )
    logger.info("[%s] weight sync -> %s", user_id, result.code)
    return result
