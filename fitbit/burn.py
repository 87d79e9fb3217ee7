"""Daily burn sync: today's Fitbit activityCalories into daily_sum_burned.

Only the raw columns are written. Raw burn is *activity* burn, not
caloriesOut, because the app computes final TDEE as BMR + burn. The day row
must already exist; the app creates it and owns the final values.
"""

import logging
import math
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db import DailyBurn, FitbitConnection, StorageError
from fitbit import cooldown
from fitbit.classify import failure_for
from fitbit.dates import date_key_in_timezone, user_timezone_or_utc, utcnow
from fitbit.results import BurnSynced, BurnSyncFailed, MissingActivityCalories, MissingDailyRow, SyncResult, Unauthorized
from fitbit.sync import get_daily_activity
from fitbit.tokens import access_token_or_failure, delete_tokens

logger = logging.getLogger(__name__)

BURN_SOURCE = "fitbit"


def parse_activity_calories(payload: Any) -> Optional[int]:
    """summary.activityCalories as a non-negative int, else None."""
    summary = payload.get("summary") if isinstance(payload, dict) else None
    value = summary.get("activityCalories") if isinstance(summary, dict) else None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return int(round(value))


def write_raw_burn(db: Session, user_id: str, date_key: str, raw_burn: int, synced_at: datetime) -> bool:
    """Update the raw burn of an existing day row. False when the row is missing."""
    try:
        result = db.execute(
            update(DailyBurn)
            .where(DailyBurn.user_id == user_id)
            .where(DailyBurn.entry_date == date.fromisoformat(date_key))
            .values(raw_burn=raw_burn, raw_burn_source=BURN_SOURCE, raw_last_synced_at=synced_at)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"BURN_UPDATE_FAILED:{e.__class__.__name__}") from None
    return result.rowcount == 1


def _fetch_and_write(db: Session, user_id: str, now: datetime) -> SyncResult:
    access_token, failure = access_token_or_failure(db, user_id, now)
    if failure is not None:
        return failure

    date_key = date_key_in_timezone(now, user_timezone_or_utc(db, user_id))
    status, body = get_daily_activity(access_token, date_key)
    failure = failure_for(status, body)
    if isinstance(failure, Unauthorized):
        delete_tokens(db, user_id)
    if failure is not None:
        return failure

    raw_burn = parse_activity_calories(body)
    if raw_burn is None:
        return MissingActivityCalories()
    if not write_raw_burn(db, user_id, date_key, raw_burn, now):
        return MissingDailyRow()
    return BurnSynced(entry_date=date_key, raw_burn=raw_burn, raw_last_synced_at=now)


def sync_burn(db: Session, user_id: str, now: Optional[datetime] = None) -> SyncResult:
    """Sync today's raw activity burn for `user_id`. Cooldown is on last_sync_at."""
    now = now or utcnow()
    result = cooldown.run_claimed(
        db, user_id, FitbitConnection.last_sync_at, now,
        attempt=lambda _previous: _fetch_and_write(db, user_id, now),
        error_type=BurnSyncFailed,
    )
    logger.info("[%s] burn sync -> %s", user_id, result.code)
    return result
