"""Sync Orchestrator: one on-demand steps sync for one user.

connection -> cooldown -> token -> window -> fetch/classify -> upsert -> status

The cooldown on last_steps_sync_at is claimed with a single conditional
UPDATE (see fitbit.cooldown), so two concurrent attempts for the same user
cannot both get past it. A failed attempt gives the claim back, which keeps
it retryable right away.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from db import FitbitConnection
from fitbit import cooldown
from fitbit.classify import failure_for
from fitbit.dates import date_key_in_timezone, user_timezone_or_utc, utcnow, window_date_keys
from fitbit.results import InternalError, Ok, SyncResult, Unauthorized
from fitbit.steps import write_steps
from fitbit.sync import get_steps_range
from fitbit.tokens import access_token_or_failure, delete_tokens

logger = logging.getLogger(__name__)

WINDOW_DAYS = 7


def _fetch_and_write(db: Session, user_id: str, now: datetime) -> SyncResult:
    access_token, failure = access_token_or_failure(db, user_id, now)
    if failure is not None:
        return failure

    tz = user_timezone_or_utc(db, user_id)
    today_key = date_key_in_timezone(now, tz)
    date_keys = window_date_keys(today_key, WINDOW_DAYS)

    status, body = get_steps_range(access_token, start_ymd=date_keys[-1], end_ymd=date_keys[0])
    failure = failure_for(status, body)
    if isinstance(failure, Unauthorized):
        delete_tokens(db, user_id)
    if failure is not None:
        return failure

    write_steps(db, user_id, date_keys, body, updated_at=now)
    return Ok(synced_dates=date_keys)


def sync_steps(db: Session, user_id: str, now: Optional[datetime] = None) -> SyncResult:
    """Run one steps sync for `user_id` and return its outcome. Never retries."""
    now = now or utcnow()
    result = cooldown.run_claimed(
        db, user_id, FitbitConnection.last_steps_sync_at, now,
        attempt=lambda _previous: _fetch_and_write(db, user_id, now),
        error_type=InternalError,
    )
    logger.info("[%s] steps sync -> %s", user_id, result.code)
    return result
