"""Per-user sync cooldown stored as a timestamp column on fitbit_connections_public.

Each sync kind owns one column. A caller claims the cooldown with a single
conditional UPDATE before talking to Fitbit, so two concurrent attempts for the
same user cannot both get past it, and gives the claim back when the attempt
fails.
"""

import math
from datetime import datetime, timedelta
from typing import Callable, Optional, Type

import requests
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import InstrumentedAttribute

from db import FitbitConnection, StorageError
from fitbit.config import ConfigError
from fitbit.connections import record_failure, record_success
from fitbit.dates import as_utc
from fitbit.oauth import TokenExchangeError
from fitbit.results import InternalError, NotConnected, SyncResult, Throttled

SYNC_COOLDOWN = timedelta(minutes=15)

# Errors that end an attempt with a 400 detail instead of propagating
HANDLED_ERRORS = (StorageError, TokenExchangeError, ConfigError, requests.RequestException)


def retry_after_seconds(last_sync_at: datetime, now: datetime) -> int:
    remaining = SYNC_COOLDOWN - (now - last_sync_at)
    return max(1, math.ceil(remaining.total_seconds()))


def claim(db: Session, user_id: str, column: InstrumentedAttribute, now: datetime) -> bool:
    """Atomically set `column` = now unless it was set within the cooldown.

    A timestamp in the future (clock skew) does not block.
    """
    result = db.execute(
        update(FitbitConnection)
        .where(FitbitConnection.user_id == user_id)
        .where(or_(column.is_(None), column <= now - SYNC_COOLDOWN, column > now))
        .values({column.key: now})
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def release(db: Session, user_id: str, column: InstrumentedAttribute,
            claimed_at: datetime, previous: Optional[datetime]) -> None:
    """Undo claim(), unless another attempt has claimed since."""
    db.execute(
        update(FitbitConnection)
        .where(FitbitConnection.user_id == user_id)
        .where(column == claimed_at)
        .values({column.key: previous})
        .execution_options(synchronize_session=False)
    )
    db.commit()


def throttled(db: Session, user_id: str, column: InstrumentedAttribute, now: datetime) -> SyncResult:
    row = db.execute(select(column).where(FitbitConnection.user_id == user_id)).first()
    if row is None:
        return NotConnected()
    last = as_utc(row[0])
    if last is None:
        # Lost a race with a release; the next attempt will get through
        return Throttled(retry_after_seconds=1)
    return Throttled(retry_after_seconds=retry_after_seconds(last, now))


def run_claimed(db: Session, user_id: str, column: InstrumentedAttribute, now: datetime,
                attempt: Callable[[Optional[datetime]], SyncResult],
                error_type: Type[InternalError] = InternalError,
                record_status: bool = True) -> SyncResult:
    """Claim `column`, run `attempt(previous_sync_at)`, then settle the claim.

    Success keeps the claim as the new sync timestamp. Any other outcome
    restores the previous timestamp. Handled errors become `error_type`
    with the exception text as detail; anything else propagates after the
    claim is released. With `record_status`, the outcome is also written
    to the connection's status fields.
    """
    row = db.execute(select(FitbitConnection.user_id, column).where(FitbitConnection.user_id == user_id)).first()
    if row is None:
        return NotConnected()
    previous = row[1]

    if not claim(db, user_id, column, now):
        return throttled(db, user_id, column, now)

    try:
        result = attempt(previous)
    except HANDLED_ERRORS as e:
        db.rollback()
        result = error_type(detail=str(e))
    except Exception:
        db.rollback()
        release(db, user_id, column, now, previous)
        raise

    if result.ok:
        if record_status:
            record_success(db, user_id, **{column.key: now})
    else:
        release(db, user_id, column, now, previous)
        if record_status:
            record_failure(db, user_id, result, now)
    return result
