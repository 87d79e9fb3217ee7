"""Data Normalizer & Upsert Writer for daily step totals."""

import logging
import math
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db import DailyExerciseSum, StorageError, upsert

logger = logging.getLogger(__name__)

STEPS_SOURCE = "fitbit"

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")
_DATE_KEY = re.compile(r"^\d{4}-\d{2}-\d{2}")


def parse_date_key(value: Any) -> Optional[str]:
    """Calendar-day key from "2024-03-09" or "2024-03-09T...", else None."""
    if not isinstance(value, str) or not _DATE_KEY.match(value):
        return None
    try:
        return date.fromisoformat(value[:10]).isoformat()
    except ValueError:
        return None


def parse_steps(value: Any) -> Optional[int]:
    """Non-negative integer step count, or None when the value is unusable."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        # Same leniency as parseInt: "4200", " 4200 ", "4200.0" all read as 4200
        m = _LEADING_INT.match(value)
        steps = int(m.group(1)) if m else None
    elif isinstance(value, (int, float)):
        steps = math.floor(value) if math.isfinite(value) else None
    else:
        steps = None
    if steps is None or steps < 0:
        return None
    return steps


def steps_by_date(payload: Any) -> Dict[str, int]:
    """Map date key -> steps from an `activities-steps` time series.

    Malformed entries are dropped one by one; a bad entry never fails the batch.
    """
    series = payload.get("activities-steps") if isinstance(payload, dict) else None
    if not isinstance(series, list):
        return {}

    result: Dict[str, int] = {}
    for entry in series:
        if not isinstance(entry, dict):
            continue
        key = parse_date_key(entry.get("dateTime"))
        steps = parse_steps(entry.get("value"))
        if key is None or steps is None:
            continue
        result[key] = steps
    return result


def build_rows(user_id: str, date_keys: List[str], by_date: Dict[str, int],
               updated_at: datetime) -> List[Dict[str, Any]]:
    """One row per requested day. Days missing upstream are written as 0, not skipped."""
    return [
        {
            "user_id": user_id,
            "date": date.fromisoformat(key),
            "steps": by_date.get(key, 0),
            "steps_source": STEPS_SOURCE,
            "steps_updated_at": updated_at,
        }
        for key in date_keys
    ]


def write_steps(db: Session, user_id: str, date_keys: List[str], payload: Any,
                updated_at: datetime) -> List[Dict[str, Any]]:
    """Normalize `payload` for `date_keys` and upsert it in one statement on (user_id, date)."""
    rows = build_rows(user_id, date_keys, steps_by_date(payload), updated_at)
    try:
        upsert(db, DailyExerciseSum, rows, conflict_columns=["user_id", "date"])
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"STEPS_UPSERT_FAILED:{e.__class__.__name__}") from None
    logger.debug("[%s] upserted %d step rows", user_id, len(rows))
    return rows
