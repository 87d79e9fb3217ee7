# jobs/sync_fitbit.py

import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select

from db import FitbitConnection, SessionLocal
from fitbit.burn import sync_burn
from fitbit.connections import record_failure
from fitbit.dates import utcnow
from fitbit.results import InternalError, Throttled
from fitbit.steps_sync import sync_steps

logger = logging.getLogger(__name__)

# Run in order; a user's first failure ends their turn so its status sticks
SYNCS = (("steps", sync_steps), ("burn", sync_burn))


def sync_user(db, user_id: str, now: datetime) -> str:
    """Run every sync for one user. Returns "ok", "error" or "skipped" (all throttled)."""
    throttled = 0
    for name, sync in SYNCS:
        try:
            result = sync(db, user_id, now)
        except Exception as e:
            db.rollback()
            logger.exception("[%s] %s sync crashed", user_id, name)
            record_failure(db, user_id, InternalError(detail=str(e)), now)
            return "error"

        if isinstance(result, Throttled):
            throttled += 1
        elif not result.ok:
            return "error"
    return "skipped" if throttled == len(SYNCS) else "ok"


# ---- Main job ----

def run_once(now: Optional[datetime] = None) -> Dict[str, int]:
    """Sync every active connection. One user's failure never stops the others."""
    now = now or utcnow()
    counts = {"users_total": 0, "users_ok": 0, "users_error": 0, "users_skipped": 0}

    db = SessionLocal()
    try:
        user_ids = db.execute(
            select(FitbitConnection.user_id).where(FitbitConnection.status == "active")
        ).scalars().all()
        if not user_ids:
            logger.info("No active Fitbit connections.")
            return counts

        counts["users_total"] = len(user_ids)
        for user_id in user_ids:
            counts[f"users_{sync_user(db, user_id, now)}"] += 1
    finally:
        db.close()

    logger.info(
        "fitbit sync done → total:%d ok:%d error:%d skipped:%d",
        counts["users_total"], counts["users_ok"], counts["users_error"], counts["users_skipped"],
    )
    return counts


if __name__ == "__main__":
    from db import init_db

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)-8s %(name)s: %(message)s")
    init_db()
    run_once()
