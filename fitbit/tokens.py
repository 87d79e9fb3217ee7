"""Token Lifecycle Manager: stored credentials, proactive refresh, rotation."""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db import FitbitToken, StorageError, upsert
from fitbit.dates import as_utc, utcnow
from fitbit.oauth import TokenExchangeError, refresh_tokens
from fitbit.results import MissingTokens, SyncResult, Unauthorized

logger = logging.getLogger(__name__)

# Refresh this long before expiry so a token never dies mid-request
REFRESH_SAFETY_MARGIN = timedelta(minutes=5)


class MissingTokensError(Exception):
    pass


def needs_refresh(expires_at: Any, now: datetime) -> bool:
    if not isinstance(expires_at, datetime):
        return True
    return as_utc(expires_at) - now < REFRESH_SAFETY_MARGIN


def expires_at_from(expires_in: Any, now: datetime) -> datetime:
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        seconds = 1
    return now + timedelta(seconds=max(1, seconds))


def load_tokens(db: Session, user_id: str) -> Optional[FitbitToken]:
    # populate_existing: upserts bypass the identity map, so reload what it holds
    stmt = select(FitbitToken).where(FitbitToken.user_id == user_id).execution_options(populate_existing=True)
    return db.execute(stmt).scalar_one_or_none()


def store_tokens(db: Session, user_id: str, access_token: str, refresh_token: str,
                 expires_at: datetime, error_code: str = "UPSERT_TOKENS_FAILED") -> None:
    """Replace the user's credentials in one upsert keyed on user_id.

    Concurrent writers converge on whichever grant landed last.
    """
    try:
        upsert(db, FitbitToken, [{
            "user_id": user_id,
            "access_token": access_token,
            "refresh_token": refresh_token,
            "expires_at": expires_at,
            "updated_at": utcnow(),
        }], conflict_columns=["user_id"])
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"{error_code}:{e.__class__.__name__}") from None


def delete_tokens(db: Session, user_id: str) -> None:
    db.execute(delete(FitbitToken).where(FitbitToken.user_id == user_id))
    db.commit()


def get_valid_access_token(db: Session, user_id: str, now: Optional[datetime] = None) -> str:
    """Return an access token good for at least REFRESH_SAFETY_MARGIN.

    Raises MissingTokensError when the user has no stored credentials.
    A refused refresh propagates as TokenExchangeError; deciding what to do
    about dead credentials is the caller's job.
    """
    now = now or utcnow()
    row = load_tokens(db, user_id)
    if row is None:
        raise MissingTokensError(user_id)

    if not needs_refresh(row.expires_at, now):
        return row.access_token

    refreshed = refresh_tokens(row.refresh_token)
    store_tokens(
        db,
        user_id,
        access_token=refreshed["access_token"],
        refresh_token=refreshed["refresh_token"],
        expires_at=expires_at_from(refreshed.get("expires_in"), now),
        error_code="TOKENS_REFRESH_UPSERT_FAILED",
    )
    logger.info("[%s] token refreshed", user_id)
    return refreshed["access_token"]


def access_token_or_failure(db: Session, user_id: str,
                            now: datetime) -> Tuple[Optional[str], Optional[SyncResult]]:
    """(access_token, None), or (None, outcome) when the credentials are unusable.

    A refresh the provider refuses with 400/401 (invalid_grant) means the
    refresh token is dead: the stored pair is deleted and only a new consent
    helps. Other refresh failures propagate as TokenExchangeError.
    """
    try:
        return get_valid_access_token(db, user_id, now), None
    except MissingTokensError:
        return None, MissingTokens()
    except TokenExchangeError as e:
        if e.status in (400, 401):
            delete_tokens(db, user_id)
            return None, Unauthorized()
        raise
