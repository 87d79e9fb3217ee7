import logging
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db import FitbitConnection, FitbitToken, OAuthSession, StorageError, upsert
from fitbit.oauth import revoke_token
from fitbit.results import InternalError, SyncResult, UpstreamError
from fitbit.tokens import expires_at_from, load_tokens, store_tokens

logger = logging.getLogger(__name__)

# Status text shown next to the connection; codes stay machine-readable
ERROR_MESSAGES = {
    "MISSING_TOKENS": "Reconnect Fitbit",
    "UNAUTHORIZED": "Reconnect Fitbit",
    "INSUFFICIENT_SCOPE": "Allow Fitbit activity access to sync",
    "MISSING_ACTIVITY_CALORIES": "Fitbit payload missing activityCalories",
    "MISSING_DAILY_ROW": "Open the app once to initialize today before syncing",
}


def set_status(db: Session, user_id: str, **values) -> None:
    db.execute(
        update(FitbitConnection)
        .where(FitbitConnection.user_id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def record_success(db: Session, user_id: str, **stamps) -> None:
    """Mark the connection healthy and write the given sync timestamps."""
    set_status(db, user_id, status="active", last_error_code=None,
               last_error_message=None, last_error_at=None, **stamps)


def error_code_for(result: SyncResult) -> str:
    if isinstance(result, UpstreamError):
        return f"FITBIT_HTTP_{result.upstream_status}"
    if isinstance(result, InternalError):
        return "SYNC_EXCEPTION"
    return result.code


def record_failure(db: Session, user_id: str, result: SyncResult, now: datetime) -> None:
    code = error_code_for(result)
    set_status(db, user_id, status="error", last_error_code=code,
               last_error_message=ERROR_MESSAGES.get(code, "Fitbit sync failed"),
               last_error_at=now)


def save_connection(db: Session, user_id: str, grant: Dict[str, Any], now: datetime) -> None:
    """Persist a fresh grant: public status first, then the secrets."""
    scopes = " ".join(str(grant.get("scope") or "").split())
    try:
        upsert(db, FitbitConnection, [{
            "user_id": user_id,
            "fitbit_user_id": str(grant.get("user_id") or ""),
            "scopes": scopes,
            "status": "active",
            "last_error_code": None,
            "last_error_message": None,
            "last_error_at": None,
            "updated_at": now,
        }], conflict_columns=["user_id"])
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"UPSERT_PUBLIC_FAILED:{e.__class__.__name__}") from None

    store_tokens(
        db,
        user_id,
        access_token=grant["access_token"],
        refresh_token=grant["refresh_token"],
        expires_at=expires_at_from(grant.get("expires_in"), now),
    )
    logger.info("[%s] Fitbit connected (fitbit user %s)", user_id, grant.get("user_id"))


def disconnect(db: Session, user_id: str) -> None:
    """Revoke at the provider if we still hold a token, then forget everything about the link."""
    row = load_tokens(db, user_id)
    if row is not None:
        # Revoking the refresh token invalidates the whole grant
        revoke_token(row.refresh_token)

    try:
        db.execute(delete(FitbitToken).where(FitbitToken.user_id == user_id))
        db.execute(delete(FitbitConnection).where(FitbitConnection.user_id == user_id))
        db.execute(delete(OAuthSession).where(OAuthSession.user_id == user_id))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"DISCONNECT_FAILED:{e.__class__.__name__}") from None
    logger.info("[%s] Fitbit disconnected", user_id)
