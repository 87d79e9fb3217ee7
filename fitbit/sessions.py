"""Authorization Session Manager.

Issues PKCE-protected authorize URLs and keeps the matching verifier
server-side, keyed by an unguessable `state`, until the callback consumes it.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple
from urllib.parse import urlsplit

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db import OAuthSession, StorageError
from fitbit.dates import as_utc, utcnow
from fitbit.oauth import build_authorize_url
from fitbit.pkce import generate_pkce, generate_state

logger = logging.getLogger(__name__)

SESSION_TTL = timedelta(minutes=10)


def request_origin(origin: Optional[str], referer: Optional[str]) -> Optional[str]:
    """The caller's scheme://host[:port], from Origin or else from Referer."""
    if origin and origin.strip() and origin.strip() != "null":
        return origin.strip().rstrip("/")
    if referer:
        parts = urlsplit(referer.strip())
        if parts.scheme and parts.netloc:
            return f"{parts.scheme}://{parts.netloc}"
    return None


def start_authorization(db: Session, user_id: str, app_origin: Optional[str] = None,
                        now: Optional[datetime] = None) -> str:
    """Persist a new OAuthSession for `user_id` and return the provider authorize URL."""
    now = now or utcnow()
    state = generate_state()
    code_verifier, code_challenge = generate_pkce()

    # Build first: a configuration error must not leave an orphan session behind
    authorize_url = build_authorize_url(state=state, code_challenge=code_challenge)

    try:
        db.add(OAuthSession(
            state=state,
            user_id=user_id,
            code_verifier=code_verifier,
            expires_at=now + SESSION_TTL,
            app_origin=app_origin,
            created_at=now,
        ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        # The DBAPI message can echo bound parameters, verifier included
        raise StorageError(f"SESSION_INSERT_FAILED:{e.__class__.__name__}") from None

    logger.info("Fitbit authorization started for %s", user_id)
    return authorize_url


def consume_session(db: Session, state: str,
                    now: Optional[datetime] = None) -> Tuple[Optional[OAuthSession], Optional[str]]:
    """Look up and delete the session for `state`.

    Returns (session, None) when it exists and has not expired, otherwise
    (None, "INVALID_STATE" | "STATE_EXPIRED"). A found row is deleted either
    way, so every state value works at most once. Only the caller whose
    DELETE removed the row gets it; a concurrent consumer sees INVALID_STATE.
    """
    now = now or utcnow()
    row = db.execute(select(OAuthSession).where(OAuthSession.state == state)).scalar_one_or_none()
    if row is None:
        return None, "INVALID_STATE"

    deleted = db.execute(
        delete(OAuthSession)
        .where(OAuthSession.state == state)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if deleted.rowcount != 1:
        logger.warning("state consumed concurrently for %s", row.user_id)
        return None, "INVALID_STATE"

    expires_at = as_utc(row.expires_at)
    if expires_at is None or expires_at < now:
        return None, "STATE_EXPIRED"
    return row, None
