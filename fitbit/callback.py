"""Completes the authorization started by fitbit.sessions.

Fitbit redirects the browser here with ?code&state. The result always goes
back to the app as a redirect carrying a small JSON payload in the fragment.
"""

import json
import urllib.parse
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from fitbit import config
from fitbit.connections import save_connection
from fitbit.dates import utcnow
from fitbit.oauth import exchange_code_for_tokens
from fitbit.sessions import consume_session


COMPLETE_PAGE = "/fitbit-oauth-complete.html"


@dataclass
class CallbackResult:
    ok: bool
    error_code: Optional[str] = None
    message: Optional[str] = None
    redirect_origin: Optional[str] = None
    connected_at: Optional[datetime] = None


def complete_authorization(db: Session, code: Optional[str], state: Optional[str],
                           now: Optional[datetime] = None) -> CallbackResult:
    now = now or utcnow()
    if not code or not state:
        return CallbackResult(ok=False, error_code="MISSING_CODE_OR_STATE")

    session, reason = consume_session(db, state, now)
    if session is None:
        return CallbackResult(ok=False, error_code=reason)

    grant = exchange_code_for_tokens(code, session.code_verifier)
    save_connection(db, session.user_id, grant, now)
    return CallbackResult(ok=True, redirect_origin=session.app_origin, connected_at=now)


def redirect_target(result: CallbackResult) -> str:
    """Where to send the browser: the session's origin if allow-listed, else APP_ORIGIN."""
    payload = {
        "type": "fitbit_oauth_result",
        "provider": "fitbit",
        "ok": result.ok,
        "errorCode": result.error_code,
        "message": result.message,
        "connectedAt": result.connected_at.isoformat() if result.ok and result.connected_at else None,
    }
    requested = (result.redirect_origin or "").strip().rstrip("/")
    origin = requested if requested and requested in config.allowed_app_origins() else config.app_origin()
    fragment = urllib.parse.quote(json.dumps(payload, separators=(",", ":")), safe="")
    return f"{origin}{COMPLETE_PAGE}#fitbit_oauth_result={fragment}"
