import base64
import logging
import urllib.parse
from typing import Any, Dict

import requests

from fitbit import config

logger = logging.getLogger(__name__)

AUTH_URL = "https://www.fitbit.com/oauth2/authorize"
TOKEN_URL = "https://api.fitbit.com/oauth2/token"
REVOKE_URL = "https://api.fitbit.com/oauth2/revoke"


class TokenExchangeError(Exception):
    """The token endpoint refused the grant or answered with something unusable."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


def build_authorize_url(state: str, code_challenge: str) -> str:
    params = {
        "response_type": "code",
        "client_id": config.client_id(),
        "redirect_uri": config.redirect_uri(),
        "scope": config.scopes(),
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "state": state,
    }
    return f"{AUTH_URL}?{urllib.parse.urlencode(params, quote_via=urllib.parse.quote)}"


def _basic_auth_header() -> Dict[str, str]:
    basic = base64.b64encode(f"{config.client_id()}:{config.client_secret()}".encode()).decode()
    return {"Authorization": f"Basic {basic}"}


def _post_token(data: Dict[str, str]) -> Dict[str, Any]:
    r = requests.post(TOKEN_URL,
                      headers={**_basic_auth_header(),
                               "Content-Type": "application/x-www-form-urlencoded"},
                      data=data, timeout=30)
    try:
        payload = r.json()
    except ValueError:
        payload = None

    if not r.ok:
        # Only the provider's human-readable message, never the request body
        desc = r.reason or ""
        if isinstance(payload, dict):
            errors = payload.get("errors")
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                message = errors[0].get("message")
                if isinstance(message, str):
                    desc = message
        raise TokenExchangeError(f"FITBIT_TOKEN_EXCHANGE_FAILED:{r.status_code}:{desc}", status=r.status_code)

    if (
        not isinstance(payload, dict)
        or not isinstance(payload.get("access_token"), str)
        or not isinstance(payload.get("refresh_token"), str)
    ):
        raise TokenExchangeError("FITBIT_TOKEN_RESPONSE_INVALID", status=r.status_code)
    return payload


def exchange_code_for_tokens(code: str, code_verifier: str) -> Dict[str, Any]:
    data = {
        "client_id": config.client_id(),
        "grant_type": "authorization_code",
        "redirect_uri": config.redirect_uri(),
        "code": code,
        "code_verifier": code_verifier,
    }
    return _post_token(data)


def refresh_tokens(refresh_token: str) -> Dict[str, Any]:
    """Fitbit rotates the refresh token on every use; the old one dies here."""
    data = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
    }
    return _post_token(data)


def revoke_token(token: str) -> bool:
    """Best effort. Returns True when the provider acknowledged the revocation."""
    try:
        r = requests.post(REVOKE_URL,
                          headers={**_basic_auth_header(),
                                   "Content-Type": "application/x-www-form-urlencoded"},
                          data={"token": token}, timeout=30)
    except requests.RequestException as e:
        logger.warning("Fitbit token revocation failed: %s", e.__class__.__name__)
        return False
    if not r.ok:
        logger.warning("Fitbit token revocation returned %s", r.status_code)
    return r.ok
