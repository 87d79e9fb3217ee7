"""Bearer-token validation against the identity service."""

import os
from typing import Optional

import requests

from fitbit.config import require_env


class AuthError(Exception):
    pass


def require_user_id_from_auth_header(auth_header: Optional[str]) -> str:
    """Resolve `Authorization: Bearer <token>` to the user id that owns it."""
    if not auth_header:
        raise AuthError("No authorization header")

    url = f"{require_env('IDENTITY_URL').rstrip('/')}/auth/v1/user"
    headers = {"Authorization": auth_header}
    api_key = os.getenv("IDENTITY_API_KEY")
    if api_key:
        headers["apikey"] = api_key

    try:
        r = requests.get(url, headers=headers, timeout=30)
    except requests.RequestException as e:
        raise AuthError(f"Identity service unreachable: {e.__class__.__name__}") from e

    if not r.ok:
        raise AuthError("User not authenticated")
    try:
        payload = r.json()
    except ValueError:
        payload = None
    user_id = payload.get("id") if isinstance(payload, dict) else None
    if not isinstance(user_id, str) or not user_id:
        raise AuthError("User not authenticated")
    return user_id
