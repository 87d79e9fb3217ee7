"""Error Classifier for Fitbit data-API responses."""

from typing import Any, Optional

from fitbit.results import InsufficientScope, SyncResult, Unauthorized, UpstreamError

OK = "OK"
INSUFFICIENT_SCOPE = "INSUFFICIENT_SCOPE"
UNAUTHORIZED = "UNAUTHORIZED"
FAILED = "FAILED"


def _error_text(body: Any) -> str:
    if not isinstance(body, dict):
        return ""
    errors = body.get("errors")
    first = errors[0] if isinstance(errors, list) and errors and isinstance(errors[0], dict) else {}
    candidates = [
        body.get("errorType"),
        body.get("message"),
        first.get("errorType"),
        first.get("message"),
        first.get("fieldName"),
    ]
    return " ".join(v for v in candidates if isinstance(v, str)).lower()


def is_insufficient_scope(status: int, body: Any) -> bool:
    """401/403 whose error fields mention both "insufficient" and "scope".

    Connections made before a scope was added to the app answer this way.
    """
    if status not in (401, 403):
        return False
    text = _error_text(body)
    return "insufficient" in text and "scope" in text


def classify(status: int, body: Any) -> str:
    if 200 <= status < 300:
        return OK
    if is_insufficient_scope(status, body):
        return INSUFFICIENT_SCOPE
    if status == 401:
        return UNAUTHORIZED
    return FAILED


def failure_for(status: int, body: Any) -> Optional[SyncResult]:
    """The outcome a data-API response stops the sync with, or None to carry on."""
    category = classify(status, body)
    if category == INSUFFICIENT_SCOPE:
        return InsufficientScope()
    if category == UNAUTHORIZED:
        return Unauthorized()
    if category == FAILED:
        return UpstreamError(upstream_status=status)
    return None
