"""Shared fixtures: a throwaway SQLite database, fixed clock, fake HTTP responses."""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# Must be set before db.py creates its engine
_DB_DIR = tempfile.mkdtemp(prefix="fitbit-connector-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["FITBIT_CLIENT_ID"] = "TEST_CLIENT"
os.environ["FITBIT_CLIENT_SECRET"] = "test-client-secret"
os.environ["FITBIT_REDIRECT_URI"] = "https://api.example.com/fitbit-callback"
os.environ["FITBIT_SCOPES"] = "activity profile"
os.environ["IDENTITY_URL"] = "https://identity.example.com"
os.environ["IDENTITY_API_KEY"] = "anon-key"
os.environ["APP_ORIGIN"] = "https://app.example.com"
os.environ["APP_ORIGINS"] = "https://staging.example.com"
os.environ["FITBIT_SYNC_SECRET"] = "cron-secret"

import pytest

from db import Base, FitbitConnection, FitbitToken, Profile, SessionLocal, engine

TEST_USER_ID = "0b5a4e2c-1111-4d6f-9a65-6d2c1f0e7a01"
# 2024-03-09 21:00 in New York (EST, UTC-5)
NOW = datetime(2024, 3, 10, 2, 0, tzinfo=timezone.utc)

ACCESS_TOKEN = "access-token-live-7f3a"
REFRESH_TOKEN = "refresh-token-live-91bc"


@pytest.fixture
def db():
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def fake_response(status_code: int = 200, payload=None, reason: str = "OK") -> MagicMock:
    """Stand-in for requests.Response. payload=None means the body is not JSON."""
    r = MagicMock()
    r.status_code = status_code
    r.ok = status_code < 400
    r.reason = reason
    if payload is None:
        r.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        r.json.return_value = payload
    return r


def connect_user(
    db,
    user_id: str = TEST_USER_ID,
    *,
    with_tokens: bool = True,
    expires_at: datetime | None = None,
    last_steps_sync_at: datetime | None = None,
    last_sync_at: datetime | None = None,
    last_weight_sync_at: datetime | None = None,
    tz: str | None = None,
    status: str = "active",
) -> None:
    """Seed the rows the external callback would have written."""
    db.add(FitbitConnection(
        user_id=user_id,
        fitbit_user_id="FB" + user_id[:4],
        scopes="activity profile",
        status=status,
        last_steps_sync_at=last_steps_sync_at,
        last_sync_at=last_sync_at,
        last_weight_sync_at=last_weight_sync_at,
    ))
    if with_tokens:
        db.add(FitbitToken(
            user_id=user_id,
            access_token=ACCESS_TOKEN,
            refresh_token=REFRESH_TOKEN,
            expires_at=expires_at if expires_at is not None else NOW + timedelta(hours=8),
        ))
    if tz is not None:
        db.add(Profile(user_id=user_id, timezone=tz))
    db.commit()
