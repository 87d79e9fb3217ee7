"""Tests for the steps sync pipeline: throttle, refresh, windowing, classification, write-back."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from db import DailyExerciseSum, FitbitConnection, FitbitToken
from fitbit.dates import date_key_in_timezone, user_timezone_or_utc, window_date_keys
from fitbit.results import (
    InsufficientScope,
    InternalError,
    MissingTokens,
    NotConnected,
    Ok,
    Throttled,
    Unauthorized,
    UpstreamError,
)
from fitbit.steps_sync import sync_steps
from tests.conftest import ACCESS_TOKEN, NOW, REFRESH_TOKEN, TEST_USER_ID, connect_user, fake_response

STEPS_PAYLOAD = {"activities-steps": [
    {"dateTime": "2024-03-05", "value": "4200"},
    {"dateTime": "2024-03-09", "value": 8000},
]}

EXPECTED_DATES = ["2024-03-09", "2024-03-08", "2024-03-07", "2024-03-06", "2024-03-05", "2024-03-04", "2024-03-03"]


def _rows(db) -> dict:
    db.expire_all()
    rows = db.execute(select(DailyExerciseSum).where(DailyExerciseSum.user_id == TEST_USER_ID)).scalars().all()
    return {r.date.isoformat(): (r.steps, r.steps_source, r.steps_updated_at) for r in rows}


def _connection(db) -> FitbitConnection:
    db.expire_all()
    return db.execute(select(FitbitConnection).where(FitbitConnection.user_id == TEST_USER_ID)).scalar_one()


def _token(db) -> FitbitToken | None:
    db.expire_all()
    return db.execute(select(FitbitToken).where(FitbitToken.user_id == TEST_USER_ID)).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Date windowing
# ---------------------------------------------------------------------------


class TestWindow:
    def test_today_follows_user_timezone(self) -> None:
        assert date_key_in_timezone(NOW, "America/New_York") == "2024-03-09"
        assert date_key_in_timezone(NOW, "UTC") == "2024-03-10"
        assert date_key_in_timezone(NOW, "Asia/Tokyo") == "2024-03-10"

    def test_unknown_zone_falls_back_to_utc(self) -> None:
        assert date_key_in_timezone(NOW, "Mars/Olympus_Mons") == "2024-03-10"

    def test_seven_days_newest_first_across_month_boundary(self) -> None:
        assert window_date_keys("2024-03-02") == [
            "2024-03-02", "2024-03-01", "2024-02-29", "2024-02-28", "2024-02-27", "2024-02-26", "2024-02-25",
        ]

    def test_profile_timezone_lookup(self, db) -> None:
        connect_user(db, tz="  Europe/Paris ")
        assert user_timezone_or_utc(db, TEST_USER_ID) == "Europe/Paris"
        assert user_timezone_or_utc(db, "no-profile") == "UTC"


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------


class TestSuccessfulSync:
    def test_example_window_and_zero_fill(self, db) -> None:
        connect_user(db, tz="America/New_York")
        with patch("fitbit.sync.requests.get", return_value=fake_response(200, STEPS_PAYLOAD)) as mock_get:
            result = sync_steps(db, TEST_USER_ID, NOW)

        assert result == Ok(synced_dates=EXPECTED_DATES)
        assert result.status_code == 200
        assert result.body() == {"ok": True, "synced_dates": EXPECTED_DATES}

        url = mock_get.call_args.args[0]
        assert url == "https://api.fitbit.com/1/user/-/activities/steps/date/2024-03-03/2024-03-09.json"
        assert mock_get.call_args.kwargs["headers"]["Authorization"] == f"Bearer {ACCESS_TOKEN}"

        rows = _rows(db)
        assert sorted(rows) == sorted(EXPECTED_DATES)
        assert {d: v[0] for d, v in rows.items()} == {
            "2024-03-03": 0, "2024-03-04": 0, "2024-03-05": 4200, "2024-03-06": 0,
            "2024-03-07": 0, "2024-03-08": 0, "2024-03-09": 8000,
        }
        assert {v[1] for v in rows.values()} == {"fitbit"}

    def test_empty_upstream_still_writes_seven_zero_rows(self, db) -> None:
        connect_user(db)
        with patch("fitbit.sync.requests.get", return_value=fake_response(200, {"activities-steps": []})):
            result = sync_steps(db, TEST_USER_ID, NOW)

        assert result.ok
        rows = _rows(db)
        assert len(rows) == 7
        assert all(v[0] == 0 for v in rows.values())

    def test_success_updates_connection_status(self, db) -> None:
        connect_user(db)
        conn = _connection(db)
        conn.status = "error"
        conn.last_error_code = "FITBIT_HTTP_500"
        conn.last_error_message = "Fitbit sync failed"
        db.commit()

        with patch("fitbit.sync.requests.get", return_value=fake_response(200, STEPS_PAYLOAD)):
            sync_steps(db, TEST_USER_ID, NOW)

        conn = _connection(db)
        assert conn.status == "active"
        assert conn.last_error_code is None
        assert conn.last_error_message is None
        assert conn.last_steps_sync_at.replace(tzinfo=None) == NOW.replace(tzinfo=None)

    def test_rerun_is_idempotent(self, db) -> None:
        connect_user(db, tz="America/New_York")
        with patch("fitbit.sync.requests.get", return_value=fake_response(200, STEPS_PAYLOAD)):
            assert sync_steps(db, TEST_USER_ID, NOW).ok
            first = _rows(db)

            # Ignore the cooldown for the second pass
            _connection(db).last_steps_sync_at = None
            db.commit()

            assert sync_steps(db, TEST_USER_ID, NOW).ok
            second = _rows(db)

        assert first == second

    def test_expiring_token_is_refreshed_before_fetch(self, db) -> None:
        connect_user(db, expires_at=NOW + timedelta(minutes=4))
        rotated = {"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 28800, "user_id": "FB"}
        with patch("fitbit.oauth.requests.post", return_value=fake_response(200, rotated)), \
                patch("fitbit.sync.requests.get", return_value=fake_response(200, STEPS_PAYLOAD)) as mock_get:
            assert sync_steps(db, TEST_USER_ID, NOW).ok

        assert mock_get.call_args.kwargs["headers"]["Authorization"] == "Bearer new-access"
        assert _token(db).refresh_token == "new-refresh"


# ---------------------------------------------------------------------------
# Throttle
# ---------------------------------------------------------------------------


class TestThrottle:
    def test_one_second_short_of_cooldown(self, db) -> None:
        connect_user(db, last_steps_sync_at=NOW - timedelta(minutes=14, seconds=59))
        with patch("fitbit.sync.requests.get") as mock_get:
            result = sync_steps(db, TEST_USER_ID, NOW)

        assert result == Throttled(retry_after_seconds=1)
        assert result.status_code == 429
        assert result.body() == {"error": "RATE_LIMIT", "retry_after_seconds": 1}
        mock_get.assert_not_called()

    def test_rounds_up_partial_seconds(self, db) -> None:
        connect_user(db, last_steps_sync_at=NOW - timedelta(minutes=5, milliseconds=500))
        with patch("fitbit.sync.requests.get"):
            result = sync_steps(db, TEST_USER_ID, NOW)
        assert result == Throttled(retry_after_seconds=600)

    @pytest.mark.parametrize("ago", [timedelta(minutes=15), timedelta(hours=3)])
    def test_cooldown_elapsed(self, db, ago) -> None:
        connect_user(db, last_steps_sync_at=NOW - ago)
        with patch("fitbit.sync.requests.get", return_value=fake_response(200, STEPS_PAYLOAD)):
            assert sync_steps(db, TEST_USER_ID, NOW).ok

    def test_future_timestamp_does_not_block(self, db) -> None:
        connect_user(db, last_steps_sync_at=NOW + timedelta(minutes=5))
        with patch("fitbit.sync.requests.get", return_value=fake_response(200, STEPS_PAYLOAD)):
            assert sync_steps(db, TEST_USER_ID, NOW).ok

    def test_back_to_back_calls_second_is_throttled(self, db) -> None:
        connect_user(db)
        with patch("fitbit.sync.requests.get", return_value=fake_response(200, STEPS_PAYLOAD)) as mock_get:
            assert sync_steps(db, TEST_USER_ID, NOW).ok
            result = sync_steps(db, TEST_USER_ID, NOW + timedelta(seconds=30))

        assert result == Throttled(retry_after_seconds=870)
        assert mock_get.call_count == 1

    def test_failed_attempt_does_not_start_cooldown(self, db) -> None:
        previous = NOW - timedelta(hours=1)
        connect_user(db, last_steps_sync_at=previous)
        with patch("fitbit.sync.requests.get", return_value=fake_response(500, {})):
            assert isinstance(sync_steps(db, TEST_USER_ID, NOW), UpstreamError)

        assert _connection(db).last_steps_sync_at.replace(tzinfo=None) == previous.replace(tzinfo=None)
        with patch("fitbit.sync.requests.get", return_value=fake_response(200, STEPS_PAYLOAD)):
            assert sync_steps(db, TEST_USER_ID, NOW + timedelta(seconds=10)).ok


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_not_connected(self, db) -> None:
        result = sync_steps(db, TEST_USER_ID, NOW)
        assert result == NotConnected()
        assert (result.status_code, result.body()) == (404, {"error": "NOT_CONNECTED"})

    def test_missing_tokens(self, db) -> None:
        connect_user(db, with_tokens=False)
        with patch("fitbit.sync.requests.get") as mock_get:
            result = sync_steps(db, TEST_USER_ID, NOW)

        assert result == MissingTokens()
        assert result.status_code == 401
        mock_get.assert_not_called()
        conn = _connection(db)
        assert conn.status == "error"
        assert conn.last_error_code == "MISSING_TOKENS"
        assert conn.last_steps_sync_at is None

    def test_401_deletes_tokens_and_writes_nothing(self, db) -> None:
        connect_user(db)
        body = {"errors": [{"errorType": "invalid_token", "message": "Access token invalid"}]}
        with patch("fitbit.sync.requests.get", return_value=fake_response(401, body)):
            result = sync_steps(db, TEST_USER_ID, NOW)

        assert result == Unauthorized()
        assert result.body() == {"error": "UNAUTHORIZED"}
        assert _token(db) is None
        assert _rows(db) == {}
        assert _connection(db).last_error_code == "UNAUTHORIZED"

    def test_insufficient_scope_keeps_tokens_and_writes_nothing(self, db) -> None:
        connect_user(db)
        body = {"errors": [{"errorType": "insufficient_scope", "message": "This application does not have permission to access activity data"}]}
        with patch("fitbit.sync.requests.get", return_value=fake_response(403, body)):
            result = sync_steps(db, TEST_USER_ID, NOW)

        assert result == InsufficientScope()
        assert (result.status_code, result.body()) == (403, {"error": "INSUFFICIENT_SCOPE"})
        assert _token(db) is not None
        assert _rows(db) == {}
        assert _connection(db).last_error_code == "INSUFFICIENT_SCOPE"

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_other_upstream_errors(self, db, status) -> None:
        connect_user(db)
        with patch("fitbit.sync.requests.get", return_value=fake_response(status, None)):
            result = sync_steps(db, TEST_USER_ID, NOW)

        assert result == UpstreamError(upstream_status=status)
        assert (result.status_code, result.body()) == (502, {"error": "FITBIT_FETCH_FAILED", "status": status})
        assert _token(db) is not None
        assert _rows(db) == {}
        assert _connection(db).last_error_code == f"FITBIT_HTTP_{status}"

    def test_dead_refresh_token_forces_reconnect(self, db) -> None:
        connect_user(db, expires_at=NOW - timedelta(hours=1))
        refused = fake_response(401, {"errors": [{"errorType": "invalid_grant", "message": "Refresh token invalid"}]})
        with patch("fitbit.oauth.requests.post", return_value=refused), \
                patch("fitbit.sync.requests.get") as mock_get:
            result = sync_steps(db, TEST_USER_ID, NOW)

        assert result == Unauthorized()
        assert _token(db) is None
        mock_get.assert_not_called()

    def test_token_endpoint_outage_is_internal_and_keeps_tokens(self, db) -> None:
        connect_user(db, expires_at=NOW - timedelta(hours=1))
        with patch("fitbit.oauth.requests.post", return_value=fake_response(503, None, reason="Service Unavailable")):
            result = sync_steps(db, TEST_USER_ID, NOW)

        assert isinstance(result, InternalError)
        assert result.status_code == 400
        assert result.body()["error"] == "FITBIT_SYNC_STEPS_FAILED"
        assert result.detail == "FITBIT_TOKEN_EXCHANGE_FAILED:503:Service Unavailable"
        assert _token(db) is not None
        assert _connection(db).last_error_code == "SYNC_EXCEPTION"

    def test_error_payloads_never_carry_secrets(self, db) -> None:
        connect_user(db, expires_at=NOW - timedelta(hours=1))
        with patch("fitbit.oauth.requests.post", return_value=fake_response(500, {"errors": [{"message": "boom"}]})):
            result = sync_steps(db, TEST_USER_ID, NOW)

        text = repr(result.body())
        assert ACCESS_TOKEN not in text
        assert REFRESH_TOKEN not in text
        conn = _connection(db)
        assert REFRESH_TOKEN not in (conn.last_error_message or "")
