"""Outcomes of one sync attempt.

Each stage of a pipeline either hands its value to the next stage or stops
with one of these. Every outcome knows its HTTP status and JSON body.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class SyncResult:
    code = "OK"
    status_code = 200

    @property
    def ok(self) -> bool:
        return False

    def body(self) -> Dict[str, Any]:
        return {"error": self.code}


@dataclass(frozen=True)
class Success(SyncResult):
    @property
    def ok(self) -> bool:
        return True

    def body(self) -> Dict[str, Any]:
        return {"ok": True}


@dataclass(frozen=True)
class Ok(Success):
    synced_dates: List[str] = field(default_factory=list)

    def body(self) -> Dict[str, Any]:
        return {"ok": True, "synced_dates": list(self.synced_dates)}


@dataclass(frozen=True)
class BurnSynced(Success):
    entry_date: str = ""
    raw_burn: int = 0
    raw_last_synced_at: Optional[datetime] = None

    def body(self) -> Dict[str, Any]:
        synced_at = self.raw_last_synced_at.isoformat() if self.raw_last_synced_at else None
        return {"ok": True, "entry_date": self.entry_date, "raw_burn": self.raw_burn,
                "raw_last_synced_at": synced_at}


@dataclass(frozen=True)
class WeightSynced(Success):
    processed: int = 0
    inserted: int = 0
    updated_existing: int = 0
    updated_capped: int = 0
    last_weight_sync_at: Optional[datetime] = None

    def body(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "processed": self.processed,
            "inserted": self.inserted,
            "updated_existing": self.updated_existing,
            "updated_capped": self.updated_capped,
            "last_weight_sync_at": self.last_weight_sync_at.isoformat() if self.last_weight_sync_at else None,
        }


@dataclass(frozen=True)
class NotConnected(SyncResult):
    code = "NOT_CONNECTED"
    status_code = 404


@dataclass(frozen=True)
class Throttled(SyncResult):
    retry_after_seconds: int = 0
    code = "RATE_LIMIT"
    status_code = 429

    def body(self) -> Dict[str, Any]:
        return {"error": self.code, "retry_after_seconds": self.retry_after_seconds}


@dataclass(frozen=True)
class MissingTokens(SyncResult):
    code = "MISSING_TOKENS"
    status_code = 401


@dataclass(frozen=True)
class Unauthorized(SyncResult):
    code = "UNAUTHORIZED"
    status_code = 401


@dataclass(frozen=True)
class InsufficientScope(SyncResult):
    code = "INSUFFICIENT_SCOPE"
    status_code = 403


@dataclass(frozen=True)
class UpstreamError(SyncResult):
    upstream_status: int = 0
    code = "FITBIT_FETCH_FAILED"
    status_code = 502

    def body(self) -> Dict[str, Any]:
        return {"error": self.code, "status": self.upstream_status}


@dataclass(frozen=True)
class MissingActivityCalories(SyncResult):
    code = "MISSING_ACTIVITY_CALORIES"
    status_code = 502


@dataclass(frozen=True)
class MissingDailyRow(SyncResult):
    """Today's daily_sum_burned row does not exist yet; the app creates it."""
    code = "MISSING_DAILY_ROW"
    status_code = 409


@dataclass(frozen=True)
class InternalError(SyncResult):
    detail: str = ""
    code = "FITBIT_SYNC_STEPS_FAILED"
    status_code = 400

    def body(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.detail}


@dataclass(frozen=True)
class BurnSyncFailed(InternalError):
    code = "FITBIT_SYNC_NOW_FAILED"


@dataclass(frozen=True)
class WeightSyncFailed(InternalError):
    code = "FITBIT_SYNC_WEIGHT_FAILED"
