import os
import datetime as dt
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

from sqlalchemy import Date, DateTime, Float, Integer, String, Text, UniqueConstraint, create_engine
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///fitbit.db")

engine = create_engine(DATABASE_URL, future=True)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class StorageError(Exception):
    """A write failed. The message carries a stable code prefix and no row values."""


class Base(DeclarativeBase):
    pass


class OAuthSession(Base):
    """One in-flight authorization attempt. Consumed once by the callback."""
    __tablename__ = "fitbit_oauth_sessions"
    state: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    code_verifier: Mapped[str] = mapped_column(String(256), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    app_origin: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)


class FitbitToken(Base):
    """Secret-bearing credentials, one row per user. Never exposed to clients."""
    __tablename__ = "fitbit_connections_tokens"
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    # Nullable so a corrupt or missing expiry forces a refresh instead of a crash
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)


class FitbitConnection(Base):
    """Connection status readable by the owning user (no tokens here)."""
    __tablename__ = "fitbit_connections_public"
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    fitbit_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    # Space-delimited, as granted by the provider
    scopes: Mapped[str] = mapped_column(String(512), default="", nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="active", nullable=False)  # active | error
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_steps_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_weight_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)


class DailyExerciseSum(Base):
    __tablename__ = "daily_sum_exercises"
    __table_args__ = (UniqueConstraint("user_id", "date", name="daily_sum_exercises_user_date_key"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    steps: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    steps_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    steps_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DailyBurn(Base):
    """Raw activity burn for one local day.

    The main application creates the row and owns the final burn fields;
    only the raw columns are written from Fitbit.
    """
    __tablename__ = "daily_sum_burned"
    __table_args__ = (UniqueConstraint("user_id", "entry_date", name="daily_sum_burned_user_date_unique"),)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    entry_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    raw_burn: Mapped[int | None] = mapped_column(Integer, nullable=True)
    raw_burn_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    raw_last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class WeightLog(Base):
    __tablename__ = "weight_log"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    weighed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    weight_lb: Mapped[float] = mapped_column(Float, nullable=False)
    body_fat_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "fitbit" for synced rows, NULL for manual entries
    source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)


class Profile(Base):
    """Only the columns this service reads; owned by the main application."""
    __tablename__ = "profiles"
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


def upsert(db: Session, model, rows: Iterable[Dict[str, Any]], conflict_columns: List[str]) -> None:
    """INSERT ... ON CONFLICT (conflict_columns) DO UPDATE every other given column."""
    rows = list(rows)
    if not rows:
        return
    insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    stmt = insert(model).values(rows)
    update_columns = [c for c in rows[0] if c not in conflict_columns]
    stmt = stmt.on_conflict_do_update(
        index_elements=conflict_columns,
        set_={c: stmt.excluded[c] for c in update_columns},
    )
    db.execute(stmt)


def init_db():
    Base.metadata.create_all(engine)
