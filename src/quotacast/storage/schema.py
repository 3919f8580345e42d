"""
SQLAlchemy tables backing the usage and cost history.

Timestamps are stored as integer microseconds since the Unix epoch so
that ordering and range filters are exact and index friendly.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import BigInteger, Float, Index, Integer, String, Text
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# bumped whenever a column or table is added
SCHEMA_VERSION = 3

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


def to_epoch_micros(value: "datetime") -> "int":
    """
    converts a datetime to integer epoch microseconds. Naive datetimes
    are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // _MICROSECOND


def from_epoch_micros(value: "int") -> "datetime":
    return _EPOCH + timedelta(microseconds=int(value))


class EpochMicros(TypeDecorator):
    impl = BigInteger
    cache_ok = True

    def process_bind_param(
        self, value: "datetime | None", dialect: "Dialect"
    ) -> "int | None":
        if value is None:
            return None
        return to_epoch_micros(value)

    def process_result_value(
        self, value: "int | None", dialect: "Dialect"
    ) -> "datetime | None":
        if value is None:
            return None
        return from_epoch_micros(value)


class Base(DeclarativeBase):
    """Shared declarative base for the history tables."""


class UsageHistoryRow(Base):
    __tablename__ = "usage_history"

    id: "Mapped[int]" = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: "Mapped[str]" = mapped_column(String, nullable=False)
    timestamp: "Mapped[datetime]" = mapped_column(EpochMicros, nullable=False)

    primary_used_percent: "Mapped[float | None]" = mapped_column(Float)
    primary_window_minutes: "Mapped[int | None]" = mapped_column(Integer)
    primary_resets_at: "Mapped[datetime | None]" = mapped_column(EpochMicros)
    primary_reset_desc: "Mapped[str | None]" = mapped_column(Text)

    secondary_used_percent: "Mapped[float | None]" = mapped_column(Float)
    secondary_window_minutes: "Mapped[int | None]" = mapped_column(Integer)
    secondary_resets_at: "Mapped[datetime | None]" = mapped_column(EpochMicros)
    secondary_reset_desc: "Mapped[str | None]" = mapped_column(Text)

    tertiary_used_percent: "Mapped[float | None]" = mapped_column(Float)
    tertiary_window_minutes: "Mapped[int | None]" = mapped_column(Integer)

    account_email: "Mapped[str | None]" = mapped_column(Text)
    account_plan: "Mapped[str | None]" = mapped_column(Text)
    version: "Mapped[str | None]" = mapped_column(Text)
    source_label: "Mapped[str | None]" = mapped_column(Text)
    credits_remaining: "Mapped[float | None]" = mapped_column(Float)
    raw_json: "Mapped[str | None]" = mapped_column(Text)

    __table_args__ = (
        Index("idx_usage_provider_timestamp", "provider", "timestamp"),
        Index("idx_usage_timestamp", "timestamp"),
        {"sqlite_autoincrement": True},
    )


class CostHistoryRow(Base):
    __tablename__ = "cost_history"

    id: "Mapped[int]" = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: "Mapped[str]" = mapped_column(String, nullable=False)
    timestamp: "Mapped[datetime]" = mapped_column(EpochMicros, nullable=False)
    session_tokens: "Mapped[int | None]" = mapped_column(BigInteger)
    session_cost_usd: "Mapped[float | None]" = mapped_column(Float)
    period_tokens: "Mapped[int | None]" = mapped_column(BigInteger)
    period_cost_usd: "Mapped[float | None]" = mapped_column(Float)
    period_days: "Mapped[int | None]" = mapped_column(Integer)
    # JSON array of model names
    models_used: "Mapped[str | None]" = mapped_column(Text)

    __table_args__ = (
        Index("idx_cost_provider_timestamp", "provider", "timestamp"),
        Index("idx_cost_timestamp", "timestamp"),
        {"sqlite_autoincrement": True},
    )


class StoreMetadataRow(Base):
    __tablename__ = "store_metadata"

    key: "Mapped[str]" = mapped_column(String, primary_key=True)
    value: "Mapped[str | None]" = mapped_column(Text)
