import dataclasses
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import structlog
from sqlalchemy import Engine, create_engine, delete, event, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased, sessionmaker
from sqlalchemy.pool import StaticPool

from quotacast.errors import StorageFault
from quotacast.models import CostSample, CostStatistics, UsageSample, UsageStatistics
from quotacast.storage.migrations import upgrade_schema
from quotacast.storage.schema import CostHistoryRow, UsageHistoryRow

logger = structlog.get_logger()

# hard ceiling for any history query, regardless of what the caller asks for
MAX_QUERY_LIMIT = 1000

_DEFAULT_DIRECTORY = ".quotacast"
_DEFAULT_FILENAME = "usage_history.sqlite"


def default_database_path() -> "Path":
    """
    returns ~/.quotacast/usage_history.sqlite, creating the directory
    if needed.
    """
    directory = Path.home() / _DEFAULT_DIRECTORY
    directory.mkdir(parents=True, exist_ok=True)
    return directory / _DEFAULT_FILENAME


def clamp_limit(limit: "int") -> "int":
    return max(0, min(int(limit), MAX_QUERY_LIMIT))


def _set_sqlite_pragmas(dbapi_connection: "object", _record: "object") -> "None":
    # WAL journal with relaxed sync: committed writes survive a crash,
    # only the most recent unflushed one may be lost
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def _build_engine(path: "str") -> "Engine":
    if path == ":memory:":
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            f"sqlite:///{path}",
            connect_args={"check_same_thread": False},
        )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


class UsageHistoryStore:
    """
    UsageHistoryStore is the durable, append-only time-series store
    for usage and cost samples, backed by SQLite through SQLAlchemy.

    Every operation runs under a single lock so that the store behaves
    as one serialization point: the collection scheduler and any number
    of readers may share an instance from different threads. Each
    operation is its own transaction.

    Any failure of the underlying database is raised as StorageFault.
    """

    def __init__(self, path: "str | Path | None" = None) -> "None":
        self._path: "str" = str(path) if path is not None else str(default_database_path())
        self._lock: "threading.RLock" = threading.RLock()

        try:
            self._engine: "Engine" = _build_engine(self._path)
            with self._engine.begin() as conn:
                previous_version = upgrade_schema(conn)
        except SQLAlchemyError as exc:
            raise StorageFault(f"failed to open database {self._path}: {exc}") from exc

        self._sessions: "sessionmaker[Session]" = sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
        )
        logger.debug(
            "store_opened",
            path=self._path,
            previous_schema_version=previous_version,
        )

    @property
    def path(self) -> "str":
        return self._path

    def close(self) -> "None":
        """
        releases pooled connections.
        """
        with self._lock:
            self._engine.dispose()

    @contextmanager
    def _session(self) -> "Iterator[Session]":
        with self._lock:
            try:
                with self._sessions.begin() as session:
                    yield session
            except SQLAlchemyError as exc:
                raise StorageFault(str(exc)) from exc

    # usage samples

    def insert(self, sample: "UsageSample") -> "UsageSample":
        """
        appends a usage sample and returns it with its assigned id.
        Identical samples inserted twice produce two rows.
        """
        row = UsageHistoryRow(
            provider=sample.provider,
            timestamp=sample.timestamp,
            primary_used_percent=sample.primary_used_percent,
            primary_window_minutes=sample.primary_window_minutes,
            primary_resets_at=sample.primary_resets_at,
            primary_reset_desc=sample.primary_reset_desc,
            secondary_used_percent=sample.secondary_used_percent,
            secondary_window_minutes=sample.secondary_window_minutes,
            secondary_resets_at=sample.secondary_resets_at,
            secondary_reset_desc=sample.secondary_reset_desc,
            tertiary_used_percent=sample.tertiary_used_percent,
            tertiary_window_minutes=sample.tertiary_window_minutes,
            account_email=sample.account_email,
            account_plan=sample.account_plan,
            version=sample.version,
            source_label=sample.source_label,
            credits_remaining=sample.credits_remaining,
            raw_json=sample.raw_payload,
        )
        with self._session() as session:
            session.add(row)
            session.flush()
            row_id = row.id

        return dataclasses.replace(sample, id=row_id)

    def fetch_history(
        self,
        provider: "str",
        limit: "int" = 100,
        since: "datetime | None" = None,
    ) -> "list[UsageSample]":
        """
        returns up to `limit` samples for one provider, newest first.
        Same-instant samples come back most-recently-inserted first.
        """
        stmt = select(UsageHistoryRow).where(UsageHistoryRow.provider == str(provider))
        return self._fetch_usage(stmt, limit, since)

    def fetch_all_history(
        self,
        limit: "int" = 100,
        since: "datetime | None" = None,
    ) -> "list[UsageSample]":
        return self._fetch_usage(select(UsageHistoryRow), limit, since)

    def _fetch_usage(
        self,
        stmt: "object",
        limit: "int",
        since: "datetime | None",
    ) -> "list[UsageSample]":
        if since is not None:
            stmt = stmt.where(UsageHistoryRow.timestamp >= since)
        stmt = stmt.order_by(
            UsageHistoryRow.timestamp.desc(), UsageHistoryRow.id.desc()
        ).limit(clamp_limit(limit))

        with self._session() as session:
            return [_usage_from_row(row) for row in session.scalars(stmt)]

    def fetch_latest_per_series(self) -> "dict[str, UsageSample]":
        """
        returns the newest sample of every provider that has one. When
        several samples share the newest timestamp the highest id wins.
        """
        inner = aliased(UsageHistoryRow)
        latest_id = (
            select(inner.id)
            .where(inner.provider == UsageHistoryRow.provider)
            .order_by(inner.timestamp.desc(), inner.id.desc())
            .limit(1)
            .scalar_subquery()
        )
        stmt = select(UsageHistoryRow).where(UsageHistoryRow.id == latest_id)

        with self._session() as session:
            return {row.provider: _usage_from_row(row) for row in session.scalars(stmt)}

    def fetch_active_series(self) -> "list[str]":
        stmt = (
            select(UsageHistoryRow.provider)
            .distinct()
            .order_by(UsageHistoryRow.provider)
        )
        with self._session() as session:
            return list(session.scalars(stmt))

    def calculate_statistics(
        self,
        provider: "str",
        start: "datetime",
        end: "datetime",
    ) -> "UsageStatistics":
        """
        aggregates one provider's samples with start <= timestamp <= end.
        An empty window gives a zero-count result, not an error.
        """
        stmt = select(
            func.count(UsageHistoryRow.id),
            func.avg(UsageHistoryRow.primary_used_percent),
            func.max(UsageHistoryRow.primary_used_percent),
            func.min(UsageHistoryRow.primary_used_percent),
            func.avg(UsageHistoryRow.secondary_used_percent),
            func.max(UsageHistoryRow.secondary_used_percent),
        ).where(
            UsageHistoryRow.provider == str(provider),
            UsageHistoryRow.timestamp >= start,
            UsageHistoryRow.timestamp <= end,
        )
        with self._session() as session:
            count, avg_p, max_p, min_p, avg_s, max_s = session.execute(stmt).one()

        return UsageStatistics(
            provider=str(provider),
            period_start=start,
            period_end=end,
            record_count=int(count or 0),
            avg_primary_usage=_optional_float(avg_p),
            max_primary_usage=_optional_float(max_p),
            min_primary_usage=_optional_float(min_p),
            avg_secondary_usage=_optional_float(avg_s),
            max_secondary_usage=_optional_float(max_s),
        )

    def record_count(self) -> "int":
        with self._session() as session:
            return int(session.scalar(select(func.count()).select_from(UsageHistoryRow)))

    def prune_older_than(self, cutoff: "datetime") -> "int":
        """
        deletes usage samples with timestamp < cutoff and returns how
        many were removed.
        """
        stmt = delete(UsageHistoryRow).where(UsageHistoryRow.timestamp < cutoff)
        with self._session() as session:
            deleted = session.execute(stmt).rowcount
        logger.debug("usage_pruned", cutoff=cutoff.isoformat(), deleted=deleted)
        return deleted

    def delete_all(self) -> "None":
        with self._session() as session:
            session.execute(delete(UsageHistoryRow))

    # cost samples

    def insert_cost(self, sample: "CostSample") -> "CostSample":
        row = CostHistoryRow(
            provider=sample.provider,
            timestamp=sample.timestamp,
            session_tokens=sample.session_tokens,
            session_cost_usd=sample.session_cost_usd,
            period_tokens=sample.period_tokens,
            period_cost_usd=sample.period_cost_usd,
            period_days=sample.period_days,
            models_used=sample.models_json(),
        )
        with self._session() as session:
            session.add(row)
            session.flush()
            row_id = row.id

        return dataclasses.replace(sample, id=row_id)

    def fetch_cost_history(
        self,
        provider: "str",
        limit: "int" = 100,
        since: "datetime | None" = None,
    ) -> "list[CostSample]":
        stmt = select(CostHistoryRow).where(CostHistoryRow.provider == str(provider))
        return self._fetch_costs(stmt, limit, since)

    def fetch_all_cost_history(
        self,
        limit: "int" = 100,
        since: "datetime | None" = None,
    ) -> "list[CostSample]":
        return self._fetch_costs(select(CostHistoryRow), limit, since)

    def _fetch_costs(
        self,
        stmt: "object",
        limit: "int",
        since: "datetime | None",
    ) -> "list[CostSample]":
        if since is not None:
            stmt = stmt.where(CostHistoryRow.timestamp >= since)
        stmt = stmt.order_by(
            CostHistoryRow.timestamp.desc(), CostHistoryRow.id.desc()
        ).limit(clamp_limit(limit))

        with self._session() as session:
            return [_cost_from_row(row) for row in session.scalars(stmt)]

    def fetch_latest_cost_per_series(self) -> "dict[str, CostSample]":
        inner = aliased(CostHistoryRow)
        latest_id = (
            select(inner.id)
            .where(inner.provider == CostHistoryRow.provider)
            .order_by(inner.timestamp.desc(), inner.id.desc())
            .limit(1)
            .scalar_subquery()
        )
        stmt = select(CostHistoryRow).where(CostHistoryRow.id == latest_id)

        with self._session() as session:
            return {row.provider: _cost_from_row(row) for row in session.scalars(stmt)}

    def calculate_cost_statistics(
        self,
        provider: "str",
        start: "datetime",
        end: "datetime",
    ) -> "CostStatistics":
        stmt = select(
            func.count(CostHistoryRow.id),
            func.sum(CostHistoryRow.session_cost_usd),
            func.sum(CostHistoryRow.session_tokens),
            func.avg(CostHistoryRow.session_cost_usd),
            func.max(CostHistoryRow.session_cost_usd),
        ).where(
            CostHistoryRow.provider == str(provider),
            CostHistoryRow.timestamp >= start,
            CostHistoryRow.timestamp <= end,
        )
        with self._session() as session:
            count, total_cost, total_tokens, avg_cost, max_cost = session.execute(
                stmt
            ).one()

        return CostStatistics(
            provider=str(provider),
            period_start=start,
            period_end=end,
            record_count=int(count or 0),
            total_cost_usd=_optional_float(total_cost),
            total_tokens=int(total_tokens) if total_tokens is not None else None,
            avg_cost_usd=_optional_float(avg_cost),
            max_cost_usd=_optional_float(max_cost),
        )

    def cost_record_count(self) -> "int":
        with self._session() as session:
            return int(session.scalar(select(func.count()).select_from(CostHistoryRow)))

    def prune_cost_older_than(self, cutoff: "datetime") -> "int":
        """
        deletes cost samples with timestamp < cutoff; used for the
        rolling cost retention window.
        """
        stmt = delete(CostHistoryRow).where(CostHistoryRow.timestamp < cutoff)
        with self._session() as session:
            deleted = session.execute(stmt).rowcount
        logger.debug("cost_pruned", cutoff=cutoff.isoformat(), deleted=deleted)
        return deleted

    def delete_all_costs(self) -> "None":
        with self._session() as session:
            session.execute(delete(CostHistoryRow))

    # maintenance

    def vacuum(self) -> "None":
        """
        reclaims free pages. VACUUM cannot run inside a transaction, so
        it goes through an autocommit connection.
        """
        with self._lock:
            try:
                with self._engine.connect() as conn:
                    conn.execution_options(isolation_level="AUTOCOMMIT").execute(
                        text("VACUUM")
                    )
            except SQLAlchemyError as exc:
                raise StorageFault(str(exc)) from exc


def _optional_float(value: "object") -> "float | None":
    return float(value) if value is not None else None


def _usage_from_row(row: "UsageHistoryRow") -> "UsageSample":
    return UsageSample(
        id=row.id,
        provider=row.provider,
        timestamp=row.timestamp,
        primary_used_percent=row.primary_used_percent,
        primary_window_minutes=row.primary_window_minutes,
        primary_resets_at=row.primary_resets_at,
        primary_reset_desc=row.primary_reset_desc,
        secondary_used_percent=row.secondary_used_percent,
        secondary_window_minutes=row.secondary_window_minutes,
        secondary_resets_at=row.secondary_resets_at,
        secondary_reset_desc=row.secondary_reset_desc,
        tertiary_used_percent=row.tertiary_used_percent,
        tertiary_window_minutes=row.tertiary_window_minutes,
        account_email=row.account_email,
        account_plan=row.account_plan,
        version=row.version,
        source_label=row.source_label,
        credits_remaining=row.credits_remaining,
        raw_payload=row.raw_json,
    )


def _cost_from_row(row: "CostHistoryRow") -> "CostSample":
    return CostSample(
        id=row.id,
        provider=row.provider,
        timestamp=row.timestamp,
        session_tokens=row.session_tokens,
        session_cost_usd=row.session_cost_usd,
        period_tokens=row.period_tokens,
        period_cost_usd=row.period_cost_usd,
        period_days=row.period_days,
        models_used=CostSample.models_from_json(row.models_used),
    )
