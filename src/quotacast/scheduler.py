import asyncio
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from quotacast.collector.base import CommandResult, UsageCollector
from quotacast.errors import CollectorFault, ParseFault, StorageFault
from quotacast.health import STATUS_OK, build_health_report
from quotacast.metrics import MetricsUpdater
from quotacast.payloads import (
    DEFAULT_COST_PERIOD_DAYS,
    ProviderCostData,
    derive_cost_data,
    parse_cost_output,
    parse_usage_output,
)
from quotacast.prediction import UsagePredictionEngine
from quotacast.storage.store import UsageHistoryStore
from quotacast.warning_registry import WarningRegistry

logger = structlog.get_logger()

DEFAULT_INTERVAL_SECONDS = 300
DEFAULT_COST_RETENTION_DAYS = 30
DEFAULT_COST_PROVIDERS: "tuple[str, ...]" = ("codex", "claude")

USAGE_STAGE = "usage"
COST_STAGE = "cost"
# cost fetches have no source selector of their own
COST_SOURCE = "cost"


@dataclass(frozen=True, slots=True)
class FetchConfig:
    """
    one collector invocation per cycle: a provider selection and the
    source the collector should read it from.
    """

    providers: "str"
    source: "str"

    @property
    def target(self) -> "str":
        return f"{self.providers}/{self.source}"


def default_fetch_configs(platform: "str | None" = None) -> "list[FetchConfig]":
    """
    returns the per-platform fetch plan. On macOS the collector's auto
    source covers every provider; elsewhere only the sources known to
    work headless are used.
    """
    platform = platform or sys.platform
    if platform == "darwin":
        return [FetchConfig("all", "auto")]
    return [
        FetchConfig("codex", "cli"),
        FetchConfig("gemini", "cli"),
        FetchConfig("claude", "oauth"),
    ]


def _failure_message(result: "CommandResult", fallback: "str") -> "str":
    lines = result.error_lines()
    if lines:
        return lines[0]
    if not result.ok:
        return f"collector exited with code {result.exit_code}"
    return fallback


class UsageScheduler:
    """
    UsageScheduler is responsible for the periodic collection of usage
    and cost data. Each cycle invokes the collector once per fetch
    config and once per cost provider, stores what it gets back and
    refreshes the derived metrics.

    A failing target never aborts the others in the same cycle: its
    error is logged, counted and recorded in the warning registry,
    which a later success for the same target clears. Cycles are
    serialized, so a manual fetch_now() waits for a running cycle
    instead of overlapping it.
    """

    def __init__(
        self,
        store: "UsageHistoryStore",
        collector: "UsageCollector",
        *,
        metrics_updater: "MetricsUpdater",
        interval_seconds: "float" = DEFAULT_INTERVAL_SECONDS,
        fetch_configs: "list[FetchConfig] | None" = None,
        cost_providers: "list[str] | tuple[str, ...] | None" = None,
        warning_registry: "WarningRegistry | None" = None,
        cost_retention_days: "int" = DEFAULT_COST_RETENTION_DAYS,
        lookback_hours: "float" = 24.0,
        horizon_hours: "float" = 1.0,
        prediction_engine: "UsagePredictionEngine | None" = None,
    ) -> "None":
        self._store = store
        self._collector = collector
        self._metrics = metrics_updater
        self._interval = interval_seconds
        self._fetch_configs: "list[FetchConfig]" = (
            list(fetch_configs)
            if fetch_configs is not None
            else default_fetch_configs()
        )
        self._cost_providers: "list[str]" = list(
            cost_providers if cost_providers is not None else DEFAULT_COST_PROVIDERS
        )
        self._warnings: "WarningRegistry" = (
            warning_registry if warning_registry is not None else WarningRegistry()
        )
        self._cost_retention = timedelta(days=cost_retention_days)
        self._lookback_hours = lookback_hours
        self._horizon_hours = horizon_hours
        self._engine: "UsagePredictionEngine" = (
            prediction_engine or UsagePredictionEngine()
        )

        self._stop_event: "asyncio.Event" = asyncio.Event()
        self._cycle_lock: "asyncio.Lock" = asyncio.Lock()
        self._task: "asyncio.Task[None] | None" = None
        self._manual_tasks: "set[asyncio.Task[None]]" = set()
        self._cost_data: "dict[str, ProviderCostData]" = {}

    @property
    def is_running(self) -> "bool":
        return self._task is not None and not self._task.done()

    @property
    def warning_registry(self) -> "WarningRegistry":
        return self._warnings

    def cost_data(self) -> "dict[str, ProviderCostData]":
        """
        returns the latest derived cost data per provider.
        """
        return dict(self._cost_data)

    def cost_data_for(self, provider: "str") -> "ProviderCostData | None":
        return self._cost_data.get(provider)

    def start(self) -> "None":
        """
        spawns the collection loop on the running event loop. Does
        nothing if the loop is already running; a loop that was told to
        stop but has not exited yet is resumed instead.
        """
        if self.is_running:
            if self._stop_event.is_set():
                # the old loop has not exited yet, keep it going
                self._stop_event.clear()
                logger.info("scheduler_resumed")
                return
            logger.warning("scheduler_already_running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run())

    def stop(self) -> "None":
        """
        signals the loop to stop after the current cycle. Wakes a
        pending interval wait; safe to call more than once.
        """
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        logger.info("scheduler_stopping")

    async def join(self) -> "None":
        """
        waits for the loop and any manual cycles to finish.
        """
        if self._task is not None:
            await self._task
        if self._manual_tasks:
            await asyncio.gather(*self._manual_tasks, return_exceptions=True)

    def fetch_now(self) -> "asyncio.Task[None]":
        """
        schedules an out-of-band cycle. The periodic schedule is left
        as it is.
        """
        task = asyncio.create_task(self.run_cycle())
        self._manual_tasks.add(task)
        task.add_done_callback(self._manual_tasks.discard)
        return task

    async def run(self) -> "None":
        """
        runs the main collection loop until stop() is called. The first
        cycle runs immediately.
        """
        logger.info(
            "scheduler_started",
            interval_seconds=self._interval,
            fetch_configs=[c.target for c in self._fetch_configs],
            cost_providers=self._cost_providers,
        )

        while not self._stop_event.is_set():
            await self.run_cycle()

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass

        logger.info("scheduler_stopped")

    async def run_cycle(self) -> "None":
        async with self._cycle_lock:
            cycle_start = time.monotonic()
            logger.info("collection_cycle_start")

            await asyncio.gather(
                *(self._collect_usage(config) for config in self._fetch_configs)
            )
            await asyncio.gather(
                *(self._collect_cost(provider) for provider in self._cost_providers)
            )
            await self._prune_costs()
            await self._refresh_derived()

            logger.info(
                "collection_cycle_end",
                duration_seconds=round(time.monotonic() - cycle_start, 3),
                warnings=len(self._warnings),
            )

    def _fail(self, kind: "str", providers: "str", source: "str", message: "str") -> "None":
        self._warnings.record(kind, providers, source, message)
        self._metrics.inc_fetch_error(kind, f"{providers}/{source}")
        logger.warning(
            "fetch_failed",
            kind=kind,
            providers=providers,
            source=source,
            message=message,
        )

    def _succeed(self, kind: "str", providers: "str", source: "str") -> "None":
        if self._warnings.clear(kind, providers, source):
            logger.info("fetch_recovered", kind=kind, providers=providers, source=source)
        self._metrics.set_last_fetch_success(kind, f"{providers}/{source}", time.time())

    async def _collect_usage(self, config: "FetchConfig") -> "None":
        try:
            await self._fetch_usage(config)
        except Exception as exc:
            logger.exception("usage_collect_error", target=config.target)
            self._fail(
                USAGE_STAGE,
                config.providers,
                config.source,
                f"unexpected error: {exc!r}",
            )

    async def _collect_cost(self, provider: "str") -> "None":
        try:
            await self._fetch_cost(provider)
        except Exception as exc:
            logger.exception("cost_collect_error", provider=provider)
            self._fail(COST_STAGE, provider, COST_SOURCE, f"unexpected error: {exc!r}")

    async def _fetch_usage(self, config: "FetchConfig") -> "None":
        started = time.monotonic()
        try:
            result = await self._collector.fetch_usage(config.providers, config.source)
        except CollectorFault as exc:
            self._fail(USAGE_STAGE, config.providers, config.source, str(exc))
            return
        finally:
            self._metrics.observe_fetch_duration(USAGE_STAGE, time.monotonic() - started)

        for line in result.error_lines():
            logger.debug("collector_stderr", target=config.target, line=line)

        # a non-zero exit may still carry partial results on stdout
        if not result.stdout.strip():
            self._fail(
                USAGE_STAGE,
                config.providers,
                config.source,
                _failure_message(result, "collector produced no output"),
            )
            return

        try:
            payloads, faults = parse_usage_output(result.stdout)
        except ParseFault as exc:
            self._fail(
                USAGE_STAGE,
                config.providers,
                config.source,
                _failure_message(result, str(exc)),
            )
            return

        for fault in faults:
            logger.warning(
                "payload_skipped",
                target=config.target,
                provider=fault.provider,
                error=str(fault),
            )

        stored = 0
        for payload in payloads:
            sample = payload.to_sample()
            try:
                await asyncio.to_thread(self._store.insert, sample)
            except StorageFault:
                logger.exception("usage_store_error", provider=payload.provider)
                continue

            stored += 1
            self._metrics.update_usage(sample)
            logger.info(
                "usage_stored",
                provider=sample.provider,
                source=sample.source_label,
                primary_used_percent=sample.primary_used_percent,
                secondary_used_percent=sample.secondary_used_percent,
            )

        if stored == 0:
            fallback = str(faults[0]) if faults else "no usable payload stored"
            self._fail(
                USAGE_STAGE,
                config.providers,
                config.source,
                _failure_message(result, fallback),
            )
            return

        self._succeed(USAGE_STAGE, config.providers, config.source)

    async def _fetch_cost(self, provider: "str") -> "None":
        started = time.monotonic()
        try:
            result = await self._collector.fetch_cost(provider)
        except CollectorFault as exc:
            self._fail(COST_STAGE, provider, COST_SOURCE, str(exc))
            return
        finally:
            self._metrics.observe_fetch_duration(COST_STAGE, time.monotonic() - started)

        if not result.ok or not result.stdout.strip():
            self._fail(
                COST_STAGE,
                provider,
                COST_SOURCE,
                _failure_message(result, "collector produced no cost output"),
            )
            return

        try:
            payloads, faults = parse_cost_output(result.stdout)
        except ParseFault as exc:
            self._fail(COST_STAGE, provider, COST_SOURCE, str(exc))
            return

        for fault in faults:
            logger.warning(
                "cost_payload_skipped",
                provider=fault.provider or provider,
                error=str(fault),
            )

        if not payloads:
            message = str(faults[0]) if faults else "no cost payload"
            self._fail(COST_STAGE, provider, COST_SOURCE, message)
            return

        now = datetime.now(timezone.utc)
        stored = 0
        store_error: "StorageFault | None" = None
        for payload in payloads:
            cost = derive_cost_data(payload, now, DEFAULT_COST_PERIOD_DAYS)
            self._cost_data[cost.provider] = cost
            self._metrics.update_cost(cost)
            logger.debug(
                "cost_derived",
                provider=cost.provider,
                session_cost_usd=cost.session_cost_usd,
                period_cost_usd=cost.period_cost_usd,
                models=cost.models_used,
            )

            try:
                await asyncio.to_thread(self._store.insert_cost, cost.to_cost_sample())
            except StorageFault as exc:
                logger.exception("cost_store_error", provider=cost.provider)
                store_error = exc
                continue
            stored += 1

        if stored == 0:
            message = (
                f"failed to store cost data: {store_error}"
                if store_error is not None
                else "no cost data stored"
            )
            self._fail(COST_STAGE, provider, COST_SOURCE, message)
            return

        self._succeed(COST_STAGE, provider, COST_SOURCE)

    async def _prune_costs(self) -> "None":
        cutoff = datetime.now(timezone.utc) - self._cost_retention
        try:
            deleted = await asyncio.to_thread(self._store.prune_cost_older_than, cutoff)
        except StorageFault:
            logger.exception("cost_prune_error")
            return
        if deleted:
            logger.info("cost_history_pruned", deleted=deleted, cutoff=cutoff.isoformat())

    async def _refresh_derived(self) -> "None":
        self._metrics.set_active_warnings(len(self._warnings))
        try:
            predictions = await asyncio.to_thread(
                self._engine.predict_all_both,
                self._store,
                self._lookback_hours,
                self._horizon_hours,
            )
            report = await asyncio.to_thread(
                build_health_report, self._store, self._warnings
            )
        except StorageFault:
            logger.exception("prediction_refresh_error")
            return

        self._metrics.update_predictions(predictions)
        self._metrics.set_store_records(report["records"], report["costRecords"])
        self._metrics.set_health(report["status"] == STATUS_OK)
        logger.debug("health_report", **report)
