import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import CollectorRegistry

from quotacast.collector.base import CommandResult
from quotacast.errors import CollectorFault, StorageFault
from quotacast.metrics import MetricsUpdater
from quotacast.models import CostSample, UsageSample
from quotacast.scheduler import FetchConfig, UsageScheduler, default_fetch_configs
from quotacast.storage.store import UsageHistoryStore


def _usage_json(provider: "str", used: "float", updated_at: "datetime") -> "dict":
    return {
        "provider": provider,
        "source": "cli",
        "usage": {
            "primary": {"usedPercent": used},
            "secondary": {"usedPercent": used / 2},
            "updatedAt": updated_at.isoformat(),
        },
    }


def _cost_json(provider: "str") -> "list[dict]":
    today = datetime.now(timezone.utc).date()
    return [
        {
            "provider": provider,
            "daily": [
                {
                    "date": (today - timedelta(days=1)).isoformat(),
                    "totalTokens": 1000,
                    "totalCost": 2.0,
                    "modelsUsed": ["model-a"],
                },
                {
                    "date": today.isoformat(),
                    "totalTokens": 250,
                    "totalCost": 0.5,
                    "modelsUsed": ["model-b"],
                },
            ],
        }
    ]


class MockCollector:
    """
    A mock collector that returns pre-configured results per target.
    Targets without a configured result raise CollectorFault.
    """

    def __init__(
        self,
        usage: "dict[str, CommandResult] | None" = None,
        cost: "dict[str, CommandResult] | None" = None,
    ) -> "None":
        self.usage = usage or {}
        self.cost = cost or {}
        self.calls: "list[tuple[str, ...]]" = []

    async def fetch_usage(self, providers: "str", source: "str") -> "CommandResult":
        self.calls.append(("usage", providers, source))
        key = f"{providers}/{source}"
        if key not in self.usage:
            raise CollectorFault(f"collector timed out after 120s ({key})")
        return self.usage[key]

    async def fetch_cost(self, provider: "str") -> "CommandResult":
        self.calls.append(("cost", provider))
        if provider not in self.cost:
            raise CollectorFault("failed to launch collector")
        return self.cost[provider]


class ExplodingCollector(MockCollector):
    """
    A mock collector that fails with an unexpected error for one target.
    """

    def __init__(self, exploding_target: "str", **kwargs: "object") -> "None":
        super().__init__(**kwargs)
        self.exploding_target = exploding_target

    async def fetch_usage(self, providers: "str", source: "str") -> "CommandResult":
        if f"{providers}/{source}" == self.exploding_target:
            self.calls.append(("usage", providers, source))
            raise RuntimeError("unexpected collector bug")
        return await super().fetch_usage(providers, source)


def _ok(payload: "object") -> "CommandResult":
    return CommandResult(exit_code=0, stdout=json.dumps(payload), stderr="")


def _scheduler(
    store: "UsageHistoryStore",
    collector: "MockCollector",
    registry: "CollectorRegistry",
    **kwargs: "object",
) -> "UsageScheduler":
    kwargs.setdefault(
        "fetch_configs", [FetchConfig("codex", "cli"), FetchConfig("claude", "oauth")]
    )
    kwargs.setdefault("cost_providers", ["codex"])
    return UsageScheduler(
        store,
        collector,
        metrics_updater=MetricsUpdater(registry=registry),
        **kwargs,
    )


class TestDefaultFetchConfigs:
    def test_linux(self) -> "None":
        assert [c.target for c in default_fetch_configs("linux")] == [
            "codex/cli",
            "gemini/cli",
            "claude/oauth",
        ]

    def test_macos(self) -> "None":
        assert default_fetch_configs("darwin") == [FetchConfig("all", "auto")]


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_stores_usage_and_cost(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
    ) -> "None":
        now = datetime.now(timezone.utc)
        collector = MockCollector(
            usage={
                "codex/cli": _ok(_usage_json("codex", 40.0, now)),
                "claude/oauth": _ok([_usage_json("claude", 10.0, now)]),
            },
            cost={"codex": _ok(_cost_json("codex"))},
        )
        scheduler = _scheduler(store, collector, registry)

        await scheduler.run_cycle()

        assert store.fetch_active_series() == ["claude", "codex"]
        assert scheduler.warning_registry.list() == []

        cost = scheduler.cost_data_for("codex")
        assert cost is not None
        assert cost.session_cost_usd == pytest.approx(0.5)
        assert cost.period_cost_usd == pytest.approx(2.5)
        assert cost.models_used == ["model-a", "model-b"]
        assert set(scheduler.cost_data()) == {"codex"}

        [stored_cost] = store.fetch_cost_history("codex")
        assert stored_cost.period_days == 30
        assert stored_cost.period_tokens == 1250

        assert (
            registry.get_sample_value(
                "quotacast_usage_percent", {"provider": "codex", "window": "primary"}
            )
            == 40.0
        )
        assert registry.get_sample_value("quotacast_store_records", {"kind": "usage"}) == 2
        assert registry.get_sample_value("quotacast_active_warnings") == 0
        assert registry.get_sample_value("quotacast_healthy") == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_abort_other_targets(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
    ) -> "None":
        now = datetime.now(timezone.utc)
        # claude/oauth is not configured and times out
        collector = MockCollector(usage={"codex/cli": _ok(_usage_json("codex", 40.0, now))})
        scheduler = _scheduler(store, collector, registry)

        await scheduler.run_cycle()

        assert store.fetch_active_series() == ["codex"]
        warnings = {w.key: w for w in scheduler.warning_registry.list()}
        assert set(warnings) == {("usage", "claude", "oauth"), ("cost", "codex", "cost")}
        assert "timed out" in warnings[("usage", "claude", "oauth")].message
        assert (
            registry.get_sample_value(
                "quotacast_fetch_errors_total",
                {"stage": "usage", "target": "claude/oauth"},
            )
            == 1.0
        )
        assert registry.get_sample_value("quotacast_active_warnings") == 2
        assert registry.get_sample_value("quotacast_healthy") == 0
        assert ("usage", "claude", "oauth") in collector.calls

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_abort_cycle(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
    ) -> "None":
        now = datetime.now(timezone.utc)
        collector = ExplodingCollector(
            "codex/cli",
            usage={"claude/oauth": _ok(_usage_json("claude", 10.0, now))},
            cost={"codex": _ok(_cost_json("codex"))},
        )
        scheduler = _scheduler(store, collector, registry)

        await scheduler.run_cycle()

        # the other usage target and the cost stage still ran
        assert store.fetch_active_series() == ["claude"]
        assert store.cost_record_count() == 1
        [warning] = scheduler.warning_registry.list()
        assert warning.key == ("usage", "codex", "cli")
        assert "unexpected collector bug" in warning.message
        assert (
            registry.get_sample_value(
                "quotacast_fetch_errors_total",
                {"stage": "usage", "target": "codex/cli"},
            )
            == 1.0
        )

    @pytest.mark.asyncio
    async def test_failed_cost_write_records_warning(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
        monkeypatch: "pytest.MonkeyPatch",
    ) -> "None":
        collector = MockCollector(cost={"codex": _ok(_cost_json("codex"))})
        scheduler = _scheduler(store, collector, registry, fetch_configs=[])
        scheduler.warning_registry.record("cost", "codex", "cost", "earlier failure")

        def _broken_insert_cost(sample: "CostSample") -> "CostSample":
            raise StorageFault("database is locked")

        monkeypatch.setattr(store, "insert_cost", _broken_insert_cost)

        await scheduler.run_cycle()

        [warning] = scheduler.warning_registry.list()
        assert warning.key == ("cost", "codex", "cost")
        assert "database is locked" in warning.message
        assert (
            registry.get_sample_value(
                "quotacast_last_fetch_success_timestamp_seconds",
                {"stage": "cost", "target": "codex/cost"},
            )
            is None
        )
        assert registry.get_sample_value("quotacast_healthy") == 0

    @pytest.mark.asyncio
    async def test_success_clears_warning(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
    ) -> "None":
        now = datetime.now(timezone.utc)
        collector = MockCollector(cost={"codex": _ok(_cost_json("codex"))})
        scheduler = _scheduler(
            store, collector, registry, fetch_configs=[FetchConfig("codex", "cli")]
        )

        await scheduler.run_cycle()
        assert [w.key for w in scheduler.warning_registry.list()] == [
            ("usage", "codex", "cli")
        ]

        collector.usage["codex/cli"] = _ok(_usage_json("codex", 40.0, now))
        await scheduler.run_cycle()

        assert scheduler.warning_registry.list() == []

    @pytest.mark.asyncio
    async def test_error_line_becomes_warning_message(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
    ) -> "None":
        collector = MockCollector(
            usage={
                "claude/oauth": CommandResult(
                    exit_code=1,
                    stdout="",
                    stderr="fetching...\nError: OAuth token expired\nError: second",
                )
            },
            cost={"codex": _ok(_cost_json("codex"))},
        )
        scheduler = _scheduler(
            store, collector, registry, fetch_configs=[FetchConfig("claude", "oauth")]
        )

        await scheduler.run_cycle()

        [warning] = scheduler.warning_registry.list()
        assert warning.message == "Error: OAuth token expired"

    @pytest.mark.asyncio
    async def test_partial_output_with_non_zero_exit_is_stored(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
    ) -> "None":
        now = datetime.now(timezone.utc)
        collector = MockCollector(
            usage={
                "all/auto": CommandResult(
                    exit_code=1,
                    stdout=json.dumps(
                        [_usage_json("codex", 20.0, now), {"provider": "cursor"}]
                    ),
                    stderr="Error: cursor needs a browser session",
                )
            },
            cost={"codex": _ok(_cost_json("codex"))},
        )
        scheduler = _scheduler(
            store, collector, registry, fetch_configs=[FetchConfig("all", "auto")]
        )

        await scheduler.run_cycle()

        assert store.fetch_active_series() == ["codex"]
        assert scheduler.warning_registry.list() == []

    @pytest.mark.asyncio
    async def test_unparseable_output_records_warning(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
    ) -> "None":
        collector = MockCollector(
            usage={"codex/cli": CommandResult(exit_code=0, stdout="not json", stderr="")},
            cost={"codex": CommandResult(exit_code=2, stdout="", stderr="")},
        )
        scheduler = _scheduler(
            store, collector, registry, fetch_configs=[FetchConfig("codex", "cli")]
        )

        await scheduler.run_cycle()

        warnings = {w.key: w.message for w in scheduler.warning_registry.list()}
        assert "invalid usage JSON" in warnings[("usage", "codex", "cli")]
        assert warnings[("cost", "codex", "cost")] == "collector exited with code 2"
        assert store.record_count() == 0

    @pytest.mark.asyncio
    async def test_prunes_expired_cost_rows(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
    ) -> "None":
        now = datetime.now(timezone.utc)
        store.insert_cost(CostSample(provider="codex", timestamp=now - timedelta(days=10)))
        store.insert_cost(CostSample(provider="codex", timestamp=now - timedelta(days=1)))
        collector = MockCollector(cost={"codex": _ok(_cost_json("codex"))})
        scheduler = _scheduler(
            store, collector, registry, fetch_configs=[], cost_retention_days=7
        )

        await scheduler.run_cycle()

        # the day-old row and the one just collected
        assert store.cost_record_count() == 2

    @pytest.mark.asyncio
    async def test_publishes_predictions(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
    ) -> "None":
        now = datetime.now(timezone.utc)
        for minutes, used in ((40, 10.0), (30, 15.0), (20, 20.0)):
            store.insert(
                UsageSample(
                    provider="codex",
                    timestamp=now - timedelta(minutes=minutes),
                    primary_used_percent=used,
                )
            )
        collector = MockCollector(
            usage={"codex/cli": _ok(_usage_json("codex", 25.0, now - timedelta(minutes=10)))},
            cost={"codex": _ok(_cost_json("codex"))},
        )
        scheduler = _scheduler(
            store, collector, registry, fetch_configs=[FetchConfig("codex", "cli")]
        )

        await scheduler.run_cycle()

        rate = registry.get_sample_value(
            "quotacast_prediction_rate_percent_per_hour",
            {"provider": "codex", "window": "primary"},
        )
        assert rate == pytest.approx(30.0)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop_join(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
    ) -> "None":
        collector = MockCollector()
        scheduler = _scheduler(store, collector, registry, interval_seconds=3600)

        scheduler.start()
        assert scheduler.is_running
        # a second start is a no-op
        scheduler.start()

        # let the first cycle run, then stop during the interval wait
        for _ in range(100):
            if ("cost", "codex") in collector.calls:
                break
            await asyncio.sleep(0.01)

        scheduler.stop()
        scheduler.stop()
        await asyncio.wait_for(scheduler.join(), timeout=5)

        assert not scheduler.is_running
        # exactly one cycle: each target was invoked once
        assert collector.calls.count(("usage", "codex", "cli")) == 1

    @pytest.mark.asyncio
    async def test_start_right_after_stop_keeps_running(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
    ) -> "None":
        collector = MockCollector()
        scheduler = _scheduler(store, collector, registry, interval_seconds=0.05)

        scheduler.start()
        await asyncio.sleep(0.01)
        scheduler.stop()
        # the old loop has not exited yet
        scheduler.start()
        await asyncio.sleep(0.2)

        assert scheduler.is_running
        assert collector.calls.count(("usage", "codex", "cli")) >= 2

        scheduler.stop()
        await asyncio.wait_for(scheduler.join(), timeout=5)
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_stop_before_start_is_safe(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
    ) -> "None":
        scheduler = _scheduler(store, MockCollector(), registry)
        scheduler.stop()
        await scheduler.join()
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_fetch_now_runs_extra_cycle(
        self,
        store: "UsageHistoryStore",
        registry: "CollectorRegistry",
    ) -> "None":
        collector = MockCollector()
        scheduler = _scheduler(store, collector, registry)

        await scheduler.fetch_now()

        assert collector.calls.count(("usage", "codex", "cli")) == 1
        assert not scheduler.is_running
