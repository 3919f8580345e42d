import json
from datetime import date, datetime, timezone

import pytest

from quotacast.errors import ParseFault
from quotacast.payloads import (
    CostPayload,
    derive_cost_data,
    parse_cost_output,
    parse_usage_output,
)


def _usage_payload(provider: "str" = "codex", **overrides: "object") -> "dict":
    payload = {
        "provider": provider,
        "version": "0.42.0",
        "source": "cli",
        "usage": {
            "primary": {
                "usedPercent": 37.5,
                "windowMinutes": 300,
                "resetsAt": "2026-03-01T15:00:00Z",
                "resetDescription": "in 3h",
            },
            "secondary": {"usedPercent": 12.0, "windowMinutes": 10080},
            "updatedAt": "2026-03-01T12:00:00Z",
            "identity": {"accountEmail": "dev@example.com", "loginMethod": "plus"},
        },
        "credits": {"remaining": 88.5},
    }
    payload.update(overrides)
    return payload


class TestParseUsageOutput:
    def test_single_object(self) -> "None":
        payloads, faults = parse_usage_output(json.dumps(_usage_payload()))
        assert faults == []
        assert [p.provider for p in payloads] == ["codex"]

    def test_array(self) -> "None":
        text = json.dumps([_usage_payload("codex"), _usage_payload("claude")])
        payloads, faults = parse_usage_output(text)
        assert faults == []
        assert [p.provider for p in payloads] == ["codex", "claude"]

    def test_malformed_element_is_isolated(self) -> "None":
        broken = _usage_payload("gemini")
        del broken["usage"]["updatedAt"]
        text = json.dumps([_usage_payload("codex"), broken, "junk"])

        payloads, faults = parse_usage_output(text)

        assert [p.provider for p in payloads] == ["codex"]
        assert len(faults) == 2
        assert faults[0].provider == "gemini"
        assert faults[1].provider is None

    def test_unknown_fields_are_ignored(self) -> "None":
        payloads, _ = parse_usage_output(
            json.dumps(_usage_payload(extra={"anything": 1}))
        )
        assert len(payloads) == 1

    @pytest.mark.parametrize("text", ["", "   ", "{not json", "42", '"text"'])
    def test_unusable_output_raises(self, text: "str") -> "None":
        with pytest.raises(ParseFault):
            parse_usage_output(text)


class TestToSample:
    def test_normalizes_fields(self) -> "None":
        element = _usage_payload()
        [payload], _ = parse_usage_output(json.dumps(element))

        sample = payload.to_sample()

        assert sample.provider == "codex"
        assert sample.timestamp == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert sample.primary_used_percent == 37.5
        assert sample.primary_window_minutes == 300
        assert sample.primary_resets_at == datetime(
            2026, 3, 1, 15, 0, tzinfo=timezone.utc
        )
        assert sample.primary_reset_desc == "in 3h"
        assert sample.secondary_used_percent == 12.0
        assert sample.secondary_resets_at is None
        assert sample.tertiary_used_percent is None
        assert sample.account_email == "dev@example.com"
        assert sample.account_plan == "plus"
        assert sample.version == "0.42.0"
        assert sample.source_label == "cli"
        assert sample.credits_remaining == 88.5
        assert json.loads(sample.raw_payload) == element

    def test_snapshot_level_identity_fallback(self) -> "None":
        element = _usage_payload()
        usage = element["usage"]
        del usage["identity"]
        usage["accountEmail"] = "fallback@example.com"
        usage["loginMethod"] = "team"

        [payload], _ = parse_usage_output(json.dumps(element))
        sample = payload.to_sample()

        assert sample.account_email == "fallback@example.com"
        assert sample.account_plan == "team"


def _cost_payload(**overrides: "object") -> "dict":
    payload = {
        "provider": "claude",
        "daily": [
            {
                "date": "2026-02-28",
                "totalTokens": 1000,
                "totalCost": 1.5,
                "modelsUsed": ["sonnet"],
            },
            {
                "date": "2026-03-01",
                "totalTokens": 400,
                "totalCost": 0.25,
                "modelsUsed": ["haiku", "sonnet"],
                "modelBreakdowns": [{"modelName": "opus", "cost": 0.1}],
            },
            {
                "date": "2026-02-27",
                "totalTokens": 600,
                "totalCost": 1.0,
            },
        ],
    }
    payload.update(overrides)
    return payload


class TestDeriveCostData:
    def test_session_is_latest_day_and_period_is_sum(self, now: "datetime") -> "None":
        payload = CostPayload.model_validate(_cost_payload())

        cost = derive_cost_data(payload, now)

        assert cost.provider == "claude"
        assert cost.session_tokens == 400
        assert cost.session_cost_usd == pytest.approx(0.25)
        assert cost.period_tokens == 2000
        assert cost.period_cost_usd == pytest.approx(2.75)
        assert cost.period_days == 30
        assert cost.models_used == ["haiku", "opus", "sonnet"]
        assert cost.updated_at == now
        assert cost.divergences == []

    def test_matching_totals_do_not_diverge(self, now: "datetime") -> "None":
        payload = CostPayload.model_validate(
            _cost_payload(
                sessionTokens=400,
                sessionCostUSD=0.25,
                last30DaysTokens=2000,
                last30DaysCostUSD=2.75,
            )
        )
        assert derive_cost_data(payload, now).divergences == []

    def test_top_level_totals_are_flagged_not_used(self, now: "datetime") -> "None":
        payload = CostPayload.model_validate(
            _cost_payload(sessionCostUSD=9.99, last30DaysTokens=1)
        )

        cost = derive_cost_data(payload, now)

        assert cost.session_cost_usd == pytest.approx(0.25)
        assert cost.period_tokens == 2000
        assert cost.divergences == ["sessionCostUSD", "last30DaysTokens"]

    def test_no_daily_entries(self, now: "datetime") -> "None":
        cost = derive_cost_data(CostPayload(provider="codex"), now)
        assert cost.session_tokens is None
        assert cost.period_cost_usd is None
        assert cost.models_used == []

    def test_to_cost_sample(self, now: "datetime") -> "None":
        payload = CostPayload.model_validate(_cost_payload())

        sample = derive_cost_data(payload, now, period_days=7).to_cost_sample()

        assert sample.provider == "claude"
        assert sample.timestamp == now
        assert sample.period_days == 7
        assert sample.models == ["haiku", "opus", "sonnet"]

    def test_daily_dates_are_parsed(self) -> "None":
        payload = CostPayload.model_validate(_cost_payload())
        assert payload.daily[0].day == date(2026, 2, 28)


class TestParseCostOutput:
    def test_array_with_bad_element(self) -> "None":
        text = json.dumps([_cost_payload(), {"daily": []}])

        payloads, faults = parse_cost_output(text)

        assert [p.provider for p in payloads] == ["claude"]
        assert len(faults) == 1

    def test_invalid_json(self) -> "None":
        with pytest.raises(ParseFault):
            parse_cost_output("[")
