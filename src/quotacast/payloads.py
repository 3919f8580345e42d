"""
Collector output models.

The collector prints JSON on stdout: either one provider object or an
array of them. Each element is validated on its own so that one
malformed provider does not cost the rest of the batch.
"""

import json
import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError

from quotacast.errors import ParseFault
from quotacast.models import CostSample, UsageSample

logger = structlog.get_logger()

DEFAULT_COST_PERIOD_DAYS = 30

# half a cent
_COST_TOLERANCE_USD = 0.005


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RateWindowPayload(_Payload):
    used_percent: float = Field(alias="usedPercent")
    window_minutes: int | None = Field(default=None, alias="windowMinutes")
    resets_at: datetime | None = Field(default=None, alias="resetsAt")
    reset_description: str | None = Field(default=None, alias="resetDescription")


class IdentityPayload(_Payload):
    provider_id: str | None = Field(default=None, alias="providerID")
    account_email: str | None = Field(default=None, alias="accountEmail")
    account_organization: str | None = Field(default=None, alias="accountOrganization")
    login_method: str | None = Field(default=None, alias="loginMethod")


class UsageSnapshotPayload(_Payload):
    primary: RateWindowPayload | None = None
    secondary: RateWindowPayload | None = None
    tertiary: RateWindowPayload | None = None
    updated_at: datetime = Field(alias="updatedAt")
    identity: IdentityPayload | None = None
    account_email: str | None = Field(default=None, alias="accountEmail")
    login_method: str | None = Field(default=None, alias="loginMethod")


class CreditsPayload(_Payload):
    remaining: float
    updated_at: datetime | None = Field(default=None, alias="updatedAt")


class ProviderPayload(_Payload):
    """
    one provider's usage snapshot as printed by the collector.
    """

    provider: str
    account: str | None = None
    version: str | None = None
    source: str
    usage: UsageSnapshotPayload
    credits: CreditsPayload | None = None

    _raw: str | None = PrivateAttr(default=None)

    def to_sample(self) -> "UsageSample":
        """
        normalizes the payload into a storable sample. Identity fields
        take precedence over the snapshot-level email and plan.
        """
        usage = self.usage
        identity = usage.identity
        primary = usage.primary
        secondary = usage.secondary
        tertiary = usage.tertiary

        return UsageSample(
            provider=self.provider,
            timestamp=usage.updated_at,
            primary_used_percent=primary.used_percent if primary else None,
            primary_window_minutes=primary.window_minutes if primary else None,
            primary_resets_at=primary.resets_at if primary else None,
            primary_reset_desc=primary.reset_description if primary else None,
            secondary_used_percent=secondary.used_percent if secondary else None,
            secondary_window_minutes=secondary.window_minutes if secondary else None,
            secondary_resets_at=secondary.resets_at if secondary else None,
            secondary_reset_desc=secondary.reset_description if secondary else None,
            tertiary_used_percent=tertiary.used_percent if tertiary else None,
            tertiary_window_minutes=tertiary.window_minutes if tertiary else None,
            account_email=(identity.account_email if identity else None)
            or usage.account_email,
            account_plan=(identity.login_method if identity else None)
            or usage.login_method,
            version=self.version,
            source_label=self.source,
            credits_remaining=self.credits.remaining if self.credits else None,
            raw_payload=self._raw or self.model_dump_json(by_alias=True),
        )


class ModelBreakdown(_Payload):
    model_name: str = Field(alias="modelName")
    cost: float | None = None


class DailyCostEntry(_Payload):
    day: date = Field(alias="date")
    total_tokens: int | None = Field(default=None, alias="totalTokens")
    total_cost: float | None = Field(default=None, alias="totalCost")
    models_used: list[str] = Field(default_factory=list, alias="modelsUsed")
    model_breakdowns: list[ModelBreakdown] = Field(
        default_factory=list, alias="modelBreakdowns"
    )


class CostPayload(_Payload):
    """
    one provider's cost report. The top-level totals are informational
    only; derive_cost_data recomputes them from `daily`.
    """

    provider: str
    session_tokens: int | None = Field(default=None, alias="sessionTokens")
    session_cost_usd: float | None = Field(default=None, alias="sessionCostUSD")
    last_30_days_tokens: int | None = Field(default=None, alias="last30DaysTokens")
    last_30_days_cost_usd: float | None = Field(
        default=None, alias="last30DaysCostUSD"
    )
    daily: list[DailyCostEntry] = Field(default_factory=list)

    _raw: str | None = PrivateAttr(default=None)


_PayloadT = TypeVar("_PayloadT", bound=_Payload)


def _parse_batch(
    text: "str",
    model: "type[_PayloadT]",
    kind: "str",
) -> "tuple[list[_PayloadT], list[ParseFault]]":
    if not text or not text.strip():
        raise ParseFault(f"empty {kind} output")

    try:
        decoded = json.loads(text)
    except ValueError as exc:
        raise ParseFault(f"invalid {kind} JSON: {exc}") from exc

    if isinstance(decoded, dict):
        elements: "list[Any]" = [decoded]
    elif isinstance(decoded, list):
        elements = decoded
    else:
        raise ParseFault(
            f"{kind} output must be an object or array, got {type(decoded).__name__}"
        )

    payloads: "list[_PayloadT]" = []
    faults: "list[ParseFault]" = []
    for index, element in enumerate(elements):
        if not isinstance(element, dict):
            faults.append(ParseFault(f"{kind} element {index} is not an object"))
            continue

        provider = element.get("provider")
        provider = provider if isinstance(provider, str) else None
        try:
            payload = model.model_validate(element)
        except ValidationError as exc:
            faults.append(
                ParseFault(
                    f"invalid {kind} element {index}: "
                    f"{exc.error_count()} validation error(s)",
                    provider=provider,
                )
            )
            logger.debug(
                "payload_element_invalid",
                kind=kind,
                index=index,
                provider=provider,
                errors=exc.errors(include_url=False),
            )
            continue

        payload._raw = json.dumps(element, separators=(",", ":"))
        payloads.append(payload)

    return payloads, faults


def parse_usage_output(text: "str") -> "tuple[list[ProviderPayload], list[ParseFault]]":
    """
    parses collector usage output. Raises ParseFault when the output as
    a whole is unusable; per-element problems come back as the second
    element of the tuple.
    """
    return _parse_batch(text, ProviderPayload, "usage")


def parse_cost_output(text: "str") -> "tuple[list[CostPayload], list[ParseFault]]":
    return _parse_batch(text, CostPayload, "cost")


@dataclass
class ProviderCostData:
    """
    ProviderCostData is the normalized cost view for one provider,
    derived from the collector's daily breakdown.
    """

    provider: "str"
    session_tokens: "int | None"
    session_cost_usd: "float | None"
    period_tokens: "int | None"
    period_cost_usd: "float | None"
    period_days: "int"
    models_used: "list[str]"
    updated_at: "datetime"
    # top-level totals that disagreed with the daily derived figures
    divergences: "list[str]" = field(default_factory=list)

    def to_cost_sample(self) -> "CostSample":
        return CostSample(
            provider=self.provider,
            timestamp=self.updated_at,
            session_tokens=self.session_tokens,
            session_cost_usd=self.session_cost_usd,
            period_tokens=self.period_tokens,
            period_cost_usd=self.period_cost_usd,
            period_days=self.period_days,
            models_used=tuple(self.models_used),
        )

    def to_dict(self) -> "dict[str, Any]":
        return {
            "provider": self.provider,
            "sessionTokens": self.session_tokens,
            "sessionCostUSD": self.session_cost_usd,
            "periodTokens": self.period_tokens,
            "periodCostUSD": self.period_cost_usd,
            "periodDays": self.period_days,
            "modelsUsed": list(self.models_used),
            "updatedAt": self.updated_at.isoformat(),
        }


def _sum_optional(values: "list[int | float | None]") -> "int | float | None":
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present)


def _diverges(reported: "int | float | None", derived: "int | float | None") -> "bool":
    if reported is None:
        return False
    if derived is None:
        return True
    return not math.isclose(reported, derived, abs_tol=_COST_TOLERANCE_USD)


def derive_cost_data(
    payload: "CostPayload",
    now: "datetime",
    period_days: "int" = DEFAULT_COST_PERIOD_DAYS,
) -> "ProviderCostData":
    """
    derives session and period figures from the daily list: the
    chronologically last day is the session, the sum over all days is
    the period. Top-level totals are never used, but any that disagree
    are reported in `divergences`.
    """
    daily = sorted(payload.daily, key=lambda d: d.day)
    latest = daily[-1] if daily else None

    session_tokens = latest.total_tokens if latest else None
    session_cost = latest.total_cost if latest else None
    period_tokens = _sum_optional([d.total_tokens for d in daily])
    period_cost = _sum_optional([d.total_cost for d in daily])

    models: "set[str]" = set()
    for entry in daily:
        models.update(entry.models_used)
        models.update(b.model_name for b in entry.model_breakdowns)

    checks = [
        ("sessionTokens", payload.session_tokens, session_tokens),
        ("sessionCostUSD", payload.session_cost_usd, session_cost),
        ("last30DaysTokens", payload.last_30_days_tokens, period_tokens),
        ("last30DaysCostUSD", payload.last_30_days_cost_usd, period_cost),
    ]
    divergences: "list[str]" = []
    for name, reported, derived in checks:
        if _diverges(reported, derived):
            divergences.append(name)
            logger.warning(
                "cost_total_divergence",
                provider=payload.provider,
                field=name,
                reported=reported,
                derived=derived,
            )

    return ProviderCostData(
        provider=payload.provider,
        session_tokens=session_tokens,
        session_cost_usd=session_cost,
        period_tokens=period_tokens,
        period_cost_usd=period_cost,
        period_days=period_days,
        models_used=sorted(models),
        updated_at=now,
        divergences=divergences,
    )
