import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from quotacast.errors import UnknownProviderError


class UsageProvider(str, Enum):
    """
    UsageProvider enumerates the series keys the prediction layer
    knows about. The store itself accepts any string.
    """

    CODEX = "codex"
    CLAUDE = "claude"
    GEMINI = "gemini"
    CURSOR = "cursor"
    AUGMENT = "augment"
    FACTORY = "factory"

    @classmethod
    def parse(cls, value: "str | UsageProvider") -> "UsageProvider":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownProviderError(str(value)) from None


class UsageWindow(str, Enum):
    """
    selects which of the three rate windows a prediction regresses on.
    """

    PRIMARY = "primary"
    SECONDARY = "secondary"
    TERTIARY = "tertiary"

    @property
    def field_name(self) -> "str":
        return f"{self.value}_used_percent"


@dataclass(frozen=True, slots=True)
class UsageSample:
    """
    UsageSample is one collection-cycle snapshot of a provider's
    rate windows. Samples are immutable once written; corrections
    are new samples.
    """

    provider: "str"
    # instant the snapshot represents, supplied by the collector
    timestamp: "datetime"
    primary_used_percent: "float | None" = None
    primary_window_minutes: "int | None" = None
    primary_resets_at: "datetime | None" = None
    primary_reset_desc: "str | None" = None
    secondary_used_percent: "float | None" = None
    secondary_window_minutes: "int | None" = None
    secondary_resets_at: "datetime | None" = None
    secondary_reset_desc: "str | None" = None
    tertiary_used_percent: "float | None" = None
    tertiary_window_minutes: "int | None" = None
    account_email: "str | None" = None
    account_plan: "str | None" = None
    version: "str | None" = None
    source_label: "str | None" = None
    credits_remaining: "float | None" = None
    # opaque copy of the originating payload, kept for audit
    raw_payload: "str | None" = None
    # assigned by the store on insert
    id: "int" = 0

    def used_percent(self, window: "UsageWindow") -> "float | None":
        return getattr(self, window.field_name)


@dataclass(frozen=True, slots=True)
class CostSample:
    """
    CostSample is one cost snapshot for a provider: the short
    "session" period plus a longer rolling period.
    """

    provider: "str"
    timestamp: "datetime"
    session_tokens: "int | None" = None
    session_cost_usd: "float | None" = None
    period_tokens: "int | None" = None
    period_cost_usd: "float | None" = None
    period_days: "int | None" = None
    # set semantics; kept sorted and deduplicated
    models_used: "tuple[str, ...]" = field(default_factory=tuple)
    id: "int" = 0

    def __post_init__(self) -> "None":
        object.__setattr__(self, "models_used", tuple(sorted(set(self.models_used))))

    @property
    def models(self) -> "list[str]":
        return list(self.models_used)

    def models_json(self) -> "str | None":
        if not self.models_used:
            return None
        return json.dumps(list(self.models_used))

    @staticmethod
    def models_from_json(value: "str | None") -> "tuple[str, ...]":
        if not value:
            return ()
        try:
            decoded = json.loads(value)
        except ValueError:
            return ()
        if not isinstance(decoded, list):
            return ()
        return tuple(str(m) for m in decoded)


@dataclass(frozen=True, slots=True)
class UsageStatistics:
    """
    aggregate over one provider's samples in [period_start, period_end].
    Derived fields are None when record_count is 0.
    """

    provider: "str"
    period_start: "datetime"
    period_end: "datetime"
    record_count: "int"
    avg_primary_usage: "float | None" = None
    max_primary_usage: "float | None" = None
    min_primary_usage: "float | None" = None
    avg_secondary_usage: "float | None" = None
    max_secondary_usage: "float | None" = None


@dataclass(frozen=True, slots=True)
class CostStatistics:
    provider: "str"
    period_start: "datetime"
    period_end: "datetime"
    record_count: "int"
    total_cost_usd: "float | None" = None
    total_tokens: "int | None" = None
    avg_cost_usd: "float | None" = None
    max_cost_usd: "float | None" = None
