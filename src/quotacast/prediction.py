"""
Linear extrapolation of quota usage.

A prediction regresses one rate window's used-percent readings against
time and extrapolates the fitted line to find when it crosses 100%.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable

import numpy as np
import structlog

from quotacast.models import UsageProvider, UsageSample, UsageWindow
from quotacast.storage.store import MAX_QUERY_LIMIT, UsageHistoryStore

logger = structlog.get_logger()

LIMIT_PERCENT = 100.0

MINIMUM_DATA_POINTS = 3
# 5 minutes
MINIMUM_TIME_SPAN_SECONDS = 300.0

_SECONDS_PER_HOUR = 3600.0
_DURATION_CAP_HOURS = 30 * 24


class PredictionStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    AT_LIMIT = "atLimit"
    DECREASING = "decreasing"


def classify_status(
    current_usage: "float",
    time_to_limit: "timedelta | None",
) -> "PredictionStatus":
    """
    maps a fitted current value and time-to-limit to a status. Being
    at or over the limit wins over any time based classification.
    """
    if current_usage >= LIMIT_PERCENT:
        return PredictionStatus.AT_LIMIT
    if time_to_limit is None or time_to_limit.total_seconds() <= 0:
        return PredictionStatus.DECREASING

    hours = time_to_limit.total_seconds() / _SECONDS_PER_HOUR
    if hours < 1:
        return PredictionStatus.CRITICAL
    if hours < 4:
        return PredictionStatus.WARNING
    return PredictionStatus.HEALTHY


def format_duration(time_to_limit: "timedelta | None") -> "str | None":
    """
    renders a time-to-limit as "45m", "3h 30m", "2d 5h" or "30d+".
    """
    if time_to_limit is None:
        return None
    seconds = time_to_limit.total_seconds()
    if seconds <= 0:
        return None

    hours = int(seconds // _SECONDS_PER_HOUR)
    if hours > _DURATION_CAP_HOURS:
        return "30d+"

    minutes = int((seconds % _SECONDS_PER_HOUR) // 60)
    if hours > 24:
        return f"{hours // 24}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def _as_utc(value: "datetime") -> "datetime":
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_datetime(value: "str | None") -> "datetime | None":
    if value is None:
        return None
    return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


@dataclass(frozen=True, slots=True)
class UsagePrediction:
    """
    UsagePrediction is a forecast for one rate window of one provider.
    It is derived on demand and never persisted.

    `confidence` is a heuristic in [0, 1] blending sample count, time
    span and fit quality. It is not a statistical confidence interval
    and should not be shown to users as a probability.
    """

    provider: "str"
    # fitted values, clamped to [0, 100]
    current_usage: "float"
    predicted_usage: "float"
    calculated_at: "datetime"
    predicted_at: "datetime"
    # None when usage is flat, decreasing or already at the limit
    time_to_limit: "timedelta | None"
    limit_reached_at: "datetime | None"
    rate_per_hour: "float"
    confidence: "float"
    data_point_count: "int"
    data_time_span: "timedelta"

    @property
    def status(self) -> "PredictionStatus":
        return classify_status(self.current_usage, self.time_to_limit)

    @property
    def time_to_limit_description(self) -> "str | None":
        return format_duration(self.time_to_limit)

    def to_dict(self) -> "dict[str, Any]":
        return {
            "provider": self.provider,
            "currentUsage": self.current_usage,
            "predictedUsage": self.predicted_usage,
            "calculatedAt": self.calculated_at.isoformat(),
            "predictedAt": self.predicted_at.isoformat(),
            "estimatedTimeToLimit": (
                self.time_to_limit.total_seconds()
                if self.time_to_limit is not None
                else None
            ),
            "estimatedLimitDate": (
                self.limit_reached_at.isoformat()
                if self.limit_reached_at is not None
                else None
            ),
            "ratePerHour": self.rate_per_hour,
            "confidence": self.confidence,
            "dataPointCount": self.data_point_count,
            "dataTimeSpan": self.data_time_span.total_seconds(),
            "status": self.status.value,
            "timeToLimitDescription": self.time_to_limit_description,
        }

    @classmethod
    def from_dict(cls, data: "dict[str, Any]") -> "UsagePrediction":
        """
        rebuilds a prediction from its serialized form. Derived keys
        (status, timeToLimitDescription) are ignored and recomputed.
        """
        time_to_limit = data.get("estimatedTimeToLimit")
        return cls(
            provider=data["provider"],
            current_usage=float(data["currentUsage"]),
            predicted_usage=float(data["predictedUsage"]),
            calculated_at=_parse_datetime(data["calculatedAt"]),
            predicted_at=_parse_datetime(data["predictedAt"]),
            time_to_limit=(
                timedelta(seconds=float(time_to_limit))
                if time_to_limit is not None
                else None
            ),
            limit_reached_at=_parse_datetime(data.get("estimatedLimitDate")),
            rate_per_hour=float(data["ratePerHour"]),
            confidence=float(data["confidence"]),
            data_point_count=int(data["dataPointCount"]),
            data_time_span=timedelta(seconds=float(data["dataTimeSpan"])),
        )


@dataclass(frozen=True, slots=True)
class ProviderPredictions:
    """
    primary (session) and secondary (weekly) forecasts for one
    provider, regressed from the same sample set.
    """

    provider: "str"
    primary: "UsagePrediction | None"
    secondary: "UsagePrediction | None"

    def to_dict(self) -> "dict[str, Any]":
        return {
            "provider": self.provider,
            "primary": self.primary.to_dict() if self.primary else None,
            "secondary": self.secondary.to_dict() if self.secondary else None,
        }


@dataclass(frozen=True, slots=True)
class RegressionResult:
    # change per second
    slope: "float"
    # fitted value at reference_time
    intercept: "float"
    r2: "float"
    reference_time: "datetime"

    def value_at(self, when: "datetime") -> "float":
        return self.intercept + self.slope * (when - self.reference_time).total_seconds()


def linear_regression(points: "list[tuple[datetime, float]]") -> "RegressionResult":
    """
    ordinary least squares of value against seconds since the first
    point. R² is clamped to [0, 1] and is 0 when every value is the
    same. With no spread in time the line is flat at the mean.
    """
    if not points:
        raise ValueError("linear_regression needs at least one point")

    reference_time = points[0][0]
    x = np.array(
        [(ts - reference_time).total_seconds() for ts, _ in points], dtype=float
    )
    y = np.array([value for _, value in points], dtype=float)

    if len(points) < 2 or np.ptp(x) == 0:
        return RegressionResult(
            slope=0.0,
            intercept=float(np.mean(y)),
            r2=0.0,
            reference_time=reference_time,
        )

    # centered sums keep constant input at an exact zero slope
    dx = x - np.mean(x)
    dy = y - np.mean(y)
    slope = float(np.sum(dx * dy) / np.sum(dx * dx))
    intercept = float(np.mean(y) - slope * np.mean(x))

    fitted = intercept + slope * x
    ss_res = float(np.sum((y - fitted) ** 2))
    ss_tot = float(np.sum(dy**2))
    r2 = 1.0 - ss_res / ss_tot if ss_tot > 0 else 0.0

    return RegressionResult(
        slope=slope,
        intercept=intercept,
        r2=max(0.0, min(1.0, r2)),
        reference_time=reference_time,
    )


def calculate_confidence(
    data_points: "int",
    time_span: "timedelta",
    r2: "float",
) -> "float":
    if data_points >= 50:
        points_factor = 1.0
    elif data_points >= 20:
        points_factor = 0.8
    elif data_points >= 10:
        points_factor = 0.6
    else:
        points_factor = 0.4

    hours = time_span.total_seconds() / _SECONDS_PER_HOUR
    if hours >= 12:
        time_factor = 1.0
    elif hours >= 4:
        time_factor = 0.8
    elif hours >= 1:
        time_factor = 0.6
    else:
        time_factor = 0.4

    return points_factor * 0.3 + time_factor * 0.3 + r2 * 0.4


def _clamp_percent(value: "float") -> "float":
    return max(0.0, min(LIMIT_PERCENT, value))


class UsagePredictionEngine:
    """
    UsagePredictionEngine turns a provider's recent samples into a
    UsagePrediction. Sparse data is a normal outcome and yields None;
    only store faults are raised.
    """

    def predict(
        self,
        samples: "Iterable[UsageSample]",
        horizon_hours: "float" = 1.0,
        window: "UsageWindow" = UsageWindow.PRIMARY,
        now: "datetime | None" = None,
    ) -> "UsagePrediction | None":
        samples = list(samples)
        points = sorted(
            (
                (_as_utc(s.timestamp), float(value))
                for s in samples
                if (value := s.used_percent(window)) is not None
            ),
            key=lambda p: p[0],
        )

        if len(points) < MINIMUM_DATA_POINTS:
            return None

        time_span = points[-1][0] - points[0][0]
        if time_span.total_seconds() < MINIMUM_TIME_SPAN_SECONDS:
            return None

        regression = linear_regression(points)

        now = _as_utc(now) if now is not None else datetime.now(timezone.utc)
        target = now + timedelta(hours=horizon_hours)
        current = regression.value_at(now)
        predicted = regression.value_at(target)

        time_to_limit: "timedelta | None" = None
        limit_reached_at: "datetime | None" = None
        if regression.slope > 0 and current < LIMIT_PERCENT:
            hours_to_limit = (LIMIT_PERCENT - current) / (
                regression.slope * _SECONDS_PER_HOUR
            )
            time_to_limit = timedelta(hours=hours_to_limit)
            limit_reached_at = now + time_to_limit

        return UsagePrediction(
            provider=samples[0].provider if samples else "unknown",
            current_usage=_clamp_percent(current),
            predicted_usage=_clamp_percent(predicted),
            calculated_at=now,
            predicted_at=target,
            time_to_limit=time_to_limit,
            limit_reached_at=limit_reached_at,
            rate_per_hour=regression.slope * _SECONDS_PER_HOUR,
            confidence=calculate_confidence(len(points), time_span, regression.r2),
            data_point_count=len(points),
            data_time_span=time_span,
        )

    def _fetch_window(
        self,
        store: "UsageHistoryStore",
        provider: "UsageProvider",
        lookback_hours: "float",
        now: "datetime",
    ) -> "list[UsageSample]":
        since = now - timedelta(hours=lookback_hours)
        return store.fetch_history(provider.value, MAX_QUERY_LIMIT, since=since)

    def predict_for_series(
        self,
        store: "UsageHistoryStore",
        provider: "str | UsageProvider",
        lookback_hours: "float" = 24.0,
        horizon_hours: "float" = 1.0,
        window: "UsageWindow" = UsageWindow.PRIMARY,
        now: "datetime | None" = None,
    ) -> "UsagePrediction | None":
        """
        fetches the last `lookback_hours` of samples for `provider` and
        predicts from them. Raises UnknownProviderError for a provider
        outside UsageProvider.
        """
        provider = UsageProvider.parse(provider)
        now = _as_utc(now) if now is not None else datetime.now(timezone.utc)
        samples = self._fetch_window(store, provider, lookback_hours, now)
        return self.predict(samples, horizon_hours, window, now)

    def predict_both(
        self,
        store: "UsageHistoryStore",
        provider: "str | UsageProvider",
        lookback_hours: "float" = 24.0,
        horizon_hours: "float" = 1.0,
        now: "datetime | None" = None,
    ) -> "ProviderPredictions":
        provider = UsageProvider.parse(provider)
        now = _as_utc(now) if now is not None else datetime.now(timezone.utc)
        samples = self._fetch_window(store, provider, lookback_hours, now)
        return ProviderPredictions(
            provider=provider.value,
            primary=self.predict(samples, horizon_hours, UsageWindow.PRIMARY, now),
            secondary=self.predict(samples, horizon_hours, UsageWindow.SECONDARY, now),
        )

    def predict_all(
        self,
        store: "UsageHistoryStore",
        lookback_hours: "float" = 24.0,
        horizon_hours: "float" = 1.0,
        window: "UsageWindow" = UsageWindow.PRIMARY,
        now: "datetime | None" = None,
    ) -> "list[UsagePrediction]":
        """
        predicts every known provider, skipping those without enough
        data.
        """
        predictions: "list[UsagePrediction]" = []
        for provider in UsageProvider:
            prediction = self.predict_for_series(
                store, provider, lookback_hours, horizon_hours, window, now
            )
            if prediction is not None:
                predictions.append(prediction)
        return predictions

    def predict_all_both(
        self,
        store: "UsageHistoryStore",
        lookback_hours: "float" = 24.0,
        horizon_hours: "float" = 1.0,
        now: "datetime | None" = None,
    ) -> "dict[str, ProviderPredictions]":
        """
        runs predict_both for every active series that is a known
        provider. Unknown series keys in the store are skipped.
        """
        known = {p.value for p in UsageProvider}
        predictions: "dict[str, ProviderPredictions]" = {}
        for provider in store.fetch_active_series():
            if provider not in known:
                logger.debug("prediction_skipped_unknown_provider", provider=provider)
                continue
            predictions[provider] = self.predict_both(
                store, provider, lookback_hours, horizon_hours, now
            )
        return predictions
