from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from quotacast.models import UsageSample, UsageWindow
from quotacast.payloads import ProviderCostData
from quotacast.prediction import ProviderPredictions, UsagePrediction


class MetricsUpdater:
    """
    applies samples, cost data and predictions to Prometheus metrics.
    Gauges always reflect the latest value; a provider missing from a
    prediction refresh has its prediction series removed.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._usage_percent: "Gauge" = Gauge(
            "quotacast_usage_percent",
            "Latest used percentage per provider and rate window",
            ["provider", "window"],
            registry=registry,
        )
        self._credits_remaining: "Gauge" = Gauge(
            "quotacast_credits_remaining",
            "Latest remaining credits per provider",
            ["provider"],
            registry=registry,
        )
        self._session_cost: "Gauge" = Gauge(
            "quotacast_session_cost_usd",
            "Cost in USD of the latest day per provider",
            ["provider"],
            registry=registry,
        )
        self._period_cost: "Gauge" = Gauge(
            "quotacast_period_cost_usd",
            "Cost in USD over the rolling cost period per provider",
            ["provider"],
            registry=registry,
        )
        self._period_tokens: "Gauge" = Gauge(
            "quotacast_period_tokens",
            "Tokens over the rolling cost period per provider",
            ["provider"],
            registry=registry,
        )
        self._fetch_duration: "Histogram" = Histogram(
            "quotacast_fetch_duration_seconds",
            "Duration of collector invocations",
            ["stage"],
            registry=registry,
        )
        self._fetch_errors: "Counter" = Counter(
            "quotacast_fetch_errors_total",
            "Total number of failed collector fetches by stage and target",
            ["stage", "target"],
            registry=registry,
        )
        self._last_fetch_success: "Gauge" = Gauge(
            "quotacast_last_fetch_success_timestamp_seconds",
            "Unix timestamp of the last successful fetch per stage and target",
            ["stage", "target"],
            registry=registry,
        )
        self._active_warnings: "Gauge" = Gauge(
            "quotacast_active_warnings",
            "Number of collection targets currently failing",
            registry=registry,
        )
        self._prediction_rate: "Gauge" = Gauge(
            "quotacast_prediction_rate_percent_per_hour",
            "Fitted usage change in percent per hour",
            ["provider", "window"],
            registry=registry,
        )
        self._prediction_confidence: "Gauge" = Gauge(
            "quotacast_prediction_confidence",
            "Heuristic confidence of the usage forecast",
            ["provider", "window"],
            registry=registry,
        )
        self._prediction_time_to_limit: "Gauge" = Gauge(
            "quotacast_prediction_time_to_limit_seconds",
            "Forecast seconds until the window reaches 100%",
            ["provider", "window"],
            registry=registry,
        )
        self._store_records: "Gauge" = Gauge(
            "quotacast_store_records",
            "Rows held in the history store",
            ["kind"],
            registry=registry,
        )
        self._healthy: "Gauge" = Gauge(
            "quotacast_healthy",
            "1 while no collection target is failing, 0 otherwise",
            registry=registry,
        )
        self._predicted: "set[tuple[str, str]]" = set()

    def update_usage(self, sample: "UsageSample") -> "None":
        for window in UsageWindow:
            value = sample.used_percent(window)
            if value is not None:
                self._usage_percent.labels(
                    provider=sample.provider, window=window.value
                ).set(value)
        if sample.credits_remaining is not None:
            self._credits_remaining.labels(provider=sample.provider).set(
                sample.credits_remaining
            )

    def update_cost(self, cost: "ProviderCostData") -> "None":
        if cost.session_cost_usd is not None:
            self._session_cost.labels(provider=cost.provider).set(cost.session_cost_usd)
        if cost.period_cost_usd is not None:
            self._period_cost.labels(provider=cost.provider).set(cost.period_cost_usd)
        if cost.period_tokens is not None:
            self._period_tokens.labels(provider=cost.provider).set(cost.period_tokens)

    def update_predictions(
        self, predictions: "dict[str, ProviderPredictions]"
    ) -> "None":
        """
        publishes the latest forecasts. Series from an earlier refresh
        that have no forecast now are dropped rather than left stale.
        """
        current: "set[tuple[str, str]]" = set()
        for provider, both in predictions.items():
            for window, prediction in (
                (UsageWindow.PRIMARY, both.primary),
                (UsageWindow.SECONDARY, both.secondary),
            ):
                if prediction is None:
                    continue
                self._set_prediction(provider, window.value, prediction)
                current.add((provider, window.value))

        for provider, window in self._predicted - current:
            self._remove_prediction(provider, window)
        self._predicted = current

    def _set_prediction(
        self, provider: "str", window: "str", prediction: "UsagePrediction"
    ) -> "None":
        labels = {"provider": provider, "window": window}
        self._prediction_rate.labels(**labels).set(prediction.rate_per_hour)
        self._prediction_confidence.labels(**labels).set(prediction.confidence)
        if prediction.time_to_limit is not None:
            self._prediction_time_to_limit.labels(**labels).set(
                prediction.time_to_limit.total_seconds()
            )
        else:
            self._prediction_time_to_limit.labels(**labels).set(float("inf"))

    def _remove_prediction(self, provider: "str", window: "str") -> "None":
        for gauge in (
            self._prediction_rate,
            self._prediction_confidence,
            self._prediction_time_to_limit,
        ):
            try:
                gauge.remove(provider, window)
            except KeyError:
                pass

    def observe_fetch_duration(self, stage: "str", duration_seconds: "float") -> "None":
        self._fetch_duration.labels(stage=stage).observe(duration_seconds)

    def inc_fetch_error(self, stage: "str", target: "str") -> "None":
        self._fetch_errors.labels(stage=stage, target=target).inc()

    def set_last_fetch_success(
        self, stage: "str", target: "str", timestamp: "float"
    ) -> "None":
        self._last_fetch_success.labels(stage=stage, target=target).set(timestamp)

    def set_active_warnings(self, count: "int") -> "None":
        self._active_warnings.set(count)

    def set_health(self, healthy: "bool") -> "None":
        self._healthy.set(1 if healthy else 0)

    def set_store_records(self, usage: "int", cost: "int") -> "None":
        self._store_records.labels(kind="usage").set(usage)
        self._store_records.labels(kind="cost").set(cost)
