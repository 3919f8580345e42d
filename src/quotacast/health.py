from typing import Any

from quotacast.storage.store import UsageHistoryStore
from quotacast.warning_registry import WarningRegistry

STATUS_OK = "ok"
STATUS_WARNING = "warning"


def build_health_report(
    store: "UsageHistoryStore",
    registry: "WarningRegistry",
) -> "dict[str, Any]":
    """
    builds the liveness/readiness payload: "ok" while no collection
    target is failing, "warning" otherwise, plus the store row counts.
    Store faults propagate to the caller.
    """
    warnings = registry.list()
    return {
        "status": STATUS_WARNING if warnings else STATUS_OK,
        "records": store.record_count(),
        "costRecords": store.cost_record_count(),
        "warnings": [w.to_dict() for w in warnings],
    }
