from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest
from prometheus_client import CollectorRegistry

from quotacast.storage.store import UsageHistoryStore


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def store(tmp_path: "Path") -> "Iterator[UsageHistoryStore]":
    """
    file backed store in a per-test temporary directory.
    """
    s = UsageHistoryStore(tmp_path / "history.sqlite")
    yield s
    s.close()


@pytest.fixture()
def now() -> "datetime":
    # fixed reference instant so tests do not depend on the wall clock
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
