import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


@dataclass(frozen=True, slots=True)
class SchedulerWarning:
    # "usage" or "cost"
    kind: "str"
    providers: "str"
    source: "str"
    message: "str"
    timestamp: "datetime"

    @property
    def key(self) -> "tuple[str, str, str]":
        return (self.kind, self.providers, self.source)

    def to_dict(self) -> "dict[str, Any]":
        return {
            "kind": self.kind,
            "providers": self.providers,
            "source": self.source,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


class WarningRegistry:
    """
    WarningRegistry: Is a thread-safe record of the current failure
    state per collection target.

    Entries are keyed by (kind, providers, source). A failure records
    or overwrites the entry for its key and a success clears it, so
    only the most recent state per key is kept; this is not an error
    log.
    """

    def __init__(self) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._warnings: "dict[tuple[str, str, str], SchedulerWarning]" = {}

    def record(
        self,
        kind: "str",
        providers: "str",
        source: "str",
        message: "str",
        timestamp: "datetime | None" = None,
    ) -> "SchedulerWarning":
        """
        stores a warning for the key, replacing any earlier one.
        """
        warning = SchedulerWarning(
            kind=kind,
            providers=providers,
            source=source,
            message=message,
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        with self._lock:
            self._warnings[warning.key] = warning
        return warning

    def clear(self, kind: "str", providers: "str", source: "str") -> "bool":
        """
        removes the warning for the key. Returns True if one existed.
        """
        with self._lock:
            return self._warnings.pop((kind, providers, source), None) is not None

    def list(self) -> "list[SchedulerWarning]":
        """
        returns all current warnings, most recent first.
        """
        with self._lock:
            warnings = list(self._warnings.values())
        return sorted(warnings, key=lambda w: w.timestamp, reverse=True)

    def __len__(self) -> "int":
        with self._lock:
            return len(self._warnings)
