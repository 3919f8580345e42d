from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True, slots=True)
class CommandResult:
    """
    captured outcome of one collector invocation.
    """

    exit_code: "int"
    stdout: "str"
    stderr: "str"

    @property
    def ok(self) -> "bool":
        return self.exit_code == 0

    def error_lines(self) -> "list[str]":
        """
        returns the stderr lines the collector marks as errors.
        """
        return [
            line.strip()
            for line in self.stderr.splitlines()
            if line.strip().startswith("Error:")
        ]


class UsageCollector(Protocol):
    """
    UsageCollector stands as the common protocol for anything that
    can produce collector output for the scheduler.

    Implementations return the raw output; parsing and normalization
    happen in the scheduler. Launch failures and timeouts are raised
    as CollectorFault, a non-zero exit is reported via exit_code.
    """

    async def fetch_usage(self, providers: "str", source: "str") -> "CommandResult": ...

    async def fetch_cost(self, provider: "str") -> "CommandResult": ...
