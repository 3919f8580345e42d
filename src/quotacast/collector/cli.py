import asyncio
import os
import shutil
import signal
import time
from collections.abc import Mapping
from pathlib import Path

import structlog

from quotacast.collector.base import CommandResult
from quotacast.errors import CollectorFault

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 120.0

EXECUTABLE_NAMES: "tuple[str, ...]" = ("codexbar", "CodexBarCLI")

# the child only ever sees these variables (plus NO_COLOR)
ALLOWED_ENV_KEYS: "frozenset[str]" = frozenset(
    {
        # core execution
        "PATH",
        "HOME",
        "SHELL",
        "USER",
        "LOGNAME",
        "LANG",
        "LC_ALL",
        "TERM",
        # proxies
        "HTTP_PROXY",
        "HTTPS_PROXY",
        "NO_PROXY",
        "http_proxy",
        "https_proxy",
        # provider credentials
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
        "GEMINI_API_KEY",
        "GOOGLE_API_KEY",
        "GROQ_API_KEY",
        "MISTRAL_API_KEY",
    }
)
ALLOWED_ENV_PREFIXES: "tuple[str, ...]" = (
    "OPENAI_",
    "ANTHROPIC_",
    "GEMINI_",
    "GOOGLE_",
    "CODEX_",
    "CLAUDE_",
)


def filter_environment(environ: "Mapping[str, str]") -> "dict[str, str]":
    """
    builds the child environment from an explicit allow-list of names
    and prefixes. Everything else in the parent environment is dropped.
    """
    env = {
        key: value
        for key, value in environ.items()
        if key in ALLOWED_ENV_KEYS or key.startswith(ALLOWED_ENV_PREFIXES)
    }
    env["NO_COLOR"] = "1"
    return env


def _candidate_paths(cwd: "Path") -> "list[Path]":
    build = cwd / ".build"
    return [
        # built from source
        build / "debug" / "CodexBarCLI",
        build / "x86_64-unknown-linux-gnu" / "debug" / "CodexBarCLI",
        build / "aarch64-unknown-linux-gnu" / "debug" / "CodexBarCLI",
        build / "release" / "CodexBarCLI",
        build / "x86_64-unknown-linux-gnu" / "release" / "CodexBarCLI",
        build / "aarch64-unknown-linux-gnu" / "release" / "CodexBarCLI",
        # system installs
        Path("/usr/local/bin/codexbar"),
        Path("/opt/homebrew/bin/codexbar"),
    ]


def _is_executable(path: "Path") -> "bool":
    return path.is_file() and os.access(path, os.X_OK)


def find_collector_executable(
    explicit: "str | None" = None,
    cwd: "Path | None" = None,
) -> "str | None":
    """
    locates the collector binary. An explicit path must exist and be
    executable; otherwise build outputs, system locations and finally
    PATH are searched. Returns None when nothing is found.
    """
    if explicit:
        path = Path(explicit).expanduser()
        if not _is_executable(path):
            raise CollectorFault(f"collector {explicit} is not an executable file")
        return str(path)

    for candidate in _candidate_paths(cwd or Path.cwd()):
        if _is_executable(candidate):
            return str(candidate)

    for name in EXECUTABLE_NAMES:
        found = shutil.which(name)
        if found:
            return found

    return None


def _kill(process: "asyncio.subprocess.Process") -> "None":
    try:
        if hasattr(os, "killpg"):
            # the child runs in its own session, take its helpers down too
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        pass


class CLICollector:
    """
    CLICollector implements the UsageCollector protocol by running the
    external collector binary as an asyncio subprocess, so a slow or
    hung collector never blocks the event loop.

    Every invocation is bounded by `timeout_seconds`. On timeout (or
    when the awaiting task is cancelled) the child is killed and
    reaped before control returns.
    """

    def __init__(
        self,
        executable: "str",
        timeout_seconds: "float" = DEFAULT_TIMEOUT_SECONDS,
        environ: "Mapping[str, str] | None" = None,
    ) -> "None":
        self._executable = executable
        self._timeout = timeout_seconds
        self._environ = environ

    @property
    def executable(self) -> "str":
        return self._executable

    async def fetch_usage(self, providers: "str", source: "str") -> "CommandResult":
        return await self._run(
            ["--provider", providers, "--format", "json", "--source", source]
        )

    async def fetch_cost(self, provider: "str") -> "CommandResult":
        return await self._run(["cost", "--provider", provider, "--format", "json"])

    async def _run(self, args: "list[str]") -> "CommandResult":
        env = filter_environment(
            self._environ if self._environ is not None else os.environ
        )
        started = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                self._executable,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                start_new_session=hasattr(os, "killpg"),
            )
        except OSError as exc:
            raise CollectorFault(
                f"failed to launch collector {self._executable}: {exc}"
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self._timeout
            )
        except TimeoutError:
            _kill(process)
            await process.wait()
            logger.warning(
                "collector_timeout",
                args=args,
                timeout_seconds=self._timeout,
            )
            raise CollectorFault(
                f"collector timed out after {self._timeout:g}s"
            ) from None
        except asyncio.CancelledError:
            _kill(process)
            await process.wait()
            raise

        result = CommandResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        logger.debug(
            "collector_finished",
            args=args,
            exit_code=result.exit_code,
            duration_seconds=round(time.monotonic() - started, 3),
        )
        return result
