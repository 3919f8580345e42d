import asyncio
import signal

import structlog
from prometheus_client import start_http_server

from quotacast.cli import parse_args
from quotacast.collector.cli import CLICollector, find_collector_executable
from quotacast.config import Config
from quotacast.errors import CollectorFault
from quotacast.health import build_health_report
from quotacast.logging import setup_logging
from quotacast.metrics import MetricsUpdater
from quotacast.scheduler import UsageScheduler
from quotacast.storage.store import UsageHistoryStore
from quotacast.warning_registry import WarningRegistry

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def _build_collector(config: "Config") -> "CLICollector | None":
    try:
        executable = find_collector_executable(config.collector_path or None)
    except CollectorFault as exc:
        raise SystemExit(str(exc)) from exc

    if executable is None:
        logger.error(
            "collector_not_found",
            hint="install codexbar or pass --collector.path",
        )
        return None

    logger.info("collector_found", path=executable)
    return CLICollector(executable, timeout_seconds=config.collector_timeout)


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level, config.log_format)

    store = UsageHistoryStore(config.storage_path or None)
    logger.info("store_ready", path=store.path)

    metrics_updater = MetricsUpdater()
    warning_registry = WarningRegistry()
    metrics_updater.set_store_records(store.record_count(), store.cost_record_count())

    scheduler: "UsageScheduler | None" = None
    if config.scheduler_enabled:
        collector = _build_collector(config)
        if collector is not None:
            scheduler = UsageScheduler(
                store,
                collector,
                metrics_updater=metrics_updater,
                interval_seconds=config.scrape_interval,
                warning_registry=warning_registry,
                cost_retention_days=config.cost_retention_days,
            )
    else:
        logger.info("scheduler_disabled")

    host, port = _parse_listen_address(config.listen_address)
    start_http_server(port, addr=host)
    logger.info("metrics_server_started", host=host, port=port)

    async def _run() -> "None":
        stop_event = asyncio.Event()

        def _stop() -> "None":
            stop_event.set()
            if scheduler is not None:
                scheduler.stop()

        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, stop the scheduler gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _stop)

        try:
            if scheduler is not None:
                scheduler.start()
                await scheduler.join()
            else:
                await stop_event.wait()
        finally:
            logger.info("shutting_down", health=build_health_report(store, warning_registry))
            store.close()
            logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
