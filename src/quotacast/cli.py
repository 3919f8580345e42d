import argparse

from quotacast.config import Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    """
    layers command line flags over the QUOTACAST_* environment.
    """
    config = Config.from_env()

    parser = argparse.ArgumentParser(
        prog="quotacast",
        description="Quota usage history and exhaustion forecasts",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=config.listen_address,
        help=f"Address to serve metrics on (default: {config.listen_address})",
    )
    parser.add_argument(
        "--storage.path",
        dest="storage_path",
        default=config.storage_path,
        help="SQLite database file (default: ~/.quotacast/usage_history.sqlite)",
    )
    parser.add_argument(
        "--scrape.interval",
        dest="scrape_interval",
        type=int,
        default=config.scrape_interval,
        help=f"Collection interval in seconds (default: {config.scrape_interval})",
    )
    parser.add_argument(
        "--collector.path",
        dest="collector_path",
        default=config.collector_path,
        help="Collector executable (default: search build outputs and PATH)",
    )
    parser.add_argument(
        "--collector.timeout",
        dest="collector_timeout",
        type=float,
        default=config.collector_timeout,
        help=f"Collector timeout in seconds (default: {config.collector_timeout:g})",
    )
    parser.add_argument(
        "--no-scheduler",
        dest="scheduler_enabled",
        action="store_false",
        default=config.scheduler_enabled,
        help="Serve stored history only, do not run the collector",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default=config.log_level,
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default=config.log_format,
        choices=["console", "json"],
        help="Log renderer (default: console)",
    )

    args = parser.parse_args(argv)
    config.listen_address = args.listen_address
    config.storage_path = args.storage_path
    config.scrape_interval = args.scrape_interval
    config.collector_path = args.collector_path
    config.collector_timeout = args.collector_timeout
    config.scheduler_enabled = args.scheduler_enabled
    config.log_level = args.log_level
    config.log_format = args.log_format
    return config
