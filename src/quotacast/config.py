import os
from dataclasses import dataclass

from quotacast.collector.cli import DEFAULT_TIMEOUT_SECONDS
from quotacast.scheduler import DEFAULT_COST_RETENTION_DAYS, DEFAULT_INTERVAL_SECONDS


def _env_bool(value: "str") -> "bool":
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "0.0.0.0:9186"
    listen_address: "str" = ":9186"
    # collection interval in seconds
    scrape_interval: "int" = DEFAULT_INTERVAL_SECONDS
    log_level: "str" = "info"
    # "console" or "json"
    log_format: "str" = "console"

    # empty means ~/.quotacast/usage_history.sqlite
    storage_path: "str" = ""
    # empty means search build outputs, system paths and PATH
    collector_path: "str" = ""
    collector_timeout: "float" = DEFAULT_TIMEOUT_SECONDS
    cost_retention_days: "int" = DEFAULT_COST_RETENTION_DAYS
    scheduler_enabled: "bool" = True

    @classmethod
    def from_env(cls) -> "Config":
        defaults = cls()
        return cls(
            listen_address=os.environ.get(
                "QUOTACAST_LISTEN_ADDRESS", defaults.listen_address
            ),
            scrape_interval=int(
                os.environ.get("QUOTACAST_SCRAPE_INTERVAL", defaults.scrape_interval)
            ),
            log_level=os.environ.get("QUOTACAST_LOG_LEVEL", defaults.log_level),
            log_format=os.environ.get("QUOTACAST_LOG_FORMAT", defaults.log_format),
            storage_path=os.environ.get("QUOTACAST_STORAGE_PATH", ""),
            collector_path=os.environ.get("QUOTACAST_COLLECTOR_PATH", ""),
            collector_timeout=float(
                os.environ.get(
                    "QUOTACAST_COLLECTOR_TIMEOUT", defaults.collector_timeout
                )
            ),
            cost_retention_days=int(
                os.environ.get(
                    "QUOTACAST_COST_RETENTION_DAYS", defaults.cost_retention_days
                )
            ),
            scheduler_enabled=not _env_bool(
                os.environ.get("QUOTACAST_NO_SCHEDULER", "")
            ),
        )
