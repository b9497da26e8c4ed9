import os
import time
from typing import Optional

import psutil
from prometheus_client import CollectorRegistry, Gauge, write_to_textfile

from .logger import get_logger
from .schemas import SyncOutcome

logger = get_logger(__name__)


def build_registry(
    success: bool,
    outcome: Optional[SyncOutcome] = None,
    duration: float = 0.0,
    backup_dir: Optional[str] = None,
) -> CollectorRegistry:
    registry = CollectorRegistry()
    now = time.time()

    Gauge(
        "mysql_sync_last_status",
        "Status of the last sync run (1 for success, 0 for failure).",
        registry=registry,
    ).set(1 if success else 0)

    Gauge(
        "mysql_sync_last_run_timestamp_seconds",
        "Timestamp of the last sync run.",
        registry=registry,
    ).set(now)

    Gauge(
        "mysql_sync_duration_seconds",
        "Duration of the last sync run in seconds.",
        registry=registry,
    ).set(duration)

    if success and outcome is not None:
        Gauge(
            "mysql_sync_last_success_timestamp_seconds",
            "Timestamp of the last successful sync run.",
            registry=registry,
        ).set(now)

        Gauge(
            "mysql_sync_dump_size_bytes",
            "Size of the last successful dump in bytes.",
            registry=registry,
        ).set(outcome.size_bytes or 0)

        Gauge(
            "mysql_sync_databases",
            "Number of databases copied by the last successful run.",
            registry=registry,
        ).set(len(outcome.databases))

        Gauge(
            "mysql_sync_pruned_files",
            "Number of dump files deleted by retention in the last run.",
            registry=registry,
        ).set(len(outcome.pruned))

    if backup_dir and os.path.isdir(backup_dir):
        Gauge(
            "mysql_sync_backup_disk_free_bytes",
            "Available disk space on the backup volume in bytes.",
            registry=registry,
        ).set(psutil.disk_usage(backup_dir).free)

    return registry


def write_run_metrics(
    metrics_file: Optional[str],
    success: bool,
    outcome: Optional[SyncOutcome] = None,
    duration: float = 0.0,
    backup_dir: Optional[str] = None,
) -> None:
    """Write the run's metrics for the node-exporter textfile collector. Failures are only logged."""
    if not metrics_file:
        return
    try:
        os.makedirs(os.path.dirname(os.path.abspath(metrics_file)), exist_ok=True)
        write_to_textfile(metrics_file, build_registry(success, outcome, duration, backup_dir))
        logger.debug(f"Metrics written to {metrics_file}")
    except OSError as e:
        logger.warning(f"Failed to write metrics to {metrics_file}: {e}")
