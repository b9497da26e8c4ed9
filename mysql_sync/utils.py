import hashlib
import os
import re
from datetime import datetime

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

SINGLE_ARTIFACT_PATTERN = re.compile(r"^dump_\d{8}_\d{6}\.sql\.gz$")
ALL_ARTIFACT_PATTERN = re.compile(r"^dump_all_\d{8}_\d{6}\.sql\.gz$")


def run_timestamp(moment: datetime) -> str:
    """Sortable, second-granularity stamp shared by a run's dump and log."""
    return moment.strftime(TIMESTAMP_FORMAT)


def artifact_name(timestamp: str, all_databases: bool) -> str:
    prefix = "dump_all_" if all_databases else "dump_"
    return f"{prefix}{timestamp}.sql.gz"


def artifact_pattern(all_databases: bool) -> "re.Pattern":
    return ALL_ARTIFACT_PATTERN if all_databases else SINGLE_ARTIFACT_PATTERN


def log_path(log_dir: str, timestamp: str) -> str:
    return os.path.join(log_dir, f"sync_{timestamp}.log")


def sanitize_filename(name: str) -> str:
    """
    Sanitizes a string to be used as part of a filename.
    - Converts to lowercase.
    - Replaces anything that is not alphanumeric, a dot or an underscore with a hyphen.
    - Collapses repeated hyphens and trims them from both ends.
    """
    name = re.sub(r"[^a-z0-9._]+", "-", name.lower())
    name = re.sub(r"--+", "-", name)
    return name.strip("-")


def file_checksum(path: str, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def human_size(size_bytes: int) -> str:
    size = float(size_bytes)
    for unit in ("B", "K", "M", "G"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}T"
