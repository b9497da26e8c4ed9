"""
Copy a remote MySQL database into a local replica by dump and restore.

Each run exports the source with mysqldump (all user databases, or one),
streams it through gzip into the backup directory, loads it into the local
MySQL, and prunes old dumps beyond the retention count.
"""

__version__ = "1.0.0"

from .config import SyncConfiguration, load_config
from .errors import (
    AlreadyRunningError,
    ConfigurationError,
    ExportFailedError,
    ImportFailedError,
    NoDatabasesFoundError,
    PruneWarning,
    SyncCancelledError,
    SyncError,
    TargetUnavailableError,
)
from .job import SyncJob
from .schemas import SyncOutcome

__all__ = [
    "SyncJob",
    "SyncConfiguration",
    "SyncOutcome",
    "load_config",
    "SyncError",
    "ConfigurationError",
    "AlreadyRunningError",
    "NoDatabasesFoundError",
    "ExportFailedError",
    "TargetUnavailableError",
    "ImportFailedError",
    "SyncCancelledError",
    "PruneWarning",
]
