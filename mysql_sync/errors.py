from typing import Optional


class SyncError(Exception):
    """Base class for every fatal error a sync run can raise.

    ``step`` names the stage of the run that failed so that an operator
    reading the run log can tell where to look. ``summary`` is a short
    human-readable diagnosis derived from the tool output, when one exists.
    """

    step = "sync"
    exit_code = 1

    def __init__(self, message: str, step: Optional[str] = None, summary: Optional[str] = None):
        super().__init__(message)
        if step is not None:
            self.step = step
        self.summary = summary

    def __str__(self):
        message = super().__str__()
        if self.summary:
            return f"{message} ({self.summary})"
        return message


class ConfigurationError(SyncError):
    step = "configure"
    exit_code = 2


class AlreadyRunningError(SyncError):
    step = "lock"
    exit_code = 3


class NoDatabasesFoundError(SyncError):
    step = "discover"


class ExportFailedError(SyncError):
    step = "export"


class TargetUnavailableError(SyncError):
    step = "target"


class ImportFailedError(SyncError):
    step = "import"


class SyncCancelledError(SyncError):
    exit_code = 130


class PruneWarning(UserWarning):
    """Retention could not delete an old artifact. Logged, never raised."""
