import errno
import fcntl
import os
from typing import Optional

from .errors import AlreadyRunningError
from .logger import get_logger
from .utils import sanitize_filename

logger = get_logger(__name__)


def lock_path_for(backup_dir: str, target_identity: str) -> str:
    """One lock per target instance, whatever database a run writes to."""
    return os.path.join(backup_dir, f".mysql_sync_{sanitize_filename(target_identity)}.lock")


def _read_owner(path: str) -> Optional[int]:
    try:
        with open(path, "r") as f:
            return int(f.read().strip())
    except (OSError, ValueError):
        return None


class RunLock:
    """
    Exclusive, per-target run lock.

    The lock is an ``flock`` on a file that is never deleted, so the kernel
    drops it when the holder exits, however it exits. The PID written into
    the file is informational only. A second invocation against the same
    target fails with AlreadyRunningError instead of interleaving two imports.
    """

    def __init__(self, path: str):
        self.path = path
        self.acquired = False
        self._file = None

    def acquire(self) -> None:
        f = open(self.path, "a+")
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            f.close()
            if e.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                raise
            owner = _read_owner(self.path)
            holder = f"PID {owner}" if owner else "another process"
            raise AlreadyRunningError(
                f"Another sync ({holder}) is already running against this target; lock file {self.path}"
            )

        f.seek(0)
        f.truncate()
        f.write(str(os.getpid()))
        f.flush()
        self._file = f
        self.acquired = True
        logger.debug(f"Acquired run lock {self.path}")

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            self._file.seek(0)
            self._file.truncate()
            fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
        finally:
            self._file.close()
            self._file = None
            self.acquired = False
        logger.debug(f"Released run lock {self.path}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
