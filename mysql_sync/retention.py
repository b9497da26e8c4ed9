import os
import warnings
from typing import List, Tuple

from .errors import PruneWarning
from .logger import get_logger
from .schemas import PruneResult
from .utils import artifact_pattern

logger = get_logger(__name__)


def list_artifacts(backup_dir: str, all_databases: bool) -> List[Tuple[float, str]]:
    """(mtime, path) of this mode's dump files, newest first."""
    pattern = artifact_pattern(all_databases)
    artifacts = []
    for entry in os.scandir(backup_dir):
        if entry.is_file() and pattern.match(entry.name):
            try:
                artifacts.append((entry.stat().st_mtime, entry.path))
            except FileNotFoundError:
                continue
    # Newer files first; same-second files fall back to the timestamped name
    artifacts.sort(key=lambda item: (item[0], os.path.basename(item[1])), reverse=True)
    return artifacts


def enforce_retention(backup_dir: str, retention_count: int, all_databases: bool) -> PruneResult:
    """
    Keep the newest ``retention_count`` dumps and delete the rest.

    Best effort: a file that cannot be deleted produces a PruneWarning in
    the log and in the result, never an exception.
    """
    logger.info(f"Purging old backups (keeping last {retention_count}) …")
    result = PruneResult()

    try:
        artifacts = list_artifacts(backup_dir, all_databases)
    except OSError as e:
        message = f"Could not list {backup_dir} for retention: {e}"
        logger.warning(message)
        warnings.warn(message, PruneWarning)
        result.warnings.append(message)
        return result

    result.kept = [path for _, path in artifacts[:retention_count]]
    for _, path in artifacts[retention_count:]:
        try:
            os.remove(path)
            result.deleted.append(path)
            logger.info(f"Deleted old backup '{os.path.basename(path)}' (count policy).")
        except FileNotFoundError:
            logger.debug(f"{path} already removed")
        except OSError as e:
            message = f"Could not delete old backup {path}: {e}"
            logger.warning(message)
            warnings.warn(message, PruneWarning)
            result.warnings.append(message)
            result.kept.append(path)

    logger.info(f"Retention done: {len(result.kept)} kept, {len(result.deleted)} deleted.")
    return result
