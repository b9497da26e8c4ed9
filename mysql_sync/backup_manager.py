import gzip
import os
import zlib
from typing import NamedTuple, Optional, Sequence

from .error_parser import parse_mysql_error
from .errors import ExportFailedError, SyncCancelledError
from .logger import get_logger
from .runner import Command, ProcessRunner
from .source import SourceEndpoint
from .utils import artifact_name, file_checksum, human_size

logger = get_logger(__name__)

PARTIAL_SUFFIX = ".part"
GZIP_COMMAND = Command(["gzip", "-c"])


class DumpArtifact(NamedTuple):
    path: str
    size_bytes: int
    checksum: str


def _has_content(path: str) -> bool:
    """True when the gzip file decompresses to at least one byte."""
    try:
        with gzip.open(path, "rb") as f:
            return bool(f.read(1))
    except (OSError, EOFError, zlib.error):
        return False


def _discard(path: str) -> None:
    if os.path.exists(path):
        logger.debug(f"Removing incomplete dump: {path}")
        os.remove(path)


def export_dump(
    runner: ProcessRunner,
    source: SourceEndpoint,
    backup_dir: str,
    timestamp: str,
    databases: Optional[Sequence[str]] = None,
) -> DumpArtifact:
    """
    Stream ``mysqldump | gzip`` into ``backup_dir`` and publish the result
    as ``dump_<ts>.sql.gz`` (single database) or ``dump_all_<ts>.sql.gz``.

    The archive is written under a ``.part`` name and renamed only once both
    processes succeeded and it holds data, so a failed export never leaves a
    file that looks like a valid dump.
    """
    final_path = os.path.join(backup_dir, artifact_name(timestamp, all_databases=bool(databases)))
    part_path = final_path + PARTIAL_SUFFIX
    dump_command = source.dump_command(databases)

    target = ", ".join(databases) if databases else source.settings.database
    logger.info(f"Dumping {target} from {source.host}:{source.port} …")

    try:
        with open(part_path, "wb") as f:
            dump_result, gzip_result = runner.pipeline(dump_command, GZIP_COMMAND, stdout=f)

        if runner.cancelled:
            raise SyncCancelledError("Export cancelled; mysqldump was terminated")

        if not dump_result.ok:
            logger.error(f"mysqldump error: {dump_result.stderr_text.strip()}")
            raise ExportFailedError(
                f"mysqldump failed with exit code {dump_result.returncode}",
                summary=parse_mysql_error(dump_result.stderr_text),
            )
        if not gzip_result.ok:
            logger.error(f"gzip error: {gzip_result.stderr_text.strip()}")
            raise ExportFailedError(
                f"gzip failed with exit code {gzip_result.returncode}",
                summary=parse_mysql_error(gzip_result.stderr_text),
            )
        if dump_result.stderr:
            logger.debug(f"mysqldump stderr: {dump_result.stderr_text.strip()}")

        if os.path.getsize(part_path) == 0 or not _has_content(part_path):
            raise ExportFailedError("mysqldump produced no output")

        os.replace(part_path, final_path)
    except SyncCancelledError:
        logger.warning(f"Export interrupted; partial dump left at {part_path}")
        raise
    except ExportFailedError:
        _discard(part_path)
        raise
    except OSError as e:
        _discard(part_path)
        raise ExportFailedError(f"Could not write dump to {part_path}: {e}", summary=parse_mysql_error(str(e)))

    size_bytes = os.path.getsize(final_path)
    artifact = DumpArtifact(final_path, size_bytes, file_checksum(final_path))
    logger.info(f"Dump complete – {final_path} ({human_size(size_bytes)})")
    return artifact
