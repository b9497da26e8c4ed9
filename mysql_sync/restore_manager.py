import os
from typing import IO, Optional

from .error_parser import parse_mysql_error
from .errors import ImportFailedError, SyncCancelledError
from .logger import get_logger
from .runner import Command, ProcessRunner
from .target import TargetEndpoint

logger = get_logger(__name__)

GUNZIP_COMMAND = Command(["gunzip", "-c"])


def import_dump(
    runner: ProcessRunner,
    target: TargetEndpoint,
    artifact_path: str,
    database: Optional[str] = None,
    output: Optional[IO[bytes]] = None,
) -> None:
    """
    Decompress ``artifact_path`` on the fly and pipe it into the target's
    mysql client. With ``database`` unset the dump's own CREATE DATABASE /
    USE statements pick the schemas.

    The artifact is never removed here, so a failed import can be retried by
    hand. A failure part way through leaves the target partially loaded; the
    statements are not wrapped in a transaction.
    """
    destination = database or "(databases named in the dump)"
    logger.info(f"Restoring {os.path.basename(artifact_path)} into {target.identity} {destination} …")

    try:
        with open(artifact_path, "rb") as f:
            gunzip_result, mysql_result = runner.pipeline(
                GUNZIP_COMMAND, target.import_command(database), stdin=f, stdout=output
            )
    except OSError as e:
        raise ImportFailedError(f"Could not import {artifact_path}: {e}")

    if runner.cancelled:
        raise SyncCancelledError(f"Import cancelled; the target may be partially loaded, dump kept at {artifact_path}")

    if not gunzip_result.ok:
        logger.error(f"gunzip error: {gunzip_result.stderr_text.strip()}")
        raise ImportFailedError(
            f"gunzip failed with exit code {gunzip_result.returncode}; dump kept at {artifact_path}",
            summary=parse_mysql_error(gunzip_result.stderr_text),
        )
    if not mysql_result.ok:
        logger.error(f"mysql error: {mysql_result.stderr_text.strip()}")
        raise ImportFailedError(
            f"mysql import failed with exit code {mysql_result.returncode}; dump kept at {artifact_path}",
            summary=parse_mysql_error(mysql_result.stderr_text),
        )

    logger.info("Restore complete.")
