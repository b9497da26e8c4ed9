import os
import signal
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional

from .backup_manager import export_dump
from .config import SyncConfiguration
from .errors import (
    AlreadyRunningError,
    ExportFailedError,
    ImportFailedError,
    SyncCancelledError,
    SyncError,
    TargetUnavailableError,
)
from .history import finish_run_record, start_run_record
from .lock import RunLock, lock_path_for
from .logger import get_logger, run_log
from .metrics import write_run_metrics
from .restore_manager import import_dump
from .retention import enforce_retention
from .runner import ProcessRunner
from .schemas import SyncOutcome, SyncRun
from .source import get_source_connector
from .target import TargetEndpoint, get_target_endpoint
from .utils import log_path, run_timestamp

logger = get_logger(__name__)

CANCEL_SIGNALS = (signal.SIGTERM, signal.SIGINT)

STEP_ERRORS = {
    "target": TargetUnavailableError,
    "discover": ExportFailedError,
    "export": ExportFailedError,
    "import": ImportFailedError,
    "verify": ImportFailedError,
}


@contextmanager
def cancel_on_signal() -> Iterator[None]:
    """
    Turn SIGTERM/SIGINT into SyncCancelledError for the duration of the block.

    Signal handlers can only be installed from the main thread; elsewhere
    (e.g. a scheduler worker) the block runs unchanged.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _cancel(signum, frame):
        raise SyncCancelledError(f"Received {signal.Signals(signum).name}, aborting sync")

    previous = {sig: signal.signal(sig, _cancel) for sig in CANCEL_SIGNALS}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


class SyncJob:
    """
    One "pull remote state, overwrite local replica" pass.

    Steps run strictly in order: target check, discovery (all-databases mode),
    export, target preparation, import, verification (all-databases mode),
    retention. The first fatal error aborts the run and is re-raised after
    being written to the run log, the run history and the metrics file.
    """

    def __init__(self, runner: Optional[ProcessRunner] = None, clock: Optional[Callable[[], datetime]] = None):
        self.runner = runner or ProcessRunner()
        self.clock = clock or datetime.now

    def run(self, config: SyncConfiguration) -> SyncOutcome:
        started = time.monotonic()
        started_at = self.clock()
        timestamp = run_timestamp(started_at)
        run = SyncRun(
            started_at=started_at,
            timestamp=timestamp,
            mode=config.mode,
            log_path=log_path(config.log_dir, timestamp),
        )
        self.runner.reset()

        # 1. Directory preparation
        try:
            os.makedirs(config.backup_dir, exist_ok=True)
            os.makedirs(config.log_dir, exist_ok=True)
        except OSError as e:
            logger.error(f"Could not create backup/log directories: {e}")
            raise SyncError(f"Could not create backup/log directories: {e}", step="prepare")

        target = get_target_endpoint(config.target)
        lock = RunLock(lock_path_for(config.backup_dir, target.identity))

        with run_log(run.log_path):
            logger.info("========== MySQL Sync Started ==========")
            logger.info(f"Source : {config.source.host}:{config.source.port}/"
                        f"{config.source.database or '(all databases)'} via {config.source.connector}")
            logger.info(f"Target : {target.describe()}")

            # A rejected invocation leaves history and metrics to the run holding the lock
            try:
                lock.acquire()
            except AlreadyRunningError as e:
                logger.error(f"[ERROR] Sync failed at step '{e.step}': {e}")
                raise

            try:
                return self._run_locked(config, run, target, started)
            finally:
                lock.release()

    def _run_locked(self, config: SyncConfiguration, run: SyncRun, target: TargetEndpoint,
                    started: float) -> SyncOutcome:
        run.history_id = start_run_record(config.history_db, run)
        outcome = None
        error = None
        try:
            with cancel_on_signal():
                try:
                    outcome = self._execute(config, run, target)
                except SyncCancelledError:
                    raise
                except SyncError as e:
                    if self.runner.cancelled:
                        raise SyncCancelledError(f"Sync cancelled: {e}", step=run.step) from e
                    raise
                except OSError as e:
                    raise self._tool_error(run.step, e) from e
            run.status = "completed"
            logger.info("========== Sync Finished Successfully ==========")
            logger.info(f"Log: {run.log_path}")
            return outcome
        except SyncCancelledError as e:
            self.runner.terminate_all()
            e.step = run.step
            run.status = "cancelled"
            error = e
            logger.error(f"[CANCELLED] Sync aborted during step '{e.step}': {e}")
            if run.step == "import":
                logger.error("No rollback is attempted; the target may hold a partially applied import.")
            raise
        except SyncError as e:
            run.status = "failed"
            run.step = e.step
            error = e
            logger.error(f"[ERROR] Sync failed at step '{e.step}': {e}")
            if run.artifact_path:
                logger.error(f"Dump kept for manual retry: {run.artifact_path}")
            raise
        except Exception as e:
            run.status = "failed"
            error = SyncError(f"Unexpected error: {e}", step=run.step)
            logger.error(f"[ERROR] Unexpected error during step '{run.step}': {e}", exc_info=True)
            raise error from e
        finally:
            duration = time.monotonic() - started
            finish_run_record(
                config.history_db,
                run,
                size_bytes=outcome.size_bytes if outcome else None,
                checksum=outcome.checksum if outcome else None,
                error_summary=str(error) if error else None,
            )
            write_run_metrics(
                config.metrics_file,
                success=outcome is not None,
                outcome=outcome,
                duration=duration,
                backup_dir=config.backup_dir,
            )
            if outcome is not None:
                outcome.duration_seconds = duration

    @staticmethod
    def _tool_error(step: str, error: OSError) -> SyncError:
        """A host tool that cannot be started fails its step like any other error of that step."""
        error_class = STEP_ERRORS.get(step, SyncError)
        return error_class(f"Could not start a required tool: {error}", step=step)

    def _execute(self, config: SyncConfiguration, run: SyncRun, target: TargetEndpoint) -> SyncOutcome:
        runner = self.runner
        connector = get_source_connector(config.source)

        # Checked before exporting so an unavailable target costs no export work
        run.step = "target"
        target.check_available(runner)

        with open(run.log_path, "ab") as tool_output:
            with connector.connect(runner, output=tool_output) as source:
                if config.all_databases:
                    run.step = "discover"
                    run.databases = source.discover_databases(runner)
                else:
                    run.databases = [config.source.database]

                run.step = "export"
                artifact = export_dump(
                    runner,
                    source,
                    config.backup_dir,
                    run.timestamp,
                    databases=run.databases if config.all_databases else None,
                )
                run.artifact_path = artifact.path

            run.step = "import"
            if not config.all_databases:
                target.ensure_database(runner, config.target.database)
            import_dump(
                runner,
                target,
                artifact.path,
                database=None if config.all_databases else config.target.database,
                output=tool_output,
            )

        verified = None
        if config.all_databases:
            run.step = "verify"
            verified = self._verify(target, run)

        run.step = "prune"
        pruned = enforce_retention(config.backup_dir, config.retention_count, config.all_databases)

        return SyncOutcome(
            success=True,
            artifact_path=artifact.path,
            log_path=run.log_path,
            databases=run.databases,
            size_bytes=artifact.size_bytes,
            checksum=artifact.checksum,
            verified_databases=verified,
            pruned=pruned.deleted,
        )

    def _verify(self, target: TargetEndpoint, run: SyncRun):
        """Advisory only: report what the target holds now, never fail the run."""
        try:
            present = target.list_databases(self.runner)
        except (SyncError, OSError) as e:
            logger.warning(f"Verification skipped: {e}")
            return None

        logger.info(f"Target now has {len(present)} database(s): {', '.join(present) or '-'}")
        missing = sorted(set(run.databases) - set(present))
        if missing:
            logger.warning(f"Databases exported but not found on target: {', '.join(missing)}")
        return present
