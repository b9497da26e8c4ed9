from datetime import timezone
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from .database import get_session
from .logger import get_logger
from .models import SyncRunRecord, utc_now
from .schemas import SyncRun, SyncRunSummary

logger = get_logger(__name__)


def start_run_record(history_db: str, run: SyncRun) -> Optional[int]:
    """Insert a 'running' record. History is advisory: errors are logged and swallowed."""
    try:
        with get_session(history_db) as session:
            # stored in UTC; a naive clock value is taken as local time
            record = SyncRunRecord(
                started_at=run.started_at.astimezone(timezone.utc),
                mode=run.mode,
                log_path=run.log_path,
            )
            session.add(record)
            session.commit()
            session.refresh(record)
            logger.debug(f"Recorded run {record.id} in {history_db}")
            return record.id
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Could not record run start in history DB {history_db}: {e}")
        return None


def finish_run_record(
    history_db: str,
    run: SyncRun,
    size_bytes: Optional[int] = None,
    checksum: Optional[str] = None,
    error_summary: Optional[str] = None,
) -> None:
    if run.history_id is None:
        return
    try:
        with get_session(history_db) as session:
            record = session.get(SyncRunRecord, run.history_id)
            if not record:
                logger.warning(f"Run record {run.history_id} not found in history DB")
                return
            record.finished_at = utc_now()
            record.status = run.status
            record.databases = ",".join(run.databases) or None
            record.artifact_path = run.artifact_path
            record.size_bytes = size_bytes
            record.checksum = checksum
            if run.status != "completed":
                record.failed_step = run.step
                record.error_summary = error_summary
            session.add(record)
            session.commit()
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Could not record run result in history DB {history_db}: {e}")


def list_runs(history_db: str, limit: int = 10) -> List[SyncRunSummary]:
    with get_session(history_db) as session:
        records = session.exec(
            select(SyncRunRecord).order_by(SyncRunRecord.started_at.desc(), SyncRunRecord.id.desc()).limit(limit)
        ).all()
        return [SyncRunSummary.model_validate(record) for record in records]
