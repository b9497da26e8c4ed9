from typing import Optional
from datetime import datetime, timezone
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SyncRunRecord(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    started_at: datetime = Field(default_factory=utc_now, index=True)
    finished_at: Optional[datetime] = None
    mode: str
    databases: Optional[str] = None
    artifact_path: Optional[str] = None
    log_path: str
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None
    status: str = Field(default="running", index=True)
    failed_step: Optional[str] = None
    error_summary: Optional[str] = None
