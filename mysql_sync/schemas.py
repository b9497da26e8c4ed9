import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

PRIVILEGES_PATTERN = re.compile(r"^[A-Za-z][A-Za-z ,_]*$")


class SyncRun(BaseModel):
    """State of one execution; lives only for the duration of the run."""

    started_at: datetime
    timestamp: str
    mode: str
    log_path: str
    artifact_path: Optional[str] = None
    databases: List[str] = []
    status: str = "running"
    step: str = "prepare"
    history_id: Optional[int] = None


class PruneResult(BaseModel):
    kept: List[str] = []
    deleted: List[str] = []
    warnings: List[str] = []


class SyncOutcome(BaseModel):
    success: bool
    artifact_path: Optional[str] = None
    log_path: str
    databases: List[str] = []
    size_bytes: Optional[int] = None
    checksum: Optional[str] = None
    verified_databases: Optional[List[str]] = None
    pruned: List[str] = []
    duration_seconds: float = 0.0


class UserGrant(BaseModel):
    user: str = Field(min_length=1)
    password: str = Field(repr=False)
    host: str = "%"
    privileges: str = "ALL PRIVILEGES"
    database: Optional[str] = None

    @field_validator("privileges")
    @classmethod
    def check_privileges(cls, v: str) -> str:
        if not PRIVILEGES_PATTERN.match(v.strip()):
            raise ValueError(f"unsupported privilege list '{v}'")
        return v.strip()


class SyncRunSummary(BaseModel):
    id: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    mode: str
    status: str
    failed_step: Optional[str] = None
    artifact_path: Optional[str] = None
    size_bytes: Optional[int] = None
    error_summary: Optional[str] = None

    class Config:
        from_attributes = True
