# coding_sandbox/jobs/models.py
import enum
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, enum.Enum):
    QUEUED = "Queued"
    PROVISIONING = "Provisioning"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELED = "Canceled"


class LogType(str, enum.Enum):
    INFO = "info"
    ERROR = "error"
    WARN = "warn"
    SUCCESS = "success"
    COMMAND = "command"
    OUTPUT = "output"


class LogEntry(BaseModel):
    # 一度追加されたログは変更しない
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    message: str
    type: LogType = LogType.INFO


class Job(BaseModel):
    id: str
    description: str
    status: JobStatus = JobStatus.QUEUED
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    logs: List[LogEntry] = Field(default_factory=list)
    download_url: Optional[str] = None
    preview_url: Optional[str] = None
    is_interactive: bool = False

    def touch(self) -> None:
        now = utcnow()
        self.updated_at = now if now >= self.created_at else self.created_at

    def __repr__(self):
        return f"<Job(id='{self.id}', status='{self.status.value}', logs={len(self.logs)})>"
