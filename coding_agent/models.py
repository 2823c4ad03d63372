# coding_sandbox/coding_agent/models.py
import uuid
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CommandExecution(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    command: str
    output: str
    exit_code: int
    timestamp: datetime = Field(default_factory=_utcnow)
    duration: float  # ミリ秒


class TerminalSession(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=_utcnow)
    commands: List[CommandExecution] = Field(default_factory=list)
    is_active: bool = True


class FileNode(BaseModel):
    name: str
    path: str  # ワークスペースのルートからの相対パス
    type: Literal["file", "directory"]
    size: Optional[int] = None
    last_modified: Optional[datetime] = None
    children: Optional[List["FileNode"]] = None

    @model_validator(mode="after")
    def _children_only_for_directories(self) -> "FileNode":
        if self.type == "file" and self.children is not None:
            raise ValueError("children is only allowed for directories")
        return self
