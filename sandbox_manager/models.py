# coding_sandbox/sandbox_manager/models.py
import enum
from dataclasses import dataclass, field
from typing import FrozenSet, List


class ContainerStatus(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(frozen=True)
class ContainerPorts:
    """ホスト側に公開するポート。4つとも異なる値でなければならない。"""
    vnc: int
    novnc: int
    jupyter: int
    dev: int

    def as_set(self) -> FrozenSet[int]:
        return frozenset((self.vnc, self.novnc, self.jupyter, self.dev))


@dataclass
class ContainerInfo:
    job_id: str
    name: str
    container_id: str
    status: ContainerStatus
    ports: ContainerPorts
    vnc_url: str
    jupyter_url: str
    logs: List[str] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status != ContainerStatus.STOPPED


@dataclass(frozen=True)
class CleanupFailure:
    container_name: str
    error: str
