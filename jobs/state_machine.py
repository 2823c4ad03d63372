# coding_sandbox/jobs/state_machine.py
"""
ジョブのステータス遷移規則。

    Queued -> Provisioning -> Running -> {Completed, Failed}
    非終端状態からはいつでも Canceled へ遷移できる。

Completed / Failed / Canceled は終端状態で、以後ステータスは変わらない。
ログの追記は終端状態でも許可される（後片付けのメッセージなど）。
"""
from typing import Dict, FrozenSet

from errors import InvalidTransitionError
from jobs.models import Job, JobStatus, LogEntry, LogType

TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED}
)

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROVISIONING, JobStatus.CANCELED}),
    JobStatus.PROVISIONING: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELED: frozenset(),
}


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: JobStatus, requested: JobStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


def append_log(job: Job, message: str, log_type: LogType = LogType.INFO) -> LogEntry:
    entry = LogEntry(message=message, type=log_type)
    job.logs.append(entry)
    job.touch()
    return entry


def transition(job: Job, status: JobStatus, message: str,
               log_type: LogType = LogType.INFO) -> LogEntry:
    """
    ステータスを遷移させ、遷移を説明するログを必ず1件追加します。
    スキップ・逆戻り・終端状態からの遷移は InvalidTransitionError になります。
    """
    if not can_transition(job.status, status):
        raise InvalidTransitionError(job.id, job.status.value, status.value)
    job.status = status
    return append_log(job, message, log_type)
