# coding_sandbox/jobs/repository.py
import abc
from typing import Dict, List, Optional

from database.crud import CRUD
from jobs.models import Job


class JobRepository(abc.ABC):
    """
    ジョブの保存先。read-your-writes の一貫性を前提とする。
    read-modify-write の直列化は呼び出し側（JobService）が jobId ごとに行う。
    """

    @abc.abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        ...

    @abc.abstractmethod
    def set(self, job_id: str, job: Job) -> None:
        ...

    @abc.abstractmethod
    def list_ids(self) -> List[str]:
        ...


class InMemoryJobRepository(JobRepository):
    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}

    def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        # 呼び出し側が保存せずに変更しても反映されないようコピーを返す
        return job.model_copy(deep=True) if job else None

    def set(self, job_id: str, job: Job) -> None:
        self._jobs[job_id] = job.model_copy(deep=True)

    def list_ids(self) -> List[str]:
        return list(self._jobs.keys())


class SqlAlchemyJobRepository(JobRepository):
    def __init__(self, crud: CRUD) -> None:
        self._crud = crud

    def get(self, job_id: str) -> Optional[Job]:
        payload = self._crud.get_job_payload(job_id)
        if payload is None:
            return None
        return Job.model_validate_json(payload)

    def set(self, job_id: str, job: Job) -> None:
        self._crud.upsert_job(
            job_id=job_id,
            status=job.status.value,
            payload=job.model_dump_json(),
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    def list_ids(self) -> List[str]:
        return self._crud.list_job_ids()
