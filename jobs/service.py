# coding_sandbox/jobs/service.py
import asyncio
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from coding_agent.generator import ProjectGenerator
from coding_agent.log_sink import LogSink
from coding_agent.models import CommandExecution, FileNode
from coding_agent.runner import AgentOrchestrator
from config import config
from errors import NotFoundError, ValidationError
from jobs.models import Job, JobStatus, LogType
from jobs.repository import JobRepository
from jobs.state_machine import append_log, can_transition, is_terminal, transition
from sandbox_manager.models import CleanupFailure, ContainerInfo
from sandbox_manager.service import SandboxManagerService
from utils.locks import KeyedLock


class JobLogSink(LogSink):
    """オーケストレーターの進捗を、該当ジョブのログに追記するシンク。"""

    def __init__(self, service: "JobService", job_id: str):
        self._service = service
        self._job_id = job_id

    async def emit(self, message: str, log_type: LogType = LogType.INFO) -> None:
        await self._service.append_log(self._job_id, message, log_type)


class JobService:
    """
    ジョブのスケジュールと、完了したジョブに対する対話的な操作の窓口。
    ジョブの読み込み・変更・保存はジョブごとのロックの中で行います。
    オーケストレーターの呼び出しはロックの外で行うので、シンク経由のログ追記と競合しません。
    """

    def __init__(self, repository: JobRepository, generator: ProjectGenerator,
                 sandbox_manager: Optional[SandboxManagerService] = None,
                 workspaces_dir: Union[str, Path] = config.WORKSPACES_DIR,
                 downloads_dir: Union[str, Path] = config.DOWNLOADS_DIR,
                 download_url_prefix: str = config.DOWNLOAD_URL_PREFIX,
                 provisioning_delay: float = config.PROVISIONING_DELAY,
                 context_max_tokens: Optional[int] = None):
        self._repository = repository
        self._generator = generator
        self._sandbox_manager = sandbox_manager
        self._workspaces_dir = Path(workspaces_dir)
        self._downloads_dir = Path(downloads_dir)
        self._download_url_prefix = download_url_prefix.rstrip("/")
        self._provisioning_delay = provisioning_delay
        self._context_max_tokens = context_max_tokens

        self._job_locks = KeyedLock()
        self._orchestrators: Dict[str, AgentOrchestrator] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # --- リポジトリ操作 ---

    async def _load(self, job_id: str) -> Job:
        job = await asyncio.to_thread(self._repository.get, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def _save(self, job: Job) -> None:
        await asyncio.to_thread(self._repository.set, job.id, job)

    async def _update(self, job_id: str, mutate: Callable[[Job], None]) -> Job:
        async with self._job_locks.hold(job_id):
            job = await self._load(job_id)
            mutate(job)
            await self._save(job)
            return job

    async def append_log(self, job_id: str, message: str, log_type: LogType = LogType.INFO) -> None:
        await self._update(job_id, lambda job: append_log(job, message, log_type))

    async def _transition(self, job_id: str, status: JobStatus, message: str,
                          log_type: LogType = LogType.INFO) -> Job:
        return await self._update(job_id, lambda job: transition(job, status, message, log_type))

    def _orchestrator(self, job_id: str) -> AgentOrchestrator:
        orchestrator = self._orchestrators.get(job_id)
        if orchestrator is None:
            # 永続化されたジョブをプロセス再起動後に扱う場合は、既存のワークスペースに対して作り直す
            orchestrator = AgentOrchestrator(
                job_id=job_id,
                workspace_path=self._workspaces_dir / job_id,
                generator=self._generator,
                sandbox_manager=self._sandbox_manager,
                log_sink=JobLogSink(self, job_id),
                downloads_dir=self._downloads_dir,
                context_max_tokens=self._context_max_tokens,
            )
            self._orchestrators[job_id] = orchestrator
        return orchestrator

    # --- スケジュールとパイプライン ---

    async def schedule(self, task: str) -> str:
        if not isinstance(task, str) or not task.strip():
            raise ValidationError("Task description must be a non-empty string")

        job_id = f"job_{uuid.uuid4()}"
        job = Job(id=job_id, description=task)
        append_log(job, "Job scheduled successfully")
        async with self._job_locks.hold(job_id):
            await self._save(job)

        self._orchestrator(job_id)
        self._tasks[job_id] = asyncio.create_task(self._run_pipeline(job_id, task))
        self._tasks[job_id].add_done_callback(lambda _: self._tasks.pop(job_id, None))
        print(f"JobService: Scheduled job {job_id}")
        return job_id

    async def _run_pipeline(self, job_id: str, task: str) -> None:
        orchestrator = self._orchestrator(job_id)
        try:
            await self._transition(job_id, JobStatus.PROVISIONING, "Initializing agent workspace...")
            if self._provisioning_delay:
                await asyncio.sleep(self._provisioning_delay)
            await self._transition(job_id, JobStatus.RUNNING, "Agent is working on the task...")

            await orchestrator.execute_task(task)

            await self.append_log(job_id, "Packaging project for download...")
            await orchestrator.package_project(job_id)
            download_url = f"{self._download_url_prefix}/{job_id}"

            def complete(job: Job) -> None:
                job.download_url = download_url
                transition(job, JobStatus.COMPLETED,
                           "Task completed successfully! Project is ready for download.", LogType.SUCCESS)

            await self._update(job_id, complete)
            print(f"JobService: Job {job_id} completed.")
        except asyncio.CancelledError:
            print(f"JobService: Pipeline for job {job_id} was canceled.")
            raise
        except Exception as e:
            print(f"JobService: Job {job_id} failed: {e}")
            await self._mark_failed(job_id, e)

    async def _mark_failed(self, job_id: str, error: Exception) -> None:
        def fail(job: Job) -> None:
            message = f"Task failed: {error}"
            if can_transition(job.status, JobStatus.FAILED):
                transition(job, JobStatus.FAILED, message, LogType.ERROR)
            else:
                append_log(job, message, LogType.ERROR)

        await self._update(job_id, fail)

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """パイプラインが終わる（または timeout 秒経つ）まで待ち、ジョブを返します。"""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return await self.get_status(job_id)

    async def cancel(self, job_id: str) -> Job:
        """
        非終端状態のジョブを Canceled にします。
        終端状態のジョブに対しては InvalidTransitionError になります。
        """
        job = await self._transition(job_id, JobStatus.CANCELED, "Job canceled", LogType.WARN)
        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        orchestrator = self._orchestrators.get(job_id)
        if orchestrator is not None:
            await orchestrator.shutdown()
        return job

    # --- 照会 ---

    async def get_status(self, job_id: str) -> Job:
        return await self._load(job_id)

    async def list_jobs(self) -> List[str]:
        return await asyncio.to_thread(self._repository.list_ids)

    async def _require_completed(self, job_id: str) -> AgentOrchestrator:
        job = await self._load(job_id)
        if job.status != JobStatus.COMPLETED:
            raise ValidationError(f"Job {job_id} is not completed (status: {job.status.value})")
        return self._orchestrator(job_id)

    # --- 対話的な操作 ---

    async def list_files(self, job_id: str) -> List[FileNode]:
        orchestrator = await self._require_completed(job_id)
        return await orchestrator.get_file_tree()

    async def get_file(self, job_id: str, path: str) -> str:
        orchestrator = await self._require_completed(job_id)
        return await orchestrator.get_file_content(path)

    async def put_file(self, job_id: str, path: str, content: str) -> None:
        orchestrator = await self._require_completed(job_id)
        await orchestrator.update_file_content(path, content)
        await self.append_log(job_id, f"Updated file: {path}")

    async def execute_command(self, job_id: str, command: str,
                              session_id: Optional[str] = None) -> CommandExecution:
        if not isinstance(command, str) or not command.strip():
            raise ValidationError("Command must be a non-empty string")
        orchestrator = await self._require_completed(job_id)

        await self.append_log(job_id, f"$ {command}", LogType.COMMAND)
        execution = await orchestrator.execute_interactive_command(command, session_id)
        if execution.output:
            await self.append_log(job_id, execution.output, LogType.OUTPUT)
        if execution.exit_code != 0:
            await self.append_log(job_id, f"Command exited with code {execution.exit_code}", LogType.WARN)
        return execution

    async def start_preview(self, job_id: str) -> str:
        orchestrator = await self._require_completed(job_id)
        url = await orchestrator.start_preview_server()

        def set_preview(job: Job) -> None:
            job.preview_url = url
            job.is_interactive = True
            job.touch()

        await self._update(job_id, set_preview)
        return url

    async def stop_preview(self, job_id: str) -> None:
        orchestrator = await self._require_completed(job_id)
        await orchestrator.stop_preview_server()

        def clear_preview(job: Job) -> None:
            job.preview_url = None
            job.touch()

        await self._update(job_id, clear_preview)

    async def start_sandbox(self, job_id: str) -> ContainerInfo:
        orchestrator = await self._require_completed(job_id)
        info = await orchestrator.start_sandbox_environment()

        def mark_interactive(job: Job) -> None:
            job.is_interactive = True
            job.touch()

        await self._update(job_id, mark_interactive)
        return info

    async def get_sandbox_status(self, job_id: str) -> Optional[ContainerInfo]:
        await self._load(job_id)
        return self._orchestrator(job_id).get_container_status()

    async def stop_sandbox(self, job_id: str) -> None:
        await self._load(job_id)
        await self._orchestrator(job_id).stop_sandbox_environment()

    async def shutdown(self) -> List[CleanupFailure]:
        """実行中のパイプラインを止め、バックグラウンドプロセスとコンテナを片付けます。"""
        print("JobService: Shutting down...")
        for job_id, task in list(self._tasks.items()):
            job = await self._load(job_id)
            if not is_terminal(job.status):
                await self.cancel(job_id)
            elif not task.done():
                task.cancel()
        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for orchestrator in self._orchestrators.values():
            await orchestrator.shutdown()

        failures: List[CleanupFailure] = []
        if self._sandbox_manager is not None:
            failures = await self._sandbox_manager.cleanup_all_containers()
        print("JobService: Shutdown complete.")
        return failures
