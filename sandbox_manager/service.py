# coding_sandbox/sandbox_manager/service.py
import asyncio
import copy
from typing import Dict, List, Optional, Set, Tuple

from config import config
from coding_agent.shell import TIMEOUT_EXIT_CODE
from errors import CodingSandboxError, ContainerError, ExecutionError, NotFoundError
from sandbox_manager.models import CleanupFailure, ContainerInfo, ContainerPorts, ContainerStatus
from sandbox_manager.runtime import ContainerRuntime
from utils.locks import KeyedLock


class SandboxManagerService:
    def __init__(self, runtime: ContainerRuntime,
                 image: str = config.SANDBOX_IMAGE,
                 name_prefix: str = config.SANDBOX_NAME_PREFIX,
                 container_workspace_path: str = config.SANDBOX_WORKSPACE_PATH,
                 status_poll_delay: float = config.SANDBOX_STATUS_POLL_DELAY,
                 stop_timeout: int = config.SANDBOX_STOP_TIMEOUT,
                 host: str = config.SANDBOX_HOST) -> None:
        self._runtime = runtime
        self._image = image
        self._name_prefix = name_prefix
        self._container_workspace_path = container_workspace_path
        self._status_poll_delay = status_poll_delay
        self._stop_timeout = stop_timeout
        self._host = host

        self._containers: Dict[str, ContainerInfo] = {}
        self._job_locks = KeyedLock()
        # ポートは全ジョブで共有される資源なので、割り当てだけは単一のロックで直列化する
        self._allocation_lock = asyncio.Lock()
        self._reserved_ports: Dict[str, ContainerPorts] = {}
        self._poll_tasks: Dict[str, asyncio.Task] = {}

    def container_name(self, job_id: str) -> str:
        return f"{self._name_prefix}{job_id}"

    @property
    def container_workspace_path(self) -> str:
        return self._container_workspace_path

    def _ports_in_use(self) -> Set[int]:
        in_use: Set[int] = set()
        for info in self._containers.values():
            if info.is_active:
                in_use |= info.ports.as_set()
        for ports in self._reserved_ports.values():
            in_use |= ports.as_set()
        return in_use

    def _allocate_ports(self) -> ContainerPorts:
        """
        起点ポートに「追跡中のアクティブなコンテナ数」を足したオフセットから始め、
        他のアクティブなコンテナが使用中のポートと衝突する間はオフセットを増やします。
        """
        in_use = self._ports_in_use()
        offset = sum(1 for info in self._containers.values() if info.is_active) + len(self._reserved_ports)
        while True:
            ports = ContainerPorts(
                vnc=config.BASE_VNC_PORT + offset,
                novnc=config.BASE_NOVNC_PORT + offset,
                jupyter=config.BASE_JUPYTER_PORT + offset,
                dev=config.BASE_DEV_PORT + offset,
            )
            if len(ports.as_set()) == 4 and not (ports.as_set() & in_use):
                return ports
            offset += 1

    async def create_container(self, job_id: str, workspace_path: str) -> ContainerInfo:
        """
        ジョブ用のサンドボックスコンテナを作成します。
        既に停止していないコンテナがあれば、新しく作らずにそれを返します。
        """
        async with self._job_locks.hold(job_id):
            existing = self._containers.get(job_id)
            if existing and existing.status in (ContainerStatus.STARTING, ContainerStatus.RUNNING):
                print(f"SandboxManagerService: Reusing existing container {existing.name} for job {job_id}.")
                return copy.deepcopy(existing)
            if existing and existing.status == ContainerStatus.ERROR:
                print(f"SandboxManagerService: Existing container {existing.name} is in error state. Replacing it.")
                await self._discard_runtime_object(existing)

            name = self.container_name(job_id)
            async with self._allocation_lock:
                ports = self._allocate_ports()
                self._reserved_ports[job_id] = ports

            try:
                # 同名の古いコンテナが残っていると衝突するので先に取り除く
                await asyncio.to_thread(self._runtime.remove_container, name)

                print(f"SandboxManagerService: Provisioning sandbox {name} with ports {ports}.")
                container_id = await asyncio.to_thread(
                    self._runtime.create_container,
                    name,
                    self._image,
                    {
                        config.CONTAINER_VNC_PORT: ports.vnc,
                        config.CONTAINER_NOVNC_PORT: ports.novnc,
                        config.CONTAINER_JUPYTER_PORT: ports.jupyter,
                        config.CONTAINER_DEV_PORT: ports.dev,
                    },
                    {workspace_path: {"bind": self._container_workspace_path, "mode": "rw"}},
                    list(config.SANDBOX_SECURITY_OPTS),
                    list(config.SANDBOX_CAP_ADD),
                )
            except ContainerError:
                self._reserved_ports.pop(job_id, None)
                raise
            except Exception as e:
                self._reserved_ports.pop(job_id, None)
                raise ContainerError(f"Failed to create container: {e}") from e

            info = ContainerInfo(
                job_id=job_id,
                name=name,
                container_id=container_id,
                status=ContainerStatus.STARTING,
                ports=ports,
                vnc_url=f"http://{self._host}:{ports.novnc}",
                jupyter_url=f"http://{self._host}:{ports.jupyter}",
                logs=[f"Container {container_id} created"],
            )
            # 予約を外す前に記録する。ポートは常にどちらかに含まれる
            self._containers[job_id] = info
            self._reserved_ports.pop(job_id, None)
            self._poll_tasks[job_id] = asyncio.create_task(self._poll_status(job_id, container_id))
            return copy.deepcopy(info)

    async def _poll_status(self, job_id: str, container_id: str) -> None:
        """起動直後のコンテナの状態を確認し、running か error に切り替えます。失敗は記録のみ。"""
        try:
            await asyncio.sleep(self._status_poll_delay)
            async with self._job_locks.hold(job_id):
                info = self._containers.get(job_id)
                if info is None or info.container_id != container_id or info.status != ContainerStatus.STARTING:
                    return
                try:
                    runtime_status = await asyncio.to_thread(self._runtime.get_status, info.name)
                except Exception as e:
                    info.status = ContainerStatus.ERROR
                    info.logs.append(f"Error checking status: {e}")
                    print(f"SandboxManagerService: Error checking status of {info.name}: {e}")
                    return
                if runtime_status == "running":
                    info.status = ContainerStatus.RUNNING
                    info.logs.append("Container is running and ready")
                else:
                    info.status = ContainerStatus.ERROR
                    info.logs.append(f"Container failed to start (runtime status: {runtime_status})")
                print(f"SandboxManagerService: Container {info.name} is {info.status.value}.")
        finally:
            if self._poll_tasks.get(job_id) is asyncio.current_task():
                del self._poll_tasks[job_id]

    async def wait_until_settled(self, job_id: str) -> Optional[ContainerInfo]:
        """起動直後の状態確認が終わるまで待ちます。"""
        task = self._poll_tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.get_container_info(job_id)

    def _cancel_poll(self, job_id: str) -> None:
        task = self._poll_tasks.pop(job_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _discard_runtime_object(self, info: ContainerInfo) -> None:
        self._cancel_poll(info.job_id)
        await asyncio.to_thread(self._runtime.stop_container, info.name, self._stop_timeout)
        await asyncio.to_thread(self._runtime.remove_container, info.name)
        info.status = ContainerStatus.STOPPED
        info.logs.append("Container stopped and removed")

    async def stop_container(self, job_id: str) -> None:
        """コンテナを停止・削除します。ランタイム上で既に消えていても成功扱いです。"""
        async with self._job_locks.hold(job_id):
            info = self._containers.get(job_id)
            if info is None:
                raise NotFoundError(f"No container registered for job {job_id}")
            try:
                await self._discard_runtime_object(info)
            except CodingSandboxError as e:
                info.status = ContainerStatus.ERROR
                info.logs.append(f"Failed to stop container: {e}")
                raise ContainerError(f"Failed to stop container for job {job_id}: {e}") from e
            print(f"SandboxManagerService: Container {info.name} stopped.")

    async def execute_in_container(self, job_id: str, command: str,
                                   timeout: Optional[float] = None) -> Tuple[str, int]:
        info = self._containers.get(job_id)
        if info is None or not info.is_active:
            raise NotFoundError(f"No container registered for job {job_id}")
        call = asyncio.to_thread(self._runtime.exec_command, info.name, command, self._container_workspace_path)
        try:
            if timeout is not None:
                return await asyncio.wait_for(call, timeout=timeout)
            return await call
        except asyncio.TimeoutError:
            raise ExecutionError(f"Command timed out after {timeout} seconds in {info.name}", TIMEOUT_EXIT_CODE)

    async def copy_file_to_container(self, job_id: str, local_path: str, container_path: str) -> None:
        info = self._require_active(job_id)
        try:
            await asyncio.to_thread(self._runtime.copy_to, info.name, local_path, container_path)
        except ContainerError:
            raise
        except (OSError, CodingSandboxError) as e:
            raise ContainerError(f"Failed to copy file to container: {e}") from e

    async def copy_file_from_container(self, job_id: str, container_path: str, local_path: str) -> None:
        info = self._require_active(job_id)
        try:
            await asyncio.to_thread(self._runtime.copy_from, info.name, container_path, local_path)
        except ContainerError:
            raise
        except (OSError, CodingSandboxError) as e:
            raise ContainerError(f"Failed to copy file from container: {e}") from e

    def _require_active(self, job_id: str) -> ContainerInfo:
        info = self._containers.get(job_id)
        if info is None or not info.is_active:
            raise NotFoundError(f"No container registered for job {job_id}")
        return info

    def get_container_info(self, job_id: str) -> Optional[ContainerInfo]:
        info = self._containers.get(job_id)
        return copy.deepcopy(info) if info else None

    async def get_container_logs(self, job_id: str) -> List[str]:
        try:
            return await asyncio.to_thread(self._runtime.get_logs, self.container_name(job_id))
        except CodingSandboxError as e:
            return [f"Error getting logs: {e}"]

    async def list_running_containers(self) -> List[str]:
        """ランタイム上で稼働中のサンドボックスのジョブIDを返します。"""
        try:
            names = await asyncio.to_thread(self._runtime.list_by_prefix, self._name_prefix)
        except CodingSandboxError as e:
            print(f"SandboxManagerService: Error listing containers: {e}")
            return []
        return [name[len(self._name_prefix):] for name in names]

    async def cleanup_all_containers(self) -> List[CleanupFailure]:
        """
        このマネージャーが作成したすべてのコンテナを停止・削除します。
        個々の失敗で処理は止めず、失敗の一覧を返すので、呼び出し側で再試行を判断できます。
        """
        print("SandboxManagerService: Cleaning up all sandbox containers...")
        failures: List[CleanupFailure] = []

        names: Set[str] = {info.name for info in self._containers.values() if info.is_active}
        try:
            names |= set(await asyncio.to_thread(self._runtime.list_by_prefix, self._name_prefix, True))
        except Exception as e:
            print(f"SandboxManagerService: Could not list runtime containers: {e}")
            failures.append(CleanupFailure(container_name=f"{self._name_prefix}*", error=str(e)))

        for name in sorted(names):
            job_id = name[len(self._name_prefix):]
            async with self._job_locks.hold(job_id):
                self._cancel_poll(job_id)
                try:
                    await asyncio.to_thread(self._runtime.stop_container, name, self._stop_timeout)
                    await asyncio.to_thread(self._runtime.remove_container, name)
                except Exception as e:
                    print(f"SandboxManagerService: Could not remove container {name}: {e}")
                    failures.append(CleanupFailure(container_name=name, error=str(e)))
                    continue
                info = self._containers.get(job_id)
                if info is not None and info.is_active:
                    info.status = ContainerStatus.STOPPED
                    info.logs.append("Container stopped and removed during cleanup")

        print(f"SandboxManagerService: Cleanup complete ({len(failures)} failures).")
        return failures
