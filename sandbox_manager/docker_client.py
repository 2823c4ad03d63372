# coding_sandbox/sandbox_manager/docker_client.py
import io
import os
import tarfile
from typing import Dict, List, Optional, Tuple

import docker
from docker.errors import APIError, ImageNotFound, NotFound
from docker.models.containers import Container

from errors import ContainerError, NotFoundError
from sandbox_manager.runtime import ContainerRuntime


class DockerClient(ContainerRuntime):
    def __init__(self, docker_client: docker.client.DockerClient, sandbox_labels: Dict[str, str]):
        self._client = docker_client
        self._sandbox_labels = sandbox_labels

    def _get(self, name: str) -> Container:
        try:
            return self._client.containers.get(name)
        except NotFound:
            raise NotFoundError(f"Container {name} not found.")
        except APIError as e:
            raise ContainerError(f"Docker API error looking up container {name}: {e}")

    def pull_image(self, image_name: str) -> bool:
        try:
            print(f"DockerClient: Pulling image {image_name}...")
            self._client.images.pull(image_name)
            print(f"DockerClient: Image {image_name} pulled successfully.")
            return True
        except ImageNotFound:
            print(f"DockerClient: Image {image_name} not found.")
            return False
        except APIError as e:
            print(f"DockerClient: Error pulling image {image_name}: {e}")
            return False

    def create_container(self, name: str, image: str, ports: Dict[int, int],
                         volumes: Dict[str, Dict[str, str]],
                         security_opt: List[str], cap_add: List[str]) -> str:
        """
        新しいサンドボックスコンテナを起動し、そのコンテナIDを返します。
        このメソッドはコンテナを自動的に削除しません。
        """
        labels_with_name = self._sandbox_labels.copy()
        labels_with_name["sandbox_name"] = name
        port_bindings = {f"{container_port}/tcp": host_port for container_port, host_port in ports.items()}
        try:
            # ローカルにイメージが無ければ取得を試みる
            try:
                self._client.images.get(image)
            except ImageNotFound:
                if not self.pull_image(image):
                    raise ContainerError(f"Failed to pull Docker image: {image}")

            print(f"DockerClient: Starting new container {name} with image {image}")
            container = self._client.containers.run(
                image,
                detach=True,
                name=name,
                labels=labels_with_name,
                ports=port_bindings,
                volumes=volumes,
                security_opt=security_opt,
                cap_add=cap_add,
            )
            print(f"DockerClient: Container {name} (ID: {container.id}) started.")
            return container.id
        except APIError as e:
            raise ContainerError(f"Failed to start container {name}: {e}")

    def get_status(self, name: str) -> Optional[str]:
        try:
            container = self._client.containers.get(name)
            return container.status
        except NotFound:
            return None
        except APIError as e:
            raise ContainerError(f"Error getting container status for {name}: {e}")

    def stop_container(self, name: str, timeout: int) -> bool:
        try:
            container = self._client.containers.get(name)
            print(f"DockerClient: Stopping container {name}")
            # docker stop は猶予時間後に SIGKILL するので、コンテナ内のプロセスは確実に止まる
            container.stop(timeout=timeout)
            return True
        except NotFound:
            print(f"DockerClient: Container {name} not found for stop.")
            return False
        except APIError as e:
            raise ContainerError(f"Error stopping container {name}: {e}")

    def remove_container(self, name: str) -> bool:
        try:
            container = self._client.containers.get(name)
            print(f"DockerClient: Removing container {name}")
            container.remove(v=True, force=True)
            return True
        except NotFound:
            print(f"DockerClient: Container {name} not found for remove.")
            return False
        except APIError as e:
            raise ContainerError(f"Error removing container {name}: {e}")

    def exec_command(self, name: str, command: str, workdir: Optional[str] = None) -> Tuple[str, int]:
        """
        実行中のコンテナ内で汎用シェルコマンドを bash -c で実行し、
        stdout と stderr を連結した出力と終了コードを返します。
        """
        container = self._get(name)
        try:
            print(f"DockerClient: Executing command in container {name}: {command}")
            exec_result = container.exec_run(
                cmd=["bash", "-c", command],
                stream=False,
                demux=True,
                tty=False,
                detach=False,
                workdir=workdir,
            )
        except APIError as e:
            raise ContainerError(f"Docker API error executing command in {name}: {e}")

        stdout_bytes, stderr_bytes = exec_result.output or (None, None)
        output = stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
        error = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""
        exit_code = exec_result.exit_code if exec_result.exit_code is not None else 1
        print(f"DockerClient: Command in {name} finished with exit code {exit_code}")
        return output + error, exit_code

    def copy_to(self, name: str, local_path: str, container_path: str) -> None:
        container = self._get(name)
        # put_archive は tar を受け取り、指定ディレクトリに展開する
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as archive:
            archive.add(local_path, arcname=os.path.basename(container_path))
        buffer.seek(0)
        try:
            ok = container.put_archive(os.path.dirname(container_path) or "/", buffer.getvalue())
        except (APIError, NotFound) as e:
            raise ContainerError(f"Failed to copy file to container: {e}")
        if not ok:
            raise ContainerError(f"Failed to copy {local_path} to {name}:{container_path}")

    def copy_from(self, name: str, container_path: str, local_path: str) -> None:
        container = self._get(name)
        try:
            stream, _stat = container.get_archive(container_path)
            buffer = io.BytesIO(b"".join(stream))
        except (APIError, NotFound) as e:
            raise ContainerError(f"Failed to copy file from container: {e}")

        with tarfile.open(fileobj=buffer, mode="r") as archive:
            member = next((m for m in archive.getmembers() if m.isfile()), None)
            if member is None:
                raise ContainerError(f"{container_path} in {name} is not a regular file")
            extracted = archive.extractfile(member)
            if extracted is None:
                raise ContainerError(f"Could not read {container_path} from {name}")
            os.makedirs(os.path.dirname(os.path.abspath(local_path)), exist_ok=True)
            with open(local_path, "wb") as handle:
                handle.write(extracted.read())

    def get_logs(self, name: str) -> List[str]:
        container = self._get(name)
        try:
            raw = container.logs()
        except APIError as e:
            raise ContainerError(f"Error getting logs for {name}: {e}")
        return [line for line in raw.decode("utf-8", errors="replace").split("\n") if line.strip()]

    def list_by_prefix(self, prefix: str, include_stopped: bool = False) -> List[str]:
        """サンドボックスラベルを持ち、名前が prefix で始まるコンテナをリストします。"""
        label_filters = [f"{key}={value}" for key, value in self._sandbox_labels.items()]
        try:
            containers = self._client.containers.list(all=include_stopped, filters={"label": label_filters})
        except APIError as e:
            raise ContainerError(f"Error listing sandbox containers: {e}")
        return [c.name for c in containers if c.name.startswith(prefix)]
