"""
Pytest configuration and shared fakes for coding_sandbox tests
"""
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

# Add project root to Python path for all tests
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from coding_agent.filesystem import ConfinedFilesystem  # noqa: E402
from coding_agent.generator import GeneratedProject, ProjectGenerator, TemplateProjectGenerator  # noqa: E402
from errors import ContainerError, NotFoundError  # noqa: E402
from jobs.repository import InMemoryJobRepository  # noqa: E402
from jobs.service import JobService  # noqa: E402
from sandbox_manager.runtime import ContainerRuntime  # noqa: E402
from sandbox_manager.service import SandboxManagerService  # noqa: E402


class FakeContainerRuntime(ContainerRuntime):
    """In-memory container runtime that records every call."""

    def __init__(self, start_status: str = "running"):
        self.start_status = start_status
        self.containers: Dict[str, Dict] = {}
        self.create_calls: List[Dict] = []
        self.exec_calls: List[Tuple[str, str, Optional[str]]] = []
        self.exec_results: Dict[str, Tuple[str, int]] = {}
        self.files: Dict[Tuple[str, str], bytes] = {}
        self.fail_create = False
        self.fail_stop_for: set = set()
        self.exec_delay = 0.0
        self._next_id = 0

    def create_container(self, name, image, ports, volumes, security_opt, cap_add):
        if self.fail_create:
            raise ContainerError("runtime refused to create container")
        if name in self.containers:
            raise ContainerError(f"name {name} already in use")
        self._next_id += 1
        container_id = f"cid{self._next_id}"
        self.containers[name] = {"id": container_id, "status": self.start_status, "ports": dict(ports)}
        self.create_calls.append({
            "name": name, "image": image, "ports": dict(ports), "volumes": volumes,
            "security_opt": security_opt, "cap_add": cap_add,
        })
        return container_id

    def get_status(self, name):
        container = self.containers.get(name)
        return container["status"] if container else None

    def stop_container(self, name, timeout):
        if name in self.fail_stop_for:
            raise ContainerError(f"cannot stop {name}")
        container = self.containers.get(name)
        if container is None:
            return False
        container["status"] = "exited"
        return True

    def remove_container(self, name):
        return self.containers.pop(name, None) is not None

    def exec_command(self, name, command, workdir=None):
        if name not in self.containers:
            raise NotFoundError(f"Container {name} not found.")
        self.exec_calls.append((name, command, workdir))
        if self.exec_delay:
            time.sleep(self.exec_delay)
        return self.exec_results.get(command, (f"sandbox: {command}\n", 0))

    def copy_to(self, name, local_path, container_path):
        if name not in self.containers:
            raise NotFoundError(f"Container {name} not found.")
        self.files[(name, container_path)] = Path(local_path).read_bytes()

    def copy_from(self, name, container_path, local_path):
        key = (name, container_path)
        if key not in self.files:
            raise ContainerError(f"{container_path} not found in {name}")
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        Path(local_path).write_bytes(self.files[key])

    def get_logs(self, name):
        if name not in self.containers:
            raise NotFoundError(f"Container {name} not found.")
        return [f"{name} booted"]

    def list_by_prefix(self, prefix, include_stopped=False):
        return [
            name for name, container in self.containers.items()
            if name.startswith(prefix) and (include_stopped or container["status"] == "running")
        ]


class StubGenerator(ProjectGenerator):
    def __init__(self, files: Optional[Dict[str, str]] = None, summary: str = "Stub project",
                 error: Optional[Exception] = None):
        self.files = files if files is not None else {"index.js": "console.log('hi');\n"}
        self.summary = summary
        self.error = error
        self.calls: List[str] = []

    async def generate(self, description: str) -> GeneratedProject:
        self.calls.append(description)
        if self.error is not None:
            raise self.error
        return GeneratedProject(files=dict(self.files), summary=self.summary)


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def fs(workspace):
    return ConfinedFilesystem(workspace)


@pytest.fixture
def runtime():
    return FakeContainerRuntime()


@pytest.fixture
def sandbox_manager(runtime):
    return SandboxManagerService(runtime, status_poll_delay=0, host="localhost")


@pytest.fixture
def downloads_dir(tmp_path):
    return tmp_path / "downloads"


@pytest.fixture
def job_service(tmp_path, sandbox_manager, downloads_dir):
    return JobService(
        repository=InMemoryJobRepository(),
        generator=TemplateProjectGenerator(),
        sandbox_manager=sandbox_manager,
        workspaces_dir=tmp_path / "workspaces",
        downloads_dir=downloads_dir,
        download_url_prefix="/api/download",
        provisioning_delay=0,
    )
