import asyncio

import pytest

from conftest import FakeContainerRuntime
from coding_agent.shell import TIMEOUT_EXIT_CODE
from errors import ContainerError, ExecutionError, NotFoundError
from sandbox_manager.models import ContainerStatus
from sandbox_manager.service import SandboxManagerService


@pytest.mark.asyncio
async def test_create_container_starts_runtime_and_becomes_running(sandbox_manager, runtime, workspace):
    info = await sandbox_manager.create_container("job_a", str(workspace))

    assert info.status == ContainerStatus.STARTING
    assert info.name == "sandbox-job_a"
    call = runtime.create_calls[0]
    assert call["ports"] == {5900: 5900, 6080: 6080, 8888: 8888, 3000: 3001}
    assert call["volumes"] == {str(workspace): {"bind": "/home/agent/workspace", "mode": "rw"}}
    assert call["security_opt"] == ["seccomp=unconfined"]
    assert call["cap_add"] == ["SYS_ADMIN"]

    settled = await sandbox_manager.wait_until_settled("job_a")
    assert settled.status == ContainerStatus.RUNNING
    assert settled.logs[-1] == "Container is running and ready"
    assert settled.vnc_url == "http://localhost:6080"
    assert settled.jupyter_url == "http://localhost:8888"


@pytest.mark.asyncio
async def test_container_that_does_not_start_is_marked_error(workspace):
    manager = SandboxManagerService(FakeContainerRuntime(start_status="exited"), status_poll_delay=0)

    await manager.create_container("job_a", str(workspace))
    settled = await manager.wait_until_settled("job_a")

    assert settled.status == ContainerStatus.ERROR
    assert "Container failed to start" in settled.logs[-1]


@pytest.mark.asyncio
async def test_creating_twice_reuses_the_existing_container(sandbox_manager, runtime, workspace):
    first = await sandbox_manager.create_container("job_a", str(workspace))
    second = await sandbox_manager.create_container("job_a", str(workspace))

    assert len(runtime.create_calls) == 1
    assert first.container_id == second.container_id
    assert first.ports == second.ports


@pytest.mark.asyncio
async def test_errored_container_is_replaced(workspace):
    runtime = FakeContainerRuntime(start_status="exited")
    manager = SandboxManagerService(runtime, status_poll_delay=0)
    await manager.create_container("job_a", str(workspace))
    await manager.wait_until_settled("job_a")

    runtime.start_status = "running"
    replacement = await manager.create_container("job_a", str(workspace))

    assert len(runtime.create_calls) == 2
    assert replacement.container_id == "cid2"
    assert list(runtime.containers) == ["sandbox-job_a"]


@pytest.mark.asyncio
async def test_concurrent_containers_get_disjoint_ports(sandbox_manager, workspace):
    infos = await asyncio.gather(*[
        sandbox_manager.create_container(f"job_{i}", str(workspace)) for i in range(5)
    ])

    port_sets = [info.ports.as_set() for info in infos]
    for i, ports in enumerate(port_sets):
        assert len(ports) == 4
        for other in port_sets[i + 1:]:
            assert not ports & other


@pytest.mark.asyncio
async def test_ports_are_not_reissued_after_another_container_stops(sandbox_manager, workspace):
    a = await sandbox_manager.create_container("job_a", str(workspace))
    b = await sandbox_manager.create_container("job_b", str(workspace))
    await sandbox_manager.stop_container("job_a")

    c = await sandbox_manager.create_container("job_c", str(workspace))

    assert not c.ports.as_set() & b.ports.as_set()
    assert a.ports.as_set() != b.ports.as_set()


@pytest.mark.asyncio
async def test_runtime_failure_raises_and_releases_ports(sandbox_manager, runtime, workspace):
    runtime.fail_create = True

    with pytest.raises(ContainerError):
        await sandbox_manager.create_container("job_a", str(workspace))

    assert sandbox_manager.get_container_info("job_a") is None
    runtime.fail_create = False
    info = await sandbox_manager.create_container("job_b", str(workspace))
    assert info.ports.vnc == 5900


@pytest.mark.asyncio
async def test_stop_container_marks_stopped_and_tolerates_missing_runtime_object(sandbox_manager, runtime, workspace):
    await sandbox_manager.create_container("job_a", str(workspace))
    runtime.containers.clear()

    await sandbox_manager.stop_container("job_a")

    info = sandbox_manager.get_container_info("job_a")
    assert info.status == ContainerStatus.STOPPED
    assert info.logs[-1] == "Container stopped and removed"


@pytest.mark.asyncio
async def test_stop_unknown_container_raises_not_found(sandbox_manager):
    with pytest.raises(NotFoundError):
        await sandbox_manager.stop_container("job_missing")


@pytest.mark.asyncio
async def test_execute_in_container(sandbox_manager, runtime, workspace):
    await sandbox_manager.create_container("job_a", str(workspace))
    runtime.exec_results["ls"] = ("package.json\n", 0)

    output, exit_code = await sandbox_manager.execute_in_container("job_a", "ls")

    assert (output, exit_code) == ("package.json\n", 0)
    assert runtime.exec_calls == [("sandbox-job_a", "ls", "/home/agent/workspace")]
    with pytest.raises(NotFoundError):
        await sandbox_manager.execute_in_container("job_missing", "ls")


@pytest.mark.asyncio
async def test_execute_in_container_timeout_is_an_execution_error(sandbox_manager, runtime, workspace):
    await sandbox_manager.create_container("job_a", str(workspace))
    runtime.exec_delay = 0.3

    with pytest.raises(ExecutionError) as excinfo:
        await sandbox_manager.execute_in_container("job_a", "sleep 10", timeout=0.05)

    assert excinfo.value.exit_code == TIMEOUT_EXIT_CODE
    assert not isinstance(excinfo.value, ContainerError)


@pytest.mark.asyncio
async def test_copy_files_in_and_out(sandbox_manager, workspace, tmp_path):
    await sandbox_manager.create_container("job_a", str(workspace))
    source = workspace / "data.txt"
    source.write_text("payload")

    await sandbox_manager.copy_file_to_container("job_a", str(source), "/tmp/data.txt")
    await sandbox_manager.copy_file_from_container("job_a", "/tmp/data.txt", str(tmp_path / "back.txt"))

    assert (tmp_path / "back.txt").read_text() == "payload"
    with pytest.raises(ContainerError):
        await sandbox_manager.copy_file_from_container("job_a", "/tmp/missing", str(tmp_path / "x"))


@pytest.mark.asyncio
async def test_logs_and_listing(sandbox_manager, workspace):
    await sandbox_manager.create_container("job_a", str(workspace))

    assert await sandbox_manager.get_container_logs("job_a") == ["sandbox-job_a booted"]
    assert (await sandbox_manager.get_container_logs("job_missing"))[0].startswith("Error getting logs")
    assert await sandbox_manager.list_running_containers() == ["job_a"]


@pytest.mark.asyncio
async def test_cleanup_continues_past_failures(sandbox_manager, runtime, workspace):
    await sandbox_manager.create_container("job_a", str(workspace))
    await sandbox_manager.create_container("job_b", str(workspace))
    runtime.fail_stop_for.add("sandbox-job_a")

    failures = await sandbox_manager.cleanup_all_containers()

    assert [failure.container_name for failure in failures] == ["sandbox-job_a"]
    assert sandbox_manager.get_container_info("job_b").status == ContainerStatus.STOPPED
    assert sandbox_manager.get_container_info("job_a").status != ContainerStatus.STOPPED
    assert "sandbox-job_b" not in runtime.containers
