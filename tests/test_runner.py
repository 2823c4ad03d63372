import asyncio
import json
import os
import zipfile

import pytest

from coding_agent.runner import AgentOrchestrator
from coding_agent.shell import TIMEOUT_EXIT_CODE
from conftest import StubGenerator
from errors import ExecutionError, GenerationError, NotFoundError, SecurityError
from jobs.models import LogType
from sandbox_manager.models import ContainerStatus


class RecordingSink:
    def __init__(self):
        self.messages = []

    async def emit(self, message, log_type=LogType.INFO):
        self.messages.append((message, log_type))


def make_orchestrator(tmp_path, generator=None, sandbox_manager=None, job_id="job_test"):
    return AgentOrchestrator(
        job_id=job_id,
        workspace_path=tmp_path / "workspaces" / job_id,
        generator=generator or StubGenerator(),
        sandbox_manager=sandbox_manager,
        log_sink=RecordingSink(),
        downloads_dir=tmp_path / "downloads",
    )


@pytest.mark.asyncio
async def test_execute_task_materializes_files_and_records_context(tmp_path):
    generator = StubGenerator(files={"src/index.js": "console.log(1);\n", "style.css": "body {}\n"})
    orchestrator = make_orchestrator(tmp_path, generator)

    await orchestrator.execute_task("Build a counter")

    workspace = orchestrator.workspace_path
    assert (workspace / "src" / "index.js").read_text() == "console.log(1);\n"
    package_json = json.loads((workspace / "package.json").read_text())
    assert package_json["name"] == "build-a-counter"
    assert "dev" in package_json["scripts"]
    assert "Stub project" in (workspace / "README.md").read_text()

    entries = orchestrator.context.entries
    assert entries[0].type == "task"
    assert entries[-1].content == "Task completed successfully"
    changed = [entry.metadata["path"] for entry in entries if entry.type == "file_change"]
    assert changed[:2] == ["src/index.js", "style.css"]
    assert generator.calls == ["Build a counter"]


@pytest.mark.asyncio
async def test_generated_package_json_is_kept(tmp_path):
    manifest = json.dumps({"name": "custom", "scripts": {"start": "node index.js"}})
    orchestrator = make_orchestrator(tmp_path, StubGenerator(files={"package.json": manifest}))

    await orchestrator.execute_task("Anything")

    assert json.loads((orchestrator.workspace_path / "package.json").read_text())["name"] == "custom"


@pytest.mark.asyncio
async def test_generator_failure_is_recorded_and_raised(tmp_path):
    orchestrator = make_orchestrator(tmp_path, StubGenerator(error=RuntimeError("model offline")))

    with pytest.raises(GenerationError):
        await orchestrator.execute_task("Build a counter")

    assert orchestrator.context.entries[-1].type == "task"
    assert orchestrator.context.entries[-1].content.startswith("Task failed:")


@pytest.mark.asyncio
async def test_escaping_generated_path_fails_the_task(tmp_path):
    orchestrator = make_orchestrator(tmp_path, StubGenerator(files={"../evil.sh": "rm -rf ~"}))

    with pytest.raises(SecurityError):
        await orchestrator.execute_task("Build a counter")

    assert not (tmp_path / "workspaces" / "evil.sh").exists()
    assert orchestrator.context.entries[-1].content.startswith("Task failed:")


@pytest.mark.asyncio
async def test_package_project_archives_whole_workspace(tmp_path):
    orchestrator = make_orchestrator(tmp_path)
    await orchestrator.execute_task("Build a counter")

    archive_path = await orchestrator.package_project()

    assert archive_path == (tmp_path / "downloads" / "job_test.zip").resolve()
    with zipfile.ZipFile(archive_path) as archive:
        names = set(archive.namelist())
    assert {"index.js", "package.json", "README.md", ".agent_context.json"} <= names
    assert not list((tmp_path / "downloads").glob("*.part"))


@pytest.mark.asyncio
async def test_concurrent_edits_all_land_in_the_archive(tmp_path):
    files = {f"assets/file_{i:03d}.txt": "x" * 2000 for i in range(200)}
    orchestrator = make_orchestrator(tmp_path, StubGenerator(files=files))
    await orchestrator.execute_task("Build a counter")

    await asyncio.gather(*[
        orchestrator.update_file_content(f"edit_{i}.txt", f"edit {i}\n") for i in range(8)
    ])

    with zipfile.ZipFile(tmp_path / "downloads" / "job_test.zip") as archive:
        assert archive.testzip() is None
        names = set(archive.namelist())
    assert {f"edit_{i}.txt" for i in range(8)} <= names
    assert os.listdir(tmp_path / "downloads") == ["job_test.zip"]


@pytest.mark.asyncio
async def test_local_command_fallback(tmp_path):
    orchestrator = make_orchestrator(tmp_path)
    await orchestrator.execute_task("Build a counter")

    execution = await orchestrator.execute_interactive_command("echo hi")

    assert execution.exit_code == 0
    assert execution.output == "hi\n"
    assert execution.duration >= 0


@pytest.mark.asyncio
async def test_commands_accumulate_in_session(tmp_path):
    orchestrator = make_orchestrator(tmp_path)
    await orchestrator.execute_task("Build a counter")
    session = orchestrator.create_terminal_session()

    await orchestrator.execute_interactive_command("echo one", session.id)
    await orchestrator.execute_interactive_command("echo two", session.id)

    (stored,) = [s for s in orchestrator.get_terminal_sessions() if s.id == session.id]
    assert [c.command for c in stored.commands] == ["echo one", "echo two"]
    with pytest.raises(NotFoundError):
        await orchestrator.execute_interactive_command("echo three", "unknown-session")


@pytest.mark.asyncio
async def test_blocked_command_is_wrapped_as_failed_execution(tmp_path):
    orchestrator = make_orchestrator(tmp_path)
    await orchestrator.execute_task("Build a counter")

    execution = await orchestrator.execute_interactive_command("rm -rf /")

    assert execution.exit_code == 1
    assert "not allowed" in execution.output


@pytest.mark.asyncio
async def test_commands_route_to_running_sandbox(tmp_path, sandbox_manager, runtime):
    orchestrator = make_orchestrator(tmp_path, sandbox_manager=sandbox_manager)
    await orchestrator.execute_task("Build a counter")

    await orchestrator.start_sandbox_environment()
    await sandbox_manager.wait_until_settled("job_test")
    execution = await orchestrator.execute_interactive_command("echo hi")

    assert execution.output == "sandbox: echo hi\n"
    assert runtime.exec_calls[-1][1] == "echo hi"
    assert orchestrator.get_vnc_url() == "http://localhost:6080"
    assert orchestrator.get_jupyter_url() == "http://localhost:8888"

    await orchestrator.stop_sandbox_environment()
    assert orchestrator.get_container_status().status == ContainerStatus.STOPPED
    assert orchestrator.get_vnc_url() is None


@pytest.mark.asyncio
async def test_sandbox_command_timeout_reports_timeout_exit_code(tmp_path, sandbox_manager, runtime):
    orchestrator = make_orchestrator(tmp_path, sandbox_manager=sandbox_manager)
    await orchestrator.execute_task("Build a counter")
    await orchestrator.start_sandbox_environment()
    await sandbox_manager.wait_until_settled("job_test")
    orchestrator.command_timeout = 0.05
    runtime.exec_delay = 0.3

    execution = await orchestrator.execute_interactive_command("sleep 10")

    assert execution.exit_code == TIMEOUT_EXIT_CODE
    assert "timed out" in execution.output


@pytest.mark.asyncio
async def test_preview_in_sandbox_uses_published_dev_port(tmp_path, sandbox_manager, runtime):
    orchestrator = make_orchestrator(tmp_path, sandbox_manager=sandbox_manager)
    await orchestrator.execute_task("Build a counter")
    await orchestrator.start_sandbox_environment()
    await sandbox_manager.wait_until_settled("job_test")

    url = await orchestrator.start_preview_server()
    await orchestrator.stop_preview_server()

    assert url == "http://localhost:3001"
    commands = [call[1] for call in runtime.exec_calls]
    assert any("npm install" in command for command in commands)
    assert any("npm run dev" in command for command in commands)
    assert any(command.startswith("pkill") for command in commands)


@pytest.mark.asyncio
async def test_local_preview_requires_manifest(tmp_path):
    orchestrator = make_orchestrator(tmp_path)
    orchestrator.workspace_path.mkdir(parents=True)

    with pytest.raises(NotFoundError):
        await orchestrator.start_preview_server()


@pytest.mark.asyncio
async def test_file_tree_skips_hidden_and_dependency_dirs(tmp_path):
    generator = StubGenerator(files={
        "app/page.tsx": "x",
        "b.txt": "x",
        "a.txt": "x",
        "node_modules/react/index.js": "x",
        ".env": "SECRET=1",
    })
    orchestrator = make_orchestrator(tmp_path, generator)
    await orchestrator.execute_task("Build a counter")

    tree = await orchestrator.get_file_tree()

    assert [node.name for node in tree] == ["app", "README.md", "a.txt", "b.txt", "package.json"]
    assert tree[0].type == "directory"
    assert [child.path for child in tree[0].children] == ["app/page.tsx"]
    assert tree[1].children is None


@pytest.mark.asyncio
async def test_update_file_content_repackages(tmp_path):
    orchestrator = make_orchestrator(tmp_path)
    await orchestrator.execute_task("Build a counter")

    await orchestrator.update_file_content("index.js", "console.log('updated');\n")

    assert await orchestrator.get_file_content("index.js") == "console.log('updated');\n"
    with zipfile.ZipFile(tmp_path / "downloads" / "job_test.zip") as archive:
        assert archive.read("index.js").decode() == "console.log('updated');\n"
    with pytest.raises(SecurityError):
        await orchestrator.update_file_content("../outside.js", "x")


@pytest.mark.asyncio
async def test_sandbox_operations_require_a_manager(tmp_path):
    orchestrator = make_orchestrator(tmp_path)

    assert orchestrator.get_container_status() is None
    assert orchestrator.get_vnc_url() is None
    with pytest.raises(ExecutionError):
        await orchestrator.start_sandbox_environment()
