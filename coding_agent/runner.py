# coding_sandbox/coding_agent/runner.py
import asyncio
import json
import os
import re
import tempfile
import time
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from coding_agent.code_execution import CodeExecutionTool
from coding_agent.context_manager import ContextManager
from coding_agent.filesystem import ConfinedFilesystem
from coding_agent.generator import GeneratedProject, ProjectGenerator
from coding_agent.log_sink import LogSink, PrintLogSink
from coding_agent.models import CommandExecution, FileNode, TerminalSession
from coding_agent.shell import CommandExecutor
from config import config
from errors import CodingSandboxError, ExecutionError, GenerationError, NotFoundError
from jobs.models import LogType
from sandbox_manager.models import ContainerInfo, ContainerStatus
from sandbox_manager.service import SandboxManagerService

# ファイルツリーに含めない依存キャッシュ系のディレクトリ
SKIPPED_DIRECTORIES = frozenset({"node_modules", "__pycache__", "venv", "bower_components"})

# 既知の開発サーバーのパターン。先頭文字を [] で囲み、pkill を実行するシェル自身に一致しないようにする
DEV_SERVER_KILL_COMMAND = 'pkill -f "[n]pm run dev" || pkill -f "[n]ext dev" || true'


class AgentOrchestrator:
    """
    1つのジョブを担当するドライバー。
    プロジェクトの生成・ワークスペースへの展開・アーカイブ化に加え、
    完了後の対話的な操作（コマンド実行、プレビュー、サンドボックス）を提供します。
    """

    def __init__(self, job_id: str, workspace_path: Union[str, Path],
                 generator: ProjectGenerator,
                 sandbox_manager: Optional[SandboxManagerService] = None,
                 log_sink: Optional[LogSink] = None,
                 downloads_dir: Union[str, Path] = config.DOWNLOADS_DIR,
                 context_max_tokens: Optional[int] = None,
                 command_timeout: Optional[float] = None):
        self.job_id = job_id
        self.workspace_path = Path(workspace_path).resolve()
        self.downloads_dir = Path(downloads_dir).resolve()
        self.generator = generator
        self.sandbox_manager = sandbox_manager
        self.log_sink = log_sink or PrintLogSink(f"AgentOrchestrator[{job_id}]")
        self.command_timeout = command_timeout if command_timeout is not None else config.COMMAND_TIMEOUT_SECONDS

        self.fs = ConfinedFilesystem(self.workspace_path)
        self.shell = CommandExecutor(str(self.workspace_path), default_timeout=self.command_timeout)
        self.context = ContextManager(self.fs, max_tokens=context_max_tokens)
        self.code_execution = CodeExecutionTool(self.fs, self.shell)

        self._terminal_sessions: Dict[str, TerminalSession] = {}
        self._preview_pid: Optional[int] = None
        # 同じジョブのアーカイブ作成は1つずつ
        self._package_lock = asyncio.Lock()

    async def _log(self, message: str, log_type: LogType = LogType.INFO) -> None:
        await self.log_sink.emit(message, log_type)

    # --- タスク実行 ---

    async def execute_task(self, task: str) -> GeneratedProject:
        await asyncio.to_thread(os.makedirs, self.workspace_path, exist_ok=True)
        await self.context.initialize()
        await self.context.add_entry("task", f"Starting task: {task}")

        try:
            await self._log("Generating project structure...")
            project = await self._generate(task)

            for file_path, content in project.files.items():
                await self.fs.create(file_path, content)
                await self.context.add_entry("file_change", f"Created file: {file_path}", {"path": file_path})
                await self._log(f"Created file: {file_path}")

            if not await self.fs.exists("package.json"):
                await self._create_default_package_json(task)

            await self.fs.create("README.md", self._generate_readme(task, project))
            await self.context.add_entry("file_change", "Created file: README.md", {"path": "README.md"})
            await self.context.add_entry("task", "Task completed successfully")
            return project
        except Exception as e:
            await self.context.add_entry("task", f"Task failed: {e}")
            raise

    async def _generate(self, task: str) -> GeneratedProject:
        try:
            return await self.generator.generate(task)
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(f"Project generation failed: {e}") from e

    async def _create_default_package_json(self, task: str) -> None:
        name = re.sub(r"[^a-z0-9]+", "-", task.lower()).strip("-")[:50] or "generated-app"
        package_json = {
            "name": name,
            "version": "0.1.0",
            "private": True,
            "scripts": {
                "dev": "next dev",
                "build": "next build",
                "start": "next start",
                "lint": "next lint",
            },
            "dependencies": {
                "react": "^18",
                "react-dom": "^18",
                "next": "14.0.4",
            },
            "devDependencies": {
                "typescript": "^5",
                "@types/node": "^20",
                "@types/react": "^18",
                "@types/react-dom": "^18",
                "autoprefixer": "^10.0.1",
                "postcss": "^8",
                "tailwindcss": "^3.3.0",
                "eslint": "^8",
                "eslint-config-next": "14.0.4",
            },
        }
        await self.fs.create("package.json", json.dumps(package_json, indent=2))
        await self.context.add_entry("file_change", "Created default package.json", {"path": "package.json"})
        await self._log("Created default package.json")

    @staticmethod
    def _generate_readme(task: str, project: GeneratedProject) -> str:
        file_list = "\n".join(f"- `{path}`" for path in sorted(project.files))
        summary = project.summary or "Generated project."
        return (
            f"# {task}\n\n"
            f"{summary}\n\n"
            "## Files\n\n"
            f"{file_list}\n\n"
            "## Getting Started\n\n"
            "```bash\n"
            "npm install\n"
            "npm run dev\n"
            "```\n"
        )

    # --- アーカイブ ---

    async def package_project(self, job_id: Optional[str] = None) -> Path:
        """ワークスペース全体を <downloads>/<job_id>.zip にまとめ、そのパスを返します。"""
        archive_path = self.downloads_dir / f"{job_id or self.job_id}.zip"
        async with self._package_lock:
            await asyncio.to_thread(self._write_archive, archive_path)
        print(f"AgentOrchestrator: Packaged workspace into {archive_path}")
        return archive_path

    def _write_archive(self, archive_path: Path) -> None:
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        fd, partial_name = tempfile.mkstemp(dir=str(archive_path.parent), prefix=f".{archive_path.name}.", suffix=".part")
        os.close(fd)
        partial_path = Path(partial_name)
        try:
            with zipfile.ZipFile(partial_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
                for current, dirs, files in os.walk(self.workspace_path):
                    dirs.sort()
                    current_path = Path(current)
                    if current_path != self.workspace_path and not dirs and not files:
                        archive.write(current_path, current_path.relative_to(self.workspace_path).as_posix() + "/")
                    for name in sorted(files):
                        file_path = current_path / name
                        if file_path.is_symlink():
                            continue
                        archive.write(file_path, file_path.relative_to(self.workspace_path).as_posix())
            # 書き終えてから置き換えるので、読み手が途中のアーカイブを見ることはない
            os.replace(partial_path, archive_path)
        except BaseException:
            partial_path.unlink(missing_ok=True)
            raise

    # --- ターミナル ---

    def create_terminal_session(self) -> TerminalSession:
        session = TerminalSession()
        self._terminal_sessions[session.id] = session
        return session

    def get_terminal_sessions(self) -> List[TerminalSession]:
        return [session.model_copy(deep=True) for session in self._terminal_sessions.values()]

    def _running_container(self) -> Optional[ContainerInfo]:
        if self.sandbox_manager is None:
            return None
        info = self.sandbox_manager.get_container_info(self.job_id)
        if info is not None and info.status == ContainerStatus.RUNNING:
            return info
        return None

    async def execute_interactive_command(self, command: str,
                                          session_id: Optional[str] = None) -> CommandExecution:
        if session_id is not None:
            session = self._terminal_sessions.get(session_id)
            if session is None:
                raise NotFoundError(f"Terminal session {session_id} not found")
        else:
            session = self.create_terminal_session()

        started = time.monotonic()
        try:
            if self._running_container() is not None:
                output, exit_code = await self.sandbox_manager.execute_in_container(
                    self.job_id, command, timeout=self.command_timeout
                )
            else:
                result = await self.shell.execute(command, working_directory=str(self.workspace_path))
                output, exit_code = result.combined_output, result.exit_code
        except ExecutionError as e:
            output, exit_code = str(e), e.exit_code if e.exit_code is not None else 1
        except Exception as e:
            output, exit_code = str(e), 1

        execution = CommandExecution(
            command=command,
            output=output,
            exit_code=exit_code,
            duration=(time.monotonic() - started) * 1000,
        )
        session.commands.append(execution)
        return execution

    # --- プレビュー ---

    async def start_preview_server(self) -> str:
        try:
            container = self._running_container()
            if container is not None:
                workspace = self.sandbox_manager.container_workspace_path
                await self._log("Installing dependencies in sandbox...")
                install = await self.execute_interactive_command(f"cd {workspace} && npm install")
                if install.exit_code != 0:
                    raise ExecutionError(f"Dependency installation failed: {install.output}", install.exit_code)
                await self.execute_interactive_command(
                    f"cd {workspace} && PORT={config.CONTAINER_DEV_PORT} HOSTNAME=0.0.0.0 "
                    f"nohup npm run dev > /tmp/preview.log 2>&1 &"
                )
                url = f"http://{config.SANDBOX_HOST}:{container.ports.dev}"
            else:
                package_json = json.loads(await self.fs.read("package.json"))
                scripts = package_json.get("scripts") or {}
                if "dev" in scripts:
                    start_command = "npm run dev"
                elif "start" in scripts:
                    start_command = "npm start"
                else:
                    start_command = "npx next dev"

                await self._log("Installing dependencies...")
                install = await self.execute_interactive_command("npm install")
                if install.exit_code != 0:
                    raise ExecutionError(f"Dependency installation failed: {install.output}", install.exit_code)

                result = await self.shell.execute(start_command, working_directory=str(self.workspace_path),
                                                  background=True)
                self._preview_pid = result.pid
                url = f"http://{config.PREVIEW_HOST}:{config.PREVIEW_FALLBACK_PORT}"
        except CodingSandboxError:
            raise
        except Exception as e:
            raise ExecutionError(f"Failed to start preview server: {e}") from e

        await self._log(f"Preview server starting at {url}", LogType.SUCCESS)
        return url

    async def stop_preview_server(self) -> None:
        """既知の開発サーバーを止めます。ベストエフォートで、失敗は記録のみ。"""
        if self._preview_pid is not None:
            await self.shell.kill_process(self._preview_pid)
            self._preview_pid = None
        execution = await self.execute_interactive_command(DEV_SERVER_KILL_COMMAND)
        if execution.exit_code != 0:
            print(f"AgentOrchestrator: Could not stop preview server cleanly: {execution.output}")
        await self._log("Preview server stopped")

    # --- ファイル ---

    async def get_file_tree(self) -> List[FileNode]:
        return await asyncio.to_thread(self._build_tree, self.workspace_path)

    def _build_tree(self, directory: Path) -> List[FileNode]:
        if not directory.is_dir():
            return []
        nodes: List[FileNode] = []
        for entry in directory.iterdir():
            if entry.name.startswith(".") or entry.name in SKIPPED_DIRECTORIES or entry.is_symlink():
                continue
            stat = entry.stat()
            relative = entry.relative_to(self.workspace_path).as_posix()
            modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            if entry.is_dir():
                nodes.append(FileNode(name=entry.name, path=relative, type="directory",
                                      last_modified=modified, children=self._build_tree(entry)))
            else:
                nodes.append(FileNode(name=entry.name, path=relative, type="file",
                                      size=stat.st_size, last_modified=modified))
        nodes.sort(key=lambda node: (node.type != "directory", node.name))
        return nodes

    async def get_file_content(self, path: str) -> str:
        return await self.fs.read(path)

    async def update_file_content(self, path: str, content: str) -> None:
        await self.fs.write(path, content)
        await self.package_project()

    # --- サンドボックス ---

    def _require_sandbox_manager(self) -> SandboxManagerService:
        if self.sandbox_manager is None:
            raise ExecutionError("Sandbox environments are not available")
        return self.sandbox_manager

    async def start_sandbox_environment(self) -> ContainerInfo:
        manager = self._require_sandbox_manager()
        await asyncio.to_thread(os.makedirs, self.workspace_path, exist_ok=True)
        info = await manager.create_container(self.job_id, str(self.workspace_path))
        await self._log(f"Sandbox environment {info.name} starting")
        return info

    async def stop_sandbox_environment(self) -> None:
        manager = self._require_sandbox_manager()
        if manager.get_container_info(self.job_id) is None:
            return
        await manager.stop_container(self.job_id)
        await self._log("Sandbox environment stopped")

    def get_container_status(self) -> Optional[ContainerInfo]:
        if self.sandbox_manager is None:
            return None
        return self.sandbox_manager.get_container_info(self.job_id)

    def get_vnc_url(self) -> Optional[str]:
        container = self._running_container()
        return container.vnc_url if container else None

    def get_jupyter_url(self) -> Optional[str]:
        container = self._running_container()
        return container.jupyter_url if container else None

    async def shutdown(self) -> None:
        await self.shell.terminate_all()
        self._preview_pid = None
