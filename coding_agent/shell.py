# coding_sandbox/coding_agent/shell.py
import asyncio
import os
import re
import signal
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern

from config import config
from errors import SecurityError, ValidationError

# タイムアウト時に返す擬似的な終了コード（coreutils の timeout と同じ）
TIMEOUT_EXIT_CODE = 124

# rm の引数部分（次のコマンド区切りまで）
_RM_ARGUMENTS = re.compile(r"\brm\s+([^;&|\n]*)", re.IGNORECASE)
_RECURSIVE_FLAG = re.compile(r"(?:^|\s)(?:-[a-z]*r[a-z]*|--recursive)(?=\s|$)", re.IGNORECASE)
# / から始まる絶対パス、またはホームディレクトリ。引用符で囲まれていても同じ扱い
_ROOTED_TARGET = re.compile(r"(?:^|\s)[\"']?(?:/|~|\$\{?HOME\b)")

# 破壊的なコマンドのパターン。大文字小文字は区別しない
BLACKLISTED_PATTERNS: List[Pattern[str]] = [
    re.compile(r"--no-preserve-root", re.IGNORECASE),
    re.compile(r"\bdd\s+if=", re.IGNORECASE),
    re.compile(r"\bmkfs(?:\.\w+)?\b", re.IGNORECASE),
    re.compile(r"\bfdisk\b", re.IGNORECASE),
    re.compile(r"\bshutdown\b", re.IGNORECASE),
    re.compile(r"\breboot\b", re.IGNORECASE),
    re.compile(r"\bhalt\b", re.IGNORECASE),
    re.compile(r"\bpoweroff\b", re.IGNORECASE),
    re.compile(r"\binit\s+[06]\b", re.IGNORECASE),
    re.compile(r"\bformat\s+[a-z]:", re.IGNORECASE),
    re.compile(r"\bdel\s+/f\s+/s\s+/q\s+[a-z]:\\", re.IGNORECASE),
    re.compile(r"\brd\s+/s\s+/q\s+[a-z]:\\", re.IGNORECASE),
    re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"),  # fork bomb
]


def is_recursive_rooted_rm(command: str) -> bool:
    """再帰的な rm の対象に絶対パスかホームディレクトリが含まれていれば True。"""
    for match in _RM_ARGUMENTS.finditer(command):
        arguments = match.group(1)
        if _RECURSIVE_FLAG.search(arguments) and _ROOTED_TARGET.search(arguments):
            return True
    return False


def is_blacklisted_command(command: str) -> bool:
    if is_recursive_rooted_rm(command):
        return True
    return any(pattern.search(command) for pattern in BLACKLISTED_PATTERNS)


@dataclass
class CommandResult:
    output: str = ""
    error: str = ""
    exit_code: int = 0
    pid: Optional[int] = None  # バックグラウンド実行時のみ
    timed_out: bool = False

    @property
    def combined_output(self) -> str:
        return self.output + self.error


class CommandExecutor:
    """
    ローカルのシェルコマンド実行ツール。
    - 実行前にブラックリストを検査し、該当すれば SecurityError（プロセスは起動しない）
    - フォアグラウンド実行はタイムアウト付きで stdout/stderr/終了コードを取得
    - バックグラウンド実行は PID -> プロセスの表に登録し、終了時に表から外す
    """

    def __init__(self, working_directory: str, default_timeout: Optional[float] = None):
        self._working_directory = working_directory
        self._default_timeout = default_timeout if default_timeout is not None else config.COMMAND_TIMEOUT_SECONDS
        self._background_processes: Dict[int, asyncio.subprocess.Process] = {}
        self._registry_lock = asyncio.Lock()
        self._watchers: Dict[int, asyncio.Task] = {}

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def set_working_directory(self, path: str) -> None:
        self._working_directory = path

    def _build_env(self, background: bool) -> Dict[str, str]:
        env = dict(os.environ)
        env["NODE_ENV"] = "development"
        if background:
            # プレビューサーバーがホスト側の他のサービスと衝突しないようにする
            env["PORT"] = str(config.PREVIEW_FALLBACK_PORT)
        return env

    async def execute(self, command: str, working_directory: Optional[str] = None,
                      timeout: Optional[float] = None, background: bool = False) -> CommandResult:
        if not command or not command.strip():
            raise ValidationError("Invalid command: command is empty")
        if is_blacklisted_command(command):
            print(f"CommandExecutor: Blocked command: {command}")
            raise SecurityError(f"Command not allowed for security reasons: {command}")

        cwd = working_directory or self._working_directory
        if background:
            return await self._execute_background(command, cwd)
        return await self._execute_foreground(command, cwd, timeout if timeout is not None else self._default_timeout)

    async def _execute_foreground(self, command: str, cwd: str, timeout: float) -> CommandResult:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._build_env(background=False),
            start_new_session=True,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            print(f"CommandExecutor: Command timed out after {timeout}s: {command}")
            await self._kill_group(process)
            return CommandResult(
                output="",
                error=f"Command timed out after {timeout} seconds",
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
            )

        return CommandResult(
            output=stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else "",
            error=stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else "",
            exit_code=process.returncode if process.returncode is not None else 1,
        )

    @staticmethod
    async def _kill_group(process: asyncio.subprocess.Process) -> None:
        """シェルとその子プロセスをまとめて SIGKILL し、終了を回収します。"""
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    async def _execute_background(self, command: str, cwd: str) -> CommandResult:
        async with self._registry_lock:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                env=self._build_env(background=True),
                start_new_session=True,
            )
            pid = process.pid
            self._background_processes[pid] = process
            self._watchers[pid] = asyncio.create_task(self._watch(pid, process))

        print(f"CommandExecutor: Background process started with PID {pid}: {command}")
        return CommandResult(output=f"Background process started with PID: {pid}", exit_code=0, pid=pid)

    async def _watch(self, pid: int, process: asyncio.subprocess.Process) -> None:
        try:
            await process.wait()
        finally:
            async with self._registry_lock:
                if self._background_processes.get(pid) is process:
                    del self._background_processes[pid]
                self._watchers.pop(pid, None)

    async def kill_process(self, pid: int) -> bool:
        async with self._registry_lock:
            process = self._background_processes.pop(pid, None)
            if process is None:
                return False
            try:
                # start_new_session で起動しているのでプロセスグループごと止める
                os.killpg(process.pid, signal.SIGTERM)
            except (ProcessLookupError, PermissionError):
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass
            return True

    def get_running_processes(self) -> List[int]:
        return list(self._background_processes.keys())

    async def terminate_all(self) -> None:
        for pid in self.get_running_processes():
            await self.kill_process(pid)
