# coding_sandbox/coding_agent/code_execution.py
import uuid
from typing import Literal

from coding_agent.filesystem import ConfinedFilesystem
from coding_agent.shell import CommandExecutor, CommandResult
from errors import CodingSandboxError, ValidationError

_INTERPRETERS = {
    "python": ("python3", ".py"),
    "typescript": ("npx ts-node", ".ts"),
}


class CodeExecutionTool:
    """
    コード片をワークスペース内の一時ファイルに書き出し、適切なインタプリタで実行します。
    一時ファイルは実行後に必ず削除します。
    """

    def __init__(self, filesystem: ConfinedFilesystem, shell: CommandExecutor):
        self._fs = filesystem
        self._shell = shell

    async def execute_python(self, code: str) -> CommandResult:
        return await self.execute_snippet(code, "python")

    async def execute_typescript(self, code: str) -> CommandResult:
        return await self.execute_snippet(code, "typescript")

    async def execute_snippet(self, code: str, language: Literal["python", "typescript"] = "python") -> CommandResult:
        if language not in _INTERPRETERS:
            raise ValidationError(f"Unsupported language: {language}")
        interpreter, extension = _INTERPRETERS[language]
        filename = f"temp_{uuid.uuid4().hex}{extension}"

        try:
            await self._fs.create(filename, code)
            return await self._shell.execute(f"{interpreter} {filename}", working_directory=str(self._fs.root))
        except CodingSandboxError as e:
            return CommandResult(output="", error=str(e), exit_code=1)
        finally:
            try:
                await self._fs.delete(filename)
            except CodingSandboxError:
                pass
