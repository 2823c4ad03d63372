# coding_sandbox/coding_agent/filesystem.py
import asyncio
import os
import shutil
import tempfile
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Dict, List, Union

from errors import NotFoundError, SecurityError, ValidationError


class ConfinedFilesystem:
    """
    ワークスペースのルートに閉じ込められたファイル操作ツール。
    すべてのパスはワークスペース相対で受け取り、解決後の絶対パスが
    ルートの子孫でなければ SecurityError とし、何も変更しません。
    """

    def __init__(self, root: Union[str, Path]):
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def resolve(self, path: str) -> Path:
        """ワークスペース相対パスを検証済みの絶対パスに解決します。"""
        if path is None:
            raise SecurityError("Access denied: path is required")
        raw = str(path)
        if "\x00" in raw:
            raise SecurityError(f"Access denied: invalid path {raw!r}")
        # POSIX の絶対パスに加え、ドライブ付き・UNC 形式も拒否する
        if PurePosixPath(raw).is_absolute() or PureWindowsPath(raw).is_absolute() \
                or PureWindowsPath(raw).drive or raw.startswith("\\"):
            raise SecurityError(f"Access denied: absolute path {raw!r} is not allowed")

        # resolve() はシンボリックリンクも辿るので、リンク経由の脱出も検出できる
        full_path = (self._root / raw).resolve()
        if full_path != self._root and self._root not in full_path.parents:
            raise SecurityError(f"Access denied: path {raw!r} is outside the workspace")
        return full_path

    async def create(self, path: str, content: str = "") -> Dict[str, str]:
        full_path = self.resolve(path)
        if full_path == self._root:
            raise SecurityError("Access denied: cannot write to the workspace root")
        await asyncio.to_thread(self._write_atomic, full_path, content)
        return {"path": path}

    async def write(self, path: str, content: str = "") -> Dict[str, str]:
        # 上書きのセマンティクスは create と同じ
        return await self.create(path, content)

    async def read(self, path: str) -> str:
        full_path = self.resolve(path)
        try:
            return await asyncio.to_thread(full_path.read_text, encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise NotFoundError(f"File not found: {path}")

    async def exists(self, path: str) -> bool:
        full_path = self.resolve(path)
        return await asyncio.to_thread(full_path.is_file)

    async def delete(self, path: str) -> Dict[str, str]:
        full_path = self.resolve(path)
        if full_path == self._root:
            raise SecurityError("Access denied: cannot delete the workspace root")
        await asyncio.to_thread(self._delete, full_path, path)
        return {"path": path}

    async def move(self, path: str, destination: str) -> Dict[str, str]:
        if not destination:
            raise ValidationError("Destination required for move")
        source_path = self.resolve(path)
        destination_path = self.resolve(destination)
        if source_path == self._root:
            raise SecurityError("Access denied: cannot move the workspace root")
        if destination_path == self._root:
            raise SecurityError("Access denied: cannot replace the workspace root")
        if not source_path.exists():
            raise NotFoundError(f"File not found: {path}")
        await asyncio.to_thread(self._move, source_path, destination_path)
        return {"from": path, "to": destination}

    async def list(self, path: str = "") -> List[Dict[str, str]]:
        full_path = self.resolve(path)
        if not full_path.is_dir():
            raise NotFoundError(f"Directory not found: {path}")
        entries = await asyncio.to_thread(lambda: sorted(full_path.iterdir(), key=lambda p: p.name))
        return [
            {"name": entry.name, "type": "directory" if entry.is_dir() else "file"}
            for entry in entries
        ]

    @staticmethod
    def _write_atomic(full_path: Path, content: str) -> None:
        full_path.parent.mkdir(parents=True, exist_ok=True)
        # 一時ファイルに書いてから置き換える。途中で失敗しても中途半端なファイルは残らない
        fd, tmp_name = tempfile.mkstemp(dir=str(full_path.parent), prefix=".tmp_", suffix=".part")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(tmp_name, full_path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    @staticmethod
    def _delete(full_path: Path, path: str) -> None:
        if full_path.is_dir() and not full_path.is_symlink():
            shutil.rmtree(full_path)
        elif full_path.exists() or full_path.is_symlink():
            full_path.unlink()
        else:
            raise NotFoundError(f"File not found: {path}")

    @staticmethod
    def _move(source_path: Path, destination_path: Path) -> None:
        destination_path.parent.mkdir(parents=True, exist_ok=True)
        os.replace(source_path, destination_path)
