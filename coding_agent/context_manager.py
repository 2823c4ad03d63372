# coding_sandbox/coding_agent/context_manager.py
import json
import math
import time
import uuid
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from coding_agent.filesystem import ConfinedFilesystem
from config import config

ContextEntryType = Literal["task", "tool_result", "file_change", "thought"]
MetadataValue = Union[str, int, float, bool, None]

# 剪定時に無条件で残す直近のエントリ数
RECENT_ENTRIES_TO_KEEP = 10
# 古くても残すエントリの種類
IMPORTANT_ENTRY_TYPES = frozenset({"task", "file_change"})


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


class ContextEntry(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = Field(default_factory=time.time)
    type: ContextEntryType
    content: str
    metadata: Dict[str, MetadataValue] = Field(default_factory=dict)


class ContextState(BaseModel):
    entries: List[ContextEntry] = Field(default_factory=list)
    total_tokens: int = 0
    max_tokens: int = config.CONTEXT_MAX_TOKENS


class ContextManager:
    """
    エージェントが何をしたかを記録する、トークン上限付きの追記専用ログ。
    状態はワークスペース内の .agent_context.json に保存されます。
    """

    def __init__(self, filesystem: ConfinedFilesystem, max_tokens: Optional[int] = None,
                 context_file: str = config.CONTEXT_FILE_NAME):
        self._fs = filesystem
        self._context_file = context_file
        self._max_tokens = max_tokens if max_tokens is not None else config.CONTEXT_MAX_TOKENS
        self._state = ContextState(max_tokens=self._max_tokens)
        self.last_save_error: Optional[str] = None

    @property
    def state(self) -> ContextState:
        return self._state.model_copy(deep=True)

    @property
    def entries(self) -> List[ContextEntry]:
        return list(self._state.entries)

    @property
    def total_tokens(self) -> int:
        return self._state.total_tokens

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    async def initialize(self) -> None:
        """保存済みの状態を読み込みます。無い（または壊れている）場合は空の状態で開始します。"""
        try:
            raw = await self._fs.read(self._context_file)
            loaded = ContextState.model_validate(json.loads(raw))
            # 上限はこのインスタンスの設定を優先し、合計は常に再計算する
            self._state = ContextState(
                entries=loaded.entries,
                total_tokens=self._sum_tokens(loaded.entries),
                max_tokens=self._max_tokens,
            )
        except Exception as e:
            print(f"ContextManager: No usable context state ({type(e).__name__}). Starting fresh.")
            self._state = ContextState(max_tokens=self._max_tokens)
            await self.save()

    async def add_entry(self, entry_type: ContextEntryType, content: str,
                        metadata: Optional[Dict[str, MetadataValue]] = None) -> ContextEntry:
        entry = ContextEntry(type=entry_type, content=content, metadata=metadata or {})
        self._state.entries.append(entry)
        self._state.total_tokens += estimate_tokens(entry.content)

        if self._state.total_tokens > self._max_tokens:
            self._prune()

        await self.save()
        return entry

    def get_relevant_context(self, query: str, max_entries: int = 20) -> List[ContextEntry]:
        keywords = [keyword for keyword in query.lower().split() if keyword]

        scored = []
        for position, entry in enumerate(self._state.entries):
            content = entry.content.lower()
            score = sum(content.count(keyword) for keyword in keywords)
            scored.append((score, entry.timestamp, position, entry))

        # スコア降順、同点なら新しいもの優先
        scored.sort(key=lambda item: (item[0], item[1], item[2]), reverse=True)
        return [item[3] for item in scored[:max_entries]]

    async def clear(self) -> None:
        self._state = ContextState(max_tokens=self._max_tokens)
        await self.save()

    def _prune(self) -> None:
        entries = self._state.entries
        order = {entry.id: position for position, entry in enumerate(entries)}

        def recency(entry: ContextEntry):
            return (entry.timestamp, order[entry.id])

        newest_first = sorted(entries, key=recency, reverse=True)
        keep_ids = {entry.id for entry in newest_first[:RECENT_ENTRIES_TO_KEEP]}
        keep_ids.update(entry.id for entry in entries if entry.type in IMPORTANT_ENTRY_TYPES)
        kept = [entry for entry in entries if entry.id in keep_ids]

        # 直近枠だけでは上限を超える場合、重要でない古いものから落とす
        total = self._sum_tokens(kept)
        for candidate in sorted(kept, key=recency):
            if total <= self._max_tokens:
                break
            if candidate.type in IMPORTANT_ENTRY_TYPES:
                continue
            keep_ids.discard(candidate.id)
            total -= estimate_tokens(candidate.content)

        pruned = [entry for entry in entries if entry.id in keep_ids]
        print(f"ContextManager: Pruned context from {len(entries)} to {len(pruned)} entries.")
        self._state.entries = pruned
        self._state.total_tokens = self._sum_tokens(pruned)

    @staticmethod
    def _sum_tokens(entries: List[ContextEntry]) -> int:
        return sum(estimate_tokens(entry.content) for entry in entries)

    async def save(self) -> bool:
        """
        状態全体を書き出します。失敗してもメモリ上のエントリは失われず、
        次回の保存で再度書き込まれます。
        """
        try:
            await self._fs.write(self._context_file, self._state.model_dump_json(indent=2))
            self.last_save_error = None
            return True
        except Exception as e:
            self.last_save_error = str(e)
            print(f"ContextManager: WARNING: Failed to persist context state: {e}")
            return False
