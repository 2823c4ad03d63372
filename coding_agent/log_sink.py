# coding_sandbox/coding_agent/log_sink.py
import abc

from jobs.models import LogType


class LogSink(abc.ABC):
    """
    オーケストレーターが進捗を書き込む先。
    ジョブのログへの追記はこのオブジェクト経由で行い、呼び出し順がそのままログの順序になる。
    """

    @abc.abstractmethod
    async def emit(self, message: str, log_type: LogType = LogType.INFO) -> None:
        ...


class PrintLogSink(LogSink):
    def __init__(self, prefix: str = "AgentOrchestrator"):
        self._prefix = prefix

    async def emit(self, message: str, log_type: LogType = LogType.INFO) -> None:
        print(f"{self._prefix}: [{log_type.value}] {message}")
