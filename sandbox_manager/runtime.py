# coding_sandbox/sandbox_manager/runtime.py
import abc
from typing import Dict, List, Optional, Tuple


class ContainerRuntime(abc.ABC):
    """
    コンテナランタイムへの狭いインターフェース。
    SandboxManagerService はこれだけに依存するので、テストでは偽物に差し替えられる。

    実装は同期APIでよい（サービス側で asyncio.to_thread を使って呼び出す）。
    コンテナが存在しない場合、stop/remove は False を返し、それ以外は NotFoundError を送出する。
    ランタイム自体の失敗は ContainerError を送出する。
    """

    @abc.abstractmethod
    def create_container(self, name: str, image: str, ports: Dict[int, int],
                         volumes: Dict[str, Dict[str, str]],
                         security_opt: List[str], cap_add: List[str]) -> str:
        """コンテナを起動し、そのIDを返す。ports はコンテナ側ポート -> ホスト側ポート。"""

    @abc.abstractmethod
    def get_status(self, name: str) -> Optional[str]:
        """ランタイム上の状態（'running', 'exited' など）。存在しなければ None。"""

    @abc.abstractmethod
    def stop_container(self, name: str, timeout: int) -> bool:
        ...

    @abc.abstractmethod
    def remove_container(self, name: str) -> bool:
        ...

    @abc.abstractmethod
    def exec_command(self, name: str, command: str, workdir: Optional[str] = None) -> Tuple[str, int]:
        """コマンドを実行し、(stdout + stderr, 終了コード) を返す。"""

    @abc.abstractmethod
    def copy_to(self, name: str, local_path: str, container_path: str) -> None:
        ...

    @abc.abstractmethod
    def copy_from(self, name: str, container_path: str, local_path: str) -> None:
        ...

    @abc.abstractmethod
    def get_logs(self, name: str) -> List[str]:
        ...

    @abc.abstractmethod
    def list_by_prefix(self, prefix: str, include_stopped: bool = False) -> List[str]:
        """名前が prefix で始まる（このマネージャーが作成した）コンテナ名の一覧。"""
