# coding_sandbox/errors.py
from typing import Optional


class CodingSandboxError(Exception):
    """すべてのドメインエラーの基底クラス。"""


class ValidationError(CodingSandboxError):
    """入力が不正な場合（空のタスクなど）。"""


class InvalidTransitionError(ValidationError):
    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(f"Job {job_id}: invalid status transition {current} -> {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class NotFoundError(CodingSandboxError):
    """ジョブ・コンテナ・セッション・ファイルが見つからない場合。"""


class SecurityError(CodingSandboxError):
    """ワークスペース外へのパスアクセス、またはブラックリストに該当するコマンド。"""


class ExecutionError(CodingSandboxError):
    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class ContainerError(CodingSandboxError):
    """コンテナランタイムの作成・停止・exec の失敗。"""


class GenerationError(CodingSandboxError):
    """外部のプロジェクトジェネレータの失敗。"""
