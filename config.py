# coding_sandbox/config.py
import os
from dotenv import load_dotenv

load_dotenv()

_BASE_DIR = os.path.abspath(os.path.dirname(__file__))


class Config:
    # ジョブの永続化
    JOB_REPOSITORY: str = os.getenv("JOB_REPOSITORY", "memory")  # 'memory' または 'sql'
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./coding_sandbox.db")

    # ワークスペースと成果物
    WORKSPACES_DIR: str = os.getenv("WORKSPACES_DIR", os.path.join(_BASE_DIR, "workspaces"))
    DOWNLOADS_DIR: str = os.getenv("DOWNLOADS_DIR", os.path.join(_BASE_DIR, "downloads"))
    DOWNLOAD_URL_PREFIX: str = os.getenv("DOWNLOAD_URL_PREFIX", "/api/download")
    PROVISIONING_DELAY: float = float(os.getenv("PROVISIONING_DELAY", "0"))

    # プロジェクト生成
    GENERATOR_BACKEND: str = os.getenv("GENERATOR_BACKEND", "template")  # 'template' または 'llm'
    LLM_MODEL_NAME: str = os.getenv("LLM_MODEL_NAME", "gemma3:latest")
    LLM_BASE_URL: str = os.getenv("LLM_BASE_URL", "http://localhost:11434")

    # エージェントのコンテキスト
    CONTEXT_MAX_TOKENS: int = int(os.getenv("CONTEXT_MAX_TOKENS", "900000"))
    CONTEXT_FILE_NAME: str = ".agent_context.json"

    # ローカルのコマンド実行
    COMMAND_TIMEOUT_SECONDS: float = float(os.getenv("COMMAND_TIMEOUT_SECONDS", "30"))

    # サンドボックスのDocker設定
    SANDBOX_IMAGE: str = os.getenv("SANDBOX_IMAGE", "sandbox-agent:latest")
    SANDBOX_NAME_PREFIX: str = "sandbox-"
    SANDBOX_WORKSPACE_PATH: str = "/home/agent/workspace"  # コンテナ内のマウントポイント
    SANDBOX_CONTAINER_LABELS = {"com.example.type": "coding-sandbox"}
    SANDBOX_SECURITY_OPTS = ["seccomp=unconfined"]
    SANDBOX_CAP_ADD = ["SYS_ADMIN"]  # デスクトップ/VNC スタックに必要
    SANDBOX_STATUS_POLL_DELAY: float = float(os.getenv("SANDBOX_STATUS_POLL_DELAY", "5"))
    SANDBOX_STOP_TIMEOUT: int = 5
    SANDBOX_HOST: str = os.getenv("SANDBOX_HOST", "localhost")

    # ホスト側のポートの起点。コンテナ内のポートは固定。
    BASE_VNC_PORT: int = 5900
    BASE_NOVNC_PORT: int = 6080
    BASE_JUPYTER_PORT: int = 8888
    BASE_DEV_PORT: int = 3001
    CONTAINER_VNC_PORT: int = 5900
    CONTAINER_NOVNC_PORT: int = 6080
    CONTAINER_JUPYTER_PORT: int = 8888
    CONTAINER_DEV_PORT: int = 3000

    # プレビューサーバー（サンドボックスが無い場合のローカル実行）
    PREVIEW_FALLBACK_PORT: int = int(os.getenv("PREVIEW_FALLBACK_PORT", "3001"))
    PREVIEW_HOST: str = os.getenv("PREVIEW_HOST", "localhost")

config = Config()
