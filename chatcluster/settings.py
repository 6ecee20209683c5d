from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_PROMPT = """
You are a knowledgeable AI assistant.
Follow the user's instructions, meet their needs and answer their questions.

Important notes:
1. When an answer contains math, use dollar-delimited LaTeX (for example $E=mc^2$).
2. Do not use bracket-delimited LaTeX.
3. Do not wrap ordinary words, terms or numbers in backticks.
4. Only use backticks or code blocks for real code.
5. Keep answers natural and avoid unnecessary formatting.
""".strip()


class Settings(BaseSettings):
    # Read from OS env and optional .env file in project root.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Upstream AI API
    upstream_base_url: str = Field(
        "https://api.siliconflow.cn/v1",
        alias="UPSTREAM_BASE_URL",
        description="Base URL of the upstream completion/TTS API",
    )
    upstream_api_key: Optional[str] = Field(
        default=None,
        alias="UPSTREAM_API_KEY",
        description="Bearer token sent to the upstream API",
    )
    upstream_chat_path: str = Field("/chat/completions", alias="UPSTREAM_CHAT_PATH")
    upstream_tts_path: str = Field("/audio/speech", alias="UPSTREAM_TTS_PATH")
    upstream_connect_timeout: float = Field(
        10.0,
        alias="UPSTREAM_CONNECT_TIMEOUT",
        description="Connect timeout (seconds) for upstream HTTP calls",
    )

    # Chat
    default_model: str = Field("Qwen/Qwen2.5-72B-Instruct", alias="DEFAULT_MODEL")
    default_max_tokens: int = Field(4000, alias="DEFAULT_MAX_TOKENS", ge=1)
    chat_temperature: float = Field(0.7, alias="CHAT_TEMPERATURE")
    chat_timeout_seconds: float = Field(
        120.0,
        alias="CHAT_TIMEOUT_SECONDS",
        description="Ceiling from request start to terminal event for one chat stream",
        gt=0,
    )
    max_history_turns: int = Field(
        20,
        alias="MAX_HISTORY_TURNS",
        description="Maximum non-system messages kept in a session's history",
        ge=0,
    )
    system_prompt: str = Field(DEFAULT_SYSTEM_PROMPT, alias="SYSTEM_PROMPT")
    max_document_chars: int = Field(15000, alias="MAX_DOCUMENT_CHARS", ge=100)

    # TTS
    tts_default_model: str = Field("FunAudioLLM/CosyVoice2-0.5B", alias="TTS_DEFAULT_MODEL")
    tts_default_voice: str = Field(
        "FunAudioLLM/CosyVoice2-0.5B:alex", alias="TTS_DEFAULT_VOICE"
    )

    # Sessions
    session_backend: str = Field(
        "memory",
        alias="SESSION_BACKEND",
        description="Session store backend: 'memory' (per worker) or 'redis' (shared)",
    )
    redis_url: str = Field(
        "redis://localhost:6379/0",
        alias="REDIS_URL",
        description="Redis connection URL, e.g. 'redis://redis:6379/0'",
    )
    session_idle_timeout_seconds: float = Field(
        3600.0, alias="SESSION_IDLE_TIMEOUT_SECONDS", gt=0
    )
    session_sweep_interval_seconds: float = Field(
        300.0, alias="SESSION_SWEEP_INTERVAL_SECONDS", gt=0
    )
    user_id_header: str = Field("X-User-ID", alias="USER_ID_HEADER")

    # Uploads
    upload_base_dir: str = Field(
        "uploads",
        alias="UPLOAD_BASE_DIR",
        description="Upload directory shared by every worker process",
    )
    max_upload_size: int = Field(50 * 1024 * 1024, alias="MAX_UPLOAD_SIZE", ge=1)
    max_upload_files: int = Field(10, alias="MAX_UPLOAD_FILES", ge=1)
    public_base_url: Optional[str] = Field(
        default=None,
        alias="PUBLIC_BASE_URL",
        description="Base URL clients use to fetch uploads; defaults to the balancer address",
    )

    # Topology
    balancer_host: str = Field("127.0.0.1", alias="BALANCER_HOST")
    balancer_port: int = Field(3000, alias="BALANCER_PORT")
    worker_host: str = Field("127.0.0.1", alias="WORKER_HOST")
    worker_base_port: int = Field(3001, alias="WORKER_BASE_PORT")
    worker_count: int = Field(4, alias="WORKER_COUNT", ge=1)

    # Balancer
    balance_policy: str = Field(
        "round_robin",
        alias="BALANCE_POLICY",
        description="Worker selection policy: 'round_robin' or 'user_hash'",
    )
    health_check_interval_seconds: float = Field(
        60.0, alias="HEALTH_CHECK_INTERVAL_SECONDS", gt=0
    )
    health_check_initial_delay_seconds: float = Field(
        30.0, alias="HEALTH_CHECK_INITIAL_DELAY_SECONDS", ge=0
    )
    health_check_timeout_seconds: float = Field(
        3.0, alias="HEALTH_CHECK_TIMEOUT_SECONDS", gt=0
    )
    exclude_unhealthy_workers: bool = Field(
        False,
        alias="EXCLUDE_UNHEALTHY_WORKERS",
        description="Skip workers whose last health probe failed when selecting a target",
    )

    # Supervisor
    worker_max_memory_mb: float = Field(1024.0, alias="WORKER_MAX_MEMORY_MB", gt=0)
    worker_max_uptime_seconds: float = Field(
        86400.0, alias="WORKER_MAX_UPTIME_SECONDS", gt=0
    )
    threshold_check_interval_seconds: float = Field(
        60.0, alias="THRESHOLD_CHECK_INTERVAL_SECONDS", gt=0
    )
    stats_interval_seconds: float = Field(30.0, alias="STATS_INTERVAL_SECONDS", gt=0)
    restart_grace_seconds: float = Field(10.0, alias="RESTART_GRACE_SECONDS", ge=0)
    shutdown_grace_seconds: float = Field(10.0, alias="SHUTDOWN_GRACE_SECONDS", ge=0)
    shutdown_stagger_seconds: float = Field(1.0, alias="SHUTDOWN_STAGGER_SECONDS", ge=0)
    balancer_startup_grace_seconds: float = Field(
        2.0, alias="BALANCER_STARTUP_GRACE_SECONDS", ge=0
    )

    # Application log level for the chatcluster logger.
    log_level: str = Field(
        "INFO",
        alias="LOG_LEVEL",
        description="Application log level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    log_timezone: Optional[str] = Field(
        default=None,
        alias="LOG_TIMEZONE",
        description="Timezone name for log timestamps, e.g. 'Asia/Shanghai'. Defaults to system local time.",
    )
    log_dir: str = Field("logs", alias="LOG_DIR")

    def worker_port(self, index: int) -> int:
        """
        Port for the worker at 0-based ``index``; unique within the pool.
        """
        return self.worker_base_port + index

    def worker_urls(self) -> List[str]:
        return [
            f"http://{self.worker_host}:{self.worker_port(i)}"
            for i in range(self.worker_count)
        ]

    def balancer_url(self) -> str:
        return f"http://{self.balancer_host}:{self.balancer_port}"

    def public_url(self) -> str:
        return (self.public_base_url or self.balancer_url()).rstrip("/")

    def upstream_url(self, path: str) -> str:
        base = self.upstream_base_url.rstrip("/")
        return f"{base}/{path.lstrip('/')}"

    @property
    def upload_root(self) -> Path:
        return Path(self.upload_base_dir).resolve()


settings = Settings()  # Reads from environment if available


def build_upstream_headers(
    *, accept: str = "application/json", cfg: Optional[Settings] = None
) -> dict[str, str]:
    """
    Headers for calling the upstream API with the configured bearer token.
    """
    cfg = cfg or settings
    headers: dict[str, str] = {
        "Accept": accept,
        "Content-Type": "application/json",
    }
    if cfg.upstream_api_key:
        headers["Authorization"] = f"Bearer {cfg.upstream_api_key}"
    return headers
