from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "Health Chat"
    debug: bool = False

    # Paths
    db_path: Path = Path(__file__).resolve().parent.parent.parent / "healthchat.db"

    # Remote functions
    functions_url: str = "http://localhost:54321/functions/v1"
    functions_api_key: str = ""
    request_timeout_seconds: float = 60.0
    chat_function: str = "grok-chat"

    # Send throttling
    send_cooldown_seconds: float = 3.0
    max_concurrent_requests: int = 1
    failure_threshold: int = 5
    failure_window_seconds: float = 5 * 60
    block_duration_seconds: float = 15 * 60
    token_limit_timeout_seconds: float = 30 * 60

    # Background analysis
    analysis_retention_seconds: float = 10.0
    analysis_history_limit: int = 10

    # Conversations
    title_max_length: int = 50
    run_conversation_migration: bool = True

    # Server
    cors_origins: list[str] = ["*"]

    model_config = {
        "env_file": str(Path(__file__).resolve().parent.parent.parent / ".env"),
        "env_prefix": "HEALTHCHAT_",
    }


settings = Settings()
