"""
Configuration settings using Pydantic
"""
from functools import lru_cache
from typing import Optional
from pathlib import Path
from pydantic_settings import BaseSettings

# Get the backend directory
BACKEND_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE = BACKEND_DIR / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # App
    APP_NAME: str = "Chatflow"
    DEBUG: bool = False

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Persistence: "memory" keeps executions in-process, "supabase" uses the tables below
    STORE_BACKEND: str = "memory"
    SUPABASE_URL: Optional[str] = None
    SUPABASE_KEY: Optional[str] = None
    FLOWS_TABLE: str = "interactive_flows"
    EXECUTIONS_TABLE: str = "flow_executions"
    TAGS_TABLE: str = "conversation_tags"
    FLOW_CACHE_TTL_SECONDS: float = 60.0

    # UAZAPI transport
    UAZAPI_SERVER: str = "https://api.uazapi.com"
    UAZAPI_TOKEN: Optional[str] = None

    # Engine
    FLOW_MAX_STEPS: int = 50  # Max blocks evaluated per single advance call
    PROCESSED_EVENT_HISTORY: int = 100  # Event ids remembered for dedup

    # Concurrency
    LEASE_TIMEOUT_SECONDS: float = 5.0
    MAX_CONFLICT_RETRIES: int = 3
    DEFERRED_RETRY_SECONDS: float = 2.0

    # Scheduler
    SCHEDULER_CHECK_INTERVAL: float = 1.0
    SCHEDULER_RETENTION_SECONDS: float = 3600.0  # Finished continuations kept for stats

    # Webhook blocks
    WEBHOOK_TIMEOUT_SECONDS: float = 30.0

    class Config:
        env_file = str(ENV_FILE)
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
