"""
Configuration settings using Pydantic
"""
from functools import lru_cache
from typing import Optional
from pathlib import Path
from pydantic_settings import BaseSettings

# Get the backend directory
BACKEND_DIR = Path(__file__).resolve().parent.parent.parent
PACKAGE_DIR = Path(__file__).resolve().parent.parent
ENV_FILE = BACKEND_DIR / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # App
    APP_NAME: str = "Flow Core"
    DEBUG: bool = False

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # OpenAI
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    EXTRACTION_TEMPERATURE: float = 0.2
    RESPONSE_TEMPERATURE: float = 0.7

    # Supabase (only needed when USER_DATA_BACKEND=supabase)
    SUPABASE_URL: Optional[str] = None
    SUPABASE_KEY: Optional[str] = None
    USER_DATA_BACKEND: str = "memory"  # memory | supabase

    # Flow definitions and word lists
    FLOWS_DIR: str = str(PACKAGE_DIR / "data" / "flows")
    WORDLISTS_DIR: str = str(PACKAGE_DIR / "data" / "wordlists")

    # Tool executor
    TOOL_WEBHOOK_BASE_URL: Optional[str] = None
    TOOL_TIMEOUT_SECONDS: float = 30.0

    # Turn loop
    ACTION_ERROR_COOLDOWN_MINUTES: int = 30
    SHORT_ANSWER_MAX_LENGTH: int = 60

    class Config:
        env_file = str(ENV_FILE)
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
