"""
Application configuration settings
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings
from typing import Optional, List


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    APP_NAME: str = "Speaking Evaluation Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # CORS
    CORS_ORIGINS: List[str] = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: List[str] = ["*"]
    CORS_ALLOW_HEADERS: List[str] = ["*"]

    # Database
    DATABASE_URL: Optional[str] = None

    # AI provider (OpenAI-compatible endpoint, Gemini by default)
    AI_PROVIDER: str = "gemini"
    AI_BASE_URL: Optional[str] = "https://generativelanguage.googleapis.com/v1beta/openai/"
    AI_REQUEST_TIMEOUT: float = 120.0
    EVAL_MODELS: List[str] = ["gemini-2.5-flash", "gemini-2.0-flash"]  # fastest/cheapest first
    EVAL_CAPABILITY: str = "flash_2_5"
    EVAL_TEMPERATURE: float = 0.3
    EVAL_MAX_OUTPUT_TOKENS: int = 50000

    # Leases (seconds); heartbeat interval must stay below the lease
    UPLOAD_LOCK_DURATION_SECONDS: int = 300
    UPLOAD_HEARTBEAT_INTERVAL_SECONDS: float = 100.0
    EVAL_LOCK_DURATION_SECONDS: int = 480
    EVAL_HEARTBEAT_INTERVAL_SECONDS: float = 160.0

    # Retry / backoff
    BACKOFF_BASE_SECONDS: float = 2.0
    BACKOFF_MAX_SECONDS: float = 45.0
    BACKOFF_JITTER_SECONDS: Optional[float] = None  # defaults to BACKOFF_BASE_SECONDS
    RATE_LIMIT_MAX_ATTEMPTS: int = 3
    DEFAULT_MAX_RETRIES: int = 3
    JOB_RETRY_DELAY_SECONDS: int = 30
    STALE_HEARTBEAT_SECONDS: int = 120

    # Object storage (R2 public bucket holding the recorded answers)
    STORAGE_PUBLIC_URL: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True

    @model_validator(mode="after")
    def check_heartbeat_intervals(self):
        if self.UPLOAD_HEARTBEAT_INTERVAL_SECONDS >= self.UPLOAD_LOCK_DURATION_SECONDS:
            raise ValueError("UPLOAD_HEARTBEAT_INTERVAL_SECONDS must be shorter than UPLOAD_LOCK_DURATION_SECONDS")
        if self.EVAL_HEARTBEAT_INTERVAL_SECONDS >= self.EVAL_LOCK_DURATION_SECONDS:
            raise ValueError("EVAL_HEARTBEAT_INTERVAL_SECONDS must be shorter than EVAL_LOCK_DURATION_SECONDS")
        return self


settings = Settings()
