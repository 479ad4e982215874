from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Only credential; consumed by the analysis client
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str | None = None

    ANALYSIS_MODEL: str = "gpt-4o"
    ILLUSTRATION_MODEL: str = "gpt-image-1"
    ILLUSTRATION_SIZE: str = "1536x1024"
    REQUEST_TIMEOUT_SECONDS: float = 120.0

    CONCEPT_ILLUSTRATION_LIMIT: int = 3
    WAIT_FOR_OBSERVATIONS: bool = False

    MAX_KNOWLEDGE_FILE_BYTES: int = 20 * 1024 * 1024

    MATH_FONT_SIZE: int = 14
    MATH_DPI: int = 150
    MATH_CACHE_SIZE: int = 1024

    SSE_QUEUE_SIZE: int = 64

    # sessions idle longer than this are dropped; the oldest go first past MAX_SESSIONS
    SESSION_IDLE_SECONDS: float = 3600.0
    MAX_SESSIONS: int = 500

    class Config:
        env_file = ".env"

settings = Settings()
