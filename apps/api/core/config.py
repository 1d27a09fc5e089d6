"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the experiment harness.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="mindset_experiments")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    # Full URL override (e.g. "sqlite:///./experiments.db" for local runs).
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # LLM provider credentials. A provider without a key is rejected at
    # experiment start, before any run row is written.
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    ANTHROPIC_API_KEY: Optional[str] = Field(default=None)
    GOOGLE_AI_API_KEY: Optional[str] = Field(default=None)
    DEEPSEEK_API_KEY: Optional[str] = Field(default=None)

    # OpenAI-compatible endpoints
    OPENAI_BASE_URL: Optional[str] = Field(default=None)
    GOOGLE_ENDPOINT: str = Field(default="https://generativelanguage.googleapis.com/v1beta/openai/")
    DEEPSEEK_ENDPOINT: str = Field(default="https://api.deepseek.com/v1")
    OLLAMA_ENDPOINT: str = Field(default="http://localhost:11434")

    # Experiment defaults
    EXPERIMENT_PROMPT_VERSION: str = Field(default="v1")
    EXPERIMENT_DEFAULT_NEEDLE_FACT: str = Field(default="shin splints on Tuesday")
    EXPERIMENT_MAX_OUTPUT_TOKENS: int = Field(default=1500, ge=100, le=8000)
    # Seconds between SSE heartbeats while a run is quiet.
    EXPERIMENT_STREAM_HEARTBEAT_S: float = Field(default=15.0)

    # API Configuration
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8000)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=60)

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # CORS - comma-separated list of allowed origins for production
    CORS_ORIGINS: Optional[str] = Field(default=None)

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )


# Global settings instance
settings = Settings()
