"""Configuration management using Pydantic Settings."""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file if it exists
# In Docker/production, environment variables are set directly
ENV_FILE_OPT: str | None = None

_env_path = Path(".env")
if _env_path.exists():
    load_dotenv(dotenv_path=_env_path)
    ENV_FILE_OPT = str(_env_path)


class Settings(BaseSettings):
    """Application configuration.

    Loads settings from environment variables. In local development, these can be
    provided via a .env file.
    """

    model_config = SettingsConfigDict(
        env_file=ENV_FILE_OPT,
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Application
    app_name: str = "Coach Stream"
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Thread API server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # Redis
    redis_url: SecretStr = Field(
        default="redis://localhost:6379/0", description="Redis connection URL"
    )
    redis_password: Optional[SecretStr] = Field(default=None, description="Redis password")

    # Remote agent
    agent_url: str = Field(
        default="http://localhost:2024", description="Base URL of the remote agent deployment"
    )
    agent_timeout: float = Field(
        default=300.0, description="HTTP timeout for agent requests (seconds)"
    )
    agent_api_key: Optional[SecretStr] = Field(
        default=None, description="Optional bearer token sent to the agent"
    )
    delegate_tool_name: str = Field(
        default="task",
        description="Tool name the agent uses to hand work off to a sub-agent",
    )

    # Reveal
    reveal_chunk_size: int = Field(
        default=5, description="Characters revealed per tick of the reveal timer"
    )
    reveal_interval_ms: int = Field(
        default=8, description="Milliseconds between reveal timer ticks"
    )

    # Persistence
    save_debounce_ms: int = Field(
        default=500, description="Quiet period before a debounced thread save is written"
    )
    thread_index_max: int = Field(
        default=50, description="Maximum number of threads kept in the thread index"
    )
    thread_ttl_seconds: Optional[int] = Field(
        default=None, description="Optional TTL for stored thread data (seconds)"
    )


# Global settings instance
settings = Settings()
