"""
Application settings using pydantic_settings.

Values come from environment variables prefixed with ``TRIALMATCH_`` (or a
``.env`` file). ``MOCK_MODE`` is honored without the prefix so offline demos
can be switched on the same way as the rest of the deployment.
"""

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv(Path.cwd() / ".env")


class Settings(BaseSettings):
    """Pipeline settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="TRIALMATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Feature flags
    mock_mode: bool = Field(default=False, description="Return a synthetic trial when the registry is down")
    enable_caching: bool = True
    enable_rate_limiting: bool = True
    enable_human_review: bool = False
    enable_drug_safety: bool = True
    resolve_diagnosis_codes: bool = False

    # Retry / fallback bounds
    max_retries: int = Field(default=3, ge=1, le=10)
    min_results_threshold: int = Field(default=3, ge=0)
    fallback_timeout_seconds: float = Field(default=30.0, gt=0)

    # Discovery
    default_max_trials: int = Field(default=10, ge=1)
    max_literature_results: int = Field(default=5, ge=0)

    # LLM Settings
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.0

    ncbi_api_key: str | None = None
    log_level: str = "INFO"
    console_logging: bool = False


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process."""
    settings = Settings()
    if not settings.mock_mode and os.getenv("MOCK_MODE", "").lower() in ("1", "true", "yes"):
        settings = settings.model_copy(update={"mock_mode": True})
    return settings
