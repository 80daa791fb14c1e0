"""Configuration utilities for the moderation core."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Dict, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


load_dotenv()

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Environment-backed settings (``GUARDCORE_*`` variables or ``.env``)."""

    model_config = SettingsConfigDict(
        env_prefix="GUARDCORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    inference_base_url: str = Field(default="http://localhost:11434")
    inference_path: str = Field(default="/v1/classify/{layer}")
    inference_api_key: Optional[str] = Field(default=None)
    request_timeout: float = Field(default=180.0, gt=0)
    layer_timeout: float = Field(default=30.0, gt=0)
    pool_size: int = Field(default=1, ge=1)

    max_retries: int = Field(default=2, ge=0)
    retry_base_delay: float = Field(default=3.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)

    circuit_failure_threshold: int = Field(default=10, ge=1)
    circuit_success_threshold: int = Field(default=3, ge=1)
    circuit_reset_timeout: float = Field(default=60.0, ge=0)

    default_score: float = Field(default=50.0, ge=0, le=100)
    decay_rate: float = Field(default=0.01, ge=0, le=1)
    redemption_ceiling: float = Field(default=60.0, ge=0, le=100)
    history_limit: int = Field(default=100, ge=1)
    reputation_cache_ttl: float = Field(default=300.0, ge=0)

    core_violation_window_days: int = Field(default=90, ge=1)
    core_violation_min_confidence: float = Field(default=0.7, ge=0, le=1)

    reputation_penalties: Dict[str, float] = Field(
        default_factory=lambda: {"critical": 15.0, "high": 10.0, "medium": 5.0, "low": 2.0}
    )
    permanent_zero_on_scam: bool = Field(default=True)

    log_level: str = Field(default="INFO")

    @field_validator("inference_base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("inference_base_url must be an http(s) URL")
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @field_validator("reputation_penalties")
    @classmethod
    def _non_negative_penalties(cls, value: Dict[str, float]) -> Dict[str, float]:
        for level, penalty in value.items():
            if penalty < 0:
                raise ValueError(f"penalty for {level} must not be negative")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: int | str | None = None) -> logging.Logger:
    if level is None:
        level = get_settings().log_level
    logging.basicConfig(format=LOG_FORMAT, level=level)
    return logging.getLogger("guardcore")


__all__ = ["LOG_FORMAT", "Settings", "configure_logging", "get_settings"]
