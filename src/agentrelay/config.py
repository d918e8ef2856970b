"""
Relay Settings

All runtime knobs in one place, read from the environment (prefix
``AGENTRELAY_``) and from a ``.env`` file in the working directory.

Example:
    AGENTRELAY_LLM_BACKEND=local
    AGENTRELAY_MODEL_NAME=qwen2.5:7b
    AGENTRELAY_USE_STREAMING=false
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()  # Loads from current working directory

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class RelaySettings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_prefix="AGENTRELAY_", extra="ignore")

    # LLM Backend
    llm_backend: Literal["openai", "openrouter", "local"] = "openrouter"
    model_name: Optional[str] = None
    api_base: Optional[str] = None

    # Generation
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    use_streaming: bool = True

    # Relay
    max_retries: int = Field(default=2, ge=0)
    retry_delay_seconds: float = Field(default=1.0, ge=0.0)
    handoff_delay_seconds: float = Field(default=0.5, ge=0.0)
    max_revisions: int = Field(default=3, ge=0)
    agent_config_path: Optional[str] = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> RelaySettings:
    """Get the process-wide settings instance."""
    return RelaySettings()


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for CLI and server entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
