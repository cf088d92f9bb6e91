from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_APPROVAL_TIMEOUT_HOURS,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_LLM_MAX_TOKENS,
    DEFAULT_MAX_STEPS,
    DEFAULT_STEP_TIMEOUT_SECONDS,
    DEFAULT_TOPIC,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport used for asynchronous webhook dispatch."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = DEFAULT_TOPIC
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Limits applied by the execution engine."""

    max_steps: int = DEFAULT_MAX_STEPS
    step_timeout_seconds: float = DEFAULT_STEP_TIMEOUT_SECONDS
    approval_timeout_hours: float = DEFAULT_APPROVAL_TIMEOUT_HOURS


class HttpConfig(BaseModel):
    """Settings for outbound HTTP actions and the search API."""

    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    search_url: Optional[str] = None


class LLMConfig(BaseModel):
    """Settings for the text generation service."""

    model: str = "anthropic:claude-sonnet-4-0"
    max_tokens: int = DEFAULT_LLM_MAX_TOKENS


class FlowgateConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    engine: EngineConfig = EngineConfig()
    http: HttpConfig = HttpConfig()
    llm: LLMConfig = LLMConfig()
    database_url: Optional[str] = None
    definitions_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> FlowgateConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWGATE_CONFIG env
            variable or 'flowgate.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWGATE_CONFIG", "flowgate.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowgateConfig(**data)
    else:
        config = FlowgateConfig()

    env_db_url = os.getenv("FLOWGATE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_definitions_url = os.getenv("FLOWGATE_DEFINITIONS_URL")
    if env_definitions_url:
        config.definitions_url = env_definitions_url
    env_transport = os.getenv("FLOWGATE_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport  # type: ignore[assignment]
    env_log_level = os.getenv("FLOWGATE_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level.upper()
    return config
