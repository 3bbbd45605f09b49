from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "modweave"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class BusConfig(BaseModel):
    """Delivery, retry and dependency policy for the message bus."""

    max_attempts: int = Field(default=5, ge=1)
    backoff_base: float = 1.5
    backoff_jitter: float = 0.5
    backoff_max: float = 30.0
    workers: int = Field(default=8, ge=1)
    # Seconds a consumer lane may sit idle before it is stopped.
    lane_idle_timeout: float = Field(default=30.0, gt=0)
    call_timeout: float = 5.0
    message_ttl: float = 86400.0
    # Targets with an empty dependency list accept any sender unless strict.
    strict_dependencies: bool = False


class WorkflowConfig(BaseModel):
    """Workflow engine timing."""

    sla_sweep_interval: float = 60.0
    step_timeout: float = 30.0


class ModweaveConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    bus: BusConfig = BusConfig()
    workflow: WorkflowConfig = WorkflowConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> ModweaveConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to MODWEAVE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("MODWEAVE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ModweaveConfig(**data)
    else:
        config = ModweaveConfig()

    env_db_url = os.getenv("MODWEAVE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("MODWEAVE_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    return config
