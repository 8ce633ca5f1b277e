"""
Agent configuration.

Loaded from <config>/agent.yml (or an explicit path), then overridden by
HUGINN_BASE_URL, HUGINN_LOG_LEVEL and HUGINN_ENROLLMENT_TOKEN.
"""

from __future__ import annotations
import os
from typing import Any, Dict, List, Optional

import yaml  # type: ignore
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .utils.paths import config_file

MIB = 1024 * 1024

ENV_OVERRIDES = {
    "HUGINN_BASE_URL": "base_url",
    "HUGINN_LOG_LEVEL": "log_level",
    "HUGINN_ENROLLMENT_TOKEN": "enrollment_token",
}


class Endpoints(BaseModel):
    """Paths of the platform endpoints, relative to ``base_url``."""
    model_config = ConfigDict(extra="forbid")

    enroll: str = "/enroll"
    checkin: str = "/checkin"
    report_task_result: str = "/tasks/result"
    telemetry: str = "/telemetry"
    refresh: str = "/refresh"


class AgentConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    base_url: str
    checkin_interval_s: float = Field(120.0, ge=10, le=300)
    telemetry_interval_s: float = Field(1800.0, ge=60, le=3600)
    health_interval_s: float = Field(600.0, ge=60, le=3600)
    max_retries: int = Field(3, ge=0, le=10)
    backoff_base_s: float = Field(5.0, gt=0)
    backoff_ceiling_s: float = Field(300.0, gt=0, le=3600)
    backoff_jitter: float = Field(0.1, ge=0, le=0.5)
    refresh_buffer_s: float = Field(300.0, ge=0)
    request_timeout_s: float = Field(30.0, gt=0, le=300)
    shutdown_grace_s: float = Field(10.0, ge=0, le=300)
    default_task_timeout_s: float = Field(300.0, gt=0)
    max_output_bytes: int = Field(MIB, gt=0)
    log_level: str = "INFO"
    log_to_file: bool = False
    enrollment_token: Optional[str] = None
    serial_number: Optional[str] = None
    credential_path: Optional[str] = None
    endpoints: Endpoints = Field(default_factory=Endpoints)
    denied_patterns: List[str] = Field(default_factory=list)
    applications_dir: str = "/Applications"

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, v: str) -> str:
        lvl = v.upper()
        if lvl == "WARN":
            lvl = "WARNING"
        if lvl not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return lvl

    @model_validator(mode="after")
    def _check_backoff(self) -> "AgentConfig":
        if self.backoff_ceiling_s < self.backoff_base_s:
            raise ValueError("backoff_ceiling_s must be >= backoff_base_s")
        return self


def default_config_path() -> str:
    return config_file()


def load_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> AgentConfig:
    """
    Load and validate the agent configuration.

    Raises:
        ConfigError: file unreadable, not a mapping, or invalid values
    """
    path = path or default_config_path()
    doc: Dict[str, Any] = {}
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                doc = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"cannot read {path}: {e}") from e
        if not isinstance(doc, dict):
            raise ConfigError(f"{path} must contain a mapping")

    for env_key, field_name in ENV_OVERRIDES.items():
        if os.environ.get(env_key):
            doc[field_name] = os.environ[env_key]
    doc.update(overrides or {})

    if "base_url" not in doc:
        raise ConfigError(f"base_url is not configured (looked in {path} and HUGINN_BASE_URL)")
    try:
        return AgentConfig(**doc)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e
