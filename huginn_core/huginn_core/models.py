"""
Shared data model: credential, task, task result and the derived status
snapshot.

Wire-facing models are pydantic (they parse platform responses); internal
value types are dataclasses.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DEFAULT_TASK_TIMEOUT_S = 300.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class Credential(BaseModel):
    """
    Enrollment identity plus bearer secret.

    Immutable: a refresh produces a new Credential, so a call that already
    captured the previous value keeps using it unchanged.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    identity: str = Field(validation_alias=AliasChoices("identity", "agent_id", "agentId"))
    secret: str = Field(validation_alias=AliasChoices("secret", "api_token", "access_token"))
    expires_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("expires_at", "expiresAt")
    )

    @field_validator("identity", "secret")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("expires_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) + timedelta(seconds=seconds) >= self.expires_at


class RefreshGrant(BaseModel):
    """Body of a successful refresh response."""
    model_config = ConfigDict(populate_by_name=True)

    secret: str = Field(validation_alias=AliasChoices("secret", "access_token", "api_token"))
    expires_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("expires_at", "expiresAt")
    )

    @field_validator("expires_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)


class TaskKind(str, Enum):
    COMMAND = "command"
    SCRIPT = "script"
    INSTALL = "install"
    POLICY = "policy"


# Legacy task type names still sent by the platform
KIND_ALIASES = {
    "run_command": TaskKind.COMMAND.value,
    "run_script": TaskKind.SCRIPT.value,
    "install_software": TaskKind.INSTALL.value,
    "apply_policy": TaskKind.POLICY.value,
}


class Task(BaseModel):
    """
    A unit of administrator-directed work as fetched from the platform.

    ``kind`` stays a plain string here so that an unknown kind still yields a
    Task the executor can reject with UnsupportedKind. ``timeout`` is in
    milliseconds on the wire.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(validation_alias=AliasChoices("id", "task_id", "taskId"))
    kind: str = Field(validation_alias=AliasChoices("kind", "type"))
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    timeout_ms: Optional[int] = Field(
        default=None, gt=0, validation_alias=AliasChoices("timeout", "timeout_ms", "timeoutMs")
    )
    created_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("created_at", "createdAt")
    )

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            return KIND_ALIASES.get(v, v)
        return v

    @field_validator("payload", mode="before")
    @classmethod
    def _payload_default(cls, v: Any) -> Any:
        return {} if v is None else v

    def timeout_s(self, default: float = DEFAULT_TASK_TIMEOUT_S) -> float:
        if self.timeout_ms is None:
            return default
        return self.timeout_ms / 1000.0


@dataclass
class TaskResult:
    """
    Outcome of one task execution.

    A failed result always carries ``error``; ``duration_ms`` is the wall
    clock of this task only.
    """
    success: bool
    duration_ms: int = 0
    output: Optional[str] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.success and not self.error:
            self.error = self.error_code or "task failed"

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "durationMs": self.duration_ms}
        if self.output is not None:
            out["output"] = self.output
        if self.error is not None:
            out["error"] = self.error
        if self.exit_code is not None:
            out["exitCode"] = self.exit_code
        if self.error_code is not None:
            out["errorCode"] = self.error_code
        if self.metadata:
            out["metadata"] = self.metadata
        return out


@dataclass(frozen=True)
class AgentStatus:
    """Read-only snapshot, recomputed on every request."""
    enrolled: bool
    credential_valid: bool
    running: bool
    last_checkin: Optional[datetime] = None
    last_telemetry: Optional[datetime] = None
    pending_task_count: int = 0
    agent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enrolled": self.enrolled,
            "credentialValid": self.credential_valid,
            "running": self.running,
            "lastCheckIn": self.last_checkin.isoformat() if self.last_checkin else None,
            "lastTelemetry": self.last_telemetry.isoformat() if self.last_telemetry else None,
            "pendingTaskCount": self.pending_task_count,
            "agentId": self.agent_id,
        }
