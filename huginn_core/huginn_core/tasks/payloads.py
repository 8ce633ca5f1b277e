"""
Typed task payloads.

Only the fields each strategy needs are validated; unknown keys are ignored.
Both snake_case and the platform's camelCase names are accepted.
"""

from __future__ import annotations
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..errors import InvalidPayload

# Interpreter -> script file extension
SCRIPT_EXTENSIONS = {
    "bash": ".sh",
    "sh": ".sh",
    "zsh": ".zsh",
    "python": ".py",
    "python3": ".py",
    "node": ".js",
    "ruby": ".rb",
    "perl": ".pl",
}


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class CommandPayload(_Payload):
    command: str = Field(min_length=1)
    args: List[str] = Field(default_factory=list, validation_alias=_alias("args", "arguments"))
    cwd: Optional[str] = Field(default=None, validation_alias=_alias("cwd", "workingDirectory", "working_directory"))
    env: Dict[str, str] = Field(default_factory=dict, validation_alias=_alias("env", "environment"))
    shell: bool = False

    @field_validator("shell", mode="before")
    @classmethod
    def _shell_flag(cls, v: Any) -> Any:
        # The platform may send a shell path instead of a flag
        if isinstance(v, str):
            return bool(v.strip())
        return v

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v

    def command_line(self) -> str:
        return " ".join([self.command, *self.args])


class ScriptPayload(_Payload):
    content: str = Field(min_length=1, validation_alias=_alias("content", "script", "body"))
    interpreter: str = "bash"
    args: List[str] = Field(default_factory=list, validation_alias=_alias("args", "arguments"))
    cwd: Optional[str] = Field(default=None, validation_alias=_alias("cwd", "workingDirectory", "working_directory"))
    env: Dict[str, str] = Field(default_factory=dict, validation_alias=_alias("env", "environment"))

    @field_validator("interpreter")
    @classmethod
    def _check_interpreter(cls, v: str) -> str:
        v = v.strip()
        if not v or any(c.isspace() for c in v):
            raise ValueError("interpreter must be a single program name or path")
        return v

    @property
    def extension(self) -> str:
        name = self.interpreter.rsplit("/", 1)[-1]
        return SCRIPT_EXTENSIONS.get(name, ".sh")


class InstallSource(str, Enum):
    HOMEBREW = "homebrew"
    MAS = "mas"
    DMG = "dmg"
    PKG = "pkg"


class InstallPayload(_Payload):
    source: InstallSource = InstallSource.HOMEBREW
    name: Optional[str] = Field(default=None, validation_alias=_alias("name", "package", "packageName", "app_id", "appId"))
    version: Optional[str] = None
    url: Optional[str] = None
    checksum: Optional[str] = None
    install_args: List[str] = Field(default_factory=list, validation_alias=_alias("install_args", "installArgs"))
    pre_install_script: Optional[str] = Field(
        default=None, validation_alias=_alias("pre_install_script", "preInstallScript")
    )
    post_install_script: Optional[str] = Field(
        default=None, validation_alias=_alias("post_install_script", "postInstallScript")
    )

    @field_validator("checksum")
    @classmethod
    def _check_checksum(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        if v.startswith("sha256:"):
            v = v[len("sha256:"):]
        if len(v) != 64 or any(c not in "0123456789abcdef" for c in v):
            raise ValueError("checksum must be a hex SHA-256 digest")
        return v

    @model_validator(mode="after")
    def _check_source_fields(self) -> "InstallPayload":
        if self.source in (InstallSource.HOMEBREW, InstallSource.MAS) and not self.name:
            raise ValueError(f"'name' is required for source {self.source.value}")
        if self.source in (InstallSource.DMG, InstallSource.PKG):
            if not self.url or not self.url.startswith(("http://", "https://")):
                raise ValueError(f"an http(s) 'url' is required for source {self.source.value}")
        return self


class PolicyCategory(str, Enum):
    SECURITY = "security"
    CONFIGURATION = "configuration"
    COMPLIANCE = "compliance"


class PolicyPayload(_Payload):
    category: PolicyCategory = Field(validation_alias=_alias("category", "type"))
    name: str = Field(min_length=1)
    settings: Dict[str, Any] = Field(default_factory=dict)
    validation_script: Optional[str] = Field(
        default=None, validation_alias=_alias("validation_script", "validationScript", "validation")
    )
    rollback_script: Optional[str] = Field(
        default=None, validation_alias=_alias("rollback_script", "rollbackScript", "rollback")
    )


P = TypeVar("P", bound=_Payload)


def parse_payload(model: Type[P], payload: Dict[str, Any]) -> P:
    """Validate ``payload`` as ``model``; raises InvalidPayload with the field errors."""
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        fields = ", ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidPayload(f"invalid {model.__name__}: {fields}") from e
