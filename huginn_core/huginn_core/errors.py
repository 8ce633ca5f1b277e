"""
Exception hierarchy for the agent.

Three families cross component boundaries:
- AuthError: credential lifecycle failures (enrollment, validation, refresh)
- TaskError: task execution failures; always captured into a TaskResult
- TransportError: network and HTTP status failures

Task errors carry a stable ``code`` that is reported upstream as
``TaskResult.error_code``.
"""

from __future__ import annotations
from typing import Any, Dict, Optional


class HuginnError(Exception):
    """Base class for all agent errors."""
    pass


class ConfigError(HuginnError):
    """Raised when configuration cannot be loaded or validated."""
    pass


class CredentialStoreError(HuginnError):
    """Raised when the credential store is unreadable or corrupt."""
    pass


# ==========================================
# Authentication
# ==========================================

class AuthError(HuginnError):
    """Base class for credential lifecycle failures."""
    pass


class NotEnrolled(AuthError):
    """No credential is stored; the agent must enroll first."""
    pass


class Expired(AuthError):
    """The credential is expired and could not be refreshed."""
    pass


class InvalidToken(AuthError):
    """The platform rejected the enrollment token or credential."""
    pass


class Unreachable(AuthError):
    """The platform could not be reached for an auth operation."""
    pass


# ==========================================
# Transport
# ==========================================

class TransportError(HuginnError):
    """Base class for transport failures."""
    pass


class NetworkError(TransportError):
    """Connection, DNS, TLS or timeout failure before a response arrived."""
    pass


class InvalidResponse(TransportError):
    """2xx response whose body does not match the expected contract."""
    pass


class HttpError(TransportError):
    """Non-2xx response from the platform."""

    def __init__(self, status: int, body: Any = None, endpoint: str = ""):
        self.status = status
        self.body = body
        self.endpoint = endpoint
        super().__init__(f"HTTP {status} from {endpoint or 'platform'}")


class Http4xx(HttpError):
    pass


class Http5xx(HttpError):
    pass


def http_error(status: int, body: Any = None, endpoint: str = "") -> HttpError:
    if 400 <= status < 500:
        return Http4xx(status, body, endpoint)
    if status >= 500:
        return Http5xx(status, body, endpoint)
    return HttpError(status, body, endpoint)


# ==========================================
# Task execution
# ==========================================

class TaskError(HuginnError):
    """Base class for task execution failures."""
    code = "task_error"

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        output: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output
        self.metadata = metadata or {}


class DisallowedCommand(TaskError):
    code = "disallowed_command"


class UnsupportedKind(TaskError):
    code = "unsupported_kind"


class ExecutionFailed(TaskError):
    code = "execution_failed"


class TaskTimeout(TaskError):
    code = "timeout"


class DependencyMissing(TaskError):
    code = "dependency_missing"


class InvalidPayload(TaskError):
    code = "invalid_payload"
