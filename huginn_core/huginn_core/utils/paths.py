"""
Where the agent keeps its configuration, credential, logs and audit trail.

Resolution order for each base directory:
1) HUGINN_CONFIG_DIR / HUGINN_DATA_DIR / HUGINN_LOG_DIR
2) System agent (euid 0):
   - macOS: /Library/Preferences/Huginn, /Library/Application Support/Huginn,
     /Library/Logs/Huginn
   - other: /etc/huginn, /var/lib/huginn, /var/log/huginn
3) Per-user agent, XDG:
   - $XDG_CONFIG_HOME/huginn, $XDG_DATA_HOME/huginn, $XDG_STATE_HOME/huginn/log

Only the ``*_file`` helpers create directories. The credential directory is
created 0700.
"""

from __future__ import annotations
import os
import sys
from datetime import date
from pathlib import Path
from typing import Optional

CONFIG_FILENAME = "agent.yml"
CREDENTIAL_FILENAME = "credential.enc"
AGENT_LOG_FILENAME = "agent.jsonl"
AUDIT_FILENAME = "tasks.jsonl"

_SYSTEM_DIRS = {
    "darwin": ("/Library/Preferences/Huginn", "/Library/Application Support/Huginn", "/Library/Logs/Huginn"),
    "default": ("/etc/huginn", "/var/lib/huginn", "/var/log/huginn"),
}


def _is_root() -> bool:
    try:
        return os.geteuid() == 0
    except AttributeError:
        return False


def _system_dir(index: int) -> str:
    return _SYSTEM_DIRS.get(sys.platform, _SYSTEM_DIRS["default"])[index]


def _resolve(env: str, index: int, xdg_var: str, xdg_default: str, *tail: str) -> str:
    if os.environ.get(env):
        return os.environ[env]
    if _is_root():
        return _system_dir(index)
    base = os.environ.get(xdg_var) or os.path.join(Path.home(), xdg_default)
    return os.path.join(base, "huginn", *tail)


def config_dir() -> str:
    return _resolve("HUGINN_CONFIG_DIR", 0, "XDG_CONFIG_HOME", ".config")


def data_dir() -> str:
    return _resolve("HUGINN_DATA_DIR", 1, "XDG_DATA_HOME", os.path.join(".local", "share"))


def log_dir() -> str:
    return _resolve("HUGINN_LOG_DIR", 2, "XDG_STATE_HOME", os.path.join(".local", "state"), "log")


def ensure_dir(path: str, mode: int = 0o755) -> str:
    os.makedirs(path, mode=mode, exist_ok=True)
    return path


def config_file() -> str:
    """Default agent.yml location. Not created; a missing file means defaults."""
    return os.path.join(config_dir(), CONFIG_FILENAME)


def credential_file() -> str:
    """Encrypted credential path; its directory is private to the agent user."""
    return os.path.join(ensure_dir(os.path.join(data_dir(), "credentials"), mode=0o700), CREDENTIAL_FILENAME)


def agent_log_file() -> str:
    return os.path.join(ensure_dir(log_dir()), AGENT_LOG_FILENAME)


def audit_file(day: Optional[date] = None) -> str:
    """Audit chain for ``day`` (local today by default): <log_dir>/audit/YYYY/MM/DD/tasks.jsonl."""
    day = day or date.today()
    folder = os.path.join(log_dir(), "audit", f"{day.year:04d}", f"{day.month:02d}", f"{day.day:02d}")
    return os.path.join(ensure_dir(folder), AUDIT_FILENAME)
