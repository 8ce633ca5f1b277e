"""
Command denylist.

Checked against the full command line before anything is spawned. Patterns
anchor on the dangerous verb and its target so that ordinary commands that
merely mention a word (``echo reboot``, ``rm -rf /tmp/x``) stay allowed.

The line is matched as written and again with shell quoting removed and
absolute paths normalized, so ``rm -rf "/"`` and ``rm -rf //`` read as
``rm -rf /``.
"""

from __future__ import annotations
import posixpath
import re
import shlex
from typing import Iterable, List, Optional, Pattern, Tuple

from ..errors import ConfigError, DisallowedCommand
from ..obs.logging import get_logger

logger = get_logger("huginn.tasks.safety")

# Start of a command word: line start, after a separator, or after sudo
_CMD = r"(?:^|[;&|(`]|\$\()\s*(?:sudo\s+(?:-\S+\s+)*)?(?:/\S*/)?"
_END = r"(?=\s|$|[;&|)])"

DEFAULT_DENYLIST: List[Tuple[str, str]] = [
    (r"\brm\b(?=[^;&|\n]*\s(?:-[a-zA-Z]*[rR]|--recursive))[^;&|\n]*\s/\*?" + _END, "recursive delete of /"),
    (r"\brm\b[^;&|\n]*--no-preserve-root", "recursive delete of /"),
    (r"\bdd\b[^;&|\n]*\bof=/dev/(?!null\b|zero\b|stdout\b|stderr\b)", "raw disk write"),
    (r">\s*/dev/(?:sd[a-z]|hd[a-z]|vd[a-z]|xvd[a-z]|nvme\d|mmcblk\d|disk\d|rdisk\d)", "raw disk write"),
    (_CMD + r"(?:mkfs(?:\.\w+)?|mke2fs|mkswap|newfs(?:_\w+)?)" + _END, "filesystem creation"),
    (_CMD + r"(?:fdisk|sfdisk|gdisk|parted|wipefs)" + _END, "disk partitioning"),
    (r"\bdiskutil\s+(?:erase\w*|zeroDisk|randomDisk|secureErase|partitionDisk|reformat)\b", "disk erase"),
    (_CMD + r"(?:shutdown|reboot|halt|poweroff)" + _END, "shutdown/reboot/halt"),
    (_CMD + r"(?:tel)?init\s+[06]" + _END, "shutdown/reboot/halt"),
    (r"\bsystemctl\s+(?:-\S+\s+)*(?:reboot|poweroff|halt|kexec)\b", "shutdown/reboot/halt"),
    (r"\bkill\s+(?:-\S+\s+)*(?:--\s+)?1" + _END, "kill of PID 1"),
    (r"\bkill\s+(?:-\S+\s+)*-1\s*(?:$|[;&|])", "kill of every process"),
    (r"\bkillall\b[^;&|\n]*\s-(?:9|KILL|SIGKILL)\b", "killall -9"),
    (r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:", "fork bomb"),
]


def _normalize_path(token: str) -> str:
    if not token.startswith("/"):
        return token
    return posixpath.normpath(re.sub(r"/{2,}", "/", token))


def normalize_command(command_line: str) -> str:
    """Unquote the words of ``command_line`` and normalize absolute paths."""
    try:
        words = shlex.split(command_line)
    except ValueError:
        return command_line
    return " ".join(_normalize_path(w) for w in words)


class CommandFilter:
    """
    Compiled denylist.

    Usage:
        f = CommandFilter(extra_patterns=[r"\\bcurl\\b.*\\|\\s*sh"])
        f.check("rm -rf /")   # raises DisallowedCommand
    """

    def __init__(self, extra_patterns: Iterable[str] = ()):
        self._rules: List[Tuple[Pattern[str], str]] = [(re.compile(p), reason) for p, reason in DEFAULT_DENYLIST]
        for p in extra_patterns:
            try:
                self._rules.append((re.compile(p), "configured denylist"))
            except re.error as e:
                raise ConfigError(f"invalid denied_patterns entry {p!r}: {e}") from e

    def match(self, command_line: str) -> Optional[str]:
        """Return the reason the command is denied, or None."""
        normalized = normalize_command(command_line)
        for rx, reason in self._rules:
            if rx.search(command_line) or rx.search(normalized):
                return reason
        return None

    def check(self, command_line: str) -> None:
        reason = self.match(command_line)
        if reason is not None:
            logger.warning("Blocked disallowed command", extra={"context": {"reason": reason}})
            raise DisallowedCommand(f"Command '{command_line}' is not allowed for security reasons")
