"""
Policy strategy: named, pre-defined settings changes grouped by category.

After the applier succeeds, an optional validation script runs. When it fails
and a rollback script is supplied, the rollback runs before the task is
reported failed; ``metadata["rolled_back"]`` tells whether it succeeded. A
``config_file`` policy without a rollback script restores the backup it just
wrote instead.
"""

from __future__ import annotations
import asyncio
import os
import shutil
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..errors import DependencyMissing, ExecutionFailed, InvalidPayload, TaskTimeout
from ..models import TaskResult
from ..obs.logging import get_logger
from .config_file import UnsupportedConfigFile, apply_config_changes, restore_backup
from .payloads import PolicyCategory, PolicyPayload, ScriptPayload
from .process import Deadline, ProcessRunner
from .script import run_script

logger = get_logger("huginn.tasks.policy")

SOCKETFILTERFW = "/usr/libexec/ApplicationFirewall/socketfilterfw"
SCRIPT_SHARE = 1 / 3

# (settings, deadline, result metadata) -> detail
Applier = Callable[[Dict[str, Any], Deadline, Dict[str, Any]], Awaitable[str]]


def _tool(name: str) -> str:
    path = shutil.which(name)
    if path is None:
        raise DependencyMissing(f"{name} is not installed or not in PATH")
    return path


def _truthy(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on", "enable", "enabled")
    return bool(v)


class PolicyEngine:
    """
    Registry of policy appliers keyed by (category, name).

    Compliance policies without a dedicated applier are recorded and succeed;
    their checks are expressed through the validation script.
    """

    def __init__(self, runner: ProcessRunner):
        self.runner = runner
        self._appliers: Dict[Tuple[PolicyCategory, str], Applier] = {}
        self.register(PolicyCategory.SECURITY, "firewall", self._firewall)
        self.register(PolicyCategory.SECURITY, "gatekeeper", self._gatekeeper)
        self.register(PolicyCategory.SECURITY, "filevault", self._filevault)
        self.register(PolicyCategory.CONFIGURATION, "power_management", self._power_management)
        self.register(PolicyCategory.CONFIGURATION, "dock", self._dock)
        self.register(PolicyCategory.CONFIGURATION, "network", self._network)
        self.register(PolicyCategory.CONFIGURATION, "config_file", self._config_file)

    def register(self, category: PolicyCategory, name: str, applier: Applier) -> None:
        self._appliers[(category, name)] = applier

    def names(self, category: PolicyCategory) -> list:
        return sorted(n for c, n in self._appliers if c == category)

    def _lookup(self, category: PolicyCategory, name: str) -> Applier:
        applier = self._appliers.get((category, name))
        if applier is not None:
            return applier
        if category == PolicyCategory.COMPLIANCE:
            return self._compliance(name)
        raise InvalidPayload(
            f"Unknown {category.value} policy: {name} (known: {', '.join(self.names(category)) or 'none'})"
        )

    async def apply(self, p: PolicyPayload, deadline: Deadline) -> TaskResult:
        applier = self._lookup(p.category, p.name)
        metadata: Dict[str, Any] = {"category": p.category.value, "name": p.name, "settings": p.settings}
        logger.info("Applying policy", extra={"context": {"category": p.category.value, "name": p.name}})
        detail = await applier(p.settings, deadline, metadata)

        if p.validation_script:
            passed, reason = await self._validate(p.validation_script, deadline)
            metadata["validated"] = passed
            if not passed:
                rolled_back: Optional[bool] = None
                if p.rollback_script:
                    logger.warning("Policy validation failed, attempting rollback", extra={"context": {"name": p.name}})
                    rolled_back = await self._rollback(p.rollback_script, deadline)
                elif metadata.get("backup"):
                    logger.warning("Policy validation failed, restoring backup", extra={"context": {"name": p.name}})
                    rolled_back = await self._restore(str(p.settings["path"]))
                metadata["rolled_back"] = rolled_back
                raise ExecutionFailed(f"Policy validation failed: {reason}", metadata=metadata)

        return TaskResult(success=True, output=f"Successfully applied policy: {p.name}\n{detail}".rstrip(), metadata=metadata)

    async def _validate(self, script: str, deadline: Deadline) -> Tuple[bool, str]:
        try:
            res = await run_script(self.runner, ScriptPayload(content=script), deadline.budget(SCRIPT_SHARE))
        except TaskTimeout as e:
            return False, str(e)
        if res.ok:
            return True, ""
        return False, (res.stderr or res.stdout).strip()[:500] or f"exit code {res.exit_code}"

    async def _restore(self, path: str) -> bool:
        try:
            restored = await asyncio.to_thread(restore_backup, path)
        except OSError as e:
            logger.error("Backup restore failed", extra={"context": {"path": path, "error": str(e)}})
            return False
        if not restored:
            logger.error("No backup to restore", extra={"context": {"path": path}})
        return restored

    async def _rollback(self, script: str, deadline: Deadline) -> bool:
        try:
            res = await run_script(self.runner, ScriptPayload(content=script), deadline.budget(SCRIPT_SHARE))
        except TaskTimeout as e:
            logger.error("Policy rollback timed out", extra={"error_code": e.code})
            return False
        if not res.ok:
            logger.error("Policy rollback failed", extra={"context": {"exit_code": res.exit_code}})
        return res.ok

    # ==========================================
    # Appliers
    # ==========================================

    async def _firewall(self, settings: Dict[str, Any], deadline: Deadline, metadata: Dict[str, Any]) -> str:
        if not os.path.exists(SOCKETFILTERFW):
            raise DependencyMissing(f"{SOCKETFILTERFW} not found")
        state = "on" if _truthy(settings.get("enabled", False)) else "off"
        res = await self.runner.check([SOCKETFILTERFW, "--setglobalstate", state], deadline.budget())
        return res.stdout

    async def _gatekeeper(self, settings: Dict[str, Any], deadline: Deadline, metadata: Dict[str, Any]) -> str:
        level = str(settings.get("level", "on")).lower()
        if level in ("on", "enable", "enabled"):
            flag = "--master-enable"
        elif level in ("off", "disable", "disabled"):
            flag = "--master-disable"
        else:
            raise InvalidPayload(f"gatekeeper level must be on or off, got {level!r}")
        res = await self.runner.check([_tool("spctl"), flag], deadline.budget())
        return res.stdout

    async def _filevault(self, settings: Dict[str, Any], deadline: Deadline, metadata: Dict[str, Any]) -> str:
        if _truthy(settings.get("enabled", False)):
            raise ExecutionFailed("FileVault enablement requires user interaction and cannot be automated")
        return "FileVault configuration completed"

    async def _power_management(self, settings: Dict[str, Any], deadline: Deadline, metadata: Dict[str, Any]) -> str:
        changes = []
        for key, field in (("sleep", "sleep_timeout"), ("displaysleep", "display_sleep")):
            value = settings.get(field)
            if value is None:
                continue
            try:
                changes.append((key, int(value)))
            except (TypeError, ValueError) as e:
                raise InvalidPayload(f"{field} must be a whole number of minutes, got {value!r}") from e
        if not changes:
            return "Power management unchanged"
        pmset = _tool("pmset")
        for key, value in changes:
            await self.runner.check([pmset, "-a", key, str(value)], deadline.budget())
        return "Power management configured successfully"

    async def _dock(self, settings: Dict[str, Any], deadline: Deadline, metadata: Dict[str, Any]) -> str:
        defaults = _tool("defaults")
        if "autohide" in settings:
            flag = "true" if _truthy(settings["autohide"]) else "false"
            await self.runner.check(
                [defaults, "write", "com.apple.dock", "autohide", "-bool", flag], deadline.budget()
            )
        if settings.get("position"):
            position = str(settings["position"])
            if position not in ("left", "bottom", "right"):
                raise InvalidPayload(f"dock position must be left, bottom or right, got {position!r}")
            await self.runner.check(
                [defaults, "write", "com.apple.dock", "orientation", "-string", position], deadline.budget()
            )
        restart = await self.runner.run([_tool("killall"), "Dock"], deadline.budget())
        if not restart.ok:
            logger.debug("Dock was not running", extra={"context": {"exit_code": restart.exit_code}})
        return "Dock configuration completed"

    async def _network(self, settings: Dict[str, Any], deadline: Deadline, metadata: Dict[str, Any]) -> str:
        return "Network configuration completed"

    async def _config_file(self, settings: Dict[str, Any], deadline: Deadline, metadata: Dict[str, Any]) -> str:
        path = settings.get("path")
        changes = settings.get("changes")
        if not path or not isinstance(changes, dict):
            raise InvalidPayload("config_file policy requires 'path' and a 'changes' mapping")
        backup = _truthy(settings.get("backup", True)) and os.path.exists(str(path))
        try:
            diff, applied = await asyncio.to_thread(apply_config_changes, str(path), changes, backup)
        except UnsupportedConfigFile as e:
            raise InvalidPayload(str(e)) from e
        except (ValueError, OSError) as e:
            raise ExecutionFailed(f"cannot update {path}: {e}") from e
        if not applied:
            return f"no-op (already up to date) for {path}"
        if backup:
            metadata["backup"] = f"{path}.bak"
        return f"applied changes for {path}\n{diff}"

    def _compliance(self, name: str) -> Applier:
        async def record(settings: Dict[str, Any], deadline: Deadline, metadata: Dict[str, Any]) -> str:
            return f"Compliance policy {name} applied successfully"
        return record
