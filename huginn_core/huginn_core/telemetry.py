"""
Telemetry payload assembly.

``collect()`` builds the full periodic payload; ``snapshot()`` is the small
system snapshot sent with every check-in. A section whose collection fails is
replaced by ``{"error": ...}`` so one broken probe never drops the payload.
"""

from __future__ import annotations
from typing import Any, Awaitable, Callable, Dict

from . import __version__
from .inspector import SystemInspector
from .models import utcnow
from .obs.logging import get_logger

logger = get_logger("huginn.telemetry")


class TelemetryAssembler:
    def __init__(self, inspector: SystemInspector):
        self.inspector = inspector

    async def _section(self, name: str, fn: Callable[[], Awaitable[Dict[str, Any]]]) -> Dict[str, Any]:
        try:
            return await fn()
        except Exception as e:
            logger.warning(f"telemetry section {name} failed: {e}", extra={"context": {"section": name}})
            return {"error": f"{type(e).__name__}: {e}"}

    async def collect(self) -> Dict[str, Any]:
        metrics = await self._section("performance", self.inspector.get_system_metrics)
        network = metrics.get("network", {}) if "error" not in metrics else {"error": metrics["error"]}
        return {
            "hardware": await self._section("hardware", self.inspector.get_device_info),
            "software": await self._section("software", self.inspector.get_software_info),
            "security": await self._section("security", self.inspector.get_security_info),
            "network": network,
            "performance": metrics,
            "timestamp": utcnow().isoformat(),
            "agentVersion": __version__,
        }

    async def snapshot(self) -> Dict[str, Any]:
        metrics = await self._section("metrics", self.inspector.get_system_metrics)
        snap: Dict[str, Any] = {"timestamp": utcnow().isoformat(), "agentVersion": __version__}
        if "error" in metrics:
            snap["error"] = metrics["error"]
            return snap
        snap.update({
            "cpuPercent": metrics.get("cpuPercent"),
            "memoryPercent": (metrics.get("memory") or {}).get("percent"),
            "uptimeSeconds": metrics.get("uptimeSeconds"),
        })
        return snap
