"""
System inspection for enrollment and telemetry.

``SystemInspector`` is the collaborator interface; ``PsutilSystemInspector``
implements it with psutil, platform and socket, and probes OS tools
(socketfilterfw / fdesetup on macOS, ufw / lsblk on Linux) where they exist.
Blocking calls run in a worker thread.
"""

import asyncio
import os
import platform
import shutil
import socket
import subprocess
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import psutil

from .obs.logging import get_logger

logger = get_logger("huginn.inspector")

PROBE_TIMEOUT_S = 10
DMI_SERIAL = "/sys/class/dmi/id/product_serial"
SOCKETFILTERFW = "/usr/libexec/ApplicationFirewall/socketfilterfw"


class SystemInspector(ABC):
    """Source of device facts for enrollment, check-in and telemetry."""

    @abstractmethod
    async def get_device_info(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_system_metrics(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_security_info(self) -> Dict[str, Any]:
        pass

    async def get_software_info(self) -> Dict[str, Any]:
        return {}


def _probe(argv: List[str]) -> Optional[str]:
    """Run a read-only probe; None when the tool is missing or fails."""
    if shutil.which(argv[0]) is None and not os.path.exists(argv[0]):
        return None
    try:
        proc = subprocess.run(argv, capture_output=True, text=True, timeout=PROBE_TIMEOUT_S)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"probe {argv[0]} failed: {e}")
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout


class PsutilSystemInspector(SystemInspector):
    def __init__(self, serial_number: Optional[str] = None):
        self._serial_override = serial_number

    @property
    def platform_name(self) -> str:
        return platform.system().lower()

    # ==========================================
    # Device information
    # ==========================================

    def _primary_mac(self) -> Optional[str]:
        for name, addrs in sorted(psutil.net_if_addrs().items()):
            if name == "lo" or name.startswith("lo"):
                continue
            for addr in addrs:
                if addr.family == psutil.AF_LINK and addr.address and addr.address != "00:00:00:00:00:00":
                    return addr.address.lower()
        return None

    def _serial_number(self) -> Optional[str]:
        if self._serial_override:
            return self._serial_override
        if self.platform_name == "darwin":
            out = _probe(["ioreg", "-c", "IOPlatformExpertDevice", "-d", "2"])
            for line in (out or "").splitlines():
                if "IOPlatformSerialNumber" in line:
                    return line.split("=", 1)[-1].strip().strip('"')
            return None
        try:
            with open(DMI_SERIAL, "r", encoding="utf-8") as f:
                value = f.read().strip()
            return value or None
        except OSError:
            return None

    def _device_info(self) -> Dict[str, Any]:
        uname = platform.uname()
        return {
            "hostname": socket.gethostname(),
            "platform": self.platform_name,
            "arch": uname.machine,
            "osRelease": uname.release,
            "osVersion": platform.mac_ver()[0] or uname.version,
            "cpuModel": uname.processor or uname.machine,
            "cpuCount": psutil.cpu_count(logical=True),
            "totalMemory": psutil.virtual_memory().total,
            "macAddress": self._primary_mac(),
            "serialNumber": self._serial_number(),
        }

    async def get_device_info(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._device_info)

    # ==========================================
    # Metrics
    # ==========================================

    def _disks(self) -> List[Dict[str, Any]]:
        disks = []
        for part in psutil.disk_partitions(all=False):
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except (PermissionError, OSError):
                continue
            disks.append({
                "mountpoint": part.mountpoint,
                "fstype": part.fstype,
                "total": usage.total,
                "used": usage.used,
                "free": usage.free,
                "percent": usage.percent,
            })
        return disks

    def _system_metrics(self) -> Dict[str, Any]:
        mem = psutil.virtual_memory()
        net = psutil.net_io_counters()
        try:
            load = list(os.getloadavg())
        except (AttributeError, OSError):
            load = None
        return {
            "cpuPercent": psutil.cpu_percent(interval=0.5),
            "memory": {"total": mem.total, "available": mem.available, "used": mem.used, "percent": mem.percent},
            "disks": self._disks(),
            "network": {
                "bytesSent": net.bytes_sent,
                "bytesRecv": net.bytes_recv,
                "packetsSent": net.packets_sent,
                "packetsRecv": net.packets_recv,
            } if net else {},
            "uptimeSeconds": int(time.time() - psutil.boot_time()),
            "loadAverage": load,
            "processCount": len(psutil.pids()),
        }

    async def get_system_metrics(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._system_metrics)

    # ==========================================
    # Security
    # ==========================================

    def _firewall_state(self) -> str:
        if self.platform_name == "darwin":
            out = _probe([SOCKETFILTERFW, "--getglobalstate"])
            if out is None:
                return "unknown"
            return "enabled" if "enabled" in out.lower() else "disabled"
        out = _probe(["ufw", "status"])
        if out is None:
            return "unknown"
        return "enabled" if "status: active" in out.lower() else "disabled"

    def _disk_encryption(self) -> str:
        if self.platform_name == "darwin":
            out = _probe(["fdesetup", "status"])
            if out is None:
                return "unknown"
            return "enabled" if "is on" in out.lower() else "disabled"
        out = _probe(["lsblk", "-n", "-o", "TYPE"])
        if out is None:
            return "unknown"
        return "enabled" if "crypt" in out.split() else "disabled"

    def _security_info(self) -> Dict[str, Any]:
        return {
            "firewall": self._firewall_state(),
            "diskEncryption": self._disk_encryption(),
            "users": sorted({u.name for u in psutil.users()}),
        }

    async def get_security_info(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._security_info)

    def _software_info(self) -> Dict[str, Any]:
        return {
            "os": platform.system(),
            "osRelease": platform.release(),
            "python": platform.python_version(),
        }

    async def get_software_info(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._software_info)
