"""
HuginnAgent: explicit context object wiring every component.

Example:
    config = load_config()
    async with HuginnAgent(config) as agent:
        if await agent.initialize():
            await agent.start()
            ...
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

from .auth.manager import AuthManager
from .auth.store import CredentialStore, EncryptedFileCredentialStore
from .config import AgentConfig
from .errors import AuthError, NotEnrolled
from .events import StatusBroadcaster
from .inspector import PsutilSystemInspector, SystemInspector
from .models import AgentStatus, Credential, TaskResult, utcnow
from .obs.logging import get_logger
from .scheduler.engine import CHECKIN, HEALTH, TELEMETRY, AgentScheduler
from .tasks.executor import TaskExecutor
from .tasks.safety import CommandFilter
from .telemetry import TelemetryAssembler
from .transport import HttpTransport, PlatformClient, Transport

logger = get_logger("huginn.agent")


class HuginnAgent:
    def __init__(
        self,
        config: AgentConfig,
        store: Optional[CredentialStore] = None,
        transport: Optional[Transport] = None,
        inspector: Optional[SystemInspector] = None,
        executor: Optional[TaskExecutor] = None,
    ):
        self.config = config
        self.store = store or EncryptedFileCredentialStore(config.credential_path)
        self.transport = transport or HttpTransport(config.base_url, timeout=config.request_timeout_s)
        self.client = PlatformClient(self.transport, config.endpoints)
        self.broadcaster = StatusBroadcaster()
        self.auth = AuthManager(self.store, self.client, self.broadcaster, refresh_buffer_s=config.refresh_buffer_s)
        self.inspector = inspector or PsutilSystemInspector(serial_number=config.serial_number)
        self.assembler = TelemetryAssembler(self.inspector)
        self.executor = executor or TaskExecutor(
            transport=self.transport,
            command_filter=CommandFilter(config.denied_patterns),
            default_timeout_s=config.default_task_timeout_s,
            max_output_bytes=config.max_output_bytes,
            applications_dir=config.applications_dir,
        )
        self.scheduler = AgentScheduler(
            self.auth, self.client, self.executor, self.assembler, self.broadcaster, config
        )
        self.broadcaster.set_status_provider(self.scheduler.status)

    async def __aenter__(self) -> "HuginnAgent":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self.stop()
        self.broadcaster.close()
        await self.transport.close()

    # ==========================================
    # Enrollment
    # ==========================================

    async def initialize(self) -> bool:
        """
        Load the stored credential and make sure the agent is enrolled.

        A near-expiry credential is refreshed; a transient refresh failure is
        tolerated. When no credential remains and an enrollment token is
        configured, the agent enrolls. A corrupt credential store raises
        CredentialStoreError.

        Returns:
            True when the agent ends up enrolled
        """
        logger.info("Initializing agent")
        if self.auth.load() is not None:
            try:
                await self.auth.ensure_valid()
            except NotEnrolled:
                logger.warning("Stored credential was rejected by the platform")
            except AuthError as e:
                logger.warning(f"Credential validation deferred: {e}", extra={"error_code": type(e).__name__})

        if not self.auth.is_enrolled():
            token = self.config.enrollment_token
            if not token:
                logger.warning("Agent is not enrolled and no enrollment token is configured")
                return False
            try:
                await self.enroll(token, self.config.serial_number)
            except AuthError as e:
                logger.error(f"Enrollment failed: {e}", extra={"error_code": type(e).__name__})
                return False

        logger.info("Agent initialized", extra={"agent_id": self.auth.credential.identity})
        return True

    async def enroll(self, token: str, serial_number: Optional[str] = None) -> Credential:
        device_info = await self.inspector.get_device_info()
        if serial_number:
            device_info = {**device_info, "serialNumber": serial_number}
        return await self.auth.enroll(token, device_info)

    async def reset(self) -> None:
        await self.auth.reset()

    # ==========================================
    # Runtime
    # ==========================================

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    def get_status(self) -> AgentStatus:
        return self.broadcaster.get_status()

    def health(self) -> Dict[str, Any]:
        status = self.get_status()
        if status.running and status.credential_valid:
            verdict = "healthy"
        elif status.running or status.credential_valid:
            verdict = "degraded"
        else:
            verdict = "unhealthy"
        details = status.to_dict()
        details["loops"] = {name: state.to_dict() for name, state in self.scheduler.states.items()}
        details["timestamp"] = utcnow().isoformat()
        return {"status": verdict, "details": details}

    async def force_refresh(self) -> Credential:
        logger.info("Forcing credential refresh")
        return await self.auth.refresh()

    async def force_telemetry(self) -> None:
        logger.info("Forcing telemetry report")
        await self.scheduler.run_once(TELEMETRY)

    async def force_checkin(self) -> List[TaskResult]:
        logger.info("Forcing check-in")
        return await self.scheduler.run_once(CHECKIN)

    async def force_health(self) -> Credential:
        return await self.scheduler.run_once(HEALTH)
