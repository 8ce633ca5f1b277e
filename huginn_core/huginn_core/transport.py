"""
HTTP transport to the management platform.

``HttpTransport`` performs JSON POST calls (aiohttp) and returns the status
with the parsed body; only failures before a response exists raise
(NetworkError). ``PlatformClient`` maps the five platform endpoints onto it
and turns non-2xx responses into Http4xx / Http5xx.
"""

from __future__ import annotations
import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from . import __version__
from .config import Endpoints
from .errors import InvalidResponse, NetworkError, http_error
from .models import Credential, RefreshGrant, Task, TaskResult
from .obs.logging import get_logger

logger = get_logger("huginn.transport")

DOWNLOAD_CHUNK = 64 * 1024


@dataclass
class TransportResponse:
    status: int
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(ABC):
    @abstractmethod
    async def post(self, path: str, body: Dict[str, Any], bearer: Optional[str] = None) -> TransportResponse:
        pass

    @abstractmethod
    async def download(self, url: str, dest: str, timeout: float) -> int:
        """Stream ``url`` into ``dest``; returns bytes written."""
        pass

    async def close(self) -> None:
        return None


class HttpTransport(Transport):
    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": f"huginn-agent/{__version__}"},
            )
        return self._session

    async def post(self, path: str, body: Dict[str, Any], bearer: Optional[str] = None) -> TransportResponse:
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        logger.debug("POST", extra={"endpoint": path})
        try:
            async with self._get_session().post(url, json=body, headers=headers) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"POST {path} failed: {e!r}") from e
        parsed: Any = None
        if text:
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = {"raw": text[:2048]}
        logger.debug("response", extra={"endpoint": path, "status": status})
        return TransportResponse(status=status, body=parsed)

    async def download(self, url: str, dest: str, timeout: float) -> int:
        written = 0
        try:
            async with self._get_session().get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
                if resp.status >= 400:
                    raise http_error(resp.status, None, url)
                with open(dest, "wb") as f:
                    async for chunk in resp.content.iter_chunked(DOWNLOAD_CHUNK):
                        f.write(chunk)
                        written += len(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkError(f"download {url} failed: {e!r}") from e
        return written

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class PlatformClient:
    """Typed wrapper over the platform's enroll/checkin/report/telemetry/refresh calls."""

    def __init__(self, transport: Transport, endpoints: Optional[Endpoints] = None):
        self.transport = transport
        self.endpoints = endpoints or Endpoints()

    async def _call(self, path: str, body: Dict[str, Any], bearer: Optional[str] = None) -> Any:
        resp = await self.transport.post(path, body, bearer=bearer)
        if not resp.ok:
            raise http_error(resp.status, resp.body, path)
        return resp.body if resp.body is not None else {}

    async def enroll(self, token: str, device_info: Dict[str, Any]) -> Credential:
        body = await self._call(self.endpoints.enroll, {"token": token, "deviceInfo": device_info})
        try:
            return Credential.model_validate(body)
        except ValidationError as e:
            raise InvalidResponse(f"enroll response missing identity/secret: {e.error_count()} errors") from e

    async def refresh(self, credential: Credential) -> RefreshGrant:
        body = await self._call(
            self.endpoints.refresh,
            {"identity": credential.identity, "secret": credential.secret},
        )
        try:
            return RefreshGrant.model_validate(body)
        except ValidationError as e:
            raise InvalidResponse("refresh response missing secret") from e

    async def checkin(self, credential: Credential, snapshot: Dict[str, Any]) -> List[Task]:
        body = await self._call(
            self.endpoints.checkin,
            {"identity": credential.identity, "systemSnapshot": snapshot},
            bearer=credential.secret,
        )
        raw = body.get("tasks") if isinstance(body, dict) else None
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise InvalidResponse("checkin response 'tasks' is not a list")
        tasks: List[Task] = []
        for item in raw:
            try:
                tasks.append(Task.model_validate(item))
            except ValidationError as e:
                ident = (item.get("id") or item.get("task_id")) if isinstance(item, dict) else None
                logger.error(
                    "Dropping malformed task from checkin",
                    extra={"task_id": ident, "context": {"errors": e.error_count()}},
                )
        return tasks

    async def report_task_result(self, credential: Credential, task_id: str, result: TaskResult) -> None:
        await self._call(
            self.endpoints.report_task_result,
            {"identity": credential.identity, "taskId": task_id, "result": result.to_wire()},
            bearer=credential.secret,
        )

    async def send_telemetry(self, credential: Credential, payload: Dict[str, Any]) -> None:
        await self._call(
            self.endpoints.telemetry,
            {"identity": credential.identity, "payload": payload},
            bearer=credential.secret,
        )
