"""
Authentication / enrollment lifecycle.

The manager is the only writer of the Credential. Enroll, refresh, reset and
invalidation all run under one asyncio lock, and concurrent ``refresh()``
callers share a single in-flight request instead of issuing duplicates.

Every scheduled operation calls ``ensure_valid()`` first and never caches the
credential, so a refresh or an invalidation is observed by the very next
operation.
"""

from __future__ import annotations
import asyncio
from typing import Any, Dict, Optional

from ..errors import (
    Expired,
    Http4xx,
    HttpError,
    InvalidResponse,
    InvalidToken,
    NetworkError,
    NotEnrolled,
    TransportError,
    Unreachable,
)
from ..events import EventKind, StatusBroadcaster
from ..models import Credential
from ..obs.logging import get_logger
from ..transport import PlatformClient
from .store import CredentialStore

logger = get_logger("huginn.auth")

# Refresh responses that mean the platform no longer knows this agent
INVALIDATION_STATUSES = (401, 404)


class AuthManager:
    def __init__(
        self,
        store: CredentialStore,
        client: PlatformClient,
        broadcaster: Optional[StatusBroadcaster] = None,
        refresh_buffer_s: float = 300.0,
    ):
        self.store = store
        self.client = client
        self.broadcaster = broadcaster or StatusBroadcaster()
        self.refresh_buffer_s = refresh_buffer_s
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Future] = None
        self._credential: Optional[Credential] = None
        self._loaded = False
        self._enrolled_event: Optional[asyncio.Event] = None

    # ==========================================
    # Read side
    # ==========================================

    def load(self) -> Optional[Credential]:
        """Read the persisted credential (raises CredentialStoreError if corrupt)."""
        self._credential = self.store.get()
        self._loaded = True
        self._sync_event()
        return self._credential

    @property
    def credential(self) -> Optional[Credential]:
        if not self._loaded:
            self.load()
        return self._credential

    def is_enrolled(self) -> bool:
        return self.credential is not None

    def is_valid(self) -> bool:
        cred = self.credential
        return cred is not None and not cred.is_expired()

    @property
    def enrolled_event(self) -> asyncio.Event:
        """Set while a credential exists; loops park on it when unenrolled."""
        if self._enrolled_event is None:
            self._enrolled_event = asyncio.Event()
            self._sync_event()
        return self._enrolled_event

    def _sync_event(self) -> None:
        if self._enrolled_event is None:
            return
        if self._credential is not None:
            self._enrolled_event.set()
        else:
            self._enrolled_event.clear()

    def _replace(self, credential: Optional[Credential]) -> None:
        if credential is None:
            self.store.clear()
        else:
            self.store.set(credential)
        self._credential = credential
        self._loaded = True
        self._sync_event()

    # ==========================================
    # Lifecycle operations
    # ==========================================

    async def enroll(self, token: str, device_info: Dict[str, Any]) -> Credential:
        """
        Exchange an enrollment token for a persisted credential.

        Raises:
            InvalidToken: platform answered 4xx or an unusable body
            Unreachable: network failure or 5xx
        """
        async with self._lock:
            logger.info("Starting enrollment", extra={"context": {"hostname": device_info.get("hostname")}})
            try:
                credential = await self.client.enroll(token, device_info)
            except Http4xx as e:
                self.broadcaster.publish(EventKind.ENROLLMENT_FAILED, reason="invalid_token", status=e.status)
                raise InvalidToken(f"enrollment rejected (HTTP {e.status})") from e
            except InvalidResponse as e:
                self.broadcaster.publish(EventKind.ENROLLMENT_FAILED, reason="invalid_response")
                raise InvalidToken(str(e)) from e
            except TransportError as e:
                self.broadcaster.publish(EventKind.ENROLLMENT_FAILED, reason="unreachable")
                raise Unreachable(f"enrollment failed: {e}") from e
            self._replace(credential)
        logger.info("Enrollment successful", extra={"agent_id": credential.identity})
        self.broadcaster.publish(EventKind.ENROLLED, agent_id=credential.identity)
        return credential

    async def ensure_valid(self) -> Credential:
        """
        Return a usable credential, refreshing once when it is inside the
        refresh buffer. A stale credential is returned only while it is still
        unexpired.
        """
        cred = self.credential
        if cred is None:
            raise NotEnrolled("agent is not enrolled")
        if not cred.expires_within(self.refresh_buffer_s):
            return cred

        logger.info("Credential near expiry, refreshing", extra={"agent_id": cred.identity})
        try:
            return await self.refresh()
        except NotEnrolled:
            raise
        except (Unreachable, InvalidToken, Expired) as e:
            current = self.credential
            if current is None:
                raise NotEnrolled("credential was invalidated") from e
            if current.is_expired():
                raise Expired(f"credential expired and refresh failed: {e}") from e
            logger.warning("Refresh failed, using unexpired credential", extra={"agent_id": current.identity})
            return current

    async def refresh(self) -> Credential:
        """
        Refresh the credential. Concurrent callers await the same request.

        Raises:
            NotEnrolled: no credential, or the platform invalidated it (cleared)
            Unreachable: network failure or 5xx; credential untouched
            InvalidToken: other rejection; credential untouched
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._refresh_locked())
        return await asyncio.shield(self._inflight)

    async def _refresh_locked(self) -> Credential:
        async with self._lock:
            cred = self.credential
            if cred is None:
                raise NotEnrolled("agent is not enrolled")
            try:
                grant = await self.client.refresh(cred)
            except HttpError as e:
                if e.status in INVALIDATION_STATUSES:
                    logger.warning(
                        "Platform invalidated credential during refresh",
                        extra={"agent_id": cred.identity, "status": e.status},
                    )
                    self._replace(None)
                    self.broadcaster.publish(EventKind.UNENROLLED, agent_id=cred.identity, reason="refresh_rejected")
                    raise NotEnrolled("credential invalidated by platform") from e
                if isinstance(e, Http4xx):
                    raise InvalidToken(f"refresh rejected (HTTP {e.status})") from e
                raise Unreachable(f"refresh failed (HTTP {e.status})") from e
            except (NetworkError, InvalidResponse) as e:
                raise Unreachable(f"refresh failed: {e}") from e

            new = Credential(identity=cred.identity, secret=grant.secret, expires_at=grant.expires_at)
            self._replace(new)
        logger.info("Credential refreshed", extra={"agent_id": new.identity})
        self.broadcaster.publish(
            EventKind.TOKEN_REFRESHED,
            agent_id=new.identity,
            expires_at=new.expires_at.isoformat() if new.expires_at else None,
        )
        return new

    async def invalidate(self, reason: str) -> None:
        """Clear the credential after the platform stopped recognizing the agent."""
        async with self._lock:
            cred = self.credential
            self._replace(None)
        if cred is not None:
            logger.warning("Credential invalidated", extra={"agent_id": cred.identity, "context": {"reason": reason}})
            self.broadcaster.publish(EventKind.UNENROLLED, agent_id=cred.identity, reason=reason)

    async def reset(self) -> None:
        """Clear the credential unconditionally. Idempotent."""
        async with self._lock:
            had = self.credential is not None
            self._replace(None)
        if had:
            logger.info("Credential reset")
            self.broadcaster.publish(EventKind.UNENROLLED, reason="reset")
