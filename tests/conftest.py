from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

from huginn_core.auth.manager import AuthManager
from huginn_core.auth.store import MemoryCredentialStore
from huginn_core.config import AgentConfig
from huginn_core.events import StatusBroadcaster
from huginn_core.inspector import SystemInspector
from huginn_core.models import Credential, utcnow
from huginn_core.transport import PlatformClient, Transport, TransportResponse

Reply = Union[Tuple[int, Any], BaseException, Callable[[Dict[str, Any], Optional[str]], Tuple[int, Any]]]


class FakeTransport(Transport):
    """
    In-memory platform. Replies are queued per endpoint path; once a queue is
    empty the path's sticky default is used (404 when none is set).
    """

    def __init__(self):
        self.queues: Dict[str, List[Reply]] = {}
        self.defaults: Dict[str, Reply] = {}
        self.calls: List[Tuple[str, Dict[str, Any], Optional[str]]] = []
        self.files: Dict[str, bytes] = {}
        self.closed = False

    def queue(self, path: str, *replies: Reply) -> None:
        self.queues.setdefault(path, []).extend(replies)

    def respond(self, path: str, reply: Reply) -> None:
        self.defaults[path] = reply

    def calls_to(self, path: str) -> List[Tuple[str, Dict[str, Any], Optional[str]]]:
        return [c for c in self.calls if c[0] == path]

    async def post(self, path, body, bearer=None):
        self.calls.append((path, body, bearer))
        q = self.queues.get(path)
        reply = q.pop(0) if q else self.defaults.get(path, (404, {"error": "no route"}))
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            reply = reply(body, bearer)
        status, payload = reply
        return TransportResponse(status=status, body=payload)

    async def download(self, url, dest, timeout):
        data = self.files[url]
        with open(dest, "wb") as f:
            f.write(data)
        return len(data)

    async def close(self):
        self.closed = True


class FakeInspector(SystemInspector):
    def __init__(self):
        self.fail_metrics = False

    async def get_device_info(self):
        return {"hostname": "test-host", "platform": "linux", "serialNumber": "AUTO-SERIAL"}

    async def get_system_metrics(self):
        if self.fail_metrics:
            raise RuntimeError("metrics unavailable")
        return {"cpuPercent": 12.5, "memory": {"percent": 40.0}, "network": {"bytesSent": 1}, "uptimeSeconds": 99}

    async def get_security_info(self):
        return {"firewall": "enabled", "diskEncryption": "unknown"}


def make_credential(identity="agent-1", secret="s3cret", expires_in: Optional[float] = 3600.0) -> Credential:
    expires_at = utcnow() + timedelta(seconds=expires_in) if expires_in is not None else None
    return Credential(identity=identity, secret=secret, expires_at=expires_at)


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    monkeypatch.setenv("HUGINN_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("HUGINN_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("HUGINN_LOG_DIR", str(tmp_path / "logs"))
    for key in ("HUGINN_BASE_URL", "HUGINN_LOG_LEVEL", "HUGINN_ENROLLMENT_TOKEN", "HUGINN_CREDENTIAL_KEY"):
        monkeypatch.delenv(key, raising=False)
    return tmp_path


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def inspector():
    return FakeInspector()


@pytest.fixture
def config():
    return AgentConfig(
        base_url="https://platform.test",
        backoff_base_s=5,
        backoff_ceiling_s=60,
        max_retries=0,
        shutdown_grace_s=2,
    )


@pytest.fixture
def broadcaster():
    return StatusBroadcaster()


@pytest.fixture
def client(transport, config):
    return PlatformClient(transport, config.endpoints)


@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def auth(store, client, broadcaster):
    return AuthManager(store, client, broadcaster, refresh_buffer_s=300)


@pytest.fixture
def credential():
    return make_credential


@pytest.fixture
def fake_transport_cls():
    return FakeTransport
