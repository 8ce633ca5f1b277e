import asyncio

import pytest

from huginn_core.errors import Expired, InvalidToken, NetworkError, NotEnrolled, Unreachable
from huginn_core.events import EventKind
from conftest import make_credential


def test_enroll_with_token_and_serial(auth, transport, store, broadcaster):
    transport.respond("/enroll", (200, {"identity": "agent-1", "secret": "s1", "expiresAt": "2099-01-01T00:00:00Z"}))
    sub = broadcaster.subscribe({EventKind.ENROLLED})

    cred = asyncio.run(auth.enroll("T1", {"hostname": "mac-01", "serialNumber": "SN123"}))

    assert cred.identity == "agent-1"
    assert store.get() == cred
    assert auth.is_enrolled()
    path, body, bearer = transport.calls_to("/enroll")[0]
    assert body == {"token": "T1", "deviceInfo": {"hostname": "mac-01", "serialNumber": "SN123"}}
    assert bearer is None
    assert [e.data["agent_id"] for e in sub.drain()] == ["agent-1"]


def test_enroll_rejected_token(auth, transport, store, broadcaster):
    transport.respond("/enroll", (403, {"error": "bad token"}))
    sub = broadcaster.subscribe({EventKind.ENROLLMENT_FAILED})
    with pytest.raises(InvalidToken):
        asyncio.run(auth.enroll("nope", {}))
    assert store.get() is None
    assert sub.drain()[0].data["reason"] == "invalid_token"


def test_enroll_unreachable(auth, transport):
    transport.respond("/enroll", NetworkError("connection refused"))
    with pytest.raises(Unreachable):
        asyncio.run(auth.enroll("T1", {}))


def test_enroll_server_error_is_unreachable(auth, transport):
    transport.respond("/enroll", (503, None))
    with pytest.raises(Unreachable):
        asyncio.run(auth.enroll("T1", {}))


def test_enroll_response_without_secret(auth, transport):
    transport.respond("/enroll", (200, {"identity": "agent-1"}))
    with pytest.raises(InvalidToken):
        asyncio.run(auth.enroll("T1", {}))
    assert not auth.is_enrolled()


def test_ensure_valid_not_enrolled(auth):
    with pytest.raises(NotEnrolled):
        asyncio.run(auth.ensure_valid())


def test_ensure_valid_returns_fresh_credential_without_refresh(auth, store, transport):
    store.set(make_credential(expires_in=3600))
    cred = asyncio.run(auth.ensure_valid())
    assert cred.secret == "s3cret"
    assert transport.calls_to("/refresh") == []


def test_past_expiry_refreshes(auth, store, transport, broadcaster):
    store.set(make_credential(expires_in=-60))
    transport.respond("/refresh", (200, {"secret": "new-secret", "expiresAt": "2099-01-01T00:00:00Z"}))
    sub = broadcaster.subscribe({EventKind.TOKEN_REFRESHED})

    cred = asyncio.run(auth.ensure_valid())

    assert cred.secret == "new-secret"
    assert cred.identity == "agent-1"
    assert store.get().secret == "new-secret"
    assert transport.calls_to("/refresh")[0][1] == {"identity": "agent-1", "secret": "s3cret"}
    assert len(sub.drain()) == 1


def test_past_expiry_and_refresh_failure_raises_expired(auth, store, transport):
    store.set(make_credential(expires_in=-60))
    transport.respond("/refresh", (500, None))
    with pytest.raises(Expired):
        asyncio.run(auth.ensure_valid())
    # Credential is kept for a later refresh
    assert store.get() is not None


def test_near_expiry_refresh_failure_returns_stale_credential(auth, store, transport):
    store.set(make_credential(expires_in=120))
    transport.respond("/refresh", NetworkError("down"))
    cred = asyncio.run(auth.ensure_valid())
    assert cred.secret == "s3cret"


def test_refresh_401_clears_credential(auth, store, transport, broadcaster):
    store.set(make_credential(expires_in=-60))
    transport.respond("/refresh", (401, {"error": "agent not recognized"}))
    sub = broadcaster.subscribe({EventKind.UNENROLLED})

    with pytest.raises(NotEnrolled):
        asyncio.run(auth.ensure_valid())

    assert store.get() is None
    assert not auth.is_enrolled()
    assert len(sub.drain()) == 1
    with pytest.raises(NotEnrolled):
        asyncio.run(auth.ensure_valid())


def test_refresh_other_4xx_keeps_credential(auth, store, transport):
    store.set(make_credential())
    transport.respond("/refresh", (400, None))
    with pytest.raises(InvalidToken):
        asyncio.run(auth.refresh())
    assert store.get() is not None


def test_concurrent_refresh_is_single_flight(auth, store, transport):
    store.set(make_credential())

    async def scenario():
        release = asyncio.Event()

        async def slow_post(path, body, bearer=None):
            transport.calls.append((path, body, bearer))
            await release.wait()
            from huginn_core.transport import TransportResponse
            return TransportResponse(200, {"secret": "shared"})

        transport.post = slow_post
        callers = [asyncio.create_task(auth.refresh()) for _ in range(5)]
        await asyncio.sleep(0.01)
        release.set()
        return await asyncio.gather(*callers)

    results = asyncio.run(scenario())
    assert len(transport.calls_to("/refresh")) == 1
    assert {r.secret for r in results} == {"shared"}


def test_reset_is_idempotent(auth, store, broadcaster):
    store.set(make_credential())
    sub = broadcaster.subscribe({EventKind.UNENROLLED})

    async def scenario():
        await auth.reset()
        await auth.reset()

    asyncio.run(scenario())
    assert store.get() is None
    assert len(sub.drain()) == 1
    with pytest.raises(NotEnrolled):
        asyncio.run(auth.ensure_valid())


def test_enrolled_event_tracks_credential(auth, store):
    async def scenario():
        ev = auth.enrolled_event
        before = ev.is_set()
        store.set(make_credential())
        auth.load()
        during = ev.is_set()
        await auth.invalidate("agent_not_found")
        return before, during, ev.is_set()

    assert asyncio.run(scenario()) == (False, True, False)
