import os
import stat
from datetime import datetime, timezone

import pytest
from cryptography.fernet import Fernet

from huginn_core.auth.store import EncryptedFileCredentialStore, MemoryCredentialStore
from huginn_core.errors import CredentialStoreError
from huginn_core.models import Credential


def _cred():
    return Credential(
        identity="agent-42",
        secret="tok-abc",
        expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
    )


def test_empty_store_means_not_enrolled(tmp_path):
    store = EncryptedFileCredentialStore(str(tmp_path / "cred.enc"))
    assert store.get() is None


def test_set_then_get(tmp_path):
    store = EncryptedFileCredentialStore(str(tmp_path / "cred.enc"))
    store.set(_cred())
    again = EncryptedFileCredentialStore(str(tmp_path / "cred.enc"))
    got = again.get()
    assert got == _cred()


def test_encrypted_at_rest_with_private_permissions(tmp_path):
    path = tmp_path / "cred.enc"
    store = EncryptedFileCredentialStore(str(path))
    store.set(_cred())
    raw = path.read_bytes()
    assert b"tok-abc" not in raw
    assert b"agent-42" not in raw
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert stat.S_IMODE(os.stat(str(path) + ".key").st_mode) == 0o600


def test_default_location_under_data_dir(isolated_dirs):
    store = EncryptedFileCredentialStore()
    assert store.path.startswith(str(isolated_dirs / "data"))
    store.set(_cred())
    assert os.path.exists(store.path)


def test_clear_is_idempotent(tmp_path):
    store = EncryptedFileCredentialStore(str(tmp_path / "cred.enc"))
    store.set(_cred())
    store.clear()
    store.clear()
    assert store.get() is None


def test_corrupt_file_raises(tmp_path):
    path = tmp_path / "cred.enc"
    store = EncryptedFileCredentialStore(str(path))
    store.set(_cred())
    path.write_bytes(b"garbage")
    with pytest.raises(CredentialStoreError):
        EncryptedFileCredentialStore(str(path)).get()


def test_wrong_key_raises(tmp_path):
    path = tmp_path / "cred.enc"
    EncryptedFileCredentialStore(str(path)).set(_cred())
    (tmp_path / "cred.enc.key").write_bytes(Fernet.generate_key())
    with pytest.raises(CredentialStoreError, match="decrypt"):
        EncryptedFileCredentialStore(str(path)).get()


def test_key_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("HUGINN_CREDENTIAL_KEY", Fernet.generate_key().decode())
    path = tmp_path / "cred.enc"
    EncryptedFileCredentialStore(str(path)).set(_cred())
    assert not (tmp_path / "cred.enc.key").exists()
    assert EncryptedFileCredentialStore(str(path)).get().identity == "agent-42"


def test_invalid_environment_key(tmp_path, monkeypatch):
    monkeypatch.setenv("HUGINN_CREDENTIAL_KEY", "not-a-fernet-key")
    with pytest.raises(CredentialStoreError, match="invalid credential key"):
        EncryptedFileCredentialStore(str(tmp_path / "cred.enc")).set(_cred())


def test_memory_store():
    store = MemoryCredentialStore()
    assert store.get() is None
    store.set(_cred())
    assert store.get().identity == "agent-42"
    store.clear()
    assert store.get() is None
