"""
Credential persistence.

At most one Credential is stored. The file store encrypts it at rest with a
Fernet key kept next to it (mode 0600) or supplied through
HUGINN_CREDENTIAL_KEY, and replaces the file atomically on every write.
"""

from __future__ import annotations
import os
import tempfile
from abc import ABC, abstractmethod
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from ..errors import CredentialStoreError
from ..models import Credential
from ..obs.logging import get_logger
from ..utils.paths import credential_file

logger = get_logger("huginn.auth.store")

KEY_ENV = "HUGINN_CREDENTIAL_KEY"


class CredentialStore(ABC):
    """Storage for the single enrollment credential."""

    @abstractmethod
    def get(self) -> Optional[Credential]:
        pass

    @abstractmethod
    def set(self, credential: Credential) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass


class MemoryCredentialStore(CredentialStore):
    """Process-local store for tests and ephemeral agents."""

    def __init__(self, credential: Optional[Credential] = None):
        self._credential = credential

    def get(self) -> Optional[Credential]:
        return self._credential

    def set(self, credential: Credential) -> None:
        self._credential = credential

    def clear(self) -> None:
        self._credential = None


def _write_private(path: str, data: bytes) -> None:
    """Write ``data`` to ``path`` atomically with owner-only permissions."""
    directory = os.path.dirname(path) or "."
    fd, tmp = tempfile.mkstemp(prefix=".huginn-", dir=directory)
    try:
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class EncryptedFileCredentialStore(CredentialStore):
    def __init__(self, path: Optional[str] = None, key_path: Optional[str] = None):
        if path is None:
            path = credential_file()
        else:
            os.makedirs(os.path.dirname(os.path.abspath(path)), mode=0o700, exist_ok=True)
        self.path = path
        self.key_path = key_path or f"{path}.key"
        self._fernet: Optional[Fernet] = None

    def _cipher(self) -> Fernet:
        if self._fernet is not None:
            return self._fernet
        key = os.environ.get(KEY_ENV)
        if key:
            raw = key.encode("utf-8")
        elif os.path.exists(self.key_path):
            with open(self.key_path, "rb") as f:
                raw = f.read().strip()
        else:
            raw = Fernet.generate_key()
            _write_private(self.key_path, raw)
            logger.info("Generated credential encryption key", extra={"context": {"key_path": self.key_path}})
        try:
            self._fernet = Fernet(raw)
        except (ValueError, TypeError) as e:
            raise CredentialStoreError(f"invalid credential key: {e}") from e
        return self._fernet

    def get(self) -> Optional[Credential]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "rb") as f:
                token = f.read()
            plain = self._cipher().decrypt(token)
            return Credential.model_validate_json(plain)
        except InvalidToken as e:
            raise CredentialStoreError(f"credential store {self.path} cannot be decrypted") from e
        except ValidationError as e:
            raise CredentialStoreError(f"credential store {self.path} is corrupt: {e}") from e
        except OSError as e:
            raise CredentialStoreError(f"credential store {self.path} unreadable: {e}") from e

    def set(self, credential: Credential) -> None:
        token = self._cipher().encrypt(credential.model_dump_json().encode("utf-8"))
        _write_private(self.path, token)
        logger.debug("Credential persisted", extra={"agent_id": credential.identity})

    def clear(self) -> None:
        try:
            os.unlink(self.path)
            logger.info("Credential cleared")
        except FileNotFoundError:
            pass
