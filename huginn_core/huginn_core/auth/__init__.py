"""
Enrollment and credential lifecycle.
"""

from .manager import AuthManager
from .store import CredentialStore, EncryptedFileCredentialStore, MemoryCredentialStore

__all__ = [
    "AuthManager",
    "CredentialStore",
    "EncryptedFileCredentialStore",
    "MemoryCredentialStore",
]
