"""
auth/signing_key.py -- Provisioning of the download-token signing secret.

The secret is a single process-wide value. It is generated once (32 random
bytes, hex-encoded), persisted in app_settings, and reused by every process
that shares the database.

Two layers make the get-or-create atomic:
  1. In-process: DatabaseSecretProvider holds a threading.Lock around lazy
     initialization, so concurrent first requests in one process make a
     single store call and then share the cached value.
  2. Cross-process: UserStore.get_or_create_setting() inserts under a
     primary-key constraint and re-reads on conflict, so two processes
     starting cold converge on the same secret.

Layer rule: no imports from api/, gateway/, audit/, or resources/.
"""

from __future__ import annotations

import logging
import secrets
import threading
from typing import Protocol

logger = logging.getLogger("filegate.auth")

DOWNLOAD_SECRET_KEY = "download_token_key"


class SecretStore(Protocol):
    """Persistence seam for the secret. UserStore satisfies it."""

    def get_or_create_setting(self, key: str, factory) -> str: ...


class SecretProvider(Protocol):
    def get_secret(self) -> bytes: ...


def generate_secret() -> str:
    """Return 32 random bytes as 64 lowercase hex characters."""
    return secrets.token_hex(32)


class DatabaseSecretProvider:
    """Lazily loads (or creates) the signing secret and caches it for the process.

    The lock is held for the whole first load. Later calls read the cached
    value without locking; assignment of an immutable bytes object is atomic.
    """

    def __init__(self, store: SecretStore, key: str = DOWNLOAD_SECRET_KEY) -> None:
        self._store = store
        self._key = key
        self._secret: bytes | None = None
        self._lock = threading.Lock()

    def get_secret(self) -> bytes:
        secret = self._secret
        if secret is not None:
            return secret
        with self._lock:
            if self._secret is None:
                value = self._store.get_or_create_setting(self._key, generate_secret)
                self._secret = value.encode("utf-8")
                logger.info("Download signing secret loaded")
            return self._secret


class StaticSecretProvider:
    """Fixed secret, for tests and for deployments that manage the key outside the database."""

    def __init__(self, secret: str | bytes) -> None:
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if not secret:
            raise ValueError("secret must not be empty")
        self._secret = secret

    def get_secret(self) -> bytes:
        return self._secret
