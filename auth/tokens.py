"""
auth/tokens.py -- Session JWTs and signed download tokens.

Security design decisions:
  Session JWT: python-jose with HS256. Tokens are signed with SECRET_KEY and
       carry user_id, username, role and expiry. They are minted by the
       portal's login flow; this service only needs to decode them.
       Verification returns None on any failure -- the dependency layer turns
       that into "no session".

  Download token: "{timestamp}|{signature}" where signature is
       HMAC-SHA256(secret, "{resource_id}|{resource_type}|{timestamp}") in
       lowercase hex. Stateless: nothing is stored per token, and any holder
       of the secret can recompute the signature. The token is bound to one
       (resource_id, resource_type) pair and expires DOWNLOAD_TOKEN_TTL_SECONDS
       after issue. No clock-skew tolerance is applied.

  verify() never raises. A failing secret provider, a malformed token or a
       non-numeric timestamp all yield False (fail closed).

Layer rule: no imports from api/, gateway/, audit/, or resources/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from jose import JWTError, jwt

from auth.signing_key import SecretProvider
from core.config import get_settings
from core.models import ResourceType

logger = logging.getLogger("filegate.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

# Lifetime of a download token, in seconds.
DOWNLOAD_TOKEN_TTL_SECONDS = 600

_TOKEN_SEPARATOR = "|"
_SIGNATURE_PATTERN = re.compile(r"[0-9a-f]{64}")
_TIMESTAMP_PATTERN = re.compile(r"[0-9]{1,19}")

# ---------------------------------------------------------------------------
# Session JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, username: str, role: str, expire_seconds: int = 0) -> str:
    """Encode a signed session JWT.

    The portal's login flow owns session issuance; this helper exists so
    tests and local tooling can produce sessions the gateway will accept.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": username,
        "user_id": user_id,
        "role": str(getattr(role, "value", role)),
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a session JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
        if "user_id" not in payload or "role" not in payload:
            return None
        return payload
    except JWTError:
        return None


# ---------------------------------------------------------------------------
# Download tokens
# ---------------------------------------------------------------------------


def signed_message(resource_id: int | str, resource_type: str, timestamp: int) -> bytes:
    """Return the exact bytes a download token signs."""
    resource_type = str(getattr(resource_type, "value", resource_type))
    return f"{resource_id}{_TOKEN_SEPARATOR}{resource_type}{_TOKEN_SEPARATOR}{timestamp}".encode("utf-8")


@dataclass(frozen=True)
class DownloadLink:
    """A freshly issued download token plus what a caller needs to use it."""

    token: str
    resource_type: ResourceType
    resource_id: int
    issued_at: int
    expires_at: int

    @property
    def query(self) -> str:
        """Query string for GET /api/v1/downloads."""
        return urlencode(
            {
                "resource_type": self.resource_type.value,
                "resource_id": self.resource_id,
                "token": self.token,
            }
        )


class DownloadTokenService:
    """Mints and verifies download capability tokens.

    clock is injectable so tests can move time without sleeping.
    """

    def __init__(self, secret_provider: SecretProvider, clock: Callable[[], float] = time.time) -> None:
        self._secrets = secret_provider
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def _sign(self, resource_id: int | str, resource_type: str, timestamp: int) -> str:
        return hmac.new(
            self._secrets.get_secret(),
            signed_message(resource_id, resource_type, timestamp),
            hashlib.sha256,
        ).hexdigest()

    def issue(
        self,
        resource_id: int,
        resource_type: ResourceType | str,
        ttl_seconds: int = DOWNLOAD_TOKEN_TTL_SECONDS,
    ) -> str:
        """Return "{timestamp}|{signature}" for the given resource.

        The wire format carries only the issue time. Expiry is enforced by
        the verifier's ttl, so ttl_seconds here is validated but not encoded.
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        timestamp = self._now()
        signature = self._sign(resource_id, resource_type, timestamp)
        return f"{timestamp}{_TOKEN_SEPARATOR}{signature}"

    def verify(
        self,
        token: str | None,
        resource_id: int | str,
        resource_type: ResourceType | str,
        ttl_seconds: int = DOWNLOAD_TOKEN_TTL_SECONDS,
    ) -> bool:
        """Return True only if token was issued for this resource and has not expired."""
        if not token or not isinstance(token, str):
            return False
        parts = token.split(_TOKEN_SEPARATOR)
        if len(parts) != 2:
            return False
        raw_timestamp, signature = parts
        # Plain ASCII digits only; int() would also take "+1", " 1" and "1_0".
        if not _TIMESTAMP_PATTERN.fullmatch(raw_timestamp):
            return False
        if not _SIGNATURE_PATTERN.fullmatch(signature):
            return False
        timestamp = int(raw_timestamp)

        try:
            expected = self._sign(resource_id, resource_type, timestamp)
        except Exception:
            logger.exception("Download secret unavailable; rejecting token")
            return False

        if self._now() - timestamp > ttl_seconds:
            return False
        return hmac.compare_digest(expected, signature)

    def issue_download_link(
        self,
        resource_type: ResourceType | str,
        resource_id: int,
        ttl_seconds: int = DOWNLOAD_TOKEN_TTL_SECONDS,
    ) -> DownloadLink:
        """Issue a token and package it for CRUD pages that render download links.

        expires_at reflects what the gateway will enforce: a ttl longer than
        DOWNLOAD_TOKEN_TTL_SECONDS is cut to it.
        """
        kind = ResourceType(resource_type)
        token = self.issue(resource_id, kind, ttl_seconds)
        issued_at = int(token.split(_TOKEN_SEPARATOR, 1)[0])
        return DownloadLink(
            token=token,
            resource_type=kind,
            resource_id=int(resource_id),
            issued_at=issued_at,
            expires_at=issued_at + min(ttl_seconds, DOWNLOAD_TOKEN_TTL_SECONDS),
        )
