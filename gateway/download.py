"""
gateway/download.py -- The download request state machine.

    received -> credential_checked -> authorized -> resolved -> streaming -> completed
                 |                     |             |
                 +--> invalid_request, denied, not_found, path_violation, server_error

DownloadGateway.handle() takes a transport-agnostic DownloadRequest and returns
a DownloadResult. The HTTP layer (api/routes/v1/downloads.py) only translates
that result into a response; every decision is made here.

Credentials collapse into one CredentialCheck value before anything else
looks at them:
  AuthenticatedActor     -- the request carried a valid session. A session
                            takes precedence; any token is ignored.
  TokenGrantedAnonymous  -- no session, but a token that verifies for exactly
                            this (resource_id, resource_type).

Audit: handle() writes exactly one AuditEntry per call, after the terminal
state is known and before returning, so even a failure while building the
HTTP response cannot produce an unaudited decision. A successful request is
recorded as "completed" when the file has been opened and handed to the
transport; a client disconnect mid-stream stops the stream but does not
change that entry.
"""

from __future__ import annotations

import logging
import os
import re
import time
import unicodedata
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Optional, Protocol, Union
from urllib.parse import quote

from audit.models import ANONYMOUS_ROLE, AuditEntry, utc_now_iso
from audit.store import AuditLog
from auth.authorizer import AccessAuthorizer
from auth.signing_key import DatabaseSecretProvider, SecretProvider
from auth.tokens import DOWNLOAD_TOKEN_TTL_SECONDS, DownloadLink, DownloadTokenService
from core.errors import AccessDenied, DownloadError, InvalidRequest, InvalidToken, ResourceNotFound, ServerError
from core.models import UNKNOWN_RESOURCE_TYPE, AccessDecision, ActorIdentity, DownloadState, ResourceType
from resources.models import ResourceRecord, SupportAttachmentRecord
from resources.resolver import ResourceMetadataStore, ResourceResolver

logger = logging.getLogger("filegate.gateway")

DEFAULT_MIME_TYPE = "application/octet-stream"

# Extension -> Content-Type. Anything not listed is served as DEFAULT_MIME_TYPE.
MIME_TYPES: dict[str, str] = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "csv": "text/csv",
    "txt": "text/plain",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "zip": "application/zip",
}

# Largest id SQLite (and most SQL integer columns) can hold.
_MAX_RESOURCE_ID = 2**63 - 1

# Stored MIME types are only trusted in this shape.
_MIME_PATTERN = re.compile(r"[A-Za-z0-9][\w.+-]*/[A-Za-z0-9][\w.+-]*")

REASON_MISSING_CREDENTIALS = "no session or token"
REASON_INVALID_TOKEN = "invalid or expired token"


# ---------------------------------------------------------------------------
# Request / credential / result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DownloadRequest:
    """Raw request parameters as received by the transport.

    resource_type and resource_id are unvalidated. The session identity is
    either given as actor or looked up lazily through session, the
    ActorSessionProvider, which handle() calls inside its audited block so a
    failing user store still ends in an audited server_error.
    """

    resource_type: Optional[str]
    resource_id: Optional[Union[int, str]]
    token: Optional[str] = None
    actor: Optional[ActorIdentity] = None
    source_ip: str = "unknown"
    session: Optional[Callable[[], Optional[ActorIdentity]]] = None


@dataclass(frozen=True)
class AuthenticatedActor:
    actor: ActorIdentity


@dataclass(frozen=True)
class TokenGrantedAnonymous:
    resource_type: ResourceType
    resource_id: int


CredentialCheck = Union[AuthenticatedActor, TokenGrantedAnonymous]


class FileSystem(Protocol):
    def open(self, path: Path) -> BinaryIO: ...


class LocalFileSystem:
    def open(self, path: Path) -> BinaryIO:
        return open(path, "rb")


class FileStream:
    """Iterates a file in chunks and closes it when done or when closed early."""

    def __init__(self, handle: BinaryIO, chunk_size: int) -> None:
        self._handle = handle
        self._chunk_size = chunk_size

    def __iter__(self) -> Iterator[bytes]:
        try:
            while True:
                chunk = self._handle.read(self._chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        if not self._handle.closed:
            self._handle.close()


@dataclass
class DownloadResult:
    state: DownloadState
    reason: str
    status_code: int
    error_code: Optional[str] = None
    message: Optional[str] = None
    headers: dict[str, str] = field(default_factory=dict)
    body: Optional[FileStream] = None

    @property
    def ok(self) -> bool:
        return self.state is DownloadState.completed

    def close(self) -> None:
        if self.body is not None:
            self.body.close()


# ---------------------------------------------------------------------------
# Header helpers
# ---------------------------------------------------------------------------


def guess_mime_type(filename: str) -> str:
    _, _, ext = filename.rpartition(".")
    if not ext or ext == filename:
        return DEFAULT_MIME_TYPE
    return MIME_TYPES.get(ext.lower(), DEFAULT_MIME_TYPE)


def safe_display_name(name: str, fallback: str = "download") -> str:
    """Reduce a stored display name to a bare filename safe for a header.

    Drops any directory part, quotes, backslashes and control characters.
    """
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = "".join(ch for ch in base if ch not in '"\\' and unicodedata.category(ch)[0] != "C")
    cleaned = cleaned.strip(" .")
    return cleaned or fallback


def content_disposition(filename: str) -> str:
    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        ascii_name = unicodedata.normalize("NFKD", filename).encode("ascii", "ignore").decode("ascii")
        ascii_name = safe_display_name(ascii_name)
        return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"
    return f'attachment; filename="{filename}"'


def _content_type(record: ResourceRecord, filename: str) -> str:
    if isinstance(record, SupportAttachmentRecord):
        stored = record.mime_type or ""
        if _MIME_PATTERN.fullmatch(stored):
            return stored
    return guess_mime_type(filename)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class DownloadGateway:
    """Ties credential checks, authorization, resolution, streaming and audit together."""

    def __init__(
        self,
        tokens: DownloadTokenService,
        authorizer: AccessAuthorizer,
        resolver: ResourceResolver,
        store: ResourceMetadataStore,
        audit_log: AuditLog,
        filesystem: Optional[FileSystem] = None,
        chunk_size: int = 64 * 1024,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self._tokens = tokens
        self._authorizer = authorizer
        self._resolver = resolver
        self._store = store
        self._audit = audit_log
        self._fs = filesystem or LocalFileSystem()
        self._chunk_size = chunk_size
        self._clock = clock

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def handle(self, request: DownloadRequest) -> DownloadResult:
        state = DownloadState.received
        resource_label = UNKNOWN_RESOURCE_TYPE
        resource_id: Optional[int] = None
        actor = request.actor
        try:
            if actor is None and request.session is not None:
                actor = request.session()

            kind, resource_id = parse_resource(request.resource_type, request.resource_id)
            resource_label = kind.value

            credential = self._check_credential(request, actor, kind, resource_id)
            state = DownloadState.credential_checked

            record = self._store.fetch(kind, resource_id)
            if record is None:
                raise ResourceNotFound(f"no {kind.value} record {resource_id}")

            decision = self._authorize(credential, record)
            if not decision.allowed:
                raise AccessDenied(decision.reason)
            state = DownloadState.authorized

            path = self._resolver.resolve_record(record)
            state = DownloadState.resolved

            state = DownloadState.streaming
            result = self._start_stream(path, record, decision)
        except DownloadError as exc:
            result = _failure(exc)
        except Exception:
            logger.exception("Download failed in state %s for %s/%s", state.value, resource_label, resource_id)
            result = _failure(ServerError(f"unexpected error in state {state.value}"))

        self._record(request, actor, resource_label, resource_id, result)
        return result

    def _check_credential(
        self, request: DownloadRequest, actor: Optional[ActorIdentity], kind: ResourceType, resource_id: int
    ) -> CredentialCheck:
        if actor is not None:
            return AuthenticatedActor(actor)
        if not request.token:
            raise InvalidRequest(REASON_MISSING_CREDENTIALS)
        if not self._tokens.verify(request.token, resource_id, kind, DOWNLOAD_TOKEN_TTL_SECONDS):
            raise InvalidToken(REASON_INVALID_TOKEN)
        return TokenGrantedAnonymous(kind, resource_id)

    def _authorize(self, credential: CredentialCheck, record: ResourceRecord) -> AccessDecision:
        if isinstance(credential, AuthenticatedActor):
            return self._authorizer.authorize(credential.actor, record)
        return self._authorizer.authorize_token_grant(record)

    def _start_stream(self, path: Path, record: ResourceRecord, decision: AccessDecision) -> DownloadResult:
        handle = self._fs.open(path)
        try:
            size = os.fstat(handle.fileno()).st_size
        except Exception:
            handle.close()
            raise
        filename = safe_display_name(record.display_name or path.name)
        headers = {
            "Content-Type": _content_type(record, filename),
            "Content-Disposition": content_disposition(filename),
            "Content-Length": str(size),
            "Cache-Control": "no-store",
            "X-Content-Type-Options": "nosniff",
        }
        return DownloadResult(
            state=DownloadState.completed,
            reason=decision.reason,
            status_code=200,
            headers=headers,
            body=FileStream(handle, self._chunk_size),
        )

    def _record(
        self,
        request: DownloadRequest,
        actor: Optional[ActorIdentity],
        resource_label: str,
        resource_id: Optional[int],
        result: DownloadResult,
    ) -> None:
        entry = AuditEntry(
            actor_id=actor.id if actor is not None else None,
            actor_role=actor.role.value if actor is not None else ANONYMOUS_ROLE,
            resource_type=resource_label,
            resource_id=resource_id,
            outcome=result.state.value,
            reason=result.reason,
            timestamp=self._clock(),
            source_ip=request.source_ip or "unknown",
        )
        level = logging.WARNING if result.state is DownloadState.path_violation else logging.INFO
        logger.log(
            level,
            "download %s %s/%s actor=%s:%s reason=%r",
            result.state.value,
            resource_label,
            resource_id,
            entry.actor_role,
            entry.actor_id,
            result.reason,
        )
        self._audit.record(entry)

    # ------------------------------------------------------------------
    # Link issuance
    # ------------------------------------------------------------------

    def issue_link(
        self,
        actor: ActorIdentity,
        resource_type: Optional[str],
        resource_id: Optional[Union[int, str]],
        ttl_seconds: int = DOWNLOAD_TOKEN_TTL_SECONDS,
    ) -> DownloadLink:
        """Issue a download token for a resource the actor may read.

        Applies the same rule table as handle(), so a link can only be minted
        by someone who could download the file directly. Raises DownloadError
        subclasses on refusal.
        """
        kind, rid = parse_resource(resource_type, resource_id)
        record = self._store.fetch(kind, rid)
        if record is None:
            raise ResourceNotFound(f"no {kind.value} record {rid}")
        decision = self._authorizer.authorize(actor, record)
        if not decision.allowed:
            raise AccessDenied(decision.reason)
        link = self._tokens.issue_download_link(kind, rid, ttl_seconds)
        logger.info("Issued download link for %s/%d to %s:%d", kind.value, rid, actor.role.value, actor.id)
        return link


# ---------------------------------------------------------------------------
# Module helpers
# ---------------------------------------------------------------------------


def parse_resource(resource_type: object, resource_id: object) -> tuple[ResourceType, int]:
    """Validate raw parameters. Raises InvalidRequest on anything malformed."""
    if resource_type is None or resource_type == "":
        raise InvalidRequest("missing resource_type")
    kind = ResourceType.parse(resource_type)
    if kind is None:
        raise InvalidRequest("unsupported resource_type")

    if resource_id is None or resource_id == "" or isinstance(resource_id, bool):
        raise InvalidRequest("missing resource_id")
    if isinstance(resource_id, int):
        rid = resource_id
    else:
        text = str(resource_id).strip()
        if not text.isdigit() or not text.isascii():
            raise InvalidRequest("malformed resource_id")
        rid = int(text)
    if rid <= 0 or rid > _MAX_RESOURCE_ID:
        raise InvalidRequest("resource_id out of range")
    return kind, rid


def _failure(exc: DownloadError) -> DownloadResult:
    return DownloadResult(
        state=exc.state,
        reason=exc.reason,
        status_code=exc.status_code,
        error_code=exc.code,
        message=exc.public_message,
    )


def build_gateway(
    user_store,
    resource_store,
    audit_log: AuditLog,
    resource_root: Path,
    chunk_size: int = 64 * 1024,
    secret_provider: Optional[SecretProvider] = None,
    clock: Callable[[], float] = time.time,
) -> DownloadGateway:
    """Wire a DownloadGateway from its stores.

    The secret provider defaults to the database-backed one over user_store,
    so every gateway sharing a database signs with the same secret.
    """
    provider = secret_provider or DatabaseSecretProvider(user_store)
    return DownloadGateway(
        tokens=DownloadTokenService(provider, clock=clock),
        authorizer=AccessAuthorizer(resource_store),
        resolver=ResourceResolver(resource_store, resource_root),
        store=resource_store,
        audit_log=audit_log,
        chunk_size=chunk_size,
    )
