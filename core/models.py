"""
core/models.py -- Shared domain vocabulary for FileGate.

Roles, resource types and access decisions are used by every other layer
(auth/, resources/, audit/, gateway/, api/), so they live in the kernel.
Pure data, zero logic beyond parsing helpers.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Written into audit entries when the request never got far enough to name
# a valid resource type (missing or malformed parameters).
UNKNOWN_RESOURCE_TYPE = "unknown"


class Role(str, Enum):
    admin = "admin"
    client = "client"
    employee = "employee"


class ResourceType(str, Enum):
    task_upload = "task_upload"
    support_attachment = "support_attachment"
    plan_document = "plan_document"
    backup = "backup"

    @classmethod
    def parse(cls, value: object) -> Optional["ResourceType"]:
        """Return the member for value, or None if it is not a known type."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return None


class Outcome(str, Enum):
    allow = "allow"
    deny = "deny"


@dataclass(frozen=True)
class ActorIdentity:
    """The authenticated party making a request.

    Produced once per request by the transport layer (see
    auth/dependencies.try_get_current_actor) and passed explicitly to every
    call that needs it. Immutable for the lifetime of the request.
    """

    id: int
    role: Role

    def __post_init__(self) -> None:
        # Transport layers hand over plain strings; normalize once here.
        object.__setattr__(self, "role", Role(self.role))


@dataclass(frozen=True)
class AccessDecision:
    """Result of an authorization check.

    reason is always populated, Allow included -- it is persisted verbatim
    into the audit entry.
    """

    outcome: Outcome
    reason: str

    @property
    def allowed(self) -> bool:
        return self.outcome is Outcome.allow

    @classmethod
    def allow(cls, reason: str) -> "AccessDecision":
        return cls(Outcome.allow, reason)

    @classmethod
    def deny(cls, reason: str) -> "AccessDecision":
        return cls(Outcome.deny, reason)


class DownloadState(str, Enum):
    """States of one download request.

    The last six are terminal; exactly one of them is recorded per request.
    """

    received = "received"
    credential_checked = "credential_checked"
    authorized = "authorized"
    resolved = "resolved"
    streaming = "streaming"
    completed = "completed"
    denied = "denied"
    not_found = "not_found"
    path_violation = "path_violation"
    invalid_request = "invalid_request"
    server_error = "server_error"
