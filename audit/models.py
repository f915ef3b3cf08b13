"""
audit/models.py -- The audit record written for every download decision.

Immutable: entries are inserted once and never updated or deleted. outcome
holds the name of the terminal DownloadState the request reached, so
"denied" and "path_violation" stay distinguishable in later review.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

# actor_role for requests that carried a download token but no session.
ANONYMOUS_ROLE = "anonymous"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class AuditEntry:
    actor_id: Optional[int]
    actor_role: str
    resource_type: str
    resource_id: Optional[int]
    outcome: str
    reason: str
    timestamp: str
    source_ip: str

    def to_dict(self) -> dict:
        return asdict(self)
