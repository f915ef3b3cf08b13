"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in resources/models.py and audit/models.py -- dataclasses own domain shape;
stores and routes do the work.

Layer rule: no imports from api/, gateway/, audit/, or resources/.
"""

from __future__ import annotations

from dataclasses import dataclass

from core.models import ActorIdentity, Role


@dataclass
class User:
    """A portal account as seen by the download gateway.

    Login, passwords and profile data belong to the surrounding portal. This
    record only carries what is needed to turn a session into an
    ActorIdentity: the id, the role and whether the account is still active.
    """

    username: str
    role: Role
    id: int | None = None
    created_at: str | None = None
    is_active: bool = True

    def to_actor(self) -> ActorIdentity:
        if self.id is None:
            raise ValueError("User has not been persisted yet")
        return ActorIdentity(id=self.id, role=self.role)
