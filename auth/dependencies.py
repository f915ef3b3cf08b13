"""
auth/dependencies.py -- FastAPI Depends() helpers that produce the request's actor.

This is the ActorSessionProvider for FileGate. Session methods, in priority
order:
  1. JWT cookie ("access_token") -- set by the portal's login flow.
  2. Authorization: Bearer <token> header -- API clients using JWTs.

Both converge on an ActorIdentity built from the *stored* user record, so a
deactivated account or a changed role takes effect immediately rather than
when the JWT expires.

try_get_current_actor() is the soft variant (returns None when there is no session) used
by the download route, where a missing session is legitimate because a
download token may stand in for it. get_current_actor() wraps it and raises
HTTP 401.

Layer rule: no imports from api/, gateway/, audit/, or resources/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.store import UserStore
from auth.tokens import decode_access_token
from core.models import ActorIdentity


def _session_token(request: Request) -> str | None:
    token: str | None = request.cookies.get("access_token")
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_current_actor(request: Request) -> ActorIdentity | None:
    """Return the session actor for this request, or None.

    An undecodable token, an unknown user id or an inactive account are all
    "no session". A failing user store is not; that error propagates.
    """
    token = _session_token(request)
    if not token:
        return None
    payload = decode_access_token(token)
    if not payload:
        return None

    user_store: UserStore = request.app.state.user_store
    try:
        user = user_store.get_by_id(int(payload["user_id"]))
    except (TypeError, ValueError):
        return None
    if user is None or not user.is_active:
        return None
    return user.to_actor()


def get_current_actor(request: Request) -> ActorIdentity:
    """Require a session. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.post("/downloads/links")
        def route(actor: ActorIdentity = Depends(get_current_actor)): ...
    """
    actor = try_get_current_actor(request)
    if actor is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return actor
