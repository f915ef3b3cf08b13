"""
tests/conftest.py -- Shared test fixtures for FileGate unit and integration tests.

This module provides:
  - build_portal(): isolated in-memory stores seeded with users, resources
    and real files under a temporary resource root
  - _patch_lifespan(): wires a portal into app.state, bypassing real startup
  - portal / gateway: per-test fixtures for gateway-level tests
  - api_client: TestClient over the real app for HTTP integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and ALLOWED_HOSTS must be set before any core/auth/api import:
get_settings() is cached on first call, and TestClient sends Host: testserver.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

# CRITICAL: must run before get_settings() is first called.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost", "127.0.0.1"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from audit.store import AuditLog
from auth.models import User
from auth.signing_key import DatabaseSecretProvider
from auth.store import UserStore
from auth.tokens import DownloadTokenService, create_access_token
from core.models import ActorIdentity, Role
from gateway.download import DownloadGateway, build_gateway
from resources.store import ResourceStore

BACKUP_NAME = "backup_2024-01-31_235959.sql.zip"

# File bodies written under the resource root, keyed by relative path.
FILES: dict[str, bytes] = {
    "tasks/ledger.xlsx": b"ledger-bytes-" * 256,
    "support/screenshot.png": b"\x89PNG fake image",
    "plans/plan.pdf": b"%PDF-1.4 plan",
    f"backups/{BACKUP_NAME}": b"PK backup archive",
}


# ---------------------------------------------------------------------------
# Portal fixture data
# ---------------------------------------------------------------------------


@dataclass
class Portal:
    """Stores, actors and resource ids for one isolated test world."""

    user_store: UserStore
    resource_store: ResourceStore
    audit_log: AuditLog
    root: Path
    actors: dict[str, ActorIdentity] = field(default_factory=dict)
    ids: dict[str, int] = field(default_factory=dict)

    def session(self, name: str) -> dict[str, str]:
        """Authorization header carrying a session JWT for the named actor."""
        actor = self.actors[name]
        token = create_access_token(user_id=actor.id, username=name, role=actor.role.value, expire_seconds=3600)
        return {"Authorization": f"Bearer {token}"}

    def tokens(self, clock=None) -> DownloadTokenService:
        """A token service sharing the portal database's signing secret."""
        provider = DatabaseSecretProvider(self.user_store)
        if clock is None:
            return DownloadTokenService(provider)
        return DownloadTokenService(provider, clock=clock)

    def close(self) -> None:
        self.audit_log.close()
        self.resource_store.close()
        self.user_store.close()


def _memory_url(name: str, suffix: str) -> str:
    return f"sqlite:///file:test_{name}_{suffix}?mode=memory&cache=shared&uri=true"


def build_portal(root: Path, suffix: str | None = None) -> Portal:
    """Create isolated stores and seed them.

    Actors:
      admin      -- admin
      acme       -- client owning every seeded task, ticket and plan
      globex     -- another client, owns nothing
      erin       -- employee dedicated to acme, assigned to acme's ticket
      evan       -- employee with no assignments

    Resources (Portal.ids):
      task_upload, support_attachment, plan_document, backup
      escape   -- task upload whose stored path is ../../etc/passwd
      missing  -- task upload whose file does not exist on disk
    """
    suffix = suffix or uuid.uuid4().hex[:12]
    portal = Portal(
        user_store=UserStore(db_url=_memory_url("auth", suffix)),
        resource_store=ResourceStore(db_url=_memory_url("resources", suffix)),
        audit_log=AuditLog(db_url=_memory_url("audit", suffix)),
        root=root,
    )

    for rel, body in FILES.items():
        target = root / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(body)

    for name, role in (
        ("admin", Role.admin),
        ("acme", Role.client),
        ("globex", Role.client),
        ("erin", Role.employee),
        ("evan", Role.employee),
    ):
        uid = portal.user_store.create_user(User(username=name, role=role))
        portal.actors[name] = ActorIdentity(id=uid, role=role)

    store = portal.resource_store
    acme = portal.actors["acme"].id
    erin = portal.actors["erin"].id
    store.assign_employee(erin, acme)

    task_id = store.create_task(acme, "Q3 bookkeeping")
    portal.ids["task_upload"] = store.add_task_upload(task_id, "tasks/ledger.xlsx", "ledger.xlsx")
    portal.ids["escape"] = store.add_task_upload(task_id, "../../etc/passwd", "passwd")
    portal.ids["missing"] = store.add_task_upload(task_id, "tasks/gone.xlsx", "gone.xlsx")

    ticket_id = store.create_ticket(acme, Role.client, assigned_to=erin, subject="Printer")
    reply_id = store.add_ticket_reply(ticket_id)
    portal.ids["support_attachment"] = store.add_support_attachment(
        reply_id, "support/screenshot.png", "screenshot.png", "image/png"
    )

    portal.ids["plan_document"] = store.add_plan_document(acme, "plans/plan.pdf", "Q3 plan.pdf")
    portal.ids["backup"] = store.register_backup(BACKUP_NAME)
    return portal


def make_gateway(portal: Portal, **kwargs) -> DownloadGateway:
    return build_gateway(
        portal.user_store,
        portal.resource_store,
        portal.audit_log,
        portal.root,
        **kwargs,
    )


def _patch_lifespan(portal: Portal):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built portal stores into app.state so TestClient routes see
    isolated test DBs and the temporary resource root.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = portal.user_store
        app.state.resource_store = portal.resource_store
        app.state.audit_log = portal.audit_log
        app.state.gateway = make_gateway(portal)
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Function-scoped fixtures -- fresh stores per test
# ---------------------------------------------------------------------------


@pytest.fixture
def portal(tmp_path: Path) -> Generator[Portal, None, None]:
    root = tmp_path / "storage"
    root.mkdir()
    p = build_portal(root)
    yield p
    p.close()


@pytest.fixture
def gateway(portal: Portal) -> DownloadGateway:
    return make_gateway(portal)


@pytest.fixture
def gateway_factory(portal: Portal):
    """Build extra gateways over the same portal, e.g. with a smaller chunk size."""

    def factory(**kwargs) -> DownloadGateway:
        return make_gateway(portal, **kwargs)

    return factory


@pytest.fixture
def files() -> dict[str, bytes]:
    return FILES


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, Portal], None, None]:
    """Yield (client, portal) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use isolated in-memory stores.
    """
    root = tmp_path_factory.mktemp("api") / "storage"
    root.mkdir()
    p = build_portal(root)

    app.router.lifespan_context = _patch_lifespan(p)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, p

    p.close()
