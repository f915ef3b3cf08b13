"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper (same as resources/store.py).
UserStore is the repository; _row_to_user is the mapper. Dependency and
token code never touches SQL directly.

Two tables live here:
  users        -- portal accounts (id, username, role, is_active). Only the
                  columns needed to validate a session actor.
  app_settings -- key/value settings. The download-token signing secret is
                  stored under DOWNLOAD_SECRET_KEY.

Security:
  All queries use bound parameters. No f-strings in SQL.

  get_or_create_setting() is the atomic get-or-create the signing secret
  relies on: setting_key is the PRIMARY KEY, so of several concurrent
  inserters exactly one wins and every loser gets IntegrityError and reads
  the winner's value back. No caller ever observes a value that is not the
  persisted one.

Layer rule: no imports from api/, gateway/, audit/, or resources/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import User
from core.config import get_settings
from core.models import Role

logger = logging.getLogger("filegate.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("role", String(30), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

_app_settings = Table(
    "app_settings",
    _metadata,
    Column("setting_key", String(100), primary_key=True),
    Column("setting_value", Text, nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _make_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records and application settings.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="alice", role=Role.client))
        user = store.get_by_id(uid)
        secret = store.get_or_create_setting("download_token_key", lambda: secrets.token_hex(32))
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = _make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    role=Role(user.role).value,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_active(self, user_id: int, is_active: bool) -> bool:
        """Activate or deactivate a user. Returns False if user_id was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # App settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> str | None:
        with self.engine.connect() as conn:
            return conn.execute(
                select(_app_settings.c.setting_value).where(_app_settings.c.setting_key == key)
            ).scalar()

    def get_or_create_setting(self, key: str, factory: Callable[[], str]) -> str:
        """Return the stored value for key, creating it with factory() if absent.

        Atomic across processes: the INSERT races on the primary key and the
        loser re-reads. factory() may therefore run in a caller whose value
        is then discarded -- it must have no side effects.
        """
        existing = self.get_setting(key)
        if existing:
            return existing

        candidate = factory()
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _app_settings.insert().values(setting_key=key, setting_value=candidate, updated_at=_now_iso())
                )
                conn.commit()
            logger.info("Created setting %r", key)
            return candidate
        except IntegrityError:
            # A concurrent caller inserted first; theirs is authoritative.
            winner = self.get_setting(key)
            if not winner:
                raise
            return winner

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        role=Role(row.role),
        created_at=row.created_at,
        is_active=bool(row.is_active),
    )
