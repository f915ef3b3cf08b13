"""
audit/store.py -- Append-only audit log for download decisions.

Pattern: Repository with an insert-only surface. There is no update or
delete method, and record() is the only writer.

Atomicity: each entry is one INSERT in its own transaction, so concurrent
requests never interleave partial rows. No ordering between entries from
different requests is promised beyond the auto-increment id.

Failure policy: record() never raises. The access decision has already been
made by the time it is called; a broken audit table must not turn an allowed
download into a 500 or hide a denial. On failure the full entry is written to
the "filegate.audit.fallback" logger at ERROR so it can be recovered from the
process logs.

Security: all queries use bound parameters. No f-strings in SQL.
"""

import json
import logging
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine

from audit.models import AuditEntry
from core.config import get_settings

logger = logging.getLogger("filegate.audit")
fallback_logger = logging.getLogger("filegate.audit.fallback")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_audit = Table(
    "download_audit_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", Integer),  # NULL for anonymous / unauthenticated
    Column("actor_role", String(30), nullable=False),
    Column("resource_type", String(50), nullable=False),
    Column("resource_id", Integer),  # NULL when the request never named a valid id
    Column("outcome", String(30), nullable=False),
    Column("reason", Text, nullable=False),
    Column("timestamp", String(32), nullable=False),
    Column("source_ip", String(45), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode. Set per-connection; PRAGMAs are not inherited."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditLog:
    """Usage:
    log = AuditLog()
    log.record(entry)
    log.close()
    """

    def __init__(self, db_url: Optional[str] = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    def record(self, entry: AuditEntry) -> None:
        """Append one entry. Never raises."""
        try:
            with self.engine.begin() as conn:
                conn.execute(_audit.insert().values(**entry.to_dict()))
        except Exception:
            fallback_logger.error(
                "Audit write failed; entry=%s",
                json.dumps(entry.to_dict(), sort_keys=True),
                exc_info=True,
            )
            return
        logger.debug(
            "audit %s %s/%s actor=%s:%s reason=%r",
            entry.outcome,
            entry.resource_type,
            entry.resource_id,
            entry.actor_role,
            entry.actor_id,
            entry.reason,
        )

    def recent(self, limit: int = 50) -> list[AuditEntry]:
        """Return the newest entries first. For the CLI and tests; not a query API."""
        with self.engine.connect() as conn:
            rows = conn.execute(_audit.select().order_by(_audit.c.id.desc()).limit(limit)).fetchall()
        return [_row_to_entry(r) for r in rows]

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_audit)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        actor_id=row.actor_id,
        actor_role=row.actor_role,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        outcome=row.outcome,
        reason=row.reason,
        timestamp=row.timestamp,
        source_ip=row.source_ip,
    )
