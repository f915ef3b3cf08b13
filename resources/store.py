"""
resources/store.py -- SQLAlchemy-backed resource metadata store.

Uses SQLAlchemy Core (not ORM) so the dataclasses in resources/models.py
remain the authoritative domain representation. Swapping SQLite for
PostgreSQL is a connection string change, not a rewrite.

Pattern: Repository + Data Mapper. ResourceStore is the repository; the
_row_to_* functions are the mappers. The gateway never touches SQL directly.

Scope: the portal owns tasks, tickets, plans and backups. This store mirrors
only the columns FileGate needs -- who owns what, who is assigned to whom, and
where each file sits. The create/add helpers exist for seeding (CLI, tests);
the read path is fetch() and is_employee_assigned().

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = ResourceStore()
    task_id = store.create_task(client_id=9, title="Q3 bookkeeping")
    upload_id = store.add_task_upload(task_id, "uploads/tasks/ledger.xlsx", "ledger.xlsx")
    record = store.fetch(ResourceType.task_upload, upload_id)
    store.close()
"""

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.config import get_settings
from core.models import ResourceType, Role
from resources.models import (
    BackupRecord,
    DocumentRef,
    PlanDocumentRecord,
    ResourceRecord,
    SupportAttachmentRecord,
    TaskRef,
    TaskUploadRecord,
    TicketRef,
)

logger = logging.getLogger("filegate.resources")

# Filenames produced by the nightly backup job. Anything else is refused at
# registration time so arbitrary files cannot be published as backups.
BACKUP_FILENAME_PATTERN = re.compile(r"^backup_\d{4}-\d{2}-\d{2}_\d{6}\.sql\.zip$")

# Backups are registered under this directory of the resource root.
BACKUP_DIR = "backups"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_tasks = Table(
    "on_demand_tasks",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", Integer, nullable=False),
    Column("title", String(255), nullable=False, server_default=""),
)

_task_uploads = Table(
    "task_uploads",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("task_id", Integer, nullable=False),
    Column("file_path", Text, nullable=False),
    Column("file_name", String(255), nullable=False),
    Column("uploaded_at", String(32), nullable=False),
)

_assignments = Table(
    "dedicated_assignments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("employee_id", Integer, nullable=False),
    Column("client_id", Integer, nullable=False),
    Column("assigned_at", String(32), nullable=False),
    UniqueConstraint("employee_id", "client_id", name="uq_employee_client"),
)

_tickets = Table(
    "support_tickets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),  # submitter
    Column("user_role", String(30), nullable=False),  # submitter's role
    Column("assigned_to", Integer),  # employee id, NULL until triaged
    Column("subject", String(255), nullable=False, server_default=""),
)

_replies = Table(
    "support_replies",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ticket_id", Integer, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_attachments = Table(
    "support_attachments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("reply_id", Integer, nullable=False),
    Column("file_path", Text, nullable=False),
    Column("file_name", String(255), nullable=False),
    Column("file_type", String(100)),  # MIME type recorded at upload
)

_plan_documents = Table(
    "client_plan_documents",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("client_id", Integer, nullable=False),
    Column("file_path", Text, nullable=False),
    Column("original_file_name", String(255), nullable=False),
    Column("uploaded_at", String(32), nullable=False),
)

_backups = Table(
    "backups",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("file_name", String(255), nullable=False, unique=True),
    Column("file_path", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode. Set per-connection; PRAGMAs are not inherited."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class ResourceStore:
    def __init__(self, db_url: Optional[str] = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # FastAPI runs sync handlers in a thread pool; the same pooled
            # connection may be touched from several threads.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Read path (used by the gateway and the authorizer)
    # ------------------------------------------------------------------

    def fetch(self, resource_type: ResourceType, resource_id: int) -> Optional[ResourceRecord]:
        """Return the record for (resource_type, resource_id), or None if absent.

        Unknown resource types also return None; the caller validates the
        type before it gets here.
        """
        loader = {
            ResourceType.task_upload: self._fetch_task_upload,
            ResourceType.support_attachment: self._fetch_support_attachment,
            ResourceType.plan_document: self._fetch_plan_document,
            ResourceType.backup: self._fetch_backup,
        }.get(ResourceType.parse(resource_type))
        if loader is None:
            return None
        return loader(int(resource_id))

    def _fetch_task_upload(self, upload_id: int) -> Optional[TaskUploadRecord]:
        stmt = (
            select(
                _task_uploads.c.id,
                _task_uploads.c.file_path,
                _task_uploads.c.file_name,
                _tasks.c.id.label("task_id"),
                _tasks.c.client_id,
            )
            .select_from(_task_uploads.join(_tasks, _task_uploads.c.task_id == _tasks.c.id))
            .where(_task_uploads.c.id == upload_id)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_task_upload(row) if row is not None else None

    def _fetch_support_attachment(self, attachment_id: int) -> Optional[SupportAttachmentRecord]:
        stmt = (
            select(
                _attachments.c.id,
                _attachments.c.file_path,
                _attachments.c.file_name,
                _attachments.c.file_type,
                _tickets.c.id.label("ticket_id"),
                _tickets.c.user_id,
                _tickets.c.user_role,
                _tickets.c.assigned_to,
            )
            .select_from(
                _attachments.join(_replies, _attachments.c.reply_id == _replies.c.id).join(
                    _tickets, _replies.c.ticket_id == _tickets.c.id
                )
            )
            .where(_attachments.c.id == attachment_id)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_support_attachment(row) if row is not None else None

    def _fetch_plan_document(self, document_id: int) -> Optional[PlanDocumentRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(_plan_documents.select().where(_plan_documents.c.id == document_id)).fetchone()
        return _row_to_plan_document(row) if row is not None else None

    def _fetch_backup(self, backup_id: int) -> Optional[BackupRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(_backups.select().where(_backups.c.id == backup_id)).fetchone()
        return _row_to_backup(row) if row is not None else None

    def is_employee_assigned(self, employee_id: int, client_id: int) -> bool:
        """Return True if employee_id is a dedicated assignee of client_id."""
        stmt = select(_assignments.c.id).where(
            (_assignments.c.employee_id == employee_id) & (_assignments.c.client_id == client_id)
        )
        with self.engine.connect() as conn:
            return conn.execute(stmt).first() is not None

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    def create_task(self, client_id: int, title: str = "") -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_tasks.insert().values(client_id=client_id, title=title))
            conn.commit()
            return result.inserted_primary_key[0]

    def add_task_upload(self, task_id: int, file_path: str, file_name: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _task_uploads.insert().values(
                    task_id=task_id, file_path=file_path, file_name=file_name, uploaded_at=_now_iso()
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def assign_employee(self, employee_id: int, client_id: int) -> bool:
        """Create a dedicated assignment. Returns False if it already existed."""
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _assignments.insert().values(employee_id=employee_id, client_id=client_id, assigned_at=_now_iso())
                )
                conn.commit()
        except IntegrityError:
            return False
        return True

    def unassign_employee(self, employee_id: int, client_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _assignments.delete().where(
                    (_assignments.c.employee_id == employee_id) & (_assignments.c.client_id == client_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    def create_ticket(
        self,
        submitter_id: int,
        submitter_role: Role,
        assigned_to: Optional[int] = None,
        subject: str = "",
    ) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _tickets.insert().values(
                    user_id=submitter_id,
                    user_role=Role(submitter_role).value,
                    assigned_to=assigned_to,
                    subject=subject,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def add_ticket_reply(self, ticket_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_replies.insert().values(ticket_id=ticket_id, created_at=_now_iso()))
            conn.commit()
            return result.inserted_primary_key[0]

    def add_support_attachment(
        self,
        reply_id: int,
        file_path: str,
        file_name: str,
        file_type: Optional[str] = None,
    ) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _attachments.insert().values(
                    reply_id=reply_id, file_path=file_path, file_name=file_name, file_type=file_type
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def add_plan_document(self, client_id: int, file_path: str, original_file_name: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _plan_documents.insert().values(
                    client_id=client_id,
                    file_path=file_path,
                    original_file_name=original_file_name,
                    uploaded_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def register_backup(self, file_name: str) -> int:
        """Record a backup archive produced by the backup job.

        Raises ValueError if file_name does not match BACKUP_FILENAME_PATTERN.
        The stored path is always BACKUP_DIR/file_name.
        """
        if not BACKUP_FILENAME_PATTERN.fullmatch(file_name):
            raise ValueError(f"Invalid backup filename: {file_name!r}")
        with self.engine.connect() as conn:
            result = conn.execute(
                _backups.insert().values(
                    file_name=file_name,
                    file_path=f"{BACKUP_DIR}/{file_name}",
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_task_upload(row) -> TaskUploadRecord:
    return TaskUploadRecord(
        id=row.id,
        relative_path=row.file_path,
        display_name=row.file_name,
        task=TaskRef(id=row.task_id, client_id=row.client_id),
    )


def _row_to_support_attachment(row) -> SupportAttachmentRecord:
    return SupportAttachmentRecord(
        id=row.id,
        relative_path=row.file_path,
        display_name=row.file_name,
        mime_type=row.file_type,
        ticket=TicketRef(
            id=row.ticket_id,
            submitter_id=row.user_id,
            submitter_role=Role(row.user_role),
            assigned_to=row.assigned_to,
        ),
    )


def _row_to_plan_document(row) -> PlanDocumentRecord:
    return PlanDocumentRecord(
        id=row.id,
        relative_path=row.file_path,
        display_name=row.original_file_name,
        document=DocumentRef(id=row.id, client_id=row.client_id),
    )


def _row_to_backup(row) -> BackupRecord:
    return BackupRecord(
        id=row.id,
        relative_path=row.file_path,
        display_name=row.file_name,
        created_at=row.created_at,
    )
