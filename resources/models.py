"""
resources/models.py -- Domain dataclasses for downloadable resources.

One record class per resource type. Each carries the ownership path the
authorizer needs (task -> client, ticket -> submitter/assignee,
document -> client) plus where the file lives and what to call it.
Records are read-only inputs to the authorizer, resolver and gateway.

relative_path is stored metadata and is NOT trusted: resources/resolver.py
confines it to the resource root.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from core.models import ResourceType, Role


@dataclass(frozen=True)
class TaskRef:
    id: int
    client_id: int


@dataclass(frozen=True)
class TicketRef:
    """The support ticket an attachment hangs off.

    submitter_role matters: a client and an employee may share a numeric id,
    so submitter_id alone does not identify who opened the ticket.
    """

    id: int
    submitter_id: int
    submitter_role: Role
    assigned_to: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "submitter_role", Role(self.submitter_role))


@dataclass(frozen=True)
class DocumentRef:
    id: int
    client_id: int


@dataclass(frozen=True)
class TaskUploadRecord:
    id: int
    relative_path: str
    display_name: str
    task: TaskRef
    resource_type: ResourceType = ResourceType.task_upload


@dataclass(frozen=True)
class SupportAttachmentRecord:
    id: int
    relative_path: str
    display_name: str
    ticket: TicketRef
    mime_type: Optional[str] = None  # as recorded at upload time
    resource_type: ResourceType = ResourceType.support_attachment


@dataclass(frozen=True)
class PlanDocumentRecord:
    id: int
    relative_path: str
    display_name: str
    document: DocumentRef
    resource_type: ResourceType = ResourceType.plan_document


@dataclass(frozen=True)
class BackupRecord:
    id: int
    relative_path: str
    display_name: str
    created_at: str = ""
    resource_type: ResourceType = ResourceType.backup


ResourceRecord = Union[TaskUploadRecord, SupportAttachmentRecord, PlanDocumentRecord, BackupRecord]
