"""
auth/authorizer.py -- Per-resource-type read authorization.

The whole rule table lives in this module. Precedence, first match wins:

  1. admin                       -> allow  "admin override"
  2. backup, not admin           -> deny   "backups are admin-only"
  3. task_upload                 -> TaskUploadRule
  4. support_attachment          -> SupportAttachmentRule
  5. plan_document               -> PlanDocumentRule
  6. anything else               -> deny   "unrecognized resource type"

Rules 1 and 2 are evaluated before any per-type dispatch. Each per-type rule
is an AuthorizationRule registered under its ResourceType; adding a resource
type means adding one rule class and one registry entry.

Token-granted (anonymous) access goes through authorize_token_grant(): the
token already proves the holder was given this exact resource, so only the
type-level restrictions (backups, unknown types) still apply.

Layer rule: no imports from api/, gateway/, audit/, or resources/. The one
relationship lookup the rules need (dedicated assignments) comes in through
the AssignmentLookup protocol.
"""

from __future__ import annotations

import logging
from typing import Protocol

from core.models import AccessDecision, ActorIdentity, ResourceType, Role

logger = logging.getLogger("filegate.auth")

# Reasons are persisted verbatim into audit entries; keep them stable.
REASON_ADMIN = "admin override"
REASON_BACKUP_ADMIN_ONLY = "backups are admin-only"
REASON_UNRECOGNIZED = "unrecognized resource type"
REASON_TOKEN_GRANT = "capability token grant"
REASON_OWNER = "owner match"
REASON_ASSIGNEE = "assignee match"
REASON_TICKET_SUBMITTER = "ticket submitter match"
REASON_TICKET_ASSIGNEE = "ticket assignee match"
REASON_NOT_TASK_PARTY = "not task owner or assignee"
REASON_NOT_TICKET_PARTY = "not ticket participant"
REASON_NOT_DOCUMENT_OWNER = "not document owner"


class AssignmentLookup(Protocol):
    def is_employee_assigned(self, employee_id: int, client_id: int) -> bool: ...


class AuthorizationRule(Protocol):
    """Decides access for one resource type. Never sees admins or backups."""

    def check(self, actor: ActorIdentity, record) -> AccessDecision: ...


class TaskUploadRule:
    """Task files: the owning client, or an employee dedicated to that client."""

    def __init__(self, assignments: AssignmentLookup) -> None:
        self._assignments = assignments

    def check(self, actor: ActorIdentity, record) -> AccessDecision:
        client_id = record.task.client_id
        if actor.role is Role.client and actor.id == client_id:
            return AccessDecision.allow(REASON_OWNER)
        if actor.role is Role.employee and self._assignments.is_employee_assigned(actor.id, client_id):
            return AccessDecision.allow(REASON_ASSIGNEE)
        return AccessDecision.deny(REASON_NOT_TASK_PARTY)


class SupportAttachmentRule:
    """Ticket files: the submitter (matched on id AND role) or the assigned employee."""

    def check(self, actor: ActorIdentity, record) -> AccessDecision:
        ticket = record.ticket
        submitted_by_actor = actor.id == ticket.submitter_id and ticket.submitter_role is actor.role
        if actor.role is Role.client and submitted_by_actor:
            return AccessDecision.allow(REASON_TICKET_SUBMITTER)
        if actor.role is Role.employee:
            if ticket.assigned_to is not None and actor.id == ticket.assigned_to:
                return AccessDecision.allow(REASON_TICKET_ASSIGNEE)
            if submitted_by_actor:
                return AccessDecision.allow(REASON_TICKET_SUBMITTER)
        return AccessDecision.deny(REASON_NOT_TICKET_PARTY)


class PlanDocumentRule:
    """Plan documents: the owning client only."""

    def check(self, actor: ActorIdentity, record) -> AccessDecision:
        if actor.role is Role.client and actor.id == record.document.client_id:
            return AccessDecision.allow(REASON_OWNER)
        return AccessDecision.deny(REASON_NOT_DOCUMENT_OWNER)


class AccessAuthorizer:
    """Single entry point for every read-access decision."""

    def __init__(self, assignments: AssignmentLookup) -> None:
        self._rules: dict[ResourceType, AuthorizationRule] = {
            ResourceType.task_upload: TaskUploadRule(assignments),
            ResourceType.support_attachment: SupportAttachmentRule(),
            ResourceType.plan_document: PlanDocumentRule(),
        }

    def authorize(self, actor: ActorIdentity, record) -> AccessDecision:
        if actor.role is Role.admin:
            return AccessDecision.allow(REASON_ADMIN)

        resource_type = ResourceType.parse(getattr(record, "resource_type", None))
        if resource_type is ResourceType.backup:
            return AccessDecision.deny(REASON_BACKUP_ADMIN_ONLY)

        rule = self._rules.get(resource_type) if resource_type is not None else None
        if rule is None:
            logger.warning("No authorization rule for resource type %r", getattr(record, "resource_type", None))
            return AccessDecision.deny(REASON_UNRECOGNIZED)
        return rule.check(actor, record)

    def authorize_token_grant(self, record) -> AccessDecision:
        """Decide for an anonymous holder of a verified download token."""
        resource_type = ResourceType.parse(getattr(record, "resource_type", None))
        if resource_type is ResourceType.backup:
            return AccessDecision.deny(REASON_BACKUP_ADMIN_ONLY)
        if resource_type not in self._rules:
            return AccessDecision.deny(REASON_UNRECOGNIZED)
        return AccessDecision.allow(REASON_TOKEN_GRANT)
