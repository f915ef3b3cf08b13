"""
resources/resolver.py -- Map a resource to a file confined to the resource root.

The stored relative_path is treated as untrusted input. Resolution is:

  1. look up the record (missing -> ResourceNotFound)
  2. join the root with the stored path
  3. canonicalize (symlinks, ".", "..") and require the result to sit under
     the canonical root (otherwise -> PathViolation, never ResourceNotFound)
  4. require an existing regular file (otherwise -> ResourceNotFound)

A leading "/" or drive in the stored path does not let it escape: the path is
re-rooted under the resource root before canonicalization.
"""

import logging
from pathlib import Path, PurePath
from typing import Optional, Protocol

from core.errors import PathViolation, ResourceNotFound
from core.models import ResourceType
from resources.models import ResourceRecord

logger = logging.getLogger("filegate.resources")


class ResourceMetadataStore(Protocol):
    def fetch(self, resource_type: ResourceType, resource_id: int) -> Optional[ResourceRecord]: ...


def _relative_parts(stored: str) -> tuple[str, ...]:
    """Split a stored path into components with any anchor removed."""
    pure = PurePath(stored.replace("\\", "/"))
    return tuple(part for part in pure.parts if part not in (pure.anchor, ""))


def is_within(root: Path, candidate: Path) -> bool:
    """True if candidate (already canonical) is root or a descendant of it."""
    return candidate == root or candidate.is_relative_to(root)


class ResourceResolver:
    """Resolves resource identifiers to canonical files under root."""

    def __init__(self, store: ResourceMetadataStore, root: Path) -> None:
        self._store = store
        # strict=False: the root may not exist yet in a fresh deployment;
        # every lookup will then fail with ResourceNotFound.
        self.root = Path(root).resolve()

    def resolve(self, resource_type: ResourceType, resource_id: int) -> Path:
        record = self._store.fetch(resource_type, resource_id)
        if record is None:
            raise ResourceNotFound(f"no {ResourceType(resource_type).value} record {resource_id}")
        return self.resolve_record(record)

    def resolve_record(self, record: ResourceRecord) -> Path:
        stored = record.relative_path or ""
        if "\x00" in stored:
            self._violation(record, stored)
        parts = _relative_parts(stored)
        if not parts:
            raise ResourceNotFound(f"empty path for {record.resource_type.value} {record.id}")

        try:
            candidate = self.root.joinpath(*parts).resolve()
        except (OSError, RuntimeError):
            # RuntimeError: symlink loop on older interpreters
            raise ResourceNotFound(f"unresolvable path for {record.resource_type.value} {record.id}") from None

        if not is_within(self.root, candidate):
            self._violation(record, stored)

        if not candidate.is_file():
            raise ResourceNotFound(f"file missing for {record.resource_type.value} {record.id}")
        return candidate

    def _violation(self, record: ResourceRecord, stored: str) -> None:
        logger.warning(
            "Path escape blocked: %s %d stored path %r",
            record.resource_type.value,
            record.id,
            stored,
        )
        raise PathViolation(f"stored path escapes resource root for {record.resource_type.value} {record.id}")
