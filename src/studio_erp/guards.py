"""Referential guard evaluated against cached data before destructive writes.

The checks read only the cache, so they are instant but can be stale: a
dependent created from another session since the last refresh goes unseen.
The store still has the final word and its rejection surfaces as
:class:`~studio_erp.errors.RemoteStoreError`.
"""

from __future__ import annotations

from dataclasses import dataclass

from . import log
from .cache import RelationalCache
from .constants import Collection


@dataclass(frozen=True)
class DeleteCheck:
    """Result of a pre-delete check; a refusal is a normal answer, not an error."""

    allowed: bool
    blocking_projects: int = 0
    blocking_invoices: int = 0

    @property
    def blocking_count(self) -> int:
        return self.blocking_projects + self.blocking_invoices

    @property
    def message(self) -> str:
        if self.allowed:
            return ""
        parts = []
        if self.blocking_projects:
            parts.append(f"{self.blocking_projects} project{'s' if self.blocking_projects != 1 else ''}")
        if self.blocking_invoices:
            parts.append(f"{self.blocking_invoices} invoice{'s' if self.blocking_invoices != 1 else ''}")
        return f"Cannot delete client with existing {' and '.join(parts)}."

    def __bool__(self) -> bool:
        return self.allowed


def can_delete_client(cache: RelationalCache, client_id: str) -> DeleteCheck:
    """Count cached projects (archived ones included) and invoices using a client."""

    projects = sum(
        1 for project in cache.snapshot(Collection.PROJECTS) if project.client_id == client_id  # type: ignore[attr-defined]
    )
    invoices = sum(
        1 for invoice in cache.snapshot(Collection.INVOICES) if invoice.client_id == client_id  # type: ignore[attr-defined]
    )
    check = DeleteCheck(allowed=projects == 0 and invoices == 0, blocking_projects=projects, blocking_invoices=invoices)
    if not check.allowed:
        log.warning("Delete of client '%s' blocked by %d dependent record(s)", client_id, check.blocking_count)
    return check
