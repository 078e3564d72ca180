"""Relational cache holding the active tenant's working set.

The cache is an explicit object handed to whoever needs it; nothing in the
package keeps a module-level store. It owns one ordered list of records per
collection, fills them through :meth:`RelationalCache.refresh_all`, and
accepts confirmed writes through :meth:`~RelationalCache.add`,
:meth:`~RelationalCache.update`, and :meth:`~RelationalCache.remove`.

Mutations run on the event loop thread one at a time, so no locking is
involved. Fetches from ``refresh_all`` can interleave with confirmed writes;
whichever lands last wins.
"""

from __future__ import annotations

import asyncio
import bisect
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from . import log
from .constants import CACHE_ORDER, CACHED_COLLECTIONS, REFRESH_PLAN, Collection, OrderRule
from .data_manager import RemoteStore
from .errors import TenantScopeError
from .models import Client, Invoice, Project, Record, deserialize_record, model_for
from .session import TenantScope

Subscriber = Callable[[Collection], None]


@dataclass
class RefreshReport:
    """Outcome of one :meth:`RelationalCache.refresh_all` run."""

    team_id: str
    refreshed: List[Collection] = field(default_factory=list)
    failed: Dict[Collection, str] = field(default_factory=dict)
    discarded: List[Collection] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.discarded


class RelationalCache:
    """In-memory, per-session mapping from collection to ordered records."""

    def __init__(self, scope: TenantScope, store: RemoteStore) -> None:
        self._scope = scope
        self._store = store
        self._collections: Dict[Collection, List[Record]] = {name: [] for name in CACHED_COLLECTIONS}
        self._subscribers: List[Subscriber] = []
        self.is_loading = False
        scope.add_listener(self._on_scope_change)

    # -- refresh -----------------------------------------------------------

    async def refresh_all(self, team_id: Optional[str] = None) -> RefreshReport:
        """Fetch every collection for the active team.

        Fetch groups from :data:`~studio_erp.constants.REFRESH_PLAN` run
        concurrently; stages inside a group run in order. A failing fetch only
        affects its own collection, which keeps its previous contents. Results
        that arrive after the active team changed are discarded.

        Args:
            team_id: Optional expected team id; must match the active scope.

        Returns:
            RefreshReport: Which collections were refreshed, failed, or
                discarded.

        Raises:
            TenantScopeError: If no team is active or ``team_id`` is not the
                active one.
        """

        active = self._scope.require_team_id()
        if team_id is not None and team_id != active:
            raise TenantScopeError(f"Cannot refresh team '{team_id}' while '{active}' is active")

        report = RefreshReport(team_id=active)
        self.is_loading = True
        try:
            await asyncio.gather(*(self._refresh_group(group, active, report) for group in REFRESH_PLAN))
        finally:
            self.is_loading = False

        if report.failed:
            log.warning(
                "Refresh for team '%s' left %d collection(s) stale: %s",
                active,
                len(report.failed),
                ", ".join(name.value for name in report.failed),
            )
        log.info("Refreshed %d collections for team '%s'", len(report.refreshed), active)
        return report

    async def _refresh_group(self, group: Sequence[Sequence[Collection]], team_id: str, report: RefreshReport) -> None:
        for stage in group:
            await asyncio.gather(*(self._refresh_collection(name, team_id, report) for name in stage))

    async def _refresh_collection(self, collection: Collection, team_id: str, report: RefreshReport) -> None:
        try:
            rows = await self._store.select(collection, team_id=team_id)
            records = [deserialize_record(model_for(collection), row) for row in rows]
        except Exception as exc:  # isolate the failure to this collection
            log.warning("Fetch of '%s' for team '%s' failed: %s", collection.value, team_id, exc, exc_info=True)
            report.failed[collection] = str(exc)
            return

        if self._scope.team_id != team_id:
            log.warning("Discarding '%s' rows fetched for team '%s' after tenant change", collection.value, team_id)
            report.discarded.append(collection)
            return

        foreign = [record.id for record in records if record.team_id != team_id]
        if foreign:
            raise TenantScopeError(
                f"Store returned {len(foreign)} '{collection.value}' row(s) outside team '{team_id}'"
            )

        self._collections[collection] = records
        report.refreshed.append(collection)
        log.debug("Cached %d '%s' records", len(records), collection.value)
        self._notify(collection)

    # -- mutation ----------------------------------------------------------

    def add(self, record: Record) -> None:
        """Insert a confirmed record where its collection's ordering puts it.

        Clients stay alphabetical, dated collections put the new record first,
        and lookup lists keep ``sort_order``. Double inserts are the caller's
        responsibility.
        """

        collection = self._check(record)
        items = self._collections[collection]
        rule = CACHE_ORDER.get(collection, OrderRule.APPEND)
        if rule is OrderRule.NEWEST_FIRST:
            items.insert(0, record)
        elif rule is OrderRule.BY_NAME:
            bisect.insort(items, record, key=lambda item: item.name.casefold())  # type: ignore[attr-defined]
        elif rule is OrderRule.BY_SORT_ORDER:
            bisect.insort(items, record, key=lambda item: item.sort_order)  # type: ignore[attr-defined]
        else:
            items.append(record)
        log.debug("Added '%s' to '%s'", record.id, collection.value)
        self._notify(collection)

    def update(self, record: Record) -> None:
        """Replace the record with the same id in place; no-op when absent."""

        collection = self._check(record)
        items = self._collections[collection]
        for index, existing in enumerate(items):
            if existing.id == record.id:
                items[index] = record
                log.debug("Updated '%s' in '%s'", record.id, collection.value)
                self._notify(collection)
                return
        log.debug("Update of uncached '%s' in '%s' ignored", record.id, collection.value)

    def remove(self, record_id: str, collection: Optional[Collection] = None) -> None:
        """Drop the record with ``record_id``; no-op when absent.

        Without ``collection`` every cached collection is searched.
        """

        self._scope.require_team_id()
        targets = [Collection(collection)] if collection is not None else list(self._collections)
        for name in targets:
            items = self._collections[name]
            kept = [item for item in items if item.id != record_id]
            if len(kept) != len(items):
                self._collections[name] = kept
                log.debug("Removed '%s' from '%s'", record_id, name.value)
                self._notify(name)
                return

    def clear_all(self) -> None:
        """Empty every collection so no tenant data outlives its session."""

        for name in self._collections:
            self._collections[name] = []
        log.info("Cleared relational cache")
        for name in self._collections:
            self._notify(name)

    # -- read --------------------------------------------------------------

    def snapshot(self, collection: Collection) -> tuple[Record, ...]:
        return tuple(self._collections[Collection(collection)])

    def get(self, collection: Collection, record_id: str) -> Optional[Record]:
        for record in self._collections[Collection(collection)]:
            if record.id == record_id:
                return record
        return None

    def projects(self, *, archived: Optional[bool] = False) -> tuple[Project, ...]:
        """Projects filtered on ``is_archived``; ``archived=None`` returns all."""

        projects = self._collections[Collection.PROJECTS]
        if archived is None:
            return tuple(projects)  # type: ignore[arg-type]
        return tuple(p for p in projects if p.is_archived == archived)  # type: ignore[attr-defined]

    @property
    def clients(self) -> tuple[Client, ...]:
        return self.snapshot(Collection.CLIENTS)  # type: ignore[return-value]

    @property
    def invoices(self) -> tuple[Invoice, ...]:
        return self.snapshot(Collection.INVOICES)  # type: ignore[return-value]

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call ``callback(collection)`` after each change; return an unsubscriber."""

        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # -- internals ---------------------------------------------------------

    def _check(self, record: Record) -> Collection:
        collection = record.collection
        if collection not in self._collections:
            raise ValueError(f"Collection '{collection.value}' is not cached")
        if not record.id:
            raise ValueError("Cached records must carry a store-assigned id")
        active = self._scope.require_team_id()
        if record.team_id != active:  # type: ignore[attr-defined]
            raise TenantScopeError(
                f"Record '{record.id}' belongs to team '{record.team_id}', active team is '{active}'"  # type: ignore[attr-defined]
            )
        return collection

    def _notify(self, collection: Collection) -> None:
        for subscriber in list(self._subscribers):
            subscriber(collection)

    def _on_scope_change(self, previous: Optional[str], current: Optional[str]) -> None:
        if previous is not None and previous != current:
            self.clear_all()
