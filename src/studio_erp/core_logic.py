"""Business logic layer for Studio ERP.

Every user-facing write follows the same sequence: check the tenant scope and
the role, validate against cached data, write through the
:class:`~studio_erp.data_manager.RemoteStore`, and only after the store
confirms, merge the confirmed row into the
:class:`~studio_erp.cache.RelationalCache`. A failed write therefore leaves
the cache untouched.
"""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from . import data_manager, log
from .cache import RefreshReport, RelationalCache
from .constants import (
    DEFAULT_PRIMARY_COLOR,
    DEFAULT_PROJECT_STATUSES,
    DEFAULT_PROJECT_TYPES,
    DEFAULT_PROVINCE,
    DEFAULT_TASK_STATUSES,
    DEFAULT_TPS_RATE,
    DEFAULT_TVQ_RATE,
    EXPECTED_SCHEMA_VERSION,
    OUTSTANDING_STATUSES,
    PORTAL_CODE_ALPHABET,
    PORTAL_CODE_LENGTH,
    BookingStatus,
    Collection,
    InvoiceStatus,
    TeamRole,
)
from .errors import (
    BusinessRuleViolation,
    MissingReferenceError,
    PartialWriteError,
    PermissionDeniedError,
    TenantScopeError,
)
from .guards import DeleteCheck, can_delete_client
from .invoicing import (
    LineItemDraft,
    coerce_status,
    compute_totals,
    default_due_date,
    is_overdue,
    line_items_subtotal,
    next_invoice_number,
    persistable_line_items,
    team_tax_rates,
    year_of,
)
from .models import (
    Client,
    Invoice,
    InvoiceLineItem,
    Project,
    ProjectStatus,
    Record,
    Team,
    TeamMember,
    deserialize_record,
    model_for,
)
from .session import TenantScope
from .setup_excel import slugify


# Collections written through the generic save/delete helpers.
GENERIC_COLLECTIONS = frozenset(
    {
        Collection.EXPENSES,
        Collection.TASKS,
        Collection.TASK_STATUSES,
        Collection.BOOKINGS,
        Collection.PROJECT_STATUSES,
        Collection.PROJECT_TYPES,
        Collection.SERVICES,
        Collection.SERVICE_CATEGORIES,
        Collection.TEAM_AVAILABILITY,
        Collection.BLOCKED_TIMES,
    }
)

PAYABLE_STATUSES = frozenset({InvoiceStatus.UNPAID, InvoiceStatus.OVERDUE})


@dataclass(frozen=True)
class RuntimeContext:
    """Settings, store, tenant scope, and cache used by the BLL."""

    settings: data_manager.ConfigSettings
    store: data_manager.RemoteStore
    scope: TenantScope
    cache: RelationalCache


@dataclass(frozen=True)
class ClientCommand:
    """User intent for creating or editing a client."""

    name: str
    email: str = ""
    phone: str = ""
    billing_name: str = ""
    address: str = ""
    city: str = ""
    province: str = DEFAULT_PROVINCE
    postal_code: str = ""
    notes: str = ""
    charge_taxes_by_default: bool = True
    portal_enabled: bool = False
    portal_code: Optional[str] = None


@dataclass(frozen=True)
class ProjectCommand:
    """User intent for creating or editing a project."""

    name: str
    client_id: Optional[str] = None
    status_id: Optional[str] = None
    project_type_id: Optional[str] = None
    deadline: Optional[str] = None
    notes: str = ""
    client_visible: bool = False


@dataclass(frozen=True)
class InvoiceCommand:
    """User intent for creating or editing an invoice.

    ``apply_tps``/``apply_tvq`` left as ``None`` keep the flags stored on an
    edited invoice; on a new one they follow the client's
    ``charge_taxes_by_default`` flag (taxes on when there is no client).
    """

    line_items: Sequence[LineItemDraft]
    client_id: Optional[str] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    apply_tps: Optional[bool] = None
    apply_tvq: Optional[bool] = None
    status: str = InvoiceStatus.UNPAID.value
    notes: str = ""
    client_visible: bool = True


@dataclass(frozen=True)
class DashboardSummary:
    """Yearly figures shown on the dashboard."""

    year: int
    total_income: Decimal
    total_outstanding: Decimal
    total_expenses: Decimal
    overdue_invoices: int
    active_projects: int
    pending_tasks: int
    upcoming_bookings: int

    @property
    def net_income(self) -> Decimal:
        return self.total_income - self.total_expenses


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def build_runtime_context(settings: data_manager.ConfigSettings, store: data_manager.RemoteStore) -> RuntimeContext:
    """Wire a fresh scope and an empty cache around ``store``."""

    scope = TenantScope()
    cache = RelationalCache(scope, store)
    return RuntimeContext(settings=settings, store=store, scope=scope, cache=cache)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the workbook store.

    The returned context is signed out; call :func:`open_session` to activate
    the configured team.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.WorkbookStore(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return build_runtime_context(settings, store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the configured schema version does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )


async def open_session(context: RuntimeContext, team_id: Optional[str] = None) -> Team:
    """Sign in to ``team_id`` (default: the configured team) and load its data.

    The membership used is the first accepted one whose role matches the
    configured role.

    Raises:
        TenantScopeError: If no team id is configured, the team does not
            exist, or no matching membership is found.
    """

    team_id = team_id or context.settings.team_id
    if not team_id:
        raise TenantScopeError("No team configured for this session")

    teams = await context.store.select(Collection.TEAMS, team_id=team_id)
    if not teams:
        raise TenantScopeError(f"Team '{team_id}' not found")
    team = deserialize_record(Team, teams[0])

    members = await context.store.select(Collection.TEAM_MEMBERS, team_id=team_id)
    membership = next(
        (
            deserialize_record(TeamMember, row)
            for row in members
            if row.get("role") == context.settings.role.value and row.get("invite_status") == "accepted"
        ),
        None,
    )
    if membership is None:
        raise TenantScopeError(f"No accepted '{context.settings.role.value}' membership in team '{team_id}'")

    context.scope.sign_in(team, membership)
    await refresh(context)
    return team


def close_session(context: RuntimeContext) -> None:
    """Sign out; the cache empties itself through its scope listener."""

    context.scope.sign_out()


async def refresh(context: RuntimeContext) -> RefreshReport:
    return await context.cache.refresh_all(context.scope.require_team_id())


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------


async def create_team(
    context: RuntimeContext,
    name: str,
    *,
    owner_id: Optional[str] = None,
    billing: Optional[Mapping[str, Any]] = None,
) -> Team:
    """Create a team, its owner membership, and the default lookup lists.

    The new team becomes the active tenant. Default project statuses, project
    types, and task statuses are inserted one by one and cached as each is
    confirmed.
    """

    if not name.strip():
        raise BusinessRuleViolation("Team name is required")
    billing = dict(billing or {})
    team_row = await context.store.insert(
        Collection.TEAMS,
        {
            "id": str(uuid.uuid4()),
            "name": name.strip(),
            "slug": slugify(name),
            "owner_id": owner_id,
            "billing_name": billing.get("billing_name", ""),
            "billing_address": billing.get("billing_address", ""),
            "billing_city": billing.get("billing_city", ""),
            "billing_province": billing.get("billing_province") or DEFAULT_PROVINCE,
            "billing_postal_code": billing.get("billing_postal_code", ""),
            "billing_phone": billing.get("billing_phone", ""),
            "tps_number": billing.get("tps_number", ""),
            "tvq_number": billing.get("tvq_number", ""),
            "tps_rate": billing.get("tps_rate") or DEFAULT_TPS_RATE,
            "tvq_rate": billing.get("tvq_rate") or DEFAULT_TVQ_RATE,
            "primary_color": DEFAULT_PRIMARY_COLOR,
        },
    )
    team = deserialize_record(Team, team_row)
    member_row = await context.store.insert(
        Collection.TEAM_MEMBERS,
        {"team_id": team.id, "user_id": owner_id, "role": TeamRole.OWNER.value, "invite_status": "accepted"},
    )
    membership = deserialize_record(TeamMember, member_row)
    context.scope.sign_in(team, membership)
    _merge(context, team.id, membership, context.cache.add)

    defaults = (
        (Collection.PROJECT_STATUSES, DEFAULT_PROJECT_STATUSES),
        (Collection.PROJECT_TYPES, DEFAULT_PROJECT_TYPES),
        (Collection.TASK_STATUSES, DEFAULT_TASK_STATUSES),
    )
    for collection, rows in defaults:
        for values in rows:
            row = await context.store.insert(collection, {**values, "team_id": team.id})
            _merge(context, team.id, deserialize_record(model_for(collection), row), context.cache.add)

    log.info("Created team '%s' (%s)", team.name, team.id)
    return team


async def update_team_settings(context: RuntimeContext, **changes: Any) -> Team:
    """Patch billing, tax, or branding fields of the active team."""

    team_id = context.scope.require_team_id()
    if not context.scope.can_delete:
        raise PermissionDeniedError("Only owners and admins can change team settings")
    row = await context.store.update(Collection.TEAMS, team_id, changes)
    team = deserialize_record(Team, row)
    if context.scope.team_id == team_id:
        context.scope.replace_team(team)
    log.info("Updated settings of team '%s': %s", team_id, ", ".join(sorted(changes)))
    return team


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


def generate_portal_code() -> str:
    """Return a random 8-character client portal code."""

    return "".join(secrets.choice(PORTAL_CODE_ALPHABET) for _ in range(PORTAL_CODE_LENGTH))


async def save_client(context: RuntimeContext, command: ClientCommand, *, client_id: Optional[str] = None) -> Client:
    """Create a client, or update ``client_id`` when given.

    With the portal enabled, an edit keeps the client's stored portal code
    unless a new one is given; a code is generated only when there is none.
    Disabling the portal clears the code.

    Raises:
        BusinessRuleViolation: If the name is blank.
        MissingReferenceError: If ``client_id`` is not cached.
        RemoteStoreError: If the store rejects the write.
    """

    team_id = _require_edit(context)
    if not command.name.strip():
        raise BusinessRuleViolation("Client name is required")

    payload = {
        "name": command.name.strip(),
        "email": command.email.strip(),
        "phone": command.phone.strip(),
        "billing_name": command.billing_name.strip(),
        "address": command.address.strip(),
        "city": command.city.strip(),
        "province": command.province.strip(),
        "postal_code": command.postal_code.strip(),
        "other_info": "",
        "notes": command.notes,
        "charge_taxes_by_default": command.charge_taxes_by_default,
        "portal_enabled": command.portal_enabled,
        "portal_code": None,
    }
    existing = get_record(context, Collection.CLIENTS, client_id) if client_id is not None else None
    if command.portal_enabled:
        stored_code = existing.portal_code if existing is not None else None  # type: ignore[attr-defined]
        payload["portal_code"] = command.portal_code or stored_code or generate_portal_code()

    if client_id is not None:
        row = await context.store.update(Collection.CLIENTS, client_id, payload)
        client = deserialize_record(Client, row)
        _merge(context, team_id, client, context.cache.update)
        log.info("Updated client '%s' (%s)", client.name, client.id)
    else:
        row = await context.store.insert(Collection.CLIENTS, {**payload, "id": str(uuid.uuid4()), "team_id": team_id})
        client = deserialize_record(Client, row)
        _merge(context, team_id, client, context.cache.add)
        log.info("Created client '%s' (%s)", client.name, client.id)
    return client


def check_client_deletion(context: RuntimeContext, client_id: str) -> DeleteCheck:
    """First step of the delete flow: ask the guard, before asking the user."""

    context.scope.require_team_id()
    return can_delete_client(context.cache, client_id)


async def delete_client(context: RuntimeContext, client_id: str) -> DeleteCheck:
    """Delete a client the user has confirmed, unless cached records use it.

    A blocked delete is returned as a refused :class:`DeleteCheck`. A delete
    the store rejects (a dependent the cache has not seen yet) raises
    :class:`~studio_erp.errors.RemoteStoreError` and leaves the cache as is.
    """

    team_id = _require_delete(context)
    check = can_delete_client(context.cache, client_id)
    if not check.allowed:
        return check
    await context.store.delete(Collection.CLIENTS, client_id)
    _merge_removal(context, team_id, Collection.CLIENTS, client_id)
    log.info("Deleted client '%s'", client_id)
    return check


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def default_project_status(context: RuntimeContext) -> Optional[ProjectStatus]:
    """The team's default project status, or ``None`` when none is flagged.

    More than one flagged status breaks a team invariant the store does not
    enforce; the first one in ``sort_order`` wins and a warning is logged.
    """

    defaults = [status for status in context.cache.snapshot(Collection.PROJECT_STATUSES) if status.is_default]  # type: ignore[attr-defined]
    if len(defaults) > 1:
        log.warning("Team '%s' has %d default project statuses", context.scope.team_id, len(defaults))
    return defaults[0] if defaults else None  # type: ignore[return-value]


async def save_project(context: RuntimeContext, command: ProjectCommand, *, project_id: Optional[str] = None) -> Project:
    """Create a project, or update ``project_id`` when given.

    New projects without a status get the team's default status and start
    unarchived.
    """

    team_id = _require_edit(context)
    if not command.name.strip():
        raise BusinessRuleViolation("Project name is required")
    _require_optional_reference(context, Collection.CLIENTS, command.client_id)
    _require_optional_reference(context, Collection.PROJECT_STATUSES, command.status_id)
    _require_optional_reference(context, Collection.PROJECT_TYPES, command.project_type_id)

    payload = {
        "name": command.name.strip(),
        "client_id": command.client_id,
        "status_id": command.status_id,
        "project_type_id": command.project_type_id,
        "deadline": command.deadline,
        "notes": command.notes,
        "client_visible": command.client_visible,
    }

    if project_id is not None:
        get_record(context, Collection.PROJECTS, project_id)
        row = await context.store.update(Collection.PROJECTS, project_id, payload)
        project = deserialize_record(Project, row)
        _merge(context, team_id, project, context.cache.update)
        return project

    if payload["status_id"] is None:
        default = default_project_status(context)
        payload["status_id"] = default.id if default else None
    row = await context.store.insert(
        Collection.PROJECTS,
        {**payload, "id": str(uuid.uuid4()), "team_id": team_id, "is_archived": False, "archived_at": None},
    )
    project = deserialize_record(Project, row)
    _merge(context, team_id, project, context.cache.add)
    log.info("Created project '%s' (%s)", project.name, project.id)
    return project


async def set_project_archived(context: RuntimeContext, project_id: str, archived: bool) -> Project:
    """Archive or unarchive a project; it stays in the cache either way.

    Archiving stamps ``archived_at``; unarchiving clears it.
    """

    team_id = _require_edit(context)
    get_record(context, Collection.PROJECTS, project_id)
    patch = {"is_archived": archived, "archived_at": _utc_now_iso() if archived else None}
    row = await context.store.update(Collection.PROJECTS, project_id, patch)
    project = deserialize_record(Project, row)
    _merge(context, team_id, project, context.cache.update)
    log.info("%s project '%s'", "Archived" if archived else "Unarchived", project_id)
    return project


async def delete_project(context: RuntimeContext, project_id: str) -> None:
    """Delete a project once the store confirms it.

    Raises:
        RemoteStoreError: If expenses, tasks, or bookings still reference
            the project; the cache keeps it.
    """

    team_id = _require_delete(context)
    await context.store.delete(Collection.PROJECTS, project_id)
    _merge_removal(context, team_id, Collection.PROJECTS, project_id)
    log.info("Deleted project '%s'", project_id)


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


async def save_invoice(context: RuntimeContext, command: InvoiceCommand, *, invoice_id: Optional[str] = None) -> Invoice:
    """Create an invoice, or update ``invoice_id`` when given.

    Totals are computed here from the drafts and the team's tax rates and
    stored as a snapshot. New invoices get the next number of the current
    year; edited invoices keep theirs. Drafts with a blank description are
    not stored.

    Creating an invoice takes two writes (header, then line items). If the
    line items fail, the header is deleted again and
    :class:`~studio_erp.errors.PartialWriteError` reports whether that
    compensation succeeded. The cache only sees the invoice once both writes
    are confirmed.

    Raises:
        BusinessRuleViolation: On an unknown status.
        MissingReferenceError: If ``invoice_id`` or ``client_id`` is not cached.
        PartialWriteError: If line items could not be stored.
        RemoteStoreError: If the store rejects the header write.
    """

    team_id = _require_edit(context)
    team = context.scope.require_team()
    existing = get_record(context, Collection.INVOICES, invoice_id) if invoice_id is not None else None
    client = _require_optional_reference(context, Collection.CLIENTS, command.client_id)

    if existing is not None:
        tps_default, tvq_default = existing.apply_tps, existing.apply_tvq  # type: ignore[attr-defined]
    else:
        charge_default = client.charge_taxes_by_default if client is not None else True  # type: ignore[attr-defined]
        tps_default = tvq_default = charge_default
    apply_tps = tps_default if command.apply_tps is None else command.apply_tps
    apply_tvq = tvq_default if command.apply_tvq is None else command.apply_tvq
    totals = compute_totals(line_items_subtotal(command.line_items), apply_tps, apply_tvq, *team_tax_rates(team))

    issue_date = command.issue_date or date.today()
    due_date = command.due_date or default_due_date(issue_date, context.settings.payment_terms_days)
    header = {
        "client_id": command.client_id,
        "invoice_number": existing.invoice_number if existing else next_invoice_number(context.cache.invoices),  # type: ignore[attr-defined]
        "subtotal": totals.subtotal,
        "tps_amount": totals.tps_amount,
        "tvq_amount": totals.tvq_amount,
        "total_amount": totals.total_amount,
        "apply_tps": apply_tps,
        "apply_tvq": apply_tvq,
        "status": coerce_status(command.status).value,
        "issue_date": issue_date.isoformat(),
        "due_date": due_date.isoformat(),
        "notes": command.notes,
        "client_visible": command.client_visible,
    }
    lines = persistable_line_items(command.line_items)

    if existing is not None:
        return await _update_invoice(context, team_id, existing, header, lines)  # type: ignore[arg-type]

    new_id = str(uuid.uuid4())
    row = await context.store.insert(Collection.INVOICES, {**header, "id": new_id, "team_id": team_id})
    try:
        items = await _insert_line_items(context, team_id, new_id, lines)
    except Exception as exc:
        rolled_back = await _rollback_invoice(context, new_id)
        raise PartialWriteError(
            f"Invoice {header['invoice_number']} was created but its line items failed: {exc}",
            collection=Collection.INVOICE_LINE_ITEMS.value,
            rolled_back=rolled_back,
        ) from exc

    invoice = replace(deserialize_record(Invoice, row), line_items=items)
    _merge(context, team_id, invoice, context.cache.add)
    log.info(
        "Created invoice %s (%s) total=%s",
        invoice.invoice_number,
        invoice.id,
        invoice.total_amount,
    )
    return invoice


async def _update_invoice(
    context: RuntimeContext,
    team_id: str,
    existing: Invoice,
    header: Mapping[str, Any],
    lines: Sequence[Mapping[str, Any]],
) -> Invoice:
    row = await context.store.update(Collection.INVOICES, existing.id, header)
    try:
        for item in existing.line_items:
            await context.store.delete(Collection.INVOICE_LINE_ITEMS, item.id)
        items = await _insert_line_items(context, team_id, existing.id, lines)
    except Exception as exc:
        raise PartialWriteError(
            f"Invoice {existing.invoice_number} was updated but its line items could not be replaced: {exc}",
            collection=Collection.INVOICE_LINE_ITEMS.value,
            rolled_back=False,
        ) from exc

    invoice = replace(deserialize_record(Invoice, row), line_items=items)
    _merge(context, team_id, invoice, context.cache.update)
    log.info("Updated invoice %s (%s) total=%s", invoice.invoice_number, invoice.id, invoice.total_amount)
    return invoice


async def _insert_line_items(
    context: RuntimeContext,
    team_id: str,
    invoice_id: str,
    lines: Iterable[Mapping[str, Any]],
) -> tuple[InvoiceLineItem, ...]:
    confirmed = []
    for line in lines:
        row = await context.store.insert(
            Collection.INVOICE_LINE_ITEMS,
            {**line, "id": str(uuid.uuid4()), "team_id": team_id, "invoice_id": invoice_id},
        )
        confirmed.append(deserialize_record(InvoiceLineItem, row))
    return tuple(confirmed)


async def _rollback_invoice(context: RuntimeContext, invoice_id: str) -> bool:
    try:
        await context.store.delete(Collection.INVOICES, invoice_id)
    except Exception as exc:
        log.error("Rollback of invoice '%s' failed; it remains without line items: %s", invoice_id, exc)
        return False
    log.warning("Rolled back invoice '%s' after its line items failed", invoice_id)
    return True


async def mark_invoice_paid(context: RuntimeContext, invoice_id: str, *, paid_at: Optional[datetime] = None) -> Invoice:
    """Move an unpaid or overdue invoice to ``paid`` and stamp ``paid_date``.

    Raises:
        BusinessRuleViolation: If the invoice is a draft, cancelled, or
            already paid.
    """

    team_id = _require_edit(context)
    invoice = get_record(context, Collection.INVOICES, invoice_id)
    if coerce_status(invoice.status) not in PAYABLE_STATUSES:  # type: ignore[attr-defined]
        log.error("Cannot mark invoice '%s' paid from status '%s'", invoice_id, invoice.status)  # type: ignore[attr-defined]
        raise BusinessRuleViolation(f"Invoice in status '{invoice.status}' cannot be marked paid")  # type: ignore[attr-defined]

    moment = paid_at or datetime.now(UTC)
    row = await context.store.update(
        Collection.INVOICES,
        invoice_id,
        {"status": InvoiceStatus.PAID.value, "paid_date": moment.isoformat()},
    )
    paid = replace(deserialize_record(Invoice, row), line_items=invoice.line_items)  # type: ignore[attr-defined]
    _merge(context, team_id, paid, context.cache.update)
    log.info("Marked invoice %s (%s) paid", paid.invoice_number, invoice_id)
    return paid


async def set_invoice_status(context: RuntimeContext, invoice_id: str, status: str) -> Invoice:
    """Write a new status as a plain field update.

    ``paid`` goes through :func:`mark_invoice_paid` so the paid date is set.
    """

    target = coerce_status(status)
    if target is InvoiceStatus.PAID:
        return await mark_invoice_paid(context, invoice_id)

    team_id = _require_edit(context)
    invoice = get_record(context, Collection.INVOICES, invoice_id)
    row = await context.store.update(Collection.INVOICES, invoice_id, {"status": target.value})
    updated = replace(deserialize_record(Invoice, row), line_items=invoice.line_items)  # type: ignore[attr-defined]
    _merge(context, team_id, updated, context.cache.update)
    return updated


async def delete_invoice(context: RuntimeContext, invoice_id: str) -> None:
    """Delete an invoice; the store removes its line items with it."""

    team_id = _require_delete(context)
    await context.store.delete(Collection.INVOICES, invoice_id)
    _merge_removal(context, team_id, Collection.INVOICES, invoice_id)
    log.info("Deleted invoice '%s'", invoice_id)


# ---------------------------------------------------------------------------
# Expenses, tasks, bookings, and lookup lists
# ---------------------------------------------------------------------------


async def save_record(
    context: RuntimeContext,
    collection: Collection,
    values: Mapping[str, Any],
    *,
    record_id: Optional[str] = None,
) -> Record:
    """Create or update a record in one of :data:`GENERIC_COLLECTIONS`."""

    collection = Collection(collection)
    if collection not in GENERIC_COLLECTIONS:
        raise ValueError(f"Use the dedicated operation for '{collection.value}'")
    team_id = _require_edit(context)
    model = model_for(collection)

    if record_id is not None:
        get_record(context, collection, record_id)
        row = await context.store.update(collection, record_id, values)
        record = deserialize_record(model, row)
        _merge(context, team_id, record, context.cache.update)
    else:
        row = await context.store.insert(collection, {**values, "id": str(uuid.uuid4()), "team_id": team_id})
        record = deserialize_record(model, row)
        _merge(context, team_id, record, context.cache.add)
    log.info("Saved %s '%s'", collection.value, record.id)
    return record


async def delete_record(context: RuntimeContext, collection: Collection, record_id: str) -> None:
    collection = Collection(collection)
    if collection not in GENERIC_COLLECTIONS:
        raise ValueError(f"Use the dedicated operation for '{collection.value}'")
    team_id = _require_delete(context)
    await context.store.delete(collection, record_id)
    _merge_removal(context, team_id, collection, record_id)
    log.info("Deleted %s '%s'", collection.value, record_id)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def calculate_dashboard_summary(
    context: RuntimeContext,
    *,
    year: Optional[int] = None,
    now: Optional[datetime] = None,
) -> DashboardSummary:
    """Aggregate the cached invoices, expenses, projects, tasks, and bookings.

    Income counts paid invoices issued in ``year``; outstanding counts unpaid
    and overdue ones. Expenses are filtered on their date. Upcoming bookings
    start after ``now`` and are not cancelled.
    """

    now = now or datetime.now(UTC)
    year = year or now.year
    cache = context.cache

    year_invoices = [invoice for invoice in cache.invoices if year_of(invoice.issue_date) == year]
    income = sum(
        (invoice.total_amount for invoice in year_invoices if invoice.status == InvoiceStatus.PAID.value),
        Decimal("0"),
    )
    outstanding = sum(
        (invoice.total_amount for invoice in year_invoices if invoice.status in OUTSTANDING_STATUSES),
        Decimal("0"),
    )
    expenses = sum(
        (expense.amount for expense in cache.snapshot(Collection.EXPENSES) if year_of(expense.date) == year),  # type: ignore[attr-defined]
        Decimal("0"),
    )
    overdue = sum(1 for invoice in cache.invoices if is_overdue(invoice, now.date()))
    pending_tasks = sum(1 for task in cache.snapshot(Collection.TASKS) if not task.completed_at)  # type: ignore[attr-defined]
    upcoming = sum(
        1
        for booking in cache.snapshot(Collection.BOOKINGS)
        if booking.status != BookingStatus.CANCELLED.value and _after(booking.start_time, now)  # type: ignore[attr-defined]
    )

    summary = DashboardSummary(
        year=year,
        total_income=income,
        total_outstanding=outstanding,
        total_expenses=expenses,
        overdue_invoices=overdue,
        active_projects=len(cache.projects(archived=False)),
        pending_tasks=pending_tasks,
        upcoming_bookings=upcoming,
    )
    log.debug("Calculated dashboard summary: %s", summary)
    return summary


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def get_record(context: RuntimeContext, collection: Collection, record_id: str) -> Record:
    """Resolve a cached record by id.

    Raises:
        MissingReferenceError: If the cache holds no such record.
    """

    record = context.cache.get(collection, record_id)
    if record is None:
        log.warning("Lookup failed for %s id '%s'", Collection(collection).value, record_id)
        raise MissingReferenceError(f"Unknown {Collection(collection).value} id: {record_id}")
    return record


def _require_optional_reference(context: RuntimeContext, collection: Collection, record_id: Optional[str]) -> Optional[Record]:
    if not record_id:
        return None
    return get_record(context, collection, record_id)


def _require_edit(context: RuntimeContext) -> str:
    team_id = context.scope.require_team_id()
    if not context.scope.can_edit:
        raise PermissionDeniedError(f"Role '{context.scope.role}' cannot edit team data")
    return team_id


def _require_delete(context: RuntimeContext) -> str:
    team_id = context.scope.require_team_id()
    if not context.scope.can_delete:
        raise PermissionDeniedError(f"Role '{context.scope.role}' cannot delete team data")
    return team_id


def _merge(context: RuntimeContext, team_id: str, record: Record, apply: Callable[[Record], None]) -> None:
    """Apply a confirmed write to the cache unless the tenant changed meanwhile."""

    if context.scope.team_id != team_id:
        log.warning("Dropping confirmed %s '%s' for inactive team '%s'", record.collection.value, record.id, team_id)
        return
    apply(record)


def _merge_removal(context: RuntimeContext, team_id: str, collection: Collection, record_id: str) -> None:
    if context.scope.team_id != team_id:
        log.warning("Dropping confirmed delete of %s '%s' for inactive team '%s'", collection.value, record_id, team_id)
        return
    context.cache.remove(record_id, collection)


def _after(timestamp: str, moment: datetime) -> bool:
    if not timestamp:
        return False
    try:
        parsed = datetime.fromisoformat(timestamp)
    except ValueError:
        return False
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed > moment


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()
