"""Typed records for every tenant entity plus row (de)serialization.

Records are immutable dataclasses. The store adapter hands back plain
mappings (``column -> value``, with joined children nested under their join
name); :func:`deserialize_record` turns such a mapping into the matching
record, normalizing spreadsheet values into predictable Python types the same
way for every entity.
"""

from __future__ import annotations

import dataclasses
import typing
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, ClassVar, Mapping, Optional, Type, TypeVar

from .constants import Collection, DEFAULT_PRIMARY_COLOR, DEFAULT_PROVINCE


def _join(default: Any = None) -> Any:
    """Declare a field populated by the store's join resolution."""

    return field(default=default, compare=False, metadata={"join": True})


@dataclass(frozen=True, kw_only=True)
class Record:
    """Fields shared by every stored entity."""

    collection: ClassVar[Collection]

    id: str
    created_at: str = ""
    updated_at: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class TeamScoped(Record):
    team_id: str


@dataclass(frozen=True, kw_only=True)
class Team(Record):
    """Billing profile, tax configuration, and branding of a tenant."""

    collection: ClassVar[Collection] = Collection.TEAMS

    name: str = ""
    slug: str = ""
    owner_id: Optional[str] = None
    billing_name: str = ""
    billing_address: str = ""
    billing_city: str = ""
    billing_province: str = DEFAULT_PROVINCE
    billing_postal_code: str = ""
    billing_phone: str = ""
    tps_number: str = ""
    tvq_number: str = ""
    tps_rate: Optional[Decimal] = None
    tvq_rate: Optional[Decimal] = None
    logo_url: Optional[str] = None
    primary_color: str = DEFAULT_PRIMARY_COLOR

    @property
    def team_id(self) -> str:
        # A team owns itself.
        return self.id


@dataclass(frozen=True, kw_only=True)
class TeamMember(TeamScoped):
    collection: ClassVar[Collection] = Collection.TEAM_MEMBERS

    user_id: Optional[str] = None
    role: str = "member"
    invite_status: str = "accepted"
    invited_email: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class Client(TeamScoped):
    collection: ClassVar[Collection] = Collection.CLIENTS

    name: str = ""
    email: str = ""
    phone: str = ""
    billing_name: str = ""
    address: str = ""
    city: str = ""
    province: str = DEFAULT_PROVINCE
    postal_code: str = ""
    other_info: str = ""
    notes: str = ""
    charge_taxes_by_default: bool = True
    portal_enabled: bool = False
    portal_code: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class ProjectStatus(TeamScoped):
    collection: ClassVar[Collection] = Collection.PROJECT_STATUSES

    name: str = ""
    color: str = "gray"
    sort_order: int = 0
    is_default: bool = False


@dataclass(frozen=True, kw_only=True)
class ProjectType(TeamScoped):
    collection: ClassVar[Collection] = Collection.PROJECT_TYPES

    name: str = ""
    color: str = "gray"
    sort_order: int = 0


@dataclass(frozen=True, kw_only=True)
class Project(TeamScoped):
    collection: ClassVar[Collection] = Collection.PROJECTS

    client_id: Optional[str] = None
    name: str = ""
    status_id: Optional[str] = None
    project_type_id: Optional[str] = None
    deadline: Optional[str] = None
    notes: str = ""
    client_visible: bool = False
    is_archived: bool = False
    archived_at: Optional[str] = None

    client: Optional[Client] = _join()
    status: Optional[ProjectStatus] = _join()
    project_type: Optional[ProjectType] = _join()


@dataclass(frozen=True, kw_only=True)
class InvoiceLineItem(TeamScoped):
    collection: ClassVar[Collection] = Collection.INVOICE_LINE_ITEMS

    invoice_id: str = ""
    description: str = ""
    quantity: Decimal = Decimal("0")
    rate: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")
    sort_order: int = 0


@dataclass(frozen=True, kw_only=True)
class Invoice(TeamScoped):
    """Invoice header; money fields are a snapshot taken at save time."""

    collection: ClassVar[Collection] = Collection.INVOICES

    client_id: Optional[str] = None
    invoice_number: str = ""
    subtotal: Decimal = Decimal("0")
    tps_amount: Decimal = Decimal("0")
    tvq_amount: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    apply_tps: bool = True
    apply_tvq: bool = True
    status: str = "draft"
    issue_date: str = ""
    due_date: str = ""
    paid_date: Optional[str] = None
    notes: str = ""
    client_visible: bool = True

    client: Optional[Client] = _join()
    line_items: tuple[InvoiceLineItem, ...] = _join(())


@dataclass(frozen=True, kw_only=True)
class Expense(TeamScoped):
    collection: ClassVar[Collection] = Collection.EXPENSES

    project_id: Optional[str] = None
    name: str = ""
    amount: Decimal = Decimal("0")
    category: str = ""
    date: str = ""
    is_recurring: bool = False
    frequency: str = "once"
    notes: str = ""

    project: Optional[Project] = _join()


@dataclass(frozen=True, kw_only=True)
class TaskStatus(TeamScoped):
    collection: ClassVar[Collection] = Collection.TASK_STATUSES

    name: str = ""
    color: str = "gray"
    sort_order: int = 0
    is_completed: bool = False
    is_default: bool = False


@dataclass(frozen=True, kw_only=True)
class Task(TeamScoped):
    collection: ClassVar[Collection] = Collection.TASKS

    project_id: Optional[str] = None
    status_id: Optional[str] = None
    assigned_to: Optional[str] = None
    title: str = ""
    description: str = ""
    priority: str = "medium"
    due_date: Optional[str] = None
    completed_at: Optional[str] = None
    is_client_visible: bool = False
    created_by: Optional[str] = None

    project: Optional[Project] = _join()
    status: Optional[TaskStatus] = _join()


@dataclass(frozen=True, kw_only=True)
class ServiceCategory(TeamScoped):
    collection: ClassVar[Collection] = Collection.SERVICE_CATEGORIES

    name: str = ""
    description: str = ""
    color: str = "gray"
    sort_order: int = 0
    is_active: bool = True


@dataclass(frozen=True, kw_only=True)
class Service(TeamScoped):
    collection: ClassVar[Collection] = Collection.SERVICES

    category_id: Optional[str] = None
    name: str = ""
    description: str = ""
    duration_minutes: int = 60
    price: Decimal = Decimal("0")
    lead_time_hours: int = 0
    buffer_minutes: int = 0
    max_advance_days: int = 0
    is_active: bool = True
    sort_order: int = 0

    category: Optional[ServiceCategory] = _join()


@dataclass(frozen=True, kw_only=True)
class Booking(TeamScoped):
    collection: ClassVar[Collection] = Collection.BOOKINGS

    service_id: Optional[str] = None
    client_id: Optional[str] = None
    project_id: Optional[str] = None
    assigned_to: Optional[str] = None
    title: str = ""
    start_time: str = ""
    end_time: str = ""
    status: str = "pending"
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    notes: str = ""
    internal_notes: str = ""
    cancelled_at: Optional[str] = None
    cancellation_reason: Optional[str] = None

    service: Optional[Service] = _join()
    client: Optional[Client] = _join()
    project: Optional[Project] = _join()


@dataclass(frozen=True, kw_only=True)
class TeamAvailability(TeamScoped):
    collection: ClassVar[Collection] = Collection.TEAM_AVAILABILITY

    team_member_id: Optional[str] = None
    day_of_week: int = 0  # 0 = Sunday
    start_time: str = ""
    end_time: str = ""
    is_available: bool = True


@dataclass(frozen=True, kw_only=True)
class BlockedTime(TeamScoped):
    collection: ClassVar[Collection] = Collection.BLOCKED_TIMES

    team_member_id: Optional[str] = None
    title: str = ""
    start_time: str = ""
    end_time: str = ""
    is_all_day: bool = False
    source: str = "manual"
    notes: str = ""
    is_recurring: bool = False


MODEL_BY_COLLECTION: Mapping[Collection, Type[Record]] = {
    model.collection: model
    for model in (
        Team,
        TeamMember,
        Client,
        ProjectStatus,
        ProjectType,
        Project,
        InvoiceLineItem,
        Invoice,
        Expense,
        TaskStatus,
        Task,
        ServiceCategory,
        Service,
        Booking,
        TeamAvailability,
        BlockedTime,
    )
}

R = TypeVar("R", bound=Record)


def model_for(collection: Collection | str) -> Type[Record]:
    """Return the record class stored in ``collection``."""

    return MODEL_BY_COLLECTION[Collection(collection)]


def is_join_field(model_field: dataclasses.Field) -> bool:
    return bool(model_field.metadata.get("join"))


def column_names(model: Type[Record]) -> list[str]:
    """Return the persisted (non-join) column names of ``model`` in declaration order."""

    return [f.name for f in dataclasses.fields(model) if not is_join_field(f)]


def deserialize_record(model: Type[R], raw: Mapping[str, Any]) -> R:
    """Convert a raw store row into a strongly typed record.

    Unknown keys are ignored, missing keys fall back to the field default, and
    joined children (nested mappings or sequences of mappings) are converted
    recursively.

    Args:
        model: Record class to build.
        raw: Column mapping as returned by the store.

    Returns:
        A populated instance of ``model``.
    """

    hints = typing.get_type_hints(model)
    values: dict[str, Any] = {}
    for model_field in dataclasses.fields(model):
        if model_field.name not in raw:
            continue
        values[model_field.name] = _coerce(hints[model_field.name], raw[model_field.name])
    return model(**values)


def serialize_record(record: Record) -> dict[str, Any]:
    """Flatten a record into a column mapping, dropping joined children."""

    return {
        f.name: getattr(record, f.name)
        for f in dataclasses.fields(record)
        if not is_join_field(f)
    }


def _coerce(hint: Any, value: Any) -> Any:
    origin = typing.get_origin(hint)
    args = typing.get_args(hint)

    if origin is typing.Union and type(None) in args:
        if value is None or value == "":
            return None
        inner = next(arg for arg in args if arg is not type(None))
        return _coerce(inner, value)

    if origin is tuple:
        item_model = args[0]
        return tuple(_coerce(item_model, item) for item in (value or ()))

    if isinstance(hint, type) and issubclass(hint, Record):
        if isinstance(value, hint):
            return value
        return deserialize_record(hint, value)

    if hint is Decimal:
        return Decimal(str(value)) if value not in (None, "") else Decimal("0")
    if hint is bool:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes"}
        return bool(value)
    if hint is int:
        return int(value) if value not in (None, "") else 0
    if hint is str:
        return "" if value is None else str(value)
    return value
