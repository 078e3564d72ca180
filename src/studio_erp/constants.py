"""Enumerations and lookup tables shared across Studio ERP modules.

Collection names, status vocabularies, ordering rules, and join maps live here
so the store adapter, the relational cache, and the business logic agree on a
single source of truth.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Mapping


# Workbook schema version expected by every layer.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_TPS_RATE = Decimal("0.05")
DEFAULT_TVQ_RATE = Decimal("0.09975")
DEFAULT_PAYMENT_TERMS_DAYS = 30
DEFAULT_PROVINCE = "QC"
DEFAULT_PRIMARY_COLOR = "#9B7EBF"

# No 0/O or 1/I so codes can be read aloud or copied by hand.
PORTAL_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PORTAL_CODE_LENGTH = 8
INVOICE_NUMBER_WIDTH = 4


class Collection(str, Enum):
    """Enumerate the entity collections held by the store and the cache."""

    TEAMS = "teams"
    TEAM_MEMBERS = "team_members"
    CLIENTS = "clients"
    PROJECT_STATUSES = "project_statuses"
    PROJECT_TYPES = "project_types"
    PROJECTS = "projects"
    INVOICES = "invoices"
    INVOICE_LINE_ITEMS = "invoice_line_items"
    EXPENSES = "expenses"
    TASK_STATUSES = "task_statuses"
    TASKS = "tasks"
    SERVICE_CATEGORIES = "service_categories"
    SERVICES = "services"
    BOOKINGS = "bookings"
    TEAM_AVAILABILITY = "team_availability"
    BLOCKED_TIMES = "blocked_times"


class InvoiceStatus(str, Enum):
    """Lifecycle states of an invoice."""

    DRAFT = "draft"
    UNPAID = "unpaid"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class TeamRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class ExpenseFrequency(str, Enum):
    ONCE = "once"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class OrderRule(str, Enum):
    """How a cached collection positions a newly added record."""

    BY_NAME = "by_name"
    NEWEST_FIRST = "newest_first"
    BY_SORT_ORDER = "by_sort_order"
    APPEND = "append"


OUTSTANDING_STATUSES = frozenset({InvoiceStatus.UNPAID.value, InvoiceStatus.OVERDUE.value})

EDIT_ROLES = frozenset({TeamRole.OWNER, TeamRole.ADMIN, TeamRole.MEMBER})
DELETE_ROLES = frozenset({TeamRole.OWNER, TeamRole.ADMIN})
INVITE_ROLES = frozenset({TeamRole.OWNER, TeamRole.ADMIN})


# Column each collection is scoped by. Teams are the tenant root.
SCOPE_COLUMN: Mapping[Collection, str] = {Collection.TEAMS: "id"}

# (column, descending) pairs used by the store when answering ``select``.
FETCH_ORDER: Mapping[Collection, tuple[str, bool]] = {
    Collection.CLIENTS: ("name", False),
    Collection.PROJECT_STATUSES: ("sort_order", False),
    Collection.PROJECT_TYPES: ("sort_order", False),
    Collection.PROJECTS: ("created_at", True),
    Collection.INVOICES: ("issue_date", True),
    Collection.INVOICE_LINE_ITEMS: ("sort_order", False),
    Collection.EXPENSES: ("date", True),
    Collection.TASK_STATUSES: ("sort_order", False),
    Collection.TASKS: ("created_at", True),
    Collection.SERVICE_CATEGORIES: ("sort_order", False),
    Collection.SERVICES: ("sort_order", False),
    Collection.BOOKINGS: ("start_time", True),
}

# Ordering applied by the cache when a confirmed record is added.
CACHE_ORDER: Mapping[Collection, OrderRule] = {
    Collection.CLIENTS: OrderRule.BY_NAME,
    Collection.PROJECTS: OrderRule.NEWEST_FIRST,
    Collection.INVOICES: OrderRule.NEWEST_FIRST,
    Collection.EXPENSES: OrderRule.NEWEST_FIRST,
    Collection.TASKS: OrderRule.NEWEST_FIRST,
    Collection.BOOKINGS: OrderRule.NEWEST_FIRST,
    Collection.PROJECT_STATUSES: OrderRule.BY_SORT_ORDER,
    Collection.PROJECT_TYPES: OrderRule.BY_SORT_ORDER,
    Collection.TASK_STATUSES: OrderRule.BY_SORT_ORDER,
    Collection.SERVICE_CATEGORIES: OrderRule.BY_SORT_ORDER,
    Collection.SERVICES: OrderRule.BY_SORT_ORDER,
}


# Join name -> (column, referenced collection, many). For single joins the
# column is the foreign key on the row; for ``many`` joins it is the column on
# the child rows that points back at the parent.
JOINS: Mapping[Collection, Mapping[str, tuple[str, Collection, bool]]] = {
    Collection.TEAM_MEMBERS: {},
    Collection.PROJECTS: {
        "client": ("client_id", Collection.CLIENTS, False),
        "status": ("status_id", Collection.PROJECT_STATUSES, False),
        "project_type": ("project_type_id", Collection.PROJECT_TYPES, False),
    },
    Collection.INVOICES: {
        "client": ("client_id", Collection.CLIENTS, False),
        "line_items": ("invoice_id", Collection.INVOICE_LINE_ITEMS, True),
    },
    Collection.EXPENSES: {"project": ("project_id", Collection.PROJECTS, False)},
    Collection.TASKS: {
        "project": ("project_id", Collection.PROJECTS, False),
        "status": ("status_id", Collection.TASK_STATUSES, False),
    },
    Collection.SERVICES: {"category": ("category_id", Collection.SERVICE_CATEGORIES, False)},
    Collection.BOOKINGS: {
        "service": ("service_id", Collection.SERVICES, False),
        "client": ("client_id", Collection.CLIENTS, False),
        "project": ("project_id", Collection.PROJECTS, False),
    },
}

# Parent collection -> children removed with it (``ON DELETE CASCADE``).
CASCADES: Mapping[Collection, tuple[tuple[Collection, str], ...]] = {
    Collection.INVOICES: ((Collection.INVOICE_LINE_ITEMS, "invoice_id"),),
}

# Referenced collection -> dependents that block its deletion (``RESTRICT``).
RESTRICTS: Mapping[Collection, tuple[tuple[Collection, str], ...]] = {
    Collection.CLIENTS: (
        (Collection.PROJECTS, "client_id"),
        (Collection.INVOICES, "client_id"),
    ),
    Collection.PROJECTS: (
        (Collection.EXPENSES, "project_id"),
        (Collection.TASKS, "project_id"),
        (Collection.BOOKINGS, "project_id"),
    ),
}


# Fetch groups used by ``refresh_all``. Groups run concurrently; the stages
# inside a group run in order so lookups land before the rows that use them.
REFRESH_PLAN: tuple[tuple[tuple[Collection, ...], ...], ...] = (
    ((Collection.CLIENTS,),),
    ((Collection.PROJECT_STATUSES, Collection.PROJECT_TYPES), (Collection.PROJECTS,)),
    ((Collection.INVOICES,),),
    ((Collection.EXPENSES,),),
    ((Collection.TASK_STATUSES,), (Collection.TASKS,)),
    ((Collection.SERVICE_CATEGORIES,), (Collection.SERVICES,)),
    ((Collection.BOOKINGS, Collection.TEAM_AVAILABILITY, Collection.BLOCKED_TIMES),),
    ((Collection.TEAM_MEMBERS,),),
)

CACHED_COLLECTIONS: tuple[Collection, ...] = tuple(
    collection for group in REFRESH_PLAN for stage in group for collection in stage
)


DEFAULT_PROJECT_STATUSES = (
    {"name": "Waiting", "color": "gray", "sort_order": 0, "is_default": True},
    {"name": "Concepting", "color": "purple", "sort_order": 1, "is_default": False},
    {"name": "In-Progress", "color": "blue", "sort_order": 2, "is_default": False},
    {"name": "Review", "color": "yellow", "sort_order": 3, "is_default": False},
    {"name": "Revision", "color": "orange", "sort_order": 4, "is_default": False},
    {"name": "Delivered", "color": "green", "sort_order": 5, "is_default": False},
)

DEFAULT_PROJECT_TYPES = (
    {"name": "Video", "color": "red", "sort_order": 0},
    {"name": "Photo", "color": "blue", "sort_order": 1},
    {"name": "Design", "color": "purple", "sort_order": 2},
    {"name": "Web", "color": "green", "sort_order": 3},
    {"name": "Other", "color": "gray", "sort_order": 4},
)

DEFAULT_TASK_STATUSES = (
    {"name": "To Do", "color": "gray", "sort_order": 0, "is_completed": False, "is_default": True},
    {"name": "In Progress", "color": "blue", "sort_order": 1, "is_completed": False, "is_default": False},
    {"name": "Done", "color": "green", "sort_order": 2, "is_completed": True, "is_default": False},
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_TPS_RATE",
    "DEFAULT_TVQ_RATE",
    "Collection",
    "InvoiceStatus",
    "TeamRole",
    "TaskPriority",
    "BookingStatus",
    "ExpenseFrequency",
    "OrderRule",
    "REFRESH_PLAN",
    "CACHED_COLLECTIONS",
]
