"""Invoice computation engine.

Pure functions only: totals, line-item subtotals, the yearly sequential
numbering rule, and invoice status helpers. Nothing here touches the store or
the cache; the business logic layer feeds cached records in and persists what
comes out.

Money is handled as :class:`~decimal.Decimal` without rounding. Amounts are
stored exactly as computed, and rounding to cents is a display concern.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Union

from . import log
from .constants import (
    DEFAULT_PAYMENT_TERMS_DAYS,
    DEFAULT_TPS_RATE,
    DEFAULT_TVQ_RATE,
    INVOICE_NUMBER_WIDTH,
    InvoiceStatus,
)
from .errors import BusinessRuleViolation
from .models import Invoice, Team

_NON_DIGITS = re.compile(r"\D")

Number = Union[Decimal, int, str]


@dataclass(frozen=True)
class InvoiceTotals:
    """Money snapshot persisted on an invoice."""

    subtotal: Decimal
    tps_amount: Decimal
    tvq_amount: Decimal
    total_amount: Decimal


@dataclass(frozen=True)
class LineItemDraft:
    """A line item as typed into the invoice form, before persistence."""

    description: str
    quantity: Decimal
    rate: Decimal

    @property
    def amount(self) -> Decimal:
        return self.quantity * self.rate

    @classmethod
    def of(cls, description: str, quantity: Number, rate: Number) -> "LineItemDraft":
        return cls(description=description, quantity=Decimal(str(quantity)), rate=Decimal(str(rate)))


def compute_totals(
    subtotal: Decimal,
    apply_tps: bool,
    apply_tvq: bool,
    tps_rate: Optional[Decimal] = None,
    tvq_rate: Optional[Decimal] = None,
) -> InvoiceTotals:
    """Derive both tax amounts and the grand total from a subtotal.

    Each tax applies independently: ``amount = subtotal * rate`` when its flag
    is set, zero otherwise, and ``total = subtotal + both amounts``. Unset
    rates fall back to 0.05 and 0.09975.

    Args:
        subtotal: Pre-tax amount.
        apply_tps: Whether the first tax is charged.
        apply_tvq: Whether the second tax is charged.
        tps_rate: Fractional first tax rate, ``None`` for the default.
        tvq_rate: Fractional second tax rate, ``None`` for the default.

    Returns:
        InvoiceTotals: The subtotal with its derived amounts.
    """

    subtotal = Decimal(subtotal)
    tps_rate = DEFAULT_TPS_RATE if tps_rate is None else Decimal(tps_rate)
    tvq_rate = DEFAULT_TVQ_RATE if tvq_rate is None else Decimal(tvq_rate)

    tps_amount = subtotal * tps_rate if apply_tps else Decimal("0")
    tvq_amount = subtotal * tvq_rate if apply_tvq else Decimal("0")
    return InvoiceTotals(
        subtotal=subtotal,
        tps_amount=tps_amount,
        tvq_amount=tvq_amount,
        total_amount=subtotal + tps_amount + tvq_amount,
    )


def team_tax_rates(team: Optional[Team]) -> tuple[Optional[Decimal], Optional[Decimal]]:
    if team is None:
        return None, None
    return team.tps_rate, team.tvq_rate


def line_items_subtotal(items: Iterable[LineItemDraft]) -> Decimal:
    """Sum ``quantity * rate`` over every draft, described or not."""

    return sum((item.amount for item in items), Decimal("0"))


def persistable_line_items(items: Iterable[LineItemDraft]) -> List[dict[str, Any]]:
    """Return the column values of the drafts that will be stored.

    Drafts with a blank description are dropped here and only here; the live
    subtotal still counts them. ``sort_order`` numbers the kept drafts
    contiguously in form order.
    """

    kept = [item for item in items if item.description.strip()]
    return [
        {
            "description": item.description,
            "quantity": item.quantity,
            "rate": item.rate,
            "amount": item.amount,
            "sort_order": index,
        }
        for index, item in enumerate(kept)
    ]


def year_of(value: Optional[str]) -> Optional[int]:
    """Calendar year of an ISO date or timestamp string, ``None`` if unparsable."""

    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10]).year
    except ValueError:
        log.debug("Ignoring unparsable date '%s'", value)
        return None


def next_number_after(numbers: Iterable[str]) -> str:
    """Return the zero-padded successor of the largest number in ``numbers``.

    Non-digit characters are stripped before comparing, so ``"INV-0007"``
    counts as 7. Values without any digit are ignored.
    """

    highest = 0
    for number in numbers:
        digits = _NON_DIGITS.sub("", number or "")
        if digits:
            highest = max(highest, int(digits))
    return str(highest + 1).zfill(INVOICE_NUMBER_WIDTH)


def next_invoice_number(invoices: Iterable[Invoice], *, year: Optional[int] = None) -> str:
    """Compute the number of the next invoice issued in ``year``.

    Only invoices whose ``issue_date`` falls in ``year`` (default: the current
    calendar year) are scanned, so numbering restarts at ``0001`` every year.

    The result is computed from cached invoices and is not reserved anywhere:
    two sessions saving at the same moment can both get the same number.
    """

    year = date.today().year if year is None else year
    return next_number_after(
        invoice.invoice_number for invoice in invoices if year_of(invoice.issue_date) == year
    )


def coerce_status(status: Union[str, InvoiceStatus]) -> InvoiceStatus:
    """Validate ``status`` against the five invoice states.

    Raises:
        BusinessRuleViolation: If ``status`` is not a known state.
    """

    try:
        return InvoiceStatus(status)
    except ValueError as exc:
        log.error("Unsupported invoice status provided: %s", status)
        raise BusinessRuleViolation(f"Unsupported invoice status: {status}") from exc


def default_due_date(issue_date: date, days: int = DEFAULT_PAYMENT_TERMS_DAYS) -> date:
    return issue_date + timedelta(days=days)


def is_overdue(invoice: Invoice, today: date) -> bool:
    """Whether an unpaid invoice is past its due date on ``today``.

    The core never flips the status itself; report views use this to show
    ``overdue`` for invoices still stored as ``unpaid``.
    """

    if invoice.status not in (InvoiceStatus.UNPAID.value, InvoiceStatus.OVERDUE.value):
        return False
    due = invoice.due_date[:10] if invoice.due_date else ""
    if not due:
        return False
    try:
        return date.fromisoformat(due) < today
    except ValueError:
        return False
