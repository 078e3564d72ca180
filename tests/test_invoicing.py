"""Unit tests for the pure invoice computation helpers."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from studio_erp import invoicing
from studio_erp.constants import InvoiceStatus
from studio_erp.errors import BusinessRuleViolation
from studio_erp.models import Invoice, Team


def _invoice(number: str, issue_date: str, status: str = "unpaid", due_date: str = "") -> Invoice:
    return Invoice(
        id=f"inv-{number}-{issue_date}",
        team_id="team-a",
        invoice_number=number,
        issue_date=issue_date,
        status=status,
        due_date=due_date,
    )


# ---------------------------------------------------------------------------
# Totals
# ---------------------------------------------------------------------------


def test_compute_totals_applies_both_default_rates():
    """Both taxes at default rates should match the Quebec example."""

    totals = invoicing.compute_totals(Decimal("1000"), True, True)
    assert totals.subtotal == Decimal("1000")
    assert totals.tps_amount == Decimal("50")
    assert totals.tvq_amount == Decimal("99.75")
    assert totals.total_amount == Decimal("1149.75")


def test_compute_totals_with_one_tax_disabled():
    """A disabled tax should contribute exactly zero."""

    totals = invoicing.compute_totals(Decimal("200"), True, False)
    assert totals.tps_amount == Decimal("10")
    assert totals.tvq_amount == Decimal("0")
    assert totals.total_amount == Decimal("210")


def test_compute_totals_zero_subtotal_yields_zero_everything():
    """A zero subtotal should never produce tax."""

    totals = invoicing.compute_totals(Decimal("0"), True, True)
    assert totals.total_amount == Decimal("0")
    assert totals.tps_amount == totals.tvq_amount == Decimal("0")


def test_compute_totals_uses_custom_rates():
    """Team rates should replace the defaults when provided."""

    totals = invoicing.compute_totals(Decimal("100"), True, True, Decimal("0.10"), Decimal("0.20"))
    assert totals.total_amount == Decimal("130")


def test_compute_totals_honors_zero_rate():
    """A configured zero rate is a real rate, not a missing one."""

    totals = invoicing.compute_totals(Decimal("100"), True, True, Decimal("0"), None)
    assert totals.tps_amount == Decimal("0")
    assert totals.tvq_amount == Decimal("9.975")


@pytest.mark.parametrize("factor", [Decimal("2"), Decimal("0.5"), Decimal("3.25")])
def test_compute_totals_is_linear_in_subtotal(factor: Decimal):
    """Scaling the subtotal should scale every derived amount."""

    base = invoicing.compute_totals(Decimal("400"), True, True)
    scaled = invoicing.compute_totals(Decimal("400") * factor, True, True)
    assert scaled.tps_amount == base.tps_amount * factor
    assert scaled.tvq_amount == base.tvq_amount * factor
    assert scaled.total_amount == base.total_amount * factor


def test_team_tax_rates_reads_team_configuration():
    """team_tax_rates should pass through configured and unset rates."""

    team = Team(id="team-a", tps_rate=Decimal("0.06"))
    assert invoicing.team_tax_rates(team) == (Decimal("0.06"), None)
    assert invoicing.team_tax_rates(None) == (None, None)


# ---------------------------------------------------------------------------
# Line items
# ---------------------------------------------------------------------------


def test_line_items_subtotal_counts_every_draft():
    """Blank descriptions still count toward the live subtotal."""

    drafts = [
        invoicing.LineItemDraft.of("Design", 10, 100),
        invoicing.LineItemDraft.of("   ", 1, 50),
    ]
    assert invoicing.line_items_subtotal(drafts) == Decimal("1050")


def test_persistable_line_items_drops_blank_descriptions():
    """Only described drafts are stored, numbered contiguously."""

    drafts = [
        invoicing.LineItemDraft.of("", 1, 10),
        invoicing.LineItemDraft.of("Logo", 2, "150.50"),
        invoicing.LineItemDraft.of("  ", 3, 5),
        invoicing.LineItemDraft.of("Print", 1, 80),
    ]
    rows = invoicing.persistable_line_items(drafts)
    assert [row["description"] for row in rows] == ["Logo", "Print"]
    assert [row["sort_order"] for row in rows] == [0, 1]
    assert rows[0]["amount"] == Decimal("301.00")


# ---------------------------------------------------------------------------
# Numbering
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "numbers, expected",
    [
        ([], "0001"),
        (["0001", "0002", "0007"], "0008"),
        (["INV-0041"], "0042"),
        (["draft", "", "0003"], "0004"),
        (["9999"], "10000"),
    ],
)
def test_next_number_after(numbers: list[str], expected: str):
    """next_number_after should strip non-digits and pad to four places."""

    assert invoicing.next_number_after(numbers) == expected


def test_next_invoice_number_only_scans_requested_year():
    """Numbering restarts every calendar year."""

    invoices = [
        _invoice("0012", "2024-11-03"),
        _invoice("0013", "2024-12-20"),
        _invoice("0001", "2025-01-04"),
    ]
    assert invoicing.next_invoice_number(invoices, year=2025) == "0002"
    assert invoicing.next_invoice_number(invoices, year=2024) == "0014"
    assert invoicing.next_invoice_number(invoices, year=2026) == "0001"


def test_next_invoice_number_defaults_to_current_year(monkeypatch: pytest.MonkeyPatch):
    """Without a year the current calendar year is used."""

    class _FixedDate(date):
        @classmethod
        def today(cls):
            return date(2030, 6, 1)

    monkeypatch.setattr(invoicing, "date", _FixedDate)
    invoices = [_invoice("0005", "2030-02-01"), _invoice("0099", "2029-02-01")]
    assert invoicing.next_invoice_number(invoices) == "0006"


def test_year_of_ignores_unparsable_values():
    """year_of should accept dates and timestamps and reject garbage."""

    assert invoicing.year_of("2025-03-04") == 2025
    assert invoicing.year_of("2025-03-04T10:00:00+00:00") == 2025
    assert invoicing.year_of("") is None
    assert invoicing.year_of("soon") is None


# ---------------------------------------------------------------------------
# Status helpers
# ---------------------------------------------------------------------------


def test_coerce_status_rejects_unknown_values():
    """Unknown statuses should surface as business rule violations."""

    assert invoicing.coerce_status("paid") is InvoiceStatus.PAID
    with pytest.raises(BusinessRuleViolation):
        invoicing.coerce_status("refunded")


def test_default_due_date_adds_payment_terms():
    assert invoicing.default_due_date(date(2025, 1, 15)) == date(2025, 2, 14)
    assert invoicing.default_due_date(date(2025, 1, 15), 10) == date(2025, 1, 25)


def test_is_overdue_requires_outstanding_status_and_past_due_date():
    """Only unpaid or overdue invoices past their due date are overdue."""

    today = date(2025, 3, 1)
    assert invoicing.is_overdue(_invoice("0001", "2025-01-01", "unpaid", "2025-02-01"), today)
    assert not invoicing.is_overdue(_invoice("0002", "2025-01-01", "paid", "2025-02-01"), today)
    assert not invoicing.is_overdue(_invoice("0003", "2025-01-01", "unpaid", "2025-04-01"), today)
    assert not invoicing.is_overdue(_invoice("0004", "2025-01-01", "unpaid", ""), today)
