"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import asyncio
import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from studio_erp import constants, data_manager  # noqa: E402
from studio_erp.constants import Collection, TeamRole
from studio_erp.errors import RemoteStoreError
from studio_erp.models import Invoice, deserialize_record

TEAM_ID = "team-default"


@pytest.fixture
def store(store_workbook_path: Path) -> data_manager.WorkbookStore:
    return data_manager.WorkbookStore(store_workbook_path)


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_cwd(tmp_path, monkeypatch):
    """Auto-discovery should locate config.ini in the working directory tree."""

    config_dir = tmp_path / "nested"
    config_dir.mkdir(parents=True)
    config_file = config_dir / "config.ini"
    config_file.write_text("[System]\nDataFile=studio_store.xlsx")
    monkeypatch.chdir(config_dir)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("Session", "TeamID") == TEAM_ID
    assert parser.getint("Defaults", "PaymentTermsDays") == 30


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "missing.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries are anchored to the config directory."""

    bundle = config_factory(make_relative=True, role="admin", payment_terms=14)
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.directory)

    assert settings.data_file == bundle.workbook_path.resolve()
    assert settings.schema_version == constants.EXPECTED_SCHEMA_VERSION
    assert settings.team_id == TEAM_ID
    assert settings.role is TeamRole.ADMIN
    assert settings.payment_terms_days == 14


def test_parse_settings_requires_expected_sections():
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = store.xlsx\n")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser)


def test_parse_settings_session_is_optional(tmp_path):
    """Without a [Session] section the runtime starts signed out as owner."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = store.xlsx\nSchemaVersion = 1.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.team_id is None
    assert settings.role is TeamRole.OWNER
    assert settings.payment_terms_days == constants.DEFAULT_PAYMENT_TERMS_DAYS


def test_parse_settings_rejects_unknown_role(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = s.xlsx\nSchemaVersion = 1.0.0\n[Session]\nRole = janitor\n")
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(store_workbook_path):
    workbook = data_manager.open_workbook(store_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(workbook.sheetnames) == {collection.value for collection in Collection}


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "absent.xlsx")


def test_save_workbook_with_destination_creates_copy(store_workbook_path, tmp_path):
    workbook = data_manager.open_workbook(store_workbook_path)
    destination = tmp_path / "copies" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination)
    assert destination.exists()


# ---------------------------------------------------------------------------
# WorkbookStore
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_select_returns_seeded_lookup_lists_in_sort_order(store):
    """The bootstrap seeds default statuses that come back ordered."""

    rows = await store.select(Collection.PROJECT_STATUSES, team_id=TEAM_ID)
    orders = [row["sort_order"] for row in rows]
    assert orders == sorted(orders)
    assert [row["name"] for row in rows][0] == constants.DEFAULT_PROJECT_STATUSES[0]["name"]


@pytest.mark.asyncio
async def test_select_is_scoped_to_the_team(store):
    await store.insert(Collection.CLIENTS, {"team_id": TEAM_ID, "name": "Mine"})
    await store.insert(Collection.CLIENTS, {"team_id": "team-other", "name": "Theirs"})

    mine = await store.select(Collection.CLIENTS, team_id=TEAM_ID)
    teams = await store.select(Collection.TEAMS, team_id=TEAM_ID)

    assert [row["name"] for row in mine] == ["Mine"]
    assert [row["id"] for row in teams] == [TEAM_ID]


@pytest.mark.asyncio
async def test_insert_assigns_id_and_timestamps_and_persists(store, store_workbook_path):
    """A confirmed insert is on disk before the call returns."""

    row = await store.insert(Collection.CLIENTS, {"team_id": TEAM_ID, "name": "Acme"})

    assert row["id"]
    assert row["created_at"]
    reopened = openpyxl.load_workbook(store_workbook_path)
    names = [values[0] for values in reopened["clients"].iter_rows(min_row=2, values_only=True)]
    assert row["id"] in names


@pytest.mark.asyncio
async def test_concurrent_writes_are_applied_one_after_another(store, store_workbook_path):
    """Gathered inserts all land, and the saved file holds every row."""

    names = [f"Client {index}" for index in range(5)]
    rows = await asyncio.gather(
        *(store.insert(Collection.CLIENTS, {"team_id": TEAM_ID, "name": name}) for name in names)
    )

    assert len({row["id"] for row in rows}) == len(names)
    reopened = data_manager.WorkbookStore(store_workbook_path)
    stored = await reopened.select(Collection.CLIENTS, team_id=TEAM_ID)
    assert sorted(row["name"] for row in stored) == sorted(names)


@pytest.mark.asyncio
async def test_insert_rejects_rows_without_team(store):
    with pytest.raises(RemoteStoreError):
        await store.insert(Collection.CLIENTS, {"name": "Orphan"})


@pytest.mark.asyncio
async def test_insert_rejects_unknown_columns_and_duplicate_ids(store):
    with pytest.raises(RemoteStoreError, match="Unknown columns"):
        await store.insert(Collection.CLIENTS, {"team_id": TEAM_ID, "name": "X", "colour": "red"})

    await store.insert(Collection.CLIENTS, {"id": "c-1", "team_id": TEAM_ID, "name": "X"})
    with pytest.raises(RemoteStoreError, match="Duplicate"):
        await store.insert(Collection.CLIENTS, {"id": "c-1", "team_id": TEAM_ID, "name": "Y"})


@pytest.mark.asyncio
async def test_insert_returns_joined_parent(store):
    """Single joins are resolved on the confirmed row."""

    client = await store.insert(Collection.CLIENTS, {"team_id": TEAM_ID, "name": "Acme"})
    project = await store.insert(
        Collection.PROJECTS,
        {"team_id": TEAM_ID, "name": "Rebrand", "client_id": client["id"]},
    )
    assert project["client"]["name"] == "Acme"
    assert project["status"] is None


@pytest.mark.asyncio
async def test_select_nests_line_items_under_invoices(store):
    invoice = await store.insert(Collection.INVOICES, {"team_id": TEAM_ID, "invoice_number": "0001"})
    for index, description in enumerate(["Second", "First"]):
        await store.insert(
            Collection.INVOICE_LINE_ITEMS,
            {
                "team_id": TEAM_ID,
                "invoice_id": invoice["id"],
                "description": description,
                "quantity": Decimal("1"),
                "rate": Decimal("10"),
                "amount": Decimal("10"),
                "sort_order": 1 - index,
            },
        )

    rows = await store.select(Collection.INVOICES, team_id=TEAM_ID)
    record = deserialize_record(Invoice, rows[0])

    assert [item.description for item in record.line_items] == ["First", "Second"]


@pytest.mark.asyncio
async def test_update_patches_columns(store):
    client = await store.insert(Collection.CLIENTS, {"team_id": TEAM_ID, "name": "Acme"})
    updated = await store.update(Collection.CLIENTS, client["id"], {"name": "Acme Inc."})
    assert updated["name"] == "Acme Inc."
    assert updated["created_at"] == client["created_at"]


@pytest.mark.asyncio
async def test_update_rejects_missing_rows_and_immutable_columns(store):
    client = await store.insert(Collection.CLIENTS, {"team_id": TEAM_ID, "name": "Acme"})
    with pytest.raises(RemoteStoreError):
        await store.update(Collection.CLIENTS, "missing", {"name": "Nope"})
    with pytest.raises(RemoteStoreError):
        await store.update(Collection.CLIENTS, client["id"], {"team_id": "team-other"})


@pytest.mark.asyncio
async def test_delete_is_restricted_by_referencing_rows(store):
    """A client referenced by a project cannot be deleted."""

    client = await store.insert(Collection.CLIENTS, {"team_id": TEAM_ID, "name": "Acme"})
    await store.insert(Collection.PROJECTS, {"team_id": TEAM_ID, "name": "Site", "client_id": client["id"]})

    with pytest.raises(RemoteStoreError, match="referenced by 1 projects"):
        await store.delete(Collection.CLIENTS, client["id"])
    assert await store.select(Collection.CLIENTS, team_id=TEAM_ID)


@pytest.mark.asyncio
async def test_delete_is_restricted_for_projects_in_use(store):
    project = await store.insert(Collection.PROJECTS, {"team_id": TEAM_ID, "name": "Site"})
    await store.insert(Collection.EXPENSES, {"team_id": TEAM_ID, "name": "Stock", "project_id": project["id"]})
    await store.insert(Collection.BOOKINGS, {"team_id": TEAM_ID, "project_id": project["id"]})

    with pytest.raises(RemoteStoreError, match="referenced by 1 expenses"):
        await store.delete(Collection.PROJECTS, project["id"])
    assert [row["id"] for row in await store.select(Collection.PROJECTS, team_id=TEAM_ID)] == [project["id"]]


@pytest.mark.asyncio
async def test_delete_cascades_to_line_items(store):
    invoice = await store.insert(Collection.INVOICES, {"team_id": TEAM_ID, "invoice_number": "0001"})
    for description in ("A", "B"):
        await store.insert(
            Collection.INVOICE_LINE_ITEMS,
            {"team_id": TEAM_ID, "invoice_id": invoice["id"], "description": description},
        )

    await store.delete(Collection.INVOICES, invoice["id"])

    assert await store.select(Collection.INVOICES, team_id=TEAM_ID) == []
    assert await store.select(Collection.INVOICE_LINE_ITEMS, team_id=TEAM_ID) == []


@pytest.mark.asyncio
async def test_delete_of_missing_row_is_a_no_op(store):
    await store.delete(Collection.CLIENTS, "missing")


def test_order_rows_puts_blank_values_last():
    rows = [
        {"id": "1", "issue_date": "2025-01-01"},
        {"id": "2", "issue_date": None},
        {"id": "3", "issue_date": "2025-03-01"},
    ]
    ordered = data_manager.order_rows(Collection.INVOICES, rows)
    assert [row["id"] for row in ordered] == ["3", "1", "2"]
