"""Shared pytest fixtures and utilities for Studio ERP tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from studio_erp import cli, constants, core_logic, data_manager  # noqa: E402
from studio_erp.cache import RelationalCache  # noqa: E402
from studio_erp.constants import Collection  # noqa: E402
from studio_erp.errors import RemoteStoreError  # noqa: E402
from studio_erp.models import Team, TeamMember, deserialize_record, model_for  # noqa: E402
from studio_erp.session import TenantScope  # noqa: E402
from studio_erp.setup_excel import create_store_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_TEAM_ID = "team-default"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Session]\n"
    "TeamID = {team_id}\n"
    "Role = {role}\n\n"
    "[Defaults]\n"
    "PaymentTermsDays = {payment_terms}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    team_id: str
    schema_version: str
    role: str


class MemoryStore:
    """In-memory store double speaking the ``RemoteStore`` protocol.

    ``failing`` makes selects of the listed collections raise, ``failing_inserts``
    does the same for inserts, and ``before_select`` runs right before a select
    returns so tests can change the tenant mid-fetch.
    """

    def __init__(self) -> None:
        self.rows: dict[Collection, list[dict[str, Any]]] = {name: [] for name in Collection}
        self.failing: set[Collection] = set()
        self.failing_inserts: set[Collection] = set()
        self.failing_deletes: set[Collection] = set()
        self.before_select: Optional[Callable[[Collection], Awaitable[None]]] = None
        self.leak_team: Optional[str] = None
        self.calls: list[tuple[str, Collection]] = []

    def seed(self, collection: Collection, **values: Any) -> dict[str, Any]:
        row = {"id": str(uuid.uuid4()), "created_at": datetime.now(UTC).isoformat(), **values}
        self.rows[Collection(collection)].append(row)
        return row

    async def select(self, collection, *, team_id, joins=None):
        collection = Collection(collection)
        self.calls.append(("select", collection))
        if collection in self.failing:
            raise RemoteStoreError(f"{collection.value} unavailable", collection=collection.value)
        scope = constants.SCOPE_COLUMN.get(collection, "team_id")
        allowed = {team_id, self.leak_team} if self.leak_team else {team_id}
        rows = [dict(row) for row in self.rows[collection] if row.get(scope) in allowed]
        if self.before_select is not None:
            await self.before_select(collection)
        return data_manager.order_rows(collection, rows)

    async def insert(self, collection, row):
        collection = Collection(collection)
        self.calls.append(("insert", collection))
        if collection in self.failing_inserts:
            raise RemoteStoreError(f"insert into {collection.value} rejected", collection=collection.value)
        stored = {"id": str(uuid.uuid4()), "created_at": datetime.now(UTC).isoformat(), **row}
        self.rows[collection].append(stored)
        return dict(stored)

    async def update(self, collection, record_id, patch):
        collection = Collection(collection)
        self.calls.append(("update", collection))
        for row in self.rows[collection]:
            if row["id"] == record_id:
                row.update(patch)
                return dict(row)
        raise RemoteStoreError(f"Row '{record_id}' not found", collection=collection.value)

    async def delete(self, collection, record_id):
        collection = Collection(collection)
        self.calls.append(("delete", collection))
        if collection in self.failing_deletes:
            raise RemoteStoreError(f"delete from {collection.value} rejected", collection=collection.value)
        self.rows[collection] = [row for row in self.rows[collection] if row["id"] != record_id]


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized store workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        team_id: Optional[str] = DEFAULT_TEAM_ID,
        team_name: str = "Test Studio",
        filename: str = "studio_store.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_store_workbook(workbook_path, team_id=team_id, team_name=team_name, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def store_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh, seeded store workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        team_id: str = DEFAULT_TEAM_ID,
        role: str = "owner",
        payment_terms: int = 30,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", team_id=team_id)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                schema_version=schema_version,
                team_id=team_id,
                role=role,
                payment_terms=payment_terms,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            team_id=team_id,
            schema_version=schema_version,
            role=role,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the (signed out) runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Session and cache fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def team_factory() -> Callable[..., Team]:
    """Build team records without touching any store."""

    def _make(team_id: str = "team-a", **values: Any) -> Team:
        values.setdefault("name", team_id.title())
        return Team(id=team_id, **values)

    return _make


@pytest.fixture
def member_factory() -> Callable[..., TeamMember]:
    def _make(team_id: str = "team-a", role: str = "owner") -> TeamMember:
        return TeamMember(id=f"member-{uuid.uuid4().hex[:8]}", team_id=team_id, role=role)

    return _make


@pytest.fixture
def record_factory() -> Callable[..., Any]:
    """Build a typed record of ``collection`` from keyword column values."""

    def _make(collection: Collection, team_id: str = "team-a", **values: Any):
        values.setdefault("id", str(uuid.uuid4()))
        return deserialize_record(model_for(collection), {"team_id": team_id, **values})

    return _make


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def scope() -> TenantScope:
    return TenantScope()


@pytest.fixture
def cache(scope: TenantScope, memory_store: MemoryStore) -> RelationalCache:
    return RelationalCache(scope, memory_store)


@pytest.fixture
def signed_in(scope: TenantScope, team_factory, member_factory) -> TenantScope:
    """Scope signed in to ``team-a`` as its owner."""

    scope.sign_in(team_factory("team-a"), member_factory("team-a", "owner"))
    return scope


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "studio_store.xlsx",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        team_id="team-a",
    )


@pytest.fixture
def memory_context(settings: data_manager.ConfigSettings, memory_store: MemoryStore) -> core_logic.RuntimeContext:
    """Assemble a runtime context around the in-memory store double."""

    return core_logic.build_runtime_context(settings, memory_store)


@pytest.fixture
def sign_in_context(team_factory, member_factory) -> Callable[..., core_logic.RuntimeContext]:
    """Sign a context in to a team without going through the store."""

    def _apply(context: core_logic.RuntimeContext, team_id: str = "team-a", role: str = "owner", **team_values: Any):
        context.scope.sign_in(team_factory(team_id, **team_values), member_factory(team_id, role))
        return context

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="studio-cli", description="Studio CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    async def _execute(*_: object) -> int:
        return 0

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            _execute,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime(datetime):
            @classmethod
            def now(cls, tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
