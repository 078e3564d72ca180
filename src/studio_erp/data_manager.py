"""Data access layer for Studio ERP.

This module owns everything that touches the system of record. Business
logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the store workbook.
3. The :class:`RemoteStore` contract and :class:`WorkbookStore`, an
   implementation that keeps one worksheet per collection and answers
   tenant-scoped ``select``/``insert``/``update``/``delete`` calls with
   join-enriched rows.
"""


from __future__ import annotations

import configparser
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Protocol, Sequence

import openpyxl
from openpyxl.workbook import Workbook

from . import log
from .constants import (
    CASCADES,
    DEFAULT_PAYMENT_TERMS_DAYS,
    FETCH_ORDER,
    JOINS,
    RESTRICTS,
    SCOPE_COLUMN,
    Collection,
    TeamRole,
)
from .errors import RemoteStoreError


CONFIG_FILE_NAME = "config.ini"

Row = dict[str, Any]


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    team_id: Optional[str]
    role: TeamRole = TeamRole.OWNER
    payment_terms_days: int = DEFAULT_PAYMENT_TERMS_DAYS


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in any parent.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion
            and resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile`` and ``SchemaVersion``. The
    ``[Session]`` section is optional: without a ``TeamID`` the runtime starts
    signed out. Relative data file paths are anchored to ``base_path`` (or the
    current working directory) and resolved.

    Raises:
        KeyError: If a required entry is missing.
        ValueError: If ``Role`` or ``PaymentTermsDays`` cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    team_id = parser.get("Session", "TeamID", fallback="").strip() or None
    role = TeamRole(parser.get("Session", "Role", fallback=TeamRole.OWNER.value).strip().lower())
    payment_terms = parser.getint("Defaults", "PaymentTermsDays", fallback=DEFAULT_PAYMENT_TERMS_DAYS)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        schema_version=schema_version,
        team_id=team_id,
        role=role,
        payment_terms_days=payment_terms,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the store workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class RemoteStore(Protocol):
    """Tenant-scoped access to the system of record.

    Every call is a suspension point. Rows are plain mappings; joined
    children are nested under their join name. Implementations guarantee that
    ``select`` never returns a row outside ``team_id``.
    """

    async def select(
        self,
        collection: Collection,
        *,
        team_id: str,
        joins: Optional[Sequence[str]] = None,
    ) -> list[Row]:
        """Return the ordered, join-enriched rows of ``collection`` for a team."""
        ...

    async def insert(self, collection: Collection, row: Mapping[str, Any]) -> Row:
        """Insert ``row`` and return the confirmed, join-enriched row."""
        ...

    async def update(self, collection: Collection, record_id: str, patch: Mapping[str, Any]) -> Row:
        """Apply ``patch`` to a row and return the confirmed, join-enriched row."""
        ...

    async def delete(self, collection: Collection, record_id: str) -> None:
        """Delete a row; raise :class:`RemoteStoreError` when rejected."""
        ...


class WorkbookStore:
    """:class:`RemoteStore` backed by an ``openpyxl`` workbook.

    Each collection lives on a worksheet named after it, with a header row of
    column names. Writes are saved to ``data_file`` immediately when
    ``autosave`` is on, so a confirmed write is durable. Foreign keys listed
    in :data:`~studio_erp.constants.RESTRICTS` block deletes and those in
    :data:`~studio_erp.constants.CASCADES` are removed with their parent.

    The coroutines do their openpyxl work, and the save after each write,
    inline on the event loop. They never suspend, so concurrent calls such
    as the ``refresh_all`` fan-out complete one after another. The workbook
    is only ever touched from the loop thread.
    """

    def __init__(self, data_file: Path, *, workbook: Optional[Workbook] = None, autosave: bool = True) -> None:
        self.data_file = Path(data_file)
        self.workbook = workbook if workbook is not None else open_workbook(self.data_file)
        self.autosave = autosave

    # -- RemoteStore -------------------------------------------------------

    async def select(
        self,
        collection: Collection,
        *,
        team_id: str,
        joins: Optional[Sequence[str]] = None,
    ) -> list[Row]:
        collection = Collection(collection)
        scope = SCOPE_COLUMN.get(collection, "team_id")
        rows = [row for row in self._rows(collection) if row.get(scope) == team_id]
        rows = order_rows(collection, rows)
        enriched = [self._enrich(collection, row, joins) for row in rows]
        log.debug("Selected %d rows from '%s' for team '%s'", len(enriched), collection.value, team_id)
        return enriched

    async def insert(self, collection: Collection, row: Mapping[str, Any]) -> Row:
        collection = Collection(collection)
        sheet = self._sheet(collection)
        header = self._header(collection)
        scope = SCOPE_COLUMN.get(collection, "team_id")

        record = dict(row)
        record.setdefault("id", str(uuid.uuid4()))
        if not record.get(scope):
            raise RemoteStoreError(f"Missing '{scope}' on insert into {collection.value}", collection=collection.value)
        unknown = sorted(set(record) - set(header))
        if unknown:
            raise RemoteStoreError(f"Unknown columns for {collection.value}: {', '.join(unknown)}", collection=collection.value)
        if self._locate_row(collection, record["id"]) is not None:
            raise RemoteStoreError(f"Duplicate id '{record['id']}' in {collection.value}", collection=collection.value)

        now = utc_now_iso()
        record.setdefault("created_at", now)
        record.setdefault("updated_at", now)
        sheet.append([record.get(column) for column in header])
        self._commit()
        log.debug("Inserted row '%s' into '%s'", record["id"], collection.value)
        return self._enrich(collection, self._read_row(collection, record["id"]), None)

    async def update(self, collection: Collection, record_id: str, patch: Mapping[str, Any]) -> Row:
        collection = Collection(collection)
        row_index = self._locate_row(collection, record_id)
        if row_index is None:
            raise RemoteStoreError(f"Row '{record_id}' not found in {collection.value}", collection=collection.value)

        header_map = {name: idx + 1 for idx, name in enumerate(self._header(collection))}
        changes = dict(patch)
        for immutable in ("id", "team_id", "created_at"):
            if immutable in changes:
                raise RemoteStoreError(f"Column '{immutable}' cannot be updated", collection=collection.value)
        changes.setdefault("updated_at", utc_now_iso())

        sheet = self._sheet(collection)
        for column, value in changes.items():
            if column not in header_map:
                raise RemoteStoreError(f"Unknown column for {collection.value}: {column}", collection=collection.value)
            sheet.cell(row=row_index, column=header_map[column], value=value)
        self._commit()
        log.debug("Updated row '%s' in '%s' (%s)", record_id, collection.value, ", ".join(sorted(changes)))
        return self._enrich(collection, self._read_row(collection, record_id), None)

    async def delete(self, collection: Collection, record_id: str) -> None:
        collection = Collection(collection)
        row_index = self._locate_row(collection, record_id)
        if row_index is None:
            log.debug("Delete of missing row '%s' in '%s' ignored", record_id, collection.value)
            return

        for dependent, column in RESTRICTS.get(collection, ()):
            blocking = sum(1 for row in self._rows(dependent) if row.get(column) == record_id)
            if blocking:
                raise RemoteStoreError(
                    f"Cannot delete {collection.value} '{record_id}': referenced by {blocking} {dependent.value}",
                    collection=collection.value,
                )

        for child, column in CASCADES.get(collection, ()):
            self._delete_where(child, column, record_id)
        self._sheet(collection).delete_rows(row_index)
        self._commit()
        log.debug("Deleted row '%s' from '%s'", record_id, collection.value)

    # -- helpers -----------------------------------------------------------

    def save(self) -> None:
        save_workbook(self.workbook, self.data_file)

    def _commit(self) -> None:
        if self.autosave:
            self.save()

    def _sheet(self, collection: Collection):
        try:
            return self.workbook[collection.value]
        except KeyError as exc:
            raise RemoteStoreError(f"Unknown collection: {collection.value}", collection=collection.value) from exc

    def _header(self, collection: Collection) -> list[str]:
        return [cell.value for cell in self._sheet(collection)[1]]

    def _rows(self, collection: Collection) -> list[Row]:
        header = self._header(collection)
        rows = []
        for raw in self._sheet(collection).iter_rows(min_row=2, values_only=True):
            # skip fully empty rows
            if any(cell is not None for cell in raw):
                rows.append(dict(zip(header, raw)))
        return rows

    def _read_row(self, collection: Collection, record_id: str) -> Row:
        for row in self._rows(collection):
            if row.get("id") == record_id:
                return row
        raise RemoteStoreError(f"Row '{record_id}' not found in {collection.value}", collection=collection.value)

    def _locate_row(self, collection: Collection, record_id: str) -> Optional[int]:
        """Return the 1-based worksheet row holding ``record_id``, if any."""

        header = self._header(collection)
        id_index = header.index("id")
        sheet = self._sheet(collection)
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
            if row[id_index] == record_id:
                return row_idx
        return None

    def _delete_where(self, collection: Collection, column: str, value: str) -> int:
        header = self._header(collection)
        col_index = header.index(column)
        sheet = self._sheet(collection)
        doomed = [
            row_idx
            for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
            if row[col_index] == value
        ]
        # bottom-up so earlier indexes stay valid
        for row_idx in reversed(doomed):
            sheet.delete_rows(row_idx)
        return len(doomed)

    def _enrich(self, collection: Collection, row: Row, joins: Optional[Sequence[str]]) -> Row:
        available = JOINS.get(collection, {})
        wanted = available.keys() if joins is None else [name for name in joins if name in available]
        enriched = dict(row)
        for name in wanted:
            column, target, many = available[name]
            if many:
                children = [child for child in self._rows(target) if child.get(column) == row.get("id")]
                enriched[name] = order_rows(target, children)
            else:
                reference = row.get(column)
                enriched[name] = self._find(target, reference) if reference else None
        return enriched

    def _find(self, collection: Collection, record_id: str) -> Optional[Row]:
        for row in self._rows(collection):
            if row.get("id") == record_id:
                return row
        return None


def order_rows(collection: Collection, rows: Iterable[Row]) -> list[Row]:
    """Order rows the way the store promises for ``collection``.

    Rows with a blank ordering column sort last regardless of direction.
    Collections without an ordering rule keep their insertion order.
    """

    rows = list(rows)
    ordering = FETCH_ORDER.get(Collection(collection))
    if ordering is None:
        return rows

    column, descending = ordering
    present = [row for row in rows if row.get(column) not in (None, "")]
    missing = [row for row in rows if row.get(column) in (None, "")]
    if column == "name":
        present.sort(key=lambda row: str(row[column]).casefold(), reverse=descending)
    else:
        present.sort(key=lambda row: row[column], reverse=descending)
    return present + missing
