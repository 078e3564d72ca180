"""Utility for initializing the Studio ERP store workbook.

The module doubles as a script (``python -m studio_erp.setup_excel``) and as a
library used by tests or other tooling. Shared helpers keep the workbook
bootstrap logic consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from .constants import (
    DEFAULT_PROJECT_STATUSES,
    DEFAULT_PROJECT_TYPES,
    DEFAULT_TASK_STATUSES,
    Collection,
    TeamRole,
)
from .models import MODEL_BY_COLLECTION, column_names

# One sheet per collection, columns taken from the record definitions.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    collection.value: column_names(model) for collection, model in MODEL_BY_COLLECTION.items()
}

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path
    team_id: Optional[str]


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory. The ``[Session] TeamID`` entry is optional here: when it
    is present the bootstrap seeds that team.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(
        data_file=data_file_path,
        team_id=parser.get("Session", "TeamID", fallback=None) or None,
    )


def create_store_workbook(
    destination: Path,
    *,
    team_id: Optional[str] = None,
    team_name: str = "My Studio",
    owner_id: Optional[str] = None,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the Studio ERP store workbook at ``destination``.

    When ``team_id`` is given a team row, its owner membership, and the
    default project statuses, project types, and task statuses are seeded so
    the workbook is immediately usable. When ``overwrite`` is ``False`` (the
    default) this function raises ``FileExistsError`` if the target exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing store workbook: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    if team_id:
        _seed_team(workbook, sheet_columns, team_id=team_id, team_name=team_name, owner_id=owner_id)

    workbook.save(destination)
    return destination


def _seed_team(
    workbook: Any,
    sheet_columns: Mapping[str, Sequence[str]],
    *,
    team_id: str,
    team_name: str,
    owner_id: Optional[str],
) -> None:
    now = datetime.now(UTC).isoformat()

    def append(collection: Collection, values: Mapping[str, Any]) -> None:
        row = {"id": str(uuid.uuid4()), "team_id": team_id, "created_at": now, "updated_at": now, **values}
        columns = sheet_columns[collection.value]
        workbook[collection.value].append([row.get(column) for column in columns])

    append(Collection.TEAMS, {"id": team_id, "name": team_name, "slug": slugify(team_name), "owner_id": owner_id})
    append(Collection.TEAM_MEMBERS, {"user_id": owner_id, "role": TeamRole.OWNER.value, "invite_status": "accepted"})
    for status in DEFAULT_PROJECT_STATUSES:
        append(Collection.PROJECT_STATUSES, status)
    for project_type in DEFAULT_PROJECT_TYPES:
        append(Collection.PROJECT_TYPES, project_type)
    for task_status in DEFAULT_TASK_STATUSES:
        append(Collection.TASK_STATUSES, task_status)


def slugify(name: str) -> str:
    """Lower-case ``name``, dash-separate words, and drop anything else."""

    dashed = "-".join(name.lower().split())
    return "".join(ch for ch in dashed if ch.isascii() and (ch.isalnum() or ch == "-"))


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook described by ``config.ini``."""

    settings = load_settings(config_path)
    return create_store_workbook(settings.data_file, team_id=settings.team_id, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the Studio ERP store workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Studio ERP Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created store workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
