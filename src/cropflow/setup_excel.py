"""Utility for initializing the Cropflow master workbook.

The module doubles as a script (``cropflow-setup``) and as a library used by
tests or other tooling.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import Department
from .data_manager import SHEET_COLUMNS, UserRow

DEFAULT_ADMIN = UserRow(
    user_id="admin",
    name="Administrator",
    email=None,
    department=Department.ADMIN.value,
    manager_id=None,
)


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    users: Iterable[UserRow] = (DEFAULT_ADMIN,),
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination`` with every sheet and header.

    Parameters are overridable to facilitate testing. When ``overwrite`` is
    ``False`` (the default) this function raises ``FileExistsError`` if the
    target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

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

    if data_manager.USERS_SHEET in workbook.sheetnames:
        for user in users:
            data_manager.append_user(workbook, user)

    data_manager.save_workbook(workbook, destination)
    log.info("Created master workbook '%s'", destination)
    return destination


def run_from_config(config_path: Optional[Path] = None, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile`` in ``config.ini``."""

    located = data_manager.find_config_file(config_path).expanduser().resolve()
    parser = data_manager.read_config(located)
    settings = data_manager.parse_settings(parser, base_path=located.parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(prog="cropflow-setup", description="Initialize the Cropflow data file")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (searched upward from the current directory by default)",
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
    print("--- Cropflow Setup ---")

    try:
        output_path = run_from_config(args.config, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
