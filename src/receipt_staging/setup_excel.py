"""Utility for initializing the receipts workbook.

The module doubles as a script (``receipt-setup``) and as a library used by
tests or other tooling. The sheet layout declared here is the one
:mod:`data_manager` reads and writes.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import SheetName

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PARTS.value: [
        "PartID",
        "PartName",
        "SKU",
        "Category",
        "BranchID",
        "CostPrice",
        "RetailPrice",
        "WholesalePrice",
        "Stock",
    ],
    SheetName.SUPPLIERS.value: [
        "SupplierID",
        "SupplierName",
        "Phone",
        "Address",
        "Note",
    ],
    SheetName.RECEIPT_LOG.value: [
        "ReceiptCode",
        "Timestamp",
        "BranchID",
        "SupplierID",
        "PartID",
        "PartName",
        "Quantity",
        "ImportPrice",
        "RetailPrice",
        "WholesalePrice",
        "Notes",
    ],
    SheetName.RECEIPT_PAYMENTS.value: [
        "ReceiptCode",
        "Timestamp",
        "BranchID",
        "SupplierID",
        "TotalAmount",
        "PaymentMethod",
        "PaymentType",
        "PaidAmount",
        "Discount",
        "DebtAmount",
        "Notes",
    ],
    SheetName.DRAFTS.value: [
        "DraftKey",
        "Payload",
        "SavedAt",
    ],
}

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


def load_settings(config_path: Path) -> data_manager.ConfigSettings:
    """Read ``config.ini`` and produce :class:`data_manager.ConfigSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    config_path = Path(config_path).expanduser().resolve()
    parser = data_manager.read_config(config_path)
    return data_manager.parse_settings(parser, base_path=config_path.parent)


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the receipts workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing receipts workbook: {destination}"
        )

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

    workbook.save(destination)
    log.info("Created receipts workbook at '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile`` in ``config_path``."""

    settings = load_settings(config_path)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(
        prog="receipt-setup",
        description="Initialize the goods-receipt workbook",
    )
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

    print("--- Goods Receipt Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created receipts workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
