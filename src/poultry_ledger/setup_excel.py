"""Utility for initializing the poultry ledger master workbook.

The module doubles as a script (``python -m poultry_ledger.setup_excel``) and
as a library used by tests or other tooling, so the workbook bootstrap logic
stays consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from .constants import ProfileRole, SheetName

# Column order must match the serializers in ``data_manager``.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.FARMERS.value: [
        "FarmerID",
        "Name",
        "Location",
        "BatchSize",
        "DealerID",
        "Outstanding",
        "FarmerCode",
        "IsPlaceholder",
        "Version",
    ],
    SheetName.INVENTORY.value: [
        "ItemID",
        "Name",
        "Category",
        "Quantity",
        "OriginalQuantity",
        "Unit",
        "PurchasePrice",
        "SalesPrice",
        "GSTRate",
        "PurchaseSource",
        "OwnerID",
        "PurchaseOrderID",
        "CreatedAt",
        "Version",
    ],
    SheetName.TRANSACTIONS.value: [
        "TransactionID",
        "Date",
        "Description",
        "Amount",
        "Status",
        "UserID",
        "UserName",
        "DealerID",
        "InventoryItemID",
        "InventoryItemName",
        "QuantitySold",
        "TotalWeight",
        "CostOfGoodsSold",
        "PaymentMethod",
        "ReferenceNumber",
        "Remarks",
        "PurchaseOrderID",
        "BatchID",
        "IsBusinessExpense",
        "CreatedAt",
        "Version",
    ],
    SheetName.ORDERS.value: [
        "OrderID",
        "FarmerID",
        "FarmerName",
        "DealerID",
        "Items",
        "TotalAmount",
        "Status",
        "CreatedAt",
        "Version",
    ],
    SheetName.PURCHASE_ORDERS.value: [
        "PurchaseOrderID",
        "OwnerID",
        "OrderDate",
        "PurchaseSource",
        "ItemCount",
        "CreatedAt",
        "Version",
    ],
    SheetName.PROFILES.value: [
        "UserID",
        "Name",
        "Role",
        "DealerID",
        "IsPremium",
    ],
    SheetName.NOTIFICATIONS.value: [
        "NotificationID",
        "UserID",
        "Title",
        "Message",
        "Category",
        "Link",
        "IsRead",
        "CreatedAt",
    ],
}

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Configuration values consumed during workbook setup."""

    data_file: Path
    business_name: str


@dataclass(frozen=True)
class DealerSeed:
    """Dealer profile written into a fresh workbook."""

    user_id: str
    name: str
    is_premium: bool = False


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative ``DataFile`` paths are resolved against the config file's
    directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(data_file=data_file_path, business_name=business_name)


def create_master_workbook(
    destination: Path,
    *,
    dealers: Iterable[DealerSeed] = (),
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    Every collection sheet is created with a bold header row. ``dealers`` are
    written to the ``Profiles`` sheet so farmers and orders can reference
    them immediately. When ``overwrite`` is ``False`` (the default) this
    function raises ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing master workbook: {destination}")

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

    profiles_sheet = workbook[SheetName.PROFILES.value]
    for dealer in dealers:
        profiles_sheet.append([dealer.user_id, dealer.name, ProfileRole.DEALER.value, None, dealer.is_premium])

    workbook.save(destination)
    return destination


def run_from_config(
    config_path: Path,
    *,
    dealer: Optional[DealerSeed] = None,
    overwrite: bool = False,
) -> Path:
    """Create the workbook named by ``config.ini``."""

    settings = load_settings(config_path)
    dealers = [dealer] if dealer is not None else []
    return create_master_workbook(settings.data_file, dealers=dealers, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the poultry ledger workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument("--dealer-id", default=None, help="Seed a dealer profile with this id.")
    parser.add_argument("--dealer-name", default=None, help="Display name for the seeded dealer.")
    parser.add_argument("--premium", action="store_true", help="Mark the seeded dealer as premium.")
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
    dealer = None
    if args.dealer_id:
        dealer = DealerSeed(
            user_id=args.dealer_id,
            name=args.dealer_name or args.dealer_id,
            is_premium=args.premium,
        )

    print("--- Poultry Ledger Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, dealer=dealer, overwrite=args.force)
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

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
