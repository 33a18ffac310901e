"""Data access layer for the receipt staging engine.

This module provides low-level helpers that read from and write to the
receipts workbook. Business rules belong in :mod:`core_logic`; wiring the
workbook into the engine's collaborators happens in :mod:`workbook_backend`.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating or
   deleting individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DRAFT_TTL_HOURS,
    MAX_IMPORT_PRICE,
    MAX_QUANTITY,
    RETAIL_MARKUP,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
PARTS_SHEET = SheetName.PARTS.value
SUPPLIERS_SHEET = SheetName.SUPPLIERS.value
RECEIPT_LOG_SHEET = SheetName.RECEIPT_LOG.value
RECEIPT_PAYMENTS_SHEET = SheetName.RECEIPT_PAYMENTS.value
DRAFTS_SHEET = SheetName.DRAFTS.value


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_branch_id: str
    default_role: Optional[str] = None
    max_import_price: int = MAX_IMPORT_PRICE
    max_quantity: int = MAX_QUANTITY
    retail_markup: Decimal = RETAIL_MARKUP
    draft_ttl_hours: int = DRAFT_TTL_HOURS


@dataclass(frozen=True)
class PartRow:
    """In-memory view of a row from the ``Parts`` sheet (one part, one branch)."""

    part_id: str
    part_name: str
    sku: str
    category: Optional[str]
    branch_id: str
    cost_price: int
    retail_price: int
    wholesale_price: int
    stock: int


@dataclass(frozen=True)
class CatalogItem:
    """A part as seen by the staging engine, with prices keyed by branch."""

    item_id: str
    name: str
    sku: str
    category: Optional[str] = None
    cost_price: Mapping[str, int] = field(default_factory=dict)
    retail_price: Mapping[str, int] = field(default_factory=dict)
    wholesale_price: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SupplierRow:
    """In-memory view of a row from the ``Suppliers`` sheet."""

    supplier_id: str
    supplier_name: str
    phone: Optional[str]
    address: Optional[str] = None
    note: Optional[str] = None


@dataclass(frozen=True)
class ReceiptLineRow:
    """One committed line on the ``ReceiptLog`` sheet."""

    receipt_code: str
    timestamp_iso: str
    branch_id: str
    supplier_id: Optional[str]
    part_id: str
    part_name: str
    quantity: int
    import_price: int
    retail_price: int
    wholesale_price: int
    notes: Optional[str]


@dataclass(frozen=True)
class ReceiptPaymentRow:
    """Settlement summary of one committed receipt on ``ReceiptPayments``."""

    receipt_code: str
    timestamp_iso: str
    branch_id: str
    supplier_id: Optional[str]
    total_amount: int
    payment_method: str
    payment_type: str
    paid_amount: int
    discount: int
    debt_amount: int
    notes: Optional[str]


@dataclass(frozen=True)
class DraftRow:
    """Serialized draft snapshot stored on the ``Drafts`` sheet."""

    draft_key: str
    payload: str
    saved_at_iso: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in the current
            directory or any of its parents.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults]`` are mandatory. The ``[Limits]`` section is
    optional and every entry in it falls back to the package defaults. A
    relative ``DataFile`` is anchored at ``base_path`` (or the working
    directory when omitted).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings with an absolute data file path.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If a ``[Limits]`` entry cannot be parsed or is negative.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_branch = parser.get("Defaults", "BranchID")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    default_role = parser.get("Defaults", "Role", fallback="").strip() or None

    try:
        max_import_price = parser.getint("Limits", "MaxImportPrice", fallback=MAX_IMPORT_PRICE)
        max_quantity = parser.getint("Limits", "MaxQuantity", fallback=MAX_QUANTITY)
        retail_markup = Decimal(parser.get("Limits", "RetailMarkup", fallback=str(RETAIL_MARKUP)))
        draft_ttl_hours = parser.getint("Limits", "DraftTTLHours", fallback=DRAFT_TTL_HOURS)
    except (ValueError, InvalidOperation) as exc:
        raise ValueError(f"Invalid [Limits] configuration entry: {exc}") from exc

    if min(max_import_price, max_quantity, draft_ttl_hours) < 0 or retail_markup < 0:
        raise ValueError("Configured limits must not be negative")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_branch_id=default_branch,
        default_role=default_role,
        max_import_price=max_import_price,
        max_quantity=max_quantity,
        retail_markup=retail_markup,
        draft_ttl_hours=draft_ttl_hours,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the receipts workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
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


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_parts(workbook: Workbook) -> Iterable[PartRow]:
    """Iterate over the ``Parts`` worksheet, one record per part and branch."""

    for raw in _iter_sheet(workbook, PARTS_SHEET):
        yield deserialize_part(raw)


def iter_suppliers(workbook: Workbook) -> Iterable[SupplierRow]:
    """Iterate over the ``Suppliers`` worksheet."""

    for raw in _iter_sheet(workbook, SUPPLIERS_SHEET):
        yield deserialize_supplier(raw)


def iter_receipt_lines(workbook: Workbook) -> Iterable[ReceiptLineRow]:
    """Stream committed receipt lines in the order they were appended."""

    for raw in _iter_sheet(workbook, RECEIPT_LOG_SHEET):
        yield deserialize_receipt_line(raw)


def iter_receipt_payments(workbook: Workbook) -> Iterable[ReceiptPaymentRow]:
    """Stream committed receipt payment rows."""

    for raw in _iter_sheet(workbook, RECEIPT_PAYMENTS_SHEET):
        yield deserialize_receipt_payment(raw)


def group_parts(rows: Iterable[PartRow]) -> List[CatalogItem]:
    """Fold per-branch part rows into catalog items with per-branch prices.

    The first row seen for a part fixes its name, SKU and category; later rows
    only contribute prices for their own branch. Output keeps first-seen order.
    """

    grouped: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        entry = grouped.get(row.part_id)
        if entry is None:
            entry = {
                "name": row.part_name,
                "sku": row.sku,
                "category": row.category,
                "cost": {},
                "retail": {},
                "wholesale": {},
            }
            grouped[row.part_id] = entry
        entry["cost"][row.branch_id] = row.cost_price
        entry["retail"][row.branch_id] = row.retail_price
        entry["wholesale"][row.branch_id] = row.wholesale_price

    return [
        CatalogItem(
            item_id=part_id,
            name=entry["name"],
            sku=entry["sku"],
            category=entry["category"],
            cost_price=entry["cost"],
            retail_price=entry["retail"],
            wholesale_price=entry["wholesale"],
        )
        for part_id, entry in grouped.items()
    ]


def append_part(workbook: Workbook, record: PartRow) -> None:
    """Append a part/branch record to the ``Parts`` worksheet."""

    workbook[PARTS_SHEET].append(serialize_part(record))


def append_supplier(workbook: Workbook, record: SupplierRow) -> None:
    """Append a supplier record to the ``Suppliers`` worksheet."""

    workbook[SUPPLIERS_SHEET].append(serialize_supplier(record))


def append_receipt_line(workbook: Workbook, record: ReceiptLineRow) -> None:
    """Append a committed line to the ``ReceiptLog`` worksheet."""

    workbook[RECEIPT_LOG_SHEET].append(serialize_receipt_line(record))


def append_receipt_payment(workbook: Workbook, record: ReceiptPaymentRow) -> None:
    """Append a receipt settlement row to the ``ReceiptPayments`` worksheet."""

    workbook[RECEIPT_PAYMENTS_SHEET].append(serialize_receipt_payment(record))


def update_part(workbook: Workbook, part_id: str, branch_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of the row for ``part_id`` at ``branch_id``.

    Args:
        workbook (Workbook): Workbook containing the parts sheet.
        part_id (str): Part identifier.
        branch_id (str): Branch whose row should change.
        field_values (Mapping[str, Any]): Column title to replacement value.

    Raises:
        KeyError: If the row or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, PARTS_SHEET, {"PartID": part_id, "BranchID": branch_id})
    if row_index is None:
        raise KeyError(f"Part not found: {part_id} at branch {branch_id}")

    sheet = workbook[PARTS_SHEET]
    header_map = _header_map(sheet)
    for column, value in field_values.items():
        if column not in header_map:
            raise KeyError(f"Unknown part field: {column}")
        sheet.cell(row=row_index, column=header_map[column], value=value)


def read_draft(workbook: Workbook, draft_key: str) -> Optional[DraftRow]:
    """Return the stored draft for ``draft_key`` or ``None``."""

    for raw in _iter_sheet(workbook, DRAFTS_SHEET):
        row = deserialize_draft(raw)
        if row.draft_key == draft_key:
            return row
    return None


def write_draft(workbook: Workbook, record: DraftRow) -> None:
    """Insert or overwrite the single draft row for ``record.draft_key``."""

    row_index = locate_row(workbook, DRAFTS_SHEET, {"DraftKey": record.draft_key})
    sheet = workbook[DRAFTS_SHEET]
    if row_index is None:
        sheet.append(serialize_draft(record))
        return
    for column_index, value in enumerate(serialize_draft(record), start=1):
        sheet.cell(row=row_index, column=column_index, value=value)


def delete_draft(workbook: Workbook, draft_key: str) -> bool:
    """Remove the draft row for ``draft_key``; returns whether one existed."""

    row_index = locate_row(workbook, DRAFTS_SHEET, {"DraftKey": draft_key})
    if row_index is None:
        return False
    workbook[DRAFTS_SHEET].delete_rows(row_index)
    return True


def _header_map(sheet: Any) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, keys: Mapping[str, object]) -> Optional[int]:
    """Find the first row whose cells match every entry of ``keys``.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        keys (Mapping[str, object]): Header title to expected cell value.

    Returns:
        int | None: 1-based Excel row index when a match is found.

    Raises:
        KeyError: If a key column is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    positions = {}
    for column, value in keys.items():
        if column not in header_map:
            raise KeyError(f"Unknown column: {column}")
        positions[header_map[column] - 1] = value

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if all(_cell_text(row[pos]) == str(value) for pos, value in positions.items()):
            return row_idx

    return None


def _cell_text(value: object) -> Optional[str]:
    return None if value is None else str(value)


def _to_int(raw: object) -> int:
    """Coerce a worksheet cell into an integer amount; blanks become zero."""

    if raw is None or raw == "":
        return 0
    try:
        return int(Decimal(str(raw)))
    except InvalidOperation as exc:
        log.error("Non-numeric worksheet value: %r", raw)
        raise ValueError(f"Expected a numeric cell value, got {raw!r}") from exc


def _optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def serialize_part(record: PartRow) -> list[object]:
    """Arrange a part record as ``[PartID, PartName, SKU, Category, BranchID,
    CostPrice, RetailPrice, WholesalePrice, Stock]``."""

    return [
        record.part_id,
        record.part_name,
        record.sku,
        record.category,
        record.branch_id,
        record.cost_price,
        record.retail_price,
        record.wholesale_price,
        record.stock,
    ]


def serialize_supplier(record: SupplierRow) -> list[object]:
    return [record.supplier_id, record.supplier_name, record.phone, record.address, record.note]


def serialize_receipt_line(record: ReceiptLineRow) -> list[object]:
    return [
        record.receipt_code,
        record.timestamp_iso,
        record.branch_id,
        record.supplier_id,
        record.part_id,
        record.part_name,
        record.quantity,
        record.import_price,
        record.retail_price,
        record.wholesale_price,
        record.notes,
    ]


def serialize_receipt_payment(record: ReceiptPaymentRow) -> list[object]:
    return [
        record.receipt_code,
        record.timestamp_iso,
        record.branch_id,
        record.supplier_id,
        record.total_amount,
        record.payment_method,
        record.payment_type,
        record.paid_amount,
        record.discount,
        record.debt_amount,
        record.notes,
    ]


def serialize_draft(record: DraftRow) -> list[object]:
    return [record.draft_key, record.payload, record.saved_at_iso]


def deserialize_part(raw_row: Sequence[object]) -> PartRow:
    """Convert a raw ``Parts`` row into a :class:`PartRow`.

    Identifiers are coerced to ``str`` because Excel happily turns numeric SKUs
    into numbers; amounts become ``int`` with blanks read as zero.
    """

    part_id, part_name, sku, category, branch_id, cost, retail, wholesale, stock = raw_row[:9]
    return PartRow(
        part_id=str(part_id),
        part_name=str(part_name) if part_name is not None else "",
        sku=str(sku) if sku is not None else "",
        category=_optional_text(category),
        branch_id=str(branch_id),
        cost_price=_to_int(cost),
        retail_price=_to_int(retail),
        wholesale_price=_to_int(wholesale),
        stock=_to_int(stock),
    )


def deserialize_supplier(raw_row: Sequence[object]) -> SupplierRow:
    supplier_id, supplier_name, phone, address, note = raw_row[:5]
    return SupplierRow(
        supplier_id=str(supplier_id),
        supplier_name=str(supplier_name) if supplier_name is not None else "",
        phone=_optional_text(phone),
        address=_optional_text(address),
        note=_optional_text(note),
    )


def deserialize_receipt_line(raw_row: Sequence[object]) -> ReceiptLineRow:
    (
        receipt_code,
        timestamp_iso,
        branch_id,
        supplier_id,
        part_id,
        part_name,
        quantity,
        import_price,
        retail_price,
        wholesale_price,
        notes,
    ) = raw_row[:11]
    return ReceiptLineRow(
        receipt_code=str(receipt_code),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        branch_id=str(branch_id),
        supplier_id=_optional_text(supplier_id),
        part_id=str(part_id),
        part_name=str(part_name) if part_name is not None else "",
        quantity=_to_int(quantity),
        import_price=_to_int(import_price),
        retail_price=_to_int(retail_price),
        wholesale_price=_to_int(wholesale_price),
        notes=_optional_text(notes),
    )


def deserialize_receipt_payment(raw_row: Sequence[object]) -> ReceiptPaymentRow:
    (
        receipt_code,
        timestamp_iso,
        branch_id,
        supplier_id,
        total_amount,
        payment_method,
        payment_type,
        paid_amount,
        discount,
        debt_amount,
        notes,
    ) = raw_row[:11]
    return ReceiptPaymentRow(
        receipt_code=str(receipt_code),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        branch_id=str(branch_id),
        supplier_id=_optional_text(supplier_id),
        total_amount=_to_int(total_amount),
        payment_method=str(payment_method) if payment_method is not None else "",
        payment_type=str(payment_type) if payment_type is not None else "",
        paid_amount=_to_int(paid_amount),
        discount=_to_int(discount),
        debt_amount=_to_int(debt_amount),
        notes=_optional_text(notes),
    )


def deserialize_draft(raw_row: Sequence[object]) -> DraftRow:
    draft_key, payload, saved_at_iso = raw_row[:3]
    return DraftRow(
        draft_key=str(draft_key),
        payload=str(payload) if payload is not None else "",
        saved_at_iso=str(saved_at_iso) if saved_at_iso is not None else "",
    )
