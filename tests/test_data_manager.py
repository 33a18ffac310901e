"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from receipt_staging import constants, data_manager

from conftest import DEFAULT_BRANCH_ID, OTHER_BRANCH_ID, SEED_PARTS, SEED_SUPPLIERS


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "store" / "config.ini"
    nested = tmp_path / "store" / "terminal" / "logs"
    nested.mkdir(parents=True)
    config_file.write_text("[System]\nDataFile=receipts.xlsx")
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    empty = tmp_path / "empty"
    empty.mkdir()
    monkeypatch.chdir(empty)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "StoreName") == "Test Store"
    assert parser.get("Defaults", "BranchID") == DEFAULT_BRANCH_ID


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.default_branch_id == DEFAULT_BRANCH_ID
    assert settings.default_role == "manager"


def test_parse_settings_uses_default_limits(config_file):
    settings = data_manager.parse_settings(data_manager.read_config(config_file))

    assert settings.max_import_price == constants.MAX_IMPORT_PRICE
    assert settings.max_quantity == constants.MAX_QUANTITY
    assert settings.retail_markup == constants.RETAIL_MARKUP
    assert settings.draft_ttl_hours == constants.DRAFT_TTL_HOURS


def test_parse_settings_reads_limits_section(config_factory):
    bundle = config_factory(
        limits={"MaxImportPrice": 1000, "MaxQuantity": 50, "RetailMarkup": "1.3", "DraftTTLHours": 12}
    )

    settings = data_manager.parse_settings(data_manager.read_config(bundle.config_path))

    assert (settings.max_import_price, settings.max_quantity, settings.draft_ttl_hours) == (1000, 50, 12)
    assert settings.retail_markup == Decimal("1.3")


@pytest.mark.parametrize(
    "limits",
    [{"MaxQuantity": "many"}, {"RetailMarkup": "a lot"}, {"DraftTTLHours": -1}],
)
def test_parse_settings_rejects_bad_limits(config_factory, limits):
    bundle = config_factory(limits=limits)

    with pytest.raises(ValueError):
        data_manager.parse_settings(data_manager.read_config(bundle.config_path))


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=receipts.xlsx\n")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_treats_blank_role_as_unset(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile=r.xlsx\nStoreName=S\nSchemaVersion=1.0.0\n[Defaults]\nBranchID=CN1\nRole=\n"
    )

    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.default_role is None
    assert settings.data_file == (tmp_path / "r.xlsx").resolve()


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(receipts_workbook_path):
    workbook = data_manager.open_workbook(receipts_workbook_path)

    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(workbook.sheetnames) == {sheet.value for sheet in constants.SheetName}


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_creates_parent_folders(receipts_workbook_path, tmp_path):
    workbook = data_manager.open_workbook(receipts_workbook_path)
    destination = tmp_path / "backups" / "nightly" / "copy.xlsx"

    data_manager.save_workbook(workbook, destination)

    assert destination.exists()


def test_refresh_workbook_discards_unsaved_changes(receipts_workbook_path):
    """A refresh should reload what is on disk, not the in-memory edits."""

    workbook = data_manager.open_workbook(receipts_workbook_path)
    data_manager.append_supplier(workbook, data_manager.SupplierRow("NCC777", "Unsaved", None))

    refreshed = data_manager.refresh_workbook(receipts_workbook_path)

    assert refreshed is not workbook
    assert [row.supplier_id for row in data_manager.iter_suppliers(refreshed)] == ["NCC001", "NCC002"]


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------


def test_iter_parts_yields_one_row_per_branch(receipts_workbook_path):
    workbook = data_manager.open_workbook(receipts_workbook_path)

    assert list(data_manager.iter_parts(workbook)) == list(SEED_PARTS)


def test_iter_suppliers_yields_supplier_rows(receipts_workbook_path):
    workbook = data_manager.open_workbook(receipts_workbook_path)

    assert list(data_manager.iter_suppliers(workbook)) == list(SEED_SUPPLIERS)


def test_iterators_skip_blank_rows(receipts_workbook_path):
    workbook = data_manager.open_workbook(receipts_workbook_path)
    sheet = workbook[data_manager.SUPPLIERS_SHEET]
    sheet.append([None, None, None, None, None])
    sheet.append(["NCC003", "After gap", "0901234567", None, None])

    ids = [row.supplier_id for row in data_manager.iter_suppliers(workbook)]

    assert ids == ["NCC001", "NCC002", "NCC003"]


def test_group_parts_folds_branch_prices():
    """Rows for the same part merge into one item keyed by branch."""

    items = data_manager.group_parts(SEED_PARTS)

    assert [item.item_id for item in items] == ["P001", "P002", "P003"]
    brake = items[0]
    assert brake.cost_price == {DEFAULT_BRANCH_ID: 100_000, OTHER_BRANCH_ID: 110_000}
    assert brake.retail_price[OTHER_BRANCH_ID] == 160_000
    assert items[2].category is None
    assert DEFAULT_BRANCH_ID not in items[2].cost_price


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------


def test_append_receipt_rows_round_trip_through_iterators(receipts_workbook_path):
    workbook = data_manager.open_workbook(receipts_workbook_path)
    line = data_manager.ReceiptLineRow(
        "NH-20240501-001", "2024-05-01T09:00:00+00:00", "CN1", None, "P001", "Brake pad", 3, 100, 150, 135, None
    )
    payment = data_manager.ReceiptPaymentRow(
        "NH-20240501-001", "2024-05-01T09:00:00+00:00", "CN1", "NCC001", 300, "cash", "partial", 100, 0, 200, "memo"
    )

    data_manager.append_receipt_line(workbook, line)
    data_manager.append_receipt_payment(workbook, payment)
    data_manager.save_workbook(workbook, receipts_workbook_path)
    reloaded = data_manager.open_workbook(receipts_workbook_path)

    assert list(data_manager.iter_receipt_lines(reloaded)) == [line]
    assert list(data_manager.iter_receipt_payments(reloaded)) == [payment]


def test_update_part_modifies_branch_row_only(receipts_workbook_path):
    workbook = data_manager.open_workbook(receipts_workbook_path)

    data_manager.update_part(workbook, "P001", OTHER_BRANCH_ID, field_values={"CostPrice": 1, "Stock": 9})

    rows = {(row.part_id, row.branch_id): row for row in data_manager.iter_parts(workbook)}
    assert (rows[("P001", OTHER_BRANCH_ID)].cost_price, rows[("P001", OTHER_BRANCH_ID)].stock) == (1, 9)
    assert rows[("P001", DEFAULT_BRANCH_ID)].cost_price == 100_000


def test_update_part_missing_row_raises(receipts_workbook_path):
    workbook = data_manager.open_workbook(receipts_workbook_path)

    with pytest.raises(KeyError):
        data_manager.update_part(workbook, "P003", DEFAULT_BRANCH_ID, field_values={"Stock": 1})


def test_update_part_unknown_column_raises(receipts_workbook_path):
    workbook = data_manager.open_workbook(receipts_workbook_path)

    with pytest.raises(KeyError):
        data_manager.update_part(workbook, "P001", DEFAULT_BRANCH_ID, field_values={"Colour": "red"})


def test_locate_row_compares_as_text(receipts_workbook_path):
    """Numeric cells should still match string keys."""

    workbook = data_manager.open_workbook(receipts_workbook_path)
    data_manager.append_part(
        workbook, data_manager.PartRow("P004", "Bolt", "4711", None, DEFAULT_BRANCH_ID, 1, 2, 2, 0)
    )
    workbook[data_manager.PARTS_SHEET].cell(row=6, column=1, value=4)

    assert data_manager.locate_row(workbook, data_manager.PARTS_SHEET, {"PartID": "4", "BranchID": "CN1"}) == 6
    assert data_manager.locate_row(workbook, data_manager.PARTS_SHEET, {"PartID": "P404"}) is None


def test_locate_row_unknown_column_raises(receipts_workbook_path):
    workbook = data_manager.open_workbook(receipts_workbook_path)

    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.PARTS_SHEET, {"Barcode": "x"})


# ---------------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------------


def test_write_draft_upserts_single_row(receipts_workbook_path):
    workbook = data_manager.open_workbook(receipts_workbook_path)

    data_manager.write_draft(workbook, data_manager.DraftRow("goods_receipt_draft:CN1", "{}", "t1"))
    data_manager.write_draft(workbook, data_manager.DraftRow("goods_receipt_draft:CN1", '{"a": 1}', "t2"))
    data_manager.write_draft(workbook, data_manager.DraftRow("goods_receipt_draft:CN2", "[]", "t3"))

    row = data_manager.read_draft(workbook, "goods_receipt_draft:CN1")
    assert (row.payload, row.saved_at_iso) == ('{"a": 1}', "t2")
    assert workbook[data_manager.DRAFTS_SHEET].max_row == 3


def test_delete_draft_reports_whether_row_existed(receipts_workbook_path):
    workbook = data_manager.open_workbook(receipts_workbook_path)
    data_manager.write_draft(workbook, data_manager.DraftRow("goods_receipt_draft:CN1", "{}", "t1"))

    assert data_manager.delete_draft(workbook, "goods_receipt_draft:CN1") is True
    assert data_manager.delete_draft(workbook, "goods_receipt_draft:CN1") is False
    assert data_manager.read_draft(workbook, "goods_receipt_draft:CN1") is None


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def test_serialize_part_preserves_column_order():
    row = data_manager.serialize_part(SEED_PARTS[0])

    assert row == ["P001", "Brake pad", "BP-01", "Brakes", "CN1", 100_000, 150_000, 135_000, 4]


def test_deserialize_part_coerces_excel_values():
    """Numeric SKUs come back as text and blank amounts as zero."""

    row = data_manager.deserialize_part(["P9", "Washer", 12345, None, "CN1", 1500.0, None, "", 3])

    assert row.sku == "12345"
    assert row.category is None
    assert (row.cost_price, row.retail_price, row.wholesale_price, row.stock) == (1500, 0, 0, 3)


def test_deserialize_part_rejects_non_numeric_amounts():
    with pytest.raises(ValueError):
        data_manager.deserialize_part(["P9", "Washer", "W", None, "CN1", "cheap", 0, 0, 0])


def test_deserialize_supplier_keeps_missing_fields_empty():
    row = data_manager.deserialize_supplier(["NCC5", "Quiet Supplier", None, None, None])

    assert row == data_manager.SupplierRow("NCC5", "Quiet Supplier", None, None, None)
