"""Workbook-backed collaborators for the staging engine.

The engine in :mod:`core_logic` talks to a catalog, a supplier directory, a
draft store and a commit sink through protocols. This module implements all of
them on top of the receipts workbook handled by :mod:`data_manager`, sharing a
single :class:`RuntimeContext` so every adapter sees the same open workbook
and cache.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from openpyxl.workbook import Workbook

from . import core_logic, data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION


# Excel refuses to store longer strings in a single cell.
MAX_CELL_LENGTH = 32_767


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the adapters."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after a write so the next read rescans the sheet."""

    if not names:
        return
    log.debug("Invalidating cache buckets: %s", ", ".join(names))
    for name in names:
        context._cache.pop(name, None)


def _ensure_parts_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the parts bucket with ``rows``, ``items`` and ``by_id`` on demand."""

    bucket = _get_cache_bucket(context, "parts")
    if "items" not in bucket:
        rows = list(data_manager.iter_parts(context.workbook))
        items = data_manager.group_parts(rows)
        bucket["rows"] = rows
        bucket["items"] = items
        bucket["by_id"] = {item.item_id: item for item in items}
        log.debug("Populated parts cache with %d items (%d rows)", len(items), len(rows))
    return bucket


def _ensure_suppliers_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "suppliers")
    if "all" not in bucket:
        suppliers = list(data_manager.iter_suppliers(context.workbook))
        bucket["all"] = suppliers
        log.debug("Populated suppliers cache with %d entries", len(suppliers))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the working
            directory.

    Returns:
        RuntimeContext: Settings, open workbook and an empty cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work on a workbook declared with another schema version.

    Raises:
        RuntimeError: If the configured schema version differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )
    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Save the in-memory workbook to the configured data file."""

    data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    log.debug("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk and hand back a context with an empty cache."""

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def engine_limits(settings: data_manager.ConfigSettings) -> core_logic.EngineLimits:
    """Translate configured limits into the engine's :class:`EngineLimits`."""

    return core_logic.EngineLimits(
        max_import_price=settings.max_import_price,
        max_quantity=settings.max_quantity,
        retail_markup=settings.retail_markup,
        draft_ttl=timedelta(hours=settings.draft_ttl_hours),
    )


def generate_identifier(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Sortable identifier ``{prefix}{YYYYMMDDHHMMSSffffff}`` in UTC."""

    when = when or datetime.now(UTC)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


class WorkbookCatalog:
    """Catalog snapshot provider and item creator backed by the ``Parts`` sheet."""

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context

    def list_items(self, location_id: str) -> List[data_manager.CatalogItem]:
        # Items without a row for ``location_id`` are still listed; their
        # prices for that branch read as zero when added to a draft.
        return list(_ensure_parts_cache(self.context)["items"])

    def get_item(self, item_id: str) -> data_manager.CatalogItem:
        try:
            return _ensure_parts_cache(self.context)["by_id"][item_id]
        except KeyError as exc:
            log.warning("Part lookup failed for id '%s'", item_id)
            raise core_logic.MissingReferenceError(f"Unknown part id: {item_id}") from exc

    def create_item(self, spec: core_logic.NewItemSpec, location_id: str) -> data_manager.CatalogItem:
        """Append a new part for ``location_id`` with zero stock and save.

        Stock stays at zero until the receipt that introduced the part is
        committed.

        Raises:
            CreationError: If the SKU is already used or the workbook cannot
                be saved.
        """

        sku = spec.sku or ""
        existing = {item.sku.lower() for item in _ensure_parts_cache(self.context)["items"] if item.sku}
        if sku and sku.lower() in existing:
            raise core_logic.CreationError(f"SKU already exists: {sku}")

        record = data_manager.PartRow(
            part_id=generate_identifier("P"),
            part_name=spec.name,
            sku=sku,
            category=spec.category,
            branch_id=location_id,
            cost_price=int(spec.import_price),
            retail_price=int(spec.retail_price or 0),
            wholesale_price=int(spec.wholesale_price or 0),
            stock=0,
        )
        data_manager.append_part(self.context.workbook, record)
        _invalidate_cache(self.context, "parts")
        try:
            persist_context(self.context)
        except OSError as exc:
            raise core_logic.CreationError(f"Could not save new part '{spec.name}': {exc}") from exc
        log.info("Created part '%s' (%s) for branch '%s'", record.part_name, record.part_id, location_id)
        return self.get_item(record.part_id)


class WorkbookSupplierDirectory:
    """Supplier directory backed by the ``Suppliers`` sheet."""

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context

    def list_suppliers(self) -> List[data_manager.SupplierRow]:
        return list(_ensure_suppliers_cache(self.context)["all"])

    def create_supplier(self, spec: core_logic.SupplierSpec) -> data_manager.SupplierRow:
        record = data_manager.SupplierRow(
            supplier_id=generate_identifier("NCC"),
            supplier_name=spec.name.strip(),
            phone=(spec.phone or "").strip() or None,
            address=spec.address,
            note=spec.note,
        )
        data_manager.append_supplier(self.context.workbook, record)
        _invalidate_cache(self.context, "suppliers")
        try:
            persist_context(self.context)
        except OSError as exc:
            raise core_logic.CreationError(f"Could not save supplier '{record.supplier_name}': {exc}") from exc
        log.info("Created supplier '%s' (%s)", record.supplier_name, record.supplier_id)
        return record


class WorkbookDraftStore:
    """Durable key-value slot for draft snapshots on the ``Drafts`` sheet.

    Every write saves the workbook, so a snapshot survives the process.
    Failures surface as :class:`core_logic.PersistenceError`.
    """

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context

    def get(self, key: str) -> Optional[str]:
        try:
            row = data_manager.read_draft(self.context.workbook, key)
        except (KeyError, ValueError) as exc:
            raise core_logic.PersistenceError(f"Cannot read draft '{key}': {exc}") from exc
        return row.payload if row is not None else None

    def set(self, key: str, value: str) -> None:
        if len(value) > MAX_CELL_LENGTH:
            raise core_logic.PersistenceError(
                f"Draft '{key}' is too large to store ({len(value)} characters)"
            )
        record = data_manager.DraftRow(
            draft_key=key,
            payload=value,
            saved_at_iso=datetime.now(UTC).isoformat(),
        )
        self._write(lambda workbook: data_manager.write_draft(workbook, record), key)

    def delete(self, key: str) -> None:
        self._write(lambda workbook: data_manager.delete_draft(workbook, key), key)

    def _write(self, action: Callable[[Workbook], Any], key: str) -> None:
        try:
            action(self.context.workbook)
            persist_context(self.context)
        except (KeyError, ValueError, OSError) as exc:
            raise core_logic.PersistenceError(f"Cannot write draft '{key}': {exc}") from exc


class WorkbookReceiptSink:
    """Commit sink that applies a receipt to the workbook.

    A commit appends one ``ReceiptLog`` row per line and one
    ``ReceiptPayments`` row, refreshes the branch prices of every received
    part, adds the received quantity to stock and saves. If anything fails the
    in-memory workbook is rolled back so a retry starts from the same state.
    """

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context

    def commit(self, request: core_logic.CommitRequest) -> str:
        """Apply ``request`` and return the generated receipt code.

        Raises:
            CommitError: If a line references an unknown part or the workbook
                cannot be saved.
        """

        parts = _ensure_parts_cache(self.context)
        unknown = [line.item_id for line in request.lines if line.item_id not in parts["by_id"]]
        if unknown:
            raise core_logic.CommitError(f"Unknown part(s) in receipt: {', '.join(unknown)}")

        workbook = self.context.workbook
        timestamp = request.created_at
        receipt_code = self.next_receipt_code(timestamp)
        row_counts = {
            name: workbook[name].max_row
            for name in (
                data_manager.PARTS_SHEET,
                data_manager.RECEIPT_LOG_SHEET,
                data_manager.RECEIPT_PAYMENTS_SHEET,
            )
        }
        previous_rows = {
            (row.part_id, row.branch_id): row
            for row in parts["rows"]
            if row.branch_id == request.location_id
        }

        try:
            for line in request.lines:
                self._apply_line(line, request, previous_rows, receipt_code, timestamp)
            settlement_debt = max(0, request.total_amount - request.payment_info.paid_amount)
            data_manager.append_receipt_payment(
                workbook,
                data_manager.ReceiptPaymentRow(
                    receipt_code=receipt_code,
                    timestamp_iso=timestamp.isoformat(),
                    branch_id=request.location_id,
                    supplier_id=request.supplier_id,
                    total_amount=request.total_amount,
                    payment_method=request.payment_info.payment_method.value,
                    payment_type=request.payment_info.payment_type.value,
                    paid_amount=request.payment_info.paid_amount,
                    discount=request.payment_info.discount,
                    debt_amount=settlement_debt,
                    notes=request.note or None,
                ),
            )
            persist_context(self.context)
        except (KeyError, ValueError, OSError) as exc:
            self._rollback(row_counts, previous_rows, request)
            raise core_logic.CommitError(f"Could not record receipt {receipt_code}: {exc}") from exc
        finally:
            _invalidate_cache(self.context, "parts")

        log.info(
            "Recorded receipt '%s' for branch '%s' (%d line(s), total=%s, debt=%s)",
            receipt_code,
            request.location_id,
            len(request.lines),
            request.total_amount,
            settlement_debt,
        )
        return receipt_code

    def next_receipt_code(self, when: datetime) -> str:
        """``NH-YYYYMMDD-NNN`` numbered per day from the existing payment rows."""

        prefix = f"NH-{when.strftime('%Y%m%d')}-"
        used = sum(
            1
            for row in data_manager.iter_receipt_payments(self.context.workbook)
            if row.receipt_code.startswith(prefix)
        )
        return f"{prefix}{used + 1:03d}"

    def _apply_line(
        self,
        line: core_logic.CommitLine,
        request: core_logic.CommitRequest,
        previous_rows: Dict[tuple, data_manager.PartRow],
        receipt_code: str,
        timestamp: datetime,
    ) -> None:
        workbook = self.context.workbook
        current = previous_rows.get((line.item_id, request.location_id))
        if current is None:
            item = _ensure_parts_cache(self.context)["by_id"][line.item_id]
            data_manager.append_part(
                workbook,
                data_manager.PartRow(
                    part_id=line.item_id,
                    part_name=item.name,
                    sku=item.sku,
                    category=item.category,
                    branch_id=request.location_id,
                    cost_price=line.import_unit_price,
                    retail_price=line.retail_unit_price,
                    wholesale_price=line.wholesale_unit_price,
                    stock=line.quantity,
                ),
            )
        else:
            data_manager.update_part(
                workbook,
                line.item_id,
                request.location_id,
                field_values={
                    "CostPrice": line.import_unit_price,
                    "RetailPrice": line.retail_unit_price,
                    "WholesalePrice": line.wholesale_unit_price,
                    "Stock": current.stock + line.quantity,
                },
            )

        data_manager.append_receipt_line(
            workbook,
            data_manager.ReceiptLineRow(
                receipt_code=receipt_code,
                timestamp_iso=timestamp.isoformat(),
                branch_id=request.location_id,
                supplier_id=request.supplier_id,
                part_id=line.item_id,
                part_name=line.item_name,
                quantity=line.quantity,
                import_price=line.import_unit_price,
                retail_price=line.retail_unit_price,
                wholesale_price=line.wholesale_unit_price,
                notes=request.note or None,
            ),
        )

    def _rollback(
        self,
        row_counts: Dict[str, int],
        previous_rows: Dict[tuple, data_manager.PartRow],
        request: core_logic.CommitRequest,
    ) -> None:
        workbook = self.context.workbook
        for sheet_name, max_row in row_counts.items():
            sheet = workbook[sheet_name]
            if sheet.max_row > max_row:
                sheet.delete_rows(max_row + 1, sheet.max_row - max_row)
        for line in request.lines:
            original = previous_rows.get((line.item_id, request.location_id))
            if original is None:
                continue
            data_manager.update_part(
                workbook,
                original.part_id,
                original.branch_id,
                field_values={
                    "CostPrice": original.cost_price,
                    "RetailPrice": original.retail_price,
                    "WholesalePrice": original.wholesale_price,
                    "Stock": original.stock,
                },
            )
        log.warning("Rolled back workbook changes of a failed receipt commit")


def build_session(
    context: RuntimeContext,
    branch_id: Optional[str] = None,
    *,
    authorizer: core_logic.Authorizer = core_logic.can_update_prices,
) -> core_logic.StagingSession:
    """Wire a :class:`core_logic.StagingSession` to workbook-backed collaborators."""

    catalog = WorkbookCatalog(context)
    return core_logic.StagingSession(
        branch_id or context.settings.default_branch_id,
        catalog=catalog,
        item_creator=catalog,
        suppliers=WorkbookSupplierDirectory(context),
        store=WorkbookDraftStore(context),
        sink=WorkbookReceiptSink(context),
        authorizer=authorizer,
        limits=engine_limits(context.settings),
    )
