"""Business logic layer for goods-receipt staging.

This module contains the rule engine behind the purchasing screen: it clamps
operator input, keeps the draft's line items, derives retail prices, mirrors
the draft into a durable key-value store, computes the settlement and hands a
validated commit request to the catalog. Every external system is reached
through the small protocols declared here; :mod:`workbook_backend` provides
workbook-backed implementations of them.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple, Union

from . import log
from .constants import (
    DRAFT_KEY_PREFIX,
    DRAFT_TTL_HOURS,
    MAX_IMPORT_PRICE,
    MAX_QUANTITY,
    RETAIL_MARKUP,
    ROLE_POLICIES,
    WHOLESALE_RATIO,
    DiscountMode,
    MergeOutcome,
    PaymentMethod,
    PaymentType,
    PreconditionReason,
)
from .data_manager import CatalogItem, SupplierRow


Number = Union[int, float, Decimal]


class StagingError(Exception):
    """Base class for every error raised by the staging engine."""


class PreconditionFailure(StagingError):
    """Raised when a commit is refused because the draft is incomplete."""

    def __init__(self, reason: PreconditionReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class CreationError(StagingError):
    """Raised when creating a catalog item or supplier on the fly fails."""


class CommitError(StagingError):
    """Raised when the commit sink rejects a receipt."""


class PersistenceError(StagingError):
    """Raised by draft stores when a snapshot cannot be read or written."""


class MissingReferenceError(StagingError):
    """Raised when a scanned code or referenced entity is unknown."""


@dataclass(frozen=True)
class EngineLimits:
    """Numeric policy applied by the clamp, the derivation rule and recovery."""

    max_import_price: int = MAX_IMPORT_PRICE
    max_quantity: int = MAX_QUANTITY
    retail_markup: Decimal = RETAIL_MARKUP
    wholesale_ratio: Decimal = WHOLESALE_RATIO
    draft_ttl: timedelta = timedelta(hours=DRAFT_TTL_HOURS)


DEFAULT_LIMITS = EngineLimits()


@dataclass(frozen=True)
class ClampResult:
    """Clamped price and quantity plus advisory warnings for the operator."""

    clean_import_price: int
    clean_quantity: int
    warnings: Tuple[str, ...] = ()


@dataclass
class LineItem:
    """One row of the draft receipt. Prices are integer minor units."""

    item_id: str
    display_name: str
    sku: str
    quantity: int = 1
    import_unit_price: int = 0
    retail_unit_price: int = 0
    wholesale_unit_price: int = 0
    price_was_manually_set: bool = False

    @property
    def line_total(self) -> int:
        return self.import_unit_price * self.quantity


EDITABLE_FIELDS: Tuple[str, ...] = (
    "quantity",
    "import_unit_price",
    "retail_unit_price",
    "wholesale_unit_price",
)


@dataclass(frozen=True)
class SettlementInput:
    """Payment choices made by the operator; nothing here is derived."""

    payment_method: Optional[PaymentMethod] = None
    payment_type: Optional[PaymentType] = None
    partial_amount_paid: int = 0


@dataclass(frozen=True)
class Settlement:
    """Totals of a draft for a given discount and payment choice."""

    subtotal: int
    total_amount: int
    paid_amount: int

    @property
    def remaining_balance(self) -> int:
        return max(0, self.total_amount - self.paid_amount)


@dataclass(frozen=True)
class CommitLine:
    item_id: str
    item_name: str
    quantity: int
    import_unit_price: int
    retail_unit_price: int
    wholesale_unit_price: int


@dataclass(frozen=True)
class PaymentInfo:
    payment_method: PaymentMethod
    payment_type: PaymentType
    paid_amount: int
    discount: int


@dataclass(frozen=True)
class CommitRequest:
    """Finalized receipt handed to the commit sink. Immutable once built."""

    location_id: str
    lines: Tuple[CommitLine, ...]
    supplier_id: Optional[str]
    total_amount: int
    note: str
    payment_info: PaymentInfo
    created_at: datetime


@dataclass(frozen=True)
class DraftSnapshot:
    """Serializable copy of a draft as written to the durable store."""

    line_items: Tuple[LineItem, ...]
    supplier_id: Optional[str]
    discount: Number
    discount_mode: DiscountMode
    saved_at: datetime

    def is_empty(self) -> bool:
        return not self.line_items and not self.supplier_id

    def age(self, now: datetime) -> timedelta:
        return now - self.saved_at


@dataclass(frozen=True)
class NewItemSpec:
    """Operator input for a catalog item created in the middle of a receipt.

    ``retail_price``, ``wholesale_price`` and ``sku`` are optional; the session
    fills them from the import price, the retail price and the clock.
    """

    name: str
    import_price: Number
    quantity: Number = 1
    retail_price: Optional[Number] = None
    wholesale_price: Optional[Number] = None
    sku: Optional[str] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class SupplierSpec:
    name: str
    phone: Optional[str] = None
    address: Optional[str] = None
    note: Optional[str] = None


class CatalogProvider(Protocol):
    def list_items(self, location_id: str) -> Sequence[CatalogItem]:
        ...


class CatalogItemCreator(Protocol):
    def create_item(self, spec: NewItemSpec, location_id: str) -> CatalogItem:
        ...


class SupplierDirectory(Protocol):
    def list_suppliers(self) -> Sequence[SupplierRow]:
        ...

    def create_supplier(self, spec: SupplierSpec) -> SupplierRow:
        ...


class DraftStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class CommitSink(Protocol):
    def commit(self, request: CommitRequest) -> Optional[str]:
        ...


Authorizer = Callable[[Optional[str]], bool]


def round_half_up(value: Number) -> int:
    """Round to the nearest integer, halves away from zero."""

    return int(Decimal(str(value)).to_integral_value(rounding=ROUND_HALF_UP))


def _clean_whole(value: Number, ceiling: int) -> Tuple[int, bool]:
    """Return ``value`` rounded into ``0..ceiling`` and whether it was capped."""

    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return 0, False
    if amount.is_nan():
        return 0, False
    if amount <= 0:
        return 0, False
    # Checked before rounding: huge values must not reach the decimal context.
    if amount >= ceiling + Decimal("0.5"):
        return ceiling, True
    return round_half_up(amount), False


def clamp(import_price: Number, quantity: Number, limits: EngineLimits = DEFAULT_LIMITS) -> ClampResult:
    """Bound an import price and a quantity to the configured safe range.

    Both inputs are rounded half-up to whole numbers and negative values are
    floored to zero. Values above the ceilings are capped and a human-readable
    warning is recorded for each capped input. The function never raises for
    numeric input; callers decide whether to surface the warnings.

    Args:
        import_price (int | float | Decimal): Raw import unit price in minor
            currency units.
        quantity (int | float | Decimal): Raw quantity.
        limits (EngineLimits): Ceilings to enforce.

    Returns:
        ClampResult: The cleaned values and zero or more warnings.
    """

    warnings: List[str] = []
    price, price_capped = _clean_whole(import_price, limits.max_import_price)
    if price_capped:
        warnings.append(
            f"Import price is above the {limits.max_import_price:,} limit and was capped."
        )
    qty, qty_capped = _clean_whole(quantity, limits.max_quantity)
    if qty_capped:
        warnings.append(
            f"Quantity is above the {limits.max_quantity:,} limit and was capped."
        )
    return ClampResult(clean_import_price=price, clean_quantity=qty, warnings=tuple(warnings))


def derive_retail_price(import_price: int, markup: Decimal = RETAIL_MARKUP) -> int:
    """Suggested retail price for an import price: ``round(import * markup)``."""

    return round_half_up(Decimal(import_price) * Decimal(markup))


def resolve_discount(subtotal: int, value: Number, mode: DiscountMode = DiscountMode.AMOUNT) -> int:
    """Translate the operator's discount entry into minor units.

    In ``AMOUNT`` mode the (rounded) value is used as is. In ``PERCENT`` mode
    the value is bounded to ``0..100`` and applied to ``subtotal``.

    Raises:
        ValueError: If ``value`` is negative.
    """

    if Decimal(str(value)) < 0:
        raise ValueError("Discount must be zero or positive")
    if mode == DiscountMode.PERCENT:
        percent = min(Decimal(str(value)), Decimal(100))
        return round_half_up(Decimal(subtotal) * percent / Decimal(100))
    return round_half_up(value)


def normalize_discount_entry(value: Number, mode: DiscountMode) -> Number:
    """Keep a percentage as entered and round an amount to minor units."""

    if mode == DiscountMode.PERCENT:
        percent = Decimal(str(value))
        return int(percent) if percent == percent.to_integral_value() else percent
    return round_half_up(value)


class LineItemLedger:
    """Ordered collection of draft line items, one line per catalog item.

    Iteration follows insertion order, which is also the order shown to the
    operator and the order of the committed receipt lines.
    """

    def __init__(self, lines: Iterable[LineItem] = ()) -> None:
        self._lines: Dict[str, LineItem] = {}
        for line in lines:
            if line.item_id in self._lines:
                raise ValueError(f"Duplicate line for item '{line.item_id}'")
            self._lines[line.item_id] = line

    def __iter__(self) -> Iterator[LineItem]:
        return iter(list(self._lines.values()))

    def __len__(self) -> int:
        return len(self._lines)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._lines

    def lines(self) -> List[LineItem]:
        return list(self._lines.values())

    def get(self, item_id: str) -> Optional[LineItem]:
        return self._lines.get(item_id)

    def is_empty(self) -> bool:
        return not self._lines

    def clear(self) -> None:
        self._lines.clear()

    def add_or_merge(self, catalog_item: CatalogItem, location_id: str) -> MergeOutcome:
        """Add ``catalog_item`` as a new line or bump the quantity of its line.

        A new line is seeded with the item's cost, retail and wholesale price
        for ``location_id``; missing prices default to zero.

        Returns:
            MergeOutcome: ``MERGED`` when an existing line was incremented,
                ``ADDED`` when a line was appended.
        """

        existing = self._lines.get(catalog_item.item_id)
        if existing is not None:
            existing.quantity += 1
            log.debug("Merged '%s' into existing line (quantity=%d)", catalog_item.item_id, existing.quantity)
            return MergeOutcome.MERGED

        self._lines[catalog_item.item_id] = LineItem(
            item_id=catalog_item.item_id,
            display_name=catalog_item.name,
            sku=catalog_item.sku,
            quantity=1,
            import_unit_price=int(catalog_item.cost_price.get(location_id, 0) or 0),
            retail_unit_price=int(catalog_item.retail_price.get(location_id, 0) or 0),
            wholesale_unit_price=int(catalog_item.wholesale_price.get(location_id, 0) or 0),
        )
        log.debug("Added line for '%s'", catalog_item.item_id)
        return MergeOutcome.ADDED

    def update(self, item_id: str, field_name: str, value: int) -> Optional[LineItem]:
        """Replace one editable field of one line.

        Unknown ``item_id`` values are ignored so stale references from the UI
        cannot crash the engine. Writing ``retail_unit_price`` marks the line
        as manually priced.

        Returns:
            LineItem | None: The updated line, or ``None`` for unknown ids.

        Raises:
            ValueError: If ``field_name`` is not editable or ``value`` is out of
                range for the field.
        """

        if field_name not in EDITABLE_FIELDS:
            raise ValueError(f"Field '{field_name}' is not editable")
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"Field '{field_name}' expects an integer, got {value!r}")
        minimum = 1 if field_name == "quantity" else 0
        if value < minimum:
            raise ValueError(f"Field '{field_name}' must be at least {minimum}")

        line = self._lines.get(item_id)
        if line is None:
            log.debug("Ignoring update of '%s' on unknown line '%s'", field_name, item_id)
            return None

        setattr(line, field_name, value)
        if field_name == "retail_unit_price":
            line.price_was_manually_set = True
        return line

    def reprice(self, item_id: str, import_price: int, markup: Decimal = RETAIL_MARKUP) -> Optional[LineItem]:
        """Set the import price of a line and re-derive its retail price.

        The retail price follows the import price only while the line has not
        been priced by hand.
        """

        line = self.update(item_id, "import_unit_price", import_price)
        if line is not None and not line.price_was_manually_set:
            line.retail_unit_price = derive_retail_price(import_price, markup)
        return line

    def remove(self, item_id: str) -> bool:
        """Remove the line for ``item_id``; returns whether a line existed."""

        return self._lines.pop(item_id, None) is not None

    def subtotal(self) -> int:
        return sum(line.import_unit_price * line.quantity for line in self._lines.values())


def compute_settlement(ledger: LineItemLedger, discount: int, settlement_input: SettlementInput) -> Settlement:
    """Derive subtotal, discounted total and paid amount for a draft.

    The total never drops below zero, whatever the discount. An unset payment
    type is treated as ``FULL``. For ``PARTIAL`` payments the paid amount is
    exactly what the operator entered; the remaining balance is always
    recomputed from the totals.

    Args:
        ledger (LineItemLedger): Draft lines.
        discount (int): Discount in minor units.
        settlement_input (SettlementInput): Operator payment choices.

    Returns:
        Settlement: Derived totals.

    Raises:
        ValueError: If ``discount`` is negative.
    """

    if discount < 0:
        raise ValueError("Discount must be zero or positive")

    subtotal = ledger.subtotal()
    total_amount = max(0, subtotal - discount)
    payment_type = settlement_input.payment_type or PaymentType.FULL
    if payment_type == PaymentType.FULL:
        paid_amount = total_amount
    elif payment_type == PaymentType.PARTIAL:
        paid_amount = settlement_input.partial_amount_paid
    else:
        paid_amount = 0
    return Settlement(subtotal=subtotal, total_amount=total_amount, paid_amount=paid_amount)


def can_do(role: Optional[str], action: str) -> bool:
    """Check ``role`` against the policy table; unknown roles are refused."""

    if not role:
        return False
    return role in ROLE_POLICIES.get(action, ())


def can_update_prices(role: Optional[str]) -> bool:
    return can_do(role, "part.update_price")


PHONE_PATTERN = re.compile(r"^(0|\+84)[0-9]{9,10}$")


def validate_phone_number(phone: str) -> Optional[str]:
    """Return an error message for an invalid phone number, else ``None``.

    Accepted forms are ``0`` or ``+84`` followed by nine or ten digits;
    whitespace inside the number is ignored.
    """

    if not phone or not phone.strip():
        return "Phone number must not be empty"
    cleaned = re.sub(r"\s+", "", phone.strip())
    if not PHONE_PATTERN.match(cleaned):
        return "Phone number must have 10-11 digits, e.g. 0912345678"
    return None


def _line_to_dict(line: LineItem) -> Dict[str, Any]:
    return {
        "itemId": line.item_id,
        "displayName": line.display_name,
        "sku": line.sku,
        "quantity": line.quantity,
        "importUnitPrice": line.import_unit_price,
        "retailUnitPrice": line.retail_unit_price,
        "wholesaleUnitPrice": line.wholesale_unit_price,
        "priceWasManuallySet": line.price_was_manually_set,
    }


def _line_from_dict(raw: Dict[str, Any]) -> LineItem:
    return LineItem(
        item_id=str(raw["itemId"]),
        display_name=str(raw.get("displayName", "")),
        sku=str(raw.get("sku", "")),
        quantity=max(1, int(raw.get("quantity", 1))),
        import_unit_price=max(0, int(raw.get("importUnitPrice", 0))),
        retail_unit_price=max(0, int(raw.get("retailUnitPrice", 0))),
        wholesale_unit_price=max(0, int(raw.get("wholesaleUnitPrice", 0))),
        price_was_manually_set=bool(raw.get("priceWasManuallySet", False)),
    )


def serialize_snapshot(snapshot: DraftSnapshot) -> str:
    """Encode a snapshot as the JSON document kept in the draft store."""

    return json.dumps(
        {
            "lineItems": [_line_to_dict(line) for line in snapshot.line_items],
            "supplierId": snapshot.supplier_id,
            "discount": snapshot.discount if isinstance(snapshot.discount, int) else str(snapshot.discount),
            "discountMode": snapshot.discount_mode.value,
            "savedAt": snapshot.saved_at.isoformat(),
        },
        ensure_ascii=False,
    )


def deserialize_snapshot(payload: str) -> DraftSnapshot:
    """Decode a stored snapshot.

    Timestamps without an offset are read as UTC. Duplicate lines for the same
    item are folded into the first one by summing quantities.

    Raises:
        PersistenceError: If the payload is not a valid snapshot document.
    """

    try:
        raw = json.loads(payload)
        lines: Dict[str, LineItem] = {}
        for entry in raw.get("lineItems", []):
            line = _line_from_dict(entry)
            if line.item_id in lines:
                lines[line.item_id].quantity += line.quantity
            else:
                lines[line.item_id] = line
        saved_at = datetime.fromisoformat(raw["savedAt"])
        if saved_at.tzinfo is None:
            saved_at = saved_at.replace(tzinfo=UTC)
        supplier_id = raw.get("supplierId") or None
        discount_mode = DiscountMode(raw.get("discountMode", DiscountMode.AMOUNT.value))
        return DraftSnapshot(
            line_items=tuple(lines.values()),
            supplier_id=str(supplier_id) if supplier_id is not None else None,
            discount=max(0, normalize_discount_entry(raw.get("discount", 0), discount_mode)),
            discount_mode=discount_mode,
            saved_at=saved_at,
        )
    except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError, InvalidOperation) as exc:
        raise PersistenceError(f"Unreadable draft snapshot: {exc}") from exc


def draft_key_for(location_id: str) -> str:
    return f"{DRAFT_KEY_PREFIX}:{location_id}"


class StagingSession:
    """The draft receipt of one location and the operator actions on it.

    A session starts empty. :meth:`open` looks for a recoverable snapshot, and
    every mutation afterwards is mirrored into the draft store. Store failures
    are logged and never interrupt the in-memory draft. :meth:`commit` is
    all-or-nothing: the draft is only cleared once the sink accepted it.
    """

    def __init__(
        self,
        location_id: str,
        *,
        catalog: CatalogProvider,
        store: DraftStore,
        sink: CommitSink,
        item_creator: Optional[CatalogItemCreator] = None,
        suppliers: Optional[SupplierDirectory] = None,
        authorizer: Authorizer = can_update_prices,
        limits: EngineLimits = DEFAULT_LIMITS,
    ) -> None:
        self.location_id = location_id
        self.catalog = catalog
        self.store = store
        self.sink = sink
        self.item_creator = item_creator
        self.suppliers = suppliers
        self.authorizer = authorizer
        self.limits = limits

        self.ledger = LineItemLedger()
        self.supplier_id: Optional[str] = None
        self.discount: Number = 0
        self.discount_mode = DiscountMode.AMOUNT
        self.settlement_input = SettlementInput()
        self.saved_at: Optional[datetime] = None
        self.last_commit_reference: Optional[str] = None
        self._pending_recovery: Optional[DraftSnapshot] = None

    @property
    def draft_key(self) -> str:
        return draft_key_for(self.location_id)

    @property
    def pending_recovery(self) -> Optional[DraftSnapshot]:
        return self._pending_recovery

    def is_empty(self) -> bool:
        return self.ledger.is_empty() and not self.supplier_id

    # ------------------------------------------------------------------
    # Draft persistence
    # ------------------------------------------------------------------

    def open(self) -> Optional[DraftSnapshot]:
        """Read the stored draft and decide whether it can be recovered.

        Snapshots older than ``limits.draft_ttl`` are deleted without being
        offered. A fresh, non-empty snapshot is kept as the pending recovery
        and returned so the caller can ask the operator.

        Returns:
            DraftSnapshot | None: The snapshot offered for recovery, if any.
        """

        try:
            payload = self.store.get(self.draft_key)
        except (PersistenceError, OSError) as exc:
            log.warning("Draft store unavailable for '%s': %s", self.draft_key, exc)
            return None
        if not payload:
            return None

        try:
            snapshot = deserialize_snapshot(payload)
        except PersistenceError as exc:
            log.warning("Discarding unreadable draft '%s': %s", self.draft_key, exc)
            self._delete_snapshot()
            return None

        age = snapshot.age(datetime.now(UTC))
        if age > self.limits.draft_ttl:
            log.info("Discarding stale draft '%s' (age %s)", self.draft_key, age)
            self._delete_snapshot()
            return None
        if snapshot.is_empty():
            return None

        log.info(
            "Draft '%s' with %d line(s) is available for recovery",
            self.draft_key,
            len(snapshot.line_items),
        )
        self._pending_recovery = snapshot
        return snapshot

    def resolve_recovery(self, accept: bool) -> bool:
        """Apply or drop the snapshot offered by :meth:`open`.

        Returns:
            bool: ``True`` when a snapshot was restored into the draft.
        """

        snapshot = self._pending_recovery
        self._pending_recovery = None
        if snapshot is None:
            return False
        if not accept:
            log.info("Operator declined draft recovery for '%s'", self.draft_key)
            self._delete_snapshot()
            return False

        self.ledger = LineItemLedger(replace(line) for line in snapshot.line_items)
        self.supplier_id = snapshot.supplier_id
        self.discount = snapshot.discount
        self.discount_mode = snapshot.discount_mode
        self.saved_at = snapshot.saved_at
        log.info("Recovered draft '%s' with %d line(s)", self.draft_key, len(self.ledger))
        return True

    def snapshot(self, saved_at: Optional[datetime] = None) -> DraftSnapshot:
        return DraftSnapshot(
            line_items=tuple(replace(line) for line in self.ledger),
            supplier_id=self.supplier_id,
            discount=self.discount,
            discount_mode=self.discount_mode,
            saved_at=saved_at if saved_at is not None else datetime.now(UTC),
        )

    def _before_mutation(self) -> None:
        # Editing before answering the recovery prompt starts a new draft.
        if self._pending_recovery is not None:
            self.resolve_recovery(False)

    def _persist(self) -> None:
        if self.is_empty():
            self._delete_snapshot()
            return
        try:
            snapshot = self.snapshot()
            self.store.set(self.draft_key, serialize_snapshot(snapshot))
        except (PersistenceError, OSError, TypeError, ValueError) as exc:
            log.warning("Could not save draft '%s': %s", self.draft_key, exc)
            return
        self.saved_at = snapshot.saved_at

    def _delete_snapshot(self) -> None:
        try:
            self.store.delete(self.draft_key)
        except (PersistenceError, OSError) as exc:
            log.warning("Could not delete draft '%s': %s", self.draft_key, exc)

    # ------------------------------------------------------------------
    # Catalog lookups and line items
    # ------------------------------------------------------------------

    def catalog_items(self) -> List[CatalogItem]:
        return list(self.catalog.list_items(self.location_id))

    def search(self, term: str) -> List[CatalogItem]:
        """Catalog items whose name or SKU contains ``term`` (case-insensitive)."""

        items = self.catalog_items()
        query = (term or "").strip().lower()
        if not query:
            return items
        return [item for item in items if query in item.name.lower() or query in item.sku.lower()]

    def scan(self, code: str) -> MergeOutcome:
        """Add the item matching a scanned barcode or typed SKU.

        An exact SKU match wins; otherwise the first item whose name contains
        the code is used.

        Raises:
            MissingReferenceError: If nothing matches ``code``.
        """

        query = (code or "").strip().lower()
        if not query:
            raise MissingReferenceError("Nothing to look up: the scanned code is empty")
        items = self.catalog_items()
        match = next((item for item in items if item.sku.lower() == query), None)
        if match is None:
            match = next((item for item in items if query in item.name.lower()), None)
        if match is None:
            log.warning("No catalog item matches code '%s'", code)
            raise MissingReferenceError(f"No item found for code: {code}")
        return self.add_item(match)

    def add_item(self, catalog_item: CatalogItem) -> MergeOutcome:
        self._before_mutation()
        outcome = self.ledger.add_or_merge(catalog_item, self.location_id)
        log.info("%s '%s' on draft '%s'", outcome.value.capitalize(), catalog_item.name, self.draft_key)
        self._persist()
        return outcome

    def edit_quantity(self, item_id: str, quantity: Number) -> Tuple[str, ...]:
        """Set a line's quantity through the clamp; a line keeps at least one piece."""

        line = self.ledger.get(item_id)
        if line is None:
            return ()
        self._before_mutation()
        result = clamp(line.import_unit_price, quantity, self.limits)
        self.ledger.update(item_id, "quantity", max(1, result.clean_quantity))
        self._report(result.warnings)
        self._persist()
        return result.warnings

    def edit_import_price(self, item_id: str, import_price: Number) -> Tuple[str, ...]:
        """Set a line's import price through the clamp and re-derive retail."""

        line = self.ledger.get(item_id)
        if line is None:
            return ()
        self._before_mutation()
        result = clamp(import_price, line.quantity, self.limits)
        self.ledger.reprice(item_id, result.clean_import_price, self.limits.retail_markup)
        self._report(result.warnings)
        self._persist()
        return result.warnings

    def edit_retail_price(self, item_id: str, retail_price: Number) -> None:
        if item_id not in self.ledger:
            return
        self._before_mutation()
        self.ledger.update(item_id, "retail_unit_price", max(0, round_half_up(retail_price)))
        self._persist()

    def edit_wholesale_price(self, item_id: str, wholesale_price: Number) -> None:
        if item_id not in self.ledger:
            return
        self._before_mutation()
        self.ledger.update(item_id, "wholesale_unit_price", max(0, round_half_up(wholesale_price)))
        self._persist()

    def remove_item(self, item_id: str) -> None:
        if item_id not in self.ledger:
            return
        self._before_mutation()
        self.ledger.remove(item_id)
        log.info("Removed '%s' from draft '%s'", item_id, self.draft_key)
        self._persist()

    def _report(self, warnings: Sequence[str]) -> None:
        for message in warnings:
            log.warning("%s", message)

    def create_and_add_item(self, spec: NewItemSpec) -> LineItem:
        """Create a catalog item, then merge it into the draft.

        The ledger is only touched after the creator returned, so a failed
        creation leaves the draft exactly as it was.

        Args:
            spec (NewItemSpec): Operator input for the new item.

        Returns:
            LineItem: The draft line now holding the created item.

        Raises:
            CreationError: If the name is empty, no creator is configured or
                the creator fails.
        """

        if self.item_creator is None:
            raise CreationError("Creating items is not available for this session")
        if not spec.name or not spec.name.strip():
            raise CreationError("A new item needs a name")

        prepared = self._prepare_new_item(spec)
        try:
            created = self.item_creator.create_item(prepared, self.location_id)
        except CreationError as exc:
            log.error("Could not create item '%s': %s", spec.name, exc)
            raise

        self._before_mutation()
        outcome = self.ledger.add_or_merge(created, self.location_id)
        line = self.ledger.get(created.item_id)
        if outcome == MergeOutcome.ADDED:
            quantity = round_half_up(prepared.quantity)
            line.quantity = max(1, quantity)
        if spec.retail_price is not None:
            line.price_was_manually_set = True
        log.info("Created item '%s' (%s) and added it to draft '%s'", created.name, created.item_id, self.draft_key)
        self._persist()
        return line

    def _prepare_new_item(self, spec: NewItemSpec) -> NewItemSpec:
        result = clamp(spec.import_price, spec.quantity, self.limits)
        self._report(result.warnings)
        if spec.retail_price is None:
            retail = derive_retail_price(result.clean_import_price, self.limits.retail_markup)
        else:
            retail = max(0, round_half_up(spec.retail_price))
        if spec.wholesale_price is None:
            wholesale = round_half_up(Decimal(retail) * self.limits.wholesale_ratio)
        else:
            wholesale = max(0, round_half_up(spec.wholesale_price))
        sku = (spec.sku or "").strip() or f"SKU-{int(datetime.now(UTC).timestamp() * 1000)}"
        return replace(
            spec,
            name=spec.name.strip(),
            import_price=result.clean_import_price,
            quantity=max(1, result.clean_quantity),
            retail_price=retail,
            wholesale_price=wholesale,
            sku=sku,
        )

    # ------------------------------------------------------------------
    # Supplier and settlement inputs
    # ------------------------------------------------------------------

    def choose_supplier(self, supplier_id: Optional[str]) -> None:
        self._before_mutation()
        self.supplier_id = supplier_id or None
        self._persist()

    def list_suppliers(self) -> List[SupplierRow]:
        if self.suppliers is None:
            return []
        return list(self.suppliers.list_suppliers())

    def create_supplier(self, spec: SupplierSpec) -> SupplierRow:
        """Create a supplier and make it the draft's supplier.

        Raises:
            CreationError: If the input is invalid, no directory is configured
                or the directory fails.
        """

        if self.suppliers is None:
            raise CreationError("Creating suppliers is not available for this session")
        if not spec.name or not spec.name.strip():
            raise CreationError("Supplier name must not be empty")
        if spec.phone:
            problem = validate_phone_number(spec.phone)
            if problem:
                raise CreationError(problem)

        try:
            supplier = self.suppliers.create_supplier(spec)
        except CreationError as exc:
            log.error("Could not create supplier '%s': %s", spec.name, exc)
            raise

        self.choose_supplier(supplier.supplier_id)
        return supplier

    def set_discount(self, value: Number, mode: Optional[DiscountMode] = None) -> None:
        """Record the discount entry; negative values are rejected with ``ValueError``."""

        if Decimal(str(value)) < 0:
            raise ValueError("Discount must be zero or positive")
        self._before_mutation()
        self.discount_mode = mode or self.discount_mode
        self.discount = normalize_discount_entry(value, self.discount_mode)
        self._persist()

    def resolved_discount(self) -> int:
        return resolve_discount(self.ledger.subtotal(), self.discount, self.discount_mode)

    def choose_payment_method(self, method: Optional[PaymentMethod]) -> None:
        self.settlement_input = replace(self.settlement_input, payment_method=method)

    def choose_payment_type(self, payment_type: Optional[PaymentType]) -> None:
        partial = self.settlement_input.partial_amount_paid
        if payment_type != PaymentType.PARTIAL:
            partial = 0
        self.settlement_input = replace(
            self.settlement_input,
            payment_type=payment_type,
            partial_amount_paid=partial,
        )

    def set_partial_amount(self, amount: Number) -> None:
        self.settlement_input = replace(
            self.settlement_input,
            partial_amount_paid=max(0, round_half_up(amount)),
        )

    def settlement(self) -> Settlement:
        return compute_settlement(self.ledger, self.resolved_discount(), self.settlement_input)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def validate_commit(self, role: Optional[str]) -> None:
        """Check that the draft can be committed; the first failure wins.

        Raises:
            PreconditionFailure: With the reason of the first failed check.
        """

        choice = self.settlement_input
        if self.ledger.is_empty():
            self._refuse(PreconditionReason.EMPTY_LEDGER, "Add at least one item to the receipt")
        if choice.payment_method is None:
            self._refuse(PreconditionReason.MISSING_PAYMENT_METHOD, "Choose a payment method")
        if choice.payment_type is None:
            self._refuse(PreconditionReason.MISSING_PAYMENT_TYPE, "Choose a payment type")
        if choice.payment_type == PaymentType.PARTIAL and choice.partial_amount_paid <= 0:
            self._refuse(PreconditionReason.MISSING_PARTIAL_AMOUNT, "Enter the amount paid now")
        if self.resolved_discount() > self.ledger.subtotal():
            self._refuse(
                PreconditionReason.DISCOUNT_EXCEEDS_SUBTOTAL,
                f"Discount must not exceed the subtotal ({self.ledger.subtotal():,})",
            )
        if not self.authorizer(role):
            self._refuse(PreconditionReason.NOT_AUTHORIZED, "You are not allowed to update prices")

    def _refuse(self, reason: PreconditionReason, message: str) -> None:
        log.warning("Commit refused for draft '%s': %s", self.draft_key, message)
        raise PreconditionFailure(reason, message)

    def build_commit_request(self, note: str = "") -> CommitRequest:
        discount = self.resolved_discount()
        settlement = compute_settlement(self.ledger, discount, self.settlement_input)
        choice = self.settlement_input
        return CommitRequest(
            location_id=self.location_id,
            lines=tuple(
                CommitLine(
                    item_id=line.item_id,
                    item_name=line.display_name,
                    quantity=line.quantity,
                    import_unit_price=line.import_unit_price,
                    retail_unit_price=line.retail_unit_price,
                    wholesale_unit_price=line.wholesale_unit_price,
                )
                for line in self.ledger
            ),
            supplier_id=self.supplier_id,
            total_amount=settlement.total_amount,
            note=note or "",
            payment_info=PaymentInfo(
                payment_method=choice.payment_method or PaymentMethod.CASH,
                payment_type=choice.payment_type or PaymentType.FULL,
                paid_amount=settlement.paid_amount,
                discount=discount,
            ),
            created_at=datetime.now(UTC),
        )

    def commit(self, role: Optional[str], note: str = "") -> CommitRequest:
        """Validate the draft, hand it to the sink and clear it.

        Args:
            role (str | None): Role of the operator, checked against the
                authorizer.
            note (str): Free text stored with the receipt.

        Returns:
            CommitRequest: The request the sink accepted.

        Raises:
            PreconditionFailure: If a precondition fails; the sink is not called.
            CommitError: If the sink rejects the request; the draft and its
                snapshot are left untouched.
        """

        self.validate_commit(role)
        request = self.build_commit_request(note)
        try:
            reference = self.sink.commit(request)
        except CommitError as exc:
            log.error("Commit of draft '%s' failed: %s", self.draft_key, exc)
            raise

        self.last_commit_reference = reference
        log.info(
            "Committed draft '%s' as '%s' (%d line(s), total=%s, paid=%s)",
            self.draft_key,
            reference,
            len(request.lines),
            request.total_amount,
            request.payment_info.paid_amount,
        )
        self._reset()
        self._delete_snapshot()
        return request

    def discard(self) -> None:
        """Drop the draft and its stored snapshot."""

        self._pending_recovery = None
        self._reset()
        self._delete_snapshot()
        log.info("Discarded draft '%s'", self.draft_key)

    def _reset(self) -> None:
        self.ledger = LineItemLedger()
        self.supplier_id = None
        self.discount = 0
        self.discount_mode = DiscountMode.AMOUNT
        self.settlement_input = SettlementInput()
        self.saved_at = None
