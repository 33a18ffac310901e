"""Enumerations and default limits shared across the receipt staging modules.

The engine, the workbook data layer and the CLI all read their identifiers
from here so that serialized drafts, workbook columns and command-line choices
stay in agreement.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Ceilings applied by the clamp, in minor currency units and pieces.
MAX_IMPORT_PRICE = 50_000_000
MAX_QUANTITY = 10_000

RETAIL_MARKUP = Decimal("1.5")
WHOLESALE_RATIO = Decimal("0.9")
DRAFT_TTL_HOURS = 24
DRAFT_KEY_PREFIX = "goods_receipt_draft"


class PaymentMethod(str, Enum):
    """How the supplier is paid."""

    CASH = "cash"
    BANK_TRANSFER = "bank"


class PaymentType(str, Enum):
    """How much of the receipt is settled at commit time."""

    FULL = "full"
    PARTIAL = "partial"
    DEFERRED = "note"


class DiscountMode(str, Enum):
    """Interpretation of the operator-entered discount value."""

    AMOUNT = "amount"
    PERCENT = "percent"


class MergeOutcome(str, Enum):
    """Which branch ``LineItemLedger.add_or_merge`` took."""

    ADDED = "added"
    MERGED = "merged"


class PreconditionReason(str, Enum):
    """Machine-readable reasons a commit was refused."""

    EMPTY_LEDGER = "EMPTY_LEDGER"
    MISSING_PAYMENT_METHOD = "MISSING_PAYMENT_METHOD"
    MISSING_PAYMENT_TYPE = "MISSING_PAYMENT_TYPE"
    MISSING_PARTIAL_AMOUNT = "MISSING_PARTIAL_AMOUNT"
    DISCOUNT_EXCEEDS_SUBTOTAL = "DISCOUNT_EXCEEDS_SUBTOTAL"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PARTS = "Parts"
    SUPPLIERS = "Suppliers"
    RECEIPT_LOG = "ReceiptLog"
    RECEIPT_PAYMENTS = "ReceiptPayments"
    DRAFTS = "Drafts"


# Roles allowed to perform each guarded action.
ROLE_POLICIES: dict[str, tuple[str, ...]] = {
    "part.update_price": ("owner", "manager"),
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MAX_IMPORT_PRICE",
    "MAX_QUANTITY",
    "RETAIL_MARKUP",
    "WHOLESALE_RATIO",
    "DRAFT_TTL_HOURS",
    "DRAFT_KEY_PREFIX",
    "PaymentMethod",
    "PaymentType",
    "DiscountMode",
    "MergeOutcome",
    "PreconditionReason",
    "SheetName",
    "ROLE_POLICIES",
]
