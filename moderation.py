"""
Moderation rules for products, shops and orders.

Product lifecycle:

    pending --approve--> approved <--toggle_stock--> out_of_stock
    out_of_stock --approve--> approved
    (any) --soft_delete--> deleted      (terminal)

Approval and deletion are orthogonal: soft-deleting never clears the approved
flag, so listings must exclude deleted rows explicitly (see catalog.visibility).

Older rows and clients use "available" for a live product. That token, and the
order-status synonyms below, are resolved here once; everything past the
data-access boundary only sees the enums.
"""

import enum
from typing import NamedTuple, Optional, Tuple

from errors import Conflict, InvalidTransition, ValidationFailed


class ProductStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    OUT_OF_STOCK = "out_of_stock"
    DELETED = "deleted"


PRODUCT_STATUS_SYNONYMS = {
    "available": ProductStatus.APPROVED,
    "in_stock": ProductStatus.APPROVED,
    "outofstock": ProductStatus.OUT_OF_STOCK,
}


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAYMENT_PENDING_VERIFICATION = "payment_pending_verification"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ORDER_STATUS_SYNONYMS = {
    "placed": OrderStatus.PENDING,
    "received": OrderStatus.PENDING,
    "completed": OrderStatus.DELIVERED,
    "canceled": OrderStatus.CANCELLED,
}


class PaymentMethod(str, enum.Enum):
    COD = "cod"
    UPI = "upi"


class ProductAction(str, enum.Enum):
    APPROVE = "approve"
    TOGGLE_STOCK = "toggle_stock"
    MARK_OUT_OF_STOCK = "mark_out_of_stock"
    MARK_AVAILABLE = "mark_available"
    SOFT_DELETE = "soft_delete"


class Transition(NamedTuple):
    status: ProductStatus
    approved: Optional[bool]  # None leaves the flag untouched


_P = ProductStatus

PRODUCT_TRANSITIONS = {
    ProductAction.APPROVE: {
        _P.PENDING: Transition(_P.APPROVED, True),
        _P.APPROVED: Transition(_P.APPROVED, True),
        _P.OUT_OF_STOCK: Transition(_P.APPROVED, True),
    },
    ProductAction.TOGGLE_STOCK: {
        _P.APPROVED: Transition(_P.OUT_OF_STOCK, None),
        _P.OUT_OF_STOCK: Transition(_P.APPROVED, None),
    },
    ProductAction.MARK_OUT_OF_STOCK: {
        _P.APPROVED: Transition(_P.OUT_OF_STOCK, None),
        _P.OUT_OF_STOCK: Transition(_P.OUT_OF_STOCK, None),
    },
    ProductAction.MARK_AVAILABLE: {
        _P.APPROVED: Transition(_P.APPROVED, None),
        _P.OUT_OF_STOCK: Transition(_P.APPROVED, None),
    },
    ProductAction.SOFT_DELETE: {
        _P.PENDING: Transition(_P.DELETED, None),
        _P.APPROVED: Transition(_P.DELETED, None),
        _P.OUT_OF_STOCK: Transition(_P.DELETED, None),
        _P.DELETED: Transition(_P.DELETED, None),
    },
}


def parse_product_status(value: str) -> ProductStatus:
    token = (value or "").strip().lower()
    if token in PRODUCT_STATUS_SYNONYMS:
        return PRODUCT_STATUS_SYNONYMS[token]
    try:
        return ProductStatus(token)
    except ValueError:
        raise ValidationFailed(f"Unknown product status: {value!r}")


def stored_product_values(status: ProductStatus) -> Tuple[str, ...]:
    """Every raw column value that reads back as `status`."""
    legacy = tuple(k for k, v in PRODUCT_STATUS_SYNONYMS.items() if v is status)
    return (status.value,) + legacy


def next_product_state(current: ProductStatus, action: ProductAction) -> Transition:
    allowed = PRODUCT_TRANSITIONS[action]
    if current not in allowed:
        raise InvalidTransition(
            f"Cannot {action.value.replace('_', ' ')} a product that is {current.value}"
        )
    return allowed[current]


def action_for_requested_status(requested: str) -> ProductAction:
    """Map a status written by a client on a product edit to the action it means.

    Approval is not reachable this way; it has its own admin endpoint.
    """
    status = parse_product_status(requested)
    if status is ProductStatus.DELETED:
        return ProductAction.SOFT_DELETE
    if status is ProductStatus.OUT_OF_STOCK:
        return ProductAction.MARK_OUT_OF_STOCK
    if status is ProductStatus.APPROVED:
        return ProductAction.MARK_AVAILABLE
    raise ValidationFailed(f"Status {requested!r} cannot be set on a product edit")


def parse_order_status(value: str) -> OrderStatus:
    token = (value or "").strip().lower()
    if token in ORDER_STATUS_SYNONYMS:
        return ORDER_STATUS_SYNONYMS[token]
    try:
        return OrderStatus(token)
    except ValueError:
        raise ValidationFailed(f"Unknown order status: {value!r}")


def initial_order_status(payment_method: Optional[PaymentMethod]) -> OrderStatus:
    if payment_method is PaymentMethod.UPI:
        return OrderStatus.PAYMENT_PENDING_VERIFICATION
    return OrderStatus.PENDING


def ensure_no_existing_shop(existing) -> None:
    # One shop per owner; there is no unique constraint behind this.
    if existing is not None:
        raise Conflict("Shop already exists for this owner")
