"""
Order and item statuses.

Items carry their own status; the order status is always derived from them
with `derive_order_status`, after every item mutation.
"""

from typing import Iterable, Union

# Item statuses
PENDING = "Pending"
SHIPPED = "Shipped"
DELIVERED = "Delivered"
CANCELLED = "Cancelled"
RETURNED = "Returned"
RETURN_REQUESTED = "Return Requested"
RETURN_REJECTED = "Return Rejected"

# Order-only statuses
PROCESSING = "Processing"
PARTIALLY_CANCELLED = "Partially Cancelled"
PARTIALLY_DELIVERED = "Partially Delivered"
PARTIALLY_RETURNED = "Partially Returned"

# Payment statuses
PAYMENT_PENDING = "Pending"
PAID = "Paid"
PAYMENT_FAILED = "Failed"

WALLET = "Wallet"
CASH_ON_DELIVERY = "Cash on Delivery"
RAZORPAY = "Razorpay"

# Items that no longer hold stock or await anything.
CLOSED_ITEM_STATUSES = frozenset({CANCELLED, RETURNED, RETURN_REJECTED})

# A rejected return leaves the item with the customer, as delivered.
_DELIVERED_LIKE = frozenset({DELIVERED, RETURN_REJECTED})

# Admin-driven whole-order transitions.
ADMIN_TRANSITIONS = {
    PROCESSING: (SHIPPED, CANCELLED),
    SHIPPED: (DELIVERED, CANCELLED),
    DELIVERED: (),
    CANCELLED: (),
}


def _status(item: Union[dict, str]) -> str:
    return item if isinstance(item, str) else item["status"]


def derive_order_status(items: Iterable[Union[dict, str]]) -> str:
    """
    Order status for a set of item statuses (or item dicts).

    All-equal terminal states win first, then any pending return request,
    then the mixed states.
    """
    statuses = [_status(i) for i in items]
    present = set(statuses)
    if not statuses:
        return PROCESSING

    if present == {CANCELLED}:
        return CANCELLED
    if present == {RETURNED}:
        return RETURNED
    if present == {RETURN_REJECTED}:
        return RETURN_REJECTED
    if RETURN_REQUESTED in present:
        return RETURN_REQUESTED

    if RETURNED in present:
        return PARTIALLY_RETURNED

    active = present - {CANCELLED}
    if CANCELLED in present and active <= _DELIVERED_LIKE:
        return PARTIALLY_CANCELLED
    if present <= _DELIVERED_LIKE:
        return DELIVERED
    if active == {SHIPPED}:
        return SHIPPED
    if active == {PENDING}:
        return PROCESSING
    if SHIPPED in present and active & _DELIVERED_LIKE and active <= {SHIPPED} | _DELIVERED_LIKE:
        return PARTIALLY_DELIVERED
    return PROCESSING


def can_transition(current: str, target: str) -> bool:
    return target in ADMIN_TRANSITIONS.get(current, ())
