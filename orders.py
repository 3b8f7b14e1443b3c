"""
Order pricing and lifecycle.

Checkout validates every line, the coupon and the payment source before it
writes anything. The writes that follow (stock, coupon usage, wallet, gateway
order, order document) are each paired with an undo step and rolled back in
reverse if a later one fails.

Order documents are saved with an optimistic `version` check. The order is
saved before stock or wallet side effects run, so a lost race never refunds
twice.
"""

import logging
import os
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from bson import ObjectId

import order_status as st
from addresses import address_snapshot
from cart import cart_items, clear_cart
from coupons import claim_usage, coupon_discount, find_coupon, release_usage, validate_coupon
from database import create_document, paginate, to_object_id, utcnow
from errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
)
from money import final_price, proportional_refund, round_money
from schemas import Order, OrderItem, ReturnRequest
from wallet import balance_of, credit, debit

logger = logging.getLogger(__name__)

DELIVERY_DAYS = int(os.getenv("DELIVERY_DAYS", 5))

PAYMENT_METHODS = (st.WALLET, st.CASH_ON_DELIVERY, st.RAZORPAY)


class _Compensation:
    """Undo steps for writes that span several documents."""

    def __init__(self):
        self._steps = []

    def push(self, fn, *args, **kwargs):
        self._steps.append((fn, args, kwargs))

    def __len__(self):
        return len(self._steps)

    def rollback(self):
        for fn, args, kwargs in reversed(self._steps):
            try:
                fn(*args, **kwargs)
            except Exception:
                logger.exception("Rollback step %s failed", fn.__name__)
        self._steps = []


# ------------------------
# Stock
# ------------------------

def _take_stock(db, product: dict, quantity: int, reserve: bool) -> None:
    """Decrement stock only if it still covers `quantity`; optionally hold it as reserved."""
    inc = {"stock": -quantity}
    if reserve:
        inc["reserved_stock"] = quantity
    res = db["product"].update_one(
        {"_id": product["_id"], "stock": {"$gte": quantity}},
        {"$inc": inc},
    )
    if res.modified_count == 0:
        current = db["product"].find_one({"_id": product["_id"]}, {"stock": 1}) or {}
        raise InsufficientStockError(product["name"], current.get("stock", 0), quantity)


def _return_stock(db, product_id, quantity: int, reserved: bool) -> None:
    inc = {"stock": quantity}
    if reserved:
        inc["reserved_stock"] = -quantity
    db["product"].update_one({"_id": to_object_id(product_id)}, {"$inc": inc})


def _consume_reservation(db, product_id, quantity: int) -> None:
    db["product"].update_one(
        {"_id": to_object_id(product_id)},
        {"$inc": {"reserved_stock": -quantity}},
    )


def _holds_reservation(order: dict) -> bool:
    return order["payment_method"] == st.RAZORPAY and order["payment_status"] == st.PAYMENT_PENDING


# ------------------------
# Pricing
# ------------------------

def _unit_discount(product: dict) -> float:
    """Per-unit offer discount taken from the product's cached best offer."""
    if product.get("best_offer") is None or product.get("discounted_price") is None:
        return 0.0
    price = product["price"]
    return round_money(min(max(price - product["discounted_price"], 0), price))


def _merge_lines(items: Iterable) -> "OrderedDict[str, int]":
    lines = OrderedDict()
    for item in items:
        if isinstance(item, dict):
            product_id, quantity = item["product_id"], item["quantity"]
        else:
            product_id, quantity = item.product_id, item.quantity
        if quantity < 1:
            raise BadRequestError("Quantity must be at least 1.")
        lines[product_id] = lines.get(product_id, 0) + quantity
    return lines


def _price_lines(db, lines) -> Tuple[List[Tuple[dict, int]], List[dict], float, float]:
    """Validate every line against stock and snapshot its prices. Writes nothing."""
    plan = []
    order_items = []
    subtotal = 0.0
    total_discount = 0.0

    for product_id, quantity in lines.items():
        product = db["product"].find_one({"_id": to_object_id(product_id, "product id")})
        if not product:
            raise NotFoundError(f"Product not found for ID: {product_id}")
        if product.get("stock", 0) < quantity:
            raise InsufficientStockError(product["name"], product.get("stock", 0), quantity)

        price = product["price"]
        unit_discount = _unit_discount(product)
        subtotal += price * quantity
        total_discount += unit_discount * quantity

        plan.append((product, quantity))
        order_items.append(OrderItem(
            product=str(product["_id"]),
            name=product["name"],
            quantity=quantity,
            price=price,
            discount=unit_discount,
            total_price=round_money((price - unit_discount) * quantity),
        ).model_dump())

    return plan, order_items, subtotal, total_discount


def _outstanding(order: dict) -> float:
    """Amount still owed on the order: paid and not refunded, or still to collect."""
    return round_money(order["final_price"] - order.get("refunded_amount", 0) - order.get("cancelled_amount", 0))


def _item_refund(order: dict, item: dict) -> float:
    """Line total minus its share of the coupon, capped by what is still outstanding."""
    remaining = _outstanding(order)
    if remaining <= 0:
        return 0.0

    # Last open line: refund the exact remainder so cents cannot drift.
    open_items = [i for i in order["order_items"] if i["status"] not in (st.CANCELLED, st.RETURNED)]
    if not open_items:
        return remaining

    refund = proportional_refund(item["total_price"], order["total_amount"], order.get("coupon_discount", 0))
    return min(refund, remaining)


# ------------------------
# Persistence
# ------------------------

def _load(db, order_id) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order:
        raise NotFoundError("Order not found")
    return order


def _load_owned(db, order_id, user_id: str) -> dict:
    order = _load(db, order_id)
    if order["user_id"] != user_id:
        raise ForbiddenError("You do not have access to this order.")
    return order


def _find_item(order: dict, product_id) -> dict:
    product_id = str(to_object_id(product_id, "product id"))
    for item in order["order_items"]:
        if item["product"] == product_id:
            return item
    raise NotFoundError("Product does not exist in this order.")


def _save(db, order: dict, now: datetime) -> dict:
    """Persist mutable order fields if nobody else saved since we loaded it."""
    order["order_status"] = st.derive_order_status(order["order_items"])
    res = db["order"].update_one(
        {"_id": order["_id"], "version": order["version"]},
        {
            "$set": {
                "order_items": order["order_items"],
                "order_status": order["order_status"],
                "payment_status": order["payment_status"],
                "refunded_amount": round_money(order.get("refunded_amount", 0)),
                "cancelled_amount": round_money(order.get("cancelled_amount", 0)),
                "delivery_by": order.get("delivery_by"),
                "gateway_payment_id": order.get("gateway_payment_id"),
                "updated_at": now,
            },
            "$inc": {"version": 1},
        },
    )
    if res.matched_count == 0:
        raise ConflictError("Order was modified by another request, please retry.")
    order["version"] += 1
    return order


# ------------------------
# Checkout
# ------------------------

def place_order(db, user_id: str, items: Optional[Iterable], shipping_address_id: str,
                payment_method: str, coupon_code: Optional[str] = None, gateway=None,
                now: Optional[datetime] = None) -> dict:
    """
    Build and persist an order.

    `items` are (product_id, quantity) lines; None checks out the user's cart.
    Wallet orders are paid immediately, Razorpay orders stay Pending with their
    stock reserved until `confirm_payment`, Cash on Delivery is paid on delivery.
    """
    now = now or utcnow()
    if payment_method not in PAYMENT_METHODS:
        raise BadRequestError(f"Unsupported payment method: {payment_method}")
    if payment_method == st.RAZORPAY and gateway is None:
        raise BadRequestError("Online payment is not available.")

    lines = _merge_lines(cart_items(db, user_id) if items is None else items)
    if not lines:
        raise BadRequestError("Order must contain at least one item")

    shipping = address_snapshot(db, user_id, shipping_address_id)
    plan, order_items, subtotal, total_discount = _price_lines(db, lines)

    coupon = None
    c_discount = 0.0
    if coupon_code:
        coupon = find_coupon(db, coupon_code)
        validate_coupon(coupon, user_id, subtotal, now)
        c_discount = round_money(coupon_discount(coupon, subtotal))

    total_amount = round_money(subtotal)
    total_discount = round_money(total_discount)
    amount_due = final_price(total_amount, total_discount, c_discount)

    if payment_method == st.WALLET and balance_of(db, user_id) < amount_due:
        raise BadRequestError("Insufficient wallet balance.")
    if payment_method == st.RAZORPAY and amount_due <= 0:
        raise BadRequestError("Nothing to pay online for this order.")

    order_id = ObjectId()
    order = Order(
        user_id=user_id,
        order_items=order_items,
        total_amount=total_amount,
        total_discount=total_discount,
        coupon_code=coupon["code"] if coupon else None,
        coupon_discount=c_discount,
        final_price=amount_due,
        shipping_address=shipping,
        payment_method=payment_method,
        order_status=st.derive_order_status(order_items),
        placed_at=now,
    ).model_dump()
    order["_id"] = order_id

    reserve = payment_method == st.RAZORPAY
    undo = _Compensation()
    try:
        for product, quantity in plan:
            _take_stock(db, product, quantity, reserve)
            undo.push(_return_stock, db, product["_id"], quantity, reserve)

        if coupon:
            claim_usage(db, coupon, user_id)
            undo.push(release_usage, db, coupon["code"], user_id)

        if payment_method == st.WALLET:
            if amount_due > 0:
                debit(db, user_id, amount_due, note=f"Payment for order {order_id}", order_id=str(order_id))
                undo.push(credit, db, user_id, amount_due, note=f"Reversal for order {order_id}",
                          order_id=str(order_id))
            order["payment_status"] = st.PAID
        elif payment_method == st.RAZORPAY:
            order["gateway_order_id"] = gateway.create_order(amount_due)["id"]

        create_document(db, "order", order)
    except Exception:
        logger.warning("Checkout for user %s failed, rolling back %d steps", user_id, len(undo))
        undo.rollback()
        raise

    if not reserve:
        clear_cart(db, user_id)

    logger.info("Order %s placed by %s: %d lines, final %.2f via %s",
                order_id, user_id, len(order_items), amount_due, payment_method)
    return _load(db, order_id)


def confirm_payment(db, user_id: str, gateway_order_id: str, payment_id: str, signature: str,
                    gateway, now: Optional[datetime] = None) -> dict:
    """Finalize a gateway-paid order once the callback signature checks out."""
    now = now or utcnow()
    gateway.verify_signature(gateway_order_id, payment_id, signature)

    order = db["order"].find_one({"gateway_order_id": gateway_order_id})
    if not order:
        raise NotFoundError("Order not found")
    if order["user_id"] != user_id:
        raise ForbiddenError("You do not have access to this order.")
    if order["payment_status"] == st.PAID:
        raise BadRequestError("Payment for this order is already confirmed.")
    if order["payment_status"] == st.PAYMENT_FAILED:
        raise BadRequestError("Payment for this order has failed or the order was cancelled.")

    order["payment_status"] = st.PAID
    order["gateway_payment_id"] = payment_id
    _save(db, order, now)

    for item in order["order_items"]:
        if item["status"] not in st.CLOSED_ITEM_STATUSES:
            _consume_reservation(db, item["product"], item["quantity"])
    clear_cart(db, user_id)

    logger.info("Payment %s confirmed for order %s", payment_id, order["_id"])
    return order


def fail_payment(db, user_id: str, gateway_order_id: str, now: Optional[datetime] = None) -> dict:
    """Abandon a gateway order: release its reservations and coupon use."""
    now = now or utcnow()
    order = db["order"].find_one({"gateway_order_id": gateway_order_id})
    if not order:
        raise NotFoundError("Order not found")
    if order["user_id"] != user_id:
        raise ForbiddenError("You do not have access to this order.")
    if not _holds_reservation(order):
        raise BadRequestError("Payment for this order has already been processed.")

    released = []
    for item in order["order_items"]:
        if item["status"] not in st.CLOSED_ITEM_STATUSES:
            released.append((item["product"], item["quantity"]))
            item["status"] = st.CANCELLED
    order["payment_status"] = st.PAYMENT_FAILED
    _save(db, order, now)

    for product_id, quantity in released:
        _return_stock(db, product_id, quantity, reserved=True)
    if order.get("coupon_code"):
        release_usage(db, order["coupon_code"], user_id)

    logger.info("Payment failed for order %s, released %d lines", order["_id"], len(released))
    return order


# ------------------------
# Cancellation
# ------------------------

def _cancel_whole(db, order: dict, now: datetime) -> dict:
    reserved = _holds_reservation(order)
    released = []
    for item in order["order_items"]:
        if item["status"] not in st.CLOSED_ITEM_STATUSES:
            released.append((item["product"], item["quantity"]))
            item["status"] = st.CANCELLED

    refund = 0.0
    if order["payment_status"] == st.PAID:
        refund = _outstanding(order)
        order["refunded_amount"] = round_money(order.get("refunded_amount", 0) + refund)
    elif reserved:
        order["payment_status"] = st.PAYMENT_FAILED

    _save(db, order, now)

    for product_id, quantity in released:
        _return_stock(db, product_id, quantity, reserved)
    if reserved and order.get("coupon_code"):
        release_usage(db, order["coupon_code"], order["user_id"])
    if refund > 0:
        credit(db, order["user_id"], refund, note=f"Refund for cancelled order {order['_id']}",
               order_id=str(order["_id"]))

    logger.info("Order %s cancelled, %d lines restocked, refund %.2f", order["_id"], len(released), refund)
    return order


def _cancel_item(db, order: dict, product_id, now: datetime) -> dict:
    item = _find_item(order, product_id)
    if item["status"] != st.PENDING:
        raise InvalidTransitionError(item["status"], st.CANCELLED, subject="item")

    if _holds_reservation(order):
        # The gateway order was opened for the full amount.
        raise BadRequestError("Complete or cancel the payment before cancelling individual items.")

    item["status"] = st.CANCELLED

    refund = 0.0
    if order["payment_status"] == st.PAID:
        refund = _item_refund(order, item)
        order["refunded_amount"] = round_money(order.get("refunded_amount", 0) + refund)
    else:
        # Not collected yet: the line's share is no longer due.
        waived = _item_refund(order, item)
        order["cancelled_amount"] = round_money(order.get("cancelled_amount", 0) + waived)

    _save(db, order, now)

    _return_stock(db, item["product"], item["quantity"], reserved=False)
    if refund > 0:
        credit(db, order["user_id"], refund,
               note=f"Refund for {item['name']} in order {order['_id']}", order_id=str(order["_id"]))

    logger.info("Item %s of order %s cancelled, refund %.2f", item["product"], order["_id"], refund)
    return order


def cancel_order(db, user_id: str, order_id, product_id=None, now: Optional[datetime] = None) -> dict:
    """Cancel one pending line (`product_id`) or every line of a not-yet-shipped order."""
    now = now or utcnow()
    order = _load_owned(db, order_id, user_id)
    if order["order_status"] == st.CANCELLED:
        raise BadRequestError("Order is already cancelled.")

    if product_id:
        return _cancel_item(db, order, product_id, now)

    open_statuses = {i["status"] for i in order["order_items"]} - {st.CANCELLED}
    if order["order_status"] in (st.SHIPPED, st.DELIVERED) or open_statuses - {st.PENDING}:
        raise InvalidTransitionError(order["order_status"], st.CANCELLED)
    return _cancel_whole(db, order, now)


# ------------------------
# Returns
# ------------------------

def request_return(db, user_id: str, order_id, product_id, reason: str = "No Reason",
                   now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    order = _load_owned(db, order_id, user_id)
    if order["order_status"] == st.CANCELLED:
        raise BadRequestError("Order is already cancelled.")

    item = _find_item(order, product_id)
    if item["return_request"]["requested"]:
        raise BadRequestError("Return request for this product has already been initiated.")
    if item["status"] != st.DELIVERED:
        raise InvalidTransitionError(item["status"], st.RETURN_REQUESTED, subject="item")

    item["return_request"] = ReturnRequest(requested=True, reason=reason).model_dump()
    item["status"] = st.RETURN_REQUESTED
    _save(db, order, now)

    logger.info("Return requested for %s in order %s", item["product"], order["_id"])
    return order


def process_return(db, order_id, product_id, action: str, now: Optional[datetime] = None) -> dict:
    """Admin decision on a return request: approve restocks and refunds, reject does neither."""
    now = now or utcnow()
    if action not in ("approve", "reject"):
        raise BadRequestError("Invalid action, please use approve or reject")

    order = _load(db, order_id)
    if order["order_status"] == st.CANCELLED:
        raise BadRequestError("Order is already cancelled.")

    item = _find_item(order, product_id)
    request = item["return_request"]
    if not request["requested"]:
        raise BadRequestError("No return request has been initiated.")
    if request["approved"] or request["response_sent"]:
        raise BadRequestError("Return request has already been processed.")
    if item["status"] != st.RETURN_REQUESTED:
        target = st.RETURNED if action == "approve" else st.RETURN_REJECTED
        raise InvalidTransitionError(item["status"], target, subject="item")

    refund = 0.0
    if action == "approve":
        request["approved"] = True
        item["status"] = st.RETURNED
        if order["payment_status"] == st.PAID:
            refund = _item_refund(order, item)
            order["refunded_amount"] = round_money(order.get("refunded_amount", 0) + refund)
    else:
        request["approved"] = False
        item["status"] = st.RETURN_REJECTED
    request["response_sent"] = True

    _save(db, order, now)

    if action == "approve":
        _return_stock(db, item["product"], item["quantity"], reserved=False)
        if refund > 0:
            credit(db, order["user_id"], refund,
                   note=f"Refund for returned {item['name']} in order {order['_id']}",
                   order_id=str(order["_id"]))

    logger.info("Return for %s in order %s %sd, refund %.2f", item["product"], order["_id"], action, refund)
    return order


# ------------------------
# Admin transitions
# ------------------------

_ADVANCES_FROM = {
    st.SHIPPED: (st.PENDING,),
    st.DELIVERED: (st.PENDING, st.SHIPPED),
}


def update_order_status(db, order_id, status: str, now: Optional[datetime] = None) -> dict:
    """Move a whole order along Processing -> Shipped -> Delivered, or cancel it."""
    now = now or utcnow()
    order = _load(db, order_id)
    current = order["order_status"]
    if not st.can_transition(current, status):
        raise InvalidTransitionError(current, status)

    if status == st.CANCELLED:
        return _cancel_whole(db, order, now)

    if order["payment_method"] == st.RAZORPAY and order["payment_status"] != st.PAID:
        raise BadRequestError("Payment for this order has not been confirmed.")

    for item in order["order_items"]:
        if item["status"] in _ADVANCES_FROM[status]:
            item["status"] = status

    if status == st.SHIPPED:
        order["delivery_by"] = now + timedelta(days=DELIVERY_DAYS)
    collect_on_delivery = status == st.DELIVERED and order["payment_method"] == st.CASH_ON_DELIVERY
    if collect_on_delivery:
        order["payment_status"] = st.PAID

    _save(db, order, now)
    if collect_on_delivery:
        logger.info("Collected %.2f on delivery of order %s", _outstanding(order), order["_id"])
    logger.info("Order %s moved from %s to %s", order["_id"], current, order["order_status"])
    return order


# ------------------------
# Reads
# ------------------------

def get_order(db, user_id: str, order_id) -> dict:
    return _load_owned(db, order_id, user_id)


def get_order_admin(db, order_id) -> dict:
    return _load(db, order_id)


def list_user_orders(db, user_id: str, page: int = 1, limit: int = 10) -> dict:
    orders = paginate(db, "order", page, limit, {"user_id": user_id})
    if not orders["result"]:
        raise NotFoundError("No orders found for this user")
    return orders


def list_orders(db, page: int = 1, limit: int = 10) -> dict:
    return paginate(db, "order", page, limit)
