"""
Coupons: admin CRUD, checkout validation and per-user usage accounting.

Usage is counted per user in `users_used`. The global `usage_limit` is stored
and reported but not enforced at checkout; a warning is logged when the
aggregate count passes it.
"""

import logging
from datetime import datetime, time
from typing import Optional

from bson import ObjectId

from database import as_utc, create_document, paginate, to_object_id, utcnow
from errors import ConflictError, CouponError, NotFoundError, ValidationFailedError
from money import PERCENTAGE, discount_amount
from schemas import Coupon, CouponUpdate, CouponUsage

logger = logging.getLogger(__name__)


def _start_of_day(value: datetime) -> datetime:
    return datetime.combine(as_utc(value).date(), time.min)


def _end_of_day(value: datetime) -> datetime:
    return datetime.combine(as_utc(value).date(), time(23, 59, 59, 999000))


def create_coupon(db, payload: Coupon) -> dict:
    if db["coupon"].find_one({"code": payload.code}):
        raise ConflictError("Coupon code already exists.")

    data = payload.model_dump()
    data.update({
        "start_date": _start_of_day(payload.start_date),
        "end_date": _end_of_day(payload.end_date),
        "users_used": [],
        "is_active": True,
    })
    coupon_id = create_document(db, "coupon", data)
    logger.info("Created coupon %s (%s %s)", payload.code, payload.discount_type, payload.discount_value)
    return db["coupon"].find_one({"_id": ObjectId(coupon_id)})


def get_coupon(db, coupon_id) -> dict:
    coupon = db["coupon"].find_one({"_id": to_object_id(coupon_id, "coupon id")})
    if not coupon:
        raise NotFoundError("Coupon not found.")
    return coupon


def list_coupons(db, page: int = 1, limit: int = 10) -> dict:
    return paginate(db, "coupon", page, limit)


def edit_coupon(db, coupon_id, payload: CouponUpdate, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    coupon = get_coupon(db, coupon_id)
    if coupon["end_date"] < now:
        raise ValidationFailedError({"end_date": "Expired coupons cannot be edited."})

    updates = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if "code" in updates:
        updates["code"] = updates["code"].strip().upper()
        clash = db["coupon"].find_one({"code": updates["code"], "_id": {"$ne": coupon["_id"]}})
        if clash:
            raise ConflictError("Coupon code already exists.")
    if "start_date" in updates:
        updates["start_date"] = _start_of_day(updates["start_date"])
    if "end_date" in updates:
        updates["end_date"] = _end_of_day(updates["end_date"])

    merged = {**coupon, **updates}
    errors = {}
    if merged["discount_type"] == PERCENTAGE and merged["discount_value"] > 100:
        errors["discount_value"] = "Percentage discount must be within (0, 100]."
    if merged["end_date"] < merged["start_date"]:
        errors["end_date"] = "End date must be after the start date."
    if errors:
        raise ValidationFailedError(errors)
    if merged["discount_type"] != PERCENTAGE:
        updates["max_discount_amount"] = None

    updates["updated_at"] = now
    db["coupon"].update_one({"_id": coupon["_id"]}, {"$set": updates})
    return get_coupon(db, coupon["_id"])


def toggle_coupon(db, coupon_id) -> dict:
    coupon = get_coupon(db, coupon_id)
    db["coupon"].update_one(
        {"_id": coupon["_id"]},
        {"$set": {"is_active": not coupon["is_active"], "updated_at": utcnow()}},
    )
    return get_coupon(db, coupon["_id"])


# ------------------------
# Checkout
# ------------------------

def find_coupon(db, code: str) -> dict:
    coupon = db["coupon"].find_one({"code": code.strip().upper()})
    if not coupon:
        raise NotFoundError("Invalid coupon code.")
    return coupon


def times_used_by(coupon: dict, user_id: str) -> int:
    for entry in coupon.get("users_used", []):
        if entry["user_id"] == user_id:
            return entry["times_used"]
    return 0


def validate_coupon(coupon: dict, user_id: str, subtotal: float, now: datetime) -> None:
    """Raise CouponError unless `user_id` may apply `coupon` to `subtotal`."""
    if not coupon.get("is_active"):
        raise CouponError("This coupon is no longer active.")
    if now < coupon["start_date"] or now > coupon["end_date"]:
        raise CouponError("This coupon has expired.")
    if subtotal < coupon.get("min_order_amount", 0):
        raise CouponError(
            f"Minimum order amount should be {coupon['min_order_amount']} to use this coupon."
        )
    if times_used_by(coupon, user_id) >= coupon["per_user_limit"]:
        raise CouponError("You have reached the usage limit for this coupon.")


def coupon_discount(coupon: dict, subtotal: float) -> float:
    """Percentage of the subtotal capped by max_discount_amount, never above the subtotal."""
    discount = discount_amount(subtotal, coupon["discount_type"], coupon["discount_value"])
    if coupon["discount_type"] == PERCENTAGE and coupon.get("max_discount_amount"):
        discount = min(discount, coupon["max_discount_amount"])
    return min(discount, subtotal)


def claim_usage(db, coupon: dict, user_id: str) -> None:
    """Atomically count one use for `user_id`, refusing past per_user_limit."""
    limit = coupon["per_user_limit"]
    res = db["coupon"].update_one(
        {"_id": coupon["_id"], "users_used": {"$elemMatch": {"user_id": user_id, "times_used": {"$lt": limit}}}},
        {"$inc": {"users_used.$.times_used": 1}},
    )
    if res.modified_count == 0:
        entry = CouponUsage(user_id=user_id, times_used=1).model_dump()
        res = db["coupon"].update_one(
            {"_id": coupon["_id"], "users_used.user_id": {"$ne": user_id}},
            {"$push": {"users_used": entry}},
        )
    if res.modified_count == 0:
        raise CouponError("You have reached the usage limit for this coupon.")

    updated = db["coupon"].find_one({"_id": coupon["_id"]}, {"users_used": 1, "usage_limit": 1})
    total = sum(e["times_used"] for e in updated.get("users_used", []))
    if total > updated.get("usage_limit", total):
        logger.warning("Coupon %s used %d times, above its usage limit of %d",
                       coupon["code"], total, updated["usage_limit"])


def release_usage(db, coupon_code: str, user_id: str) -> None:
    """Give back one use, e.g. when the order that consumed it never got paid."""
    db["coupon"].update_one(
        {"code": coupon_code, "users_used": {"$elemMatch": {"user_id": user_id, "times_used": {"$gt": 0}}}},
        {"$inc": {"users_used.$.times_used": -1}},
    )
