"""
Offer resolution.

Products collect the ids of every offer that targets them (directly or through
their brand) in `applicable_offers`. `resolve_best_offer` picks the single
largest active discount out of that list and caches it on the product as
`best_offer` / `discounted_price`; checkout reads the cached value.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Set, Tuple

from bson import ObjectId

from database import as_utc, create_document, paginate, to_object_id, utcnow
from errors import NotFoundError, ValidationFailedError
from money import AMOUNT, discount_amount, discounted_price
from schemas import Offer, OfferUpdate

logger = logging.getLogger(__name__)


def offer_is_active(offer: dict, now: datetime) -> bool:
    """Listed by an admin and inside its validity window."""
    if not offer.get("is_listed", True):
        return False
    return offer["start_date"] <= now <= offer["end_date"]


def select_best_offer(price: float, offers: Iterable[dict],
                      now: datetime) -> Tuple[Optional[dict], Optional[float]]:
    """
    Return (offer, discounted price) for the largest active discount.

    Ties keep the offer seen first, so callers must pass offers in
    `applicable_offers` order.
    """
    best = None
    best_discount = 0.0
    for offer in offers:
        if not offer_is_active(offer, now):
            continue
        discount = discount_amount(price, offer["discount_type"], offer["discount_value"])
        if best is None or discount > best_discount:
            best = offer
            best_discount = discount

    if best is None:
        return None, None
    return best, discounted_price(price, best_discount)


def resolve_best_offer(db, product_id, now: Optional[datetime] = None) -> None:
    """Recompute and persist `best_offer` and `discounted_price` for a product."""
    now = now or utcnow()
    pid = to_object_id(product_id, "product id")

    product = db["product"].find_one({"_id": pid})
    if not product:
        # Deleted while an offer pointing at it was being edited.
        logger.debug("resolve_best_offer: product %s not found, skipping", pid)
        return

    offer_ids = product.get("applicable_offers") or []
    by_id = {}
    if offer_ids:
        by_id = {o["_id"]: o for o in db["offer"].find({"_id": {"$in": offer_ids}})}
    ordered = [by_id[oid] for oid in offer_ids if oid in by_id]

    best, price = select_best_offer(product["price"], ordered, now)
    db["product"].update_one(
        {"_id": pid},
        {"$set": {
            "best_offer": best["_id"] if best else None,
            "discounted_price": price,
            "updated_at": now,
        }},
    )
    logger.debug("Product %s best offer -> %s (%s)", pid, best["_id"] if best else None, price)


# ------------------------
# Targets and fan-out
# ------------------------

def _target_products(db, target: dict) -> List[ObjectId]:
    if target["kind"] == "Product":
        return [target["id"]]
    return [p["_id"] for p in db["product"].find({"brand": target["id"]}, {"_id": 1})]


def _check_target(db, kind: str, target_id: ObjectId) -> dict:
    collection = "product" if kind == "Product" else "brand"
    doc = db[collection].find_one({"_id": target_id})
    if not doc:
        raise NotFoundError(f"{kind} not found. Please provide a valid {kind} ID.")
    return doc


def _check_amount(target_doc: dict, kind: str, discount_type: str, discount_value: float) -> None:
    if kind == "Product" and discount_type == AMOUNT and discount_value > target_doc["price"]:
        raise ValidationFailedError({
            "discount_value": "Discount amount cannot exceed the product price.",
        })


def _attach(db, offer_id: ObjectId, product_ids: List[ObjectId]) -> None:
    if product_ids:
        db["product"].update_many(
            {"_id": {"$in": product_ids}},
            {"$addToSet": {"applicable_offers": offer_id}},
        )


def _detach(db, offer_id: ObjectId, product_ids: List[ObjectId]) -> None:
    if product_ids:
        db["product"].update_many(
            {"_id": {"$in": product_ids}},
            {"$pull": {"applicable_offers": offer_id}},
        )


def _resolve_all(db, product_ids: Iterable, now: datetime) -> None:
    for pid in product_ids:
        resolve_best_offer(db, pid, now)


def brand_offer_ids(db, brand_id: ObjectId, now: Optional[datetime] = None) -> List[ObjectId]:
    """Ids of brand offers a newly created product of that brand should carry."""
    now = now or utcnow()
    cursor = db["offer"].find(
        {"target.kind": "Brand", "target.id": brand_id, "end_date": {"$gte": now}},
        {"_id": 1},
    ).sort("created_at", 1)
    return [o["_id"] for o in cursor]


# ------------------------
# Admin operations
# ------------------------

def create_offer(db, payload: Offer, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    target_id = to_object_id(payload.target.id, "target id")
    target_doc = _check_target(db, payload.target.kind, target_id)
    _check_amount(target_doc, payload.target.kind, payload.discount_type, payload.discount_value)

    doc = {
        "name": payload.name.strip(),
        "target": {"kind": payload.target.kind, "id": target_id},
        "discount_type": payload.discount_type,
        "discount_value": payload.discount_value,
        "start_date": as_utc(payload.start_date),
        "end_date": as_utc(payload.end_date),
        "is_listed": True,
        "created_at": now,
    }
    doc["is_active"] = offer_is_active(doc, now)
    offer_id = ObjectId(create_document(db, "offer", doc))

    product_ids = _target_products(db, doc["target"])
    _attach(db, offer_id, product_ids)
    _resolve_all(db, product_ids, now)

    logger.info("Created %s offer %s on %s %s (%d products)",
                doc["discount_type"], offer_id, doc["target"]["kind"], target_id, len(product_ids))
    return db["offer"].find_one({"_id": offer_id})


def get_offer(db, offer_id) -> dict:
    offer = db["offer"].find_one({"_id": to_object_id(offer_id, "offer id")})
    if not offer:
        raise NotFoundError("Offer not found.")
    return offer


def list_offers(db, page: int = 1, limit: int = 10) -> dict:
    return paginate(db, "offer", page, limit)


def edit_offer(db, offer_id, payload: OfferUpdate, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    offer = get_offer(db, offer_id)

    if offer["end_date"] < now:
        raise ValidationFailedError({"end_date": "Expired offers cannot be edited."})

    old_target = offer["target"]
    target = old_target
    if payload.target is not None:
        target = {"kind": payload.target.kind, "id": to_object_id(payload.target.id, "target id")}

    updates = payload.model_dump(exclude_unset=True, exclude={"target"})
    merged = {**offer, **{k: v for k, v in updates.items() if v is not None}, "target": target}
    merged["start_date"] = as_utc(merged["start_date"])
    merged["end_date"] = as_utc(merged["end_date"])

    errors = {}
    if merged["discount_type"] == "percentage" and merged["discount_value"] > 100:
        errors["discount_value"] = "Percentage discount must be within (0, 100]."
    if merged["end_date"] < merged["start_date"]:
        errors["end_date"] = "End date must be after the start date."
    if errors:
        raise ValidationFailedError(errors)

    target_doc = _check_target(db, target["kind"], target["id"])
    _check_amount(target_doc, target["kind"], merged["discount_type"], merged["discount_value"])

    changes = {
        "name": merged["name"],
        "target": target,
        "discount_type": merged["discount_type"],
        "discount_value": merged["discount_value"],
        "start_date": merged["start_date"],
        "end_date": merged["end_date"],
        "is_active": offer_is_active(merged, now),
        "updated_at": now,
    }
    db["offer"].update_one({"_id": offer["_id"]}, {"$set": changes})

    affected: Set[ObjectId] = set(_target_products(db, target))
    if target != old_target:
        old_products = _target_products(db, old_target)
        _detach(db, offer["_id"], old_products)
        _attach(db, offer["_id"], list(affected))
        affected.update(old_products)
    _resolve_all(db, affected, now)

    logger.info("Edited offer %s (%d products re-resolved)", offer["_id"], len(affected))
    return db["offer"].find_one({"_id": offer["_id"]})


def toggle_offer(db, offer_id, now: Optional[datetime] = None) -> dict:
    """Flip the admin listing flag and re-resolve every product carrying the offer."""
    now = now or utcnow()
    offer = get_offer(db, offer_id)
    offer["is_listed"] = not offer.get("is_listed", True)
    db["offer"].update_one(
        {"_id": offer["_id"]},
        {"$set": {
            "is_listed": offer["is_listed"],
            "is_active": offer_is_active(offer, now),
            "updated_at": now,
        }},
    )
    product_ids = [p["_id"] for p in db["product"].find({"applicable_offers": offer["_id"]}, {"_id": 1})]
    _resolve_all(db, product_ids, now)
    logger.info("Offer %s %s", offer["_id"], "listed" if offer["is_listed"] else "unlisted")
    return db["offer"].find_one({"_id": offer["_id"]})


# ------------------------
# Periodic sweep
# ------------------------

def sweep_offers(db, now: Optional[datetime] = None) -> dict:
    """
    Bring stored `is_active` flags in line with the clock, drop expired offers
    from `applicable_offers` and re-resolve every product that was touched.
    """
    now = now or utcnow()
    affected: Set[ObjectId] = set()

    drifted = db["offer"].find({"$or": [
        {"is_active": True, "end_date": {"$lt": now}},
        {"is_active": True, "start_date": {"$gt": now}},
        {"is_active": False, "is_listed": True, "start_date": {"$lte": now}, "end_date": {"$gte": now}},
    ]})
    flipped = 0
    for offer in drifted:
        db["offer"].update_one(
            {"_id": offer["_id"]},
            {"$set": {"is_active": offer_is_active(offer, now), "updated_at": now}},
        )
        flipped += 1
        affected.update(p["_id"] for p in db["product"].find({"applicable_offers": offer["_id"]}, {"_id": 1}))

    expired_ids = [o["_id"] for o in db["offer"].find({"end_date": {"$lt": now}}, {"_id": 1})]
    if expired_ids:
        stale = [p["_id"] for p in db["product"].find({"applicable_offers": {"$in": expired_ids}}, {"_id": 1})]
        if stale:
            db["product"].update_many(
                {"_id": {"$in": stale}},
                {"$pull": {"applicable_offers": {"$in": expired_ids}}},
            )
            affected.update(stale)

    _resolve_all(db, affected, now)
    if flipped or affected:
        logger.info("Offer sweep: %d offers updated, %d products re-resolved", flipped, len(affected))
    return {"offers_updated": flipped, "products_resolved": len(affected)}
