"""Per-user cart. Checkout reads it when no explicit items are sent."""

from typing import List

from database import to_object_id, utcnow
from errors import BadRequestError, NotFoundError
from schemas import Cart, CartItem


def get_cart(db, user_id: str) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFoundError("Cart not found")
    return cart


def add_item(db, user_id: str, item: CartItem) -> dict:
    product = db["product"].find_one({"_id": to_object_id(item.product_id, "product id")})
    if not product:
        raise NotFoundError("Product not found")

    cart = db["cart"].find_one({"user_id": user_id}) or Cart(user_id=user_id).model_dump()
    items = cart["items"]
    for existing in items:
        if existing["product_id"] == item.product_id:
            existing["quantity"] += item.quantity
            break
    else:
        items.append(item.model_dump())

    db["cart"].update_one(
        {"user_id": user_id},
        {"$set": {"items": items, "updated_at": utcnow()}},
        upsert=True,
    )
    return get_cart(db, user_id)


def update_item(db, user_id: str, item: CartItem) -> dict:
    res = db["cart"].update_one(
        {"user_id": user_id, "items.product_id": item.product_id},
        {"$set": {"items.$.quantity": item.quantity, "updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise NotFoundError("Item not found in cart")
    return get_cart(db, user_id)


def remove_item(db, user_id: str, product_id: str) -> dict:
    res = db["cart"].update_one(
        {"user_id": user_id},
        {"$pull": {"items": {"product_id": product_id}}, "$set": {"updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise NotFoundError("Cart not found")
    return get_cart(db, user_id)


def cart_items(db, user_id: str) -> List[dict]:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart or not cart.get("items"):
        raise BadRequestError("Cart is empty or not found.")
    return cart["items"]


def clear_cart(db, user_id: str) -> None:
    db["cart"].delete_one({"user_id": user_id})
