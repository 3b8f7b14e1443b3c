"""Shipping addresses, resolved into snapshots embedded in orders."""

from bson import ObjectId

from database import create_document, to_object_id
from errors import ForbiddenError, NotFoundError
from schemas import Address


def create_address(db, payload: Address) -> dict:
    address_id = create_document(db, "address", payload)
    return db["address"].find_one({"_id": ObjectId(address_id)})


def address_snapshot(db, user_id: str, address_id) -> dict:
    address = db["address"].find_one({"_id": to_object_id(address_id, "address id")})
    if not address:
        raise NotFoundError("Address not found")
    if address.get("user_id") != user_id:
        raise ForbiddenError("Address does not belong to this user.")

    snapshot = {k: v for k, v in address.items() if k not in ("_id", "created_at", "updated_at")}
    snapshot["address_id"] = str(address["_id"])
    return snapshot
