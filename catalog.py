"""Products and brands, with the offer hooks that keep cached prices current."""

import logging
from typing import Optional

from bson import ObjectId

from database import create_document, get_documents, to_object_id, utcnow
from errors import NotFoundError
from offers import brand_offer_ids, resolve_best_offer
from schemas import Brand, Product, ProductUpdate

logger = logging.getLogger(__name__)


def create_brand(db, payload: Brand) -> dict:
    brand_id = create_document(db, "brand", {"name": payload.name.strip()})
    return db["brand"].find_one({"_id": ObjectId(brand_id)})


def create_product(db, payload: Product) -> dict:
    """Insert a product, attach the live offers of its brand and resolve its price."""
    brand_id = to_object_id(payload.brand, "brand id")
    if not db["brand"].find_one({"_id": brand_id}):
        raise NotFoundError("Brand not found. Please provide a valid Brand ID.")

    data = payload.model_dump()
    data.update({
        "brand": brand_id,
        "reserved_stock": 0,
        "applicable_offers": brand_offer_ids(db, brand_id),
        "best_offer": None,
        "discounted_price": None,
    })
    product_id = create_document(db, "product", data)
    if data["applicable_offers"]:
        resolve_best_offer(db, product_id)

    logger.info("Created product %s with %d brand offers", product_id, len(data["applicable_offers"]))
    return get_product(db, product_id)


def update_product(db, product_id, payload: ProductUpdate) -> dict:
    product = get_product(db, product_id)
    data = {k: v for k, v in payload.model_dump().items() if v is not None}
    if not data:
        return product

    data["updated_at"] = utcnow()
    db["product"].update_one({"_id": product["_id"]}, {"$set": data})
    if "price" in data and data["price"] != product["price"]:
        resolve_best_offer(db, product["_id"])
    return get_product(db, product["_id"])


def get_product(db, product_id) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not product:
        raise NotFoundError("Product not found")
    return product


def list_products(db, brand: Optional[str] = None, q: Optional[str] = None, limit: int = 50):
    filter_dict = {}
    if brand:
        filter_dict["brand"] = to_object_id(brand, "brand id")
    if q:
        filter_dict["name"] = {"$regex": q, "$options": "i"}
    return get_documents(db, "product", filter_dict, limit)
