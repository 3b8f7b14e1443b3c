"""
Per-user wallet with an append-only ledger.

Balance changes and their ledger entries are written in one conditional
update, so concurrent debits cannot overdraw and refunds are never lost.
"""

import logging
from typing import Optional

from pymongo import ReturnDocument

from database import utcnow
from errors import BadRequestError, NotFoundError
from money import round_money
from schemas import WalletTransaction

logger = logging.getLogger(__name__)


def get_or_create_wallet(db, user_id: str) -> dict:
    now = utcnow()
    return db["wallet"].find_one_and_update(
        {"user_id": user_id},
        {"$setOnInsert": {"balance": 0.0, "transactions": [], "created_at": now, "updated_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def _entry(kind: str, amount: float, status: str = "completed", **extra) -> dict:
    return WalletTransaction(type=kind, amount=amount, status=status, created_at=utcnow(), **extra).model_dump()


def credit(db, user_id: str, amount: float, note: Optional[str] = None,
           order_id: Optional[str] = None) -> dict:
    amount = round_money(amount)
    if amount <= 0:
        raise BadRequestError("Credit amount must be positive.")
    now = utcnow()
    wallet = db["wallet"].find_one_and_update(
        {"user_id": user_id},
        {
            "$inc": {"balance": amount},
            "$push": {"transactions": _entry("credit", amount, note=note, order_id=order_id)},
            "$set": {"updated_at": now},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Wallet %s credited %.2f (%s)", user_id, amount, note or "-")
    return wallet


def debit(db, user_id: str, amount: float, note: Optional[str] = None,
          order_id: Optional[str] = None) -> dict:
    amount = round_money(amount)
    if amount <= 0:
        raise BadRequestError("Debit amount must be positive.")
    wallet = db["wallet"].find_one_and_update(
        {"user_id": user_id, "balance": {"$gte": amount}},
        {
            "$inc": {"balance": -amount},
            "$push": {"transactions": _entry("debit", amount, note=note, order_id=order_id)},
            "$set": {"updated_at": utcnow()},
        },
        return_document=ReturnDocument.AFTER,
    )
    if wallet is None:
        raise BadRequestError("Insufficient wallet balance.")
    logger.info("Wallet %s debited %.2f (%s)", user_id, amount, note or "-")
    return wallet


def balance_of(db, user_id: str) -> float:
    wallet = db["wallet"].find_one({"user_id": user_id}, {"balance": 1})
    return round_money(wallet["balance"]) if wallet else 0.0


# ------------------------
# Gateway top-up
# ------------------------

def start_top_up(db, user_id: str, amount: float, gateway) -> dict:
    """Open a gateway order and record a pending credit for it."""
    amount = round_money(amount)
    if amount <= 0:
        raise BadRequestError("Please provide the amount to add to wallet.")
    gateway_order = gateway.create_order(amount)
    db["wallet"].update_one(
        {"user_id": user_id},
        {
            "$push": {"transactions": _entry("credit", amount, status="pending",
                                             gateway_order_id=gateway_order["id"])},
            "$setOnInsert": {"balance": 0.0, "created_at": utcnow()},
        },
        upsert=True,
    )
    return gateway_order


def verify_top_up(db, user_id: str, gateway_order_id: str, payment_id: str,
                  signature: str, gateway) -> dict:
    gateway.verify_signature(gateway_order_id, payment_id, signature)

    wallet = db["wallet"].find_one({"user_id": user_id})
    if not wallet:
        raise NotFoundError("No wallet found.")
    pending = next(
        (t for t in wallet["transactions"] if t.get("gateway_order_id") == gateway_order_id),
        None,
    )
    if pending is None:
        raise NotFoundError("No transaction found.")

    updated = db["wallet"].find_one_and_update(
        {
            "user_id": user_id,
            "transactions": {"$elemMatch": {"gateway_order_id": gateway_order_id, "status": "pending"}},
        },
        {
            "$inc": {"balance": pending["amount"]},
            "$set": {
                "transactions.$.status": "completed",
                "transactions.$.gateway_payment_id": payment_id,
                "updated_at": utcnow(),
            },
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise BadRequestError("Transaction already processed.")
    logger.info("Wallet %s topped up %.2f via %s", user_id, pending["amount"], gateway_order_id)
    return updated
