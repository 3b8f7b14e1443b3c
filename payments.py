"""
Payment gateway client.

Orders are created through the Razorpay SDK. Callbacks are authenticated by an
HMAC-SHA256 of "<gateway order id>|<payment id>" keyed with the shared secret.
"""

import hashlib
import hmac
import logging
import os
import uuid
from typing import Optional

from errors import InvalidSignatureError, PaymentGatewayError
from money import to_minor_units

logger = logging.getLogger(__name__)

CURRENCY = os.getenv("CURRENCY", "INR")


def sign(secret: str, gateway_order_id: str, payment_id: str) -> str:
    message = f"{gateway_order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class RazorpayGateway:
    def __init__(self, key_id: Optional[str] = None, key_secret: Optional[str] = None):
        self.key_id = key_id or os.getenv("RZP_KEY_ID", "")
        self.key_secret = key_secret or os.getenv("RZP_SECRET_KEY", "")
        import razorpay

        self.client = razorpay.Client(auth=(self.key_id, self.key_secret))

    def create_order(self, amount: float) -> dict:
        """Create a gateway order; returns its id, amount (minor units) and currency."""
        options = {
            "amount": to_minor_units(amount),
            "currency": CURRENCY,
            "receipt": f"receipt_{uuid.uuid4().hex[:20]}",
        }
        try:
            order = self.client.order.create(data=options)
        except Exception as e:
            logger.error("Razorpay order creation failed: %s", e)
            raise PaymentGatewayError("Payment gateway is unavailable, please try again.")
        return {"id": order["id"], "amount": order["amount"], "currency": order["currency"]}

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> None:
        expected = sign(self.key_secret, gateway_order_id, payment_id)
        if not hmac.compare_digest(expected, signature or ""):
            raise InvalidSignatureError()


_gateway = None


def get_gateway() -> RazorpayGateway:
    global _gateway
    if _gateway is None:
        _gateway = RazorpayGateway()
    return _gateway
