"""
Database Schemas for the Game Store

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercase class name. Example: class Product -> "product" collection.

Use these models in your API for validation before writing to MongoDB.
"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

DiscountType = Literal["percentage", "amount"]
PaymentMethod = Literal["Wallet", "Cash on Delivery", "Razorpay"]
PaymentStatus = Literal["Pending", "Paid", "Failed"]
ItemStatus = Literal[
    "Pending",
    "Shipped",
    "Delivered",
    "Cancelled",
    "Returned",
    "Return Requested",
    "Return Rejected",
]

# -----------------
# Catalog
# -----------------

class Brand(BaseModel):
    name: str = Field(..., min_length=1, description="Publisher / brand name")


class Product(BaseModel):
    name: str = Field(..., min_length=1, description="Game title")
    description: Optional[str] = Field(None, description="Marketing description")
    price: float = Field(..., gt=0, description="Unit price, two decimals")
    brand: str = Field(..., description="Referenced brand _id (string)")
    platform: Literal["PC", "PlayStation", "Xbox", "Nintendo", "Other"] = "Other"
    stock: int = Field(0, ge=0, description="Units available for sale")
    images: List[str] = Field(default_factory=list, description="Image URLs")


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None

# -----------------
# Offers
# -----------------

class ProductTarget(BaseModel):
    kind: Literal["Product"] = "Product"
    id: str


class BrandTarget(BaseModel):
    kind: Literal["Brand"] = "Brand"
    id: str


OfferTarget = Annotated[Union[ProductTarget, BrandTarget], Field(discriminator="kind")]


class Offer(BaseModel):
    name: str = Field(..., min_length=1)
    target: OfferTarget
    discount_type: DiscountType
    discount_value: float = Field(..., gt=0)
    start_date: datetime
    end_date: datetime

    @model_validator(mode="after")
    def check_offer(self):
        if self.discount_type == "percentage" and self.discount_value > 100:
            raise ValueError("Percentage discount must be within (0, 100].")
        if self.end_date < self.start_date:
            raise ValueError("End date must be after the start date.")
        return self


class OfferUpdate(BaseModel):
    name: Optional[str] = None
    target: Optional[OfferTarget] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, gt=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

# -----------------
# Coupons
# -----------------

class CouponUsage(BaseModel):
    user_id: str
    times_used: int = Field(0, ge=0)


class Coupon(BaseModel):
    code: str = Field(..., min_length=3, max_length=32)
    discount_type: DiscountType
    discount_value: float = Field(..., ge=1)
    min_order_amount: float = Field(0, ge=0)
    max_discount_amount: Optional[float] = Field(None, gt=0)
    usage_limit: int = Field(1, ge=1)
    per_user_limit: int = Field(1, ge=1)
    start_date: datetime
    end_date: datetime

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_coupon(self):
        if self.discount_type == "percentage" and self.discount_value > 100:
            raise ValueError("Percentage discount must be within (0, 100].")
        if self.discount_type == "amount":
            self.max_discount_amount = None
        if self.end_date < self.start_date:
            raise ValueError("End date must be after the start date.")
        return self


class CouponUpdate(BaseModel):
    code: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, ge=1)
    min_order_amount: Optional[float] = Field(None, ge=0)
    max_discount_amount: Optional[float] = Field(None, gt=0)
    usage_limit: Optional[int] = Field(None, ge=1)
    per_user_limit: Optional[int] = Field(None, ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None

# -----------------
# Addresses & cart
# -----------------

class Address(BaseModel):
    user_id: Optional[str] = Field(None, description="Owner, filled from the request identity")
    full_name: str
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str = "IN"


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)

# ------------
# Order Models
# ------------

class ReturnRequest(BaseModel):
    requested: bool = False
    reason: Optional[str] = None
    approved: bool = False
    response_sent: bool = False


class OrderItem(BaseModel):
    product: str = Field(..., description="Referenced product _id (string)")
    name: str = Field(..., description="Product name snapshot")
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at time of order")
    discount: float = Field(0, ge=0, description="Per-unit offer discount at time of order")
    total_price: float = Field(..., ge=0)
    status: ItemStatus = "Pending"
    return_request: ReturnRequest = Field(default_factory=ReturnRequest)


class Order(BaseModel):
    user_id: str
    order_items: List[OrderItem] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)
    total_discount: float = Field(0, ge=0)
    coupon_code: Optional[str] = None
    coupon_discount: float = Field(0, ge=0)
    final_price: float = Field(..., ge=0)
    shipping_address: dict
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "Pending"
    order_status: str = "Processing"
    refunded_amount: float = Field(0, ge=0)
    cancelled_amount: float = Field(0, ge=0, description="Share of cancelled lines no longer due on unpaid orders")
    placed_at: datetime
    delivery_by: Optional[datetime] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    version: int = 0

# ------------
# Wallet
# ------------

class WalletTransaction(BaseModel):
    type: Literal["credit", "debit"]
    amount: float = Field(..., gt=0)
    status: Literal["pending", "completed", "failed", "refunded"] = "pending"
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    order_id: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime

# ------------
# Requests
# ------------

class PlaceOrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class PlaceOrderRequest(BaseModel):
    items: Optional[List[PlaceOrderItem]] = Field(None, description="Defaults to the user's cart")
    shipping_address_id: str
    payment_method: PaymentMethod
    coupon_code: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    gateway_order_id: str
    payment_id: str
    signature: str


class CancelRequest(BaseModel):
    product_id: Optional[str] = None


class ReturnRequestIn(BaseModel):
    product_id: str
    reason: str = "No Reason"


class ProcessReturnRequest(BaseModel):
    product_id: str
    action: Literal["approve", "reject"]


class StatusUpdateRequest(BaseModel):
    status: str


class TopUpRequest(BaseModel):
    amount: float = Field(..., gt=0)
