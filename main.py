import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import addresses
import cart
import catalog
import coupons
import database
import offers
import orders
import wallet
from database import to_str_id
from errors import StoreError, UnauthorizedError
from money import to_minor_units
from payments import CURRENCY, get_gateway
from schemas import (
    Address,
    Brand,
    CancelRequest,
    CartItem,
    Coupon,
    CouponUpdate,
    Offer,
    OfferUpdate,
    PlaceOrderRequest,
    ProcessReturnRequest,
    Product,
    ProductUpdate,
    ReturnRequestIn,
    StatusUpdateRequest,
    TopUpRequest,
    VerifyPaymentRequest,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("gamestore")

OFFER_SWEEP_INTERVAL_SECONDS = int(os.getenv("OFFER_SWEEP_INTERVAL_SECONDS", 60))


async def _offer_sweep_loop(interval: int):
    while True:
        await asyncio.sleep(interval)
        if database.db is None:
            continue
        try:
            await run_in_threadpool(offers.sweep_offers, database.db)
        except Exception:
            logger.exception("Offer sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = None
    if database.db is not None and OFFER_SWEEP_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(_offer_sweep_loop(OFFER_SWEEP_INTERVAL_SECONDS))
    app.state.offer_sweep = task
    yield
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


app = FastAPI(title="Game Store API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    body = {"success": False, "message": exc.message, "data": None}
    if exc.errors:
        body["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=body)

# -----------------------
# Dependencies
# -----------------------

def get_db():
    if database.db is None:
        raise StoreError("Database not available")
    return database.db


def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    # Authentication happens upstream; the gateway forwards the user id.
    if not x_user_id:
        raise UnauthorizedError("Authentication required")
    return x_user_id


def payment_gateway():
    return get_gateway()

# ---------
# Root/Test
# ---------

@app.get("/")
def read_root():
    return {"message": "Game Store API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            try:
                collections = database.db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response

# ---------------
# Catalog
# ---------------

@app.get("/api/products")
def list_products(brand: Optional[str] = None, q: Optional[str] = None, limit: int = 50, db=Depends(get_db)):
    return [to_str_id(d) for d in catalog.list_products(db, brand, q, limit)]


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return to_str_id(catalog.get_product(db, product_id))


@app.post("/api/admin/brands", status_code=201)
def create_brand(payload: Brand, db=Depends(get_db)):
    return to_str_id(catalog.create_brand(db, payload))


@app.post("/api/admin/products", status_code=201)
def create_product(payload: Product, db=Depends(get_db)):
    return to_str_id(catalog.create_product(db, payload))


@app.put("/api/admin/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, db=Depends(get_db)):
    return to_str_id(catalog.update_product(db, product_id, payload))

# ---------------
# Offers (admin)
# ---------------

@app.post("/api/admin/offers", status_code=201)
def create_offer(payload: Offer, db=Depends(get_db)):
    return to_str_id(offers.create_offer(db, payload))


@app.get("/api/admin/offers")
def list_offers(page: int = 1, limit: int = 10, db=Depends(get_db)):
    return to_str_id(offers.list_offers(db, page, limit))


@app.get("/api/admin/offers/{offer_id}")
def get_offer(offer_id: str, db=Depends(get_db)):
    return to_str_id(offers.get_offer(db, offer_id))


@app.put("/api/admin/offers/{offer_id}")
def edit_offer(offer_id: str, payload: OfferUpdate, db=Depends(get_db)):
    return to_str_id(offers.edit_offer(db, offer_id, payload))


@app.patch("/api/admin/offers/{offer_id}")
def toggle_offer(offer_id: str, db=Depends(get_db)):
    return to_str_id(offers.toggle_offer(db, offer_id))


@app.post("/api/admin/offers/sweep")
def sweep_offers(db=Depends(get_db)):
    return offers.sweep_offers(db)

# ---------------
# Coupons (admin)
# ---------------

@app.post("/api/admin/coupons", status_code=201)
def create_coupon(payload: Coupon, db=Depends(get_db)):
    return to_str_id(coupons.create_coupon(db, payload))


@app.get("/api/admin/coupons")
def list_coupons(page: int = 1, limit: int = 10, db=Depends(get_db)):
    return to_str_id(coupons.list_coupons(db, page, limit))


@app.get("/api/admin/coupons/{coupon_id}")
def get_coupon(coupon_id: str, db=Depends(get_db)):
    return to_str_id(coupons.get_coupon(db, coupon_id))


@app.put("/api/admin/coupons/{coupon_id}")
def edit_coupon(coupon_id: str, payload: CouponUpdate, db=Depends(get_db)):
    return to_str_id(coupons.edit_coupon(db, coupon_id, payload))


@app.patch("/api/admin/coupons/{coupon_id}")
def toggle_coupon(coupon_id: str, db=Depends(get_db)):
    return to_str_id(coupons.toggle_coupon(db, coupon_id))

# ---------------
# Addresses & cart
# ---------------

@app.post("/api/addresses", status_code=201)
def create_address(payload: Address, user_id: str = Depends(current_user), db=Depends(get_db)):
    payload.user_id = user_id
    return to_str_id(addresses.create_address(db, payload))


@app.get("/api/cart")
def get_cart(user_id: str = Depends(current_user), db=Depends(get_db)):
    return to_str_id(cart.get_cart(db, user_id))


@app.post("/api/cart")
def add_to_cart(item: CartItem, user_id: str = Depends(current_user), db=Depends(get_db)):
    return to_str_id(cart.add_item(db, user_id, item))


@app.patch("/api/cart")
def update_cart_item(item: CartItem, user_id: str = Depends(current_user), db=Depends(get_db)):
    return to_str_id(cart.update_item(db, user_id, item))


@app.delete("/api/cart/{product_id}")
def remove_cart_item(product_id: str, user_id: str = Depends(current_user), db=Depends(get_db)):
    return to_str_id(cart.remove_item(db, user_id, product_id))

# ---------------
# Orders
# ---------------

@app.post("/api/orders", status_code=201)
def place_order(payload: PlaceOrderRequest, user_id: str = Depends(current_user),
                db=Depends(get_db), gateway=Depends(payment_gateway)):
    order = orders.place_order(
        db,
        user_id,
        payload.items,
        payload.shipping_address_id,
        payload.payment_method,
        coupon_code=payload.coupon_code,
        gateway=gateway,
    )
    response = {"order": to_str_id(order)}
    if order.get("gateway_order_id"):
        response["gateway"] = {
            "gateway_order_id": order["gateway_order_id"],
            "amount": to_minor_units(order["final_price"]),
            "currency": CURRENCY,
        }
    return response


@app.post("/api/orders/razorpay/verify")
def verify_payment(payload: VerifyPaymentRequest, user_id: str = Depends(current_user),
                   db=Depends(get_db), gateway=Depends(payment_gateway)):
    order = orders.confirm_payment(
        db, user_id, payload.gateway_order_id, payload.payment_id, payload.signature, gateway
    )
    return to_str_id(order)


@app.post("/api/orders/razorpay/{gateway_order_id}/fail")
def payment_failed(gateway_order_id: str, user_id: str = Depends(current_user), db=Depends(get_db)):
    return to_str_id(orders.fail_payment(db, user_id, gateway_order_id))


@app.get("/api/orders")
def list_my_orders(page: int = 1, limit: int = 10, user_id: str = Depends(current_user), db=Depends(get_db)):
    return to_str_id(orders.list_user_orders(db, user_id, page, limit))


@app.get("/api/orders/{order_id}")
def get_my_order(order_id: str, user_id: str = Depends(current_user), db=Depends(get_db)):
    return to_str_id(orders.get_order(db, user_id, order_id))


@app.put("/api/orders/{order_id}")
def cancel_order(order_id: str, payload: CancelRequest, user_id: str = Depends(current_user),
                 db=Depends(get_db)):
    return to_str_id(orders.cancel_order(db, user_id, order_id, payload.product_id))


@app.patch("/api/orders/{order_id}")
def request_return(order_id: str, payload: ReturnRequestIn, user_id: str = Depends(current_user),
                   db=Depends(get_db)):
    return to_str_id(orders.request_return(db, user_id, order_id, payload.product_id, payload.reason))


@app.get("/api/admin/orders")
def list_orders(page: int = 1, limit: int = 10, db=Depends(get_db)):
    return to_str_id(orders.list_orders(db, page, limit))


@app.get("/api/admin/orders/{order_id}")
def get_order(order_id: str, db=Depends(get_db)):
    return to_str_id(orders.get_order_admin(db, order_id))


@app.patch("/api/admin/orders/{order_id}")
def update_order_status(order_id: str, payload: StatusUpdateRequest, db=Depends(get_db)):
    return to_str_id(orders.update_order_status(db, order_id, payload.status))


@app.put("/api/admin/orders/{order_id}")
def process_return(order_id: str, payload: ProcessReturnRequest, db=Depends(get_db)):
    return to_str_id(orders.process_return(db, order_id, payload.product_id, payload.action))

# ---------------
# Wallet
# ---------------

@app.get("/api/wallet")
def get_wallet(user_id: str = Depends(current_user), db=Depends(get_db)):
    return to_str_id(wallet.get_or_create_wallet(db, user_id))


@app.post("/api/wallet", status_code=201)
def top_up_wallet(payload: TopUpRequest, user_id: str = Depends(current_user),
                  db=Depends(get_db), gateway=Depends(payment_gateway)):
    return wallet.start_top_up(db, user_id, payload.amount, gateway)


@app.patch("/api/wallet")
def verify_top_up(payload: VerifyPaymentRequest, user_id: str = Depends(current_user),
                  db=Depends(get_db), gateway=Depends(payment_gateway)):
    updated = wallet.verify_top_up(
        db, user_id, payload.gateway_order_id, payload.payment_id, payload.signature, gateway
    )
    return to_str_id(updated)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
