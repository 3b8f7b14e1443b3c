"""Tests for best-offer resolution and offer administration."""

from datetime import datetime, timedelta

import pytest
from bson import ObjectId

import catalog
import offers
from database import utcnow
from errors import NotFoundError, ValidationFailedError
from schemas import OfferUpdate, ProductUpdate


def reload(db, product):
    return db["product"].find_one({"_id": product["_id"]})


def make_raw_offer(discount_type, value, start, end, listed=True):
    return {
        "_id": ObjectId(),
        "discount_type": discount_type,
        "discount_value": value,
        "start_date": start,
        "end_date": end,
        "is_listed": listed,
    }


class TestSelectBestOffer:
    NOW = datetime(2026, 10, 18, 12, 0)

    def window(self):
        return self.NOW - timedelta(days=1), self.NOW + timedelta(days=1)

    def test_largest_absolute_discount_wins(self):
        pct = make_raw_offer("percentage", 10, *self.window())
        flat = make_raw_offer("amount", 150, *self.window())
        best, price = offers.select_best_offer(1000, [pct, flat], self.NOW)
        assert best is flat
        assert price == 850

    def test_tie_keeps_first_seen(self):
        pct = make_raw_offer("percentage", 10, *self.window())
        flat = make_raw_offer("amount", 100, *self.window())
        assert offers.select_best_offer(1000, [pct, flat], self.NOW)[0] is pct
        assert offers.select_best_offer(1000, [flat, pct], self.NOW)[0] is flat

    def test_inactive_offers_ignored(self):
        start, end = self.window()
        expired = make_raw_offer("amount", 500, start - timedelta(days=5), start)
        unlisted = make_raw_offer("amount", 400, start, end, listed=False)
        live = make_raw_offer("percentage", 5, start, end)
        best, price = offers.select_best_offer(1000, [expired, unlisted, live], self.NOW)
        assert best is live
        assert price == 950

    def test_no_offer(self):
        assert offers.select_best_offer(1000, [], self.NOW) == (None, None)

    def test_discount_above_price_floors_at_zero(self):
        flat = make_raw_offer("amount", 80, *self.window())
        assert offers.select_best_offer(50, [flat], self.NOW)[1] == 0


class TestResolveBestOffer:
    def test_brand_and_product_offers(self, db, brand, make_product, make_offer):
        product = make_product(price=1000)
        brand_offer = make_offer("Brand", brand["_id"], "percentage", 10)
        product_offer = make_offer("Product", product["_id"], "amount", 150)

        stored = reload(db, product)
        assert stored["applicable_offers"] == [brand_offer["_id"], product_offer["_id"]]
        assert stored["best_offer"] == product_offer["_id"]
        assert stored["discounted_price"] == 850

    def test_tie_break_follows_insertion_order(self, db, make_product, make_offer):
        first = make_product(name="A", price=1000)
        make_offer("Product", first["_id"], "amount", 100, name="flat")
        make_offer("Product", first["_id"], "percentage", 10, name="pct")

        second = make_product(name="B", price=1000)
        make_offer("Product", second["_id"], "percentage", 10, name="pct")
        make_offer("Product", second["_id"], "amount", 100, name="flat")

        a, b = reload(db, first), reload(db, second)
        assert db["offer"].find_one({"_id": a["best_offer"]})["name"] == "flat"
        assert db["offer"].find_one({"_id": b["best_offer"]})["name"] == "pct"
        assert a["discounted_price"] == b["discounted_price"] == 900

    def test_missing_product_is_noop(self, db):
        assert offers.resolve_best_offer(db, ObjectId()) is None

    def test_best_offer_and_price_set_together(self, db, make_product, make_offer):
        product = make_product(price=499.99)
        stored = reload(db, product)
        assert stored["best_offer"] is None and stored["discounted_price"] is None

        offer = make_offer("Product", product["_id"], "percentage", 33)
        stored = reload(db, product)
        assert stored["best_offer"] == offer["_id"]
        assert stored["discounted_price"] == 334.99

        offers.toggle_offer(db, offer["_id"])
        stored = reload(db, product)
        assert stored["best_offer"] is None and stored["discounted_price"] is None

    def test_price_change_re_resolves(self, db, make_product, make_offer):
        product = make_product(price=1000)
        make_offer("Product", product["_id"], "percentage", 20)
        catalog.update_product(db, product["_id"], ProductUpdate(price=500))
        assert reload(db, product)["discounted_price"] == 400


class TestOfferAdmin:
    def test_brand_offer_fans_out_to_existing_and_new_products(self, db, brand, make_product, make_offer):
        existing = make_product(name="Old", price=200)
        offer = make_offer("Brand", brand["_id"], "percentage", 25)
        created_later = make_product(name="New", price=400)

        assert reload(db, existing)["discounted_price"] == 150
        later = reload(db, created_later)
        assert later["applicable_offers"] == [offer["_id"]]
        assert later["best_offer"] == offer["_id"]
        assert later["discounted_price"] == 300

    def test_amount_above_product_price_rejected_with_field_detail(self, db, make_product, make_offer):
        product = make_product(price=100)
        with pytest.raises(ValidationFailedError) as exc:
            make_offer("Product", product["_id"], "amount", 150)
        assert "discount_value" in exc.value.errors
        assert db["offer"].count_documents({}) == 0

    def test_unknown_target(self, db, make_offer):
        with pytest.raises(NotFoundError):
            make_offer("Brand", ObjectId(), "percentage", 10)

    def test_percentage_bound_in_schema(self, make_product, make_offer):
        product = make_product(price=100)
        with pytest.raises(ValueError):
            make_offer("Product", product["_id"], "percentage", 120)

    def test_future_offer_inactive_until_it_starts(self, db, make_product, make_offer):
        product = make_product(price=1000)
        now = utcnow()
        offer = make_offer("Product", product["_id"], "percentage", 10,
                           start=now + timedelta(days=2), end=now + timedelta(days=5))
        assert offer["is_active"] is False
        assert reload(db, product)["best_offer"] is None

        offers.sweep_offers(db, now=now + timedelta(days=3))
        assert db["offer"].find_one({"_id": offer["_id"]})["is_active"] is True
        assert reload(db, product)["discounted_price"] == 900

    def test_edit_retarget_moves_offer(self, db, make_product, make_offer):
        first = make_product(name="A", price=1000)
        second = make_product(name="B", price=1000)
        offer = make_offer("Product", first["_id"], "amount", 100)

        offers.edit_offer(db, offer["_id"], OfferUpdate(
            target={"kind": "Product", "id": str(second["_id"])},
            discount_value=200,
        ))

        a, b = reload(db, first), reload(db, second)
        assert a["applicable_offers"] == [] and a["best_offer"] is None
        assert b["best_offer"] == offer["_id"]
        assert b["discounted_price"] == 800

    def test_edit_rejects_inverted_dates(self, db, make_product, make_offer):
        product = make_product(price=1000)
        offer = make_offer("Product", product["_id"], "amount", 100)
        with pytest.raises(ValidationFailedError) as exc:
            offers.edit_offer(db, offer["_id"], OfferUpdate(end_date=offer["start_date"] - timedelta(days=1)))
        assert "end_date" in exc.value.errors

    def test_list_and_get(self, db, make_product, make_offer):
        product = make_product(price=1000)
        offer = make_offer("Product", product["_id"], "amount", 100)
        page = offers.list_offers(db, page=1, limit=10)
        assert page["current_page"] == 1
        assert page["total_pages"] == 1
        assert [o["_id"] for o in page["result"]] == [offer["_id"]]
        assert offers.get_offer(db, str(offer["_id"]))["name"] == offer["name"]


class TestOfferSweep:
    def test_expired_offers_are_detached_and_products_re_resolved(self, db, brand, make_product, make_offer):
        product = make_product(price=1000)
        now = utcnow()
        short = make_offer("Product", product["_id"], "amount", 300, end=now + timedelta(days=1))
        long = make_offer("Brand", brand["_id"], "percentage", 10, end=now + timedelta(days=30))
        assert reload(db, product)["best_offer"] == short["_id"]

        summary = offers.sweep_offers(db, now=now + timedelta(days=2))

        stored = reload(db, product)
        assert stored["applicable_offers"] == [long["_id"]]
        assert stored["best_offer"] == long["_id"]
        assert stored["discounted_price"] == 900
        assert db["offer"].find_one({"_id": short["_id"]})["is_active"] is False
        assert summary["products_resolved"] == 1

    def test_sweep_without_changes(self, db, make_product, make_offer):
        product = make_product(price=1000)
        make_offer("Product", product["_id"], "amount", 100)
        assert offers.sweep_offers(db) == {"offers_updated": 0, "products_resolved": 0}
