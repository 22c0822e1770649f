"""
Tests for the pending order, COD placement, the status machine and order listing.
"""
import logging

import pytest
from pymongo.errors import DuplicateKeyError

from cart import CartStore
from errors import InvalidState
from orders import OrderFinalizer, generate_custom_order_id, update_order_status


@pytest.fixture
def filled_cart(client, auth_headers, make_product):
    """Product A (500 x 2, no size) and B (300 x 1, size M) in the shopper's cart."""
    a = make_product(name="A", price=500)
    b = make_product(name="B", price=300, sizes=[{"size": "M", "stock": 5}, {"size": "L", "stock": 2}])
    client.post("/cart/addToCart", json={"productId": a, "quantity": 2}, headers=auth_headers)
    client.post("/cart/addToCart", json={"productId": b, "quantity": 1, "size": "M"}, headers=auth_headers)
    return a, b


@pytest.fixture
def saved_address(client, auth_headers, address):
    resp = client.post("/order/shippingAddress", json=address, headers=auth_headers)
    assert resp.status_code == 200
    return address


def _place(client, headers, **body):
    return client.post("/order/cod", json=body, headers=headers)


class TestShippingAddress:
    def test_saving_twice_keeps_one_pending_order(self, client, db, auth_headers, user_id, address):
        client.post("/order/shippingAddress", json=address, headers=auth_headers)
        second = dict(address, line1="99 Residency Road", city="Mysuru")
        resp = client.post("/order/shippingAddress", json=second, headers=auth_headers)

        assert resp.status_code == 200
        pending = list(db["pendingorder"].find({"user": user_id}))
        assert len(pending) == 1
        assert pending[0]["shippingAddress"]["line1"] == "99 Residency Road"
        assert pending[0]["status"] == "pending"
        assert pending[0]["paymentMethod"] == "COD"
        assert pending[0]["items"] == []
        assert pending[0]["totalPrice"] == 0

    def test_missing_fields_are_listed(self, client, auth_headers):
        resp = client.post("/order/shippingAddress", json={"fullName": "Asha", "city": "  "}, headers=auth_headers)

        assert resp.status_code == 400
        assert resp.json()["details"]["missing"] == ["phoneNumber", "line1", "city", "state", "postalCode"]

    def test_country_defaults(self, client, auth_headers, address):
        resp = client.post("/order/shippingAddress", json=address, headers=auth_headers)
        assert resp.json()["shippingAddress"]["country"] == "India"

    def test_read_back(self, client, auth_headers, saved_address):
        resp = client.get("/order/shippingAddress", headers=auth_headers)
        assert resp.json()["shippingAddress"]["postalCode"] == saved_address["postalCode"]

    def test_read_back_without_one(self, client, auth_headers):
        assert client.get("/order/shippingAddress", headers=auth_headers).status_code == 404

    def test_select_saved_address(self, client, db, auth_headers, user_id, address):
        client.post("/user/saveAddress", json=address, headers=auth_headers)
        saved = client.post("/user/saveAddress", json=dict(address, city="Hubli"), headers=auth_headers).json()
        address_id = saved["addresses"][1]["id"]

        resp = client.post(f"/order/selectAddress/{address_id}", headers=auth_headers)

        assert resp.status_code == 200
        assert db["pendingorder"].find_one({"user": user_id})["shippingAddress"]["city"] == "Hubli"


class TestPlaceCODOrder:
    def test_scenario_total_and_cleared_cart(self, client, db, auth_headers, user_id, filled_cart, saved_address):
        resp = _place(client, auth_headers, totalPrice=1600)

        assert resp.status_code == 201
        order = resp.json()["order"]
        assert order["totalPrice"] == 500 * 2 + 300 * 1 + 15 + 50 == 1365
        assert order["subtotal"] == 1300
        assert order["paymentMethod"] == "COD"
        assert order["paymentStatus"] == "pending"
        assert order["status"] == "pending"
        assert order["customOrderId"].startswith("ORD-")
        assert order["shippingAddress"]["fullName"] == saved_address["fullName"]

        cart = db["cart"].find_one({"user": user_id})
        assert cart["products"] == []
        assert cart["totalPrice"] == 0
        assert "checkoutLock" not in cart
        assert db["order"].count_documents({"user": user_id}) == 1

    def test_items_snapshot_cart(self, client, db, auth_headers, filled_cart, saved_address):
        a, b = filled_cart
        order = _place(client, auth_headers).json()["order"]

        items = {item["productId"]: item for item in order["items"]}
        assert items[a]["price"] == 500 and items[a]["quantity"] == 2 and items[a]["size"] is None
        assert items[b]["price"] == 300 and items[b]["quantity"] == 1 and items[b]["size"] == "M"
        assert items[b]["image"] == "https://img.test/B.jpg"

    def test_later_price_change_leaves_order_alone(self, client, db, auth_headers, filled_cart, saved_address):
        _place(client, auth_headers)
        db["product"].update_many({}, {"$set": {"price": 9999}})

        order = client.get("/order/my-orders", headers=auth_headers).json()["orders"][0]
        assert sorted(item["price"] for item in order["items"]) == [300, 500]
        assert order["totalPrice"] == 500 * 2 + 300 * 1 + 15 + 50

    def test_address_edit_after_order_leaves_order_alone(self, client, db, auth_headers, user_id, filled_cart, saved_address):
        _place(client, auth_headers)
        client.post("/order/shippingAddress", json=dict(saved_address, city="Chennai"), headers=auth_headers)

        order = db["order"].find_one({"user": user_id})
        assert order["shippingAddress"]["city"] == "Bengaluru"

    def test_pending_order_consumed(self, client, db, auth_headers, user_id, filled_cart, saved_address):
        _place(client, auth_headers)
        assert db["pendingorder"].count_documents({"user": user_id}) == 0

    def test_sized_stock_deducted_once(self, client, db, auth_headers, filled_cart, saved_address):
        _place(client, auth_headers)
        sizes = {s["size"]: s["stock"] for s in db["product"].find_one({"name": "B"})["sizes"]}
        assert sizes == {"M": 4, "L": 2}

    def test_empty_cart(self, client, db, auth_headers, saved_address):
        resp = _place(client, auth_headers)

        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_state"
        assert db["order"].count_documents({}) == 0

    def test_emptied_cart(self, client, db, auth_headers, make_product, saved_address):
        pid = make_product()
        client.post("/cart/addToCart", json={"productId": pid, "quantity": 1}, headers=auth_headers)
        client.request("DELETE", "/cart/removeFromCart", json={"productId": pid}, headers=auth_headers)

        assert _place(client, auth_headers).status_code == 400
        assert db["order"].count_documents({}) == 0

    def test_no_saved_address(self, client, db, auth_headers, user_id, filled_cart):
        resp = _place(client, auth_headers)

        assert resp.status_code == 400
        assert "address" in resp.json()["message"].lower()
        assert len(db["cart"].find_one({"user": user_id})["products"]) == 2
        assert "checkoutLock" not in db["cart"].find_one({"user": user_id})

    def test_insufficient_stock_changes_nothing(self, client, db, auth_headers, user_id, make_product, saved_address):
        pid = make_product(name="C", price=10, sizes=[{"size": "S", "stock": 1}])
        client.post("/cart/addToCart", json={"productId": pid, "quantity": 3, "size": "S"}, headers=auth_headers)

        resp = _place(client, auth_headers)

        assert resp.status_code == 400
        assert db["product"].find_one({"name": "C"})["sizes"][0]["stock"] == 1
        assert db["cart"].find_one({"user": user_id})["products"][0]["quantity"] == 3
        assert db["pendingorder"].count_documents({"user": user_id}) == 1

    def test_out_of_stock_product(self, client, auth_headers, make_product, saved_address):
        pid = make_product(status="Out of Stock")
        client.post("/cart/addToCart", json={"productId": pid, "quantity": 1}, headers=auth_headers)
        assert _place(client, auth_headers).status_code == 400

    def test_product_removed_from_catalog(self, client, db, auth_headers, make_product, saved_address):
        pid = make_product(name="Gone")
        client.post("/cart/addToCart", json={"productId": pid, "quantity": 1}, headers=auth_headers)
        db["product"].delete_one({"name": "Gone"})

        assert _place(client, auth_headers).status_code == 404
        assert db["order"].count_documents({}) == 0

    def test_client_total_mismatch_is_only_logged(self, client, auth_headers, filled_cart, saved_address, caplog):
        with caplog.at_level(logging.WARNING, logger="orders"):
            resp = _place(client, auth_headers, totalPrice=1)

        assert resp.json()["order"]["totalPrice"] == 1365
        assert any("differs from computed subtotal" in r.getMessage() for r in caplog.records)

    def test_concurrent_checkout_rejected(self, client, db, auth_headers, user_id, filled_cart, saved_address):
        CartStore(db, user_id).acquire_checkout_lock(30)

        resp = _place(client, auth_headers)

        assert resp.status_code == 409
        assert db["order"].count_documents({}) == 0

    def test_second_placement_finds_empty_cart(self, client, db, auth_headers, filled_cart, saved_address):
        assert _place(client, auth_headers).status_code == 201
        assert _place(client, auth_headers).status_code == 400
        assert db["order"].count_documents({}) == 1

    def test_failed_insert_restores_cart_and_stock(self, db, settings, user_id, make_product, address, monkeypatch):
        pid = make_product(name="D", price=20, sizes=[{"size": "M", "stock": 3}])
        CartStore(db, user_id).add(pid, 2, "M")
        finalizer = OrderFinalizer(db, settings, user_id)
        finalizer.pending.save_shipping_address(address)

        def boom(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(finalizer, "_insert_order", boom)
        with pytest.raises(RuntimeError):
            finalizer.place_cod_order()

        cart = db["cart"].find_one({"user": user_id})
        assert cart["products"][0]["quantity"] == 2
        assert "checkoutLock" not in cart
        assert db["product"].find_one({"name": "D"})["sizes"][0]["stock"] == 3
        assert db["pendingorder"].count_documents({"user": user_id}) == 1
        assert db["order"].count_documents({}) == 0

    def test_failed_insert_keeps_concurrent_cart_add(self, db, settings, user_id, make_product, address, monkeypatch):
        pid = make_product(name="D", price=20)
        late = make_product(name="Late", price=7)
        CartStore(db, user_id).add(pid, 2)
        finalizer = OrderFinalizer(db, settings, user_id)
        finalizer.pending.save_shipping_address(address)

        def add_then_fail(*args, **kwargs):
            CartStore(db, user_id).add(late, 1)
            raise RuntimeError("disk full")

        monkeypatch.setattr(finalizer, "_insert_order", add_then_fail)
        with pytest.raises(RuntimeError):
            finalizer.place_cod_order()

        cart = db["cart"].find_one({"user": user_id})
        assert {line["productId"]: line["quantity"] for line in cart["products"]} == {late: 1, pid: 2}
        assert cart["totalPrice"] == 47

    def test_service_reports_missing_cart(self, db, settings, user_id):
        with pytest.raises(InvalidState):
            OrderFinalizer(db, settings, user_id).place_cod_order()


class TestCustomOrderId:
    def test_format(self):
        prefix, stamp, suffix = generate_custom_order_id().split("-")
        assert prefix == "ORD" and len(stamp) == 6 and 1000 <= int(suffix) <= 9999

    def test_unique_index_rejects_duplicates(self, db):
        db["order"].insert_one({"customOrderId": "ORD-123456-1111"})
        with pytest.raises(DuplicateKeyError):
            db["order"].insert_one({"customOrderId": "ORD-123456-1111"})

    def test_collision_is_regenerated(self, client, db, auth_headers, filled_cart, saved_address, monkeypatch):
        ids = iter(["ORD-000001-1111", "ORD-000001-1111", "ORD-000002-2222"])
        monkeypatch.setattr("orders.generate_custom_order_id", lambda: next(ids))
        db["order"].insert_one({"customOrderId": "ORD-000001-1111", "user": "someone-else"})

        order = _place(client, auth_headers).json()["order"]

        assert order["customOrderId"] == "ORD-000002-2222"


class TestOrderStatus:
    @pytest.fixture
    def order_id(self, client, auth_headers, filled_cart, saved_address):
        return _place(client, auth_headers).json()["order"]["id"]

    def test_full_lifecycle(self, client, admin_headers, order_id):
        for status in ("shipping", "delivered"):
            resp = client.put(f"/order/status/{order_id}", json={"status": status}, headers=admin_headers)
            assert resp.status_code == 200
            assert resp.json()["updatedOrder"]["status"] == status

    @pytest.mark.parametrize("status", ["shipped", "", "PENDING", "refunded"])
    def test_unknown_value_rejected(self, client, db, admin_headers, order_id, status):
        resp = client.put(f"/order/status/{order_id}", json={"status": status}, headers=admin_headers)

        assert resp.status_code == 400
        assert db["order"].find_one()["status"] == "pending"

    def test_terminal_states_are_final(self, client, db, admin_headers, order_id):
        client.put(f"/order/status/{order_id}", json={"status": "cancelled"}, headers=admin_headers)

        resp = client.put(f"/order/status/{order_id}", json={"status": "pending"}, headers=admin_headers)

        assert resp.status_code == 400
        assert db["order"].find_one()["status"] == "cancelled"

    def test_delivered_cannot_be_cancelled(self, db, order_id):
        update_order_status(db, order_id, "shipping")
        update_order_status(db, order_id, "delivered")
        with pytest.raises(InvalidState):
            update_order_status(db, order_id, "cancelled")

    def test_only_status_changes(self, client, db, admin_headers, order_id):
        before = db["order"].find_one()
        client.put(f"/order/status/{order_id}", json={"status": "shipping"}, headers=admin_headers)
        after = db["order"].find_one()

        for field in ("items", "shippingAddress", "totalPrice", "paymentStatus", "customOrderId"):
            assert after[field] == before[field]

    def test_by_custom_order_id(self, client, db, admin_headers, order_id):
        custom = db["order"].find_one()["customOrderId"]
        resp = client.put(f"/order/status/{custom}", json={"status": "shipping"}, headers=admin_headers)
        assert resp.status_code == 200

    def test_unknown_order(self, client, admin_headers):
        resp = client.put("/order/status/ORD-000000-0000", json={"status": "shipping"}, headers=admin_headers)
        assert resp.status_code == 404

    def test_admin_only(self, client, auth_headers, order_id):
        resp = client.put(f"/order/status/{order_id}", json={"status": "shipping"}, headers=auth_headers)
        assert resp.status_code == 403


class TestListing:
    def test_my_orders_only_mine(self, client, db, auth_headers, other_headers, filled_cart, saved_address):
        _place(client, auth_headers)

        mine = client.get("/order/my-orders", headers=auth_headers).json()
        theirs = client.get("/order/my-orders", headers=other_headers).json()

        assert mine["totalOrders"] == 1
        assert theirs["totalOrders"] == 0

    def test_all_orders_for_admin(self, client, admin_headers, auth_headers, filled_cart, saved_address):
        _place(client, auth_headers)

        resp = client.get("/order/all-orders", headers=admin_headers)

        assert resp.status_code == 200
        assert resp.json()["totalOrders"] == 1
        assert resp.json()["orders"][0]["customer"]["email"] == "shopper@example.com"

    def test_all_orders_empty(self, client, admin_headers):
        body = client.get("/order/all-orders", headers=admin_headers).json()
        assert body["orders"] == []
        assert body["message"] == "No orders yet"

    def test_all_orders_status_filter(self, client, admin_headers, auth_headers, filled_cart, saved_address):
        _place(client, auth_headers)
        shipping = client.get("/order/all-orders", params={"status": "shipping"}, headers=admin_headers).json()
        assert shipping["totalOrders"] == 0

    def test_all_orders_forbidden_for_shoppers(self, client, auth_headers):
        assert client.get("/order/all-orders", headers=auth_headers).status_code == 403

    def test_order_detail_owner_only(self, client, auth_headers, other_headers, admin_headers, filled_cart, saved_address):
        order_id = _place(client, auth_headers).json()["order"]["id"]

        assert client.get(f"/order/{order_id}", headers=auth_headers).status_code == 200
        assert client.get(f"/order/{order_id}", headers=other_headers).status_code == 403
        assert client.get(f"/order/{order_id}", headers=admin_headers).status_code == 200
