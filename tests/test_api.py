"""HTTP-level tests for the FastAPI app."""

import json

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from main import app, get_db, get_gateway


@pytest.fixture
def client(db, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def address_body(address):
    return dict(address)


def create_product(client, **overrides):
    body = {"name": "Hoodie", "description": "Campus hoodie", "category": "apparel", "price": 100, "stock": 5}
    body.update(overrides)
    resp = client.post("/api/admin/product", json=body)
    assert resp.status_code == 201
    return resp.json()


def create_order(client, product_id, address, quantity=1, user_id="u1"):
    return client.post(f"/api/orders/{user_id}", json={
        "items": [{"product_id": product_id, "quantity": quantity}],
        "shipping_address": address,
        "payment_method": "razorpay",
    })


class TestProducts:
    def test_create_and_fetch(self, client):
        product = create_product(client, discount=10)
        assert product["sku"].startswith("APP-")
        assert product["final_price"] == 90.0
        assert product["in_stock"] is True

        resp = client.get(f"/api/products/{product['_id']}")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Hoodie"

    def test_search(self, client):
        create_product(client, name="Blue Hoodie")
        create_product(client, name="Mug", description="Ceramic mug", category="accessories")
        names = [p["name"] for p in client.get("/api/products", params={"q": "hood"}).json()]
        assert names == ["Blue Hoodie"]

    def test_unknown_product_is_404(self, client):
        resp = client.get("/api/products/not-an-id")
        assert resp.status_code == 404
        assert resp.json()["error_type"] == "NotFoundError"


class TestOrders:
    def test_checkout_and_cancel(self, client, address_body):
        product = create_product(client)
        resp = create_order(client, product["_id"], address_body, quantity=3)
        assert resp.status_code == 201
        order = resp.json()
        assert order["pricing"]["total"] == 404.0
        assert order["can_cancel"] is True
        assert client.get(f"/api/products/{product['_id']}").json()["stock"] == 2

        resp = client.put(f"/api/orders/u1/{order['_id']}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        assert client.get(f"/api/products/{product['_id']}").json()["stock"] == 5

    def test_out_of_stock_is_409(self, client, address_body):
        product = create_product(client, stock=1)
        resp = create_order(client, product["_id"], address_body, quantity=2)
        assert resp.status_code == 409
        assert resp.json()["error_type"] == "OutOfStock"

    def test_illegal_status_is_409(self, client, address_body):
        product = create_product(client)
        order = create_order(client, product["_id"], address_body).json()
        resp = client.put(f"/api/admin/orders/{order['_id']}/status", json={"status": "shipped"})
        assert resp.status_code == 409
        assert resp.json()["error_type"] == "IllegalTransition"

    def test_list_orders(self, client, address_body):
        product = create_product(client)
        create_order(client, product["_id"], address_body)
        body = client.get("/api/orders/u1").json()
        assert body["pagination"]["total"] == 1
        assert client.get("/api/orders/u1", params={"limit": 0}).status_code == 400


class TestPayments:
    def test_pay_then_verify(self, client, address_body):
        product = create_product(client)
        order = create_order(client, product["_id"], address_body, quantity=3).json()

        resp = client.post("/api/payments/create-order",
                           json={"order_id": order["_id"], "user_id": "u1", "amount": 404.0})
        assert resp.status_code == 200
        gw_order_id = resp.json()["razorpay_order_id"]

        resp = client.post("/api/payments/verify", json={
            "razorpay_order_id": gw_order_id, "razorpay_payment_id": "pay_1", "razorpay_signature": "forged",
        })
        assert resp.status_code == 400

        resp = client.post("/api/payments/verify", json={
            "razorpay_order_id": gw_order_id, "razorpay_payment_id": "pay_1", "razorpay_signature": "good",
        })
        assert resp.status_code == 200
        assert resp.json()["status"] == "confirmed"

    def test_webhook_signature_checked(self, client, address_body):
        product = create_product(client)
        order = create_order(client, product["_id"], address_body).json()
        client.post("/api/payments/create-order",
                    json={"order_id": order["_id"], "user_id": "u1", "amount": order["pricing"]["total"]})
        gw_order_id = client.get(f"/api/payments/u1/{order['_id']}").json()["razorpay_order_id"]
        body = json.dumps({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_7", "order_id": gw_order_id}}},
        })

        resp = client.post("/api/payments/webhook", content=body, headers={"x-razorpay-signature": "bad"})
        assert resp.status_code == 400

        resp = client.post("/api/payments/webhook", content=body, headers={"x-razorpay-signature": "good"})
        assert resp.status_code == 200
        assert client.get(f"/api/orders/u1/{order['_id']}").json()["status"] == "confirmed"

    def test_webhook_without_entity_ignored(self, client):
        body = json.dumps({"event": "payment.captured", "payload": {}})
        resp = client.post("/api/payments/webhook", content=body, headers={"x-razorpay-signature": "good"})
        assert resp.status_code == 200


class TestGroupsAndDistribution:
    def test_group_distribution_flow(self, client, address_body, make_user, future):
        head = make_user(name="Head", role="department_head")
        courier = make_user(name="Courier")
        group = client.post("/api/group-orders", json={
            "organizer_id": head, "name": "CS Hoodies", "department": "CS",
            "settings": {"deadline": future.isoformat()},
        })
        assert group.status_code == 201
        gid = group.json()["_id"]
        assert group.json()["is_open"] is True

        resp = client.post(f"/api/group-orders/{gid}/members",
                           json={"actor_id": "nobody", "user_id": "u1"})
        assert resp.status_code == 403
        client.post(f"/api/group-orders/{gid}/members", json={"actor_id": head, "user_id": "u1"})

        product = create_product(client)
        order = client.post("/api/orders/u1", json={
            "items": [{"product_id": product["_id"], "quantity": 1}],
            "shipping_address": address_body,
            "payment_method": "upi",
            "group_order_id": gid,
        }).json()
        assert client.get(f"/api/group-orders/{gid}").json()["order_count"] == 1

        resp = client.post("/api/admin/distributions", json={
            "order_id": order["_id"], "assigned_to": courier,
            "location": {"name": "CS Office"}, "scheduled_date": future.isoformat(),
        })
        assert resp.status_code == 400
        assert resp.json()["error_type"] == "OrderNotReady"

        client.put(f"/api/admin/orders/{order['_id']}/status", json={"status": "confirmed"})
        resp = client.post("/api/admin/distributions", json={
            "order_id": order["_id"], "assigned_to": courier,
            "location": {"name": "CS Office"}, "scheduled_date": future.isoformat(),
        })
        assert resp.status_code == 201
        did = resp.json()["_id"]

        for status in ("assigned", "ready", "in_transit", "delivered"):
            resp = client.put(f"/api/distributions/{did}/status", json={"status": status})
            assert resp.status_code == 200
        assert resp.json()["tracking"]["tracking_number"].startswith("TRK-")
        assert client.get(f"/api/orders/u1/{order['_id']}").json()["status"] == "delivered"

        assignments = client.get(f"/api/distributions/assignee/{courier}").json()
        assert assignments["pagination"]["total"] == 1


class TestReviews:
    def test_review_after_delivery(self, client, address_body):
        product = create_product(client)
        order = create_order(client, product["_id"], address_body).json()
        review_body = {"product_id": product["_id"], "order_id": order["_id"], "rating": 5,
                       "comment": "Really comfortable hoodie"}

        resp = client.post("/api/reviews/u1", json=review_body)
        assert resp.status_code == 400
        assert resp.json()["error_type"] == "NotPurchased"

        for status in ("confirmed", "processing", "delivered"):
            client.put(f"/api/admin/orders/{order['_id']}/status", json={"status": status})
        resp = client.post("/api/reviews/u1", json=review_body)
        assert resp.status_code == 201
        review_id = resp.json()["_id"]

        assert client.post("/api/reviews/u1", json=review_body).status_code == 409
        assert client.post(f"/api/reviews/{review_id}/helpful/u1").status_code == 400

        client.put(f"/api/admin/reviews/{review_id}/status", json={"status": "approved"})
        listing = client.get(f"/api/reviews/product/{product['_id']}").json()
        assert listing["summary"]["average_rating"] == 5.0
        assert client.get(f"/api/products/{product['_id']}").json()["rating"] == {"average": 5.0, "count": 1}

        mine = client.get("/api/reviews/user/u1", params={"status": "approved"}).json()
        assert mine["pagination"]["total"] == 1
        assert client.get("/api/reviews/user/u1", params={"limit": 50}).status_code == 400
        assert client.get("/api/admin/reviews", params={"visibility": "public"}).json()["reviews"][0]["_id"] == review_id
        assert client.get("/api/admin/reviews/statistics").json()["approved_reviews"] == 1


class TestAdmin:
    def test_dashboard_and_order_listing(self, client, address_body, make_user):
        make_user(name="Asha")
        product = create_product(client)
        order = create_order(client, product["_id"], address_body).json()
        create_order(client, product["_id"], address_body, user_id="u2")
        client.put(f"/api/admin/orders/{order['_id']}/status", json={"status": "confirmed"})

        data = client.get("/api/admin/dashboard").json()
        assert data["overview"]["total_orders"] == 2
        assert data["overview"]["total_users"] == 1
        assert data["product_stats"]["apparel"]["total_stock"] == 3

        confirmed = client.get("/api/admin/orders", params={"status": "confirmed"}).json()
        assert [o["_id"] for o in confirmed["orders"]] == [order["_id"]]
        assert client.get("/api/admin/orders", params={"order_type": "bulk"}).status_code == 422

    def test_user_management(self, client, make_user):
        uid = make_user(name="Asha Rao")
        make_user(name="Vikram")

        found = client.get("/api/admin/users", params={"search": "rao"}).json()
        assert [u["_id"] for u in found["users"]] == [uid]

        resp = client.put(f"/api/admin/users/{uid}/role", json={"role": "department_head"})
        assert resp.status_code == 200
        assert resp.json()["role"] == "department_head"
        assert client.put(f"/api/admin/users/{uid}/role", json={"role": "root"}).status_code == 422

        resp = client.put(f"/api/admin/users/{uid}/toggle-active")
        assert resp.json()["is_active"] is False
        assert client.post("/api/auth/login", json={"email": "asha.rao@campus.edu"}).status_code == 404
        assert client.put("/api/admin/users/missing/toggle-active").status_code == 404

    def test_group_listing(self, client, make_user, future):
        head = make_user(name="Head", role="department_head")
        client.post("/api/group-orders", json={
            "organizer_id": head, "name": "CS Hoodies", "department": "CS",
            "settings": {"deadline": future.isoformat()},
        })
        listing = client.get("/api/admin/group-orders", params={"department": "CS"}).json()
        assert listing["group_orders"][0]["name"] == "CS Hoodies"
        assert client.get("/api/admin/group-orders", params={"department": "EE"}).json()["group_orders"] == []

    def test_payment_statistics(self, client, address_body):
        product = create_product(client)
        order = create_order(client, product["_id"], address_body, quantity=3).json()
        created = client.post("/api/payments/create-order",
                              json={"order_id": order["_id"], "user_id": "u1", "amount": 404.0}).json()
        client.post("/api/payments/verify", json={
            "razorpay_order_id": created["razorpay_order_id"], "razorpay_payment_id": "pay_1",
            "razorpay_signature": "good",
        })

        stats = client.get("/api/admin/payments/statistics").json()
        assert stats["total_revenue"] == 404.0
        assert stats["status_breakdown"]["completed"]["count"] == 1
        assert stats["recent_payments"][0]["order_number"] == order["order_number"]


class TestStartup:
    def test_indexes_created_on_startup(self, monkeypatch):
        db = mongomock.MongoClient()["campus_store_startup"]
        monkeypatch.setattr(database, "db", db)
        with TestClient(app):
            pass
        assert "order_number_1" in db["order"].index_information()
        assert "user_id_1_product_id_1" in db["review"].index_information()
