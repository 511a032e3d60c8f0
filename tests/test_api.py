"""
HTTP surface: routing, staff authorization and error responses.

Run with: pytest tests/test_api.py -v
"""
import mongomock
import pytest
from fastapi.testclient import TestClient
from pymongo.errors import PyMongoError

import auth
from database import CatalogStore, create_document, get_db
from errors import StorageFailure
from main import app
from schemas import User

STAFF = {"Authorization": "Bearer kitchen-secret"}


@pytest.fixture
def client(db, monkeypatch):
    monkeypatch.setattr(auth, "STAFF_TOKEN", "kitchen-secret")
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def place(client, menu, table_id="5", guest_id="g1", qty=2, food="dosa"):
    response = client.post("/orders", json={
        "tableId": table_id,
        "guestId": guest_id,
        "items": [{"food": {"_id": menu[food], "price": 1}, "quantity": qty}],
        "totalPrice": 2,
    })
    assert response.status_code == 201, response.text
    return response.json()


class TestOrderRoutes:
    def test_place_order(self, client, menu):
        """Scenario: two dosas at 80 on table 5."""
        order = place(client, menu)

        assert order["totalPrice"] == 160.0
        assert order["status"] == "Pending"
        assert order["items"][0]["food"] == menu["dosa"]

    def test_food_id_alias_accepted(self, client, menu):
        response = client.post("/orders", json={
            "tableId": "5", "guestId": "g1", "items": [{"foodId": menu["biryani"], "quantity": 1}],
        })

        assert response.status_code == 201
        assert response.json()["totalPrice"] == 120.0

    def test_empty_cart_is_bad_request(self, client):
        response = client.post("/orders", json={"tableId": "5", "guestId": "g1", "items": []})

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Order must contain at least one item"}

    def test_unknown_food_is_not_found(self, client):
        response = client.post("/orders", json={
            "tableId": "5", "guestId": "g1", "items": [{"food": "64b000000000000000000000", "quantity": 1}],
        })

        assert response.status_code == 404

    def test_active_orders_need_staff_token(self, client, menu):
        place(client, menu)

        assert client.get("/orders").status_code == 401
        assert client.get("/orders", headers={"Authorization": "Bearer wrong"}).status_code == 401
        response = client.get("/orders", headers=STAFF)
        assert response.status_code == 200
        assert len(response.json()) == 1

    def test_my_orders(self, client, menu):
        order = place(client, menu)
        place(client, menu, guest_id="g2")

        response = client.get("/orders/my-orders", params={"guestId": "g1", "tableId": "5"})

        assert [o["_id"] for o in response.json()] == [order["_id"]]

    def test_my_orders_requires_both_ids(self, client):
        assert client.get("/orders/my-orders", params={"guestId": "g1"}).status_code == 400

    def test_status_flow(self, client, menu):
        order = place(client, menu)
        url = f"/orders/{order['_id']}/status"

        assert client.patch(url, json={"status": "Ready"}, headers=STAFF).json()["status"] == "Ready"
        assert client.patch(url, json={"status": "Served"}, headers=STAFF).json()["status"] == "Served"
        foods = {f["_id"]: f for f in client.get("/foods").json()}
        assert foods[menu["dosa"]]["totalSold"] == 2
        assert foods[menu["biryani"]]["totalSold"] == 0

    def test_invalid_status(self, client, menu):
        order = place(client, menu)

        response = client.patch(f"/orders/{order['_id']}/status", json={"status": "ready"}, headers=STAFF)

        assert response.status_code == 400

    def test_illegal_transition_is_conflict(self, client, menu):
        order = place(client, menu)
        url = f"/orders/{order['_id']}/status"
        client.patch(url, json={"status": "Cancelled"}, headers=STAFF)

        response = client.patch(url, json={"status": "Preparing"}, headers=STAFF)

        assert response.status_code == 409

    def test_expected_status_pins_pre_state(self, client, menu):
        order = place(client, menu)

        response = client.patch(
            f"/orders/{order['_id']}/status",
            json={"status": "Ready", "expectedStatus": "Preparing"},
            headers=STAFF,
        )

        assert response.status_code == 409

    def test_status_update_needs_staff(self, client, menu):
        order = place(client, menu)

        assert client.patch(f"/orders/{order['_id']}/status", json={"status": "Ready"}).status_code == 401

    def test_settle_single_order(self, client, menu):
        order = place(client, menu)

        response = client.delete(f"/orders/{order['_id']}")

        assert response.status_code == 200
        assert response.json()["revenue"]["totalAmount"] == 160.0
        assert client.delete(f"/orders/{order['_id']}").status_code == 404

    def test_clear_guest(self, client, menu):
        place(client, menu, qty=2)
        place(client, menu, qty=2, food="biryani")

        response = client.delete("/orders/guest/g1")

        assert response.status_code == 200
        assert response.json()["totalAmount"] == 400.0
        assert client.delete("/orders/guest/g1").status_code == 404

    def test_clear_table_is_staff_only(self, client, menu):
        place(client, menu, table_id="9")

        assert client.delete("/orders/clear-table/9").status_code == 401
        assert client.delete("/orders/clear-table/9", headers=STAFF).json()["deletedCount"] == 1
        assert client.delete("/orders/clear-table/9", headers=STAFF).status_code == 404


class TestAnalyticsRoutes:
    def test_stats(self, client, menu):
        order = place(client, menu)
        client.delete(f"/orders/{order['_id']}")

        response = client.get("/analytics/stats", headers=STAFF)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["currentMonthRevenue"] == 160.0
        assert data["currentMonthOrders"] == 1
        assert len(data["salesTrend"]) == 12

    def test_migrate(self, client, menu):
        order = place(client, menu)
        client.patch(f"/orders/{order['_id']}/status", json={"status": "Served"}, headers=STAFF)

        response = client.post("/analytics/migrate", headers=STAFF)

        assert response.json() == {"success": True, "scanned": 1, "created": 1}

    def test_stats_need_staff(self, client):
        assert client.get("/analytics/stats").status_code == 401


class TestLogin:
    @pytest.fixture
    def chef(self, db):
        create_document(db, "user", User(email="chef@restaurant.com", password_hash=auth.hash_password("s3cret!"), role="chef"))

    def test_login_returns_staff_token(self, client, chef):
        response = client.post("/auth/login", json={"email": "chef@restaurant.com", "password": "s3cret!"})

        assert response.status_code == 200
        assert response.json()["token"] == "kitchen-secret"
        assert response.json()["role"] == "chef"

    def test_wrong_password(self, client, chef):
        response = client.post("/auth/login", json={"email": "chef@restaurant.com", "password": "nope"})

        assert response.status_code == 401

    def test_unconfigured_token(self, client, chef, monkeypatch):
        monkeypatch.setattr(auth, "STAFF_TOKEN", None)

        response = client.post("/auth/login", json={"email": "chef@restaurant.com", "password": "s3cret!"})

        assert response.status_code == 503


class TestStorage:
    def test_missing_database_is_generic_server_error(self, menu, monkeypatch):
        """Without a configured database the client only sees a generic error."""
        app.dependency_overrides.clear()
        with TestClient(app) as test_client:
            response = test_client.get("/foods")

        assert response.status_code == 500
        assert response.json() == {"success": False, "message": "Server error"}

    def test_driver_error_is_generic_server_error(self, client, menu, monkeypatch):
        """A failing Mongo call surfaces as a 500 without the driver's message."""
        def unreachable(*args, **kwargs):
            raise PyMongoError("connection refused by 10.0.0.7:27017")

        monkeypatch.setattr(mongomock.collection.Collection, "find", unreachable)

        response = client.get("/foods")

        assert response.status_code == 500
        assert response.json() == {"success": False, "message": "Server error"}

    def test_driver_error_becomes_storage_failure(self, db, monkeypatch):
        def unreachable(*args, **kwargs):
            raise PyMongoError("connection refused")

        monkeypatch.setattr(mongomock.collection.Collection, "find", unreachable)

        with pytest.raises(StorageFailure):
            CatalogStore(db).list()

    def test_health(self, client):
        response = client.get("/test")

        assert response.status_code == 200
        assert response.json()["backend"] == "✅ Running"
