"""
Shared fixtures: an in-memory Mongo database, test settings, a scripted
payment gateway and a TestClient wired to all three.
"""
import json
from typing import Callable, Dict, List, Optional

import httpx
import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from auth import create_token
from config import Settings, get_settings
from database import ensure_indexes, get_db
from payments import RazorpayGateway, expected_signature, get_gateway
from schemas import Product, ProductImage, SizeStock, User


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_name="shop_test",
        jwt_secret="test-secret",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="rzp_test_secret",
        razorpay_api_url="https://gateway.test",
        gateway_timeout=1.0,
    )


@pytest.fixture
def db():
    database = mongomock.MongoClient()["shop_test"]
    ensure_indexes(database)
    return database


class ScriptedGateway:
    """Answers gateway calls from canned data and records every request."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.payment_method = "upi"
        self.payment_status = "captured"
        self.payment_order_id = "order_gw_1"
        self.payment_amount = 0
        self.fail_with: Optional[Exception] = None
        self.status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": {"description": "nope"}})
        if request.method == "POST" and request.url.path == "/v1/orders":
            payload = json.loads(request.content)
            return httpx.Response(200, json={
                "id": "order_gw_1",
                "entity": "order",
                "amount": payload["amount"],
                "currency": payload["currency"],
                "receipt": payload["receipt"],
                "status": "created",
            })
        if request.method == "GET" and request.url.path.startswith("/v1/payments/"):
            payment_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={
                "id": payment_id,
                "entity": "payment",
                "order_id": self.payment_order_id,
                "amount": self.payment_amount,
                "currency": "INR",
                "method": self.payment_method,
                "status": self.payment_status,
            })
        return httpx.Response(404, json={})


@pytest.fixture
def scripted_gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def gateway(settings, scripted_gateway) -> RazorpayGateway:
    return RazorpayGateway(settings, transport=httpx.MockTransport(scripted_gateway))


@pytest.fixture
def client(db, settings, gateway):
    app = main.app
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# ----------------------- users & tokens -----------------------
def _make_user(db, email: str, role: str = "user") -> str:
    return str(db["user"].insert_one(User(email=email, role=role).model_dump()).inserted_id)


@pytest.fixture
def user_id(db) -> str:
    return _make_user(db, "shopper@example.com")


@pytest.fixture
def other_user_id(db) -> str:
    return _make_user(db, "someone@example.com")


@pytest.fixture
def admin_id(db) -> str:
    return _make_user(db, "admin@example.com", role="admin")


def bearer(settings: Settings, user_id: str, role: str = "user") -> Dict[str, str]:
    token = create_token({"_id": user_id, "email": f"{user_id}@example.com", "role": role}, settings)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(settings, user_id):
    return bearer(settings, user_id)


@pytest.fixture
def other_headers(settings, other_user_id):
    return bearer(settings, other_user_id)


@pytest.fixture
def admin_headers(settings, admin_id):
    return bearer(settings, admin_id, role="admin")


# ----------------------- catalog -----------------------
@pytest.fixture
def make_product(db) -> Callable[..., str]:
    def factory(name: str = "Tee", price: float = 100, sizes=None, status: str = "Active", image: str = None) -> str:
        product = Product(
            name=name,
            brand="Acme",
            price=price,
            category="apparel",
            subcategory="tops",
            status=status,
            images=[ProductImage(url=f"https://img.test/{name}.jpg", isPrimary=True)],
            image=image,
            sizes=[SizeStock(**s) for s in sizes or []],
        )
        return str(db["product"].insert_one(product.model_dump()).inserted_id)

    return factory


ADDRESS = {
    "fullName": "Asha Rao",
    "phoneNumber": "9876543210",
    "line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "postalCode": "560001",
}


@pytest.fixture
def address() -> dict:
    return dict(ADDRESS)


def signed_payment(settings: Settings, order_id: str = "order_gw_1", payment_id: str = "pay_1") -> dict:
    return {
        "razorpay_order_id": order_id,
        "razorpay_payment_id": payment_id,
        "razorpay_signature": expected_signature(order_id, payment_id, settings.razorpay_key_secret),
    }


def missing_object_id() -> str:
    return str(ObjectId())
