from datetime import datetime, timezone
from uuid import uuid4

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from auth import create_token
from database import ensure_indexes, get_db
from gateway import get_gateway
from schemas import Product, ProductInfo, SellerInfo

ADMIN = "admin-uid"
CUSTOMER = "customer-uid"
OTHER = "other-uid"


class FakeGateway:
    def __init__(self):
        self.amounts = []

    def create_intent(self, amount) -> str:
        self.amounts.append(amount)
        return f"pi_{len(self.amounts)}_secret_test"


def auth(uid: str) -> dict:
    return {"Authorization": f"Bearer {create_token(uid)}"}


@pytest.fixture
def db():
    database = mongomock.MongoClient()[f"test_{uuid4().hex}"]
    ensure_indexes(database)
    database["user"].insert_many([
        {"uid": ADMIN, "name": "Admin", "role": "admin"},
        {"uid": CUSTOMER, "name": "Customer", "role": "customer"},
        {"uid": OTHER, "name": "Other", "role": "customer"},
    ])
    database["category"].insert_one({"name": "Phones", "slug": "phones"})
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_product(db):
    def _make(name="Phone", price=100, quantity=10, total_sale=0, visibility=True, created=None, category="phones"):
        product = Product(
            product_info=ProductInfo(
                name=name, category=category, price=price, quantity=quantity, totalSale=total_sale
            ),
            seller_info=SellerInfo(seller_uid=ADMIN),
            visibility=visibility,
            createAt=created or datetime.now(timezone.utc),
        )
        return str(db["product"].insert_one(product.model_dump(exclude_none=True)).inserted_id)

    return _make


@pytest.fixture
def place_order(client):
    """Confirm an order for ``uid`` through the API and return its id."""
    def _place(uid, lines):
        res = client.post(f"/confirm-order/{uid}", json={"products": lines}, headers=auth(uid))
        assert res.status_code == 200, res.text
        return res.json()["insertedId"]

    return _place
