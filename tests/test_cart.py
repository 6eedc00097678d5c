import threading

from bson import ObjectId

from repositories import CartRepository
from schemas import CartItem, LineItem
from tests.conftest import CUSTOMER, OTHER, auth


def line(pid, quantity, price=100, name="Phone"):
    return {"id": pid, "name": name, "price": price, "quantity": quantity}


def add(client, uid, pid, quantity, price=100):
    return client.post(f"/add-to-cart/{uid}", json={"product_info": line(pid, quantity, price)}, headers=auth(uid))


def test_adding_same_product_merges_quantities(client, db, make_product):
    pid = make_product()
    assert add(client, CUSTOMER, pid, 2).status_code == 200
    assert add(client, CUSTOMER, pid, 3).json()["modifiedCount"] == 1
    cart = client.get(f"/get-cart/{CUSTOMER}", headers=auth(CUSTOMER)).json()
    assert len(cart) == 1
    assert cart[0]["product_info"]["quantity"] == 5
    assert db["cart"].count_documents({"uid": CUSTOMER}) == 1


def test_carts_are_per_user_and_per_product(client, make_product):
    phone = make_product(name="Phone")
    case = make_product(name="Case")
    add(client, CUSTOMER, phone, 1)
    add(client, CUSTOMER, case, 1)
    add(client, OTHER, phone, 4)
    mine = client.get(f"/get-cart/{CUSTOMER}", headers=auth(CUSTOMER)).json()
    theirs = client.get(f"/get-cart/{OTHER}", headers=auth(OTHER)).json()
    assert len(mine) == 2
    assert [i["product_info"]["quantity"] for i in theirs] == [4]


def test_add_unknown_product(client):
    assert add(client, CUSTOMER, str(ObjectId()), 1).status_code == 404


def test_add_rejects_non_positive_quantity(client, make_product):
    assert add(client, CUSTOMER, make_product(), 0).status_code == 422


def test_remove_is_scoped_to_owner(client, make_product):
    pid = make_product()
    add(client, OTHER, pid, 1)
    item_id = client.get(f"/get-cart/{OTHER}", headers=auth(OTHER)).json()[0]["id"]

    res = client.delete(f"/remove-from-cart/{CUSTOMER}", params={"id": item_id}, headers=auth(CUSTOMER))
    assert res.status_code == 404

    res = client.delete(f"/remove-from-cart/{OTHER}", params={"id": item_id}, headers=auth(OTHER))
    assert res.json()["deletedCount"] == 1


def test_confirm_order_creates_order_and_clears_cart(client, db, make_product):
    phone = make_product(name="Phone", price=100)
    case = make_product(name="Case", price=15)
    add(client, CUSTOMER, phone, 2)
    add(client, CUSTOMER, case, 1, price=15)
    add(client, OTHER, phone, 1)

    body = {
        "products": [line(phone, 2), line(case, 1, price=15, name="Case")],
        "address": "12 Road, Dhaka",
        # client totals are recomputed
        "subTotal": 1,
    }
    res = client.post(f"/confirm-order/{CUSTOMER}", json=body, headers=auth(CUSTOMER))
    assert res.status_code == 200

    order = db["order"].find_one({"_id": ObjectId(res.json()["insertedId"])})
    assert order["customer_uid"] == CUSTOMER
    assert order["subTotal"] == 215
    assert order["order_status"] == "payment pending"
    assert order["payment_status"] is False
    assert client.get(f"/get-cart/{CUSTOMER}", headers=auth(CUSTOMER)).json() == []
    assert len(client.get(f"/get-cart/{OTHER}", headers=auth(OTHER)).json()) == 1


def test_confirm_order_validation(client, make_product):
    res = client.post(f"/confirm-order/{CUSTOMER}", json={"products": []}, headers=auth(CUSTOMER))
    assert res.status_code == 422
    res = client.post(f"/confirm-order/{CUSTOMER}", json={"products": [line(str(ObjectId()), 1)]}, headers=auth(CUSTOMER))
    assert res.status_code == 404


def test_customer_sees_own_orders(client, make_product, place_order):
    pid = make_product()
    place_order(CUSTOMER, [line(pid, 1)])
    place_order(OTHER, [line(pid, 2)])
    orders = client.get(f"/orders/{CUSTOMER}", headers=auth(CUSTOMER)).json()
    assert len(orders) == 1
    assert orders[0]["customer_uid"] == CUSTOMER


def test_confirm_order_prices_lines_from_catalog(client, db, make_product):
    pid = make_product(name="Phone", price=900)
    body = {"products": [line(pid, 2, price=0, name="Anything")]}
    res = client.post(f"/confirm-order/{CUSTOMER}", json=body, headers=auth(CUSTOMER))
    assert res.status_code == 200

    order_id = res.json()["insertedId"]
    order = db["order"].find_one({"_id": ObjectId(order_id)})
    assert order["subTotal"] == 1800
    assert order["products"][0]["price"] == 900
    assert order["products"][0]["name"] == "Phone"

    payment = {
        "orderId": order_id,
        "price": 0,
        "transactionId": "txn_free",
        "address": "12 Road, Dhaka",
        "ordered_products": [{"id": pid, "quantity": 2}],
    }
    assert client.post(f"/payments/{CUSTOMER}", json=payment, headers=auth(CUSTOMER)).status_code == 422


def cart_item(pid, quantity):
    return CartItem(uid=CUSTOMER, product_info=LineItem(id=pid, name="Phone", price=100, quantity=quantity))


def test_concurrent_adds_merge_into_one_line(db, make_product):
    pid = make_product()
    carts = CartRepository(db)
    start = threading.Barrier(2)
    errors = []

    def add_item(quantity):
        start.wait()
        try:
            carts.add(cart_item(pid, quantity))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=add_item, args=(q,)) for q in (2, 3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    lines = carts.list(CUSTOMER)
    assert len(lines) == 1
    assert lines[0]["product_info"]["quantity"] == 5


def test_add_after_losing_insert_race_increments(db, make_product, monkeypatch):
    pid = make_product()
    carts = CartRepository(db)
    real_increment = CartRepository._increment
    calls = []

    def increment_then_lose_race(self, uid, product_id, quantity):
        calls.append(quantity)
        res = real_increment(self, uid, product_id, quantity)
        if len(calls) == 1:
            # another request inserts the line between our increment and insert
            self.col.insert_one(cart_item(pid, 2).model_dump())
        return res

    monkeypatch.setattr(CartRepository, "_increment", increment_then_lose_race)
    carts.add(cart_item(pid, 3))

    assert calls == [3, 3]
    lines = carts.list(CUSTOMER)
    assert len(lines) == 1
    assert lines[0]["product_info"]["quantity"] == 5
