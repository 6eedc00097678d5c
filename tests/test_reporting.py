from datetime import date, datetime, timedelta, timezone

import reporting
from tests.conftest import ADMIN, CUSTOMER, auth


def add_payment(db, price, created):
    db["payment"].insert_one({
        "orderId": "o",
        "customer_uid": CUSTOMER,
        "price": price,
        "transactionId": f"txn_{price}_{created.isoformat()}",
        "address": "x",
        "ordered_products": [],
        "createAt": created,
    })


def test_income_is_bucketed_by_day():
    day1 = datetime(2024, 3, 1, 9, tzinfo=timezone.utc)
    day2 = datetime(2024, 3, 2, 18, tzinfo=timezone.utc)
    payments = [
        {"price": 100, "createAt": day1},
        {"price": 50, "createAt": day1 + timedelta(hours=5)},
        {"price": 25, "createAt": day2},
    ]
    assert reporting.income_by_day(payments) == [
        {"date": "2024-03-01", "income": 150},
        {"date": "2024-03-02", "income": 25},
    ]


def test_dashboard_aggregates(db, make_product):
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for i in range(6):
        make_product(name=f"P{i}", total_sale=i * 10, created=start + timedelta(days=i))
    db["order"].insert_many([{"customer_uid": CUSTOMER}, {"customer_uid": CUSTOMER}])
    add_payment(db, 100, datetime(2024, 3, 1, 9, tzinfo=timezone.utc))
    add_payment(db, 50, datetime(2024, 3, 1, 12, tzinfo=timezone.utc))
    add_payment(db, 25, datetime(2024, 3, 2, 12, tzinfo=timezone.utc))

    data = reporting.dashboard(db, today=date(2024, 3, 2))
    assert [p["product_info"]["name"] for p in data["topSales"]] == ["P5", "P4", "P3", "P2", "P1"]
    assert [p["product_info"]["name"] for p in data["recentProducts"]] == ["P5", "P4", "P3", "P2", "P1"]
    assert data["ordersCount"] == 2
    assert data["productsCount"] == 6
    assert data["chartData"] == [{"date": "2024-03-01", "income": 150}, {"date": "2024-03-02", "income": 25}]
    assert data["totalIncome"] == 175
    assert data["todayIncome"] == 25


def test_today_income_is_null_without_sales_today(db):
    add_payment(db, 10, datetime(2024, 3, 1, tzinfo=timezone.utc))
    assert reporting.dashboard(db, today=date(2024, 3, 5))["todayIncome"] is None


def test_dashboard_endpoint(client, db):
    add_payment(db, 40, datetime.now(timezone.utc))
    res = client.get(f"/dashboard-data/{ADMIN}", headers=auth(ADMIN))
    assert res.status_code == 200
    assert res.json()["todayIncome"] == 40


def test_sales_report_newest_first_and_paginated(client, db):
    start = datetime(2024, 3, 1, tzinfo=timezone.utc)
    for i in range(3):
        add_payment(db, 10 * (i + 1), start + timedelta(days=i))
    body = client.get(f"/sales-report/{ADMIN}", headers=auth(ADMIN)).json()
    assert body["paymentsCount"] == 3
    assert [p["price"] for p in body["payments"]] == [30, 20, 10]

    body = client.get(f"/sales-report/{ADMIN}", params={"perPageView": 2, "currentPage": 1}, headers=auth(ADMIN)).json()
    assert [p["price"] for p in body["payments"]] == [10]


def test_sales_report_is_admin_only(client):
    assert client.get(f"/sales-report/{CUSTOMER}", headers=auth(CUSTOMER)).status_code == 403
