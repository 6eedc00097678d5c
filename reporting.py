"""Admin dashboard aggregation and the sales report."""
from datetime import date, datetime, timezone
from typing import Optional

from pymongo.database import Database

from database import serialize_doc
from repositories import CatalogRepository, OrderRepository, PaymentRepository


def bucket_key(value) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, str):
        return value[:10]
    return str(value)


def income_by_day(payments) -> list:
    """Sum payment amounts per calendar day, in order of first appearance."""
    buckets = {}
    for payment in payments:
        key = bucket_key(payment.get("createAt"))
        buckets[key] = buckets.get(key, 0) + payment.get("price", 0)
    return [{"date": day, "income": income} for day, income in buckets.items()]


def dashboard(db: Database, today: Optional[date] = None) -> dict:
    today = today or datetime.now(timezone.utc).date()
    catalog = CatalogRepository(db)
    chart = income_by_day(PaymentRepository(db).oldest_first())
    today_bucket = next((b for b in chart if b["date"] == today.isoformat()), None)
    return {
        "topSales": [serialize_doc(p) for p in catalog.top_sales(5)],
        "recentProducts": [serialize_doc(p) for p in catalog.recent(5)],
        "ordersCount": OrderRepository(db).count(),
        "productsCount": catalog.count(),
        "totalIncome": sum(b["income"] for b in chart),
        "chartData": chart,
        "todayIncome": today_bucket["income"] if today_bucket else None,
    }


def sales_report(db: Database, per_page: int = 20, page_index: int = 0) -> dict:
    payments, count = PaymentRepository(db).newest_first(per_page, page_index)
    return {"payments": [serialize_doc(p) for p in payments], "paymentsCount": count}
