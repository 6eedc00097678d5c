"""
Checkout and payment workflow.

The captured payment is the source of truth. Once a payment is stored the
order is marked paid and every purchased line is moved from stock to sales
with ``CatalogRepository.apply_sale``. Each line is applied at most once
per payment, so the inventory phase can be re-run (``resume_inventory``)
after a partial failure without double counting. Lines that cannot be
served from stock are recorded on the payment as backordered.
"""
import logging

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from errors import Conflict, Forbidden, NotFound, OrderNotFound, ValidationError
from repositories import (
    ALREADY_APPLIED,
    APPLIED,
    CartRepository,
    CatalogRepository,
    OrderRepository,
    PaymentRepository,
)
from schemas import ORDER_TRANSITIONS, LineItem, Order, Payment

logger = logging.getLogger(__name__)


def confirm_order(db: Database, uid: str, products, **contact):
    """Create an order from ``products`` and clear the matching cart lines.

    The order insert and the cart clear are separate writes. If the clear
    fails the order stands and the error propagates to the caller.
    """
    carts = CartRepository(db)
    cart_ids = [line["_id"] for line in carts.list(uid)]
    lines = [p if isinstance(p, LineItem) else LineItem(**p) for p in products]
    order = Order(
        customer_uid=uid,
        products=lines,
        subTotal=sum(line.price * line.quantity for line in lines),
        **contact,
    )
    res = OrderRepository(db).create(order)
    cleared = carts.clear(uid, cart_ids)
    logger.info("Order %s confirmed for %s (%d cart lines cleared)", res.inserted_id, uid, cleared)
    return res


def load_owned_order(orders: OrderRepository, uid: str, order_id: str) -> dict:
    try:
        order = orders.get(order_id)
    except NotFound:
        raise OrderNotFound()
    if not order:
        raise OrderNotFound()
    if order.get("customer_uid") != uid:
        logger.warning("%s tried to pay for order %s owned by %s", uid, order_id, order.get("customer_uid"))
        raise Forbidden()
    return order


def create_payment_intent(db: Database, gateway, uid: str, order_id: str) -> dict:
    order = load_owned_order(OrderRepository(db), uid, order_id)
    if order.get("payment_status"):
        raise Conflict("Order already paid")
    if order.get("order_status") == "cancelled":
        raise Conflict("Order cancelled")
    return {"clientSecret": gateway.create_intent(order["subTotal"])}


def adjust_inventory(db: Database, payment: dict) -> dict:
    """Apply every purchased line of ``payment`` to the catalog."""
    catalog = CatalogRepository(db)
    payment_id = str(payment["_id"])
    adjusted, backordered = [], []
    for line in payment.get("ordered_products", []):
        try:
            outcome = catalog.apply_sale(line["id"], line["quantity"], payment_id)
        except NotFound:
            outcome = "missing"
        if outcome in (APPLIED, ALREADY_APPLIED):
            adjusted.append(line["id"])
        else:
            logger.warning("Payment %s: %s x%s %s", payment_id, line["id"], line["quantity"], outcome)
            backordered.append({"id": line["id"], "quantity": line["quantity"], "reason": outcome})
    status = "backordered" if backordered else "applied"
    PaymentRepository(db).finish_inventory(payment["_id"], status, adjusted, backordered)
    payment.update(inventory_status=status, adjusted=adjusted, backordered=backordered)
    return payment


def purchased_lines(order: dict) -> dict:
    """Quantity per product id for the lines of ``order``."""
    totals = {}
    for line in order.get("products", []):
        totals[line["id"]] = totals.get(line["id"], 0) + line["quantity"]
    return totals


def check_owner(payment: dict, uid: str) -> dict:
    if payment.get("customer_uid") != uid:
        raise Forbidden()
    return payment


def record_payment(db: Database, uid: str, body) -> dict:
    """Store a captured payment, mark its order paid and adjust inventory.

    Re-submitting the same ``transactionId`` returns the stored payment and
    finishes its inventory phase if that was interrupted. The purchased
    lines must match the order's lines; stock is adjusted from the order.
    """
    payments = PaymentRepository(db)
    orders = OrderRepository(db)

    existing = payments.by_transaction(body.transactionId)
    if existing:
        check_owner(existing, uid)
        logger.warning("Duplicate submission of transaction %s", body.transactionId)
        return resume(db, existing)

    order = load_owned_order(orders, uid, body.orderId)
    if order.get("payment_status"):
        raise Conflict("Order already paid")
    if order.get("order_status") == "cancelled":
        raise Conflict("Order cancelled")
    if float(body.price) != float(order["subTotal"]):
        raise ValidationError("Payment amount does not match order total")
    lines = purchased_lines(order)
    if purchased_lines({"products": [p.model_dump() for p in body.ordered_products]}) != lines:
        raise ValidationError("Purchased products do not match the order")

    fields = body.model_dump(exclude={"ordered_products"})
    payment = Payment(
        customer_uid=uid,
        ordered_products=[{"id": pid, "quantity": qty} for pid, qty in lines.items()],
        **fields,
    )
    try:
        res = payments.create(payment)
    except DuplicateKeyError:
        return resume(db, check_owner(payments.by_transaction(body.transactionId), uid))
    doc = payments.get(str(res.inserted_id))
    logger.info("Payment %s recorded for order %s", res.inserted_id, body.orderId)

    return resume(db, doc)


def resume(db: Database, payment: dict) -> dict:
    """Finish whatever is left of the workflow for a stored payment.

    Inventory is only touched by the payment that settled the order; any
    other payment for the same order is marked rejected.
    """
    orders = OrderRepository(db)
    if orders.mark_paid(payment["orderId"], payment["address"], payment["transactionId"]):
        logger.info("Order %s marked paid", payment["orderId"])
    else:
        order = orders.get(payment["orderId"])
        if not order or order.get("transactionId") != payment["transactionId"]:
            reason = "Order already paid" if order and order.get("payment_status") else "Order not awaiting payment"
            logger.warning("Payment %s rejected for order %s: %s", payment["_id"], payment["orderId"], reason)
            PaymentRepository(db).reject(payment["_id"], reason)
            raise Conflict(reason)
    if payment.get("inventory_status") != "applied":
        return adjust_inventory(db, payment)
    return payment


def resume_inventory(db: Database, uid: str, is_admin: bool, payment_id: str) -> dict:
    payment = PaymentRepository(db).get(payment_id)
    if not payment:
        raise NotFound("Payment not found")
    if payment.get("customer_uid") != uid and not is_admin:
        raise Forbidden()
    return resume(db, payment)


def change_order_status(db: Database, order_id: str, new_status: str) -> dict:
    orders = OrderRepository(db)
    order = orders.get(order_id)
    if not order:
        raise OrderNotFound()
    current = order.get("order_status")
    if new_status not in ORDER_TRANSITIONS.get(current, set()):
        raise Conflict(f"Cannot move order from '{current}' to '{new_status}'")
    if not orders.set_status(order_id, current, new_status):
        raise Conflict("Order status changed concurrently")
    logger.info("Order %s: %s -> %s", order_id, current, new_status)
    return {"id": order_id, "order_status": new_status}
