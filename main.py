import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError

import config
import reporting
import workflow
from auth import Identity, create_token, require_admin, require_owner
from database import (
    connect,
    delete_result,
    ensure_indexes,
    get_db,
    insert_result,
    serialize_doc,
    update_result,
)
from errors import Conflict, NotFound, ValidationError, install_handlers
from gateway import build_gateway, get_gateway
from repositories import (
    CartRepository,
    CatalogRepository,
    CategoryRepository,
    OrderRepository,
    ReviewRepository,
    SliderRepository,
    UserRepository,
)
from schemas import (
    CartItem,
    Category as CategorySchema,
    LineItem,
    OrderStatus,
    Product as ProductSchema,
    ProductInfo,
    PurchasedProduct,
    Role,
    SellerInfo,
    Slider as SliderSchema,
    User as UserSchema,
    now,
)

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    client = connect()
    app.state.db = client[config.DATABASE_NAME]
    app.state.gateway = build_gateway()
    try:
        ensure_indexes(app.state.db)
    except PyMongoError as e:
        # Best-effort; requests still get explicit 502s while the database is down
        logger.warning("Could not ensure indexes: %s", e)
    logger.info("NiyeNow server is running on %s", config.PORT)
    yield
    client.close()


app = FastAPI(title="NiyeNow Marketplace API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_handlers(app)


# ----------------------- Repositories -----------------------
def users_repo(db=Depends(get_db)) -> UserRepository:
    return UserRepository(db)


def catalog_repo(db=Depends(get_db)) -> CatalogRepository:
    return CatalogRepository(db)


def categories_repo(db=Depends(get_db)) -> CategoryRepository:
    return CategoryRepository(db)


def sliders_repo(db=Depends(get_db)) -> SliderRepository:
    return SliderRepository(db)


def reviews_repo(db=Depends(get_db)) -> ReviewRepository:
    return ReviewRepository(db)


def cart_repo(db=Depends(get_db)) -> CartRepository:
    return CartRepository(db)


def orders_repo(db=Depends(get_db)) -> OrderRepository:
    return OrderRepository(db)


# ----------------------- Models -----------------------
class UserBody(BaseModel):
    uid: str = Field(..., min_length=1)
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    photo: Optional[str] = None


class RoleBody(BaseModel):
    role: Role
    seller: bool = False


class ProductInfoBody(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    category: str
    image: Optional[str] = None
    price: int = Field(..., ge=0)
    quantity: int = Field(..., ge=0)


class ProductCreateBody(BaseModel):
    product_info: ProductInfoBody
    visibility: bool = True


class ProductUpdateBody(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    image: Optional[str] = None
    price: Optional[int] = Field(None, ge=0)
    quantity: Optional[int] = Field(None, ge=0)


class VisibilityBody(BaseModel):
    visibility: bool


class ReviewBody(BaseModel):
    product_id: str
    customer_rating: float = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class CartItemBody(BaseModel):
    product_info: LineItem


class OrderBody(BaseModel):
    products: List[LineItem] = Field(..., min_length=1)
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class OrderStatusBody(BaseModel):
    order_status: OrderStatus


class PaymentBody(BaseModel):
    orderId: str
    price: float = Field(..., ge=0)
    transactionId: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    ordered_products: List[PurchasedProduct] = Field(..., min_length=1)


def public_product(catalog: CatalogRepository, product_id: str) -> dict:
    product = catalog.get(product_id)
    if not product or not product.get("visibility"):
        raise NotFound("Product not found")
    return product


def require_category(categories: CategoryRepository, slug: str) -> dict:
    category = categories.by_slug(slug)
    if not category:
        raise NotFound("Category not found")
    return category


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "NiyeNow server is running"}


@app.get("/test")
def test_database(request: Request):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": config.DATABASE_NAME,
        "connection_status": "Not Connected",
        "collections": [],
    }
    db = getattr(request.app.state, "db", None)
    try:
        if db is not None:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Auth & Users -----------------------
@app.get("/jwt")
def issue_token(uid: str = Query(..., min_length=1)):
    return {"token": create_token(uid)}


@app.post("/users")
def register_user(body: UserBody, users: UserRepository = Depends(users_repo)):
    res = users.register(UserSchema(**body.model_dump()))
    if res is None:
        return {"message": "user already exists", "insertedId": None}
    logger.info("Registered user %s", body.uid)
    return insert_result(res)


@app.get("/users/{uid}")
def get_user(uid: str, identity: Identity = Depends(require_owner), users: UserRepository = Depends(users_repo)):
    user = users.get(uid)
    if not user:
        raise NotFound("User not found")
    return serialize_doc(user)


@app.get("/admin/{uid}")
def is_admin(uid: str, identity: Identity = Depends(require_owner), users: UserRepository = Depends(users_repo)):
    user = users.get(uid)
    return {"admin": bool(user) and user.get("role") == "admin"}


@app.get("/users-list/{uid}")
def list_users(uid: str, identity: Identity = Depends(require_admin), users: UserRepository = Depends(users_repo)):
    return [serialize_doc(u) for u in users.list()]


@app.patch("/users/role/{uid}")
def set_user_role(
    uid: str,
    body: RoleBody,
    target: str = Query(..., min_length=1),
    identity: Identity = Depends(require_admin),
    users: UserRepository = Depends(users_repo),
):
    user = users.get(target)
    if not user:
        raise NotFound("User not found")
    seller_info = None
    if body.seller:
        seller_info = SellerInfo(
            seller_uid=target, seller_name=user.get("name"), seller_email=user.get("email")
        ).model_dump(exclude_none=True)
    res = users.set_role(target, body.role, seller_info)
    logger.info("%s set role of %s to %s", uid, target, body.role)
    return update_result(res)


# ----------------------- Products -----------------------
@app.get("/products")
def list_products(
    perPageView: int = Query(10, ge=1, le=100),
    currentPage: int = Query(0, ge=0),
    catalog: CatalogRepository = Depends(catalog_repo),
):
    items, count = catalog.list_visible(perPageView, currentPage)
    return {"products": [serialize_doc(i) for i in items], "productsCount": count}


@app.get("/product/{product_id}")
def get_product(product_id: str, catalog: CatalogRepository = Depends(catalog_repo)):
    return {"product": serialize_doc(public_product(catalog, product_id))}


@app.get("/seller-products/{uid}")
def seller_products(uid: str, identity: Identity = Depends(require_admin), catalog: CatalogRepository = Depends(catalog_repo)):
    return [serialize_doc(p) for p in catalog.list_by_seller(uid)]


@app.post("/product")
def create_product(
    uid: str,
    body: ProductCreateBody,
    identity: Identity = Depends(require_admin),
    catalog: CatalogRepository = Depends(catalog_repo),
    categories: CategoryRepository = Depends(categories_repo),
    users: UserRepository = Depends(users_repo),
):
    require_category(categories, body.product_info.category)
    seller = users.get(uid) or {}
    product = ProductSchema(
        product_info=ProductInfo(**body.product_info.model_dump()),
        seller_info=SellerInfo(seller_uid=uid, seller_name=seller.get("name"), seller_email=seller.get("email")),
        visibility=body.visibility,
    )
    res = catalog.create(product)
    logger.info("Product %s created by %s", res.inserted_id, uid)
    return insert_result(res)


@app.patch("/product/{uid}")
def update_product(
    uid: str,
    body: ProductUpdateBody,
    product_id: str = Query(..., alias="id"),
    identity: Identity = Depends(require_admin),
    catalog: CatalogRepository = Depends(catalog_repo),
    categories: CategoryRepository = Depends(categories_repo),
):
    fields = body.model_dump(exclude_none=True)
    if not fields:
        raise ValidationError("No updatable fields supplied")
    if "category" in fields:
        require_category(categories, fields["category"])
    res = catalog.update(product_id, fields)
    if res.matched_count == 0:
        raise NotFound("Product not found")
    logger.info("Product %s updated by %s: %s", product_id, uid, sorted(fields))
    return update_result(res)


@app.patch("/product-visibility/{uid}")
def set_product_visibility(
    uid: str,
    body: VisibilityBody,
    product_id: str = Query(..., alias="id"),
    identity: Identity = Depends(require_admin),
    catalog: CatalogRepository = Depends(catalog_repo),
):
    res = catalog.set_visibility(product_id, body.visibility)
    if res.matched_count == 0:
        raise NotFound("Product not found")
    return update_result(res)


@app.delete("/product/{uid}")
def delete_product(
    uid: str,
    product_id: str = Query(..., alias="id"),
    identity: Identity = Depends(require_admin),
    catalog: CatalogRepository = Depends(catalog_repo),
):
    res = catalog.delete(product_id)
    if res.deleted_count == 0:
        raise NotFound("Product not found")
    logger.info("Product %s deleted by %s", product_id, uid)
    return delete_result(res)


# ----------------------- Categories -----------------------
@app.get("/categories")
def list_categories(categories: CategoryRepository = Depends(categories_repo)):
    return [serialize_doc(c) for c in categories.list()]


@app.get("/top-categories")
def top_categories(categories: CategoryRepository = Depends(categories_repo)):
    return [serialize_doc(c) for c in categories.list(limit=3)]


@app.get("/category/{slug}")
def category_products(
    slug: str,
    perPageView: int = Query(10, ge=1, le=100),
    currentPage: int = Query(0, ge=0),
    categories: CategoryRepository = Depends(categories_repo),
    catalog: CatalogRepository = Depends(catalog_repo),
):
    category = require_category(categories, slug)
    items, count = catalog.list_visible(perPageView, currentPage, category=slug)
    return {
        "category": serialize_doc(category),
        "products": [serialize_doc(i) for i in items],
        "productsCount": count,
    }


@app.post("/category")
def create_category(
    uid: str,
    body: CategorySchema,
    identity: Identity = Depends(require_admin),
    categories: CategoryRepository = Depends(categories_repo),
):
    res = categories.create(body)
    if res is None:
        raise Conflict("Category slug already exists")
    logger.info("Category %s created by %s", body.slug, uid)
    return insert_result(res)


# ----------------------- Sliders -----------------------
class SliderBody(BaseModel):
    title: str = Field(..., min_length=1)
    image: str
    description: Optional[str] = None
    link: Optional[str] = None


@app.get("/sliders")
def list_sliders(sliders: SliderRepository = Depends(sliders_repo)):
    return [serialize_doc(s) for s in sliders.list()]


@app.post("/slider")
def create_slider(
    uid: str,
    body: SliderBody,
    identity: Identity = Depends(require_admin),
    sliders: SliderRepository = Depends(sliders_repo),
):
    res = sliders.create(SliderSchema(**body.model_dump()))
    logger.info("Slider %s created by %s", res.inserted_id, uid)
    return insert_result(res)


@app.delete("/slider/{uid}")
def delete_slider(
    uid: str,
    slider_id: str = Query(..., alias="id"),
    identity: Identity = Depends(require_admin),
    sliders: SliderRepository = Depends(sliders_repo),
):
    res = sliders.delete(slider_id)
    if res.deleted_count == 0:
        raise NotFound("Slider not found")
    return delete_result(res)


# ----------------------- Reviews -----------------------
@app.get("/reviews/{product_id}")
def product_reviews(product_id: str, reviews: ReviewRepository = Depends(reviews_repo)):
    items = reviews.for_product(product_id)
    ratings = [r["customer_rating"] for r in items]
    return {
        "reviews": [serialize_doc(r) for r in items],
        "averageRating": round(sum(ratings) / len(ratings), 2) if ratings else None,
    }


@app.post("/review/{uid}")
def add_review(
    uid: str,
    body: ReviewBody,
    identity: Identity = Depends(require_owner),
    reviews: ReviewRepository = Depends(reviews_repo),
    catalog: CatalogRepository = Depends(catalog_repo),
):
    public_product(catalog, body.product_id)
    doc = body.model_dump(exclude_none=True)
    doc.update(uid=uid, createAt=now())
    return insert_result(reviews.create(doc))


# ----------------------- Cart -----------------------
@app.post("/add-to-cart/{uid}")
def add_to_cart(
    uid: str,
    body: CartItemBody,
    identity: Identity = Depends(require_owner),
    carts: CartRepository = Depends(cart_repo),
    catalog: CatalogRepository = Depends(catalog_repo),
):
    public_product(catalog, body.product_info.id)
    res = carts.add(CartItem(uid=uid, product_info=body.product_info))
    if hasattr(res, "inserted_id"):
        return insert_result(res)
    return update_result(res)


@app.get("/get-cart/{uid}")
def get_cart(uid: str, identity: Identity = Depends(require_owner), carts: CartRepository = Depends(cart_repo)):
    return [serialize_doc(i) for i in carts.list(uid)]


@app.delete("/remove-from-cart/{uid}")
def remove_from_cart(
    uid: str,
    item_id: str = Query(..., alias="id"),
    identity: Identity = Depends(require_owner),
    carts: CartRepository = Depends(cart_repo),
):
    res = carts.remove(uid, item_id)
    if res.deleted_count == 0:
        raise NotFound("Cart item not found")
    return delete_result(res)


# ----------------------- Orders -----------------------
@app.post("/confirm-order/{uid}")
def confirm_order(
    uid: str,
    body: OrderBody,
    identity: Identity = Depends(require_owner),
    catalog: CatalogRepository = Depends(catalog_repo),
    db=Depends(get_db),
):
    # Name and price come from the catalog, only id and quantity from the client
    lines = []
    for line in body.products:
        product = catalog.get(line.id)
        if not product:
            raise NotFound(f"Product {line.id} not found")
        info = product["product_info"]
        lines.append(
            LineItem(id=line.id, name=info["name"], price=info["price"], quantity=line.quantity, image=info.get("image"))
        )
    contact = body.model_dump(exclude={"products"}, exclude_none=True)
    return insert_result(workflow.confirm_order(db, uid, lines, **contact))


@app.get("/orders/{uid}")
def customer_orders(uid: str, identity: Identity = Depends(require_owner), orders: OrderRepository = Depends(orders_repo)):
    return [serialize_doc(o) for o in orders.for_customer(uid)]


@app.get("/all-orders/{uid}")
def all_orders(
    uid: str,
    perPageView: int = Query(20, ge=1, le=100),
    currentPage: int = Query(0, ge=0),
    identity: Identity = Depends(require_admin),
    orders: OrderRepository = Depends(orders_repo),
):
    items, count = orders.list(perPageView, currentPage)
    return {"orders": [serialize_doc(o) for o in items], "ordersCount": count}


@app.patch("/order-status/{uid}")
def update_order_status(
    uid: str,
    body: OrderStatusBody,
    order_id: str = Query(..., alias="id"),
    identity: Identity = Depends(require_admin),
    db=Depends(get_db),
):
    return workflow.change_order_status(db, order_id, body.order_status)


# ----------------------- Payments -----------------------
@app.post("/create-payment-intent/{uid}")
def create_payment_intent(
    uid: str,
    order_id: str = Query(..., alias="id"),
    identity: Identity = Depends(require_owner),
    gateway=Depends(get_gateway),
    db=Depends(get_db),
):
    return workflow.create_payment_intent(db, gateway, uid, order_id)


@app.post("/payments/{uid}")
def record_payment(uid: str, body: PaymentBody, identity: Identity = Depends(require_owner), db=Depends(get_db)):
    payment = workflow.record_payment(db, uid, body)
    return {"acknowledged": True, "insertedId": str(payment["_id"]), "payment": serialize_doc(payment)}


@app.post("/payments/{uid}/resume")
def resume_payment(
    uid: str,
    payment_id: str = Query(..., alias="id"),
    identity: Identity = Depends(require_owner),
    users: UserRepository = Depends(users_repo),
    db=Depends(get_db),
):
    user = users.get(uid) or {}
    payment = workflow.resume_inventory(db, uid, user.get("role") == "admin", payment_id)
    return {"payment": serialize_doc(payment)}


# ----------------------- Dashboard -----------------------
@app.get("/dashboard-data/{uid}")
def dashboard_data(uid: str, identity: Identity = Depends(require_admin), db=Depends(get_db)):
    return reporting.dashboard(db)


@app.get("/sales-report/{uid}")
def sales_report(
    uid: str,
    perPageView: int = Query(20, ge=1, le=100),
    currentPage: int = Query(0, ge=0),
    identity: Identity = Depends(require_admin),
    db=Depends(get_db),
):
    return reporting.sales_report(db, perPageView, currentPage)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
