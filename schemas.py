"""
Database Schemas for the NiyeNow marketplace

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name (CartItem -> "cart").
Request bodies reuse the nested models so that payloads are validated
before anything is written.
"""
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["customer", "admin"]

OrderStatus = Literal["payment pending", "processing", "shipped", "delivered", "cancelled"]

ORDER_TRANSITIONS = {
    "payment pending": {"processing", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}


def now():
    return datetime.now(timezone.utc)


# ----------------------- Users -----------------------

class SellerInfo(BaseModel):
    seller_uid: str
    seller_name: Optional[str] = None
    seller_email: Optional[EmailStr] = None


class User(BaseModel):
    uid: str = Field(..., min_length=1, description="External identity id")
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    photo: Optional[str] = None
    role: Role = "customer"
    seller_info: Optional[SellerInfo] = None
    createAt: datetime = Field(default_factory=now)


# ----------------------- Catalog -----------------------

class ProductInfo(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    category: str = Field(..., description="Category slug")
    image: Optional[str] = None
    price: int = Field(..., ge=0)
    quantity: int = Field(..., ge=0)
    totalSale: int = Field(0, ge=0)


class Product(BaseModel):
    product_info: ProductInfo
    seller_info: SellerInfo
    visibility: bool = True
    createAt: datetime = Field(default_factory=now)


class Category(BaseModel):
    name: str = Field(..., min_length=1)
    slug: str = Field(..., pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    image: Optional[str] = None


class Slider(BaseModel):
    title: str = Field(..., min_length=1)
    image: str
    description: Optional[str] = None
    link: Optional[str] = None
    createAt: datetime = Field(default_factory=now)


class Review(BaseModel):
    product_id: str
    customer_rating: float = Field(..., ge=1, le=5)
    comment: Optional[str] = None


# ----------------------- Cart & Orders -----------------------

class LineItem(BaseModel):
    id: str = Field(..., description="Referenced product _id (string)")
    name: str
    price: int = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None


class CartItem(BaseModel):
    uid: str
    product_info: LineItem
    createAt: datetime = Field(default_factory=now)


class Order(BaseModel):
    customer_uid: str
    products: List[LineItem]
    subTotal: int = Field(..., ge=0)
    order_status: OrderStatus = "payment pending"
    payment_status: bool = False
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    transactionId: Optional[str] = None
    createAt: datetime = Field(default_factory=now)


class PurchasedProduct(BaseModel):
    id: str
    quantity: int = Field(..., ge=1)


class Payment(BaseModel):
    orderId: str
    customer_uid: str
    price: float = Field(..., ge=0)
    transactionId: str = Field(..., min_length=1)
    address: str
    ordered_products: List[PurchasedProduct]
    inventory_status: Literal["pending", "applied", "backordered", "rejected"] = "pending"
    adjusted: List[str] = []
    backordered: List[dict] = []
    createAt: datetime = Field(default_factory=now)
