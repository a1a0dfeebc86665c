"""
Database Schemas for the Issaq storefront

Each stored model maps to a MongoDB collection ("categories", "products",
"orders", "user"). Order lines and shipping addresses are embedded
snapshots: they are copied at checkout and never follow later edits of the
product they came from.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StrictBool, StrictFloat, StrictInt, StrictStr

# ------------ Catalog ------------
SpecScalar = Union[StrictBool, StrictInt, StrictFloat, StrictStr]
SpecValue = Union[SpecScalar, List[SpecScalar]]


class Category(BaseModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class CategoryOption(BaseModel):
    id: str
    name: str


class Product(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    slug: str
    category_id: Optional[str] = None
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    currency: str = "USD"
    images: List[str] = []
    specs: Dict[str, SpecValue] = Field(default_factory=dict, description="Ordered open-ended attributes")
    stock_quantity: int = Field(0, ge=0)
    featured: bool = False
    created_at: Optional[datetime] = None


class ProductWithCategory(Product):
    category: Optional[Category] = None


class ProductQuery(BaseModel):
    category_id: Optional[str] = None
    featured: Optional[bool] = None
    limit: Optional[int] = Field(None, ge=1)
    offset: Optional[int] = Field(None, ge=0)
    sort_by: Literal["price", "created_at"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


# ------------ Cart ------------
class CartItem(BaseModel):
    product: Product
    quantity: int = Field(..., ge=1)

    @property
    def line_total(self) -> float:
        return self.product.price * self.quantity


class CartItemAdd(BaseModel):
    product_id: str
    quantity: int = 1


class CartItemUpdate(BaseModel):
    quantity: int


class CartTotals(BaseModel):
    subtotal: float
    shipping: float
    tax: float
    total: float


# ------------ Orders ------------
class ShippingAddress(BaseModel):
    full_name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str
    phone: Optional[str] = None


class OrderItem(BaseModel):
    product_id: str
    title: str
    quantity: int = Field(..., ge=1)
    price: float
    image: Optional[str] = None


class OrderCreate(BaseModel):
    order_number: str
    customer_name: str
    customer_email: EmailStr
    shipping_address: ShippingAddress
    items: List[OrderItem]
    subtotal: float
    shipping: float
    tax: float
    total: float
    status: Literal["pending"] = "pending"


class Order(OrderCreate):
    id: str
    status: str = "pending"
    created_at: datetime


class OrderItemSummary(BaseModel):
    """One line of a stored order as the admin sees it; older rows used ``name``."""

    model_config = ConfigDict(extra="ignore")

    title: Optional[str] = None
    name: Optional[str] = None
    quantity: Optional[int] = None

    @property
    def label(self) -> str:
        return self.title or self.name or ""

    @property
    def effective_quantity(self) -> int:
        return self.quantity or 1


class OrderRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    order_number: Optional[str] = None
    customer_name: str = ""
    customer_email: Optional[str] = None
    total: float = 0
    status: str = "pending"
    created_at: datetime
    items: List[OrderItemSummary] = []
    shipping_address: Dict[str, Any] = {}


class OrderFilters(BaseModel):
    status: str = ""
    customer: str = ""
    date_from: Optional[date] = None
    date_to: Optional[date] = None


# ------------ Forms ------------
class CheckoutForm(BaseModel):
    customer_name: str = Field(..., min_length=1)
    customer_email: EmailStr
    full_name: str = Field(..., min_length=1)
    address_line1: str = Field(..., min_length=1)
    address_line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = Field("United States", min_length=1)
    phone: Optional[str] = None

    def shipping_address(self) -> ShippingAddress:
        return ShippingAddress(
            full_name=self.full_name,
            address_line1=self.address_line1,
            address_line2=self.address_line2 or None,
            city=self.city,
            state=self.state,
            postal_code=self.postal_code,
            country=self.country,
            phone=self.phone or None,
        )


class ProductForm(BaseModel):
    """Raw admin form input; numbers arrive as typed text."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    title: str = ""
    category_id: str = ""
    price: str = ""
    stock_quantity: str = ""
    description: str = ""
    images: List[str] = []


# ------------ Auth ------------
class UserCreate(BaseModel):
    name: str
    email: EmailStr
    password: str


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class AuthUser(BaseModel):
    id: str
    email: EmailStr
    name: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
