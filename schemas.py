"""
Collection schemas for the shop database.

Each model maps to one MongoDB collection named after it in lowercase
(`User` -> "user", `Product` -> "product", `Order` -> "order").
"""

from typing import Literal, Optional, get_args

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"

Role = Literal['ADMIN', 'CUSTOMER']
OrderStatus = Literal['PENDING', 'PROCESSING', 'SHIPPED', 'DELIVERED', 'CANCELLED']

ROLES = get_args(Role)
ORDER_STATUSES = get_args(OrderStatus)


class User(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., pattern=EMAIL_PATTERN)
    password: str = Field(..., description="bcrypt hash")
    role: Role = 'CUSTOMER'


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., ge=0)
    stock: int = Field(..., ge=0)
    image_url: Optional[str] = None


class Order(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    user_id: ObjectId
    product_id: ObjectId
    quantity: int = Field(..., ge=1)
    total: float = Field(..., ge=0)
    status: OrderStatus = 'PENDING'


class Identity(BaseModel):
    """Identity snapshot carried inside a session token."""
    id: str
    email: str
    name: str
    role: Role
