"""
Database Schemas for the Table Ordering System

Each Pydantic model below corresponds to a MongoDB collection.
The collection name is the lowercase class name (e.g., Order -> "order").
Documents use camelCase field names on the wire and in storage.
"""
from datetime import datetime
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from database import utcnow


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PREPARING = "Preparing"
    READY = "Ready"
    SERVED = "Served"
    CANCELLED = "Cancelled"


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True, validate_default=True)


class User(Document):
    email: EmailStr = Field(..., description="Unique email address")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Literal["chef", "admin"] = "chef"


class Fooditem(Document):
    name: str
    price: float = Field(..., ge=0)
    description: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    image: Optional[str] = None
    total_sold: int = Field(0, ge=0, description="Units served, incremented by the order pipeline")


class OrderItem(Document):
    food: str = Field(..., description="Reference to fooditem _id")
    name: str = Field(..., description="Name snapshot taken at order time")
    price: float = Field(..., ge=0, description="Unit price snapshot taken at order time")
    quantity: int = Field(..., ge=1)


class Order(Document):
    table_id: str
    guest_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    total_price: float = Field(..., ge=0)
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)


class Revenue(Document):
    guest_id: str
    table_id: str = "unknown"
    total_amount: float
    date: datetime = Field(default_factory=utcnow)
    order_ids: List[str] = []


# ===================== Requests =====================

class CartItem(Document):
    food: str = Field(..., validation_alias=AliasChoices("food", "foodId"))
    quantity: int
    # Advisory only, the catalog is authoritative
    name: Optional[str] = None
    price: Optional[float] = None

    @field_validator("food", mode="before")
    @classmethod
    def _food_reference(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("_id") or value.get("id")
        return value


class CreateOrderRequest(Document):
    table_id: str
    guest_id: str
    items: List[CartItem]
    total_price: Optional[float] = None


class UpdateOrderStatusRequest(Document):
    status: str
    expected_status: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class LoginResponse(BaseModel):
    success: bool = True
    token: str
    role: str
    email: EmailStr
