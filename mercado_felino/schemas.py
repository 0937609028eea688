"""
Request and response schemas.

JSON uses camelCase keys (``productId``, ``totalAmount``); snake_case field
names are accepted on input as well.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True,
    )


# ---------- Auth ----------
class RegisterRequest(CamelModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    role: Literal["user", "admin"] = "user"


class LoginRequest(CamelModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class AuthResponse(CamelModel):
    id: int
    username: str
    role: str
    token: str


class UserOut(CamelModel):
    id: int
    username: str
    role: str
    created_at: Optional[datetime] = None


# ---------- Products ----------
class ProductCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    category: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(..., ge=0)
    image_url: Optional[str] = None


class ProductUpdate(CamelModel):
    """Partial update: omitted fields keep their stored values."""
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    image_url: Optional[str] = None


class ProductOut(CamelModel):
    id: int
    name: str
    description: str
    category: Optional[str] = None
    price: float
    stock: int
    image_url: Optional[str] = None


# ---------- Cart ----------
class CartAddRequest(CamelModel):
    product_id: int
    quantity: int = Field(1, ge=1)


class CartQuantityRequest(CamelModel):
    quantity: int = Field(..., ge=0)


class CartLineOut(CamelModel):
    product: ProductOut
    quantity: int


# ---------- Orders ----------
class OrderItemIn(CamelModel):
    product_id: int
    quantity: int = Field(..., ge=1)


class OrderCreate(CamelModel):
    user_id: int
    items: List[OrderItemIn] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)


class OrderItemOut(CamelModel):
    product_id: Optional[int] = None
    product: Optional[ProductOut] = None
    quantity: int
    price: float


class OrderOut(CamelModel):
    id: int
    user_id: int
    user: Optional[UserOut] = None
    items: List[OrderItemOut]
    total_amount: float
    created_at: Optional[datetime] = None


class OrderCreated(CamelModel):
    message: str
    order: OrderOut


# ---------- Chat ----------
class AIChatMessageRequest(CamelModel):
    message_text: str = Field(..., min_length=1)


class AIChatReply(CamelModel):
    reply: str


class TextPart(CamelModel):
    text: str


class SessionTurnOut(CamelModel):
    role: Literal["user", "model"]
    parts: List[TextPart]


class AIChatSessionOut(CamelModel):
    history: List[SessionTurnOut]


class ChatMessageRequest(CamelModel):
    message: str = Field(..., min_length=1)


class ChatBotReply(CamelModel):
    bot_response: str


class ChatHistoryEntry(CamelModel):
    sender: Literal["user", "bot"]
    message: str
    timestamp: Optional[datetime] = None


class MessageOut(CamelModel):
    message: str
