from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from typing import List, Optional
from datetime import datetime
from enum import Enum
import re
import uuid


class OrderStatus(str, Enum):
    PENDING = "pendiente"
    PAID = "pagado"
    SHIPPED = "enviado"
    DELIVERED = "entregado"
    CANCELLED = "cancelado"
    WHATSAPP_PENDING = "whatsapp_pendiente"


class PaymentMethod(str, Enum):
    MERCADOPAGO = "mercadopago"
    WHATSAPP = "whatsapp"


STATUS_LABELS = {
    OrderStatus.PENDING: "Pendiente de Pago",
    OrderStatus.PAID: "Pago Confirmado",
    OrderStatus.SHIPPED: "Enviado",
    OrderStatus.DELIVERED: "Entregado",
    OrderStatus.CANCELLED: "Cancelado",
    OrderStatus.WHATSAPP_PENDING: "WhatsApp - Pendiente",
}

# created -> pendiente | whatsapp_pendiente happens at creation, not here.
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.WHATSAPP_PENDING: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: {OrderStatus.PENDING},
}

# Statuses from which a new payment link may be requested
REACTIVATABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.CANCELLED)

# Statuses swept by the stale-order cleanup
STALE_STATUSES = (OrderStatus.PENDING, OrderStatus.WHATSAPP_PENDING)


def can_transition(current: OrderStatus, new: OrderStatus, allow_reactivation: bool = True) -> bool:
    if current == OrderStatus.CANCELLED and new == OrderStatus.PENDING:
        return allow_reactivation
    return new in ALLOWED_TRANSITIONS.get(current, set())


def status_label(status: OrderStatus) -> str:
    return STATUS_LABELS.get(OrderStatus(status), str(status))


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[\d\s\-()]{6,20}$")


class OrderItem(BaseModel):
    product_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    image_url: Optional[str] = None

    @property
    def subtotal(self) -> float:
        return round(self.price * self.quantity, 2)


class ShippingInfo(BaseModel):
    name: str
    email: str
    phone: str
    address: str
    city: str
    postal_code: str

    @field_validator("name", "email", "phone", "address", "city", "postal_code")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("field is required")
        return v

    @field_validator("email")
    @classmethod
    def valid_email(cls, v: str) -> str:
        if not _EMAIL_RE.match(v):
            raise ValueError("invalid email address")
        return v.lower()

    @field_validator("phone")
    @classmethod
    def valid_phone(cls, v: str) -> str:
        if not _PHONE_RE.match(v):
            raise ValueError("invalid phone number")
        return v


def calculate_total_amount(items: List[OrderItem]) -> float:
    return round(sum(item.quantity * item.price for item in items), 2)


class Order(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: Optional[str] = None
    items: List[OrderItem]
    total_amount: float
    shipping_info: ShippingInfo
    payment_method: PaymentMethod
    status: OrderStatus = OrderStatus.PENDING
    idempotency_key: str
    whatsapp_order: bool = False
    preference_id: Optional[str] = None
    init_point: Optional[str] = None
    sandbox_init_point: Optional[str] = None
    redirect_url: Optional[str] = None
    payment_id: Optional[str] = None
    payment_details: dict = Field(default_factory=dict)
    status_history: List[dict] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def customer_email(self) -> str:
        return self.shipping_info.email

    def to_dict(self):
        return self.model_dump(mode="json")


class CreateOrderRequest(BaseModel):
    items: List[OrderItem] = Field(..., min_length=1)
    total_amount: Optional[float] = None
    payment_method: PaymentMethod
    shipping_info: ShippingInfo
    idempotency_key: str = Field(..., min_length=1, max_length=128)

    @model_validator(mode="after")
    def total_matches_items(self):
        if self.total_amount is not None:
            expected = calculate_total_amount(self.items)
            if abs(expected - self.total_amount) > 0.01:
                raise ValueError(
                    f"total_amount {self.total_amount:.2f} does not match items total {expected:.2f}"
                )
        return self


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderSummary(BaseModel):
    """Public view of an order returned by the API."""
    id: str
    status: OrderStatus
    status_label: str
    payment_method: PaymentMethod
    total_amount: float
    items: List[OrderItem]
    shipping_info: ShippingInfo
    preference_id: Optional[str] = None
    redirect_url: Optional[str] = None
    payment_id: Optional[str] = None
    status_history: List[dict] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderSummary":
        return cls(
            id=order.id,
            status=order.status,
            status_label=status_label(order.status),
            payment_method=order.payment_method,
            total_amount=order.total_amount,
            items=order.items,
            shipping_info=order.shipping_info,
            preference_id=order.preference_id,
            redirect_url=order.redirect_url,
            payment_id=order.payment_id,
            status_history=order.status_history,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )
