# db/tables.py
# The orders table. Items, shipping info and payment bookkeeping are stored as JSON.

from datetime import datetime, timezone

from sqlalchemy import Column, String, Numeric, DateTime, Boolean, JSON, Enum, Index

from db.base import Base
from models.order import OrderStatus, PaymentMethod


def utcnow() -> datetime:
    """Naive UTC timestamp; stored the same way on SQLite and Postgres."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderRecord(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=True, index=True)
    idempotency_key = Column(String(128), nullable=False, unique=True)
    items = Column(JSON, nullable=False)
    total_amount = Column(Numeric(12, 2, asdecimal=False), nullable=False)
    shipping_info = Column(JSON, nullable=False)
    payment_method = Column(
        Enum(PaymentMethod, values_callable=lambda e: [m.value for m in e], name="payment_method"),
        nullable=False,
    )
    status = Column(
        Enum(OrderStatus, values_callable=lambda e: [s.value for s in e], name="order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    whatsapp_order = Column(Boolean, default=False, nullable=False)
    preference_id = Column(String(128), nullable=True)
    init_point = Column(String(512), nullable=True)
    sandbox_init_point = Column(String(512), nullable=True)
    redirect_url = Column(String(512), nullable=True)
    payment_id = Column(String(64), nullable=True)
    payment_details = Column(JSON, nullable=False, default=dict)
    status_history = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_orders_status_created_at", "status", "created_at"),
    )
