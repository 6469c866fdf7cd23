from temporalio import activity
from temporalio.exceptions import ApplicationError
import asyncio

from db.order_store import OrderStore
from db.tables import utcnow
from models.order import OrderStatus
from services.errors import OrderNotFoundError

_store: OrderStore | None = None


def configure_store(store: OrderStore | None) -> None:
    """Sets the store used by the activities (the worker's default is built from settings)."""
    global _store
    _store = store


def get_store() -> OrderStore:
    global _store
    if _store is None:
        from db.session import SessionLocal
        _store = OrderStore(SessionLocal)
    return _store


@activity.defn
async def expire_pending_order(order_id: str, timeout_minutes: int) -> bool:
    """Cancels the order if it is still `pendiente`. Returns whether it was cancelled."""
    activity.logger.info(f"Expiring order {order_id} after {timeout_minutes} minutes without payment")
    reason = f"Timeout automático - {timeout_minutes} minutos sin pago"
    try:
        updated = await asyncio.to_thread(
            get_store().transition_status,
            order_id,
            OrderStatus.CANCELLED,
            [OrderStatus.PENDING],
            "order_expired",
            "order-expiry",
            None,
            {"cancelled_reason": reason, "cancelled_at": utcnow().isoformat()},
        )
    except OrderNotFoundError as e:
        activity.logger.error(f"Cannot expire order {order_id}: {e}")
        raise ApplicationError(str(e), non_retryable=True)

    if updated is None:
        activity.logger.info(f"Order {order_id} is no longer pending, nothing to expire")
        return False
    activity.logger.info(f"Order {order_id} cancelled: {reason}")
    return True


all_activities = [
    expire_pending_order,
]
