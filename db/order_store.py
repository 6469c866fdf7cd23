# db/order_store.py
# Persistence for order documents.
# Uniqueness of the idempotency key and every status change are enforced here,
# as conditional UPDATE statements, so concurrent writers cannot double-apply them.

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from db.tables import OrderRecord, utcnow
from models.order import Order, OrderStatus, STALE_STATUSES
from services.errors import OrderNotFoundError, OrderStoreError

logger = logging.getLogger(__name__)

# Statuses from which a gateway approval moves the order to `pagado`
PAYABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.WHATSAPP_PENDING, OrderStatus.CANCELLED)


def history_entry(from_status, to_status, action: str, triggered_by: str | None = None, **extra) -> dict:
    entry = {
        "from": OrderStatus(from_status).value if from_status else None,
        "to": OrderStatus(to_status).value,
        "timestamp": utcnow().isoformat(),
        "action": action,
        "triggered_by": triggered_by,
    }
    entry.update({k: v for k, v in extra.items() if v is not None})
    return entry


class OrderStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @staticmethod
    def _to_model(record: OrderRecord) -> Order:
        return Order.model_validate(record)

    def create_or_get(self, order: Order) -> tuple[Order, bool]:
        """Inserts the order unless its idempotency key is already taken.

        Returns the persisted order and whether it was created by this call.
        """
        now = utcnow()
        record = OrderRecord(
            id=order.id,
            user_id=order.user_id,
            idempotency_key=order.idempotency_key,
            items=[item.model_dump() for item in order.items],
            total_amount=order.total_amount,
            shipping_info=order.shipping_info.model_dump(),
            payment_method=order.payment_method,
            status=order.status,
            whatsapp_order=order.whatsapp_order,
            payment_details=dict(order.payment_details),
            status_history=list(order.status_history),
            created_at=now,
            updated_at=now,
        )
        try:
            with self._session_factory() as session:
                session.add(record)
                session.commit()
                logger.info(f"Order {record.id} persisted with status {record.status.value}")
                return self._to_model(record), True
        except IntegrityError:
            existing = self.get_by_idempotency_key(order.idempotency_key)
            if existing is None:
                raise OrderStoreError(f"Could not persist order {order.id}")
            logger.info(
                f"Idempotency key {order.idempotency_key} already used by order {existing.id}"
            )
            return existing, False
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist order {order.id}: {e}")
            raise OrderStoreError(f"Could not persist order: {e}") from e

    def get(self, order_id: str) -> Optional[Order]:
        try:
            with self._session_factory() as session:
                record = session.get(OrderRecord, order_id)
                return self._to_model(record) if record else None
        except SQLAlchemyError as e:
            raise OrderStoreError(f"Could not load order {order_id}: {e}") from e

    def get_by_idempotency_key(self, key: str) -> Optional[Order]:
        try:
            with self._session_factory() as session:
                record = session.scalars(
                    select(OrderRecord).where(OrderRecord.idempotency_key == key)
                ).first()
                return self._to_model(record) if record else None
        except SQLAlchemyError as e:
            raise OrderStoreError(f"Could not load order by idempotency key: {e}") from e

    def list_orders(self, status: OrderStatus | None = None, limit: int = 100) -> List[Order]:
        try:
            with self._session_factory() as session:
                query = select(OrderRecord).order_by(OrderRecord.created_at.desc()).limit(limit)
                if status is not None:
                    query = query.where(OrderRecord.status == status)
                return [self._to_model(r) for r in session.scalars(query)]
        except SQLAlchemyError as e:
            raise OrderStoreError(f"Could not list orders: {e}") from e

    def transition_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        expected: Iterable[OrderStatus],
        action: str,
        triggered_by: str | None = None,
        values: dict | None = None,
        details: dict | None = None,
        **history_extra,
    ) -> Optional[Order]:
        """Compare-and-swap on status.

        Moves the order to `new_status` only if its current status is one of
        `expected`. Returns the updated order, or None when the current status
        did not match. `values` are extra columns set in the same UPDATE and
        `details` is merged into `payment_details`.
        """
        expected = [OrderStatus(s) for s in expected]
        try:
            with self._session_factory() as session:
                previous = session.scalar(
                    select(OrderRecord.status).where(OrderRecord.id == order_id)
                )
                if previous is None:
                    raise OrderNotFoundError(f"Order {order_id} not found")
                if previous not in expected:
                    return None

                result = session.execute(
                    update(OrderRecord)
                    .where(OrderRecord.id == order_id, OrderRecord.status == previous)
                    .values(status=new_status, updated_at=utcnow(), **(values or {}))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # Someone else changed the status between the read and the update
                    session.rollback()
                    return None

                record = session.get(OrderRecord, order_id)
                record.status_history = [
                    *(record.status_history or []),
                    history_entry(previous, new_status, action, triggered_by, **history_extra),
                ]
                if details:
                    record.payment_details = {**(record.payment_details or {}), **details}
                session.commit()
                logger.info(
                    f"Order {order_id} status {previous.value} -> {OrderStatus(new_status).value} ({action})"
                )
                return self._to_model(record)
        except OrderNotFoundError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Failed to update status of order {order_id}: {e}")
            raise OrderStoreError(f"Could not update order {order_id}: {e}") from e

    def mark_paid(
        self,
        order_id: str,
        payment_id: str | None,
        payment: dict | None,
        action: str,
        triggered_by: str | None = None,
        expected: Iterable[OrderStatus] = PAYABLE_STATUSES,
    ) -> tuple[bool, Order]:
        """Moves a payable order to `pagado` exactly once.

        Returns (transitioned, order). A second call for an order that is
        already `pagado` (or further along), or no longer in `expected`,
        returns (False, order) untouched.
        """
        values = {"payment_id": payment_id} if payment_id else {}
        details = {"payment": payment} if payment else None
        updated = self.transition_status(
            order_id,
            OrderStatus.PAID,
            expected,
            action,
            triggered_by=triggered_by,
            values=values,
            details=details,
            payment_id=payment_id,
        )
        if updated is not None:
            return True, updated
        current = self.get(order_id)
        if current is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return False, current

    def attach_preference(
        self,
        order_id: str,
        preference_id: str,
        init_point: str | None,
        sandbox_init_point: str | None,
        redirect_url: str | None,
    ) -> Order:
        try:
            with self._session_factory() as session:
                record = session.get(OrderRecord, order_id)
                if record is None:
                    raise OrderNotFoundError(f"Order {order_id} not found")
                record.preference_id = preference_id
                record.init_point = init_point
                record.sandbox_init_point = sandbox_init_point
                record.redirect_url = redirect_url
                record.updated_at = utcnow()
                session.commit()
                return self._to_model(record)
        except OrderNotFoundError:
            raise
        except SQLAlchemyError as e:
            raise OrderStoreError(f"Could not store preference for order {order_id}: {e}") from e

    def merge_payment_details(self, order_id: str, updates: dict, payment_id: str | None = None) -> Order:
        """Merges `updates` into payment_details without touching the status."""
        try:
            with self._session_factory() as session:
                record = session.get(OrderRecord, order_id)
                if record is None:
                    raise OrderNotFoundError(f"Order {order_id} not found")
                record.payment_details = {**(record.payment_details or {}), **updates}
                if payment_id:
                    record.payment_id = payment_id
                record.updated_at = utcnow()
                session.commit()
                return self._to_model(record)
        except OrderNotFoundError:
            raise
        except SQLAlchemyError as e:
            raise OrderStoreError(f"Could not update payment details of order {order_id}: {e}") from e

    def _stale_query(self, cutoff: datetime):
        return select(OrderRecord.id).where(
            OrderRecord.status.in_(STALE_STATUSES),
            OrderRecord.created_at < cutoff,
        )

    def count_stale(self, cutoff: datetime) -> int:
        try:
            with self._session_factory() as session:
                return session.scalar(
                    select(func.count()).select_from(self._stale_query(cutoff).subquery())
                )
        except SQLAlchemyError as e:
            raise OrderStoreError(f"Could not count stale orders: {e}") from e

    def cancel_stale(self, cutoff: datetime, reason: str, triggered_by: str | None = None) -> int:
        """Cancels pending orders created before `cutoff`. Returns how many were cancelled."""
        try:
            with self._session_factory() as session:
                ids = list(session.scalars(self._stale_query(cutoff)))
        except SQLAlchemyError as e:
            raise OrderStoreError(f"Could not load stale orders: {e}") from e

        cancelled = 0
        for order_id in ids:
            updated = self.transition_status(
                order_id,
                OrderStatus.CANCELLED,
                STALE_STATUSES,
                "stale_cleanup",
                triggered_by=triggered_by,
                details={"cancelled_reason": reason, "cancelled_at": utcnow().isoformat()},
            )
            if updated is not None:
                cancelled += 1
        return cancelled

    def status_stats(self) -> List[dict]:
        try:
            with self._session_factory() as session:
                rows = session.execute(
                    select(
                        OrderRecord.status,
                        func.count(OrderRecord.id),
                        func.coalesce(func.sum(OrderRecord.total_amount), 0),
                    ).group_by(OrderRecord.status)
                ).all()
        except SQLAlchemyError as e:
            raise OrderStoreError(f"Could not compute order statistics: {e}") from e
        return [
            {"status": status.value, "count": count, "total_amount": round(float(total), 2)}
            for status, count, total in rows
        ]
