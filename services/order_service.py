import asyncio
import hashlib
import hmac
import logging
from datetime import timedelta
from typing import Any, List, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field

from db.order_store import OrderStore, history_entry
from db.tables import utcnow
from models.order import (
    CreateOrderRequest,
    Order,
    OrderStatus,
    PaymentMethod,
    REACTIVATABLE_STATUSES,
    calculate_total_amount,
    can_transition,
    status_label,
)
from models.payment import (
    GatewayStatus,
    PaymentDetails,
    PaymentInfo,
    PaymentNotification,
    WebhookResult,
)
from models.user import UserIdentity
from notifications.dispatcher import NotificationResult, OrderNotifier
from services.errors import (
    InvalidStatusTransitionError,
    OrderAccessError,
    OrderFlowError,
    OrderNotFoundError,
    OrderStoreError,
    OrderValidationError,
    PaymentGatewayError,
)
from services.payment_gateway import MercadoPagoGateway

logger = logging.getLogger(__name__)


class FlowResult(BaseModel):
    """Outcome of an order operation. Failures are values, not exceptions."""
    success: bool
    message: str
    error: Optional[str] = None
    error_kind: Optional[str] = None
    order: Optional[Order] = None
    payment_info: Optional[PaymentInfo] = None
    created: bool = False
    notifications: List[NotificationResult] = Field(default_factory=list)
    data: dict[str, Any] = Field(default_factory=dict)


def _failure(message: str, error: OrderFlowError, order: Optional[Order] = None, **kwargs) -> FlowResult:
    return FlowResult(
        success=False,
        message=message,
        error=str(error),
        error_kind=error.kind,
        order=order,
        **kwargs,
    )


def _email_bookkeeping(results: List[NotificationResult]) -> dict:
    return {
        "emails_sent": {r.kind.value: r.model_dump(mode="json", exclude={"kind"}) for r in results},
        "emails_sent_at": utcnow().isoformat(),
    }


def _parse_signature(header: str) -> dict:
    parts = {}
    for chunk in header.split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


class OrderService:
    """Ties the order store, the payment gateway and the notifier together.

    Every external call (store, gateway, mail) is awaited in order:
    the order is durable before a preference is created, and the
    preference exists before the confirmation emails go out.
    """

    def __init__(
        self,
        store: OrderStore,
        gateway: MercadoPagoGateway,
        notifier: OrderNotifier,
        settings,
        expiry_scheduler=None,
    ):
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings
        self.expiry_scheduler = expiry_scheduler

    # --- helpers -----------------------------------------------------------

    async def _load(self, order_id: str, actor: Optional[UserIdentity] = None) -> Order:
        order = await asyncio.to_thread(self.store.get, order_id)
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        if actor is not None and not actor.is_admin and order.user_id != actor.id:
            logger.warning(f"User {actor.id} tried to access order {order_id}")
            raise OrderAccessError("No tenés permiso para acceder a esta orden")
        return order

    def _payment_info(self, order: Order) -> Optional[PaymentInfo]:
        if not order.preference_id or not order.redirect_url:
            return None
        return PaymentInfo(
            id=order.preference_id,
            init_point=order.init_point,
            sandbox_init_point=order.sandbox_init_point,
            redirect_url=order.redirect_url,
        )

    async def _create_preference(self, order: Order) -> tuple[Order, PaymentInfo]:
        preference = await asyncio.to_thread(self.gateway.create_preference, order)
        environment = self.settings.ENVIRONMENT
        payment_info = PaymentInfo.from_preference(preference, environment)
        updated = await asyncio.to_thread(
            self.store.attach_preference,
            order.id,
            preference.id,
            preference.init_point,
            preference.sandbox_init_point,
            payment_info.redirect_url,
        )
        logger.info(f"Order {order.id} redirect URL set ({environment}): {payment_info.redirect_url}")
        return updated, payment_info

    async def _record_error(self, order_id: str, key: str, error: Exception) -> Optional[Order]:
        try:
            return await asyncio.to_thread(
                self.store.merge_payment_details,
                order_id,
                {key: {"message": str(error), "at": utcnow().isoformat()}},
            )
        except OrderStoreError as e:
            logger.error(f"Could not record {key} for order {order_id}: {e}")
            return None

    async def _schedule_expiry(self, order: Order) -> None:
        if self.expiry_scheduler is not None:
            await self.expiry_scheduler.schedule(order.id, self.settings.ORDER_EXPIRY_MINUTES)

    async def _settle_expiry(self, order_id: str) -> None:
        if self.expiry_scheduler is not None:
            await self.expiry_scheduler.notify_settled(order_id)

    async def _send_payment_emails(self, order: Order, payment: Optional[PaymentDetails]) -> List[NotificationResult]:
        results = await self.notifier.send_payment_confirmed_emails(order, payment)
        try:
            await asyncio.to_thread(self.store.merge_payment_details, order.id, _email_bookkeeping(results))
        except OrderStoreError as e:
            logger.error(f"Could not record email results for order {order.id}: {e}")
        return results

    # --- checkout ----------------------------------------------------------

    async def create_order(self, request: CreateOrderRequest, user: Optional[UserIdentity] = None) -> FlowResult:
        """Creates the order once per idempotency key and hands it to the gateway."""
        is_whatsapp = request.payment_method == PaymentMethod.WHATSAPP
        status = OrderStatus.WHATSAPP_PENDING if is_whatsapp else OrderStatus.PENDING
        user_id = user.id if user else None
        order = Order(
            user_id=user_id,
            items=request.items,
            total_amount=calculate_total_amount(request.items),
            shipping_info=request.shipping_info,
            payment_method=request.payment_method,
            status=status,
            idempotency_key=request.idempotency_key,
            whatsapp_order=is_whatsapp,
            status_history=[history_entry(None, status, "order_created", user_id)],
        )

        try:
            order, created = await asyncio.to_thread(self.store.create_or_get, order)
        except OrderStoreError as e:
            logger.error(f"Order creation failed for key {request.idempotency_key}: {e}")
            return _failure("No se pudo crear la orden. Intentá nuevamente.", e)

        if not created:
            if order.user_id != user_id:
                logger.warning(
                    f"Idempotency key {request.idempotency_key} reused by another user ({user_id})"
                )
                return _failure(
                    "La clave de idempotencia ya fue utilizada",
                    OrderValidationError("idempotency key already used"),
                )
            needs_preference = (
                order.payment_method == PaymentMethod.MERCADOPAGO
                and order.status == OrderStatus.PENDING
                and not order.preference_id
                and "preference_error" in order.payment_details
            )
            if not needs_preference:
                logger.info(f"Returning existing order {order.id} for key {request.idempotency_key}")
                return FlowResult(
                    success=True,
                    message="Orden existente",
                    order=order,
                    payment_info=self._payment_info(order),
                )
            logger.info(f"Existing order {order.id} failed to get a preference earlier, retrying the gateway")

        payment_info = None
        gateway_error = None
        if order.payment_method == PaymentMethod.MERCADOPAGO:
            try:
                order, payment_info = await self._create_preference(order)
            except (PaymentGatewayError, OrderStoreError) as e:
                logger.error(f"Payment preference failed for order {order.id}: {e}")
                gateway_error = e
                order = await self._record_error(order.id, "preference_error", e) or order

        notifications = []
        if created:
            notifications = await self.notifier.send_order_created_emails(order)
            if order.payment_method == PaymentMethod.MERCADOPAGO:
                await self._schedule_expiry(order)

        if gateway_error is not None:
            return _failure(
                "La orden fue creada pero no se pudo generar el pago. Podés reintentarlo desde tu pedido.",
                gateway_error,
                order=order,
                created=created,
                notifications=notifications,
            )
        return FlowResult(
            success=True,
            message="Orden creada" if created else "Orden existente",
            order=order,
            payment_info=payment_info,
            created=created,
            notifications=notifications,
        )

    async def get_order(self, order_id: str, actor: Optional[UserIdentity] = None, refresh_payment: bool = False) -> FlowResult:
        try:
            order = await self._load(order_id, actor)
        except OrderFlowError as e:
            return _failure("No se pudo obtener la orden", e)

        data = {}
        if refresh_payment and order.payment_id:
            try:
                payment = await asyncio.to_thread(self.gateway.get_payment, order.payment_id)
                await self._apply_payment(order, payment, "payment_refresh", actor.id if actor else None)
                order = await self._load(order_id)
            except PaymentGatewayError as e:
                logger.warning(f"Payment refresh failed for order {order_id}, using cached details: {e}")
                data["payment_refresh_error"] = str(e)
            except OrderFlowError as e:
                return _failure("No se pudo actualizar el pago", e, order=order)

        data["payment"] = order.payment_details.get("payment")
        return FlowResult(
            success=True,
            message="OK",
            order=order,
            payment_info=self._payment_info(order),
            data=data,
        )

    # --- recovery actions --------------------------------------------------

    async def recreate_payment(self, order_id: str, actor: Optional[UserIdentity] = None) -> FlowResult:
        """Creates a fresh payment link, reactivating a cancelled order first."""
        try:
            order = await self._load(order_id, actor)
        except OrderFlowError as e:
            return _failure("No se pudo obtener la orden", e)

        if order.payment_method != PaymentMethod.MERCADOPAGO:
            return _failure(
                "Solo se puede recrear el pago de órdenes de MercadoPago",
                OrderValidationError(f"payment method is {order.payment_method.value}"),
                order=order,
            )
        if order.status not in REACTIVATABLE_STATUSES:
            return _failure(
                f"No se puede recrear el pago de una orden en estado {status_label(order.status)}",
                InvalidStatusTransitionError(f"order is {order.status.value}"),
                order=order,
            )

        actor_id = actor.id if actor else None
        reactivated = False
        if order.status == OrderStatus.CANCELLED:
            if not can_transition(order.status, OrderStatus.PENDING, self.settings.ALLOW_CANCELLED_REACTIVATION):
                return _failure(
                    "Las órdenes canceladas no pueden reactivarse",
                    InvalidStatusTransitionError("reactivation of cancelled orders is disabled"),
                    order=order,
                )
            try:
                updated = await asyncio.to_thread(
                    self.store.transition_status,
                    order.id,
                    OrderStatus.PENDING,
                    [OrderStatus.CANCELLED],
                    "payment_recreated",
                    actor_id,
                    None,
                    {
                        "reactivated_at": utcnow().isoformat(),
                        "reactivated_by": actor_id,
                        "reactivated_from": OrderStatus.CANCELLED.value,
                    },
                )
            except OrderFlowError as e:
                return _failure("No se pudo reactivar la orden", e, order=order)
            if updated is None:
                return _failure(
                    "El estado de la orden cambió, volvé a intentarlo",
                    InvalidStatusTransitionError("status changed concurrently"),
                    order=order,
                )
            order = updated
            reactivated = True
            logger.info(f"Order {order.id} reactivated by {actor_id}")

        previous_preference = order.preference_id
        try:
            order, payment_info = await self._create_preference(order)
        except (PaymentGatewayError, OrderStoreError) as e:
            logger.error(f"Could not recreate payment for order {order.id}: {e}")
            order = await self._record_error(order.id, "reactivation_error", e) or order
            return _failure(
                "No se pudo generar un nuevo link de pago. Intentá nuevamente.", e, order=order
            )

        try:
            order = await asyncio.to_thread(
                self.store.merge_payment_details,
                order.id,
                {
                    "payment_recreated_at": utcnow().isoformat(),
                    "previous_preference_id": previous_preference,
                },
            )
        except OrderStoreError as e:
            logger.error(f"Could not record payment recreation for order {order.id}: {e}")

        await self._schedule_expiry(order)
        return FlowResult(
            success=True,
            message="Orden reactivada con nuevo link de pago" if reactivated else "Nuevo link de pago generado",
            order=order,
            payment_info=payment_info,
            data={"reactivated": reactivated},
        )

    async def resend_confirmation(self, order_id: str, actor: Optional[UserIdentity] = None) -> FlowResult:
        """Sends the order confirmation again. Never writes to the order."""
        try:
            order = await self._load(order_id, actor)
        except OrderFlowError as e:
            return _failure("No se pudo obtener la orden", e)

        include_admin = bool(actor and actor.is_admin)
        results = await self.notifier.resend_confirmation(order, include_admin=include_admin)
        failed = [r for r in results if not r.success]
        if failed:
            return FlowResult(
                success=False,
                message="No se pudo reenviar el email de confirmación",
                error="; ".join(r.error or "unknown error" for r in failed),
                error_kind="notification",
                order=order,
                notifications=results,
            )
        return FlowResult(
            success=True,
            message="Email de confirmación reenviado",
            order=order,
            notifications=results,
        )

    def whatsapp_contact_link(self, order: Order) -> dict:
        created = order.created_at.strftime("%d/%m/%Y") if order.created_at else ""
        message = (
            f"Hola, consulto por mi pedido #{order.short_id}.\n"
            f"Estado actual: {status_label(order.status)}\n"
            f"Total: ${order.total_amount:.2f}\n"
            f"Fecha: {created}\n"
            f"¿Podrían ayudarme con el estado de mi pedido?"
        )
        phone = "".join(ch for ch in self.settings.WHATSAPP_SUPPORT_PHONE if ch.isdigit())
        return {"url": f"https://wa.me/{phone}?text={quote(message)}", "message": message}

    async def get_whatsapp_link(self, order_id: str, actor: Optional[UserIdentity] = None) -> FlowResult:
        try:
            order = await self._load(order_id, actor)
        except OrderFlowError as e:
            return _failure("No se pudo obtener la orden", e)
        return FlowResult(success=True, message="OK", order=order, data=self.whatsapp_contact_link(order))

    # --- payment confirmation ----------------------------------------------

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Checks `x-signature: ts=<ts>,v1=<hex>` against HMAC-SHA256("<ts>.<body>")."""
        secret = self.settings.MERCADOPAGO_WEBHOOK_SECRET
        if not secret:
            return True
        if not signature:
            return False
        parts = _parse_signature(signature)
        ts, received = parts.get("ts"), parts.get("v1")
        if not ts or not received:
            return False
        expected = hmac.new(secret.encode(), f"{ts}.".encode() + raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode(), received.encode("utf-8", "ignore"))

    async def _apply_payment(
        self,
        order: Order,
        payment: PaymentDetails,
        action: str,
        triggered_by: Optional[str],
    ) -> WebhookResult:
        result = WebhookResult(
            message="",
            order_id=order.id,
            payment_id=payment.id,
            payment_status=payment.status,
            previous_status=order.status.value,
        )
        if not payment.is_approved:
            updated = await asyncio.to_thread(
                self.store.merge_payment_details,
                order.id,
                {"payment": payment.to_dict(), "last_payment_status": payment.status},
                payment.id,
            )
            result.message = f"Pago {payment.status} registrado"
            result.new_status = updated.status.value
            return result

        transitioned, updated = await asyncio.to_thread(
            self.store.mark_paid, order.id, payment.id, payment.to_dict(), action, triggered_by
        )
        result.new_status = updated.status.value
        if not transitioned:
            # Repeated approval: cache the latest details, no side effects
            if updated.status == OrderStatus.PAID:
                await asyncio.to_thread(
                    self.store.merge_payment_details, order.id, {"payment": payment.to_dict()}
                )
            logger.info(f"Order {order.id} already {updated.status.value}, approval ignored")
            result.message = "Orden ya procesada"
            return result

        results = await self._send_payment_emails(updated, payment)
        await self._settle_expiry(order.id)
        result.processed = True
        result.emails_sent = any(r.success for r in results)
        result.details = {"emails": [r.model_dump(mode="json") for r in results]}
        result.message = "Pago aprobado, orden actualizada"
        return result

    async def handle_payment_notification(
        self,
        notification: PaymentNotification,
        payment_id: Optional[str] = None,
    ) -> WebhookResult:
        """Processes a gateway webhook. Never raises; the gateway always gets an answer."""
        if not notification.is_payment:
            logger.info(f"Ignoring webhook action={notification.action} type={notification.type}")
            return WebhookResult(message="Notificación ignorada")

        payment_id = notification.payment_id or payment_id
        if not payment_id:
            logger.warning("Payment webhook without payment id")
            return WebhookResult(message="Notificación sin id de pago")

        try:
            payment = await asyncio.to_thread(self.gateway.get_payment, payment_id)
        except PaymentGatewayError as e:
            logger.error(f"Could not fetch payment {payment_id}: {e}")
            return WebhookResult(
                message="No se pudo consultar el pago", payment_id=payment_id, details={"error": str(e)}
            )

        order_id = payment.external_reference
        if not order_id:
            logger.warning(f"Payment {payment_id} has no external_reference")
            return WebhookResult(
                message="Pago sin referencia de orden", payment_id=payment_id, payment_status=payment.status
            )

        try:
            order = await self._load(order_id)
            result = await self._apply_payment(order, payment, "payment_webhook", "mercadopago")
        except OrderFlowError as e:
            logger.error(f"Webhook for payment {payment_id} on order {order_id} failed: {e}")
            return WebhookResult(
                message="No se pudo procesar el pago",
                order_id=order_id,
                payment_id=payment_id,
                payment_status=payment.status,
                details={"error": str(e), "error_kind": e.kind},
            )
        logger.info(f"Webhook for payment {payment_id} on order {order_id}: {result.message}")
        return result

    # --- administration ----------------------------------------------------

    async def update_status(self, order_id: str, new_status: OrderStatus, actor: UserIdentity) -> FlowResult:
        if not actor.is_admin:
            return _failure("Acceso denegado", OrderAccessError("admin role required"))
        try:
            order = await self._load(order_id)
        except OrderFlowError as e:
            return _failure("No se pudo obtener la orden", e)

        new_status = OrderStatus(new_status)
        if not can_transition(order.status, new_status, self.settings.ALLOW_CANCELLED_REACTIVATION):
            return _failure(
                f"No se puede pasar de {status_label(order.status)} a {status_label(new_status)}",
                InvalidStatusTransitionError(f"{order.status.value} -> {new_status.value}"),
                order=order,
            )

        try:
            if new_status == OrderStatus.PAID:
                transitioned, updated = await asyncio.to_thread(
                    self.store.mark_paid,
                    order.id,
                    order.payment_id,
                    None,
                    "admin_status_update",
                    actor.id,
                    [order.status],
                )
                if not transitioned:
                    updated = None
            else:
                updated = await asyncio.to_thread(
                    self.store.transition_status,
                    order.id,
                    new_status,
                    [order.status],
                    "admin_status_update",
                    actor.id,
                )
        except OrderFlowError as e:
            return _failure("No se pudo actualizar la orden", e, order=order)

        if updated is None:
            return _failure(
                "El estado de la orden cambió, volvé a intentarlo",
                InvalidStatusTransitionError("status changed concurrently"),
                order=order,
            )

        notifications = []
        if new_status == OrderStatus.PAID:
            notifications = await self._send_payment_emails(updated, None)
        if new_status in (OrderStatus.PAID, OrderStatus.CANCELLED):
            await self._settle_expiry(order.id)

        logger.info(f"Order {order.id} moved to {new_status.value} by admin {actor.id}")
        return FlowResult(
            success=True,
            message=f"Estado actualizado a {status_label(new_status)}",
            order=updated,
            notifications=notifications,
        )

    async def list_orders(self, status: Optional[OrderStatus] = None, limit: int = 100) -> FlowResult:
        try:
            orders = await asyncio.to_thread(self.store.list_orders, status, limit)
        except OrderStoreError as e:
            return _failure("No se pudieron listar las órdenes", e)
        return FlowResult(success=True, message="OK", data={"orders": orders})

    def _stale_cutoff(self):
        return utcnow() - timedelta(minutes=self.settings.ORDER_EXPIRY_MINUTES)

    async def stale_order_stats(self) -> FlowResult:
        cutoff = self._stale_cutoff()
        try:
            stale = await asyncio.to_thread(self.store.count_stale, cutoff)
            stats = await asyncio.to_thread(self.store.status_stats)
        except OrderStoreError as e:
            return _failure("No se pudieron obtener las estadísticas", e)
        return FlowResult(
            success=True,
            message=f"{stale} órdenes pendientes con más de {self.settings.ORDER_EXPIRY_MINUTES} minutos",
            data={
                "stale_orders": stale,
                "timeout_minutes": self.settings.ORDER_EXPIRY_MINUTES,
                "cutoff": cutoff.isoformat(),
                "stats": stats,
            },
        )

    async def cleanup_stale_orders(self, actor: Optional[UserIdentity] = None) -> FlowResult:
        minutes = self.settings.ORDER_EXPIRY_MINUTES
        reason = f"Timeout automático - {minutes} minutos sin pago"
        try:
            cancelled = await asyncio.to_thread(
                self.store.cancel_stale, self._stale_cutoff(), reason, actor.id if actor else "cleanup"
            )
        except OrderStoreError as e:
            return _failure("No se pudieron cancelar las órdenes", e)
        logger.info(f"Stale order cleanup cancelled {cancelled} orders")
        return FlowResult(
            success=True,
            message=f"{cancelled} órdenes canceladas",
            data={"cancelled": cancelled, "reason": reason},
        )

    def gateway_status(self) -> GatewayStatus:
        return self.gateway.status()
