import asyncio
import logging
from email.message import EmailMessage
from email.utils import formataddr
from enum import Enum
from typing import List, Optional

from jinja2 import Environment, PackageLoader, select_autoescape
from pydantic import BaseModel

from models.order import Order, OrderStatus, PaymentMethod, status_label
from models.payment import PaymentDetails
from notifications.formatting import format_date, format_price
from services.errors import NotificationError, PermanentNotificationError

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    ORDER_CONFIRMATION = "order_confirmation"
    NEW_ORDER_ALERT = "new_order_alert"
    PAYMENT_CONFIRMATION = "payment_confirmation"
    PAYMENT_ALERT = "payment_alert"


class NotificationResult(BaseModel):
    kind: NotificationKind
    to: Optional[str] = None
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0


def build_template_env() -> Environment:
    env = Environment(
        loader=PackageLoader("notifications", "templates"),
        autoescape=select_autoescape(["html"]),
    )
    env.filters["price"] = format_price
    env.filters["date"] = format_date
    return env


class OrderNotifier:
    """Renders and sends the four transactional order emails.

    Every send returns a NotificationResult; failures are logged and
    reported, never raised, so an order never depends on the mail server.
    """

    def __init__(
        self,
        transport,
        sender_email: Optional[str],
        admin_email: Optional[str],
        frontend_url: str,
        sender_name: str = "HAIZE",
        max_attempts: int = 3,
        retry_delay: float = 1.0,
    ):
        self.transport = transport
        self.sender = formataddr((sender_name, sender_email or "no-reply@localhost"))
        self.admin_email = admin_email
        self.frontend_url = frontend_url.rstrip("/")
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._templates = build_template_env()

    @classmethod
    def from_settings(cls, settings, transport) -> "OrderNotifier":
        return cls(
            transport,
            sender_email=settings.EMAIL_USER,
            admin_email=settings.ADMIN_EMAIL,
            frontend_url=settings.FRONTEND_URL,
            sender_name=settings.EMAIL_FROM_NAME,
            max_attempts=settings.EMAIL_MAX_ATTEMPTS,
            retry_delay=settings.EMAIL_RETRY_DELAY_SECONDS,
        )

    def _render(self, template: str, **context) -> str:
        return self._templates.get_template(template).render(
            frontend_url=self.frontend_url, **context
        )

    def _message(self, to: str, subject: str, html: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content("Este mensaje requiere un cliente de correo compatible con HTML.")
        message.add_alternative(html, subtype="html")
        return message

    async def send_with_retry(self, kind: NotificationKind, to: Optional[str], subject: str, html: str) -> NotificationResult:
        if not to:
            logger.error(f"Cannot send {kind.value}: no recipient configured")
            return NotificationResult(kind=kind, success=False, error="No recipient configured")

        last_error = None
        for attempt in range(1, self.max_attempts + 1):
            logger.info(f"Attempt {attempt}/{self.max_attempts} - sending {kind.value} to {to}")
            try:
                message_id = await asyncio.to_thread(self.transport.send, self._message(to, subject, html))
                logger.info(f"Email {kind.value} sent to {to} (message id {message_id}, attempt {attempt})")
                return NotificationResult(
                    kind=kind, to=to, success=True, message_id=message_id, attempts=attempt
                )
            except PermanentNotificationError as e:
                logger.error(f"Email {kind.value} to {to} failed permanently: {e}")
                return NotificationResult(kind=kind, to=to, success=False, error=str(e), attempts=attempt)
            except NotificationError as e:
                last_error = e
                logger.warning(f"Attempt {attempt}/{self.max_attempts} for {kind.value} to {to} failed: {e}")
                if attempt < self.max_attempts and self.retry_delay > 0:
                    await asyncio.sleep(self.retry_delay * attempt)

        logger.error(f"Email {kind.value} to {to} failed after {self.max_attempts} attempts: {last_error}")
        return NotificationResult(
            kind=kind, to=to, success=False, error=str(last_error), attempts=self.max_attempts
        )

    async def _send_template(self, kind: NotificationKind, to: Optional[str], subject: str, template: str, **context) -> NotificationResult:
        try:
            html = self._render(template, **context)
        except Exception as e:
            logger.error(f"Could not render {template} for {kind.value}: {e}")
            return NotificationResult(kind=kind, to=to, success=False, error=f"Template error: {e}")
        return await self.send_with_retry(kind, to, subject, html)

    def _common(self, order: Order) -> dict:
        return {
            "order": order,
            "status_label": status_label(order.status),
            "is_whatsapp": order.payment_method == PaymentMethod.WHATSAPP,
            "is_whatsapp_pending": order.status == OrderStatus.WHATSAPP_PENDING,
        }

    async def send_order_confirmation(self, order: Order) -> NotificationResult:
        return await self._send_template(
            NotificationKind.ORDER_CONFIRMATION,
            order.customer_email,
            f"Confirmación de Pedido #{order.short_id}",
            "order_confirmation.html",
            order_url=f"{self.frontend_url}/profile/orders/{order.id}",
            **self._common(order),
        )

    async def send_new_order_alert(self, order: Order) -> NotificationResult:
        return await self._send_template(
            NotificationKind.NEW_ORDER_ALERT,
            self.admin_email,
            f"🛒 Nueva Orden #{order.short_id} - {format_price(order.total_amount)}",
            "new_order_alert.html",
            admin_order_url=f"{self.frontend_url}/admin/orders/{order.id}",
            **self._common(order),
        )

    async def send_payment_confirmation(self, order: Order, payment: Optional[PaymentDetails] = None) -> NotificationResult:
        return await self._send_template(
            NotificationKind.PAYMENT_CONFIRMATION,
            order.customer_email,
            f"✅ Pago Confirmado - Pedido #{order.short_id}",
            "payment_confirmation.html",
            payment=payment,
            order_url=f"{self.frontend_url}/profile/orders/{order.id}",
            **self._common(order),
        )

    async def send_payment_alert(self, order: Order, payment: Optional[PaymentDetails] = None) -> NotificationResult:
        return await self._send_template(
            NotificationKind.PAYMENT_ALERT,
            self.admin_email,
            f"💰 Pago Recibido - Orden #{order.short_id} - {format_price(order.total_amount)}",
            "payment_alert.html",
            payment=payment,
            admin_order_url=f"{self.frontend_url}/admin/orders/{order.id}",
            **self._common(order),
        )

    async def send_order_created_emails(self, order: Order) -> List[NotificationResult]:
        customer = await self.send_order_confirmation(order)
        admin = await self.send_new_order_alert(order)
        return [customer, admin]

    async def send_payment_confirmed_emails(self, order: Order, payment: Optional[PaymentDetails] = None) -> List[NotificationResult]:
        # Independent of each other, so they go out concurrently
        results = await asyncio.gather(
            self.send_payment_confirmation(order, payment),
            self.send_payment_alert(order, payment),
        )
        return list(results)

    async def resend_confirmation(self, order: Order, include_admin: bool = False) -> List[NotificationResult]:
        results = [await self.send_order_confirmation(order)]
        if include_admin:
            results.append(await self.send_new_order_alert(order))
        return results
