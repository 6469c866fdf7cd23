import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

import mercadopago
from mercadopago.config import RequestOptions

from models.order import Order
from models.payment import PaymentPreference, PaymentDetails, GatewayStatus
from services.errors import PaymentGatewayError

logger = logging.getLogger(__name__)


def _sdk_body(result, operation: str) -> dict:
    """Unwraps an SDK result ({"status": ..., "response": ...}) or raises."""
    if not isinstance(result, dict):
        raise PaymentGatewayError(f"MercadoPago {operation}: unexpected response {result!r}")
    status = result.get("status")
    body = result.get("response") or {}
    if status is None or int(status) >= 400:
        message = body.get("message") if isinstance(body, dict) else None
        raise PaymentGatewayError(
            f"MercadoPago {operation} failed with status {status}: {message or body}"
        )
    return body


class MercadoPagoGateway:
    """Adapter around the MercadoPago checkout preference and payment APIs."""

    def __init__(
        self,
        access_token: Optional[str],
        environment: str,
        frontend_url: str,
        backend_url: str,
        currency_id: str = "ARS",
        statement_descriptor: str = "HAIZE",
        expiration_hours: int = 24,
        timeout: float = 5.0,
        sdk=None,
    ):
        self.access_token = access_token
        self.environment = environment
        self.frontend_url = frontend_url.rstrip("/")
        self.backend_url = backend_url.rstrip("/")
        self.currency_id = currency_id
        self.statement_descriptor = statement_descriptor
        self.expiration_hours = expiration_hours
        self.timeout = timeout
        self._client = sdk

    @classmethod
    def from_settings(cls, settings) -> "MercadoPagoGateway":
        return cls(
            access_token=settings.mercadopago_access_token,
            environment=settings.ENVIRONMENT,
            frontend_url=settings.FRONTEND_URL,
            backend_url=settings.BACKEND_URL,
            currency_id=settings.CURRENCY_ID,
            statement_descriptor=settings.STATEMENT_DESCRIPTOR,
            expiration_hours=settings.PREFERENCE_EXPIRATION_HOURS,
            timeout=settings.MERCADOPAGO_TIMEOUT_SECONDS,
        )

    def _sdk(self):
        if self._client is None:
            if not self.access_token:
                raise PaymentGatewayError("MercadoPago access token is not configured")
            self._client = mercadopago.SDK(
                self.access_token,
                request_options=RequestOptions(connection_timeout=self.timeout),
            )
        return self._client

    @property
    def webhook_url(self) -> str:
        return f"{self.backend_url}/payments/webhook"

    def _back_urls(self, order_id: str) -> dict:
        base = f"{self.frontend_url}/checkout"
        return {
            "success": f"{base}/success?payment_status=approved&external_reference={order_id}",
            "failure": f"{base}/failure?payment_status=rejected&external_reference={order_id}",
            "pending": f"{base}/pending?payment_status=pending&external_reference={order_id}",
        }

    @staticmethod
    def _payer(order: Order) -> dict:
        shipping = order.shipping_info
        payer = {"name": shipping.name, "email": shipping.email}
        digits = re.sub(r"\D", "", shipping.phone)
        if len(digits) >= 8:
            payer["phone"] = {"area_code": "11", "number": digits[-8:]}
        if shipping.address and shipping.postal_code:
            payer["address"] = {"street_name": shipping.address, "zip_code": shipping.postal_code}
        return payer

    def build_preference_payload(self, order: Order) -> dict:
        if not order.items:
            raise PaymentGatewayError(f"Order {order.id} has no items")

        expires_at = datetime.now(timezone.utc) + timedelta(hours=self.expiration_hours)
        return {
            "items": [
                {
                    "id": item.product_id,
                    "title": item.title,
                    "quantity": item.quantity,
                    "unit_price": float(item.price),
                    "currency_id": self.currency_id,
                    "picture_url": item.image_url or "",
                    "description": f"{item.title} - Cantidad: {item.quantity}",
                }
                for item in order.items
            ],
            "back_urls": self._back_urls(order.id),
            "external_reference": order.id,
            "notification_url": self.webhook_url,
            "payer": self._payer(order),
            "payment_methods": {"installments": 12, "default_installments": 1},
            "metadata": {
                "order_id": order.id,
                "customer_email": order.shipping_info.email,
                "environment": "sandbox" if self.environment == "development" else "production",
            },
            "statement_descriptor": self.statement_descriptor,
            "expires": True,
            "expiration_date_to": expires_at.isoformat(timespec="milliseconds"),
            "binary_mode": False,
        }

    def create_preference(self, order: Order) -> PaymentPreference:
        """Creates a checkout preference for the order total and items.

        A response without a preference id, or without both redirect URLs, is
        treated as a failure: the order must not look payable when it is not.
        """
        payload = self.build_preference_payload(order)
        logger.info(
            f"Creating MercadoPago preference for order {order.id} "
            f"({len(payload['items'])} items, total {order.total_amount:.2f})"
        )
        try:
            result = self._sdk().preference().create(payload)
        except PaymentGatewayError:
            raise
        except Exception as e:
            logger.error(f"MercadoPago preference request failed for order {order.id}: {e}")
            raise PaymentGatewayError(f"MercadoPago preference request failed: {e}") from e

        body = _sdk_body(result, "preference creation")
        if not body.get("id"):
            raise PaymentGatewayError("MercadoPago did not return a preference id")
        if not body.get("init_point") and not body.get("sandbox_init_point"):
            raise PaymentGatewayError("MercadoPago did not return any checkout URL")

        preference = PaymentPreference(
            id=str(body["id"]),
            init_point=body.get("init_point"),
            sandbox_init_point=body.get("sandbox_init_point"),
        )
        logger.info(f"Preference {preference.id} created for order {order.id}")
        return preference

    def get_payment(self, payment_id: str) -> PaymentDetails:
        try:
            result = self._sdk().payment().get(payment_id)
        except PaymentGatewayError:
            raise
        except Exception as e:
            logger.error(f"MercadoPago payment lookup failed for {payment_id}: {e}")
            raise PaymentGatewayError(f"MercadoPago payment lookup failed: {e}") from e

        body = _sdk_body(result, "payment lookup")
        if not body.get("id") or not body.get("status"):
            raise PaymentGatewayError(f"MercadoPago returned an incomplete payment {payment_id}")
        return PaymentDetails.model_validate(body)

    def status(self) -> GatewayStatus:
        token = self.access_token or ""
        if token.startswith("APP_USR-"):
            token_type = "production"
        elif token.startswith("TEST-"):
            token_type = "test"
        else:
            token_type = "unknown" if token else None
        return GatewayStatus(
            is_configured=bool(token),
            is_production=token_type == "production",
            environment=self.environment,
            token_type=token_type,
        )
