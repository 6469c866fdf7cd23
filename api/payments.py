import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from api.security import get_order_service, require_admin
from models.payment import GatewayStatus, PaymentNotification, WebhookResult
from models.user import UserIdentity
from services.order_service import OrderService

logger = logging.getLogger(__name__)

router = APIRouter()


def _parse_notification(raw_body: bytes, request: Request) -> PaymentNotification:
    notification = PaymentNotification()
    if raw_body:
        try:
            notification = PaymentNotification.model_validate_json(raw_body)
        except ValidationError as e:
            logger.warning(f"Unreadable webhook body: {e}")
    if notification.type is None:
        # Older IPN calls carry everything in the query string
        notification.type = request.query_params.get("type") or request.query_params.get("topic")
    return notification


@router.post("/webhook", response_model=WebhookResult)
async def payment_webhook(request: Request, service: OrderService = Depends(get_order_service)):
    """MercadoPago notifications. Answers 200 unless the signature is invalid in production."""
    raw_body = await request.body()
    if not service.verify_webhook_signature(raw_body, request.headers.get("x-signature")):
        if service.settings.is_production:
            logger.warning("Rejected webhook with invalid signature")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")
        logger.warning("Webhook signature invalid, accepted outside production")

    notification = _parse_notification(raw_body, request)
    query_payment_id = request.query_params.get("data.id") or request.query_params.get("id")
    logger.info(
        f"Webhook received: action={notification.action} type={notification.type} "
        f"payment={notification.payment_id or query_payment_id}"
    )
    return await service.handle_payment_notification(notification, payment_id=query_payment_id)


@router.get("/webhook")
async def webhook_health():
    return {"status": "active", "message": "Webhook endpoint is active", "methods": ["POST"]}


@router.get("/gateway-status", response_model=GatewayStatus)
async def gateway_status(
    admin: UserIdentity = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    return service.gateway_status()
