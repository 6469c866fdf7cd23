from fastapi import APIRouter, Depends, Query, status

from api.responses import to_response
from api.security import get_current_user, get_order_service
from models.order import CreateOrderRequest
from models.user import UserIdentity
from services.order_service import OrderService

router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_order(
    request: CreateOrderRequest,
    user: UserIdentity = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """Creates an order (once per idempotency key) and its payment link."""
    result = await service.create_order(request, user)
    return to_response(
        result,
        success_status=status.HTTP_201_CREATED if result.created else status.HTTP_200_OK,
        created=result.created,
    )


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    refresh_payment: bool = Query(False, description="Fetch the payment again from the gateway"),
    user: UserIdentity = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    result = await service.get_order(order_id, user, refresh_payment=refresh_payment)
    return to_response(result, **result.data)


@router.post("/{order_id}/recreate-payment")
async def recreate_payment(
    order_id: str,
    user: UserIdentity = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    """Issues a fresh payment link for a pending or cancelled order."""
    result = await service.recreate_payment(order_id, user)
    return to_response(result, **result.data)


@router.post("/{order_id}/send-confirmation")
async def send_confirmation(
    order_id: str,
    user: UserIdentity = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    result = await service.resend_confirmation(order_id, user)
    return to_response(result)


@router.get("/{order_id}/whatsapp-link")
async def whatsapp_link(
    order_id: str,
    user: UserIdentity = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    result = await service.get_whatsapp_link(order_id, user)
    return to_response(result, **result.data)
