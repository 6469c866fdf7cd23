from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder

from api.responses import to_response
from api.security import get_order_service, require_admin
from models.order import OrderStatus, OrderStatusUpdate, OrderSummary
from models.user import UserIdentity
from services.order_service import OrderService

router = APIRouter()


@router.get("/orders")
async def list_orders(
    status: Optional[OrderStatus] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    admin: UserIdentity = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    """Newest orders first, optionally filtered by status."""
    result = await service.list_orders(status, limit)
    if not result.success:
        return to_response(result)
    orders = [OrderSummary.from_order(o) for o in result.data["orders"]]
    return jsonable_encoder({"success": True, "count": len(orders), "orders": orders})


@router.get("/orders/cleanup")
async def stale_orders(
    admin: UserIdentity = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    result = await service.stale_order_stats()
    return to_response(result, **result.data)


@router.post("/orders/cleanup")
async def cleanup_stale_orders(
    admin: UserIdentity = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    """Cancels pending orders older than the expiry window."""
    result = await service.cleanup_stale_orders(admin)
    return to_response(result, **result.data)


@router.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    update: OrderStatusUpdate,
    admin: UserIdentity = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    result = await service.update_status(order_id, update.status, admin)
    return to_response(result)
