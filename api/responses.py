from fastapi import status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from models.order import OrderSummary
from services.order_service import FlowResult

# error_kind -> HTTP status. Notification failures are reported in a 200 body.
ERROR_STATUS = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "gateway": status.HTTP_502_BAD_GATEWAY,
    "persistence": status.HTTP_503_SERVICE_UNAVAILABLE,
    "notification": status.HTTP_200_OK,
}


def result_body(result: FlowResult, **extra) -> dict:
    body = {"success": result.success, "message": result.message}
    if result.order is not None:
        body["order_id"] = result.order.id
        body["order"] = OrderSummary.from_order(result.order)
    if result.payment_info is not None:
        body["payment_info"] = result.payment_info
    if not result.success:
        body["error"] = result.error
        body["error_kind"] = result.error_kind
    if result.notifications:
        body["notifications"] = result.notifications
    body.update(extra)
    return jsonable_encoder(body)


def to_response(result: FlowResult, success_status: int = status.HTTP_200_OK, **extra) -> JSONResponse:
    if result.success:
        code = success_status
    else:
        code = ERROR_STATUS.get(result.error_kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=code, content=result_body(result, **extra))
