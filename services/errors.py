"""Exceptions raised below the HTTP boundary.

`OrderService` converts them into `FlowResult` values; nothing here should
reach a request handler uncaught.
"""


class OrderFlowError(Exception):
    kind = "internal"


class OrderValidationError(OrderFlowError):
    kind = "validation"


class OrderNotFoundError(OrderFlowError):
    kind = "not_found"


class OrderAccessError(OrderFlowError):
    kind = "forbidden"


class InvalidStatusTransitionError(OrderFlowError):
    kind = "conflict"


class OrderStoreError(OrderFlowError):
    kind = "persistence"


class PaymentGatewayError(OrderFlowError):
    kind = "gateway"


class NotificationError(OrderFlowError):
    """A send failed; worth retrying."""
    kind = "notification"


class PermanentNotificationError(NotificationError):
    """A send failed in a way retrying will not fix."""
