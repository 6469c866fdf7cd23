from notifications.dispatcher import NotificationKind, NotificationResult, OrderNotifier
from notifications.transport import ConsoleTransport, SMTPTransport, build_transport

__all__ = [
    "NotificationKind",
    "NotificationResult",
    "OrderNotifier",
    "ConsoleTransport",
    "SMTPTransport",
    "build_transport",
]
