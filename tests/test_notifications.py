import asyncio
import smtplib
from datetime import datetime

import pytest

from conftest import RecordingTransport, checkout_request
from models.order import Order, OrderStatus, calculate_total_amount
from models.payment import PaymentDetails
from notifications import ConsoleTransport, NotificationKind, OrderNotifier, SMTPTransport, build_transport
from services.errors import NotificationError, PermanentNotificationError


def make_order(method="mercadopago", status=OrderStatus.PENDING) -> Order:
    request = checkout_request(method=method)
    return Order(
        id="abcdef12-0000-0000-0000-000000000000",
        items=request.items,
        total_amount=calculate_total_amount(request.items),
        shipping_info=request.shipping_info,
        payment_method=request.payment_method,
        status=status,
        idempotency_key="k1",
        created_at=datetime(2026, 10, 19, 14, 30),
    )


def make_notifier(transport, admin_email="admin@example.com") -> OrderNotifier:
    return OrderNotifier(
        transport,
        sender_email="tienda@example.com",
        admin_email=admin_email,
        frontend_url="http://localhost:3000/",
        retry_delay=0,
    )


def html_of(message) -> str:
    return message.get_body(preferencelist=("html",)).get_content()


def test_order_created_emails_go_to_customer_and_admin(notifier, transport):
    results = asyncio.run(notifier.send_order_created_emails(make_order()))

    assert [r.kind for r in results] == [NotificationKind.ORDER_CONFIRMATION, NotificationKind.NEW_ORDER_ALERT]
    assert all(r.success and r.attempts == 1 and r.message_id for r in results)
    assert transport.recipients() == ["ana@example.com", "admin@example.com"]
    assert transport.subjects() == [
        "Confirmación de Pedido #abcdef12",
        "🛒 Nueva Orden #abcdef12 - $ 25,00",
    ]


def test_order_confirmation_content(notifier, transport):
    asyncio.run(notifier.send_order_confirmation(make_order()))
    html = html_of(transport.sent[0])

    assert "Remera Oversize" in html
    assert "$ 25,00" in html
    assert "19 de octubre de 2026, 14:30" in html
    assert "http://localhost:3000/profile/orders/abcdef12-0000-0000-0000-000000000000" in html


def test_whatsapp_order_confirmation_mentions_contact(notifier, transport):
    order = make_order(method="whatsapp", status=OrderStatus.WHATSAPP_PENDING)
    asyncio.run(notifier.send_order_confirmation(order))
    assert "WhatsApp" in html_of(transport.sent[0])


def test_payment_emails_include_payment_metadata(notifier, transport):
    payment = PaymentDetails(
        id="123456", status="approved", date_approved="2026-10-19T14:30:00.000-03:00", payment_method_id="visa"
    )
    results = asyncio.run(notifier.send_payment_confirmed_emails(make_order(status=OrderStatus.PAID), payment))

    assert [r.success for r in results] == [True, True]
    by_subject = {m["Subject"]: m for m in transport.sent}
    customer = by_subject["✅ Pago Confirmado - Pedido #abcdef12"]
    alert = by_subject["💰 Pago Recibido - Orden #abcdef12 - $ 25,00"]
    assert customer["To"] == "ana@example.com"
    assert alert["To"] == "admin@example.com"
    assert "123456" in html_of(customer)
    assert "19 de octubre de 2026, 14:30" in html_of(customer)
    assert "Av. Corrientes 1234" in html_of(alert)
    assert "visa" in html_of(alert)


def test_unparseable_payment_date_is_shown_as_received(notifier, transport):
    payment = PaymentDetails(id="123456", status="approved", date_approved="19/10/2026 14:30")
    results = asyncio.run(notifier.send_payment_confirmed_emails(make_order(status=OrderStatus.PAID), payment))

    assert [r.success for r in results] == [True, True]
    assert any("19/10/2026 14:30" in html_of(m) for m in transport.sent)


def test_render_failure_is_reported_not_raised(notifier, transport, monkeypatch):
    def broken_render(template, **context):
        raise ValueError("bad context")

    monkeypatch.setattr(notifier, "_render", broken_render)
    result = asyncio.run(notifier.send_order_confirmation(make_order()))

    assert not result.success
    assert "bad context" in result.error
    assert transport.sent == []


def test_html_is_escaped(notifier, transport):
    order = make_order()
    order.items[0].title = "<script>alert(1)</script>"
    asyncio.run(notifier.send_order_confirmation(order))
    assert "<script>" not in html_of(transport.sent[0])


def test_transient_failures_are_retried_three_times():
    transport = RecordingTransport(always_fail=NotificationError("connection refused"))
    result = asyncio.run(make_notifier(transport).send_order_confirmation(make_order()))

    assert not result.success
    assert result.attempts == 3
    assert "connection refused" in result.error
    assert transport.calls == 3


def test_retry_recovers_after_a_transient_failure():
    transport = RecordingTransport(errors=[NotificationError("timeout")])
    result = asyncio.run(make_notifier(transport).send_order_confirmation(make_order()))

    assert result.success
    assert result.attempts == 2
    assert len(transport.sent) == 1


def test_permanent_failure_is_not_retried():
    transport = RecordingTransport(always_fail=PermanentNotificationError("535 bad credentials"))
    result = asyncio.run(make_notifier(transport).send_order_confirmation(make_order()))

    assert not result.success
    assert result.attempts == 1
    assert transport.calls == 1


def test_missing_admin_email_is_reported_not_raised():
    transport = RecordingTransport()
    result = asyncio.run(make_notifier(transport, admin_email=None).send_new_order_alert(make_order()))

    assert not result.success
    assert result.error == "No recipient configured"
    assert transport.calls == 0


def test_resend_includes_admin_only_when_asked(notifier, transport):
    assert len(asyncio.run(notifier.resend_confirmation(make_order()))) == 1
    assert len(asyncio.run(notifier.resend_confirmation(make_order(), include_admin=True))) == 2
    assert transport.recipients() == ["ana@example.com", "ana@example.com", "admin@example.com"]


def test_smtp_transport_without_credentials_is_permanent():
    transport = SMTPTransport("smtp.example.com", 587, None, None)
    with pytest.raises(PermanentNotificationError):
        transport.send(make_notifier(RecordingTransport())._message("a@example.com", "s", "<p>x</p>"))


def test_smtp_errors_are_classified(monkeypatch):
    class FailingSMTP:
        error = smtplib.SMTPAuthenticationError(535, b"bad credentials")

        def __init__(self, *args, **kwargs):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def starttls(self, context=None):
            pass

        def login(self, user, password):
            raise self.error

    monkeypatch.setattr(smtplib, "SMTP", FailingSMTP)
    transport = SMTPTransport("smtp.example.com", 587, "tienda@example.com", "secret")
    message = make_notifier(RecordingTransport())._message("a@example.com", "s", "<p>x</p>")

    with pytest.raises(PermanentNotificationError):
        transport.send(message)

    FailingSMTP.error = smtplib.SMTPServerDisconnected("closed")
    with pytest.raises(NotificationError) as excinfo:
        transport.send(message)
    assert not isinstance(excinfo.value, PermanentNotificationError)


def test_build_transport(settings):
    settings.EMAIL_BACKEND = "console"
    assert isinstance(build_transport(settings), ConsoleTransport)
    settings.EMAIL_BACKEND = "smtp"
    assert isinstance(build_transport(settings), SMTPTransport)


def test_console_transport_returns_message_id():
    message = make_notifier(RecordingTransport())._message("a@example.com", "Hola", "<p>x</p>")
    assert ConsoleTransport().send(message).startswith("<")
