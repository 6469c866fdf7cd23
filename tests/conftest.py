import pytest

from db.base import Base
from db import tables  # noqa: F401  registers the orders table
from db.order_store import OrderStore
from db.session import build_engine, build_session_factory
from models.order import CreateOrderRequest, OrderItem, ShippingInfo
from models.user import UserIdentity, UserRole
from notifications.dispatcher import OrderNotifier
from services.order_service import OrderService
from services.payment_gateway import MercadoPagoGateway
from utils.config import Settings

INIT_POINT = "https://www.mercadopago.com.ar/checkout/v1/redirect?pref_id=pref-1"
SANDBOX_INIT_POINT = "https://sandbox.mercadopago.com.ar/checkout/v1/redirect?pref_id=pref-1"


class FakePreferenceAPI:
    def __init__(self, sdk):
        self.sdk = sdk

    def create(self, payload):
        self.sdk.preference_payloads.append(payload)
        if self.sdk.preference_error is not None:
            raise self.sdk.preference_error
        return self.sdk.preference_result


class FakePaymentAPI:
    def __init__(self, sdk):
        self.sdk = sdk

    def get(self, payment_id):
        self.sdk.payment_lookups.append(payment_id)
        if str(payment_id) not in self.sdk.payments:
            return {"status": 404, "response": {"message": "Payment not found"}}
        return {"status": 200, "response": self.sdk.payments[str(payment_id)]}


class FakeMercadoPagoSDK:
    """Stands in for mercadopago.SDK: same call shape, canned responses."""

    def __init__(self):
        self.preference_payloads = []
        self.payment_lookups = []
        self.preference_error = None
        self.preference_result = {
            "status": 201,
            "response": {"id": "pref-1", "init_point": INIT_POINT, "sandbox_init_point": SANDBOX_INIT_POINT},
        }
        self.payments = {}

    def preference(self):
        return FakePreferenceAPI(self)

    def payment(self):
        return FakePaymentAPI(self)

    def add_payment(self, payment_id, order_id, status="approved", **extra):
        self.payments[str(payment_id)] = {
            "id": int(payment_id),
            "status": status,
            "status_detail": "accredited" if status == "approved" else status,
            "date_approved": "2026-10-19T14:30:00.000-03:00" if status == "approved" else None,
            "payment_method_id": "visa",
            "payment_type_id": "credit_card",
            "transaction_amount": 25.0,
            "external_reference": order_id,
            **extra,
        }


class RecordingTransport:
    """Records sent messages; raises the queued errors first, one per call."""

    def __init__(self, errors=None, always_fail=None):
        self.sent = []
        self.calls = 0
        self.errors = list(errors or [])
        self.always_fail = always_fail

    def send(self, message):
        self.calls += 1
        if self.always_fail is not None:
            raise self.always_fail
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(message)
        return f"<msg-{len(self.sent)}@test.local>"

    def subjects(self):
        return [m["Subject"] for m in self.sent]

    def recipients(self):
        return [m["To"] for m in self.sent]


class RecordingScheduler:
    def __init__(self):
        self.scheduled = []
        self.settled = []

    async def schedule(self, order_id, timeout_minutes):
        self.scheduled.append((order_id, timeout_minutes))

    async def notify_settled(self, order_id):
        self.settled.append(order_id)


def checkout_request(key="k1", method="mercadopago", **overrides) -> CreateOrderRequest:
    data = {
        "items": [
            OrderItem(product_id="p1", title="Remera Oversize", quantity=2, price=10.00),
            OrderItem(product_id="p2", title="Gorra", quantity=1, price=5.00),
        ],
        "payment_method": method,
        "shipping_info": ShippingInfo(
            name="Ana Pérez",
            email="Ana@Example.com",
            phone="+54 11 2345-6789",
            address="Av. Corrientes 1234",
            city="Buenos Aires",
            postal_code="1043",
        ),
        "idempotency_key": key,
    }
    data.update(overrides)
    return CreateOrderRequest(**data)


@pytest.fixture
def settings():
    s = Settings()
    s.ENVIRONMENT = "development"
    s.FRONTEND_URL = "http://localhost:3000"
    s.BACKEND_URL = "http://localhost:8000"
    s.ORDER_EXPIRY_MINUTES = 30
    s.ALLOW_CANCELLED_REACTIVATION = True
    s.MERCADOPAGO_WEBHOOK_SECRET = None
    s.WHATSAPP_SUPPORT_PHONE = "5491126907696"
    return s


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def sdk():
    return FakeMercadoPagoSDK()


@pytest.fixture
def gateway(sdk, settings):
    return MercadoPagoGateway(
        access_token="TEST-1234",
        environment=settings.ENVIRONMENT,
        frontend_url=settings.FRONTEND_URL,
        backend_url=settings.BACKEND_URL,
        sdk=sdk,
    )


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def notifier(transport):
    return OrderNotifier(
        transport,
        sender_email="tienda@example.com",
        admin_email="admin@example.com",
        frontend_url="http://localhost:3000",
        retry_delay=0,
    )


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def service(store, gateway, notifier, settings, scheduler):
    return OrderService(store, gateway, notifier, settings, expiry_scheduler=scheduler)


@pytest.fixture
def customer():
    return UserIdentity(id="user-1", email="ana@example.com", name="Ana Pérez")


@pytest.fixture
def other_customer():
    return UserIdentity(id="user-2", email="otro@example.com")


@pytest.fixture
def admin():
    return UserIdentity(id="admin-1", email="admin@example.com", role=UserRole.ADMIN)
