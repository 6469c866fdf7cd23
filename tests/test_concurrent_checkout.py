import asyncio

import pytest

from conftest import checkout_request
from db.base import Base
from db.order_store import OrderStore
from db.session import build_engine, build_session_factory
from models.order import OrderStatus
from models.payment import PaymentNotification
from services.order_service import OrderService


@pytest.fixture
def file_store(tmp_path):
    # A file database so concurrent threads use separate connections
    engine = build_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    Base.metadata.create_all(engine)
    yield OrderStore(build_session_factory(engine))
    engine.dispose()


@pytest.fixture
def concurrent_service(file_store, gateway, notifier, settings):
    return OrderService(file_store, gateway, notifier, settings)


def test_duplicate_submissions_create_one_order(concurrent_service, file_store, customer):
    async def submit_many():
        return await asyncio.gather(*[
            concurrent_service.create_order(checkout_request(key="double-click"), customer)
            for _ in range(5)
        ])

    results = asyncio.run(submit_many())

    assert all(r.success for r in results)
    assert len({r.order.id for r in results}) == 1
    assert sum(r.created for r in results) == 1
    assert len(file_store.list_orders()) == 1


def test_concurrent_approvals_send_emails_once(concurrent_service, file_store, customer, sdk, transport):
    order = asyncio.run(concurrent_service.create_order(checkout_request(), customer)).order
    sdk.add_payment(123, order.id)
    transport.sent.clear()
    notification = PaymentNotification.model_validate({"action": "payment.updated", "data": {"id": "123"}})

    async def deliver_many():
        return await asyncio.gather(*[
            concurrent_service.handle_payment_notification(notification) for _ in range(4)
        ])

    results = asyncio.run(deliver_many())

    assert sum(r.processed for r in results) == 1
    assert file_store.get(order.id).status == OrderStatus.PAID
    assert len(transport.sent) == 2
