from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from coordinator.aggregate import CheckoutRequest, CustomerInfo, LineItem
from coordinator.config import Settings
from coordinator.engine import TransitionEngine
from coordinator.guard import LocalLockGuard
from coordinator.notifier import EventNotifier, MemoryEventSink
from coordinator.status import OrderType
from coordinator.store import MemoryAggregateStore


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        store_backend="memory",
        lock_backend="local",
        event_sink="memory",
        lock_timeout_seconds=0.5,
    )


def make_engine(settings: Settings, store=None, sink=None) -> TransitionEngine:
    return TransitionEngine(
        store or MemoryAggregateStore(),
        LocalLockGuard(settings.lock_timeout_seconds),
        EventNotifier(sink or MemoryEventSink()),
        settings,
    )


@pytest.fixture()
def engine(settings) -> TransitionEngine:
    return make_engine(settings)


def checkout(order_type: OrderType | str = OrderType.DELIVERY, order_id: str = "ord-1", **overrides) -> CheckoutRequest:
    data = {
        "order_id": order_id,
        "order_type": OrderType(order_type),
        "customer": CustomerInfo(id="cust-1", name="Dara Sok", email="dara@example.com", phone="012345678"),
        "items": [
            LineItem(product_id="p-1", product_name="Fried Rice", quantity=2, unit_price=Decimal("12.50")),
            LineItem(product_id="p-2", product_name="Iced Coffee", quantity=1, unit_price=Decimal("3.00")),
        ],
        "delivery_address": "12 Riverside Rd" if OrderType(order_type) == OrderType.DELIVERY else None,
        "phone_number": "012345678",
        "special_instructions": "no chili",
    }
    data.update(overrides)
    return CheckoutRequest(**data)


@pytest.fixture()
def client(engine):
    from coordinator.main import app

    app.state.engine = engine
    with TestClient(app) as c:
        yield c
    app.state.engine = None
