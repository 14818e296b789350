import asyncio
from decimal import Decimal

import pytest

from coordinator.aggregate import LineItem, OrderAggregate
from coordinator.engine import ActorContext
from coordinator.errors import (
    ConsistencyViolation,
    IllegalTransition,
    ItemsFrozen,
    NotFound,
    OrderAlreadyExists,
    VersionConflict,
)
from coordinator.notifier import MemoryEventSink
from coordinator.status import (
    DeliveryStatus,
    Machine,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentStatus,
    PickupStatus,
)
from coordinator.store import MemoryAggregateStore

from conftest import checkout, make_engine


async def _advance(engine, order_id, machine, *states, actor=None):
    order = None
    for state in states:
        if actor is None:
            order = await engine.apply_transition(order_id, machine, state)
        else:
            order = await engine.apply_transition(order_id, machine, state, actor=actor)
    return order


async def _events(engine):
    await engine.notifier.drain()
    return engine.notifier.sink.events


@pytest.mark.asyncio
async def test_pickup_order_42_completes_only_after_payment_and_pickup(engine):
    await engine.create_order(checkout(OrderType.PICKUP, order_id="42"))

    order = await engine.apply_transition("42", Machine.ORDER, "CONFIRMED")
    assert order.status == OrderStatus.CONFIRMED

    await engine.start_payment("42", PaymentMethod.STRIPE, "pi_42")
    await _advance(engine, "42", Machine.PICKUP, "PREPARING")
    await _advance(engine, "42", Machine.ORDER, "PREPARING", "READY_FOR_PICKUP")
    before = await engine.get_order("42")

    with pytest.raises(ConsistencyViolation) as exc:
        await engine.apply_transition("42", Machine.ORDER, "COMPLETED")
    assert exc.value.rule == "completion_requires_settled_payment"
    assert (await engine.get_order("42")).version == before.version

    await _advance(engine, "42", Machine.PAYMENT, "AWAITING_SESSION", "PROCESSING", "COMPLETED")
    await _advance(engine, "42", Machine.PICKUP, "READY_FOR_PICKUP", "COMPLETED")
    order = await engine.apply_transition("42", Machine.ORDER, "COMPLETED")

    assert order.status == OrderStatus.COMPLETED
    assert order.payment.status == PaymentStatus.COMPLETED
    assert order.payment.paid_at is not None
    assert order.pickup.status == PickupStatus.COMPLETED
    assert order.pickup.picked_up_at is not None


@pytest.mark.asyncio
async def test_delivery_order_7_cannot_go_out_before_driver_assigned(engine):
    await engine.create_order(checkout(OrderType.DELIVERY, order_id="7"))
    await _advance(engine, "7", Machine.ORDER, "CONFIRMED", "PREPARING", "READY_FOR_DELIVERY")

    with pytest.raises(ConsistencyViolation) as exc:
        await engine.apply_transition("7", Machine.ORDER, "OUT_FOR_DELIVERY")
    assert exc.value.rule == "out_for_delivery_requires_dispatch"

    driver = ActorContext(
        actor_type="dispatcher",
        actor_id="disp-1",
        attributes={"driver_name": "Vannak", "driver_phone": "099111222", "vehicle_info": "Scooter 2AB-1234"},
    )
    order = await engine.apply_transition("7", Machine.DELIVERY, "ASSIGNED", actor=driver)
    assert order.delivery.driver_name == "Vannak"

    order = await engine.apply_transition("7", Machine.ORDER, "OUT_FOR_DELIVERY")
    assert order.status == OrderStatus.OUT_FOR_DELIVERY


@pytest.mark.asyncio
async def test_illegal_transition_leaves_version_unchanged(engine):
    await engine.create_order(checkout())

    with pytest.raises(IllegalTransition) as exc:
        await engine.apply_transition("ord-1", Machine.ORDER, "COMPLETED")

    assert exc.value.current_state == "PENDING"
    assert (await engine.get_order("ord-1")).version == 1
    assert len(await _events(engine)) == 1  # checkout only


@pytest.mark.asyncio
async def test_unknown_target_state_is_illegal(engine):
    await engine.create_order(checkout())
    with pytest.raises(IllegalTransition):
        await engine.apply_transition("ord-1", Machine.ORDER, "DELIVERED")


@pytest.mark.asyncio
async def test_missing_record_is_illegal(engine):
    await engine.create_order(checkout(OrderType.DINE_IN, phone_number=None))
    with pytest.raises(IllegalTransition):
        await engine.apply_transition("ord-1", Machine.DELIVERY, "ASSIGNED")
    with pytest.raises(IllegalTransition):
        await engine.apply_transition("ord-1", Machine.PAYMENT, "AWAITING_SESSION")


@pytest.mark.asyncio
async def test_unknown_order_is_not_found(engine):
    with pytest.raises(NotFound):
        await engine.apply_transition("nope", Machine.ORDER, "CONFIRMED")


@pytest.mark.asyncio
async def test_duplicate_checkout_rejected(engine):
    await engine.create_order(checkout())
    with pytest.raises(OrderAlreadyExists):
        await engine.create_order(checkout())


@pytest.mark.asyncio
async def test_cancel_cascades_in_one_commit(engine):
    await engine.create_order(checkout(OrderType.DELIVERY))
    await engine.start_payment("ord-1", PaymentMethod.STRIPE)
    await engine.apply_transition("ord-1", Machine.PAYMENT, "AWAITING_WEBHOOK")

    order = await engine.apply_transition("ord-1", Machine.ORDER, "CANCELLED", actor=ActorContext(actor_type="customer", actor_id="cust-1"))

    assert order.version == 4
    assert order.status == OrderStatus.CANCELLED
    assert order.payment.status == PaymentStatus.CANCELLED
    assert order.delivery.status == DeliveryStatus.CANCELLED

    stored = await engine.get_order("ord-1")
    assert stored.snapshot() == order.snapshot()

    cascade = [e for e in await _events(engine) if e.version == 4]
    assert [(e.machine, e.from_state, e.to_state) for e in cascade] == [
        ("order", "PENDING", "CANCELLED"),
        ("payment", "AWAITING_WEBHOOK", "CANCELLED"),
        ("delivery", "PENDING", "CANCELLED"),
    ]
    assert all(e.actor_id == "cust-1" for e in cascade)


@pytest.mark.asyncio
async def test_cancel_refunds_captured_payment(engine):
    await engine.create_order(checkout(OrderType.PICKUP))
    await engine.start_payment("ord-1", PaymentMethod.PAYPAL)
    await _advance(engine, "ord-1", Machine.PAYMENT, "AWAITING_SESSION", "PROCESSING", "COMPLETED")
    await _advance(engine, "ord-1", Machine.ORDER, "CONFIRMED", "PREPARING")
    await _advance(engine, "ord-1", Machine.PICKUP, "PREPARING")

    order = await engine.apply_transition("ord-1", Machine.ORDER, "CANCELLED")

    assert order.payment.status == PaymentStatus.REFUNDED
    assert order.pickup.status == PickupStatus.CANCELLED
    assert order.pickup.window_end == order.updated_at


@pytest.mark.asyncio
async def test_cancelled_order_is_terminal_everywhere(engine):
    await engine.create_order(checkout(OrderType.DELIVERY))
    await engine.apply_transition("ord-1", Machine.ORDER, "CANCELLED")

    with pytest.raises(IllegalTransition):
        await engine.apply_transition("ord-1", Machine.ORDER, "CONFIRMED")
    with pytest.raises(IllegalTransition):
        await engine.apply_transition("ord-1", Machine.DELIVERY, "ASSIGNED")
    with pytest.raises(ConsistencyViolation):
        await engine.start_payment("ord-1", PaymentMethod.STRIPE)


@pytest.mark.asyncio
async def test_fulfillment_cannot_be_cancelled_alone(engine):
    await engine.create_order(checkout(OrderType.DELIVERY))
    await engine.apply_transition("ord-1", Machine.ORDER, "CONFIRMED")

    with pytest.raises(ConsistencyViolation) as exc:
        await engine.apply_transition("ord-1", Machine.DELIVERY, "CANCELLED")
    assert exc.value.rule == "fulfillment_cancels_with_order"


@pytest.mark.asyncio
async def test_fulfillment_waits_for_confirmation(engine):
    await engine.create_order(checkout(OrderType.PICKUP))
    with pytest.raises(ConsistencyViolation):
        await engine.apply_transition("ord-1", Machine.PICKUP, "PREPARING")


@pytest.mark.asyncio
async def test_replay_does_not_bump_version_or_emit(engine):
    await engine.create_order(checkout())
    first = await engine.apply_transition("ord-1", Machine.ORDER, "CONFIRMED")
    again = await engine.apply_transition("ord-1", Machine.ORDER, "CONFIRMED", expected_version=1)

    assert first.version == again.version == 2
    events = await _events(engine)
    assert [e.to_state for e in events] == ["PENDING", "CONFIRMED"]


@pytest.mark.asyncio
async def test_stale_expected_version_conflicts(engine):
    await engine.create_order(checkout())
    await engine.apply_transition("ord-1", Machine.ORDER, "CONFIRMED", expected_version=1)

    with pytest.raises(VersionConflict) as exc:
        await engine.apply_transition("ord-1", Machine.ORDER, "PREPARING", expected_version=1)
    assert exc.value.retryable
    assert exc.value.actual_version == 2


@pytest.mark.asyncio
async def test_concurrent_requests_against_same_version(engine):
    await engine.create_order(checkout())

    results = await asyncio.gather(
        engine.apply_transition("ord-1", Machine.ORDER, "CONFIRMED", expected_version=1),
        engine.apply_transition("ord-1", Machine.ORDER, "CANCELLED", expected_version=1),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, OrderAggregate)]
    losers = [r for r in results if isinstance(r, VersionConflict)]
    assert len(winners) == 1 and len(losers) == 1
    assert (await engine.get_order("ord-1")).version == 2


@pytest.mark.asyncio
async def test_concurrent_requests_serialize_behind_guard(engine):
    await engine.create_order(checkout())

    await asyncio.gather(
        engine.apply_transition("ord-1", Machine.ORDER, "CONFIRMED"),
        engine.apply_transition("ord-1", Machine.ORDER, "PREPARING"),
    )

    order = await engine.get_order("ord-1")
    assert order.status == OrderStatus.PREPARING
    assert order.version == 3


class SlowLoadStore(MemoryAggregateStore):
    """Yields after reading so two unguarded writers interleave."""

    async def load(self, order_id):
        order = await super().load(order_id)
        await asyncio.sleep(0.01)
        return order


@pytest.mark.asyncio
async def test_optimistic_commit_catches_unguarded_race(settings):
    store = SlowLoadStore()
    # Two engines with separate local guards behave like two processes without a shared lock
    first = make_engine(settings, store=store)
    second = make_engine(settings, store=store)
    await first.create_order(checkout())

    results = await asyncio.gather(
        first.apply_transition("ord-1", Machine.ORDER, "CONFIRMED"),
        second.apply_transition("ord-1", Machine.ORDER, "CANCELLED"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, OrderAggregate) for r in results) == 1
    assert sum(isinstance(r, VersionConflict) for r in results) == 1
    assert (await store.version_of("ord-1")) == 2


@pytest.mark.asyncio
async def test_cash_on_delivery_completes_without_capture(engine):
    await engine.create_order(checkout(OrderType.DELIVERY))
    order = await engine.start_payment("ord-1", PaymentMethod.CASH_ON_DELIVERY)
    assert order.payment.transaction_id.startswith("COD-")

    await engine.apply_transition("ord-1", Machine.PAYMENT, "CASH_PENDING")
    await _advance(engine, "ord-1", Machine.ORDER, "CONFIRMED", "PREPARING", "READY_FOR_DELIVERY")
    await _advance(engine, "ord-1", Machine.DELIVERY, "ASSIGNED", "PICKED_UP")
    await _advance(engine, "ord-1", Machine.ORDER, "OUT_FOR_DELIVERY")

    with pytest.raises(ConsistencyViolation):
        await engine.apply_transition("ord-1", Machine.ORDER, "COMPLETED")

    await _advance(engine, "ord-1", Machine.DELIVERY, "ON_THE_WAY", "DELIVERED")
    order = await engine.apply_transition("ord-1", Machine.ORDER, "COMPLETED")

    assert order.status == OrderStatus.COMPLETED
    assert order.payment.status == PaymentStatus.CASH_PENDING
    assert order.delivery.pickup_time is not None
    assert order.delivery.actual_delivery_time is not None


@pytest.mark.asyncio
async def test_dine_in_flow(engine):
    await engine.create_order(checkout(OrderType.DINE_IN, phone_number=None))
    await engine.start_payment("ord-1", PaymentMethod.CREDIT_CARD)
    await _advance(engine, "ord-1", Machine.ORDER, "CONFIRMED", "PREPARING")

    with pytest.raises(ConsistencyViolation):
        await engine.apply_transition("ord-1", Machine.ORDER, "READY_FOR_DELIVERY")

    await _advance(engine, "ord-1", Machine.ORDER, "READY_FOR_PICKUP")
    await _advance(engine, "ord-1", Machine.PAYMENT, "AWAITING_SESSION", "PROCESSING", "COMPLETED")
    order = await engine.apply_transition("ord-1", Machine.ORDER, "COMPLETED")
    assert order.status == OrderStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_payment_can_be_replaced(engine):
    await engine.create_order(checkout())
    await engine.start_payment("ord-1", PaymentMethod.STRIPE, "pi_1")
    await _advance(engine, "ord-1", Machine.PAYMENT, "AWAITING_SESSION", "PROCESSING")

    with pytest.raises(IllegalTransition):
        await engine.start_payment("ord-1", PaymentMethod.STRIPE, "pi_2")

    await engine.apply_transition("ord-1", Machine.PAYMENT, "FAILED")
    order = await engine.start_payment("ord-1", PaymentMethod.ABA_PAYWAY, "aba_1")

    assert order.payment.status == PaymentStatus.PENDING
    assert order.payment.method == PaymentMethod.ABA_PAYWAY
    assert order.payment.transaction_id == "aba_1"
    events = await _events(engine)
    assert (events[-1].machine, events[-1].from_state, events[-1].to_state) == ("payment", "FAILED", "PENDING")


@pytest.mark.asyncio
async def test_start_payment_replay_is_noop(engine):
    await engine.create_order(checkout())
    first = await engine.start_payment("ord-1", PaymentMethod.STRIPE)
    again = await engine.start_payment("ord-1", PaymentMethod.STRIPE)
    assert first.version == again.version == 2


@pytest.mark.asyncio
async def test_payment_transaction_id_from_webhook(engine):
    await engine.create_order(checkout())
    await engine.start_payment("ord-1", PaymentMethod.STRIPE)
    webhook = ActorContext(actor_type="payment_webhook", attributes={"transaction_id": "pi_live_9"})
    order = await _advance(engine, "ord-1", Machine.PAYMENT, "AWAITING_WEBHOOK", "PROCESSING", "COMPLETED", actor=webhook)
    assert order.payment.transaction_id == "pi_live_9"


@pytest.mark.asyncio
async def test_items_editable_only_while_pending(engine):
    await engine.create_order(checkout())
    await engine.start_payment("ord-1", PaymentMethod.STRIPE)
    items = [LineItem(product_id="p-9", product_name="Noodle Soup", quantity=3, unit_price=Decimal("6.00"))]

    order = await engine.replace_items("ord-1", items)
    assert order.total_price == Decimal("18.00")
    assert order.payment.amount == Decimal("18.00")

    with pytest.raises(ConsistencyViolation):
        await engine.replace_items("ord-1", [])

    await engine.apply_transition("ord-1", Machine.ORDER, "CONFIRMED")
    with pytest.raises(ItemsFrozen):
        await engine.replace_items("ord-1", items)


@pytest.mark.asyncio
async def test_items_locked_once_payment_in_flight(engine):
    await engine.create_order(checkout(OrderType.PICKUP))
    await engine.start_payment("ord-1", PaymentMethod.STRIPE)
    await _advance(engine, "ord-1", Machine.PAYMENT, "AWAITING_SESSION", "PROCESSING", "COMPLETED")
    items = [LineItem(product_id="p-9", product_name="Family Platter", quantity=10, unit_price=Decimal("50.00"))]

    with pytest.raises(ConsistencyViolation) as exc:
        await engine.replace_items("ord-1", items)
    assert exc.value.rule == "items_locked_by_payment"

    order = await engine.get_order("ord-1")
    assert order.total_price == order.payment.amount == Decimal("28.00")
    assert order.version == 5


@pytest.mark.asyncio
async def test_items_editable_again_after_payment_fails(engine):
    await engine.create_order(checkout())
    await engine.start_payment("ord-1", PaymentMethod.STRIPE)
    await _advance(engine, "ord-1", Machine.PAYMENT, "AWAITING_SESSION", "PROCESSING", "FAILED")
    items = [LineItem(product_id="p-9", product_name="Noodle Soup", quantity=1, unit_price=Decimal("6.00"))]

    await engine.replace_items("ord-1", items)
    order = await engine.start_payment("ord-1", PaymentMethod.STRIPE)

    assert order.payment.status == PaymentStatus.PENDING
    assert order.payment.amount == order.total_price == Decimal("6.00")


@pytest.mark.asyncio
async def test_cancel_attributes_stay_off_cascaded_records(engine):
    await engine.create_order(checkout(OrderType.DELIVERY))
    await engine.start_payment("ord-1", PaymentMethod.STRIPE, transaction_id="pi_1")
    support = ActorContext(
        actor_type="support",
        attributes={"notes": "customer called", "location": "HQ", "transaction_id": "refund-77"},
    )

    order = await engine.apply_transition("ord-1", Machine.ORDER, "CANCELLED", actor=support)

    assert order.payment.status == PaymentStatus.CANCELLED
    assert order.payment.transaction_id == "pi_1"
    assert order.delivery.status == DeliveryStatus.CANCELLED
    assert order.delivery.delivery_notes is None
    assert order.delivery.current_location is None


@pytest.mark.asyncio
async def test_pickup_ready_sets_window(engine, settings):
    await engine.create_order(checkout(OrderType.PICKUP))
    await engine.apply_transition("ord-1", Machine.ORDER, "CONFIRMED")
    await _advance(engine, "ord-1", Machine.PICKUP, "PREPARING")
    order = await engine.apply_transition("ord-1", Machine.PICKUP, "READY_FOR_PICKUP")

    pickup = order.pickup
    assert pickup.ready_at == order.updated_at
    assert (pickup.window_end - pickup.ready_at).total_seconds() == settings.pickup_window_minutes * 60


@pytest.mark.asyncio
async def test_delivery_location_updates(engine):
    await engine.create_order(checkout(OrderType.DELIVERY))
    order = await engine.update_delivery_location("ord-1", location="Street 51", latitude=11.55, longitude=104.92)

    assert order.version == 2
    assert order.delivery.current_location == "Street 51"
    assert order.delivery.latitude == 11.55
    assert len(await _events(engine)) == 1


@pytest.mark.asyncio
async def test_location_rejected_for_pickup_and_closed_delivery(engine):
    await engine.create_order(checkout(OrderType.PICKUP, order_id="p"))
    with pytest.raises(ConsistencyViolation):
        await engine.update_delivery_location("p", location="x")

    await engine.create_order(checkout(OrderType.DELIVERY, order_id="d"))
    await engine.apply_transition("d", Machine.ORDER, "CANCELLED")
    with pytest.raises(ConsistencyViolation):
        await engine.update_delivery_location("d", latitude=1.0)


class BrokenSink(MemoryEventSink):
    async def publish(self, event):
        raise ConnectionError("event bus down")


@pytest.mark.asyncio
async def test_sink_failure_never_fails_committed_transition(settings):
    engine = make_engine(settings, sink=BrokenSink())
    await engine.create_order(checkout())

    order = await engine.apply_transition("ord-1", Machine.ORDER, "CONFIRMED")
    await engine.notifier.drain()

    assert order.status == OrderStatus.CONFIRMED
    assert (await engine.get_order("ord-1")).version == 2


@pytest.mark.asyncio
async def test_readers_never_see_proposed_state(engine):
    await engine.create_order(checkout(OrderType.PICKUP))
    await engine.apply_transition("ord-1", Machine.ORDER, "CONFIRMED")
    await _advance(engine, "ord-1", Machine.PICKUP, "PREPARING")
    await _advance(engine, "ord-1", Machine.ORDER, "PREPARING", "READY_FOR_PICKUP")

    with pytest.raises(ConsistencyViolation):
        await engine.apply_transition("ord-1", Machine.ORDER, "COMPLETED")

    stored = await engine.get_order("ord-1")
    assert stored.status == OrderStatus.READY_FOR_PICKUP
    stored.status = OrderStatus.COMPLETED
    assert (await engine.get_order("ord-1")).status == OrderStatus.READY_FOR_PICKUP
