"""
Transition engine: the only mutation path for an order aggregate.

Every mutation runs inside the per-order guard and follows the same steps:
load the committed snapshot, validate against the state graph, build the
proposed state (including cascades) on a private copy, check the consistency
rules, commit with the optimistic version check, then hand lifecycle events to
the notifier.
"""
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from coordinator.aggregate import (
    CheckoutRequest,
    LineItem,
    OrderAggregate,
    new_payment,
    open_order,
    pickup_window,
    utcnow,
)
from coordinator.config import Settings
from coordinator.errors import (
    ConsistencyViolation,
    IllegalTransition,
    ItemsFrozen,
    TransitionError,
    VersionConflict,
)
from coordinator.guard import ConcurrencyGuard
from coordinator.metrics import (
    transitions_applied_total,
    transitions_rejected_total,
    transitions_replayed_total,
)
from coordinator.notifier import EventNotifier, LifecycleEvent
from coordinator.rules import evaluate_all
from coordinator.status import (
    DeliveryStatus,
    Machine,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PickupStatus,
    is_legal,
    is_terminal,
    parse_state,
)
from coordinator.store import AggregateStore

logger = logging.getLogger(__name__)

# A failed or cancelled attempt may be replaced by a fresh payment record
REPLACEABLE_PAYMENT_STATES = {PaymentStatus.FAILED, PaymentStatus.CANCELLED}
# Once a payment is in flight its amount is fixed, and so are the items
ITEM_EDITABLE_PAYMENT_STATES = REPLACEABLE_PAYMENT_STATES | {PaymentStatus.PENDING}

# (machine, from_state, to_state)
Change = tuple[Machine, str | None, str]


class ActorContext(BaseModel):
    """Who asked for the transition, plus optional details the transition records."""
    actor_type: str = "system"
    actor_id: str | None = None
    reason: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


SYSTEM_ACTOR = ActorContext()


class TransitionEngine:
    def __init__(
        self,
        store: AggregateStore,
        guard: ConcurrencyGuard,
        notifier: EventNotifier,
        settings: Settings,
    ):
        self.store = store
        self.guard = guard
        self.notifier = notifier
        self.settings = settings

    async def get_order(self, order_id: str) -> OrderAggregate:
        """Committed snapshot; never a proposed state."""
        return await self.store.load(order_id)

    async def create_order(self, request: CheckoutRequest, actor: ActorContext = SYSTEM_ACTOR) -> OrderAggregate:
        order = open_order(request, self.settings)

        async def _insert() -> OrderAggregate:
            await self.store.insert(order)
            logger.info("Created %s order_id=%s total=%s", order.order_type.value, order.order_id, order.total_price)
            self.notifier.notify([self._event(order, (Machine.ORDER, None, order.status.value), actor)])
            return order

        return await self._guarded(order.order_id, Machine.ORDER, _insert)

    async def apply_transition(
        self,
        order_id: str,
        machine: Machine | str,
        target_state: str,
        actor: ActorContext = SYSTEM_ACTOR,
        expected_version: int | None = None,
    ) -> OrderAggregate:
        """
        Move one machine of the order to target_state. Returns the committed
        aggregate, or raises a TransitionError subclass.
        """
        machine = Machine(machine)

        async def _transition() -> OrderAggregate:
            try:
                target = parse_state(machine, target_state)
            except ValueError:
                raise IllegalTransition(order_id, machine.value, None, str(target_state))

            current = await self.store.load(order_id)
            from_state = current.state_of(machine)
            if from_state is None:
                raise IllegalTransition(order_id, machine.value, None, target.value)
            if from_state == target.value:
                # Replay of an already-committed transition: no commit, no event
                transitions_replayed_total.labels(machine=machine.value).inc()
                logger.info("Replay of %s->%s for order_id=%s ignored", machine.value, target.value, order_id)
                return current
            if expected_version is not None and expected_version != current.version:
                raise VersionConflict(order_id, expected_version, current.version)
            if not is_legal(machine, from_state, target):
                raise IllegalTransition(order_id, machine.value, from_state, target.value)

            now = utcnow()
            proposed = current.model_copy(deep=True)
            changes: list[Change] = []
            self._set_state(proposed, machine, target, actor, now, changes)
            if machine == Machine.ORDER and target == OrderStatus.CANCELLED:
                self._cascade_cancel(proposed, actor, now, changes)
            proposed.recompute_total()
            return await self._commit(current, proposed, now, changes, actor)

        return await self._guarded(order_id, machine, _transition)

    async def start_payment(
        self,
        order_id: str,
        method: PaymentMethod | str,
        transaction_id: str | None = None,
        actor: ActorContext = SYSTEM_ACTOR,
    ) -> OrderAggregate:
        """Attach a PENDING payment record for the current total."""
        method = PaymentMethod(method)

        async def _start() -> OrderAggregate:
            current = await self.store.load(order_id)
            if is_terminal(Machine.ORDER, current.status):
                raise ConsistencyViolation(
                    order_id,
                    f"cannot start a payment on a {current.status.value} order",
                    rule="payment_requires_open_order",
                )
            existing = current.payment
            if existing is not None and existing.status not in REPLACEABLE_PAYMENT_STATES:
                if existing.status == PaymentStatus.PENDING and existing.method == method:
                    transitions_replayed_total.labels(machine=Machine.PAYMENT.value).inc()
                    return current
                raise IllegalTransition(order_id, Machine.PAYMENT.value, existing.status.value, PaymentStatus.PENDING.value)

            now = utcnow()
            proposed = current.model_copy(deep=True)
            proposed.payment = new_payment(proposed, method, transaction_id, now)
            change = (Machine.PAYMENT, existing.status.value if existing else None, PaymentStatus.PENDING.value)
            return await self._commit(current, proposed, now, [change], actor)

        return await self._guarded(order_id, Machine.PAYMENT, _start)

    async def replace_items(
        self,
        order_id: str,
        items: list[LineItem],
        actor: ActorContext = SYSTEM_ACTOR,
    ) -> OrderAggregate:
        async def _replace() -> OrderAggregate:
            current = await self.store.load(order_id)
            if current.status != OrderStatus.PENDING:
                raise ItemsFrozen(order_id, current.status.value)
            if not items:
                raise ConsistencyViolation(order_id, "order must keep at least one item", rule="items_not_empty")
            payment = current.payment
            if payment is not None and payment.status not in ITEM_EDITABLE_PAYMENT_STATES:
                raise ConsistencyViolation(
                    order_id,
                    f"payment is {payment.status.value} for {payment.amount}, items are locked",
                    rule="items_locked_by_payment",
                )
            now = utcnow()
            proposed = current.model_copy(deep=True)
            proposed.items = list(items)
            proposed.recompute_total()
            if proposed.payment is not None and proposed.payment.status == PaymentStatus.PENDING:
                proposed.payment.amount = proposed.total_price
                proposed.payment.updated_at = now
            return await self._commit(current, proposed, now, [], actor)

        return await self._guarded(order_id, Machine.ORDER, _replace)

    async def update_delivery_location(
        self,
        order_id: str,
        location: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        actor: ActorContext = SYSTEM_ACTOR,
    ) -> OrderAggregate:
        """Tracking update; not a state change, so no lifecycle event."""

        async def _track() -> OrderAggregate:
            current = await self.store.load(order_id)
            if current.delivery is None:
                raise ConsistencyViolation(
                    order_id,
                    f"{current.order_type.value} order has no delivery to track",
                    rule="tracking_requires_delivery",
                )
            if is_terminal(Machine.DELIVERY, current.delivery.status):
                raise ConsistencyViolation(
                    order_id,
                    f"delivery is {current.delivery.status.value}, tracking is closed",
                    rule="tracking_requires_open_delivery",
                )
            now = utcnow()
            proposed = current.model_copy(deep=True)
            _apply_location(proposed.delivery, {"location": location, "latitude": latitude, "longitude": longitude})
            proposed.delivery.updated_at = now
            return await self._commit(current, proposed, now, [], actor)

        return await self._guarded(order_id, Machine.DELIVERY, _track)

    async def _guarded(
        self,
        order_id: str,
        machine: Machine,
        fn: Callable[[], Awaitable[OrderAggregate]],
    ) -> OrderAggregate:
        try:
            async with self.guard.hold(order_id):
                return await fn()
        except TransitionError as e:
            transitions_rejected_total.labels(machine=machine.value, code=e.code).inc()
            logger.info("Rejected %s change for order_id=%s: %s (%s)", machine.value, order_id, e.message, e.code)
            raise

    async def _commit(
        self,
        current: OrderAggregate,
        proposed: OrderAggregate,
        now: datetime,
        changes: list[Change],
        actor: ActorContext,
    ) -> OrderAggregate:
        result = evaluate_all(proposed)
        if not result.passed:
            raise ConsistencyViolation(current.order_id, result.reason, rule=result.rule)
        proposed.version = current.version + 1
        proposed.updated_at = now
        await self.store.commit(current.order_id, current.version, proposed)

        for machine, from_state, to_state in changes:
            transitions_applied_total.labels(machine=machine.value, to_state=to_state).inc()
            logger.info(
                "order_id=%s %s %s->%s (version %d)",
                current.order_id,
                machine.value,
                from_state,
                to_state,
                proposed.version,
            )
        self.notifier.notify([self._event(proposed, change, actor) for change in changes])
        return proposed

    def _event(self, order: OrderAggregate, change: Change, actor: ActorContext) -> LifecycleEvent:
        machine, from_state, to_state = change
        return LifecycleEvent(
            order_id=order.order_id,
            machine=machine.value,
            from_state=from_state,
            to_state=to_state,
            version=order.version,
            actor_type=actor.actor_type,
            actor_id=actor.actor_id,
            timestamp=order.updated_at,
        )

    def _cascade_cancel(self, order: OrderAggregate, actor: ActorContext, now: datetime, changes: list[Change]) -> None:
        # Attributes sent with the order cancel describe the order, not its records
        actor = actor.model_copy(update={"attributes": {}})
        payment = order.payment
        if payment is not None:
            if payment.status == PaymentStatus.COMPLETED:
                # Captured money goes back rather than being voided
                self._set_state(order, Machine.PAYMENT, PaymentStatus.REFUNDED, actor, now, changes)
            elif not is_terminal(Machine.PAYMENT, payment.status):
                self._set_state(order, Machine.PAYMENT, PaymentStatus.CANCELLED, actor, now, changes)

        machine = order.fulfillment_machine
        if machine is not None and not is_terminal(machine, order.state_of(machine)):
            self._set_state(order, machine, parse_state(machine, "CANCELLED"), actor, now, changes)

    def _set_state(
        self,
        order: OrderAggregate,
        machine: Machine,
        state,
        actor: ActorContext,
        now: datetime,
        changes: list[Change],
    ) -> None:
        record = order.record_for(machine)
        from_state = record.status.value
        record.status = state
        if machine == Machine.PAYMENT:
            _stamp_payment(record, state, actor, now)
        elif machine == Machine.DELIVERY:
            _stamp_delivery(record, state, actor, now)
        elif machine == Machine.PICKUP:
            _stamp_pickup(order, record, state, now, self.settings)
        if record is not order:
            record.updated_at = now
        changes.append((machine, from_state, state.value))


def _stamp_payment(payment, state: PaymentStatus, actor: ActorContext, now: datetime) -> None:
    transaction_id = actor.attributes.get("transaction_id")
    if transaction_id:
        payment.transaction_id = transaction_id
    if state == PaymentStatus.COMPLETED and payment.paid_at is None:
        payment.paid_at = now


def _apply_location(delivery, attrs: dict) -> None:
    if attrs.get("location") is not None:
        delivery.current_location = attrs["location"]
    if attrs.get("latitude") is not None:
        delivery.latitude = float(attrs["latitude"])
    if attrs.get("longitude") is not None:
        delivery.longitude = float(attrs["longitude"])


def _stamp_delivery(delivery, state: DeliveryStatus, actor: ActorContext, now: datetime) -> None:
    attrs = actor.attributes
    if state == DeliveryStatus.ASSIGNED:
        delivery.driver_name = attrs.get("driver_name", delivery.driver_name)
        delivery.driver_phone = attrs.get("driver_phone", delivery.driver_phone)
        delivery.vehicle_info = attrs.get("vehicle_info", delivery.vehicle_info)
    if state == DeliveryStatus.PICKED_UP and delivery.pickup_time is None:
        delivery.pickup_time = now
    if state == DeliveryStatus.DELIVERED and delivery.actual_delivery_time is None:
        delivery.actual_delivery_time = now
    if attrs.get("notes"):
        delivery.delivery_notes = attrs["notes"]
    _apply_location(delivery, attrs)


def _stamp_pickup(order: OrderAggregate, pickup, state: PickupStatus, now: datetime, settings: Settings) -> None:
    if state == PickupStatus.PREPARING and order.estimated_delivery_time is not None:
        pickup.ready_at = order.estimated_delivery_time
        pickup.window_start, pickup.window_end = pickup_window(pickup.ready_at, settings)
    elif state == PickupStatus.READY_FOR_PICKUP:
        pickup.ready_at = now
        pickup.window_start, pickup.window_end = pickup_window(now, settings)
    elif state == PickupStatus.COMPLETED:
        pickup.picked_up_at = now
    elif state == PickupStatus.CANCELLED:
        pickup.window_end = now
