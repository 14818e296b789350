"""
Cross-entity consistency rules. Each rule is a pure predicate over a proposed
post-transition aggregate and returns a RuleResult with a readable reason.
"""
from dataclasses import dataclass
from typing import Callable

from coordinator.aggregate import OrderAggregate
from coordinator.status import (
    DeliveryStatus,
    Machine,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentStatus,
    is_success,
    is_terminal,
)

DISPATCHED_DELIVERY_STATES = {DeliveryStatus.ASSIGNED, DeliveryStatus.PICKED_UP, DeliveryStatus.ON_THE_WAY}
# Once out, the delivery may finish before the order itself is closed
OUT_FOR_DELIVERY_STATES = DISPATCHED_DELIVERY_STATES | {DeliveryStatus.DELIVERED}
INITIAL_FULFILLMENT_STATES = {"PENDING", "AWAITING_CONFIRMATION"}


@dataclass(frozen=True)
class RuleResult:
    passed: bool
    reason: str = ""
    rule: str = ""


PASS = RuleResult(True)


def _fail(rule: str, reason: str) -> RuleResult:
    return RuleResult(False, reason, rule)


def _fulfillment_succeeded(order: OrderAggregate) -> bool:
    machine = order.fulfillment_machine
    if machine is None:
        return True  # dine-in has nothing to hand over
    state = order.state_of(machine)
    return state is not None and is_success(machine, state)


def completion_requires_settled_payment(order: OrderAggregate) -> RuleResult:
    if order.status != OrderStatus.COMPLETED:
        return PASS
    payment = order.payment
    if payment is None:
        return _fail("completion_requires_settled_payment", "order cannot complete without a payment record")
    if payment.status == PaymentStatus.COMPLETED:
        return PASS
    if (
        payment.method == PaymentMethod.CASH_ON_DELIVERY
        and not is_terminal(Machine.PAYMENT, payment.status)
        and _fulfillment_succeeded(order)
    ):
        return PASS
    return _fail(
        "completion_requires_settled_payment",
        f"order cannot complete while payment is {payment.status.value}",
    )


def completion_requires_fulfillment(order: OrderAggregate) -> RuleResult:
    if order.status != OrderStatus.COMPLETED or _fulfillment_succeeded(order):
        return PASS
    machine = order.fulfillment_machine
    return _fail(
        "completion_requires_fulfillment",
        f"order cannot complete while {machine.value} is {order.state_of(machine)}",
    )


def out_for_delivery_requires_dispatch(order: OrderAggregate) -> RuleResult:
    if order.status != OrderStatus.OUT_FOR_DELIVERY:
        return PASS
    if order.order_type != OrderType.DELIVERY or order.delivery is None:
        return _fail("out_for_delivery_requires_dispatch", "only delivery orders can go out for delivery")
    if order.delivery.status not in OUT_FOR_DELIVERY_STATES:
        return _fail(
            "out_for_delivery_requires_dispatch",
            f"delivery must be assigned before the order goes out (delivery is {order.delivery.status.value})",
        )
    return PASS


def ready_state_matches_order_type(order: OrderAggregate) -> RuleResult:
    if order.status == OrderStatus.READY_FOR_DELIVERY and order.order_type != OrderType.DELIVERY:
        return _fail("ready_state_matches_order_type", f"{order.order_type.value} order cannot be ready for delivery")
    if order.status == OrderStatus.READY_FOR_PICKUP and order.order_type == OrderType.DELIVERY:
        return _fail("ready_state_matches_order_type", "DELIVERY order cannot be ready for pickup")
    return PASS


def fulfillment_matches_order_type(order: OrderAggregate) -> RuleResult:
    expected = order.fulfillment_machine
    has_delivery = order.delivery is not None
    has_pickup = order.pickup is not None
    if expected == Machine.DELIVERY and has_delivery and not has_pickup:
        return PASS
    if expected == Machine.PICKUP and has_pickup and not has_delivery:
        return PASS
    if expected is None and not has_delivery and not has_pickup:
        return PASS
    return _fail(
        "fulfillment_matches_order_type",
        f"{order.order_type.value} order has delivery={has_delivery} pickup={has_pickup}",
    )


def cancellation_is_total(order: OrderAggregate) -> RuleResult:
    if order.status != OrderStatus.CANCELLED:
        return PASS
    for machine in (Machine.PAYMENT, order.fulfillment_machine):
        if machine is None:
            continue
        state = order.state_of(machine)
        if state is not None and not is_terminal(machine, state):
            return _fail("cancellation_is_total", f"cancelled order still has {machine.value} {state}")
    return PASS


def fulfillment_cancels_with_order(order: OrderAggregate) -> RuleResult:
    machine = order.fulfillment_machine
    if machine is None or order.status == OrderStatus.CANCELLED:
        return PASS
    if order.state_of(machine) == "CANCELLED":
        return _fail(
            "fulfillment_cancels_with_order",
            f"{machine.value} can only be cancelled by cancelling the order",
        )
    return PASS


def fulfillment_waits_for_confirmation(order: OrderAggregate) -> RuleResult:
    machine = order.fulfillment_machine
    if machine is None or order.status != OrderStatus.PENDING:
        return PASS
    state = order.state_of(machine)
    if state not in INITIAL_FULFILLMENT_STATES:
        return _fail(
            "fulfillment_waits_for_confirmation",
            f"{machine.value} cannot move to {state} before the order is confirmed",
        )
    return PASS


RULES: list[Callable[[OrderAggregate], RuleResult]] = [
    fulfillment_matches_order_type,
    completion_requires_settled_payment,
    completion_requires_fulfillment,
    out_for_delivery_requires_dispatch,
    ready_state_matches_order_type,
    cancellation_is_total,
    fulfillment_cancels_with_order,
    fulfillment_waits_for_confirmation,
]


def evaluate_all(order: OrderAggregate) -> RuleResult:
    """First failing rule, or PASS."""
    for rule in RULES:
        result = rule(order)
        if not result.passed:
            return result
    return PASS
