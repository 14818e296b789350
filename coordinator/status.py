"""
Status vocabulary: the four lifecycle machines and their legal edges.
Pure lookups, no hidden state.
"""
from enum import Enum


class Machine(str, Enum):
    ORDER = "order"
    PAYMENT = "payment"
    DELIVERY = "delivery"
    PICKUP = "pickup"


class OrderType(str, Enum):
    DELIVERY = "DELIVERY"
    PICKUP = "PICKUP"
    DINE_IN = "DINE_IN"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    AWAITING_SESSION = "AWAITING_SESSION"
    AWAITING_WEBHOOK = "AWAITING_WEBHOOK"
    CASH_PENDING = "CASH_PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    PAYPAL = "PAYPAL"
    STRIPE = "STRIPE"
    ABA_PAYWAY = "ABA_PAYWAY"
    CASH_ON_DELIVERY = "CASH_ON_DELIVERY"
    BANK_TRANSFER = "BANK_TRANSFER"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    PICKED_UP = "PICKED_UP"
    ON_THE_WAY = "ON_THE_WAY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PickupStatus(str, Enum):
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    PREPARING = "PREPARING"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


STATE_ENUMS: dict[Machine, type[Enum]] = {
    Machine.ORDER: OrderStatus,
    Machine.PAYMENT: PaymentStatus,
    Machine.DELIVERY: DeliveryStatus,
    Machine.PICKUP: PickupStatus,
}

# Forward edges only; CANCELLED edges are added below for every non-terminal state
_FORWARD: dict[Machine, dict[str, list[str]]] = {
    Machine.ORDER: {
        "PENDING": ["CONFIRMED"],
        "CONFIRMED": ["PREPARING"],
        "PREPARING": ["READY_FOR_PICKUP", "READY_FOR_DELIVERY"],
        "READY_FOR_PICKUP": ["COMPLETED"],
        "READY_FOR_DELIVERY": ["OUT_FOR_DELIVERY"],
        "OUT_FOR_DELIVERY": ["COMPLETED"],
        "COMPLETED": [],  # terminal
        "CANCELLED": [],  # terminal
    },
    Machine.PAYMENT: {
        "PENDING": ["AWAITING_SESSION", "AWAITING_WEBHOOK", "CASH_PENDING"],
        "AWAITING_SESSION": ["PROCESSING"],
        "AWAITING_WEBHOOK": ["PROCESSING"],
        "CASH_PENDING": ["PROCESSING"],
        "PROCESSING": ["COMPLETED", "FAILED"],
        "COMPLETED": ["REFUNDED"],
        "FAILED": [],  # terminal
        "CANCELLED": [],  # terminal
        "REFUNDED": [],  # terminal
    },
    Machine.DELIVERY: {
        "PENDING": ["ASSIGNED"],
        "ASSIGNED": ["PICKED_UP"],
        "PICKED_UP": ["ON_THE_WAY"],
        "ON_THE_WAY": ["DELIVERED"],
        "DELIVERED": [],  # terminal
        "CANCELLED": [],  # terminal
    },
    Machine.PICKUP: {
        "AWAITING_CONFIRMATION": ["PREPARING"],
        "PREPARING": ["READY_FOR_PICKUP"],
        "READY_FOR_PICKUP": ["COMPLETED"],
        "COMPLETED": [],  # terminal
        "CANCELLED": [],  # terminal
    },
}

# Payment COMPLETED only leads to REFUNDED, so it counts as settled rather than open
_SETTLED = {Machine.PAYMENT: {"COMPLETED"}}

SUCCESS_STATES: dict[Machine, frozenset[str]] = {
    Machine.ORDER: frozenset({"COMPLETED"}),
    Machine.PAYMENT: frozenset({"COMPLETED"}),
    Machine.DELIVERY: frozenset({"DELIVERED"}),
    Machine.PICKUP: frozenset({"COMPLETED"}),
}


def _build_graph() -> dict[Machine, dict[str, frozenset[str]]]:
    graph: dict[Machine, dict[str, frozenset[str]]] = {}
    for machine, edges in _FORWARD.items():
        settled = _SETTLED.get(machine, set())
        graph[machine] = {}
        for state, targets in edges.items():
            allowed = set(targets)
            if targets and state not in settled:
                allowed.add("CANCELLED")
            graph[machine][state] = frozenset(allowed)
    return graph


VALID_TRANSITIONS = _build_graph()


def _name(state) -> str:
    return state.value if isinstance(state, Enum) else str(state)


def parse_state(machine: Machine, state: str) -> Enum:
    """Turn a raw state name into the machine's enum member. Raises ValueError for unknown names."""
    return STATE_ENUMS[Machine(machine)](_name(state))


def is_legal(machine: Machine, current_state, target_state) -> bool:
    """True if (current_state -> target_state) is an edge of the machine's graph."""
    allowed = VALID_TRANSITIONS[Machine(machine)].get(_name(current_state), frozenset())
    return _name(target_state) in allowed


def allowed_targets(machine: Machine, current_state) -> frozenset[str]:
    return VALID_TRANSITIONS[Machine(machine)].get(_name(current_state), frozenset())


def is_terminal(machine: Machine, state) -> bool:
    """Terminal means no outgoing edge except a refund of a settled payment."""
    name = _name(state)
    if name in _SETTLED.get(Machine(machine), set()):
        return True
    return not VALID_TRANSITIONS[Machine(machine)].get(name)


def is_success(machine: Machine, state) -> bool:
    return _name(state) in SUCCESS_STATES[Machine(machine)]
