"""
Order aggregate: one order plus its owned payment and fulfillment records.
Stored as a single JSON snapshot keyed by order_id with a monotonic version.
"""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from pydantic import BaseModel, Field

from coordinator.config import Settings
from coordinator.errors import InvalidCheckout
from coordinator.status import (
    DeliveryStatus,
    Machine,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentStatus,
    PickupStatus,
)

# Order states in which the total may still be recomputed
MUTABLE_TOTAL_STATES = {OrderStatus.PENDING, OrderStatus.CONFIRMED}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LineItem(BaseModel):
    product_id: str
    product_name: str
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., ge=0)
    special_instructions: str | None = None
    # Catalogue snapshot taken at checkout
    description: str | None = None
    image_url: str | None = None
    category_id: str | None = None
    category_name: str | None = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class CustomerInfo(BaseModel):
    id: str
    name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    created_at: datetime | None = None


class PaymentRecord(BaseModel):
    status: PaymentStatus = PaymentStatus.PENDING
    method: PaymentMethod
    amount: Decimal
    transaction_id: str | None = None
    paid_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class DeliveryRecord(BaseModel):
    status: DeliveryStatus = DeliveryStatus.PENDING
    driver_name: str | None = None
    driver_phone: str | None = None
    vehicle_info: str | None = None
    current_location: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    pickup_time: datetime | None = None
    estimated_arrival_time: datetime | None = None
    actual_delivery_time: datetime | None = None
    delivery_notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PickupRecord(BaseModel):
    status: PickupStatus = PickupStatus.AWAITING_CONFIRMATION
    pickup_code: str
    ready_at: datetime | None = None
    window_start: datetime | None = None
    window_end: datetime | None = None
    picked_up_at: datetime | None = None
    instructions: str | None = None
    contact_name: str | None = None
    contact_phone: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class OrderAggregate(BaseModel):
    order_id: str
    order_type: OrderType
    status: OrderStatus = OrderStatus.PENDING
    customer: CustomerInfo
    items: list[LineItem] = Field(default_factory=list)
    total_price: Decimal = Decimal("0")
    delivery_address: str | None = None
    phone_number: str | None = None
    special_instructions: str | None = None
    estimated_delivery_time: datetime | None = None
    payment: PaymentRecord | None = None
    delivery: DeliveryRecord | None = None
    pickup: PickupRecord | None = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def fulfillment_machine(self) -> Machine | None:
        if self.order_type == OrderType.DELIVERY:
            return Machine.DELIVERY
        if self.order_type == OrderType.PICKUP:
            return Machine.PICKUP
        return None

    @property
    def fulfillment(self) -> DeliveryRecord | PickupRecord | None:
        machine = self.fulfillment_machine
        if machine == Machine.DELIVERY:
            return self.delivery
        if machine == Machine.PICKUP:
            return self.pickup
        return None

    def record_for(self, machine: Machine):
        """The object holding `status` for a machine, or None if that record is absent."""
        machine = Machine(machine)
        if machine == Machine.ORDER:
            return self
        if machine == Machine.PAYMENT:
            return self.payment
        if machine == Machine.DELIVERY:
            return self.delivery
        return self.pickup

    def state_of(self, machine: Machine) -> str | None:
        record = self.record_for(machine)
        return record.status.value if record is not None else None

    def computed_total(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0"))

    def recompute_total(self) -> None:
        if self.status in MUTABLE_TOTAL_STATES:
            self.total_price = self.computed_total()

    def snapshot(self) -> dict:
        return self.model_dump(mode="json")

    @classmethod
    def from_snapshot(cls, data: dict) -> "OrderAggregate":
        return cls.model_validate(data)


class CheckoutRequest(BaseModel):
    order_id: str | None = None
    order_type: OrderType = OrderType.DELIVERY
    customer: CustomerInfo
    items: list[LineItem]
    delivery_address: str | None = None
    phone_number: str | None = None
    special_instructions: str | None = None


def generate_pickup_code() -> str:
    return "PU-" + uuid.uuid4().hex[:8].upper()


def pickup_window(ready_at: datetime, settings: Settings) -> tuple[datetime, datetime]:
    return (
        ready_at - timedelta(minutes=settings.pickup_window_padding_minutes),
        ready_at + timedelta(minutes=settings.pickup_window_minutes),
    )


def validate_checkout(request: CheckoutRequest) -> None:
    if not request.items:
        raise InvalidCheckout("order must contain at least one item", order_id=request.order_id)
    if request.order_type == OrderType.DELIVERY:
        if not request.delivery_address or not request.delivery_address.strip():
            raise InvalidCheckout("delivery address is required for delivery orders", order_id=request.order_id)
        if not request.phone_number or not request.phone_number.strip():
            raise InvalidCheckout("phone number is required for delivery orders", order_id=request.order_id)
    elif request.order_type == OrderType.PICKUP:
        if not request.phone_number or not request.phone_number.strip():
            raise InvalidCheckout("phone number is required for pickup orders", order_id=request.order_id)


def open_order(request: CheckoutRequest, settings: Settings, now: datetime | None = None) -> OrderAggregate:
    """Build the aggregate created at checkout: PENDING, no payment, fulfillment record by order type."""
    validate_checkout(request)
    now = now or utcnow()
    estimated = now + timedelta(minutes=settings.preparation_minutes)
    order = OrderAggregate(
        order_id=request.order_id or uuid.uuid4().hex,
        order_type=request.order_type,
        customer=request.customer,
        items=list(request.items),
        delivery_address=request.delivery_address if request.order_type == OrderType.DELIVERY else None,
        phone_number=request.phone_number,
        special_instructions=request.special_instructions,
        estimated_delivery_time=estimated,
        version=1,
        created_at=now,
        updated_at=now,
    )
    order.recompute_total()

    if request.order_type == OrderType.DELIVERY:
        order.delivery = DeliveryRecord(
            estimated_arrival_time=estimated,
            created_at=now,
            updated_at=now,
        )
    elif request.order_type == OrderType.PICKUP:
        window_start, window_end = pickup_window(estimated, settings)
        order.pickup = PickupRecord(
            pickup_code=generate_pickup_code(),
            ready_at=estimated,
            window_start=window_start,
            window_end=window_end,
            instructions=request.special_instructions,
            contact_name=request.customer.name,
            contact_phone=request.phone_number,
            created_at=now,
            updated_at=now,
        )
    return order


def new_payment(order: OrderAggregate, method: PaymentMethod, transaction_id: str | None, now: datetime) -> PaymentRecord:
    if transaction_id is None and method == PaymentMethod.CASH_ON_DELIVERY:
        transaction_id = f"COD-{uuid.uuid4()}"
    return PaymentRecord(
        method=method,
        amount=order.total_price,
        transaction_id=transaction_id,
        created_at=now,
        updated_at=now,
    )
