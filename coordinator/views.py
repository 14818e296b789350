"""
Read-only projections of the aggregate into the public response shapes.
Field selection and enum mapping only.
"""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from coordinator.aggregate import LineItem, OrderAggregate
from coordinator.status import (
    DeliveryStatus,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentStatus,
    PickupStatus,
)


class ResponseModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CustomerResponse(ResponseModel):
    id: str
    name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    created_at: datetime | None = None


class ProductResponse(ResponseModel):
    id: str
    name: str
    description: str | None = None
    price: Decimal
    image_url: str | None = None
    is_available: bool | None = None
    category_id: str | None = None
    category_name: str | None = None


class OrderItemResponse(ResponseModel):
    id: int
    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    special_instructions: str | None = None


class PaymentResponse(ResponseModel):
    order_id: str
    status: PaymentStatus
    method: PaymentMethod
    amount: Decimal
    transaction_id: str | None = None
    paid_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class DeliveryResponse(ResponseModel):
    order_id: str
    driver_name: str | None = None
    driver_phone: str | None = None
    vehicle_info: str | None = None
    status: DeliveryStatus
    pickup_time: datetime | None = None
    estimated_arrival_time: datetime | None = None
    actual_delivery_time: datetime | None = None
    delivery_notes: str | None = None
    current_location: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    created_at: datetime
    updated_at: datetime


class PickupResponse(ResponseModel):
    order_id: str
    pickup_code: str
    status: PickupStatus
    ready_at: datetime | None = None
    window_start: datetime | None = None
    window_end: datetime | None = None
    picked_up_at: datetime | None = None
    instructions: str | None = None
    contact_name: str | None = None
    contact_phone: str | None = None
    created_at: datetime
    updated_at: datetime


class OrderResponse(ResponseModel):
    id: str
    customer_id: str
    customer_name: str
    status: OrderStatus
    total_price: Decimal
    order_type: OrderType
    delivery_address: str | None = None
    phone_number: str | None = None
    special_instructions: str | None = None
    created_at: datetime
    updated_at: datetime
    estimated_delivery_time: datetime | None = None
    order_items: list[OrderItemResponse]
    version: int

    payment_status: PaymentStatus | None = None
    payment_method: PaymentMethod | None = None
    payment_paid_at: datetime | None = None
    payment_transaction_id: str | None = None

    delivery_status: DeliveryStatus | None = None
    delivery_driver_name: str | None = None
    delivery_driver_phone: str | None = None
    delivery_estimated_arrival_time: datetime | None = None
    delivery_actual_delivery_time: datetime | None = None
    delivery_latitude: float | None = None
    delivery_longitude: float | None = None

    pickup_status: PickupStatus | None = None
    pickup_code: str | None = None
    pickup_ready_at: datetime | None = None
    pickup_window_start: datetime | None = None
    pickup_window_end: datetime | None = None
    pickup_picked_up_at: datetime | None = None
    pickup_instructions: str | None = None


def to_customer_response(order: OrderAggregate) -> CustomerResponse:
    c = order.customer
    return CustomerResponse(
        id=c.id,
        name=c.name,
        email=c.email,
        phone=c.phone,
        address=c.address,
        created_at=c.created_at,
    )


def to_product_response(item: LineItem) -> ProductResponse:
    return ProductResponse(
        id=item.product_id,
        name=item.product_name,
        description=item.description,
        price=item.unit_price,
        image_url=item.image_url,
        category_id=item.category_id,
        category_name=item.category_name,
    )


def to_item_responses(order: OrderAggregate) -> list[OrderItemResponse]:
    return [
        OrderItemResponse(
            id=position,
            product_id=item.product_id,
            product_name=item.product_name,
            quantity=item.quantity,
            unit_price=item.unit_price,
            total_price=item.line_total,
            special_instructions=item.special_instructions,
        )
        for position, item in enumerate(order.items, start=1)
    ]


def to_payment_response(order: OrderAggregate) -> PaymentResponse | None:
    p = order.payment
    if p is None:
        return None
    return PaymentResponse(
        order_id=order.order_id,
        status=p.status,
        method=p.method,
        amount=p.amount,
        transaction_id=p.transaction_id,
        paid_at=p.paid_at,
        created_at=p.created_at,
        updated_at=p.updated_at,
    )


def to_delivery_response(order: OrderAggregate) -> DeliveryResponse | None:
    d = order.delivery
    if d is None:
        return None
    return DeliveryResponse(
        order_id=order.order_id,
        driver_name=d.driver_name,
        driver_phone=d.driver_phone,
        vehicle_info=d.vehicle_info,
        status=d.status,
        pickup_time=d.pickup_time,
        estimated_arrival_time=d.estimated_arrival_time,
        actual_delivery_time=d.actual_delivery_time,
        delivery_notes=d.delivery_notes,
        current_location=d.current_location,
        latitude=d.latitude,
        longitude=d.longitude,
        created_at=d.created_at,
        updated_at=d.updated_at,
    )


def to_pickup_response(order: OrderAggregate) -> PickupResponse | None:
    p = order.pickup
    if p is None:
        return None
    return PickupResponse(
        order_id=order.order_id,
        pickup_code=p.pickup_code,
        status=p.status,
        ready_at=p.ready_at,
        window_start=p.window_start,
        window_end=p.window_end,
        picked_up_at=p.picked_up_at,
        instructions=p.instructions,
        contact_name=p.contact_name,
        contact_phone=p.contact_phone,
        created_at=p.created_at,
        updated_at=p.updated_at,
    )


def to_order_response(order: OrderAggregate) -> OrderResponse:
    """Flat order view: payment/delivery/pickup fields are prefixed copies of the owned records."""
    payment, delivery, pickup = order.payment, order.delivery, order.pickup
    return OrderResponse(
        id=order.order_id,
        customer_id=order.customer.id,
        customer_name=order.customer.name,
        status=order.status,
        total_price=order.total_price,
        order_type=order.order_type,
        delivery_address=order.delivery_address,
        phone_number=order.phone_number,
        special_instructions=order.special_instructions,
        created_at=order.created_at,
        updated_at=order.updated_at,
        estimated_delivery_time=order.estimated_delivery_time,
        order_items=to_item_responses(order),
        version=order.version,
        payment_status=payment.status if payment else None,
        payment_method=payment.method if payment else None,
        payment_paid_at=payment.paid_at if payment else None,
        payment_transaction_id=payment.transaction_id if payment else None,
        delivery_status=delivery.status if delivery else None,
        delivery_driver_name=delivery.driver_name if delivery else None,
        delivery_driver_phone=delivery.driver_phone if delivery else None,
        delivery_estimated_arrival_time=delivery.estimated_arrival_time if delivery else None,
        delivery_actual_delivery_time=delivery.actual_delivery_time if delivery else None,
        delivery_latitude=delivery.latitude if delivery else None,
        delivery_longitude=delivery.longitude if delivery else None,
        pickup_status=pickup.status if pickup else None,
        pickup_code=pickup.pickup_code if pickup else None,
        pickup_ready_at=pickup.ready_at if pickup else None,
        pickup_window_start=pickup.window_start if pickup else None,
        pickup_window_end=pickup.window_end if pickup else None,
        pickup_picked_up_at=pickup.picked_up_at if pickup else None,
        pickup_instructions=pickup.instructions if pickup else None,
    )
