from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from coordinator.aggregate import CheckoutRequest, LineItem
from coordinator.engine import ActorContext, TransitionEngine
from coordinator.errors import RecordNotFound
from coordinator.status import Machine, PaymentMethod
from coordinator.views import (
    CustomerResponse,
    DeliveryResponse,
    OrderResponse,
    PaymentResponse,
    PickupResponse,
    ProductResponse,
    to_customer_response,
    to_delivery_response,
    to_order_response,
    to_payment_response,
    to_pickup_response,
    to_product_response,
)

router = APIRouter(prefix="/orders", tags=["orders"])


def get_engine(request: Request) -> TransitionEngine:
    return request.app.state.engine


class TransitionBody(BaseModel):
    machine: Machine = Field(..., description="Which lifecycle to move: order, payment, delivery or pickup")
    target_state: str = Field(..., description="Requested state; the engine never picks one itself")
    expected_version: int | None = Field(default=None, description="Optimistic check against the stored version")
    actor: ActorContext = Field(default_factory=ActorContext)


class PaymentBody(BaseModel):
    method: PaymentMethod
    transaction_id: str | None = None
    actor: ActorContext = Field(default_factory=ActorContext)


class ItemsBody(BaseModel):
    items: list[LineItem]
    actor: ActorContext = Field(default_factory=ActorContext)


class LocationBody(BaseModel):
    location: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    actor: ActorContext = Field(default_factory=ActorContext)


@router.post("", status_code=201, response_model=OrderResponse)
async def checkout(body: CheckoutRequest, engine: TransitionEngine = Depends(get_engine)) -> OrderResponse:
    """Create the aggregate: PENDING, no payment yet, fulfillment record by order type."""
    order = await engine.create_order(body)
    return to_order_response(order)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, engine: TransitionEngine = Depends(get_engine)) -> OrderResponse:
    return to_order_response(await engine.get_order(order_id))


@router.post("/{order_id}/transitions", response_model=OrderResponse)
async def apply_transition(
    order_id: str,
    body: TransitionBody,
    engine: TransitionEngine = Depends(get_engine),
) -> OrderResponse:
    order = await engine.apply_transition(
        order_id,
        body.machine,
        body.target_state,
        actor=body.actor,
        expected_version=body.expected_version,
    )
    return to_order_response(order)


@router.put("/{order_id}/items", response_model=OrderResponse)
async def replace_items(order_id: str, body: ItemsBody, engine: TransitionEngine = Depends(get_engine)) -> OrderResponse:
    return to_order_response(await engine.replace_items(order_id, body.items, actor=body.actor))


@router.post("/{order_id}/payment", response_model=PaymentResponse)
async def start_payment(order_id: str, body: PaymentBody, engine: TransitionEngine = Depends(get_engine)) -> PaymentResponse:
    order = await engine.start_payment(order_id, body.method, body.transaction_id, actor=body.actor)
    return to_payment_response(order)


@router.get("/{order_id}/payment", response_model=PaymentResponse)
async def get_payment(order_id: str, engine: TransitionEngine = Depends(get_engine)) -> PaymentResponse:
    view = to_payment_response(await engine.get_order(order_id))
    if view is None:
        raise RecordNotFound(order_id, Machine.PAYMENT.value)
    return view


@router.post("/{order_id}/delivery/location", response_model=DeliveryResponse)
async def update_location(order_id: str, body: LocationBody, engine: TransitionEngine = Depends(get_engine)) -> DeliveryResponse:
    order = await engine.update_delivery_location(
        order_id,
        location=body.location,
        latitude=body.latitude,
        longitude=body.longitude,
        actor=body.actor,
    )
    return to_delivery_response(order)


@router.get("/{order_id}/delivery", response_model=DeliveryResponse)
async def get_delivery(order_id: str, engine: TransitionEngine = Depends(get_engine)) -> DeliveryResponse:
    view = to_delivery_response(await engine.get_order(order_id))
    if view is None:
        raise RecordNotFound(order_id, Machine.DELIVERY.value)
    return view


@router.get("/{order_id}/pickup", response_model=PickupResponse)
async def get_pickup(order_id: str, engine: TransitionEngine = Depends(get_engine)) -> PickupResponse:
    view = to_pickup_response(await engine.get_order(order_id))
    if view is None:
        raise RecordNotFound(order_id, Machine.PICKUP.value)
    return view


@router.get("/{order_id}/customer", response_model=CustomerResponse)
async def get_customer(order_id: str, engine: TransitionEngine = Depends(get_engine)) -> CustomerResponse:
    return to_customer_response(await engine.get_order(order_id))


@router.get("/{order_id}/products", response_model=list[ProductResponse])
async def get_products(order_id: str, engine: TransitionEngine = Depends(get_engine)) -> list[ProductResponse]:
    order = await engine.get_order(order_id)
    return [to_product_response(item) for item in order.items]
