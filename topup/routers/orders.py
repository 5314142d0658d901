"""
Orders Router

Order creation, lookup, catalog and the notify endpoint.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, ConfigDict, Field

from topup.logging import get_logger
from topup.routers.deps import get_services

logger = get_logger(__name__)

router = APIRouter(tags=["orders"])


class CreateOrderRequest(BaseModel):
    # Optional so missing fields reach the service and answer 400
    model_config = ConfigDict(populate_by_name=True)

    product_id: Optional[str] = Field(default=None, alias="productId")
    user_id: Optional[str] = Field(default=None, alias="userId")


class NotifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1)


class ProductResponse(BaseModel):
    id: str
    name: str
    price: int
    currency: str


class OrderResponse(BaseModel):
    orderId: str
    productId: str
    userId: str
    amount: int
    status: str
    payUrl: Optional[str] = None
    createdAt: datetime
    updatedAt: datetime


@router.get("/api/products", response_model=list[ProductResponse])
async def list_products(services=Depends(get_services)):
    """Storefront product list"""
    return [ProductResponse(**p.model_dump()) for p in services.catalog.list_products()]


@router.post("/api/create-order")
async def create_order(
    body: CreateOrderRequest,
    services=Depends(get_services),
    idempotency_key: Optional[str] = Header(default=None),
):
    """Create an order and return its checkout URL"""
    created = await services.order_service.create_order(
        product_id=body.product_id or "",
        user_id=body.user_id or "",
        idempotency_key=idempotency_key,
    )
    return {"orderId": created.order_id, "payUrl": created.pay_url}


@router.get("/api/orders/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, services=Depends(get_services)):
    """Order status for the storefront"""
    order = await services.order_service.get_order(order_id)
    return OrderResponse(
        orderId=order.order_id,
        productId=order.product_id,
        userId=order.user_id,
        amount=order.amount,
        status=order.status.value,
        payUrl=order.pay_url,
        createdAt=order.created_at,
        updatedAt=order.updated_at,
    )


@router.post("/api/notify")
async def notify(body: NotifyRequest, services=Depends(get_services)):
    """Send (at most once) the notification for the order's current status"""
    order = await services.store.get(body.order_id)
    result = await services.dispatcher.dispatch(order.order_id, order.status)
    return {
        "result": "ok" if result.ok else "failed",
        "status": order.status.value,
        "channels": {name: outcome.value for name, outcome in result.channels.items()},
    }
