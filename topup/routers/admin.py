"""Admin Router: order cancellation"""
from fastapi import APIRouter, Depends

from topup.routers.deps import get_services, verify_admin_key

router = APIRouter(tags=["admin"], dependencies=[Depends(verify_admin_key)])


@router.post("/api/admin/orders/{order_id}/cancel")
async def cancel_order(order_id: str, services=Depends(get_services)):
    """Cancel an open order; terminal orders are returned unchanged"""
    order = await services.order_service.cancel_order(order_id)
    return {"orderId": order.order_id, "status": order.status.value}
