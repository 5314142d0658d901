"""
Cron Router
Schedule: */5 * * * * (every 5 minutes)

Expires open orders past the payment window, reconciling with the gateway
first. Same sweep as the in-process ExpirySweeper.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from topup.routers.deps import get_services, verify_cron_secret

router = APIRouter(tags=["cron"], dependencies=[Depends(verify_cron_secret)])


@router.get("/api/cron/expire-orders")
async def expire_orders(services=Depends(get_services)):
    """Vercel Cron entrypoint"""
    report = await services.order_service.expire_stale_orders()
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "success": True,
        "tasks": report.model_dump(),
    }
