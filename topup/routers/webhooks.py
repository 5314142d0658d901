"""
Webhooks Router

Payment gateway callbacks and Telegram updates.
"""
from aiogram import Bot, Dispatcher
from aiogram.types import Update
from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from topup.logging import get_logger
from topup.payments.webhook import SIGNATURE_HEADER
from topup.routers.deps import get_services

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/api/payment-webhook")
async def payment_webhook(request: Request):
    """
    Handle a payment gateway callback.

    Signature is checked against the raw body. Duplicates and conflicting
    reports are acknowledged with 200 so the gateway stops retrying.
    """
    raw_body = await request.body()
    services = get_services(request)
    result = await services.webhook_handler.handle(raw_body, request.headers.get(SIGNATURE_HEADER))
    return {
        "ok": True,
        "orderId": result.order_id,
        "status": result.status.value,
        "outcome": result.outcome.value,
    }


@router.post("/webhook/telegram")
async def telegram_webhook(request: Request, background_tasks: BackgroundTasks):
    """Handle Telegram webhook updates"""
    services = get_services(request)
    if services.bot is None or services.bot_dispatcher is None:
        # 200 keeps Telegram from retrying
        return JSONResponse({"ok": False, "error": "Bot not configured"})

    try:
        data = await request.json()
        update = Update.model_validate(data, context={"bot": services.bot})
    except (ValueError, ValidationError) as e:
        logger.warning("Invalid Telegram update: %s", e)
        return JSONResponse({"ok": False, "error": "Invalid update"})

    background_tasks.add_task(_process_update, services.bot, services.bot_dispatcher, update)
    return JSONResponse({"ok": True})


async def _process_update(bot: Bot, dispatcher: Dispatcher, update: Update) -> None:
    try:
        await dispatcher.feed_update(bot, update)
    except Exception:
        logger.exception("Failed to process Telegram update %s", update.update_id)
