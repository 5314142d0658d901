# Telegram Bot Module
from typing import TYPE_CHECKING

from aiogram import Dispatcher

from .handlers import create_router

if TYPE_CHECKING:
    from topup.services import Services


def create_dispatcher(services: "Services") -> Dispatcher:
    """Dispatcher with the command router; `services` is injected into handlers."""
    dp = Dispatcher(services=services)
    dp.include_router(create_router())
    return dp


__all__ = ["create_dispatcher", "create_router"]
