"""
Notification Module

Channels deliver messages; the dispatcher decides what to deliver and when.
"""
from .channels import LogChannel, NotificationChannel, TelegramChannel
from .dispatcher import ChannelResult, DispatchResult, NotificationDispatcher

__all__ = [
    "LogChannel",
    "NotificationChannel",
    "TelegramChannel",
    "ChannelResult",
    "DispatchResult",
    "NotificationDispatcher",
]
