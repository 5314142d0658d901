"""Environment configuration and validation."""
import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from topup.logging import get_logger

logger = get_logger(__name__)


# Gateway configuration requirements
GATEWAY_ENV_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "mock": ("PAYMENT_SECRET",),
    "http": ("PAYMENT_GATEWAY_URL", "PAYMENT_GATEWAY_API_KEY", "PAYMENT_SECRET"),
}

STORE_ENV_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "memory": (),
    "supabase": ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"),
}


class Settings(BaseModel):
    """Runtime settings read from the environment."""

    # Storage
    store_backend: str = "memory"  # memory | supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Payment gateway
    payment_gateway: str = "mock"  # mock | http
    payment_gateway_url: str = ""
    payment_gateway_api_key: str = ""
    payment_checkout_url: str = "https://example-payment-gateway/checkout"
    payment_secret: str = ""
    webapp_url: str = "http://localhost:3000"
    gateway_max_attempts: int = 3
    gateway_backoff_seconds: float = 0.5

    # Telegram
    telegram_bot_token: str = ""
    admin_chat_id: Optional[int] = None

    # Admin / cron auth
    admin_api_key: str = ""
    cron_secret: str = ""

    # Orders
    order_id_prefix: str = "ROBEKC-"
    awaiting_payment_timeout_minutes: int = 15
    expiry_sweep_interval_seconds: int = 60
    reconcile_before_expiry: bool = True

    # Notifications
    notify_max_attempts: int = 5
    notify_backoff_seconds: float = 0.5
    notify_backoff_max_seconds: float = 8.0

    model_config = ConfigDict(extra="ignore")

    @field_validator("store_backend", "payment_gateway", mode="before")
    @classmethod
    def normalize_choice(cls, v):
        return (v or "").strip().lower()

    @field_validator("admin_chat_id", mode="before")
    @classmethod
    def empty_chat_id_is_none(cls, v):
        if v in (None, ""):
            return None
        return v

    @field_validator(
        "gateway_max_attempts",
        "notify_max_attempts",
        "awaiting_payment_timeout_minutes",
    )
    @classmethod
    def at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """
    Build Settings from the current environment.

    Unset variables fall back to the model defaults.
    """
    env = os.environ
    values: dict = {
        "store_backend": env.get("STORE_BACKEND"),
        "supabase_url": env.get("SUPABASE_URL"),
        "supabase_service_role_key": env.get("SUPABASE_SERVICE_ROLE_KEY"),
        "payment_gateway": env.get("PAYMENT_GATEWAY"),
        "payment_gateway_url": env.get("PAYMENT_GATEWAY_URL"),
        "payment_gateway_api_key": env.get("PAYMENT_GATEWAY_API_KEY"),
        "payment_checkout_url": env.get("PAYMENT_CHECKOUT_URL"),
        "payment_secret": env.get("PAYMENT_SECRET"),
        "webapp_url": env.get("WEBAPP_URL"),
        "gateway_max_attempts": env.get("GATEWAY_MAX_ATTEMPTS"),
        "gateway_backoff_seconds": env.get("GATEWAY_BACKOFF_SECONDS"),
        "telegram_bot_token": env.get("TELEGRAM_BOT_TOKEN"),
        "admin_chat_id": env.get("ADMIN_CHAT_ID"),
        "admin_api_key": env.get("ADMIN_API_KEY"),
        "cron_secret": env.get("CRON_SECRET"),
        "order_id_prefix": env.get("ORDER_ID_PREFIX"),
        "awaiting_payment_timeout_minutes": env.get("AWAITING_PAYMENT_TIMEOUT_MINUTES"),
        "expiry_sweep_interval_seconds": env.get("EXPIRY_SWEEP_INTERVAL_SECONDS"),
        "notify_max_attempts": env.get("NOTIFY_MAX_ATTEMPTS"),
        "notify_backoff_seconds": env.get("NOTIFY_BACKOFF_SECONDS"),
        "notify_backoff_max_seconds": env.get("NOTIFY_BACKOFF_MAX_SECONDS"),
    }
    # Drop unset values so model defaults apply
    values = {k: v for k, v in values.items() if v is not None}
    values["reconcile_before_expiry"] = _env_bool("RECONCILE_BEFORE_EXPIRY", True)
    return Settings(**values)


def _missing_env(settings: Settings, names: tuple[str, ...]) -> list[str]:
    return [name for name in names if not getattr(settings, name.lower(), None)]


def validate_gateway_config(settings: Settings) -> str:
    """
    Validate payment gateway configuration.

    Returns:
        Gateway mode ("mock" or "http")

    Raises:
        ValueError: If the gateway is unknown or not configured
    """
    gateway = settings.payment_gateway
    if gateway not in GATEWAY_ENV_REQUIREMENTS:
        raise ValueError(f"Unknown PAYMENT_GATEWAY '{gateway}'")

    missing = _missing_env(settings, GATEWAY_ENV_REQUIREMENTS[gateway])
    if missing:
        logger.error("Payment gateway %s not configured. Missing: %s", gateway, missing)
        raise ValueError(f"Payment gateway '{gateway}' not configured. Set: {', '.join(missing)}")
    return gateway


def validate_store_config(settings: Settings) -> str:
    """Validate order store configuration. Returns the backend name."""
    backend = settings.store_backend
    if backend not in STORE_ENV_REQUIREMENTS:
        raise ValueError(f"Unknown STORE_BACKEND '{backend}'")

    missing = _missing_env(settings, STORE_ENV_REQUIREMENTS[backend])
    if missing:
        logger.error("Order store %s not configured. Missing: %s", backend, missing)
        raise ValueError(f"Order store '{backend}' not configured. Set: {', '.join(missing)}")
    return backend


def is_telegram_configured(settings: Settings) -> bool:
    """Check whether Telegram notifications can be sent."""
    return bool(settings.telegram_bot_token) and settings.admin_chat_id is not None
