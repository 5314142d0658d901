"""
Shared Dependencies for Routers

The service graph lives on `app.state.services`; routers reach it through
these helpers instead of module-level singletons.
"""
import hmac
from typing import TYPE_CHECKING

from fastapi import Header, Request

from topup.errors import UnauthorizedError

if TYPE_CHECKING:
    from topup.services import Services


def get_services(request: Request) -> "Services":
    """Service graph of the running app"""
    return request.app.state.services


def verify_admin_key(request: Request, x_admin_key: str = Header(default="")) -> None:
    """Reject admin calls without the configured ADMIN_API_KEY. Fails closed when unset."""
    expected = get_services(request).settings.admin_api_key
    if not expected or not hmac.compare_digest(x_admin_key, expected):
        raise UnauthorizedError()


def verify_cron_secret(request: Request, authorization: str = Header(default="")) -> None:
    """Verify the request comes from the cron scheduler (only when CRON_SECRET is set)."""
    secret = get_services(request).settings.cron_secret
    if secret and not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise UnauthorizedError()
