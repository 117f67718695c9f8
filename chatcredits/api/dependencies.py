"""
FastAPI Dependencies - Caller identity, shared services and cron auth.

NO DICTIONARIES - All dependencies return typed objects.

Authentication happens upstream; the gateway forwards the authenticated
user's id in the X-User-ID header.
"""

import hmac
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from chatcredits.config import Settings, get_settings
from chatcredits.db.session import get_db
from chatcredits.services.payment_methods import PaymentMethodService
from chatcredits.services.payment_provider import PaymentProvider
from chatcredits.services.subscriptions import SubscriptionService
from chatcredits.services.tokens import TokenService

logger = get_logger(__name__)


async def get_current_user_id(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
) -> UUID:
    """
    Caller's user id from the trusted X-User-ID header.

    Raises:
        HTTPException 401: Header missing
        HTTPException 400: Header isn't a UUID
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-ID header",
        )
    try:
        return UUID(x_user_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-User-ID header",
        ) from exc


def get_payment_provider(request: Request) -> PaymentProvider:
    """Payment provider created in the app lifespan."""
    provider: PaymentProvider = request.app.state.payment_provider
    return provider


def get_token_service(
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    settings: Settings = Depends(get_settings),
) -> TokenService:
    """Request-scoped token service."""
    return TokenService(db, settings, payment_provider=provider)


def get_subscription_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> SubscriptionService:
    """Request-scoped subscription service."""
    return SubscriptionService(db, settings)


def get_payment_method_service(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> PaymentMethodService:
    """Request-scoped payment method service."""
    return PaymentMethodService(db, settings)


async def verify_cron_secret(
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
    settings: Settings = Depends(get_settings),
) -> None:
    """
    Guard for scheduler-triggered endpoints.

    Raises:
        HTTPException 401: Secret unset, missing or wrong
    """
    if not settings.cron_secret or not x_cron_secret:
        logger.warning("cron_auth_failed", reason="missing_secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
    if not hmac.compare_digest(settings.cron_secret.encode(), x_cron_secret.encode()):
        logger.warning("cron_auth_failed", reason="mismatch")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
