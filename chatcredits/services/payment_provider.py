"""
Payment Provider Protocol - Provider-agnostic crypto checkout interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from typing import Protocol

from chatcredits.config import Settings
from chatcredits.models.api import GatewayStatus


@dataclass(frozen=True)
class PaymentIntentRequest:
    """
    Provider-agnostic payment intent.

    Represents a request to open a checkout for a pending payment.
    """

    amount_minor: int
    currency: str
    description: str
    user_id: str
    payment_reference: str  # our payments.id
    payment_type: str
    coin_type: str = "BTC"
    customer_email: str | None = None
    customer_name: str | None = None


@dataclass(frozen=True)
class PaymentIntentResult:
    """
    Provider-agnostic payment intent result.

    Returned after the checkout was created.
    """

    intent_id: str  # Provider-specific charge ID
    status: GatewayStatus
    checkout_url: str
    address: str | None
    qrcode_url: str | None
    payment_method: str
    amount_minor: int
    currency: str


@dataclass(frozen=True)
class PaymentStatusResult:
    """Current state of a payment intent."""

    intent_id: str
    status: GatewayStatus
    provider_status: str
    txid: str | None = None


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    Represents a webhook notification from payment provider.
    """

    event_id: str
    event_type: str
    intent_id: str
    status: GatewayStatus
    user_id: str | None
    payment_reference: str | None
    amount_minor: int | None
    currency: str | None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    The token service and subscription flows only depend on this interface.
    """

    async def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntentResult:
        """
        Create a payment intent with the provider.

        Raises:
            PaymentProviderError: If payment creation fails
        """
        ...

    async def get_payment_status(self, intent_id: str) -> PaymentStatusResult:
        """
        Get the current status of a payment intent.

        Raises:
            PaymentProviderError: If the intent is unknown or the call fails
        """
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse webhook event from provider.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...


def create_payment_provider(settings: Settings) -> PaymentProvider:
    """Build the configured provider (real gateway or in-memory mock)."""
    if settings.payment_provider == "mock":
        from chatcredits.services.mock_crypto_provider import MockCryptoProvider

        return MockCryptoProvider(app_url=settings.app_url)

    from chatcredits.services.coinbase_provider import CoinbaseCommerceProvider

    return CoinbaseCommerceProvider(
        api_key=settings.coinbase_api_key,
        webhook_secret=settings.coinbase_webhook_secret,
        api_url=settings.coinbase_api_url,
        app_url=settings.app_url,
        timeout_seconds=settings.gateway_timeout_seconds,
    )
