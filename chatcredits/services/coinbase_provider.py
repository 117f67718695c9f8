"""
Coinbase Commerce Payment Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any

import httpx
from structlog import get_logger

from chatcredits.exceptions import PaymentProviderError, WebhookVerificationError
from chatcredits.models.api import GatewayStatus
from chatcredits.services.payment_provider import (
    PaymentIntentRequest,
    PaymentIntentResult,
    PaymentStatusResult,
    WebhookEvent,
)

logger = get_logger(__name__)

API_VERSION = "2018-03-22"
QR_CODE_URL = "https://api.qrserver.com/v1/create-qr-code/?size=200x200&data={address}"

# Charge timeline status -> gateway status
TIMELINE_STATUS_MAP: dict[str, GatewayStatus] = {
    "NEW": GatewayStatus.PENDING,
    "PENDING": GatewayStatus.PENDING,
    "UNRESOLVED": GatewayStatus.PROCESSING,
    "DELAYED": GatewayStatus.PROCESSING,
    "COMPLETED": GatewayStatus.SUCCEEDED,
    "CONFIRMED": GatewayStatus.SUCCEEDED,
    "RESOLVED": GatewayStatus.SUCCEEDED,
    "EXPIRED": GatewayStatus.FAILED,
    "CANCELED": GatewayStatus.FAILED,
    "REFUND PENDING": GatewayStatus.FAILED,
    "REFUNDED": GatewayStatus.FAILED,
}

# Webhook event type -> gateway status
WEBHOOK_EVENT_MAP: dict[str, GatewayStatus] = {
    "charge:confirmed": GatewayStatus.SUCCEEDED,
    "charge:resolved": GatewayStatus.SUCCEEDED,
    "charge:failed": GatewayStatus.FAILED,
    "charge:pending": GatewayStatus.PROCESSING,
}


def map_timeline_status(status: str) -> GatewayStatus:
    """Map a charge timeline status; unknown statuses are pending."""
    return TIMELINE_STATUS_MAP.get(status.upper(), GatewayStatus.PENDING)


def _minor_to_amount(amount_minor: int) -> str:
    return str((Decimal(amount_minor) / 100).quantize(Decimal("0.01")))


def _amount_to_minor(amount: str | None) -> int | None:
    if not amount:
        return None
    return int((Decimal(amount) * 100).to_integral_value())


def parse_webhook_payload(payload: bytes) -> WebhookEvent:
    """
    Parse a charge webhook body: {"event": {"id", "type", "data": <charge>}}.

    Raises:
        WebhookVerificationError: If the payload is malformed
    """
    try:
        body = json.loads(payload)
        event = body["event"]
        charge = event["data"]
        event_id = str(event["id"])
        event_type = str(event["type"])
        charge_code = str(charge["code"])
    except (ValueError, KeyError, TypeError) as exc:
        raise WebhookVerificationError(f"malformed payload: {exc}") from exc

    metadata = charge.get("metadata") or {}
    local_price = (charge.get("pricing") or {}).get("local") or {}

    return WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        intent_id=charge_code,
        status=WEBHOOK_EVENT_MAP.get(event_type, GatewayStatus.PENDING),
        user_id=metadata.get("user_id"),
        payment_reference=metadata.get("payment_id"),
        amount_minor=_amount_to_minor(local_price.get("amount")),
        currency=local_price.get("currency"),
    )


class CoinbaseCommerceProvider:
    """
    Coinbase Commerce payment provider implementation.

    Implements the PaymentProvider protocol over the charges API.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        api_url: str = "https://api.commerce.coinbase.com",
        app_url: str = "http://localhost:3000",
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize Coinbase Commerce provider.

        Args:
            api_key: Commerce API key
            webhook_secret: Shared secret for webhook signatures
            api_url: Base URL of the Commerce API
            app_url: Public URL of the web app (redirect targets)
            timeout_seconds: Per-request timeout
            http_client: Optional preconfigured client
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_url = api_url.rstrip("/")
        self.app_url = app_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    @property
    def headers(self) -> dict[str, str]:
        return {
            "X-CC-Api-Key": self.api_key,
            "X-CC-Version": API_VERSION,
            "Content-Type": "application/json",
        }

    async def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntentResult:
        """
        Create a Coinbase Commerce charge.

        Raises:
            PaymentProviderError: If the API call fails
        """
        body = {
            "name": request.description,
            "description": request.description,
            "pricing_type": "fixed_price",
            "local_price": {
                "amount": _minor_to_amount(request.amount_minor),
                "currency": request.currency,
            },
            "metadata": {
                "user_id": request.user_id,
                "payment_id": request.payment_reference,
                "payment_type": request.payment_type,
                "customer_name": request.customer_name,
                "customer_email": request.customer_email,
            },
            "redirect_url": f"{self.app_url}/credits/success",
            "cancel_url": f"{self.app_url}/credits/cancel",
        }

        logger.info(
            "creating_coinbase_charge",
            amount_minor=request.amount_minor,
            currency=request.currency,
            payment_id=request.payment_reference,
        )
        charge = await self._request("POST", "/charges", json=body)

        addresses: dict[str, str] = charge.get("addresses") or {}
        coin = request.coin_type.lower()
        if coin in addresses:
            payment_method, address = request.coin_type, addresses[coin]
        elif addresses:
            first = next(iter(addresses))
            payment_method, address = first.upper(), addresses[first]
        else:
            payment_method, address = "MULTIPLE", None

        timeline = charge.get("timeline") or []
        status = map_timeline_status(timeline[0]["status"] if timeline else "NEW")

        logger.info("coinbase_charge_created", charge_code=charge["code"], status=status.value)

        return PaymentIntentResult(
            intent_id=charge["code"],
            status=status,
            checkout_url=charge.get("hosted_url", ""),
            address=address,
            qrcode_url=QR_CODE_URL.format(address=address) if address else None,
            payment_method=payment_method,
            amount_minor=request.amount_minor,
            currency=request.currency,
        )

    async def get_payment_status(self, intent_id: str) -> PaymentStatusResult:
        """
        Get the latest timeline status of a charge.

        Raises:
            PaymentProviderError: If the API call fails
        """
        charge = await self._request("GET", f"/charges/{intent_id}")

        timeline = sorted(charge.get("timeline") or [], key=lambda entry: entry.get("time", ""))
        provider_status = timeline[-1]["status"] if timeline else "NEW"

        txid = None
        for payment in charge.get("payments") or []:
            txid = payment.get("transaction_id") or txid

        return PaymentStatusResult(
            intent_id=intent_id,
            status=map_timeline_status(provider_status),
            provider_status=provider_status,
            txid=txid,
        )

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify the HMAC-SHA256 signature and parse the webhook event.

        Raises:
            WebhookVerificationError: If the secret is unset, the signature
                doesn't match or the payload is malformed
        """
        if not self.webhook_secret:
            raise WebhookVerificationError("webhook secret not configured")
        if not signature:
            raise WebhookVerificationError("missing signature")

        expected = hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature):
            logger.warning("coinbase_webhook_signature_mismatch")
            raise WebhookVerificationError("signature mismatch")

        event = parse_webhook_payload(payload)
        logger.info(
            "coinbase_webhook_verified", event_id=event.event_id, event_type=event.event_type
        )
        return event

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Call the Commerce API and return the charge object."""
        try:
            response = await self.http_client.request(
                method,
                f"{self.api_url}{path}",
                headers=self.headers,
                timeout=self.timeout_seconds,
                **kwargs,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "coinbase_api_error",
                status=exc.response.status_code,
                error=exc.response.text,
                path=path,
            )
            raise PaymentProviderError(f"API error: {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.error("coinbase_request_failed", error=str(exc), path=path)
            raise PaymentProviderError(f"Request failed: {exc}") from exc

        data: dict[str, Any] = response.json()["data"]
        return data
