"""
Mock crypto payment provider for development and tests.

Keeps charges in memory and advances them at random on each status poll.
"""

import json
import random
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from structlog import get_logger

from chatcredits.exceptions import PaymentProviderError
from chatcredits.models.api import GatewayStatus
from chatcredits.services.coinbase_provider import QR_CODE_URL, parse_webhook_payload
from chatcredits.services.payment_provider import (
    PaymentIntentRequest,
    PaymentIntentResult,
    PaymentStatusResult,
    WebhookEvent,
)

logger = get_logger(__name__)

MOCK_ADDRESSES: dict[str, str] = {
    "BTC": "3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy",
    "ETH": "0x742d35Cc6634C0532925a3b844Bc454e4438f44e",
    "LTC": "LTdsVS8VDw6syvfQADdhf2PHAm3rMGJvTs",
    "DOGE": "D5tpvRMT3jBgXteMTZ9YAUtaS7DKjMr5XT",
    "USDT": "0x742d35Cc6634C0532925a3b844Bc454e4438f44e",
}

PROCESSING_CHANCE = 0.3
SUCCESS_CHANCE = 0.5


@dataclass(frozen=True)
class MockCharge:
    """In-memory charge state."""

    request: PaymentIntentRequest
    status: GatewayStatus
    created_at: datetime
    txid: str | None = None


class MockCryptoProvider:
    """
    Randomized in-memory payment provider.

    Implements the PaymentProvider protocol. Each poll moves a pending charge
    to processing with 30% probability and a processing charge to succeeded
    with 50% probability.
    """

    def __init__(
        self, app_url: str = "http://localhost:3000", rng: random.Random | None = None
    ) -> None:
        self.app_url = app_url.rstrip("/")
        self.rng = rng or random.Random()
        self.charges: dict[str, MockCharge] = {}

    async def create_payment_intent(self, request: PaymentIntentRequest) -> PaymentIntentResult:
        """Open a mock charge."""
        coin = request.coin_type.upper()
        address = MOCK_ADDRESSES.get(coin)
        if address is None:
            raise PaymentProviderError(f"Unsupported coin type: {request.coin_type}")

        charge_id = f"charge_{uuid4().hex[:8]}"
        self.charges[charge_id] = MockCharge(
            request=request,
            status=GatewayStatus.PENDING,
            created_at=datetime.now(UTC),
        )

        logger.info("mock_charge_created", charge_id=charge_id, coin=coin)

        return PaymentIntentResult(
            intent_id=charge_id,
            status=GatewayStatus.PENDING,
            checkout_url=f"{self.app_url}/mock-checkout/{charge_id}",
            address=address,
            qrcode_url=QR_CODE_URL.format(address=address),
            payment_method=coin,
            amount_minor=request.amount_minor,
            currency=request.currency,
        )

    async def get_payment_status(self, intent_id: str) -> PaymentStatusResult:
        """
        Poll a mock charge, possibly advancing it.

        Raises:
            PaymentProviderError: If the charge is unknown
        """
        charge = self._get(intent_id)

        if charge.status == GatewayStatus.PENDING:
            if self.rng.random() < PROCESSING_CHANCE:
                charge = replace(charge, status=GatewayStatus.PROCESSING)
        elif charge.status == GatewayStatus.PROCESSING:
            if self.rng.random() < SUCCESS_CHANCE:
                charge = replace(charge, status=GatewayStatus.SUCCEEDED, txid=f"tx_{uuid4()}")
        self.charges[intent_id] = charge

        return PaymentStatusResult(
            intent_id=intent_id,
            status=charge.status,
            provider_status=charge.status.value.upper(),
            txid=charge.txid,
        )

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """Parse a webhook body; signatures are not checked in mock mode."""
        return parse_webhook_payload(payload)

    def simulate_webhook(self, intent_id: str) -> bytes:
        """
        Mark a charge succeeded and build the matching charge:confirmed body.

        Raises:
            PaymentProviderError: If the charge is unknown
        """
        charge = replace(self._get(intent_id), status=GatewayStatus.SUCCEEDED, txid=f"tx_{uuid4()}")
        self.charges[intent_id] = charge
        request = charge.request

        body = {
            "event": {
                "id": f"evt_{uuid4()}",
                "type": "charge:confirmed",
                "data": {
                    "code": intent_id,
                    "name": request.description,
                    "pricing": {
                        "local": {
                            "amount": f"{request.amount_minor / 100:.2f}",
                            "currency": request.currency,
                        }
                    },
                    "metadata": {
                        "user_id": request.user_id,
                        "payment_id": request.payment_reference,
                        "payment_type": request.payment_type,
                        "txid": charge.txid,
                    },
                    "timeline": [
                        {
                            "status": "NEW",
                            "time": (charge.created_at - timedelta(seconds=1)).isoformat(),
                        },
                        {"status": "COMPLETED", "time": datetime.now(UTC).isoformat()},
                    ],
                },
            }
        }
        return json.dumps(body).encode()

    def _get(self, intent_id: str) -> MockCharge:
        charge = self.charges.get(intent_id)
        if charge is None:
            raise PaymentProviderError(f"Payment intent not found: {intent_id}")
        return charge
