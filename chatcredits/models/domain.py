"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from chatcredits.models.api import (
    GatewayStatus,
    PaymentStatus,
    SubscriptionStatus,
    SubscriptionTierName,
    TransactionKind,
)


@dataclass(frozen=True)
class FreeMessageStatus:
    """Free-message quota state for a user."""

    has_free_messages: bool
    used: int
    remaining: int
    limit: int

    def __post_init__(self) -> None:
        """Validate quota arithmetic."""
        if self.remaining < 0:
            raise ValueError(f"Remaining free messages cannot be negative: {self.remaining}")
        if self.limit < 0:
            raise ValueError(f"Free message limit cannot be negative: {self.limit}")


@dataclass(frozen=True)
class MessageCharge:
    """Outcome of charging an assistant message."""

    message_id: UUID
    token_cost: int
    remaining_tokens: Decimal
    using_free_message: bool
    free_messages_used: int
    free_messages_remaining: int
    free_message_limit: int
    is_locked: bool
    unlock_price: Decimal | None

    def __post_init__(self) -> None:
        """Validate charge constraints."""
        if self.token_cost < 0:
            raise ValueError(f"Token cost cannot be negative: {self.token_cost}")
        if self.remaining_tokens < 0:
            raise ValueError(f"Balance cannot be negative: {self.remaining_tokens}")
        if self.using_free_message and self.token_cost != 0:
            raise ValueError("Free messages must not be charged")


@dataclass(frozen=True)
class UnlockResult:
    """
    Outcome of an unlock attempt.

    Insufficient balance is reported here instead of raised so callers can
    render an upsell prompt.
    """

    unlocked: bool
    message_id: UUID
    required: Decimal
    available: Decimal
    content: str | None = None


@dataclass(frozen=True)
class ChatEligibility:
    """Whether a user may open another chat."""

    can_create: bool
    current_count: int
    limit: int | None  # None = unlimited
    subscription_tier: SubscriptionTierName


@dataclass(frozen=True)
class PurchaseResult:
    """Token purchase started (and possibly settled)."""

    payment_id: UUID
    status: PaymentStatus
    amount_minor: int
    tokens: int
    bonus_tokens: int
    checkout_url: str | None = None
    address: str | None = None
    qrcode_url: str | None = None
    balance: Decimal | None = None

    @property
    def total_tokens(self) -> int:
        """Tokens credited on settlement."""
        return self.tokens + self.bonus_tokens


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of moving a payment out of pending."""

    payment_id: UUID
    status: PaymentStatus
    tokens_credited: int
    already_settled: bool
    balance: Decimal | None = None


@dataclass(frozen=True)
class PaymentSync:
    """Payment state after polling the gateway."""

    payment_id: UUID
    status: PaymentStatus
    gateway_status: GatewayStatus | None


@dataclass(frozen=True)
class TipResult:
    """Tip sent to a persona creator."""

    tip_id: UUID
    payment_id: UUID
    amount: Decimal
    remaining_credits: Decimal


@dataclass(frozen=True)
class SubscriptionResult:
    """Subscription created or renewed."""

    subscription_id: UUID
    payment_id: UUID
    tier: SubscriptionTierName
    price_minor: int
    bonus_tokens: int
    start_date: datetime
    end_date: datetime


@dataclass(frozen=True)
class SubscriptionCancellation:
    """Subscription after cancellation; access lasts until end_date."""

    subscription_id: UUID
    status: SubscriptionStatus
    end_date: datetime


@dataclass(frozen=True)
class SubscriptionInfo:
    """Effective subscription of a user."""

    tier: SubscriptionTierName
    status: SubscriptionStatus
    expires_at: datetime | None
    features: tuple[str, ...]


@dataclass(frozen=True)
class AutoTopupConfig:
    """Auto-topup configuration snapshot."""

    user_id: UUID
    enabled: bool
    threshold_amount: Decimal
    package_id: str
    payment_method_id: UUID | None
    last_topup_at: datetime | None


@dataclass(frozen=True)
class TopupRunSummary:
    """Counters for one auto-topup batch run."""

    scanned: int
    topped_up: int
    skipped: int
    failed: int


@dataclass(frozen=True)
class RenewalRunSummary:
    """Counters for one subscription renewal batch run."""

    scanned: int
    renewed: int
    expired: int
    skipped: int
    failed: int


@dataclass(frozen=True)
class PaymentMethodInfo:
    """Stored payment method."""

    payment_method_id: UUID
    method_type: str
    label: str | None
    address: str
    is_default: bool
    created_at: datetime


@dataclass(frozen=True)
class Transaction:
    """
    One entry of a user's balance history.

    token_delta is what the entry moves on the balance once completed:
    positive for purchases, top-ups and subscription bonuses, negative for
    message charges, unlocks and tips.
    """

    transaction_id: UUID
    kind: TransactionKind
    status: PaymentStatus
    token_delta: Decimal
    amount_minor: int
    created_at: datetime
    reference_id: UUID


@dataclass(frozen=True)
class TransactionPage:
    """Newest-first slice of a user's transactions."""

    transactions: tuple[Transaction, ...]
    limit: int
    offset: int
    has_more: bool


@dataclass(frozen=True)
class SubscriptionRecord:
    """Subscription row as shown in a user's history."""

    subscription_id: UUID
    payment_id: UUID | None
    tier: SubscriptionTierName
    status: SubscriptionStatus
    price_minor: int
    start_date: datetime
    end_date: datetime
    auto_renew: bool


@dataclass(frozen=True)
class SubscriptionHistoryPage:
    """Newest-first slice of a user's subscriptions."""

    subscriptions: tuple[SubscriptionRecord, ...]
    limit: int
    offset: int
    has_more: bool
