"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class SubscriptionTierName(str, Enum):
    """Subscription level stored on the user."""

    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    VIP = "vip"


class SubscriptionStatus(str, Enum):
    """Subscription row status."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentType(str, Enum):
    """Payment ledger entry type."""

    TOKEN_PURCHASE = "token_purchase"
    SUBSCRIPTION = "subscription"
    TIP = "tip"
    AUTO_TOPUP = "auto_topup"
    MESSAGE_UNLOCK = "message_unlock"


class PaymentStatus(str, Enum):
    """Payment status. Only pending -> completed and pending -> failed are allowed."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class GatewayStatus(str, Enum):
    """Payment status as reported by a payment gateway."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class MessageRole(str, Enum):
    """Chat message author."""

    USER = "user"
    ASSISTANT = "assistant"


class TransactionKind(str, Enum):
    """Balance history entry type: a payment type or a charged message."""

    TOKEN_PURCHASE = "token_purchase"
    SUBSCRIPTION = "subscription"
    TIP = "tip"
    AUTO_TOPUP = "auto_topup"
    MESSAGE_UNLOCK = "message_unlock"
    MESSAGE_CHARGE = "message_charge"


# ============================================================================
# Pricing Models
# ============================================================================


class TokenPackageResponse(BaseModel):
    """Predefined token package."""

    id: str
    name: str
    tokens: int
    bonus: int
    price_minor: int
    description: str
    most_popular: bool = False


class CustomTokenTierResponse(BaseModel):
    """Custom purchase pricing band."""

    min_tokens: int
    max_tokens: int
    price_per_token: Decimal
    bonus_percentage: int


class TokenPackagesResponse(BaseModel):
    """GET /v1/tokens/packages response."""

    packages: list[TokenPackageResponse]
    custom_tiers: list[CustomTokenTierResponse]


class CustomQuoteResponse(BaseModel):
    """GET /v1/tokens/quote response."""

    tokens: int
    bonus: int
    total_tokens: int
    price_minor: int
    price_per_token: Decimal
    bonus_percentage: int


class SubscriptionTierResponse(BaseModel):
    """Subscription tier with its features."""

    id: str
    name: str
    price_minor: int
    bonus_tokens: int
    token_discount: Decimal
    discount_multiplier: Decimal
    chat_limit: int | None
    exclusive_personas: bool
    description: str
    features: list[str]


class SubscriptionTiersResponse(BaseModel):
    """GET /v1/subscriptions/tiers response."""

    tiers: list[SubscriptionTierResponse]


# ============================================================================
# Token Purchase Models
# ============================================================================


class PurchaseTokensRequest(BaseModel):
    """POST /v1/tokens/purchase request body."""

    package_id: str = Field(..., min_length=1, max_length=50)
    custom_token_amount: int | None = Field(None, gt=0)
    payment_method_id: UUID | None = None
    coin_type: str = Field("BTC", min_length=2, max_length=10)

    @field_validator("coin_type")
    @classmethod
    def validate_coin_type(cls, v: str) -> str:
        """Ensure coin type is uppercase."""
        return v.upper()


class PurchaseTokensResponse(BaseModel):
    """POST /v1/tokens/purchase response."""

    payment_id: UUID
    status: PaymentStatus
    amount_minor: int
    tokens: int
    bonus_tokens: int
    total_tokens: int
    checkout_url: str | None = None
    address: str | None = None
    qrcode_url: str | None = None
    balance: Decimal | None = None


class CompletePurchaseRequest(BaseModel):
    """POST /v1/tokens/purchase/complete request body."""

    payment_id: UUID


class PaymentStatusResponse(BaseModel):
    """GET /v1/tokens/purchase/{payment_id}/status response."""

    payment_id: UUID
    status: PaymentStatus
    gateway_status: GatewayStatus | None = None


class SettlementResponse(BaseModel):
    """Result of settling a payment."""

    payment_id: UUID
    status: PaymentStatus
    tokens_credited: int
    already_settled: bool
    balance: Decimal | None = None


# ============================================================================
# Balance / Free Message Models
# ============================================================================


class BalanceResponse(BaseModel):
    """GET /v1/user/balance response."""

    balance: Decimal


class FreeMessageStatusResponse(BaseModel):
    """GET /v1/user/free-messages response."""

    has_free_messages: bool
    used: int
    remaining: int
    limit: int


class ChatEligibilityResponse(BaseModel):
    """GET /v1/chats/eligibility response."""

    can_create: bool
    current_count: int
    limit: int | None
    subscription_tier: SubscriptionTierName


# ============================================================================
# Message Charging / Unlock Models
# ============================================================================


class ChargeMessageRequest(BaseModel):
    """POST /v1/chats/{chat_id}/messages/charge request body."""

    persona_id: UUID
    content: str = Field(..., min_length=1)


class MessageChargeResponse(BaseModel):
    """Result of charging an assistant message."""

    message_id: UUID
    token_cost: int
    remaining_tokens: Decimal
    using_free_message: bool
    free_messages_used: int
    free_messages_remaining: int
    free_message_limit: int
    is_locked: bool
    unlock_price: Decimal | None = None


class UnlockMessageResponse(BaseModel):
    """POST /v1/chats/{chat_id}/messages/{message_id}/unlock response."""

    success: bool
    content: str
    remaining_tokens: Decimal


class InsufficientTokensDetail(BaseModel):
    """Structured shortfall returned with 402 responses."""

    error: str = "Insufficient tokens"
    code: str = "INSUFFICIENT_TOKENS"
    required: Decimal
    available: Decimal


# ============================================================================
# Tip Models
# ============================================================================


class TipRequest(BaseModel):
    """POST /v1/tips request body."""

    chat_id: UUID
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    message: str | None = Field(None, max_length=500)


class TipResponse(BaseModel):
    """POST /v1/tips response."""

    tip_id: UUID
    amount: Decimal
    remaining_credits: Decimal


# ============================================================================
# Subscription Models
# ============================================================================


class SubscribeRequest(BaseModel):
    """POST /v1/subscriptions/subscribe request body."""

    tier_id: str = Field(..., min_length=1, max_length=20)
    payment_method_id: UUID | None = None


class SubscribeResponse(BaseModel):
    """POST /v1/subscriptions/subscribe response."""

    subscription_id: UUID
    payment_id: UUID
    tier: SubscriptionTierName
    price_minor: int
    bonus_tokens: int
    next_billing_date: str  # ISO 8601 timestamp


class CancelSubscriptionRequest(BaseModel):
    """POST /v1/subscriptions/cancel request body."""

    subscription_id: UUID


class CancelSubscriptionResponse(BaseModel):
    """POST /v1/subscriptions/cancel response."""

    subscription_id: UUID
    status: SubscriptionStatus
    end_date: str  # ISO 8601 timestamp


class UserSubscriptionResponse(BaseModel):
    """GET /v1/user/subscription response."""

    tier: SubscriptionTierName
    status: SubscriptionStatus
    expires_at: str | None
    features: list[str]


class SubscriptionRecordResponse(BaseModel):
    """One subscription in a user's history."""

    subscription_id: UUID
    payment_id: UUID | None
    tier: SubscriptionTierName
    status: SubscriptionStatus
    price_minor: int
    start_date: str  # ISO 8601 timestamp
    end_date: str  # ISO 8601 timestamp
    auto_renew: bool


class SubscriptionHistoryResponse(BaseModel):
    """GET /v1/subscriptions/history response."""

    subscriptions: list[SubscriptionRecordResponse]
    limit: int
    offset: int
    has_more: bool


class RenewalRunResponse(BaseModel):
    """POST /v1/cron/subscriptions/renew response."""

    scanned: int
    renewed: int
    expired: int
    skipped: int
    failed: int


# ============================================================================
# Auto-Topup Models
# ============================================================================


class AutoTopupSettingsRequest(BaseModel):
    """PUT /v1/user/auto-topup request body."""

    enabled: bool
    threshold_amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    package_id: str = Field(..., min_length=1, max_length=50)
    payment_method_id: UUID | None = None


class AutoTopupSettingsResponse(BaseModel):
    """Auto-topup configuration for the current user."""

    enabled: bool
    threshold_amount: Decimal
    package_id: str
    payment_method_id: UUID | None
    last_topup_at: str | None


class AutoTopupRunResponse(BaseModel):
    """POST /v1/cron/auto-topup response."""

    scanned: int
    topped_up: int
    skipped: int
    failed: int


# ============================================================================
# Payment Method / History Models
# ============================================================================


class PaymentMethodRequest(BaseModel):
    """POST /v1/user/payment-methods request body."""

    method_type: str = Field("crypto", min_length=1, max_length=20)
    label: str = Field(..., min_length=1, max_length=100)
    address: str = Field(..., min_length=1, max_length=255)
    is_default: bool = False

    @field_validator("address")
    @classmethod
    def strip_address(cls, v: str) -> str:
        """Strip surrounding whitespace; blank addresses are rejected."""
        v = v.strip()
        if not v:
            raise ValueError("address cannot be blank")
        return v


class PaymentMethodResponse(BaseModel):
    """Stored payment method."""

    payment_method_id: UUID
    method_type: str
    label: str | None
    address: str
    is_default: bool
    created_at: str  # ISO 8601 timestamp


class PaymentMethodsResponse(BaseModel):
    """GET /v1/user/payment-methods response."""

    payment_methods: list[PaymentMethodResponse]


class TransactionResponse(BaseModel):
    """One balance history entry."""

    transaction_id: UUID
    kind: TransactionKind
    status: PaymentStatus
    token_delta: Decimal
    amount_minor: int
    created_at: str  # ISO 8601 timestamp
    reference_id: UUID


class TransactionsResponse(BaseModel):
    """GET /v1/user/transactions response."""

    transactions: list[TransactionResponse]
    limit: int
    offset: int
    has_more: bool


# ============================================================================
# Webhook / Health Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Webhook acknowledgement."""

    received: bool
    event_id: str | None = None
    payment_status: PaymentStatus | None = None


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    version: str
