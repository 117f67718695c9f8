"""
API Routes - FastAPI endpoints for the token economy.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from structlog import get_logger

from chatcredits.api.dependencies import (
    get_current_user_id,
    get_payment_method_service,
    get_payment_provider,
    get_subscription_service,
    get_token_service,
    verify_cron_secret,
)
from chatcredits.config import Settings, get_settings
from chatcredits.db.session import Database, get_database
from chatcredits.exceptions import (
    ChatNotFoundError,
    DataIntegrityError,
    DuplicatePaymentMethodError,
    InsufficientCreditsError,
    InvalidPackageError,
    InvalidPaymentMethodError,
    InvalidPaymentStateError,
    InvalidTierError,
    MessageNotFoundError,
    MessageNotLockedError,
    PaymentMethodLimitError,
    PaymentNotFoundError,
    PaymentProviderError,
    PersonaNotFoundError,
    SubscriptionNotFoundError,
    TipsDisabledError,
    UserNotFoundError,
    WebhookVerificationError,
    WriteVerificationError,
)
from chatcredits.models.api import (
    AutoTopupRunResponse,
    AutoTopupSettingsRequest,
    AutoTopupSettingsResponse,
    BalanceResponse,
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    ChargeMessageRequest,
    ChatEligibilityResponse,
    CompletePurchaseRequest,
    CustomQuoteResponse,
    CustomTokenTierResponse,
    FreeMessageStatusResponse,
    HealthResponse,
    InsufficientTokensDetail,
    MessageChargeResponse,
    PaymentMethodRequest,
    PaymentMethodResponse,
    PaymentMethodsResponse,
    PaymentStatusResponse,
    PurchaseTokensRequest,
    PurchaseTokensResponse,
    RenewalRunResponse,
    SettlementResponse,
    SubscribeRequest,
    SubscribeResponse,
    SubscriptionHistoryResponse,
    SubscriptionRecordResponse,
    SubscriptionTierResponse,
    SubscriptionTiersResponse,
    TipRequest,
    TipResponse,
    TokenPackageResponse,
    TokenPackagesResponse,
    TransactionResponse,
    TransactionsResponse,
    UnlockMessageResponse,
    UserSubscriptionResponse,
    WebhookAckResponse,
)
from chatcredits.models.domain import AutoTopupConfig, PaymentMethodInfo
from chatcredits.services.autotopup import AutoTopupService
from chatcredits.services.payment_methods import PaymentMethodService
from chatcredits.services.payment_provider import PaymentProvider
from chatcredits.services.pricing import (
    CUSTOM_PACKAGE_ID,
    CUSTOM_TOKEN_TIERS,
    SUBSCRIPTION_TIERS,
    TOKEN_PACKAGES,
    calculate_custom_package,
    get_subscription_features,
)
from chatcredits.services.renewals import SubscriptionRenewalService
from chatcredits.services.subscriptions import SubscriptionService
from chatcredits.services.tokens import TokenService

logger = get_logger(__name__)

router = APIRouter()

MAX_PAGE_SIZE = 100


def _insufficient_tokens(required: Decimal, available: Decimal) -> HTTPException:
    """402 carrying the structured shortfall."""
    detail = InsufficientTokensDetail(required=required, available=available)
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail=detail.model_dump(mode="json"),
    )


def _integrity_error() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Database integrity error, please retry",
    )


def _auto_topup_response(config: AutoTopupConfig) -> AutoTopupSettingsResponse:
    return AutoTopupSettingsResponse(
        enabled=config.enabled,
        threshold_amount=config.threshold_amount,
        package_id=config.package_id,
        payment_method_id=config.payment_method_id,
        last_topup_at=config.last_topup_at.isoformat() if config.last_topup_at else None,
    )


def _payment_method_response(method: PaymentMethodInfo) -> PaymentMethodResponse:
    return PaymentMethodResponse(
        payment_method_id=method.payment_method_id,
        method_type=method.method_type,
        label=method.label,
        address=method.address,
        is_default=method.is_default,
        created_at=method.created_at.isoformat(),
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(
    database: Database = Depends(get_database),
    settings: Settings = Depends(get_settings),
) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await database.ping()
    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc

    return HealthResponse(status="healthy", database="connected", version=settings.api_version)


# =============================================================================
# Pricing / Token Purchases
# =============================================================================


@router.get("/v1/tokens/packages", response_model=TokenPackagesResponse)
async def list_token_packages() -> TokenPackagesResponse:
    """Predefined token packages and the custom purchase bands."""
    return TokenPackagesResponse(
        packages=[
            TokenPackageResponse(
                id=package.id,
                name=package.name,
                tokens=package.tokens,
                bonus=package.bonus,
                price_minor=package.price_minor,
                description=package.description,
                most_popular=package.most_popular,
            )
            for package in TOKEN_PACKAGES
        ],
        custom_tiers=[
            CustomTokenTierResponse(
                min_tokens=tier.min_tokens,
                max_tokens=tier.max_tokens,
                price_per_token=tier.price_per_token,
                bonus_percentage=tier.bonus_percentage,
            )
            for tier in CUSTOM_TOKEN_TIERS
        ],
    )


@router.get("/v1/tokens/quote", response_model=CustomQuoteResponse)
async def quote_custom_package(amount: int = Query(..., ge=1)) -> CustomQuoteResponse:
    """Price a custom token amount."""
    try:
        quote = calculate_custom_package(amount)
    except InvalidPackageError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return CustomQuoteResponse(
        tokens=quote.tokens,
        bonus=quote.bonus,
        total_tokens=quote.total_tokens,
        price_minor=quote.price_minor,
        price_per_token=quote.price_per_token,
        bonus_percentage=quote.bonus_percentage,
    )


@router.post(
    "/v1/tokens/purchase",
    response_model=PurchaseTokensResponse,
    status_code=status.HTTP_201_CREATED,
)
async def purchase_tokens(
    request: PurchaseTokensRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: TokenService = Depends(get_token_service),
) -> PurchaseTokensResponse:
    """
    Buy a predefined or custom token package.

    With a payment method the response carries the crypto checkout details
    and the payment stays pending; otherwise tokens are credited immediately.
    """
    minimum = service.settings.min_custom_token_amount
    if request.package_id == CUSTOM_PACKAGE_ID and (request.custom_token_amount or 0) < minimum:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Custom purchases require at least {minimum} tokens",
        )

    try:
        result = await service.purchase_tokens(
            user_id,
            request.package_id,
            custom_amount=request.custom_token_amount,
            payment_method_id=request.payment_method_id,
            coin_type=request.coin_type,
        )
    except (InvalidPackageError, InvalidPaymentMethodError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable",
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error() from exc

    return PurchaseTokensResponse(
        payment_id=result.payment_id,
        status=result.status,
        amount_minor=result.amount_minor,
        tokens=result.tokens,
        bonus_tokens=result.bonus_tokens,
        total_tokens=result.total_tokens,
        checkout_url=result.checkout_url,
        address=result.address,
        qrcode_url=result.qrcode_url,
        balance=result.balance,
    )


@router.post("/v1/tokens/purchase/complete", response_model=SettlementResponse)
async def complete_token_purchase(
    request: CompletePurchaseRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: TokenService = Depends(get_token_service),
) -> SettlementResponse:
    """Settle a pending purchase. Repeated calls do not credit twice."""
    try:
        result = await service.complete_token_purchase(request.payment_id, user_id=user_id)
    except PaymentNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found"
        ) from exc
    except InvalidPaymentStateError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error() from exc

    return SettlementResponse(
        payment_id=result.payment_id,
        status=result.status,
        tokens_credited=result.tokens_credited,
        already_settled=result.already_settled,
        balance=result.balance,
    )


@router.get("/v1/tokens/purchase/{payment_id}/status", response_model=PaymentStatusResponse)
async def get_purchase_status(
    payment_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: TokenService = Depends(get_token_service),
) -> PaymentStatusResponse:
    """Poll the gateway for a pending purchase and settle it on success."""
    try:
        result = await service.sync_payment_status(user_id, payment_id)
    except PaymentNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found"
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment provider unavailable",
        ) from exc

    return PaymentStatusResponse(
        payment_id=result.payment_id,
        status=result.status,
        gateway_status=result.gateway_status,
    )


# =============================================================================
# User Account
# =============================================================================


@router.get("/v1/user/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: UUID = Depends(get_current_user_id),
    service: TokenService = Depends(get_token_service),
) -> BalanceResponse:
    """Current token balance."""
    try:
        balance = await service.get_user_balance(user_id)
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        ) from exc
    return BalanceResponse(balance=balance)


@router.get("/v1/user/free-messages", response_model=FreeMessageStatusResponse)
async def get_free_messages(
    user_id: UUID = Depends(get_current_user_id),
    service: TokenService = Depends(get_token_service),
) -> FreeMessageStatusResponse:
    """Free-message quota usage."""
    result = await service.check_free_message_availability(user_id)
    return FreeMessageStatusResponse(
        has_free_messages=result.has_free_messages,
        used=result.used,
        remaining=result.remaining,
        limit=result.limit,
    )


@router.get("/v1/user/subscription", response_model=UserSubscriptionResponse)
async def get_user_subscription(
    user_id: UUID = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> UserSubscriptionResponse:
    """Effective subscription tier and features."""
    try:
        info = await service.get_user_subscription(user_id)
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        ) from exc

    return UserSubscriptionResponse(
        tier=info.tier,
        status=info.status,
        expires_at=info.expires_at.isoformat() if info.expires_at else None,
        features=list(info.features),
    )


@router.get("/v1/user/auto-topup", response_model=AutoTopupSettingsResponse)
async def get_auto_topup_settings(
    user_id: UUID = Depends(get_current_user_id),
    database: Database = Depends(get_database),
    settings: Settings = Depends(get_settings),
) -> AutoTopupSettingsResponse:
    """Auto-topup configuration (disabled defaults when never set)."""
    service = AutoTopupService(database.session_factory, settings)
    return _auto_topup_response(await service.get_settings(user_id))


@router.put("/v1/user/auto-topup", response_model=AutoTopupSettingsResponse)
async def update_auto_topup_settings(
    request: AutoTopupSettingsRequest,
    user_id: UUID = Depends(get_current_user_id),
    database: Database = Depends(get_database),
    settings: Settings = Depends(get_settings),
) -> AutoTopupSettingsResponse:
    """Create or replace the auto-topup configuration."""
    service = AutoTopupService(database.session_factory, settings)
    try:
        config = await service.update_settings(
            user_id,
            enabled=request.enabled,
            threshold_amount=request.threshold_amount,
            package_id=request.package_id,
            payment_method_id=request.payment_method_id,
        )
    except (InvalidPackageError, InvalidPaymentMethodError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except WriteVerificationError as exc:
        raise _integrity_error() from exc

    return _auto_topup_response(config)


@router.get("/v1/user/transactions", response_model=TransactionsResponse)
async def list_transactions(
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    user_id: UUID = Depends(get_current_user_id),
    service: TokenService = Depends(get_token_service),
) -> TransactionsResponse:
    """Balance history: payments and charged messages, newest first."""
    page = await service.list_transactions(user_id, limit=limit, offset=offset)
    return TransactionsResponse(
        transactions=[
            TransactionResponse(
                transaction_id=entry.transaction_id,
                kind=entry.kind,
                status=entry.status,
                token_delta=entry.token_delta,
                amount_minor=entry.amount_minor,
                created_at=entry.created_at.isoformat(),
                reference_id=entry.reference_id,
            )
            for entry in page.transactions
        ],
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more,
    )


@router.get("/v1/user/payment-methods", response_model=PaymentMethodsResponse)
async def list_payment_methods(
    user_id: UUID = Depends(get_current_user_id),
    service: PaymentMethodService = Depends(get_payment_method_service),
) -> PaymentMethodsResponse:
    """Stored payment methods, newest first."""
    methods = await service.list_payment_methods(user_id)
    return PaymentMethodsResponse(
        payment_methods=[_payment_method_response(method) for method in methods]
    )


@router.post(
    "/v1/user/payment-methods",
    response_model=PaymentMethodResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_payment_method(
    request: PaymentMethodRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: PaymentMethodService = Depends(get_payment_method_service),
) -> PaymentMethodResponse:
    """Store a payment method; the first one becomes the default."""
    try:
        method = await service.add_payment_method(
            user_id,
            label=request.label,
            address=request.address,
            method_type=request.method_type,
            is_default=request.is_default,
        )
    except (PaymentMethodLimitError, DuplicatePaymentMethodError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        ) from exc
    except WriteVerificationError as exc:
        raise _integrity_error() from exc

    return _payment_method_response(method)


@router.delete(
    "/v1/user/payment-methods/{payment_method_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_payment_method(
    payment_method_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: PaymentMethodService = Depends(get_payment_method_service),
) -> None:
    """Remove a payment method; a deleted default passes to the oldest remaining."""
    try:
        await service.delete_payment_method(user_id, payment_method_id)
    except InvalidPaymentMethodError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Payment method not found"
        ) from exc


@router.put(
    "/v1/user/payment-methods/{payment_method_id}/default",
    response_model=PaymentMethodResponse,
)
async def set_default_payment_method(
    payment_method_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: PaymentMethodService = Depends(get_payment_method_service),
) -> PaymentMethodResponse:
    """Make a payment method the default."""
    try:
        method = await service.set_default_payment_method(user_id, payment_method_id)
    except InvalidPaymentMethodError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Payment method not found"
        ) from exc

    return _payment_method_response(method)


# =============================================================================
# Subscriptions
# =============================================================================


@router.get("/v1/subscriptions/tiers", response_model=SubscriptionTiersResponse)
async def list_subscription_tiers() -> SubscriptionTiersResponse:
    """Paid tiers with their feature lists."""
    return SubscriptionTiersResponse(
        tiers=[
            SubscriptionTierResponse(
                id=tier.id.value,
                name=tier.name,
                price_minor=tier.price_minor,
                bonus_tokens=tier.bonus_tokens,
                token_discount=tier.token_discount,
                discount_multiplier=tier.discount_multiplier,
                chat_limit=tier.chat_limit,
                exclusive_personas=tier.exclusive_personas,
                description=tier.description,
                features=list(get_subscription_features(tier.id)),
            )
            for tier in SUBSCRIPTION_TIERS
        ]
    )


@router.post(
    "/v1/subscriptions/subscribe",
    response_model=SubscribeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def subscribe(
    request: SubscribeRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscribeResponse:
    """Subscribe to a paid tier; bonus tokens are credited immediately."""
    try:
        result = await service.create_subscription(
            user_id, request.tier_id, payment_method_id=request.payment_method_id
        )
    except (InvalidTierError, InvalidPaymentMethodError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error() from exc

    return SubscribeResponse(
        subscription_id=result.subscription_id,
        payment_id=result.payment_id,
        tier=result.tier,
        price_minor=result.price_minor,
        bonus_tokens=result.bonus_tokens,
        next_billing_date=result.end_date.isoformat(),
    )


@router.post("/v1/subscriptions/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    request: CancelSubscriptionRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> CancelSubscriptionResponse:
    """Stop renewal; access continues until the end of the period."""
    try:
        result = await service.cancel_subscription(user_id, request.subscription_id)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found"
        ) from exc
    except InvalidPaymentStateError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return CancelSubscriptionResponse(
        subscription_id=result.subscription_id,
        status=result.status,
        end_date=result.end_date.isoformat(),
    )


@router.get("/v1/subscriptions/history", response_model=SubscriptionHistoryResponse)
async def get_subscription_history(
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    user_id: UUID = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionHistoryResponse:
    """All of the caller's subscriptions, newest first."""
    page = await service.list_subscription_history(user_id, limit=limit, offset=offset)
    return SubscriptionHistoryResponse(
        subscriptions=[
            SubscriptionRecordResponse(
                subscription_id=record.subscription_id,
                payment_id=record.payment_id,
                tier=record.tier,
                status=record.status,
                price_minor=record.price_minor,
                start_date=record.start_date.isoformat(),
                end_date=record.end_date.isoformat(),
                auto_renew=record.auto_renew,
            )
            for record in page.subscriptions
        ],
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more,
    )


# =============================================================================
# Chats / Messages
# =============================================================================


@router.get("/v1/chats/eligibility", response_model=ChatEligibilityResponse)
async def get_chat_eligibility(
    user_id: UUID = Depends(get_current_user_id),
    service: TokenService = Depends(get_token_service),
) -> ChatEligibilityResponse:
    """Whether the user's tier allows another chat."""
    try:
        result = await service.can_user_create_chat(user_id)
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        ) from exc

    return ChatEligibilityResponse(
        can_create=result.can_create,
        current_count=result.current_count,
        limit=result.limit,
        subscription_tier=result.subscription_tier,
    )


@router.post(
    "/v1/chats/{chat_id}/messages/charge",
    response_model=MessageChargeResponse,
    status_code=status.HTTP_201_CREATED,
)
async def charge_message(
    chat_id: UUID,
    request: ChargeMessageRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: TokenService = Depends(get_token_service),
) -> MessageChargeResponse:
    """Record an assistant reply and charge the user for it."""
    try:
        result = await service.deduct_tokens_for_message(
            user_id, chat_id, request.persona_id, request.content
        )
    except (UserNotFoundError, PersonaNotFoundError, ChatNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error() from exc

    return MessageChargeResponse(
        message_id=result.message_id,
        token_cost=result.token_cost,
        remaining_tokens=result.remaining_tokens,
        using_free_message=result.using_free_message,
        free_messages_used=result.free_messages_used,
        free_messages_remaining=result.free_messages_remaining,
        free_message_limit=result.free_message_limit,
        is_locked=result.is_locked,
        unlock_price=result.unlock_price,
    )


@router.post(
    "/v1/chats/{chat_id}/messages/{message_id}/unlock",
    response_model=UnlockMessageResponse,
)
async def unlock_message(
    chat_id: UUID,
    message_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: TokenService = Depends(get_token_service),
) -> UnlockMessageResponse:
    """Spend tokens to reveal a locked message."""
    try:
        result = await service.unlock_message(user_id, chat_id, message_id)
    except MessageNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Message not found"
        ) from exc
    except MessageNotLockedError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error() from exc

    if not result.unlocked:
        raise _insufficient_tokens(result.required, result.available)

    return UnlockMessageResponse(
        success=True,
        content=result.content or "",
        remaining_tokens=result.available,
    )


# =============================================================================
# Tips
# =============================================================================


@router.post("/v1/tips", response_model=TipResponse, status_code=status.HTTP_201_CREATED)
async def send_tip(
    request: TipRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: TokenService = Depends(get_token_service),
) -> TipResponse:
    """Tip the creator of a chat's persona."""
    try:
        result = await service.send_tip(
            user_id, request.chat_id, request.amount, message=request.message
        )
    except (ChatNotFoundError, PersonaNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except TipsDisabledError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except InsufficientCreditsError as exc:
        raise _insufficient_tokens(exc.required, exc.available) from exc
    except UserNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise _integrity_error() from exc

    return TipResponse(
        tip_id=result.tip_id,
        amount=result.amount,
        remaining_credits=result.remaining_credits,
    )


# =============================================================================
# Webhooks / Cron
# =============================================================================


@router.post("/v1/webhooks/crypto", response_model=WebhookAckResponse)
async def crypto_webhook(
    request: Request,
    provider: PaymentProvider = Depends(get_payment_provider),
    service: TokenService = Depends(get_token_service),
) -> WebhookAckResponse:
    """
    Handle crypto gateway webhook events.

    Confirmed charges settle the matching purchase; failed charges mark it
    failed. Unknown charges are acknowledged so the gateway stops retrying.
    """
    payload = await request.body()
    signature = request.headers.get("X-CC-Webhook-Signature", "")

    try:
        event = await provider.verify_webhook(payload, signature)
    except WebhookVerificationError as exc:
        logger.warning("crypto_webhook_rejected", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature",
        ) from exc

    logger.info(
        "crypto_webhook_received",
        event_id=event.event_id,
        event_type=event.event_type,
        intent_id=event.intent_id,
        status=event.status.value,
    )

    try:
        settlement = await service.apply_gateway_status(event.intent_id, event.status)
    except PaymentNotFoundError:
        logger.warning("crypto_webhook_unknown_charge", intent_id=event.intent_id)
        return WebhookAckResponse(received=True, event_id=event.event_id)
    except InvalidPaymentStateError as exc:
        logger.warning(
            "crypto_webhook_state_conflict",
            intent_id=event.intent_id,
            current=exc.current,
            requested=exc.requested,
        )
        return WebhookAckResponse(received=True, event_id=event.event_id)

    return WebhookAckResponse(
        received=True,
        event_id=event.event_id,
        payment_status=settlement.status if settlement else None,
    )


@router.post(
    "/v1/cron/auto-topup",
    response_model=AutoTopupRunResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def run_auto_topup(
    database: Database = Depends(get_database),
    settings: Settings = Depends(get_settings),
) -> AutoTopupRunResponse:
    """Run one auto-topup batch (scheduler trigger)."""
    service = AutoTopupService(database.session_factory, settings)
    summary = await service.process_auto_topups()
    return AutoTopupRunResponse(
        scanned=summary.scanned,
        topped_up=summary.topped_up,
        skipped=summary.skipped,
        failed=summary.failed,
    )


@router.post(
    "/v1/cron/subscriptions/renew",
    response_model=RenewalRunResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def run_subscription_renewals(
    database: Database = Depends(get_database),
    settings: Settings = Depends(get_settings),
) -> RenewalRunResponse:
    """Renew or expire subscriptions past their end date (scheduler trigger)."""
    service = SubscriptionRenewalService(database.session_factory, settings)
    summary = await service.process_renewals()
    return RenewalRunResponse(
        scanned=summary.scanned,
        renewed=summary.renewed,
        expired=summary.expired,
        skipped=summary.skipped,
        failed=summary.failed,
    )
