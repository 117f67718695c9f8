"""
Token Service - Message accounting, unlocks, purchases and tips.

NO DICTIONARIES - All operations use strongly typed domain models.

Balance mutations go through BalanceStore. Write paths follow the pattern:
1. Lock or conditionally update
2. Flush to database
3. Read back and verify
4. Commit
"""

import random
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from sqlalchemy import BigInteger, String, case, cast, func, literal, select, union_all, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatcredits.config import Settings, get_settings
from chatcredits.db.models import (
    CREDITS,
    Chat,
    Message,
    MessageUnlock,
    Payment,
    PaymentMethod,
    Persona,
    Tip,
    User,
)
from chatcredits.exceptions import (
    ChatNotFoundError,
    InsufficientCreditsError,
    InvalidPaymentMethodError,
    InvalidPaymentStateError,
    MessageNotFoundError,
    MessageNotLockedError,
    PaymentNotFoundError,
    PaymentProviderError,
    PersonaNotFoundError,
    TipsDisabledError,
    UserNotFoundError,
    WriteVerificationError,
)
from chatcredits.models.api import (
    GatewayStatus,
    MessageRole,
    PaymentStatus,
    PaymentType,
    SubscriptionTierName,
    TransactionKind,
)
from chatcredits.models.domain import (
    ChatEligibility,
    FreeMessageStatus,
    MessageCharge,
    PaymentSync,
    PurchaseResult,
    SettlementResult,
    TipResult,
    Transaction,
    TransactionPage,
    UnlockResult,
)
from chatcredits.observability import get_logger, metrics
from chatcredits.services.balance import BalanceStore
from chatcredits.services.payment_provider import PaymentIntentRequest, PaymentProvider
from chatcredits.services.pricing import (
    CHAT_LIMITS,
    MESSAGE_COST_DISCOUNTS,
    parse_tier,
    resolve_purchase,
)

logger = get_logger(__name__)

BASE_MESSAGE_COST = 10
DOMINANCE_COST_STEP = 2


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def calculate_message_token_cost(
    dominance_level: int, subscription_status: SubscriptionTierName | str | None
) -> int:
    """
    Token cost of one assistant message.

    cost = round((10 + 2 * dominance) * discount), rounding half-up.
    Unknown tiers are charged at the free rate.
    """
    tier = (
        subscription_status
        if isinstance(subscription_status, SubscriptionTierName)
        else parse_tier(subscription_status)
    )
    base_cost = BASE_MESSAGE_COST + dominance_level * DOMINANCE_COST_STEP
    cost = Decimal(base_cost) * MESSAGE_COST_DISCOUNTS[tier]
    return int(cost.quantize(Decimal("1"), ROUND_HALF_UP))


def effective_tier(user: User) -> SubscriptionTierName:
    """Tier the user is billed at; a lapsed paid status counts as free."""
    tier = parse_tier(user.subscription_status)
    expiry = user.subscription_expiry
    if tier != SubscriptionTierName.FREE and expiry is not None and expiry < _utc_now():
        return SubscriptionTierName.FREE
    return tier


class TokenService:
    """
    Token accounting engine.

    Read paths that only gate availability (free-message check, chat
    eligibility) fail open on storage errors when Settings.fail_open_reads
    is enabled. Write paths always propagate.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        payment_provider: PaymentProvider | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize token service with database session."""
        self.session = session
        self.settings = settings or get_settings()
        self.payment_provider = payment_provider
        self.rng = rng or random.Random()
        self.balances = BalanceStore(session)

    # ------------------------------------------------------------------
    # Message accounting
    # ------------------------------------------------------------------

    def calculate_message_token_cost(
        self, dominance_level: int, subscription_status: SubscriptionTierName | str | None
    ) -> int:
        """Token cost of one assistant message for a persona and tier."""
        return calculate_message_token_cost(dominance_level, subscription_status)

    async def check_free_message_availability(self, user_id: UUID) -> FreeMessageStatus:
        """
        Report the user's free-message quota.

        On a storage error the full quota is reported as available (fail open)
        unless fail_open_reads is disabled.
        """
        limit = self.settings.free_message_limit
        try:
            used = await self._count_free_messages(user_id)
        except SQLAlchemyError as exc:
            if not self.settings.fail_open_reads:
                raise
            await self._fail_open("free_message_check", user_id, exc)
            used = 0

        remaining = max(limit - used, 0)
        return FreeMessageStatus(
            has_free_messages=remaining > 0,
            used=used,
            remaining=remaining,
            limit=limit,
        )

    async def deduct_tokens_for_message(
        self, user_id: UUID, chat_id: UUID, persona_id: UUID, content: str
    ) -> MessageCharge:
        """
        Record an assistant reply and charge for it.

        Free messages are consumed first. Once the quota is spent the balance
        is debited by the message cost, floored at zero; the reply is never
        blocked. The reply may be locked behind an unlock price according to
        the persona's lock chance.

        Pricing uses the persona the chat was opened with; a persona_id naming
        any other persona is rejected.

        Raises:
            UserNotFoundError: User doesn't exist
            ChatNotFoundError: Chat doesn't exist, belongs to another user or
                was opened with a different persona
            PersonaNotFoundError: Chat's persona is gone
        """
        # Serializes quota counting and debit per user
        user = await self._lock_user_for_update(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        chat = await self._get_user_chat(user_id, chat_id)
        if chat.persona_id != persona_id:
            logger.warning(
                "charge_persona_mismatch",
                user_id=str(user_id),
                chat_id=str(chat_id),
                persona_id=str(persona_id),
            )
            raise ChatNotFoundError(chat_id)

        persona = await self.session.get(Persona, chat.persona_id)
        if persona is None:
            raise PersonaNotFoundError(chat.persona_id)

        tier = effective_tier(user)
        cost = calculate_message_token_cost(persona.dominance_level, tier)

        limit = self.settings.free_message_limit
        used = await self._count_free_messages(user_id)
        using_free_message = used < limit

        if using_free_message:
            token_cost = 0
            used += 1
            balance = user.credits
        else:
            token_cost = cost
            balance = await self.balances.debit_clamped(user_id, cost)

        is_locked = self._should_lock(persona)
        unlock_price = None
        if is_locked:
            unlock_price = persona.lock_message_price or self.settings.default_unlock_price

        message = Message(
            chat_id=chat_id,
            user_id=user_id,
            role=MessageRole.ASSISTANT.value,
            content=content,
            token_cost=token_cost,
            is_free_message=using_free_message,
            is_locked=is_locked,
            unlock_price=unlock_price,
        )
        self.session.add(message)
        await self.session.flush()

        verified_message = await self.session.get(Message, message.id)
        if verified_message is None:
            raise WriteVerificationError(f"Message {message.id} not found after insert")

        await self.session.commit()

        metrics.record_message_charge(using_free_message, tier.value, token_cost)
        logger.info(
            "tokens_deducted",
            user_id=str(user_id),
            chat_id=str(chat_id),
            message_id=str(verified_message.id),
            token_cost=token_cost,
            free_message=using_free_message,
            balance=str(balance),
            locked=is_locked,
        )

        return MessageCharge(
            message_id=verified_message.id,
            token_cost=token_cost,
            remaining_tokens=balance,
            using_free_message=using_free_message,
            free_messages_used=used,
            free_messages_remaining=max(limit - used, 0),
            free_message_limit=limit,
            is_locked=is_locked,
            unlock_price=unlock_price,
        )

    async def unlock_message(
        self, user_id: UUID, chat_id: UUID, message_id: UUID
    ) -> UnlockResult:
        """
        Spend the unlock price to reveal a locked message.

        An insufficient balance is reported in the result and changes nothing.

        Raises:
            MessageNotFoundError: Message isn't in one of the user's chats
            MessageNotLockedError: Message is already visible
        """
        message = await self._get_chat_message_for_update(user_id, chat_id, message_id)
        if not message.is_locked:
            raise MessageNotLockedError(message_id)

        price = Decimal(message.unlock_price or self.settings.default_unlock_price)

        balance = await self.balances.try_debit(user_id, price)
        if balance is None:
            available = await self.balances.get_balance(user_id)
            await self.session.rollback()
            metrics.unlocks_total.labels(outcome="insufficient").inc()
            logger.info(
                "unlock_insufficient_tokens",
                user_id=str(user_id),
                message_id=str(message_id),
                required=str(price),
                available=str(available),
            )
            return UnlockResult(
                unlocked=False,
                message_id=message_id,
                required=price,
                available=available,
            )

        payment = Payment(
            user_id=user_id,
            amount_minor=0,
            credits_spent=price,
            payment_type=PaymentType.MESSAGE_UNLOCK.value,
            status=PaymentStatus.COMPLETED.value,
            payment_method="credits",
            completed_at=_utc_now(),
        )
        self.session.add(payment)
        await self.session.flush()

        self.session.add(
            MessageUnlock(
                message_id=message_id,
                user_id=user_id,
                amount=price,
                payment_id=payment.id,
            )
        )
        message.is_locked = False
        await self.session.flush()
        await self.session.commit()

        metrics.unlocks_total.labels(outcome="unlocked").inc()
        metrics.record_debit("unlock", float(price))
        logger.info(
            "message_unlocked",
            user_id=str(user_id),
            message_id=str(message_id),
            price=str(price),
            balance=str(balance),
        )

        return UnlockResult(
            unlocked=True,
            message_id=message_id,
            required=price,
            available=balance,
            content=message.content,
        )

    async def get_user_balance(self, user_id: UUID) -> Decimal:
        """
        Get the user's token balance.

        Raises:
            UserNotFoundError: User doesn't exist
        """
        return await self.balances.get_balance(user_id)

    async def can_user_create_chat(self, user_id: UUID) -> ChatEligibility:
        """
        Check the tier's chat limit against the user's chat count.

        Fails open (allowed, unlimited) on storage errors.

        Raises:
            UserNotFoundError: User doesn't exist
        """
        try:
            user = await self.session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)

            tier = effective_tier(user)
            limit = CHAT_LIMITS[tier]
            result = await self.session.execute(
                select(func.count()).select_from(Chat).where(Chat.user_id == user_id)
            )
            count = result.scalar_one()
        except SQLAlchemyError as exc:
            if not self.settings.fail_open_reads:
                raise
            await self._fail_open("chat_eligibility", user_id, exc)
            return ChatEligibility(
                can_create=True,
                current_count=0,
                limit=None,
                subscription_tier=SubscriptionTierName.FREE,
            )

        return ChatEligibility(
            can_create=limit is None or count < limit,
            current_count=count,
            limit=limit,
            subscription_tier=tier,
        )

    # ------------------------------------------------------------------
    # Purchases and settlement
    # ------------------------------------------------------------------

    async def purchase_tokens(
        self,
        user_id: UUID,
        package_id: str,
        custom_amount: int | None = None,
        payment_method_id: UUID | None = None,
        coin_type: str = "BTC",
    ) -> PurchaseResult:
        """
        Start a token purchase.

        With a payment provider and a payment method, a gateway checkout is
        opened and the payment stays pending until the gateway reports
        success. Otherwise the purchase settles immediately.

        Raises:
            InvalidPackageError: Unknown package or invalid custom amount
            InvalidPaymentMethodError: Payment method isn't the user's
            UserNotFoundError: User doesn't exist
            PaymentProviderError: Gateway rejected the checkout
        """
        quote = resolve_purchase(package_id, custom_amount)
        await self.balances.get_balance(user_id)

        if payment_method_id is not None:
            await self._require_payment_method(user_id, payment_method_id)

        use_gateway = self.payment_provider is not None and payment_method_id is not None

        payment = Payment(
            user_id=user_id,
            amount_minor=quote.price_minor,
            payment_type=PaymentType.TOKEN_PURCHASE.value,
            status=PaymentStatus.PENDING.value,
            payment_method="crypto" if use_gateway else "system",
            payment_method_id=payment_method_id,
            tokens_amount=quote.tokens,
            bonus_tokens=quote.bonus,
        )
        self.session.add(payment)
        await self.session.flush()

        verified_payment = await self.session.get(Payment, payment.id)
        if verified_payment is None:
            raise WriteVerificationError(f"Payment {payment.id} not found after insert")

        if not use_gateway:
            settlement = await self.settle_payment(verified_payment.id)
            await self.session.commit()
            logger.info(
                "tokens_purchased",
                user_id=str(user_id),
                payment_id=str(verified_payment.id),
                package_id=quote.package_id,
                tokens=quote.total_tokens,
            )
            return PurchaseResult(
                payment_id=verified_payment.id,
                status=settlement.status,
                amount_minor=quote.price_minor,
                tokens=quote.tokens,
                bonus_tokens=quote.bonus,
                balance=settlement.balance,
            )

        assert self.payment_provider is not None
        try:
            intent = await self.payment_provider.create_payment_intent(
                PaymentIntentRequest(
                    amount_minor=quote.price_minor,
                    currency=verified_payment.currency,
                    description=f"{quote.total_tokens} chat tokens",
                    user_id=str(user_id),
                    payment_reference=str(verified_payment.id),
                    payment_type=PaymentType.TOKEN_PURCHASE.value,
                    coin_type=coin_type,
                )
            )
        except PaymentProviderError:
            await self.session.rollback()
            metrics.record_error("PaymentProviderError", "purchase_tokens")
            raise

        verified_payment.payment_intent = intent.intent_id
        await self.session.flush()
        await self.session.commit()

        logger.info(
            "token_checkout_created",
            user_id=str(user_id),
            payment_id=str(verified_payment.id),
            intent_id=intent.intent_id,
            package_id=quote.package_id,
        )

        return PurchaseResult(
            payment_id=verified_payment.id,
            status=PaymentStatus.PENDING,
            amount_minor=quote.price_minor,
            tokens=quote.tokens,
            bonus_tokens=quote.bonus,
            checkout_url=intent.checkout_url,
            address=intent.address,
            qrcode_url=intent.qrcode_url,
        )

    async def complete_token_purchase(
        self, payment_id: UUID, user_id: UUID | None = None
    ) -> SettlementResult:
        """
        Settle a pending purchase and credit its tokens.

        Safe to call repeatedly: only the first call credits. Purchases backed
        by a gateway charge settle only through the gateway's status (webhook
        or sync), never here.

        Raises:
            PaymentNotFoundError: Payment doesn't exist (or isn't the user's)
            InvalidPaymentStateError: Payment already failed, isn't a token
                purchase, or awaits a gateway charge
        """
        payment = await self.session.get(Payment, payment_id)
        if payment is None or (user_id is not None and payment.user_id != user_id):
            raise PaymentNotFoundError(payment_id)

        if (
            payment.payment_type != PaymentType.TOKEN_PURCHASE.value
            or payment.payment_intent is not None
        ):
            logger.warning(
                "manual_completion_rejected",
                payment_id=str(payment_id),
                payment_type=payment.payment_type,
                has_intent=payment.payment_intent is not None,
            )
            raise InvalidPaymentStateError(
                payment_id, payment.status, PaymentStatus.COMPLETED.value
            )

        settlement = await self.settle_payment(payment_id)
        await self.session.commit()
        return settlement

    async def settle_payment(self, payment_id: UUID) -> SettlementResult:
        """
        Move a payment pending -> completed and credit its tokens.

        The transition is a conditional UPDATE, so exactly one caller wins
        and credits. The caller owns the commit.

        Raises:
            PaymentNotFoundError: Payment doesn't exist
            InvalidPaymentStateError: Payment already failed
        """
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .values(status=PaymentStatus.COMPLETED.value, completed_at=_utc_now())
            .returning(
                Payment.user_id,
                Payment.payment_type,
                Payment.tokens_amount,
                Payment.bonus_tokens,
            )
        )
        result = await self.session.execute(stmt)
        row = result.one_or_none()

        if row is None:
            payment = await self.session.get(Payment, payment_id)
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            if payment.status != PaymentStatus.COMPLETED.value:
                raise InvalidPaymentStateError(
                    payment_id, payment.status, PaymentStatus.COMPLETED.value
                )
            return SettlementResult(
                payment_id=payment_id,
                status=PaymentStatus.COMPLETED,
                tokens_credited=0,
                already_settled=True,
            )

        tokens = row.tokens_amount + row.bonus_tokens
        balance = await self.balances.credit(row.user_id, tokens)
        if tokens > 0:
            metrics.record_credit(row.payment_type, tokens)

        logger.info(
            "payment_settled",
            payment_id=str(payment_id),
            user_id=str(row.user_id),
            payment_type=row.payment_type,
            tokens_credited=tokens,
        )

        return SettlementResult(
            payment_id=payment_id,
            status=PaymentStatus.COMPLETED,
            tokens_credited=tokens,
            already_settled=False,
            balance=balance,
        )

    async def fail_payment(self, payment_id: UUID) -> SettlementResult:
        """
        Move a payment pending -> failed. Completed payments are left alone.

        Raises:
            PaymentNotFoundError: Payment doesn't exist
            InvalidPaymentStateError: Payment already completed
        """
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING.value)
            .values(status=PaymentStatus.FAILED.value, completed_at=_utc_now())
            .returning(Payment.id)
        )
        result = await self.session.execute(stmt)
        if result.scalar_one_or_none() is None:
            payment = await self.session.get(Payment, payment_id)
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            if payment.status != PaymentStatus.FAILED.value:
                raise InvalidPaymentStateError(
                    payment_id, payment.status, PaymentStatus.FAILED.value
                )
            return SettlementResult(
                payment_id=payment_id,
                status=PaymentStatus.FAILED,
                tokens_credited=0,
                already_settled=True,
            )

        logger.warning("payment_failed", payment_id=str(payment_id))
        return SettlementResult(
            payment_id=payment_id,
            status=PaymentStatus.FAILED,
            tokens_credited=0,
            already_settled=False,
        )

    async def apply_gateway_status(
        self, payment_intent: str, status: GatewayStatus
    ) -> SettlementResult | None:
        """
        Apply a gateway status report to the matching payment.

        succeeded settles, failed marks the payment failed, anything else is
        ignored (returns None).

        Raises:
            PaymentNotFoundError: No payment carries this intent id
        """
        result = await self.session.execute(
            select(Payment).where(Payment.payment_intent == payment_intent)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise PaymentNotFoundError(payment_intent)

        if status == GatewayStatus.SUCCEEDED:
            settlement = await self.settle_payment(payment.id)
        elif status == GatewayStatus.FAILED:
            settlement = await self.fail_payment(payment.id)
        else:
            logger.debug(
                "gateway_status_ignored", payment_intent=payment_intent, status=status.value
            )
            return None

        await self.session.commit()
        return settlement

    async def sync_payment_status(self, user_id: UUID, payment_id: UUID) -> PaymentSync:
        """
        Poll the gateway for a pending purchase and apply the result.

        Raises:
            PaymentNotFoundError: Payment doesn't exist or isn't the user's
            PaymentProviderError: Gateway lookup failed
        """
        payment = await self.session.get(Payment, payment_id)
        if payment is None or payment.user_id != user_id:
            raise PaymentNotFoundError(payment_id)

        if (
            payment.status != PaymentStatus.PENDING.value
            or payment.payment_intent is None
            or self.payment_provider is None
        ):
            return PaymentSync(
                payment_id=payment_id,
                status=PaymentStatus(payment.status),
                gateway_status=None,
            )

        gateway = await self.payment_provider.get_payment_status(payment.payment_intent)
        settlement = await self.apply_gateway_status(payment.payment_intent, gateway.status)

        return PaymentSync(
            payment_id=payment_id,
            status=settlement.status if settlement else PaymentStatus.PENDING,
            gateway_status=gateway.status,
        )

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def list_transactions(
        self, user_id: UUID, limit: int = 20, offset: int = 0
    ) -> TransactionPage:
        """
        User's balance history, newest first.

        Merges the payments ledger with charged messages. Free messages move
        nothing and are left out. One extra row is fetched to tell whether
        another page follows.

        Raises:
            ValueError: Non-positive limit or negative offset
        """
        if limit < 1 or offset < 0:
            raise ValueError(f"Invalid page: limit={limit}, offset={offset}")

        payments = select(
            Payment.id.label("transaction_id"),
            Payment.payment_type.label("kind"),
            Payment.status.label("status"),
            case(
                (Payment.credits_spent > 0, -Payment.credits_spent),
                else_=cast(Payment.tokens_amount + Payment.bonus_tokens, CREDITS),
            ).label("token_delta"),
            Payment.amount_minor.label("amount_minor"),
            Payment.created_at.label("created_at"),
            Payment.id.label("reference_id"),
        ).where(Payment.user_id == user_id)

        charges = select(
            Message.id.label("transaction_id"),
            literal(TransactionKind.MESSAGE_CHARGE.value, String).label("kind"),
            literal(PaymentStatus.COMPLETED.value, String).label("status"),
            cast(-Message.token_cost, CREDITS).label("token_delta"),
            literal(0, BigInteger).label("amount_minor"),
            Message.created_at.label("created_at"),
            Message.chat_id.label("reference_id"),
        ).where(Message.user_id == user_id, Message.token_cost > 0)

        history = union_all(payments, charges).subquery()
        result = await self.session.execute(
            select(history)
            .order_by(history.c.created_at.desc(), history.c.transaction_id)
            .limit(limit + 1)
            .offset(offset)
        )
        rows = result.all()

        return TransactionPage(
            transactions=tuple(
                Transaction(
                    transaction_id=row.transaction_id,
                    kind=TransactionKind(row.kind),
                    status=PaymentStatus(row.status),
                    token_delta=Decimal(row.token_delta),
                    amount_minor=row.amount_minor,
                    created_at=row.created_at,
                    reference_id=row.reference_id,
                )
                for row in rows[:limit]
            ),
            limit=limit,
            offset=offset,
            has_more=len(rows) > limit,
        )

    # ------------------------------------------------------------------
    # Tips
    # ------------------------------------------------------------------

    async def send_tip(
        self,
        user_id: UUID,
        chat_id: UUID,
        amount: Decimal,
        message: str | None = None,
    ) -> TipResult:
        """
        Tip the creator of the chat's persona.

        Raises:
            ValueError: Amount isn't positive
            ChatNotFoundError: Chat doesn't exist or belongs to another user
            PersonaNotFoundError: Chat's persona is gone
            TipsDisabledError: Persona doesn't accept tips
            InsufficientCreditsError: Balance below the tip amount
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValueError(f"Tip amount must be positive: {amount}")

        chat = await self._get_user_chat(user_id, chat_id)
        persona = await self.session.get(Persona, chat.persona_id)
        if persona is None:
            raise PersonaNotFoundError(chat.persona_id)
        if not persona.tip_enabled:
            raise TipsDisabledError(persona.id)

        balance = await self.balances.try_debit(user_id, amount)
        if balance is None:
            available = await self.balances.get_balance(user_id)
            await self.session.rollback()
            raise InsufficientCreditsError(available, amount)

        payment = Payment(
            user_id=user_id,
            amount_minor=0,
            credits_spent=amount,
            payment_type=PaymentType.TIP.value,
            status=PaymentStatus.COMPLETED.value,
            payment_method="credits",
            completed_at=_utc_now(),
        )
        self.session.add(payment)
        await self.session.flush()

        tip = Tip(
            chat_id=chat_id,
            from_user_id=user_id,
            to_user_id=persona.created_by,
            amount=amount,
            message=message,
            payment_id=payment.id,
        )
        self.session.add(tip)
        await self.session.flush()

        verified_tip = await self.session.get(Tip, tip.id)
        if verified_tip is None:
            raise WriteVerificationError(f"Tip {tip.id} not found after insert")

        await self.session.commit()

        metrics.record_debit("tip", float(amount))
        logger.info(
            "tip_sent",
            user_id=str(user_id),
            chat_id=str(chat_id),
            recipient=str(persona.created_by) if persona.created_by else "system",
            amount=str(amount),
        )

        return TipResult(
            tip_id=verified_tip.id,
            payment_id=payment.id,
            amount=amount,
            remaining_credits=balance,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _should_lock(self, persona: Persona) -> bool:
        chance = persona.lock_message_chance
        if chance is None:
            chance = self.settings.default_lock_chance
        return chance > 0 and self.rng.random() < chance

    async def _fail_open(self, operation: str, user_id: UUID, exc: SQLAlchemyError) -> None:
        """Log and count a read that fell back to permissive defaults."""
        logger.warning(
            "read_failed_open", operation=operation, user_id=str(user_id), error=str(exc)
        )
        metrics.record_fail_open(operation)
        await self.session.rollback()

    async def _count_free_messages(self, user_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(Message)
            .where(Message.user_id == user_id, Message.is_free_message.is_(True))
        )
        return result.scalar_one()

    async def _lock_user_for_update(self, user_id: UUID) -> User | None:
        """Lock user row for update (SELECT FOR UPDATE)."""
        result = await self.session.execute(
            select(User).where(User.id == user_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def _get_user_chat(self, user_id: UUID, chat_id: UUID) -> Chat:
        result = await self.session.execute(
            select(Chat).where(Chat.id == chat_id, Chat.user_id == user_id)
        )
        chat = result.scalar_one_or_none()
        if chat is None:
            raise ChatNotFoundError(chat_id)
        return chat

    async def _get_chat_message_for_update(
        self, user_id: UUID, chat_id: UUID, message_id: UUID
    ) -> Message:
        result = await self.session.execute(
            select(Message)
            .join(Chat, Chat.id == Message.chat_id)
            .where(
                Message.id == message_id,
                Message.chat_id == chat_id,
                Chat.user_id == user_id,
            )
            .with_for_update(of=Message)
        )
        message = result.scalar_one_or_none()
        if message is None:
            raise MessageNotFoundError(message_id)
        return message

    async def _require_payment_method(self, user_id: UUID, payment_method_id: UUID) -> None:
        method = await self.session.get(PaymentMethod, payment_method_id)
        if method is None or method.user_id != user_id:
            raise InvalidPaymentMethodError(payment_method_id)
