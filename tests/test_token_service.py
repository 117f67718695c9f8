"""
Tests for TokenService.

Unit tests for message charging, unlocks, chat eligibility, purchases,
settlement and tips.
"""

import random
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from conftest import (
    create_mock_chat,
    create_mock_message,
    create_mock_payment,
    create_mock_payment_method,
    create_mock_persona,
    create_mock_user,
    make_settings,
    rows_result,
    scalar_result,
)
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from chatcredits.db.models import Message, Payment, PaymentMethod, Persona, Tip, User
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
    PaymentStatus,
    SubscriptionTierName,
    TransactionKind,
)
from chatcredits.models.domain import SettlementResult
from chatcredits.services.payment_provider import PaymentIntentResult, PaymentStatusResult
from chatcredits.services.tokens import (
    TokenService,
    calculate_message_token_cost,
    effective_tier,
)


def session_get_returning(objects: dict) -> AsyncMock:
    """session.get stand-in dispatching on the model class."""

    async def _get(model, key):
        return objects.get(model)

    return AsyncMock(side_effect=_get)


def verified_row() -> MagicMock:
    row = MagicMock()
    row.id = uuid4()
    return row


# ============================================================================
# Cost calculation
# ============================================================================


class TestMessageCost:
    """Tests for calculate_message_token_cost."""

    def test_free_tier_dominance_three(self):
        assert calculate_message_token_cost(3, "free") == 16

    def test_vip_tier_dominance_one(self):
        # 12 * 0.3 = 3.6
        assert calculate_message_token_cost(1, SubscriptionTierName.VIP) == 4

    def test_premium_rounds_half_up(self):
        # (10 + 2*1) * 0.5 = 6, (10 + 2*3) * 0.5 = 8
        assert calculate_message_token_cost(1, "premium") == 6
        assert calculate_message_token_cost(3, "premium") == 8

    def test_basic_tier(self):
        # 14 * 0.8 = 11.2
        assert calculate_message_token_cost(2, "basic") == 11

    @pytest.mark.parametrize("status", [None, "", "gold"])
    def test_unknown_tier_charged_at_free_rate(self, status):
        assert calculate_message_token_cost(5, status) == 20

    def test_service_delegates(self, token_service: TokenService):
        assert token_service.calculate_message_token_cost(3, "free") == 16


class TestEffectiveTier:
    """Tests for effective_tier."""

    def test_active_paid_tier(self):
        user = create_mock_user(
            subscription_status="vip",
            subscription_expiry=datetime.now(UTC) + timedelta(days=3),
        )
        assert effective_tier(user) == SubscriptionTierName.VIP

    def test_lapsed_paid_tier_is_free(self):
        user = create_mock_user(
            subscription_status="premium",
            subscription_expiry=datetime.now(UTC) - timedelta(seconds=1),
        )
        assert effective_tier(user) == SubscriptionTierName.FREE

    def test_paid_tier_without_expiry(self):
        user = create_mock_user(subscription_status="basic")
        assert effective_tier(user) == SubscriptionTierName.BASIC


# ============================================================================
# Free messages
# ============================================================================


class TestFreeMessageAvailability:
    """Tests for check_free_message_availability."""

    async def test_partial_usage(self, token_service: TokenService, db_session: AsyncMock):
        db_session.execute.return_value = scalar_result(4)

        result = await token_service.check_free_message_availability(uuid4())

        assert result.has_free_messages is True
        assert result.used == 4
        assert result.remaining == 6
        assert result.limit == 10

    async def test_quota_exhausted(self, token_service: TokenService, db_session: AsyncMock):
        db_session.execute.return_value = scalar_result(12)

        result = await token_service.check_free_message_availability(uuid4())

        assert result.has_free_messages is False
        assert result.remaining == 0

    async def test_storage_error_fails_open(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        db_session.execute.side_effect = OperationalError("SELECT", {}, Exception("down"))

        result = await token_service.check_free_message_availability(uuid4())

        assert result.has_free_messages is True
        assert result.used == 0
        assert result.remaining == 10
        db_session.rollback.assert_awaited_once()

    async def test_storage_error_propagates_when_fail_open_disabled(self, db_session: AsyncMock):
        service = TokenService(db_session, make_settings(fail_open_reads=False))
        db_session.execute.side_effect = SQLAlchemyError("down")

        with pytest.raises(SQLAlchemyError):
            await service.check_free_message_availability(uuid4())


# ============================================================================
# Message charging
# ============================================================================


class TestDeductTokensForMessage:
    """Tests for deduct_tokens_for_message."""

    async def test_free_message_consumed_first(
        self,
        token_service: TokenService,
        db_session: AsyncMock,
        persona: MagicMock,
    ):
        user = create_mock_user(credits="20")
        chat = create_mock_chat(user.id, persona.id)
        verified = verified_row()
        db_session.execute.side_effect = [
            scalar_result(user),
            scalar_result(chat),
            scalar_result(3),
        ]
        db_session.get = session_get_returning({Persona: persona, Message: verified})

        result = await token_service.deduct_tokens_for_message(
            user.id, chat.id, persona.id, "hello"
        )

        assert result.using_free_message is True
        assert result.token_cost == 0
        assert result.remaining_tokens == Decimal("20")
        assert result.free_messages_used == 4
        assert result.free_messages_remaining == 6
        assert result.message_id == verified.id
        db_session.commit.assert_awaited_once()

        message = db_session.add.call_args.args[0]
        assert isinstance(message, Message)
        assert message.is_free_message is True
        assert message.token_cost == 0

    async def test_paid_message_after_quota(
        self,
        token_service: TokenService,
        db_session: AsyncMock,
        persona: MagicMock,
    ):
        """Dominance 3, free tier, 10 free messages used: 16 tokens charged."""
        user = create_mock_user(credits="20")
        chat = create_mock_chat(user.id, persona.id)
        db_session.execute.side_effect = [
            scalar_result(user),
            scalar_result(chat),
            scalar_result(10),
            scalar_result(Decimal("4")),
        ]
        db_session.get = session_get_returning({Persona: persona, Message: verified_row()})

        result = await token_service.deduct_tokens_for_message(
            user.id, chat.id, persona.id, "hello"
        )

        assert result.using_free_message is False
        assert result.token_cost == 16
        assert result.remaining_tokens == Decimal("4")
        assert result.free_messages_remaining == 0
        assert db_session.execute.await_count == 4

    async def test_vip_discount(self, token_service: TokenService, db_session: AsyncMock):
        """Dominance 1, vip tier: 4 tokens charged."""
        user = create_mock_user(
            credits="100",
            subscription_status="vip",
            subscription_expiry=datetime.now(UTC) + timedelta(days=10),
        )
        persona = create_mock_persona(dominance_level=1)
        chat = create_mock_chat(user.id, persona.id)
        db_session.execute.side_effect = [
            scalar_result(user),
            scalar_result(chat),
            scalar_result(10),
            scalar_result(Decimal("96")),
        ]
        db_session.get = session_get_returning({Persona: persona, Message: verified_row()})

        result = await token_service.deduct_tokens_for_message(user.id, chat.id, persona.id, "hi")

        assert result.token_cost == 4
        assert result.remaining_tokens == Decimal("96")

    async def test_balance_floors_at_zero(
        self, token_service: TokenService, db_session: AsyncMock, persona: MagicMock
    ):
        user = create_mock_user(credits="5")
        chat = create_mock_chat(user.id, persona.id)
        db_session.execute.side_effect = [
            scalar_result(user),
            scalar_result(chat),
            scalar_result(10),
            scalar_result(Decimal("0")),
        ]
        db_session.get = session_get_returning({Persona: persona, Message: verified_row()})

        result = await token_service.deduct_tokens_for_message(user.id, chat.id, persona.id, "x")

        assert result.token_cost == 16
        assert result.remaining_tokens == Decimal("0")

    async def test_locked_reply_uses_persona_price(self, db_session: AsyncMock):
        service = TokenService(db_session, make_settings(), rng=random.Random(1))
        user = create_mock_user(credits="20")
        persona = create_mock_persona(lock_message_chance=1.0, lock_message_price=Decimal("2.00"))
        chat = create_mock_chat(user.id, persona.id)
        db_session.execute.side_effect = [
            scalar_result(user),
            scalar_result(chat),
            scalar_result(0),
        ]
        db_session.get = session_get_returning({Persona: persona, Message: verified_row()})

        result = await service.deduct_tokens_for_message(user.id, chat.id, persona.id, "secret")

        assert result.is_locked is True
        assert result.unlock_price == Decimal("2.00")

    async def test_locked_reply_falls_back_to_default_price(self, db_session: AsyncMock):
        service = TokenService(db_session, make_settings(default_unlock_price=Decimal("0.75")))
        user = create_mock_user()
        persona = create_mock_persona(lock_message_chance=1.0, lock_message_price=None)
        chat = create_mock_chat(user.id, persona.id)
        db_session.execute.side_effect = [
            scalar_result(user),
            scalar_result(chat),
            scalar_result(0),
        ]
        db_session.get = session_get_returning({Persona: persona, Message: verified_row()})

        result = await service.deduct_tokens_for_message(user.id, chat.id, persona.id, "secret")

        assert result.unlock_price == Decimal("0.75")

    async def test_zero_lock_chance_never_locks(
        self, token_service: TokenService, db_session: AsyncMock, persona: MagicMock
    ):
        token_service.rng = MagicMock()
        user = create_mock_user()
        chat = create_mock_chat(user.id, persona.id)
        db_session.execute.side_effect = [
            scalar_result(user),
            scalar_result(chat),
            scalar_result(0),
        ]
        db_session.get = session_get_returning({Persona: persona, Message: verified_row()})

        result = await token_service.deduct_tokens_for_message(user.id, chat.id, persona.id, "x")

        assert result.is_locked is False
        assert result.unlock_price is None
        token_service.rng.random.assert_not_called()

    async def test_missing_user(self, token_service: TokenService, db_session: AsyncMock):
        with pytest.raises(UserNotFoundError):
            await token_service.deduct_tokens_for_message(uuid4(), uuid4(), uuid4(), "x")
        db_session.commit.assert_not_awaited()

    async def test_missing_persona(self, token_service: TokenService, db_session: AsyncMock):
        user = create_mock_user()
        persona_id = uuid4()
        db_session.execute.side_effect = [
            scalar_result(user),
            scalar_result(create_mock_chat(user.id, persona_id)),
        ]

        with pytest.raises(PersonaNotFoundError):
            await token_service.deduct_tokens_for_message(user.id, uuid4(), persona_id, "x")

    async def test_persona_of_another_chat_rejected(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        """A dominance 1 persona id cannot cheapen a chat opened with dominance 5."""
        user = create_mock_user(credits="50")
        chat_persona = create_mock_persona(dominance_level=5)
        cheap_persona = create_mock_persona(dominance_level=1)
        chat = create_mock_chat(user.id, chat_persona.id)
        db_session.execute.side_effect = [scalar_result(user), scalar_result(chat)]
        db_session.get = session_get_returning({Persona: cheap_persona})

        with pytest.raises(ChatNotFoundError):
            await token_service.deduct_tokens_for_message(
                user.id, chat.id, cheap_persona.id, "x"
            )

        db_session.add.assert_not_called()
        db_session.commit.assert_not_awaited()
        assert db_session.execute.await_count == 2

    async def test_price_follows_chat_persona(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        """Dominance 5, free tier, quota spent: 20 tokens charged."""
        user = create_mock_user(credits="50")
        persona = create_mock_persona(dominance_level=5)
        chat = create_mock_chat(user.id, persona.id)
        db_session.execute.side_effect = [
            scalar_result(user),
            scalar_result(chat),
            scalar_result(10),
            scalar_result(Decimal("30")),
        ]
        db_session.get = session_get_returning({Persona: persona, Message: verified_row()})

        result = await token_service.deduct_tokens_for_message(user.id, chat.id, persona.id, "x")

        assert result.token_cost == 20
        assert result.remaining_tokens == Decimal("30")

    async def test_chat_of_another_user(
        self, token_service: TokenService, db_session: AsyncMock, persona: MagicMock
    ):
        db_session.execute.side_effect = [scalar_result(create_mock_user()), scalar_result(None)]
        db_session.get = session_get_returning({Persona: persona})

        with pytest.raises(ChatNotFoundError):
            await token_service.deduct_tokens_for_message(uuid4(), uuid4(), persona.id, "x")

    async def test_write_verification_failure(
        self, token_service: TokenService, db_session: AsyncMock, persona: MagicMock
    ):
        user = create_mock_user()
        db_session.execute.side_effect = [
            scalar_result(user),
            scalar_result(create_mock_chat(user.id, persona.id)),
            scalar_result(0),
        ]
        db_session.get = session_get_returning({Persona: persona})

        with pytest.raises(WriteVerificationError):
            await token_service.deduct_tokens_for_message(user.id, uuid4(), persona.id, "x")
        db_session.commit.assert_not_awaited()


# ============================================================================
# Unlocks
# ============================================================================


class TestUnlockMessage:
    """Tests for unlock_message."""

    async def test_insufficient_balance_changes_nothing(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        """Balance 3.00, price 5.00: unlock fails with the shortfall."""
        user_id, chat_id = uuid4(), uuid4()
        message = create_mock_message(chat_id, user_id, unlock_price=Decimal("5.00"))
        db_session.execute.side_effect = [
            scalar_result(message),
            scalar_result(None),  # conditional debit matched nothing
            scalar_result(Decimal("3.00")),  # existence check inside try_debit
            scalar_result(Decimal("3.00")),  # balance for the report
        ]

        result = await token_service.unlock_message(user_id, chat_id, message.id)

        assert result.unlocked is False
        assert result.required == Decimal("5.00")
        assert result.available == Decimal("3.00")
        assert message.is_locked is True
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()
        db_session.add.assert_not_called()

    async def test_successful_unlock(self, token_service: TokenService, db_session: AsyncMock):
        user_id, chat_id = uuid4(), uuid4()
        message = create_mock_message(chat_id, user_id, unlock_price=Decimal("5.00"))
        db_session.execute.side_effect = [
            scalar_result(message),
            scalar_result(Decimal("7.00")),
        ]

        result = await token_service.unlock_message(user_id, chat_id, message.id)

        assert result.unlocked is True
        assert result.available == Decimal("7.00")
        assert result.content == "hidden reply"
        assert message.is_locked is False
        db_session.commit.assert_awaited_once()

        payment = db_session.add.call_args_list[0].args[0]
        assert isinstance(payment, Payment)
        assert payment.amount_minor == 0
        assert payment.credits_spent == Decimal("5.00")
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.payment_type == "message_unlock"

    async def test_default_price_when_message_has_none(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        user_id, chat_id = uuid4(), uuid4()
        message = create_mock_message(chat_id, user_id, unlock_price=None)
        db_session.execute.side_effect = [scalar_result(message), scalar_result(Decimal("1"))]

        result = await token_service.unlock_message(user_id, chat_id, message.id)

        assert result.required == Decimal("0.50")

    async def test_already_unlocked(self, token_service: TokenService, db_session: AsyncMock):
        message = create_mock_message(uuid4(), uuid4(), is_locked=False)
        db_session.execute.return_value = scalar_result(message)

        with pytest.raises(MessageNotLockedError):
            await token_service.unlock_message(message.user_id, message.chat_id, message.id)

    async def test_message_not_found(self, token_service: TokenService):
        with pytest.raises(MessageNotFoundError):
            await token_service.unlock_message(uuid4(), uuid4(), uuid4())


# ============================================================================
# Balance / Chat eligibility
# ============================================================================


class TestBalanceAndEligibility:
    """Tests for get_user_balance and can_user_create_chat."""

    async def test_get_user_balance(self, token_service: TokenService, db_session: AsyncMock):
        db_session.execute.return_value = scalar_result(Decimal("12.50"))
        assert await token_service.get_user_balance(uuid4()) == Decimal("12.50")

    async def test_free_user_at_limit(self, token_service: TokenService, db_session: AsyncMock):
        user = create_mock_user()
        db_session.get = session_get_returning({User: user})
        db_session.execute.return_value = scalar_result(3)

        result = await token_service.can_user_create_chat(user.id)

        assert result.can_create is False
        assert result.current_count == 3
        assert result.limit == 3
        assert result.subscription_tier == SubscriptionTierName.FREE

    async def test_basic_user_under_limit(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        user = create_mock_user(subscription_status="basic")
        db_session.get = session_get_returning({User: user})
        db_session.execute.return_value = scalar_result(4)

        result = await token_service.can_user_create_chat(user.id)

        assert result.can_create is True
        assert result.limit == 5

    async def test_vip_is_unlimited(self, token_service: TokenService, db_session: AsyncMock):
        user = create_mock_user(subscription_status="vip")
        db_session.get = session_get_returning({User: user})
        db_session.execute.return_value = scalar_result(500)

        result = await token_service.can_user_create_chat(user.id)

        assert result.can_create is True
        assert result.limit is None

    async def test_missing_user(self, token_service: TokenService):
        with pytest.raises(UserNotFoundError):
            await token_service.can_user_create_chat(uuid4())

    async def test_storage_error_fails_open(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        db_session.get = AsyncMock(side_effect=SQLAlchemyError("down"))

        result = await token_service.can_user_create_chat(uuid4())

        assert result.can_create is True
        assert result.limit is None
        db_session.rollback.assert_awaited_once()


# ============================================================================
# Purchases and settlement
# ============================================================================


class TestPurchaseTokens:
    """Tests for purchase_tokens."""

    async def test_purchase_without_gateway_settles_immediately(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        user_id = uuid4()
        verified = create_mock_payment(user_id)
        db_session.execute.return_value = scalar_result(Decimal("0"))
        db_session.get = session_get_returning({Payment: verified})

        with patch.object(token_service, "settle_payment", new_callable=AsyncMock) as mock_settle:
            mock_settle.return_value = SettlementResult(
                payment_id=verified.id,
                status=PaymentStatus.COMPLETED,
                tokens_credited=330,
                already_settled=False,
                balance=Decimal("330"),
            )
            result = await token_service.purchase_tokens(user_id, "standard")

        mock_settle.assert_awaited_once_with(verified.id)
        assert result.status == PaymentStatus.COMPLETED
        assert result.total_tokens == 330
        assert result.amount_minor == 999
        assert result.balance == Decimal("330")
        assert result.checkout_url is None
        db_session.commit.assert_awaited_once()

    async def test_purchase_with_gateway_stays_pending(self, db_session: AsyncMock):
        user_id = uuid4()
        provider = MagicMock()
        provider.create_payment_intent = AsyncMock(
            return_value=PaymentIntentResult(
                intent_id="ABCD1234",
                status=GatewayStatus.PENDING,
                checkout_url="https://commerce.coinbase.com/charges/ABCD1234",
                address="bc1qexample",
                qrcode_url="https://api.qrserver.com/v1/create-qr-code/?data=bc1qexample",
                payment_method="BTC",
                amount_minor=499,
                currency="USD",
            )
        )
        service = TokenService(db_session, make_settings(), payment_provider=provider)
        verified = create_mock_payment(user_id)
        method = create_mock_payment_method(user_id)
        db_session.execute.return_value = scalar_result(Decimal("0"))
        db_session.get = session_get_returning({Payment: verified, PaymentMethod: method})

        with patch.object(service, "settle_payment", new_callable=AsyncMock) as mock_settle:
            result = await service.purchase_tokens(user_id, "basic", payment_method_id=method.id)

        mock_settle.assert_not_awaited()
        assert result.status == PaymentStatus.PENDING
        assert result.checkout_url == "https://commerce.coinbase.com/charges/ABCD1234"
        assert result.address == "bc1qexample"
        assert verified.payment_intent == "ABCD1234"
        request = provider.create_payment_intent.await_args.args[0]
        assert request.amount_minor == 499
        assert request.payment_reference == str(verified.id)
        db_session.commit.assert_awaited_once()

    async def test_gateway_failure_rolls_back(self, db_session: AsyncMock):
        user_id = uuid4()
        provider = MagicMock()
        provider.create_payment_intent = AsyncMock(side_effect=PaymentProviderError("down"))
        service = TokenService(db_session, make_settings(), payment_provider=provider)
        method = create_mock_payment_method(user_id)
        db_session.execute.return_value = scalar_result(Decimal("0"))
        db_session.get = session_get_returning(
            {Payment: create_mock_payment(user_id), PaymentMethod: method}
        )

        with pytest.raises(PaymentProviderError):
            await service.purchase_tokens(user_id, "basic", payment_method_id=method.id)

        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_foreign_payment_method_rejected(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        method = create_mock_payment_method(uuid4())
        db_session.execute.return_value = scalar_result(Decimal("0"))
        db_session.get = session_get_returning({PaymentMethod: method})

        with pytest.raises(InvalidPaymentMethodError):
            await token_service.purchase_tokens(uuid4(), "basic", payment_method_id=method.id)
        db_session.add.assert_not_called()

    async def test_custom_purchase_records_bonus(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        user_id = uuid4()
        verified = create_mock_payment(user_id)
        db_session.execute.return_value = scalar_result(Decimal("0"))
        db_session.get = session_get_returning({Payment: verified})

        with patch.object(token_service, "settle_payment", new_callable=AsyncMock) as mock_settle:
            mock_settle.return_value = SettlementResult(
                payment_id=verified.id,
                status=PaymentStatus.COMPLETED,
                tokens_credited=1200,
                already_settled=False,
            )
            result = await token_service.purchase_tokens(user_id, "custom", custom_amount=1000)

        payment = db_session.add.call_args.args[0]
        assert payment.tokens_amount == 1000
        assert payment.bonus_tokens == 200
        assert payment.amount_minor == 3500
        assert result.total_tokens == 1200

    async def test_missing_user(self, token_service: TokenService):
        with pytest.raises(UserNotFoundError):
            await token_service.purchase_tokens(uuid4(), "basic")


class TestSettlePayment:
    """Tests for settle_payment and fail_payment."""

    async def test_first_settlement_credits(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        user_id = uuid4()
        row = MagicMock(user_id=user_id, payment_type="token_purchase", tokens_amount=100)
        row.bonus_tokens = 30
        db_session.execute.side_effect = [scalar_result(row), scalar_result(Decimal("138"))]

        result = await token_service.settle_payment(uuid4())

        assert result.already_settled is False
        assert result.tokens_credited == 130
        assert result.balance == Decimal("138")
        db_session.commit.assert_not_awaited()

    async def test_repeat_settlement_credits_nothing(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        payment = create_mock_payment(uuid4(), status=PaymentStatus.COMPLETED.value)
        db_session.execute.return_value = scalar_result(None)
        db_session.get = session_get_returning({Payment: payment})

        result = await token_service.settle_payment(payment.id)

        assert result.already_settled is True
        assert result.tokens_credited == 0
        assert db_session.execute.await_count == 1

    async def test_failed_payment_cannot_settle(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        payment = create_mock_payment(uuid4(), status=PaymentStatus.FAILED.value)
        db_session.get = session_get_returning({Payment: payment})

        with pytest.raises(InvalidPaymentStateError) as exc_info:
            await token_service.settle_payment(payment.id)
        assert exc_info.value.current == "failed"

    async def test_missing_payment(self, token_service: TokenService):
        with pytest.raises(PaymentNotFoundError):
            await token_service.settle_payment(uuid4())

    async def test_fail_pending_payment(self, token_service: TokenService, db_session: AsyncMock):
        payment_id = uuid4()
        db_session.execute.return_value = scalar_result(payment_id)

        result = await token_service.fail_payment(payment_id)

        assert result.status == PaymentStatus.FAILED
        assert result.already_settled is False

    async def test_completed_payment_cannot_fail(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        payment = create_mock_payment(uuid4(), status=PaymentStatus.COMPLETED.value)
        db_session.get = session_get_returning({Payment: payment})

        with pytest.raises(InvalidPaymentStateError):
            await token_service.fail_payment(payment.id)

    async def test_complete_purchase_checks_owner(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        payment = create_mock_payment(uuid4())
        db_session.get = session_get_returning({Payment: payment})

        with pytest.raises(PaymentNotFoundError):
            await token_service.complete_token_purchase(payment.id, user_id=uuid4())

    async def test_complete_purchase_commits(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        payment = create_mock_payment(uuid4())
        db_session.get = session_get_returning({Payment: payment})

        with patch.object(token_service, "settle_payment", new_callable=AsyncMock) as mock_settle:
            await token_service.complete_token_purchase(payment.id, user_id=payment.user_id)

        mock_settle.assert_awaited_once_with(payment.id)
        db_session.commit.assert_awaited_once()

    async def test_complete_purchase_rejects_gateway_payment(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        """A purchase awaiting its charge cannot be credited by the client."""
        payment = create_mock_payment(uuid4(), payment_intent="ABCD1234")
        db_session.get = session_get_returning({Payment: payment})

        with patch.object(token_service, "settle_payment", new_callable=AsyncMock) as mock_settle:
            with pytest.raises(InvalidPaymentStateError) as exc_info:
                await token_service.complete_token_purchase(payment.id, user_id=payment.user_id)

        assert exc_info.value.current == "pending"
        mock_settle.assert_not_awaited()
        db_session.commit.assert_not_awaited()

    async def test_complete_purchase_rejects_other_payment_types(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        payment = create_mock_payment(uuid4(), payment_type="auto_topup")
        db_session.get = session_get_returning({Payment: payment})

        with pytest.raises(InvalidPaymentStateError):
            await token_service.complete_token_purchase(payment.id, user_id=payment.user_id)

    async def test_complete_purchase_missing_payment(self, token_service: TokenService):
        with pytest.raises(PaymentNotFoundError):
            await token_service.complete_token_purchase(uuid4())


class TestGatewayStatus:
    """Tests for apply_gateway_status and sync_payment_status."""

    async def test_succeeded_settles(self, token_service: TokenService, db_session: AsyncMock):
        payment = create_mock_payment(uuid4(), payment_intent="ABCD")
        db_session.execute.return_value = scalar_result(payment)

        with patch.object(token_service, "settle_payment", new_callable=AsyncMock) as mock_settle:
            await token_service.apply_gateway_status("ABCD", GatewayStatus.SUCCEEDED)

        mock_settle.assert_awaited_once_with(payment.id)
        db_session.commit.assert_awaited_once()

    async def test_failed_marks_failed(self, token_service: TokenService, db_session: AsyncMock):
        payment = create_mock_payment(uuid4(), payment_intent="ABCD")
        db_session.execute.return_value = scalar_result(payment)

        with patch.object(token_service, "fail_payment", new_callable=AsyncMock) as mock_fail:
            await token_service.apply_gateway_status("ABCD", GatewayStatus.FAILED)

        mock_fail.assert_awaited_once_with(payment.id)

    async def test_processing_is_ignored(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        db_session.execute.return_value = scalar_result(create_mock_payment(uuid4()))

        result = await token_service.apply_gateway_status("ABCD", GatewayStatus.PROCESSING)

        assert result is None
        db_session.commit.assert_not_awaited()

    async def test_unknown_intent(self, token_service: TokenService):
        with pytest.raises(PaymentNotFoundError):
            await token_service.apply_gateway_status("nope", GatewayStatus.SUCCEEDED)

    async def test_sync_polls_gateway(self, db_session: AsyncMock):
        provider = MagicMock()
        provider.get_payment_status = AsyncMock(
            return_value=PaymentStatusResult(
                intent_id="ABCD", status=GatewayStatus.SUCCEEDED, provider_status="COMPLETED"
            )
        )
        service = TokenService(db_session, make_settings(), payment_provider=provider)
        payment = create_mock_payment(uuid4(), payment_intent="ABCD")
        db_session.get = session_get_returning({Payment: payment})

        with patch.object(service, "apply_gateway_status", new_callable=AsyncMock) as mock_apply:
            mock_apply.return_value = SettlementResult(
                payment_id=payment.id,
                status=PaymentStatus.COMPLETED,
                tokens_credited=100,
                already_settled=False,
            )
            result = await service.sync_payment_status(payment.user_id, payment.id)

        mock_apply.assert_awaited_once_with("ABCD", GatewayStatus.SUCCEEDED)
        assert result.status == PaymentStatus.COMPLETED
        assert result.gateway_status == GatewayStatus.SUCCEEDED

    async def test_sync_skips_settled_payment(self, db_session: AsyncMock):
        provider = MagicMock()
        provider.get_payment_status = AsyncMock()
        service = TokenService(db_session, make_settings(), payment_provider=provider)
        payment = create_mock_payment(
            uuid4(), status=PaymentStatus.COMPLETED.value, payment_intent="ABCD"
        )
        db_session.get = session_get_returning({Payment: payment})

        result = await service.sync_payment_status(payment.user_id, payment.id)

        assert result.status == PaymentStatus.COMPLETED
        assert result.gateway_status is None
        provider.get_payment_status.assert_not_awaited()

    async def test_sync_other_users_payment(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        payment = create_mock_payment(uuid4())
        db_session.get = session_get_returning({Payment: payment})

        with pytest.raises(PaymentNotFoundError):
            await token_service.sync_payment_status(uuid4(), payment.id)


# ============================================================================
# Tips
# ============================================================================


class TestSendTip:
    """Tests for send_tip."""

    async def test_tip_debits_and_records(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        user_id, creator_id = uuid4(), uuid4()
        persona = create_mock_persona(created_by=creator_id)
        chat = create_mock_chat(user_id, persona.id)
        verified_tip = verified_row()
        db_session.execute.side_effect = [scalar_result(chat), scalar_result(Decimal("15.00"))]
        db_session.get = session_get_returning({Persona: persona, Tip: verified_tip})

        result = await token_service.send_tip(user_id, chat.id, Decimal("5.00"), "thanks")

        assert result.tip_id == verified_tip.id
        assert result.amount == Decimal("5.00")
        assert result.remaining_credits == Decimal("15.00")
        db_session.commit.assert_awaited_once()

        payment, tip = (call.args[0] for call in db_session.add.call_args_list)
        assert payment.payment_type == "tip"
        assert payment.amount_minor == 0
        assert payment.credits_spent == Decimal("5.00")
        assert tip.to_user_id == creator_id
        assert tip.message == "thanks"

    async def test_insufficient_credits(self, token_service: TokenService, db_session: AsyncMock):
        user_id = uuid4()
        persona = create_mock_persona()
        chat = create_mock_chat(user_id, persona.id)
        db_session.execute.side_effect = [
            scalar_result(chat),
            scalar_result(None),
            scalar_result(Decimal("2.00")),
            scalar_result(Decimal("2.00")),
        ]
        db_session.get = session_get_returning({Persona: persona})

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await token_service.send_tip(user_id, chat.id, Decimal("5.00"))

        assert exc_info.value.available == Decimal("2.00")
        assert exc_info.value.required == Decimal("5.00")
        db_session.rollback.assert_awaited_once()
        db_session.add.assert_not_called()

    async def test_tips_disabled(self, token_service: TokenService, db_session: AsyncMock):
        user_id = uuid4()
        persona = create_mock_persona(tip_enabled=False)
        db_session.execute.return_value = scalar_result(create_mock_chat(user_id, persona.id))
        db_session.get = session_get_returning({Persona: persona})

        with pytest.raises(TipsDisabledError):
            await token_service.send_tip(user_id, uuid4(), Decimal("1"))

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-3")])
    async def test_non_positive_amount(self, token_service: TokenService, amount):
        with pytest.raises(ValueError, match="must be positive"):
            await token_service.send_tip(uuid4(), uuid4(), amount)

    async def test_unknown_chat(self, token_service: TokenService):
        with pytest.raises(ChatNotFoundError):
            await token_service.send_tip(uuid4(), uuid4(), Decimal("1"))


# ============================================================================
# History
# ============================================================================


def history_row(kind: str, token_delta: str, status: str = "completed") -> MagicMock:
    row = MagicMock()
    row.transaction_id = uuid4()
    row.kind = kind
    row.status = status
    row.token_delta = Decimal(token_delta)
    row.amount_minor = 0
    row.created_at = datetime.now(UTC)
    row.reference_id = uuid4()
    return row


class TestListTransactions:
    """Tests for list_transactions."""

    async def test_maps_payments_and_charges(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        purchase = history_row("token_purchase", "130")
        charge = history_row("message_charge", "-16")
        unlock = history_row("message_unlock", "-0.50")
        db_session.execute.return_value = rows_result([purchase, charge, unlock])

        page = await token_service.list_transactions(uuid4(), limit=20)

        assert [t.kind for t in page.transactions] == [
            TransactionKind.TOKEN_PURCHASE,
            TransactionKind.MESSAGE_CHARGE,
            TransactionKind.MESSAGE_UNLOCK,
        ]
        assert [t.token_delta for t in page.transactions] == [
            Decimal("130"),
            Decimal("-16"),
            Decimal("-0.50"),
        ]
        assert page.transactions[1].reference_id == charge.reference_id
        assert page.has_more is False

    async def test_extra_row_means_more(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        rows = [history_row("tip", "-1") for _ in range(3)]
        db_session.execute.return_value = rows_result(rows)

        page = await token_service.list_transactions(uuid4(), limit=2, offset=4)

        assert len(page.transactions) == 2
        assert page.has_more is True
        assert page.offset == 4

    async def test_query_merges_ledger_and_messages(
        self, token_service: TokenService, db_session: AsyncMock
    ):
        db_session.execute.return_value = rows_result([])

        await token_service.list_transactions(uuid4(), limit=5)

        sql = str(db_session.execute.call_args.args[0])
        assert "UNION ALL" in sql
        assert "payments" in sql
        assert "messages" in sql
        assert "LIMIT" in sql

    @pytest.mark.parametrize(("limit", "offset"), [(0, 0), (10, -1)])
    async def test_invalid_page(self, token_service: TokenService, limit: int, offset: int):
        with pytest.raises(ValueError, match="Invalid page"):
            await token_service.list_transactions(uuid4(), limit=limit, offset=offset)
