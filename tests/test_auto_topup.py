"""
Tests for AutoTopupService.

Batch processing runs each user in its own session; the fake session
factory hands out prepared AsyncMock sessions in order.
"""

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from conftest import (
    create_mock_payment_method,
    create_mock_topup_settings,
    rows_result,
    scalar_result,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chatcredits.config import Settings
from chatcredits.db.models import Payment
from chatcredits.exceptions import InvalidPackageError, InvalidPaymentMethodError
from chatcredits.models.api import PaymentStatus, PaymentType
from chatcredits.models.domain import SettlementResult
from chatcredits.services.autotopup import (
    DEFAULT_PACKAGE_ID,
    DEFAULT_THRESHOLD,
    AutoTopupService,
    TopupOutcome,
    topup_idempotency_key,
)


def make_session(*results) -> AsyncMock:
    """AsyncMock session whose execute() returns the given results in order."""
    session = AsyncMock(spec=AsyncSession)
    session.add = MagicMock()
    session.execute = AsyncMock(side_effect=list(results))
    return session


def settlement(balance: str) -> SettlementResult:
    return SettlementResult(
        payment_id=uuid4(),
        status=PaymentStatus.COMPLETED,
        tokens_credited=100,
        already_settled=False,
        balance=Decimal(balance),
    )


class TestIdempotencyKey:
    """Tests for topup_idempotency_key."""

    def test_first_topup(self):
        user_id = uuid4()
        assert topup_idempotency_key(user_id, None) == f"auto_topup:{user_id}:never"

    def test_key_changes_after_each_topup(self):
        user_id = uuid4()
        first = topup_idempotency_key(user_id, datetime(2026, 1, 1, tzinfo=UTC))
        second = topup_idempotency_key(user_id, datetime(2026, 1, 2, tzinfo=UTC))
        assert first != second
        assert first.startswith(f"auto_topup:{user_id}:2026-01-01")


class TestProcessUser:
    """Tests for single-user processing."""

    async def test_low_balance_tops_up(self, session_factory, test_settings: Settings):
        """Threshold 10, balance 8, basic package: balance 108 and one payment."""
        config = create_mock_topup_settings(uuid4(), threshold="10", package_id="basic")
        session = make_session(scalar_result(config), scalar_result(Decimal("8")))
        session_factory.sessions.append(session)
        service = AutoTopupService(session_factory, test_settings)

        with patch(
            "chatcredits.services.autotopup.TokenService.settle_payment",
            new_callable=AsyncMock,
        ) as mock_settle:
            mock_settle.return_value = settlement("108")
            outcome = await service._process_user(config.id)

        assert outcome == TopupOutcome.TOPPED_UP
        mock_settle.assert_awaited_once()

        payment = session.add.call_args.args[0]
        assert isinstance(payment, Payment)
        assert payment.payment_type == PaymentType.AUTO_TOPUP.value
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.amount_minor == 499
        assert payment.tokens_amount == 100
        assert payment.bonus_tokens == 0
        assert payment.payment_method_id == config.payment_method_id
        assert payment.idempotency_key == f"auto_topup:{config.user_id}:never"

        assert config.last_topup_at is not None
        session.commit.assert_awaited_once()

    async def test_balance_at_threshold_skipped(self, session_factory, test_settings):
        config = create_mock_topup_settings(uuid4(), threshold="10")
        session = make_session(scalar_result(config), scalar_result(Decimal("10")))
        session_factory.sessions.append(session)
        service = AutoTopupService(session_factory, test_settings)

        outcome = await service._process_user(config.id)

        assert outcome == TopupOutcome.SKIPPED
        session.add.assert_not_called()
        session.commit.assert_not_awaited()

    async def test_row_locked_elsewhere_skipped(self, session_factory, test_settings):
        session = make_session(scalar_result(None))
        session_factory.sessions.append(session)
        service = AutoTopupService(session_factory, test_settings)

        outcome = await service._process_user(uuid4())

        assert outcome == TopupOutcome.SKIPPED
        assert session.execute.await_count == 1

    async def test_duplicate_key_skipped(self, session_factory, test_settings):
        config = create_mock_topup_settings(uuid4())
        session = make_session(scalar_result(config), scalar_result(Decimal("1")))
        session.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))
        session_factory.sessions.append(session)
        service = AutoTopupService(session_factory, test_settings)

        with patch(
            "chatcredits.services.autotopup.TokenService.settle_payment",
            new_callable=AsyncMock,
        ) as mock_settle:
            outcome = await service._process_user(config.id)

        assert outcome == TopupOutcome.SKIPPED
        mock_settle.assert_not_awaited()
        session.rollback.assert_awaited_once()
        assert config.last_topup_at is None


class TestProcessAutoTopups:
    """Tests for the batch run."""

    async def test_counts_outcomes_and_continues_after_failure(
        self, session_factory, test_settings
    ):
        rows = [MagicMock(id=uuid4(), user_id=uuid4()) for _ in range(3)]
        session_factory.sessions.append(make_session(rows_result(rows)))
        service = AutoTopupService(session_factory, test_settings)

        with patch.object(service, "_process_user", new_callable=AsyncMock) as mock_process:
            mock_process.side_effect = [
                TopupOutcome.TOPPED_UP,
                RuntimeError("gateway down"),
                TopupOutcome.SKIPPED,
            ]
            summary = await service.process_auto_topups()

        assert summary.scanned == 3
        assert summary.topped_up == 1
        assert summary.failed == 1
        assert summary.skipped == 1
        assert mock_process.await_count == 3
        assert [call.args[0] for call in mock_process.await_args_list] == [row.id for row in rows]

    async def test_no_candidates(self, session_factory, test_settings):
        session_factory.sessions.append(make_session(rows_result([])))
        service = AutoTopupService(session_factory, test_settings)

        summary = await service.process_auto_topups()

        assert summary.scanned == 0
        assert summary.topped_up == summary.skipped == summary.failed == 0


class TestSettings:
    """Tests for get_settings and update_settings."""

    async def test_defaults_when_unset(self, session_factory, test_settings):
        session_factory.sessions.append(make_session(scalar_result(None)))
        service = AutoTopupService(session_factory, test_settings)
        user_id = uuid4()

        config = await service.get_settings(user_id)

        assert config.user_id == user_id
        assert config.enabled is False
        assert config.threshold_amount == DEFAULT_THRESHOLD
        assert config.package_id == DEFAULT_PACKAGE_ID
        assert config.payment_method_id is None

    async def test_stored_settings(self, session_factory, test_settings):
        row = create_mock_topup_settings(uuid4(), threshold="25", package_id="standard")
        session_factory.sessions.append(make_session(scalar_result(row)))
        service = AutoTopupService(session_factory, test_settings)

        config = await service.get_settings(row.user_id)

        assert config.enabled is True
        assert config.threshold_amount == Decimal("25")
        assert config.package_id == "standard"

    async def test_upsert(self, session_factory, test_settings):
        user_id = uuid4()
        method = create_mock_payment_method(user_id)
        row = create_mock_topup_settings(user_id, threshold="15", package_id="premium")
        row.payment_method_id = method.id
        session = make_session(scalar_result(None), scalar_result(None), scalar_result(row))
        session.get = AsyncMock(return_value=method)
        session_factory.sessions.append(session)
        service = AutoTopupService(session_factory, test_settings)

        config = await service.update_settings(
            user_id,
            enabled=True,
            threshold_amount=Decimal("15"),
            package_id="premium",
            payment_method_id=method.id,
        )

        assert config.enabled is True
        assert config.package_id == "premium"
        assert config.payment_method_id == method.id
        insert_stmt = str(session.execute.await_args_list[0].args[0])
        assert "ON CONFLICT" in insert_stmt
        session.commit.assert_awaited_once()

    async def test_unknown_package(self, session_factory, test_settings):
        service = AutoTopupService(session_factory, test_settings)

        with pytest.raises(InvalidPackageError):
            await service.update_settings(uuid4(), True, Decimal("10"), "mega", uuid4())
        assert session_factory.opened == []

    async def test_negative_threshold(self, session_factory, test_settings):
        service = AutoTopupService(session_factory, test_settings)

        with pytest.raises(ValueError, match="cannot be negative"):
            await service.update_settings(uuid4(), False, Decimal("-1"), "basic")

    async def test_enable_requires_payment_method(self, session_factory, test_settings):
        service = AutoTopupService(session_factory, test_settings)

        with pytest.raises(ValueError, match="payment method is required"):
            await service.update_settings(uuid4(), True, Decimal("10"), "basic")

    async def test_disable_without_payment_method(self, session_factory, test_settings):
        user_id = uuid4()
        row = create_mock_topup_settings(user_id)
        row.enabled = False
        row.payment_method_id = None
        session_factory.sessions.append(
            make_session(scalar_result(None), scalar_result(None), scalar_result(row))
        )
        service = AutoTopupService(session_factory, test_settings)

        config = await service.update_settings(user_id, False, Decimal("10"), "basic")

        assert config.enabled is False

    async def test_foreign_payment_method(self, session_factory, test_settings):
        session = make_session()
        session.get = AsyncMock(return_value=create_mock_payment_method(uuid4()))
        session_factory.sessions.append(session)
        service = AutoTopupService(session_factory, test_settings)

        with pytest.raises(InvalidPaymentMethodError):
            await service.update_settings(uuid4(), True, Decimal("10"), "basic", uuid4())
        session.execute.assert_not_awaited()
