"""
Auto-Topup Service - Periodic balance replenishment.

NO DICTIONARIES - All operations use strongly typed domain models.

Each user is processed in its own session and transaction. The settings
row is claimed with FOR UPDATE SKIP LOCKED so overlapping runs never
process the same user, and every top-up payment carries an idempotency key
derived from the previous top-up time, so one threshold crossing yields at
most one credit.
"""

import time
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatcredits.config import Settings, get_settings
from chatcredits.db.models import AutoTopupSettings, Payment, PaymentMethod
from chatcredits.exceptions import InvalidPaymentMethodError, WriteVerificationError
from chatcredits.models.api import PaymentStatus, PaymentType
from chatcredits.models.domain import AutoTopupConfig, TopupRunSummary
from chatcredits.observability import get_logger, log_context, metrics
from chatcredits.observability.tracing import batch_span
from chatcredits.services.pricing import find_token_package
from chatcredits.services.tokens import TokenService

logger = get_logger(__name__)

DEFAULT_THRESHOLD = Decimal("10")
DEFAULT_PACKAGE_ID = "basic"


class TopupOutcome(str, Enum):
    """Result of processing one user."""

    TOPPED_UP = "topped_up"
    SKIPPED = "skipped"
    FAILED = "failed"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def topup_idempotency_key(user_id: UUID, last_topup_at: datetime | None) -> str:
    """Key for one threshold crossing: the user plus the previous top-up time."""
    marker = last_topup_at.isoformat() if last_topup_at is not None else "never"
    return f"auto_topup:{user_id}:{marker}"


class AutoTopupService:
    """Auto-topup processor and settings store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    async def process_auto_topups(self) -> TopupRunSummary:
        """
        Top up every enabled user whose balance fell below their threshold.

        Errors for one user are logged and counted; the batch continues.
        """
        started = time.perf_counter()
        counts = {outcome: 0 for outcome in TopupOutcome}

        with batch_span("auto_topup") as span:
            async with self.session_factory() as session:
                candidates = await self._find_candidates(session)

            for settings_id, user_id in candidates:
                with log_context(user_id=str(user_id)):
                    try:
                        outcome = await self._process_user(settings_id)
                    except Exception as exc:
                        outcome = TopupOutcome.FAILED
                        span.failure(exc, subject=str(user_id))
                        metrics.record_error(type(exc).__name__, "auto_topup")
                        logger.exception("auto_topup_user_failed", error=str(exc))

                counts[outcome] += 1
                metrics.auto_topups_total.labels(outcome=outcome.value).inc()

            summary = TopupRunSummary(
                scanned=len(candidates),
                topped_up=counts[TopupOutcome.TOPPED_UP],
                skipped=counts[TopupOutcome.SKIPPED],
                failed=counts[TopupOutcome.FAILED],
            )
            span.count(
                scanned=summary.scanned,
                topped_up=summary.topped_up,
                skipped=summary.skipped,
                failed=summary.failed,
            )

        duration = time.perf_counter() - started
        metrics.auto_topup_run_duration_seconds.observe(duration)
        logger.info(
            "auto_topup_run_completed",
            scanned=summary.scanned,
            topped_up=summary.topped_up,
            skipped=summary.skipped,
            failed=summary.failed,
            duration_seconds=round(duration, 3),
        )
        return summary

    async def get_settings(self, user_id: UUID) -> AutoTopupConfig:
        """Current configuration, or the disabled defaults when none is stored."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(AutoTopupSettings).where(AutoTopupSettings.user_id == user_id)
            )
            row = result.scalar_one_or_none()

        if row is None:
            return AutoTopupConfig(
                user_id=user_id,
                enabled=False,
                threshold_amount=DEFAULT_THRESHOLD,
                package_id=DEFAULT_PACKAGE_ID,
                payment_method_id=None,
                last_topup_at=None,
            )
        return self._to_domain(row)

    async def update_settings(
        self,
        user_id: UUID,
        enabled: bool,
        threshold_amount: Decimal,
        package_id: str,
        payment_method_id: UUID | None = None,
    ) -> AutoTopupConfig:
        """
        Create or replace the user's auto-topup configuration.

        Raises:
            InvalidPackageError: Unknown package
            InvalidPaymentMethodError: Payment method isn't the user's
            ValueError: Negative threshold, or enabling without a payment method
        """
        find_token_package(package_id)
        threshold_amount = Decimal(threshold_amount)
        if threshold_amount < 0:
            raise ValueError(f"Threshold cannot be negative: {threshold_amount}")
        if enabled and payment_method_id is None:
            raise ValueError("A payment method is required to enable auto-topup")

        async with self.session_factory() as session:
            if payment_method_id is not None:
                method = await session.get(PaymentMethod, payment_method_id)
                if method is None or method.user_id != user_id:
                    raise InvalidPaymentMethodError(payment_method_id)

            # Race-safe insert of the per-user row, then overwrite it
            await session.execute(
                insert(AutoTopupSettings)
                .values(user_id=user_id)
                .on_conflict_do_nothing(index_elements=[AutoTopupSettings.user_id])
            )
            await session.execute(
                update(AutoTopupSettings)
                .where(AutoTopupSettings.user_id == user_id)
                .values(
                    enabled=enabled,
                    threshold_amount=threshold_amount,
                    package_id=package_id,
                    payment_method_id=payment_method_id,
                    updated_at=_utc_now(),
                )
            )
            result = await session.execute(
                select(AutoTopupSettings)
                .where(AutoTopupSettings.user_id == user_id)
                .execution_options(populate_existing=True)
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise WriteVerificationError(f"Auto-topup settings for {user_id} not found")

            await session.commit()

        logger.info(
            "auto_topup_settings_updated",
            user_id=str(user_id),
            enabled=enabled,
            threshold=str(threshold_amount),
            package_id=package_id,
        )
        return self._to_domain(row)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _find_candidates(self, session: AsyncSession) -> list[tuple[UUID, UUID]]:
        result = await session.execute(
            select(AutoTopupSettings.id, AutoTopupSettings.user_id).where(
                AutoTopupSettings.enabled.is_(True),
                AutoTopupSettings.payment_method_id.isnot(None),
            )
        )
        return [(row.id, row.user_id) for row in result.all()]

    async def _process_user(self, settings_id: UUID) -> TopupOutcome:
        """Top up one user in its own transaction."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(AutoTopupSettings)
                .where(
                    AutoTopupSettings.id == settings_id,
                    AutoTopupSettings.enabled.is_(True),
                    AutoTopupSettings.payment_method_id.isnot(None),
                )
                .with_for_update(skip_locked=True)
            )
            config = result.scalar_one_or_none()
            if config is None:
                # Claimed by an overlapping run or disabled since the scan
                return TopupOutcome.SKIPPED

            tokens = TokenService(session, self.settings)
            balance = await tokens.get_user_balance(config.user_id)
            if balance >= config.threshold_amount:
                return TopupOutcome.SKIPPED

            package = find_token_package(config.package_id)
            payment = Payment(
                user_id=config.user_id,
                amount_minor=package.price_minor,
                payment_type=PaymentType.AUTO_TOPUP.value,
                status=PaymentStatus.PENDING.value,
                payment_method="crypto",
                payment_method_id=config.payment_method_id,
                tokens_amount=package.tokens,
                bonus_tokens=package.bonus,
                idempotency_key=topup_idempotency_key(config.user_id, config.last_topup_at),
            )
            session.add(payment)
            try:
                await session.flush()
            except IntegrityError:
                await session.rollback()
                logger.info("auto_topup_duplicate_skipped", payment_key=payment.idempotency_key)
                return TopupOutcome.SKIPPED

            settlement = await tokens.settle_payment(payment.id)
            config.last_topup_at = _utc_now()
            await session.flush()
            await session.commit()

        logger.info(
            "auto_topup_completed",
            payment_id=str(payment.id),
            package_id=package.id,
            tokens_credited=settlement.tokens_credited,
            previous_balance=str(balance),
            balance=str(settlement.balance),
        )
        return TopupOutcome.TOPPED_UP

    def _to_domain(self, row: AutoTopupSettings) -> AutoTopupConfig:
        return AutoTopupConfig(
            user_id=row.user_id,
            enabled=row.enabled,
            threshold_amount=row.threshold_amount,
            package_id=row.package_id,
            payment_method_id=row.payment_method_id,
            last_topup_at=row.last_topup_at,
        )
