"""
Subscription Renewal Service - Periodic renewal and expiry of subscriptions.

NO DICTIONARIES - All operations use strongly typed domain models.

A subscription is due once its end date has passed. Due subscriptions that
are active and auto-renewing are renewed for another billing period; the
rest (cancelled, or active without auto-renew) become expired and the user
drops back to the free tier. Each subscription is handled in its own session
and the row is claimed with FOR UPDATE SKIP LOCKED, so overlapping runs never
handle the same subscription twice.
"""

import time
from datetime import UTC, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatcredits.config import Settings, get_settings
from chatcredits.db.models import Subscription, User
from chatcredits.models.api import SubscriptionStatus, SubscriptionTierName
from chatcredits.models.domain import RenewalRunSummary
from chatcredits.observability import get_logger, log_context, metrics
from chatcredits.observability.tracing import batch_span
from chatcredits.services.subscriptions import SubscriptionService

logger = get_logger(__name__)

_DUE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value)


class RenewalOutcome(str, Enum):
    """Result of processing one due subscription."""

    RENEWED = "renewed"
    EXPIRED = "expired"
    SKIPPED = "skipped"
    FAILED = "failed"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class SubscriptionRenewalService:
    """Renewal and expiry batch for subscriptions past their end date."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    async def process_renewals(self) -> RenewalRunSummary:
        """
        Renew or expire every subscription whose end date has passed.

        Errors for one subscription are logged and counted; the batch continues.
        """
        started = time.perf_counter()
        counts = {outcome: 0 for outcome in RenewalOutcome}
        now = _utc_now()

        with batch_span("subscription_renewal") as span:
            async with self.session_factory() as session:
                due = await self._find_due(session, now)

            for subscription_id, user_id in due:
                with log_context(user_id=str(user_id), subscription_id=str(subscription_id)):
                    try:
                        outcome = await self._process_subscription(subscription_id, now)
                    except Exception as exc:
                        outcome = RenewalOutcome.FAILED
                        span.failure(exc, subject=str(subscription_id))
                        metrics.record_error(type(exc).__name__, "subscription_renewal")
                        logger.exception("subscription_renewal_failed", error=str(exc))

                counts[outcome] += 1
                metrics.subscription_renewals_total.labels(outcome=outcome.value).inc()

            summary = RenewalRunSummary(
                scanned=len(due),
                renewed=counts[RenewalOutcome.RENEWED],
                expired=counts[RenewalOutcome.EXPIRED],
                skipped=counts[RenewalOutcome.SKIPPED],
                failed=counts[RenewalOutcome.FAILED],
            )
            span.count(
                scanned=summary.scanned,
                renewed=summary.renewed,
                expired=summary.expired,
                failed=summary.failed,
            )

        duration = time.perf_counter() - started
        metrics.renewal_run_duration_seconds.observe(duration)
        logger.info(
            "subscription_renewal_run_completed",
            scanned=summary.scanned,
            renewed=summary.renewed,
            expired=summary.expired,
            skipped=summary.skipped,
            failed=summary.failed,
            duration_seconds=round(duration, 3),
        )
        return summary

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _find_due(self, session: AsyncSession, now: datetime) -> list[tuple[UUID, UUID]]:
        result = await session.execute(
            select(Subscription.id, Subscription.user_id)
            .where(Subscription.status.in_(_DUE_STATUSES), Subscription.end_date <= now)
            .order_by(Subscription.end_date)
        )
        return [(row.id, row.user_id) for row in result.all()]

    async def _process_subscription(
        self, subscription_id: UUID, now: datetime
    ) -> RenewalOutcome:
        """Renew or expire one subscription in its own transaction."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    Subscription.status.in_(_DUE_STATUSES),
                    Subscription.end_date <= now,
                )
                .with_for_update(skip_locked=True)
            )
            subscription = result.scalar_one_or_none()
            if subscription is None:
                # Claimed by an overlapping run, or renewed or cancelled since the scan
                return RenewalOutcome.SKIPPED

            if subscription.status == SubscriptionStatus.ACTIVE.value and subscription.auto_renew:
                renewal = await SubscriptionService(session, self.settings).renew_subscription(
                    subscription.id
                )
                logger.info(
                    "subscription_auto_renewed",
                    payment_id=str(renewal.payment_id),
                    end_date=renewal.end_date.isoformat(),
                )
                return RenewalOutcome.RENEWED

            await self._expire(session, subscription, now)
            return RenewalOutcome.EXPIRED

    async def _expire(
        self, session: AsyncSession, subscription: Subscription, now: datetime
    ) -> None:
        previous_status = subscription.status
        subscription.status = SubscriptionStatus.EXPIRED.value
        subscription.auto_renew = False

        result = await session.execute(
            select(User).where(User.id == subscription.user_id).with_for_update()
        )
        user = result.scalar_one_or_none()

        # A newer subscription may already carry the user past this one
        downgraded = False
        if user is not None and (
            user.subscription_expiry is None or user.subscription_expiry <= now
        ):
            user.subscription_status = SubscriptionTierName.FREE.value
            user.subscription_expiry = None
            downgraded = True

        await session.flush()
        await session.commit()

        logger.info(
            "subscription_expired",
            previous_status=previous_status,
            tier=subscription.tier,
            user_downgraded=downgraded,
        )
