"""
Subscription Service - Tier purchases, renewals and lookups.

NO DICTIONARIES - All operations use strongly typed domain models.

Creating or renewing a subscription touches three tables (payments,
subscriptions, users). All three writes share one transaction and are
rolled back together on failure.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chatcredits.config import Settings, get_settings
from chatcredits.db.models import Payment, PaymentMethod, Subscription, User
from chatcredits.exceptions import (
    InvalidPaymentMethodError,
    InvalidPaymentStateError,
    SubscriptionNotFoundError,
    UserNotFoundError,
    WriteVerificationError,
)
from chatcredits.models.api import (
    PaymentStatus,
    PaymentType,
    SubscriptionStatus,
    SubscriptionTierName,
)
from chatcredits.models.domain import (
    SubscriptionCancellation,
    SubscriptionHistoryPage,
    SubscriptionInfo,
    SubscriptionRecord,
    SubscriptionResult,
)
from chatcredits.observability import get_logger, metrics
from chatcredits.services.balance import BalanceStore
from chatcredits.services.pricing import (
    SubscriptionTier,
    find_subscription_tier,
    get_subscription_features,
    parse_tier,
)
from chatcredits.services.tokens import effective_tier

logger = get_logger(__name__)

# Statuses that still grant access until end_date
_ACCESS_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class SubscriptionService:
    """Subscription manager."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        """Initialize subscription service with database session."""
        self.session = session
        self.settings = settings or get_settings()
        self.balances = BalanceStore(session)

    async def create_subscription(
        self,
        user_id: UUID,
        tier_id: str,
        payment_method_id: UUID | None = None,
    ) -> SubscriptionResult:
        """
        Subscribe a user to a paid tier.

        Records a completed payment, creates the subscription for one billing
        period, updates the user's status and expiry and credits the tier's
        bonus tokens. Any active subscription is superseded.

        Raises:
            InvalidTierError: Unknown or free tier
            InvalidPaymentMethodError: Payment method isn't the user's
            UserNotFoundError: User doesn't exist
        """
        tier = find_subscription_tier(tier_id)

        user = await self._lock_user_for_update(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        if payment_method_id is not None:
            method = await self.session.get(PaymentMethod, payment_method_id)
            if method is None or method.user_id != user_id:
                raise InvalidPaymentMethodError(payment_method_id)

        start = _utc_now()
        end = start + timedelta(days=self.settings.subscription_period_days)

        try:
            payment = self._subscription_payment(user_id, tier, payment_method_id, start)
            self.session.add(payment)
            await self.session.flush()

            await self.session.execute(
                update(Subscription)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                )
                .values(status=SubscriptionStatus.INACTIVE.value, auto_renew=False)
            )

            subscription = Subscription(
                user_id=user_id,
                payment_id=payment.id,
                tier=tier.id.value,
                price_minor=tier.price_minor,
                status=SubscriptionStatus.ACTIVE.value,
                start_date=start,
                end_date=end,
                auto_renew=True,
                bonus_tokens=tier.bonus_tokens,
                discount_multiplier=tier.discount_multiplier,
                exclusive_personas=tier.exclusive_personas,
            )
            self.session.add(subscription)

            user.subscription_status = tier.id.value
            user.subscription_expiry = end
            await self.session.flush()

            await self.balances.credit(user_id, tier.bonus_tokens)

            verified = await self.session.get(Subscription, subscription.id)
            if verified is None:
                raise WriteVerificationError(
                    f"Subscription {subscription.id} not found after insert"
                )

            await self.session.commit()
        except (SQLAlchemyError, WriteVerificationError):
            await self.session.rollback()
            metrics.record_error("subscription_write_failed", "create_subscription")
            logger.exception("subscription_create_failed", user_id=str(user_id), tier=tier_id)
            raise

        metrics.subscriptions_created_total.labels(tier=tier.id.value, operation="create").inc()
        metrics.record_credit("subscription", tier.bonus_tokens)
        logger.info(
            "subscription_created",
            user_id=str(user_id),
            subscription_id=str(verified.id),
            tier=tier.id.value,
            bonus_tokens=tier.bonus_tokens,
            end_date=end.isoformat(),
        )

        return SubscriptionResult(
            subscription_id=verified.id,
            payment_id=payment.id,
            tier=tier.id,
            price_minor=tier.price_minor,
            bonus_tokens=tier.bonus_tokens,
            start_date=start,
            end_date=end,
        )

    async def get_user_subscription(self, user_id: UUID) -> SubscriptionInfo:
        """
        Effective subscription of a user.

        Prefers the most recent subscription row that still grants access,
        then the status stored on the user. Fails open to the free tier on
        storage errors.

        Raises:
            UserNotFoundError: User doesn't exist
        """
        try:
            result = await self.session.execute(
                select(Subscription)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.status.in_(_ACCESS_STATUSES),
                    Subscription.end_date > _utc_now(),
                )
                .order_by(Subscription.start_date.desc())
                .limit(1)
            )
            subscription = result.scalar_one_or_none()

            if subscription is not None:
                tier = parse_tier(subscription.tier)
                return SubscriptionInfo(
                    tier=tier,
                    status=SubscriptionStatus(subscription.status),
                    expires_at=subscription.end_date,
                    features=get_subscription_features(tier),
                )

            user = await self.session.get(User, user_id)
        except SQLAlchemyError as exc:
            if not self.settings.fail_open_reads:
                raise
            logger.warning(
                "read_failed_open",
                operation="subscription_lookup",
                user_id=str(user_id),
                error=str(exc),
            )
            metrics.record_fail_open("subscription_lookup")
            await self.session.rollback()
            return self._free_subscription()

        if user is None:
            raise UserNotFoundError(user_id)

        tier = effective_tier(user)
        if tier == SubscriptionTierName.FREE:
            return self._free_subscription()

        return SubscriptionInfo(
            tier=tier,
            status=SubscriptionStatus.ACTIVE,
            expires_at=user.subscription_expiry,
            features=get_subscription_features(tier),
        )

    async def cancel_subscription(
        self, user_id: UUID, subscription_id: UUID
    ) -> SubscriptionCancellation:
        """
        Stop a subscription from renewing. Access lasts until its end date.

        Raises:
            SubscriptionNotFoundError: Subscription doesn't exist or isn't the user's
            InvalidPaymentStateError: Subscription is no longer active
        """
        subscription = await self._get_subscription_for_update(subscription_id)
        if subscription is None or subscription.user_id != user_id:
            raise SubscriptionNotFoundError(subscription_id)

        if subscription.status == SubscriptionStatus.CANCELLED.value:
            return SubscriptionCancellation(
                subscription_id=subscription.id,
                status=SubscriptionStatus.CANCELLED,
                end_date=subscription.end_date,
            )

        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise InvalidPaymentStateError(
                subscription_id, subscription.status, SubscriptionStatus.CANCELLED.value
            )

        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.auto_renew = False
        await self.session.flush()
        await self.session.commit()

        logger.info(
            "subscription_cancelled",
            user_id=str(user_id),
            subscription_id=str(subscription_id),
            end_date=subscription.end_date.isoformat(),
        )

        return SubscriptionCancellation(
            subscription_id=subscription.id,
            status=SubscriptionStatus.CANCELLED,
            end_date=subscription.end_date,
        )

    async def renew_subscription(self, subscription_id: UUID) -> SubscriptionResult:
        """
        Extend an auto-renewing subscription by one billing period.

        The new window starts at the later of now and the current end date.
        A completed payment is recorded and the bonus tokens are credited again.

        Raises:
            SubscriptionNotFoundError: Subscription doesn't exist
            InvalidPaymentStateError: Subscription is cancelled or not auto-renewing
        """
        subscription = await self._get_subscription_for_update(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)

        if not subscription.auto_renew or subscription.status not in (
            SubscriptionStatus.ACTIVE.value,
            SubscriptionStatus.EXPIRED.value,
        ):
            raise InvalidPaymentStateError(
                subscription_id, subscription.status, SubscriptionStatus.ACTIVE.value
            )

        tier = find_subscription_tier(subscription.tier)
        user = await self._lock_user_for_update(subscription.user_id)
        if user is None:
            raise UserNotFoundError(subscription.user_id)

        now = _utc_now()
        start = max(now, subscription.end_date)
        end = start + timedelta(days=self.settings.subscription_period_days)

        try:
            payment = self._subscription_payment(subscription.user_id, tier, None, now)
            self.session.add(payment)
            await self.session.flush()

            subscription.payment_id = payment.id
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.end_date = end
            user.subscription_status = tier.id.value
            user.subscription_expiry = end
            await self.session.flush()

            await self.balances.credit(subscription.user_id, tier.bonus_tokens)
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            metrics.record_error("subscription_write_failed", "renew_subscription")
            logger.exception("subscription_renew_failed", subscription_id=str(subscription_id))
            raise

        metrics.subscriptions_created_total.labels(tier=tier.id.value, operation="renew").inc()
        metrics.record_credit("subscription", tier.bonus_tokens)
        logger.info(
            "subscription_renewed",
            user_id=str(subscription.user_id),
            subscription_id=str(subscription_id),
            end_date=end.isoformat(),
        )

        return SubscriptionResult(
            subscription_id=subscription.id,
            payment_id=payment.id,
            tier=tier.id,
            price_minor=tier.price_minor,
            bonus_tokens=tier.bonus_tokens,
            start_date=start,
            end_date=end,
        )

    async def list_subscription_history(
        self, user_id: UUID, limit: int = 20, offset: int = 0
    ) -> SubscriptionHistoryPage:
        """
        User's subscriptions in every status, newest first.

        Raises:
            ValueError: Non-positive limit or negative offset
        """
        if limit < 1 or offset < 0:
            raise ValueError(f"Invalid page: limit={limit}, offset={offset}")

        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.start_date.desc(), Subscription.id)
            .limit(limit + 1)
            .offset(offset)
        )
        rows = result.scalars().all()

        return SubscriptionHistoryPage(
            subscriptions=tuple(
                SubscriptionRecord(
                    subscription_id=row.id,
                    payment_id=row.payment_id,
                    tier=parse_tier(row.tier),
                    status=SubscriptionStatus(row.status),
                    price_minor=row.price_minor,
                    start_date=row.start_date,
                    end_date=row.end_date,
                    auto_renew=row.auto_renew,
                )
                for row in rows[:limit]
            ),
            limit=limit,
            offset=offset,
            has_more=len(rows) > limit,
        )

    def get_subscription_features(self, tier: SubscriptionTierName | str) -> tuple[str, ...]:
        """Feature strings for a tier."""
        return get_subscription_features(tier)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _free_subscription(self) -> SubscriptionInfo:
        return SubscriptionInfo(
            tier=SubscriptionTierName.FREE,
            status=SubscriptionStatus.INACTIVE,
            expires_at=None,
            features=get_subscription_features(SubscriptionTierName.FREE),
        )

    def _subscription_payment(
        self,
        user_id: UUID,
        tier: SubscriptionTier,
        payment_method_id: UUID | None,
        paid_at: datetime,
    ) -> Payment:
        return Payment(
            user_id=user_id,
            amount_minor=tier.price_minor,
            payment_type=PaymentType.SUBSCRIPTION.value,
            status=PaymentStatus.COMPLETED.value,
            payment_method="crypto" if payment_method_id else "system",
            payment_method_id=payment_method_id,
            bonus_tokens=tier.bonus_tokens,
            completed_at=paid_at,
        )

    async def _lock_user_for_update(self, user_id: UUID) -> User | None:
        """Lock user row for update (SELECT FOR UPDATE)."""
        result = await self.session.execute(
            select(User).where(User.id == user_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def _get_subscription_for_update(self, subscription_id: UUID) -> Subscription | None:
        result = await self.session.execute(
            select(Subscription).where(Subscription.id == subscription_id).with_for_update()
        )
        return result.scalar_one_or_none()
