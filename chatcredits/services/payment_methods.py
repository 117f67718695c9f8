"""
Payment Method Service - Stored wallets used for subscriptions and top-ups.

NO DICTIONARIES - All operations use strongly typed domain models.

A user has at most one default method. The first method added becomes the
default, and deleting the default promotes the oldest remaining one.
"""

from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chatcredits.config import Settings, get_settings
from chatcredits.db.models import PaymentMethod, User
from chatcredits.exceptions import (
    DuplicatePaymentMethodError,
    InvalidPaymentMethodError,
    PaymentMethodLimitError,
    UserNotFoundError,
    WriteVerificationError,
)
from chatcredits.models.domain import PaymentMethodInfo
from chatcredits.observability import get_logger

logger = get_logger(__name__)


class PaymentMethodService:
    """Per-user payment method store."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    async def list_payment_methods(self, user_id: UUID) -> list[PaymentMethodInfo]:
        """User's payment methods, newest first."""
        result = await self.session.execute(
            select(PaymentMethod)
            .where(PaymentMethod.user_id == user_id)
            .order_by(PaymentMethod.created_at.desc())
        )
        return [self._to_domain(row) for row in result.scalars().all()]

    async def add_payment_method(
        self,
        user_id: UUID,
        label: str,
        address: str,
        method_type: str = "crypto",
        is_default: bool = False,
    ) -> PaymentMethodInfo:
        """
        Store a new payment method.

        Raises:
            UserNotFoundError: User doesn't exist
            PaymentMethodLimitError: User already has the maximum number
            DuplicatePaymentMethodError: Address already stored for the user
        """
        # Serializes the count check per user
        user = await self._lock_user_for_update(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        count_result = await self.session.execute(
            select(func.count())
            .select_from(PaymentMethod)
            .where(PaymentMethod.user_id == user_id)
        )
        count = count_result.scalar_one()
        if count >= self.settings.max_payment_methods:
            raise PaymentMethodLimitError(self.settings.max_payment_methods)

        existing = await self.session.execute(
            select(PaymentMethod.id).where(
                PaymentMethod.user_id == user_id, PaymentMethod.address == address
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicatePaymentMethodError(address)

        make_default = is_default or count == 0
        if make_default:
            await self._clear_default(user_id)

        method = PaymentMethod(
            user_id=user_id,
            method_type=method_type,
            label=label,
            address=address,
            is_default=make_default,
        )
        self.session.add(method)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            await self.session.rollback()
            raise DuplicatePaymentMethodError(address) from exc

        verified = await self.session.get(PaymentMethod, method.id)
        if verified is None:
            raise WriteVerificationError(f"Payment method {method.id} not found after insert")

        await self.session.commit()

        logger.info(
            "payment_method_added",
            user_id=str(user_id),
            payment_method_id=str(verified.id),
            method_type=method_type,
            is_default=make_default,
        )
        return self._to_domain(verified)

    async def delete_payment_method(self, user_id: UUID, payment_method_id: UUID) -> None:
        """
        Remove a payment method.

        Auto-topup settings pointing at it lose their method (the foreign key
        sets it to NULL) and stop being processed.

        Raises:
            InvalidPaymentMethodError: Method doesn't exist or isn't the user's
        """
        method = await self._get_owned_for_update(user_id, payment_method_id)
        was_default = method.is_default

        await self.session.delete(method)
        await self.session.flush()

        promoted: UUID | None = None
        if was_default:
            result = await self.session.execute(
                select(PaymentMethod)
                .where(PaymentMethod.user_id == user_id)
                .order_by(PaymentMethod.created_at.asc())
                .limit(1)
            )
            oldest = result.scalar_one_or_none()
            if oldest is not None:
                oldest.is_default = True
                promoted = oldest.id
                await self.session.flush()

        await self.session.commit()

        logger.info(
            "payment_method_deleted",
            user_id=str(user_id),
            payment_method_id=str(payment_method_id),
            promoted_default=str(promoted) if promoted else None,
        )

    async def set_default_payment_method(
        self, user_id: UUID, payment_method_id: UUID
    ) -> PaymentMethodInfo:
        """
        Make a payment method the user's default.

        Raises:
            InvalidPaymentMethodError: Method doesn't exist or isn't the user's
        """
        method = await self._get_owned_for_update(user_id, payment_method_id)
        if method.is_default:
            return self._to_domain(method)

        await self._clear_default(user_id)
        method.is_default = True
        await self.session.flush()
        await self.session.commit()

        logger.info(
            "payment_method_default_changed",
            user_id=str(user_id),
            payment_method_id=str(payment_method_id),
        )
        return self._to_domain(method)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _clear_default(self, user_id: UUID) -> None:
        await self.session.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == user_id, PaymentMethod.is_default.is_(True))
            .values(is_default=False)
        )

    async def _get_owned_for_update(
        self, user_id: UUID, payment_method_id: UUID
    ) -> PaymentMethod:
        result = await self.session.execute(
            select(PaymentMethod)
            .where(PaymentMethod.id == payment_method_id, PaymentMethod.user_id == user_id)
            .with_for_update()
        )
        method = result.scalar_one_or_none()
        if method is None:
            raise InvalidPaymentMethodError(payment_method_id)
        return method

    async def _lock_user_for_update(self, user_id: UUID) -> User | None:
        """Lock user row for update (SELECT FOR UPDATE)."""
        result = await self.session.execute(
            select(User).where(User.id == user_id).with_for_update()
        )
        return result.scalar_one_or_none()

    def _to_domain(self, row: PaymentMethod) -> PaymentMethodInfo:
        return PaymentMethodInfo(
            payment_method_id=row.id,
            method_type=row.method_type,
            label=row.label,
            address=row.address,
            is_default=row.is_default,
            created_at=row.created_at,
        )
