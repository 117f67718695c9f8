"""
Balance Store - the only code that mutates users.credits.

Every mutation is a single UPDATE ... RETURNING statement so concurrent
requests for the same user cannot lose an update. The caller owns the
transaction (flush/commit).
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chatcredits.db.models import User
from chatcredits.exceptions import UserNotFoundError

ZERO = Decimal("0")


class BalanceStore:
    """Atomic credit/debit primitives over the users table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_balance(self, user_id: UUID) -> Decimal:
        """
        Read the current balance.

        Raises:
            UserNotFoundError: User doesn't exist
        """
        result = await self.session.execute(select(User.credits).where(User.id == user_id))
        balance = result.scalar_one_or_none()
        if balance is None:
            raise UserNotFoundError(user_id)
        return balance

    async def credit(self, user_id: UUID, amount: Decimal | int) -> Decimal:
        """
        Add tokens to a balance.

        Returns:
            New balance

        Raises:
            ValueError: Amount is negative
            UserNotFoundError: User doesn't exist
        """
        amount = Decimal(amount)
        if amount < 0:
            raise ValueError(f"Credit amount cannot be negative: {amount}")

        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(credits=User.credits + amount)
            .returning(User.credits)
        )
        result = await self.session.execute(stmt)
        balance = result.scalar_one_or_none()
        if balance is None:
            raise UserNotFoundError(user_id)
        return balance

    async def try_debit(self, user_id: UUID, amount: Decimal | int) -> Decimal | None:
        """
        Debit only if the balance covers the full amount.

        Returns:
            New balance, or None when the balance is insufficient (nothing changed)

        Raises:
            ValueError: Amount is negative
            UserNotFoundError: User doesn't exist
        """
        amount = Decimal(amount)
        if amount < 0:
            raise ValueError(f"Debit amount cannot be negative: {amount}")

        stmt = (
            update(User)
            .where(User.id == user_id, User.credits >= amount)
            .values(credits=User.credits - amount)
            .returning(User.credits)
        )
        result = await self.session.execute(stmt)
        balance = result.scalar_one_or_none()
        if balance is not None:
            return balance

        # Distinguish "no such user" from "not enough credits"
        await self.get_balance(user_id)
        return None

    async def debit_clamped(self, user_id: UUID, amount: Decimal | int) -> Decimal:
        """
        Debit up to the full amount, flooring the balance at zero.

        Used for message charges, which never block the reply.

        Returns:
            New balance

        Raises:
            ValueError: Amount is negative
            UserNotFoundError: User doesn't exist
        """
        amount = Decimal(amount)
        if amount < 0:
            raise ValueError(f"Debit amount cannot be negative: {amount}")

        stmt = (
            update(User)
            .where(User.id == user_id)
            .values(
                credits=case(
                    (User.credits >= amount, User.credits - amount),
                    else_=ZERO,
                )
            )
            .returning(User.credits)
        )
        result = await self.session.execute(stmt)
        balance = result.scalar_one_or_none()
        if balance is None:
            raise UserNotFoundError(user_id)
        return balance
