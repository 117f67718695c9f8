"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Credits carry two decimal places (unlock prices and tips can be fractional)
CREDITS = Numeric(14, 2)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Holds the token balance and the denormalized subscription status. The
    balance is only mutated through BalanceStore.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)

    # Balance
    credits: Mapped[Decimal] = mapped_column(CREDITS, nullable=False, default=Decimal("0"))

    # Subscription (denormalized from subscriptions table)
    subscription_status: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    subscription_expiry: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        CheckConstraint(
            "subscription_status IN ('free', 'basic', 'premium', 'vip')",
            name="ck_users_subscription_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<User(id={self.id}, credits={self.credits}, "
            f"subscription_status={self.subscription_status})>"
        )


class Persona(Base):
    """ORM model for personas table."""

    __tablename__ = "personas"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    # Pricing attributes
    dominance_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    exclusivity_multiplier: Mapped[Decimal] = mapped_column(
        Numeric(6, 2), nullable=False, default=Decimal("1.00")
    )
    is_premium: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Monetization
    tip_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    lock_message_chance: Mapped[float] = mapped_column(Float, nullable=False, default=0.05)
    lock_message_price: Mapped[Decimal] = mapped_column(
        CREDITS, nullable=False, default=Decimal("0.50")
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("dominance_level BETWEEN 1 AND 5", name="ck_personas_dominance_range"),
        CheckConstraint("exclusivity_multiplier >= 1", name="ck_personas_exclusivity_min"),
        CheckConstraint(
            "lock_message_chance >= 0 AND lock_message_chance <= 1",
            name="ck_personas_lock_chance_range",
        ),
    )


class Chat(Base):
    """ORM model for chats table."""

    __tablename__ = "chats"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    persona_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("personas.id", ondelete="RESTRICT"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="New chat")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_chats_user_id", "user_id"),)


class Message(Base):
    """
    ORM model for messages table.

    Immutable after creation except for the locked -> unlocked transition.
    """

    __tablename__ = "messages"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    chat_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    # Accounting
    token_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_free_message: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Locking
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    unlock_price: Mapped[Decimal | None] = mapped_column(CREDITS, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("role IN ('user', 'assistant')", name="ck_messages_role"),
        CheckConstraint("token_cost >= 0", name="ck_messages_token_cost_non_negative"),
        CheckConstraint(
            "NOT is_free_message OR token_cost = 0", name="ck_messages_free_has_no_cost"
        ),
        Index("idx_messages_chat_id", "chat_id"),
        Index(
            "idx_messages_user_free",
            "user_id",
            postgresql_where=(is_free_message.is_(True)),
        ),
    )


class MessageUnlock(Base):
    """ORM model for message_unlocks table (one unlock per message)."""

    __tablename__ = "message_unlocks"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    message_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    amount: Mapped[Decimal] = mapped_column(CREDITS, nullable=False)
    payment_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("payments.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (UniqueConstraint("message_id", name="uq_message_unlocks_message"),)


class Payment(Base):
    """
    ORM model for payments table.

    Append-only ledger. Status moves pending -> completed or pending -> failed.
    """

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )

    # Amount (minor units, e.g. cents)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    payment_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    # Method
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default="system")
    payment_method_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    # One payment per gateway charge; NULL for payments without one
    payment_intent: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)

    # Tokens delivered on settlement
    tokens_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bonus_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Credits spent from the balance (unlocks, tips); these carry no money
    credits_spent: Mapped[Decimal] = mapped_column(CREDITS, nullable=False, default=Decimal("0"))

    # Idempotency
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount_minor >= 0", name="ck_payments_amount_non_negative"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')", name="ck_payments_status"
        ),
        CheckConstraint(
            "tokens_amount >= 0 AND bonus_tokens >= 0", name="ck_payments_tokens_non_negative"
        ),
        CheckConstraint("credits_spent >= 0", name="ck_payments_credits_spent_non_negative"),
        UniqueConstraint("idempotency_key", name="uq_payments_idempotency_key"),
        Index("idx_payments_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Payment(id={self.id}, user_id={self.user_id}, type={self.payment_type}, "
            f"status={self.status}, amount={self.amount_minor})>"
        )


class Subscription(Base):
    """ORM model for subscriptions table."""

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    payment_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("payments.id"), nullable=True
    )

    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    price_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Tier snapshot at purchase time
    bonus_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_multiplier: Mapped[Decimal] = mapped_column(
        Numeric(4, 2), nullable=False, default=Decimal("1.00")
    )
    exclusive_personas: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'inactive', 'expired', 'cancelled')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint("end_date > start_date", name="ck_subscriptions_window"),
        Index("idx_subscriptions_user_status", "user_id", "status"),
    )


class PaymentMethod(Base):
    """ORM model for payment_methods table (stored crypto wallets, etc.)."""

    __tablename__ = "payment_methods"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    method_type: Mapped[str] = mapped_column(String(20), nullable=False, default="crypto")
    label: Mapped[str | None] = mapped_column(String(100), nullable=True)
    address: Mapped[str] = mapped_column(String(255), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", "address", name="uq_payment_methods_user_address"),
    )


class AutoTopupSettings(Base):
    """ORM model for auto_topup_settings table (one row per user)."""

    __tablename__ = "auto_topup_settings"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    threshold_amount: Mapped[Decimal] = mapped_column(
        CREDITS, nullable=False, default=Decimal("10")
    )
    package_id: Mapped[str] = mapped_column(String(50), nullable=False, default="basic")
    payment_method_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("payment_methods.id", ondelete="SET NULL"), nullable=True
    )
    last_topup_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", name="uq_auto_topup_settings_user"),
        CheckConstraint("threshold_amount >= 0", name="ck_auto_topup_threshold_non_negative"),
        Index(
            "idx_auto_topup_enabled",
            "enabled",
            postgresql_where=(enabled.is_(True)),
        ),
    )


class Tip(Base):
    """ORM model for tips table."""

    __tablename__ = "tips"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    chat_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False
    )
    from_user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    # None when the persona has no creator (system persona)
    to_user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    amount: Mapped[Decimal] = mapped_column(CREDITS, nullable=False)
    message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    payment_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("payments.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (CheckConstraint("amount > 0", name="ck_tips_amount_positive"),)
