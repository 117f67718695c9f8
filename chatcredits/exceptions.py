"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from decimal import Decimal
from uuid import UUID


class ChatCreditsError(Exception):
    """Base exception for all token economy errors."""

    pass


class UserNotFoundError(ChatCreditsError):
    """Raised when user doesn't exist."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class PersonaNotFoundError(ChatCreditsError):
    """Raised when persona doesn't exist."""

    def __init__(self, persona_id: UUID) -> None:
        self.persona_id = persona_id
        super().__init__(f"Persona not found: {persona_id}")


class ChatNotFoundError(ChatCreditsError):
    """Raised when chat doesn't exist or belongs to another user."""

    def __init__(self, chat_id: UUID) -> None:
        self.chat_id = chat_id
        super().__init__(f"Chat not found: {chat_id}")


class MessageNotFoundError(ChatCreditsError):
    """Raised when message doesn't exist in the given chat."""

    def __init__(self, message_id: UUID) -> None:
        self.message_id = message_id
        super().__init__(f"Message not found: {message_id}")


class MessageNotLockedError(ChatCreditsError):
    """Raised when unlocking a message that is already visible."""

    def __init__(self, message_id: UUID) -> None:
        self.message_id = message_id
        super().__init__(f"Message {message_id} is not locked")


class SubscriptionNotFoundError(ChatCreditsError):
    """Raised when subscription doesn't exist or belongs to another user."""

    def __init__(self, subscription_id: UUID) -> None:
        self.subscription_id = subscription_id
        super().__init__(f"Subscription not found: {subscription_id}")


class PaymentNotFoundError(ChatCreditsError):
    """Raised when payment doesn't exist."""

    def __init__(self, reference: UUID | str) -> None:
        self.reference = reference
        super().__init__(f"Payment not found: {reference}")


class InvalidPackageError(ChatCreditsError):
    """Raised when token package id or custom amount is invalid."""

    def __init__(self, package_id: str, reason: str = "unknown package") -> None:
        self.package_id = package_id
        self.reason = reason
        super().__init__(f"Invalid token package {package_id!r}: {reason}")


class InvalidTierError(ChatCreditsError):
    """Raised when subscription tier id is unknown."""

    def __init__(self, tier_id: str) -> None:
        self.tier_id = tier_id
        super().__init__(f"Invalid subscription tier: {tier_id!r}")


class InvalidPaymentMethodError(ChatCreditsError):
    """Raised when payment method is missing or owned by another user."""

    def __init__(self, payment_method_id: UUID) -> None:
        self.payment_method_id = payment_method_id
        super().__init__(f"Invalid payment method: {payment_method_id}")


class PaymentMethodLimitError(ChatCreditsError):
    """Raised when a user already stores the maximum number of payment methods."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Maximum number of payment methods reached ({limit})")


class DuplicatePaymentMethodError(ChatCreditsError):
    """Raised when a user adds an address they already stored."""

    def __init__(self, address: str) -> None:
        self.address = address
        super().__init__("This wallet address is already added to your account")


class InvalidPaymentStateError(ChatCreditsError):
    """Raised when a payment or subscription transition is not allowed."""

    def __init__(self, reference: UUID, current: str, requested: str) -> None:
        self.reference = reference
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move {reference} from {current} to {requested}")


class TipsDisabledError(ChatCreditsError):
    """Raised when tipping a persona that does not accept tips."""

    def __init__(self, persona_id: UUID) -> None:
        self.persona_id = persona_id
        super().__init__(f"Tips are not enabled for persona {persona_id}")


class InsufficientCreditsError(ChatCreditsError):
    """Raised when a blocking debit exceeds the balance."""

    def __init__(self, available: Decimal, required: Decimal) -> None:
        self.available = available
        self.required = required
        super().__init__(f"Insufficient credits. Available: {available}, Required: {required}")


class WriteVerificationError(ChatCreditsError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(ChatCreditsError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class PaymentProviderError(ChatCreditsError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(ChatCreditsError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")
