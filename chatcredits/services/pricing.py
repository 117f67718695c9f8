"""
Pricing catalog - token packages, custom purchase bands and subscription tiers.

Static reference data shared by token purchases, subscriptions and auto-topup.
Custom purchases are priced by band lookup; amounts above the last band use
the last band's rate and bonus.
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal

from chatcredits.exceptions import InvalidPackageError, InvalidTierError
from chatcredits.models.api import SubscriptionTierName

CUSTOM_PACKAGE_ID = "custom"


@dataclass(frozen=True)
class TokenPackage:
    """Predefined token package."""

    id: str
    name: str
    tokens: int
    bonus: int
    price_minor: int
    description: str
    most_popular: bool = False

    def __post_init__(self) -> None:
        """Validate package configuration."""
        if self.tokens <= 0:
            raise ValueError(f"Tokens must be positive: {self.tokens}")
        if self.bonus < 0:
            raise ValueError(f"Bonus cannot be negative: {self.bonus}")
        if self.price_minor <= 0:
            raise ValueError(f"Price must be positive: {self.price_minor}")

    @property
    def total_tokens(self) -> int:
        """Tokens credited for one purchase."""
        return self.tokens + self.bonus


@dataclass(frozen=True)
class TokenTier:
    """Custom purchase band; bounds are inclusive."""

    min_tokens: int
    max_tokens: int
    price_per_token: Decimal
    bonus_percentage: int

    def __post_init__(self) -> None:
        """Validate band configuration."""
        if self.min_tokens > self.max_tokens:
            raise ValueError(f"Empty band: {self.min_tokens}..{self.max_tokens}")
        if self.price_per_token <= 0:
            raise ValueError(f"Price per token must be positive: {self.price_per_token}")

    def contains(self, amount: int) -> bool:
        return self.min_tokens <= amount <= self.max_tokens


@dataclass(frozen=True)
class SubscriptionTier:
    """Paid subscription tier."""

    id: SubscriptionTierName
    name: str
    price_minor: int
    bonus_tokens: int
    token_discount: Decimal
    discount_multiplier: Decimal
    chat_limit: int | None  # None = unlimited
    exclusive_personas: bool
    description: str


@dataclass(frozen=True)
class CustomPackageQuote:
    """Price and bonus for a custom token amount."""

    tokens: int
    bonus: int
    price_minor: int
    price_per_token: Decimal
    bonus_percentage: int

    @property
    def total_tokens(self) -> int:
        return self.tokens + self.bonus


@dataclass(frozen=True)
class PurchaseQuote:
    """Resolved purchase: what is charged and what is credited."""

    package_id: str
    tokens: int
    bonus: int
    price_minor: int

    @property
    def total_tokens(self) -> int:
        return self.tokens + self.bonus


TOKEN_PACKAGES: tuple[TokenPackage, ...] = (
    TokenPackage(
        id="basic",
        name="Basic",
        tokens=100,
        bonus=0,
        price_minor=499,
        description="Good for occasional chats",
    ),
    TokenPackage(
        id="standard",
        name="Standard",
        tokens=300,
        bonus=30,
        price_minor=999,
        description="Popular choice for regular users",
        most_popular=True,
    ),
    TokenPackage(
        id="premium",
        name="Premium",
        tokens=1000,
        bonus=200,
        price_minor=1999,
        description="Best value for power users",
    ),
)

# Ordered by ascending range
CUSTOM_TOKEN_TIERS: tuple[TokenTier, ...] = (
    TokenTier(min_tokens=1, max_tokens=99, price_per_token=Decimal("0.05"), bonus_percentage=0),
    TokenTier(
        min_tokens=100, max_tokens=499, price_per_token=Decimal("0.045"), bonus_percentage=5
    ),
    TokenTier(
        min_tokens=500, max_tokens=999, price_per_token=Decimal("0.04"), bonus_percentage=10
    ),
    TokenTier(
        min_tokens=1000, max_tokens=2499, price_per_token=Decimal("0.035"), bonus_percentage=20
    ),
    TokenTier(
        min_tokens=2500, max_tokens=10000, price_per_token=Decimal("0.03"), bonus_percentage=40
    ),
)

SUBSCRIPTION_TIERS: tuple[SubscriptionTier, ...] = (
    SubscriptionTier(
        id=SubscriptionTierName.BASIC,
        name="Basic",
        price_minor=999,
        bonus_tokens=300,
        token_discount=Decimal("0.2"),
        discount_multiplier=Decimal("0.9"),
        chat_limit=5,
        exclusive_personas=False,
        description="Perfect for casual users",
    ),
    SubscriptionTier(
        id=SubscriptionTierName.PREMIUM,
        name="Premium",
        price_minor=1999,
        bonus_tokens=1000,
        token_discount=Decimal("0.5"),
        discount_multiplier=Decimal("0.75"),
        chat_limit=20,
        exclusive_personas=True,
        description="Ideal for regular users",
    ),
    SubscriptionTier(
        id=SubscriptionTierName.VIP,
        name="VIP",
        price_minor=4999,
        bonus_tokens=5000,
        token_discount=Decimal("0.7"),
        discount_multiplier=Decimal("0.6"),
        chat_limit=None,
        exclusive_personas=True,
        description="Unlimited access for power users",
    ),
)

# Multiplier applied to the per-message base cost
MESSAGE_COST_DISCOUNTS: dict[SubscriptionTierName, Decimal] = {
    SubscriptionTierName.VIP: Decimal("0.3"),
    SubscriptionTierName.PREMIUM: Decimal("0.5"),
    SubscriptionTierName.BASIC: Decimal("0.8"),
    SubscriptionTierName.FREE: Decimal("1.0"),
}

CHAT_LIMITS: dict[SubscriptionTierName, int | None] = {
    SubscriptionTierName.VIP: None,
    SubscriptionTierName.PREMIUM: 20,
    SubscriptionTierName.BASIC: 5,
    SubscriptionTierName.FREE: 3,
}

TIER_FEATURES: dict[SubscriptionTierName, tuple[str, ...]] = {
    SubscriptionTierName.VIP: (
        "Unlimited chats",
        "Access to all personas",
        "70% discount on token usage",
        "5,000 bonus tokens monthly",
        "Priority support",
        "Early access to new features",
    ),
    SubscriptionTierName.PREMIUM: (
        "Up to 20 chats",
        "Access to premium personas",
        "50% discount on token usage",
        "1,000 bonus tokens monthly",
        "Priority support",
    ),
    SubscriptionTierName.BASIC: (
        "Up to 5 chats",
        "Access to basic personas",
        "20% discount on token usage",
        "300 bonus tokens monthly",
    ),
    SubscriptionTierName.FREE: (
        "Up to 3 chats",
        "Access to basic personas",
        "10 free messages",
    ),
}


def parse_tier(value: str | None) -> SubscriptionTierName:
    """Map a stored subscription status to a tier; unknown or empty means free."""
    try:
        return SubscriptionTierName(value or SubscriptionTierName.FREE.value)
    except ValueError:
        return SubscriptionTierName.FREE


def find_token_package(package_id: str) -> TokenPackage:
    """
    Get predefined package by ID.

    Raises:
        InvalidPackageError: If package ID not found
    """
    for package in TOKEN_PACKAGES:
        if package.id == package_id:
            return package
    raise InvalidPackageError(package_id)


def find_subscription_tier(tier_id: str) -> SubscriptionTier:
    """
    Get paid subscription tier by ID.

    Raises:
        InvalidTierError: If tier ID is unknown or not purchasable (free)
    """
    for tier in SUBSCRIPTION_TIERS:
        if tier.id.value == tier_id:
            return tier
    raise InvalidTierError(tier_id)


def find_custom_tier(amount: int) -> TokenTier:
    """
    Get the pricing band for a custom token amount.

    Amounts above the last band are clamped to it.

    Raises:
        InvalidPackageError: If amount is below the first band
    """
    minimum = CUSTOM_TOKEN_TIERS[0].min_tokens
    if amount < minimum:
        raise InvalidPackageError(
            CUSTOM_PACKAGE_ID, f"amount must be at least {minimum}, got {amount}"
        )
    for tier in CUSTOM_TOKEN_TIERS:
        if tier.contains(amount):
            return tier
    return CUSTOM_TOKEN_TIERS[-1]


def calculate_custom_package(amount: int) -> CustomPackageQuote:
    """
    Price a custom token amount.

    price = amount * price_per_token (rounded half-up to cents)
    bonus = floor(amount * bonus_percentage / 100)
    """
    tier = find_custom_tier(amount)
    price_minor = int(
        (Decimal(amount) * tier.price_per_token * 100).quantize(Decimal("1"), ROUND_HALF_UP)
    )
    bonus = int(
        (Decimal(amount) * tier.bonus_percentage / 100).to_integral_value(ROUND_FLOOR)
    )
    return CustomPackageQuote(
        tokens=amount,
        bonus=bonus,
        price_minor=price_minor,
        price_per_token=tier.price_per_token,
        bonus_percentage=tier.bonus_percentage,
    )


def resolve_purchase(package_id: str, custom_amount: int | None = None) -> PurchaseQuote:
    """Resolve a predefined or custom package into a purchase quote."""
    if package_id == CUSTOM_PACKAGE_ID:
        if custom_amount is None:
            raise InvalidPackageError(package_id, "custom amount required")
        quote = calculate_custom_package(custom_amount)
        return PurchaseQuote(
            package_id=CUSTOM_PACKAGE_ID,
            tokens=quote.tokens,
            bonus=quote.bonus,
            price_minor=quote.price_minor,
        )

    package = find_token_package(package_id)
    return PurchaseQuote(
        package_id=package.id,
        tokens=package.tokens,
        bonus=package.bonus,
        price_minor=package.price_minor,
    )


def get_subscription_features(tier: SubscriptionTierName | str) -> tuple[str, ...]:
    """Feature strings for a tier; unknown tiers get the free feature set."""
    if not isinstance(tier, SubscriptionTierName):
        tier = parse_tier(tier)
    return TIER_FEATURES[tier]
