"""
Plan catalog configuration.

Maps subscription tiers to monthly quotas and lists one-time credit packages.
"""

from dataclasses import dataclass

from app.config import Settings
from app.models.api import SubscriptionStatus, SubscriptionTier
from app.models.domain import Plan


@dataclass(frozen=True)
class CreditPackage:
    """One-time credit package offered for purchase."""

    count: int
    price: int
    popular: bool = False

    def __post_init__(self) -> None:
        """Validate package configuration."""
        if self.count <= 0:
            raise ValueError(f"Package count must be positive: {self.count}")
        if self.price < 0:
            raise ValueError(f"Package price cannot be negative: {self.price}")


# Packages shown at checkout (prices in INR)
CREDIT_PACKAGES: tuple[CreditPackage, ...] = (
    CreditPackage(count=1, price=29),
    CreditPackage(count=5, price=129, popular=True),
    CreditPackage(count=10, price=249),
)


def build_plans(settings: Settings) -> dict[SubscriptionTier, Plan]:
    """Build the tier -> plan catalog from settings."""
    free_limit = settings.free_monthly_limit
    premium_limit = settings.premium_monthly_limit
    return {
        SubscriptionTier.FREE: Plan(
            tier=SubscriptionTier.FREE,
            name="Free",
            monthly_limit=free_limit,
            price=0,
            description="Perfect for trying out virtual try-on",
            features=(
                f"{free_limit} try-ons per month",
                "All clothing categories",
                "Basic pose variations",
                "Save outfits",
            ),
        ),
        SubscriptionTier.PREMIUM: Plan(
            tier=SubscriptionTier.PREMIUM,
            name="Premium",
            monthly_limit=premium_limit,
            price=settings.premium_price,
            description="Best for fashion enthusiasts",
            features=(
                f"{premium_limit} try-ons per month",
                "All clothing categories",
                "Unlimited pose variations",
                "AI style editing",
                "Priority generation",
                "Save unlimited outfits",
            ),
        ),
    }


def effective_tier(tier: SubscriptionTier, status: SubscriptionStatus) -> SubscriptionTier:
    """
    Tier whose quota applies right now.

    A paused subscription keeps its tier but is quota-limited to FREE.
    """
    if status == SubscriptionStatus.PAUSED:
        return SubscriptionTier.FREE
    return tier


def get_package(count: int) -> CreditPackage:
    """
    Get the credit package for a count.

    Raises:
        ValueError: If no package has that count
    """
    for package in CREDIT_PACKAGES:
        if package.count == count:
            return package
    raise ValueError(f"Unknown credit package: {count}")
