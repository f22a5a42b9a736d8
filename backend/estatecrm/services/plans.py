"""Subscription plan catalogue and price formatting helpers."""

import math
from typing import Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from estatecrm.config import settings
from estatecrm.models.billing import SubscriptionPlan

logger = structlog.get_logger()

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
}


class PlanConfig(BaseModel):
    """Configuration for a subscription plan."""

    id: str
    name: str
    description: Optional[str] = None
    price_monthly: int
    price_yearly: int
    max_users: Optional[int] = None  # None = unlimited
    stripe_price_id_monthly: str = ""
    stripe_price_id_yearly: str = ""
    features: list[str] = Field(default_factory=list)

    @property
    def yearly_savings_percent(self) -> int:
        return calculate_yearly_savings(self.price_monthly, self.price_yearly)


DEFAULT_PLANS: list[PlanConfig] = [
    PlanConfig(
        id="starter",
        name="Starter",
        description="Perfect for individual agents",
        price_monthly=29,
        price_yearly=290,
        max_users=1,
        stripe_price_id_monthly=settings.STRIPE_PRICE_STARTER_MONTHLY,
        stripe_price_id_yearly=settings.STRIPE_PRICE_STARTER_YEARLY,
        features=["Up to 50 properties", "Basic CRM", "Email support", "Mobile app"],
    ),
    PlanConfig(
        id="professional",
        name="Professional",
        description="Great for small teams",
        price_monthly=79,
        price_yearly=790,
        max_users=5,
        stripe_price_id_monthly=settings.STRIPE_PRICE_PROFESSIONAL_MONTHLY,
        stripe_price_id_yearly=settings.STRIPE_PRICE_PROFESSIONAL_YEARLY,
        features=["Up to 500 properties", "Advanced CRM", "AI insights", "Priority support", "Team collaboration"],
    ),
    PlanConfig(
        id="enterprise",
        name="Enterprise",
        description="For large organizations",
        price_monthly=199,
        price_yearly=1990,
        max_users=50,
        stripe_price_id_monthly=settings.STRIPE_PRICE_ENTERPRISE_MONTHLY,
        stripe_price_id_yearly=settings.STRIPE_PRICE_ENTERPRISE_YEARLY,
        features=["Unlimited properties", "Full CRM suite", "Advanced AI", "24/7 support", "Custom integrations", "API access"],
    ),
]


def calculate_yearly_savings(price_monthly: int, price_yearly: int) -> int:
    """Percentage saved by paying yearly instead of twelve monthly payments."""
    monthly_cost = price_monthly * 12
    if monthly_cost <= 0:
        return 0
    savings = (monthly_cost - price_yearly) / monthly_cost * 100
    # Half-up, so 12.5 shows as 13
    return math.floor(savings + 0.5)


def format_price(minor_units: Optional[int], currency: str = "USD") -> str:
    """Render an amount in minor units as a whole-unit currency string."""
    amount = (minor_units or 0) / 100
    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    if symbol is None:
        return f"{currency.upper()} {amount:,.0f}"
    return f"{symbol}{amount:,.0f}"


def _plan_from_row(row: SubscriptionPlan) -> PlanConfig:
    features = row.features or []
    if isinstance(features, dict):
        features = features.get("list", [])
    return PlanConfig(
        id=row.id,
        name=row.name,
        description=row.description,
        price_monthly=row.price_monthly,
        price_yearly=row.price_yearly,
        max_users=row.max_users,
        stripe_price_id_monthly=row.stripe_price_id_monthly or "",
        stripe_price_id_yearly=row.stripe_price_id_yearly or "",
        features=[str(feature) for feature in features],
    )


async def list_plans(db: AsyncSession) -> list[PlanConfig]:
    """
    List plans ordered by monthly price.

    Falls back to the built-in catalogue when the plans table is empty.
    """
    result = await db.execute(select(SubscriptionPlan).order_by(SubscriptionPlan.price_monthly))
    rows = result.scalars().all()

    if not rows:
        logger.info("No subscription plans stored - serving default catalogue")
        return list(DEFAULT_PLANS)

    return [_plan_from_row(row) for row in rows]
