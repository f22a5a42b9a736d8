"""Subscription plan catalogue model."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from estatecrm.database import Base


class SubscriptionPlan(Base):
    """Plan offered on the subscription dialog.

    Prices are whole currency units; Stripe price ids are kept per cycle.
    """

    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    price_monthly: Mapped[int] = mapped_column(Integer, nullable=False)
    price_yearly: Mapped[int] = mapped_column(Integer, nullable=False)
    max_users: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    stripe_price_id_monthly: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_price_id_yearly: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Either a plain list of strings or {"list": [...]}
    features: Mapped[Optional[Any]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
