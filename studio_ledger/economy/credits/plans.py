from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from studio_ledger.economy.credits.types import PlanTier

FeatureKey = Literal["api_access", "watermarking"]

LOW_CREDIT_THRESHOLD = 10


@dataclass(frozen=True, slots=True)
class PlanConfig:
    code: PlanTier
    name: str
    monthly_price_usd: int | None
    monthly_credits: int | None
    unlimited_credits: bool
    api_access: bool
    watermarking: bool


PLAN_ORDER: tuple[PlanTier, ...] = (
    PlanTier.FREE,
    PlanTier.STARTER,
    PlanTier.PROFESSIONAL,
    PlanTier.ENTERPRISE,
)

PLANS: dict[PlanTier, PlanConfig] = {
    PlanTier.FREE: PlanConfig(
        code=PlanTier.FREE,
        name="Free",
        monthly_price_usd=0,
        monthly_credits=10,
        unlimited_credits=False,
        api_access=False,
        watermarking=True,
    ),
    PlanTier.STARTER: PlanConfig(
        code=PlanTier.STARTER,
        name="Starter",
        monthly_price_usd=29,
        monthly_credits=100,
        unlimited_credits=False,
        api_access=False,
        watermarking=False,
    ),
    PlanTier.PROFESSIONAL: PlanConfig(
        code=PlanTier.PROFESSIONAL,
        name="Professional",
        monthly_price_usd=99,
        monthly_credits=500,
        unlimited_credits=False,
        api_access=True,
        watermarking=False,
    ),
    PlanTier.ENTERPRISE: PlanConfig(
        code=PlanTier.ENTERPRISE,
        name="Enterprise",
        monthly_price_usd=None,
        monthly_credits=None,
        unlimited_credits=True,
        api_access=True,
        watermarking=False,
    ),
}


def get_plan_by_code(code: str | None) -> PlanConfig | None:
    if not code:
        return None
    try:
        return PLANS[PlanTier(code.strip().lower())]
    except ValueError:
        return None


def normalize_plan_tier(value: str | None) -> PlanTier:
    """Unknown or legacy plan codes fall back to the free tier."""
    plan = get_plan_by_code(value)
    return PlanTier.FREE if plan is None else plan.code


def credits_for_plan(plan_tier: PlanTier) -> int | None:
    return PLANS[plan_tier].monthly_credits


def is_unlimited(plan_tier: PlanTier) -> bool:
    return PLANS[plan_tier].unlimited_credits


def feature_enabled(plan_tier: PlanTier, feature: FeatureKey) -> bool:
    plan = PLANS[plan_tier]
    if feature == "api_access":
        return plan.api_access
    if feature == "watermarking":
        return plan.watermarking
    return False


def is_low_credit(balance: int, *, threshold: int = LOW_CREDIT_THRESHOLD) -> bool:
    return balance < threshold
