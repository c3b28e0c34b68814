from studio_ledger.economy.credits.plans import (
    PLAN_ORDER,
    credits_for_plan,
    feature_enabled,
    get_plan_by_code,
    is_low_credit,
    is_unlimited,
    normalize_plan_tier,
)
from studio_ledger.economy.credits.types import PlanTier


def test_monthly_credits_per_plan() -> None:
    assert credits_for_plan(PlanTier.FREE) == 10
    assert credits_for_plan(PlanTier.STARTER) == 100
    assert credits_for_plan(PlanTier.PROFESSIONAL) == 500
    assert credits_for_plan(PlanTier.ENTERPRISE) is None


def test_only_enterprise_is_unlimited() -> None:
    assert [plan for plan in PLAN_ORDER if is_unlimited(plan)] == [PlanTier.ENTERPRISE]


def test_get_plan_by_code_is_case_insensitive() -> None:
    plan = get_plan_by_code(" Starter ")
    assert plan is not None
    assert plan.code is PlanTier.STARTER
    assert plan.monthly_price_usd == 29


def test_unknown_plan_codes_fall_back_to_free() -> None:
    assert get_plan_by_code("legacy_gold") is None
    assert normalize_plan_tier("legacy_gold") is PlanTier.FREE
    assert normalize_plan_tier(None) is PlanTier.FREE


def test_feature_flags() -> None:
    assert feature_enabled(PlanTier.FREE, "watermarking") is True
    assert feature_enabled(PlanTier.STARTER, "watermarking") is False
    assert feature_enabled(PlanTier.STARTER, "api_access") is False
    assert feature_enabled(PlanTier.PROFESSIONAL, "api_access") is True


def test_low_credit_threshold() -> None:
    assert is_low_credit(9) is True
    assert is_low_credit(10) is False
    assert is_low_credit(3, threshold=2) is False
