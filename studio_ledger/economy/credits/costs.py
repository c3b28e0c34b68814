from __future__ import annotations

import math
from dataclasses import dataclass, field

import structlog

from studio_ledger.economy.credits.errors import InvalidInputError
from studio_ledger.economy.credits.plans import PLANS
from studio_ledger.economy.credits.types import GenerationType, PlanTier

logger = structlog.get_logger(__name__)

BASE_CREDIT_COSTS: dict[GenerationType, int] = {
    GenerationType.APPAREL: 2,
    GenerationType.PRODUCT: 1,
    GenerationType.VIDEO: 5,
}


@dataclass(frozen=True, slots=True)
class PlanCostRule:
    overrides: dict[GenerationType, int] = field(default_factory=dict)
    multiplier: float = 1
    unlimited: bool = False


PLAN_COST_RULES: dict[PlanTier, PlanCostRule] = {
    tier: PlanCostRule(unlimited=plan.unlimited_credits) for tier, plan in PLANS.items()
}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _resolve_plan(plan: PlanTier | str) -> PlanTier:
    try:
        return PlanTier(plan)
    except ValueError as exc:
        raise InvalidInputError(f"unknown plan tier: {plan}") from exc


def _resolve_generation_type(generation_type: GenerationType | str) -> GenerationType:
    try:
        return GenerationType(generation_type)
    except ValueError as exc:
        raise InvalidInputError(f"unknown generation type: {generation_type}") from exc


def compute_credit_cost(
    plan: PlanTier | str,
    generation_type: GenerationType | str,
    count: int,
) -> int:
    """Credits needed for `count` units of `generation_type` on `plan`. Unlimited plans cost 0."""
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise InvalidInputError(f"count must be an integer >= 1, got {count!r}")

    resolved_type = _resolve_generation_type(generation_type)
    rule = PLAN_COST_RULES[_resolve_plan(plan)]
    if rule.unlimited:
        return 0

    unit_cost = rule.overrides.get(resolved_type, BASE_CREDIT_COSTS[resolved_type])
    return _round_half_up(unit_cost * rule.multiplier * count)


def cost_for_generation(
    plan: PlanTier | str,
    generation_type: GenerationType | str,
    count: object,
) -> int:
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        logger.warning(
            "credit_cost_count_normalized",
            generation_type=str(getattr(generation_type, "value", generation_type)),
            count=repr(count),
        )
        count = 1
    return compute_credit_cost(plan, generation_type, count)
