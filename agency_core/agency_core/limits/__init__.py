"""Usage-limit decisions for plan changes."""

from agency_core.limits.plan_limits import PlanChangeDecision, evaluate_plan_change

__all__ = ["PlanChangeDecision", "evaluate_plan_change"]
