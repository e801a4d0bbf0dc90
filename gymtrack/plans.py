"""Plan resolution: catalog id first, then the symbolic plan table."""

from dataclasses import asdict
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from .models import Plan, PlanTerms

PLAN_TYPES: Mapping[str, PlanTerms] = MappingProxyType(
    {
        "monthly": PlanTerms(name="Monthly", duration=1, price=1000),
        "quarterly": PlanTerms(name="Quarterly", duration=3, price=2700),
        "yearly": PlanTerms(name="Yearly", duration=12, price=10000),
    }
)


def resolve_plan(
    plan_id: Optional[int],
    plan_type: Optional[str],
    lookup_plan: Callable[[int], Optional[Plan]],
    plan_types: Mapping[str, PlanTerms] = PLAN_TYPES,
) -> Optional[PlanTerms]:
    """Returns a snapshot of the plan terms, or None when nothing resolves.

    A supplied plan_id wins over plan_type. An unknown plan_id does not fall
    back to the symbolic table.
    """
    if plan_id is not None and plan_id != "":
        plan = lookup_plan(plan_id)
        if plan is None:
            return None
        return plan.terms()
    if plan_type:
        return plan_types.get(plan_type)
    return None


def plan_types_as_dict(plan_types: Mapping[str, PlanTerms] = PLAN_TYPES) -> dict:
    return {key: asdict(terms) for key, terms in plan_types.items()}
