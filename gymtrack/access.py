"""Roles and the capability table used to gate every operation."""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Optional

from .errors import AuthenticationError, AuthorizationError


class Role(str, Enum):
    ADMIN = "admin"
    TRAINER = "trainer"
    MEMBER = "member"


class Action(str, Enum):
    VIEW_PLANS = "view_plans"
    MANAGE_PLANS = "manage_plans"
    MANAGE_SUBSCRIPTIONS = "manage_subscriptions"
    VIEW_MEMBER_SUBSCRIPTIONS = "view_member_subscriptions"
    MANAGE_OWN_SUBSCRIPTION = "manage_own_subscription"
    VIEW_PAYMENTS = "view_payments"
    VIEW_OWN_PAYMENTS = "view_own_payments"
    VIEW_MEMBERS = "view_members"
    MANAGE_MEMBERS = "manage_members"
    MANAGE_TRAINERS = "manage_trainers"
    VIEW_ASSIGNED_MEMBERS = "view_assigned_members"
    VIEW_OWN_ROSTER = "view_own_roster"
    VIEW_REPORTS = "view_reports"
    RUN_MAINTENANCE = "run_maintenance"
    VIEW_TRAINERS = "view_trainers"
    VIEW_OWN_TRAINER_PROFILE = "view_own_trainer_profile"
    MANAGE_SCHEDULES = "manage_schedules"
    VIEW_SCHEDULES = "view_schedules"
    VIEW_OWN_SCHEDULE = "view_own_schedule"
    UPDATE_EXERCISE_STATUS = "update_exercise_status"


CAPABILITIES = MappingProxyType(
    {
        Role.ADMIN: frozenset(
            {
                Action.VIEW_PLANS,
                Action.MANAGE_PLANS,
                Action.MANAGE_SUBSCRIPTIONS,
                Action.VIEW_MEMBER_SUBSCRIPTIONS,
                Action.VIEW_PAYMENTS,
                Action.VIEW_MEMBERS,
                Action.MANAGE_MEMBERS,
                Action.MANAGE_TRAINERS,
                Action.VIEW_ASSIGNED_MEMBERS,
                Action.VIEW_REPORTS,
                Action.RUN_MAINTENANCE,
                Action.VIEW_TRAINERS,
                Action.MANAGE_SCHEDULES,
                Action.VIEW_SCHEDULES,
                Action.UPDATE_EXERCISE_STATUS,
            }
        ),
        Role.TRAINER: frozenset(
            {
                Action.VIEW_PLANS,
                Action.VIEW_MEMBER_SUBSCRIPTIONS,
                Action.VIEW_MEMBERS,
                Action.VIEW_ASSIGNED_MEMBERS,
                Action.VIEW_OWN_ROSTER,
                Action.VIEW_TRAINERS,
                Action.VIEW_OWN_TRAINER_PROFILE,
                Action.MANAGE_SCHEDULES,
                Action.VIEW_SCHEDULES,
                Action.UPDATE_EXERCISE_STATUS,
            }
        ),
        Role.MEMBER: frozenset(
            {
                Action.VIEW_PLANS,
                Action.MANAGE_OWN_SUBSCRIPTION,
                Action.VIEW_OWN_PAYMENTS,
                Action.VIEW_TRAINERS,
                Action.VIEW_SCHEDULES,
                Action.VIEW_OWN_SCHEDULE,
                Action.UPDATE_EXERCISE_STATUS,
            }
        ),
    }
)


@dataclass(frozen=True)
class Actor:
    user_id: int
    role: Role


def parse_role(value: Optional[str]) -> Role:
    try:
        return Role(value)
    except ValueError:
        raise AuthenticationError(f"Unknown role: {value!r}")


def parse_actor(user_id: Optional[str], role: Optional[str]) -> Actor:
    if not user_id or not role:
        raise AuthenticationError("Unauthorized")
    try:
        uid = int(user_id)
    except ValueError:
        raise AuthenticationError(f"Invalid user id: {user_id!r}")
    return Actor(user_id=uid, role=parse_role(role))


def is_allowed(role: Role, action: Action) -> bool:
    return action in CAPABILITIES.get(role, frozenset())


def require(actor: Actor, action: Action) -> None:
    if not is_allowed(actor.role, action):
        raise AuthorizationError(
            f"Role '{actor.role.value}' may not perform '{action.value}'."
        )
