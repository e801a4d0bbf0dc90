import pytest

from gymtrack.access import Action, Actor, Role, is_allowed, parse_actor, require
from gymtrack.errors import AuthenticationError, AuthorizationError


def test_parse_actor():
    assert parse_actor("12", "trainer") == Actor(user_id=12, role=Role.TRAINER)


@pytest.mark.parametrize(
    "user_id,role",
    [
        (None, "admin"),
        ("1", None),
        ("", "admin"),
        ("abc", "admin"),
        ("1", "superuser"),
    ],
)
def test_parse_actor_rejects_missing_or_unknown_identity(user_id, role):
    with pytest.raises(AuthenticationError):
        parse_actor(user_id, role)


@pytest.mark.parametrize(
    "role,action,allowed",
    [
        (Role.ADMIN, Action.MANAGE_PLANS, True),
        (Role.ADMIN, Action.RUN_MAINTENANCE, True),
        (Role.ADMIN, Action.MANAGE_OWN_SUBSCRIPTION, False),
        (Role.TRAINER, Action.VIEW_OWN_ROSTER, True),
        (Role.TRAINER, Action.VIEW_MEMBER_SUBSCRIPTIONS, True),
        (Role.TRAINER, Action.MANAGE_SUBSCRIPTIONS, False),
        (Role.TRAINER, Action.VIEW_PAYMENTS, False),
        (Role.MEMBER, Action.MANAGE_OWN_SUBSCRIPTION, True),
        (Role.MEMBER, Action.VIEW_OWN_PAYMENTS, True),
        (Role.MEMBER, Action.VIEW_PLANS, True),
        (Role.MEMBER, Action.VIEW_MEMBERS, False),
        (Role.MEMBER, Action.MANAGE_PLANS, False),
        (Role.TRAINER, Action.MANAGE_SCHEDULES, True),
        (Role.TRAINER, Action.VIEW_OWN_TRAINER_PROFILE, True),
        (Role.TRAINER, Action.MANAGE_TRAINERS, False),
        (Role.MEMBER, Action.VIEW_SCHEDULES, True),
        (Role.MEMBER, Action.UPDATE_EXERCISE_STATUS, True),
        (Role.MEMBER, Action.MANAGE_SCHEDULES, False),
        (Role.MEMBER, Action.VIEW_TRAINERS, True),
        (Role.ADMIN, Action.VIEW_OWN_SCHEDULE, False),
    ],
)
def test_capabilities(role, action, allowed):
    assert is_allowed(role, action) is allowed


def test_require_raises_for_missing_capability():
    with pytest.raises(AuthorizationError, match="'member' may not perform 'manage_plans'"):
        require(Actor(user_id=3, role=Role.MEMBER), Action.MANAGE_PLANS)
    require(Actor(user_id=1, role=Role.ADMIN), Action.MANAGE_PLANS)
