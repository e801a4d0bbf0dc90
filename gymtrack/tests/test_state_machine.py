from datetime import datetime

import pytest

from gymtrack.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    SubscriptionNotFoundError,
)


@pytest.fixture
def subscription(app_api, member):
    return app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash").subscription


def test_pause_keeps_end_date(app_api, subscription):
    paused = app_api.pause_subscription(subscription.id)
    assert paused.status == "paused"
    stored = app_api.get_subscription(subscription.id)
    assert stored.status == "paused"
    assert stored.end_date == subscription.end_date


def test_resume_after_pause(app_api, subscription):
    app_api.pause_subscription(subscription.id)
    assert app_api.resume_subscription(subscription.id).status == "active"


def test_cancel_from_active_and_paused(app_api, member, subscription):
    assert app_api.cancel_subscription(subscription.id).status == "cancelled"

    second = app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash").subscription
    app_api.pause_subscription(second.id)
    assert app_api.cancel_subscription(second.id).status == "cancelled"


@pytest.mark.parametrize("action", ["pause_subscription", "resume_subscription", "cancel_subscription"])
def test_cancelled_is_terminal(app_api, subscription, action):
    app_api.cancel_subscription(subscription.id)
    with pytest.raises(InvalidTransitionError):
        getattr(app_api, action)(subscription.id)
    assert app_api.get_subscription(subscription.id).status == "cancelled"


@pytest.mark.parametrize("action", ["pause_subscription", "resume_subscription", "cancel_subscription"])
def test_expired_is_terminal(app_api, subscription, action):
    app_api.sweep_expired(now=datetime(2024, 3, 1))
    with pytest.raises(InvalidTransitionError):
        getattr(app_api, action)(subscription.id)
    assert app_api.get_subscription(subscription.id).status == "expired"


def test_pause_twice_is_rejected(app_api, subscription):
    app_api.pause_subscription(subscription.id)
    with pytest.raises(InvalidTransitionError, match="from 'paused' to 'paused'"):
        app_api.pause_subscription(subscription.id)


def test_resume_active_is_rejected(app_api, subscription):
    with pytest.raises(InvalidTransitionError):
        app_api.resume_subscription(subscription.id)


def test_unknown_subscription(app_api):
    with pytest.raises(SubscriptionNotFoundError):
        app_api.pause_subscription(31337)
    with pytest.raises(NotFoundError):
        app_api.get_subscription(31337)


def test_member_cannot_touch_another_members_subscription(app_api, subscription, other_member):
    with pytest.raises(AuthorizationError):
        app_api.pause_subscription(subscription.id, acting_member_id=other_member.id)
    assert app_api.get_subscription(subscription.id).status == "active"


def test_owner_can_pause_own_subscription(app_api, member, subscription):
    paused = app_api.pause_subscription(subscription.id, acting_member_id=member.id)
    assert paused.status == "paused"


def test_status_update_is_compare_and_set(app_api, subscription):
    # Another writer already paused it; a stale resume-from-paused must not apply
    assert not app_api.db_manager.update_subscription_status(subscription.id, "paused", "active")
    assert app_api.db_manager.update_subscription_status(subscription.id, "active", "paused")
    assert not app_api.db_manager.update_subscription_status(subscription.id, "active", "paused")


def test_lost_race_reports_current_status(app_api, subscription, monkeypatch):
    original = app_api.db_manager.update_subscription_status

    def cancelled_meanwhile(subscription_id, from_status, to_status, member_id=None):
        original(subscription_id, from_status, "cancelled")
        return original(subscription_id, from_status, to_status, member_id)

    monkeypatch.setattr(app_api.db_manager, "update_subscription_status", cancelled_meanwhile)
    with pytest.raises(InvalidTransitionError) as exc_info:
        app_api.pause_subscription(subscription.id)
    assert exc_info.value.current_status == "cancelled"
