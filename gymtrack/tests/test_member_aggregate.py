from datetime import datetime, timedelta

import pytest

from gymtrack.errors import MemberNotFoundError, SubscriptionNotFoundError


def count_rows(app_api, table):
    return app_api.db_manager.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


@pytest.fixture
def three_purchases(app_api, member, clock):
    ids = []
    for i in range(3):
        clock.now = datetime(2024, 1, 31, 10, 0, 0) + timedelta(days=i)
        ids.append(app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash").subscription.id)
    return ids


def test_delete_current_subscription_clears_pointer(app_api, member, three_purchases):
    first, second, third = three_purchases
    app_api.delete_subscription(third)

    refreshed = app_api.get_member(member.id)
    assert refreshed.current_subscription_id is None
    assert refreshed.subscription_history == [first, second]
    assert app_api.db_manager.get_subscription(third) is None
    assert [p.subscription_id for p in app_api.get_payments(member.id)] == [second, first]
    assert app_api.member_aggregate_problems(member.id) == []


def test_delete_historical_subscription_removes_it_from_history(app_api, member, three_purchases):
    first, second, third = three_purchases
    app_api.delete_subscription(first)

    refreshed = app_api.get_member(member.id)
    assert refreshed.current_subscription_id == third
    assert refreshed.subscription_history == [second]
    assert count_rows(app_api, "payments") == 2
    assert app_api.member_aggregate_problems(member.id) == []


def test_purchase_after_deleting_current_keeps_history_clean(app_api, member, three_purchases):
    app_api.delete_subscription(three_purchases[2])
    fourth = app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash").subscription.id

    refreshed = app_api.get_member(member.id)
    assert refreshed.current_subscription_id == fourth
    assert refreshed.subscription_history == three_purchases[:2]
    assert app_api.member_aggregate_problems(member.id) == []


def test_delete_unknown_subscription(app_api):
    with pytest.raises(SubscriptionNotFoundError):
        app_api.delete_subscription(9999)


def test_aggregate_check_reports_corruption(app_api, member, three_purchases):
    current = three_purchases[2]
    app_api.db_manager.conn.execute(
        "INSERT INTO member_subscription_history (member_id, subscription_id, position) VALUES (?, ?, 99)",
        (member.id, current),
    )
    app_api.db_manager.conn.commit()

    problems = app_api.member_aggregate_problems(member.id)
    assert problems == [f"current subscription {current} also in history"]


def test_aggregate_check_reports_orphaned_subscription(app_api, member, three_purchases):
    app_api.db_manager.conn.execute(
        "DELETE FROM member_subscription_history WHERE member_id = ? AND subscription_id = ?",
        (member.id, three_purchases[0]),
    )
    app_api.db_manager.conn.commit()

    problems = app_api.member_aggregate_problems(member.id)
    assert problems == [f"subscription {three_purchases[0]} is neither current nor in history"]


def test_aggregate_check_for_missing_member(app_api):
    assert app_api.member_aggregate_problems(777) == ["member 777 does not exist"]


def test_delete_member_cascades(app_api, member, other_member, three_purchases):
    app_api.purchase_subscription(other_member.id, plan_type="yearly", payment_method="card")

    app_api.delete_member(member.id)

    with pytest.raises(MemberNotFoundError):
        app_api.get_member(member.id)
    assert app_api.db_manager.get_user(member.user_id) is None
    assert count_rows(app_api, "subscriptions") == 1
    assert count_rows(app_api, "payments") == 1
    assert count_rows(app_api, "member_subscription_history") == 0


def test_delete_unknown_member(app_api):
    with pytest.raises(MemberNotFoundError):
        app_api.delete_member(4040)
