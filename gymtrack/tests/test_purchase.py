import sqlite3
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from dateutil.relativedelta import relativedelta

from gymtrack.app_api import AppAPI
from gymtrack.database_manager import DatabaseManager
from gymtrack.errors import (
    ActiveSubscriptionError,
    ConcurrentModificationError,
    InvalidPlanError,
    MemberNotFoundError,
    StorageError,
    ValidationError,
)
from gymtrack.lifecycle import parse_timestamp
from gymtrack.models import Payment, PlanTerms, Subscription


def count_rows(app_api, table):
    return app_api.db_manager.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def test_purchase_creates_linked_payment_and_subscription(app_api, member):
    result = app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="card")

    subscription = app_api.get_subscription(result.subscription.id)
    payment = app_api.db_manager.get_payment(result.payment.id)

    assert subscription.status == "active"
    assert subscription.plan == PlanTerms("Monthly", 1, 1000)
    assert subscription.payment_id == payment.id
    assert payment.subscription_id == subscription.id
    assert payment.member_id == member.id
    assert payment.amount == 1000
    assert payment.method == "card"
    assert payment.status == "completed"
    assert payment.transaction_id.startswith("TXN20240131100000-")
    assert payment.invoice_number.startswith("INV20240131-")


def test_end_date_is_start_plus_calendar_months(app_api, member):
    result = app_api.purchase_subscription(member.id, plan_type="quarterly", payment_method="cash")
    start = parse_timestamp(result.subscription.start_date)
    end = parse_timestamp(result.subscription.end_date)
    assert start == datetime(2024, 1, 31, 10, 0, 0)
    assert end == start + relativedelta(months=3)
    assert result.subscription.end_date == "2024-04-30T10:00:00"


def test_monthly_from_jan_31_ends_on_leap_day(app_api, member):
    result = app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="upi")
    assert result.subscription.end_date == "2024-02-29T10:00:00"


def test_purchase_points_member_at_new_subscription(app_api, member):
    result = app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash")
    refreshed = app_api.get_member(member.id)
    assert refreshed.current_subscription_id == result.subscription.id
    assert refreshed.subscription_history == []
    assert refreshed.version == member.version + 1


def test_repeated_purchases_build_history_without_duplicates(app_api, member, clock):
    ids = []
    for i in range(3):
        clock.now = datetime(2024, 1, 31, 10, 0, 0) + timedelta(days=i)
        ids.append(app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash").subscription.id)

    refreshed = app_api.get_member(member.id)
    assert refreshed.current_subscription_id == ids[2]
    assert refreshed.subscription_history == ids[:2]
    assert refreshed.current_subscription_id not in refreshed.subscription_history
    assert app_api.member_aggregate_problems(member.id) == []


def test_supersede_policy_cancels_previous_live_subscriptions(app_api, member):
    first = app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash")
    app_api.pause_subscription(first.subscription.id)

    second = app_api.purchase_subscription(member.id, plan_type="yearly", payment_method="card")

    assert second.superseded_ids == [first.subscription.id]
    assert app_api.get_subscription(first.subscription.id).status == "cancelled"
    live = [s for s in app_api.get_member_subscriptions(member.id) if s.status in ("active", "paused")]
    assert [s.id for s in live] == [second.subscription.id]


def test_reject_policy_refuses_second_purchase(app_api, member):
    app_api.policy = "reject"
    first = app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash")

    with pytest.raises(ActiveSubscriptionError):
        app_api.purchase_subscription(member.id, plan_type="yearly", payment_method="card")

    assert count_rows(app_api, "payments") == 1
    assert count_rows(app_api, "subscriptions") == 1
    assert app_api.get_member(member.id).current_subscription_id == first.subscription.id


def test_reject_policy_allows_purchase_after_cancel(app_api, member):
    app_api.policy = "reject"
    first = app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash")
    app_api.cancel_subscription(first.subscription.id)

    second = app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash")
    assert second.superseded_ids == []
    assert app_api.get_member(member.id).subscription_history == [first.subscription.id]


def test_unknown_policy_is_rejected(app_api):
    with pytest.raises(ValueError, match="Unknown active subscription policy"):
        AppAPI(connection=app_api.db_manager.conn, policy="merge")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"plan_id": 999},
        {"plan_id": 999, "plan_type": "monthly"},
        {"plan_type": "weekly"},
        {},
        {"plan_id": [1]},
        {"plan_id": {"id": 1}},
        {"plan_id": "1"},
        {"plan_id": True},
        {"plan_type": ["monthly"]},
    ],
)
def test_invalid_plan_writes_nothing(app_api, member, kwargs):
    with pytest.raises(InvalidPlanError, match="Invalid plan"):
        app_api.purchase_subscription(member.id, payment_method="cash", **kwargs)
    assert count_rows(app_api, "payments") == 0
    assert count_rows(app_api, "subscriptions") == 0


def test_unknown_member_writes_nothing(app_api):
    with pytest.raises(MemberNotFoundError, match="Member not found"):
        app_api.purchase_subscription(424242, plan_type="monthly", payment_method="cash")
    assert count_rows(app_api, "payments") == 0


def test_missing_member_id(app_api):
    with pytest.raises(ValidationError):
        app_api.purchase_subscription(None, plan_type="monthly", payment_method="cash")


@pytest.mark.parametrize("member_id", [{"id": 1}, [1], "1", 1.0, True])
def test_member_id_must_be_an_integer(app_api, member, member_id):
    with pytest.raises(ValidationError, match="member_id must be an integer"):
        app_api.purchase_subscription(member_id, plan_type="monthly", payment_method="cash")
    assert count_rows(app_api, "payments") == 0


@pytest.mark.parametrize("method", [None, "bitcoin", "CARD"])
def test_invalid_payment_method(app_api, member, method):
    with pytest.raises(ValidationError, match="Invalid payment method"):
        app_api.purchase_subscription(member.id, plan_type="monthly", payment_method=method)


def test_assign_plan_defaults_to_cash(app_api, member):
    premium = [p for p in app_api.get_all_plans() if p.name == "Premium Plan"][0]
    result = app_api.assign_plan_to_member(member.id, plan_id=premium.id)
    assert result.payment.method == "cash"
    assert result.payment.amount == 4499
    assert result.subscription.end_date == "2024-07-31T10:00:00"


def test_subscribe_me_resolves_member_from_identity(app_api, member):
    result = app_api.subscribe_me(member.user_id, plan_type="yearly", payment_method="bank-transfer")
    assert result.subscription.member_id == member.id
    assert app_api.get_my_current_subscription(member.user_id).id == result.subscription.id


def test_pay_for_plan_only_accepts_catalog_ids(app_api, member):
    with pytest.raises(InvalidPlanError):
        app_api.pay_for_plan(member.user_id, None, "card")
    basic = app_api.get_all_plans()[0]
    result = app_api.pay_for_plan(member.user_id, basic.id, "card")
    assert result.payment.amount == 999


def test_storage_failure_rolls_back_every_step(app_api, member):
    with patch.object(
        DatabaseManager,
        "_swap_current_subscription",
        side_effect=sqlite3.OperationalError("disk I/O error"),
    ):
        with pytest.raises(StorageError):
            app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash")

    assert count_rows(app_api, "payments") == 0
    assert count_rows(app_api, "subscriptions") == 0
    refreshed = app_api.get_member(member.id)
    assert refreshed.current_subscription_id is None
    assert refreshed.version == member.version


def test_storage_failure_is_logged_with_member_and_plan(app_api, member, caplog):
    with patch.object(
        DatabaseManager,
        "_link_payment",
        side_effect=sqlite3.OperationalError("database is locked"),
    ):
        with pytest.raises(StorageError):
            app_api.purchase_subscription(member.id, plan_type="yearly", payment_method="cash")
    assert f"member {member.id}" in caplog.text
    assert "'Yearly'" in caplog.text


def _bump_version_on_read(monkeypatch, app_api, times):
    """Simulates another writer touching the member right after every read."""
    original = app_api.db_manager.get_member
    reads = []

    def get_member_then_concurrent_write(member_id):
        member = original(member_id)
        if len(reads) < times:
            app_api.db_manager.conn.execute(
                "UPDATE members SET version = version + 1 WHERE id = ?", (member_id,)
            )
            app_api.db_manager.conn.commit()
        reads.append(member_id)
        return member

    monkeypatch.setattr(app_api.db_manager, "get_member", get_member_then_concurrent_write)
    return reads


def test_version_conflict_is_retried(app_api, member, monkeypatch):
    reads = _bump_version_on_read(monkeypatch, app_api, times=1)

    result = app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash")

    assert len(reads) == 2
    assert result.subscription.id is not None
    assert count_rows(app_api, "payments") == 1
    assert count_rows(app_api, "subscriptions") == 1


def test_version_conflict_gives_up_after_max_retries(app_api, member, monkeypatch):
    app_api.max_retries = 3
    reads = _bump_version_on_read(monkeypatch, app_api, times=10)

    with pytest.raises(ConcurrentModificationError):
        app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash")

    assert len(reads) == 3
    assert count_rows(app_api, "payments") == 0
    assert count_rows(app_api, "subscriptions") == 0


def test_stale_member_cannot_overwrite_newer_purchase(app_api, member):
    stale = app_api.db_manager.get_member(member.id)
    winner = app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash")

    payment = Payment(
        id=None,
        member_id=member.id,
        amount=1000,
        method="cash",
        transaction_id="TXN-STALE",
        invoice_number="INV-STALE",
        payment_date="2024-01-31T10:00:00",
    )
    subscription = Subscription(
        id=None,
        member_id=member.id,
        plan=PlanTerms("Monthly", 1, 1000),
        start_date="2024-01-31T10:00:00",
        end_date="2024-02-29T10:00:00",
        created_at="2024-01-31T10:00:00",
    )
    with pytest.raises(ConcurrentModificationError):
        app_api.db_manager.record_purchase(stale, payment, subscription)

    refreshed = app_api.get_member(member.id)
    assert refreshed.current_subscription_id == winner.subscription.id
    assert app_api.get_subscription(winner.subscription.id).status == "active"
    assert count_rows(app_api, "payments") == 1
