from datetime import datetime

import pytest

from gymtrack.errors import ValidationError


@pytest.fixture
def payments_over_two_months(app_api, member, other_member, clock):
    clock.now = datetime(2024, 1, 5, 9, 0, 0)
    app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash")
    clock.now = datetime(2024, 1, 31, 23, 30, 0)
    app_api.purchase_subscription(other_member.id, plan_type="quarterly", payment_method="card")
    clock.now = datetime(2024, 2, 10, 12, 0, 0)
    app_api.purchase_subscription(member.id, plan_type="yearly", payment_method="card")
    clock.now = datetime(2024, 3, 1, 8, 0, 0)
    app_api.purchase_subscription(other_member.id, plan_type="monthly", payment_method="upi")


def test_revenue_grouped_by_month_and_method(app_api, payments_over_two_months):
    report = app_api.generate_revenue_report("2024-01-01", "2024-02-29")

    assert report["start_date"] == "2024-01-01"
    assert report["end_date"] == "2024-02-29"
    assert report["total_revenue"] == 1000 + 2700 + 10000
    assert report["payment_count"] == 3
    assert report["by_month"] == [
        {"month": "2024-01", "revenue": 3700, "payments": 2},
        {"month": "2024-02", "revenue": 10000, "payments": 1},
    ]
    assert report["by_method"] == [
        {"method": "card", "revenue": 12700, "payments": 2},
        {"method": "cash", "revenue": 1000, "payments": 1},
    ]


def test_end_date_is_inclusive(app_api, payments_over_two_months):
    report = app_api.generate_revenue_report("2024-01-31", "2024-01-31")
    assert report["payment_count"] == 1
    assert report["total_revenue"] == 2700


def test_report_skips_deleted_payments(app_api, member, payments_over_two_months):
    subscription_id = app_api.get_member(member.id).current_subscription_id
    app_api.delete_subscription(subscription_id)

    report = app_api.generate_revenue_report("2024-01-01", "2024-12-31")
    assert report["payment_count"] == 3
    assert report["total_revenue"] == 1000 + 2700 + 1000


def test_empty_report(app_api):
    report = app_api.generate_revenue_report("2023-01-01", "2023-12-31")
    assert report["total_revenue"] == 0
    assert report["payment_count"] == 0
    assert report["by_month"] == []
    assert report["by_method"] == []


@pytest.mark.parametrize(
    "start,end",
    [
        ("2024-13-01", "2024-12-31"),
        ("01/01/2024", "2024-12-31"),
        (None, "2024-12-31"),
        ("2024-06-01", "2024-05-31"),
    ],
)
def test_invalid_report_range(app_api, start, end):
    with pytest.raises(ValidationError):
        app_api.generate_revenue_report(start, end)
