from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from gymtrack.app_api import AppAPI
from gymtrack.database import connect, initialize_database
from gymtrack.errors import StorageError
from gymtrack.sweeper import JOB_ID, ExpirationSweeper, run_sweep_safely, sweep_expired


@pytest.fixture
def monthly(app_api, member):
    # Bought 2024-01-31T10:00:00, ends 2024-02-29T10:00:00
    return app_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash").subscription


def test_sweep_expires_past_active_subscription(app_api, monthly):
    assert app_api.sweep_expired(now=datetime(2024, 2, 29, 10, 0, 1)) == {"expired_count": 1}
    assert app_api.get_subscription(monthly.id).status == "expired"


def test_sweep_leaves_unexpired_subscription(app_api, monthly):
    assert app_api.sweep_expired(now=datetime(2024, 2, 29, 10, 0, 0)) == {"expired_count": 0}
    assert app_api.get_subscription(monthly.id).status == "active"


def test_sweep_is_idempotent(app_api, monthly):
    now = datetime(2024, 3, 15)
    assert app_api.sweep_expired(now=now)["expired_count"] == 1
    assert app_api.sweep_expired(now=now)["expired_count"] == 0


def test_sweep_ignores_paused_and_cancelled(app_api, member, other_member, monthly):
    app_api.pause_subscription(monthly.id)
    other = app_api.purchase_subscription(other_member.id, plan_type="monthly", payment_method="cash").subscription
    app_api.cancel_subscription(other.id)

    assert app_api.sweep_expired(now=datetime(2025, 1, 1))["expired_count"] == 0
    assert app_api.get_subscription(monthly.id).status == "paused"
    assert app_api.get_subscription(other.id).status == "cancelled"


def test_resumed_subscription_past_end_expires_on_next_sweep(app_api, monthly):
    app_api.pause_subscription(monthly.id)
    app_api.sweep_expired(now=datetime(2024, 4, 1))
    app_api.resume_subscription(monthly.id)
    assert app_api.sweep_expired(now=datetime(2024, 4, 1))["expired_count"] == 1


def test_sweep_uses_clock_by_default(app_api, clock, monthly):
    clock.now = datetime(2024, 3, 1)
    assert app_api.sweep_expired() == {"expired_count": 1}


def test_sweep_logs_count(app_api, monthly, caplog):
    with caplog.at_level("INFO"):
        app_api.sweep_expired(now=datetime(2024, 3, 1))
    assert "Checked subscriptions: 1 expired" in caplog.text


def test_module_sweep_opens_own_connection(tmp_path, clock):
    db_path = str(tmp_path / "sweep.db")
    initialize_database(db_path)
    setup_api = AppAPI(connection=connect(db_path), clock=clock)
    member = setup_api.create_member("sweep@example.com", "secret123", "Sam", "Sweep")
    subscription = setup_api.purchase_subscription(member.id, plan_type="monthly", payment_method="cash").subscription
    setup_api.close()

    assert sweep_expired(db_path, now=datetime(2024, 3, 1)) == {"expired_count": 1}

    check_api = AppAPI(connection=connect(db_path))
    try:
        assert check_api.get_subscription(subscription.id).status == "expired"
    finally:
        check_api.close()


def test_failed_sweep_is_logged_and_swallowed(caplog):
    with patch("gymtrack.sweeper.sweep_expired", side_effect=StorageError("Could not expire subscriptions.")):
        assert run_sweep_safely("unused.db") is None
    assert "Error checking subscriptions" in caplog.text


def test_start_schedules_single_instance_job():
    scheduler = MagicMock()
    sweeper = ExpirationSweeper(db_path="gym.db", interval_hours=2, scheduler=scheduler)

    sweeper.start()

    scheduler.add_job.assert_called_once()
    args, kwargs = scheduler.add_job.call_args
    assert args == (run_sweep_safely,)
    assert kwargs["id"] == JOB_ID
    assert kwargs["args"] == ["gym.db"]
    assert kwargs["max_instances"] == 1
    assert kwargs["coalesce"] is True
    assert kwargs["trigger"].interval == timedelta(hours=2)
    assert kwargs["next_run_time"] is not None
    scheduler.start.assert_called_once_with()


def test_shutdown_only_when_running():
    scheduler = MagicMock()
    scheduler.running = False
    sweeper = ExpirationSweeper(db_path="gym.db", scheduler=scheduler)
    sweeper.shutdown()
    scheduler.shutdown.assert_not_called()

    scheduler.running = True
    sweeper.shutdown()
    scheduler.shutdown.assert_called_once_with(wait=True)
