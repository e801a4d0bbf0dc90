from datetime import datetime

import pytest

from gymtrack import config
from gymtrack.app_api import AppAPI
from gymtrack.database import create_database, seed_default_plans


class FixedClock:
    """Callable clock the tests can move forward by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture(autouse=True)
def fast_bcrypt(monkeypatch):
    # Minimum bcrypt cost keeps identity creation quick in tests
    monkeypatch.setattr(config, "BCRYPT_ROUNDS", 4)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 1, 31, 10, 0, 0))


@pytest.fixture
def app_api(clock) -> AppAPI:
    conn = create_database(":memory:")  # Use the actual schema creation
    seed_default_plans(conn)
    api = AppAPI(connection=conn, clock=clock, policy="supersede")
    yield api
    api.close()


@pytest.fixture
def member(app_api):
    return app_api.create_member("john.doe@example.com", "secret123", "John", "Doe", phone="1234567890")


@pytest.fixture
def other_member(app_api):
    return app_api.create_member("jane.smith@example.com", "secret456", "Jane", "Smith")


@pytest.fixture
def trainer(app_api):
    return app_api.create_trainer(
        "coach.carter@example.com",
        "coach123",
        "Ken",
        "Carter",
        specialization=["strength", "conditioning"],
        experience=8,
        certifications=["NSCA-CSCS"],
    )
