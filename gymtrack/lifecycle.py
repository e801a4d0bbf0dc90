"""Calendar arithmetic and the subscription state machine."""

from datetime import datetime, timezone
from types import MappingProxyType

from dateutil.relativedelta import relativedelta

from .errors import InvalidTransitionError
from .models import SubscriptionStatus

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"

ACTIVE = SubscriptionStatus.ACTIVE.value
PAUSED = SubscriptionStatus.PAUSED.value
EXPIRED = SubscriptionStatus.EXPIRED.value
CANCELLED = SubscriptionStatus.CANCELLED.value

# expired is only ever entered through the sweeper
ALLOWED_TRANSITIONS = MappingProxyType(
    {
        ACTIVE: frozenset({PAUSED, CANCELLED, EXPIRED}),
        PAUSED: frozenset({ACTIVE, CANCELLED}),
        EXPIRED: frozenset(),
        CANCELLED: frozenset(),
    }
)

USER_TRANSITIONS = frozenset({PAUSED, ACTIVE, CANCELLED})

# Statuses that count as "holding" a subscription for the one-live-subscription rule
LIVE_STATUSES = (ACTIVE, PAUSED)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def to_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT)


def add_calendar_months(start: datetime, months: int) -> datetime:
    """Adds whole calendar months, clamping to the last day of the target month.

    Jan 31 + 1 month is Feb 29 in a leap year and Feb 28 otherwise.
    """
    if months <= 0:
        raise ValueError(f"months must be positive, got {months}")
    return start + relativedelta(months=months)


def is_terminal(status: str) -> bool:
    return not ALLOWED_TRANSITIONS.get(status)


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def check_transition(current: str, target: str, by_user: bool = True) -> None:
    """Raises InvalidTransitionError unless current -> target is allowed.

    User actions may never move a subscription to expired.
    """
    if by_user and target not in USER_TRANSITIONS:
        raise InvalidTransitionError(current, target)
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)
