"""Error taxonomy shared by the persistence, business and HTTP layers."""


class GymError(Exception):
    """Base class for all gymtrack errors."""


class ValidationError(GymError, ValueError):
    """Missing or malformed input. Raised before any write happens."""


class InvalidPlanError(ValidationError):
    pass


class NotFoundError(GymError, LookupError):
    pass


class MemberNotFoundError(NotFoundError):
    pass


class SubscriptionNotFoundError(NotFoundError):
    pass


class TrainerNotFoundError(NotFoundError):
    pass


class ScheduleNotFoundError(NotFoundError):
    pass


class AuthenticationError(GymError):
    """No usable identity came with the request."""


class AuthorizationError(GymError):
    """The actor is not allowed to touch the resource."""


class InvalidTransitionError(GymError):
    def __init__(self, current_status: str, target_status: str):
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Cannot move subscription from '{current_status}' to '{target_status}'."
        )


class ActiveSubscriptionError(GymError):
    """A purchase was refused because the member already holds a live subscription."""


class ConcurrentModificationError(GymError):
    """The member aggregate changed between read and write."""


class StorageError(GymError):
    """The database failed while executing a write or read."""
