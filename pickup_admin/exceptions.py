"""Custom exceptions for the groups engine."""

from pickup_admin import config


class PickupAdminError(Exception):
    """Base class for every error raised by the groups engine."""


# ===================== Validation =====================

class ValidationFailure(PickupAdminError):
    """Hard rejection. Nothing was changed and nothing was logged."""

    def __init__(self, message: str, dismiss_after: int = config.ERROR_DISMISS_SECONDS):
        super().__init__(message)
        self.message = message
        self.dismiss_after = dismiss_after


class NoOverlapError(ValidationFailure):
    """Raised when a rider's window does not overlap the group's window or dates differ."""

    def __init__(self, message: str = "These flights have no overlap"):
        super().__init__(message)


class RouteMismatchError(ValidationFailure):
    """Raised when a rider's airport or direction differs from the group's."""


class InvalidGroupError(ValidationFailure):
    """Raised for a group size or size/bag combination with no vehicle class."""


class MissingScheduleError(ValidationFailure):
    """Raised when a new group is created without a date or time."""

    def __init__(self, message: str = "Date and time are required"):
        super().__init__(message)


class CapacityWarning(PickupAdminError):
    """Soft warning: bag units exceed the recommended maximum.

    Nothing was changed. Repeat the call with ``override=True`` to proceed.
    """

    def __init__(self, bag_units: int, limit: int = config.RECOMMENDED_MAX_BAG_UNITS):
        self.message = "You are creating a group over the recommended bag size"
        super().__init__(self.message)
        self.bag_units = bag_units
        self.limit = limit
        self.dismiss_after = config.ERROR_DISMISS_SECONDS


# ===================== Lookups =====================

class RiderNotFoundError(PickupAdminError):
    """Raised when a flight id is not on the board."""


class NotInCorralError(RiderNotFoundError):
    """Raised when an operation needs the rider to be held in the corral."""


class GroupNotFoundError(PickupAdminError):
    """Raised when a ride id is not on the board."""


class DuplicateFlightError(PickupAdminError):
    """Raised when a user already has the same flight on the same date."""


# ===================== Persistence =====================

class StorageError(PickupAdminError):
    """Raised when a storage call fails before anything was changed."""


class PartialPersistenceError(StorageError):
    """Raised when a multi-step write stopped half way and could not be undone."""


class ChangeLogWriteError(StorageError):
    """Raised when a ChangeLog row could not be stored."""


class AuditWriteError(PickupAdminError):
    """Raised when a mutation was applied but its ChangeLog entry was not stored.

    ``result`` holds the applied mutation so the caller can still show it.
    """

    def __init__(self, result, cause: Exception):
        super().__init__(f"Change applied but not recorded in the change log: {cause}")
        self.result = result
        self.cause = cause
