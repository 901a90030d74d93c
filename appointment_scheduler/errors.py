"""Exceptions raised by the scheduling core.

Every error is raised before any state is mutated, except RescheduleError,
which reports that the old reservation was already cancelled.
"""


class SchedulingError(Exception):
    """Base class for all scheduling failures."""


class InvalidRangeError(SchedulingError):
    pass


class BookingValidationError(SchedulingError):
    """A requested instant breaks a booking rule."""


class PastSlotError(BookingValidationError):
    pass


class HorizonExceededError(BookingValidationError):
    pass


class OutOfHoursError(BookingValidationError):
    pass


class ConflictError(SchedulingError):
    pass


class SlotUnavailableError(SchedulingError):
    pass


class NotFoundError(SchedulingError, LookupError):
    pass


class InvalidTransitionError(SchedulingError):
    pass


class InsufficientStockError(SchedulingError):
    def __init__(self, item_id: str, requested: int, available: int):
        super().__init__(f"Insufficient stock for {item_id}: requested {requested}, available {available}")
        self.item_id = item_id
        self.requested = requested
        self.available = available


class RescheduleError(SchedulingError):
    """The old reservation was cancelled but the replacement booking failed."""

    def __init__(self, cancelled, cause: SchedulingError):
        super().__init__(f"Reservation {cancelled.id} was cancelled, but the new booking failed: {cause}")
        self.cancelled = cancelled
        self.cause = cause
