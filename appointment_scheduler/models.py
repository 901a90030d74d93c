from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from appointment_scheduler import config
from appointment_scheduler.errors import InvalidRangeError, InvalidTransitionError


class TimeInterval(BaseModel):
    """A range of time-of-day values or of instants, with an optional label.

    Both bounds must be of the same kind and start must precede end.
    """

    model_config = ConfigDict(frozen=True)

    start: Union[datetime, time]
    end: Union[datetime, time]
    label: Optional[str] = None

    @model_validator(mode="after")
    def check_bounds(self) -> "TimeInterval":
        if type(self.start) is not type(self.end):
            raise InvalidRangeError(f"Cannot mix {type(self.start).__name__} and {type(self.end).__name__} bounds")
        if self.start >= self.end:
            raise InvalidRangeError(f"Start {self.start} must be before end {self.end}")
        return self

    def overlaps(self, other: "TimeInterval") -> bool:
        """True if the closed ranges share any instant, so touching ranges overlap."""
        return not (self.end < other.start) and not (self.start > other.end)

    def intersects(self, other: "TimeInterval") -> bool:
        """True if the half-open ranges share any instant."""
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeInterval") -> bool:
        return self.start <= other.start and self.end >= other.end

    def on(self, day: date) -> "TimeInterval":
        """Anchors a time-of-day interval to a calendar date."""
        return TimeInterval(
            start=datetime.combine(day, self.start),
            end=datetime.combine(day, self.end),
            label=self.label,
        )

    def __str__(self) -> str:
        text = f"{self.start.isoformat(timespec='minutes')} - {self.end.isoformat(timespec='minutes')}"
        return f"{text} ({self.label})" if self.label else text


class ReservationStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class MedicationStatus(str, Enum):
    PENDING_DISPENSE = "Pending to Dispense"
    DISPENSED = "Dispense Complete"


ACTIVE_STATUSES = (ReservationStatus.PENDING, ReservationStatus.CONFIRMED)


class Reservation(BaseModel):
    """A single appointment between a requester and a provider.

    Status only moves through the transition methods below; each raises
    InvalidTransitionError and leaves the reservation untouched when the
    current status does not allow the move.
    """

    id: str
    sequence: int
    requester_id: str
    provider_id: str
    scheduled_at: datetime
    status: ReservationStatus = ReservationStatus.PENDING
    request_notes: Optional[str] = None
    outcome_notes: Optional[str] = None
    prescribed_items: Dict[str, int] = Field(default_factory=dict)
    medication_status: Optional[MedicationStatus] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def sort_key(self) -> Tuple[datetime, int]:
        return (self.scheduled_at, self.sequence)

    def window(self, slot_duration: timedelta) -> TimeInterval:
        return TimeInterval(start=self.scheduled_at, end=self.scheduled_at + slot_duration)

    def ensure_status(self, action: str, *allowed: ReservationStatus):
        if self.status not in allowed:
            names = " or ".join(s.value for s in allowed)
            raise InvalidTransitionError(
                f"Cannot {action} reservation {self.id}: status is {self.status.value}, expected {names}"
            )

    def confirm(self):
        self.ensure_status("confirm", ReservationStatus.PENDING)
        self.status = ReservationStatus.CONFIRMED

    def cancel(self) -> ReservationStatus:
        """Cancels the reservation and returns the status it had before."""
        self.ensure_status("cancel", *ACTIVE_STATUSES)
        previous = self.status
        self.status = ReservationStatus.CANCELLED
        return previous

    def complete(self, prescribed_items: Optional[Mapping[str, int]] = None, notes: Optional[str] = None):
        self.ensure_status("complete", ReservationStatus.CONFIRMED)
        self.prescribed_items = dict(prescribed_items or {})
        self.outcome_notes = notes
        if self.prescribed_items:
            self.medication_status = MedicationStatus.PENDING_DISPENSE
        self.status = ReservationStatus.COMPLETED

    def mark_dispensed(self):
        self.ensure_status("dispense", ReservationStatus.COMPLETED)
        if self.medication_status != MedicationStatus.PENDING_DISPENSE:
            raise InvalidTransitionError(f"Reservation {self.id} has no medication pending to dispense")
        self.medication_status = MedicationStatus.DISPENSED

    def reschedule_to(self, instant: datetime):
        self.ensure_status("reschedule", *ACTIVE_STATUSES)
        self.scheduled_at = instant


def _default_windows() -> Tuple[TimeInterval, ...]:
    return tuple(TimeInterval(start=start, end=end) for start, end in config.WORKING_WINDOWS)


class BookingPolicy(BaseModel):
    """Business rules applied to every booking request."""

    model_config = ConfigDict(frozen=True)

    slot_minutes: int = Field(default=config.SLOT_DURATION_MINUTES, gt=0)
    horizon_days: int = Field(default=config.BOOKING_HORIZON_DAYS, ge=0)
    working_windows: Tuple[TimeInterval, ...] = Field(default_factory=_default_windows)
    booking_cutoff: time = config.BOOKING_CUTOFF
    availability_days: int = Field(default=config.AVAILABILITY_DAYS, ge=0)

    @property
    def slot_duration(self) -> timedelta:
        return timedelta(minutes=self.slot_minutes)

    def within_hours(self, instant: datetime) -> bool:
        moment = instant.time()
        if moment > self.booking_cutoff:
            return False
        return any(window.start <= moment < window.end for window in self.working_windows)

    def horizon_end(self, now: datetime) -> datetime:
        """End of the booking horizon: the close of the last working window on the final horizon day."""
        last_day = (now + timedelta(days=self.horizon_days)).date()
        return datetime.combine(last_day, max(window.end for window in self.working_windows))


class Party(BaseModel):
    id: str
    name: str
    role: str = "requester"
    specialty: Optional[str] = None


class ScheduleEntry(BaseModel):
    start: datetime
    end: datetime
    description: str
    reservation_id: Optional[str] = None


class CalendarSnapshot(BaseModel):
    provider_id: str
    slot_minutes: int
    template: List[TimeInterval]
    blocked: Dict[date, List[TimeInterval]] = Field(default_factory=dict)
    reserved: Dict[date, List[time]] = Field(default_factory=dict)


class EngineSnapshot(BaseModel):
    next_sequence: int = 1
    reservations: List[Reservation] = Field(default_factory=list)
    calendars: List[CalendarSnapshot] = Field(default_factory=list)


class StockItem(BaseModel):
    id: str
    name: str
    quantity: int = Field(ge=0)
    low_stock_alert: int = 5

    @property
    def is_low(self) -> bool:
        return self.quantity < self.low_stock_alert
