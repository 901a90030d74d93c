"""
Booking Engine

Orchestrates the request -> confirm -> complete/cancel protocol between
requesters and providers:
- Validates booking requests against the booking policy
- Detects conflicts with active reservations and blocked intervals
- Commits confirmed slots to each provider's availability calendar
- Answers availability and reservation queries

Mutations for one provider are serialized by a per-provider lock; the
reservation arena and the id counter are guarded by an engine-wide lock that
is always taken after a provider lock, never before.
"""

import logging
import threading
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from appointment_scheduler.availability import AvailabilityCalendar
from appointment_scheduler.collaborators import Inventory
from appointment_scheduler.errors import (
    ConflictError,
    HorizonExceededError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    OutOfHoursError,
    PastSlotError,
    RescheduleError,
    SchedulingError,
    SlotUnavailableError,
)
from appointment_scheduler.models import (
    BookingPolicy,
    EngineSnapshot,
    Reservation,
    ReservationStatus,
    ScheduleEntry,
    TimeInterval,
)

logger = logging.getLogger(__name__)

Listener = Callable[[str, Reservation], None]


class BookingEngine:
    """Holds every provider calendar and every reservation.

    Args:
        policy: booking rules; defaults come from config
        inventory: stock collaborator used when completing with prescribed items
        clock: returns the current instant, datetime.now by default
        listeners: called with (event, reservation) after each committed change
    """

    def __init__(
        self,
        policy: Optional[BookingPolicy] = None,
        inventory: Optional[Inventory] = None,
        clock: Optional[Callable[[], datetime]] = None,
        listeners: Iterable[Listener] = (),
    ):
        self.policy = policy or BookingPolicy()
        self.inventory = inventory
        self._clock = clock or datetime.now
        self._listeners: List[Listener] = list(listeners)
        self._calendars: Dict[str, AvailabilityCalendar] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._next_sequence = 1
        self._lock = threading.RLock()
        self._inventory_lock = threading.Lock()
        self._provider_locks: Dict[str, threading.RLock] = {}

    # ===== PROVIDERS & CALENDARS =====

    @property
    def providers(self) -> List[str]:
        with self._lock:
            return sorted(self._calendars)

    def add_provider(self, provider_id: str, template: Optional[Iterable[TimeInterval]] = None):
        """Registers a provider with the default (or given) daily template."""
        with self._provider_lock(provider_id):
            with self._lock:
                if provider_id in self._calendars:
                    logger.debug(f"Provider {provider_id} already registered")
                    return
                calendar = AvailabilityCalendar(provider_id, template=template, slot_minutes=self.policy.slot_minutes)
                self._calendars[provider_id] = calendar
            self._publish(calendar)
        logger.info(f"Registered provider {provider_id}")

    def set_provider_template(
        self,
        provider_id: str,
        blocked_intervals: Mapping[date, Iterable[TimeInterval]],
        template: Optional[Iterable[TimeInterval]] = None,
    ):
        """Replaces a provider's blocked intervals and regenerates its availability.

        Unknown providers are registered. Raises ConflictError, without changing
        anything, if a blocked interval overlaps an active reservation.
        """
        with self._provider_lock(provider_id):
            with self._lock:
                calendar = self._calendars.get(provider_id)
                if calendar is None:
                    calendar = AvailabilityCalendar(provider_id, slot_minutes=self.policy.slot_minutes)
                    self._calendars[provider_id] = calendar
            busy: Dict[date, List[TimeInterval]] = {}
            for reservation in self._active_for(provider_id):
                window = reservation.window(self.policy.slot_duration)
                busy.setdefault(reservation.scheduled_at.date(), []).append(window)
            calendar.replace_blocks(blocked_intervals, busy, template=template)
            self._publish(calendar)

    def block_interval(self, provider_id: str, day: date, interval: TimeInterval) -> TimeInterval:
        with self._provider_lock(provider_id):
            calendar = self._calendar(provider_id)
            return calendar.block(day, interval, busy=self._busy_windows(provider_id, day))

    def unblock_interval(self, provider_id: str, day: date, interval: TimeInterval):
        with self._provider_lock(provider_id):
            self._calendar(provider_id).unblock(day, interval)

    def provider_availability(self, provider_id: str, day: date) -> Dict[datetime, bool]:
        """The derived index of slot instant -> bookable for one provider and date."""
        with self._provider_lock(provider_id):
            return self._calendar(provider_id).availability_index(day)

    # ===== BOOKING PROTOCOL =====

    def book_slot(
        self, requester_id: str, provider_id: str, instant: datetime, notes: Optional[str] = None
    ) -> Reservation:
        """Creates a Pending reservation for a slot.

        The calendar is untouched until the provider confirms; competing
        requests are stopped by the conflict scan over Pending and Confirmed
        reservations.

        Raises:
            NotFoundError: unknown provider
            PastSlotError, HorizonExceededError, OutOfHoursError: rule violations
            ConflictError: overlaps an active reservation or a blocked interval
            SlotUnavailableError: the slot is not free in the provider calendar
        """
        with self._provider_lock(provider_id):
            calendar = self._calendar(provider_id)
            try:
                self._validate_slot(calendar, instant)
            except SchedulingError as e:
                logger.warning(f"Booking rejected for {requester_id} with {provider_id} at {instant}: {e}")
                raise

            with self._lock:
                sequence = self._next_sequence
                self._next_sequence += 1
                reservation = Reservation(
                    id=f"A{sequence}",
                    sequence=sequence,
                    requester_id=requester_id,
                    provider_id=provider_id,
                    scheduled_at=instant,
                    request_notes=notes,
                )
                self._reservations[reservation.id] = reservation
                result = reservation.model_copy(deep=True)

        logger.info(f"Reservation {result.id} requested by {requester_id} with {provider_id} at {instant}")
        self._emit("requested", result)
        return result

    def confirm_reservation(self, reservation_id: str, accept: bool) -> Reservation:
        """Accepts or rejects a Pending reservation.

        Accepting marks the slot unavailable; rejecting discards the
        reservation entirely. Returns the reservation as it stands afterwards.
        """
        reservation = self._pending(reservation_id)
        with self._provider_lock(reservation.provider_id):
            reservation = self._pending(reservation_id)
            calendar = self._calendar(reservation.provider_id)
            with self._lock:
                if accept:
                    calendar.reserve_slot(reservation.scheduled_at)
                    reservation.confirm()
                else:
                    del self._reservations[reservation_id]
                result = reservation.model_copy(deep=True)

        event = "confirmed" if accept else "rejected"
        logger.info(f"Reservation {reservation_id} {event} by {result.provider_id}")
        self._emit(event, result)
        return result

    def cancel_reservation(self, reservation_id: str) -> Reservation:
        """Cancels a Pending or Confirmed reservation, restoring a confirmed slot.

        Cancelling a Completed or Cancelled reservation raises
        InvalidTransitionError and changes nothing.
        """
        reservation = self._get(reservation_id)
        with self._provider_lock(reservation.provider_id):
            calendar = self._calendar(reservation.provider_id)
            with self._lock:
                try:
                    previous = reservation.cancel()
                except InvalidTransitionError as e:
                    logger.info(f"Cancel ignored: {e}")
                    raise
                if previous == ReservationStatus.CONFIRMED:
                    calendar.release_slot(reservation.scheduled_at)
                result = reservation.model_copy(deep=True)

        logger.info(f"Reservation {reservation_id} cancelled (was {previous.value})")
        self._emit("cancelled", result)
        return result

    def reschedule_reservation(
        self, reservation_id: str, new_provider_id: str, new_instant: datetime, notes: Optional[str] = None
    ) -> Reservation:
        """Cancels a reservation, then books a new one for the same requester.

        There is no rollback: if the new booking fails the old reservation
        stays cancelled and RescheduleError is raised with both facts.
        """
        cancelled = self.cancel_reservation(reservation_id)
        try:
            return self.book_slot(cancelled.requester_id, new_provider_id, new_instant, notes)
        except SchedulingError as e:
            logger.error(f"Reschedule of {reservation_id} left it cancelled: {e}")
            raise RescheduleError(cancelled, e) from e

    def move_reservation(self, reservation_id: str, new_instant: datetime) -> Reservation:
        """Replaces the time of a Pending or Confirmed reservation in place.

        The new instant must pass every booking validation; id and status are
        kept. A Confirmed reservation swaps its calendar slot atomically.
        """
        reservation = self._get(reservation_id)
        with self._provider_lock(reservation.provider_id):
            reservation.ensure_status("reschedule", ReservationStatus.PENDING, ReservationStatus.CONFIRMED)
            calendar = self._calendar(reservation.provider_id)
            self._validate_slot(calendar, new_instant, exclude=reservation_id)

            previous = reservation.scheduled_at
            with self._lock:
                if reservation.status == ReservationStatus.CONFIRMED:
                    calendar.reserve_slot(new_instant)
                    calendar.release_slot(previous)
                reservation.reschedule_to(new_instant)
                result = reservation.model_copy(deep=True)

        logger.info(f"Reservation {reservation_id} moved from {previous} to {new_instant}")
        self._emit("moved", result)
        return result

    def complete_reservation(
        self,
        reservation_id: str,
        prescribed_items: Optional[Mapping[str, int]] = None,
        notes: Optional[str] = None,
    ) -> Reservation:
        """Completes a Confirmed reservation and takes prescribed items out of stock.

        Stock is checked for every item before any is decremented, so an
        InsufficientStockError leaves inventory and reservation unchanged.
        """
        items = dict(prescribed_items or {})
        for item_id, quantity in items.items():
            if quantity <= 0:
                raise ValueError(f"Quantity for {item_id} must be positive, got {quantity}")

        reservation = self._get(reservation_id)
        with self._provider_lock(reservation.provider_id):
            reservation.ensure_status("complete", ReservationStatus.CONFIRMED)
            if items:
                self._take_stock(items)
            with self._lock:
                reservation.complete(items, notes)
                result = reservation.model_copy(deep=True)

        logger.info(f"Reservation {reservation_id} completed with {len(items)} prescribed item(s)")
        self._emit("completed", result)
        return result

    def mark_dispensed(self, reservation_id: str) -> Reservation:
        reservation = self._get(reservation_id)
        with self._provider_lock(reservation.provider_id):
            with self._lock:
                reservation.mark_dispensed()
                result = reservation.model_copy(deep=True)
        logger.info(f"Medication for reservation {reservation_id} dispensed")
        return result

    # ===== QUERIES =====

    def get_reservation(self, reservation_id: str) -> Reservation:
        with self._lock:
            return self._get(reservation_id).model_copy(deep=True)

    def is_slot_available(self, provider_id: str, instant: datetime) -> bool:
        with self._provider_lock(provider_id):
            return self._calendar(provider_id).is_free(instant)

    def list_available_slots(self, provider_id: str, days: Optional[int] = None) -> List[datetime]:
        """Bookable slot instants from now up to the horizon, or up to `days` ahead."""
        now = self._clock()
        end = self.policy.horizon_end(now)
        if days is not None:
            end = min(end, datetime.combine(now.date() + timedelta(days=days), datetime.max.time()))

        slots = []
        with self._provider_lock(provider_id):
            calendar = self._calendar(provider_id)
            day = now.date()
            while day <= end.date():
                for instant, bookable in calendar.availability_index(day).items():
                    if bookable and now < instant <= end:
                        slots.append(instant)
                day += timedelta(days=1)
        return sorted(slots)

    def list_pending(self, provider_id: str) -> List[Reservation]:
        return self._select(lambda r: r.provider_id == provider_id and r.status == ReservationStatus.PENDING)

    def list_upcoming(self, requester_id: Optional[str] = None, provider_id: Optional[str] = None) -> List[Reservation]:
        """Pending and Confirmed reservations still ahead, for one requester or one provider."""
        if (requester_id is None) == (provider_id is None):
            raise ValueError("Pass exactly one of requester_id or provider_id")
        now = self._clock()

        def matches(r: Reservation) -> bool:
            party = r.requester_id == requester_id if requester_id is not None else r.provider_id == provider_id
            return party and r.is_active and r.scheduled_at > now

        return self._select(matches)

    def list_by_status(self, status: ReservationStatus) -> List[Reservation]:
        return self._select(lambda r: r.status == status)

    def list_for_requester(self, requester_id: str) -> List[Reservation]:
        return self._select(lambda r: r.requester_id == requester_id)

    def list_upcoming_confirmed(self) -> List[Reservation]:
        now = self._clock()
        return self._select(lambda r: r.status == ReservationStatus.CONFIRMED and r.scheduled_at > now)

    def has_previous_reservation(self, requester_id: str) -> bool:
        return bool(self._select(lambda r: r.requester_id == requester_id and r.status != ReservationStatus.PENDING))

    def last_reservation(self, requester_id: str) -> Optional[Reservation]:
        """The latest-scheduled non-pending reservation of a requester."""
        history = self._select(lambda r: r.requester_id == requester_id and r.status != ReservationStatus.PENDING)
        return history[-1] if history else None

    def provider_schedule(self, provider_id: str) -> List[ScheduleEntry]:
        """Active reservations and blocked intervals of a provider, by start time."""
        with self._provider_lock(provider_id):
            calendar = self._calendar(provider_id)
            entries = []
            for reservation in self._active_for(provider_id):
                window = reservation.window(self.policy.slot_duration)
                entries.append(ScheduleEntry(
                    start=window.start,
                    end=window.end,
                    description=f"{reservation.status.value} reservation with {reservation.requester_id}",
                    reservation_id=reservation.id,
                ))
            for day, blocks in calendar.blocked_slots.items():
                for block in blocks:
                    anchored = block.on(day)
                    description = f"Blocked: {block.label}" if block.label else "Blocked"
                    entries.append(ScheduleEntry(start=anchored.start, end=anchored.end, description=description))
        entries.sort(key=lambda e: (e.start, e.reservation_id is None))
        return entries

    # ===== SNAPSHOT =====

    def snapshot(self) -> EngineSnapshot:
        locks = [self._provider_lock(provider_id) for provider_id in self.providers]
        for lock in locks:
            lock.acquire()
        try:
            with self._lock:
                return EngineSnapshot(
                    next_sequence=self._next_sequence,
                    reservations=[r.model_copy(deep=True) for r in sorted(self._reservations.values(), key=Reservation.sort_key)],
                    calendars=[self._calendars[p].to_snapshot() for p in sorted(self._calendars)],
                )
        finally:
            for lock in reversed(locks):
                lock.release()

    @classmethod
    def from_snapshot(cls, snapshot: EngineSnapshot, **kwargs) -> "BookingEngine":
        engine = cls(**kwargs)
        for calendar_snapshot in snapshot.calendars:
            engine._calendars[calendar_snapshot.provider_id] = AvailabilityCalendar.from_snapshot(calendar_snapshot)
        for reservation in snapshot.reservations:
            engine._reservations[reservation.id] = reservation.model_copy(deep=True)
        engine._next_sequence = snapshot.next_sequence
        logger.info(
            f"Restored {len(snapshot.reservations)} reservation(s) and {len(snapshot.calendars)} calendar(s)"
        )
        return engine

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    # ===== INTERNALS =====

    def _validate_slot(self, calendar: AvailabilityCalendar, instant: datetime, exclude: Optional[str] = None):
        now = self._clock()
        if instant <= now:
            raise PastSlotError(f"Cannot book {instant}: it is not in the future")
        horizon_end = self.policy.horizon_end(now)
        if instant > horizon_end:
            raise HorizonExceededError(
                f"Cannot book {instant}: bookings are only open until {horizon_end} "
                f"({self.policy.horizon_days} days ahead)"
            )
        if not self.policy.within_hours(instant):
            raise OutOfHoursError(f"Cannot book {instant}: outside working hours")

        window = TimeInterval(start=instant, end=instant + self.policy.slot_duration)
        for reservation in self._active_for(calendar.provider_id):
            if reservation.id != exclude and reservation.window(self.policy.slot_duration).intersects(window):
                raise ConflictError(f"Slot {instant} conflicts with reservation {reservation.id}")
        for block in calendar.blocked_on(instant.date()):
            if block.on(instant.date()).intersects(window):
                raise ConflictError(f"Slot {instant} conflicts with blocked interval {block}")
        if not calendar.is_free(instant):
            raise SlotUnavailableError(f"Slot {instant} is not available for {calendar.provider_id}")

    def _take_stock(self, items: Dict[str, int]):
        if self.inventory is None:
            raise SchedulingError("No inventory configured to dispense prescribed items")
        with self._inventory_lock:
            for item_id, quantity in items.items():
                available = self.inventory.stock_level(item_id)
                if quantity > available:
                    raise InsufficientStockError(item_id, quantity, available)
            for item_id, quantity in items.items():
                self.inventory.decrement_stock(item_id, quantity)

    def _publish(self, calendar: AvailabilityCalendar):
        today = self._clock().date()
        for offset in range(self.policy.availability_days):
            calendar.regenerate(today + timedelta(days=offset))

    def _busy_windows(self, provider_id: str, day: date) -> List[TimeInterval]:
        return [
            r.window(self.policy.slot_duration)
            for r in self._active_for(provider_id)
            if r.scheduled_at.date() == day
        ]

    def _active_for(self, provider_id: str) -> List[Reservation]:
        with self._lock:
            return [r for r in self._reservations.values() if r.provider_id == provider_id and r.is_active]

    def _select(self, predicate: Callable[[Reservation], bool]) -> List[Reservation]:
        with self._lock:
            matches = [r.model_copy(deep=True) for r in self._reservations.values() if predicate(r)]
        return sorted(matches, key=Reservation.sort_key)

    def _get(self, reservation_id: str) -> Reservation:
        with self._lock:
            reservation = self._reservations.get(reservation_id)
        if reservation is None:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        return reservation

    def _pending(self, reservation_id: str) -> Reservation:
        with self._lock:
            reservation = self._reservations.get(reservation_id)
        if reservation is None or reservation.status != ReservationStatus.PENDING:
            raise NotFoundError(f"Reservation {reservation_id} is not pending")
        return reservation

    def _calendar(self, provider_id: str) -> AvailabilityCalendar:
        with self._lock:
            calendar = self._calendars.get(provider_id)
        if calendar is None:
            raise NotFoundError(f"Provider {provider_id} not found")
        return calendar

    def _provider_lock(self, provider_id: str) -> threading.RLock:
        with self._lock:
            return self._provider_locks.setdefault(provider_id, threading.RLock())

    def _emit(self, event: str, reservation: Reservation):
        for listener in self._listeners:
            listener(event, reservation)
