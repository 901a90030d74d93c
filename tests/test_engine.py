import json
import threading
from datetime import date, datetime, time, timedelta
from unittest.mock import MagicMock

import pytest

from appointment_scheduler.collaborators import InMemoryInventory
from appointment_scheduler.engine import BookingEngine
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
    EngineSnapshot,
    MedicationStatus,
    ReservationStatus,
    StockItem,
    TimeInterval,
)

NOW = datetime(2026, 1, 19, 8, 0)
TOMORROW = date(2026, 1, 20)


def at(hour, minute=0, day=TOMORROW):
    return datetime.combine(day, time(hour, minute))


@pytest.fixture
def inventory():
    return InMemoryInventory([
        StockItem(id="amox", name="Amoxicillin", quantity=10),
        StockItem(id="ibu", name="Ibuprofen", quantity=1),
    ])


@pytest.fixture
def engine(inventory):
    engine = BookingEngine(inventory=inventory, clock=lambda: NOW)
    engine.add_provider("d1")
    engine.add_provider("d2")
    return engine


def confirmed(engine, requester_id="p1", provider_id="d1", instant=None):
    reservation = engine.book_slot(requester_id, provider_id, instant or at(14))
    return engine.confirm_reservation(reservation.id, accept=True)


# --- Booking rules ---

def test_book_slot_creates_pending_reservation(engine):
    reservation = engine.book_slot("p1", "d1", at(14), notes="Sore throat")

    assert reservation.id == "A1"
    assert reservation.status == ReservationStatus.PENDING
    assert reservation.request_notes == "Sore throat"
    # Pending requests do not take the slot out of the calendar.
    assert engine.is_slot_available("d1", at(14))


def test_book_slot_rejects_past_instant(engine):
    with pytest.raises(PastSlotError):
        engine.book_slot("p1", "d1", datetime(2026, 1, 18, 14, 0))
    with pytest.raises(PastSlotError):
        engine.book_slot("p1", "d1", NOW)


def test_book_slot_horizon_boundary(engine):
    last = datetime(2026, 2, 18, 17, 30)
    assert engine.book_slot("p1", "d1", last).scheduled_at == last

    with pytest.raises(HorizonExceededError):
        engine.book_slot("p1", "d1", datetime(2026, 2, 19, 9, 0))


def test_last_horizon_day_after_cutoff_is_out_of_hours(engine):
    # The horizon closes with the working day at 18:00, the booking cutoff still applies.
    with pytest.raises(OutOfHoursError):
        engine.book_slot("p1", "d1", datetime(2026, 2, 18, 17, 45))
    with pytest.raises(HorizonExceededError):
        engine.book_slot("p1", "d1", datetime(2026, 2, 18, 18, 15))


@pytest.mark.parametrize("instant", [at(12, 15), at(17, 45), at(8, 30), at(12, 0)])
def test_book_slot_rejects_out_of_hours(engine, instant):
    with pytest.raises(OutOfHoursError):
        engine.book_slot("p1", "d1", instant)


def test_book_slot_accepts_latest_start(engine):
    assert engine.book_slot("p1", "d1", at(17, 30)).status == ReservationStatus.PENDING


def test_book_slot_unknown_provider(engine):
    with pytest.raises(NotFoundError):
        engine.book_slot("p1", "nobody", at(14))


def test_pending_reservation_blocks_competing_request(engine):
    engine.book_slot("p1", "d1", at(14))
    with pytest.raises(ConflictError):
        engine.book_slot("p2", "d1", at(14))

    # Adjacent slots do not conflict.
    assert engine.book_slot("p2", "d1", at(14, 30)).id == "A2"
    assert engine.book_slot("p3", "d1", at(13, 30)).id == "A3"
    # Other providers are independent.
    assert engine.book_slot("p2", "d2", at(14)).id == "A4"


def test_off_grid_instant_is_unavailable(engine):
    with pytest.raises(SlotUnavailableError):
        engine.book_slot("p1", "d1", at(14, 15))


def test_blocked_interval_conflicts(engine):
    engine.block_interval("d1", TOMORROW, TimeInterval(start=time(15, 0), end=time(16, 0), label="Surgery"))

    with pytest.raises(ConflictError):
        engine.book_slot("p1", "d1", at(15))
    # The slot touching the block is no longer generated.
    with pytest.raises(SlotUnavailableError):
        engine.book_slot("p1", "d1", at(14, 30))


# --- Protocol ---

def test_request_confirm_cancel_scenario(engine):
    reservation = engine.book_slot("p1", "d1", at(14))
    assert engine.list_pending("d1")[0].id == reservation.id

    accepted = engine.confirm_reservation(reservation.id, accept=True)
    assert accepted.status == ReservationStatus.CONFIRMED
    assert not engine.is_slot_available("d1", at(14))
    assert engine.list_pending("d1") == []

    with pytest.raises(ConflictError):
        engine.book_slot("p2", "d1", at(14))

    cancelled = engine.cancel_reservation(reservation.id)
    assert cancelled.status == ReservationStatus.CANCELLED
    assert engine.is_slot_available("d1", at(14))

    assert engine.book_slot("p2", "d1", at(14)).status == ReservationStatus.PENDING


def test_reject_discards_reservation(engine):
    reservation = engine.book_slot("p1", "d1", at(14))
    rejected = engine.confirm_reservation(reservation.id, accept=False)

    assert rejected.id == reservation.id
    with pytest.raises(NotFoundError):
        engine.get_reservation(reservation.id)
    assert engine.is_slot_available("d1", at(14))
    assert engine.book_slot("p2", "d1", at(14)).id == "A2"


def test_confirm_requires_pending(engine):
    reservation = confirmed(engine)
    with pytest.raises(NotFoundError):
        engine.confirm_reservation(reservation.id, accept=True)
    with pytest.raises(NotFoundError):
        engine.confirm_reservation("A99", accept=False)


def test_confirm_fails_when_slot_taken_in_calendar(engine):
    reservation = engine.book_slot("p1", "d1", at(14))
    engine._calendars["d1"].reserve_slot(at(14))

    with pytest.raises(SlotUnavailableError):
        engine.confirm_reservation(reservation.id, accept=True)
    assert engine.get_reservation(reservation.id).status == ReservationStatus.PENDING


def test_cancel_pending_keeps_calendar(engine):
    reservation = engine.book_slot("p1", "d1", at(14))
    engine.cancel_reservation(reservation.id)
    assert engine.is_slot_available("d1", at(14))
    assert engine.provider_availability("d1", TOMORROW)[at(14)] is True


def test_cancel_terminal_reservation_is_rejected(engine):
    reservation = confirmed(engine)
    engine.cancel_reservation(reservation.id)
    with pytest.raises(InvalidTransitionError):
        engine.cancel_reservation(reservation.id)
    assert engine.get_reservation(reservation.id).status == ReservationStatus.CANCELLED

    with pytest.raises(NotFoundError):
        engine.cancel_reservation("A99")


def test_reschedule_cancels_and_books(engine):
    original = confirmed(engine)
    replacement = engine.reschedule_reservation(original.id, "d2", at(15), notes="Later please")

    assert replacement.id == "A2"
    assert replacement.provider_id == "d2"
    assert replacement.requester_id == "p1"
    assert replacement.status == ReservationStatus.PENDING
    assert engine.get_reservation(original.id).status == ReservationStatus.CANCELLED
    assert engine.is_slot_available("d1", at(14))


def test_failed_reschedule_leaves_original_cancelled(engine):
    original = confirmed(engine)

    with pytest.raises(RescheduleError) as excinfo:
        engine.reschedule_reservation(original.id, "d1", at(12, 15))

    assert excinfo.value.cancelled.id == original.id
    assert isinstance(excinfo.value.cause, OutOfHoursError)
    assert excinfo.value.__cause__ is excinfo.value.cause
    assert engine.get_reservation(original.id).status == ReservationStatus.CANCELLED
    assert engine.is_slot_available("d1", at(14))


def test_move_confirmed_reservation(engine):
    reservation = confirmed(engine)
    moved = engine.move_reservation(reservation.id, at(15))

    assert moved.id == reservation.id
    assert moved.status == ReservationStatus.CONFIRMED
    assert moved.scheduled_at == at(15)
    assert engine.is_slot_available("d1", at(14))
    assert not engine.is_slot_available("d1", at(15))


def test_move_into_own_neighbouring_slot(engine):
    reservation = engine.book_slot("p1", "d1", at(14))
    assert engine.move_reservation(reservation.id, at(14, 30)).scheduled_at == at(14, 30)


def test_move_rejects_conflict_without_changes(engine):
    first = confirmed(engine)
    engine.book_slot("p2", "d1", at(15))

    with pytest.raises(ConflictError):
        engine.move_reservation(first.id, at(15))
    assert engine.get_reservation(first.id).scheduled_at == at(14)
    assert not engine.is_slot_available("d1", at(14))


def test_move_terminal_reservation(engine):
    reservation = confirmed(engine)
    engine.cancel_reservation(reservation.id)
    with pytest.raises(InvalidTransitionError):
        engine.move_reservation(reservation.id, at(15))


def test_complete_takes_stock(engine, inventory):
    reservation = confirmed(engine)
    completed = engine.complete_reservation(reservation.id, {"amox": 2}, notes="Mild infection")

    assert completed.status == ReservationStatus.COMPLETED
    assert completed.prescribed_items == {"amox": 2}
    assert completed.medication_status == MedicationStatus.PENDING_DISPENSE
    assert inventory.stock_level("amox") == 8

    dispensed = engine.mark_dispensed(reservation.id)
    assert dispensed.medication_status == MedicationStatus.DISPENSED


def test_complete_with_insufficient_stock_changes_nothing(engine, inventory):
    reservation = confirmed(engine)

    with pytest.raises(InsufficientStockError) as excinfo:
        engine.complete_reservation(reservation.id, {"amox": 2, "ibu": 2})

    assert excinfo.value.item_id == "ibu"
    assert excinfo.value.available == 1
    assert inventory.stock_level("amox") == 10
    assert inventory.stock_level("ibu") == 1
    assert engine.get_reservation(reservation.id).status == ReservationStatus.CONFIRMED


def test_complete_requires_confirmed(engine, inventory):
    reservation = engine.book_slot("p1", "d1", at(14))
    with pytest.raises(InvalidTransitionError):
        engine.complete_reservation(reservation.id, {"amox": 1})
    assert inventory.stock_level("amox") == 10


def test_complete_rejects_non_positive_quantity(engine):
    reservation = confirmed(engine)
    with pytest.raises(ValueError):
        engine.complete_reservation(reservation.id, {"amox": 0})


def test_complete_unknown_item(engine):
    reservation = confirmed(engine)
    with pytest.raises(NotFoundError):
        engine.complete_reservation(reservation.id, {"penicillin": 1})


def test_complete_without_inventory():
    engine = BookingEngine(clock=lambda: NOW)
    engine.add_provider("d1")
    reservation = confirmed(engine)

    with pytest.raises(SchedulingError):
        engine.complete_reservation(reservation.id, {"amox": 1})
    assert engine.complete_reservation(reservation.id).status == ReservationStatus.COMPLETED


# --- Providers & calendars ---

def test_add_provider_is_idempotent(engine):
    engine.block_interval("d1", TOMORROW, TimeInterval(start=time(9, 0), end=time(10, 0)))
    engine.add_provider("d1")
    assert engine.providers == ["d1", "d2"]
    assert not engine.is_slot_available("d1", at(9))


def test_set_provider_template_conflict_keeps_blocks(engine):
    confirmed(engine)
    engine.block_interval("d1", TOMORROW, TimeInterval(start=time(9, 0), end=time(10, 0)))

    with pytest.raises(ConflictError):
        engine.set_provider_template("d1", {TOMORROW: [TimeInterval(start=time(13, 30), end=time(14, 0))]})

    assert not engine.is_slot_available("d1", at(9))
    assert engine.is_slot_available("d1", at(10, 30))


def test_set_provider_template_registers_and_regenerates(engine):
    blocks = {TOMORROW: [TimeInterval(start=time(9, 0), end=time(12, 0), label="Clinic")]}
    engine.set_provider_template("d3", blocks)

    assert "d3" in engine.providers
    index = engine.provider_availability("d3", TOMORROW)
    assert not any(bookable for instant, bookable in index.items() if instant.hour < 12)
    assert index[at(13, 30)] is True


def test_unblock_interval(engine):
    block = TimeInterval(start=time(15, 0), end=time(16, 0))
    engine.block_interval("d1", TOMORROW, block)
    engine.unblock_interval("d1", TOMORROW, block)
    assert engine.book_slot("p1", "d1", at(15)).status == ReservationStatus.PENDING


def test_block_interval_rejects_active_reservation(engine):
    engine.book_slot("p1", "d1", at(14))
    with pytest.raises(ConflictError):
        engine.block_interval("d1", TOMORROW, TimeInterval(start=time(13, 0), end=time(14, 0)))


# --- Queries ---

def test_list_available_slots(engine):
    slots = engine.list_available_slots("d1", days=1)
    assert len(slots) == 32
    assert slots == sorted(slots)
    assert slots[0] == datetime(2026, 1, 19, 9, 0)

    engine.book_slot("p1", "d1", at(14))
    assert len(engine.list_available_slots("d1", days=1)) == 32

    confirmed(engine, requester_id="p2", instant=at(15))
    slots = engine.list_available_slots("d1", days=1)
    assert len(slots) == 31
    assert at(15) not in slots


def test_list_available_slots_stops_at_horizon(engine):
    slots = engine.list_available_slots("d1")
    assert slots[-1] == datetime(2026, 2, 18, 17, 30)
    assert all(NOW < slot for slot in slots)


def test_listings_sort_by_time_then_sequence(engine):
    engine.book_slot("p1", "d1", at(15))
    engine.book_slot("p2", "d2", at(14))
    engine.book_slot("p3", "d1", at(14))

    pending = engine.list_by_status(ReservationStatus.PENDING)
    assert [r.id for r in pending] == ["A2", "A3", "A1"]
    assert [r.id for r in engine.list_pending("d1")] == ["A3", "A1"]


def test_list_upcoming(engine):
    first = confirmed(engine)
    engine.book_slot("p1", "d2", at(9))
    engine.cancel_reservation(engine.book_slot("p1", "d2", at(10)).id)

    assert [r.id for r in engine.list_upcoming(requester_id="p1")] == ["A2", first.id]
    assert [r.id for r in engine.list_upcoming(provider_id="d1")] == [first.id]
    assert [r.id for r in engine.list_upcoming_confirmed()] == [first.id]

    with pytest.raises(ValueError):
        engine.list_upcoming()
    with pytest.raises(ValueError):
        engine.list_upcoming(requester_id="p1", provider_id="d1")


def test_requester_history(engine):
    engine.book_slot("p1", "d1", at(9))
    assert not engine.has_previous_reservation("p1")
    assert engine.last_reservation("p1") is None

    confirmed(engine, instant=at(14))
    assert engine.has_previous_reservation("p1")
    assert engine.last_reservation("p1").scheduled_at == at(14)
    assert len(engine.list_for_requester("p1")) == 2


def test_queries_return_copies(engine):
    reservation = engine.book_slot("p1", "d1", at(14))
    reservation.status = ReservationStatus.CANCELLED

    copy = engine.get_reservation(reservation.id)
    assert copy.status == ReservationStatus.PENDING
    copy.scheduled_at = at(15)
    assert engine.get_reservation(reservation.id).scheduled_at == at(14)


def test_provider_schedule(engine):
    confirmed(engine)
    engine.block_interval("d1", TOMORROW, TimeInterval(start=time(9, 0), end=time(10, 0), label="Rounds"))

    entries = engine.provider_schedule("d1")
    assert [e.description for e in entries] == ["Blocked: Rounds", "Confirmed reservation with p1"]
    assert entries[1].reservation_id == "A1"
    assert entries[1].end == at(14, 30)


# --- Listeners & snapshot ---

def test_listeners_receive_events(engine):
    listener = MagicMock()
    engine.add_listener(listener)

    reservation = engine.book_slot("p1", "d1", at(14))
    engine.confirm_reservation(reservation.id, accept=True)
    engine.cancel_reservation(reservation.id)

    events = [c.args[0] for c in listener.call_args_list]
    assert events == ["requested", "confirmed", "cancelled"]
    assert listener.call_args_list[0].args[1].id == reservation.id


def test_snapshot_round_trip(engine):
    first = confirmed(engine)
    engine.book_slot("p2", "d2", at(10))
    engine.block_interval("d1", TOMORROW, TimeInterval(start=time(16, 0), end=time(17, 0), label="Admin"))

    data = json.loads(json.dumps(engine.snapshot().model_dump(mode="json")))
    restored = BookingEngine.from_snapshot(EngineSnapshot.model_validate(data), clock=lambda: NOW)

    assert restored.providers == ["d1", "d2"]
    assert restored.get_reservation(first.id) == engine.get_reservation(first.id)
    assert not restored.is_slot_available("d1", at(14))
    assert not restored.is_slot_available("d1", at(16))
    assert restored.book_slot("p3", "d1", at(11)).id == "A3"


# --- Concurrency ---

def test_concurrent_bookings_for_one_slot(engine):
    results = []
    errors = []
    start = threading.Barrier(10)

    def attempt(requester_id):
        start.wait()
        try:
            results.append(engine.book_slot(requester_id, "d1", at(14)))
        except ConflictError as e:
            errors.append(e)

    threads = [threading.Thread(target=attempt, args=(f"p{i}",)) for i in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert len(results) == 1
    assert len(errors) == 9
    assert len(engine.list_pending("d1")) == 1


def test_concurrent_bookings_across_providers(engine):
    slots = [at(9) + timedelta(minutes=30 * i) for i in range(6)]
    booked = []

    def book_all(provider_id):
        for instant in slots:
            booked.append(engine.book_slot(f"p-{provider_id}", provider_id, instant).id)

    threads = [threading.Thread(target=book_all, args=(p,)) for p in ("d1", "d2")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert len(set(booked)) == 12
