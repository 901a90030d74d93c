import functools
import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Callable, Dict, List, Optional

from appointment_scheduler import persist, report
from appointment_scheduler.collaborators import InMemoryDirectory, InMemoryInventory
from appointment_scheduler.engine import BookingEngine
from appointment_scheduler.errors import SchedulingError
from appointment_scheduler.models import Party, ReservationStatus, TimeInterval
from appointment_scheduler.notifier import TelegramNotifier

logger = logging.getLogger(__name__)


@dataclass
class Session:
    engine: BookingEngine
    directory: InMemoryDirectory
    inventory: InMemoryInventory


def load_session() -> Session:
    """Rebuilds the engine and its collaborators from the data directory."""
    directory = InMemoryDirectory(persist.load_parties())
    inventory = InMemoryInventory(persist.load_stock())
    options = {"inventory": inventory, "listeners": [TelegramNotifier(directory)]}

    snapshot = persist.load_snapshot()
    engine = BookingEngine.from_snapshot(snapshot, **options) if snapshot else BookingEngine(**options)
    return Session(engine=engine, directory=directory, inventory=inventory)


def save_session(session: Session):
    persist.save_snapshot(session.engine.snapshot())
    persist.save_parties(session.directory.parties)
    persist.save_stock(session.inventory.items)


def command(func: Callable[..., None]) -> Callable[..., int]:
    """Runs a command against a loaded session, saves it, and returns an exit code."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> int:
        session = load_session()
        try:
            func(session, *args, **kwargs)
            return 0
        except SchedulingError as e:
            print(f"Error: {e}")
            return 1
        except ValueError as e:
            logger.error(f"Invalid input: {e}")
            return 2
        finally:
            # Saved even on failure: a failed reschedule has already cancelled.
            save_session(session)

    return wrapper


def parse_instant(value: str) -> datetime:
    """Parses a local ISO timestamp. Offsets are rejected, the engine clock is naive local time."""
    instant = datetime.fromisoformat(value)
    if instant.tzinfo is not None:
        raise ValueError(f"Expected a local time without UTC offset, got '{value}'")
    return instant


def parse_items(values: Optional[List[str]]) -> Dict[str, int]:
    """Parses ITEM=QTY pairs."""
    items: Dict[str, int] = {}
    for value in values or []:
        item_id, sep, quantity = value.partition("=")
        if not sep or not item_id.strip():
            raise ValueError(f"Expected ITEM=QTY, got '{value}'")
        items[item_id.strip()] = int(quantity)
    return items


@command
def add_provider(session: Session, provider_id: str, name: str, specialty: Optional[str] = None):
    session.directory.add(Party(id=provider_id, name=name, role="provider", specialty=specialty))
    session.engine.add_provider(provider_id)
    print(f"Provider {name} ({provider_id}) registered.")


@command
def add_requester(session: Session, requester_id: str, name: str):
    session.directory.add(Party(id=requester_id, name=name, role="requester"))
    print(f"Requester {name} ({requester_id}) registered.")


@command
def block(session: Session, provider_id: str, day: str, start: str, end: str, label: Optional[str] = None):
    interval = TimeInterval(start=time.fromisoformat(start), end=time.fromisoformat(end), label=label or None)
    session.engine.block_interval(provider_id, date.fromisoformat(day), interval)
    print(f"Blocked: {day} {interval}")


@command
def show_slots(session: Session, provider_id: str, days: Optional[int] = None):
    slots = session.engine.list_available_slots(provider_id, days=days)
    report.print_available_slots(report.display_name(session.directory, provider_id, provider=True), slots)


@command
def show_schedule(session: Session, provider_id: str):
    entries = session.engine.provider_schedule(provider_id)
    report.print_schedule(report.display_name(session.directory, provider_id, provider=True), entries)


@command
def book(session: Session, requester_id: str, provider_id: str, at: str, notes: Optional[str] = None):
    reservation = session.engine.book_slot(requester_id, provider_id, parse_instant(at), notes)
    print(f"Reservation {reservation.id} requested, pending approval.")


@command
def respond(session: Session, reservation_id: str, accept: bool):
    session.engine.confirm_reservation(reservation_id, accept)
    print(f"Reservation {reservation_id} {'confirmed' if accept else 'rejected'}.")


@command
def cancel(session: Session, reservation_id: str):
    session.engine.cancel_reservation(reservation_id)
    print(f"Reservation {reservation_id} cancelled.")


@command
def reschedule(session: Session, reservation_id: str, provider_id: str, at: str, notes: Optional[str] = None):
    reservation = session.engine.reschedule_reservation(reservation_id, provider_id, parse_instant(at), notes)
    print(f"Reservation {reservation_id} cancelled; new reservation {reservation.id} requested.")


@command
def complete(session: Session, reservation_id: str, items: Optional[List[str]] = None, notes: Optional[str] = None):
    session.engine.complete_reservation(reservation_id, parse_items(items), notes)
    print(f"Outcome recorded for reservation {reservation_id}.")


@command
def dispense(session: Session, reservation_id: str):
    session.engine.mark_dispensed(reservation_id)
    print(f"Medication for reservation {reservation_id} dispensed.")


@command
def show_reservations(
    session: Session,
    requester_id: Optional[str] = None,
    provider_id: Optional[str] = None,
    status: Optional[str] = None,
):
    engine = session.engine
    if status:
        title = f"{status.capitalize()} reservations"
        reservations = engine.list_by_status(ReservationStatus(status.capitalize()))
    elif requester_id:
        title = f"Reservations for {report.display_name(session.directory, requester_id)}"
        reservations = engine.list_for_requester(requester_id)
    elif provider_id:
        title = f"Pending requests for {report.display_name(session.directory, provider_id, provider=True)}"
        reservations = engine.list_pending(provider_id)
    else:
        title = "Upcoming confirmed reservations"
        reservations = engine.list_upcoming_confirmed()
    report.print_reservations(title, reservations, session.directory)
