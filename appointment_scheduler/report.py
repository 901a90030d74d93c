from datetime import datetime
from itertools import groupby
from typing import List, Optional

from appointment_scheduler.collaborators import Directory
from appointment_scheduler.errors import NotFoundError
from appointment_scheduler.models import Reservation, ReservationStatus, ScheduleEntry


def display_name(directory: Optional[Directory], party_id: str, provider: bool = False) -> str:
    """Resolves a party id to a name, or 'Unknown (<id>)' when the directory has no entry."""
    if directory is None:
        return party_id
    try:
        party = directory.resolve_provider(party_id) if provider else directory.resolve_requester(party_id)
    except NotFoundError:
        return f"Unknown ({party_id})"
    return party.name


def format_reservation(reservation: Reservation, directory: Optional[Directory] = None) -> str:
    when = reservation.scheduled_at.strftime("%Y-%m-%d %H:%M")
    line = (
        f"{when} | {reservation.id} | {reservation.status.value} | "
        f"Provider: {display_name(directory, reservation.provider_id, provider=True)} | "
        f"Requester: {display_name(directory, reservation.requester_id)}"
    )
    if reservation.status == ReservationStatus.COMPLETED:
        if reservation.prescribed_items:
            items = ", ".join(f"{item} x{qty}" for item, qty in sorted(reservation.prescribed_items.items()))
            line += f"\n  Prescribed: {items}"
            if reservation.medication_status:
                line += f" ({reservation.medication_status.value})"
        else:
            line += "\n  No items prescribed."
        if reservation.outcome_notes:
            line += f"\n  Notes: {reservation.outcome_notes}"
    return line


def print_reservations(title: str, reservations: List[Reservation], directory: Optional[Directory] = None):
    """Prints a list of reservations to stdout."""
    print(f"\n--- {title} ---")
    if not reservations:
        print("No reservations found.")
        return
    for reservation in reservations:
        print(format_reservation(reservation, directory))


def print_available_slots(provider_name: str, slots: List[datetime]):
    """Prints bookable slots grouped by date."""
    print(f"\n--- Available slots for {provider_name} ---")
    if not slots:
        print(f"Summary: No available slots for {provider_name}.")
        return
    for day, day_slots in groupby(slots, key=lambda s: s.date()):
        times = " ".join(s.strftime("%H:%M") for s in day_slots)
        print(f"{day.isoformat()}: {times}")
    print(f"Summary: Found {len(slots)} available slots for {provider_name}!")


def print_schedule(provider_name: str, entries: List[ScheduleEntry]):
    print(f"\n--- Schedule for {provider_name} ---")
    if not entries:
        print("No events scheduled.")
        return
    for entry in entries:
        print(f"{entry.start.strftime('%Y-%m-%d %H:%M')} to {entry.end.strftime('%H:%M')} - {entry.description}")
