import argparse
import logging
import sys

from appointment_scheduler import run

# --- Logging Setup ---

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool):
    """Configures logging to stderr with local time."""
    import time

    level = logging.DEBUG if verbose else logging.INFO
    handler = logging.StreamHandler(sys.stderr)
    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s]: %(name)s:%(lineno)d | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    # Use local time instead of UTC for logging
    formatter.converter = time.localtime
    handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def parse_arguments(argv=None):
    """Parses command line arguments."""
    parser = argparse.ArgumentParser(description="Book and manage appointments between requesters and providers.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("add-provider", help="Register a provider with the standard working hours.")
    p.add_argument("provider_id")
    p.add_argument("name")
    p.add_argument("--specialty")

    p = sub.add_parser("add-requester", help="Register a requester.")
    p.add_argument("requester_id")
    p.add_argument("name")

    p = sub.add_parser("block", help="Block a time range on a date for a provider.")
    p.add_argument("provider_id")
    p.add_argument("date", help="Date in YYYY-MM-DD format.")
    p.add_argument("start", help="Start time in HH:MM format.")
    p.add_argument("end", help="End time in HH:MM format.")
    p.add_argument("--label", help="Name of the event blocking the time.")

    p = sub.add_parser("slots", help="Show available slots for a provider.")
    p.add_argument("provider_id")
    p.add_argument("--days", type=int, help="Number of days to show. Defaults to the booking horizon.")

    p = sub.add_parser("schedule", help="Show a provider's reservations and blocked time.")
    p.add_argument("provider_id")

    p = sub.add_parser("book", help="Request a slot.")
    p.add_argument("requester_id")
    p.add_argument("provider_id")
    p.add_argument("at", help="Slot start, e.g. 2026-01-20T14:00.")
    p.add_argument("--notes")

    p = sub.add_parser("respond", help="Accept or reject a pending request.")
    p.add_argument("reservation_id")
    choice = p.add_mutually_exclusive_group(required=True)
    choice.add_argument("--accept", dest="accept", action="store_true")
    choice.add_argument("--reject", dest="accept", action="store_false")

    p = sub.add_parser("cancel", help="Cancel a reservation.")
    p.add_argument("reservation_id")

    p = sub.add_parser("reschedule", help="Cancel a reservation and request a new slot.")
    p.add_argument("reservation_id")
    p.add_argument("provider_id")
    p.add_argument("at", help="New slot start, e.g. 2026-01-20T14:00.")
    p.add_argument("--notes")

    p = sub.add_parser("complete", help="Record the outcome of a confirmed reservation.")
    p.add_argument("reservation_id")
    p.add_argument("--item", action="append", dest="items", metavar="ITEM=QTY", help="Prescribed item, repeatable.")
    p.add_argument("--notes")

    p = sub.add_parser("dispense", help="Mark prescribed items of a completed reservation as dispensed.")
    p.add_argument("reservation_id")

    p = sub.add_parser("list", help="List reservations.")
    who = p.add_mutually_exclusive_group()
    who.add_argument("--requester", dest="requester_id")
    who.add_argument("--provider", dest="provider_id", help="Show pending requests for a provider.")
    who.add_argument("--status", choices=["pending", "confirmed", "completed", "cancelled"])

    return parser.parse_args(argv)


def dispatch(args) -> int:
    if args.command == "add-provider":
        return run.add_provider(args.provider_id, args.name, args.specialty)
    if args.command == "add-requester":
        return run.add_requester(args.requester_id, args.name)
    if args.command == "block":
        return run.block(args.provider_id, args.date, args.start, args.end, args.label)
    if args.command == "slots":
        return run.show_slots(args.provider_id, days=args.days)
    if args.command == "schedule":
        return run.show_schedule(args.provider_id)
    if args.command == "book":
        return run.book(args.requester_id, args.provider_id, args.at, args.notes)
    if args.command == "respond":
        return run.respond(args.reservation_id, args.accept)
    if args.command == "cancel":
        return run.cancel(args.reservation_id)
    if args.command == "reschedule":
        return run.reschedule(args.reservation_id, args.provider_id, args.at, args.notes)
    if args.command == "complete":
        return run.complete(args.reservation_id, args.items, args.notes)
    if args.command == "dispense":
        return run.dispense(args.reservation_id)
    return run.show_reservations(requester_id=args.requester_id, provider_id=args.provider_id, status=args.status)


def main(argv=None):
    args = parse_arguments(argv)
    setup_logging(args.verbose)
    sys.exit(dispatch(args))


if __name__ == "__main__":
    main()
