import bisect
import logging
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Set

from appointment_scheduler import config
from appointment_scheduler.errors import ConflictError, NotFoundError, SlotUnavailableError
from appointment_scheduler.models import CalendarSnapshot, TimeInterval

logger = logging.getLogger(__name__)


def default_template() -> List[TimeInterval]:
    return [TimeInterval(start=start, end=end) for start, end in config.WORKING_WINDOWS]


def _check_block(day: date, interval: TimeInterval, busy: Iterable[TimeInterval], existing: Iterable[TimeInterval]):
    # Touching ranges count as overlapping here, same as during regeneration.
    anchored = interval.on(day)
    for window in busy:
        if anchored.overlaps(window):
            raise ConflictError(f"Cannot block {day} {interval}: overlaps reservation at {window.start}")
    for block in existing:
        if interval.overlaps(block):
            raise ConflictError(f"Cannot block {day} {interval}: overlaps blocked interval {block}")


class AvailabilityCalendar:
    """Free and blocked time for a single provider, kept per date.

    A day's free slots are derived from the daily template minus blocked
    intervals and confirmed slots. Days are generated on first use and
    regenerated whenever their blocked intervals change.
    """

    def __init__(
        self,
        provider_id: str,
        template: Optional[Iterable[TimeInterval]] = None,
        slot_minutes: int = config.SLOT_DURATION_MINUTES,
    ):
        self.provider_id = provider_id
        self.template: List[TimeInterval] = list(template) if template is not None else default_template()
        self.slot_duration = timedelta(minutes=slot_minutes)
        self.free_slots: Dict[date, List[TimeInterval]] = {}
        self.blocked_slots: Dict[date, List[TimeInterval]] = {}
        self._reserved: Dict[date, Set[time]] = {}

    def template_slots(self, day: date) -> List[TimeInterval]:
        """Splits the template windows into fixed-duration slots for a date."""
        slots = []
        for window in self.template:
            current = datetime.combine(day, window.start)
            window_end = datetime.combine(day, window.end)
            while current + self.slot_duration <= window_end:
                slots.append(TimeInterval(start=current.time(), end=(current + self.slot_duration).time()))
                current += self.slot_duration
        return slots

    def regenerate(self, day: date, template: Optional[Iterable[TimeInterval]] = None) -> List[TimeInterval]:
        """Rebuilds the free slots of a date. Passing a template replaces it for every date."""
        if template is not None:
            self.template = list(template)
            self.free_slots.clear()

        blocked = self.blocked_slots.get(day, [])
        reserved = self._reserved.get(day, set())
        free = [
            slot
            for slot in self.template_slots(day)
            if slot.start not in reserved and not any(slot.overlaps(block) for block in blocked)
        ]
        self.free_slots[day] = free
        logger.debug(f"Regenerated {len(free)} free slots for {self.provider_id} on {day}")
        return list(free)

    def block(self, day: date, interval: TimeInterval, busy: Iterable[TimeInterval] = ()) -> TimeInterval:
        """Blocks a time-of-day interval on a date.

        Args:
            day: date the interval applies to
            interval: time-of-day range, optionally labelled
            busy: instant windows of reservations that must stay bookable

        Raises:
            ConflictError: the interval touches a busy window or an existing block
        """
        _check_block(day, interval, busy, self.blocked_slots.get(day, []))
        self.blocked_slots.setdefault(day, []).append(interval)
        self.blocked_slots[day].sort(key=lambda b: b.start)
        self.regenerate(day)
        logger.info(f"Blocked {day} {interval} for {self.provider_id}")
        return interval

    def replace_blocks(
        self,
        blocked: Mapping[date, Iterable[TimeInterval]],
        busy: Mapping[date, List[TimeInterval]],
        template: Optional[Iterable[TimeInterval]] = None,
    ):
        """Swaps in a whole new set of blocked intervals, and optionally a new template.

        Every interval is checked before anything changes, so a ConflictError
        leaves the calendar as it was.
        """
        accepted: Dict[date, List[TimeInterval]] = {}
        for day, intervals in blocked.items():
            for interval in intervals:
                _check_block(day, interval, busy.get(day, []), accepted.get(day, []))
                accepted.setdefault(day, []).append(interval)

        for intervals in accepted.values():
            intervals.sort(key=lambda b: b.start)
        self.blocked_slots = accepted
        if template is not None:
            self.template = list(template)
        self.free_slots.clear()
        logger.info(f"Replaced blocked intervals for {self.provider_id} on {len(accepted)} day(s)")

    def unblock(self, day: date, interval: TimeInterval):
        blocked = self.blocked_slots.get(day, [])
        for existing in blocked:
            if existing.start == interval.start and existing.end == interval.end:
                blocked.remove(existing)
                break
        else:
            raise NotFoundError(f"No blocked interval {interval} on {day} for {self.provider_id}")

        if not blocked:
            del self.blocked_slots[day]
        self.regenerate(day)
        logger.info(f"Unblocked {day} {interval} for {self.provider_id}")

    def reserve_slot(self, instant: datetime):
        day = instant.date()
        free = self._ensure(day)
        for slot in free:
            if slot.start == instant.time():
                free.remove(slot)
                self._reserved.setdefault(day, set()).add(slot.start)
                return
        raise SlotUnavailableError(f"No free slot at {instant} for {self.provider_id}")

    def release_slot(self, instant: datetime):
        day = instant.date()
        self._reserved.get(day, set()).discard(instant.time())
        free = self._ensure(day)

        slot = TimeInterval(start=instant.time(), end=(instant + self.slot_duration).time())
        if slot in free or slot not in self.template_slots(day):
            return
        if any(slot.overlaps(block) for block in self.blocked_slots.get(day, [])):
            return
        starts = [s.start for s in free]
        free.insert(bisect.bisect(starts, slot.start), slot)

    def is_free(self, instant: datetime) -> bool:
        return any(slot.start == instant.time() for slot in self._ensure(instant.date()))

    def slots_for(self, day: date) -> List[TimeInterval]:
        return list(self._ensure(day))

    def blocked_on(self, day: date) -> List[TimeInterval]:
        return list(self.blocked_slots.get(day, []))

    def availability_index(self, day: date) -> Dict[datetime, bool]:
        """Maps every template slot start on a date to whether it is bookable."""
        free_starts = {slot.start for slot in self._ensure(day)}
        return {
            datetime.combine(day, slot.start): slot.start in free_starts
            for slot in self.template_slots(day)
        }

    def _ensure(self, day: date) -> List[TimeInterval]:
        if day not in self.free_slots:
            self.regenerate(day)
        return self.free_slots[day]

    def to_snapshot(self) -> CalendarSnapshot:
        return CalendarSnapshot(
            provider_id=self.provider_id,
            slot_minutes=int(self.slot_duration.total_seconds() // 60),
            template=list(self.template),
            blocked={day: list(blocks) for day, blocks in self.blocked_slots.items()},
            reserved={day: sorted(times) for day, times in self._reserved.items() if times},
        )

    @classmethod
    def from_snapshot(cls, snapshot: CalendarSnapshot) -> "AvailabilityCalendar":
        calendar = cls(snapshot.provider_id, template=snapshot.template, slot_minutes=snapshot.slot_minutes)
        calendar.blocked_slots = {day: list(blocks) for day, blocks in snapshot.blocked.items()}
        calendar._reserved = {day: set(times) for day, times in snapshot.reserved.items()}
        return calendar
