"""Single-service slot search over expanding time windows.

State machine
─────────────
    Initial   window = [max(requested - 12h, now + 1h), requested + 25h]
    Query     gateway + expander over every eligible practitioner
    Found     one or more slots -> ranked result, stop
    Expand    no slots -> window = [prev.end, prev.end + 25h], query again
    Exhausted ``max_windows`` windows queried without a slot -> empty result

The lookback catches earlier openings on the same day; the 25 hour
lookahead always covers a full calendar day whatever the timezone rounding.
Gateway failures come back as empty lists and simply trigger ``Expand``.

Ranking: exact match on the requested start, then slots before it (closest
first), then slots after it (earliest first).  Ties keep the order of the
eligible-practitioner list, then practitioner id.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from dental_booking.models import PractitionerRef, ServiceDefinition, Slot, TimeWindow, utcnow
from dental_booking.scheduling.availability import AvailabilityGateway, expand_block

logger = logging.getLogger(__name__)

LOOKBACK = timedelta(hours=12)
LOOKAHEAD = timedelta(hours=25)
MIN_LEAD_TIME = timedelta(hours=1)
DEFAULT_MAX_WINDOWS = 5


def initial_window(requested_start: datetime, now: datetime) -> TimeWindow:
    start = max(requested_start - LOOKBACK, now + MIN_LEAD_TIME)
    end = requested_start + LOOKAHEAD
    if end <= start:
        # Requested time is so far in the past that the window collapsed;
        # search the next full day from the earliest bookable instant instead.
        end = start + LOOKAHEAD
    return TimeWindow(start, end)


def next_window(previous: TimeWindow) -> TimeWindow:
    return TimeWindow(previous.end, previous.end + LOOKAHEAD)


def rank_slots(
    slots: Sequence[Slot],
    requested_start: datetime,
    practitioner_order: Sequence[int] = (),
) -> list[Slot]:
    """Order *slots* by preference relative to *requested_start*.

    Deterministic for a given input set: exact matches, then before-slots
    closest first, then after-slots earliest first.
    """
    position = {pid: i for i, pid in enumerate(practitioner_order)}
    unknown = len(position)

    def key(slot: Slot) -> tuple:
        if slot.start == requested_start:
            bucket, distance = 0, timedelta(0)
        elif slot.start < requested_start:
            bucket, distance = 1, requested_start - slot.start
        else:
            bucket, distance = 2, slot.start - requested_start
        return (bucket, distance, position.get(slot.practitioner_id, unknown), slot.practitioner_id)

    return sorted(set(slots), key=key)


@dataclass
class SearchResult:
    service_id: int
    requested_start: datetime
    slots: list[Slot] = field(default_factory=list)
    windows_searched: int = 0
    message: str = ""

    @property
    def found(self) -> bool:
        return bool(self.slots)

    @property
    def exact_match(self) -> bool:
        return self.found and self.slots[0].start == self.requested_start


class SlotSearch:
    """Windowed, expanding availability search for one service."""

    def __init__(
        self,
        gateway: AvailabilityGateway,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_windows: int = DEFAULT_MAX_WINDOWS,
    ):
        if max_windows < 1:
            raise ValueError("max_windows must be at least 1")
        self._gateway = gateway
        self._clock = clock
        self._max_windows = max_windows

    def search(
        self,
        service: ServiceDefinition,
        requested_start: datetime,
        practitioners: Sequence[PractitionerRef],
        *,
        after: datetime | None = None,
        max_windows: int | None = None,
    ) -> SearchResult:
        """Find ranked slots for *service* near *requested_start*.

        *after*, when given, discards every slot starting at or before that
        instant before deciding whether a window produced anything.
        """
        limit = max_windows or self._max_windows
        result = SearchResult(service.id, requested_start)
        practitioner_ids = [p.id for p in practitioners]

        if not practitioner_ids:
            result.message = f"No practitioners are eligible for {service.name}."
            logger.info("Search: service %d has no eligible practitioners", service.id)
            return result

        window = initial_window(requested_start, self._clock())
        while result.windows_searched < limit:
            result.windows_searched += 1
            blocks = self._gateway.free_blocks(practitioner_ids, window, service.duration_minutes)
            allowed = set(practitioner_ids)
            slots = [
                slot
                for block in blocks
                if block.practitioner_id in allowed
                # Re-read the clock: time moves on between queries.
                for slot in expand_block(block, service.duration_minutes, now=self._clock())
                if after is None or slot.start > after
            ]
            if slots:
                result.slots = rank_slots(slots, requested_start, practitioner_ids)
                result.message = (
                    f"Found {len(result.slots)} slot(s) for {service.name} "
                    f"in window {result.windows_searched}."
                )
                logger.info(
                    "Search: service %d -> %d slot(s) after %d window(s), exact=%s",
                    service.id, len(result.slots), result.windows_searched, result.exact_match,
                )
                return result

            logger.debug(
                "Search: service %d window %d (%s–%s) empty, expanding",
                service.id, result.windows_searched, window.start, window.end,
            )
            window = next_window(window)

        result.message = (
            f"No slots found for {service.name} after searching {result.windows_searched} windows."
        )
        logger.info("Search: service %d exhausted after %d window(s)", service.id, limit)
        return result
