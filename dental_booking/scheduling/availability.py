"""Free/busy adapter over Dentally and the pure slot expander.

``AvailabilityGateway.free_blocks`` turns one Dentally availability query
into normalised ``FreeBlock`` values.  It never raises: transport errors,
error statuses and malformed payloads all come back as ``[]`` so the search
above it simply widens its window.

``expand_block`` slices a free block into duration-sized ``Slot`` values.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

import httpx

from dental_booking.models import (
    FreeBlock,
    Slot,
    TimeWindow,
    format_timestamp,
    parse_timestamp,
    utcnow,
)
from dental_booking.services.dentally_client import DentallyAPIError, DentallyClient

logger = logging.getLogger(__name__)


def expand_block(
    block: FreeBlock,
    duration_minutes: int,
    *,
    now: datetime | None = None,
) -> list[Slot]:
    """Split *block* into back-to-back slots of exactly *duration_minutes*.

    Slots start at ``block.window.start`` and advance by the duration; a final
    piece shorter than the duration is dropped.  Slots starting before *now*
    (default: the current time) are discarded.
    """
    if duration_minutes <= 0:
        raise ValueError(f"duration_minutes must be positive, got {duration_minutes}")

    now = utcnow() if now is None else now
    step = timedelta(minutes=duration_minutes)
    slots: list[Slot] = []
    start = block.window.start
    while start + step <= block.window.end:
        if start >= now:
            slots.append(Slot(block.practitioner_id, start, start + step))
        start += step
    return slots


def _parse_block(entry: dict[str, Any], fallback_practitioner: int | None) -> FreeBlock | None:
    practitioner_id = entry.get("practitioner_id", fallback_practitioner)
    try:
        window = TimeWindow(
            parse_timestamp(entry["start_time"]),
            parse_timestamp(entry["finish_time"]),
        )
        return FreeBlock(int(practitioner_id), window)
    except (KeyError, TypeError, ValueError):
        logger.debug("Skipping malformed availability entry: %r", entry)
        return None


class AvailabilityGateway:
    """Stateless adapter: practitioner ids + window + duration -> free blocks."""

    def __init__(self, client: DentallyClient):
        self._client = client

    def free_blocks(
        self,
        practitioner_ids: Sequence[int],
        window: TimeWindow,
        duration_minutes: int,
    ) -> list[FreeBlock]:
        if not practitioner_ids:
            return []

        try:
            data = self._client.get_availability(
                practitioner_ids,
                format_timestamp(window.start),
                format_timestamp(window.end),
                duration_minutes,
            )
        except (DentallyAPIError, httpx.HTTPError) as exc:
            logger.warning(
                "Availability query failed for %s in %s–%s: %s",
                list(practitioner_ids), window.start, window.end, exc,
            )
            return []

        entries = data.get("availability") if isinstance(data, dict) else None
        if entries is None:
            # No constraint data at all: treated as "nothing found", never as
            # "book anytime".
            logger.debug("Availability response had no 'availability' field: %r", data)
            return []

        fallback = practitioner_ids[0] if len(practitioner_ids) == 1 else None
        blocks = [
            block
            for block in (_parse_block(entry, fallback) for entry in entries)
            if block is not None
        ]
        logger.debug(
            "Availability: %d block(s) for %d practitioner(s) in %s–%s",
            len(blocks), len(practitioner_ids), window.start, window.end,
        )
        return blocks
