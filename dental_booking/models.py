"""Domain types shared by the availability engine and the booking flow.

Everything here is created per request and thrown away once the response is
sent, except ``ServiceDefinition`` (static catalog) and ``PractitionerRef``
(remote directory joined with the locally stored eligibility mapping).

All timestamps are timezone-aware and normalised to UTC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any


# ── Time helpers ─────────────────────────────────────────────────────


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO 8601 string (``Z`` suffix allowed) into an aware UTC datetime.

    Naive values are assumed to already be in UTC.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_timestamp(dt: datetime) -> str:
    """Render *dt* the way Dentally expects it: ISO 8601 in UTC with ``Z``."""
    return parse_timestamp(dt).isoformat().replace("+00:00", "Z")


# ── Static catalog ───────────────────────────────────────────────────


@dataclass(frozen=True)
class ServiceDefinition:
    """A bookable service and how long it occupies a practitioner."""

    id: int
    name: str
    duration_minutes: int
    # Root service this one cannot be booked without (e.g. hygiene needs a
    # consultation first).
    requires: int | None = None

    @property
    def duration(self) -> timedelta:
        return timedelta(minutes=self.duration_minutes)


@dataclass(frozen=True)
class PractitionerRef:
    id: int
    display_name: str
    active: bool = True
    eligible_service_ids: frozenset[int] = frozenset()

    def can_perform(self, service_id: int) -> bool:
        return service_id in self.eligible_service_ids


# ── Availability ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[start, end)``."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"TimeWindow start {self.start} is after end {self.end}")

    @property
    def length(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class FreeBlock:
    practitioner_id: int
    window: TimeWindow


@dataclass(frozen=True)
class Slot:
    practitioner_id: int
    start: datetime
    finish: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "practitioner_id": self.practitioner_id,
            "start_time": format_timestamp(self.start),
            "finish_time": format_timestamp(self.finish),
        }


@dataclass(frozen=True)
class SequenceItem:
    service_id: int
    slot: Slot


@dataclass(frozen=True)
class SlotSequence:
    """Ordered chain of slots, one per requested service."""

    items: tuple[SequenceItem, ...]
    root_service_id: int | None = None

    @property
    def root(self) -> SequenceItem:
        for item in self.items:
            if item.service_id == self.root_service_id:
                return item
        return self.items[0]

    def to_dict(self) -> list[dict[str, Any]]:
        return [{"service_id": item.service_id, **item.slot.to_dict()} for item in self.items]


@dataclass(frozen=True)
class ServiceRequest:
    service_id: int
    requested_start: datetime


# ── Booking ──────────────────────────────────────────────────────────


@dataclass
class PatientInput:
    first_name: str = ""
    last_name: str = ""
    date_of_birth: str = ""
    address_line_1: str = ""
    postcode: str = ""
    mobile_phone: str = ""
    email_address: str = ""
    title: str = "Mr"


@dataclass(frozen=True)
class ServiceBooking:
    """One already-resolved service slot to be written to Dentally."""

    service_id: int
    practitioner_id: int
    start: datetime
    finish: datetime
    practitioner_name: str = ""
    reason: str = ""


@dataclass
class BookingRequest:
    patient: PatientInput
    services: list[ServiceBooking]
    total_payment_override: Decimal | None = None


class BookingStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class ServiceOutcome:
    service_id: int
    service_name: str
    status: BookingStatus
    reason: str | None = None
    appointment: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is BookingStatus.SUCCESS


@dataclass
class BookingOutcome:
    patient_id: int | None
    services: list[ServiceOutcome] = field(default_factory=list)
    payment_amount: Decimal = Decimal("0")
    payment_breakdown: str = ""
    payment_link_url: str | None = None
    sms_sent: bool = False
    summary: str = ""

    @property
    def any_booked(self) -> bool:
        return any(outcome.succeeded for outcome in self.services)
