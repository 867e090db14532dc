"""Prompt for extracting a booking request from a finished voice call."""

from collections.abc import Iterable
from datetime import UTC, datetime
from zoneinfo import ZoneInfo

from dental_booking.config import PRACTICE_NAME, PRACTICE_TIMEZONE
from dental_booking.models import PractitionerRef, ServiceDefinition

EXTRACTION_PROMPT_TEMPLATE = """You read transcripts of phone calls between patients and the voice receptionist of **{practice_name}**, and extract the booking the patient agreed to.

## Current Date & Time
Today is **{current_date}** ({current_day_of_week}). The local time at the practice ({timezone}) is **{current_time}**.
Resolve relative dates like "tomorrow" or "next Tuesday" against this date, in the practice's timezone.

## Services
{services}

A service marked "requires" can only be booked together with, and after, the service it requires.

## Practitioners
{practitioners}

## What to extract
- The patient's first name, last name, title (Mr/Mrs/Ms, default "Mr"), date of birth (YYYY-MM-DD), email, mobile phone number, first address line and postcode.
- ``service_ids``: the ids of every service the patient agreed to book, from the list above.
- ``requested_start``: when the patient wants the first service to start, as ISO 8601 with the UTC offset.
- If the receptionist confirmed an exact slot, ``appointment_start_time``, ``appointment_finish_time`` and ``practitioner_id`` for it.
- ``practitioner_name`` when the patient asked for a specific practitioner; match it to the list above for ``practitioner_id``.

## Rules
- **NEVER** invent values. Leave a field empty when the transcript does not contain it.
- Only use service and practitioner ids that appear in the lists above.
- Ignore anything said about other patients.
"""


def _format_services(services: Iterable[ServiceDefinition]) -> str:
    lines = []
    for service in services:
        line = f"- {service.id}: {service.name} ({service.duration_minutes} min)"
        if service.requires is not None:
            line += f", requires {service.requires}"
        lines.append(line)
    return "\n".join(lines)


def _format_practitioners(practitioners: Iterable[PractitionerRef]) -> str:
    lines = [f"- {p.display_name} ({p.id})" for p in practitioners]
    return "\n".join(lines) if lines else "- (practitioner list unavailable)"


def get_extraction_prompt(
    services: Iterable[ServiceDefinition],
    practitioners: Iterable[PractitionerRef] = (),
) -> str:
    """Build the extraction prompt with the catalog, roster and current date injected."""
    tz = ZoneInfo(PRACTICE_TIMEZONE)
    now = datetime.now(UTC).astimezone(tz)
    return EXTRACTION_PROMPT_TEMPLATE.format(
        practice_name=PRACTICE_NAME,
        timezone=PRACTICE_TIMEZONE,
        current_date=now.strftime("%d %B %Y"),
        current_day_of_week=now.strftime("%A"),
        current_time=now.strftime("%H:%M"),
        services=_format_services(services),
        practitioners=_format_practitioners(practitioners),
    )
