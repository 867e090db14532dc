"""Adapters for payloads sent by older voice-agent tool configurations.

Two legacy shapes are still accepted at the edge and nowhere else:

* **Flat bodies** — ``patient_first_name``, ``appointment_start_time``, …
  instead of nested ``patient`` / ``appointment`` objects.
* **Reason strings** — services named in free text as ``"Name-ID, Name-ID"``
  instead of a typed ``service_id``.
"""

from __future__ import annotations

import re
from typing import Any

from dental_booking.scheduling.catalog import ServiceCatalog

_PATIENT_FIELDS = (
    "first_name",
    "last_name",
    "date_of_birth",
    "address_line_1",
    "postcode",
    "mobile_phone",
    "email_address",
    "title",
)
_APPOINTMENT_FIELDS = (
    "service_id",
    "practitioner_id",
    "practitioner_name",
    "start_time",
    "finish_time",
    "reason",
)
_TRAILING_ID = re.compile(r"-\s*(\d+)\s*$")


class ReasonParseError(ValueError):
    """A reason string names a service that is not in the catalog."""


def is_flat(body: dict[str, Any]) -> bool:
    return "patient" not in body and any(key.startswith("patient_") for key in body)


def nest_flat_body(body: dict[str, Any]) -> dict[str, Any]:
    """Turn a flat ``patient_*`` / ``appointment_*`` body into the nested shape.

    Nested bodies are returned unchanged.
    """
    if not is_flat(body):
        return body

    patient = {
        name: body[f"patient_{name}"]
        for name in _PATIENT_FIELDS
        if body.get(f"patient_{name}") is not None
    }
    appointment = {
        name: body[f"appointment_{name}"]
        for name in _APPOINTMENT_FIELDS
        if body.get(f"appointment_{name}") is not None
    }
    nested: dict[str, Any] = {"patient": patient}
    if appointment:
        nested["appointment"] = appointment
    if body.get("total_payment") is not None:
        nested["total_payment"] = body["total_payment"]
    return nested


def parse_reason(reason: str, catalog: ServiceCatalog) -> list[int]:
    """Recover service ids from ``"Biological New Consultation-1, Holistic Hygiene-2"``.

    Each comma-separated part is matched on its trailing ``-ID``, falling back
    to the exact service name.  Duplicates are dropped, order is kept.
    """
    ids: list[int] = []
    for part in reason.split(","):
        part = part.strip()
        if not part:
            continue
        match = _TRAILING_ID.search(part)
        if match and int(match.group(1)) in catalog:
            service_id = int(match.group(1))
        else:
            service = catalog.find_by_name(part)
            if service is None:
                raise ReasonParseError(f"Unknown service in reason: {part!r}")
            service_id = service.id
        if service_id not in ids:
            ids.append(service_id)
    return ids
