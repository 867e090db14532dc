"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, model_validator


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "dental-booking"


# ── Practitioners / availability ─────────────────────────────────────


class PractitionerOut(BaseModel):
    id: int
    name: str
    services: list[int] = Field(default_factory=list)


class PractitionersResponse(BaseModel):
    practitioners: list[PractitionerOut]
    text: str = Field(..., description="Roster as one sentence, for the voice agent to read out")


class AvailabilityRequest(BaseModel):
    """Availability check for one service or a dependent chain of services."""

    start_time: datetime = Field(..., description="Requested start of the first service (ISO 8601)")
    service_id: int | None = None
    service_ids: list[int] | None = None

    @model_validator(mode="after")
    def _require_a_service(self) -> AvailabilityRequest:
        if self.service_id is None and not self.service_ids:
            raise ValueError("service_id or service_ids is required")
        return self

    @property
    def requested_service_ids(self) -> list[int]:
        ids = [self.service_id] if self.service_id is not None else []
        return list(dict.fromkeys(ids + list(self.service_ids or [])))


class SlotOut(BaseModel):
    service_id: int
    practitioner_id: int
    practitioner_name: str = ""
    start_time: datetime
    finish_time: datetime


class AvailabilityResponse(BaseModel):
    status: str
    exact_match: bool = False
    message: str
    primary: list[SlotOut] = Field(default_factory=list)
    alternates: list[list[SlotOut]] = Field(default_factory=list)


# ── Booking ──────────────────────────────────────────────────────────


class PatientIn(BaseModel):
    """Patient details; completeness is checked by the booking flow (HTTP 400)."""

    first_name: str = ""
    last_name: str = ""
    date_of_birth: str = ""
    address_line_1: str = ""
    postcode: str = ""
    mobile_phone: str = ""
    email_address: str = ""
    title: str = "Mr"


class AppointmentIn(BaseModel):
    """One already-resolved slot for one service."""

    service_id: int | None = None
    practitioner_id: int
    start_time: datetime
    finish_time: datetime | None = Field(
        default=None, description="Defaults to start_time + the service duration",
    )
    practitioner_name: str = ""
    reason: str | None = Field(
        default=None, description='Legacy "Name-ID" service reference, used when service_id is absent',
    )


class BookingRequestIn(BaseModel):
    patient: PatientIn
    appointment: AppointmentIn | None = None
    appointments: list[AppointmentIn] | None = None
    total_payment: Decimal | None = Field(
        default=None, description="Overrides the computed price when given",
    )

    @model_validator(mode="after")
    def _require_an_appointment(self) -> BookingRequestIn:
        if self.appointment is None and not self.appointments:
            raise ValueError("appointment or appointments is required")
        return self

    @property
    def all_appointments(self) -> list[AppointmentIn]:
        items = list(self.appointments or [])
        if self.appointment is not None:
            items.insert(0, self.appointment)
        return items


class ServiceOutcomeOut(BaseModel):
    service_id: int
    service_name: str
    status: str
    reason: str | None = None
    appointment_id: Any = None


class BookingResponse(BaseModel):
    patient_id: int | None
    services: list[ServiceOutcomeOut]
    payment_amount: Decimal
    payment_breakdown: str = ""
    payment_link_url: str | None = None
    sms_sent: bool = False
    summary: str = ""


# ── Webhook / sync / mirror ──────────────────────────────────────────


class WebhookAck(BaseModel):
    received: bool = True
    conversation_id: str | None = None
    status: str = "ignored"
    detail: str = ""
    booking: BookingResponse | None = None


class SyncResponse(BaseModel):
    collection: str
    count: int


class AppointmentsResponse(BaseModel):
    results: list[dict[str, Any]]
