"""FastAPI route definitions for the dental booking API."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from dental_booking import config
from dental_booking.api.auth import require_agent_key, verify_elevenlabs_webhook
from dental_booking.api.compat import ReasonParseError, nest_flat_body, parse_reason
from dental_booking.api.schemas import (
    AppointmentIn,
    AppointmentsResponse,
    AvailabilityRequest,
    AvailabilityResponse,
    BookingRequestIn,
    BookingResponse,
    HealthResponse,
    PractitionerOut,
    PractitionersResponse,
    ServiceOutcomeOut,
    SlotOut,
    SyncResponse,
    WebhookAck,
)
from dental_booking.container import BookingServices
from dental_booking.models import (
    BookingOutcome,
    BookingRequest,
    PatientInput,
    ServiceBooking,
    ServiceRequest,
    SlotSequence,
    parse_timestamp,
    utcnow,
)
from dental_booking.scheduling.booking import (
    APPOINTMENTS,
    BookingValidationError,
    DependencyUnmetError,
    PatientCreationError,
    service_reason,
)
from dental_booking.scheduling.catalog import ServiceCatalog, UnknownServiceError
from dental_booking.services.dentally_client import DentallyAPIError
from dental_booking.services.voice_channel import ChannelNotRunningError

logger = logging.getLogger(__name__)

router = APIRouter()

PAYMENT_PLANS = "payment_plans"
POST_CALL_EVENT = "post_call_transcription"
_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _get_services(request: Request) -> BookingServices:
    """Retrieve the shared collaborators from app state.

    They are built once during the FastAPI lifespan (see ``server.py``).
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=503,
            detail="The booking service is still starting up. Please try again in a moment.",
        )
    return services


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "?")


def _slots_out(sequence: SlotSequence, names: dict[int, str]) -> list[SlotOut]:
    return [
        SlotOut(
            service_id=item.service_id,
            practitioner_id=item.slot.practitioner_id,
            practitioner_name=names.get(item.slot.practitioner_id, ""),
            start_time=item.slot.start,
            finish_time=item.slot.finish,
        )
        for item in sequence.items
    ]


def _booking_response(outcome: BookingOutcome) -> BookingResponse:
    return BookingResponse(
        patient_id=outcome.patient_id,
        services=[
            ServiceOutcomeOut(
                service_id=s.service_id,
                service_name=s.service_name,
                status=s.status.value,
                reason=s.reason,
                appointment_id=(s.appointment or {}).get("id"),
            )
            for s in outcome.services
        ],
        payment_amount=outcome.payment_amount,
        payment_breakdown=outcome.payment_breakdown,
        payment_link_url=outcome.payment_link_url,
        sms_sent=outcome.sms_sent,
        summary=outcome.summary,
    )


def _to_service_booking(appointment: AppointmentIn, catalog: ServiceCatalog) -> ServiceBooking:
    """Resolve the service of one appointment, via the legacy reason string if needed."""
    if appointment.service_id is not None:
        service_id = appointment.service_id
    elif appointment.reason:
        ids = parse_reason(appointment.reason, catalog)
        if len(ids) != 1:
            raise BookingValidationError(
                f"The reason {appointment.reason!r} names {len(ids)} services; "
                "send one appointment per service."
            )
        service_id = ids[0]
    else:
        raise BookingValidationError("Each appointment needs a service_id")

    service = catalog.get(service_id)
    start = parse_timestamp(appointment.start_time)
    finish = (
        parse_timestamp(appointment.finish_time)
        if appointment.finish_time is not None
        else start + timedelta(minutes=service.duration_minutes)
    )
    return ServiceBooking(
        service_id=service.id,
        practitioner_id=appointment.practitioner_id,
        start=start,
        finish=finish,
        practitioner_name=appointment.practitioner_name,
        reason=service_reason(service),
    )


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.get("/practitioners", response_model=PractitionersResponse)
async def list_practitioners(http_request: Request):
    """Active practitioners with the services each may perform."""
    services = _get_services(http_request)
    refs = await asyncio.to_thread(services.directory.active_practitioners)
    if not refs:
        return PractitionersResponse(
            practitioners=[],
            text="Sorry, no active practitioners are currently available.",
        )
    return PractitionersResponse(
        practitioners=[
            PractitionerOut(id=p.id, name=p.display_name, services=sorted(p.eligible_service_ids))
            for p in refs
        ],
        text="Available practitioners: " + ", ".join(f"{p.display_name} ({p.id})" for p in refs) + ".",
    )


@router.post(
    "/practitioners/available",
    response_model=AvailabilityResponse,
    dependencies=[Depends(require_agent_key)],
)
async def check_availability(request: AvailabilityRequest, http_request: Request):
    """Find one consistent slot chain for the requested service(s).

    ``200`` with the primary recommendation and alternates, ``404`` when
    nothing fits (the message says whether the root service or only its
    dependents are unavailable), ``400`` for a past start or unknown service.
    """
    services = _get_services(http_request)
    request_id = _request_id(http_request)

    requested = parse_timestamp(request.start_time)
    if requested < utcnow():
        raise HTTPException(status_code=400, detail="start_time is in the past.")
    service_ids = request.requested_service_ids
    unknown = [sid for sid in service_ids if sid not in services.catalog]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown service id(s): {unknown}")

    try:
        result = await asyncio.to_thread(
            services.pairer.pair, [ServiceRequest(sid, requested) for sid in service_ids],
        )
        refs = await asyncio.to_thread(services.directory.active_practitioners)
    except Exception as e:
        logger.exception("[%s] Error checking availability", request_id)
        raise HTTPException(
            status_code=500, detail="An internal error occurred. Please try again.",
        ) from e

    if not result.matched:
        body = AvailabilityResponse(status=result.status.value, message=result.message)
        return JSONResponse(status_code=404, content=body.model_dump(mode="json"))

    names = {p.id: p.display_name for p in refs}
    return AvailabilityResponse(
        status=result.status.value,
        exact_match=result.exact_match,
        message=result.message,
        primary=_slots_out(result.primary, names),
        alternates=[_slots_out(seq, names) for seq in result.alternates],
    )


@router.post(
    "/create-patient-and-book-appointment",
    response_model=BookingResponse,
    status_code=201,
    dependencies=[Depends(require_agent_key)],
)
async def create_patient_and_book(http_request: Request):
    """Create the patient, book every requested service, then send the payment link.

    Accepts nested (``patient`` + ``appointment(s)``) or flat
    (``patient_*`` + ``appointment_*``) bodies.
    """
    services = _get_services(http_request)
    request_id = _request_id(http_request)

    try:
        raw = await http_request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON.") from None
    if not isinstance(raw, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

    try:
        payload = BookingRequestIn.model_validate(nest_flat_body(raw))
        booking_request = BookingRequest(
            patient=PatientInput(**payload.patient.model_dump()),
            services=[_to_service_booking(a, services.catalog) for a in payload.all_appointments],
            total_payment_override=payload.total_payment,
        )
        outcome = await asyncio.to_thread(services.orchestrator.book, booking_request)
    except ValidationError as e:
        detail = "; ".join(err["msg"] for err in e.errors())
        raise HTTPException(status_code=400, detail=detail) from None
    except (BookingValidationError, DependencyUnmetError, ReasonParseError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    except UnknownServiceError as e:
        raise HTTPException(status_code=400, detail=f"Unknown service id: {e.service_id}") from None
    except PatientCreationError as e:
        logger.error("[%s] %s", request_id, e)
        raise HTTPException(status_code=502, detail="Failed to create patient.") from None
    except Exception as e:
        logger.exception("[%s] Error booking appointment", request_id)
        raise HTTPException(
            status_code=500, detail="An internal error occurred. Please try again.",
        ) from e

    response = _booking_response(outcome)
    if not outcome.any_booked:
        return JSONResponse(status_code=409, content=response.model_dump(mode="json"))
    return response


@router.get("/appointments", response_model=AppointmentsResponse)
async def list_appointments(http_request: Request):
    services = _get_services(http_request)
    found = await asyncio.to_thread(services.store.find, APPOINTMENTS, limit=100)
    return AppointmentsResponse(results=found)


@router.get("/appointments/{appointment_id}")
async def get_appointment(appointment_id: str, http_request: Request) -> dict[str, Any]:
    """Look up a mirrored appointment by local ``_id`` or Dentally ``id``."""
    services = _get_services(http_request)
    found = await asyncio.to_thread(services.store.find_one, APPOINTMENTS, {"_id": appointment_id})
    if found is None and appointment_id.isdigit():
        found = await asyncio.to_thread(
            services.store.find_one, APPOINTMENTS, {"id": int(appointment_id)},
        )
    if found is None:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return found


@router.post("/webhooks/elevenlabs", response_model=WebhookAck)
async def elevenlabs_webhook(
    http_request: Request, body: bytes = Depends(verify_elevenlabs_webhook),
):
    """Post-call transcript webhook: book what the caller agreed to.

    Opens the conversation's voice channel, runs the post-call graph and
    pushes a confirmation back to the agent when something was booked.
    """
    services = _get_services(http_request)
    request_id = _request_id(http_request)

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload.") from None
    if not isinstance(event, dict) or event.get("type") != POST_CALL_EVENT:
        return WebhookAck(detail="Event type not handled.")

    data = event.get("data") or {}
    if config.ELEVENLABS_AGENT_ID and data.get("agent_id") != config.ELEVENLABS_AGENT_ID:
        logger.info("[%s] Webhook for another agent ignored", request_id)
        return WebhookAck(detail="Agent id does not match.")

    if services.graph is None:
        raise HTTPException(status_code=503, detail="Post-call processing is not available.")
    conversation_id = data.get("conversation_id")
    if conversation_id:
        services.voice.start(conversation_id)

    try:
        state = await asyncio.to_thread(
            services.graph.invoke,
            {"conversation_id": conversation_id or "", "transcript": data.get("transcript") or ""},
        )
    except Exception as e:
        logger.exception("[%s] Error processing post-call webhook", request_id)
        raise HTTPException(
            status_code=500, detail="An internal error occurred. Please try again.",
        ) from e

    outcome: BookingOutcome | None = state.get("outcome")
    if outcome is None:
        return WebhookAck(
            conversation_id=conversation_id,
            status="not_booked",
            detail=state.get("error", "Nothing was booked."),
        )

    if conversation_id and outcome.any_booked:
        confirmation = {
            "type": "appointment_confirmation",
            "data": {
                "patient_id": outcome.patient_id,
                "summary": outcome.summary,
                "appointments": [
                    s.appointment for s in outcome.services if s.succeeded and s.appointment
                ],
            },
        }
        try:
            await services.voice.send(conversation_id, confirmation, close_after=True)
        except ChannelNotRunningError:
            logger.warning("[%s] Voice channel %s gone, confirmation not sent", request_id, conversation_id)

    return WebhookAck(
        conversation_id=conversation_id,
        status="booked" if outcome.any_booked else "not_booked",
        detail=outcome.summary,
        booking=_booking_response(outcome),
    )


def _replace_day(store, date: str, appointments: list[dict[str, Any]]) -> None:
    """Drop the previous copy of *date* and any re-synced ids, then insert."""
    store.delete_many(APPOINTMENTS, {"sync_date": date})
    for appointment in appointments:
        if appointment.get("id") is not None:
            store.delete_many(APPOINTMENTS, {"id": appointment["id"]})
    store.insert_many(APPOINTMENTS, [{**a, "sync_date": date} for a in appointments])


@router.post(
    "/sync/appointments/{date}",
    response_model=SyncResponse,
    dependencies=[Depends(require_agent_key)],
)
async def sync_appointments(date: str, http_request: Request):
    """Mirror every Dentally appointment on *date* (``YYYY-MM-DD``) locally."""
    services = _get_services(http_request)
    if not _DATE.match(date):
        raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD.")

    try:
        appointments = await asyncio.to_thread(services.client.list_appointments_on, date)
    except DentallyAPIError as e:
        logger.error("[%s] Appointment sync failed: %s", _request_id(http_request), e)
        raise HTTPException(status_code=502, detail="Dentally is unavailable.") from None

    await asyncio.to_thread(_replace_day, services.store, date, appointments)
    return SyncResponse(collection=APPOINTMENTS, count=len(appointments))


@router.post(
    "/sync/payment-plans",
    response_model=SyncResponse,
    dependencies=[Depends(require_agent_key)],
)
async def sync_payment_plans(http_request: Request):
    """Replace the local copy of Dentally's active payment plans."""
    services = _get_services(http_request)
    try:
        plans = await asyncio.to_thread(services.client.list_payment_plans)
    except DentallyAPIError as e:
        logger.error("[%s] Payment plan sync failed: %s", _request_id(http_request), e)
        raise HTTPException(status_code=502, detail="Dentally is unavailable.") from None

    await asyncio.to_thread(services.store.replace_all, PAYMENT_PLANS, plans)
    return SyncResponse(collection=PAYMENT_PLANS, count=len(plans))
