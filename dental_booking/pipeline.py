"""Post-call booking workflow as a LangGraph state machine.

When ElevenLabs delivers the transcript of a finished call, the graph turns
it into Dentally appointments:

    1. **extract** — Claude reads the transcript into a ``TranscriptIntent``
    2. **resolve** — a slot the receptionist already confirmed is used as is;
                     otherwise the requested services are paired into one
                     consistent slot chain near the requested start
    3. **book**    — the booking orchestrator creates patient + appointments

  Routing:
    extract → (intent?)  → resolve → (request?) → book → END
            → (nothing?) → END               → (no slots?) → END

Every node writes ``error`` instead of raising for the outcomes a caller is
expected to handle, so ``graph.invoke`` always returns a final state.
"""

from __future__ import annotations

import logging
from typing import Any

from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from dental_booking.extractor import TranscriptExtractor, TranscriptIntent
from dental_booking.models import (
    BookingOutcome,
    BookingRequest,
    PatientInput,
    ServiceBooking,
    ServiceRequest,
    parse_timestamp,
)
from dental_booking.scheduling.booking import (
    BookingOrchestrator,
    BookingValidationError,
    DependencyUnmetError,
    PatientCreationError,
    service_reason,
)
from dental_booking.scheduling.catalog import ServiceCatalog, UnknownServiceError
from dental_booking.scheduling.directory import PractitionerDirectory
from dental_booking.scheduling.pairing import PairingResult, SlotPairer

logger = logging.getLogger(__name__)


# ── State schema ─────────────────────────────────────────────────────


class PostCallState(TypedDict, total=False):
    """The state that flows through the graph.

    ``conversation_id`` and ``transcript`` are the inputs; every other key is
    written by a node.  ``error`` ends the run early with a reason a human
    can read.
    """

    conversation_id: str
    transcript: Any
    intent: TranscriptIntent | None
    pairing: PairingResult | None
    booking_request: BookingRequest | None
    outcome: BookingOutcome | None
    error: str


def patient_from_intent(intent: TranscriptIntent) -> PatientInput:
    return PatientInput(
        first_name=intent.patient_first_name,
        last_name=intent.patient_last_name,
        date_of_birth=intent.patient_date_of_birth,
        address_line_1=intent.patient_address_line_1,
        postcode=intent.patient_postcode,
        mobile_phone=intent.patient_phone_number,
        email_address=intent.patient_email,
        title=intent.patient_title or "Mr",
    )


# ── Nodes ────────────────────────────────────────────────────────────


def _make_extract_node(
    extractor: TranscriptExtractor, catalog: ServiceCatalog, directory: PractitionerDirectory,
):
    def extract_node(state: PostCallState) -> dict:
        intent = extractor.extract(
            state.get("transcript"), list(catalog), directory.active_practitioners(),
        )
        if intent is None:
            return {"intent": None, "error": "No booking could be extracted from the transcript."}
        if not intent.service_ids:
            return {"intent": intent, "error": "The transcript does not name a service to book."}
        logger.info(
            "[%s] extracted services %s, start %s",
            state.get("conversation_id", "?"), intent.service_ids,
            intent.appointment_start_time or intent.requested_start,
        )
        return {"intent": intent}

    return extract_node


def _make_resolve_node(
    pairer: SlotPairer, catalog: ServiceCatalog, directory: PractitionerDirectory,
):
    def resolve_node(state: PostCallState) -> dict:
        intent: TranscriptIntent = state["intent"]
        names = {p.id: p.display_name for p in directory.active_practitioners()}
        patient = patient_from_intent(intent)
        service_ids = list(dict.fromkeys(intent.service_ids))

        try:
            if intent.has_confirmed_slot and len(service_ids) == 1:
                service = catalog.get(service_ids[0])
                booking = ServiceBooking(
                    service_id=service.id,
                    practitioner_id=int(intent.practitioner_id),
                    start=parse_timestamp(intent.appointment_start_time),
                    finish=parse_timestamp(intent.appointment_finish_time),
                    practitioner_name=intent.practitioner_name or names.get(intent.practitioner_id, ""),
                    reason=service_reason(service),
                )
                return {"booking_request": BookingRequest(patient, [booking])}

            start_text = intent.appointment_start_time or intent.requested_start
            if not start_text:
                return {"error": "The transcript does not say when the patient wants to come in."}
            requested = parse_timestamp(start_text)
            for service_id in service_ids:
                catalog.get(service_id)
        except (UnknownServiceError, ValueError) as exc:
            return {"error": f"The extracted booking is not usable: {exc}"}

        pairing = pairer.pair([ServiceRequest(sid, requested) for sid in service_ids])
        if not pairing.matched:
            return {"pairing": pairing, "error": pairing.message}

        bookings = [
            ServiceBooking(
                service_id=item.service_id,
                practitioner_id=item.slot.practitioner_id,
                start=item.slot.start,
                finish=item.slot.finish,
                practitioner_name=names.get(item.slot.practitioner_id, ""),
                reason=service_reason(catalog.get(item.service_id)),
            )
            for item in pairing.primary.items
        ]
        return {"pairing": pairing, "booking_request": BookingRequest(patient, bookings)}

    return resolve_node


def _make_book_node(orchestrator: BookingOrchestrator):
    def book_node(state: PostCallState) -> dict:
        try:
            outcome = orchestrator.book(state["booking_request"])
        except (BookingValidationError, DependencyUnmetError, PatientCreationError) as exc:
            logger.warning("[%s] booking rejected: %s", state.get("conversation_id", "?"), exc)
            return {"outcome": None, "error": str(exc)}
        return {"outcome": outcome}

    return book_node


# ── Conditional edges ────────────────────────────────────────────────


def after_extract(state: PostCallState) -> str:
    return END if state.get("error") else "resolve"


def after_resolve(state: PostCallState) -> str:
    return "book" if state.get("booking_request") and not state.get("error") else END


# ── Graph assembly ───────────────────────────────────────────────────


def create_post_call_graph(
    extractor: TranscriptExtractor,
    pairer: SlotPairer,
    orchestrator: BookingOrchestrator,
    directory: PractitionerDirectory,
    catalog: ServiceCatalog,
):
    """Build and compile the post-call graph.

    Invoke with::

        graph.invoke({"conversation_id": "conv_1", "transcript": [...]})
    """
    graph = StateGraph(PostCallState)

    graph.add_node("extract", _make_extract_node(extractor, catalog, directory))
    graph.add_node("resolve", _make_resolve_node(pairer, catalog, directory))
    graph.add_node("book", _make_book_node(orchestrator))

    graph.set_entry_point("extract")
    graph.add_conditional_edges("extract", after_extract, {"resolve": "resolve", END: END})
    graph.add_conditional_edges("resolve", after_resolve, {"book": "book", END: END})
    graph.add_edge("book", END)

    compiled = graph.compile()
    logger.debug("Post-call graph compiled")
    return compiled
