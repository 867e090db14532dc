"""Tests for the post-call graph and transcript extraction."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fakes import FakeDirectory, at

from dental_booking.extractor import TranscriptExtractor, TranscriptIntent, format_transcript
from dental_booking.models import (
    BookingOutcome,
    PractitionerRef,
    SequenceItem,
    Slot,
    SlotSequence,
)
from dental_booking.pipeline import create_post_call_graph, patient_from_intent
from dental_booking.prompts import get_extraction_prompt
from dental_booking.scheduling.booking import PatientCreationError
from dental_booking.scheduling.catalog import ServiceCatalog
from dental_booking.scheduling.pairing import PairingResult, PairingStatus

CATALOG = ServiceCatalog()
ANA = PractitionerRef(7, "Ana Silva", eligible_service_ids=frozenset({1}))
BEN = PractitionerRef(8, "Ben Cole", eligible_service_ids=frozenset({2, 3}))
TRANSCRIPT = [
    {"role": "agent", "message": "Hello, how can I help?"},
    {"role": "user", "message": "I'd like a consultation and a hygiene visit on Wednesday at ten."},
]


def _intent(**overrides) -> TranscriptIntent:
    fields = {
        "patient_first_name": "Jane",
        "patient_last_name": "Doe",
        "patient_date_of_birth": "1990-04-12",
        "patient_phone_number": "+353870000000",
        "patient_address_line_1": "1 Main Street",
        "patient_postcode": "D02 XY45",
        "service_ids": [1, 2],
        "requested_start": "2025-06-04T10:00:00Z",
    }
    fields.update(overrides)
    return TranscriptIntent(**fields)


@pytest.fixture
def parts():
    extractor = MagicMock()
    pairer = MagicMock()
    orchestrator = MagicMock()
    orchestrator.book.return_value = BookingOutcome(patient_id=501)
    directory = FakeDirectory({1: [ANA], 2: [BEN], 3: [BEN]})
    graph = create_post_call_graph(extractor, pairer, orchestrator, directory, CATALOG)
    return graph, extractor, pairer, orchestrator


def _run(graph) -> dict:
    return graph.invoke({"conversation_id": "conv_1", "transcript": TRANSCRIPT})


class TestPostCallGraph:
    def test_pairs_services_then_books(self, parts):
        graph, extractor, pairer, orchestrator = parts
        extractor.extract.return_value = _intent()
        pairer.pair.return_value = PairingResult(
            status=PairingStatus.MATCHED,
            root_service_id=1,
            primary=SlotSequence(
                (
                    SequenceItem(1, Slot(7, at(4, 10), at(4, 11))),
                    SequenceItem(2, Slot(8, at(4, 11, 30), at(4, 12))),
                ),
                1,
            ),
        )

        state = _run(graph)

        assert state["outcome"].patient_id == 501
        assert not state.get("error")
        requests = pairer.pair.call_args[0][0]
        assert [(r.service_id, r.requested_start) for r in requests] == [(1, at(4, 10)), (2, at(4, 10))]
        booking_request = orchestrator.book.call_args[0][0]
        assert booking_request.patient.first_name == "Jane"
        assert booking_request.patient.mobile_phone == "+353870000000"
        assert [(b.service_id, b.practitioner_name) for b in booking_request.services] == [
            (1, "Ana Silva"), (2, "Ben Cole"),
        ]
        assert booking_request.services[1].reason == "Holistic Hygiene-2"

    def test_confirmed_slot_is_booked_directly(self, parts):
        graph, extractor, pairer, orchestrator = parts
        extractor.extract.return_value = _intent(
            service_ids=[3],
            practitioner_id=8,
            appointment_start_time="2025-06-04T09:00:00Z",
            appointment_finish_time="2025-06-04T09:15:00Z",
        )

        state = _run(graph)

        assert state["outcome"] is not None
        pairer.pair.assert_not_called()
        booking = orchestrator.book.call_args[0][0].services[0]
        assert (booking.service_id, booking.practitioner_id) == (3, 8)
        assert booking.practitioner_name == "Ben Cole"
        assert booking.start == at(4, 9)

    def test_nothing_extracted_stops_early(self, parts):
        graph, extractor, pairer, orchestrator = parts
        extractor.extract.return_value = None

        state = _run(graph)

        assert "No booking could be extracted" in state["error"]
        pairer.pair.assert_not_called()
        orchestrator.book.assert_not_called()

    def test_no_service_stops_early(self, parts):
        graph, extractor, pairer, _ = parts
        extractor.extract.return_value = _intent(service_ids=[])

        state = _run(graph)

        assert "does not name a service" in state["error"]
        pairer.pair.assert_not_called()

    def test_no_requested_time(self, parts):
        graph, extractor, pairer, _ = parts
        extractor.extract.return_value = _intent(requested_start=None)

        state = _run(graph)

        assert "when the patient wants to come in" in state["error"]
        pairer.pair.assert_not_called()

    def test_unknown_service_is_not_usable(self, parts):
        graph, extractor, pairer, _ = parts
        extractor.extract.return_value = _intent(service_ids=[42])

        state = _run(graph)

        assert "not usable" in state["error"]
        pairer.pair.assert_not_called()

    def test_no_slots_skips_booking(self, parts):
        graph, extractor, pairer, orchestrator = parts
        extractor.extract.return_value = _intent()
        pairer.pair.return_value = PairingResult(
            status=PairingStatus.ROOT_UNAVAILABLE,
            root_service_id=1,
            message="Biological New Consultation is not available.",
        )

        state = _run(graph)

        assert state["error"] == "Biological New Consultation is not available."
        orchestrator.book.assert_not_called()

    def test_booking_rejection_is_reported(self, parts):
        graph, extractor, _, orchestrator = parts
        extractor.extract.return_value = _intent(
            service_ids=[3],
            practitioner_id=8,
            appointment_start_time="2025-06-04T09:00:00Z",
            appointment_finish_time="2025-06-04T09:15:00Z",
        )
        orchestrator.book.side_effect = PatientCreationError("Failed to create patient: 422")

        state = _run(graph)

        assert state["outcome"] is None
        assert "Failed to create patient" in state["error"]


class TestPatientFromIntent:
    def test_maps_fields(self):
        patient = patient_from_intent(_intent(patient_title="", patient_email="jane@example.com"))
        assert patient.title == "Mr"
        assert patient.email_address == "jane@example.com"
        assert patient.postcode == "D02 XY45"


class TestTranscriptExtractor:
    def test_format_transcript(self):
        assert format_transcript(TRANSCRIPT) == (
            "Receptionist: Hello, how can I help?\n"
            "Patient: I'd like a consultation and a hygiene visit on Wednesday at ten."
        )
        assert format_transcript("plain text") == "plain text"
        assert format_transcript(None) == ""

    def test_extract_uses_structured_output(self):
        llm = MagicMock()
        structured = llm.with_structured_output.return_value
        structured.invoke.return_value = _intent()

        intent = TranscriptExtractor(llm).extract(TRANSCRIPT, CATALOG, [ANA])

        assert intent.service_ids == [1, 2]
        llm.with_structured_output.assert_called_once_with(TranscriptIntent)
        system, human = structured.invoke.call_args[0][0]
        assert "Holistic Hygiene" in system.content
        assert human.content.startswith("Receptionist:")

    def test_empty_transcript_skips_the_llm(self):
        llm = MagicMock()
        assert TranscriptExtractor(llm).extract([], CATALOG) is None
        llm.with_structured_output.return_value.invoke.assert_not_called()

    def test_llm_failure_returns_none(self):
        llm = MagicMock()
        llm.with_structured_output.return_value.invoke.side_effect = RuntimeError("overloaded")
        assert TranscriptExtractor(llm).extract(TRANSCRIPT, CATALOG) is None

    def test_has_confirmed_slot(self):
        assert not _intent().has_confirmed_slot
        assert _intent(
            practitioner_id=8,
            appointment_start_time="2025-06-04T09:00:00Z",
            appointment_finish_time="2025-06-04T09:15:00Z",
        ).has_confirmed_slot


class TestExtractionPrompt:
    def test_lists_services_and_practitioners(self):
        prompt = get_extraction_prompt(CATALOG, [ANA])
        assert "Biological New Consultation" in prompt
        assert "Ana Silva" in prompt
        assert "requires 1" in prompt
        assert "{services}" not in prompt
