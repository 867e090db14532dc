"""Tests for the booking orchestrator."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from fakes import at
from sqlalchemy.exc import SQLAlchemyError

from dental_booking.models import BookingRequest, BookingStatus, PatientInput, ServiceBooking
from dental_booking.scheduling.booking import (
    APPOINTMENTS,
    PATIENTS,
    REASON_CONFLICT,
    REASON_ROOT_FAILED,
    REASON_UPSTREAM,
    BookingOrchestrator,
    BookingValidationError,
    DependencyUnmetError,
    PatientCreationError,
    patient_payload,
    service_reason,
)
from dental_booking.scheduling.catalog import ServiceCatalog
from dental_booking.scheduling.pricing import DEFAULT_PRICING
from dental_booking.services.dentally_client import DentallyAPIError, DentallyConflictError
from dental_booking.services.store import DocumentStore

CATALOG = ServiceCatalog()


def _patient(**overrides) -> PatientInput:
    fields = {
        "first_name": "Jane",
        "last_name": "Doe",
        "date_of_birth": "1990-04-12",
        "address_line_1": "1 Main Street",
        "postcode": "D02 XY45",
        "mobile_phone": "+353870000000",
        "email_address": "jane@example.com",
    }
    fields.update(overrides)
    return PatientInput(**fields)


def _consult(start=at(4, 10), practitioner_id=7, name="Ana Silva") -> ServiceBooking:
    return ServiceBooking(1, practitioner_id, start, start + timedelta(minutes=60), name)


def _hygiene(start=at(4, 11, 30), practitioner_id=8) -> ServiceBooking:
    return ServiceBooking(2, practitioner_id, start, start + timedelta(minutes=30), "Ben Cole")


def _orchestrator(notifier=None):
    client = MagicMock()
    client.create_patient.return_value = {"id": 501, "first_name": "Jane"}
    appointment_ids = iter(range(9001, 9100))
    client.create_appointment.side_effect = lambda payload: {"id": next(appointment_ids), **payload}
    store = DocumentStore()
    orchestrator = BookingOrchestrator(
        client, store, CATALOG, DEFAULT_PRICING, notifier, payment_plan_id=44651,
    )
    return orchestrator, client, store


class TestPayloads:
    def test_patient_payload_defaults(self):
        payload = patient_payload(_patient(title="", email_address=""), 44651)
        assert payload["title"] == "Mr"
        assert payload["payment_plan_id"] == 44651
        assert payload["email_address"] == ""
        assert payload["gender"] is True
        assert payload["ethnicity"] == "99"

    def test_service_reason(self):
        assert service_reason(CATALOG.get(2)) == "Holistic Hygiene-2"


class TestValidation:
    @pytest.mark.parametrize(
        "request_",
        [
            BookingRequest(_patient(postcode=" "), [ServiceBooking(3, 8, at(4, 9), at(4, 9, 15))]),
            BookingRequest(_patient(), []),
            BookingRequest(_patient(), [ServiceBooking(99, 8, at(4, 9), at(4, 9, 15))]),
            BookingRequest(
                _patient(),
                [ServiceBooking(3, 8, at(4, 9), at(4, 9, 15)), ServiceBooking(3, 8, at(4, 10), at(4, 10, 15))],
            ),
            BookingRequest(_patient(), [ServiceBooking(3, 8, at(4, 9), at(4, 9))]),
            BookingRequest(
                _patient(), [ServiceBooking(3, 8, at(4, 9), at(4, 9, 15))], total_payment_override=Decimal("-1"),
            ),
        ],
        ids=["missing-field", "no-services", "unknown-service", "duplicate", "empty-slot", "negative-total"],
    )
    def test_invalid_requests_make_no_remote_calls(self, request_):
        orchestrator, client, _ = _orchestrator()

        with pytest.raises(BookingValidationError):
            orchestrator.book(request_)

        client.create_patient.assert_not_called()
        client.create_appointment.assert_not_called()

    def test_dependent_without_root(self):
        orchestrator, client, _ = _orchestrator()

        with pytest.raises(DependencyUnmetError) as exc_info:
            orchestrator.book(BookingRequest(_patient(), [_hygiene()]))

        assert str(exc_info.value) == "Holistic Hygiene cannot be booked without Biological New Consultation."
        assert exc_info.value.required_service_id == 1
        client.create_patient.assert_not_called()

    def test_dependent_before_root(self):
        orchestrator, client, _ = _orchestrator()

        with pytest.raises(DependencyUnmetError) as exc_info:
            orchestrator.book(BookingRequest(_patient(), [_consult(), _hygiene(at(4, 9))]))

        assert "must start after" in str(exc_info.value)
        client.create_patient.assert_not_called()


class TestBook:
    def test_books_root_first_and_prices_the_bundle(self):
        notifier = MagicMock()
        notifier.notify.return_value = ("https://buy.stripe.com/x", True)
        orchestrator, client, store = _orchestrator(notifier)

        outcome = orchestrator.book(BookingRequest(_patient(), [_hygiene(), _consult()]))

        assert outcome.patient_id == 501
        # Outcomes follow the caller's order, bookings go root first
        assert [s.service_id for s in outcome.services] == [2, 1]
        assert all(s.status is BookingStatus.SUCCESS for s in outcome.services)
        first_call = client.create_appointment.call_args_list[0][0][0]
        assert first_call["practitioner_id"] == 7
        assert first_call["start_time"] == "2025-06-04T10:00:00Z"
        assert first_call["reason"] == "Biological New Consultation-1"
        assert first_call["patient_id"] == 501

        assert outcome.payment_amount == Decimal("395")
        notifier.notify.assert_called_once_with(Decimal("395"), "+353870000000", "Jane")
        assert outcome.payment_link_url == "https://buy.stripe.com/x"
        assert outcome.sms_sent
        assert "Total to pay: €395.00." in outcome.summary
        assert "A payment link has been sent by SMS." in outcome.summary

        assert store.count(PATIENTS) == 1
        assert store.count(APPOINTMENTS) == 2
        assert store.find_one(APPOINTMENTS, {"service_id": 2}) is not None

    def test_patient_failure_is_terminal(self):
        orchestrator, client, _ = _orchestrator()
        client.create_patient.side_effect = DentallyAPIError("Client error 422", status_code=422)

        with pytest.raises(PatientCreationError):
            orchestrator.book(BookingRequest(_patient(), [_consult()]))

        client.create_appointment.assert_not_called()

    def test_patient_without_id_is_a_failure(self):
        orchestrator, client, _ = _orchestrator()
        client.create_patient.return_value = {}

        with pytest.raises(PatientCreationError):
            orchestrator.book(BookingRequest(_patient(), [_consult()]))

    def test_conflict_fails_only_that_service(self):
        orchestrator, client, _ = _orchestrator()
        client.create_appointment.side_effect = DentallyConflictError("taken", status_code=409)

        outcome = orchestrator.book(
            BookingRequest(_patient(), [ServiceBooking(3, 8, at(4, 9), at(4, 9, 15))]),
        )

        assert outcome.services[0].status is BookingStatus.FAILED
        assert outcome.services[0].reason == REASON_CONFLICT
        assert not outcome.any_booked
        assert outcome.payment_amount == Decimal("0")
        assert "no longer free" in outcome.summary

    def test_failed_root_fails_dependents_without_calling_dentally(self):
        orchestrator, client, _ = _orchestrator()
        client.create_appointment.side_effect = DentallyAPIError("Server error 500", status_code=500)

        outcome = orchestrator.book(BookingRequest(_patient(), [_consult(), _hygiene()]))

        reasons = {s.service_id: s.reason for s in outcome.services}
        assert reasons == {1: REASON_UPSTREAM, 2: REASON_ROOT_FAILED}
        assert client.create_appointment.call_count == 1

    def test_root_conflict_fails_dependents(self):
        orchestrator, client, _ = _orchestrator()
        client.create_appointment.side_effect = DentallyConflictError("taken", status_code=409)

        outcome = orchestrator.book(BookingRequest(_patient(), [_hygiene(), _consult()]))

        reasons = {s.service_id: s.reason for s in outcome.services}
        assert reasons == {1: REASON_CONFLICT, 2: REASON_ROOT_FAILED}
        assert client.create_appointment.call_count == 1
        assert client.create_appointment.call_args[0][0]["practitioner_id"] == 7
        assert not outcome.any_booked

    def test_local_mirror_failure_does_not_fail_the_booking(self):
        orchestrator, client, store = _orchestrator()

        with patch.object(store, "create", side_effect=SQLAlchemyError("database is locked")):
            outcome = orchestrator.book(BookingRequest(_patient(), [_consult(), _hygiene()]))

        assert outcome.patient_id == 501
        assert all(s.status is BookingStatus.SUCCESS for s in outcome.services)
        assert client.create_appointment.call_count == 2
        assert store.count(APPOINTMENTS) == 0

    def test_dependent_failure_keeps_root(self):
        notifier = MagicMock()
        notifier.notify.return_value = ("https://buy.stripe.com/x", False)
        orchestrator, client, _ = _orchestrator(notifier)
        client.create_appointment.side_effect = [
            {"id": 9001},
            DentallyConflictError("taken", status_code=409),
        ]

        outcome = orchestrator.book(BookingRequest(_patient(), [_consult(), _hygiene()]))

        assert [s.succeeded for s in outcome.services] == [True, False]
        assert outcome.payment_amount == Decimal("269")
        assert "The payment link could not be sent by SMS." in outcome.summary

    def test_override_amount_wins(self):
        notifier = MagicMock()
        notifier.notify.return_value = (None, False)
        orchestrator, _, _ = _orchestrator(notifier)

        outcome = orchestrator.book(
            BookingRequest(_patient(), [_consult()], total_payment_override=Decimal("120")),
        )

        assert outcome.payment_amount == Decimal("120")
        assert outcome.payment_breakdown == "Amount set by caller: €120"
        assert outcome.payment_link_url is None
        assert not outcome.sms_sent

    def test_zero_amount_sends_nothing(self):
        notifier = MagicMock()
        orchestrator, _, _ = _orchestrator(notifier)

        orchestrator.book(BookingRequest(_patient(), [_consult()], total_payment_override=Decimal("0")))

        notifier.notify.assert_not_called()

    def test_summary_mentions_practitioner(self):
        orchestrator, _, _ = _orchestrator()

        outcome = orchestrator.book(BookingRequest(_patient(), [_consult()]))

        assert outcome.summary.startswith(
            "Biological New Consultation booked for Wednesday 04 June 2025 at 10:00 UTC with Ana Silva."
        )
