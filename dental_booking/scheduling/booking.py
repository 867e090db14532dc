"""Booking orchestration: patient, appointments, price, payment link, SMS.

Flow for one ``BookingRequest``
───────────────────────────────
1. Validate the patient fields and the requested services (no remote call
   is made for an invalid request).
2. Dependency checks: a dependent service needs its root in the same
   request, and the root must start before every dependent.  Both run
   before the patient is created so a rejected request leaves nothing
   behind in Dentally.
3. Create the patient.  Failure here is terminal.
4. Book each service sequentially, root first and then in request order.
   A conflict fails that service only; a failed root fails its dependents
   without calling Dentally.
5. Price what was actually booked (the caller's override wins).
6. When something was booked and the amount is positive, create a payment
   link and text it to the patient.  Notification failures never change
   the booking result.
7. Return the structured outcome with a one-paragraph summary.

Local mirroring of created records is best effort and only logged on error.
"""

from __future__ import annotations

import logging
from decimal import Decimal

import httpx
from sqlalchemy.exc import SQLAlchemyError

from dental_booking.config import DEFAULT_PAYMENT_PLAN_ID
from dental_booking.models import (
    BookingOutcome,
    BookingRequest,
    BookingStatus,
    PatientInput,
    ServiceBooking,
    ServiceDefinition,
    ServiceOutcome,
    format_timestamp,
)
from dental_booking.scheduling.catalog import ServiceCatalog, UnknownServiceError
from dental_booking.scheduling.pricing import BookedService, PricingPolicy
from dental_booking.services.dentally_client import (
    DentallyAPIError,
    DentallyClient,
    DentallyConflictError,
)
from dental_booking.services.notifications import PaymentNotifier
from dental_booking.services.store import DocumentStore

logger = logging.getLogger(__name__)

PATIENTS = "patients"
APPOINTMENTS = "appointments"

REQUIRED_PATIENT_FIELDS = (
    "first_name",
    "last_name",
    "date_of_birth",
    "address_line_1",
    "postcode",
    "mobile_phone",
)

REASON_CONFLICT = "conflict"
REASON_UPSTREAM = "upstream_error"
REASON_ROOT_FAILED = "dependency_unmet"


class BookingValidationError(ValueError):
    """The request is incomplete or malformed; nothing was sent to Dentally."""


class DependencyUnmetError(ValueError):
    """A dependent service was requested without (or before) its root."""

    def __init__(self, message: str, service_id: int, required_service_id: int):
        self.service_id = service_id
        self.required_service_id = required_service_id
        super().__init__(message)


class PatientCreationError(Exception):
    """Dentally did not create the patient; no appointment was attempted."""


def service_reason(service: ServiceDefinition) -> str:
    """Appointment ``reason`` as Dentally staff expect to read it: ``Name-ID``."""
    return f"{service.name}-{service.id}"


def validate_patient(patient: PatientInput) -> None:
    missing = [name for name in REQUIRED_PATIENT_FIELDS if not str(getattr(patient, name) or "").strip()]
    if missing:
        raise BookingValidationError(f"Missing required patient fields: {', '.join(missing)}")


def patient_payload(patient: PatientInput, payment_plan_id: int = DEFAULT_PAYMENT_PLAN_ID) -> dict:
    return {
        "title": patient.title or "Mr",
        "first_name": patient.first_name.strip(),
        "last_name": patient.last_name.strip(),
        "date_of_birth": patient.date_of_birth,
        "gender": True,
        "ethnicity": "99",
        "address_line_1": patient.address_line_1.strip(),
        "postcode": patient.postcode.strip(),
        "payment_plan_id": payment_plan_id,
        "email_address": patient.email_address or "",
        "mobile_phone": patient.mobile_phone.strip(),
    }


class BookingOrchestrator:
    def __init__(
        self,
        client: DentallyClient,
        store: DocumentStore,
        catalog: ServiceCatalog,
        pricing: PricingPolicy,
        notifier: PaymentNotifier | None = None,
        *,
        payment_plan_id: int = DEFAULT_PAYMENT_PLAN_ID,
    ):
        self._client = client
        self._store = store
        self._catalog = catalog
        self._pricing = pricing
        self._notifier = notifier
        self._payment_plan_id = payment_plan_id

    # ── Checks ───────────────────────────────────────────────────────

    def _validate(self, request: BookingRequest) -> None:
        validate_patient(request.patient)
        if not request.services:
            raise BookingValidationError("At least one service must be requested")
        seen: set[int] = set()
        for booking in request.services:
            if booking.service_id not in self._catalog:
                raise BookingValidationError(f"Unknown service id: {booking.service_id}")
            if booking.service_id in seen:
                raise BookingValidationError(f"Service {booking.service_id} requested more than once")
            seen.add(booking.service_id)
            if booking.finish <= booking.start:
                raise BookingValidationError(
                    f"Service {booking.service_id}: finish time must be after start time"
                )
        if request.total_payment_override is not None and request.total_payment_override < 0:
            raise BookingValidationError("total_payment cannot be negative")

    def _check_dependencies(self, services: list[ServiceBooking]) -> None:
        by_id = {b.service_id: b for b in services}
        for dependent_id, root_id in self._catalog.missing_roots(by_id):
            dependent = self._catalog.get(dependent_id)
            root = self._catalog.get(root_id)
            raise DependencyUnmetError(
                f"{dependent.name} cannot be booked without {root.name}.",
                dependent_id,
                root_id,
            )
        for booking in services:
            required = self._catalog.get(booking.service_id).requires
            if required is None:
                continue
            root = by_id[required]
            if booking.start <= root.start:
                raise DependencyUnmetError(
                    f"{self._catalog.get(booking.service_id).name} must start after "
                    f"{self._catalog.get(required).name}.",
                    booking.service_id,
                    required,
                )

    def _booking_order(self, services: list[ServiceBooking]) -> list[ServiceBooking]:
        root_id = self._catalog.root_for(b.service_id for b in services)
        if root_id is None:
            return list(services)
        return sorted(services, key=lambda b: b.service_id != root_id)

    # ── Remote writes ────────────────────────────────────────────────

    def _mirror(self, collection: str, document: dict) -> None:
        try:
            self._store.create(collection, document)
        except SQLAlchemyError:
            logger.exception("Booking: could not mirror %s record locally", collection)

    def _create_patient(self, patient: PatientInput) -> int:
        try:
            created = self._client.create_patient(patient_payload(patient, self._payment_plan_id))
        except (DentallyAPIError, httpx.HTTPError) as exc:
            logger.error("Booking: patient creation failed: %s", exc)
            raise PatientCreationError(f"Failed to create patient: {exc}") from exc
        patient_id = created.get("id")
        if not patient_id:
            raise PatientCreationError("Dentally did not return a patient id")
        self._mirror(PATIENTS, created)
        logger.info("Booking: created patient %s", patient_id)
        return int(patient_id)

    def _book_one(self, patient_id: int, booking: ServiceBooking) -> ServiceOutcome:
        service = self._catalog.get(booking.service_id)
        appointment = {
            "start_time": format_timestamp(booking.start),
            "finish_time": format_timestamp(booking.finish),
            "patient_id": patient_id,
            "practitioner_id": booking.practitioner_id,
            "reason": booking.reason or service_reason(service),
        }
        try:
            created = self._client.create_appointment(appointment)
        except DentallyConflictError as exc:
            logger.warning("Booking: %s conflicts for practitioner %s: %s",
                           service.name, booking.practitioner_id, exc)
            return ServiceOutcome(service.id, service.name, BookingStatus.FAILED, REASON_CONFLICT)
        except (DentallyAPIError, httpx.HTTPError) as exc:
            logger.error("Booking: %s failed: %s", service.name, exc)
            return ServiceOutcome(service.id, service.name, BookingStatus.FAILED, REASON_UPSTREAM)

        self._mirror(APPOINTMENTS, {**created, "service_id": service.id})
        logger.info("Booking: %s booked as appointment %s", service.name, created.get("id"))
        return ServiceOutcome(
            service.id, service.name, BookingStatus.SUCCESS, appointment=created,
        )

    # ── Entry point ──────────────────────────────────────────────────

    def book(self, request: BookingRequest) -> BookingOutcome:
        """Run the whole booking flow.

        Raises ``BookingValidationError`` / ``DependencyUnmetError`` before any
        remote call, and ``PatientCreationError`` if the patient cannot be
        created.  Every later failure is reported inside the outcome.
        """
        try:
            self._validate(request)
        except UnknownServiceError as exc:
            raise BookingValidationError(str(exc)) from exc
        self._check_dependencies(request.services)

        patient_id = self._create_patient(request.patient)
        outcome = BookingOutcome(patient_id=patient_id)

        failed: set[int] = set()
        by_id: dict[int, ServiceOutcome] = {}
        for booking in self._booking_order(request.services):
            service = self._catalog.get(booking.service_id)
            if service.requires is not None and service.requires in failed:
                logger.info("Booking: skipping %s because its root failed", service.name)
                result = ServiceOutcome(
                    service.id, service.name, BookingStatus.FAILED, REASON_ROOT_FAILED,
                )
            else:
                result = self._book_one(patient_id, booking)
            if not result.succeeded:
                failed.add(service.id)
            by_id[service.id] = result

        # Report in the caller's order.
        outcome.services = [by_id[b.service_id] for b in request.services]

        booked = [
            BookedService(b.service_id, b.practitioner_id, b.practitioner_name)
            for b in request.services
            if by_id[b.service_id].succeeded
        ]
        if request.total_payment_override is not None:
            outcome.payment_amount = request.total_payment_override
            outcome.payment_breakdown = f"Amount set by caller: €{outcome.payment_amount}"
        elif booked:
            quote = self._pricing.quote(booked, self._catalog)
            outcome.payment_amount = quote.total
            outcome.payment_breakdown = quote.breakdown

        if outcome.any_booked and outcome.payment_amount > Decimal("0") and self._notifier:
            outcome.payment_link_url, outcome.sms_sent = self._notifier.notify(
                outcome.payment_amount,
                request.patient.mobile_phone,
                request.patient.first_name,
            )

        outcome.summary = self._summarise(request, outcome)
        logger.info("Booking: patient %s -> %s", patient_id, outcome.summary)
        return outcome

    def _summarise(self, request: BookingRequest, outcome: BookingOutcome) -> str:
        starts = {b.service_id: b for b in request.services}
        parts: list[str] = []
        for result in outcome.services:
            booking = starts[result.service_id]
            when = booking.start.strftime("%A %d %B %Y at %H:%M UTC")
            if result.succeeded:
                who = f" with {booking.practitioner_name}" if booking.practitioner_name else ""
                parts.append(f"{result.service_name} booked for {when}{who}.")
            elif result.reason == REASON_CONFLICT:
                parts.append(f"{result.service_name} could not be booked: that time is no longer free.")
            elif result.reason == REASON_ROOT_FAILED:
                parts.append(
                    f"{result.service_name} was not booked because the service it depends on failed."
                )
            else:
                parts.append(f"{result.service_name} could not be booked.")

        if outcome.any_booked:
            parts.append(f"Total to pay: €{outcome.payment_amount.quantize(Decimal('0.01'))}.")
            if outcome.sms_sent:
                parts.append("A payment link has been sent by SMS.")
            elif outcome.payment_link_url:
                parts.append("The payment link could not be sent by SMS.")
        return " ".join(parts)
