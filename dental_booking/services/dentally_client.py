"""HTTP client for the Dentally practice-management API.

Dentally API docs: https://developer.dentally.co/
All requests require an API token passed as a Bearer token.

Retry policy
────────────
Only idempotent listing reads (practitioners, appointments, payment plans)
are retried, with exponential backoff on timeouts, connection errors and
5xx responses.  Availability queries and writes (patients, appointments)
are single attempts: the availability search widens its window instead of
retrying, and a failed create is final for that request.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence
from typing import Any

import httpx

from dental_booking.config import DENTALLY_API_KEY, DENTALLY_BASE_URL, DENTALLY_SITE_ID
from dental_booking.services.metrics import metrics

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0
APPOINTMENTS_PER_PAGE = 100

# Phrases Dentally uses in 422 bodies when a slot clashes with another booking
_CONFLICT_MARKERS = ("conflict", "overlap", "already booked", "double book", "not available")


class DentallyAPIError(Exception):
    """Raised when a Dentally API call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class DentallyConflictError(DentallyAPIError):
    """Appointment rejected because the practitioner is already booked."""


def _is_conflict(response: httpx.Response) -> bool:
    if response.status_code == 409:
        return True
    if response.status_code == 422:
        body = response.text.lower()
        return any(marker in body for marker in _CONFLICT_MARKERS)
    return False


class DentallyClient:
    """Thin wrapper around the Dentally REST API."""

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        *,
        site_id: str | None = None,
    ):
        self._token = token or DENTALLY_API_KEY
        self._base_url = base_url or DENTALLY_BASE_URL
        self._site_id = DENTALLY_SITE_ID if site_id is None else site_id
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
                "User-Agent": "dental-booking/1.0",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    def close(self) -> None:
        self._client.close()

    # ── Internal helpers ─────────────────────────────────────────────

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Perform exactly one HTTP request and map error statuses to exceptions."""
        with metrics.track("dentally", f"{method} {path}"):
            response = self._client.request(method, path, params=params, json=json_body)
            if _is_conflict(response):
                raise DentallyConflictError(
                    f"Scheduling conflict {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            if response.status_code >= 500:
                raise DentallyAPIError(
                    f"Server error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            if response.status_code >= 400:
                raise DentallyAPIError(
                    f"Client error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            try:
                data = response.json()
            except ValueError:
                raise DentallyAPIError(
                    f"Invalid JSON in {response.status_code} response: {response.text[:200]}",
                    status_code=response.status_code,
                ) from None
            if not isinstance(data, dict):
                raise DentallyAPIError(
                    f"Unexpected {type(data).__name__} body in {response.status_code} response",
                    status_code=response.status_code,
                )
            return data

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        retries: int = 1,
    ) -> dict[str, Any]:
        """Execute a request, retrying transient failures up to *retries* attempts."""
        last_error: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                return self._send(method, path, params=params, json_body=json_body)
            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
            except DentallyAPIError as exc:
                if not (exc.status_code and exc.status_code >= 500):
                    raise  # 4xx errors are never retried
                last_error = exc

            if attempt == retries:
                break
            backoff = INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1))
            logger.warning(
                "Dentally %s %s attempt %d/%d failed (%s). Retrying in %.1fs…",
                method, path, attempt, retries, type(last_error).__name__, backoff,
            )
            time.sleep(backoff)

        if retries == 1 and isinstance(last_error, DentallyAPIError):
            raise last_error
        raise DentallyAPIError(
            f"Dentally {method} {path} failed after {retries} attempt(s): {last_error}"
        ) from last_error

    # ── Directory ────────────────────────────────────────────────────

    def list_practitioners(self) -> list[dict[str, Any]]:
        """Return every practitioner record for the configured site."""
        params = {"site_id": self._site_id} if self._site_id else None
        data = self._request("GET", "/practitioners", params=params, retries=MAX_RETRIES)
        return data.get("practitioners", [])

    # ── Availability ─────────────────────────────────────────────────

    def get_availability(
        self,
        practitioner_ids: Sequence[int],
        start_time: str,
        finish_time: str,
        duration: int,
    ) -> dict[str, Any]:
        """Query free time for *practitioner_ids* between two ISO 8601 instants.

        **Never cached and never retried** — availability changes continuously.
        The raw response is returned; the availability gateway interprets it.
        """
        return self._request(
            "GET",
            "/appointments/availability",
            params={
                "practitioner_ids[]": list(practitioner_ids),
                "start_time": start_time,
                "finish_time": finish_time,
                "duration": duration,
            },
        )

    # ── Writes ───────────────────────────────────────────────────────

    def create_patient(self, patient: dict[str, Any]) -> dict[str, Any]:
        """Create a patient and return the ``patient`` resource."""
        data = self._request("POST", "/patients", json_body={"patient": patient})
        created = data.get("patient")
        if not created:
            raise DentallyAPIError("Dentally response does not contain a 'patient' key.")
        return created

    def create_appointment(self, appointment: dict[str, Any]) -> dict[str, Any]:
        """Create an appointment and return the ``appointment`` resource."""
        data = self._request("POST", "/appointments", json_body={"appointment": appointment})
        created = data.get("appointment")
        if not created:
            raise DentallyAPIError("Dentally response does not contain an 'appointment' key.")
        return created

    # ── Sync reads ───────────────────────────────────────────────────

    def list_appointments_on(self, date: str) -> list[dict[str, Any]]:
        """Return every appointment on *date* (``YYYY-MM-DD``), following pagination."""
        appointments: list[dict[str, Any]] = []
        page = 1
        while True:
            data = self._request(
                "GET",
                "/appointments",
                params={"on": date, "page": page, "per_page": APPOINTMENTS_PER_PAGE},
                retries=MAX_RETRIES,
            )
            appointments.extend(data.get("appointments", []))
            meta = data.get("meta") or {}
            if meta.get("current_page", page) >= meta.get("total_pages", 1):
                break
            page += 1
        logger.info("Fetched %d appointment(s) on %s across %d page(s)", len(appointments), date, page)
        return appointments

    def list_payment_plans(self) -> list[dict[str, Any]]:
        data = self._request(
            "GET", "/payment_plans", params={"active": "true"}, retries=MAX_RETRIES,
        )
        return data.get("payment_plans", [])


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: DentallyClient | None = None
_client_lock = threading.Lock()


def get_dentally_client() -> DentallyClient:
    """Return a module-level DentallyClient singleton.

    Uses double-checked locking so that the lock is only acquired during
    the first initialisation, not on every subsequent call.
    """
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = DentallyClient()
    return _client
