"""Dental booking backend — the scheduling brain behind a voice receptionist.

Architecture Overview
=====================

An ElevenLabs voice agent talks to patients on the phone.  This service
answers its tool calls and, once a call ends, books what was agreed in the
practice's Dentally account.

1. **Availability engine** — resolves which practitioners may perform a
   service, queries Dentally for free time in expanding windows, slices the
   free blocks into exact-duration slots and ranks them around the
   requested time.

2. **Slot pairing** — chains several services (e.g. a consultation followed
   by hygiene) into one consistent sequence where every service starts
   strictly after the previous one ends, with alternates.

3. **Booking orchestrator** — creates the patient, books each service
   (root first), prices the result, sends a Stripe payment link by SMS.

4. **Post-call pipeline** — a LangGraph state machine: Claude extracts the
   booking from the transcript, the engine resolves slots, the orchestrator
   books, and a confirmation is pushed back over the conversation socket.

Key Design Decisions
--------------------
- **Dentally is the source of truth** for practitioners and free time.  The
  only local state is the service-eligibility mapping and mirrors of
  created records, kept in a SQLAlchemy database (``services/store.py``).
- **Availability is never cached or retried**: a failed query is treated as
  "no free time" and the search simply widens its window.
- **Writes are not retried**: a failed appointment create is reported per
  service, and only idempotent listing reads back off and retry.
- **Pricing is configuration**, loadable from JSON, not code.
- **Notifications are best effort**: a payment link or SMS failure never
  undoes a booking.

Package Structure
-----------------
- ``dental_booking/config.py`` — Centralized configuration from environment variables / SSM
- ``dental_booking/models.py`` — Domain types and timestamp helpers
- ``dental_booking/scheduling/`` — Catalog, directory, availability, search, pairing, pricing, booking
- ``dental_booking/services/`` — Dentally client, document store, notifications, voice channel, metrics
- ``dental_booking/extractor.py`` / ``prompts.py`` — Transcript extraction with Claude
- ``dental_booking/pipeline.py`` — LangGraph post-call graph
- ``dental_booking/container.py`` — Wiring shared by the server and the CLI
- ``dental_booking/server.py`` — FastAPI application
- ``dental_booking/api/`` — FastAPI routes, schemas, auth and legacy payload adapters
- ``dental_booking/main.py`` — Maintenance CLI
"""
