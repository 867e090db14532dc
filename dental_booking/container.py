"""Wiring of the long-lived collaborators shared by the API and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import Any

from dental_booking.config import (
    DATABASE_URL,
    DEFAULT_PAYMENT_PLAN_ID,
    ELEVENLABS_WS_URL,
    PRICING_POLICY_PATH,
    SEARCH_MAX_WINDOWS,
)
from dental_booking.scheduling.availability import AvailabilityGateway
from dental_booking.scheduling.booking import BookingOrchestrator
from dental_booking.scheduling.catalog import ServiceCatalog
from dental_booking.scheduling.directory import PractitionerDirectory
from dental_booking.scheduling.pairing import SlotPairer
from dental_booking.scheduling.pricing import PricingPolicy, load_pricing_policy
from dental_booking.scheduling.search import SlotSearch
from dental_booking.services.dentally_client import DentallyClient, get_dentally_client
from dental_booking.services.notifications import ClickSendSms, PaymentNotifier, StripePaymentLinks
from dental_booking.services.store import DocumentStore
from dental_booking.services.voice_channel import VoiceChannelManager

logger = logging.getLogger(__name__)


def practitioner_roster(directory: PractitionerDirectory) -> list[dict[str, Any]]:
    """Active practitioners in the shape the voice agent expects."""
    return [
        {"practitioner_id": p.id, "practitioner_name": p.display_name}
        for p in directory.active_practitioners()
    ]


@dataclass
class BookingServices:
    client: DentallyClient
    store: DocumentStore
    catalog: ServiceCatalog
    directory: PractitionerDirectory
    search: SlotSearch
    pairer: SlotPairer
    pricing: PricingPolicy
    notifier: PaymentNotifier
    orchestrator: BookingOrchestrator
    voice: VoiceChannelManager
    graph: Any = None

    def close(self) -> None:
        self.notifier.close()
        self.client.close()
        self.store.close()


def build_services(*, with_pipeline: bool = True) -> BookingServices:
    """Construct every collaborator from configuration.

    ``with_pipeline=False`` skips the LLM-backed post-call graph (the CLI
    does not need it).
    """
    client = get_dentally_client()
    store = DocumentStore(DATABASE_URL)
    catalog = ServiceCatalog()
    directory = PractitionerDirectory(client, store)
    search = SlotSearch(AvailabilityGateway(client), max_windows=SEARCH_MAX_WINDOWS)
    pairer = SlotPairer(search, directory, catalog)
    pricing = load_pricing_policy(PRICING_POLICY_PATH)
    notifier = PaymentNotifier(StripePaymentLinks(), ClickSendSms())
    orchestrator = BookingOrchestrator(
        client, store, catalog, pricing, notifier, payment_plan_id=DEFAULT_PAYMENT_PLAN_ID,
    )
    services = BookingServices(
        client=client,
        store=store,
        catalog=catalog,
        directory=directory,
        search=search,
        pairer=pairer,
        pricing=pricing,
        notifier=notifier,
        orchestrator=orchestrator,
        voice=VoiceChannelManager(ELEVENLABS_WS_URL, roster=partial(practitioner_roster, directory)),
    )

    if with_pipeline:
        # Imported here so the CLI never loads the LLM stack.
        from dental_booking.extractor import TranscriptExtractor
        from dental_booking.pipeline import create_post_call_graph

        services.graph = create_post_call_graph(
            TranscriptExtractor(), pairer, orchestrator, directory, catalog,
        )
    logger.info("Booking services ready (pipeline=%s)", with_pipeline)
    return services
