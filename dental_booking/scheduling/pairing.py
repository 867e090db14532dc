"""Multi-service slot pairing.

Chains single-service searches into ``SlotSequence`` values.  The root
service (the one other requested services depend on, or the first listed
service) is searched first; every root candidate, in ranked order, is then
extended service by service, each dependent anchored at the previous slot's
finish and accepted only if it starts strictly after it.

Up to ``max_sequences`` complete chains are collected.  The primary
recommendation is an exact match on the requested root start when there is
one, otherwise the closest chain before the requested time, otherwise the
earliest chain after it; up to ``max_alternates`` others are returned too.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from dental_booking.models import SequenceItem, ServiceRequest, Slot, SlotSequence
from dental_booking.scheduling.catalog import ServiceCatalog
from dental_booking.scheduling.directory import PractitionerDirectory
from dental_booking.scheduling.search import SlotSearch

logger = logging.getLogger(__name__)

DEFAULT_MAX_SEQUENCES = 10
DEFAULT_MAX_ALTERNATES = 3
DEFAULT_MAX_ROOT_CANDIDATES = 20


class PairingStatus(str, Enum):
    MATCHED = "matched"
    ROOT_UNAVAILABLE = "root_unavailable"
    DEPENDENTS_UNAVAILABLE = "dependents_unavailable"


@dataclass
class PairingResult:
    status: PairingStatus
    root_service_id: int
    primary: SlotSequence | None = None
    alternates: list[SlotSequence] = field(default_factory=list)
    exact_match: bool = False
    message: str = ""

    @property
    def matched(self) -> bool:
        return self.status is PairingStatus.MATCHED


def is_valid_sequence(sequence: SlotSequence) -> bool:
    """Check the ordering invariants of a chain.

    Every slot starts strictly after the previous slot's finish, and every
    non-root slot starts strictly after the root slot's start.
    """
    items = sequence.items
    for previous, current in zip(items, items[1:]):
        if current.slot.start <= previous.slot.finish:
            return False
    if sequence.root_service_id is None:
        return True
    root = sequence.root
    return all(
        item.slot.start > root.slot.start
        for item in items
        if item.service_id != sequence.root_service_id
    )


class SlotPairer:
    def __init__(
        self,
        search: SlotSearch,
        directory: PractitionerDirectory,
        catalog: ServiceCatalog,
        *,
        max_sequences: int = DEFAULT_MAX_SEQUENCES,
        max_alternates: int = DEFAULT_MAX_ALTERNATES,
        max_root_candidates: int = DEFAULT_MAX_ROOT_CANDIDATES,
    ):
        self._search = search
        self._directory = directory
        self._catalog = catalog
        self._max_sequences = max_sequences
        self._max_alternates = max_alternates
        self._max_root_candidates = max_root_candidates

    def _ordered(
        self, requests: Sequence[ServiceRequest], root_service_id: int | None,
    ) -> list[ServiceRequest]:
        ordered = list(requests)
        if root_service_id is not None:
            root = next((r for r in ordered if r.service_id == root_service_id), None)
            if root is not None:
                ordered.remove(root)
                ordered.insert(0, root)
        return ordered

    def _extend(
        self, root_slot: Slot, root_service_id: int, dependents: list[ServiceRequest],
        eligible: dict[int, list],
    ) -> SlotSequence | None:
        items = [SequenceItem(root_service_id, root_slot)]
        previous = root_slot
        for request in dependents:
            service = self._catalog.get(request.service_id)
            found = self._search.search(
                service, previous.finish, eligible[request.service_id], after=previous.finish,
            )
            chosen = next((s for s in found.slots if s.start > previous.finish), None)
            if chosen is None:
                logger.debug(
                    "Pairing: no %s slot after %s for root slot %s",
                    service.name, previous.finish, root_slot.start,
                )
                return None
            items.append(SequenceItem(request.service_id, chosen))
            previous = chosen
        return SlotSequence(tuple(items), root_service_id)

    def pair(
        self,
        requests: Sequence[ServiceRequest],
        root_service_id: int | None = None,
    ) -> PairingResult:
        """Resolve one consistent slot chain (plus alternates) for *requests*."""
        if not requests:
            raise ValueError("At least one service request is required")

        if root_service_id is None:
            root_service_id = self._catalog.root_for(r.service_id for r in requests)
        ordered = self._ordered(requests, root_service_id)
        root_request, dependents = ordered[0], ordered[1:]
        root_id = root_request.service_id
        root_service = self._catalog.get(root_id)

        eligible = {
            r.service_id: self._directory.eligible_practitioners(r.service_id) for r in ordered
        }
        root_search = self._search.search(
            root_service, root_request.requested_start, eligible[root_id],
        )
        if not root_search.found:
            return PairingResult(
                status=PairingStatus.ROOT_UNAVAILABLE,
                root_service_id=root_id,
                message=f"{root_service.name} is not available. {root_search.message}",
            )

        sequences: list[SlotSequence] = []
        for root_slot in root_search.slots[: self._max_root_candidates]:
            sequence = self._extend(root_slot, root_id, dependents, eligible)
            if sequence is None:
                continue
            if not is_valid_sequence(sequence):
                logger.warning("Pairing: rejected sequence violating ordering: %s", sequence)
                continue
            sequences.append(sequence)
            if len(sequences) >= self._max_sequences:
                break

        if not sequences:
            names = ", ".join(self._catalog.get(r.service_id).name for r in dependents)
            return PairingResult(
                status=PairingStatus.DEPENDENTS_UNAVAILABLE,
                root_service_id=root_id,
                message=(
                    f"{root_service.name} is available, but no matching time was found "
                    f"for {names} afterwards."
                ),
            )

        requested = root_request.requested_start
        exact = [s for s in sequences if s.root.slot.start == requested]
        before = sorted(
            (s for s in sequences if s.root.slot.start < requested),
            key=lambda s: requested - s.root.slot.start,
        )
        after = sorted(
            (s for s in sequences if s.root.slot.start > requested),
            key=lambda s: s.root.slot.start - requested,
        )
        ranked = exact + before + after
        primary = ranked[0]
        result = PairingResult(
            status=PairingStatus.MATCHED,
            root_service_id=root_id,
            primary=primary,
            alternates=ranked[1 : 1 + self._max_alternates],
            exact_match=bool(exact),
        )
        result.message = (
            "The requested time is available."
            if result.exact_match
            else "The requested time is not available; the closest alternative is recommended."
        )
        logger.info(
            "Pairing: %d sequence(s) for services %s, exact=%s",
            len(sequences), [r.service_id for r in ordered], result.exact_match,
        )
        return result
