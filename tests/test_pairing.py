"""Tests for multi-service slot pairing."""

from __future__ import annotations

import pytest
from fakes import NOW, FakeDirectory, FakeGateway, at

from dental_booking.models import PractitionerRef, SequenceItem, ServiceRequest, Slot, SlotSequence
from dental_booking.scheduling.catalog import ServiceCatalog
from dental_booking.scheduling.pairing import PairingStatus, SlotPairer, is_valid_sequence
from dental_booking.scheduling.search import SlotSearch

ANA = PractitionerRef(1, "Ana Silva", eligible_service_ids=frozenset({1}))
BEN = PractitionerRef(2, "Ben Cole", eligible_service_ids=frozenset({2, 3}))


def _pairer(free: dict, *, max_windows: int = 2, **kwargs) -> tuple[SlotPairer, FakeGateway]:
    gateway = FakeGateway(free)
    search = SlotSearch(gateway, clock=lambda: NOW, max_windows=max_windows)
    directory = FakeDirectory({1: [ANA], 2: [BEN], 3: [BEN]})
    return SlotPairer(search, directory, ServiceCatalog(), **kwargs), gateway


def _both(start) -> list[ServiceRequest]:
    return [ServiceRequest(1, start), ServiceRequest(2, start)]


class TestIsValidSequence:
    def test_strictly_increasing_chain_is_valid(self):
        sequence = SlotSequence(
            (SequenceItem(1, Slot(1, at(4, 10), at(4, 11))), SequenceItem(2, Slot(2, at(4, 11, 30), at(4, 12)))),
            root_service_id=1,
        )
        assert is_valid_sequence(sequence)

    def test_back_to_back_is_not_strictly_after(self):
        sequence = SlotSequence(
            (SequenceItem(1, Slot(1, at(4, 10), at(4, 11))), SequenceItem(2, Slot(2, at(4, 11), at(4, 11, 30)))),
            root_service_id=1,
        )
        assert not is_valid_sequence(sequence)

    def test_dependent_before_root_is_invalid(self):
        sequence = SlotSequence(
            (SequenceItem(2, Slot(2, at(4, 8), at(4, 8, 30))), SequenceItem(1, Slot(1, at(4, 10), at(4, 11)))),
            root_service_id=1,
        )
        assert not is_valid_sequence(sequence)


class TestSlotPairer:
    def test_matched_chain_with_alternates(self):
        pairer, _ = _pairer({1: [(at(4, 9), at(4, 12))], 2: [(at(4, 11), at(4, 13))]})

        result = pairer.pair(_both(at(4, 10)))

        assert result.status is PairingStatus.MATCHED
        assert result.matched
        assert result.exact_match
        assert result.root_service_id == 1
        root, hygiene = result.primary.items
        assert (root.service_id, root.slot.start) == (1, at(4, 10))
        assert (hygiene.service_id, hygiene.slot.start) == (2, at(4, 11, 30))
        assert [alt.root.slot.start for alt in result.alternates] == [at(4, 9), at(4, 11)]
        for sequence in [result.primary, *result.alternates]:
            assert is_valid_sequence(sequence)

    def test_dependent_free_before_root_finish_waits_for_it(self):
        pairer, _ = _pairer({1: [(at(4, 10), at(4, 11))], 2: [(at(4, 10), at(4, 13))]})

        result = pairer.pair(_both(at(4, 10)))

        assert result.matched
        root, hygiene = result.primary.items
        assert (root.slot.start, root.slot.finish) == (at(4, 10), at(4, 11))
        assert hygiene.slot.start > root.slot.finish
        assert hygiene.slot.start == at(4, 11, 30)
        assert is_valid_sequence(result.primary)

    def test_root_goes_first_whatever_the_request_order(self):
        pairer, _ = _pairer({1: [(at(4, 9), at(4, 12))], 2: [(at(4, 11), at(4, 13))]})

        result = pairer.pair([ServiceRequest(2, at(4, 10)), ServiceRequest(1, at(4, 10))])

        assert [item.service_id for item in result.primary.items] == [1, 2]

    def test_closest_before_is_preferred_over_after(self):
        pairer, _ = _pairer({1: [(at(4, 8), at(4, 9)), (at(4, 12), at(4, 13))], 2: [(at(4, 9), at(4, 17))]})

        result = pairer.pair(_both(at(4, 10)))

        assert not result.exact_match
        assert result.primary.root.slot.start == at(4, 8)
        assert "closest alternative" in result.message

    def test_root_unavailable(self):
        pairer, gateway = _pairer({2: [(at(4, 11), at(4, 13))]})

        result = pairer.pair(_both(at(4, 10)))

        assert result.status is PairingStatus.ROOT_UNAVAILABLE
        assert result.primary is None
        assert "Biological New Consultation is not available" in result.message
        # Only the root was searched
        assert all(call[0] == [1] for call in gateway.calls)

    def test_dependents_unavailable(self):
        pairer, _ = _pairer({1: [(at(4, 9), at(4, 12))]})

        result = pairer.pair(_both(at(4, 10)))

        assert result.status is PairingStatus.DEPENDENTS_UNAVAILABLE
        assert result.primary is None
        assert "Holistic Hygiene afterwards" in result.message

    def test_single_service(self):
        pairer, _ = _pairer({2: [(at(4, 9), at(4, 10))]})

        result = pairer.pair([ServiceRequest(3, at(4, 9))])

        assert result.matched
        assert result.root_service_id == 3
        assert len(result.primary.items) == 1
        assert result.primary.items[0].slot == Slot(2, at(4, 9), at(4, 9, 15))

    def test_alternates_are_capped(self):
        pairer, _ = _pairer(
            {1: [(at(4, 6), at(4, 16))], 2: [(at(4, 6), at(4, 20))]}, max_alternates=2,
        )

        result = pairer.pair(_both(at(4, 10)))

        assert len(result.alternates) == 2

    def test_empty_request_is_rejected(self):
        pairer, _ = _pairer({})
        with pytest.raises(ValueError):
            pairer.pair([])
