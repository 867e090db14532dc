"""Configurable pricing for a set of successfully booked services.

The policy is data, not code:

* ``prices``        base price per service id
* ``premium_rates`` a different price for a service when it is performed by
                    a named practitioner (matched on id or on name)
* ``bundles``       a fixed discount when every service in a set is booked
* ``flat_rates``    booking a given service replaces the whole quote with a
                    fixed amount; the first matching rate wins
* dependents (``ServiceDefinition.requires``) are never charged without
  their root service

``load_pricing_policy`` reads the same structure from JSON so a practice can
change prices without a deploy.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any

from dental_booking.scheduling.catalog import ServiceCatalog

logger = logging.getLogger(__name__)

CURRENCY = "EUR"


@dataclass(frozen=True)
class PremiumRate:
    service_id: int
    amount: Decimal
    practitioner_id: int | None = None
    practitioner_name: str = ""

    def applies_to(self, practitioner_id: int | None, practitioner_name: str = "") -> bool:
        if self.practitioner_id is not None and practitioner_id == self.practitioner_id:
            return True
        return bool(
            self.practitioner_name
            and practitioner_name.strip().lower() == self.practitioner_name.strip().lower()
        )


@dataclass(frozen=True)
class Bundle:
    service_ids: frozenset[int]
    discount: Decimal


@dataclass(frozen=True)
class FlatRate:
    service_id: int
    amount: Decimal


@dataclass(frozen=True)
class BookedService:
    service_id: int
    practitioner_id: int | None = None
    practitioner_name: str = ""


@dataclass
class PriceQuote:
    total: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    premium_applied: bool = False
    lines: list[str] = field(default_factory=list)

    @property
    def breakdown(self) -> str:
        return " + ".join(self.lines) if self.lines else "Nothing to charge."


def _money(value: Decimal) -> str:
    return f"€{value.quantize(Decimal('0.01'))}"


@dataclass
class PricingPolicy:
    prices: dict[int, Decimal]
    premium_rates: list[PremiumRate] = field(default_factory=list)
    bundles: list[Bundle] = field(default_factory=list)
    flat_rates: list[FlatRate] = field(default_factory=list)

    def quote(self, booked: Iterable[BookedService], catalog: ServiceCatalog) -> PriceQuote:
        booked = list(booked)
        booked_ids = {b.service_id for b in booked}
        quote = PriceQuote()

        for rate in self.flat_rates:
            if rate.service_id in booked_ids:
                service = catalog.get(rate.service_id)
                quote.total = rate.amount
                quote.lines.append(f"{service.name}: {_money(rate.amount)}")
                logger.info("Pricing: %s booked, flat %s", service.name, _money(rate.amount))
                return quote

        for item in booked:
            service = catalog.get(item.service_id)
            if service.requires is not None and service.requires not in booked_ids:
                root = catalog.get(service.requires)
                quote.lines.append(f"{service.name} cannot be booked without {root.name}")
                logger.info("Pricing: %s booked without %s, not charged", service.name, root.name)
                continue

            price = self.prices.get(item.service_id, Decimal("0"))
            for rate in self.premium_rates:
                if rate.service_id == item.service_id and rate.applies_to(
                    item.practitioner_id, item.practitioner_name,
                ):
                    price = rate.amount
                    quote.premium_applied = True
                    break
            quote.total += price
            quote.lines.append(f"{service.name}: {_money(price)}")

        for bundle in self.bundles:
            if bundle.service_ids <= booked_ids:
                quote.discount += bundle.discount
                quote.lines.append(f"Discount: -{_money(bundle.discount)}")

        quote.total = max(quote.total - quote.discount, Decimal("0"))
        logger.info("Pricing: services %s -> %s (%s)", sorted(booked_ids), _money(quote.total), quote.breakdown)
        return quote


DEFAULT_PRICING = PricingPolicy(
    prices={1: Decimal("269"), 2: Decimal("176"), 3: Decimal("192.50")},
    flat_rates=[FlatRate(service_id=3, amount=Decimal("192.50"))],
    premium_rates=[
        PremiumRate(
            service_id=1,
            amount=Decimal("299"),
            practitioner_id=148774,
            practitioner_name="Sebastien Lomas",
        ),
    ],
    bundles=[Bundle(service_ids=frozenset({1, 2}), discount=Decimal("50"))],
)


def pricing_policy_from_dict(raw: dict[str, Any]) -> PricingPolicy:
    """Build a policy from its JSON form.

    Example::

        {
          "prices": {"1": "269", "2": "176"},
          "premium_rates": [{"service_id": 1, "amount": "299",
                             "practitioner_id": 148774}],
          "bundles": [{"service_ids": [1, 2], "discount": "50"}],
          "flat_rates": [{"service_id": 3, "amount": "192.50"}]
        }
    """
    return PricingPolicy(
        prices={int(k): Decimal(str(v)) for k, v in raw.get("prices", {}).items()},
        premium_rates=[
            PremiumRate(
                service_id=int(r["service_id"]),
                amount=Decimal(str(r["amount"])),
                practitioner_id=r.get("practitioner_id"),
                practitioner_name=r.get("practitioner_name", ""),
            )
            for r in raw.get("premium_rates", [])
        ],
        bundles=[
            Bundle(
                service_ids=frozenset(int(s) for s in b["service_ids"]),
                discount=Decimal(str(b["discount"])),
            )
            for b in raw.get("bundles", [])
        ],
        flat_rates=[
            FlatRate(service_id=int(r["service_id"]), amount=Decimal(str(r["amount"])))
            for r in raw.get("flat_rates", [])
        ],
    )


def load_pricing_policy(path: str | Path | None) -> PricingPolicy:
    """Load a policy from *path*, or return ``DEFAULT_PRICING`` when no path is set."""
    if not path:
        return DEFAULT_PRICING
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    logger.info("Pricing policy loaded from %s", path)
    return pricing_policy_from_dict(raw)
