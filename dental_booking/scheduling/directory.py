"""Practitioner directory: who may perform a given service.

Dentally knows which practitioners exist and whether they are active, but
has no notion of the services each one performs.  That mapping lives in the
local ``practitioners`` collection (``services: [<service id>, ...]``) and is
joined to the remote records by practitioner id.

Resolution order for ``eligible_practitioners(service_id)``:

1. Remote active practitioners, cross-referenced with the local mapping.
2. If the remote call fails, returns no active practitioners, or the
   cross-reference is empty: local records with ``active == True`` that list
   the service.

Remote failures are logged and swallowed; the resolver always answers.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from dental_booking.models import PractitionerRef
from dental_booking.services.dentally_client import DentallyAPIError, DentallyClient
from dental_booking.services.store import DocumentStore

logger = logging.getLogger(__name__)

PRACTITIONERS = "practitioners"


def display_name(record: dict[str, Any]) -> str:
    user = record.get("user") or {}
    name = f"{user.get('first_name') or ''} {user.get('last_name') or ''}".strip()
    return name or str(record.get("id", ""))


def _to_ref(record: dict[str, Any], services: list[int] | None = None) -> PractitionerRef:
    return PractitionerRef(
        id=int(record["id"]),
        display_name=display_name(record),
        active=bool(record.get("active", False)),
        eligible_service_ids=frozenset(services if services is not None else record.get("services") or []),
    )


class PractitionerDirectory:
    def __init__(self, client: DentallyClient, store: DocumentStore):
        self._client = client
        self._store = store

    def _remote_active(self) -> list[dict[str, Any]]:
        try:
            records = self._client.list_practitioners()
        except (DentallyAPIError, httpx.HTTPError) as exc:
            logger.warning("Directory: remote practitioner list unavailable (%s)", exc)
            return []
        active = [r for r in records if r.get("active") is True and r.get("id") is not None]
        logger.debug("Directory: %d/%d remote practitioners active", len(active), len(records))
        return active

    def _local_eligible(self, service_id: int) -> list[PractitionerRef]:
        records = self._store.find(PRACTITIONERS, {"active": True})
        return [
            _to_ref(r)
            for r in records
            if r.get("id") is not None and service_id in (r.get("services") or [])
        ]

    def eligible_practitioners(self, service_id: int) -> list[PractitionerRef]:
        """Return active practitioners explicitly mapped to *service_id*."""
        remote = self._remote_active()
        if not remote:
            local = self._local_eligible(service_id)
            logger.info(
                "Directory: no remote data, %d local practitioner(s) for service %d",
                len(local), service_id,
            )
            return local

        mapping = {
            int(r["id"]): r.get("services") or []
            for r in self._store.find(PRACTITIONERS)
            if r.get("id") is not None
        }
        eligible = [
            _to_ref(record, mapping[int(record["id"])])
            for record in remote
            if service_id in mapping.get(int(record["id"]), [])
        ]
        if eligible:
            logger.debug(
                "Directory: %d remote practitioner(s) mapped to service %d",
                len(eligible), service_id,
            )
            return eligible

        local = self._local_eligible(service_id)
        logger.info(
            "Directory: remote practitioners have no mapping for service %d, "
            "%d local fallback(s)", service_id, len(local),
        )
        return local

    def active_practitioners(self) -> list[PractitionerRef]:
        """All active practitioners (remote first, local fallback) with their services."""
        mapping = {
            int(r["id"]): r.get("services") or []
            for r in self._store.find(PRACTITIONERS)
            if r.get("id") is not None
        }
        remote = self._remote_active()
        if remote:
            return [_to_ref(r, mapping.get(int(r["id"]), [])) for r in remote]
        return [
            _to_ref(r)
            for r in self._store.find(PRACTITIONERS, {"active": True})
            if r.get("id") is not None
        ]

    # ── Offline maintenance ──────────────────────────────────────────

    def sync_from_remote(self) -> int:
        """Mirror the remote practitioner list locally, keeping existing service mappings."""
        records = self._client.list_practitioners()
        mapping = {
            int(r["id"]): r.get("services") or []
            for r in self._store.find(PRACTITIONERS)
            if r.get("id") is not None
        }
        documents = [
            {
                "id": int(r["id"]),
                "active": bool(r.get("active", False)),
                "user": {
                    "first_name": (r.get("user") or {}).get("first_name"),
                    "last_name": (r.get("user") or {}).get("last_name"),
                },
                "services": mapping.get(int(r["id"]), []),
            }
            for r in records
            if r.get("id") is not None
        ]
        self._store.replace_all(PRACTITIONERS, documents)
        logger.info("Directory: mirrored %d practitioner(s) from Dentally", len(documents))
        return len(documents)

    def assign_services(self, services_by_name: dict[str, list[int]]) -> dict[int, list[int]]:
        """Set each local practitioner's eligible services from a name -> ids mapping.

        Names are matched on ``"first last"`` after collapsing whitespace,
        case-insensitively.  Practitioners absent from the mapping keep their
        current services.  Returns ``{practitioner_id: services}`` for every
        record that changed.
        """
        wanted = {" ".join(name.split()).lower(): ids for name, ids in services_by_name.items()}
        updated: dict[int, list[int]] = {}
        for record in self._store.find(PRACTITIONERS):
            key = " ".join(display_name(record).split()).lower()
            if key not in wanted or record.get("id") is None:
                continue
            services = sorted(set(wanted[key]))
            self._store.update_many(PRACTITIONERS, {"id": record["id"]}, {"services": services})
            updated[int(record["id"])] = services
            logger.info("Directory: practitioner %s (%s) -> services %s", record["id"], key, services)
        return updated
