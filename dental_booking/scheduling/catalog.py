"""Static service catalog: ids, names, durations and root/dependent links."""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from dental_booking.models import ServiceDefinition

DEFAULT_SERVICES: tuple[ServiceDefinition, ...] = (
    ServiceDefinition(id=1, name="Biological New Consultation", duration_minutes=60),
    ServiceDefinition(id=2, name="Holistic Hygiene", duration_minutes=30, requires=1),
    ServiceDefinition(id=3, name="Holistic Hygiene Direct Access", duration_minutes=15),
)


class UnknownServiceError(KeyError):
    """Raised when a service id is not in the catalog."""

    def __init__(self, service_id: int):
        self.service_id = service_id
        super().__init__(f"Unknown service id: {service_id}")


class ServiceCatalog:
    def __init__(self, services: Iterable[ServiceDefinition] = DEFAULT_SERVICES) -> None:
        self._services: dict[int, ServiceDefinition] = {s.id: s for s in services}

    def __contains__(self, service_id: object) -> bool:
        return service_id in self._services

    def __iter__(self) -> Iterator[ServiceDefinition]:
        return iter(self._services.values())

    def get(self, service_id: int) -> ServiceDefinition:
        try:
            return self._services[service_id]
        except KeyError:
            raise UnknownServiceError(service_id) from None

    def find_by_name(self, name: str) -> ServiceDefinition | None:
        wanted = name.strip().lower()
        for service in self._services.values():
            if service.name.lower() == wanted:
                return service
        return None

    def root_for(self, service_ids: Iterable[int]) -> int | None:
        """Return the service in *service_ids* that another requested service depends on.

        ``None`` when the request holds no dependency pair.
        """
        ids = list(service_ids)
        for service_id in ids:
            if service_id not in self._services:
                continue
            required = self._services[service_id].requires
            if required is not None and required in ids:
                return required
        return None

    def missing_roots(self, service_ids: Iterable[int]) -> list[tuple[int, int]]:
        """Return ``(dependent, root)`` pairs whose root is absent from *service_ids*."""
        ids = list(service_ids)
        missing: list[tuple[int, int]] = []
        for service_id in ids:
            required = self.get(service_id).requires
            if required is not None and required not in ids:
                missing.append((service_id, required))
        return missing
