from __future__ import annotations

import asyncio

from .db import EventLog
from .docker_ops import ContainerInfo, status_from_state
from .errors import NotFound, ValidationError
from .gateway import ProxyRegistry
from .lifecycle import match_container
from .models import STATUS_ERROR, STATUS_RUNNING, STATUS_STOPPED, Service, utc_now
from .settings import Settings, settings as default_settings
from .store import ServiceStore, StoreCorrupted


class ServiceRegistry:
    """Authoritative collection of managed services.

    Mutations go through a single asyncio lock, and each one rewrites the
    full persisted document while holding it, so the last completed write
    always reflects the in-memory collection.
    """

    def __init__(
        self,
        store: ServiceStore,
        proxy: ProxyRegistry,
        events: EventLog,
        settings: Settings | None = None,
    ):
        self.store = store
        self.proxy = proxy
        self.events = events
        self.settings = settings or default_settings
        self.lock = asyncio.Lock()
        self._services: dict[str, Service] = {}
        # Ids with a teardown in progress; reconciliation leaves them alone.
        self._retiring: set[str] = set()

    async def load(self) -> int:
        """Reload persisted records and restore routes for those stored as running.

        Containers are not checked here; the next reconciliation does that.
        """
        try:
            records = await asyncio.to_thread(self.store.load)
        except (StoreCorrupted, OSError) as e:
            self.events.log("ERROR", f"Could not load service registry: {e}")
            records = []

        services: dict[str, Service] = {}
        for record in records:
            try:
                svc = Service.from_dict(record)
            except KeyError as e:
                self.events.log("ERROR", f"Skipping malformed service record (missing {e})")
                continue
            services[svc.id] = svc

        async with self.lock:
            self._services = services
        for svc in services.values():
            if svc.status == STATUS_RUNNING and svc.service_name and svc.container_name:
                self.proxy.register(svc.service_name, svc.container_name)

        self.events.log("INFO", f"Loaded {len(services)} services from {self.store.path}")
        return len(services)

    async def _persist(self) -> bool:
        # Caller holds self.lock.
        records = [s.to_dict() for s in self._services.values()]
        try:
            await asyncio.to_thread(self.store.save, records)
            return True
        except (OSError, TypeError, ValueError) as e:
            self.events.log("ERROR", f"Could not persist service registry: {e}")
            return False

    def get(self, service_id: str) -> Service | None:
        return self._services.get(service_id)

    def require(self, service_id: str) -> Service:
        svc = self._services.get(service_id)
        if svc is None:
            raise NotFound("Microservice not found")
        return svc

    def all(self) -> list[Service]:
        return list(self._services.values())

    def service_name_taken(self, service_name: str) -> bool:
        return any(s.service_name == service_name for s in self._services.values())

    async def create(self, service: Service) -> Service:
        async with self.lock:
            if service.id in self._services:
                raise ValidationError(f"Service id {service.id} already registered")
            if self.service_name_taken(service.service_name):
                raise ValidationError(f"serviceName {service.service_name} already registered")
            self._services[service.id] = service
            await self._persist()
        return service

    async def update(
        self,
        service_id: str,
        name: str | None = None,
        description: str | None = None,
        env: dict[str, str] | None = None,
        user: str | None = None,
    ) -> Service:
        async with self.lock:
            svc = self.require(service_id)
            if name:
                svc.name = name
            if description:
                svc.description = description
            if env:
                svc.env = {**svc.env, **env}
            svc.updated_at = utc_now()
            svc.updated_by = user
            await self._persist()
        return svc

    async def save(self, service: Service) -> Service:
        """Persist a changed record (status, container id, url)."""
        async with self.lock:
            if service.id not in self._services:
                raise NotFound("Microservice not found")
            self._services[service.id] = service
            await self._persist()
        return service

    async def retire(self, service_id: str) -> Service:
        """Mark a service for deletion and drop its route.

        Until `delete` runs, reconciliation neither updates the record nor
        registers a route for it.
        """
        async with self.lock:
            svc = self.require(service_id)
            self._retiring.add(service_id)
            self.proxy.unregister(svc.service_name)
        return svc

    async def delete(self, service_id: str) -> Service:
        async with self.lock:
            self._retiring.discard(service_id)
            svc = self._services.pop(service_id, None)
            if svc is None:
                raise NotFound("Microservice not found")
            self.proxy.unregister(svc.service_name)
            await self._persist()
        return svc

    async def reconcile(self, containers: list[ContainerInfo] | None) -> list[Service]:
        """Replace stored statuses with live runtime state.

        `containers` is None when the runtime could not be queried; services
        stored as running are then reported as `error`.
        """
        async with self.lock:
            for svc in self._services.values():
                if svc.id in self._retiring:
                    continue
                previous = svc.status
                if containers is None:
                    if svc.status == STATUS_RUNNING:
                        svc.status = STATUS_ERROR
                        svc.url = None
                else:
                    live = match_container(svc, containers)
                    if live is None:
                        svc.status = STATUS_STOPPED
                        svc.url = None
                    else:
                        svc.container_id = svc.container_id or live.id
                        svc.status = status_from_state(live.state)
                        svc.url = self.proxy.public_url(svc.service_name) if svc.status == STATUS_RUNNING else None

                if svc.status == STATUS_RUNNING:
                    route = self.proxy.lookup(svc.service_name)
                    if route is None or route.container_name != svc.container_name:
                        self.proxy.register(svc.service_name, svc.container_name)
                elif containers is not None:
                    self.proxy.unregister(svc.service_name)

                if previous != svc.status:
                    self.events.log("INFO", f"Reconciled status {previous} -> {svc.status}", service_name=svc.service_name)
            await self._persist()
            return list(self._services.values())
