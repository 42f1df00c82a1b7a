from __future__ import annotations

import asyncio
import uuid
from collections.abc import Mapping
from typing import Any

from .build import BuildPipeline, validate_submission
from .db import EventLog
from .docker_ops import RuntimeOperationError
from .errors import LifecycleError, OperationTimeout, ValidationError
from .gateway import ProxyRegistry
from .lifecycle import ContainerLifecycleController
from .models import STATUS_ERROR, Service, derive_service_name
from .registry import ServiceRegistry
from .tester import EndpointTester, RelayResult


ACTIONS = {"start", "stop", "restart"}


class ServiceManager:
    """Coordinates build, deploy, routing and persistence for the control API.

    Lifecycle actions and deletes on one service run one at a time under a
    per-service lock; registry writes are serialized by the registry itself.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        pipeline: BuildPipeline,
        controller: ContainerLifecycleController,
        proxy: ProxyRegistry,
        tester: EndpointTester,
        events: EventLog,
    ):
        self.registry = registry
        self.pipeline = pipeline
        self.controller = controller
        self.proxy = proxy
        self.tester = tester
        self.events = events
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, service_id: str) -> asyncio.Lock:
        lock = self._locks.get(service_id)
        if lock is None:
            lock = self._locks[service_id] = asyncio.Lock()
        return lock

    def _new_id(self, name: str) -> str:
        while True:
            service_id = str(uuid.uuid4())
            if self.registry.get(service_id) is None and not self.registry.service_name_taken(
                derive_service_name(name, service_id)
            ):
                return service_id

    async def list_services(self) -> list[Service]:
        try:
            containers = await self.controller.live_containers()
        except (RuntimeOperationError, asyncio.TimeoutError) as e:
            self.events.log("ERROR", f"Could not list containers: {e!r}")
            containers = None
        return await self.registry.reconcile(containers)

    def get(self, service_id: str) -> Service:
        return self.registry.require(service_id)

    async def create(self, payload: Mapping[str, Any], user: str | None = None) -> Service:
        """Validate, build, start, route and record a new service.

        Nothing is recorded unless the build succeeds. A start that times out
        is recorded with status `error` so its container can still be torn
        down through delete.
        """
        submission = validate_submission(payload)
        service_id = self._new_id(submission.name)
        result = await self.pipeline.build(submission, service_id)

        service = Service(
            id=result.service_id,
            name=submission.name,
            service_name=result.service_name,
            container_name=result.container_name,
            description=submission.description,
            endpoints=list(submission.endpoints),
            env=dict(submission.env),
            base_image=result.base_image,
            dependencies=list(submission.dependencies),
            created_by=user,
        )

        try:
            await self.controller.start(service)
        except OperationTimeout:
            service.status = STATUS_ERROR
            service.url = None
            await self.registry.create(service)
            raise
        except LifecycleError:
            await self.controller.remove(service)
            raise

        self.proxy.register(service.service_name, service.container_name)
        service.url = self.proxy.public_url(service.service_name)
        await self.registry.create(service)
        self.events.log("INFO", f"Service '{service.name}' deployed at {service.url}", service_name=service.service_name)
        return service

    async def update(
        self,
        service_id: str,
        name: str | None = None,
        description: str | None = None,
        env: Mapping[str, Any] | None = None,
        user: str | None = None,
    ) -> Service:
        if env is not None and not isinstance(env, Mapping):
            raise ValidationError("env must be an object of string values")
        clean_env = {str(k): str(v) for k, v in env.items()} if env else None
        service = await self.registry.update(service_id, name=name, description=description, env=clean_env, user=user)
        self.events.log("INFO", "Metadata updated", service_name=service.service_name)
        return service

    async def delete(self, service_id: str) -> list[str]:
        """Tear the service down and drop its record; returns teardown failures."""
        async with self._lock_for(service_id):
            service = await self.registry.retire(service_id)
            try:
                failures = await self.controller.remove(service)
            finally:
                await self.registry.delete(service_id)
        self._locks.pop(service_id, None)
        self.events.log("INFO", f"Service '{service.name}' deleted", service_name=service.service_name)
        return failures

    async def action(self, service_id: str, action: str) -> Service:
        if action not in ACTIONS:
            raise ValidationError("Invalid action")
        async with self._lock_for(service_id):
            service = self.registry.require(service_id)
            try:
                if action == "start":
                    await self.controller.start(service)
                elif action == "stop":
                    await self.controller.stop(service)
                else:
                    await self.controller.restart(service)
            except OperationTimeout:
                self.proxy.unregister(service.service_name)
                service.url = None
                await self.registry.save(service)
                raise

            if action == "stop":
                self.proxy.unregister(service.service_name)
                service.url = None
            else:
                self.proxy.register(service.service_name, service.container_name)
                service.url = self.proxy.public_url(service.service_name)
            await self.registry.save(service)
        return service

    async def test_endpoint(
        self,
        service_id: str,
        endpoint: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: Any = None,
    ) -> RelayResult:
        service = self.registry.require(service_id)
        return await self.tester.run(service, endpoint, method=method, headers=headers, body=body)
