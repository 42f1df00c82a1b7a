from __future__ import annotations

import asyncio
import os
import shutil
from typing import Any, Callable

from .build import build_context_dir
from .db import EventLog
from .docker_ops import (
    ContainerAlreadyRunning,
    ContainerInfo,
    ContainerNotFound,
    ContainerRuntime,
    ContainerSpec,
    RuntimeOperationError,
)
from .errors import LifecycleError, OperationTimeout
from .models import STATUS_ERROR, STATUS_EXITED, STATUS_RUNNING, Service
from .settings import Settings, settings as default_settings


def match_container(service: Service, containers: list[ContainerInfo]) -> ContainerInfo | None:
    """Find the live container for a service.

    A stored id may be the short or the long form, so ids match exactly or
    by prefix in either direction. Services without a stored id fall back to
    the container name.
    """
    stored = service.container_id
    if stored:
        for c in containers:
            if c.id == stored or c.id.startswith(stored) or stored.startswith(c.id):
                return c
        return None
    for c in containers:
        if c.name.lstrip("/") == service.container_name:
            return c
    return None


class ContainerLifecycleController:
    def __init__(self, runtime: ContainerRuntime, events: EventLog, settings: Settings | None = None):
        self.runtime = runtime
        self.events = events
        self.settings = settings or default_settings

    async def _call(self, timeout_s: float, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout_s)

    def container_env(self, service: Service) -> dict[str, str]:
        """Defaults first, then the user's env; a user key replaces a default."""
        defaults = {
            "SERVICE_NAME": service.name,
            "ROBLE_BASE_URL": self.settings.collaborator_base_url,
            "ROBLE_PROJECT_ID": self.settings.collaborator_project_id,
        }
        return {**defaults, **service.env}

    def container_spec(self, service: Service) -> ContainerSpec:
        return ContainerSpec(
            image=service.container_name,
            name=service.container_name,
            network=self.settings.docker_network,
            env=self.container_env(service),
            restart_policy=self.settings.restart_policy,
            labels={"dmm.service": service.service_name, "dmm.id": service.id},
        )

    async def ensure_network(self) -> None:
        await self._call(
            self.settings.start_timeout_s,
            self.runtime.ensure_network,
            self.settings.docker_network,
            self.settings.docker_network_internal,
        )

    async def _existing_container(self, service: Service) -> ContainerInfo | None:
        if service.container_id:
            try:
                return await self._call(self.settings.start_timeout_s, self.runtime.inspect_container, service.container_id)
            except ContainerNotFound:
                pass
        containers = await self._call(self.settings.start_timeout_s, self.runtime.list_containers)
        for c in containers:
            if c.name.lstrip("/") == service.container_name:
                return c
        return None

    async def start(self, service: Service) -> Service:
        """Create the container if needed and start it.

        A container that is already running counts as a successful start.
        """
        try:
            existing = await self._existing_container(service)
            if existing is None:
                ref = await self._call(self.settings.start_timeout_s, self.runtime.create_container, self.container_spec(service))
                service.container_id = ref.id
                self.events.log("INFO", f"Created container {ref.name}", service_name=service.service_name)
            else:
                service.container_id = existing.id
            try:
                await self._call(self.settings.start_timeout_s, self.runtime.start_container, service.container_id)
            except ContainerAlreadyRunning:
                self.events.log("INFO", "Container already running", service_name=service.service_name)
        except asyncio.TimeoutError as e:
            service.status = STATUS_ERROR
            msg = f"Start timed out after {self.settings.start_timeout_s:g}s"
            self.events.log("ERROR", msg, service_name=service.service_name)
            raise OperationTimeout(msg) from e
        except RuntimeOperationError as e:
            self.events.log("ERROR", f"Start failed: {e.message}", service_name=service.service_name)
            raise LifecycleError(f"Start failed: {e.message}") from e

        service.status = STATUS_RUNNING
        self.events.log("INFO", f"Started container {service.container_name}", service_name=service.service_name)
        return service

    async def stop(self, service: Service) -> Service:
        if not service.container_id:
            raise LifecycleError("Service has no container")
        try:
            await self._call(self.settings.stop_timeout_s, self.runtime.stop_container, service.container_id)
        except asyncio.TimeoutError as e:
            service.status = STATUS_ERROR
            msg = f"Stop timed out after {self.settings.stop_timeout_s:g}s"
            self.events.log("ERROR", msg, service_name=service.service_name)
            raise OperationTimeout(msg) from e
        except RuntimeOperationError as e:
            self.events.log("ERROR", f"Stop failed: {e.message}", service_name=service.service_name)
            raise LifecycleError(f"Stop failed: {e.message}") from e
        service.status = STATUS_EXITED
        self.events.log("INFO", f"Stopped container {service.container_name}", service_name=service.service_name)
        return service

    async def restart(self, service: Service) -> Service:
        if not service.container_id:
            raise LifecycleError("Service has no container")
        try:
            await self._call(self.settings.restart_timeout_s, self.runtime.restart_container, service.container_id)
        except asyncio.TimeoutError as e:
            service.status = STATUS_ERROR
            msg = f"Restart timed out after {self.settings.restart_timeout_s:g}s"
            self.events.log("ERROR", msg, service_name=service.service_name)
            raise OperationTimeout(msg) from e
        except RuntimeOperationError as e:
            self.events.log("ERROR", f"Restart failed: {e.message}", service_name=service.service_name)
            raise LifecycleError(f"Restart failed: {e.message}") from e
        service.status = STATUS_RUNNING
        self.events.log("INFO", f"Restarted container {service.container_name}", service_name=service.service_name)
        return service

    async def remove(self, service: Service) -> list[str]:
        """Best-effort teardown of container, image and scratch build context.

        Every failure is recorded and returned, never raised.
        """
        failures: list[str] = []

        async def attempt(what: str, timeout_s: float, fn: Callable[..., Any], *args: Any) -> None:
            try:
                await self._call(timeout_s, fn, *args)
            except asyncio.TimeoutError:
                failures.append(f"{what}: timed out after {timeout_s:g}s")
            except RuntimeOperationError as e:
                failures.append(f"{what}: {e.message}")
            except Exception as e:
                failures.append(f"{what}: {type(e).__name__}: {e}")

        if service.container_id:
            await attempt("stop container", self.settings.stop_timeout_s, self.runtime.stop_container, service.container_id)
            await attempt(
                "remove container", self.settings.stop_timeout_s, self.runtime.remove_container, service.container_id, True
            )
        await attempt("remove image", self.settings.stop_timeout_s, self.runtime.remove_image, service.container_name)

        context_dir = build_context_dir(self.settings, service.container_name)
        if os.path.exists(context_dir):
            try:
                await asyncio.to_thread(shutil.rmtree, context_dir)
            except OSError as e:
                failures.append(f"remove build context: {e}")

        for failure in failures:
            self.events.log("WARN", f"Teardown: {failure}", service_name=service.service_name)
        self.events.log("INFO", f"Removed container {service.container_name}", service_name=service.service_name)
        return failures

    async def live_containers(self) -> list[ContainerInfo]:
        return await self._call(self.settings.stop_timeout_s, self.runtime.list_containers)
