from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

import docker
from docker.errors import APIError, BuildError as DockerBuildError, DockerException, ImageNotFound, NotFound
from requests.exceptions import RequestException

from .models import STATUS_ERROR, STATUS_EXITED, STATUS_PENDING, STATUS_RUNNING


_STATE_TO_STATUS = {
    "running": STATUS_RUNNING,
    "created": STATUS_PENDING,
    "restarting": STATUS_PENDING,
    "exited": STATUS_EXITED,
    "dead": STATUS_EXITED,
    "paused": STATUS_EXITED,
    "removing": STATUS_EXITED,
}


def status_from_state(state: str) -> str:
    return _STATE_TO_STATUS.get((state or "").lower(), STATUS_ERROR)


class RuntimeOperationError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ContainerNotFound(RuntimeOperationError):
    pass


class ContainerAlreadyRunning(RuntimeOperationError):
    pass


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


@dataclass(frozen=True)
class ContainerInfo:
    id: str
    name: str
    state: str


@dataclass(frozen=True)
class ContainerSpec:
    image: str
    name: str
    network: str
    env: dict[str, str] = field(default_factory=dict)
    restart_policy: str = "always"
    labels: dict[str, str] = field(default_factory=dict)


class ContainerRuntime(Protocol):
    """Capability surface the manager needs from a container runtime.

    All methods are blocking; callers move them off the event loop.
    """

    def ensure_network(self, name: str, internal: bool = False) -> None: ...

    def build_image(self, context_dir: str, tag: str) -> None: ...

    def create_container(self, spec: ContainerSpec) -> ContainerRef: ...

    def start_container(self, container_id: str) -> None: ...

    def stop_container(self, container_id: str) -> None: ...

    def restart_container(self, container_id: str) -> None: ...

    def remove_container(self, container_id: str, force: bool = False) -> None: ...

    def remove_image(self, tag: str) -> None: ...

    def list_containers(self) -> list[ContainerInfo]: ...

    def inspect_container(self, container_id: str) -> ContainerInfo: ...


def _api_error(e: APIError) -> RuntimeOperationError:
    message = str(e.explanation or e)
    if isinstance(e, NotFound):
        return ContainerNotFound(message, e.status_code)
    return RuntimeOperationError(message, e.status_code)


# docker-py lets transport failures from its requests session escape unwrapped.
_RUNTIME_ERRORS = (DockerException, RequestException)


def _runtime_error(e: Exception) -> RuntimeOperationError:
    if isinstance(e, APIError):
        return _api_error(e)
    return RuntimeOperationError(f"Docker is not available: {e}")


class DockerRuntime:
    """ContainerRuntime backed by the local docker daemon."""

    def __init__(self, client: docker.DockerClient | None = None):
        self._client_instance = client

    def _client(self) -> docker.DockerClient:
        if self._client_instance is None:
            try:
                self._client_instance = docker.from_env()
            except _RUNTIME_ERRORS as e:
                raise RuntimeOperationError(f"Docker is not available: {e}") from e
        return self._client_instance

    def ensure_network(self, name: str, internal: bool = False) -> None:
        c = self._client()
        try:
            c.networks.get(name)
        except NotFound:
            try:
                c.networks.create(name, driver="bridge", internal=internal)
            except _RUNTIME_ERRORS as e:
                raise _runtime_error(e) from e
        except _RUNTIME_ERRORS as e:
            raise _runtime_error(e) from e

    def build_image(self, context_dir: str, tag: str) -> None:
        try:
            self._client().images.build(path=context_dir, tag=tag, rm=True)
        except DockerBuildError as e:
            raise RuntimeOperationError(e.msg) from e
        except _RUNTIME_ERRORS as e:
            raise _runtime_error(e) from e

    def create_container(self, spec: ContainerSpec) -> ContainerRef:
        try:
            container = self._client().containers.create(
                spec.image,
                name=spec.name,
                environment=dict(spec.env),
                network=spec.network,
                labels=dict(spec.labels),
                restart_policy={"Name": spec.restart_policy},
            )
        except _RUNTIME_ERRORS as e:
            raise _runtime_error(e) from e
        return ContainerRef(id=container.id, name=spec.name)

    def _get(self, container_id: str):
        try:
            return self._client().containers.get(container_id)
        except _RUNTIME_ERRORS as e:
            raise _runtime_error(e) from e

    def start_container(self, container_id: str) -> None:
        cont = self._get(container_id)
        if cont.status == "running":
            raise ContainerAlreadyRunning("container already started", 304)
        try:
            cont.start()
        except APIError as e:
            if e.status_code == 304:
                raise ContainerAlreadyRunning("container already started", 304) from e
            raise _api_error(e) from e
        except _RUNTIME_ERRORS as e:
            raise _runtime_error(e) from e

    def stop_container(self, container_id: str) -> None:
        cont = self._get(container_id)
        try:
            cont.stop()
        except _RUNTIME_ERRORS as e:
            raise _runtime_error(e) from e

    def restart_container(self, container_id: str) -> None:
        cont = self._get(container_id)
        try:
            cont.restart()
        except _RUNTIME_ERRORS as e:
            raise _runtime_error(e) from e

    def remove_container(self, container_id: str, force: bool = False) -> None:
        cont = self._get(container_id)
        try:
            cont.remove(force=force)
        except _RUNTIME_ERRORS as e:
            raise _runtime_error(e) from e

    def remove_image(self, tag: str) -> None:
        try:
            self._client().images.remove(tag)
        except ImageNotFound as e:
            raise RuntimeOperationError(f"image {tag} not found", 404) from e
        except _RUNTIME_ERRORS as e:
            raise _runtime_error(e) from e

    def list_containers(self) -> list[ContainerInfo]:
        try:
            containers = self._client().containers.list(all=True)
        except _RUNTIME_ERRORS as e:
            raise _runtime_error(e) from e
        return [ContainerInfo(id=x.id, name=x.name, state=x.status) for x in containers]

    def inspect_container(self, container_id: str) -> ContainerInfo:
        cont = self._get(container_id)
        return ContainerInfo(id=cont.id, name=cont.name, state=cont.status)


def container_http_base(container_name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{container_name}:{int(internal_port)}"
