from __future__ import annotations

import json
import os
import threading
import time
import uuid
from dataclasses import replace

import httpx
import pytest
from fastapi.testclient import TestClient

from dmm.app import create_app
from dmm.auth import TokenVerification
from dmm.build import BuildPipeline
from dmm.db import EventLog
from dmm.docker_ops import (
    ContainerAlreadyRunning,
    ContainerInfo,
    ContainerNotFound,
    ContainerRef,
    ContainerSpec,
    RuntimeOperationError,
)
from dmm.errors import AuthenticationError
from dmm.gateway import ProxyRegistry
from dmm.lifecycle import ContainerLifecycleController
from dmm.registry import ServiceRegistry
from dmm.settings import Settings
from dmm.store import ServiceStore


SUMA_CODE = """
const express = require('express');
const app = express();
app.use(express.json());

app.get('/api/suma', (req, res) => {
  const a = parseFloat(req.query.num1);
  const b = parseFloat(req.query.num2);
  if (isNaN(a) || isNaN(b)) {
    return res.status(400).json({ success: false, error: 'num1 and num2 must be numbers' });
  }
  res.json({ success: true, resultado: a + b });
});

app.listen(process.env.PORT || 3000);
"""

ADMIN = {"Authorization": "Bearer admin-token"}
ORG = {"Authorization": "Bearer org-token"}
USER = {"Authorization": "Bearer user-token"}


class FakeRuntime:
    """In-memory ContainerRuntime with failure injection."""

    def __init__(self):
        self.lock = threading.Lock()
        self.images: set[str] = set()
        self.containers: dict[str, dict] = {}
        self.networks: dict[str, bool] = {}
        self.calls: list[tuple] = []
        self.build_error: str | None = None
        self.build_delay_s = 0.0
        self.start_delay_s = 0.0
        self.failing: set[str] = set()
        self.unreachable = False

    def _record(self, *call) -> None:
        with self.lock:
            self.calls.append(call)

    def called(self, op: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == op]

    def _get(self, container_id: str) -> dict:
        for cid, c in self.containers.items():
            if cid == container_id or cid.startswith(container_id):
                return c
        raise ContainerNotFound(f"No such container: {container_id}", 404)

    def _maybe_fail(self, op: str) -> None:
        if op in self.failing:
            raise RuntimeOperationError(f"{op} failed", 500)

    def ensure_network(self, name: str, internal: bool = False) -> None:
        self._record("ensure_network", name, internal)
        self.networks[name] = internal

    def build_image(self, context_dir: str, tag: str) -> None:
        self._record("build_image", context_dir, tag)
        if self.build_delay_s:
            time.sleep(self.build_delay_s)
        if self.build_error:
            raise RuntimeOperationError(self.build_error)
        for f in ("Dockerfile", "package.json", "index.js"):
            if not os.path.exists(os.path.join(context_dir, f)):
                raise RuntimeOperationError(f"missing {f} in build context")
        self.images.add(tag)

    def create_container(self, spec: ContainerSpec) -> ContainerRef:
        self._record("create_container", spec)
        self._maybe_fail("create")
        if spec.image not in self.images:
            raise RuntimeOperationError(f"No such image: {spec.image}", 404)
        if any(c["name"] == spec.name for c in self.containers.values()):
            raise RuntimeOperationError(f"Conflict: name {spec.name} in use", 409)
        cid = uuid.uuid4().hex + uuid.uuid4().hex
        self.containers[cid] = {"id": cid, "name": spec.name, "state": "created", "spec": spec}
        return ContainerRef(id=cid, name=spec.name)

    def start_container(self, container_id: str) -> None:
        self._record("start_container", container_id)
        if self.start_delay_s:
            time.sleep(self.start_delay_s)
        self._maybe_fail("start")
        c = self._get(container_id)
        if c["state"] == "running":
            raise ContainerAlreadyRunning("container already started", 304)
        c["state"] = "running"

    def stop_container(self, container_id: str) -> None:
        self._record("stop_container", container_id)
        self._maybe_fail("stop")
        self._get(container_id)["state"] = "exited"

    def restart_container(self, container_id: str) -> None:
        self._record("restart_container", container_id)
        self._maybe_fail("restart")
        self._get(container_id)["state"] = "running"

    def remove_container(self, container_id: str, force: bool = False) -> None:
        self._record("remove_container", container_id, force)
        self._maybe_fail("remove")
        c = self._get(container_id)
        del self.containers[c["id"]]

    def remove_image(self, tag: str) -> None:
        self._record("remove_image", tag)
        if tag not in self.images:
            raise RuntimeOperationError(f"image {tag} not found", 404)
        self.images.discard(tag)

    def list_containers(self) -> list[ContainerInfo]:
        self._record("list_containers")
        if self.unreachable:
            raise RuntimeOperationError("Cannot connect to the Docker daemon")
        return [ContainerInfo(id=c["id"], name=c["name"], state=c["state"]) for c in self.containers.values()]

    def inspect_container(self, container_id: str) -> ContainerInfo:
        c = self._get(container_id)
        return ContainerInfo(id=c["id"], name=c["name"], state=c["state"])

    def vanish(self, container_id: str) -> None:
        """Remove a container behind the manager's back."""
        del self.containers[self._get(container_id)["id"]]


class FakeIdentity:
    USERS = {
        "admin-token": TokenVerification(valid=True, user={"email": "root@example.com", "role": "admin"}, role="admin"),
        "org-token": TokenVerification(valid=True, user={"email": "ana@uninorte.edu.co", "role": "user"}, role="user"),
        "user-token": TokenVerification(valid=True, user={"email": "bob@example.com", "role": "user"}, role="user"),
    }

    async def login(self, email: str, password: str) -> str:
        for token, v in self.USERS.items():
            if v.email == email and password == "secret":
                return token
        raise AuthenticationError("Invalid credentials")

    async def verify_token(self, token: str) -> TokenVerification:
        return self.USERS.get(token, TokenVerification(valid=False))


class Upstream:
    """Stands in for every managed container behind the gateway."""

    def __init__(self):
        self.seen: list[httpx.Request] = []
        self.down: set[str] = set()
        self.slow: set[str] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.seen.append(request)
        if request.url.host in self.down:
            raise httpx.ConnectError("Connection refused", request=request)
        if request.url.host in self.slow:
            raise httpx.ReadTimeout("timed out", request=request)

        path = request.url.path
        if path == "/api/suma":
            if request.method == "GET":
                a, b = request.url.params.get("num1"), request.url.params.get("num2")
            else:
                body = json.loads(request.content or b"{}")
                a, b = body.get("num1"), body.get("num2")
            try:
                total = float(a) + float(b)
            except (TypeError, ValueError):
                return httpx.Response(400, json={"success": False, "error": "num1 and num2 must be numbers"})
            return httpx.Response(200, json={"success": True, "resultado": total})
        if path == "/echo" or path == "/":
            return httpx.Response(
                200,
                json={
                    "host": request.url.host,
                    "port": request.url.port,
                    "method": request.method,
                    "path": path,
                    "query": request.url.query.decode(),
                    "body": request.content.decode("utf-8"),
                },
                headers={"x-upstream": request.url.host},
            )
        return httpx.Response(404, json={"success": False, "error": "not found"})


@pytest.fixture
def settings(tmp_path) -> Settings:
    return replace(
        Settings(),
        data_path=str(tmp_path / "data" / "microservices.json"),
        events_db_path=str(tmp_path / "data" / "events.db"),
        build_root=str(tmp_path / "temp"),
        docker_network="microservices-network",
        restart_policy="always",
        internal_port=3000,
        default_base_image="node:18-alpine",
        public_base_url="http://localhost:4000",
        gateway_self_url="http://gateway.test",
        auth_enabled=True,
        admin_email_domain="@uninorte.edu.co",
        build_timeout_s=5.0,
        start_timeout_s=5.0,
        stop_timeout_s=5.0,
        restart_timeout_s=5.0,
        gateway_timeout_s=5.0,
        relay_timeout_s=5.0,
    )


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def events(settings) -> EventLog:
    log = EventLog(settings)
    log.init()
    return log


@pytest.fixture
def proxy(events, settings) -> ProxyRegistry:
    return ProxyRegistry(events, settings)


@pytest.fixture
def store(settings) -> ServiceStore:
    return ServiceStore(settings)


@pytest.fixture
def registry(store, proxy, events, settings) -> ServiceRegistry:
    return ServiceRegistry(store, proxy, events, settings)


@pytest.fixture
def pipeline(runtime, events, settings):
    p = BuildPipeline(runtime, events, settings)
    yield p
    p.shutdown()


@pytest.fixture
def controller(runtime, events, settings) -> ContainerLifecycleController:
    return ContainerLifecycleController(runtime, events, settings)


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
def app(settings, runtime, upstream):
    application = create_app(
        settings=settings,
        runtime=runtime,
        identity=FakeIdentity(),
        gateway_transport=httpx.MockTransport(upstream),
    )
    # The relay goes through this same app's gateway routes.
    application.state.tester.transport = httpx.ASGITransport(app=application)
    return application


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
