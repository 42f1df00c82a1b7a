import asyncio
import os
from dataclasses import replace
from types import SimpleNamespace

import pytest
import requests

from dmm.docker_ops import ContainerInfo, DockerRuntime, RuntimeOperationError, status_from_state
from dmm.errors import LifecycleError, OperationTimeout
from dmm.lifecycle import ContainerLifecycleController, match_container
from dmm.models import Service


def _service(**kw) -> Service:
    base = dict(id="0f3c9a1e-7b2d-4c55-9a10-123456789abc", name="Suma", service_name="suma-0f3c9a1e", container_name="ms-suma-0f3c9a1e")
    base.update(kw)
    return Service(**base)


def test_env_defaults_then_user_overrides(controller, settings):
    svc = _service(env={"ROBLE_PROJECT_ID": "custom_project", "API_KEY": "k"})
    env = controller.container_env(svc)
    assert env["SERVICE_NAME"] == "Suma"
    assert env["ROBLE_BASE_URL"] == settings.collaborator_base_url
    # A user key replaces the default with the same name.
    assert env["ROBLE_PROJECT_ID"] == "custom_project"
    assert env["API_KEY"] == "k"


def test_start_creates_isolated_container(controller, runtime):
    runtime.images.add("ms-suma-0f3c9a1e")
    svc = _service(env={"SERVICE_NAME": "override"})

    asyncio.run(controller.start(svc))

    assert svc.status == "running"
    assert svc.container_id in runtime.containers
    (call,) = runtime.called("create_container")
    spec = call[1]
    assert spec.image == "ms-suma-0f3c9a1e"
    assert spec.name == "ms-suma-0f3c9a1e"
    assert spec.network == "microservices-network"
    assert spec.restart_policy == "always"
    assert spec.env["SERVICE_NAME"] == "override"
    assert spec.labels == {"dmm.service": "suma-0f3c9a1e", "dmm.id": svc.id}


def test_start_already_running_is_success(controller, runtime):
    runtime.images.add("ms-suma-0f3c9a1e")
    svc = _service()
    asyncio.run(controller.start(svc))
    first_id = svc.container_id

    svc.status = "exited"
    asyncio.run(controller.start(svc))

    assert svc.status == "running"
    assert svc.container_id == first_id
    assert len(runtime.called("create_container")) == 1


def test_start_recreates_container_removed_out_of_band(controller, runtime):
    runtime.images.add("ms-suma-0f3c9a1e")
    svc = _service()
    asyncio.run(controller.start(svc))
    old_id = svc.container_id
    runtime.vanish(old_id)

    asyncio.run(controller.start(svc))

    assert svc.container_id != old_id
    assert svc.status == "running"


def test_start_without_image_fails(controller):
    with pytest.raises(LifecycleError, match="No such image"):
        asyncio.run(controller.start(_service()))


def test_stop_and_restart(controller, runtime):
    runtime.images.add("ms-suma-0f3c9a1e")
    svc = _service()
    asyncio.run(controller.start(svc))

    asyncio.run(controller.stop(svc))
    assert svc.status == "exited"
    assert runtime.containers[svc.container_id]["state"] == "exited"

    asyncio.run(controller.restart(svc))
    assert svc.status == "running"


def test_stop_failure_is_surfaced(controller, runtime):
    runtime.images.add("ms-suma-0f3c9a1e")
    svc = _service()
    asyncio.run(controller.start(svc))
    runtime.failing.add("stop")

    with pytest.raises(LifecycleError, match="stop failed"):
        asyncio.run(controller.stop(svc))
    assert svc.status == "running"


def test_start_timeout_leaves_error_status(runtime, events, settings):
    runtime.images.add("ms-suma-0f3c9a1e")
    runtime.start_delay_s = 0.5
    controller = ContainerLifecycleController(runtime, events, replace(settings, start_timeout_s=0.05))
    svc = _service()

    with pytest.raises(OperationTimeout):
        asyncio.run(controller.start(svc))
    assert svc.status == "error"


def test_remove_is_best_effort(controller, runtime, settings):
    runtime.images.add("ms-suma-0f3c9a1e")
    svc = _service()
    asyncio.run(controller.start(svc))
    context = os.path.join(settings.build_root, svc.container_name)
    os.makedirs(context)

    runtime.failing.add("stop")
    failures = asyncio.run(controller.remove(svc))

    assert any(f.startswith("stop container") for f in failures)
    assert not runtime.containers
    assert "ms-suma-0f3c9a1e" not in runtime.images
    assert not os.path.exists(context)


def test_remove_when_container_already_gone(controller, runtime):
    svc = _service(container_id="deadbeef" * 8)

    failures = asyncio.run(controller.remove(svc))

    assert [f.split(":")[0] for f in failures] == ["stop container", "remove container", "remove image"]


def test_match_container_accepts_short_and_long_ids():
    long_id = "a1b2c3d4e5f6" + "0" * 52
    containers = [ContainerInfo(id=long_id, name="ms-x", state="running")]

    assert match_container(_service(container_id=long_id), containers).id == long_id
    assert match_container(_service(container_id="a1b2c3d4e5f6"), containers).id == long_id
    short = [ContainerInfo(id="a1b2c3d4e5f6", name="ms-x", state="running")]
    assert match_container(_service(container_id=long_id), short).id == "a1b2c3d4e5f6"
    assert match_container(_service(container_id="ffff"), containers) is None


def test_runtime_states_map_to_statuses():
    assert status_from_state("running") == "running"
    assert status_from_state("created") == "pending"
    assert status_from_state("exited") == "exited"
    assert status_from_state("dead") == "exited"
    assert status_from_state("weird") == "error"


def _daemon_gone(*args, **kwargs):
    raise requests.exceptions.ConnectionError("daemon gone")


def test_docker_transport_errors_become_runtime_errors():
    client = SimpleNamespace(
        containers=SimpleNamespace(get=_daemon_gone, list=_daemon_gone),
        images=SimpleNamespace(remove=_daemon_gone),
    )
    rt = DockerRuntime(client=client)

    with pytest.raises(RuntimeOperationError, match="daemon gone"):
        rt.stop_container("abc")
    with pytest.raises(RuntimeOperationError, match="daemon gone"):
        rt.remove_image("ms-x")
    with pytest.raises(RuntimeOperationError, match="daemon gone"):
        rt.list_containers()


def test_remove_survives_daemon_dropping_the_connection(events, settings):
    client = SimpleNamespace(
        containers=SimpleNamespace(get=_daemon_gone),
        images=SimpleNamespace(remove=_daemon_gone),
    )
    controller = ContainerLifecycleController(DockerRuntime(client=client), events, settings)
    svc = _service(container_id="deadbeef" * 8)

    failures = asyncio.run(controller.remove(svc))

    assert [f.split(":")[0] for f in failures] == ["stop container", "remove container", "remove image"]
    assert all("daemon gone" in f for f in failures)


def test_remove_records_unexpected_errors(controller, runtime):
    def broken(tag):
        raise KeyError(tag)

    runtime.remove_image = broken

    failures = asyncio.run(controller.remove(_service()))

    assert failures == ["remove image: KeyError: 'ms-suma-0f3c9a1e'"]
