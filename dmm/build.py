from __future__ import annotations

import asyncio
import json
import os
import uuid
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from .db import EventLog
from .docker_ops import ContainerRuntime, RuntimeOperationError
from .errors import BuildError, ValidationError
from .models import Endpoint, derive_container_name, derive_service_name
from .settings import Settings, settings as default_settings


# Only these resolve to pinned ranges; every other package is installed as
# "latest", so two builds of the same submission can differ.
KNOWN_PACKAGE_VERSIONS = {
    "express": "^4.18.2",
    "axios": "^1.6.0",
    "dotenv": "^16.0.0",
    "cors": "^2.8.5",
    "body-parser": "^1.20.2",
}

MANIFEST_FILE = "package.json"
SOURCE_FILE = "index.js"
RECIPE_FILE = "Dockerfile"


@dataclass(frozen=True)
class Submission:
    name: str
    code: str
    dependencies: list[str]
    base_image: str | None = None
    description: str = ""
    env: dict[str, str] = field(default_factory=dict)
    endpoints: list[Endpoint] = field(default_factory=list)


@dataclass(frozen=True)
class BuildResult:
    service_id: str
    service_name: str
    container_name: str
    image_tag: str
    base_image: str
    context_dir: str


def validate_submission(payload: Mapping[str, Any]) -> Submission:
    """Check a raw creation payload; raises ValidationError before any side effect."""
    name = payload.get("name")
    code = payload.get("code")
    dependencies = payload.get("dependencies")

    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name, code and dependencies are required")
    if not isinstance(code, str) or not code.strip():
        raise ValidationError("name, code and dependencies are required")
    if not isinstance(dependencies, list):
        raise ValidationError("dependencies must be a list of package names")
    if any(not isinstance(d, str) for d in dependencies):
        raise ValidationError("dependencies must be a list of package names")

    env = payload.get("env") or {}
    if not isinstance(env, Mapping):
        raise ValidationError("env must be an object of string values")

    base_image = payload.get("baseImage")
    if base_image is not None and (not isinstance(base_image, str) or not base_image.strip()):
        raise ValidationError("baseImage must be a non-empty string")

    raw_endpoints = payload.get("endpoints") or []
    if not isinstance(raw_endpoints, list) or any(not isinstance(e, Mapping) for e in raw_endpoints):
        raise ValidationError("endpoints must be a list of objects")

    return Submission(
        name=name.strip(),
        code=code,
        dependencies=[d.strip() for d in dependencies if d.strip()],
        base_image=base_image.strip() if base_image else None,
        description=str(payload.get("description") or ""),
        env={str(k): str(v) for k, v in env.items()},
        endpoints=[Endpoint.from_dict(dict(e)) for e in raw_endpoints],
    )


def render_manifest(package_name: str, dependencies: list[str]) -> dict[str, Any]:
    return {
        "name": package_name,
        "version": "1.0.0",
        "main": SOURCE_FILE,
        "scripts": {"start": f"node {SOURCE_FILE}"},
        "dependencies": {dep: KNOWN_PACKAGE_VERSIONS.get(dep, "latest") for dep in dependencies},
    }


def render_recipe(base_image: str, internal_port: int) -> str:
    return (
        f"FROM {base_image}\n"
        "WORKDIR /app\n"
        "COPY package*.json ./\n"
        "RUN npm install --production\n"
        "COPY . .\n"
        f"EXPOSE {int(internal_port)}\n"
        'CMD ["npm", "start"]\n'
    )


def build_context_dir(settings: Settings, container_name: str) -> str:
    return os.path.join(os.path.abspath(settings.build_root), container_name)


class BuildPipeline:
    """Turns a submission into a build context on disk and a built image.

    Image builds run on a small dedicated thread pool so a long build never
    blocks the event loop that forwards gateway traffic.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        events: EventLog,
        settings: Settings | None = None,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.runtime = runtime
        self.events = events
        self.settings = settings or default_settings
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max(1, self.settings.build_workers), thread_name_prefix="dmm-build"
        )

    def context_dir(self, container_name: str) -> str:
        return build_context_dir(self.settings, container_name)

    def write_context(self, context_dir: str, container_name: str, submission: Submission, base_image: str) -> None:
        os.makedirs(context_dir, exist_ok=True)
        manifest = render_manifest(container_name, submission.dependencies)
        with open(os.path.join(context_dir, MANIFEST_FILE), "w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2)
        with open(os.path.join(context_dir, SOURCE_FILE), "w", encoding="utf-8") as f:
            f.write(submission.code.strip())
        with open(os.path.join(context_dir, RECIPE_FILE), "w", encoding="utf-8") as f:
            f.write(render_recipe(base_image, self.settings.internal_port))

    async def build(self, submission: Submission, service_id: str | None = None) -> BuildResult:
        """Write the build context and build the image tagged with the container name.

        A failed or timed-out build raises BuildError; the scratch context is
        left on disk in that case.
        """
        service_id = service_id or str(uuid.uuid4())
        service_name = derive_service_name(submission.name, service_id)
        container_name = derive_container_name(service_name)
        base_image = submission.base_image or self.settings.default_base_image
        context_dir = self.context_dir(container_name)

        await asyncio.to_thread(self.write_context, context_dir, container_name, submission, base_image)

        self.events.log("INFO", f"Building image {container_name} from {base_image}", service_name=service_name)
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(self.executor, self.runtime.build_image, context_dir, container_name),
                timeout=self.settings.build_timeout_s,
            )
        except asyncio.TimeoutError as e:
            msg = f"Image build timed out after {self.settings.build_timeout_s:g}s"
            self.events.log("ERROR", msg, service_name=service_name)
            raise BuildError(msg) from e
        except RuntimeOperationError as e:
            self.events.log("ERROR", f"Image build failed: {e.message}", service_name=service_name)
            raise BuildError(f"Image build failed: {e.message}") from e

        self.events.log("INFO", f"Built image {container_name}", service_name=service_name)
        return BuildResult(
            service_id=service_id,
            service_name=service_name,
            container_name=container_name,
            image_tag=container_name,
            base_image=base_image,
            context_dir=context_dir,
        )

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)
