from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


STATUS_RUNNING = "running"
STATUS_EXITED = "exited"
STATUS_STOPPED = "stopped"
STATUS_PENDING = "pending"
STATUS_ERROR = "error"

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_SLUG_MAX = 40


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def slugify(name: str) -> str:
    slug = _SLUG_RE.sub("-", name.strip().lower()).strip("-")
    return slug[:_SLUG_MAX].rstrip("-") or "service"


def derive_service_name(name: str, service_id: str) -> str:
    """URL-safe route/container slug: slugified name plus the id's first 8 chars."""
    return f"{slugify(name)}-{service_id[:8]}"


def derive_container_name(service_name: str) -> str:
    return f"ms-{service_name}"


@dataclass
class Endpoint:
    method: str
    path: str
    description: str = ""
    requires_auth: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "path": self.path,
            "description": self.description,
            "requiresAuth": self.requires_auth,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Endpoint":
        return cls(
            method=str(data.get("method", "GET")).upper(),
            path=str(data.get("path", "/")),
            description=str(data.get("description") or ""),
            requires_auth=bool(data.get("requiresAuth", False)),
        )


@dataclass
class Service:
    id: str
    name: str
    service_name: str
    container_name: str
    container_id: str | None = None
    status: str = STATUS_PENDING
    url: str | None = None
    description: str = ""
    endpoints: list[Endpoint] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    base_image: str = ""
    dependencies: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    created_by: str | None = None
    updated_at: str | None = None
    updated_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "serviceName": self.service_name,
            "containerName": self.container_name,
            "containerId": self.container_id,
            "status": self.status,
            "url": self.url,
            "description": self.description,
            "endpoints": [e.to_dict() for e in self.endpoints],
            "env": dict(self.env),
            "baseImage": self.base_image,
            "dependencies": list(self.dependencies),
            "createdAt": self.created_at,
            "createdBy": self.created_by,
            "updatedAt": self.updated_at,
            "updatedBy": self.updated_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Service":
        return cls(
            id=data["id"],
            name=data["name"],
            service_name=data["serviceName"],
            container_name=data["containerName"],
            container_id=data.get("containerId"),
            status=data.get("status") or STATUS_PENDING,
            url=data.get("url"),
            description=data.get("description") or "",
            endpoints=[Endpoint.from_dict(e) for e in data.get("endpoints") or []],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            base_image=data.get("baseImage") or "",
            dependencies=list(data.get("dependencies") or []),
            created_at=data.get("createdAt") or utc_now(),
            created_by=data.get("createdBy"),
            updated_at=data.get("updatedAt"),
            updated_by=data.get("updatedBy"),
        )
