from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


COLLABORATOR_BASE_URL = "https://roble-api.openlab.uninorte.edu.co"
COLLABORATOR_PROJECT_ID = "pc2_3e6afe53f1"


@dataclass(frozen=True)
class Settings:
    # Storage
    data_path: str = os.getenv("DMM_DATA_PATH", "data/microservices.json")
    events_db_path: str = os.getenv("DMM_EVENTS_DB_PATH", "data/events.db")
    build_root: str = os.getenv("DMM_BUILD_ROOT", "temp")

    # Container runtime
    docker_network: str = os.getenv("DMM_DOCKER_NETWORK", "microservices-network")
    # An internal docker network also cuts egress, which services calling the
    # collaborator API need, so isolation defaults to "no published ports".
    docker_network_internal: bool = _env_bool("DMM_DOCKER_NETWORK_INTERNAL", False)
    restart_policy: str = os.getenv("DMM_RESTART_POLICY", "always")
    internal_port: int = _env_int("DMM_INTERNAL_PORT", 3000)
    default_base_image: str = os.getenv("DMM_DEFAULT_BASE_IMAGE", "node:18-alpine")
    build_workers: int = _env_int("DMM_BUILD_WORKERS", 2)

    # Gateway
    host: str = os.getenv("DMM_HOST", "0.0.0.0")
    port: int = _env_int("DMM_PORT", 4000)
    public_base_url: str = os.getenv("DMM_PUBLIC_BASE_URL", "http://localhost:4000")
    gateway_self_url: str = os.getenv("DMM_GATEWAY_SELF_URL", "http://localhost:4000")

    # Timeouts (seconds)
    build_timeout_s: float = _env_float("DMM_BUILD_TIMEOUT_S", 600.0)
    start_timeout_s: float = _env_float("DMM_START_TIMEOUT_S", 60.0)
    stop_timeout_s: float = _env_float("DMM_STOP_TIMEOUT_S", 30.0)
    restart_timeout_s: float = _env_float("DMM_RESTART_TIMEOUT_S", 60.0)
    gateway_timeout_s: float = _env_float("DMM_GATEWAY_TIMEOUT_S", 30.0)
    relay_timeout_s: float = _env_float("DMM_RELAY_TIMEOUT_S", 30.0)

    # Identity collaborator
    auth_enabled: bool = _env_bool("DMM_AUTH_ENABLED", True)
    auth_base_url: str = os.getenv("DMM_AUTH_BASE_URL", COLLABORATOR_BASE_URL)
    auth_project_id: str = os.getenv("DMM_AUTH_PROJECT_ID", COLLABORATOR_PROJECT_ID)
    auth_timeout_s: float = _env_float("DMM_AUTH_TIMEOUT_S", 10.0)
    admin_email_domain: str = os.getenv("DMM_ADMIN_EMAIL_DOMAIN", "@uninorte.edu.co")

    # Defaults injected into every managed container
    collaborator_base_url: str = os.getenv("DMM_COLLABORATOR_BASE_URL", COLLABORATOR_BASE_URL)
    collaborator_project_id: str = os.getenv("DMM_COLLABORATOR_PROJECT_ID", COLLABORATOR_PROJECT_ID)


settings = Settings()
