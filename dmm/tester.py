from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from .gateway import route_prefix
from .models import Service
from .settings import Settings, settings as default_settings


BODY_METHODS = {"POST", "PUT", "PATCH"}


@dataclass(frozen=True)
class RelayResult:
    status: int
    headers: dict[str, str]
    data: Any


class EndpointTester:
    """Replays an ad-hoc request through the gateway's external route.

    Any HTTP status is a result, not an error; only transport failures raise
    (httpx.HTTPError).
    """

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or default_settings
        self.transport = transport

    def url_for(self, service: Service, endpoint: str) -> str:
        endpoint = endpoint or "/"
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return f"{self.settings.gateway_self_url.rstrip('/')}{route_prefix(service.service_name)}{endpoint}"

    async def run(
        self,
        service: Service,
        endpoint: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: Any = None,
    ) -> RelayResult:
        method = (method or "GET").upper()
        kwargs: dict[str, Any] = {"headers": headers or {}}
        if body is not None and method in BODY_METHODS:
            kwargs["json"] = body

        async with httpx.AsyncClient(
            transport=self.transport,
            timeout=self.settings.relay_timeout_s,
            follow_redirects=False,
        ) as client:
            resp = await client.request(method, self.url_for(service, endpoint), **kwargs)

        try:
            data: Any = resp.json()
        except ValueError:
            data = resp.text
        return RelayResult(status=resp.status_code, headers=dict(resp.headers), data=data)
