from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from threading import Lock

import httpx
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .db import EventLog
from .docker_ops import container_http_base
from .settings import Settings, settings as default_settings


logger = logging.getLogger("dmm.gateway")

ROUTE_PREFIX = "/services"

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}
_REQUEST_SKIP = HOP_BY_HOP_HEADERS | {"host", "content-length"}
# httpx hands back a decoded body, so encoding and length are recomputed.
_RESPONSE_SKIP = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}


@dataclass(frozen=True)
class ProxyRoute:
    service_name: str
    container_name: str
    target: str


def route_prefix(service_name: str) -> str:
    return f"{ROUTE_PREFIX}/{service_name}"


class ProxyRegistry:
    """Live path -> upstream table consulted on every gateway request.

    Nothing is mounted per service, so unregistering takes effect on the very
    next request.
    """

    def __init__(self, events: EventLog, settings: Settings | None = None):
        self.events = events
        self.settings = settings or default_settings
        self.lock = Lock()
        self._routes: dict[str, ProxyRoute] = {}

    def register(self, service_name: str, container_name: str) -> ProxyRoute:
        route = ProxyRoute(
            service_name=service_name,
            container_name=container_name,
            target=container_http_base(container_name, self.settings.internal_port),
        )
        with self.lock:
            replaced = self._routes.pop(service_name, None)
            self._routes[service_name] = route
        if replaced is not None:
            self.events.log("INFO", f"Proxy replaced: {route_prefix(service_name)}", service_name=service_name)
        self.events.log("INFO", f"Proxy registered: {route_prefix(service_name)} -> {route.target}", service_name=service_name)
        return route

    def unregister(self, service_name: str) -> bool:
        with self.lock:
            removed = self._routes.pop(service_name, None)
        if removed is not None:
            self.events.log("INFO", f"Proxy unregistered: {route_prefix(service_name)}", service_name=service_name)
        return removed is not None

    def lookup(self, service_name: str) -> ProxyRoute | None:
        with self.lock:
            return self._routes.get(service_name)

    def routes(self) -> list[ProxyRoute]:
        with self.lock:
            return list(self._routes.values())

    def public_url(self, service_name: str) -> str:
        return f"{self.settings.public_base_url.rstrip('/')}{route_prefix(service_name)}"


def _is_json(content_type: str | None) -> bool:
    if not content_type:
        return False
    media = content_type.split(";", 1)[0].strip().lower()
    return media == "application/json" or media.endswith("+json")


def reencode_json_body(content_type: str | None, body: bytes) -> bytes:
    """Re-serialize a JSON body; anything that does not parse is relayed as-is."""
    if not body or not _is_json(content_type):
        return body
    try:
        payload = json.loads(body)
    except ValueError:
        return body
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def upstream_headers(headers: list[tuple[str, str]], body: bytes) -> list[tuple[str, str]]:
    out = [(k, v) for k, v in headers if k.lower() not in _REQUEST_SKIP]
    if body:
        out.append(("content-length", str(len(body))))
    return out


def _error_response(status_code: int, error: str, service_name: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "service": service_name},
    )


class GatewayRouter:
    def __init__(
        self,
        proxy: ProxyRegistry,
        events: EventLog,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.proxy = proxy
        self.events = events
        self.settings = settings or default_settings
        self.transport = transport
        self._client: httpx.AsyncClient | None = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self.transport,
                timeout=httpx.Timeout(self.settings.gateway_timeout_s),
                follow_redirects=False,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def forward(self, request: Request, service_name: str, path: str = "") -> Response:
        """Relay one request to the service's container and answer exactly once.

        The upstream response is read completely before anything is sent back,
        so a failure at any point still yields a single error response.
        """
        route = self.proxy.lookup(service_name)
        if route is None:
            return _error_response(404, "Service not found", service_name)

        upstream_path = "/" + path.lstrip("/")
        url = f"{route.target}{upstream_path}"
        if request.url.query:
            url = f"{url}?{request.url.query}"

        raw_body = await request.body()
        body = reencode_json_body(request.headers.get("content-type"), raw_body)
        headers = upstream_headers(request.headers.items(), body)

        logger.debug("proxy %s %s -> %s", request.method, request.url.path, url)
        try:
            upstream = await self._http().request(request.method, url, headers=headers, content=body)
        except httpx.TimeoutException as e:
            self.events.log("WARN", f"Upstream timeout for {request.method} {upstream_path}: {e!r}", service_name=service_name)
            return _error_response(504, "Service unavailable", service_name)
        except httpx.HTTPError as e:
            self.events.log("WARN", f"Upstream error for {request.method} {upstream_path}: {e!r}", service_name=service_name)
            return _error_response(503, "Service unavailable", service_name)

        response = Response(content=upstream.content, status_code=upstream.status_code)
        for key, value in upstream.headers.multi_items():
            if key.lower() not in _RESPONSE_SKIP:
                response.headers.append(key, value)
        return response
