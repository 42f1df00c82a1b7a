from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from . import __version__
from .api_models import CreateServiceRequest, EndpointTestRequest, LoginRequest, UpdateServiceRequest
from .auth import IdentityProvider, RobleIdentityProvider, TokenVerification, bearer_token, require
from .build import BuildPipeline
from .db import EventLog
from .docker_ops import ContainerRuntime, DockerRuntime, RuntimeOperationError
from .errors import AuthenticationError, DmmError
from .gateway import GatewayRouter, ProxyRegistry
from .lifecycle import ContainerLifecycleController
from .manager import ServiceManager
from .registry import ServiceRegistry
from .settings import Settings, settings as default_settings
from .store import ServiceStore
from .tester import EndpointTester


GATEWAY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]

api = APIRouter(prefix="/api")
gateway = APIRouter()


def _manager(request: Request) -> ServiceManager:
    return request.app.state.manager


def _who(verification: TokenVerification) -> str | None:
    return verification.email or verification.user.get("id") or None


# --- AUTH ---
@api.post("/auth/login")
async def login(req: LoginRequest, request: Request) -> dict:
    identity: IdentityProvider = request.app.state.identity
    token = await identity.login(req.email, req.password)
    return {"success": True, "token": token}


@api.get("/auth/verify")
async def verify(request: Request) -> dict:
    identity: IdentityProvider = request.app.state.identity
    verification = await identity.verify_token(bearer_token(request))
    if not verification.valid:
        raise AuthenticationError("Invalid or expired token")
    return {"success": True, "valid": True, "user": verification.user, "role": verification.role}


# --- MICROSERVICES ---
@api.get("/microservices")
async def list_microservices(request: Request, _: TokenVerification = require("read")) -> dict:
    services = await _manager(request).list_services()
    return {"success": True, "microservices": [s.to_dict() for s in services]}


@api.get("/microservices/{service_id}")
async def get_microservice(service_id: str, request: Request, _: TokenVerification = require("read")) -> dict:
    return {"success": True, "microservice": _manager(request).get(service_id).to_dict()}


@api.post("/microservices")
async def create_microservice(
    req: CreateServiceRequest, request: Request, who: TokenVerification = require("create")
) -> dict:
    service = await _manager(request).create(req.model_dump(), user=_who(who))
    return {
        "success": True,
        "message": "Microservice created and deployed",
        "microservice": service.to_dict(),
    }


@api.put("/microservices/{service_id}")
async def update_microservice(
    service_id: str, req: UpdateServiceRequest, request: Request, who: TokenVerification = require("update")
) -> dict:
    service = await _manager(request).update(
        service_id, name=req.name, description=req.description, env=req.env, user=_who(who)
    )
    return {"success": True, "message": "Microservice updated", "microservice": service.to_dict()}


@api.delete("/microservices/{service_id}")
async def delete_microservice(service_id: str, request: Request, _: TokenVerification = require("delete")) -> dict:
    failures = await _manager(request).delete(service_id)
    return {"success": True, "message": "Microservice deleted", "warnings": failures}


@api.post("/microservices/{service_id}/test")
async def relay_test_request(
    service_id: str, req: EndpointTestRequest, request: Request, _: TokenVerification = require("read")
) -> JSONResponse:
    try:
        result = await _manager(request).test_endpoint(
            service_id, req.endpoint, method=req.method, headers=req.headers, body=req.body
        )
    except httpx.HTTPError as e:
        return JSONResponse(status_code=500, content={"success": False, "error": f"{type(e).__name__}: {e}"})
    return JSONResponse(
        content={"success": True, "status": result.status, "headers": result.headers, "data": result.data}
    )


@api.post("/microservices/{service_id}/{action}")
async def act_on_microservice(
    service_id: str, action: str, request: Request, _: TokenVerification = require("manage")
) -> dict:
    service = await _manager(request).action(service_id, action)
    return {"success": True, "message": f"Microservice {action} succeeded", "microservice": service.to_dict()}


@api.get("/events")
def events(request: Request, limit: int = Query(100, ge=1, le=1000), _: TokenVerification = require("read")) -> dict:
    return {"success": True, "events": request.app.state.events.latest(limit=limit)}


# --- GATEWAY ---
@gateway.api_route("/services/{service_name}", methods=GATEWAY_METHODS, include_in_schema=False)
async def proxy_root(service_name: str, request: Request) -> Response:
    return await request.app.state.gateway.forward(request, service_name, "")


@gateway.api_route("/services/{service_name}/{path:path}", methods=GATEWAY_METHODS, include_in_schema=False)
async def proxy_path(service_name: str, path: str, request: Request) -> Response:
    return await request.app.state.gateway.forward(request, service_name, path)


async def _dmm_error(request: Request, exc: DmmError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})


async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request", "detail": jsonable_encoder(exc.errors())},
    )


def create_app(
    settings: Settings | None = None,
    runtime: ContainerRuntime | None = None,
    identity: IdentityProvider | None = None,
    gateway_transport: httpx.AsyncBaseTransport | None = None,
    relay_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or default_settings
    events_log = EventLog(settings)
    runtime = runtime or DockerRuntime()
    identity = identity or RobleIdentityProvider(settings)

    proxy = ProxyRegistry(events_log, settings)
    registry = ServiceRegistry(ServiceStore(settings), proxy, events_log, settings)
    pipeline = BuildPipeline(runtime, events_log, settings)
    controller = ContainerLifecycleController(runtime, events_log, settings)
    router = GatewayRouter(proxy, events_log, settings, transport=gateway_transport)
    tester = EndpointTester(settings, transport=relay_transport)
    manager = ServiceManager(registry, pipeline, controller, proxy, tester, events_log)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        events_log.init()
        await registry.load()
        try:
            await controller.ensure_network()
        except (RuntimeOperationError, asyncio.TimeoutError) as e:
            events_log.log("WARN", f"Could not ensure docker network '{settings.docker_network}': {e!r}")
        events_log.log("INFO", f"Manager started; {len(registry.all())} services registered")
        yield
        await router.aclose()
        aclose = getattr(identity, "aclose", None)
        if aclose is not None:
            await aclose()
        pipeline.shutdown()

    app = FastAPI(title="Dynamic Microservice Manager", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.events = events_log
    app.state.identity = identity
    app.state.proxy = proxy
    app.state.registry = registry
    app.state.gateway = router
    app.state.tester = tester
    app.state.manager = manager

    app.add_exception_handler(DmmError, _dmm_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "OK",
            "service": "Dynamic Microservice Manager",
            "microservicesCount": len(registry.all()),
        }

    app.include_router(api)
    app.include_router(gateway)
    return app
