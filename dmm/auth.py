from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from fastapi import Depends, Request

from .errors import AuthenticationError, CollaboratorError, PermissionDenied
from .settings import Settings, settings as default_settings


ELEVATED_ACTIONS = {"create", "delete"}


@dataclass(frozen=True)
class TokenVerification:
    valid: bool
    user: dict[str, Any] = field(default_factory=dict)
    role: str = "user"

    @property
    def email(self) -> str:
        return str(self.user.get("email") or "")


ANONYMOUS_ADMIN = TokenVerification(valid=True, user={"email": "anonymous"}, role="admin")


class IdentityProvider(Protocol):
    async def login(self, email: str, password: str) -> str: ...

    async def verify_token(self, token: str) -> TokenVerification: ...


class RobleIdentityProvider:
    """Identity collaborator reached over HTTP.

    Endpoints:
      - POST {base}/auth/{project}/login          -> {"accessToken": ...}
      - GET  {base}/auth/{project}/verify-token   (Bearer token, 200 == valid)
    """

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or default_settings
        self.transport = transport
        self._client: httpx.AsyncClient | None = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.settings.auth_base_url.rstrip('/')}/auth/{self.settings.auth_project_id}",
                transport=self.transport,
                timeout=self.settings.auth_timeout_s,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def login(self, email: str, password: str) -> str:
        try:
            resp = await self._http().post("/login", json={"email": email, "password": password})
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Identity service unreachable: {e}") from e
        if resp.status_code not in (200, 201):
            raise AuthenticationError(_error_message(resp, "Login failed"))
        data = resp.json()
        token = data.get("accessToken") or data.get("token")
        if not token:
            raise AuthenticationError("Login failed")
        return str(token)

    async def verify_token(self, token: str) -> TokenVerification:
        try:
            resp = await self._http().get("/verify-token", headers={"Authorization": f"Bearer {token}"})
        except httpx.HTTPError as e:
            raise CollaboratorError(f"Identity service unreachable: {e}") from e
        if resp.status_code != 200:
            return TokenVerification(valid=False)
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        user = data.get("user") if isinstance(data.get("user"), dict) else data
        return TokenVerification(valid=True, user=dict(user or {}), role=str((user or {}).get("role") or "user"))


def _error_message(resp: httpx.Response, default: str) -> str:
    try:
        return str(resp.json().get("message") or default)
    except (ValueError, AttributeError):
        return default


def check_permission(verification: TokenVerification, action: str, admin_email_domain: str) -> bool:
    """create/delete need an admin role or an organizational email; the rest a valid token."""
    if not verification.valid:
        return False
    if action in ELEVATED_ACTIONS:
        return verification.role == "admin" or admin_email_domain in verification.email
    return True


def bearer_token(request: Request) -> str:
    header = request.headers.get("authorization") or ""
    if not header.startswith("Bearer "):
        raise AuthenticationError("Authentication required")
    token = header.split(" ", 1)[1].strip()
    if not token:
        raise AuthenticationError("Authentication required")
    return token


def require(action: str):
    """FastAPI dependency enforcing `action` against the identity provider."""

    async def dependency(request: Request) -> TokenVerification:
        app_settings: Settings = request.app.state.settings
        if not app_settings.auth_enabled:
            return ANONYMOUS_ADMIN
        token = bearer_token(request)
        identity: IdentityProvider = request.app.state.identity
        verification = await identity.verify_token(token)
        if not verification.valid:
            raise AuthenticationError("Invalid or expired token")
        if not check_permission(verification, action, app_settings.admin_email_domain):
            raise PermissionDenied("Admin privileges required")
        return verification

    return Depends(dependency)
