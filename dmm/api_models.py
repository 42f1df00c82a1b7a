from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class EndpointModel(BaseModel):
    method: str = Field("GET", description="HTTP method")
    path: str = Field("/", description="Path inside the service")
    description: str = ""
    requiresAuth: bool = False


class CreateServiceRequest(BaseModel):
    # Presence and shape of name/code/dependencies are checked by the build
    # pipeline so the error is the same for every caller.
    name: Any = Field(None, description="Display name")
    code: Any = Field(None, description="Single-file service source")
    dependencies: Any = Field(None, description="Package names to install")
    baseImage: str | None = Field(None, description="Base image, defaults to the configured node image")
    description: str | None = None
    env: dict[str, Any] | None = Field(None, description="Extra container environment; overrides defaults")
    endpoints: list[EndpointModel] | None = Field(None, description="Informational endpoint catalogue")


class UpdateServiceRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    env: dict[str, Any] | None = Field(None, description="Shallow-merged into the stored env")


class EndpointTestRequest(BaseModel):
    endpoint: str = Field("/", description="Path inside the service, e.g. /api/suma")
    method: str = "GET"
    headers: dict[str, str] | None = None
    body: Any = None


class LoginRequest(BaseModel):
    email: str
    password: str
