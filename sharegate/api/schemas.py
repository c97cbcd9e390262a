from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


class ErrorBody(BaseModel):
    message: str
    code: Optional[str] = None


class SuccessEnvelope(BaseModel):
    """HTTP body for a successful handler call."""

    success: Literal[True] = True
    result: Any = None


class ErrorEnvelope(BaseModel):
    """HTTP body for any failed request."""

    success: Literal[False] = False
    message: str
    error: ErrorBody


class WsSuccessFrame(SuccessEnvelope):
    command: str
    status_code: int = Field(200, serialization_alias="statusCode")


class WsErrorFrame(ErrorEnvelope):
    command: str
    status_code: int = Field(..., serialization_alias="statusCode")


class HealthResponse(BaseModel):
    status: Literal["healthy", "unhealthy"]
    version: str
    build: str
    checks: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    live_connections: int = 0


def dump_wire(model: BaseModel) -> Dict[str, Any]:
    """Serialize with wire aliases, dropping an absent error code."""
    data = model.model_dump(by_alias=True)
    error = data.get("error")
    if isinstance(error, dict) and error.get("code") is None:
        error.pop("code", None)
    return data
