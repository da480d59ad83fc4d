"""Health probe response schema."""

from __future__ import annotations

from pydantic import Field
from sqlmodel import SQLModel


class HealthStatusResponse(SQLModel):
    """Payload for liveness and readiness checks."""

    ok: bool = Field(description="Whether the probe succeeded.", examples=[True])
