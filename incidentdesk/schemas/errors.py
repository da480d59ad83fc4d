"""Structured error payload schema used by API responses."""

from __future__ import annotations

from pydantic import Field
from sqlmodel import SQLModel


class ErrorResponse(SQLModel):
    """Error envelope returned for every non-2xx response."""

    detail: str | dict[str, object] | list[object] = Field(
        description="Human-readable message, or validation error details.",
        examples=["Closed incidents cannot change status."],
    )
    code: str | None = Field(
        default=None,
        description="Machine-readable rejection kind for mutation errors.",
        examples=["forbidden", "terminal_state", "conflict_detected"],
    )
    retryable: bool | None = Field(
        default=None,
        description="Whether retrying (after refreshing the resource) may succeed.",
    )
    request_id: str | None = Field(
        default=None,
        description="Request correlation identifier injected by middleware.",
    )
