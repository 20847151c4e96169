"""Pydantic response schemas for the DukeFace API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class AcceptedResponse(BaseModel):
    """Acknowledgement for a message handed to the broker."""

    status: str = "OK"
    destination: str
    message_id: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="'ok', or 'degraded' when the face classifier is not loaded")
    detector_loaded: bool
    concurrent_requests: int
    queue_depth: int
    pending_messages: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
