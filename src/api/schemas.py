"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from src.models import (
    ConflictDetectionConfig,
    ConflictMatch,
    HallucinationType,
    Outcome,
    Role,
    Severity,
    ValidationSettings,
)


class MessageRequest(BaseModel):
    """One dialogue turn from the channel adapter."""

    content: str = Field(..., max_length=4000, description="The turn's text")
    role: Role = Field(default=Role.USER, description="Who said it")


class FunctionCallRequest(BaseModel):
    """The outcome of a tool call the agent made against the scheduling system."""

    function_name: str = Field(..., min_length=1, max_length=100)
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: str | None = Field(default=None, description="Set when the call failed")


class ValidateRequest(BaseModel):
    """A state-mutating action the agent wants to run."""

    function_name: str = Field(..., min_length=1, max_length=100)
    parameters: dict[str, Any] = Field(default_factory=dict)
    conversation_id: str | None = Field(default=None, max_length=100)


class ValidateResponse(BaseModel):
    """What the agent must do with its proposal.

    ``correct``: run with ``corrected_parameters`` instead.
    ``block``: do not run; say ``clarification`` to the user.
    ``retry``: ask the user ``clarification`` and propose again.
    """

    outcome: Outcome
    corrected_parameters: dict[str, Any] | None = None
    clarification: str | None = None
    retryable: bool = False
    hallucination_type: HallucinationType = HallucinationType.NONE
    hallucination_types: list[HallucinationType] = Field(default_factory=list)
    severity: Severity = Severity.LOW
    confidence: float | None = None
    fields_to_clarify: list[str] = Field(default_factory=list)
    conflicts: list[ConflictMatch] = Field(default_factory=list)
    retries_used: int = 0


class AutofillResponse(BaseModel):
    session_id: str
    function_name: str
    parameters: dict[str, Any] = Field(
        default_factory=dict,
        description="Only values the session already holds; empty means ask the user",
    )


class SettingsPayload(BaseModel):
    validation: ValidationSettings | None = None
    conflict_detection: ConflictDetectionConfig | None = None


class SettingsResponse(BaseModel):
    validation: ValidationSettings
    conflict_detection: ConflictDetectionConfig


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "booking-firewall"
    active_sessions: int = 0
    pending_audit_writes: int = 0
    dropped_audit_writes: int = 0
