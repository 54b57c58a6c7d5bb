"""FastAPI route definitions for the booking firewall API."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, HTTPException, Path, Query, Request

from src.api.schemas import (
    AutofillResponse,
    FunctionCallRequest,
    HealthResponse,
    MessageRequest,
    SettingsPayload,
    SettingsResponse,
    ValidateRequest,
    ValidateResponse,
)
from src.audit import ValidationStats
from src.firewall import FirewallService
from src.models import ConversationState, HallucinationLogEntry
from src.services.settings_store import SettingsUnavailable

logger = logging.getLogger(__name__)

router = APIRouter()

SessionId = Annotated[str, Path(min_length=1, max_length=100)]


def _get_firewall(request: Request) -> FirewallService:
    """Retrieve the firewall service created by the lifespan hook."""
    firewall = getattr(request.app.state, "firewall", None)
    if firewall is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return firewall


def _internal_error(request: Request, action: str) -> HTTPException:
    # Full traceback stays in the server log; clients get a generic message.
    request_id = getattr(request.state, "request_id", "?")
    logger.exception("[%s] Error while %s", request_id, action)
    return HTTPException(status_code=500, detail="An internal error occurred. Please try again.")


# ── Health ───────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    firewall = getattr(request.app.state, "firewall", None)
    if firewall is None:
        return HealthResponse(status="starting")
    return HealthResponse(
        active_sessions=await firewall.sessions.active_sessions(),
        pending_audit_writes=firewall.audit_logger.pending_count,
        dropped_audit_writes=firewall.audit_logger.dropped_count,
    )


# ── Sessions ─────────────────────────────────────────────────────────


@router.post("/sessions/{session_id}/messages", response_model=ConversationState)
async def post_message(body: MessageRequest, request: Request, session_id: SessionId):
    """Record a dialogue turn and return the updated conversation state."""
    firewall = _get_firewall(request)
    try:
        return await firewall.process_message(session_id, body.content, body.role)
    except Exception as e:
        raise _internal_error(request, "processing a message") from e


@router.post("/sessions/{session_id}/function-calls", response_model=ConversationState)
async def post_function_call(body: FunctionCallRequest, request: Request, session_id: SessionId):
    """Record a tool call; successful calls become ground truth for the session."""
    firewall = _get_firewall(request)
    try:
        return await firewall.record_function_call(
            session_id, body.function_name, body.parameters, body.result, body.error,
        )
    except Exception as e:
        raise _internal_error(request, "recording a function call") from e


@router.get("/sessions/{session_id}", response_model=ConversationState)
async def get_session(request: Request, session_id: SessionId):
    state = await _get_firewall(request).get_state(session_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Session not found.")
    return state


@router.delete("/sessions/{session_id}")
async def delete_session(request: Request, session_id: SessionId):
    if not await _get_firewall(request).clear_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found.")
    return {"session_id": session_id, "cleared": True}


@router.get("/sessions/{session_id}/autofill/{function_name}", response_model=AutofillResponse)
async def get_autofill(request: Request, function_name: str, session_id: SessionId):
    """Parameters the session can supply for *function_name*; never invented."""
    parameters = await _get_firewall(request).autofill(session_id, function_name)
    return AutofillResponse(session_id=session_id, function_name=function_name, parameters=parameters)


@router.post("/sessions/{session_id}/validate", response_model=ValidateResponse)
async def validate_action(body: ValidateRequest, request: Request, session_id: SessionId):
    """Run a proposed action through the firewall.

    Only the outcome and user-facing clarification are returned; the
    internal reason is written to the audit log.
    """
    firewall = _get_firewall(request)
    try:
        decision = await firewall.validate(
            session_id, body.function_name, body.parameters, conversation_id=body.conversation_id,
        )
    except Exception as e:
        raise _internal_error(request, "validating an action") from e
    return ValidateResponse(**decision.model_dump(exclude={"reason"}))


# ── Validation log & settings ────────────────────────────────────────


@router.get("/validation/stats", response_model=ValidationStats)
async def validation_stats(request: Request, window_days: int = Query(30, ge=1, le=365)):
    return await _get_firewall(request).validation_stats(window_days)


@router.get("/validation/logs", response_model=list[HallucinationLogEntry])
async def validation_logs(request: Request, limit: int = Query(50, ge=1, le=500)):
    return await _get_firewall(request).recent_logs(limit)


@router.get("/validation/settings", response_model=SettingsResponse)
async def get_settings(request: Request):
    validation, conflict = await _get_firewall(request).get_settings()
    return SettingsResponse(validation=validation, conflict_detection=conflict)


@router.put("/validation/settings", response_model=SettingsResponse)
async def put_settings(body: SettingsPayload, request: Request):
    firewall = _get_firewall(request)
    try:
        validation, conflict = await firewall.update_settings(body.validation, body.conflict_detection)
    except SettingsUnavailable as e:
        logger.warning("Settings update failed: %s", e)
        raise HTTPException(status_code=503, detail="Settings store unavailable. Please try again.") from e
    return SettingsResponse(validation=validation, conflict_detection=conflict)
