"""
Session Endpoints
=================

REST surface of the session coordinator.

Endpoints:
- POST /api/v1/sessions                              - Start a session for a channel identity
- GET  /api/v1/sessions?organization_id=             - Recent sessions for an organization
- GET  /api/v1/sessions/by-identity/{identity}       - Latest live session for an identity
- GET  /api/v1/sessions/{session_id}                 - Session state with transcript
- GET  /api/v1/sessions/{session_id}/transcript      - Ordered transcript
- POST /api/v1/sessions/{session_id}/takeover        - Human agent takes control
- POST /api/v1/sessions/{session_id}/release         - Control returns to the AI
- POST /api/v1/sessions/{session_id}/messages        - Human agent reply to the customer
- POST /api/v1/sessions/{session_id}/customer-messages - Inbound customer text (SMS)
- POST /api/v1/sessions/{session_id}/complete        - End the session
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, status
from utils.ml_logging import get_logger

from apps.callrelay.backend.api.v1.schemas.sessions import (
    CompleteSessionRequest,
    CustomerMessageRequest,
    HumanMessageRequest,
    ReleaseRequest,
    SessionListResponse,
    StartSessionRequest,
    TakeoverRequest,
    TranscriptResponse,
)
from callrelay.coordinator import SessionCoordinator
from callrelay.errors import (
    CallRelayError,
    ControlOwnershipError,
    EngineConnectionError,
    ImmutableFieldError,
    InvalidTransition,
    NotConnectedError,
    StateNotFoundError,
    UnknownIdentityError,
)
from callrelay.state.models import SessionStatus

logger = get_logger(__name__)

router = APIRouter(tags=["Sessions"])

# Most specific class first
_STATUS_BY_ERROR: list[tuple[type[CallRelayError], int]] = [
    (StateNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransition, status.HTTP_404_NOT_FOUND),
    (UnknownIdentityError, status.HTTP_404_NOT_FOUND),
    (ImmutableFieldError, status.HTTP_409_CONFLICT),
    (ControlOwnershipError, status.HTTP_409_CONFLICT),
    (NotConnectedError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (EngineConnectionError, status.HTTP_502_BAD_GATEWAY),
]


def http_error(exc: CallRelayError) -> HTTPException:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=code, detail=exc.to_dict())
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.to_dict())


def _get_coordinator(request: Request) -> SessionCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Session coordinator not initialized")
    return coordinator


def _not_found(session_id: str) -> HTTPException:
    return http_error(StateNotFoundError(session_id))


# ═══════════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════════════


@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def start_session(body: StartSessionRequest, request: Request) -> dict[str, Any]:
    coordinator = _get_coordinator(request)
    try:
        session = await coordinator.start_session(
            body.channel_identity,
            channel_config=body.channel_config,
            first_message_hint=body.first_message_hint,
            session_id=body.session_id,
        )
    except CallRelayError as exc:
        logger.warning("Session start failed: %s", exc.message)
        raise http_error(exc) from exc
    return session.to_wire()


@router.post("/sessions/{session_id}/complete")
async def complete_session(
    session_id: str, request: Request, body: CompleteSessionRequest | None = None
) -> dict[str, Any]:
    coordinator = _get_coordinator(request)
    final_status = SessionStatus((body or CompleteSessionRequest()).status)
    try:
        session = await coordinator.complete_session(session_id, status=final_status)
    except CallRelayError as exc:
        raise http_error(exc) from exc
    return session.to_wire()


# ═══════════════════════════════════════════════════════════════════════════════
# READS
# ═══════════════════════════════════════════════════════════════════════════════


@router.get("/sessions", response_model=SessionListResponse, response_model_by_alias=True)
async def list_sessions(
    request: Request,
    organization_id: str = Query(..., min_length=1),
    limit: int = Query(50, ge=1, le=500),
) -> SessionListResponse:
    coordinator = _get_coordinator(request)
    sessions = await coordinator.list_sessions(organization_id, limit=limit)
    return SessionListResponse(
        organization_id=organization_id,
        count=len(sessions),
        sessions=[s.to_wire() for s in sessions],
    )


@router.get("/sessions/by-identity/{identity}")
async def latest_session_for_identity(identity: str, request: Request) -> dict[str, Any]:
    coordinator = _get_coordinator(request)
    session = await coordinator.latest_for_identity(identity)
    if session is None:
        raise http_error(UnknownIdentityError(identity))
    return session.to_wire()


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: str,
    request: Request,
    include_transcript: bool = Query(True),
) -> dict[str, Any]:
    coordinator = _get_coordinator(request)
    session = await coordinator.get_session(session_id, include_transcript=include_transcript)
    if session is None:
        raise _not_found(session_id)
    return session.to_wire()


@router.get(
    "/sessions/{session_id}/transcript",
    response_model=TranscriptResponse,
    response_model_by_alias=True,
)
async def get_transcript(session_id: str, request: Request) -> TranscriptResponse:
    coordinator = _get_coordinator(request)
    try:
        entries = await coordinator.get_transcript(session_id)
    except CallRelayError as exc:
        raise http_error(exc) from exc
    return TranscriptResponse(
        session_id=session_id, count=len(entries), entries=[e.to_wire() for e in entries]
    )


# ═══════════════════════════════════════════════════════════════════════════════
# CONTROL AND MESSAGES
# ═══════════════════════════════════════════════════════════════════════════════


@router.post("/sessions/{session_id}/takeover")
async def takeover(session_id: str, body: TakeoverRequest, request: Request) -> dict[str, Any]:
    coordinator = _get_coordinator(request)
    try:
        state = await coordinator.takeover(session_id, body.agent_id, body.reason)
    except CallRelayError as exc:
        raise http_error(exc) from exc
    return state.to_wire()


@router.post("/sessions/{session_id}/release")
async def release(
    session_id: str, request: Request, body: ReleaseRequest | None = None
) -> dict[str, Any]:
    coordinator = _get_coordinator(request)
    try:
        state = await coordinator.release(session_id, body.reason if body else None)
    except CallRelayError as exc:
        raise http_error(exc) from exc
    return state.to_wire()


@router.post("/sessions/{session_id}/messages")
async def send_human_message(
    session_id: str, body: HumanMessageRequest, request: Request
) -> dict[str, Any]:
    coordinator = _get_coordinator(request)
    try:
        entry = await coordinator.send_human_message(session_id, body.agent_id, body.text)
    except CallRelayError as exc:
        raise http_error(exc) from exc
    return entry.to_wire()


@router.post("/sessions/{session_id}/customer-messages")
async def receive_customer_message(
    session_id: str, body: CustomerMessageRequest, request: Request
) -> dict[str, Any]:
    coordinator = _get_coordinator(request)
    try:
        entry = await coordinator.handle_customer_text(session_id, body.text)
    except CallRelayError as exc:
        raise http_error(exc) from exc
    return entry.to_wire()
