"""
Lab Range - Lab Session Endpoints

API for the learner-facing session lifecycle:
- POST /sessions - Start a lab session
- GET /sessions/active - The caller's current session
- GET /sessions/{session_id} - Session status
- POST /sessions/{session_id}/flags - Submit a flag
- POST /sessions/{session_id}/extend - Extend the deadline
- POST /sessions/{session_id}/heartbeat - Record activity
- POST /sessions/{session_id}/snapshot - Snapshot the VM
- DELETE /sessions/{session_id} - Stop the session
- GET /sessions/{session_id}/submissions - Submission history
- POST /sessions/{session_id}/vpn - Issue the VPN profile
- GET /sessions/{session_id}/vpn/download - Download the VPN profile
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, Field

from labrange.infrastructure.orchestrator.models import FlagType, LabSession
from labrange.infrastructure.orchestrator.services.session_manager import SessionManager
from labrange.infrastructure.orchestrator.services.vpn_issuer import CONTENT_TYPE
from labrange.interfaces.api.rate_limit import limiter, submit_limit
from labrange.interfaces.api.v1.auth import get_current_user

logger = structlog.get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class StartSessionRequest(BaseModel):
    """Request body for starting a lab session."""
    lab_id: str = Field(..., min_length=1, max_length=64, description="Lab to start")


class FlagSubmitRequest(BaseModel):
    """Request body for a flag submission."""
    flag_type: FlagType = Field(..., description="user or root")
    value: str = Field(..., min_length=1, max_length=500)


class ExtendRequest(BaseModel):
    """Request to extend a running session."""
    minutes: Optional[int] = Field(default=None, ge=1, le=120, description="Defaults to the configured extension")


class SnapshotRequest(BaseModel):
    name: Optional[str] = Field(default=None, pattern=r"^[A-Za-z0-9_.-]{1,64}$")


class FlagStatusResponse(BaseModel):
    flag_type: str
    points: int
    is_correct: bool
    submitted_at: Optional[str] = None
    points_awarded: int = 0
    attempts: int = 0


class SessionResponse(BaseModel):
    """Session as shown to its owner. Never includes flag values."""
    id: str
    lab_id: str
    status: str
    connection: Dict[str, Any]
    flags: Dict[str, FlagStatusResponse]
    created_at: str
    started_at: Optional[str] = None
    expires_at: Optional[str] = None
    stopped_at: Optional[str] = None
    time_remaining_seconds: int = 0
    extension_count: int = 0
    warnings: List[str] = Field(default_factory=list)
    stop_reason: Optional[str] = None
    stats: Dict[str, Any]


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total: int


class SubmissionResponse(BaseModel):
    accepted: bool
    flag_type: str
    points: int
    flags_found: int
    total_points: int
    completed: bool
    message: str
    new_badges: List[str] = Field(default_factory=list)
    ranking: Optional[int] = None


class SubmissionHistoryItem(BaseModel):
    flag_type: str
    is_correct: bool
    points_awarded: int
    attempt_number: int
    submitted_at: str


class VpnProfileResponse(BaseModel):
    session_id: str
    filename: str
    subnet: str
    issued_at: str
    expires_at: str
    download_url: str


# ============================================================================
# Dependencies
# ============================================================================

async def get_session_manager(request: Request) -> SessionManager:
    """Get the session manager from app state."""
    return request.app.state.session_manager


async def _owned_session(
    manager: SessionManager,
    session_id: str,
    current_user: dict,
) -> LabSession:
    session = await manager.get_session(session_id)
    if session.user_id != current_user["id"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied",
        )
    return session


def _to_response(session: LabSession, now: Optional[datetime] = None) -> SessionResponse:
    data = session.to_dict()
    return SessionResponse(
        id=session.id,
        lab_id=session.lab_id,
        status=session.status.value,
        connection=session.connection if session.is_active else {},
        flags={k: FlagStatusResponse(**v) for k, v in data["flags"].items()},
        created_at=data["created_at"],
        started_at=data["started_at"],
        expires_at=data["expires_at"],
        stopped_at=data["stopped_at"],
        time_remaining_seconds=int(session.time_remaining(now).total_seconds()),
        extension_count=session.extension_count,
        warnings=session.warnings,
        stop_reason=session.stop_reason,
        stats=session.stats(now),
    )


# ============================================================================
# API Endpoints
# ============================================================================

@router.post(
    "",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start Lab Session",
    description="Boot a fresh VM for the lab and return connection details",
)
async def start_session(
    body: StartSessionRequest,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> SessionResponse:
    """
    Start a lab session.

    Blocks until the VM is reachable and flags are generated. A user can
    hold only one starting or running session at a time.
    """
    logger.info("Session start requested", lab_id=body.lab_id, user_id=current_user["id"])
    session = await manager.start_session(current_user["id"], body.lab_id)
    return _to_response(session, manager.now())


@router.get(
    "/active",
    response_model=SessionResponse,
    summary="Get Active Session",
)
async def get_active_session(
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> SessionResponse:
    session = await manager.get_active_session(current_user["id"])
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active session",
        )
    return _to_response(session, manager.now())


@router.get(
    "",
    response_model=SessionListResponse,
    summary="List My Sessions",
)
async def list_sessions(
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[SessionManager, Depends(get_session_manager)],
    limit: int = 20,
) -> SessionListResponse:
    sessions = await manager.list_user_sessions(current_user["id"], limit=min(limit, 100))
    now = manager.now()
    return SessionListResponse(
        sessions=[_to_response(s, now) for s in sessions],
        total=len(sessions),
    )


@router.get(
    "/{session_id}",
    response_model=SessionResponse,
    summary="Get Session Status",
)
async def get_session(
    session_id: str,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> SessionResponse:
    session = await _owned_session(manager, session_id, current_user)
    return _to_response(session, manager.now())


@router.post(
    "/{session_id}/flags",
    response_model=SubmissionResponse,
    summary="Submit Flag",
)
@limiter.limit(submit_limit)
async def submit_flag(
    request: Request,
    session_id: str,
    body: FlagSubmitRequest,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> SubmissionResponse:
    """
    Submit a flag for a running session.

    Wrong flags are answered with accepted=false rather than an error.
    """
    await _owned_session(manager, session_id, current_user)
    result = await manager.submit_flag(session_id, body.flag_type, body.value)
    return SubmissionResponse(**result.to_dict())


@router.post(
    "/{session_id}/extend",
    response_model=SessionResponse,
    summary="Extend Session",
)
async def extend_session(
    session_id: str,
    body: ExtendRequest,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> SessionResponse:
    await _owned_session(manager, session_id, current_user)
    session = await manager.extend_session(session_id, body.minutes)
    return _to_response(session, manager.now())


@router.post(
    "/{session_id}/heartbeat",
    response_model=SessionResponse,
    summary="Record Activity",
)
async def heartbeat(
    session_id: str,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> SessionResponse:
    await _owned_session(manager, session_id, current_user)
    session = await manager.touch(session_id)
    return _to_response(session, manager.now())


@router.post(
    "/{session_id}/snapshot",
    summary="Snapshot Session VM",
)
async def snapshot_session(
    session_id: str,
    body: SnapshotRequest,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> Dict[str, str]:
    await _owned_session(manager, session_id, current_user)
    name = await manager.snapshot_session(session_id, body.name)
    return {"session_id": session_id, "snapshot": name}


@router.delete(
    "/{session_id}",
    response_model=SessionResponse,
    summary="Stop Session",
)
async def stop_session(
    session_id: str,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> SessionResponse:
    """Stop the session and release its VM. Stopping twice is harmless."""
    await _owned_session(manager, session_id, current_user)
    session = await manager.stop_session(session_id, reason="user_requested")
    return _to_response(session, manager.now())


@router.get(
    "/{session_id}/submissions",
    response_model=List[SubmissionHistoryItem],
    summary="Submission History",
)
async def list_submissions(
    session_id: str,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> List[SubmissionHistoryItem]:
    await _owned_session(manager, session_id, current_user)
    submissions = await manager.list_submissions(session_id)
    return [
        SubmissionHistoryItem(
            flag_type=s.flag_type.value,
            is_correct=s.is_correct,
            points_awarded=s.points_awarded,
            attempt_number=s.attempt_number,
            submitted_at=s.submitted_at.isoformat(),
        )
        for s in submissions
    ]


@router.post(
    "/{session_id}/vpn",
    response_model=VpnProfileResponse,
    summary="Issue VPN Profile",
)
async def issue_vpn_profile(
    session_id: str,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> VpnProfileResponse:
    await _owned_session(manager, session_id, current_user)
    try:
        profile = await manager.issue_network_profile(session_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )
    return VpnProfileResponse(
        session_id=profile.session_id,
        filename=profile.filename,
        subnet=profile.subnet,
        issued_at=profile.issued_at.isoformat(),
        expires_at=profile.expires_at.isoformat(),
        download_url=f"/api/v1/sessions/{session_id}/vpn/download",
    )


@router.get(
    "/{session_id}/vpn/download",
    summary="Download VPN Profile",
    response_class=Response,
)
async def download_vpn_profile(
    session_id: str,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[SessionManager, Depends(get_session_manager)],
) -> Response:
    await _owned_session(manager, session_id, current_user)
    profile = await manager.fetch_network_profile(session_id)
    logger.info("VPN profile downloaded", session_id=session_id, user_id=current_user["id"])
    return Response(
        content=profile.content,
        media_type=CONTENT_TYPE,
        headers={
            "Content-Disposition": f'attachment; filename="{profile.filename}"',
            "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
            "Pragma": "no-cache",
            "Expires": "0",
        },
    )
