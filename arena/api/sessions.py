"""HTTP API for starting, steering and inspecting arena sessions."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from arena.config import config
from arena.core.errors import RouterStateError, SessionNotFoundError
from arena.core.models import ID_PATTERN, MissionSession, SessionStatus
from arena.orchestration.controller import ArenaController
from arena.runtime import get_controller

router = APIRouter(prefix="/sessions", tags=["sessions"])


class SessionCreateRequest(BaseModel):
    mission: str = Field(..., min_length=1, description="Mission statement for the DIRECTOR")
    doers: List[str] = Field(..., min_length=1, description="DOER types to staff the mission")
    budget: int = Field(default_factory=lambda: config.default_budget, ge=1)


class InputRequest(BaseModel):
    content: str = Field(..., min_length=1, description="Text delivered to the DIRECTOR")
    sender: str = Field("operator", pattern=ID_PATTERN, description="Who the input comes from")


class ConsultRequest(BaseModel):
    question: str = Field(..., min_length=1, description="Strategic question for the pooled models")
    rounds: int = Field(0, ge=0, le=5, description="0 asks once; more runs a debate")


class SessionResponse(BaseModel):
    id: str
    mission: str
    doers: List[str]
    budget: int
    turns_used: int
    status: str
    phase: str
    created_at: str
    updated_at: str

    @classmethod
    def from_session(cls, session: MissionSession) -> "SessionResponse":
        return cls(
            id=session.id,
            mission=session.mission,
            doers=list(session.doers),
            budget=session.budget,
            turns_used=session.turns_used,
            status=session.status.value,
            phase=session.phase,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def start_session(
    request: SessionCreateRequest,
    controller: ArenaController = Depends(get_controller),
) -> SessionResponse:
    try:
        state = await controller.start(request.mission, request.doers, request.budget)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return SessionResponse.from_session(state.session)


@router.get("", response_model=List[SessionResponse])
async def list_sessions(
    status_filter: Optional[SessionStatus] = Query(None, alias="status"),
    limit: Optional[int] = Query(None, ge=1),
    controller: ArenaController = Depends(get_controller),
) -> List[SessionResponse]:
    return [
        SessionResponse.from_session(session)
        for session in controller.list_sessions(status=status_filter, limit=limit)
    ]


@router.get("/current")
async def current_session(controller: ArenaController = Depends(get_controller)) -> Dict[str, Any]:
    return controller.status()


@router.post("/stop", response_model=Optional[SessionResponse])
async def stop_session(controller: ArenaController = Depends(get_controller)) -> Optional[SessionResponse]:
    session = await controller.stop()
    return SessionResponse.from_session(session) if session else None


@router.post("/retry", status_code=status.HTTP_202_ACCEPTED)
async def retry_step(controller: ArenaController = Depends(get_controller)) -> Dict[str, bool]:
    try:
        retried = await controller.retry()
    except RouterStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return {"retried": retried}


@router.post("/input", status_code=status.HTTP_202_ACCEPTED)
async def send_input(
    request: InputRequest,
    controller: ArenaController = Depends(get_controller),
) -> Dict[str, bool]:
    try:
        await controller.post(request.content, sender=request.sender)
    except RouterStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return {"accepted": True}


@router.post("/consult")
async def consult_models(
    request: ConsultRequest,
    controller: ArenaController = Depends(get_controller),
) -> Dict[str, Any]:
    try:
        result = await controller.consult(request.question, rounds=request.rounds)
    except RouterStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return result.to_dict()


@router.post("/{session_id}/resume", response_model=SessionResponse)
async def resume_session(
    session_id: str,
    controller: ArenaController = Depends(get_controller),
) -> SessionResponse:
    try:
        state = await controller.resume(session_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found or already finished",
        )
    return SessionResponse.from_session(state.session)


@router.get("/{session_id}/export", response_class=PlainTextResponse)
async def export_session(
    session_id: str,
    controller: ArenaController = Depends(get_controller),
) -> str:
    _require_session(controller, session_id)
    return controller.export(session_id)


@router.get("/{session_id}/tasks")
async def session_tasks(
    session_id: str,
    controller: ArenaController = Depends(get_controller),
) -> Dict[str, Any]:
    try:
        return controller.task_board(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _require_session(controller: ArenaController, session_id: str) -> None:
    try:
        session = controller.get_session(session_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
