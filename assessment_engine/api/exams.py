from typing import Annotated, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..core.config import settings
from ..models.domain import ExamMode
from ..services.session import ExamSessionManager
from .deps import get_session_manager

router = APIRouter()


class SessionStart(BaseModel):
    student_id: str = Field(min_length=1)
    subject: str = Field(min_length=1)
    mode: ExamMode = ExamMode.EASY


AnswerText = Annotated[str, Field(max_length=settings.MAX_ANSWER_LENGTH)]


class AnswerSubmit(BaseModel):
    index: int = Field(ge=0)
    answer: Union[AnswerText, Annotated[List[AnswerText], Field(max_length=100)]]


class NavigateTo(BaseModel):
    index: int = Field(ge=0)


class FinalizeRequest(BaseModel):
    force: bool = False


class SessionAbandoned(BaseModel):
    session_id: str
    state: str


@router.post("", status_code=201)
async def start_session(payload: SessionStart, sessions: ExamSessionManager = Depends(get_session_manager)):
    snapshot = await sessions.start_session(payload.student_id, payload.subject, payload.mode)
    return snapshot.public_dict()


@router.get("/{student_id}")
async def restore_session(student_id: str, sessions: ExamSessionManager = Depends(get_session_manager)):
    snapshot = await sessions.restore_session(student_id)
    if snapshot is None:
        raise HTTPException(404, "No resumable exam session")
    return snapshot.public_dict()


@router.post("/{student_id}/answers")
async def submit_answer(
    student_id: str, payload: AnswerSubmit, sessions: ExamSessionManager = Depends(get_session_manager)
):
    snapshot = await sessions.submit_answer(student_id, payload.index, payload.answer)
    return snapshot.public_dict()


@router.post("/{student_id}/navigate")
async def navigate(student_id: str, payload: NavigateTo, sessions: ExamSessionManager = Depends(get_session_manager)):
    snapshot = await sessions.navigate_to(student_id, payload.index)
    return snapshot.public_dict()


@router.post("/{student_id}/review")
async def review(student_id: str, sessions: ExamSessionManager = Depends(get_session_manager)):
    snapshot = await sessions.review(student_id)
    return snapshot.public_dict()


@router.post("/{student_id}/finalize")
async def finalize(
    student_id: str,
    payload: Optional[FinalizeRequest] = None,
    sessions: ExamSessionManager = Depends(get_session_manager),
):
    snapshot = await sessions.finalize(student_id, force=payload.force if payload else False)
    return snapshot.public_dict()


@router.delete("/{student_id}", response_model=SessionAbandoned)
async def abandon(student_id: str, sessions: ExamSessionManager = Depends(get_session_manager)):
    snapshot = await sessions.abandon(student_id)
    return SessionAbandoned(session_id=snapshot.session_id, state=snapshot.state.value)
