"""Timed exam routes.

Flow:
  1. POST /api/exams/sessions                         → start attempt, timer running
  2. PUT  /api/exams/sessions/{id}/answers/{qid}      → save / overwrite an answer
  3. POST /api/exams/sessions/{id}/submit             → grade, persist, finalize
     (or the timer submits by itself when it reaches zero)
  4. GET  /api/exams/sessions/{id}                    → live state or final result
  5. GET  /api/exams/sessions/{id}/attempts           → per-question review
  6. GET  /api/exams/sessions                         → exam history
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, status

from pastprep.api.deps import get_current_user
from pastprep.db.models import User
from pastprep.schemas.exam import (
    AnswerAck,
    AnswerUpdate,
    AttemptReviewRead,
    ExamStartRead,
    ExamStartRequest,
    SessionRead,
    SessionStatus,
    SubmissionSummary,
)
from pastprep.schemas.records import SessionRecord
from pastprep.services.errors import (
    PaperNotAttemptable,
    PaperNotFound,
    QuestionNotFound,
    SessionNotFound,
    SubmissionConflict,
)
from pastprep.services.rate_limiter import require_grading_rate_limit
from pastprep.services.session_manager import (
    ActiveExam,
    ExamSessionManager,
    get_session_manager,
)

logger = logging.getLogger(__name__)
router = APIRouter()


# ── Helpers ───────────────────────────────────────────────────────────────────


def _live_exam(manager: ExamSessionManager, session_id: uuid.UUID, user: User) -> ActiveExam:
    exam = manager.find(session_id)
    if exam is None or exam.session.user_id != user.id:
        raise HTTPException(status_code=404, detail="Exam session not found")
    return exam


def _owned_session(manager: ExamSessionManager, session_id: uuid.UUID, user: User) -> SessionRecord:
    session = manager.store.get_session(session_id)
    if session is None or session.user_id != user.id:
        raise HTTPException(status_code=404, detail="Exam session not found")
    return session


def _stored_status(session: SessionRecord, duration_minutes: int, now: datetime) -> SessionStatus:
    if session.completed_at is not None:
        return SessionStatus.COMPLETED
    if session.started_at + timedelta(minutes=duration_minutes) < now:
        return SessionStatus.ABANDONED
    return SessionStatus.OPEN


def _session_read(
    session: SessionRecord,
    *,
    status_: SessionStatus,
    paper_name: str | None = None,
    exam: ActiveExam | None = None,
) -> SessionRead:
    return SessionRead(
        id=session.id,
        past_paper_id=session.past_paper_id,
        paper_name=paper_name,
        status=status_,
        started_at=session.started_at,
        completed_at=session.completed_at,
        duration_seconds=session.duration_seconds,
        total_possible_score=session.total_possible_score,
        total_score=session.total_score,
        remaining_seconds=exam.remaining_seconds if exam else None,
        answered_count=len(exam.answers) if exam else None,
    )


# ── Endpoints ─────────────────────────────────────────────────────────────────


@router.post("/sessions", response_model=ExamStartRead, status_code=status.HTTP_201_CREATED)
async def start_exam(
    body: ExamStartRequest,
    current_user: User = Depends(get_current_user),
    manager: ExamSessionManager = Depends(get_session_manager),
):
    """Start a timed attempt. Questions are returned without answer keys."""
    try:
        exam = await manager.start_session(body.paper_id, current_user.id)
    except PaperNotFound:
        raise HTTPException(status_code=404, detail="Paper not found")
    except PaperNotAttemptable:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This paper is not available for timed attempts",
        )

    return ExamStartRead(
        session_id=exam.session.id,
        paper=exam.paper,
        questions=exam.questions,
        started_at=exam.session.started_at,
        remaining_seconds=exam.remaining_seconds,
    )


@router.put("/sessions/{session_id}/answers/{question_id}", response_model=AnswerAck)
async def save_answer(
    session_id: uuid.UUID,
    question_id: uuid.UUID,
    body: AnswerUpdate,
    current_user: User = Depends(get_current_user),
    manager: ExamSessionManager = Depends(get_session_manager),
):
    """Save the current answer to one question (overwrites any earlier one)."""
    _live_exam(manager, session_id, current_user)
    try:
        exam = manager.record_answer(session_id, question_id, body.answer)
    except QuestionNotFound:
        raise HTTPException(status_code=404, detail="Question not in this exam")
    except SubmissionConflict as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return AnswerAck(
        question_id=question_id,
        answered_count=len(exam.answers),
        remaining_seconds=exam.remaining_seconds,
    )


@router.post("/sessions/{session_id}/submit", response_model=SubmissionSummary)
async def submit_exam(
    session_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    manager: ExamSessionManager = Depends(get_session_manager),
    _rl=Depends(require_grading_rate_limit),
):
    """Grade every question, store the attempts and finalize the session.

    Persistence failures surface as 503 (see the handler in ``main``); the
    session stays open and the submission can be retried.
    """
    if manager.find(session_id) is None:
        session = _owned_session(manager, session_id, current_user)
        detail = (
            "Exam already submitted"
            if session.completed_at is not None
            else "Exam session is no longer active"
        )
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)

    _live_exam(manager, session_id, current_user)
    try:
        return await manager.submit(session_id)
    except SubmissionConflict:
        logger.info("Duplicate submit for session %s rejected", session_id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Exam already submitted or submission in progress",
        )
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Exam session not found")


@router.get("/sessions", response_model=list[SessionRead])
def list_sessions(
    current_user: User = Depends(get_current_user),
    manager: ExamSessionManager = Depends(get_session_manager),
):
    """The caller's exam history, most recent first."""
    now = datetime.now(timezone.utc)
    results = []
    for session, paper_name, duration_minutes in manager.store.list_user_sessions(current_user.id):
        exam = manager.find(session.id)
        if exam is not None:
            status_ = SessionStatus.SUBMITTING if exam.submitting else SessionStatus.OPEN
        else:
            status_ = _stored_status(session, duration_minutes, now)
        results.append(
            _session_read(session, status_=status_, paper_name=paper_name, exam=exam)
        )
    return results


@router.get("/sessions/{session_id}", response_model=SessionRead)
def get_session(
    session_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    manager: ExamSessionManager = Depends(get_session_manager),
):
    """Live countdown state while the exam runs, stored result afterwards."""
    exam = manager.find(session_id)
    if exam is not None and exam.session.user_id == current_user.id:
        status_ = SessionStatus.SUBMITTING if exam.submitting else SessionStatus.OPEN
        return _session_read(exam.session, status_=status_, paper_name=exam.paper.name, exam=exam)

    session = _owned_session(manager, session_id, current_user)
    paper = manager.store.get_paper(session.past_paper_id)
    duration = paper.duration_minutes if paper else 0
    return _session_read(
        session,
        status_=_stored_status(session, duration, datetime.now(timezone.utc)),
        paper_name=paper.name if paper else None,
    )


@router.get("/sessions/{session_id}/attempts", response_model=list[AttemptReviewRead])
def get_session_attempts(
    session_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    manager: ExamSessionManager = Depends(get_session_manager),
):
    """Per-question results with answer keys, for reviewing a finished exam."""
    session = _owned_session(manager, session_id, current_user)
    if session.completed_at is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Answers are only available after the exam is submitted",
        )
    return [
        AttemptReviewRead(
            question_id=question.id,
            question_number=question.question_number,
            question_text=question.question_text,
            question_type=question.question_type,
            options=question.options,
            user_answer=attempt.user_answer,
            is_correct=attempt.is_correct,
            marks_awarded=attempt.marks_awarded,
            max_marks=question.marks,
            correct_answer=question.correct_answer,
            sample_answer=question.sample_answer,
        )
        for attempt, question in manager.store.get_session_attempts(session_id)
    ]
