"""Exam session schemas: start, answer, submit, history."""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from pastprep.schemas.records import ExamQuestion, PaperRecord, QuestionType


class SessionStatus(str, Enum):
    OPEN = "open"
    SUBMITTING = "submitting"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class SubmitTrigger(str, Enum):
    MANUAL = "manual"
    TIMER = "timer"


class ExamStartRequest(BaseModel):
    """POST /api/exams/sessions"""

    paper_id: uuid.UUID


class ExamStartRead(BaseModel):
    """A freshly started attempt: questions come without answer keys."""

    session_id: uuid.UUID
    paper: PaperRecord
    questions: list[ExamQuestion]
    started_at: datetime
    remaining_seconds: int


class AnswerUpdate(BaseModel):
    """PUT /api/exams/sessions/{id}/answers/{question_id}"""

    answer: str


class AnswerAck(BaseModel):
    question_id: uuid.UUID
    answered_count: int
    remaining_seconds: int


class SessionRead(BaseModel):
    """Session row plus derived status, for the live view and history."""

    id: uuid.UUID
    past_paper_id: uuid.UUID
    paper_name: str | None = None
    status: SessionStatus
    started_at: datetime
    completed_at: datetime | None = None
    duration_seconds: int | None = None
    total_possible_score: float
    total_score: float
    remaining_seconds: int | None = None
    answered_count: int | None = None


class AttemptResultRead(BaseModel):
    question_id: uuid.UUID
    question_number: int
    question_type: QuestionType
    user_answer: str
    is_correct: bool
    marks_awarded: float
    max_marks: float


class SubmissionSummary(BaseModel):
    """Everything the results view needs after a submission."""

    session_id: uuid.UUID
    paper_id: uuid.UUID
    paper_name: str
    trigger: SubmitTrigger
    results: list[AttemptResultRead]
    earned_marks: float
    total_marks: float
    total_possible_score: float
    percentage: float
    elapsed_seconds: int


class AttemptReviewRead(BaseModel):
    """Stored attempt joined with its full question, for post-exam review."""

    question_id: uuid.UUID
    question_number: int
    question_text: str
    question_type: QuestionType
    options: list[str] | None = None
    user_answer: str
    is_correct: bool
    marks_awarded: float
    max_marks: float
    correct_answer: list[str] = []
    sample_answer: str | None = None
