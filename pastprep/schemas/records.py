"""Typed records validated at the storage boundary.

Rows coming out of the database are converted into these models before the
grading pipeline sees them. ``ExamQuestion`` is the answer-key-free variant
served while an exam is in progress; ``GradingQuestion`` adds the keys and
is only loaded after submission.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class QuestionType(str, Enum):
    MCQ = "MCQ"
    SHORT_ANSWER = "ShortAnswer"
    ESSAY = "Essay"


class PaperRecord(BaseModel):
    id: uuid.UUID
    name: str
    subject: str | None = None
    grade_level: str | None = None
    year: str
    duration_minutes: int = Field(gt=0)
    total_score: float = Field(ge=0)
    is_writable: bool = True

    model_config = {"from_attributes": True, "frozen": True}


class ExamQuestion(BaseModel):
    """Question as delivered to a student mid-exam (no correct answer)."""

    id: uuid.UUID
    question_text: str
    question_type: QuestionType
    question_number: int
    marks: float = Field(ge=0)
    difficulty: str | None = None
    options: list[str] | None = None
    image_url: str | None = None

    model_config = {"from_attributes": True, "frozen": True}

    @model_validator(mode="after")
    def _mcq_needs_options(self):
        if self.question_type is QuestionType.MCQ and not self.options:
            raise ValueError("multiple-choice question has no options")
        return self


class GradingQuestion(ExamQuestion):
    """Full question record used for grading after submission."""

    correct_answer: list[str] = Field(min_length=1)
    sample_answer: str | None = None
    subject: str | None = None
    topic: str | None = None


class SessionRecord(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    past_paper_id: uuid.UUID
    started_at: datetime
    completed_at: datetime | None = None
    duration_seconds: int | None = None
    total_possible_score: float
    total_score: float = 0.0

    model_config = {"from_attributes": True, "frozen": True}

    @field_validator("started_at", "completed_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # SQLite hands datetimes back without tzinfo
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class AttemptRecord(BaseModel):
    """One graded question, as written to the attempts table."""

    user_id: uuid.UUID
    question_id: uuid.UUID
    user_answer: str
    is_correct: bool
    marks_awarded: float = Field(ge=0)
    exam_session_id: uuid.UUID | None = None

    model_config = {"from_attributes": True, "frozen": True}
