"""Topic practice schemas: one question at a time, no timer, no session."""

import uuid

from pydantic import BaseModel

from pastprep.schemas.records import GradingQuestion


class PracticeQuestionRead(GradingQuestion):
    """Practice questions carry their keys; the client reveals them after answering."""

    paper_name: str | None = None
    paper_year: str | None = None


class PracticeAnswerSubmit(BaseModel):
    """POST /api/practice/questions/{question_id}/answer"""

    answer: str


class PracticeAnswerResult(BaseModel):
    question_id: uuid.UUID
    user_answer: str
    is_correct: bool
    marks_awarded: float
    max_marks: float
    correct_answer: list[str]
    sample_answer: str | None = None
