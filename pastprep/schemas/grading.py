"""Wire schemas for the external essay grading service."""

from typing import Any, Literal

from pydantic import BaseModel, Field


class EssayQuestionPayload(BaseModel):
    text: str
    max_marks: float
    subject: str | None = None
    topic: str | None = None


class ReferenceAnswer(BaseModel):
    """Key points for short essays, one model answer for long essays."""

    type: Literal["key_points", "model_essay"]
    content: list[str] | str


class GradeEssayRequest(BaseModel):
    """POST {GRADING_API_URL}{GRADING_API_PATH}"""

    question_type: Literal["short_essay", "long_essay"]
    question: EssayQuestionPayload
    student_answer: str
    reference_answer: ReferenceAnswer


class EssayScore(BaseModel):
    total_marks: float
    max_marks: float
    percentage: float = 0.0
    # per-criterion detail is shown to the student as sent, never scored
    breakdown: dict[str, Any] | None = None


class EssayFeedback(BaseModel):
    summary: str = ""
    strengths: list[str] = []
    improvements: list[str] = []


class GradingError(BaseModel):
    code: str
    message: str
    details: str | None = None


class GradingOutcome(BaseModel):
    """Normalised result of one essay grading call.

    Exactly one of ``score`` / ``error`` is populated, matching ``success``.
    """

    success: bool
    score: EssayScore | None = None
    feedback: EssayFeedback | None = None
    error: GradingError | None = None
    source: Literal["endpoint", "llm", "cache"] | None = Field(default=None, exclude=True)

    @classmethod
    def failure(cls, code: str, message: str, details: str | None = None) -> "GradingOutcome":
        return cls(success=False, error=GradingError(code=code, message=message, details=details))
