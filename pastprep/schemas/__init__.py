"""Pydantic schemas, re-exported for convenience."""

from pastprep.schemas.common import ErrorResponse  # noqa: F401
from pastprep.schemas.user import (  # noqa: F401
    AuthResponse,
    UserCreate,
    UserLogin,
    UserRead,
)
from pastprep.schemas.records import (  # noqa: F401
    AttemptRecord,
    ExamQuestion,
    GradingQuestion,
    PaperRecord,
    QuestionType,
    SessionRecord,
)
from pastprep.schemas.grading import GradeEssayRequest, GradingOutcome  # noqa: F401
from pastprep.schemas.exam import (  # noqa: F401
    ExamStartRead,
    SessionRead,
    SubmissionSummary,
)
