"""Domain errors raised by the exam services and mapped to HTTP by the routers."""


class ExamError(Exception):
    """Base class for exam-lifecycle failures."""

    code = "exam_error"


class AuthenticationRequired(ExamError):
    code = "authentication_required"


class PaperNotFound(ExamError):
    code = "paper_not_found"


class PaperNotAttemptable(ExamError):
    code = "paper_not_attemptable"


class QuestionNotFound(ExamError):
    code = "question_not_found"


class TopicNotFound(ExamError):
    code = "topic_not_found"


class SessionNotFound(ExamError):
    code = "session_not_found"


class SubmissionConflict(ExamError):
    """Submission already claimed, or the session is already completed."""

    code = "submission_conflict"


class InvalidRecordError(ExamError):
    """A stored row failed validation at the ingestion boundary."""

    code = "invalid_record"


class PersistenceError(ExamError):
    """Writing attempts or finalizing a session failed; safe to retry."""

    code = "persistence_failed"
