"""Exam session manager: owns the live state of every timed attempt.

A live attempt (``ActiveExam``) holds the session record, the key-free
questions, the student's current answers and the countdown. Submission can
come from the student or from the countdown; both go through ``submit``,
which claims the attempt with a check-and-set on ``submitting`` before any
``await``, so only one of them ever reaches the orchestrator.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from pastprep.config import GradingConfig, settings
from pastprep.db.session import get_session_factory
from pastprep.schemas.exam import SubmissionSummary, SubmitTrigger
from pastprep.schemas.records import ExamQuestion, PaperRecord, SessionRecord
from pastprep.services.countdown import Countdown
from pastprep.services.errors import (
    AuthenticationRequired,
    PaperNotAttemptable,
    PaperNotFound,
    QuestionNotFound,
    SessionNotFound,
    SubmissionConflict,
)
from pastprep.services.store import ExamStore
from pastprep.services.submission import SubmissionOrchestrator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActiveExam:
    session: SessionRecord
    paper: PaperRecord
    questions: list[ExamQuestion]
    answers: dict[uuid.UUID, str] = field(default_factory=dict)
    countdown: Countdown | None = None
    submitting: bool = False
    finalized: bool = False

    @property
    def question_ids(self) -> set[uuid.UUID]:
        return {q.id for q in self.questions}

    @property
    def remaining_seconds(self) -> int:
        return self.countdown.remaining if self.countdown else 0

    def claim_submission(self) -> bool:
        """Check-and-set; must not be separated from its caller by an await."""
        if self.submitting:
            return False
        self.submitting = True
        return True


class ExamSessionManager:
    def __init__(
        self,
        store: ExamStore,
        orchestrator: SubmissionOrchestrator,
        *,
        tick_interval: float = 1.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._tick_interval = tick_interval
        self._clock = clock
        self._active: dict[uuid.UUID, ActiveExam] = {}

    @property
    def store(self) -> ExamStore:
        return self._store

    @property
    def grading_config(self) -> GradingConfig:
        return self._orchestrator.grading_config

    # ── lifecycle ─────────────────────────────────────────────────────────

    async def start_session(
        self,
        paper_id: uuid.UUID,
        user_id: uuid.UUID | None,
        *,
        start_timer: bool = True,
    ) -> ActiveExam:
        """Create the session row and start the countdown.

        Nothing is written when the user is missing or the paper cannot be
        attempted.
        """
        if user_id is None:
            raise AuthenticationRequired("Sign in to start an exam")

        paper = self._store.get_paper(paper_id)
        if paper is None:
            raise PaperNotFound(f"Paper {paper_id} not found")
        if not paper.is_writable:
            raise PaperNotAttemptable(f"Paper {paper.name} is not open for attempts")

        questions = self._store.get_exam_questions(paper_id)
        session = self._store.create_session(user_id, paper, self._clock())
        exam = ActiveExam(session=session, paper=paper, questions=questions)
        self._active[session.id] = exam

        exam.countdown = Countdown(
            paper.duration_minutes * 60,
            lambda: self._auto_submit(session.id),
            interval=self._tick_interval,
            name=str(session.id),
        )
        if start_timer:
            exam.countdown.start()

        logger.info(
            "Session %s started: user=%s paper=%s (%d questions, %d min)",
            session.id, user_id, paper.id, len(questions), paper.duration_minutes,
        )
        return exam

    def get(self, session_id: uuid.UUID) -> ActiveExam:
        exam = self._active.get(session_id)
        if exam is None:
            raise SessionNotFound(f"No live exam session {session_id}")
        return exam

    def find(self, session_id: uuid.UUID) -> ActiveExam | None:
        return self._active.get(session_id)

    def record_answer(self, session_id: uuid.UUID, question_id: uuid.UUID, answer: str) -> ActiveExam:
        """Store the student's current answer; the last write wins."""
        exam = self.get(session_id)
        if exam.submitting:
            raise SubmissionConflict("Exam is already being submitted")
        if exam.countdown is not None and exam.countdown.expired:
            raise SubmissionConflict("Time is up; answers can no longer be changed")
        if question_id not in exam.question_ids:
            raise QuestionNotFound(f"Question {question_id} is not part of this paper")
        exam.answers[question_id] = answer
        return exam

    async def submit(
        self,
        session_id: uuid.UUID,
        trigger: SubmitTrigger = SubmitTrigger.MANUAL,
    ) -> SubmissionSummary:
        exam = self._active.get(session_id)
        if exam is None:
            stored = self._store.get_session(session_id)
            if stored is not None and stored.completed_at is not None:
                raise SubmissionConflict("Exam already submitted")
            raise SessionNotFound(f"No live exam session {session_id}")
        if exam.finalized:
            raise SubmissionConflict("Exam already submitted")
        if not exam.claim_submission():
            raise SubmissionConflict("Exam submission already in progress")
        if exam.countdown is not None:
            exam.countdown.cancel()

        try:
            summary = await self._orchestrator.submit(exam, self.finalize_session, trigger)
        except Exception:
            if exam.finalized:
                self._active.pop(session_id, None)
            else:
                # Session stays open; the student may retry.
                exam.submitting = False
            raise

        self._active.pop(session_id, None)
        return summary

    def finalize_session(self, session_id: uuid.UUID, total_score: float, elapsed_seconds: int) -> None:
        """Write completion time, duration and score. At most once per session."""
        exam = self._active.get(session_id)
        if exam is None or exam.finalized:
            raise SubmissionConflict(f"Session {session_id} already finalized")
        self._store.finalize_session(
            session_id,
            completed_at=self._clock(),
            duration_seconds=elapsed_seconds,
            total_score=total_score,
        )
        exam.finalized = True
        logger.info("Session %s finalized with score %.2f", session_id, total_score)

    async def _auto_submit(self, session_id: uuid.UUID) -> SubmissionSummary | None:
        logger.info("Time is up for session %s; submitting automatically", session_id)
        try:
            return await self.submit(session_id, SubmitTrigger.TIMER)
        except SubmissionConflict:
            logger.info("Auto-submit for %s skipped: already submitted", session_id)
        except SessionNotFound:
            logger.info("Auto-submit for %s skipped: session no longer live", session_id)
        except Exception:
            logger.exception("Auto-submit failed for session %s", session_id)
        return None

    def shutdown(self) -> None:
        """Stop every countdown; open sessions are left for later clean-up."""
        for exam in self._active.values():
            if exam.countdown is not None:
                exam.countdown.cancel()
        logger.info("Stopped %d live countdown(s)", len(self._active))


# ── singleton accessor ────────────────────────────────────────────────────────

_instance: ExamSessionManager | None = None


def get_session_manager() -> ExamSessionManager:
    global _instance
    if _instance is None:
        store = ExamStore(get_session_factory())
        orchestrator = SubmissionOrchestrator(store, settings.grading_config)
        _instance = ExamSessionManager(
            store, orchestrator, tick_interval=settings.EXAM_TICK_SECONDS
        )
        logger.info(
            "Exam session manager initialised (external grading %s)",
            "on" if settings.grading_config.external_configured else "off",
        )
    return _instance


def shutdown_session_manager() -> None:
    """Stop the countdowns of the process-wide manager, if one was created."""
    if _instance is not None:
        _instance.shutdown()
