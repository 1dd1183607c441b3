"""Submission orchestrator: answers in, finalized score out.

For one live exam:
  1. measure elapsed time since the session started
  2. load the full question records (answer keys included)
  3. grade every question concurrently, one attempt record each
  4. write all attempts as one batch
  5. sum the marks and finalize the session through the session manager

Grading failures stay inside step 3 and degrade to local keyword matching.
Persistence failures propagate and leave the session open for a retry.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable

import httpx

from pastprep.config import GradingConfig
from pastprep.schemas.exam import AttemptResultRead, SubmissionSummary, SubmitTrigger
from pastprep.schemas.records import AttemptRecord, ExamQuestion, GradingQuestion
from pastprep.services.essay_client import EssayGradingClient
from pastprep.services.grading import (
    ESSAY_PASS_PERCENTAGE,
    FALLBACK_CREDIT,
    Grade,
    GradingStrategy,
    clamp_marks,
    grade_exact_match,
    grade_keyword_fallback,
    select_strategy,
)
from pastprep.services.store import ExamStore

if TYPE_CHECKING:
    from pastprep.services.session_manager import ActiveExam

logger = logging.getLogger(__name__)

FinalizeCallback = Callable[[uuid.UUID, float, int], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubmissionOrchestrator:
    def __init__(
        self,
        store: ExamStore,
        grading_config: GradingConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._config = grading_config
        self._transport = transport
        self._clock = clock

    @property
    def grading_config(self) -> GradingConfig:
        return self._config

    async def submit(
        self,
        exam: "ActiveExam",
        finalize: FinalizeCallback,
        trigger: SubmitTrigger = SubmitTrigger.MANUAL,
    ) -> SubmissionSummary:
        session = exam.session
        elapsed = max(0, int((self._clock() - session.started_at).total_seconds()))
        answers = dict(exam.answers)

        full = self._store.get_grading_questions(q.id for q in exam.questions)

        async with EssayGradingClient(self._config, transport=self._transport) as client:
            grades = await asyncio.gather(
                *(
                    self._grade_question(q, full.get(q.id), answers.get(q.id, ""), client)
                    for q in exam.questions
                )
            )

        attempts = [
            AttemptRecord(
                user_id=session.user_id,
                question_id=q.id,
                user_answer=answers.get(q.id, ""),
                is_correct=grade.is_correct,
                marks_awarded=grade.marks_awarded,
                exam_session_id=session.id,
            )
            for q, grade in zip(exam.questions, grades)
        ]
        self._store.insert_attempts(attempts)

        earned = sum(a.marks_awarded for a in attempts)
        finalize(session.id, earned, elapsed)

        total_marks = sum(q.marks for q in exam.questions)
        logger.info(
            "Session %s submitted (%s): %.2f/%.2f in %ds",
            session.id, trigger.value, earned, total_marks, elapsed,
        )
        return SubmissionSummary(
            session_id=session.id,
            paper_id=exam.paper.id,
            paper_name=exam.paper.name,
            trigger=trigger,
            results=[
                AttemptResultRead(
                    question_id=q.id,
                    question_number=q.question_number,
                    question_type=q.question_type,
                    user_answer=a.user_answer,
                    is_correct=a.is_correct,
                    marks_awarded=a.marks_awarded,
                    max_marks=q.marks,
                )
                for q, a in zip(exam.questions, attempts)
            ],
            earned_marks=earned,
            total_marks=total_marks,
            total_possible_score=session.total_possible_score,
            percentage=round(earned / total_marks * 100, 2) if total_marks else 0.0,
            elapsed_seconds=elapsed,
        )

    async def _grade_question(
        self,
        question: ExamQuestion,
        full: GradingQuestion | None,
        answer: str,
        client: EssayGradingClient,
    ) -> Grade:
        if full is None:
            logger.warning("Question %s vanished before grading; scoring zero", question.id)
            return Grade(False, 0.0)
        if not answer.strip():
            return Grade(False, 0.0)

        strategy = select_strategy(full.question_type, self._config.external_configured)
        if strategy is GradingStrategy.EXACT_MATCH:
            return grade_exact_match(answer, full.correct_answer, full.marks)
        if strategy is GradingStrategy.KEYWORD_FALLBACK:
            return grade_keyword_fallback(answer, full.correct_answer, full.marks)

        try:
            outcome = await client.grade_essay(
                full.question_text,
                answer,
                full.sample_answer or full.correct_answer,
                full.marks,
                full.question_type,
                full.subject,
                full.topic,
            )
        except Exception:
            logger.exception("Essay grading raised for question %s", full.id)
            outcome = None

        if outcome is not None and outcome.success and outcome.score is not None:
            return Grade(
                outcome.score.percentage >= ESSAY_PASS_PERCENTAGE,
                clamp_marks(outcome.score.total_marks, full.marks),
            )

        logger.warning(
            "External grading unavailable for question %s; using keyword fallback",
            full.id,
        )
        return grade_keyword_fallback(
            answer, full.correct_answer, full.marks, credit=FALLBACK_CREDIT
        )
