"""Tests for the submission pipeline: grading, attempt persistence, finalize.

Exams are driven through ``ExamSessionManager`` with the countdown left
stopped, so time only moves through the fake clock.
"""

import asyncio
import json
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy import func, select

from pastprep.config import GradingConfig
from pastprep.db.models import QuestionTypeEnum, UserAttempt
from pastprep.schemas.exam import SubmitTrigger
from pastprep.services.errors import PersistenceError, SubmissionConflict
from pastprep.services.session_manager import ExamSessionManager
from pastprep.services.submission import SubmissionOrchestrator


# ── Helpers ────────────────────────────────────────────────────────────────────


def _manager(store, clock, config=None, transport=None) -> ExamSessionManager:
    orchestrator = SubmissionOrchestrator(
        store, config or GradingConfig(), transport=transport, clock=clock
    )
    return ExamSessionManager(store, orchestrator, clock=clock)


def _sit_exam(manager, paper, user, answers: dict, *, elapsed: float = 0, clock=None):
    """Start, answer by question index and submit; returns (exam, summary)."""

    async def run():
        exam = await manager.start_session(paper.id, user.id, start_timer=False)
        for index, answer in answers.items():
            manager.record_answer(exam.session.id, exam.questions[index].id, answer)
        if clock is not None:
            clock.advance(elapsed)
        return exam, await manager.submit(exam.session.id)

    return asyncio.run(run())


def _attempt_count(db, session_id) -> int:
    return db.scalar(
        select(func.count()).select_from(UserAttempt).where(UserAttempt.exam_session_id == session_id)
    )


# ── Tests ─────────────────────────────────────────────────────────────────────


class TestSubmit:
    def test_every_question_gets_one_attempt(self, db, store, clock, student, seed_paper):
        paper, _, _ = seed_paper()
        exam, summary = _sit_exam(_manager(store, clock), paper, student, {0: "B"})

        rows = store.get_session_attempts(exam.session.id)
        assert len(rows) == 3
        assert len(summary.results) == 3
        unanswered = [attempt for attempt, _ in rows if attempt.user_answer == ""]
        assert len(unanswered) == 2
        assert all(not a.is_correct and a.marks_awarded == 0 for a in unanswered)

    def test_mcq_exact_match(self, store, clock, student, seed_paper):
        paper, _, _ = seed_paper()
        _, summary = _sit_exam(_manager(store, clock), paper, student, {0: "B", 1: "B"})

        first, second, _ = summary.results
        assert first.is_correct and first.marks_awarded == 1
        assert not second.is_correct and second.marks_awarded == 0

    def test_score_aggregates_and_session_is_finalized(self, store, clock, student, seed_paper):
        paper, _, _ = seed_paper()
        exam, summary = _sit_exam(
            _manager(store, clock),
            paper,
            student,
            {0: "B", 1: "A", 2: "It is photosynthesis"},
            elapsed=125.7,
            clock=clock,
        )

        assert summary.earned_marks == pytest.approx(3.5)
        assert summary.total_marks == pytest.approx(4.5)
        assert summary.percentage == pytest.approx(77.78)
        assert summary.elapsed_seconds == 125
        assert summary.trigger is SubmitTrigger.MANUAL

        session = store.get_session(exam.session.id)
        assert session.completed_at is not None
        assert session.total_score == pytest.approx(3.5)
        assert session.duration_seconds == 125

    def test_second_submit_is_rejected(self, store, clock, student, seed_paper):
        paper, _, _ = seed_paper()
        manager = _manager(store, clock)
        exam, _ = _sit_exam(manager, paper, student, {0: "B"})

        with pytest.raises(SubmissionConflict):
            asyncio.run(manager.submit(exam.session.id))


class TestExternalGrading:
    CONFIG = GradingConfig(api_url="http://grader.test")

    def test_service_grade_is_used(self, store, clock, student, seed_paper):
        body = {"success": True, "score": {"total_marks": 9, "max_marks": 2.5}}
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json=body))
        paper, _, _ = seed_paper()

        _, summary = _sit_exam(
            _manager(store, clock, self.CONFIG, transport),
            paper,
            student,
            {2: "Plants make glucose using sunlight"},
        )

        short = summary.results[2]
        assert short.is_correct
        assert short.marks_awarded == 2.5

    def test_service_failure_falls_back_to_half_credit(self, store, clock, student, seed_paper):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(500, text="internal error")

        paper, _, _ = seed_paper()
        exam, summary = _sit_exam(
            _manager(store, clock, self.CONFIG, httpx.MockTransport(handler)),
            paper,
            student,
            {0: "B", 2: "photosynthesis"},
        )

        # MCQs never reach the service
        assert len(requests) == 1
        short = summary.results[2]
        assert short.is_correct
        assert short.marks_awarded == pytest.approx(1.25)
        assert summary.earned_marks == pytest.approx(2.25)
        assert store.get_session(exam.session.id).completed_at is not None

    def test_empty_answer_is_not_sent(self, store, clock, student, seed_paper):
        def handler(request):
            raise AssertionError("blank answers must not be graded remotely")

        paper, _, _ = seed_paper()
        _, summary = _sit_exam(
            _manager(store, clock, self.CONFIG, httpx.MockTransport(handler)),
            paper,
            student,
            {2: "   "},
        )
        assert summary.results[2].marks_awarded == 0


    def test_essays_are_graded_concurrently_and_fail_independently(
        self, store, clock, student, seed_paper
    ):
        in_flight = 0
        peak = 0
        both_arrived = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            if in_flight == 2:
                both_arrived.set()
            # a sequential grader would never see the second request here
            await asyncio.wait_for(both_arrived.wait(), timeout=5)
            in_flight -= 1

            question = json.loads(request.content)["question"]["text"]
            if question.startswith("Describe"):
                return httpx.Response(503, text="unavailable")
            body = {"success": True, "score": {"total_marks": 3, "max_marks": 4}}
            return httpx.Response(200, json=body)

        paper, _, _ = seed_paper(
            questions=[
                {
                    "question_type": QuestionTypeEnum.ESSAY,
                    "question_text": "Explain the role of chlorophyll.",
                    "correct_answer": ["absorbs light"],
                    "marks": 4.0,
                },
                {
                    "question_type": QuestionTypeEnum.ESSAY,
                    "question_text": "Describe transpiration.",
                    "correct_answer": ["water vapour"],
                    "marks": 4.0,
                },
            ]
        )
        _, summary = _sit_exam(
            _manager(store, clock, self.CONFIG, httpx.MockTransport(handler)),
            paper,
            student,
            {
                0: "Chlorophyll absorbs red and blue light.",
                1: "Loss of water vapour through the stomata.",
            },
        )

        assert peak == 2
        graded, fallback = summary.results
        # the service grade survives the other question's failure
        assert graded.is_correct
        assert graded.marks_awarded == 3
        assert fallback.is_correct
        assert fallback.marks_awarded == pytest.approx(2.0)
        assert summary.earned_marks == pytest.approx(5.0)

class TestPersistenceFailure:
    def test_attempt_write_failure_leaves_session_open(self, db, store, clock, student, seed_paper):
        paper, _, _ = seed_paper()
        manager = _manager(store, clock)

        async def run():
            exam = await manager.start_session(paper.id, student.id, start_timer=False)
            manager.record_answer(exam.session.id, exam.questions[0].id, "B")
            with patch.object(store, "insert_attempts", side_effect=PersistenceError("db down")):
                with pytest.raises(PersistenceError):
                    await manager.submit(exam.session.id)
            assert not exam.submitting
            assert store.get_session(exam.session.id).completed_at is None
            return exam, await manager.submit(exam.session.id)

        exam, summary = asyncio.run(run())
        assert summary.earned_marks == 1
        assert _attempt_count(db, exam.session.id) == 3

    def test_finalize_failure_can_be_retried(self, db, store, clock, student, seed_paper):
        paper, _, _ = seed_paper()
        manager = _manager(store, clock)

        async def run():
            exam = await manager.start_session(paper.id, student.id, start_timer=False)
            manager.record_answer(exam.session.id, exam.questions[1].id, "C")
            with patch.object(store, "finalize_session", side_effect=PersistenceError("db down")):
                with pytest.raises(PersistenceError):
                    await manager.submit(exam.session.id)
            return exam, await manager.submit(exam.session.id)

        exam, summary = asyncio.run(run())
        # rows from the failed attempt are replaced, not duplicated
        assert _attempt_count(db, exam.session.id) == 3
        assert store.get_session(exam.session.id).total_score == 1
