"""Question store and result persistence over SQLAlchemy.

The only component that touches the tables on behalf of the grading
pipeline. Every row read here leaves as a typed record from
``pastprep.schemas.records``; rows that fail validation are logged and
rejected with ``InvalidRecordError``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, Iterable, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from pastprep.db.models import (
    ExamSession,
    Paper,
    Question,
    Topic,
    UserAttempt,
)
from pastprep.schemas.records import (
    AttemptRecord,
    ExamQuestion,
    GradingQuestion,
    PaperRecord,
    SessionRecord,
)
from pastprep.services.errors import InvalidRecordError, PersistenceError

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

# Columns served during an exam; correct_answer and sample_answer are never selected
_EXAM_COLUMNS = (
    Question.id,
    Question.question_text,
    Question.question_type,
    Question.question_number,
    Question.marks,
    Question.difficulty,
    Question.options,
    Question.image_url,
)


def _validate(model: type[RecordT], data: object, what: str) -> RecordT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        logger.error("Rejected malformed %s: %s", what, e)
        raise InvalidRecordError(f"Malformed {what}") from e


def _grading_record(q: Question) -> GradingQuestion:
    return _validate(
        GradingQuestion,
        {
            "id": q.id,
            "question_text": q.question_text,
            "question_type": q.question_type.value,
            "question_number": q.question_number,
            "marks": q.marks,
            "difficulty": q.difficulty,
            "options": q.options,
            "image_url": q.image_url,
            "correct_answer": q.correct_answer or [],
            "sample_answer": q.sample_answer,
            "subject": q.paper.subject.name if q.paper and q.paper.subject else None,
            "topic": q.topic.name if q.topic else None,
        },
        f"question {q.id}",
    )


class ExamStore:
    """Narrow read/write interface used by the session manager and orchestrator."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    # ── papers & questions ────────────────────────────────────────────────

    def get_paper(self, paper_id: uuid.UUID) -> PaperRecord | None:
        with self._session_factory() as db:
            paper = db.get(Paper, paper_id)
            if paper is None:
                return None
            return _validate(
                PaperRecord,
                {
                    "id": paper.id,
                    "name": paper.name,
                    "subject": paper.subject.name if paper.subject else None,
                    "grade_level": paper.grade_level,
                    "year": paper.year,
                    "duration_minutes": paper.duration_minutes,
                    "total_score": paper.total_score,
                    "is_writable": paper.is_writable,
                },
                f"paper {paper_id}",
            )

    def get_exam_questions(self, paper_id: uuid.UUID) -> list[ExamQuestion]:
        """Questions of a paper in order, without answer keys."""
        with self._session_factory() as db:
            rows = db.execute(
                select(*_EXAM_COLUMNS)
                .where(Question.paper_id == paper_id)
                .order_by(Question.question_number)
            ).all()
        return [
            _validate(
                ExamQuestion,
                {**row._mapping, "question_type": row.question_type.value},
                f"question {row.id}",
            )
            for row in rows
        ]

    def get_grading_questions(
        self, question_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, GradingQuestion]:
        """Full records (with keys) for the given ids, keyed by id."""
        ids = list(question_ids)
        if not ids:
            return {}
        with self._session_factory() as db:
            rows = db.scalars(
                select(Question)
                .options(
                    joinedload(Question.topic),
                    joinedload(Question.paper).joinedload(Paper.subject),
                )
                .where(Question.id.in_(ids))
            ).all()
            return {q.id: _grading_record(q) for q in rows}

    def get_grading_question(self, question_id: uuid.UUID) -> GradingQuestion | None:
        return self.get_grading_questions([question_id]).get(question_id)

    def get_topic_questions(
        self, topic_id: uuid.UUID
    ) -> list[tuple[GradingQuestion, str, str]] | None:
        """Practice questions for a topic, or None if the topic does not exist."""
        with self._session_factory() as db:
            if db.get(Topic, topic_id) is None:
                return None
            rows = db.scalars(
                select(Question)
                .options(
                    joinedload(Question.topic),
                    joinedload(Question.paper).joinedload(Paper.subject),
                )
                .where(Question.topic_id == topic_id)
                .order_by(Question.question_number)
            ).all()
            return [(_grading_record(q), q.paper.name, q.paper.year) for q in rows]

    # ── sessions ──────────────────────────────────────────────────────────

    def create_session(
        self,
        user_id: uuid.UUID,
        paper: PaperRecord,
        started_at: datetime,
    ) -> SessionRecord:
        with self._session_factory() as db:
            row = ExamSession(
                user_id=user_id,
                past_paper_id=paper.id,
                started_at=started_at,
                total_possible_score=paper.total_score,
                total_score=0.0,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _validate(SessionRecord, row, f"session {row.id}")

    def get_session(self, session_id: uuid.UUID) -> SessionRecord | None:
        with self._session_factory() as db:
            row = db.get(ExamSession, session_id)
            return _validate(SessionRecord, row, f"session {session_id}") if row else None

    def finalize_session(
        self,
        session_id: uuid.UUID,
        *,
        completed_at: datetime,
        duration_seconds: int,
        total_score: float,
    ) -> None:
        """Mark a session completed. Only an open session can be finalized."""
        try:
            with self._session_factory() as db:
                result = db.execute(
                    update(ExamSession)
                    .where(
                        ExamSession.id == session_id,
                        ExamSession.completed_at.is_(None),
                    )
                    .values(
                        completed_at=completed_at,
                        duration_seconds=duration_seconds,
                        total_score=total_score,
                    )
                )
                updated = result.rowcount
                db.commit()
        except SQLAlchemyError as e:
            logger.exception("Finalize failed for session %s", session_id)
            raise PersistenceError(f"Could not finalize session {session_id}") from e
        if updated != 1:
            raise PersistenceError(f"Session {session_id} is missing or already completed")

    def list_user_sessions(self, user_id: uuid.UUID) -> list[tuple[SessionRecord, str, int]]:
        """(session, paper name, paper duration minutes), most recent first."""
        with self._session_factory() as db:
            rows = db.execute(
                select(ExamSession, Paper.name, Paper.duration_minutes)
                .join(Paper, Paper.id == ExamSession.past_paper_id)
                .where(ExamSession.user_id == user_id)
                .order_by(ExamSession.started_at.desc())
            ).all()
            return [
                (_validate(SessionRecord, s, f"session {s.id}"), name, minutes)
                for s, name, minutes in rows
            ]

    def get_session_attempts(
        self, session_id: uuid.UUID
    ) -> list[tuple[AttemptRecord, GradingQuestion]]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(UserAttempt)
                .options(
                    joinedload(UserAttempt.question).joinedload(Question.topic),
                    joinedload(UserAttempt.question)
                    .joinedload(Question.paper)
                    .joinedload(Paper.subject),
                )
                .where(UserAttempt.exam_session_id == session_id)
            ).all()
            pairs = [
                (_validate(AttemptRecord, a, f"attempt {a.id}"), _grading_record(a.question))
                for a in rows
            ]
        return sorted(pairs, key=lambda pair: pair[1].question_number)

    # ── attempts ──────────────────────────────────────────────────────────

    def insert_attempts(self, attempts: list[AttemptRecord]) -> None:
        """Write a batch of attempts in one transaction: all rows or none.

        Rows left behind by an earlier submission of the same, still open,
        session (attempts written, finalize failed) are replaced, so a retry
        never trips the (session, question) uniqueness constraint.
        """
        if not attempts:
            return
        try:
            with self._session_factory() as db:
                with db.begin():
                    for session_id in {a.exam_session_id for a in attempts if a.exam_session_id}:
                        db.execute(
                            delete(UserAttempt).where(
                                UserAttempt.exam_session_id == session_id,
                                UserAttempt.question_id.in_(
                                    [a.question_id for a in attempts if a.exam_session_id == session_id]
                                ),
                            )
                        )
                    db.add_all(UserAttempt(**a.model_dump()) for a in attempts)
        except SQLAlchemyError as e:
            logger.exception("Attempt batch write failed (%d rows)", len(attempts))
            raise PersistenceError(
                f"Could not store {len(attempts)} attempt(s)"
            ) from e

    def insert_attempt(self, attempt: AttemptRecord) -> None:
        self.insert_attempts([attempt])
