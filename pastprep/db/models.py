"""SQLAlchemy ORM models for the past-paper platform.

Tables
------
- users          – student / admin profiles
- subjects       – school subjects per grade level
- topics         – subject → topic grouping for practice
- past_papers    – examination papers (duration, total score, writable flag)
- questions      – gradable items within a paper, with answer keys
- exam_sessions  – one timed attempt by one user against one paper
- user_attempts  – per-question grading outcome (session-less for practice)
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pastprep.db.session import Base


# ── helpers ───────────────────────────────────────────────────────────────────


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> uuid.UUID:
    return uuid.uuid4()


# ── Enums (stored as VARCHAR via SQLAlchemy Enum) ─────────────────────────────


class RoleEnum(str, enum.Enum):
    STUDENT = "student"
    ADMIN = "admin"


class QuestionTypeEnum(str, enum.Enum):
    MCQ = "MCQ"
    SHORT_ANSWER = "ShortAnswer"
    ESSAY = "Essay"


class PaperTypeEnum(str, enum.Enum):
    PAPER_1 = "paper_1"
    PAPER_2 = "paper_2"
    PAPER_3 = "paper_3"


# ── Users ─────────────────────────────────────────────────────────────────────


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255))
    full_name: Mapped[str] = mapped_column(String(255))
    role: Mapped[RoleEnum] = mapped_column(
        Enum(RoleEnum, name="role_enum", values_callable=lambda e: [m.value for m in e]),
        default=RoleEnum.STUDENT,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    exam_sessions: Mapped[list["ExamSession"]] = relationship(back_populates="user")


# ── Subjects & Topics ─────────────────────────────────────────────────────────


class Subject(Base):
    __tablename__ = "subjects"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    name: Mapped[str] = mapped_column(String(100), index=True)
    grade_level: Mapped[str] = mapped_column(String(20))

    topics: Mapped[list["Topic"]] = relationship(back_populates="subject")
    papers: Mapped[list["Paper"]] = relationship(back_populates="subject")

    __table_args__ = (
        UniqueConstraint("name", "grade_level", name="uq_subject_name_grade"),
    )


class Topic(Base):
    __tablename__ = "topics"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    subject_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subjects.id")
    )
    name: Mapped[str] = mapped_column(String(200))

    subject: Mapped["Subject"] = relationship(back_populates="topics")
    questions: Mapped[list["Question"]] = relationship(back_populates="topic")


# ── Past papers ───────────────────────────────────────────────────────────────


class Paper(Base):
    __tablename__ = "past_papers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    name: Mapped[str] = mapped_column(String(300))
    subject_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subjects.id")
    )
    grade_level: Mapped[str] = mapped_column(String(20))
    year: Mapped[str] = mapped_column(String(10))
    duration_minutes: Mapped[int] = mapped_column(Integer)
    total_score: Mapped[float] = mapped_column(Float, default=0.0)
    is_writable: Mapped[bool] = mapped_column(Boolean, default=True)
    paper_type: Mapped[PaperTypeEnum | None] = mapped_column(
        Enum(PaperTypeEnum, name="paper_type_enum"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    subject: Mapped["Subject"] = relationship(back_populates="papers")
    questions: Mapped[list["Question"]] = relationship(
        back_populates="paper", cascade="all, delete-orphan"
    )


# ── Questions ─────────────────────────────────────────────────────────────────


class Question(Base):
    __tablename__ = "questions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    paper_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("past_papers.id"), index=True
    )
    topic_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("topics.id"), nullable=True, index=True
    )
    question_text: Mapped[str] = mapped_column(Text)
    question_type: Mapped[QuestionTypeEnum] = mapped_column(
        Enum(
            QuestionTypeEnum,
            name="question_type_enum",
            values_callable=lambda e: [m.value for m in e],
        ),
        default=QuestionTypeEnum.MCQ,
    )
    question_number: Mapped[int] = mapped_column(Integer, default=0)
    marks: Mapped[float] = mapped_column(Float, default=1.0)
    difficulty: Mapped[str | None] = mapped_column(String(20), nullable=True)
    options: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    correct_answer: Mapped[list[str]] = mapped_column(JSON, default=list)
    sample_answer: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    paper: Mapped["Paper"] = relationship(back_populates="questions")
    topic: Mapped["Topic | None"] = relationship(back_populates="questions")


# ── Exam sessions ─────────────────────────────────────────────────────────────


class ExamSession(Base):
    """One timed attempt; ``completed_at`` is set exactly once."""

    __tablename__ = "exam_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), index=True
    )
    past_paper_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("past_papers.id")
    )
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_possible_score: Mapped[float] = mapped_column(Float, default=0.0)
    total_score: Mapped[float] = mapped_column(Float, default=0.0)

    user: Mapped["User"] = relationship(back_populates="exam_sessions")
    paper: Mapped["Paper"] = relationship("Paper")
    attempts: Mapped[list["UserAttempt"]] = relationship(back_populates="session")


# ── Attempts ──────────────────────────────────────────────────────────────────


class UserAttempt(Base):
    """Grading outcome of one question; never updated once written."""

    __tablename__ = "user_attempts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=_uuid
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), index=True
    )
    question_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("questions.id")
    )
    user_answer: Mapped[str] = mapped_column(Text, default="")
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)
    marks_awarded: Mapped[float] = mapped_column(Float, default=0.0)
    exam_session_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("exam_sessions.id"), nullable=True
    )  # NULL for topic practice
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    session: Mapped["ExamSession | None"] = relationship(back_populates="attempts")
    question: Mapped["Question"] = relationship("Question")

    __table_args__ = (
        UniqueConstraint(
            "exam_session_id", "question_id", name="uq_attempt_session_question"
        ),
    )
