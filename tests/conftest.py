"""Shared pytest fixtures for backend tests."""

import os

# Settings are read at import time; keep tests away from Redis and real graders
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["GRADE_CACHE_ENABLED"] = "false"
os.environ["RATE_LIMIT_GRADING_RPM"] = "0"
os.environ["GRADING_API_URL"] = ""
os.environ["GEMINI_API_KEY"] = ""

import uuid  # noqa: E402
from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from pastprep.config import GradingConfig  # noqa: E402
from pastprep.db.models import (  # noqa: E402
    Paper,
    Question,
    QuestionTypeEnum,
    Subject,
    Topic,
    User,
)
from pastprep.db.session import Base, get_db  # noqa: E402
from pastprep.main import app  # noqa: E402
from pastprep.services.session_manager import (  # noqa: E402
    ExamSessionManager,
    get_session_manager,
)
from pastprep.services.store import ExamStore  # noqa: E402
from pastprep.services.submission import SubmissionOrchestrator  # noqa: E402


# Use an in-memory SQLite database for testing with static pool
SQLALCHEMY_TEST_URL = "sqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,  # Use StaticPool to keep connection alive
    echo=False,
)
TestSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)

# Create all tables once at startup
Base.metadata.create_all(bind=engine)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(scope="function")
def db():
    """Get a fresh DB session for each test."""
    session = TestSession()
    try:
        yield session
    finally:
        session.rollback()  # Rollback changes after each test
        session.close()


@pytest.fixture
def store() -> ExamStore:
    return ExamStore(TestSession)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def manager(store: ExamStore) -> ExamSessionManager:
    """Manager with external grading switched off and the real clock."""
    orchestrator = SubmissionOrchestrator(store, GradingConfig())
    return ExamSessionManager(store, orchestrator, tick_interval=1.0)


@pytest.fixture
def student(db: Session) -> User:
    user = User(
        email=f"student_{uuid.uuid4().hex[:8]}@ex.com",
        hashed_password="not-a-real-hash",
        full_name="Test Student",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def seed_paper(db: Session):
    """Factory: insert a subject, topic, paper and questions.

    The default paper has two MCQs (keys B and C, 1 mark each) and one short
    answer worth 2.5 marks whose key is "photosynthesis".
    """

    def _seed(
        *,
        is_writable: bool = True,
        duration_minutes: int = 60,
        questions: list[dict] | None = None,
    ) -> tuple[Paper, list[Question], Topic]:
        subject = Subject(name=f"Biology {uuid.uuid4().hex[:6]}", grade_level="Grade 12")
        topic = Topic(subject=subject, name="Plant nutrition")
        paper = Paper(
            name="Biology Paper 1",
            subject=subject,
            grade_level="Grade 12",
            year="2023",
            duration_minutes=duration_minutes,
            total_score=4.5,
            is_writable=is_writable,
        )
        question_fields = questions or [
            {
                "question_type": QuestionTypeEnum.MCQ,
                "question_text": "Which organelle carries out photosynthesis?",
                "options": ["Nucleus", "Chloroplast", "Ribosome", "Vacuole"],
                "correct_answer": ["B"],
                "marks": 1.0,
            },
            {
                "question_type": QuestionTypeEnum.MCQ,
                "question_text": "Which gas do plants release?",
                "options": ["Nitrogen", "Carbon dioxide", "Oxygen", "Argon"],
                "correct_answer": ["C"],
                "marks": 1.0,
            },
            {
                "question_type": QuestionTypeEnum.SHORT_ANSWER,
                "question_text": "Name the process by which plants make food.",
                "correct_answer": ["photosynthesis"],
                "sample_answer": "Photosynthesis uses light energy to make glucose.",
                "marks": 2.5,
            },
        ]
        rows = [
            Question(paper=paper, topic=topic, question_number=i + 1, **fields)
            for i, fields in enumerate(question_fields)
        ]
        db.add_all([subject, topic, paper, *rows])
        db.commit()
        for row in [paper, topic, *rows]:
            db.refresh(row)
        return paper, rows, topic

    return _seed


@pytest.fixture(scope="function")
def client(db: Session, manager: ExamSessionManager):
    """FastAPI test client with overridden DB and session-manager dependencies."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_manager] = lambda: manager

    # Remove TrustedHostMiddleware for tests to allow 'testserver' host
    app.user_middleware = [m for m in app.user_middleware if "TrustedHost" not in str(m)]

    with TestClient(app) as test_client:
        yield test_client
        # countdowns live on the client's event loop
        test_client.portal.call(manager.shutdown)
    app.dependency_overrides.clear()
