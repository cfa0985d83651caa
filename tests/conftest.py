"""Shared pytest fixtures for engine tests."""

import os

# Must be set before the app / settings are imported.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CACHE_BACKEND", "memory")

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from exam_analytics.api.deps import get_analytics_service
from exam_analytics.db.models import (
    Attempt,
    AttemptStatusEnum,
    Exam,
    ExamAnswer,
    Question,
    RoleEnum,
    Topic,
    User,
)
from exam_analytics.db.session import Base
from exam_analytics.main import app, build_analytics_service
from exam_analytics.services.cache_store import MemoryCacheStore

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable UTC clock for TTL tests."""

    def __init__(self, start: datetime = T0 + timedelta(days=60)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class Seeder:
    """Inserts source rows the way the exam-taking subsystem would."""

    def __init__(self, db: Session):
        self.db = db

    def _add(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def user(self, role: RoleEnum = RoleEnum.STUDENT, enrolled: bool = True, name: str = "Test User") -> User:
        uid = str(uuid.uuid4())[:8]
        return self._add(
            User(email=f"{uid}@ex.com", name=name, role=role, is_enrolled=enrolled, created_at=T0)
        )

    def topic(self, name: str | None = None) -> Topic:
        return self._add(Topic(name=name or f"Topic {uuid.uuid4().hex[:6]}"))

    def question(self, topic: Topic | None, correct: int = 0, text: str = "What is 2 + 2?") -> Question:
        return self._add(
            Question(
                question_text=text,
                correct_answer_index=correct,
                topic_id=topic.id if topic is not None else None,
            )
        )

    def exam(self, title: str = "Algebra Midterm", time_limit_seconds: int = 3600) -> Exam:
        return self._add(Exam(title=title, time_limit_seconds=time_limit_seconds, created_at=T0))

    def attempt(
        self,
        user: User,
        exam: Exam,
        status: AttemptStatusEnum = AttemptStatusEnum.SUBMITTED,
        score: int | None = None,
        total: int = 10,
        day: int = 0,
        time_taken: int | None = 600,
    ) -> Attempt:
        started = T0 + timedelta(days=day)
        finalized = status != AttemptStatusEnum.IN_PROGRESS
        return self._add(
            Attempt(
                exam_id=exam.id,
                user_id=user.id,
                status=status,
                score=score,
                total_questions=total,
                time_taken_seconds=time_taken if finalized else None,
                started_at=started,
                submitted_at=started + timedelta(seconds=time_taken or 0) if finalized else None,
            )
        )

    def answer(
        self,
        attempt: Attempt,
        question: Question | uuid.UUID,
        selected: int | None = 0,
        correct: bool | None = None,
        answered_at: datetime | None = None,
    ) -> ExamAnswer:
        question_id = question.id if isinstance(question, Question) else question
        return self._add(
            ExamAnswer(
                attempt_id=attempt.id,
                question_id=question_id,
                selected_option_index=selected,
                is_correct=correct,
                answered_at=answered_at,
            )
        )


@pytest.fixture(scope="function")
def engine():
    """Fresh in-memory SQLite database per test (StaticPool keeps it alive across threads)."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture(scope="function")
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seed(db) -> Seeder:
    return Seeder(db)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(session_factory, clock):
    return build_analytics_service(session_factory, MemoryCacheStore(clock), clock)


@pytest.fixture(scope="function")
def client(service):
    """FastAPI test client wired to the per-test analytics service."""
    app.dependency_overrides[get_analytics_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
