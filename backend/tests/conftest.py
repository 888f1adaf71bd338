from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import sessionswap.main as main_module
from sessionswap.api.deps import get_clock, get_db
from sessionswap.core.config import Settings
from sessionswap.db.base import Base
from sessionswap.main import app
from sessionswap.models import (
    Enrollment,
    EnrollmentStatus,
    Meeting,
    MeetingStatus,
    MeetingTemplate,
    TemplateStatus,
    Weekday,
)
from sessionswap.services.locks import KeyedLockRegistry, clear_lock_registry
from sessionswap.services.store import SqlAlchemyStore
from sessionswap.services.substitution import SubstitutionService

# Thursday.
NOW = datetime(2026, 3, 5, 10, 0, tzinfo=timezone.utc)
TUTOR = "tutor-1"
SUBJECT = "Physics"


class FrozenClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class Seeder:
    """Inserts committed rows so services and routes see them as existing state."""

    def __init__(self, session) -> None:
        self.session = session
        self._codes = 0

    def template(
        self,
        weekday: str,
        start_time: str = "18:00",
        *,
        duration_minutes: int = 90,
        capacity: int = 10,
        occupancy: int = 0,
        status: TemplateStatus | None = None,
        tutor_id: str = TUTOR,
        subject: str = SUBJECT,
        code: str | None = None,
    ) -> MeetingTemplate:
        self._codes += 1
        if status is None:
            status = TemplateStatus.full if occupancy >= capacity else TemplateStatus.active
        template = MeetingTemplate(
            code=code or f"C{self._codes:02d}",
            tutor_id=tutor_id,
            subject=subject,
            weekday=Weekday(weekday),
            start_time=start_time,
            duration_minutes=duration_minutes,
            capacity=capacity,
            occupancy=occupancy,
            status=status,
        )
        self.session.add(template)
        self.session.commit()
        return template

    def meeting(
        self,
        start_at: datetime,
        *,
        duration_minutes: int = 60,
        student_ids: list[str] | None = None,
        template_id: str | None = None,
        status: MeetingStatus = MeetingStatus.confirmed,
        tutor_id: str = TUTOR,
        subject: str = SUBJECT,
    ) -> Meeting:
        meeting = Meeting(
            tutor_id=tutor_id,
            subject=subject,
            start_at=start_at,
            end_at=start_at + timedelta(minutes=duration_minutes),
            duration_minutes=duration_minutes,
            student_ids=list(student_ids or []),
            template_id=template_id,
            status=status,
        )
        self.session.add(meeting)
        self.session.commit()
        return meeting

    def enroll(self, template: MeetingTemplate, student_id: str) -> Enrollment:
        enrollment = Enrollment(
            student_id=student_id,
            template_id=template.id,
            status=EnrollmentStatus.active,
            enrolled_at=NOW - timedelta(days=30),
        )
        template.occupancy += 1
        if template.occupancy >= template.capacity:
            template.status = TemplateStatus.full
        self.session.add(enrollment)
        self.session.commit()
        return enrollment


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def seed(db_session):
    return Seeder(db_session)


@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def settings():
    return Settings(_env_file=None)


@pytest.fixture()
def store(db_session):
    return SqlAlchemyStore(db_session)


@pytest.fixture()
def service(store, settings, clock):
    return SubstitutionService(store, locks=KeyedLockRegistry(), settings=settings, clock=clock)


@pytest.fixture()
def client(engine, session_factory, clock, monkeypatch):
    clear_lock_registry()
    # Keep the startup schema bootstrap off the configured database file.
    monkeypatch.setattr(main_module, "engine", engine)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    clear_lock_registry()
