"""Pytest bootstrap for project imports and shared database fixtures."""

from pathlib import Path
import sys

# Ensure project root is on sys.path so `import timebank` works
PROJECT_ROOT = Path(__file__).resolve().parents[1]
project_root_str = str(PROJECT_ROOT)
if project_root_str not in sys.path:
    sys.path.insert(0, project_root_str)

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from timebank import models  # noqa: F401
from timebank.database import Base
from timebank.services import ledger_service, notification_service
from timebank.services.session_lifecycle import SessionTerms

TEACHER_ID = 101
STUDENT_ID = 202
OUTSIDER_ID = 303

# Fixed clock: booking at 08:00, session scheduled for 10:00
BOOKED_AT = datetime(2030, 1, 7, 8, 0, 0)
SCHEDULED_AT = datetime(2030, 1, 7, 10, 0, 0)


@pytest.fixture()
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def file_session_factory(tmp_path):
    """Two independent connections to one on-disk database."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'timebank-test.db'}",
        connect_args={"check_same_thread": False, "timeout": 5},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture(autouse=True)
def _reset_subscribers():
    notification_service.clear_subscribers()
    yield
    notification_service.clear_subscribers()


@pytest.fixture()
def funded(db):
    """Teacher and student accounts; the student starts with 10 credits."""
    ledger_service.open_account(db, TEACHER_ID, 0)
    ledger_service.open_account(db, STUDENT_ID, 10)
    return db


def make_terms(**overrides) -> SessionTerms:
    values = dict(
        teacher_id=TEACHER_ID,
        student_id=STUDENT_ID,
        skill_reference="python-basics",
        duration_hours=2,
        credit_amount=2,
        scheduled_at=SCHEDULED_AT,
    )
    values.update(overrides)
    return SessionTerms(**values)


def minutes_from_start(minutes: int) -> datetime:
    return SCHEDULED_AT + timedelta(minutes=minutes)
