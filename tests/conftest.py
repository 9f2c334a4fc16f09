"""
Pytest configuration and shared fixtures.
"""

from datetime import date, datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db import Base
from models import Gym, User, ROLE_ATHLETE, ROLE_COACH


# Monday 2 March 2026, before the 07:00 sessions used throughout the tests
NOW = datetime(2026, 3, 1, 12, 0)
MONDAY = date(2026, 3, 2)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()


def _add(db, obj):
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@pytest.fixture
def gym(db):
    return _add(db, Gym(name="Titans"))


@pytest.fixture
def other_gym(db):
    return _add(db, Gym(name="Rivals"))


@pytest.fixture
def coach(db, gym):
    return _add(db, User(email="coach@example.com", name="Coach", gym_id=gym.id, role=ROLE_COACH))


@pytest.fixture
def athlete(db, gym):
    return _add(db, User(email="ali@example.com", name="Ali", gym_id=gym.id, role=ROLE_ATHLETE))


@pytest.fixture
def second_athlete(db, gym):
    return _add(db, User(email="jack@example.com", name="Jack", gym_id=gym.id, role=ROLE_ATHLETE))


@pytest.fixture
def event_fields():
    """Fields for the weekly Monday morning practice."""
    return {
        "title": "Morning Practice",
        "description": "Conditioning and drills",
        "location": "Main hall",
        "start_time": "07:00",
        "end_time": "08:00",
        "start_date": MONDAY,
        "recurrence_rule": "FREQ=WEEKLY;BYDAY=MO",
        "recurrence_end_date": None,
        "recurrence_count": None,
        "reminder_days": [1],
    }
