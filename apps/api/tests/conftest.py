"""
Pytest configuration and fixtures

Every test gets its own SQLite database file. Store calls run in worker
threads, so each session checks out its own connection from the pool.
Nothing talks to a real LLM: FakeGateway answers with scripted summaries.
"""
import pytest
import sys
import os
from datetime import datetime

# Must be set before core.config / core.database are imported.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_FORMAT", "text")

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from core.config import Settings
from core.database import Base
from models import JournalEntry
from services.experiment_store import ExperimentStore
from services.journal_store import JournalStore
from tests.experiment_helpers import ATHLETE_ID, JOURNAL, SPARSE_ATHLETE_ID, FakeGateway


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'experiments.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def test_settings():
    """Credentials for openai, anthropic and deepseek; google deliberately unset."""
    return Settings(
        DATABASE_URL="sqlite://",
        OPENAI_API_KEY="sk-test",
        ANTHROPIC_API_KEY="sk-ant-test",
        DEEPSEEK_API_KEY="ds-test",
        GOOGLE_AI_API_KEY=None,
    )


@pytest.fixture
def fake_gateway(test_settings):
    return FakeGateway(test_settings)


@pytest.fixture
def store(session_factory):
    return ExperimentStore(session_factory)


@pytest.fixture
def journal(session_factory):
    return JournalStore(session_factory)


@pytest.fixture
def journal_entries(session_factory):
    """
    Seed one week of entries for ATHLETE_ID and two for SPARSE_ATHLETE_ID.

    Returns {"2026-01-06": entry_id, ...} for ATHLETE_ID.
    """
    db = session_factory()
    try:
        rows = [
            JournalEntry(
                athlete_id=ATHLETE_ID,
                entry_date=entry_date,
                emotional_state=emotional,
                session_reflection=reflection,
                mental_barriers=barriers,
                is_flagged="shin" in reflection.lower(),
            )
            for entry_date, emotional, reflection, barriers in JOURNAL
        ]
        rows += [
            JournalEntry(athlete_id=SPARSE_ATHLETE_ID, entry_date=datetime(2026, 1, 5, 7, 0),
                         emotional_state="Fine", session_reflection="Easy run", mental_barriers="None"),
            JournalEntry(athlete_id=SPARSE_ATHLETE_ID, entry_date=datetime(2026, 1, 6, 7, 0),
                         emotional_state="Okay", session_reflection="Short run", mental_barriers="None"),
        ]
        db.add_all(rows)
        db.commit()
        return {row.entry_date.date().isoformat(): row.id for row in rows if row.athlete_id == ATHLETE_ID}
    finally:
        db.close()
