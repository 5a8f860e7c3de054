"""Test configuration."""
import os
from typing import Callable, Generator

import pytest
from faker import Faker

# Set test environment before any imports
os.environ["ENV"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite://")

# Import after environment setup
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from lexiloop.config import Settings
from lexiloop.models.base import create_db_engine, init_db
from lexiloop.models.cycle_models import CachedAudio
from lexiloop.models.learning_models import CourseUnit

fake = Faker()


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create a fresh in-memory database session for each test."""
    engine = create_db_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    db = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with a short calibration window and fast retries."""
    test_settings = Settings()
    test_settings.calibration.min_items = 3
    test_settings.calibration.max_items = 5
    test_settings.persistence.base_delay_seconds = 0
    test_settings.session.fetch_timeout_seconds = 1.0
    test_settings.validate()
    return test_settings


@pytest.fixture
def make_unit() -> Callable[..., CourseUnit]:
    """Factory for course units with distinct audio ids."""
    def _make(unit_id: str = None, **overrides) -> CourseUnit:
        unit_id = unit_id or f"unit-{fake.unique.random_int(max=10**9)}"
        fields = dict(
            unit_id=unit_id,
            seed_id=f"seed-{unit_id}",
            known_text=fake.word(),
            known_audio_id=f"{unit_id}-known",
            known_duration_ms=800,
            target_text=fake.word(),
            voice1_audio_id=f"{unit_id}-v1",
            voice1_duration_ms=1200,
            voice2_audio_id=f"{unit_id}-v2",
            voice2_duration_ms=1300,
        )
        fields.update(overrides)
        return CourseUnit(**fields)

    return _make


@pytest.fixture
def cache_entry() -> Callable[[str], CachedAudio]:
    """Factory for cache entries."""
    def _entry(audio_id: str) -> CachedAudio:
        return CachedAudio(audio_id=audio_id, duration_ms=1000, checksum=fake.sha256())

    return _entry
