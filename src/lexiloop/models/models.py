"""Database models for the learning engine."""
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from lexiloop.models.base import Base, TimestampMixin


class UnitProgressRow(Base, TimestampMixin):
    """Per-learner Fibonacci progress of one vocabulary unit."""

    __tablename__ = "unit_progress"
    __table_args__ = (
        UniqueConstraint("learner_id", "course_id", "unit_id", name="uq_unit_progress_learner_unit"),
    )

    id = Column(Integer, primary_key=True)
    learner_id = Column(String, nullable=False, index=True)
    course_id = Column(String, nullable=False)
    unit_id = Column(String, nullable=False)
    thread_id = Column(Integer, nullable=False)
    fibonacci_position = Column(Integer, nullable=False, default=0)
    skip_number = Column(Integer, nullable=False, default=1)
    reps_completed = Column(Integer, nullable=False, default=0)
    is_retired = Column(Boolean, nullable=False, default=False)
    introduced_at = Column(DateTime(timezone=True))
    last_practiced_at = Column(DateTime(timezone=True))
    practice_mark = Column(Integer)  # thread practice counter at last practice


class LearnerBaselineRow(Base, TimestampMixin):
    """Calibrated latency baseline. Superseded, never updated, on recalibration."""

    __tablename__ = "learner_baselines"

    id = Column(String, primary_key=True)
    learner_id = Column(String, nullable=False, index=True)
    course_id = Column(String, nullable=False)
    calibration_items = Column(Integer, nullable=False)
    latency_mean = Column(Float, nullable=False)
    latency_stddev = Column(Float, nullable=False)
    duration_delta_mean = Column(Float, nullable=False)
    duration_delta_stddev = Column(Float, nullable=False)
    had_timing_data = Column(Boolean, nullable=False)
    calibrated_at = Column(DateTime(timezone=True), nullable=False)
    superseded_at = Column(DateTime(timezone=True))


class PracticeSessionRow(Base, TimestampMixin):
    """Summary row of one practice session."""

    __tablename__ = "practice_sessions"

    id = Column(String, primary_key=True)
    learner_id = Column(String, nullable=False, index=True)
    course_id = Column(String, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    ended_at = Column(DateTime(timezone=True))
    duration_seconds = Column(Float, default=0.0)
    items_practiced = Column(Integer, default=0)
    spikes_detected = Column(Integer, default=0)
    final_rolling_average = Column(Float)

    # Relationships
    metrics = relationship("ResponseMetricRow", back_populates="session")
    spikes = relationship("SpikeEventRow", back_populates="session")


class ResponseMetricRow(Base, TimestampMixin):
    """Append-only log of learner responses."""

    __tablename__ = "response_metrics"

    id = Column(String, primary_key=True)
    session_id = Column(String, ForeignKey("practice_sessions.id"), nullable=False, index=True)
    learner_id = Column(String, nullable=False)
    unit_id = Column(String, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    response_latency_ms = Column(Float)
    phrase_length = Column(Integer, nullable=False)
    normalized_latency = Column(Float)
    thread_id = Column(Integer, nullable=False)
    triggered_spike = Column(Boolean, nullable=False, default=False)
    mode = Column(String, nullable=False)  # calibration, live

    # Relationships
    session = relationship("PracticeSessionRow", back_populates="metrics")


class SpikeEventRow(Base, TimestampMixin):
    """Append-only log of detected latency spikes."""

    __tablename__ = "spike_events"

    id = Column(String, primary_key=True)
    session_id = Column(String, ForeignKey("practice_sessions.id"), nullable=False, index=True)
    learner_id = Column(String, nullable=False)
    unit_id = Column(String, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    latency = Column(Float, nullable=False)
    rolling_average = Column(Float, nullable=False)
    spike_ratio = Column(Float, nullable=False)
    response = Column(String, nullable=False)  # repeat, breakdown
    thread_id = Column(Integer, nullable=False)

    # Relationships
    session = relationship("PracticeSessionRow", back_populates="spikes")
