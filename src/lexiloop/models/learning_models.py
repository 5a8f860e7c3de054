"""Domain records for scheduling, calibration and response tracking.

Rows read from the database are validated here, at the boundary, so the
services only ever see well-formed records.
"""
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Optional, Tuple

from lexiloop.models.models import (
    LearnerBaselineRow,
    PracticeSessionRow,
    ResponseMetricRow,
    SpikeEventRow,
    UnitProgressRow,
)


class InvalidRecordError(ValueError):
    """A persisted record failed validation when read in."""


class MetricMode(Enum):
    """Detector mode a response was recorded in."""
    CALIBRATION = "calibration"
    LIVE = "live"


class SpikeResponse(Enum):
    """Remedial response chosen for a spike."""
    REPEAT = "repeat"
    BREAKDOWN = "breakdown"


def new_id() -> str:
    """Generate a record identifier."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timezone-aware columns back naive
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise InvalidRecordError(message)


@dataclass(frozen=True)
class CourseUnit:
    """Course content for one vocabulary unit, as supplied by the content provider."""
    unit_id: str
    seed_id: str
    known_text: str
    known_audio_id: str
    known_duration_ms: int
    target_text: str
    voice1_audio_id: str
    voice1_duration_ms: int
    voice2_audio_id: str
    voice2_duration_ms: int
    components: Tuple[str, ...] = ()

    @property
    def phrase_length(self) -> int:
        """Length of the target phrase in words."""
        return len(self.target_text.split())

    @property
    def can_break_down(self) -> bool:
        return bool(self.components)


@dataclass
class UnitProgress:
    """Fibonacci progress of one vocabulary unit for one learner."""
    learner_id: str
    course_id: str
    unit_id: str
    thread_id: int
    fibonacci_position: int = 0
    skip_number: int = 1
    reps_completed: int = 0
    is_retired: bool = False
    introduced_at: Optional[datetime] = None
    last_practiced_at: Optional[datetime] = None
    practice_mark: Optional[int] = None

    @classmethod
    def from_row(cls, row: UnitProgressRow) -> "UnitProgress":
        _require(bool(row.learner_id), "unit progress without learner")
        _require(bool(row.unit_id), "unit progress without unit")
        _require(row.thread_id is not None and row.thread_id >= 1,
                 f"unit {row.unit_id}: invalid thread {row.thread_id}")
        _require(row.fibonacci_position is not None and row.fibonacci_position >= 0,
                 f"unit {row.unit_id}: invalid position {row.fibonacci_position}")
        _require(row.skip_number is not None and row.skip_number >= 0,
                 f"unit {row.unit_id}: invalid skip number {row.skip_number}")
        return cls(
            learner_id=row.learner_id,
            course_id=row.course_id,
            unit_id=row.unit_id,
            thread_id=row.thread_id,
            fibonacci_position=row.fibonacci_position,
            skip_number=row.skip_number,
            reps_completed=row.reps_completed or 0,
            is_retired=bool(row.is_retired),
            introduced_at=_as_utc(row.introduced_at),
            last_practiced_at=_as_utc(row.last_practiced_at),
            practice_mark=row.practice_mark,
        )

    def apply_to(self, row: UnitProgressRow) -> UnitProgressRow:
        """Copy the mutable fields onto a row."""
        row.learner_id = self.learner_id
        row.course_id = self.course_id
        row.unit_id = self.unit_id
        row.thread_id = self.thread_id
        row.fibonacci_position = self.fibonacci_position
        row.skip_number = self.skip_number
        row.reps_completed = self.reps_completed
        row.is_retired = self.is_retired
        row.introduced_at = self.introduced_at
        row.last_practiced_at = self.last_practiced_at
        row.practice_mark = self.practice_mark
        return row


@dataclass(frozen=True)
class LearnerBaseline:
    """Personal response-time statistics from a calibration window."""
    learner_id: str
    course_id: str
    calibration_items: int
    latency_mean: float
    latency_stddev: float
    duration_delta_mean: float
    duration_delta_stddev: float
    had_timing_data: bool
    calibrated_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=new_id)

    @classmethod
    def from_row(cls, row: LearnerBaselineRow) -> "LearnerBaseline":
        _require(row.calibration_items is not None and row.calibration_items >= 0,
                 f"baseline {row.id}: invalid calibration item count")
        _require(row.latency_mean is not None and row.latency_mean >= 0,
                 f"baseline {row.id}: invalid latency mean")
        _require(row.latency_stddev is not None and row.latency_stddev >= 0,
                 f"baseline {row.id}: invalid latency stddev")
        return cls(
            learner_id=row.learner_id,
            course_id=row.course_id,
            calibration_items=row.calibration_items,
            latency_mean=row.latency_mean,
            latency_stddev=row.latency_stddev,
            duration_delta_mean=row.duration_delta_mean,
            duration_delta_stddev=row.duration_delta_stddev,
            had_timing_data=bool(row.had_timing_data),
            calibrated_at=_as_utc(row.calibrated_at),
            id=row.id,
        )

    def to_row(self) -> LearnerBaselineRow:
        return LearnerBaselineRow(
            id=self.id,
            learner_id=self.learner_id,
            course_id=self.course_id,
            calibration_items=self.calibration_items,
            latency_mean=self.latency_mean,
            latency_stddev=self.latency_stddev,
            duration_delta_mean=self.duration_delta_mean,
            duration_delta_stddev=self.duration_delta_stddev,
            had_timing_data=self.had_timing_data,
            calibrated_at=self.calibrated_at,
        )


@dataclass(frozen=True)
class ResponseMetric:
    """One learner response event."""
    session_id: str
    learner_id: str
    unit_id: str
    response_latency_ms: Optional[float]
    phrase_length: int
    normalized_latency: Optional[float]
    thread_id: int
    triggered_spike: bool
    mode: MetricMode
    timestamp: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=new_id)

    @classmethod
    def from_row(cls, row: ResponseMetricRow) -> "ResponseMetric":
        try:
            mode = MetricMode(row.mode)
        except ValueError as e:
            raise InvalidRecordError(f"metric {row.id}: unknown mode {row.mode!r}") from e
        return cls(
            session_id=row.session_id,
            learner_id=row.learner_id,
            unit_id=row.unit_id,
            response_latency_ms=row.response_latency_ms,
            phrase_length=row.phrase_length,
            normalized_latency=row.normalized_latency,
            thread_id=row.thread_id,
            triggered_spike=bool(row.triggered_spike),
            mode=mode,
            timestamp=_as_utc(row.timestamp),
            id=row.id,
        )

    def to_row(self) -> ResponseMetricRow:
        return ResponseMetricRow(
            id=self.id,
            session_id=self.session_id,
            learner_id=self.learner_id,
            unit_id=self.unit_id,
            timestamp=self.timestamp,
            response_latency_ms=self.response_latency_ms,
            phrase_length=self.phrase_length,
            normalized_latency=self.normalized_latency,
            thread_id=self.thread_id,
            triggered_spike=self.triggered_spike,
            mode=self.mode.value,
        )


@dataclass(frozen=True)
class SpikeEvent:
    """One detected latency anomaly."""
    session_id: str
    learner_id: str
    unit_id: str
    latency: float
    rolling_average: float
    spike_ratio: float
    response: SpikeResponse
    thread_id: int
    timestamp: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=new_id)

    @classmethod
    def from_row(cls, row: SpikeEventRow) -> "SpikeEvent":
        try:
            response = SpikeResponse(row.response)
        except ValueError as e:
            raise InvalidRecordError(f"spike {row.id}: unknown response {row.response!r}") from e
        return cls(
            session_id=row.session_id,
            learner_id=row.learner_id,
            unit_id=row.unit_id,
            latency=row.latency,
            rolling_average=row.rolling_average,
            spike_ratio=row.spike_ratio,
            response=response,
            thread_id=row.thread_id,
            timestamp=_as_utc(row.timestamp),
            id=row.id,
        )

    def to_row(self) -> SpikeEventRow:
        return SpikeEventRow(
            id=self.id,
            session_id=self.session_id,
            learner_id=self.learner_id,
            unit_id=self.unit_id,
            timestamp=self.timestamp,
            latency=self.latency,
            rolling_average=self.rolling_average,
            spike_ratio=self.spike_ratio,
            response=self.response.value,
            thread_id=self.thread_id,
        )


@dataclass
class SessionSummary:
    """Aggregate counters of a practice session."""
    learner_id: str
    course_id: str
    started_at: datetime = field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    items_practiced: int = 0
    spikes_detected: int = 0
    final_rolling_average: Optional[float] = None
    id: str = field(default_factory=new_id)

    @property
    def duration_seconds(self) -> float:
        if self.ended_at is None:
            return 0.0
        return (self.ended_at - self.started_at).total_seconds()

    @classmethod
    def from_row(cls, row: PracticeSessionRow) -> "SessionSummary":
        _require(row.started_at is not None, f"session {row.id}: missing start time")
        return cls(
            learner_id=row.learner_id,
            course_id=row.course_id,
            started_at=_as_utc(row.started_at),
            ended_at=_as_utc(row.ended_at),
            items_practiced=row.items_practiced or 0,
            spikes_detected=row.spikes_detected or 0,
            final_rolling_average=row.final_rolling_average,
            id=row.id,
        )

    def apply_to(self, row: PracticeSessionRow) -> PracticeSessionRow:
        row.id = self.id
        row.learner_id = self.learner_id
        row.course_id = self.course_id
        row.started_at = self.started_at
        row.ended_at = self.ended_at
        row.duration_seconds = self.duration_seconds
        row.items_practiced = self.items_practiced
        row.spikes_detected = self.spikes_detected
        row.final_rolling_average = self.final_rolling_average
        return row


@dataclass
class LearnerResponse:
    """What playback reports back after a cycle was presented."""
    latency_ms: Optional[float]
    correct: bool
    duration_delta_ms: Optional[float] = None
