"""Persistence of progress, response logs, baselines and session summaries."""
import asyncio
import logging
from datetime import UTC, datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy import and_
from sqlalchemy.orm import Session

from lexiloop import monitoring
from lexiloop.config import Settings, settings as default_settings
from lexiloop.models.learning_models import (
    LearnerBaseline,
    ResponseMetric,
    SessionSummary,
    SpikeEvent,
    UnitProgress,
)
from lexiloop.models.models import (
    LearnerBaselineRow,
    PracticeSessionRow,
    ResponseMetricRow,
    SpikeEventRow,
    UnitProgressRow,
)

logger = logging.getLogger(__name__)


class ProgressStore:
    """Store for the state owned by the scheduling core."""

    def __init__(self, db: Session):
        """Initialize the store with a database session."""
        self.db = db

    def rollback(self) -> None:
        self.db.rollback()

    # Unit progress

    def save_progress(self, progress: UnitProgress) -> None:
        """Insert or update a unit's progress. Retirement is never undone."""
        row = (
            self.db.query(UnitProgressRow)
            .filter(
                and_(
                    UnitProgressRow.learner_id == progress.learner_id,
                    UnitProgressRow.course_id == progress.course_id,
                    UnitProgressRow.unit_id == progress.unit_id,
                )
            )
            .first()
        )
        if row is None:
            row = UnitProgressRow()
            self.db.add(row)
        elif row.is_retired and not progress.is_retired:
            raise ValueError(f"Unit {progress.unit_id} is retired for learner {progress.learner_id}")
        progress.apply_to(row)
        self.db.commit()

    def load_progress(self, learner_id: str, course_id: str) -> List[UnitProgress]:
        rows = (
            self.db.query(UnitProgressRow)
            .filter(
                and_(
                    UnitProgressRow.learner_id == learner_id,
                    UnitProgressRow.course_id == course_id,
                )
            )
            .order_by(UnitProgressRow.id)
            .all()
        )
        return [UnitProgress.from_row(row) for row in rows]

    # Append-only logs

    def append_metric(self, metric: ResponseMetric) -> None:
        self.db.add(metric.to_row())
        self.db.commit()

    def append_spike(self, event: SpikeEvent) -> None:
        self.db.add(event.to_row())
        self.db.commit()

    def metrics_for_session(self, session_id: str) -> List[ResponseMetric]:
        rows = (
            self.db.query(ResponseMetricRow)
            .filter(ResponseMetricRow.session_id == session_id)
            .order_by(ResponseMetricRow.timestamp)
            .all()
        )
        return [ResponseMetric.from_row(row) for row in rows]

    def spikes_for_session(self, session_id: str) -> List[SpikeEvent]:
        rows = (
            self.db.query(SpikeEventRow)
            .filter(SpikeEventRow.session_id == session_id)
            .order_by(SpikeEventRow.timestamp)
            .all()
        )
        return [SpikeEvent.from_row(row) for row in rows]

    # Baselines

    def save_baseline(self, baseline: LearnerBaseline) -> None:
        """Store a new baseline, superseding the current one."""
        now = datetime.now(UTC)
        current_rows = (
            self.db.query(LearnerBaselineRow)
            .filter(
                and_(
                    LearnerBaselineRow.learner_id == baseline.learner_id,
                    LearnerBaselineRow.course_id == baseline.course_id,
                    LearnerBaselineRow.superseded_at.is_(None),
                )
            )
            .all()
        )
        for row in current_rows:
            row.superseded_at = now
        self.db.add(baseline.to_row())
        self.db.commit()

    def current_baseline(self, learner_id: str, course_id: str) -> Optional[LearnerBaseline]:
        row = (
            self.db.query(LearnerBaselineRow)
            .filter(
                and_(
                    LearnerBaselineRow.learner_id == learner_id,
                    LearnerBaselineRow.course_id == course_id,
                    LearnerBaselineRow.superseded_at.is_(None),
                )
            )
            .order_by(LearnerBaselineRow.calibrated_at.desc())
            .first()
        )
        return LearnerBaseline.from_row(row) if row else None

    # Sessions

    def save_session(self, summary: SessionSummary) -> None:
        row = self.db.query(PracticeSessionRow).filter(PracticeSessionRow.id == summary.id).first()
        if row is None:
            row = PracticeSessionRow()
            self.db.add(row)
        summary.apply_to(row)
        self.db.commit()

    def get_session(self, session_id: str) -> Optional[SessionSummary]:
        row = self.db.query(PracticeSessionRow).filter(PracticeSessionRow.id == session_id).first()
        return SessionSummary.from_row(row) if row else None


WriteFn = Callable[[ProgressStore], None]


class PersistenceWriter:
    """Background writer so persistence never blocks the learner.

    Writes run in submission order. A failed write is rolled back and
    retried with exponential backoff, then dropped with an error log.
    """

    def __init__(self, store: ProgressStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = (settings or default_settings).persistence
        self.queue: asyncio.Queue[Tuple[str, WriteFn]] = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None
        self.running = False
        self.dropped = 0

    async def start(self) -> None:
        """Start the writer task."""
        if self.running:
            return
        self.running = True
        self.task = asyncio.create_task(self._run())

    def submit(self, entity: str, write: WriteFn) -> None:
        """Queue a write without waiting for it."""
        self.queue.put_nowait((entity, write))

    async def _run(self) -> None:
        while True:
            entity, write = await self.queue.get()
            try:
                await self._write(entity, write)
            finally:
                self.queue.task_done()

    async def _write(self, entity: str, write: WriteFn) -> None:
        max_retries = self.settings.max_retries
        for attempt in range(max_retries + 1):
            try:
                write(self.store)
                return
            except Exception as e:
                self.store.rollback()
                if attempt >= max_retries:
                    self.dropped += 1
                    monitoring.persistence_errors.labels(entity=entity).inc()
                    logger.error("Dropping %s write after %d attempts: %s", entity, attempt + 1, e)
                    return
                delay = self.settings.base_delay_seconds * 2 ** attempt
                logger.warning("Error writing %s (attempt %d), retrying in %.2fs: %s", entity, attempt + 1, delay, e)
                await asyncio.sleep(delay)

    async def flush(self) -> None:
        """Wait until every queued write has been handled."""
        if not self.running:
            await self.start()
        await self.queue.join()

    async def stop(self) -> None:
        """Flush pending writes and stop the writer task."""
        if not self.running:
            return
        await self.queue.join()
        self.running = False
        if self.task is not None:
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)
            self.task = None
