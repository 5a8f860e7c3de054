"""Fibonacci spaced-repetition scheduling of vocabulary units.

Each unit walks the Fibonacci sequence 1, 1, 2, 3, 5, 8, 13, 21, ... One
successful attempt moves it one position forward, and the value at the new
position is its skip number: how many other units of its thread must be
practiced before it is due again. Failed or spiked attempts keep the unit
where it is. A unit retires for good once its skip number reaches the
value at the retirement position (21).

Units are card-dealt across a fixed number of threads, and next_due()
rotates between threads so vocabulary families interleave.
"""
import logging
from collections import defaultdict
from datetime import UTC, datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from lexiloop import monitoring
from lexiloop.config import Settings, settings as default_settings
from lexiloop.models.learning_models import CourseUnit, UnitProgress

logger = logging.getLogger(__name__)

_NEVER = datetime.min.replace(tzinfo=UTC)


class SchedulerStateError(RuntimeError):
    """Scheduler state is corrupt and cannot be repaired."""


class UnitState(Enum):
    """Lifecycle of a unit for one learner."""
    NOT_INTRODUCED = "not_introduced"
    ACTIVE = "active"
    RETIRED = "retired"


class FibonacciScheduler:
    """Per learner and course scheduler over UnitProgress records."""

    def __init__(
        self,
        learner_id: str,
        course_id: str,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.learner_id = learner_id
        self.course_id = course_id
        self.settings = (settings or default_settings).scheduler
        self.clock = clock
        self.sequence = self.settings.fibonacci_sequence
        self.terminal_position = self.settings.retirement_position
        self.terminal_skip = self.settings.terminal_skip_number

        self.progress: Dict[str, UnitProgress] = {}
        self.unit_threads: Dict[str, int] = {}
        self.thread_units: Dict[int, List[str]] = defaultdict(list)
        self.practice_counts: Dict[int, int] = defaultdict(int)
        self.excluded: set[str] = set()
        self.last_thread = 0

    # Loading

    def load_units(self, units: Iterable[CourseUnit]) -> None:
        """Card-deal units across threads in course order."""
        for unit in units:
            if unit.unit_id in self.unit_threads:
                continue
            thread_id = len(self.unit_threads) % self.settings.thread_count + 1
            self.unit_threads[unit.unit_id] = thread_id
            self.thread_units[thread_id].append(unit.unit_id)

    def load_progress(self, records: Iterable[UnitProgress]) -> None:
        """Restore persisted progress, repairing what can be repaired."""
        for record in records:
            existing = self.progress.get(record.unit_id)
            if existing is not None and existing.is_retired and not record.is_retired:
                raise SchedulerStateError(f"Unit {record.unit_id} cannot be un-retired")
            self._check_invariants(record)
            self.progress[record.unit_id] = record
            dealt_thread = self.unit_threads.get(record.unit_id)
            if dealt_thread != record.thread_id:
                # Persisted thread assignment wins over this session's deal
                if dealt_thread is not None:
                    self.thread_units[dealt_thread].remove(record.unit_id)
                self.unit_threads[record.unit_id] = record.thread_id
                self.thread_units[record.thread_id].append(record.unit_id)
            if record.practice_mark is not None:
                self.practice_counts[record.thread_id] = max(
                    self.practice_counts[record.thread_id], record.practice_mark
                )

    def _check_invariants(self, progress: UnitProgress) -> None:
        if progress.fibonacci_position < 0 or progress.skip_number < 0:
            monitoring.scheduler_invariant_violations.inc()
            raise SchedulerStateError(
                f"Unit {progress.unit_id} has negative position or skip number "
                f"({progress.fibonacci_position}, {progress.skip_number})"
            )
        if progress.is_retired:
            return
        if progress.skip_number >= self.terminal_skip or progress.fibonacci_position >= self.terminal_position:
            monitoring.scheduler_invariant_violations.inc()
            logger.error(
                "Unit %s for learner %s reached skip number %d (position %d) without retiring, retiring it",
                progress.unit_id, progress.learner_id, progress.skip_number, progress.fibonacci_position,
            )
            progress.fibonacci_position = min(progress.fibonacci_position, self.terminal_position)
            progress.skip_number = self.terminal_skip
            self._retire(progress)

    # Queries

    def state_of(self, unit_id: str) -> UnitState:
        progress = self.progress.get(unit_id)
        if progress is None:
            return UnitState.NOT_INTRODUCED
        return UnitState.RETIRED if progress.is_retired else UnitState.ACTIVE

    def progress_for(self, unit_id: str) -> Optional[UnitProgress]:
        return self.progress.get(unit_id)

    def all_progress(self) -> List[UnitProgress]:
        return list(self.progress.values())

    def elapsed_since(self, progress: UnitProgress) -> Optional[int]:
        """Practices in the unit's thread since it was last seen, None if never practiced."""
        if progress.practice_mark is None:
            return None
        return self.practice_counts[progress.thread_id] - progress.practice_mark

    def is_due(self, progress: UnitProgress) -> bool:
        if progress.is_retired or progress.unit_id in self.excluded:
            return False
        elapsed = self.elapsed_since(progress)
        return elapsed is None or elapsed >= progress.skip_number

    def exclude(self, unit_id: str) -> None:
        """Keep a unit out of selection for the rest of this scheduler's life."""
        self.excluded.add(unit_id)

    def include(self, unit_id: str) -> None:
        """Return an excluded unit to selection."""
        self.excluded.discard(unit_id)

    def _due_in_thread(self, thread_id: int) -> List[UnitProgress]:
        due = [
            self.progress[unit_id]
            for unit_id in self.thread_units.get(thread_id, [])
            if unit_id in self.progress and self.is_due(self.progress[unit_id])
        ]
        return sorted(
            due,
            key=lambda p: (p.last_practiced_at or _NEVER, p.fibonacci_position, p.unit_id),
        )

    def _next_new_in_thread(self, thread_id: int) -> Optional[str]:
        for unit_id in self.thread_units.get(thread_id, []):
            if unit_id not in self.progress and unit_id not in self.excluded:
                return unit_id
        return None

    def next_due(self) -> Optional[str]:
        """Pick the next unit to practice, introducing a new one when a thread has nothing due."""
        thread_count = self.settings.thread_count
        for offset in range(1, thread_count + 1):
            thread_id = (self.last_thread + offset - 1) % thread_count + 1
            due = self._due_in_thread(thread_id)
            if due:
                self.last_thread = thread_id
                return due[0].unit_id
            new_unit = self._next_new_in_thread(thread_id)
            if new_unit is not None:
                self.last_thread = thread_id
                self.introduce(new_unit)
                return new_unit
        return None

    # Updates

    def introduce(self, unit_id: str) -> UnitProgress:
        """Create progress for a unit on first exposure."""
        if unit_id in self.progress:
            return self.progress[unit_id]
        thread_id = self.unit_threads.get(unit_id)
        if thread_id is None:
            thread_id = len(self.unit_threads) % self.settings.thread_count + 1
            self.unit_threads[unit_id] = thread_id
            self.thread_units[thread_id].append(unit_id)
        progress = UnitProgress(
            learner_id=self.learner_id,
            course_id=self.course_id,
            unit_id=unit_id,
            thread_id=thread_id,
            fibonacci_position=0,
            skip_number=self.sequence[0],
            introduced_at=self.clock(),
        )
        self.progress[unit_id] = progress
        logger.debug("Introduced unit %s in thread %d", unit_id, thread_id)
        return progress

    def record_attempt(self, unit_id: str, success: bool, spiked: bool = False) -> UnitProgress:
        """Update a unit's progress after a practice attempt.

        Success advances one Fibonacci position. Failure or a spike keeps
        the position and skip number unchanged.
        """
        progress = self.progress.get(unit_id) or self.introduce(unit_id)
        if progress.is_retired:
            raise SchedulerStateError(f"Unit {unit_id} is retired and cannot be practiced")

        self.practice_counts[progress.thread_id] += 1
        progress.practice_mark = self.practice_counts[progress.thread_id]
        progress.last_practiced_at = self.clock()

        if success and not spiked:
            progress.reps_completed += 1
            progress.fibonacci_position = min(progress.fibonacci_position + 1, self.terminal_position)
            progress.skip_number = self.sequence[progress.fibonacci_position]
            if progress.skip_number >= self.terminal_skip:
                self._retire(progress)

        self._check_invariants(progress)
        return progress

    def _retire(self, progress: UnitProgress) -> None:
        if progress.is_retired:
            return
        progress.is_retired = True
        monitoring.units_retired.inc()
        logger.info("Retired unit %s for learner %s", progress.unit_id, progress.learner_id)

    def stats(self) -> Dict[str, float]:
        all_progress = self.all_progress()
        active = [p for p in all_progress if not p.is_retired]
        return {
            "total": len(all_progress),
            "active": len(active),
            "retired": len(all_progress) - len(active),
            "due": sum(1 for p in active if self.is_due(p)),
            "average_position": (
                sum(p.fibonacci_position for p in active) / len(active) if active else 0.0
            ),
        }
