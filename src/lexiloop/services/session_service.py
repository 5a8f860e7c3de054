"""Orchestration of one practice session."""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from lexiloop import monitoring
from lexiloop.config import Settings, settings as default_settings
from lexiloop.models.cycle_models import Cycle
from lexiloop.models.learning_models import (
    CourseUnit,
    LearnerBaseline,
    LearnerResponse,
    MetricMode,
    ResponseMetric,
    SessionSummary,
    SpikeEvent,
    SpikeResponse,
    UnitProgress,
)
from lexiloop.services.audio_cache import AudioCacheIndex, AudioFetcher, AudioRegistry
from lexiloop.services.audio_validator import validate_cycle, validate_session
from lexiloop.services.content_provider import CourseContentProvider
from lexiloop.services.cycle_assembler import CycleAssembler, CycleAssemblyError, classify_cycle
from lexiloop.services.progress_scheduler import FibonacciScheduler, UnitState
from lexiloop.services.progress_store import PersistenceWriter, ProgressStore
from lexiloop.services.spike_detector import Detection, SpikeDetector

logger = logging.getLogger(__name__)

PresentFn = Callable[[Cycle], Awaitable[Optional[LearnerResponse]]]


@dataclass(frozen=True)
class PresentedCycle:
    """A cycle cleared for playback."""
    cycle: Cycle
    unit: CourseUnit
    thread_id: int
    remedial: Optional[SpikeResponse] = None


@dataclass(frozen=True)
class ResponseOutcome:
    """What happened after a learner responded."""
    metric: ResponseMetric
    progress: UnitProgress
    detection: Detection
    spike: Optional[SpikeEvent] = None


class SessionOrchestrator:
    """Drives one learner through one practice session.

    Only this object mutates scheduler and detector state, one response at a
    time. Audio fetches and persistence run in the background.
    """

    def __init__(
        self,
        learner_id: str,
        course_id: str,
        content: CourseContentProvider,
        cache: AudioCacheIndex,
        fetcher: Optional[AudioFetcher] = None,
        scheduler: Optional[FibonacciScheduler] = None,
        detector: Optional[SpikeDetector] = None,
        assembler: Optional[CycleAssembler] = None,
        store: Optional[ProgressStore] = None,
        writer: Optional[PersistenceWriter] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or default_settings
        self.learner_id = learner_id
        self.course_id = course_id
        self.content = content
        self.cache = cache
        self.fetcher = fetcher
        self.registry = fetcher.registry if fetcher is not None else AudioRegistry()
        self.scheduler = scheduler or FibonacciScheduler(learner_id, course_id, self.settings)
        self.detector = detector or SpikeDetector(learner_id, course_id, settings=self.settings)
        self.assembler = assembler or CycleAssembler(self.registry, self.settings)
        self.store = store
        self.writer = writer or (PersistenceWriter(store, self.settings) if store is not None else None)

        self.session = SessionSummary(learner_id=learner_id, course_id=course_id)
        self.units: Dict[str, CourseUnit] = {}
        self.current: Optional[PresentedCycle] = None
        self.remedial: Deque[Tuple[str, SpikeResponse]] = deque()
        self.skipped: List[str] = []  # malformed content
        self.deferred: List[str] = []  # audio never became ready
        self._deferred_cycles: Dict[str, Cycle] = {}
        self.live_items = 0
        self.started = False
        self.ended = False
        self._stop = asyncio.Event()

    async def start(self) -> None:
        """Open the session: load content, progress and baseline."""
        if self.started:
            return
        self.started = True
        self.session.started_at = datetime.now(UTC)
        monitoring.active_sessions.inc()

        units = self.content.units(self.course_id)
        self.units = {unit.unit_id: unit for unit in units}
        self.scheduler.load_units(units)

        if self.store is not None:
            self.scheduler.load_progress(self.store.load_progress(self.learner_id, self.course_id))
            if self.detector.baseline is None:
                baseline = self.store.current_baseline(self.learner_id, self.course_id)
                if baseline is not None:
                    self.detector.use_baseline(baseline)
        if self.detector.baseline is None:
            self.detector.start_calibration()

        if self.writer is not None:
            await self.writer.start()
            opened = replace(self.session)
            self._persist("session", lambda store: store.save_session(opened))

        logger.info(
            "Started session %s for learner %s on %s (%d units, detector %s)",
            self.session.id, self.learner_id, self.course_id, len(units), self.detector.state.value,
        )

    def stop(self) -> None:
        """External stop signal."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _limit_reached(self) -> bool:
        max_items = self.settings.session.max_items
        return bool(max_items) and self.session.items_practiced >= max_items

    def _pick(self) -> Tuple[Optional[str], Optional[SpikeResponse]]:
        while self.remedial:
            unit_id, response = self.remedial.popleft()
            if unit_id in self.scheduler.excluded:
                continue
            if self.scheduler.state_of(unit_id) == UnitState.RETIRED:
                continue
            return unit_id, response
        return self.scheduler.next_due(), None

    def _audio_urls(self, unit: CourseUnit) -> Dict[str, str]:
        urls = {}
        for audio_id in (unit.known_audio_id, unit.voice1_audio_id, unit.voice2_audio_id):
            url = self.content.audio_url(audio_id) if audio_id else None
            if url:
                urls[audio_id] = url
        return urls

    async def _ensure_audio(self, cycle: Cycle) -> bool:
        """Fetch missing audio and re-validate until ready or out of attempts."""
        result = validate_cycle(cycle, self.cache)
        attempts = 0
        while not result.ready:
            monitoring.audio_missing.inc(len(result.missing))
            if self.fetcher is None or attempts >= self.settings.session.max_fetch_attempts:
                return False
            logger.info("Cycle %s is missing audio %s, fetching", cycle.id, list(result.missing))
            self.fetcher.request(result.missing)
            await self.fetcher.wait(result.missing, timeout=self.settings.session.fetch_timeout_seconds)
            attempts += 1
            result = validate_cycle(cycle, self.cache)
        return True

    async def _readmit_deferred(self) -> bool:
        """Return deferred units to selection once their audio has arrived."""
        if not self._deferred_cycles:
            return False
        if self.fetcher is not None:
            missing = validate_session(self._deferred_cycles.values(), self.cache).missing
            await self.fetcher.wait(missing, timeout=self.settings.session.fetch_timeout_seconds)

        readmitted = [
            unit_id for unit_id, cycle in self._deferred_cycles.items()
            if validate_cycle(cycle, self.cache).ready
        ]
        for unit_id in readmitted:
            del self._deferred_cycles[unit_id]
            self.deferred.remove(unit_id)
            self.scheduler.include(unit_id)
        if readmitted:
            logger.info("Audio arrived for deferred units %s", readmitted)
        return bool(readmitted)

    async def next_cycle(self) -> Optional[PresentedCycle]:
        """Next cycle whose audio is fully cached, or None when the session is over."""
        if not self.started:
            await self.start()
        while not self.stopped and not self._limit_reached():
            unit_id, remedial = self._pick()
            if unit_id is None:
                if await self._readmit_deferred():
                    continue
                logger.info("No units due for learner %s on %s", self.learner_id, self.course_id)
                return None

            unit = self.units.get(unit_id)
            if unit is None:
                logger.warning("Unit %s has progress but no course content, skipping", unit_id)
                self.scheduler.exclude(unit_id)
                self.skipped.append(unit_id)
                continue

            progress = self.scheduler.progress_for(unit_id)
            cycle_type = classify_cycle(progress, self.scheduler.settings.review_position)
            try:
                cycle = self.assembler.assemble(unit, cycle_type, self._audio_urls(unit))
            except CycleAssemblyError as e:
                logger.warning("Skipping malformed unit %s: %s", e.unit_id, e.reason)
                monitoring.invalid_units.inc()
                self.scheduler.exclude(unit_id)
                self.skipped.append(unit_id)
                continue

            if not await self._ensure_audio(cycle):
                logger.warning("Audio for unit %s is still missing, deferring it", unit_id)
                self.scheduler.exclude(unit_id)
                if unit_id not in self._deferred_cycles:
                    self.deferred.append(unit_id)
                self._deferred_cycles[unit_id] = cycle
                continue

            if progress is None:
                progress = self.scheduler.introduce(unit_id)
            self.current = PresentedCycle(cycle, unit, progress.thread_id, remedial)
            monitoring.cycles_presented.labels(cycle_type=cycle.type.value).inc()
            return self.current
        return None

    def record_response(
        self,
        latency_ms: Optional[float],
        correct: bool,
        duration_delta_ms: Optional[float] = None,
    ) -> ResponseOutcome:
        """Feed the learner's response to the detector and scheduler, then persist it."""
        if self.current is None:
            raise RuntimeError("No cycle is being presented")
        presented, self.current = self.current, None
        unit = presented.unit

        detection = self.detector.observe(
            unit.unit_id,
            latency_ms,
            unit.phrase_length,
            presented.thread_id,
            duration_delta_ms=duration_delta_ms,
            can_break_down=unit.can_break_down,
        )
        if latency_ms is not None:
            monitoring.response_latency.observe(latency_ms)

        progress = self.scheduler.record_attempt(unit.unit_id, success=correct, spiked=detection.is_spike)
        self.session.items_practiced += 1

        metric = ResponseMetric(
            session_id=self.session.id,
            learner_id=self.learner_id,
            unit_id=unit.unit_id,
            response_latency_ms=latency_ms,
            phrase_length=unit.phrase_length,
            normalized_latency=detection.normalized_latency,
            thread_id=presented.thread_id,
            triggered_spike=detection.is_spike,
            mode=detection.mode,
        )
        spike = None
        if detection.is_spike:
            self.session.spikes_detected += 1
            spike = SpikeEvent(
                session_id=self.session.id,
                learner_id=self.learner_id,
                unit_id=unit.unit_id,
                latency=latency_ms,
                rolling_average=detection.rolling_average,
                spike_ratio=detection.ratio,
                response=detection.response,
                thread_id=presented.thread_id,
            )
            self._queue_remedial(unit, detection.response)

        snapshot = replace(progress)
        self._persist("metric", lambda store: store.append_metric(metric))
        if spike is not None:
            self._persist("spike", lambda store: store.append_spike(spike))
        self._persist("progress", lambda store: store.save_progress(snapshot))
        if detection.calibrated is not None:
            self._persist_baseline(detection.calibrated)

        if detection.mode == MetricMode.LIVE and latency_ms is not None:
            self.live_items += 1
            interval = self.settings.calibration.recalibration_interval
            if interval and self.live_items % interval == 0:
                baseline = self.detector.recalibrate()
                if baseline is not None:
                    self._persist_baseline(baseline)

        return ResponseOutcome(metric=metric, progress=snapshot, detection=detection, spike=spike)

    def _queue_remedial(self, unit: CourseUnit, response: SpikeResponse) -> None:
        if response == SpikeResponse.BREAKDOWN:
            components = [
                component for component in unit.components
                if component in self.units and component not in self.scheduler.excluded
            ]
            for component in components:
                self.remedial.append((component, response))
            if components:
                logger.info("Breaking unit %s down into %s", unit.unit_id, components)
        # The unit itself comes back right after any components
        self.remedial.append((unit.unit_id, response))

    def _persist_baseline(self, baseline: LearnerBaseline) -> None:
        self._persist("baseline", lambda store: store.save_baseline(baseline))

    def _persist(self, entity: str, write: Callable[[ProgressStore], None]) -> None:
        if self.writer is not None:
            self.writer.submit(entity, write)

    def summary(self) -> SessionSummary:
        """Current session counters."""
        return replace(self.session, final_rolling_average=self.detector.rolling_average)

    async def run(self, present: PresentFn) -> SessionSummary:
        """Present cycles until stopped, the learner quits, or nothing is due."""
        try:
            await self.start()
            while True:
                presented = await self.next_cycle()
                if presented is None:
                    break
                response = await present(presented.cycle)
                if response is None:
                    self.current = None
                    break
                self.record_response(response.latency_ms, response.correct, response.duration_delta_ms)
        finally:
            summary = await self.end()
        return summary

    async def end(self) -> SessionSummary:
        """Close the session and record its summary."""
        if self.ended:
            return self.summary()
        self.ended = True
        if self.fetcher is not None:
            await self.fetcher.cancel_all()

        self.session.ended_at = datetime.now(UTC)
        self.session.final_rolling_average = self.detector.rolling_average
        closed = replace(self.session)
        if self.writer is not None and self.started:
            self._persist("session", lambda store: store.save_session(closed))
            await self.writer.stop()
        self.registry.clear()

        if self.started:
            monitoring.active_sessions.dec()
        monitoring.session_duration.observe(closed.duration_seconds)
        logger.info(
            "Ended session %s: %d items, %d spikes, final rolling average %s",
            closed.id, closed.items_practiced, closed.spikes_detected, closed.final_rolling_average,
        )
        return closed
