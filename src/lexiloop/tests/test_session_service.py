"""Tests for the session orchestrator."""
import asyncio
from datetime import UTC, datetime
from typing import Callable, Iterable, List, Optional

import pytest
from faker import Faker
from prometheus_client import REGISTRY
from sqlalchemy.orm import Session

from lexiloop.config import Settings
from lexiloop.models.cycle_models import CachedAudio, Cycle, CycleType
from lexiloop.models.learning_models import (
    CourseUnit,
    LearnerBaseline,
    LearnerResponse,
    SpikeResponse,
    UnitProgress,
)
from lexiloop.models.models import PracticeSessionRow, ResponseMetricRow, UnitProgressRow
from lexiloop.services.audio_cache import AudioCacheIndex, AudioFetcher, AudioRegistry
from lexiloop.services.content_provider import InMemoryCourseContent
from lexiloop.services.progress_store import ProgressStore
from lexiloop.services.session_service import SessionOrchestrator
from lexiloop.services.spike_detector import DetectorState, SpikeDetector

fake = Faker()

COURSE = "es-en"


async def download(audio_id: str, url: str) -> CachedAudio:
    await asyncio.sleep(0)
    return CachedAudio(audio_id=audio_id, duration_ms=1000, checksum=fake.sha256())


def audio_ids(units: Iterable[CourseUnit]) -> List[str]:
    return [
        audio_id
        for unit in units
        for audio_id in (unit.known_audio_id, unit.voice1_audio_id, unit.voice2_audio_id)
    ]


def make_baseline(learner_id: str, mean: float = 1000.0) -> LearnerBaseline:
    return LearnerBaseline(
        learner_id=learner_id,
        course_id=COURSE,
        calibration_items=10,
        latency_mean=mean,
        latency_stddev=150.0,
        duration_delta_mean=0.0,
        duration_delta_stddev=100.0,
        had_timing_data=True,
    )


@pytest.fixture
def learner_id() -> str:
    return fake.uuid4()


@pytest.fixture
def store(db: Session) -> ProgressStore:
    return ProgressStore(db)


@pytest.fixture
def make_orchestrator(learner_id: str, test_settings: Settings, cache_entry) -> Callable[..., SessionOrchestrator]:
    """Factory wiring an orchestrator over in-memory content."""
    def _make(
        units: List[CourseUnit],
        cached: Optional[Iterable[str]] = None,
        audio_urls: Optional[dict] = None,
        store: Optional[ProgressStore] = None,
        detector: Optional[SpikeDetector] = None,
        fetch: bool = False,
        download_fn=download,
    ) -> SessionOrchestrator:
        cache = AudioCacheIndex(
            cache_entry(audio_id) for audio_id in (audio_ids(units) if cached is None else cached)
        )
        content = InMemoryCourseContent({COURSE: units}, audio_urls)
        fetcher = AudioFetcher(cache, AudioRegistry(), download_fn) if fetch else None
        return SessionOrchestrator(
            learner_id,
            COURSE,
            content,
            cache,
            fetcher=fetcher,
            detector=detector,
            store=store,
            settings=test_settings,
        )

    return _make


@pytest.fixture
def live_detector(learner_id: str, test_settings: Settings) -> SpikeDetector:
    """Detector already holding a 1000ms baseline."""
    detector = SpikeDetector(learner_id, COURSE, settings=test_settings)
    detector.use_baseline(make_baseline(learner_id))
    return detector


@pytest.mark.asyncio
async def test_run_practices_until_limit(
    make_orchestrator, make_unit, store: ProgressStore, db: Session, test_settings: Settings
) -> None:
    """Test a full session run persists its metrics, progress and summary."""
    test_settings.session.max_items = 6
    units = [make_unit() for _ in range(9)]
    orchestrator = make_orchestrator(units, store=store)
    presented: List[Cycle] = []

    async def present(cycle: Cycle) -> LearnerResponse:
        presented.append(cycle)
        return LearnerResponse(latency_ms=1000, correct=True)

    summary = await orchestrator.run(present)

    assert summary.items_practiced == 6
    assert summary.ended_at is not None
    assert len(presented) == 6
    assert all(cycle.type == CycleType.INTRO for cycle in presented)
    assert db.query(ResponseMetricRow).count() == 6
    assert db.query(UnitProgressRow).count() == 6
    row = db.query(PracticeSessionRow).filter(PracticeSessionRow.id == summary.id).one()
    assert row.items_practiced == 6
    assert row.ended_at is not None
    assert orchestrator.writer.dropped == 0


@pytest.mark.asyncio
async def test_calibration_baseline_is_persisted(
    make_orchestrator, make_unit, store: ProgressStore, learner_id: str
) -> None:
    """Test the calibration window produces a stored baseline."""
    orchestrator = make_orchestrator([make_unit() for _ in range(9)], store=store)
    await orchestrator.start()
    assert orchestrator.detector.state == DetectorState.CALIBRATING

    for latency in (900, 1000, 1100):
        await orchestrator.next_cycle()
        orchestrator.record_response(latency, correct=True)
    await orchestrator.writer.flush()

    baseline = store.current_baseline(learner_id, COURSE)
    assert baseline is not None
    assert baseline.had_timing_data is True
    assert baseline.latency_mean == pytest.approx(1000)
    assert orchestrator.detector.state == DetectorState.LIVE
    await orchestrator.end()


@pytest.mark.asyncio
async def test_stored_baseline_skips_calibration(
    make_orchestrator, make_unit, store: ProgressStore, learner_id: str
) -> None:
    """Test a learner with a baseline starts live."""
    store.save_baseline(make_baseline(learner_id, mean=1200))
    orchestrator = make_orchestrator([make_unit()], store=store)

    await orchestrator.start()

    assert orchestrator.detector.state == DetectorState.LIVE
    assert orchestrator.detector.rolling_average == 1200
    await orchestrator.end()


@pytest.mark.asyncio
async def test_stored_progress_is_resumed(
    make_orchestrator, make_unit, store: ProgressStore, learner_id: str
) -> None:
    """Test persisted progress decides the cycle type."""
    unit = make_unit(unit_id="resumed")
    store.save_progress(UnitProgress(
        learner_id=learner_id, course_id=COURSE, unit_id="resumed", thread_id=1,
        fibonacci_position=5, skip_number=8, reps_completed=5,
        last_practiced_at=datetime(2024, 5, 1, tzinfo=UTC),
    ))
    orchestrator = make_orchestrator([unit], store=store)

    presented = await orchestrator.next_cycle()

    assert presented.unit.unit_id == "resumed"
    assert presented.cycle.type == CycleType.REVIEW
    await orchestrator.end()


@pytest.mark.asyncio
async def test_missing_audio_is_fetched(make_orchestrator, make_unit) -> None:
    """Test a cycle is held back until its missing audio has been fetched."""
    unit = make_unit()
    urls = {audio_id: f"https://cdn.example.com/{audio_id}.mp3" for audio_id in audio_ids([unit])}
    orchestrator = make_orchestrator([unit], cached=[unit.known_audio_id], audio_urls=urls, fetch=True)

    presented = await orchestrator.next_cycle()

    assert presented is not None
    assert presented.unit.unit_id == unit.unit_id
    for audio_id in presented.cycle.audio_ids():
        assert audio_id in orchestrator.cache
    await orchestrator.end()


@pytest.mark.asyncio
async def test_unfetchable_audio_defers_unit(make_orchestrator, make_unit) -> None:
    """Test a unit whose audio never arrives is deferred and the next unit is served."""
    missing = make_unit(unit_id="no-audio")
    ready = make_unit(unit_id="ready")
    orchestrator = make_orchestrator([missing, ready], cached=audio_ids([ready]), fetch=True)

    presented = await orchestrator.next_cycle()

    assert presented.unit.unit_id == "ready"
    assert orchestrator.deferred == ["no-audio"]
    await orchestrator.end()


@pytest.mark.asyncio
async def test_deferred_unit_returns_when_audio_arrives(
    make_orchestrator, make_unit, test_settings: Settings
) -> None:
    """Test a deferred unit is served once its late audio lands in the cache."""
    test_settings.session.fetch_timeout_seconds = 0.01
    release = asyncio.Event()

    async def slow_download(audio_id: str, url: str) -> CachedAudio:
        await release.wait()
        return CachedAudio(audio_id=audio_id, duration_ms=1000, checksum=fake.sha256())

    slow = make_unit(unit_id="slow")
    ready = make_unit(unit_id="ready")
    urls = {audio_id: f"https://cdn.example.com/{audio_id}.mp3" for audio_id in audio_ids([slow])}
    orchestrator = make_orchestrator(
        [slow, ready], cached=audio_ids([ready]), audio_urls=urls, fetch=True, download_fn=slow_download,
    )

    first = await orchestrator.next_cycle()
    assert first.unit.unit_id == "ready"
    assert orchestrator.deferred == ["slow"]
    orchestrator.record_response(1000, correct=True)

    release.set()
    second = await orchestrator.next_cycle()

    assert second.unit.unit_id == "slow"
    assert orchestrator.deferred == []
    assert "slow" not in orchestrator.scheduler.excluded
    await orchestrator.end()



@pytest.mark.asyncio
async def test_missing_audio_without_fetcher_defers(make_orchestrator, make_unit) -> None:
    """Test a cycle with missing audio is never exposed for playback."""
    unit = make_unit()
    orchestrator = make_orchestrator([unit], cached=[])

    assert await orchestrator.next_cycle() is None
    assert orchestrator.deferred == [unit.unit_id]
    await orchestrator.end()


@pytest.mark.asyncio
async def test_malformed_unit_is_skipped(make_orchestrator, make_unit) -> None:
    """Test malformed content is skipped without ending the session."""
    bad = make_unit(unit_id="bad", target_text="   ")
    good = make_unit(unit_id="good")
    orchestrator = make_orchestrator([bad, good])

    presented = await orchestrator.next_cycle()

    assert presented.unit.unit_id == "good"
    assert orchestrator.skipped == ["bad"]
    await orchestrator.end()


@pytest.mark.asyncio
async def test_unit_without_text_is_skipped(make_orchestrator, make_unit) -> None:
    """Test a unit with no known text is skipped instead of aborting the session."""
    orchestrator = make_orchestrator([make_unit(unit_id="bad", known_text=None), make_unit(unit_id="good")])

    presented = await orchestrator.next_cycle()

    assert presented.unit.unit_id == "good"
    assert orchestrator.skipped == ["bad"]
    await orchestrator.end()



@pytest.mark.asyncio
async def test_progress_without_content_is_skipped(
    make_orchestrator, make_unit, store: ProgressStore, learner_id: str
) -> None:
    """Test progress for a unit missing from the course is skipped."""
    store.save_progress(UnitProgress(learner_id=learner_id, course_id=COURSE, unit_id="ghost", thread_id=1))
    orchestrator = make_orchestrator([make_unit(unit_id="real")], store=store)

    presented = await orchestrator.next_cycle()

    assert presented.unit.unit_id == "real"
    assert orchestrator.skipped == ["ghost"]
    await orchestrator.end()


@pytest.mark.asyncio
async def test_spike_breaks_unit_down(
    make_orchestrator, make_unit, live_detector: SpikeDetector, store: ProgressStore
) -> None:
    """Test a large spike queues the unit's components, then the unit itself."""
    phrase = make_unit(unit_id="phrase", target_text="quiero comer", components=("quiero", "comer"))
    units = [phrase, make_unit(unit_id="quiero"), make_unit(unit_id="comer")]
    orchestrator = make_orchestrator(units, store=store, detector=live_detector)

    first = await orchestrator.next_cycle()
    assert first.unit.unit_id == "phrase"
    outcome = orchestrator.record_response(5000, correct=True)

    assert outcome.spike is not None
    assert outcome.spike.response == SpikeResponse.BREAKDOWN
    assert outcome.spike.latency == 5000
    assert outcome.metric.triggered_spike is True
    assert outcome.progress.fibonacci_position == 0

    order = []
    for _ in range(3):
        presented = await orchestrator.next_cycle()
        assert presented.remedial == SpikeResponse.BREAKDOWN
        order.append(presented.unit.unit_id)
        orchestrator.record_response(1000, correct=True)
    assert order == ["quiero", "comer", "phrase"]

    summary = await orchestrator.end()
    assert summary.spikes_detected == 1
    assert len(store.spikes_for_session(summary.id)) == 1


@pytest.mark.asyncio
async def test_spike_on_single_word_repeats(
    make_orchestrator, make_unit, live_detector: SpikeDetector
) -> None:
    """Test a spike on a unit without components repeats it next."""
    units = [make_unit(unit_id="hola"), make_unit(unit_id="adios")]
    orchestrator = make_orchestrator(units, detector=live_detector)

    await orchestrator.next_cycle()
    outcome = orchestrator.record_response(5000, correct=True)
    presented = await orchestrator.next_cycle()

    assert outcome.detection.response == SpikeResponse.REPEAT
    assert presented.unit.unit_id == "hola"
    assert presented.remedial == SpikeResponse.REPEAT
    await orchestrator.end()


@pytest.mark.asyncio
async def test_recalibration_replaces_baseline(
    make_orchestrator, make_unit, live_detector: SpikeDetector, test_settings: Settings
) -> None:
    """Test the baseline is rebuilt from live responses at the configured interval."""
    test_settings.calibration.recalibration_interval = 3
    orchestrator = make_orchestrator([make_unit() for _ in range(9)], detector=live_detector)
    previous = live_detector.baseline

    for latency in (1300, 1400, 1500):
        await orchestrator.next_cycle()
        orchestrator.record_response(latency, correct=True)

    assert live_detector.baseline is not previous
    assert live_detector.baseline.latency_mean == pytest.approx(1400)
    await orchestrator.end()


@pytest.mark.asyncio
async def test_nothing_due_ends_session(make_orchestrator, make_unit) -> None:
    """Test next_cycle returns None once no unit is due."""
    orchestrator = make_orchestrator([make_unit()])

    assert await orchestrator.next_cycle() is not None
    orchestrator.record_response(1000, correct=True)

    assert await orchestrator.next_cycle() is None
    await orchestrator.end()


@pytest.mark.asyncio
async def test_stop_signal(make_orchestrator, make_unit) -> None:
    """Test an external stop ends cycle selection."""
    orchestrator = make_orchestrator([make_unit() for _ in range(3)])
    await orchestrator.start()

    orchestrator.stop()

    assert orchestrator.stopped is True
    assert await orchestrator.next_cycle() is None
    await orchestrator.end()


@pytest.mark.asyncio
async def test_learner_quits(make_orchestrator, make_unit) -> None:
    """Test the session ends when playback reports no response."""
    orchestrator = make_orchestrator([make_unit() for _ in range(3)])

    async def present(cycle: Cycle) -> Optional[LearnerResponse]:
        return None

    summary = await orchestrator.run(present)

    assert summary.items_practiced == 0
    assert orchestrator.current is None


@pytest.mark.asyncio
async def test_response_without_cycle(make_orchestrator, make_unit) -> None:
    """Test a response can only be recorded for a presented cycle."""
    orchestrator = make_orchestrator([make_unit()])
    await orchestrator.start()

    with pytest.raises(RuntimeError):
        orchestrator.record_response(1000, correct=True)
    await orchestrator.end()


@pytest.mark.asyncio
async def test_end_is_idempotent(make_orchestrator, make_unit) -> None:
    """Test ending twice returns the same summary."""
    orchestrator = make_orchestrator([make_unit()])
    await orchestrator.start()

    first = await orchestrator.end()
    second = await orchestrator.end()

    assert first.id == second.id
    assert second.ended_at == first.ended_at
    assert len(orchestrator.registry) == 0


@pytest.mark.asyncio
async def test_run_closes_session_when_playback_fails(
    make_orchestrator, make_unit, store: ProgressStore, db: Session
) -> None:
    """Test a failing playback callback still ends the session and writes its summary."""
    orchestrator = make_orchestrator([make_unit() for _ in range(3)], store=store, fetch=True)
    active_before = REGISTRY.get_sample_value("lexiloop_active_sessions")

    async def present(cycle: Cycle) -> LearnerResponse:
        raise RuntimeError("playback crashed")

    with pytest.raises(RuntimeError, match="playback crashed"):
        await orchestrator.run(present)

    assert orchestrator.ended is True
    assert orchestrator.writer.running is False
    assert orchestrator.fetcher.in_flight() == 0
    assert REGISTRY.get_sample_value("lexiloop_active_sessions") == active_before
    row = db.query(PracticeSessionRow).filter(PracticeSessionRow.id == orchestrator.session.id).one()
    assert row.ended_at is not None
    assert row.items_practiced == 0
