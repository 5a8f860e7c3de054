"""Learner latency baseline calibration."""
import logging
import statistics
import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional

from lexiloop.config import Settings, settings as default_settings
from lexiloop.models.learning_models import LearnerBaseline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalibrationSample:
    """One calibration response.

    latency is the length-normalized latency, None when no timing was captured.
    """
    latency: Optional[float]
    duration_delta_ms: Optional[float] = None


def _mean(values: List[float]) -> float:
    return statistics.fmean(values) if values else 0.0


def _stddev(values: List[float]) -> float:
    return statistics.pstdev(values) if len(values) > 1 else 0.0


class BaselineCalibrator:
    """Builds a LearnerBaseline from a calibration window."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = (settings or default_settings).calibration

    def build(
        self, learner_id: str, course_id: str, samples: Iterable[CalibrationSample]
    ) -> LearnerBaseline:
        """Compute latency and duration-delta statistics over the timed samples.

        The baseline is personalized (had_timing_data) only when at least
        min_items timed samples are available.
        """
        timed = [s for s in samples if s.latency is not None]
        latencies = [s.latency for s in timed]
        deltas = [s.duration_delta_ms for s in timed if s.duration_delta_ms is not None]
        had_timing_data = len(timed) >= self.settings.min_items

        baseline = LearnerBaseline(
            learner_id=learner_id,
            course_id=course_id,
            calibration_items=len(timed),
            latency_mean=_mean(latencies),
            latency_stddev=max(_stddev(latencies), self.settings.min_latency_stddev_ms),
            duration_delta_mean=_mean(deltas),
            duration_delta_stddev=max(_stddev(deltas), self.settings.min_duration_delta_stddev_ms),
            had_timing_data=had_timing_data,
        )
        if had_timing_data:
            logger.info(
                "Calibrated learner %s on %s from %d items: mean %.1f, stddev %.1f",
                learner_id, course_id, len(timed), baseline.latency_mean, baseline.latency_stddev,
            )
        else:
            logger.warning(
                "Only %d/%d timed calibration items for learner %s on %s, using default thresholds",
                len(timed), self.settings.min_items, learner_id, course_id,
            )
        return baseline


class BaselineHolder:
    """Atomic reference to the current baseline.

    Baselines are immutable, so swapping the reference under the lock means a
    reader sees either the old or the new baseline.
    """

    def __init__(self, baseline: Optional[LearnerBaseline] = None):
        self._lock = threading.Lock()
        self._baseline = baseline

    @property
    def current(self) -> Optional[LearnerBaseline]:
        with self._lock:
            return self._baseline

    def replace(self, baseline: LearnerBaseline) -> Optional[LearnerBaseline]:
        """Install a new baseline and return the one it supersedes."""
        with self._lock:
            previous, self._baseline = self._baseline, baseline
        return previous
