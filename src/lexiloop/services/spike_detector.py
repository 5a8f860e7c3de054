"""Real-time detection of abnormally slow learner responses.

The detector compares each length-normalized response latency against an
exponentially weighted rolling average. It never flags anything until a
calibration window has produced a baseline:

    BASELINE_UNSET -> CALIBRATING -> LIVE

Latency is normalized with square-root scaling, latency / sqrt(words), so
longer phrases get more time without a linear penalty.
"""
import logging
import math
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, List, Optional, Tuple

from lexiloop import monitoring
from lexiloop.config import Settings, settings as default_settings
from lexiloop.models.learning_models import LearnerBaseline, MetricMode, SpikeResponse
from lexiloop.services.calibration_service import (
    BaselineCalibrator,
    BaselineHolder,
    CalibrationSample,
)

logger = logging.getLogger(__name__)


class DetectorState(Enum):
    """Per learner-session detector state."""
    BASELINE_UNSET = "baseline_unset"
    CALIBRATING = "calibrating"
    LIVE = "live"


def normalize_latency(latency_ms: float, phrase_length: int, min_phrase_length: int = 1) -> float:
    """Adjust a raw latency for phrase length: latency / sqrt(max(length, minimum))."""
    return latency_ms / math.sqrt(max(phrase_length, min_phrase_length, 1))


@dataclass(frozen=True)
class Detection:
    """Outcome of observing one response."""
    normalized_latency: Optional[float]
    rolling_average: Optional[float]  # before this sample was folded in
    ratio: Optional[float]
    is_spike: bool
    response: Optional[SpikeResponse]
    mode: MetricMode
    calibrated: Optional[LearnerBaseline] = None  # set when this sample completed calibration


class SpikeDetector:
    """Spike detector for one learner session."""

    def __init__(
        self,
        learner_id: str,
        course_id: str,
        calibrator: Optional[BaselineCalibrator] = None,
        holder: Optional[BaselineHolder] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or default_settings
        self.learner_id = learner_id
        self.course_id = course_id
        self.spike_settings = settings.spike
        self.calibration_settings = settings.calibration
        self.calibrator = calibrator or BaselineCalibrator(settings)
        self.holder = holder or BaselineHolder()
        self.state = DetectorState.BASELINE_UNSET
        self._rolling_average: Optional[float] = None
        self._calibration_samples: List[CalibrationSample] = []
        self._live_samples: Deque[CalibrationSample] = deque(maxlen=self.calibration_settings.max_items)
        self._items_since_spike: Optional[int] = None

        if self.holder.current is not None:
            self._go_live(self.holder.current)

    @property
    def rolling_average(self) -> Optional[float]:
        return self._rolling_average

    @property
    def baseline(self) -> Optional[LearnerBaseline]:
        return self.holder.current

    def use_baseline(self, baseline: LearnerBaseline) -> None:
        """Skip calibration with a stored baseline."""
        self.holder.replace(baseline)
        self._go_live(baseline)

    def start_calibration(self) -> None:
        """Begin collecting a calibration window."""
        self.state = DetectorState.CALIBRATING
        self._calibration_samples = []

    def thresholds(self) -> Tuple[float, float]:
        """Spike and breakdown ratios for the current baseline."""
        baseline = self.holder.current
        if baseline is not None and baseline.had_timing_data:
            return self.spike_settings.threshold, self.spike_settings.breakdown_threshold
        return self.spike_settings.fallback_threshold, self.spike_settings.fallback_breakdown_threshold

    def observe(
        self,
        unit_id: str,
        latency_ms: Optional[float],
        phrase_length: int,
        thread_id: int,
        duration_delta_ms: Optional[float] = None,
        can_break_down: bool = True,
    ) -> Detection:
        """Process one response and report whether it was a spike."""
        normalized = None
        if latency_ms is not None:
            normalized = normalize_latency(latency_ms, phrase_length, self.spike_settings.min_phrase_length)
        sample = CalibrationSample(latency=normalized, duration_delta_ms=duration_delta_ms)

        if self.state == DetectorState.BASELINE_UNSET:
            self.start_calibration()

        if self.state == DetectorState.CALIBRATING:
            return self._observe_calibrating(sample)
        return self._observe_live(unit_id, sample, thread_id, can_break_down)

    def _observe_calibrating(self, sample: CalibrationSample) -> Detection:
        self._calibration_samples.append(sample)
        timed = sum(1 for s in self._calibration_samples if s.latency is not None)
        baseline = None
        if (timed >= self.calibration_settings.min_items
                or len(self._calibration_samples) >= self.calibration_settings.max_items):
            baseline = self.calibrator.build(self.learner_id, self.course_id, self._calibration_samples)
            self.holder.replace(baseline)
            self._go_live(baseline)
        return Detection(
            normalized_latency=sample.latency,
            rolling_average=None,
            ratio=None,
            is_spike=False,
            response=None,
            mode=MetricMode.CALIBRATION,
            calibrated=baseline,
        )

    def _go_live(self, baseline: LearnerBaseline) -> None:
        self.state = DetectorState.LIVE
        self._calibration_samples = []
        if baseline.latency_mean > 0:
            self._rolling_average = baseline.latency_mean
        logger.debug("Detector for learner %s is live (rolling average %s)", self.learner_id, self._rolling_average)

    def _observe_live(
        self, unit_id: str, sample: CalibrationSample, thread_id: int, can_break_down: bool
    ) -> Detection:
        if sample.latency is None:
            return Detection(sample.latency, self._rolling_average, None, False, None, MetricMode.LIVE)

        self._live_samples.append(sample)
        if self._items_since_spike is not None:
            self._items_since_spike += 1

        average = self._rolling_average
        if average is None or average <= 0:
            # First timed sample after a baseline without timing data seeds the average
            self._rolling_average = sample.latency
            return Detection(sample.latency, None, None, False, None, MetricMode.LIVE)

        ratio = sample.latency / average
        threshold, breakdown_threshold = self.thresholds()
        is_spike = ratio > threshold
        response = None
        if is_spike and self._in_cooldown():
            logger.debug("Spike on %s suppressed by cooldown", unit_id)
            is_spike = False
        if is_spike:
            if ratio >= breakdown_threshold and can_break_down:
                response = SpikeResponse.BREAKDOWN
            else:
                response = SpikeResponse.REPEAT
            self._items_since_spike = 0
            monitoring.spikes_detected.labels(response=response.value).inc()
            logger.info(
                "Spike on unit %s (thread %d): ratio %.2f over average %.1f -> %s",
                unit_id, thread_id, ratio, average, response.value,
            )

        alpha = self.spike_settings.ema_alpha
        self._rolling_average = alpha * sample.latency + (1 - alpha) * average
        return Detection(sample.latency, average, ratio, is_spike, response, MetricMode.LIVE)

    def _in_cooldown(self) -> bool:
        return (self._items_since_spike is not None
                and self._items_since_spike <= self.spike_settings.cooldown_items)

    def recent_samples(self) -> List[CalibrationSample]:
        return list(self._live_samples)

    def recalibrate(self) -> Optional[LearnerBaseline]:
        """Replace the baseline with one built from recent live samples.

        Returns None when there are not enough recent samples for a personalized baseline.
        """
        samples = self.recent_samples()
        if sum(1 for s in samples if s.latency is not None) < self.calibration_settings.min_items:
            return None
        baseline = self.calibrator.build(self.learner_id, self.course_id, samples)
        self.holder.replace(baseline)
        return baseline
