"""Assembly of immutable cycles from course content."""
import logging
from typing import Mapping, Optional

from lexiloop.config import Settings, settings as default_settings
from lexiloop.models.cycle_models import AudioReference, Cycle, CycleType, TargetAudio
from lexiloop.models.learning_models import CourseUnit, UnitProgress
from lexiloop.services.audio_cache import AudioRegistry

logger = logging.getLogger(__name__)


class CycleAssemblyError(ValueError):
    """Course content for a unit cannot be turned into a cycle."""

    def __init__(self, unit_id: str, reason: str):
        super().__init__(f"Unit {unit_id}: {reason}")
        self.unit_id = unit_id
        self.reason = reason


def classify_cycle(progress: Optional[UnitProgress], review_position: int) -> CycleType:
    """Cycle type for a unit given its current progress."""
    if progress is None or progress.last_practiced_at is None:
        return CycleType.INTRO
    if progress.reps_completed == 0:
        return CycleType.DEBUT
    if progress.fibonacci_position >= review_position:
        return CycleType.REVIEW
    return CycleType.PRACTICE


class CycleAssembler:
    """Builds cycles, binding each text to its audio id at construction time."""

    def __init__(self, registry: Optional[AudioRegistry] = None, settings: Optional[Settings] = None):
        self.registry = registry
        self.settings = (settings or default_settings).cycle

    def pause_for(self, voice1_duration_ms: int) -> int:
        """Pause scales with the first target voice, clamped to the configured range."""
        pause = int(round(self.settings.pause_multiplier * voice1_duration_ms))
        return max(self.settings.min_pause_ms, min(pause, self.settings.max_pause_ms))

    def _check(self, unit: CourseUnit) -> None:
        for name in ("known_text", "target_text"):
            value = getattr(unit, name)
            if not value or not value.strip():
                raise CycleAssemblyError(unit.unit_id, f"empty {name}")
        for name in ("known_audio_id", "voice1_audio_id", "voice2_audio_id"):
            if not getattr(unit, name):
                raise CycleAssemblyError(unit.unit_id, f"missing {name}")
        for name in ("known_duration_ms", "voice1_duration_ms", "voice2_duration_ms"):
            value = getattr(unit, name)
            if value is None or value < 0:
                raise CycleAssemblyError(unit.unit_id, f"invalid {name}: {value}")

    def assemble(
        self,
        unit: CourseUnit,
        cycle_type: CycleType,
        audio_urls: Optional[Mapping[str, str]] = None,
    ) -> Cycle:
        """Build a cycle for a unit.

        Any resolved audio URLs passed in are recorded in the session registry
        so missing audio can be fetched later.
        """
        if not unit.unit_id:
            raise CycleAssemblyError("<unknown>", "missing unit id")
        self._check(unit)

        cycle = Cycle(
            id=f"{unit.unit_id}:{cycle_type.value}",
            seed_id=unit.seed_id,
            unit_id=unit.unit_id,
            type=cycle_type,
            known=AudioReference(
                text=unit.known_text,
                audio_id=unit.known_audio_id,
                duration_ms=unit.known_duration_ms,
            ),
            target=TargetAudio(
                text=unit.target_text,
                voice1_audio_id=unit.voice1_audio_id,
                voice1_duration_ms=unit.voice1_duration_ms,
                voice2_audio_id=unit.voice2_audio_id,
                voice2_duration_ms=unit.voice2_duration_ms,
            ),
            pause_duration_ms=self.pause_for(unit.voice1_duration_ms),
        )

        if audio_urls and self.registry is not None:
            for audio_id in cycle.audio_ids():
                url = audio_urls.get(audio_id)
                if url:
                    self.registry.register(audio_id, url)
        return cycle
