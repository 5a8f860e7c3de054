"""Audio readiness checks for cycles about to be played."""
from typing import Iterable, List, Mapping

from lexiloop.models.cycle_models import CachedAudio, Cycle, ValidationResult


def _missing_for(cycle: Cycle, cache: Mapping[str, CachedAudio]) -> List[str]:
    return [audio_id for audio_id in cycle.audio_ids() if audio_id not in cache]


def validate_cycle(cycle: Cycle, cache: Mapping[str, CachedAudio]) -> ValidationResult:
    """Check that the known, voice 1 and voice 2 audio of a cycle are cached.

    Missing ids are reported in that fixed order.
    """
    return ValidationResult.missing_ids(_missing_for(cycle, cache))


def validate_session(cycles: Iterable[Cycle], cache: Mapping[str, CachedAudio]) -> ValidationResult:
    """Aggregate missing audio across cycles, keeping each id once at its first position."""
    missing: dict[str, None] = {}
    for cycle in cycles:
        for audio_id in _missing_for(cycle, cache):
            missing.setdefault(audio_id, None)
    return ValidationResult.missing_ids(missing)
