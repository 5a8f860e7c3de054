"""Immutable models for cycles and cached audio."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Tuple


class CycleType(Enum):
    """Position of a cycle in the learning sequence."""
    INTRO = "intro"  # First exposure of the unit
    DEBUT = "debut"  # Practiced, not yet answered correctly
    PRACTICE = "practice"
    REVIEW = "review"  # Late Fibonacci positions


@dataclass(frozen=True)
class AudioReference:
    """Text bound to the audio that speaks it."""
    text: str
    audio_id: str
    duration_ms: int


@dataclass(frozen=True)
class TargetAudio:
    """Target-language text with two independently chosen voices."""
    text: str
    voice1_audio_id: str
    voice1_duration_ms: int
    voice2_audio_id: str
    voice2_duration_ms: int


@dataclass(frozen=True)
class Cycle:
    """Atomic instructional unit: PROMPT (known) -> PAUSE -> VOICE_1 -> VOICE_2.

    Audio is referenced by id only, never looked up by text.
    """
    id: str
    seed_id: str
    unit_id: str
    type: CycleType
    known: AudioReference
    target: TargetAudio
    pause_duration_ms: int

    def audio_ids(self) -> Tuple[str, str, str]:
        """Audio ids in playback order: known, voice 1, voice 2."""
        return (
            self.known.audio_id,
            self.target.voice1_audio_id,
            self.target.voice2_audio_id,
        )


@dataclass(frozen=True)
class CachedAudio:
    """Locally cached audio asset."""
    audio_id: str
    duration_ms: int
    checksum: str


@dataclass(frozen=True)
class ValidationResult:
    """Result of validating cycles against the audio cache."""
    ready: bool
    missing: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(ready=True)

    @classmethod
    def missing_ids(cls, audio_ids: Iterable[str]) -> "ValidationResult":
        missing = tuple(audio_ids)
        if not missing:
            return cls.ok()
        return cls(ready=False, missing=missing)

    def __bool__(self) -> bool:
        return self.ready
