"""Read-only access to course content."""
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Mapping, Optional

from lexiloop.models.learning_models import CourseUnit


class CourseContentProvider(ABC):
    """Source of vocabulary units and their audio locations."""

    @abstractmethod
    def units(self, course_id: str) -> List[CourseUnit]:
        """Units of a course in teaching order."""

    @abstractmethod
    def unit(self, course_id: str, unit_id: str) -> Optional[CourseUnit]:
        """A single unit, or None if the course has no such unit."""

    @abstractmethod
    def audio_url(self, audio_id: str) -> Optional[str]:
        """Resolved download URL for an audio id."""


class InMemoryCourseContent(CourseContentProvider):
    """Content provider backed by in-process data."""

    def __init__(
        self,
        courses: Mapping[str, Iterable[CourseUnit]],
        audio_urls: Optional[Mapping[str, str]] = None,
    ):
        self._courses: Dict[str, List[CourseUnit]] = {
            course_id: list(units) for course_id, units in courses.items()
        }
        self._audio_urls = dict(audio_urls or {})

    def units(self, course_id: str) -> List[CourseUnit]:
        return list(self._courses.get(course_id, []))

    def unit(self, course_id: str, unit_id: str) -> Optional[CourseUnit]:
        for unit in self._courses.get(course_id, []):
            if unit.unit_id == unit_id:
                return unit
        return None

    def audio_url(self, audio_id: str) -> Optional[str]:
        return self._audio_urls.get(audio_id)
