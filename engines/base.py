from typing import Generic, TypeVar

from schemas import ExerciseOutcome

SectionT = TypeVar("SectionT")


class BaseTracker(Generic[SectionT]):
    """Folds one exercise outcome into a profile section and returns a new copy."""

    def update(self, section: SectionT, outcome: ExerciseOutcome) -> SectionT:
        raise NotImplementedError
