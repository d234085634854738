from __future__ import annotations

"""Examination completion tracking for a visit.

An examination counts once regardless of eye side. Whether it is
"recorded" depends on a bilaterality rule supplied per examination type:
bilateral examinations need data for both eyes, single-eye examinations
need data for either. The tracker receives that rule as a predicate and
never hardcodes eye requirements.
"""

import asyncio
import math
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Iterable, Mapping, TypeAlias

from app.models.visit import Visit
from app.repositories.examination_store import EYESIDES, ExaminationStoreRegistry
from app.services.errors import (
    CannotSkipRequiredExaminationError,
    UnknownExaminationError,
)

# exam id -> True when both eyes must have data
RequiresBothEyes: TypeAlias = Callable[[str], bool]


def bilateral_unless(single_eye_examinations: Iterable[str]) -> RequiresBothEyes:
    """Build a bilaterality rule: every examination is bilateral except the given ones."""

    single = frozenset(single_eye_examinations)
    return lambda exam_id: exam_id not in single


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def recorded_sides(eye_data: Mapping[str, Any] | None) -> set[str]:
    if not eye_data:
        return set()
    return {side for side in EYESIDES if eye_data.get(side)}


def is_examination_recorded(
    exam_id: str,
    eye_data: Mapping[str, Any] | None,
    requires_both_eyes: RequiresBothEyes,
) -> bool:
    sides = recorded_sides(eye_data)
    if requires_both_eyes(exam_id):
        return sides == set(EYESIDES)
    return bool(sides)


@dataclass(frozen=True)
class ExaminationProgress:
    completion_percentage: int
    completed_examinations: list[str]
    remaining_required: list[str]

    @property
    def required_complete(self) -> bool:
        return not self.remaining_required


class StepState(StrEnum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    NOT_STARTED = "not_started"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepStatus:
    examination_id: str
    state: StepState
    right_eye: bool
    left_eye: bool
    required: bool


@dataclass(frozen=True)
class StepSummary:
    steps: list[StepStatus] = field(default_factory=list)

    @property
    def completed(self) -> int:
        return sum(1 for s in self.steps if s.state is StepState.COMPLETED)

    @property
    def partial(self) -> int:
        return sum(1 for s in self.steps if s.state is StepState.PARTIAL)

    @property
    def not_started(self) -> int:
        return sum(1 for s in self.steps if s.state is StepState.NOT_STARTED)

    @property
    def ready_for_submission(self) -> bool:
        return all(s.state is StepState.COMPLETED for s in self.steps if s.required)


class ExaminationProgressTracker:
    """Computes completion of a visit from its recorded examinations.

    Args:
        registry: Examination stores used to read the persisted set.
        requires_both_eyes: Bilaterality rule per examination id.
    """

    def __init__(
        self,
        registry: ExaminationStoreRegistry,
        requires_both_eyes: RequiresBothEyes,
    ) -> None:
        self.registry = registry
        self.requires_both_eyes = requires_both_eyes

    def recompute(self, visit: Visit, recorded_examinations: Iterable[str]) -> ExaminationProgress:
        """Compute completion for ``visit`` given the recorded examination ids.

        Skipped optional examinations count toward the percentage but are not
        reported as completed. The denominator is the full examination order.
        """

        order = list(visit.examination_order or [])
        required = list(visit.required_examinations or [])
        configured = set(required) | set(visit.optional_examinations or [])
        recorded = set(recorded_examinations)
        skipped = set(visit.skipped_examinations or []) - set(required)

        completed = [exam_id for exam_id in order if exam_id in recorded]
        counted = (recorded | skipped) & configured
        percentage = round_half_up(100 * len(counted) / len(order)) if order else 0

        return ExaminationProgress(
            completion_percentage=min(percentage, 100),
            completed_examinations=completed,
            remaining_required=[e for e in required if e not in recorded],
        )

    @staticmethod
    def apply(visit: Visit, progress: ExaminationProgress) -> None:
        visit.completed_examinations = list(progress.completed_examinations)
        visit.completion_percentage = progress.completion_percentage

    def skip_examination(self, visit: Visit, exam_id: str) -> ExaminationProgress:
        """Mark an optional examination as skipped and refresh completion.

        Raises:
            CannotSkipRequiredExaminationError: For required examinations.
            UnknownExaminationError: For examinations not configured on the visit.
        """

        if exam_id in (visit.required_examinations or []):
            raise CannotSkipRequiredExaminationError(visit.visit_id, exam_id)
        if exam_id not in (visit.optional_examinations or []):
            raise UnknownExaminationError(visit.visit_id, exam_id)

        skipped = list(visit.skipped_examinations or [])
        if exam_id not in skipped:
            skipped.append(exam_id)
        visit.skipped_examinations = skipped

        progress = self.recompute(visit, visit.completed_examinations or [])
        self.apply(visit, progress)
        return progress

    async def recorded_examinations(self, visit: Visit) -> set[str]:
        """Read the persisted examination set of ``visit`` from the stores."""

        exam_ids = [e for e in visit.examination_order or [] if e in self.registry]
        stored = await asyncio.gather(
            *(self.registry.get(e).get_both_eyes(visit.visit_id) for e in exam_ids)
        )
        return {
            exam_id
            for exam_id, eye_data in zip(exam_ids, stored)
            if is_examination_recorded(exam_id, eye_data, self.requires_both_eyes)
        }

    def step_statuses(
        self,
        examination_order: Iterable[str],
        form_data: Mapping[str, Mapping[str, Any]],
        *,
        skipped: Iterable[str] = (),
        required: Iterable[str] = (),
    ) -> StepSummary:
        """Classify each step of a multi-step form."""

        skipped_set = set(skipped)
        required_set = set(required)
        steps: list[StepStatus] = []
        for exam_id in examination_order:
            eye_data = form_data.get(exam_id)
            sides = recorded_sides(eye_data)
            if is_examination_recorded(exam_id, eye_data, self.requires_both_eyes):
                state = StepState.COMPLETED
            elif exam_id in skipped_set:
                state = StepState.SKIPPED
            elif sides:
                state = StepState.PARTIAL
            else:
                state = StepState.NOT_STARTED
            steps.append(
                StepStatus(
                    examination_id=exam_id,
                    state=state,
                    right_eye="right" in sides,
                    left_eye="left" in sides,
                    required=exam_id in required_set,
                )
            )
        return StepSummary(steps=steps)
