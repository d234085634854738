from __future__ import annotations

"""In-progress examination form state and final submission of a visit.

Drafts are versioned. Explicit saves overwrite unconditionally; autosaves
carry the version the caller last saw and only apply when the stored draft
has not moved on since (optimistic concurrency, no lock across requests).
A stale autosave is reported as a conflict result together with the draft
that won, never as an exception.

Submission fans the form data out to one store per examination type,
concurrently, and waits for all writes. Each write is idempotent per
``(visit, examination, eye side)``. Progress is then recomputed from what
the stores actually hold, the visit status is moved on, and only after all
of that succeeds is the draft removed.
"""

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, ClassVar, Iterable, Mapping, TypeAlias, Union

from app.core.clock import Clock, utc_now
from app.core.logging import logger
from app.models.draft import VisitDraft
from app.models.visit import Visit
from app.repositories.draft_repository import DraftRepository
from app.repositories.examination_store import EYESIDES, ExaminationStoreRegistry
from app.repositories.visit_repository import VisitRepository
from app.services.activity_log_service import AuditSink, emit_audit
from app.services.errors import (
    InvalidDraftError,
    InvalidStatusTransitionError,
    SubmissionFailedError,
    UnknownExaminationError,
)
from app.services.examination_progress import (
    ExaminationProgress,
    ExaminationProgressTracker,
    StepSummary,
    round_half_up,
)
from app.services.protocol_compliance import (
    TERMINAL_STATUSES,
    ProtocolComplianceEvaluator,
    VisitStatusCode,
    transition_visit,
)

# exam id -> {"right": {...}, "left": {...}}
FormData: TypeAlias = Mapping[str, Mapping[str, Any]]


@dataclass(frozen=True)
class AutoSaveApplied:
    draft: VisitDraft

    success: ClassVar[bool] = True
    conflict: ClassVar[bool] = False

    @property
    def latest_draft(self) -> VisitDraft:
        return self.draft

    @property
    def version(self) -> int:
        return self.draft.version


@dataclass(frozen=True)
class AutoSaveConflict:
    current_draft: VisitDraft

    success: ClassVar[bool] = False
    conflict: ClassVar[bool] = True

    @property
    def latest_draft(self) -> VisitDraft:
        return self.current_draft


@dataclass(frozen=True)
class AutoSaveNotFound:
    visit_id: str

    success: ClassVar[bool] = False
    conflict: ClassVar[bool] = False
    latest_draft: ClassVar[None] = None


AutoSaveResult: TypeAlias = Union[AutoSaveApplied, AutoSaveConflict, AutoSaveNotFound]


@dataclass(frozen=True)
class DraftContent:
    """Full replacement content of a draft for an explicit save."""

    form_data: dict[str, dict[str, Any]] = field(default_factory=dict)
    current_step: int = 0
    completed_steps: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DraftSummary:
    visit_id: str
    exists: bool
    version: int | None
    current_step: int
    total_steps: int
    completed_steps: list[str]
    step_completion_percentage: int
    steps: StepSummary
    last_saved_at: datetime | None
    auto_saved: bool

    @property
    def ready_for_submission(self) -> bool:
        return self.steps.ready_for_submission


@dataclass(frozen=True)
class SubmissionResult:
    success: bool
    visit_id: str
    saved_examinations: list[str]
    status: str
    completion_percentage: int
    remaining_required: list[str]
    deviations: list[str]
    # exam id -> eye sides whose stored data differs from the submitted data
    conflicting_sides: dict[str, list[str]] = field(default_factory=dict)


def merge_form_data(base: FormData, update: FormData) -> dict[str, dict[str, Any]]:
    """Merge ``update`` into ``base`` per examination and eye side.

    Sides absent from (or ``None`` in) the update keep their stored value.
    """

    merged = {exam_id: dict(sides) for exam_id, sides in (base or {}).items()}
    for exam_id, sides in update.items():
        _check_sides(exam_id, sides)
        entry = merged.setdefault(exam_id, {})
        for side in EYESIDES:
            if sides.get(side) is not None:
                entry[side] = copy.deepcopy(sides[side])
    return merged


def _check_sides(exam_id: str, sides: Any) -> None:
    if not isinstance(sides, Mapping):
        raise InvalidDraftError(
            f"Form data for '{exam_id}' must map eye sides to data",
            details={"examination_id": exam_id},
        )
    unknown = set(sides) - set(EYESIDES)
    if unknown:
        raise InvalidDraftError(
            f"Form data for '{exam_id}' has unknown eye sides {sorted(unknown)}",
            details={"examination_id": exam_id},
        )


def validate_draft(draft: VisitDraft) -> None:
    """Check the step range and that form data only covers ordered steps."""

    order = list(draft.examination_order or [])
    if draft.total_steps != len(order) or draft.total_steps <= 0:
        raise InvalidDraftError(
            f"Draft for visit '{draft.visit_id}' must have one step per examination",
            details={"visit_id": draft.visit_id, "total_steps": draft.total_steps},
        )
    if not 0 <= draft.current_step < draft.total_steps:
        raise InvalidDraftError(
            f"Draft step {draft.current_step} is outside [0, {draft.total_steps})",
            details={"visit_id": draft.visit_id, "current_step": draft.current_step},
        )
    stray = set(draft.form_data or {}) - set(order)
    if stray:
        raise InvalidDraftError(
            f"Draft for visit '{draft.visit_id}' has data for examinations "
            f"outside its order: {sorted(stray)}",
            details={"visit_id": draft.visit_id, "examinations": sorted(stray)},
        )
    for exam_id, sides in (draft.form_data or {}).items():
        _check_sides(exam_id, sides)
    stray_steps = set(draft.completed_steps or []) - set(order)
    if stray_steps:
        raise InvalidDraftError(
            f"Draft for visit '{draft.visit_id}' completes unknown steps {sorted(stray_steps)}",
            details={"visit_id": draft.visit_id, "steps": sorted(stray_steps)},
        )


def _has_data(sides: Mapping[str, Any]) -> bool:
    return any(sides.get(side) for side in EYESIDES)


class DraftSynchronizer:
    """Owns the draft lifecycle of visits and their final submission.

    Args:
        visit_repository: Visit store.
        draft_repository: Versioned draft store.
        registry: Examination stores keyed by examination id.
        tracker: Completion calculator.
        evaluator: Status state machine and deviation recorder.
        audit: Optional audit sink for submission events.
        clock: "Now" provider.
        draft_ttl_days: Days after the last save at which a draft expires.
    """

    def __init__(
        self,
        visit_repository: VisitRepository,
        draft_repository: DraftRepository,
        registry: ExaminationStoreRegistry,
        tracker: ExaminationProgressTracker,
        evaluator: ProtocolComplianceEvaluator,
        *,
        audit: AuditSink | None = None,
        clock: Clock = utc_now,
        draft_ttl_days: int = 30,
    ) -> None:
        self.visit_repository = visit_repository
        self.draft_repository = draft_repository
        self.registry = registry
        self.tracker = tracker
        self.evaluator = evaluator
        self.audit = audit
        self.clock = clock
        self.draft_ttl = timedelta(days=draft_ttl_days)

    # Draft lifecycle -----------------------------------------------------

    async def load_draft(self, visit_id: str) -> VisitDraft | None:
        """Return the live draft of a visit; expired drafts load as ``None``."""

        draft = await self.draft_repository.get(visit_id)
        if draft is None:
            return None
        if draft.expires_at is not None and draft.expires_at <= self.clock():
            logger.debug("Draft for visit %s expired at %s", visit_id, draft.expires_at)
            return None
        return draft

    async def initialize_draft(
        self, visit_id: str, *, conducted_by: str | None = None
    ) -> VisitDraft:
        """Return the visit's live draft, creating an empty one if needed.

        Creating the first draft starts the visit.
        """

        visit = await self.evaluator.get_visit(visit_id)
        await self._start_visit(visit, conducted_by)
        existing = await self.load_draft(visit_id)
        if existing is not None:
            return existing

        draft = self._build_draft(visit, DraftContent(), auto_saved=False)
        validate_draft(draft)
        stored = await self.draft_repository.replace(draft)
        logger.info("Draft initialized for visit %s (%d steps)", visit_id, stored.total_steps)
        return stored

    async def save_draft(
        self,
        visit_id: str,
        replacement: DraftContent,
        *,
        conducted_by: str | None = None,
    ) -> VisitDraft:
        """Overwrite the draft unconditionally and bump its version."""

        visit = await self.evaluator.get_visit(visit_id)
        draft = self._build_draft(visit, replacement, auto_saved=False)
        validate_draft(draft)
        await self._start_visit(visit, conducted_by)
        stored = await self.draft_repository.replace(draft)
        logger.debug("Draft for visit %s saved at version %d", visit_id, stored.version)
        return stored

    async def auto_save(
        self,
        visit_id: str,
        partial_update: FormData,
        expected_version: int,
        *,
        current_step: int | None = None,
    ) -> AutoSaveResult:
        """Merge ``partial_update`` into the draft if it is still at ``expected_version``.

        Args:
            visit_id: Visit whose draft is updated.
            partial_update: Examination data to merge per eye side.
            expected_version: Version of the draft the caller last loaded or saved.
            current_step: Optional new step position.

        Returns:
            ``AutoSaveApplied`` with the stored draft, ``AutoSaveConflict``
            with the current stored draft when it moved on, or
            ``AutoSaveNotFound`` when the visit has no live draft.

        Raises:
            InvalidDraftError: If the merged draft breaks the step or order
                invariants (nothing is written).
        """

        current = await self.load_draft(visit_id)
        if current is None:
            return AutoSaveNotFound(visit_id)
        return await self._conditional_write(
            current,
            expected_version,
            form_data=merge_form_data(current.form_data, partial_update),
            current_step=current.current_step if current_step is None else current_step,
            completed_steps=list(current.completed_steps or []),
            auto_saved=True,
        )

    async def update_eye_data(
        self,
        visit_id: str,
        exam_id: str,
        *,
        right: dict[str, Any] | None = None,
        left: dict[str, Any] | None = None,
        expected_version: int,
    ) -> AutoSaveResult:
        sides = {side: data for side, data in (("right", right), ("left", left)) if data is not None}
        return await self.auto_save(visit_id, {exam_id: sides}, expected_version)

    async def complete_step(
        self, visit_id: str, exam_id: str, *, expected_version: int
    ) -> AutoSaveResult:
        """Mark a step done and move to the step after it."""

        current = await self.load_draft(visit_id)
        if current is None:
            return AutoSaveNotFound(visit_id)
        order = list(current.examination_order or [])
        if exam_id not in order:
            raise InvalidDraftError(
                f"Step '{exam_id}' is not part of the draft for visit '{visit_id}'",
                details={"visit_id": visit_id, "examination_id": exam_id},
            )

        completed = list(current.completed_steps or [])
        if exam_id not in completed:
            completed.append(exam_id)
        next_step = min(order.index(exam_id) + 1, current.total_steps - 1)
        return await self._conditional_write(
            current,
            expected_version,
            form_data=dict(current.form_data or {}),
            current_step=max(current.current_step, next_step),
            completed_steps=completed,
            auto_saved=False,
        )

    async def skip_examination(
        self, visit_id: str, exam_id: str, *, actor: str | None = None
    ) -> ExaminationProgress:
        visit = await self.evaluator.get_visit(visit_id)
        await self.evaluator.evaluate(visit)
        if visit.status in TERMINAL_STATUSES:
            raise InvalidStatusTransitionError(
                visit_id, visit.status, VisitStatusCode.IN_PROGRESS
            )
        progress = self.tracker.skip_examination(visit, exam_id)
        await self.visit_repository.save(visit)
        logger.info("Examination %s skipped for visit %s", exam_id, visit_id)
        await emit_audit(
            self.audit,
            action="examination_skipped",
            target_type="visit",
            target_id=visit_id,
            details={
                "examination_id": exam_id,
                "completion_percentage": progress.completion_percentage,
            },
            actor=actor,
        )
        return progress

    async def draft_summary(self, visit_id: str) -> DraftSummary:
        visit = await self.evaluator.get_visit(visit_id)
        draft = await self.load_draft(visit_id)
        order = list(draft.examination_order if draft else visit.examination_order or [])
        completed_steps = list(draft.completed_steps or []) if draft else []
        steps = self.tracker.step_statuses(
            order,
            draft.form_data if draft else {},
            skipped=visit.skipped_examinations or [],
            required=visit.required_examinations or [],
        )
        return DraftSummary(
            visit_id=visit_id,
            exists=draft is not None,
            version=draft.version if draft else None,
            current_step=draft.current_step if draft else 0,
            total_steps=len(order),
            completed_steps=completed_steps,
            step_completion_percentage=(
                round_half_up(100 * len(completed_steps) / len(order)) if order else 0
            ),
            steps=steps,
            last_saved_at=draft.last_saved_at if draft else None,
            auto_saved=bool(draft.auto_saved) if draft else False,
        )

    async def purge_expired_drafts(self) -> int:
        """Delete every draft whose expiry has passed; return how many."""

        count = await self.draft_repository.delete_expired(self.clock())
        if count:
            logger.info("Purged %d expired drafts", count)
        return count

    # Submission ----------------------------------------------------------

    async def submit(
        self,
        visit_id: str,
        form_data: FormData,
        completed_examinations: Iterable[str] = (),
        conducted_by: str | None = None,
    ) -> SubmissionResult:
        """Persist the examinations of a visit and finalize it.

        Every examination with data is written to its own store
        concurrently; the call waits for all of them. Safe to retry with the
        same data: sides already stored are confirmed, not rewritten.

        ``completed_examinations`` is the caller's claim; completion is
        always recomputed from the stores.

        Raises:
            SubmissionFailedError: If any examination write failed. The
                draft and visit are left untouched; ``saved_examinations``
                lists what is already stored.
            UnknownExaminationError: If the form has data for an examination
                the visit does not configure.
            InvalidStatusTransitionError: If the visit no longer accepts data
                (completed, missed or cancelled). A completed visit whose
                draft is still stored is not an error: the earlier submission
                committed and only its draft removal is repeated.
        """

        visit = await self.evaluator.get_visit(visit_id)
        await self.evaluator.evaluate(visit)
        if (
            visit.status == VisitStatusCode.COMPLETED
            and await self.draft_repository.get(visit_id) is not None
        ):
            return await self._finish_committed_submission(visit)
        if visit.status in TERMINAL_STATUSES:
            raise InvalidStatusTransitionError(
                visit_id, visit.status, VisitStatusCode.COMPLETED
            )

        for exam_id, sides in form_data.items():
            if exam_id not in (visit.examination_order or []) or exam_id not in self.registry:
                raise UnknownExaminationError(visit_id, exam_id)
            _check_sides(exam_id, sides)

        writes = [
            (exam_id, form_data[exam_id])
            for exam_id in visit.examination_order
            if exam_id in form_data and _has_data(form_data[exam_id])
        ]
        outcomes = await asyncio.gather(
            *(self._write_examination(visit_id, exam_id, sides) for exam_id, sides in writes),
            return_exceptions=True,
        )

        saved: list[str] = []
        failed: dict[str, str] = {}
        conflicts: dict[str, list[str]] = {}
        for (exam_id, _), outcome in zip(writes, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(
                    "Submission write of %s for visit %s failed",
                    exam_id,
                    visit_id,
                    exc_info=outcome,
                )
                failed[exam_id] = str(outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                saved.append(exam_id)
                if outcome:
                    conflicts[exam_id] = outcome
        if failed:
            raise SubmissionFailedError(
                visit_id, saved_examinations=saved, failed_examinations=failed
            )

        recorded = await self.tracker.recorded_examinations(visit)
        progress = self.tracker.recompute(visit, recorded)
        self.tracker.apply(visit, progress)

        claimed = list(completed_examinations)
        unconfirmed = sorted(set(claimed) - recorded)
        if unconfirmed:
            logger.warning(
                "Visit %s submission claims %s completed but the stores do not hold them",
                visit_id,
                unconfirmed,
            )

        if conducted_by:
            visit.conducted_by = conducted_by
        await self.evaluator.start_visit(visit)
        if visit.actual_date is None:
            visit.actual_date = self.clock().date()
        if progress.required_complete:
            transition_visit(visit, VisitStatusCode.COMPLETED)

        evaluation = await self.evaluator.evaluate(visit, save=False)
        await self.visit_repository.save(visit)
        await self._clear_draft(visit_id)

        deviation_ids = [d.deviation_id for d in evaluation.new_deviations]
        logger.info(
            "Visit %s submitted: %d examinations, %d%% complete, status %s",
            visit_id,
            len(saved),
            progress.completion_percentage,
            visit.status,
        )
        await emit_audit(
            self.audit,
            action="examinations_submitted",
            target_type="visit",
            target_id=visit_id,
            details={
                "saved_examinations": saved,
                "claimed_examinations": claimed,
                "completed_examinations": progress.completed_examinations,
                "completion_percentage": progress.completion_percentage,
                "status": visit.status,
                "deviations": deviation_ids,
                "conflicting_sides": conflicts,
            },
            actor=conducted_by,
        )
        return SubmissionResult(
            success=True,
            visit_id=visit_id,
            saved_examinations=saved,
            status=visit.status,
            completion_percentage=progress.completion_percentage,
            remaining_required=progress.remaining_required,
            deviations=deviation_ids,
            conflicting_sides=conflicts,
        )

    # Internals -----------------------------------------------------------

    async def _finish_committed_submission(self, visit: Visit) -> SubmissionResult:
        """Remove the draft left behind by a submission that already completed."""

        logger.info(
            "Visit %s already completed; removing its leftover draft", visit.visit_id
        )
        await self._clear_draft(visit.visit_id)
        return SubmissionResult(
            success=True,
            visit_id=visit.visit_id,
            saved_examinations=list(visit.completed_examinations or []),
            status=visit.status,
            completion_percentage=visit.completion_percentage,
            remaining_required=[],
            deviations=list(visit.protocol_deviations or []),
        )

    async def _write_examination(
        self, visit_id: str, exam_id: str, sides: Mapping[str, Any]
    ) -> list[str]:
        """Write one examination and return the sides stored with other data."""

        store = self.registry.get(exam_id)
        stored = await store.save_both_eyes(
            visit_id, right=sides.get("right") or None, left=sides.get("left") or None
        )
        conflicting = []
        for side in EYESIDES:
            if sides.get(side) and stored.get(side) != sides[side]:
                logger.warning(
                    "Visit %s %s %s eye already stored with different data; kept stored record",
                    visit_id,
                    exam_id,
                    side,
                )
                conflicting.append(side)
        return conflicting

    async def _clear_draft(self, visit_id: str) -> None:
        await self.draft_repository.delete(visit_id)
        logger.info("Draft cleared for visit %s", visit_id)

    async def _start_visit(self, visit: Visit, conducted_by: str | None) -> None:
        if await self.evaluator.start_visit(visit, conducted_by=conducted_by):
            await self.visit_repository.save(visit)

    async def _conditional_write(
        self,
        current: VisitDraft,
        expected_version: int,
        *,
        form_data: dict[str, dict[str, Any]],
        current_step: int,
        completed_steps: list[str],
        auto_saved: bool,
    ) -> AutoSaveResult:
        if current.version != expected_version:
            logger.info(
                "Draft conflict for visit %s: expected version %d, stored %d",
                current.visit_id,
                expected_version,
                current.version,
            )
            return AutoSaveConflict(current)

        now = self.clock()
        candidate = VisitDraft(
            visit_id=current.visit_id,
            form_data=form_data,
            current_step=current_step,
            total_steps=current.total_steps,
            completed_steps=completed_steps,
            examination_order=list(current.examination_order or []),
            last_saved_at=now,
            auto_saved=auto_saved,
            expires_at=now + self.draft_ttl,
        )
        validate_draft(candidate)

        stored = await self.draft_repository.compare_and_set(candidate, expected_version)
        if stored is not None:
            return AutoSaveApplied(stored)

        latest = await self.draft_repository.get(current.visit_id)
        if latest is None:
            return AutoSaveNotFound(current.visit_id)
        logger.info(
            "Draft conflict for visit %s: version %d was overwritten concurrently",
            current.visit_id,
            expected_version,
        )
        return AutoSaveConflict(latest)

    def _build_draft(
        self, visit: Visit, content: DraftContent, *, auto_saved: bool
    ) -> VisitDraft:
        now = self.clock()
        order = list(visit.examination_order or [])
        return VisitDraft(
            visit_id=visit.visit_id,
            form_data=copy.deepcopy(dict(content.form_data)),
            current_step=content.current_step,
            total_steps=len(order),
            completed_steps=list(content.completed_steps),
            examination_order=order,
            last_saved_at=now,
            auto_saved=auto_saved,
            expires_at=now + self.draft_ttl,
        )
