"""Visit status state machine and protocol compliance evaluation.

A visit moves ``scheduled -> in_progress -> completed``. From ``scheduled``,
``in_progress`` or ``rescheduled`` it can also become ``missed`` (derived
lazily once the window has ended), ``cancelled`` or ``rescheduled``
(administrative actions). ``completed``, ``missed`` and ``cancelled`` are
terminal.

Deviations are data, never errors:

* ``missed_window`` (major) when a visit becomes ``missed``;
* ``out_of_window_conducted`` (minor) when ``actual_date`` lies outside the
  window;
* ``incomplete_required_examination`` (critical) when a ``completed`` visit
  lacks a required examination. The transition guard makes this
  unreachable through the core itself; seeing it means the stored data was
  changed elsewhere.

Classification is a pure function of the visit and "now"; recording goes
through an append-only log that holds at most one deviation per
``(visit, kind)``, so evaluating a visit repeatedly is idempotent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import StrEnum
from uuid import uuid4

from app.core.clock import Clock, utc_now
from app.core.logging import logger
from app.models.protocol_deviation import DeviationKind, DeviationSeverity, ProtocolDeviation
from app.models.visit import Visit
from app.repositories.deviation_log import DeviationLog
from app.repositories.visit_repository import OPEN_STATUSES as OPEN_VISIT_STATUSES
from app.repositories.visit_repository import VisitRepository
from app.services.activity_log_service import AuditSink, emit_audit
from app.services.errors import InvalidStatusTransitionError, VisitNotFoundError


class VisitStatusCode(StrEnum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"


class TimingStatus(StrEnum):
    """Timing of a visit relative to its protocol window."""

    ON_TIME = "on_time"
    WITHIN_WINDOW = "within_window"
    OUT_OF_WINDOW = "out_of_window"
    MISSED = "missed"
    PENDING = "pending"


_ADMINISTRATIVE = frozenset(
    {VisitStatusCode.MISSED, VisitStatusCode.CANCELLED, VisitStatusCode.RESCHEDULED}
)

_TRANSITIONS: dict[VisitStatusCode, frozenset[VisitStatusCode]] = {
    VisitStatusCode.SCHEDULED: _ADMINISTRATIVE | {VisitStatusCode.IN_PROGRESS},
    VisitStatusCode.IN_PROGRESS: _ADMINISTRATIVE | {VisitStatusCode.COMPLETED},
    VisitStatusCode.RESCHEDULED: _ADMINISTRATIVE | {VisitStatusCode.IN_PROGRESS},
    VisitStatusCode.COMPLETED: frozenset(),
    VisitStatusCode.MISSED: frozenset(),
    VisitStatusCode.CANCELLED: frozenset(),
}

OPEN_STATUSES = frozenset(VisitStatusCode(s) for s in OPEN_VISIT_STATUSES)
TERMINAL_STATUSES = frozenset(
    {VisitStatusCode.COMPLETED, VisitStatusCode.MISSED, VisitStatusCode.CANCELLED}
)

_SEVERITY: dict[DeviationKind, DeviationSeverity] = {
    DeviationKind.MISSED_WINDOW: DeviationSeverity.MAJOR,
    DeviationKind.OUT_OF_WINDOW_CONDUCTED: DeviationSeverity.MINOR,
    DeviationKind.INCOMPLETE_REQUIRED_EXAMINATION: DeviationSeverity.CRITICAL,
}


def missing_required(visit: Visit) -> list[str]:
    completed = set(visit.completed_examinations or [])
    return [e for e in visit.required_examinations or [] if e not in completed]


def can_transition(current: str, target: str) -> bool:
    return VisitStatusCode(target) in _TRANSITIONS[VisitStatusCode(current)]


def transition_visit(visit: Visit, target: VisitStatusCode, *, reason: str | None = None) -> None:
    """Move ``visit`` to ``target`` if the state machine allows it.

    Completion is additionally gated on every required examination being
    recorded, whatever the completion percentage says.

    Raises:
        InvalidStatusTransitionError: If the transition is not allowed.
    """

    if not can_transition(visit.status, target):
        raise InvalidStatusTransitionError(visit.visit_id, visit.status, target)
    if target is VisitStatusCode.COMPLETED and missing_required(visit):
        raise InvalidStatusTransitionError(visit.visit_id, visit.status, target)

    logger.info("Visit %s: %s -> %s", visit.visit_id, visit.status, target.value)
    visit.status = target.value
    if reason is not None:
        visit.status_reason = reason


def is_past_window(visit: Visit, today: date) -> bool:
    return visit.status in OPEN_STATUSES and today > visit.window_end_date


def timing_status(visit: Visit, today: date) -> TimingStatus:
    if visit.actual_date is not None:
        if visit.actual_date == visit.scheduled_date:
            return TimingStatus.ON_TIME
        if visit.window_start_date <= visit.actual_date <= visit.window_end_date:
            return TimingStatus.WITHIN_WINDOW
        return TimingStatus.OUT_OF_WINDOW
    if visit.status == VisitStatusCode.MISSED or is_past_window(visit, today):
        return TimingStatus.MISSED
    return TimingStatus.PENDING


@dataclass(frozen=True)
class DeviationCandidate:
    kind: DeviationKind
    severity: DeviationSeverity
    description: str


def derive_deviations(visit: Visit) -> list[DeviationCandidate]:
    """Return every deviation the visit's current state implies."""

    found: list[DeviationCandidate] = []

    if visit.status == VisitStatusCode.MISSED:
        found.append(
            DeviationCandidate(
                DeviationKind.MISSED_WINDOW,
                _SEVERITY[DeviationKind.MISSED_WINDOW],
                f"Visit {visit.visit_number} not conducted within window "
                f"{visit.window_start_date.isoformat()} to {visit.window_end_date.isoformat()}",
            )
        )

    if visit.actual_date is not None and not (
        visit.window_start_date <= visit.actual_date <= visit.window_end_date
    ):
        found.append(
            DeviationCandidate(
                DeviationKind.OUT_OF_WINDOW_CONDUCTED,
                _SEVERITY[DeviationKind.OUT_OF_WINDOW_CONDUCTED],
                f"Visit {visit.visit_number} conducted on {visit.actual_date.isoformat()}, "
                f"outside window {visit.window_start_date.isoformat()} to "
                f"{visit.window_end_date.isoformat()}",
            )
        )

    if visit.status == VisitStatusCode.COMPLETED:
        missing = missing_required(visit)
        if missing:
            found.append(
                DeviationCandidate(
                    DeviationKind.INCOMPLETE_REQUIRED_EXAMINATION,
                    _SEVERITY[DeviationKind.INCOMPLETE_REQUIRED_EXAMINATION],
                    f"Visit {visit.visit_number} completed without required "
                    f"examinations: {', '.join(missing)}",
                )
            )

    return found


@dataclass
class ComplianceEvaluation:
    visit: Visit
    previous_status: str
    timing: TimingStatus
    new_deviations: list[ProtocolDeviation] = field(default_factory=list)

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.visit.status


class ProtocolComplianceEvaluator:
    """Applies lazy status reclassification and records deviations.

    Args:
        visit_repository: Visit store.
        deviation_log: Append-only deviation log.
        audit: Optional audit sink receiving each new deviation.
        clock: "Now" provider.
    """

    def __init__(
        self,
        visit_repository: VisitRepository,
        deviation_log: DeviationLog,
        *,
        audit: AuditSink | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.visit_repository = visit_repository
        self.deviation_log = deviation_log
        self.audit = audit
        self.clock = clock

    def today(self) -> date:
        return self.clock().date()

    async def get_visit(self, visit_id: str) -> Visit:
        visit = await self.visit_repository.get(visit_id)
        if visit is None:
            raise VisitNotFoundError(visit_id)
        return visit

    async def evaluate(self, visit: Visit, *, save: bool = True) -> ComplianceEvaluation:
        """Reclassify ``visit`` and record any deviation it implies.

        Args:
            visit: Visit to evaluate; updated in place.
            save: Persist the visit when its status or deviations changed.

        Returns:
            The evaluation result, including deviations recorded by this call.
        """

        today = self.today()
        previous = visit.status
        if is_past_window(visit, today):
            transition_visit(
                visit,
                VisitStatusCode.MISSED,
                reason=f"Window ended {visit.window_end_date.isoformat()}",
            )

        known_ids = list(visit.protocol_deviations or [])
        new_deviations = await self._record_deviations(visit)
        changed = previous != visit.status or known_ids != visit.protocol_deviations
        if save and changed:
            await self.visit_repository.save(visit)

        return ComplianceEvaluation(
            visit=visit,
            previous_status=previous,
            timing=timing_status(visit, today),
            new_deviations=new_deviations,
        )

    async def evaluate_by_id(self, visit_id: str) -> ComplianceEvaluation:
        return await self.evaluate(await self.get_visit(visit_id))

    async def evaluate_many(self, visits: list[Visit]) -> list[ComplianceEvaluation]:
        return [await self.evaluate(visit) for visit in visits]

    async def _record_deviations(self, visit: Visit) -> list[ProtocolDeviation]:
        recorded = await self.deviation_log.list_for_visit(visit.visit_id)
        known_kinds = {d.kind for d in recorded}
        ids = list(visit.protocol_deviations or [])
        # Heal the visit's id list from the log in case an earlier save failed
        for deviation in recorded:
            if deviation.deviation_id not in ids:
                ids.append(deviation.deviation_id)

        new: list[ProtocolDeviation] = []
        for candidate in derive_deviations(visit):
            if candidate.kind in known_kinds:
                continue
            deviation = ProtocolDeviation(
                deviation_id=uuid4().hex,
                visit_id=visit.visit_id,
                severity=candidate.severity.value,
                kind=candidate.kind.value,
                detected_at=self.clock(),
                description=candidate.description,
            )
            if not await self.deviation_log.append(deviation):
                # A concurrent evaluator recorded the same kind first
                continue
            ids.append(deviation.deviation_id)
            new.append(deviation)
            logger.info(
                "Protocol deviation %s (%s) recorded for visit %s",
                deviation.kind,
                deviation.severity,
                visit.visit_id,
            )
            await emit_audit(
                self.audit,
                action="protocol_deviation_recorded",
                target_type="visit",
                target_id=visit.visit_id,
                details={
                    "deviation_id": deviation.deviation_id,
                    "kind": deviation.kind,
                    "severity": deviation.severity,
                    "description": deviation.description,
                },
            )

        if ids != list(visit.protocol_deviations or []):
            visit.protocol_deviations = ids
        return new

    async def start_visit(self, visit: Visit, *, conducted_by: str | None = None) -> bool:
        """Move a scheduled or rescheduled visit to ``in_progress``.

        Does nothing for visits already in progress and still inside their
        window. The visit is not saved.

        Returns:
            ``True`` if the status changed.

        Raises:
            InvalidStatusTransitionError: If the visit is terminal or its
                window has already ended (it is reclassified as missed).
        """

        if is_past_window(visit, self.today()):
            await self.evaluate(visit)
            raise InvalidStatusTransitionError(
                visit.visit_id, visit.status, VisitStatusCode.IN_PROGRESS
            )
        if visit.status == VisitStatusCode.IN_PROGRESS:
            return False

        transition_visit(visit, VisitStatusCode.IN_PROGRESS)
        if visit.actual_date is None:
            visit.actual_date = self.today()
        if conducted_by:
            visit.conducted_by = conducted_by
        return True

    async def cancel_visit(
        self, visit_id: str, *, reason: str | None = None, actor: str | None = None
    ) -> Visit:
        """Cancel an open visit.

        A visit whose window already ended is marked missed first, so the
        cancellation is refused with ``InvalidStatusTransitionError``.
        """

        visit = await self.get_visit(visit_id)
        await self.evaluate(visit)
        previous = visit.status
        transition_visit(visit, VisitStatusCode.CANCELLED, reason=reason or "Visit cancelled")
        visit = await self.visit_repository.save(visit)
        await emit_audit(
            self.audit,
            action="visit_cancelled",
            target_type="visit",
            target_id=visit_id,
            details={"previous_status": previous, "reason": visit.status_reason},
            actor=actor,
        )
        return visit

    async def reschedule_visit(
        self,
        visit_id: str,
        new_date: date,
        *,
        reason: str | None = None,
        actor: str | None = None,
    ) -> tuple[Visit, bool]:
        """Mark a visit rescheduled and move it to ``new_date`` when allowed.

        The protocol window itself is fixed by the template and baseline. A
        date outside it is recorded in the audit trail but the scheduled date
        is kept and the result reports the request as not protocol-compliant.

        Returns:
            The saved visit and whether ``new_date`` lies within the window.
        """

        visit = await self.get_visit(visit_id)
        await self.evaluate(visit)
        previous = visit.status
        transition_visit(
            visit, VisitStatusCode.RESCHEDULED, reason=reason or "Visit rescheduled"
        )
        compliant = visit.window_start_date <= new_date <= visit.window_end_date
        if compliant:
            visit.scheduled_date = new_date
        else:
            logger.warning(
                "Visit %s rescheduled to %s outside window %s..%s; scheduled date kept",
                visit_id,
                new_date.isoformat(),
                visit.window_start_date.isoformat(),
                visit.window_end_date.isoformat(),
            )
        visit = await self.visit_repository.save(visit)
        await emit_audit(
            self.audit,
            action="visit_rescheduled",
            target_type="visit",
            target_id=visit_id,
            details={
                "previous_status": previous,
                "requested_date": new_date.isoformat(),
                "protocol_compliant": compliant,
                "reason": visit.status_reason,
            },
            actor=actor,
        )
        return visit, compliant
