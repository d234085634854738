from __future__ import annotations

from fastapi import APIRouter, Response, status

from app.deps import ActorDep, ServicesDep
from app.schemas.draft import (
    AutoSaveRead,
    DraftAutoSave,
    DraftInit,
    DraftRead,
    DraftSave,
    DraftSummaryRead,
    StepComplete,
    StepStatusRead,
    SubmissionCreate,
    SubmissionRead,
)
from app.services.draft_synchronizer import (
    AutoSaveConflict,
    AutoSaveNotFound,
    AutoSaveResult,
    DraftContent,
)
from app.services.errors import DraftNotFoundError
from app.services.survey_progress_service import refresh_survey_progress


router = APIRouter()


def _auto_save_read(result: AutoSaveResult, response: Response) -> AutoSaveRead:
    # Conflicts are results, not errors; the status code only mirrors them
    if isinstance(result, AutoSaveConflict):
        response.status_code = status.HTTP_409_CONFLICT
    elif isinstance(result, AutoSaveNotFound):
        response.status_code = status.HTTP_404_NOT_FOUND
    draft = result.latest_draft
    return AutoSaveRead(
        success=result.success,
        conflict=result.conflict,
        draft=DraftRead.model_validate(draft) if draft is not None else None,
    )


@router.get("/visits/{visit_id}/draft", response_model=DraftRead)
async def load_draft(visit_id: str, services: ServicesDep) -> DraftRead:
    draft = await services.synchronizer.load_draft(visit_id)
    if draft is None:
        raise DraftNotFoundError(visit_id)
    return DraftRead.model_validate(draft)


@router.post(
    "/visits/{visit_id}/draft",
    response_model=DraftRead,
    status_code=status.HTTP_201_CREATED,
)
async def initialize_draft(
    visit_id: str, payload: DraftInit, services: ServicesDep
) -> DraftRead:
    """Create the visit's draft (or return the live one) and start the visit."""

    draft = await services.synchronizer.initialize_draft(
        visit_id, conducted_by=payload.conducted_by
    )
    return DraftRead.model_validate(draft)


@router.put("/visits/{visit_id}/draft", response_model=DraftRead)
async def save_draft(visit_id: str, payload: DraftSave, services: ServicesDep) -> DraftRead:
    draft = await services.synchronizer.save_draft(
        visit_id,
        DraftContent(
            form_data={k: dict(v) for k, v in payload.form_data.items()},
            current_step=payload.current_step,
            completed_steps=list(payload.completed_steps),
        ),
        conducted_by=payload.conducted_by,
    )
    return DraftRead.model_validate(draft)


@router.patch("/visits/{visit_id}/draft", response_model=AutoSaveRead)
async def auto_save_draft(
    visit_id: str, payload: DraftAutoSave, response: Response, services: ServicesDep
) -> AutoSaveRead:
    """Autosave: 200 when applied, 409 with the current draft on a version conflict."""

    result = await services.synchronizer.auto_save(
        visit_id,
        payload.form_data,
        payload.expected_version,
        current_step=payload.current_step,
    )
    return _auto_save_read(result, response)


@router.post("/visits/{visit_id}/draft/steps", response_model=AutoSaveRead)
async def complete_draft_step(
    visit_id: str, payload: StepComplete, response: Response, services: ServicesDep
) -> AutoSaveRead:
    result = await services.synchronizer.complete_step(
        visit_id, payload.examination_id, expected_version=payload.expected_version
    )
    return _auto_save_read(result, response)


@router.get("/visits/{visit_id}/draft/summary", response_model=DraftSummaryRead)
async def get_draft_summary(visit_id: str, services: ServicesDep) -> DraftSummaryRead:
    summary = await services.synchronizer.draft_summary(visit_id)
    return DraftSummaryRead(
        visit_id=summary.visit_id,
        exists=summary.exists,
        version=summary.version,
        current_step=summary.current_step,
        total_steps=summary.total_steps,
        completed_steps=summary.completed_steps,
        step_completion_percentage=summary.step_completion_percentage,
        steps=[StepStatusRead.model_validate(s) for s in summary.steps.steps],
        completed=summary.steps.completed,
        partial=summary.steps.partial,
        not_started=summary.steps.not_started,
        ready_for_submission=summary.ready_for_submission,
        last_saved_at=summary.last_saved_at,
        auto_saved=summary.auto_saved,
    )


@router.post("/visits/{visit_id}/submit", response_model=SubmissionRead)
async def submit_visit(
    visit_id: str, payload: SubmissionCreate, services: ServicesDep, actor: ActorDep
) -> SubmissionRead:
    """Persist the visit's examinations and finalize it.

    A failed examination write answers 502 with the saved and failed
    examinations in ``details``; the draft is kept and the call can be retried.
    """

    result = await services.synchronizer.submit(
        visit_id,
        payload.form_data,
        payload.completed_examinations,
        payload.conducted_by or actor,
    )
    visit = await services.evaluator.get_visit(visit_id)
    await refresh_survey_progress(
        visit.survey_id,
        visit_repository=services.visit_repository,
        survey_repository=services.survey_repository,
    )
    return SubmissionRead.model_validate(result)
