from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# exam id -> {"right": {...}, "left": {...}}
FormDataIn = dict[str, dict[str, dict[str, Any] | None]]


class DraftRead(BaseModel):
    visit_id: str
    form_data: dict[str, dict[str, Any]] = {}
    current_step: int
    total_steps: int
    completed_steps: list[str] = []
    examination_order: list[str] = []
    version: int
    last_saved_at: datetime
    auto_saved: bool
    expires_at: datetime | None = None

    model_config = {"from_attributes": True}


class DraftInit(BaseModel):
    conducted_by: str | None = None


class DraftSave(BaseModel):
    """Full replacement of a draft (explicit user save)."""

    form_data: FormDataIn = {}
    current_step: int = Field(default=0, ge=0)
    completed_steps: list[str] = []
    conducted_by: str | None = None


class DraftAutoSave(BaseModel):
    """Partial draft update applied only if the draft is still at ``expected_version``.

    Attributes:
        form_data: Examination data merged per eye side into the draft.
        expected_version: Version of the draft the client last loaded or saved.
        current_step: Optional new step position.
    """

    form_data: FormDataIn = {}
    expected_version: int = Field(ge=1)
    current_step: int | None = Field(default=None, ge=0)


class StepComplete(BaseModel):
    examination_id: str
    expected_version: int = Field(ge=1)


class AutoSaveRead(BaseModel):
    success: bool
    conflict: bool
    draft: DraftRead | None = None


class StepStatusRead(BaseModel):
    examination_id: str
    state: str
    right_eye: bool
    left_eye: bool
    required: bool

    model_config = {"from_attributes": True}


class DraftSummaryRead(BaseModel):
    visit_id: str
    exists: bool
    version: int | None
    current_step: int
    total_steps: int
    completed_steps: list[str]
    step_completion_percentage: int
    steps: list[StepStatusRead]
    completed: int
    partial: int
    not_started: int
    ready_for_submission: bool
    last_saved_at: datetime | None
    auto_saved: bool


class SubmissionCreate(BaseModel):
    form_data: FormDataIn
    completed_examinations: list[str] = []
    conducted_by: str | None = None


class SubmissionRead(BaseModel):
    success: bool
    visit_id: str
    saved_examinations: list[str]
    status: str
    completion_percentage: int
    remaining_required: list[str]
    deviations: list[str]
    conflicting_sides: dict[str, list[str]] = {}

    model_config = {"from_attributes": True}
