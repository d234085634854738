from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field


class VisitRead(BaseModel):
    visit_id: str
    survey_id: str
    patient_id: str
    clinical_study_id: str
    organization_id: str
    visit_number: int
    visit_name: str | None = None
    visit_type: str | None = None
    scheduled_date: date
    window_start_date: date
    window_end_date: date
    actual_date: date | None = None
    status: str
    status_reason: str | None = None
    examination_order: list[str] = []
    required_examinations: list[str] = []
    optional_examinations: list[str] = []
    completed_examinations: list[str] = []
    skipped_examinations: list[str] = []
    completion_percentage: int
    protocol_deviations: list[str] = []
    conducted_by: str | None = None

    model_config = {"from_attributes": True}


class VisitComplianceRead(VisitRead):
    """Visit as evaluated on read, with its timing classification."""

    timing: str


class VisitGenerationRead(BaseModel):
    survey_id: str
    expected_completion_date: date | None
    visits: list[VisitRead]


class DeviationRead(BaseModel):
    deviation_id: str
    visit_id: str
    severity: str
    kind: str
    detected_at: datetime
    description: str

    model_config = {"from_attributes": True}


class VisitCancel(BaseModel):
    reason: str | None = Field(default=None, max_length=1024)


class VisitReschedule(BaseModel):
    """Payload to reschedule a visit.

    Attributes:
        new_date: Requested visit date. Dates outside the protocol window
            are accepted but reported as not compliant and not applied.
        reason: Optional free-text reason.
    """

    new_date: date
    reason: str | None = Field(default=None, max_length=1024)


class RescheduleRead(BaseModel):
    visit: VisitRead
    protocol_compliant: bool


class ExaminationProgressRead(BaseModel):
    visit_id: str
    completion_percentage: int
    completed_examinations: list[str]
    remaining_required: list[str]


class ExaminationConfigurationRead(BaseModel):
    visit_id: str
    examination_order: list[str]
    required_examinations: list[str]
    optional_examinations: list[str]
    completed_examinations: list[str]
    skipped_examinations: list[str]
    remaining_examinations: list[str]

    model_config = {"from_attributes": True}


class VisitStatisticsRead(BaseModel):
    total_visits: int
    by_status: dict[str, int]
    average_completion: int
    total_examinations: int
    completed_examinations: int
    skipped_examinations: int
    examination_completion_rate: int
    deviation_count: int

    model_config = {"from_attributes": True}


class SurveyProgressRead(BaseModel):
    survey_id: str
    status: str
    total_visits: int
    completed_visits: int
    completion_percentage: int
    expected_completion_date: date | None
    next_visit: VisitRead | None = None
    statistics: VisitStatisticsRead


class SurveyWithdraw(BaseModel):
    reason: str | None = Field(default=None, max_length=1024)


class SurveyWithdrawalRead(BaseModel):
    survey_id: str
    status: str
    total_visits: int
    completed_visits: int
    completion_percentage: int
    cancelled_visits: list[str]


class ExaminationComparisonEntryRead(BaseModel):
    visit_id: str
    visit_number: int
    visit_name: str | None = None
    scheduled_date: date
    actual_date: date | None = None
    right: dict[str, Any] | None = None
    left: dict[str, Any] | None = None

    model_config = {"from_attributes": True}


class ExaminationComparisonRead(BaseModel):
    """One examination's stored results across the visits of a survey."""

    survey_id: str
    examination_id: str
    visits: list[ExaminationComparisonEntryRead]
