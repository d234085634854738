from __future__ import annotations

"""Error types raised by the visit core.

Template authoring defects are fatal for a study activation, user-action
errors reject a single action, and storage errors are transient and safe to
retry. Draft conflicts are not exceptions: they are returned as results by
the draft synchronizer.
"""

from typing import Any


class TrialCoreError(Exception):
    """Base error for the visit core.

    Args:
        message: Human-readable message.
        error_code: Stable machine-readable code used by the HTTP layer.
        details: Optional structured context.
    """

    error_code = "TRIAL_CORE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}


class InvalidTemplateError(TrialCoreError):
    """A visit template entry violates a template invariant."""

    error_code = "INVALID_TEMPLATE"

    def __init__(self, message: str, *, visit_number: int | None = None) -> None:
        super().__init__(message, details={"visit_number": visit_number})
        self.visit_number = visit_number


class DuplicateVisitNumberError(InvalidTemplateError):
    """Two template entries share a visit number."""

    error_code = "DUPLICATE_VISIT_NUMBER"

    def __init__(self, visit_number: int) -> None:
        super().__init__(
            f"Visit number {visit_number} appears more than once in the visit template",
            visit_number=visit_number,
        )


class VisitsAlreadyGeneratedError(TrialCoreError):
    """The survey already has visits; expansion is not repeated."""

    error_code = "VISITS_ALREADY_GENERATED"

    def __init__(self, survey_id: str) -> None:
        super().__init__(
            f"Visits were already generated for survey '{survey_id}'",
            details={"survey_id": survey_id},
        )


class CannotSkipRequiredExaminationError(TrialCoreError):
    error_code = "CANNOT_SKIP_REQUIRED_EXAMINATION"

    def __init__(self, visit_id: str, examination_id: str) -> None:
        super().__init__(
            f"Examination '{examination_id}' is required for visit '{visit_id}' and cannot be skipped",
            details={"visit_id": visit_id, "examination_id": examination_id},
        )


class UnknownExaminationError(TrialCoreError):
    error_code = "UNKNOWN_EXAMINATION"

    def __init__(self, owner_id: str, examination_id: str, *, owner: str = "visit") -> None:
        super().__init__(
            f"Examination '{examination_id}' is not configured for {owner} '{owner_id}'",
            details={f"{owner}_id": owner_id, "examination_id": examination_id},
        )


class InvalidStatusTransitionError(TrialCoreError):
    error_code = "INVALID_STATUS_TRANSITION"

    def __init__(self, visit_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Visit '{visit_id}' cannot move from '{current}' to '{target}'",
            details={"visit_id": visit_id, "current": current, "target": target},
        )


class SurveyNotActiveError(TrialCoreError):
    """The survey is completed or withdrawn and accepts no further changes."""

    error_code = "SURVEY_NOT_ACTIVE"

    def __init__(self, survey_id: str, current: str) -> None:
        super().__init__(
            f"Survey '{survey_id}' is {current}, not active",
            details={"survey_id": survey_id, "current": current},
        )


class StudyNotFoundError(TrialCoreError):
    error_code = "STUDY_NOT_FOUND"

    def __init__(self, clinical_study_id: str) -> None:
        super().__init__(
            f"Clinical study '{clinical_study_id}' not found",
            details={"clinical_study_id": clinical_study_id},
        )


class SurveyNotFoundError(TrialCoreError):
    error_code = "SURVEY_NOT_FOUND"

    def __init__(self, survey_id: str) -> None:
        super().__init__(
            f"Survey '{survey_id}' not found", details={"survey_id": survey_id}
        )


class VisitNotFoundError(TrialCoreError):
    error_code = "VISIT_NOT_FOUND"

    def __init__(self, visit_id: str) -> None:
        super().__init__(
            f"Visit '{visit_id}' not found", details={"visit_id": visit_id}
        )


class DraftNotFoundError(TrialCoreError):
    error_code = "DRAFT_NOT_FOUND"

    def __init__(self, visit_id: str) -> None:
        super().__init__(
            f"No draft found for visit '{visit_id}'", details={"visit_id": visit_id}
        )


class InvalidDraftError(TrialCoreError):
    """Draft content violates the step or examination-order invariants."""

    error_code = "INVALID_DRAFT"


class StorageError(TrialCoreError):
    """Transient failure of an underlying store; retry with backoff."""

    error_code = "STORAGE_ERROR"


class SubmissionFailedError(TrialCoreError):
    """A submission fan-out write failed after zero or more writes succeeded.

    Args:
        visit_id: Visit being submitted.
        saved_examinations: Examinations persisted (or confirmed already
            persisted) before the failure; a retry may resume from here.
        failed_examinations: Mapping of examination id to error message.
    """

    error_code = "SUBMISSION_FAILED"

    def __init__(
        self,
        visit_id: str,
        *,
        saved_examinations: list[str],
        failed_examinations: dict[str, str],
    ) -> None:
        super().__init__(
            f"Submission for visit '{visit_id}' failed for: "
            + ", ".join(sorted(failed_examinations)),
            details={
                "visit_id": visit_id,
                "saved_examinations": saved_examinations,
                "failed_examinations": failed_examinations,
            },
        )
        self.visit_id = visit_id
        self.saved_examinations = saved_examinations
        self.failed_examinations = failed_examinations
