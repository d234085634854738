from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Sequence

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.logging import logger
from app.deps import get_services
from app.routers.drafts import router as drafts_router
from app.routers.visits import router as visits_router
from app.services.errors import (
    CannotSkipRequiredExaminationError,
    DraftNotFoundError,
    InvalidDraftError,
    InvalidStatusTransitionError,
    InvalidTemplateError,
    StorageError,
    StudyNotFoundError,
    SubmissionFailedError,
    SurveyNotActiveError,
    SurveyNotFoundError,
    TrialCoreError,
    UnknownExaminationError,
    VisitNotFoundError,
    VisitsAlreadyGeneratedError,
)
from app.services.missed_visit_sweep_scheduler import (
    shutdown_missed_visit_sweep_scheduler,
    start_missed_visit_sweep_scheduler,
)
from core.settings import get_settings
from db.session import engine


settings = get_settings()

_STATUS_BY_ERROR: dict[type[TrialCoreError], int] = {
    InvalidTemplateError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidDraftError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CannotSkipRequiredExaminationError: status.HTTP_400_BAD_REQUEST,
    UnknownExaminationError: status.HTTP_400_BAD_REQUEST,
    StudyNotFoundError: status.HTTP_404_NOT_FOUND,
    SurveyNotFoundError: status.HTTP_404_NOT_FOUND,
    VisitNotFoundError: status.HTTP_404_NOT_FOUND,
    DraftNotFoundError: status.HTTP_404_NOT_FOUND,
    VisitsAlreadyGeneratedError: status.HTTP_409_CONFLICT,
    InvalidStatusTransitionError: status.HTTP_409_CONFLICT,
    SurveyNotActiveError: status.HTTP_409_CONFLICT,
    SubmissionFailedError: status.HTTP_502_BAD_GATEWAY,
    StorageError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for_error(exc: TrialCoreError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_BY_ERROR:
            return _STATUS_BY_ERROR[cls]
    return status.HTTP_400_BAD_REQUEST


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = get_services()
    start_missed_visit_sweep_scheduler(services.evaluator, services.synchronizer)
    yield
    shutdown_missed_visit_sweep_scheduler()
    # Ensure DB connections are cleanly closed on shutdown
    await engine.dispose()


def create_app(allowed_origins: Sequence[str] | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        allowed_origins: Optional list of CORS origins to allow. If not provided,
            permissive defaults will be used for local development.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)

    cors_origins = list(
        allowed_origins
        or [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TrialCoreError)
    async def trial_core_error_handler(request: Request, exc: TrialCoreError):
        code = status_for_error(exc)
        if code >= 500:
            logger.warning(
                "%s %s failed: %s", request.method, request.url.path, exc.message
            )
        return JSONResponse(
            status_code=code,
            content={
                "detail": exc.message,
                "error_code": exc.error_code,
                "details": exc.details,
            },
        )

    # Routers
    app.include_router(visits_router, tags=["visits"])
    app.include_router(drafts_router, tags=["drafts"])

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
