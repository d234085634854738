import sys
from pathlib import Path

import pytest
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport

# Ensure the project root is importable so `app.*` and `tests.utils.*` resolve
_BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

from app.deps import get_services  # noqa: E402
from app.main import create_app  # noqa: E402
from tests.utils.factories import make_entry, make_study, make_survey  # noqa: E402
from tests.utils.fakes import RecordingAuditSink, build_fake_services, utc  # noqa: E402


@pytest.fixture()
def settings_override(monkeypatch):
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("POSTGRES_HOST", "localhost")
    monkeypatch.setenv("DB_ECHO", "false")
    monkeypatch.setenv("MISSED_VISIT_SWEEP_ENABLED", "false")
    yield


@pytest.fixture()
def now():
    """Default "now" for tests: inside the window of the example visit."""

    return utc(2024, 1, 16)


@pytest.fixture()
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture()
def services(now, audit_sink):
    services, _ = build_fake_services(
        now=now,
        surveys=[make_survey()],
        studies=[make_study()],
        entries=[
            make_entry(1, days=7),
            make_entry(2, days=30, before=3, after=3),
        ],
        audit=audit_sink,
    )
    return services


@pytest.fixture()
def app(settings_override, services) -> FastAPI:
    application = create_app()
    application.dependency_overrides[get_services] = lambda: services
    return application


@pytest.fixture()
async def async_client(app: FastAPI):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
