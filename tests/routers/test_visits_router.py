import pytest
from fastapi import status


@pytest.mark.asyncio
async def test_health(async_client):
    resp = await async_client.get("/health")

    assert resp.status_code == status.HTTP_200_OK
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_generate_visits_for_survey(async_client, audit_sink):
    resp = await async_client.post(
        "/surveys/SURVEY-1/visits", headers={"X-Actor": "coordinator"}
    )

    assert resp.status_code == status.HTTP_201_CREATED
    body = resp.json()
    assert body["expected_completion_date"] == "2024-02-12"
    assert [v["visit_id"] for v in body["visits"]] == ["SURVEY-1-V001", "SURVEY-1-V002"]
    first = body["visits"][0]
    assert (first["window_start_date"], first["scheduled_date"], first["window_end_date"]) == (
        "2024-01-15",
        "2024-01-17",
        "2024-01-19",
    )
    assert audit_sink.events[0]["actor"] == "coordinator"


@pytest.mark.asyncio
async def test_generating_twice_conflicts(async_client):
    await async_client.post("/surveys/SURVEY-1/visits")

    resp = await async_client.post("/surveys/SURVEY-1/visits")

    assert resp.status_code == status.HTTP_409_CONFLICT
    assert resp.json()["error_code"] == "VISITS_ALREADY_GENERATED"


@pytest.mark.asyncio
async def test_unknown_survey_is_404(async_client):
    resp = await async_client.post("/surveys/missing/visits")

    assert resp.status_code == status.HTTP_404_NOT_FOUND
    body = resp.json()
    assert body["error_code"] == "SURVEY_NOT_FOUND"
    assert body["details"] == {"survey_id": "missing"}


@pytest.mark.asyncio
async def test_get_visit_includes_timing(async_client):
    await async_client.post("/surveys/SURVEY-1/visits")

    resp = await async_client.get("/visits/SURVEY-1-V001")

    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["status"] == "scheduled"
    assert resp.json()["timing"] == "pending"


@pytest.mark.asyncio
async def test_skip_required_examination_is_400(async_client):
    await async_client.post("/surveys/SURVEY-1/visits")

    resp = await async_client.post("/visits/SURVEY-1-V001/examinations/A/skip")

    assert resp.status_code == status.HTTP_400_BAD_REQUEST
    assert resp.json()["error_code"] == "CANNOT_SKIP_REQUIRED_EXAMINATION"


@pytest.mark.asyncio
async def test_skip_optional_examination(async_client):
    await async_client.post("/surveys/SURVEY-1/visits")

    resp = await async_client.post("/visits/SURVEY-1-V001/examinations/C/skip")

    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["completion_percentage"] == 33

    config = await async_client.get("/visits/SURVEY-1-V001/examinations")
    assert config.json()["remaining_examinations"] == ["A", "B"]


@pytest.mark.asyncio
async def test_cancel_then_reschedule_conflicts(async_client):
    await async_client.post("/surveys/SURVEY-1/visits")

    cancelled = await async_client.post(
        "/visits/SURVEY-1-V002/cancel", json={"reason": "Patient moved"}
    )
    resp = await async_client.post(
        "/visits/SURVEY-1-V002/reschedule", json={"new_date": "2024-02-10"}
    )

    assert cancelled.status_code == status.HTTP_200_OK
    assert cancelled.json()["status"] == "cancelled"
    assert resp.status_code == status.HTTP_409_CONFLICT
    assert resp.json()["error_code"] == "INVALID_STATUS_TRANSITION"


@pytest.mark.asyncio
async def test_reschedule_reports_protocol_compliance(async_client):
    await async_client.post("/surveys/SURVEY-1/visits")

    resp = await async_client.post(
        "/visits/SURVEY-1-V002/reschedule", json={"new_date": "2024-02-11"}
    )

    assert resp.status_code == status.HTTP_200_OK
    assert resp.json()["protocol_compliant"] is True
    assert resp.json()["visit"]["scheduled_date"] == "2024-02-11"


@pytest.mark.asyncio
async def test_survey_progress(async_client):
    await async_client.post("/surveys/SURVEY-1/visits")

    resp = await async_client.get("/surveys/SURVEY-1/progress")

    assert resp.status_code == status.HTTP_200_OK
    body = resp.json()
    assert body["total_visits"] == 2
    assert body["completed_visits"] == 0
    assert body["next_visit"]["visit_id"] == "SURVEY-1-V001"
    assert body["statistics"]["by_status"]["scheduled"] == 2


@pytest.mark.asyncio
async def test_withdraw_survey_cancels_visits(async_client, audit_sink):
    await async_client.post("/surveys/SURVEY-1/visits")

    resp = await async_client.post(
        "/surveys/SURVEY-1/withdraw",
        json={"reason": "adverse event"},
        headers={"X-Actor": "coordinator"},
    )
    again = await async_client.post("/surveys/SURVEY-1/withdraw", json={})

    assert resp.status_code == status.HTTP_200_OK
    body = resp.json()
    assert body["status"] == "withdrawn"
    assert body["cancelled_visits"] == ["SURVEY-1-V001", "SURVEY-1-V002"]
    visit = await async_client.get("/visits/SURVEY-1-V001")
    assert visit.json()["status"] == "cancelled"
    assert audit_sink.events[-1]["action"] == "survey_withdrawn"
    assert again.status_code == status.HTTP_409_CONFLICT
    assert again.json()["error_code"] == "SURVEY_NOT_ACTIVE"
