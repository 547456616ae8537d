from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salespipe.core.config import get_settings
from salespipe.core.database import Base, get_db
from salespipe.crm.api import get_current_user as crm_get_current_user
from salespipe.crm.service import ActorUser
from salespipe.logging import JsonLogFormatter
from salespipe.main import app


ALL_PERMISSIONS = {
    "crm.pipelines.manage",
    "crm.opportunities.create",
    "crm.opportunities.read",
    "crm.opportunities.move",
}


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_pipeline_with_stages(client: TestClient) -> dict[str, str]:
    pipeline = client.post("/api/crm/pipelines", json={"name": "Default", "is_default": True})
    assert pipeline.status_code == 201
    pipeline_id = pipeline.json()["id"]

    open_stage = client.post(
        f"/api/crm/pipelines/{pipeline_id}/stages",
        json={"name": "Open", "position": 1, "system_role": "NORMAL"},
    )
    assert open_stage.status_code == 201

    won_stage = client.post(
        f"/api/crm/pipelines/{pipeline_id}/stages",
        json={"name": "Won", "position": 90, "system_role": "WON"},
    )
    assert won_stage.status_code == 201
    return {"pipeline_id": pipeline_id, "won": won_stage.json()["id"]}


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    opportunity_id = uuid.uuid4()
    path = f"/api/crm/opportunities/{opportunity_id}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record for record in caplog.records if record.name == "salespipe.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/opportunities/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_move_context_and_correlation_id(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    setup = _create_pipeline_with_stages(client)
    opportunity = client.post(
        "/api/crm/opportunities",
        json={"contact_id": str(uuid.uuid4()), "pipeline_id": setup["pipeline_id"], "title": "Log Opportunity"},
    ).json()

    rejected = client.post(
        f"/api/crm/opportunities/{opportunity['id']}/move",
        json={"stage_id": setup["won"], "row_version": opportunity["row_version"]},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert rejected.status_code == 422

    moved = client.post(
        f"/api/crm/opportunities/{opportunity['id']}/move",
        json={"stage_id": setup["won"], "reason": "relationship", "row_version": opportunity["row_version"]},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert moved.status_code == 200

    crm_records = [record for record in caplog.records if record.name == "salespipe.crm"]
    assert any(
        record.getMessage() == "crm.opportunity.move_rejected"
        and getattr(record, "error_code", None) == "REASON_REQUIRED"
        and getattr(record, "correlation_id", None) == "abc-123"
        for record in crm_records
    )
    assert any(
        record.getMessage() == "crm.opportunity.moved"
        and getattr(record, "opportunity_id", None) == opportunity["id"]
        and getattr(record, "stage_id", None) == setup["won"]
        and getattr(record, "correlation_id", None) == "abc-123"
        for record in crm_records
    )
    assert any(
        record.name == "salespipe.events"
        and record.getMessage() == "crm_domain_event"
        and getattr(record, "event_name", None) == "crm.opportunity.stage_changed"
        and getattr(record, "opportunity_id", None) == opportunity["id"]
        and getattr(record, "correlation_id", None) == "abc-123"
        for record in caplog.records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "salespipe.crm",
            "levelname": "INFO",
            "msg": "crm.opportunity.moved",
            "opportunity_id": "opp-1",
            "stage_id": "stage-1",
            "password": "secret",
            "correlation_id": "corr-1",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "crm.opportunity.moved"
    assert payload["service"] == "salespipe-api"
    assert payload["correlation_id"] == "corr-1"
    assert payload["fields"] == {"opportunity_id": "opp-1", "stage_id": "stage-1"}
