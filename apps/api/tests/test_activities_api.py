from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from datetime import date, datetime, time, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salespipe import audit, events
from salespipe.core.config import get_settings
from salespipe.core.database import Base, get_db
from salespipe.crm.api import get_current_user, get_reference_date
from salespipe.crm.service import ActorUser
from salespipe.main import app
from salespipe.pipeline.clock import DEFAULT_BUSINESS_TIMEZONE, business_zone, today

ZONE = business_zone(DEFAULT_BUSINESS_TIMEZONE)

ActivityClient = tuple[TestClient, Callable[[str], None], Callable[[date], None]]


@pytest.fixture(autouse=True)
def clear_state() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


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


@pytest.fixture()
def business_today() -> date:
    return today(ZONE)


@pytest.fixture()
def client(db_session: Session, business_today: date) -> Generator[ActivityClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    activity_permissions = {
        "crm.activities.read",
        "crm.activities.create",
        "crm.activities.update",
        "crm.activities.delete",
        "crm.activities.complete",
    }
    actors = {
        "user1": ActorUser(
            user_id="user-1",
            permissions=activity_permissions
            | {"crm.opportunities.create", "crm.opportunities.read", "crm.opportunities.move"},
            correlation_id="corr-act",
        ),
        "user2": ActorUser(user_id="user-2", permissions=set(activity_permissions), correlation_id="corr-act"),
        "reader": ActorUser(user_id="reader-1", permissions={"crm.activities.read"}, correlation_id="corr-act"),
        "admin": ActorUser(user_id="admin-1", permissions={"crm.pipelines.manage"}, correlation_id="corr-act"),
    }
    state: dict[str, object] = {"current": "user1", "reference": business_today}

    def override_get_current_user() -> ActorUser:
        return actors[str(state["current"])]

    def set_actor(name: str) -> None:
        state["current"] = name

    def set_reference(value: date) -> None:
        state["reference"] = value

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_reference_date] = lambda: state["reference"]
    with TestClient(app) as test_client:
        yield test_client, set_actor, set_reference
    app.dependency_overrides.clear()


@pytest.fixture()
def opportunity(client: ActivityClient) -> dict[str, str]:
    test_client, set_actor, _ = client
    set_actor("admin")
    pipeline_id = test_client.post("/api/crm/pipelines", json={"name": "Sales"}).json()["id"]
    stages = {}
    for name, position, role in [("Prospect", 1, "NORMAL"), ("Negotiation", 2, "NORMAL"), ("Closed Lost", 99, "LOST")]:
        response = test_client.post(
            f"/api/crm/pipelines/{pipeline_id}/stages",
            json={"name": name, "position": position, "system_role": role},
        )
        assert response.status_code == 201
        stages[name] = response.json()["id"]

    set_actor("user1")
    created = test_client.post(
        "/api/crm/opportunities",
        json={"contact_id": str(uuid.uuid4()), "pipeline_id": pipeline_id, "title": "O1"},
    )
    assert created.status_code == 201
    return {"id": created.json()["id"], "negotiation": stages["Negotiation"], "lost": stages["Closed Lost"]}


def _moment(day: date, hour: int = 12) -> str:
    return datetime.combine(day, time(hour, 0), tzinfo=ZONE).isoformat()


def _create(test_client: TestClient, opportunity_id: str, payload: dict[str, object]) -> dict:
    response = test_client.post(f"/api/crm/opportunities/{opportunity_id}/activities", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_task_completion_is_gated_to_its_date(
    client: ActivityClient,
    opportunity: dict[str, str],
    business_today: date,
) -> None:
    test_client, _, set_reference = client
    task = _create(
        test_client,
        opportunity["id"],
        {"activity_type": "TASK", "content": "Send quote", "due_at": _moment(business_today)},
    )
    assert task["completion_state"] == "ACTIONABLE"
    assert task["is_overdue"] is False

    completed = test_client.post(f"/api/crm/activities/{task['id']}/complete", json={"row_version": 1})
    assert completed.status_code == 200
    assert completed.json()["completed"] is True
    assert completed.json()["completed_by"] == "user-1"
    assert completed.json()["completion_state"] == "COMPLETED"
    assert completed.json()["row_version"] == 2

    set_reference(business_today + timedelta(days=1))
    locked = test_client.post(
        f"/api/crm/activities/{task['id']}/complete",
        json={"completed": False, "row_version": 2},
    )
    assert locked.status_code == 422
    body = locked.json()
    assert body["code"] == "crm_activity_complete_failed"
    assert body["details"]["code"] == "NOT_EDITABLE_TODAY"
    assert body["details"]["activity_date"] == business_today.isoformat()

    toggles = [event for event in events.published_events if event["event_type"] == "crm.activity.completion_toggled"]
    assert len(toggles) == 1


def test_future_task_cannot_be_completed_early(
    client: ActivityClient,
    opportunity: dict[str, str],
    business_today: date,
) -> None:
    test_client, _, _ = client
    task = _create(
        test_client,
        opportunity["id"],
        {"activity_type": "TASK", "due_at": _moment(business_today + timedelta(days=1))},
    )
    assert task["completion_state"] == "PENDING"

    response = test_client.post(f"/api/crm/activities/{task['id']}/complete", json={"row_version": 1})

    assert response.status_code == 422
    assert response.json()["details"]["code"] == "NOT_EDITABLE_TODAY"


def test_note_is_not_completable(client: ActivityClient, opportunity: dict[str, str]) -> None:
    test_client, _, _ = client
    note = _create(test_client, opportunity["id"], {"activity_type": "NOTE", "content": "hello"})
    assert note["completion_state"] is None

    response = test_client.post(f"/api/crm/activities/{note['id']}/complete", json={"row_version": 1})

    assert response.status_code == 422
    assert response.json()["details"]["code"] == "NOT_COMPLETABLE"


def test_create_validation(client: ActivityClient, opportunity: dict[str, str], business_today: date) -> None:
    test_client, _, _ = client
    url = f"/api/crm/opportunities/{opportunity['id']}/activities"

    assert test_client.post(url, json={"activity_type": "TASK"}).status_code == 422
    assert test_client.post(url, json={"activity_type": "STAGE_CHANGE"}).status_code == 422
    assert (
        test_client.post(
            url,
            json={
                "activity_type": "MEETING",
                "start_at": _moment(business_today, 15),
                "end_at": _moment(business_today, 14),
            },
        ).status_code
        == 422
    )
    missing = test_client.post(
        f"/api/crm/opportunities/{uuid.uuid4()}/activities",
        json={"activity_type": "NOTE", "content": "x"},
    )
    assert missing.status_code == 404
    assert missing.json()["code"] == "crm_activity_create_failed"


def test_timeline_groups_and_filter(
    client: ActivityClient,
    opportunity: dict[str, str],
    business_today: date,
) -> None:
    test_client, _, _ = client
    note = _create(test_client, opportunity["id"], {"activity_type": "NOTE", "content": "first contact"})
    call = _create(test_client, opportunity["id"], {"activity_type": "CALL", "content": "follow up"})
    later = _create(
        test_client,
        opportunity["id"],
        {"activity_type": "TASK", "due_at": _moment(business_today + timedelta(days=5))},
    )
    soon = _create(
        test_client,
        opportunity["id"],
        {
            "activity_type": "MEETING",
            "start_at": _moment(business_today + timedelta(days=2), 9),
            "end_at": _moment(business_today + timedelta(days=2), 10),
            "location": "Office",
        },
    )
    moved = test_client.post(
        f"/api/crm/opportunities/{opportunity['id']}/move",
        json={"stage_id": opportunity["negotiation"], "row_version": 1},
    )
    assert moved.status_code == 200

    timeline = test_client.get(f"/api/crm/opportunities/{opportunity['id']}/timeline")
    assert timeline.status_code == 200
    body = timeline.json()
    assert body["reference_date"] == business_today.isoformat()
    assert [group["label"] for group in body["groups"]] == ["Upcoming", "Today"]
    assert body["groups"][0]["is_upcoming"] is True
    assert [item["id"] for item in body["groups"][0]["activities"]] == [soon["id"], later["id"]]
    today_items = body["groups"][1]["activities"]
    assert {item["id"] for item in today_items} >= {note["id"], call["id"]}
    assert [item["content"] for item in today_items if item["activity_type"] == "STAGE_CHANGE"] == [
        "Prospect → Negotiation"
    ]

    filtered = test_client.get(
        f"/api/crm/opportunities/{opportunity['id']}/timeline",
        params={"activity_type": "CALL"},
    ).json()
    kinds = {item["activity_type"] for group in filtered["groups"] for item in group["activities"]}
    assert kinds == {"CALL", "STAGE_CHANGE"}


def test_stage_change_entries_are_read_only(client: ActivityClient, opportunity: dict[str, str]) -> None:
    test_client, _, _ = client
    moved = test_client.post(
        f"/api/crm/opportunities/{opportunity['id']}/move",
        json={"stage_id": opportunity["lost"], "reason": "budget", "row_version": 1},
    )
    assert moved.status_code == 200
    timeline = test_client.get(f"/api/crm/opportunities/{opportunity['id']}/timeline").json()
    change = timeline["groups"][0]["activities"][0]
    assert change["activity_type"] == "STAGE_CHANGE"

    patched = test_client.patch(f"/api/crm/activities/{change['id']}", json={"row_version": 1, "content": "edited"})
    deleted = test_client.delete(f"/api/crm/activities/{change['id']}", params={"row_version": 1})

    assert patched.status_code == 422
    assert deleted.status_code == 422


def test_update_activity_with_row_version(
    client: ActivityClient,
    opportunity: dict[str, str],
    business_today: date,
) -> None:
    test_client, _, _ = client
    note = _create(test_client, opportunity["id"], {"activity_type": "NOTE", "content": "draft"})

    updated = test_client.patch(f"/api/crm/activities/{note['id']}", json={"row_version": 1, "content": "final"})
    assert updated.status_code == 200
    assert updated.json()["content"] == "final"
    assert updated.json()["row_version"] == 2

    stale = test_client.patch(f"/api/crm/activities/{note['id']}", json={"row_version": 1, "content": "late"})
    assert stale.status_code == 409
    assert stale.json()["code"] == "crm_activity_update_failed"

    meeting = _create(
        test_client,
        opportunity["id"],
        {
            "activity_type": "MEETING",
            "start_at": _moment(business_today, 9),
            "end_at": _moment(business_today, 10),
        },
    )
    inverted = test_client.patch(
        f"/api/crm/activities/{meeting['id']}",
        json={"row_version": 1, "end_at": _moment(business_today, 8)},
    )
    assert inverted.status_code == 422


def test_delete_and_restore(client: ActivityClient, opportunity: dict[str, str], business_today: date) -> None:
    test_client, _, set_reference = client
    upcoming = _create(
        test_client,
        opportunity["id"],
        {"activity_type": "TASK", "due_at": _moment(business_today + timedelta(days=3))},
    )
    overdue = _create(
        test_client,
        opportunity["id"],
        {"activity_type": "TASK", "due_at": _moment(business_today - timedelta(days=2))},
    )
    assert overdue["is_overdue"] is True

    # Deleted while still pending, overdue by the time of the restore.
    set_reference(business_today - timedelta(days=3))
    assert test_client.delete(f"/api/crm/activities/{overdue['id']}", params={"row_version": 1}).status_code == 204
    set_reference(business_today)
    assert test_client.delete(f"/api/crm/activities/{upcoming['id']}", params={"row_version": 1}).status_code == 204

    timeline = test_client.get(f"/api/crm/opportunities/{opportunity['id']}/timeline").json()
    remaining = {item["id"] for group in timeline["groups"] for item in group["activities"]}
    assert remaining.isdisjoint({upcoming["id"], overdue["id"]})

    restored = test_client.post(f"/api/crm/activities/{upcoming['id']}/restore", json={"row_version": 2})
    assert restored.status_code == 200
    assert restored.json()["deleted_at"] is None

    refused = test_client.post(f"/api/crm/activities/{overdue['id']}/restore", json={"row_version": 2})
    assert refused.status_code == 422
    assert refused.json()["code"] == "crm_activity_restore_failed"

    live = test_client.post(f"/api/crm/activities/{upcoming['id']}/restore", json={"row_version": 3})
    assert live.status_code == 404


def test_locked_activity_cannot_be_rescheduled_or_deleted(
    client: ActivityClient,
    opportunity: dict[str, str],
    business_today: date,
) -> None:
    test_client, _, _ = client
    task = _create(
        test_client,
        opportunity["id"],
        {"activity_type": "TASK", "due_at": _moment(business_today - timedelta(days=1))},
    )
    meeting = _create(
        test_client,
        opportunity["id"],
        {
            "activity_type": "MEETING",
            "start_at": _moment(business_today - timedelta(days=1), 9),
            "end_at": _moment(business_today - timedelta(days=1), 10),
        },
    )
    assert task["completion_state"] == "LOCKED"
    assert meeting["completion_state"] == "LOCKED"

    rescheduled = test_client.patch(
        f"/api/crm/activities/{task['id']}",
        json={"row_version": 1, "due_at": _moment(business_today)},
    )
    assert rescheduled.status_code == 422
    assert rescheduled.json()["code"] == "crm_activity_update_failed"
    assert rescheduled.json()["details"]["code"] == "ACTIVITY_LOCKED"

    moved_meeting = test_client.patch(
        f"/api/crm/activities/{meeting['id']}",
        json={"row_version": 1, "end_at": _moment(business_today, 11)},
    )
    assert moved_meeting.status_code == 422

    completed = test_client.post(f"/api/crm/activities/{task['id']}/complete", json={"completed": True, "row_version": 1})
    assert completed.status_code == 422

    deleted = test_client.delete(f"/api/crm/activities/{task['id']}", params={"row_version": 1})
    assert deleted.status_code == 422
    assert deleted.json()["code"] == "crm_activity_delete_failed"
    assert deleted.json()["details"]["code"] == "ACTIVITY_LOCKED"

    timeline = test_client.get(f"/api/crm/opportunities/{opportunity['id']}/timeline").json()
    states = {item["id"]: item["completion_state"] for group in timeline["groups"] for item in group["activities"]}
    assert states[task["id"]] == "LOCKED"
    assert states[meeting["id"]] == "LOCKED"


def test_completed_past_activity_stays_editable(
    client: ActivityClient,
    opportunity: dict[str, str],
    business_today: date,
) -> None:
    test_client, _, set_reference = client
    task = _create(test_client, opportunity["id"], {"activity_type": "TASK", "due_at": _moment(business_today)})
    done = test_client.post(f"/api/crm/activities/{task['id']}/complete", json={"completed": True, "row_version": 1})
    assert done.status_code == 200

    set_reference(business_today + timedelta(days=1))
    edited = test_client.patch(f"/api/crm/activities/{task['id']}", json={"row_version": 2, "content": "wrap-up"})

    assert edited.status_code == 200
    assert edited.json()["completion_state"] == "COMPLETED"


def test_delete_requires_current_row_version(client: ActivityClient, opportunity: dict[str, str]) -> None:
    test_client, _, _ = client
    note = _create(test_client, opportunity["id"], {"activity_type": "NOTE", "content": "draft"})
    assert test_client.patch(f"/api/crm/activities/{note['id']}", json={"row_version": 1, "content": "v2"}).status_code == 200

    stale = test_client.delete(f"/api/crm/activities/{note['id']}", params={"row_version": 1})
    assert stale.status_code == 409
    assert stale.json()["code"] == "crm_activity_delete_failed"

    missing = test_client.delete(f"/api/crm/activities/{note['id']}")
    assert missing.status_code == 422

    current = test_client.delete(f"/api/crm/activities/{note['id']}", params={"row_version": 2})
    assert current.status_code == 204


def test_pending_lists_callers_open_items(
    client: ActivityClient,
    opportunity: dict[str, str],
    business_today: date,
) -> None:
    test_client, set_actor, _ = client
    mine_later = _create(
        test_client,
        opportunity["id"],
        {"activity_type": "TASK", "due_at": _moment(business_today + timedelta(days=4))},
    )
    mine_sooner = _create(
        test_client,
        opportunity["id"],
        {"activity_type": "TASK", "due_at": _moment(business_today)},
    )
    _create(
        test_client,
        opportunity["id"],
        {"activity_type": "TASK", "due_at": _moment(business_today), "assigned_to": "user-2"},
    )
    _create(test_client, opportunity["id"], {"activity_type": "NOTE", "content": "not pending"})

    pending = test_client.get("/api/crm/activities/pending")
    assert pending.status_code == 200
    assert [item["id"] for item in pending.json()] == [mine_sooner["id"], mine_later["id"]]

    set_actor("user2")
    assert len(test_client.get("/api/crm/activities/pending").json()) == 1


def test_reader_cannot_complete(client: ActivityClient, opportunity: dict[str, str], business_today: date) -> None:
    test_client, set_actor, _ = client
    task = _create(test_client, opportunity["id"], {"activity_type": "TASK", "due_at": _moment(business_today)})

    set_actor("reader")
    response = test_client.post(f"/api/crm/activities/{task['id']}/complete", json={"row_version": 1})

    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: crm.activities.complete"
