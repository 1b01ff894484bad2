"""
Tests for the task change log.

Every create/update/delete writes history rows diffed from the stored task;
unchanged fields produce nothing.
"""

import logging

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from conftest import create_task

logger = logging.getLogger(__name__)


def history_rows(db: Session, task_id: int):
    db.expire_all()
    return (
        db.query(models.TaskHistory)
        .filter(models.TaskHistory.task_id == task_id)
        .order_by(models.TaskHistory.id)
        .all()
    )


def test_create_writes_created_snapshot(client: TestClient, test_db: Session, user: models.User, auth_headers):
    task = create_task(client, auth_headers, "Snapshot me", priority="HIGH")

    rows = history_rows(test_db, task["id"])

    assert [r.change_type for r in rows] == ["created"]
    assert rows[0].changed_by == user.id
    assert rows[0].previous_values is None
    assert rows[0].new_values["title"] == "Snapshot me"
    assert rows[0].new_values["priority"] == "HIGH"


def test_status_change_writes_exactly_one_row(client: TestClient, test_db: Session, auth_headers):
    task = create_task(client, auth_headers)
    before = len(history_rows(test_db, task["id"]))

    response = client.put(f"/api/tasks/{task['id']}", json={"status": "IN_PROGRESS"}, headers=auth_headers)
    assert response.status_code == 200

    rows = history_rows(test_db, task["id"])[before:]
    assert len(rows) == 1
    assert rows[0].change_type == "status_changed"
    assert rows[0].previous_values == {"status": "TODO"}
    assert rows[0].new_values == {"status": "IN_PROGRESS"}
    logger.info("✓ Status change logged as a single STATUS_CHANGED row")


def test_unchanged_update_writes_nothing(client: TestClient, test_db: Session, auth_headers):
    task = create_task(client, auth_headers, "Same", description="Same text")
    before = len(history_rows(test_db, task["id"]))

    client.put(
        f"/api/tasks/{task['id']}",
        json={"title": "Same", "description": "Same text", "status": "TODO", "deadline": None},
        headers=auth_headers,
    )

    assert len(history_rows(test_db, task["id"])) == before


def test_title_and_description_share_one_updated_row(client: TestClient, test_db: Session, auth_headers):
    task = create_task(client, auth_headers, "Old title", description="Old body")

    client.put(
        f"/api/tasks/{task['id']}",
        json={"title": "New title", "description": "New body"},
        headers=auth_headers,
    )

    row = history_rows(test_db, task["id"])[-1]
    assert row.change_type == "updated"
    assert row.previous_values == {"title": "Old title", "description": "Old body"}
    assert row.new_values == {"title": "New title", "description": "New body"}


def test_mixed_update_writes_one_row_per_kind(client: TestClient, test_db: Session, auth_headers):
    task = create_task(client, auth_headers)
    before = len(history_rows(test_db, task["id"]))

    client.put(
        f"/api/tasks/{task['id']}",
        json={"status": "REVIEW", "priority": "URGENT", "deadline": "2030-01-01T12:00:00Z", "title": "Renamed"},
        headers=auth_headers,
    )

    kinds = sorted(r.change_type for r in history_rows(test_db, task["id"])[before:])
    assert kinds == ["deadline_changed", "priority_changed", "status_changed", "updated"]


def test_assignment_and_unassignment(client: TestClient, test_db: Session, other_user: models.User, auth_headers):
    task = create_task(client, auth_headers)

    client.post(f"/api/tasks/{task['id']}/assign", json={"assigned_to": [other_user.id]}, headers=auth_headers)
    assigned = history_rows(test_db, task["id"])[-1]
    assert assigned.change_type == "assigned"
    assert assigned.previous_values == {"assigned_to": []}
    assert assigned.new_values == {"assigned_to": [other_user.id]}

    client.post(f"/api/tasks/{task['id']}/assign", json={"assigned_to": []}, headers=auth_headers)
    unassigned = history_rows(test_db, task["id"])[-1]
    assert unassigned.change_type == "unassigned"
    assert unassigned.new_values == {"assigned_to": []}


def test_delete_writes_deleted_row_that_outlives_task(client: TestClient, test_db: Session, auth_headers):
    task = create_task(client, auth_headers, "Short lived")

    client.delete(f"/api/tasks/{task['id']}", headers=auth_headers)

    rows = history_rows(test_db, task["id"])
    assert rows[-1].change_type == "deleted"
    assert rows[-1].previous_values["title"] == "Short lived"
    assert rows[-1].new_values is None


def test_history_endpoint_lists_newest_first(client: TestClient, auth_headers, other_auth_headers):
    task = create_task(client, auth_headers)
    client.put(f"/api/tasks/{task['id']}", json={"priority": "LOW"}, headers=auth_headers)

    response = client.get(f"/api/tasks/{task['id']}/history", headers=auth_headers)

    assert response.status_code == 200
    entries = response.json()["data"]
    assert [e["change_type"] for e in entries] == ["priority_changed", "created"]

    assert client.get(f"/api/tasks/{task['id']}/history", headers=other_auth_headers).status_code == 404
