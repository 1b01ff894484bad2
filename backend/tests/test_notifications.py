"""
Tests for the notification relay and the notification endpoints.

Task mutations emit broker events; the notification service stores one row
per recipient (assignees, else the creator).
"""

import asyncio
import logging

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from conftest import create_task
from main import app
from notification_service import NotificationService

logger = logging.getLogger(__name__)


def notifications_for(db: Session, user_id: int):
    db.expire_all()
    return (
        db.query(models.Notification)
        .filter(models.Notification.recipient_id == user_id)
        .all()
    )


def one_of_type(rows, notification_type: str):
    matching = [n for n in rows if n.type == notification_type]
    assert len(matching) == 1, [n.type for n in rows]
    return matching[0]


# ============== Relay ==============

def test_unassigned_task_notifies_creator(client: TestClient, test_db: Session, user: models.User, auth_headers):
    task = create_task(client, auth_headers, "Solo task")

    rows = notifications_for(test_db, user.id)

    assert len(rows) == 1
    assert rows[0].type == "task_created"
    assert rows[0].entity_type == "task"
    assert rows[0].entity_id == str(task["id"])
    assert rows[0].sender_id == user.id
    assert rows[0].notification_metadata["task_title"] == "Solo task"
    assert rows[0].is_read is False


def test_assigned_task_notifies_each_assignee(client: TestClient, test_db: Session, user: models.User,
                                              other_user: models.User, third_user: models.User, auth_headers):
    create_task(client, auth_headers, assigned_to=[other_user.id, third_user.id])

    assert [n.type for n in notifications_for(test_db, other_user.id)] == ["task_created"]
    assert [n.type for n in notifications_for(test_db, third_user.id)] == ["task_created"]
    assert notifications_for(test_db, user.id) == []
    logger.info("✓ One notification stored per assignee")


def test_update_notification_lists_changed_fields(client: TestClient, test_db: Session,
                                                  other_user: models.User, auth_headers):
    task = create_task(client, auth_headers, assigned_to=[other_user.id])

    client.put(f"/api/tasks/{task['id']}", json={"status": "DONE", "title": "Done!"}, headers=auth_headers)

    latest = one_of_type(notifications_for(test_db, other_user.id), "task_updated")
    assert latest.notification_metadata["changes"] == ["status", "title"]


def test_noop_update_emits_nothing(client: TestClient, test_db: Session, user: models.User, auth_headers):
    task = create_task(client, auth_headers, "Quiet")

    client.put(f"/api/tasks/{task['id']}", json={"title": "Quiet"}, headers=auth_headers)

    assert [n.type for n in notifications_for(test_db, user.id)] == ["task_created"]


def test_assign_notifies_only_new_assignees(client: TestClient, test_db: Session, other_user: models.User,
                                            third_user: models.User, auth_headers):
    task = create_task(client, auth_headers, assigned_to=[other_user.id])

    client.post(
        f"/api/tasks/{task['id']}/assign",
        json={"assigned_to": [other_user.id, third_user.id]},
        headers=auth_headers,
    )

    assert [n.type for n in notifications_for(test_db, third_user.id)] == ["task_assigned"]
    assert "task_assigned" not in [n.type for n in notifications_for(test_db, other_user.id)]


def test_unassigning_notifies_removed_assignee_and_creator(client: TestClient, test_db: Session, user: models.User,
                                                           other_user: models.User, auth_headers):
    task = create_task(client, auth_headers, assigned_to=[other_user.id])

    response = client.post(f"/api/tasks/{task['id']}/assign", json={"assigned_to": []}, headers=auth_headers)

    assert response.status_code == 200, response.json()
    removed = one_of_type(notifications_for(test_db, other_user.id), "task_updated")
    assert removed.notification_metadata["changes"] == ["assigned_to"]
    creator = one_of_type(notifications_for(test_db, user.id), "task_updated")
    assert creator.notification_metadata["changes"] == ["assigned_to"]
    logger.info("✓ Removed assignee is told about the change")


def test_reassigning_through_update(client: TestClient, test_db: Session, other_user: models.User,
                                    third_user: models.User, auth_headers):
    task = create_task(client, auth_headers, assigned_to=[other_user.id])

    client.put(f"/api/tasks/{task['id']}", json={"assigned_to": [third_user.id]}, headers=auth_headers)

    assert sorted(n.type for n in notifications_for(test_db, third_user.id)) == ["task_assigned"]
    assert sorted(n.type for n in notifications_for(test_db, other_user.id)) == ["task_created", "task_updated"]


def test_slow_notification_delivery_does_not_delay_the_reply(client: TestClient, test_db: Session,
                                                             user: models.User, auth_headers, monkeypatch):
    async def slow_handle_event(self, pattern, event):
        await asyncio.sleep(0.5)
        return []

    monkeypatch.setattr(NotificationService, "handle_event", slow_handle_event)
    monkeypatch.setattr(app.state.broker, "request_timeout", 0.2)

    response = client.post("/api/tasks", json={"title": "Quick reply"}, headers=auth_headers)

    assert response.status_code == 201, response.json()
    assert response.json()["data"]["title"] == "Quick reply"
    logger.info("✓ Task request answered while notifications were still being delivered")


def test_comment_events_notify_task_recipients(client: TestClient, test_db: Session,
                                               other_user: models.User, auth_headers):
    task = create_task(client, auth_headers, assigned_to=[other_user.id])
    comment = client.post(
        f"/api/tasks/{task['id']}/comments", json={"content": "Ping"}, headers=auth_headers
    ).json()["data"]
    client.delete(f"/api/tasks/{task['id']}/comments/{comment['id']}", headers=auth_headers)

    rows = notifications_for(test_db, other_user.id)
    assert sorted(n.type for n in rows) == ["comment_created", "comment_deleted", "task_created"]
    created = one_of_type(rows, "comment_created")
    assert created.entity_type == "comment"
    assert created.entity_id == str(comment["id"])
    assert created.notification_metadata["comment_content"] == "Ping"


def test_delete_notifies_and_survives_task(client: TestClient, test_db: Session, user: models.User, auth_headers):
    task = create_task(client, auth_headers, "Gone soon")

    client.delete(f"/api/tasks/{task['id']}", headers=auth_headers)

    latest = one_of_type(notifications_for(test_db, user.id), "task_deleted")
    assert "Gone soon" in latest.message


# ============== Endpoints ==============

def test_list_and_count_unread(client: TestClient, user: models.User, auth_headers):
    for i in range(3):
        create_task(client, auth_headers, f"Task {i}")

    listed = client.get("/api/notifications?page=1&limit=2", headers=auth_headers).json()
    assert len(listed["data"]) == 2
    assert listed["meta"]["pagination"]["total"] == 3
    assert listed["data"][0]["metadata"]["task_title"].startswith("Task")

    count = client.get("/api/notifications/unread/count", headers=auth_headers).json()
    assert count["data"] == {"count": 3}

    unread = client.get("/api/notifications/unread", headers=auth_headers).json()
    assert len(unread["data"]) == 3


def test_mark_as_read_is_idempotent(client: TestClient, user: models.User, auth_headers):
    create_task(client, auth_headers)
    notification_id = client.get("/api/notifications", headers=auth_headers).json()["data"][0]["id"]

    first = client.patch(f"/api/notifications/{notification_id}/read", headers=auth_headers)
    second = client.patch(f"/api/notifications/{notification_id}/read", headers=auth_headers)

    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["data"]["id"] == notification_id
    assert "timestamp" in first.json()["meta"]
    assert second.status_code == 200
    assert second.json()["success"] is False
    assert "error" not in second.json()
    assert second.json()["data"]["id"] == notification_id
    assert "timestamp" in second.json()["meta"]
    logger.info("✓ Second mark-as-read answers 200 with success=false")


def test_mark_as_read_other_users_notification(client: TestClient, auth_headers, other_auth_headers):
    create_task(client, auth_headers)
    notification_id = client.get("/api/notifications", headers=auth_headers).json()["data"][0]["id"]

    response = client.patch(f"/api/notifications/{notification_id}/read", headers=other_auth_headers)

    assert response.status_code == 200
    assert response.json()["success"] is False
    unread = client.get("/api/notifications/unread/count", headers=auth_headers).json()["data"]
    assert unread["count"] == 1


def test_mark_all_as_read(client: TestClient, auth_headers):
    create_task(client, auth_headers, "A")
    create_task(client, auth_headers, "B")

    response = client.patch("/api/notifications/read-all", headers=auth_headers)

    assert response.json()["data"] == {"updated": 2}
    assert client.get("/api/notifications/unread/count", headers=auth_headers).json()["data"]["count"] == 0
    listed = client.get("/api/notifications", headers=auth_headers).json()["data"]
    assert all(n["is_read"] and n["read_at"] for n in listed)


def test_delete_notification(client: TestClient, auth_headers):
    create_task(client, auth_headers)
    notification_id = client.get("/api/notifications", headers=auth_headers).json()["data"][0]["id"]

    first = client.delete(f"/api/notifications/{notification_id}", headers=auth_headers)
    second = client.delete(f"/api/notifications/{notification_id}", headers=auth_headers)

    assert first.json()["success"] is True
    assert second.status_code == 200
    assert second.json()["success"] is False
    assert second.json()["data"] == {"id": notification_id, "message": "Notification not found"}
    assert "timestamp" in second.json()["meta"]
    assert client.get("/api/notifications", headers=auth_headers).json()["data"] == []
