import pytest

from repaircrm.models.models import Notification
from repaircrm.services import notifications
from repaircrm.auth.security import create_access_token


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user.id, role=user.role)}"}


@pytest.fixture
def techs(make_user):
    return make_user("tech2", name="Tech Two"), make_user("tech3", name="Tech Three")


def _create(client, admin, body):
    return client.post("/work-assignments", json=body, headers=auth_headers(admin))


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_endpoints_require_token(client):
    assert client.get("/work-assignments").status_code == 401
    assert client.post("/work-checkins", json={"assignmentId": 1}).status_code == 401


def test_assignment_lifecycle(client, admin, techs, sent_messages):
    body = {
        "assignedUserIds": [techs[0].id, techs[1].id],
        "workType": "receipt",
        "workId": 5,
        "priority": "high",
    }
    res = _create(client, admin, body)
    assert res.status_code == 201
    payload = res.json()
    assert payload["success"] is True
    data = payload["data"]
    assert data["status"] == "pending"
    assert data["assignedTo"] == techs[0].id
    assert data["assignedUsers"] == [techs[0].id, techs[1].id]
    assert data["isTeamAssignment"] is True
    assert data["assignedBy"] == admin.id
    assert len(sent_messages) == 2

    res = client.patch(f"/work-assignments/{data['id']}", json={"status": "in_progress"}, headers=auth_headers(techs[1]))
    assert res.status_code == 200
    assert res.json()["startedAt"] is not None
    assert res.json()["completedAt"] is None

    res = client.patch(f"/work-assignments/{data['id']}", json={"status": "completed"}, headers=auth_headers(admin))
    assert res.status_code == 200
    assert res.json()["completedAt"] is not None
    assert len(sent_messages) == 6


def test_legacy_string_encoded_assignees(client, admin, techs):
    res = _create(client, admin, {
        "assignedUsers": f"[{techs[1].id}, {techs[0].id}]",
        "workType": "service_complaint",
        "workId": 8,
    })
    assert res.status_code == 201
    assert res.json()["data"]["assignedTo"] == techs[1].id


def test_create_validation_errors(client, admin, techs):
    res = _create(client, admin, {"assignedTo": techs[0].id, "workType": "receipt"})
    assert res.status_code == 400
    assert "error" in res.json()

    res = _create(client, admin, {"assignedTo": techs[0].id, "workType": "receipt", "workId": "abc"})
    assert res.status_code == 400
    assert res.json()["error"] == "Invalid data format"

    res = _create(client, admin, {"assignedUserIds": [], "workType": "receipt", "workId": 1})
    assert res.status_code == 400


def test_only_admin_creates_and_deletes(client, admin, techs):
    res = _create(client, techs[0], {"assignedTo": techs[0].id, "workType": "receipt", "workId": 1})
    assert res.status_code == 403
    created = _create(client, admin, {"assignedTo": techs[0].id, "workType": "receipt", "workId": 1}).json()["data"]
    assert client.delete(f"/work-assignments/{created['id']}", headers=auth_headers(techs[0])).status_code == 403


def test_non_assignee_cannot_update(client, admin, techs):
    created = _create(client, admin, {"assignedTo": techs[0].id, "workType": "receipt", "workId": 1}).json()["data"]
    res = client.patch(f"/work-assignments/{created['id']}", json={"status": "in_progress"}, headers=auth_headers(techs[1]))
    assert res.status_code == 403
    res = client.patch(f"/work-assignments/{created['id']}", json={"priority": "urgent"}, headers=auth_headers(techs[0]))
    assert res.status_code == 403


def test_illegal_transition_is_400(client, admin, techs):
    created = _create(client, admin, {"assignedTo": techs[0].id, "workType": "receipt", "workId": 1}).json()["data"]
    res = client.patch(f"/work-assignments/{created['id']}", json={"status": "completed"}, headers=auth_headers(admin))
    assert res.status_code == 400
    assert "pending" in res.json()["error"]


def test_lookups(client, admin, techs):
    team = _create(client, admin, {"assignedUserIds": [techs[0].id, techs[1].id], "workType": "receipt", "workId": 5}).json()["data"]
    solo = _create(client, admin, {"assignedTo": techs[0].id, "workType": "service_complaint", "workId": 9}).json()["data"]
    headers = auth_headers(admin)

    assert [a["id"] for a in client.get(f"/work-assignments/user/{techs[1].id}", headers=headers).json()] == [team["id"]]
    assert [a["id"] for a in client.get("/work-assignments", headers=headers).json()] == [solo["id"], team["id"]]
    assert [a["id"] for a in client.get("/work-assignments?workType=receipt", headers=headers).json()] == [team["id"]]
    assert [a["id"] for a in client.get("/work-assignments/work/service_complaint/9", headers=headers).json()] == [solo["id"]]
    assert client.get(f"/work-assignments/{solo['id']}", headers=headers).json()["isTeamAssignment"] is False
    assert client.get("/work-assignments/999", headers=headers).status_code == 404


def test_delete_missing_is_404(client, admin):
    res = client.delete("/work-assignments/999", headers=auth_headers(admin))
    assert res.status_code == 404
    assert res.json() == {"error": "Work assignment not found"}


def test_delete_with_open_checkin_is_409_then_succeeds(client, admin, techs):
    created = _create(client, admin, {"assignedTo": techs[0].id, "workType": "receipt", "workId": 1}).json()["data"]
    checkin = client.post("/work-checkins", json={"assignmentId": created["id"]}, headers=auth_headers(techs[0])).json()

    assert client.delete(f"/work-assignments/{created['id']}", headers=auth_headers(admin)).status_code == 409
    client.patch(f"/work-checkins/{checkin['id']}", json={}, headers=auth_headers(techs[0]))
    res = client.delete(f"/work-assignments/{created['id']}", headers=auth_headers(admin))
    assert res.json() == {"success": True, "message": "Work assignment deleted successfully"}
    assert client.get(f"/work-checkins/assignment/{created['id']}", headers=auth_headers(admin)).json() == []


def test_team_checkins(client, admin, techs):
    created = _create(client, admin, {"assignedUserIds": [techs[0].id, techs[1].id], "workType": "receipt", "workId": 7}).json()["data"]
    body = {"assignmentId": created["id"], "location": "Shop A", "checkedInWith": [techs[1].id]}

    first = client.post("/work-checkins", json=body, headers=auth_headers(techs[0]))
    assert first.status_code == 201
    assert first.json()["state"] == "open"
    assert first.json()["checkedInWith"] == [techs[1].id]

    again = client.post("/work-checkins", json=body, headers=auth_headers(techs[0]))
    assert again.status_code == 409
    rows = client.get(f"/work-checkins/user/{techs[0].id}", headers=auth_headers(admin)).json()
    assert len([r for r in rows if r["checkOutTime"] is None]) == 1

    other = client.post("/work-checkins", json={"assignmentId": created["id"]}, headers=auth_headers(techs[1]))
    assert other.status_code == 201

    status = client.get(
        f"/work-checkins/status?userId={techs[1].id}&assignmentId={created['id']}", headers=auth_headers(admin)
    ).json()
    assert status == {"checkedIn": True}

    team = client.get(f"/work-assignments/{created['id']}/team", headers=auth_headers(admin)).json()
    assert team["checkedInCount"] == 2


def test_cannot_check_in_someone_else(client, admin, techs):
    created = _create(client, admin, {"assignedTo": techs[0].id, "workType": "receipt", "workId": 1}).json()["data"]
    res = client.post("/work-checkins", json={"assignmentId": created["id"], "userId": techs[0].id}, headers=auth_headers(techs[1]))
    assert res.status_code == 403
    res = client.post("/work-checkins", json={"assignmentId": created["id"], "userId": techs[0].id}, headers=auth_headers(admin))
    assert res.status_code == 201


def test_only_assignees_check_in_unless_admin(client, admin, techs):
    created = _create(client, admin, {"assignedTo": techs[0].id, "workType": "receipt", "workId": 1}).json()["data"]
    res = client.post("/work-checkins", json={"assignmentId": created["id"]}, headers=auth_headers(techs[1]))
    assert res.status_code == 403
    assert res.json() == {"error": "You are not assigned to this work"}

    res = client.post("/work-checkins", json={"assignmentId": created["id"], "userId": techs[1].id}, headers=auth_headers(admin))
    assert res.status_code == 201

    res = client.post("/work-checkins", json={"assignmentId": 999}, headers=auth_headers(techs[0]))
    assert res.status_code == 404


def test_patch_accepts_string_encoded_assignees(client, admin, techs):
    created = _create(client, admin, {"assignedTo": techs[0].id, "workType": "receipt", "workId": 1}).json()["data"]
    res = client.patch(
        f"/work-assignments/{created['id']}",
        json={"assignedUsers": f"[{techs[1].id}, {techs[0].id}]"},
        headers=auth_headers(admin),
    )
    assert res.status_code == 200
    assert res.json()["assignedTo"] == techs[1].id
    assert res.json()["assignedUserIds"] == [techs[1].id, techs[0].id]

    res = client.patch(f"/work-assignments/{created['id']}", json={"assignedUserIds": "not json"}, headers=auth_headers(admin))
    assert res.status_code == 400


def test_checkout_idempotent_and_activity(client, admin, techs):
    created = _create(client, admin, {"assignedTo": techs[0].id, "workType": "receipt", "workId": 1}).json()["data"]
    opened = client.post(
        "/work-checkins",
        json={"assignmentId": created["id"], "checkInTime": "2024-05-01T09:00:00"},
        headers=auth_headers(techs[0]),
    ).json()

    closed = client.patch(
        f"/work-checkins/{opened['id']}",
        json={"checkOutTime": "2024-05-01T10:30:00", "notes": "done"},
        headers=auth_headers(techs[0]),
    ).json()
    assert closed["durationMinutes"] == 90
    again = client.patch(f"/work-checkins/{opened['id']}", json={}, headers=auth_headers(techs[0])).json()
    assert again["checkOutTime"] == closed["checkOutTime"]

    feed = client.get(f"/work-checkins/assignment/{created['id']}/activity", headers=auth_headers(admin)).json()
    assert feed[0]["text"] == "Tech Two worked 09:00 - 10:30"

    assert client.patch("/work-checkins/999", json={}, headers=auth_headers(admin)).status_code == 404


def test_notification_failure_does_not_fail_requests(client, admin, techs, monkeypatch):
    def _boom(self, to, body):
        raise RuntimeError("gateway down")

    monkeypatch.setattr(notifications.NotificationService, "send_text", _boom)
    res = _create(client, admin, {"assignedTo": techs[0].id, "workType": "receipt", "workId": 1})
    assert res.status_code == 201
    res = client.patch(f"/work-assignments/{res.json()['data']['id']}", json={"status": "in_progress"}, headers=auth_headers(admin))
    assert res.status_code == 200


def test_audit_trail(client, admin, techs):
    created = _create(client, admin, {"assignedTo": techs[0].id, "workType": "receipt", "workId": 1}).json()["data"]
    client.patch(f"/work-assignments/{created['id']}", json={"priority": "urgent"}, headers=auth_headers(admin))
    entries = client.get(f"/work-assignments/{created['id']}/audit", headers=auth_headers(admin)).json()
    assert [e["action"] for e in entries] == ["UPDATE", "CREATE"]
    assert all(e["verified"] for e in entries)
    assert entries[0]["changes"]["priority"] == {"before": "medium", "after": "urgent"}


def test_notifications_are_recorded(client, admin, techs, db, sent_messages):
    _create(client, admin, {"assignedTo": techs[0].id, "workType": "receipt", "workId": 3, "dueDate": "2024-06-01"})
    rows = db.query(Notification).all()
    assert len(rows) == 1
    assert rows[0].status == "sent"
    assert rows[0].user_id == techs[0].id
    assert "Receipt #3" in sent_messages[0]["body"]
