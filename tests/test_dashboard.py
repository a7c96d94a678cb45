"""Dashboard overview and health check."""
from datetime import date, timedelta

from enums import IncidentStatus, IncidentTier, Role, TaskStatus


def test_dashboard_overview(client, make_user, make_task, make_incident, auth_headers):
    pm = make_user(Role.PM)
    dev = make_user(Role.DEVELOPER)
    make_user(Role.QA)
    yesterday = date.today() - timedelta(days=1)

    overdue = make_task(pm, title="Overdue", due_date=yesterday, assignee_id=dev.id)
    make_task(pm, title="Late but done", due_date=yesterday, status=TaskStatus.DONE, assignee_id=dev.id)
    upcoming = make_task(pm, title="Upcoming", due_date=date.today() + timedelta(days=3), assignee_id=dev.id)
    make_incident(status=IncidentStatus.OPEN, tier=IncidentTier.CRITICAL)
    make_incident(status=IncidentStatus.INVESTIGATING)
    make_incident(status=IncidentStatus.RESOLVED, tier=IncidentTier.MINOR)

    response = client.get("/dashboard", headers=auth_headers(dev))

    assert response.status_code == 200
    body = response.json()
    assert body["overview"] == {
        "total_tasks": 3,
        "overdue_tasks": 1,
        "open_incidents": 2,
        "team_members": 3,
    }
    assert [t["id"] for t in body["my_assigned_tasks"]] == [overdue.id, upcoming.id]
    assert len(body["recent_tasks"]) == 3
    assert len(body["recent_incidents"]) == 3
    assert body["stats"]["tasks_by_status"] == {"TODO": 2, "IN_PROGRESS": 0, "DONE": 1}
    assert body["stats"]["incidents_by_tier"] == {"CRITICAL": 1, "MAJOR": 1, "MINOR": 1}


def test_dashboard_requires_session(client):
    assert client.get("/dashboard").status_code == 401


def test_health_check(client, make_user, auth_headers):
    auth_headers(make_user())

    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "operational"
    assert response.json()["active_sessions"] == 1


def test_session_cleanup_is_admin_only(client, make_user, auth_headers):
    assert client.get("/sessions/cleanup", headers=auth_headers(make_user(Role.DEVELOPER))).status_code == 403

    response = client.get("/sessions/cleanup", headers=auth_headers(make_user(Role.ADMIN)))

    assert response.status_code == 200
    assert response.json()["expired_sessions_removed"] == 0
