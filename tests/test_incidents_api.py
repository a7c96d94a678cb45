"""Incident endpoints: responder policy, resolution timestamps, ingestion and summary."""
from datetime import datetime, timedelta, timezone

import pytest

import lifecycle
from enums import IncidentStatus, IncidentTier, Role
from models import Incident

API_KEY = "test-key"


def parse(value):
    return datetime.fromisoformat(value).replace(tzinfo=None)


class TestIncidentUpdate:

    def test_qa_can_move_status_of_any_incident(self, client, make_user, make_incident, auth_headers):
        qa = make_user(Role.QA)
        incident = make_incident()

        response = client.put(f"/incidents/{incident.id}", json={"status": "INVESTIGATING"}, headers=auth_headers(qa))

        assert response.status_code == 200
        assert response.json()["status"] == "INVESTIGATING"

    def test_qa_cannot_edit_other_fields(self, client, db, make_user, make_incident, auth_headers):
        qa = make_user(Role.QA)
        incident = make_incident(title="Original")

        response = client.put(
            f"/incidents/{incident.id}",
            json={"status": "RESOLVED", "title": "Renamed"},
            headers=auth_headers(qa),
        )

        assert response.status_code == 403
        db.refresh(incident)
        assert incident.title == "Original"
        assert incident.status == IncidentStatus.OPEN
        assert incident.resolved_at is None

    def test_assigned_developer_moves_status(self, client, make_user, make_incident, auth_headers):
        dev = make_user(Role.DEVELOPER)
        incident = make_incident(assignee_id=dev.id)

        response = client.put(f"/incidents/{incident.id}", json={"status": "resolved"}, headers=auth_headers(dev))

        assert response.status_code == 200
        assert response.json()["resolved_at"] is not None

    def test_unassigned_developer_is_forbidden(self, client, make_user, make_incident, auth_headers):
        dev = make_user(Role.DEVELOPER)
        incident = make_incident()

        response = client.put(f"/incidents/{incident.id}", json={"status": "RESOLVED"}, headers=auth_headers(dev))

        assert response.status_code == 403

    def test_manager_reassigns_and_renames(self, client, make_user, make_incident, auth_headers):
        pm = make_user(Role.PM)
        dev = make_user(Role.DEVELOPER)
        incident = make_incident()

        response = client.put(
            f"/incidents/{incident.id}",
            json={"title": "Checkout outage", "assignee_id": dev.id},
            headers=auth_headers(pm),
        )

        assert response.status_code == 200
        assert response.json()["title"] == "Checkout outage"
        assert response.json()["assignee"]["id"] == dev.id

    def test_blank_title_is_bad_request(self, client, db, make_user, make_incident, auth_headers):
        pm = make_user(Role.PM)
        incident = make_incident(title="Database latency")

        response = client.put(f"/incidents/{incident.id}", json={"title": "   "}, headers=auth_headers(pm))

        assert response.status_code == 400
        db.refresh(incident)
        assert incident.title == "Database latency"

    def test_title_is_trimmed(self, client, make_user, make_incident, auth_headers):
        pm = make_user(Role.PM)
        incident = make_incident()

        response = client.put(f"/incidents/{incident.id}", json={"title": "  Checkout outage "}, headers=auth_headers(pm))

        assert response.json()["title"] == "Checkout outage"

    def test_invalid_status_value(self, client, make_user, make_incident, auth_headers):
        pm = make_user(Role.PM)
        incident = make_incident()
        response = client.put(f"/incidents/{incident.id}", json={"status": "FIXED"}, headers=auth_headers(pm))
        assert response.status_code == 422

    def test_missing_incident(self, client, make_user, auth_headers):
        pm = make_user(Role.PM)
        assert client.put("/incidents/404", json={"status": "CLOSED"}, headers=auth_headers(pm)).status_code == 404


class TestResolutionTimestamps:

    def test_re_resolution_overwrites_resolved_at(self, client, monkeypatch, make_user, make_incident, auth_headers):
        pm = make_user(Role.PM)
        incident = make_incident()
        headers = auth_headers(pm)
        first = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)
        second = first + timedelta(hours=6)

        monkeypatch.setattr(lifecycle, "utcnow", lambda: first)
        body = client.put(f"/incidents/{incident.id}", json={"status": "RESOLVED"}, headers=headers).json()
        assert parse(body["resolved_at"]) == first.replace(tzinfo=None)

        body = client.put(f"/incidents/{incident.id}", json={"status": "INVESTIGATING"}, headers=headers).json()
        # Regression keeps the previous resolution time
        assert parse(body["resolved_at"]) == first.replace(tzinfo=None)

        monkeypatch.setattr(lifecycle, "utcnow", lambda: second)
        body = client.put(f"/incidents/{incident.id}", json={"status": "RESOLVED"}, headers=headers).json()
        assert parse(body["resolved_at"]) == second.replace(tzinfo=None)

    def test_closing_stamps_closed_at(self, client, make_user, make_incident, auth_headers):
        pm = make_user(Role.PM)
        incident = make_incident(status=IncidentStatus.RESOLVED)

        body = client.put(f"/incidents/{incident.id}", json={"status": "CLOSED"}, headers=auth_headers(pm)).json()

        assert body["status"] == "CLOSED"
        assert body["closed_at"] is not None


class TestIncidentCreate:

    def test_manager_creates_open_incident(self, client, make_user, auth_headers):
        pm = make_user(Role.PM)
        payload = {"title": "Queue backlog", "system": "billing", "environment": "staging", "tier": "MINOR"}

        response = client.post("/incidents", json=payload, headers=auth_headers(pm))

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "OPEN"
        assert body["environment"] == "STAGING"

    @pytest.mark.parametrize("role", [Role.DEVELOPER, Role.QA, Role.BA])
    def test_others_cannot_create(self, client, make_user, auth_headers, role):
        user = make_user(role)
        payload = {"title": "Queue backlog", "system": "billing", "environment": "DEV", "tier": "MINOR"}
        assert client.post("/incidents", json=payload, headers=auth_headers(user)).status_code == 403

    def test_blank_title(self, client, db, make_user, auth_headers):
        pm = make_user(Role.PM)
        payload = {"title": "  ", "system": "billing", "environment": "DEV", "tier": "MINOR"}

        assert client.post("/incidents", json=payload, headers=auth_headers(pm)).status_code == 400
        assert db.query(Incident).count() == 0


class TestIncidentComments:

    def test_any_user_can_comment(self, client, make_user, make_incident, auth_headers):
        dev = make_user(Role.DEVELOPER)
        incident = make_incident()

        response = client.post(
            f"/incidents/{incident.id}/comments",
            json={"content": "Restarted the worker"},
            headers=auth_headers(dev),
        )

        assert response.status_code == 201
        assert response.json()["incident_id"] == incident.id
        comments = client.get(f"/incidents/{incident.id}/comments", headers=auth_headers(dev)).json()
        assert len(comments) == 1


class TestIngestion:

    PAYLOAD = {
        "title": "Disk usage above 90%",
        "system": "reporting",
        "environment": "PRODUCTION",
        "tier": "MAJOR",
        "metadata": {"host": "db-2"},
    }

    def test_requires_api_key(self, client):
        assert client.post("/v1/incidents", json=self.PAYLOAD).status_code == 401
        assert client.post("/v1/incidents", json=self.PAYLOAD, headers={"X-API-Key": "nope"}).status_code == 401

    def test_session_token_is_not_enough(self, client, make_user, auth_headers):
        admin = make_user(Role.ADMIN)
        assert client.post("/v1/incidents", json=self.PAYLOAD, headers=auth_headers(admin)).status_code == 401

    def test_ingested_incident_is_open_and_unassigned(self, client, db):
        response = client.post("/v1/incidents", json=self.PAYLOAD, headers={"X-API-Key": API_KEY})

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "OPEN"

        incident = db.query(Incident).filter(Incident.id == body["id"]).one()
        assert incident.assignee_id is None
        assert incident.incident_metadata == {"host": "db-2"}

    def test_blank_title(self, client, db):
        payload = dict(self.PAYLOAD, title="   ")
        assert client.post("/v1/incidents", json=payload, headers={"X-API-Key": API_KEY}).status_code == 400
        assert db.query(Incident).count() == 0

    def test_invalid_tier(self, client):
        payload = dict(self.PAYLOAD, tier="SEVERE")
        assert client.post("/v1/incidents", json=payload, headers={"X-API-Key": API_KEY}).status_code == 422

    def test_listing_matches_system_exactly(self, client, make_incident):
        make_incident(system="reporting")
        make_incident(system="reporting-api")

        response = client.get("/v1/incidents", params={"system": "reporting"}, headers={"X-API-Key": API_KEY})

        assert response.status_code == 200
        assert [i["system"] for i in response.json()["incidents"]] == ["reporting"]


class TestIncidentSummary:

    def test_summary_numbers(self, client, make_user, make_incident, auth_headers):
        now = datetime.now(timezone.utc).replace(tzinfo=None)
        make_incident(
            tier=IncidentTier.MAJOR,
            status=IncidentStatus.RESOLVED,
            created_at=now - timedelta(hours=2),
            resolved_at=now,
        )
        make_incident(
            tier=IncidentTier.MINOR,
            status=IncidentStatus.RESOLVED,
            system="search",
            created_at=now - timedelta(hours=5),
            resolved_at=now - timedelta(hours=1),
        )
        make_incident(
            tier=IncidentTier.CRITICAL,
            status=IncidentStatus.OPEN,
            created_at=now - timedelta(days=3),
        )
        user = make_user(Role.DEVELOPER)

        response = client.get("/incidents/summary", params={"days": 7}, headers=auth_headers(user))

        assert response.status_code == 200
        body = response.json()
        assert body["summary"] == {
            "total": 3,
            "resolved": 2,
            "mttr": 3.0,
            "recent_24h": 2,
            "open_critical": 1,
            "resolution_rate": 67,
        }
        assert {"name": "payments", "value": 2} in body["distributions"]["systems"]
        assert body["distributions"]["tier"] == [
            {"name": "CRITICAL", "value": 1},
            {"name": "MAJOR", "value": 1},
            {"name": "MINOR", "value": 1},
        ]
        assert len(body["trends"]) == 8
        assert sum(point["total"] for point in body["trends"]) == 3
        assert sum(point["critical"] for point in body["trends"]) == 1

    def test_empty_summary(self, client, make_user, auth_headers):
        user = make_user(Role.QA)
        body = client.get("/incidents/summary", headers=auth_headers(user)).json()
        assert body["summary"]["mttr"] == 0
        assert body["summary"]["resolution_rate"] == 0
        assert len(body["trends"]) == 31
