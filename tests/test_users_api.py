"""Login, sessions, user administration and profiles."""
import pytest

from enums import Role

PASSWORD = "correct-horse"


class TestLogin:

    def test_login_returns_session(self, client, make_user):
        user = make_user(Role.QA, username="emma.qa")

        response = client.post("/login", json={"username": "emma.qa", "password": PASSWORD})

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == user.id
        assert body["role"] == "QA"

        me = client.get("/users/me", headers={"X-Session-Token": body["session_token"]})
        assert me.status_code == 200
        assert me.json()["username"] == "emma.qa"

    def test_wrong_password(self, client, make_user):
        make_user(username="alice")
        response = client.post("/login", json={"username": "alice", "password": "wrong"})
        assert response.status_code == 401

    def test_inactive_user_cannot_log_in(self, client, db, make_user):
        user = make_user(username="gone")
        user.is_active = False
        db.commit()

        assert client.post("/login", json={"username": "gone", "password": PASSWORD}).status_code == 401

    def test_logout_invalidates_token(self, client, make_user):
        make_user(username="bob")
        token = client.post("/login", json={"username": "bob", "password": PASSWORD}).json()["session_token"]
        headers = {"X-Session-Token": token}

        assert client.post("/logout", headers=headers).status_code == 200
        assert client.get("/users/me", headers=headers).status_code == 401
        assert client.post("/logout", headers=headers).status_code == 404

    @pytest.mark.parametrize("headers", [{}, {"X-Session-Token": "bogus"}])
    def test_protected_routes_need_valid_session(self, client, headers):
        assert client.get("/tasks", headers=headers).status_code == 401


class TestUserAdministration:

    def test_admin_creates_user(self, client, make_user, auth_headers):
        admin = make_user(Role.ADMIN)
        payload = {"username": "new.dev", "password": "s3cret-pass", "role": "developer", "email": "new.dev@opsboard.io"}

        response = client.post("/users", json=payload, headers=auth_headers(admin))

        assert response.status_code == 201
        assert response.json()["role"] == "DEVELOPER"
        assert client.post("/login", json={"username": "new.dev", "password": "s3cret-pass"}).status_code == 200

    def test_duplicate_username(self, client, make_user, auth_headers):
        admin = make_user(Role.ADMIN, username="root")
        payload = {"username": "root", "password": "whatever-1"}
        assert client.post("/users", json=payload, headers=auth_headers(admin)).status_code == 400

    def test_non_admin_cannot_create(self, client, make_user, auth_headers):
        pm = make_user(Role.PM)
        payload = {"username": "sneaky", "password": "whatever-1"}
        assert client.post("/users", json=payload, headers=auth_headers(pm)).status_code == 403

    def test_deactivation_revokes_sessions(self, client, db, make_user, auth_headers):
        admin = make_user(Role.ADMIN)
        dev = make_user(Role.DEVELOPER)
        dev_headers = auth_headers(dev)
        assert client.get("/users/me", headers=dev_headers).status_code == 200

        response = client.put(f"/users/{dev.id}/toggle-active", headers=auth_headers(admin))

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert client.get("/users/me", headers=dev_headers).status_code == 401

        response = client.put(f"/users/{dev.id}/toggle-active", headers=auth_headers(admin))
        assert response.json()["is_active"] is True

    def test_cannot_deactivate_self(self, client, make_user, auth_headers):
        admin = make_user(Role.ADMIN)
        assert client.put(f"/users/{admin.id}/toggle-active", headers=auth_headers(admin)).status_code == 400

    def test_toggle_requires_admin(self, client, make_user, auth_headers):
        pm = make_user(Role.PM)
        dev = make_user(Role.DEVELOPER)
        assert client.put(f"/users/{dev.id}/toggle-active", headers=auth_headers(pm)).status_code == 403


class TestProfile:

    def test_update_own_profile(self, client, make_user, auth_headers):
        dev = make_user(Role.DEVELOPER)

        response = client.put(f"/users/{dev.id}", json={"first_name": "Alice"}, headers=auth_headers(dev))

        assert response.status_code == 200
        assert response.json()["first_name"] == "Alice"

    def test_cannot_update_someone_else(self, client, make_user, auth_headers):
        dev = make_user(Role.DEVELOPER)
        other = make_user(Role.DEVELOPER)
        response = client.put(f"/users/{other.id}", json={"first_name": "X"}, headers=auth_headers(dev))
        assert response.status_code == 403

    def test_password_change_needs_current_password(self, client, db, make_user, auth_headers):
        dev = make_user(Role.DEVELOPER, username="carol")
        headers = auth_headers(dev)

        missing = client.put(f"/users/{dev.id}", json={"new_password": "n3w-pass"}, headers=headers)
        assert missing.status_code == 400

        wrong = client.put(
            f"/users/{dev.id}",
            json={"new_password": "n3w-pass", "current_password": "nope"},
            headers=headers,
        )
        assert wrong.status_code == 400

        ok = client.put(
            f"/users/{dev.id}",
            json={"new_password": "n3w-pass", "current_password": PASSWORD},
            headers=headers,
        )
        assert ok.status_code == 200
        assert client.post("/login", json={"username": "carol", "password": "n3w-pass"}).status_code == 200

    def test_missing_user(self, client, make_user, auth_headers):
        admin = make_user(Role.ADMIN)
        assert client.put("/users/999", json={"first_name": "X"}, headers=auth_headers(admin)).status_code == 404
        assert client.get("/users/999", headers=auth_headers(admin)).status_code == 404


class TestDirectory:

    def test_list_users_by_team(self, client, make_team, make_user, auth_headers):
        team = make_team(name="Platform")
        member = make_user(Role.DEVELOPER, team_id=team.id)
        make_user(Role.DEVELOPER)

        response = client.get("/users", params={"team_id": team.id}, headers=auth_headers(member))

        assert response.status_code == 200
        assert [u["id"] for u in response.json()] == [member.id]

    def test_inactive_users_hidden(self, client, db, make_user, auth_headers):
        viewer = make_user(Role.PM)
        hidden = make_user(Role.DEVELOPER)
        hidden.is_active = False
        db.commit()

        ids = [u["id"] for u in client.get("/users", headers=auth_headers(viewer)).json()]

        assert viewer.id in ids
        assert hidden.id not in ids

    def test_teams_with_member_counts(self, client, make_team, make_user, auth_headers):
        team = make_team(name="Platform")
        make_team(name="Archived", is_active=False)
        user = make_user(Role.DEVELOPER, team_id=team.id)
        make_user(Role.QA, team_id=team.id)

        response = client.get("/teams", headers=auth_headers(user))

        assert response.json() == [
            {"id": team.id, "name": "Platform", "color": None, "description": None, "member_count": 2}
        ]
