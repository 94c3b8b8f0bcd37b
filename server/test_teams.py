"""Tests for teams, invitations, roles and sharing."""

from datetime import datetime, timedelta

import pytest

from conftest import bearer
from models import TeamInvitation


def create_team(client, headers, name="Platform"):
    return client.post("/api/teams", json={"name": name}, headers=headers).json()


def join(client, owner_headers, team_id, member, role="member"):
    invitation = client.post(f"/api/teams/{team_id}/invitations", json={"email": member.email, "role": role},
                             headers=owner_headers).json()
    return client.post("/api/teams/invitations/accept", json={"token": invitation["token"]},
                       headers=bearer(member))


@pytest.fixture
def member(make_user):
    return make_user("member@example.com")


class TestTeams:

    def test_creator_is_owner(self, client, headers):
        team = create_team(client, headers)

        assert team["role"] == "owner"
        assert team["member_count"] == 1
        assert [t["name"] for t in client.get("/api/teams", headers=headers).json()] == ["Platform"]

    def test_non_members_get_not_found(self, client, headers, member):
        team = create_team(client, headers)
        assert client.get(f"/api/teams/{team['id']}/members", headers=bearer(member)).status_code == 404


class TestInvitations:

    def test_invite_and_accept(self, client, headers, member):
        team = create_team(client, headers)

        response = join(client, headers, team["id"], member, role="admin")

        assert response.status_code == 200
        assert response.json()["role"] == "admin"
        members = client.get(f"/api/teams/{team['id']}/members", headers=headers).json()
        assert [(m["email"], m["role"]) for m in members] == [("dev@example.com", "owner"),
                                                              ("member@example.com", "admin")]

    def test_invitation_is_single_use(self, client, headers, member):
        team = create_team(client, headers)
        invitation = client.post(f"/api/teams/{team['id']}/invitations", json={"email": member.email},
                                 headers=headers).json()
        client.post("/api/teams/invitations/accept", json={"token": invitation["token"]}, headers=bearer(member))

        again = client.post("/api/teams/invitations/accept", json={"token": invitation["token"]},
                            headers=bearer(member))
        assert again.json()["error"]["code"] == "INVALID_TOKEN"

    def test_wrong_email(self, client, headers, member, make_user):
        team = create_team(client, headers)
        invitation = client.post(f"/api/teams/{team['id']}/invitations", json={"email": member.email},
                                 headers=headers).json()

        stranger = bearer(make_user("stranger@example.com"))
        response = client.post("/api/teams/invitations/accept", json={"token": invitation["token"]}, headers=stranger)
        assert response.status_code == 403

    def test_expired(self, client, db, headers, member):
        team = create_team(client, headers)
        invitation = client.post(f"/api/teams/{team['id']}/invitations", json={"email": member.email},
                                 headers=headers).json()
        row = db.get(TeamInvitation, invitation["id"])
        row.expires_at = datetime.utcnow() - timedelta(minutes=1)
        db.commit()

        response = client.post("/api/teams/invitations/accept", json={"token": invitation["token"]},
                               headers=bearer(member))
        assert response.json()["error"]["code"] == "TOKEN_EXPIRED"

    def test_cannot_invite_an_owner(self, client, headers, member):
        team = create_team(client, headers)
        response = client.post(f"/api/teams/{team['id']}/invitations", json={"email": member.email, "role": "owner"},
                               headers=headers)
        assert response.status_code == 400

    def test_existing_member(self, client, headers, user):
        team = create_team(client, headers)
        response = client.post(f"/api/teams/{team['id']}/invitations", json={"email": user.email}, headers=headers)
        assert response.status_code == 409

    def test_members_cannot_invite(self, client, headers, member, make_user):
        team = create_team(client, headers)
        join(client, headers, team["id"], member)

        response = client.post(f"/api/teams/{team['id']}/invitations", json={"email": "x@example.com"},
                               headers=bearer(member))
        assert response.status_code == 403


class TestRoles:

    def test_admin_changes_role(self, client, headers, member):
        team = create_team(client, headers)
        join(client, headers, team["id"], member)

        response = client.put(f"/api/teams/{team['id']}/members/{member.id}/role", json={"role": "viewer"},
                              headers=headers)

        assert response.json()["role"] == "viewer"

    def test_owner_role_is_fixed(self, client, headers, user, member):
        team = create_team(client, headers)
        join(client, headers, team["id"], member, role="admin")

        response = client.put(f"/api/teams/{team['id']}/members/{user.id}/role", json={"role": "member"},
                              headers=bearer(member))
        assert response.status_code == 403

    def test_only_owner_removes_members(self, client, headers, member, make_user):
        team = create_team(client, headers)
        join(client, headers, team["id"], member, role="admin")
        viewer = make_user("viewer@example.com")
        join(client, headers, team["id"], viewer, role="viewer")

        assert client.delete(f"/api/teams/{team['id']}/members/{viewer.id}", headers=bearer(member)).status_code == 403
        assert client.delete(f"/api/teams/{team['id']}/members/{viewer.id}", headers=headers).status_code == 200

    def test_owner_cannot_be_removed(self, client, headers, user):
        team = create_team(client, headers)
        assert client.delete(f"/api/teams/{team['id']}/members/{user.id}", headers=headers).status_code == 403


class TestSharing:

    def test_members_see_shared_analyses(self, client, headers, member, seed_repository):
        repo = seed_repository("octo/radar", overall=9.0)
        team = create_team(client, headers)
        join(client, headers, team["id"], member)

        shared = client.post(f"/api/teams/{team['id']}/share", json={"analysis_id": repo.analysis.id},
                             headers=headers)
        assert shared.status_code == 201

        items = client.get(f"/api/teams/{team['id']}/shared", headers=bearer(member)).json()
        assert [(i["repository"]["full_name"], i["analysis"]["overall_score"]) for i in items] == [("octo/radar", 9.0)]

    def test_unknown_analysis(self, client, headers):
        team = create_team(client, headers)
        response = client.post(f"/api/teams/{team['id']}/share", json={"analysis_id": 404}, headers=headers)
        assert response.status_code == 404
