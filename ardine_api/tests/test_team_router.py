"""Tests for ardine_api/routers/team.py

Covers:
- GET /team and GET /team/members for members, 404 for outsiders
- PATCH /team/members/{user_id}/role: owner/admin rules and the last-owner guard
- DELETE /team/members/{user_id}: removal and the last-owner guard
- Invalid role strings are rejected by request validation
- POST /teams makes the creator OWNER; GET /teams lists the caller's teams
- PATCH /team updates defaults that later entries and invoices pick up
- POST /team/members adds an existing user by email
"""

from __future__ import annotations

from decimal import Decimal

import pytest
from httpx import AsyncClient

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _roles(client: AsyncClient, world) -> dict[str, str]:
    resp = await client.get("/api/v1/team/members", headers=world.headers("owner"))
    assert resp.status_code == 200
    return {m["user_id"]: m["role"] for m in resp.json()["members"]}


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestTeamReads:
    @pytest.mark.asyncio
    async def test_get_team(self, client: AsyncClient, world) -> None:
        resp = await client.get("/api/v1/team", headers=world.headers("viewer"))
        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == world.team_id
        assert body["slug"] == "acme"
        assert body["default_hourly_rate_cents"] == 5000

    @pytest.mark.asyncio
    async def test_list_members(self, client: AsyncClient, world) -> None:
        resp = await client.get("/api/v1/team/members", headers=world.headers("billing"))
        assert resp.status_code == 200
        members = resp.json()["members"]
        assert {m["role"] for m in members} == {"OWNER", "ADMIN", "MEMBER", "VIEWER", "BILLING"}
        assert all(m["email"].endswith("@acme.test") for m in members)

    @pytest.mark.asyncio
    async def test_outsider_gets_not_found(self, client: AsyncClient, world) -> None:
        resp = await client.get("/api/v1/team/members", headers=world.headers("outsider"))
        assert resp.status_code == 404
        assert resp.json() == {"detail": "Team not found", "code": "NOT_FOUND"}

    @pytest.mark.asyncio
    async def test_instance_admin_can_read_any_team(self, client: AsyncClient, world) -> None:
        resp = await client.get("/api/v1/team", headers=world.headers("instance_admin"))
        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Role changes
# ---------------------------------------------------------------------------


class TestUpdateRole:
    @pytest.mark.asyncio
    async def test_cannot_demote_last_owner(self, client: AsyncClient, world) -> None:
        owner_id = world.users["owner"]
        resp = await client.patch(
            f"/api/v1/team/members/{owner_id}/role",
            json={"role": "MEMBER"},
            headers=world.headers("owner"),
        )
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["detail"] == "Cannot change the last owner role"
        assert (await _roles(client, world))[owner_id] == "OWNER"

    @pytest.mark.asyncio
    async def test_admin_changes_member_role(self, client: AsyncClient, world) -> None:
        member_id = world.users["member"]
        resp = await client.patch(
            f"/api/v1/team/members/{member_id}/role",
            json={"role": "VIEWER"},
            headers=world.headers("admin"),
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "VIEWER"
        assert (await _roles(client, world))[member_id] == "VIEWER"

    @pytest.mark.asyncio
    async def test_admin_cannot_modify_owner(self, client: AsyncClient, world) -> None:
        resp = await client.patch(
            f"/api/v1/team/members/{world.users['owner']}/role",
            json={"role": "ADMIN"},
            headers=world.headers("admin"),
        )
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Only team owners can modify owner roles"

    @pytest.mark.asyncio
    async def test_admin_cannot_grant_owner(self, client: AsyncClient, world) -> None:
        resp = await client.patch(
            f"/api/v1/team/members/{world.users['member']}/role",
            json={"role": "OWNER"},
            headers=world.headers("admin"),
        )
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Only team owners can grant the owner role"

    @pytest.mark.asyncio
    async def test_owner_hands_over_ownership(self, client: AsyncClient, world) -> None:
        admin_id, owner_id = world.users["admin"], world.users["owner"]
        resp = await client.patch(
            f"/api/v1/team/members/{admin_id}/role",
            json={"role": "OWNER"},
            headers=world.headers("owner"),
        )
        assert resp.status_code == 200
        resp = await client.patch(
            f"/api/v1/team/members/{owner_id}/role",
            json={"role": "MEMBER"},
            headers=world.headers("owner"),
        )
        assert resp.status_code == 200
        roles = await _roles(client, world)
        assert roles[admin_id] == "OWNER"
        assert roles[owner_id] == "MEMBER"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("who", ["member", "viewer", "billing"])
    async def test_non_managers_forbidden(self, client: AsyncClient, world, who: str) -> None:
        resp = await client.patch(
            f"/api/v1/team/members/{world.users['viewer']}/role",
            json={"role": "MEMBER"},
            headers=world.headers(who),
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_lowercase_role_rejected(self, client: AsyncClient, world) -> None:
        resp = await client.patch(
            f"/api/v1/team/members/{world.users['member']}/role",
            json={"role": "admin"},
            headers=world.headers("owner"),
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_member(self, client: AsyncClient, world) -> None:
        resp = await client.patch(
            f"/api/v1/team/members/{world.users['outsider']}/role",
            json={"role": "MEMBER"},
            headers=world.headers("owner"),
        )
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Team membership not found"


# ---------------------------------------------------------------------------
# Removal
# ---------------------------------------------------------------------------


class TestRemoveMember:
    @pytest.mark.asyncio
    async def test_remove_member(self, client: AsyncClient, world) -> None:
        resp = await client.delete(f"/api/v1/team/members/{world.users['viewer']}", headers=world.headers("admin"))
        assert resp.status_code == 204
        assert world.users["viewer"] not in await _roles(client, world)

    @pytest.mark.asyncio
    async def test_cannot_remove_last_owner(self, client: AsyncClient, world) -> None:
        resp = await client.delete(f"/api/v1/team/members/{world.users['owner']}", headers=world.headers("owner"))
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Cannot remove the last owner"

    @pytest.mark.asyncio
    async def test_admin_cannot_remove_owner(self, client: AsyncClient, world) -> None:
        resp = await client.delete(f"/api/v1/team/members/{world.users['owner']}", headers=world.headers("admin"))
        assert resp.status_code == 403
        assert resp.json()["detail"] == "Only team owners can remove other owners"

    @pytest.mark.asyncio
    async def test_removed_member_loses_access_immediately(self, client: AsyncClient, world) -> None:
        await client.delete(f"/api/v1/team/members/{world.users['member']}", headers=world.headers("owner"))
        resp = await client.get("/api/v1/team/members", headers=world.headers("member"))
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Team creation and settings
# ---------------------------------------------------------------------------


class TestCreateTeam:
    @pytest.mark.asyncio
    async def test_creator_becomes_owner(self, client: AsyncClient, world) -> None:
        resp = await client.post(
            "/api/v1/teams",
            json={"name": "My New Team", "default_hourly_rate_cents": 9000},
            headers=world.headers("member"),
        )
        assert resp.status_code == 201, resp.text
        team = resp.json()
        assert team["slug"] == "my-new-team"
        assert team["default_hourly_rate_cents"] == 9000

        resp = await client.get("/api/v1/team/members", headers=world.headers("member", team_id=team["id"]))
        assert resp.status_code == 200
        members = resp.json()["members"]
        assert [(m["user_id"], m["role"]) for m in members] == [(world.users["member"], "OWNER")]

    @pytest.mark.asyncio
    async def test_list_my_teams(self, client: AsyncClient, world) -> None:
        await client.post("/api/v1/teams", json={"name": "Side Project"}, headers=world.headers("viewer"))
        resp = await client.get("/api/v1/teams", headers=world.headers("viewer"))
        assert resp.status_code == 200
        teams = {t["slug"]: t["role"] for t in resp.json()["teams"]}
        assert teams == {"acme": "VIEWER", "side-project": "OWNER"}

    @pytest.mark.asyncio
    async def test_duplicate_slug_conflicts(self, client: AsyncClient, world) -> None:
        resp = await client.post(
            "/api/v1/teams",
            json={"name": "Acme Again", "slug": "acme"},
            headers=world.headers("owner"),
        )
        assert resp.status_code == 409
        assert resp.json()["detail"] == "Team slug is already taken"

    @pytest.mark.asyncio
    async def test_malformed_slug_rejected(self, client: AsyncClient, world) -> None:
        resp = await client.post(
            "/api/v1/teams",
            json={"name": "Valid Name", "slug": "Not A Slug!"},
            headers=world.headers("owner"),
        )
        assert resp.status_code == 400
        assert resp.json()["field"] == "slug"

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client: AsyncClient, world) -> None:
        resp = await client.post("/api/v1/teams", json={"name": "Anon Team"})
        assert resp.status_code == 401


class TestUpdateTeam:
    @pytest.mark.asyncio
    async def test_new_defaults_apply_to_later_entries_and_invoices(self, client: AsyncClient, world) -> None:
        resp = await client.patch(
            "/api/v1/team",
            json={"default_hourly_rate_cents": 12000, "default_tax_rate_percent": "8.5"},
            headers=world.headers("admin"),
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["default_hourly_rate_cents"] == 12000
        assert Decimal(resp.json()["default_tax_rate_percent"]) == Decimal("8.50")

        resp = await client.post("/api/v1/clients", json={"name": "Initech"}, headers=world.headers("owner"))
        client_id = resp.json()["id"]
        resp = await client.post(
            "/api/v1/projects",
            json={"name": "Migration", "client_id": client_id},
            headers=world.headers("owner"),
        )
        project_id = resp.json()["id"]

        resp = await client.post(
            "/api/v1/time-entries",
            json={
                "project_id": project_id,
                "started_at": "2024-01-01T09:00:00Z",
                "stopped_at": "2024-01-01T10:00:00Z",
            },
            headers=world.headers("owner"),
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["hourly_rate_cents"] == 12000
        assert resp.json()["amount_cents"] == 12000

        resp = await client.post(
            "/api/v1/invoices",
            json={"client_id": client_id, "issued_date": "2024-03-10", "due_date": "2024-04-10"},
            headers=world.headers("billing"),
        )
        assert resp.status_code == 201, resp.text
        assert Decimal(resp.json()["tax_rate_percent"]) == Decimal("8.50")

    @pytest.mark.asyncio
    async def test_rename_and_slug_conflict(self, client: AsyncClient, world) -> None:
        resp = await client.patch("/api/v1/team", json={"name": "Acme Works"}, headers=world.headers("owner"))
        assert resp.status_code == 200
        assert resp.json()["name"] == "Acme Works"
        assert resp.json()["slug"] == "acme"

        resp = await client.patch("/api/v1/team", json={"slug": "other"}, headers=world.headers("owner"))
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_null_tax_rate_rejected(self, client: AsyncClient, world) -> None:
        resp = await client.patch(
            "/api/v1/team",
            json={"default_tax_rate_percent": None},
            headers=world.headers("owner"),
        )
        assert resp.status_code == 400
        assert resp.json()["field"] == "defaultTaxRatePercent"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("who", ["member", "viewer", "billing"])
    async def test_non_managers_forbidden(self, client: AsyncClient, world, who: str) -> None:
        resp = await client.patch("/api/v1/team", json={"name": "Hijacked"}, headers=world.headers(who))
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Adding members
# ---------------------------------------------------------------------------


class TestAddMember:
    @pytest.mark.asyncio
    async def test_add_by_email(self, client: AsyncClient, world) -> None:
        resp = await client.post(
            "/api/v1/team/members",
            json={"email": " Outsider@Other.test ", "role": "VIEWER"},
            headers=world.headers("admin"),
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["user_id"] == world.users["outsider"]
        assert resp.json()["role"] == "VIEWER"
        assert (await _roles(client, world))[world.users["outsider"]] == "VIEWER"

    @pytest.mark.asyncio
    async def test_unknown_email(self, client: AsyncClient, world) -> None:
        resp = await client.post(
            "/api/v1/team/members",
            json={"email": "nobody@nowhere.test"},
            headers=world.headers("owner"),
        )
        assert resp.status_code == 404
        assert resp.json()["detail"] == "User not found with this email"

    @pytest.mark.asyncio
    async def test_existing_member_conflicts(self, client: AsyncClient, world) -> None:
        resp = await client.post(
            "/api/v1/team/members",
            json={"email": "member@acme.test"},
            headers=world.headers("owner"),
        )
        assert resp.status_code == 409
        assert resp.json()["detail"] == "User is already a member of this team"

    @pytest.mark.asyncio
    async def test_admin_cannot_add_owner(self, client: AsyncClient, world) -> None:
        resp = await client.post(
            "/api/v1/team/members",
            json={"email": "outsider@other.test", "role": "OWNER"},
            headers=world.headers("admin"),
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_member_cannot_add(self, client: AsyncClient, world) -> None:
        resp = await client.post(
            "/api/v1/team/members",
            json={"email": "outsider@other.test"},
            headers=world.headers("member"),
        )
        assert resp.status_code == 403
