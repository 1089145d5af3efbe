"""Tests for ardine_api/routers/health.py and middleware/auth.py

Covers:
- GET /api/v1/health and GET /ready answer without credentials
- Bearer and cookie tokens both authenticate
- Expired and forged tokens leave the request anonymous (401 downstream)
- Tokens without a user identity are ignored
- The team role comes from storage, never from the token
- Domain errors render as {"detail", "code"} with the right status
"""

from __future__ import annotations

import jwt
import pytest
from ardine_api.middleware.auth import decode_session_token
from httpx import AsyncClient

_SECRET = "decode-test-secret-" * 4

# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["db"] == "ok"

    @pytest.mark.asyncio
    async def test_ready(self, client: AsyncClient) -> None:
        resp = await client.get("/ready")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ready"}


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_no_token_is_unauthorized(self, client: AsyncClient, world) -> None:
        resp = await client.get("/api/v1/team/members", headers={"X-Team-ID": world.team_id})
        assert resp.status_code == 401
        assert resp.json() == {"detail": "Authentication required", "code": "UNAUTHORIZED"}

    @pytest.mark.asyncio
    async def test_bearer_token(self, client: AsyncClient, world) -> None:
        resp = await client.get("/api/v1/team/members", headers=world.headers("member"))
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_cookie_token(self, client: AsyncClient, world, sign_token) -> None:
        cookie = f"auth_token={sign_token(world.users['viewer'])}"
        resp = await client.get("/api/v1/team/members", headers={"Cookie": cookie, "X-Team-ID": world.team_id})
        assert resp.status_code == 200

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "token_kwargs",
        [
            {"expires_in": -60},
            {"secret": "not-the-real-secret"},
        ],
    )
    async def test_bad_tokens_are_anonymous(self, client: AsyncClient, world, sign_token, token_kwargs) -> None:
        token = sign_token(world.users["owner"], **token_kwargs)
        resp = await client.get(
            "/api/v1/team/members",
            headers={"Authorization": f"Bearer {token}", "X-Team-ID": world.team_id},
        )
        assert resp.status_code == 401
        assert resp.json()["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_garbage_token_is_anonymous(self, client: AsyncClient, world) -> None:
        resp = await client.get(
            "/api/v1/team/members",
            headers={"Authorization": "Bearer not.a.jwt", "X-Team-ID": world.team_id},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_token_role_claims_are_not_trusted(self, client: AsyncClient, world, sign_token) -> None:
        token = sign_token(world.users["viewer"], teamRole="OWNER")
        resp = await client.patch(
            f"/api/v1/team/members/{world.users['member']}/role",
            json={"role": "ADMIN"},
            headers={"Authorization": f"Bearer {token}", "X-Team-ID": world.team_id},
        )
        assert resp.status_code == 403
        assert resp.json()["code"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_missing_team_header(self, client: AsyncClient, world) -> None:
        headers = world.headers("owner")
        del headers["X-Team-ID"]
        resp = await client.get("/api/v1/projects", headers=headers)
        assert resp.status_code == 403
        assert resp.json()["detail"] == "No active team selected"


class TestDecodeSessionToken:
    def test_sub_claim_fallback(self) -> None:
        token = jwt.encode({"sub": "u-1"}, _SECRET, algorithm="HS256")
        assert decode_session_token(token, _SECRET)["userId"] == "u-1"

    def test_identity_required(self) -> None:
        token = jwt.encode({"instanceRole": "USER"}, _SECRET, algorithm="HS256")
        with pytest.raises(jwt.InvalidTokenError, match="no user identity"):
            decode_session_token(token, _SECRET)

    def test_wrong_algorithm_rejected(self) -> None:
        token = jwt.encode({"userId": "u-1"}, _SECRET, algorithm="HS512")
        with pytest.raises(jwt.InvalidTokenError):
            decode_session_token(token, _SECRET, "HS256")
