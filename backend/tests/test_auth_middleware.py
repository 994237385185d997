import jwt
from httpx import AsyncClient


async def test_no_auth_header_returns_401(client: AsyncClient) -> None:
    resp = await client.get("/api/chat/history")
    assert resp.status_code == 401
    data = resp.json()
    assert data["ok"] is False
    assert data["code"] == "auth_required"


async def test_non_bearer_header_returns_401(client: AsyncClient) -> None:
    resp = await client.get("/api/chat/history", headers={"Authorization": "Basic abc"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "invalid_auth"


async def test_garbage_token_returns_401(client: AsyncClient) -> None:
    resp = await client.get(
        "/api/chat/history",
        headers={"Authorization": "Bearer not-a-valid-token"},
    )
    assert resp.status_code == 401
    assert resp.json()["code"] == "invalid_token"


async def test_token_without_subject_returns_401(client: AsyncClient, token_factory) -> None:
    resp = await client.get("/api/chat/history", headers=token_factory(sub=""))
    assert resp.status_code == 401
    assert resp.json()["code"] == "invalid_token"


async def test_valid_token_reaches_route(client: AsyncClient, user_headers) -> None:
    resp = await client.get("/api/chat/history", headers=user_headers)
    assert resp.status_code == 200
    assert resp.json() == {"items": [], "nextCursor": None}


async def test_me_anonymous_is_not_an_error(client: AsyncClient) -> None:
    resp = await client.get("/api/me")
    assert resp.status_code == 200
    assert resp.json() == {"authenticated": False}


async def test_me_bootstraps_organization(client: AsyncClient, token_factory) -> None:
    headers = token_factory(sub="auth0|me-1", roles=["admin"], email="me@example.com")
    resp = await client.get("/api/me", headers=headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["authenticated"] is True
    assert data["sub"] == "auth0|me-1"
    assert data["email"] == "me@example.com"
    assert data["roles"] == ["admin"]
    assert data["isAdmin"] is True
    assert data["role"] == "admin"
    assert data["balance"] == 100
    assert data["organizationId"]

    again = await client.get("/api/me", headers=headers)
    assert again.json()["organizationId"] == data["organizationId"]


async def test_roles_outside_namespaced_claim_are_ignored(client: AsyncClient) -> None:
    token = jwt.encode(
        {"sub": "auth0|sneaky", "roles": ["admin"]},
        "qecoach-test-signing-secret-0123456789",
        algorithm="HS256",
    )
    resp = await client.get("/api/me", headers={"Authorization": f"Bearer {token}"})
    data = resp.json()
    assert data["roles"] == []
    assert data["isAdmin"] is False
