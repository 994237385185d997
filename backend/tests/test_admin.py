import uuid

from httpx import AsyncClient


async def test_admin_routes_require_admin_role(client: AsyncClient, user_headers) -> None:
    for method, path in (
        ("GET", "/api/admin/billing/overview"),
        ("POST", "/api/admin/billing/topup"),
        ("GET", "/api/admin/metrics"),
    ):
        resp = await client.request(method, path, json={"amount": 5}, headers=user_headers)
        assert resp.status_code == 403, path
        assert resp.json()["ok"] is False


async def test_admin_routes_require_auth(client: AsyncClient) -> None:
    resp = await client.get("/api/admin/billing/overview")
    assert resp.status_code == 401


async def test_overview_without_membership(client: AsyncClient, admin_headers) -> None:
    resp = await client.get("/api/admin/billing/overview", headers=admin_headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["organization"] is None
    assert data["wallet"] is None
    assert data["subscription"] is None
    assert data["memberCount"] == 0
    assert data["ledger"] == []


async def test_overview_after_bootstrap(client: AsyncClient, admin_headers) -> None:
    me = await client.get("/api/me", headers=admin_headers)
    org_id = me.json()["organizationId"]

    resp = await client.get("/api/admin/billing/overview", headers=admin_headers)
    data = resp.json()
    assert data["organization"]["id"] == org_id
    assert data["wallet"]["balance"] == 100
    assert data["wallet"]["currency"] == "credits"
    assert data["subscription"]["planCode"] == "office_50"
    assert data["memberCount"] == 1
    assert data["role"] == "admin"
    assert [row["reason"] for row in data["ledger"]] == ["signup_grant"]


async def test_topup_own_organization(client: AsyncClient, admin_headers) -> None:
    me = await client.get("/api/me", headers=admin_headers)
    org_id = me.json()["organizationId"]

    resp = await client.post(
        "/api/admin/billing/topup",
        json={"amount": 250.9, "note": "pilot extension"},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "organizationId": org_id, "amount": 250, "balance": 350}

    overview = await client.get("/api/admin/billing/overview", headers=admin_headers)
    ledger = overview.json()["ledger"]
    assert ledger[0]["reason"] == "admin_adjust:pilot extension"
    assert ledger[0]["delta"] == 250
    assert sum(row["delta"] for row in ledger) == overview.json()["wallet"]["balance"]


async def test_topup_other_organization(client: AsyncClient, admin_headers, user_headers) -> None:
    other = await client.get("/api/me", headers=user_headers)
    other_org = other.json()["organizationId"]

    resp = await client.post(
        "/api/admin/billing/topup",
        json={"amount": 10, "organizationId": other_org},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["balance"] == 110

    again = await client.get("/api/me", headers=user_headers)
    assert again.json()["balance"] == 110


async def test_topup_amount_bounds(client: AsyncClient, admin_headers) -> None:
    await client.get("/api/me", headers=admin_headers)
    for amount in (0, 0.9, -5, 1_000_001):
        resp = await client.post(
            "/api/admin/billing/topup", json={"amount": amount}, headers=admin_headers
        )
        assert resp.status_code == 400, amount

    resp = await client.post(
        "/api/admin/billing/topup", json={"amount": "lots"}, headers=admin_headers
    )
    assert resp.status_code == 400


async def test_topup_without_own_organization(client: AsyncClient, admin_headers) -> None:
    resp = await client.post("/api/admin/billing/topup", json={"amount": 5}, headers=admin_headers)
    assert resp.status_code == 400


async def test_topup_unknown_organization(client: AsyncClient, admin_headers) -> None:
    resp = await client.post(
        "/api/admin/billing/topup",
        json={"amount": 5, "organizationId": str(uuid.uuid4())},
        headers=admin_headers,
    )
    assert resp.status_code == 404


async def test_metrics_without_redis_are_empty(client: AsyncClient, admin_headers) -> None:
    resp = await client.get("/api/admin/metrics", headers=admin_headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["windowMinutes"] == 60
    assert data["totals"]["total"] == 0
    assert len(data["series"]) == 12
