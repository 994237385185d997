import asyncio

from httpx import AsyncClient

from app.services.metrics import bucket_key, bucket_start, read_chat_metrics, record_chat_metric

NOW = 1_700_000_123.0


def test_bucket_start_floors_to_five_minutes() -> None:
    assert bucket_start(NOW, 300) == 1_700_000_100
    assert bucket_key(1_700_000_100) == "metrics:chat:bucket:1700000100"


async def test_record_and_read_window(redis) -> None:
    await record_chat_metric(redis, now_seconds=NOW, mode="coach", status=200, latency_ms=100)
    await record_chat_metric(redis, now_seconds=NOW, mode="review", status=402, latency_ms=300)
    await record_chat_metric(redis, now_seconds=NOW - 600, mode="coach", status=429, latency_ms=5, rate_limited=True)
    # Outside the 12-bucket window
    await record_chat_metric(redis, now_seconds=NOW - 3 * 3600, mode="coach", status=200, latency_ms=1)

    data = await read_chat_metrics(redis, now_seconds=NOW)
    totals = data["totals"]
    assert data["windowMinutes"] == 60
    assert totals["total"] == 3
    assert totals["coach"] == 2
    assert totals["review"] == 1
    assert totals["status"]["200"] == 1
    assert totals["status"]["402"] == 1
    assert totals["status"]["429"] == 1
    assert totals["rateLimited"] == 1
    assert totals["avgLatencyMs"] == 135

    series = data["series"]
    assert len(series) == 12
    assert series[-1]["bucketSeconds"] == bucket_start(NOW, 300)
    assert series[-1]["total"] == 2
    assert series[-1]["avgLatencyMs"] == 200
    assert series[-3]["status429"] == 1
    assert series[0]["bucketSeconds"] < series[-1]["bucketSeconds"]


async def test_buckets_expire(redis) -> None:
    await record_chat_metric(redis, now_seconds=NOW, mode="coach", status=200, latency_ms=1)
    ttl = await redis.ttl(bucket_key(bucket_start(NOW, 300)))
    assert 0 < ttl <= 7200


async def test_unknown_mode_is_bucketed(redis) -> None:
    await record_chat_metric(redis, now_seconds=NOW, mode="poetry", status=401, latency_ms=1)
    data = await read_chat_metrics(redis, now_seconds=NOW)
    assert data["totals"]["unknown"] == 1
    assert data["totals"]["status"]["401"] == 1


async def test_chat_requests_are_metered(app, client: AsyncClient, redis, admin_headers, user_headers) -> None:
    app.state.redis = redis

    await client.post("/api/chat", json={"message": "hi"}, headers=user_headers)
    await client.post("/api/chat", json={"message": "review", "mode": "review"}, headers=user_headers)
    await client.post("/api/chat", json={"message": "anon"})
    await client.get("/api/chat/history", headers=user_headers)

    # Metric writes are fire-and-forget
    for _ in range(20):
        await asyncio.sleep(0.01)

    resp = await client.get("/api/admin/metrics", headers=admin_headers)
    totals = resp.json()["totals"]
    assert totals["total"] == 3
    assert totals["coach"] == 1
    assert totals["review"] == 1
    assert totals["unknown"] == 1
    assert totals["status"]["200"] == 1
    assert totals["status"]["403"] == 1
    assert totals["status"]["401"] == 1
