"""Redis-based chat metrics in fixed time buckets.

Key schema:
  Bucket:  metrics:chat:bucket:{epoch_seconds floored to bucket size}  → HASH
    Fields: total, mode_coach, mode_review, mode_unknown, status_{code},
            latency_sum_ms, latency_count, rate_limited

All counters use atomic Redis operations (HINCRBY). Each write refreshes
the bucket TTL so old buckets disappear on their own. Reads aggregate the
last N buckets for the admin dashboard.
"""

import logging
import math
from typing import Optional

from app.config import get_settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "metrics:chat:bucket"
MODES = ("coach", "review", "unknown")
REPORTED_STATUSES = (200, 400, 401, 402, 403, 429, 500)


def bucket_start(now_seconds: float, bucket_seconds: int) -> int:
    """Floor a timestamp to the start of its bucket."""
    return int(math.floor(now_seconds / bucket_seconds) * bucket_seconds)


def bucket_key(bucket_seconds: int) -> str:
    return f"{KEY_PREFIX}:{bucket_seconds}"


async def record_chat_metric(
    redis,
    *,
    now_seconds: float,
    mode: str,
    status: int,
    latency_ms: float,
    rate_limited: bool = False,
) -> None:
    """Record a single chat request in its time bucket.

    Called by the metrics middleware after every chat request.
    Uses pipelining for efficiency (single round-trip). Never raises.
    """
    if not redis:
        return

    settings = get_settings()
    key = bucket_key(bucket_start(now_seconds, settings.metrics_bucket_seconds))
    mode_field = f"mode_{mode}" if mode in MODES else "mode_unknown"

    try:
        pipe = redis.pipeline()
        pipe.hincrby(key, "total", 1)
        pipe.hincrby(key, mode_field, 1)
        pipe.hincrby(key, f"status_{status}", 1)
        pipe.hincrby(key, "latency_sum_ms", max(0, int(latency_ms)))
        pipe.hincrby(key, "latency_count", 1)
        if rate_limited:
            pipe.hincrby(key, "rate_limited", 1)
        pipe.expire(key, settings.metrics_ttl_seconds)
        await pipe.execute()
    except Exception:
        logger.exception("Failed to record chat metric")


async def read_chat_metrics(redis, *, now_seconds: float) -> dict:
    """Aggregate the last window of buckets into totals and a series.

    Returns:
        Dict with windowMinutes, totals and series (oldest bucket first).
    """
    settings = get_settings()
    size = settings.metrics_bucket_seconds
    current = bucket_start(now_seconds, size)
    buckets = [current - i * size for i in range(settings.metrics_window_buckets)]
    buckets.reverse()

    rows: list[dict] = [{} for _ in buckets]
    if redis:
        try:
            pipe = redis.pipeline()
            for b in buckets:
                pipe.hgetall(bucket_key(b))
            rows = [row or {} for row in await pipe.execute()]
        except Exception:
            logger.exception("Failed to read chat metrics")
            rows = [{} for _ in buckets]

    totals = _empty_totals()
    series = []
    for bucket_seconds, raw in zip(buckets, rows):
        point = _parse_bucket(raw)
        for field, value in point.items():
            totals[field] = totals.get(field, 0) + value

        series.append(
            {
                "bucketSeconds": bucket_seconds,
                "total": point["total"],
                "coach": point["mode_coach"],
                "review": point["mode_review"],
                "status200": point["status_200"],
                "status402": point["status_402"],
                "status403": point["status_403"],
                "status429": point["status_429"],
                "status500": point["status_500"],
                "rateLimited": point["rate_limited"],
                "avgLatencyMs": _avg(point["latency_sum_ms"], point["latency_count"]),
            }
        )

    return {
        "windowMinutes": settings.metrics_window_buckets * size // 60,
        "totals": {
            "total": totals["total"],
            "coach": totals["mode_coach"],
            "review": totals["mode_review"],
            "unknown": totals["mode_unknown"],
            "status": {str(code): totals[f"status_{code}"] for code in REPORTED_STATUSES},
            "rateLimited": totals["rate_limited"],
            "avgLatencyMs": _avg(totals["latency_sum_ms"], totals["latency_count"]),
        },
        "series": series,
    }


def _parse_bucket(raw: dict) -> dict:
    point = _empty_totals()
    for field in point:
        point[field] = _to_int(raw.get(field))
    return point


def _to_int(value: Optional[object]) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _avg(total: int, count: int) -> int:
    return round(total / count) if count > 0 else 0


def _empty_totals() -> dict:
    fields = ["total", "rate_limited", "latency_sum_ms", "latency_count"]
    fields += [f"mode_{m}" for m in MODES]
    fields += [f"status_{code}" for code in REPORTED_STATUSES]
    return {field: 0 for field in fields}
