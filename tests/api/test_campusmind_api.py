"""
End-to-end tests against the CampusMind app.

The lifespan runs inside each TestClient block, so the key store is created
and closed per test. Each test installs its own limiter to start from empty
counters.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from src.api.main import app
from src.core.rate_limiter import WindowRateLimiter
from src.storage import InMemoryStore


@pytest.fixture
def limiter():
    return WindowRateLimiter(cleanup_probability=0.0)


@pytest.fixture
def client(limiter):
    app.state.rate_limiter = limiter
    with TestClient(app) as test_client:
        yield test_client


def test_health_is_never_throttled(client):
    for _ in range(3):
        response = client.get("/health")
        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers

    body = response.json()
    assert body["status"] == "healthy"
    assert body["key_store_backend"] == "memory"


def test_review_schedules_next_interval(client):
    response = client.post(
        "/flashcards/review",
        json={
            "repetitions": 1,
            "ease_factor": 2.5,
            "interval": 1,
            "response": "good",
            "reviewed_at": "2026-03-01T09:30:00",
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["repetitions"] == 2
    assert body["interval"] == 6
    assert body["stage"] == "learning"
    assert body["next_review_at"].startswith("2026-03-07T09:30:00")
    assert response.headers["X-RateLimit-Limit"] == "30"
    assert response.headers["X-RateLimit-Remaining"] == "29"


def test_review_lapse_on_new_card_defaults(client):
    response = client.post("/flashcards/review", json={"response": "again"})

    body = response.json()
    assert body["repetitions"] == 0
    assert body["interval"] == 1
    assert body["ease_factor"] < 2.5


def test_review_rejects_invalid_grade(client):
    response = client.post("/flashcards/review", json={"response": "meh"})
    assert response.status_code == 422


def test_validation_error_still_carries_rate_limit_headers(client, limiter):
    response = client.post("/flashcards/review", json={"response": "meh"})

    assert response.status_code == 422
    assert response.headers["X-RateLimit-Limit"] == "30"
    assert response.headers["X-RateLimit-Remaining"] == "29"
    assert "X-RateLimit-Reset" in response.headers
    assert limiter.get_entry("API.WRITE:testclient:/flashcards/review").count == 1


def test_review_rejects_ease_below_floor(client):
    response = client.post("/flashcards/review", json={"response": "good", "ease_factor": 1.0})
    assert response.status_code == 422


def test_review_throttled_after_write_ceiling(client):
    for _ in range(30):
        assert client.post("/flashcards/review", json={"response": "good"}).status_code == 200

    rejected = client.post("/flashcards/review", json={"response": "good"})

    assert rejected.status_code == 429
    body = rejected.json()
    assert body["statusCode"] == 429
    assert body["error"] == "Too Many Requests"
    assert rejected.headers["Retry-After"] == str(body["retryAfter"])
    assert rejected.headers["X-RateLimit-Remaining"] == "0"


def test_preview_lists_every_grade(client):
    response = client.post("/flashcards/preview", json={"repetitions": 3, "interval": 6})

    assert response.status_code == 200
    body = response.json()
    assert body["stage"] == "reviewing"
    assert set(body["outcomes"]) == {"again", "hard", "good", "easy"}
    assert body["outcomes"]["again"]["interval"] == 1
    assert body["outcomes"]["easy"]["interval"] >= body["outcomes"]["good"]["interval"]
    assert response.headers["X-RateLimit-Limit"] == "100"


def test_routes_counted_separately(client, limiter):
    client.post("/flashcards/review", json={"response": "good"})
    client.post("/flashcards/preview", json={})

    assert limiter.get_entry("API.WRITE:testclient:/flashcards/review").count == 1
    assert limiter.get_entry("API.READ:testclient:/flashcards/preview").count == 1


def test_rate_limit_table_endpoint(client):
    response = client.get("/ops/rate-limits")

    assert response.status_code == 200
    body = response.json()
    assert body["categories"]["AUTH"]["LOGIN"]["max_requests"] == 5
    assert body["presets"]["HEALTH"]["window_ms"] == 1000
    assert body["tier_multipliers"] == {"FREE": 1, "PRO": 3, "ENTERPRISE": 10}


def test_cache_stats_and_pattern_delete(client):
    store = InMemoryStore()
    asyncio.run(store.set("ratelimit:AUTH.LOGIN:1.1.1.1:/login", 1))
    asyncio.run(store.set("ratelimit:AUTH.LOGIN:2.2.2.2:/login", 4))
    asyncio.run(store.set("session:abc", {"user": "u1"}))

    with patch("src.api.routes.ops.get_key_value_store", AsyncMock(return_value=store)):
        stats = client.get("/ops/cache/stats").json()
        deleted = client.delete("/ops/cache", params={"pattern": "ratelimit:AUTH.LOGIN:*"})

    assert stats == {"backend": "memory", "redis_enabled": False, "memory_entries": 3}
    assert deleted.status_code == 200
    assert deleted.json() == {"deleted": 2, "pattern": "ratelimit:AUTH.LOGIN:*"}
    assert deleted.headers["X-RateLimit-Limit"] == "10"
    assert store.keys() == ["session:abc"]


def test_cache_delete_requires_pattern(client):
    assert client.delete("/ops/cache").status_code == 422


def test_metrics_expose_reviews_and_rate_limit_outcomes(client):
    client.post("/flashcards/review", json={"response": "easy"})

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "X-RateLimit-Limit" not in response.headers
    assert 'campusmind_sm2_reviews_total{response="easy"}' in response.text
    assert "# TYPE campusmind_rate_limit_checks_total counter" in response.text
