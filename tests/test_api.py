"""Tests for the FastAPI application endpoints."""

import asyncio
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from memory_guard import app as app_module
from memory_guard.app import create_app
from memory_guard.config import make_config
from memory_guard.guard import AdmissionPipeline
from memory_guard.spam import DuplicateResult
from memory_guard.store import MemoryStore, StoreError

ORIGIN = "http://localhost:3000"


def headers(ip="198.51.100.7", **extra):
    h = {"origin": ORIGIN, "x-forwarded-for": ip}
    h.update(extra)
    return h


@pytest.fixture
def pipeline(clock):
    return AdmissionPipeline(make_config(), clock=clock, sweep_interval=0)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def test_client(pipeline, store):
    """Create a test client with isolated pipeline and store."""
    app = create_app(
        config=make_config(),
        store=store,
        pipeline=pipeline,
        production=False,
        allowed_origins=[ORIGIN],
        require_browser_ua=False,
    )
    with TestClient(app) as client:
        yield client


def post(client, memory, **kw):
    return client.post("/api/post-memory", json={"memory": memory}, headers=headers(**kw))


def test_health_endpoint(test_client):
    response = test_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_version_endpoint(test_client):
    response = test_client.get("/version")
    assert response.status_code == 200
    assert "version" in response.json()


def test_security_headers(test_client):
    response = test_client.get("/health")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"


class TestPostMemory:
    def test_saved(self, test_client, store):
        response = post(test_client, "<b>Summer</b> at the lake")
        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "Saved"
        assert body["requestId"].startswith("req_")
        assert body["data"][0]["memory"] == "&lt;b&gt;Summer&lt;&#x2F;b&gt; at the lake"
        assert body["data"][0]["memory_id"] == "anonymous"
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"
        assert response.headers["X-RateLimit-Reset"].endswith("Z")
        assert response.headers["Access-Control-Allow-Origin"] == ORIGIN
        assert len(store.query()) == 1

    def test_wrong_content_type(self, test_client, pipeline):
        response = test_client.post(
            "/api/post-memory",
            content="memory=hello",
            headers=headers(**{"content-type": "text/plain"}),
        )
        assert response.status_code == 415
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert len(pipeline.limiter) == 0

    def test_invalid_json(self, test_client, pipeline):
        response = test_client.post(
            "/api/post-memory",
            content="{not json",
            headers=headers(**{"content-type": "application/json"}),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid JSON"
        assert len(pipeline.limiter) == 0

    def test_memory_must_be_string(self, test_client, pipeline):
        response = test_client.post(
            "/api/post-memory", json={"memory": 12}, headers=headers()
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Memory must be a string"
        assert len(pipeline.limiter) == 0

    def test_validation_reason(self, test_client):
        response = post(test_client, "ab")
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert "minimum" in body["error"]
        assert set(body) == {"error", "code", "timestamp", "requestId"}

    def test_spam(self, test_client):
        response = post(test_client, "Click here for free money from the beach house")
        assert response.status_code == 400
        assert response.json()["code"] == "SPAM_DETECTED"

    def test_duplicate(self, test_client):
        assert post(test_client, "first snow of the winter").status_code == 201
        response = post(test_client, "First snow of the winter", ip="203.0.113.9")
        assert response.status_code == 409
        assert response.json()["code"] == "DUPLICATE_CONTENT"

    def test_sixth_write_is_rate_limited(self, test_client):
        texts = [
            "a red kite over the dunes",
            "morning swim at the old pier",
            "grandpa's garden in june",
            "first day at the new school",
            "watching fireworks from the roof",
        ]
        for text in texts:
            response = post(test_client, text)
            assert response.status_code == 201, response.json()
        response = post(test_client, "an orange kite over the dunes")
        assert response.status_code == 429
        assert response.json()["code"] == "RATE_LIMIT_EXCEEDED"
        retry_after = response.headers["Retry-After"]
        assert retry_after.isdigit()
        assert 0 < int(retry_after) <= 60
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_database_error_is_hidden(self, pipeline):
        class BrokenStore(MemoryStore):
            def insert(self, record):
                raise StoreError("connection refused to db-primary:5432")

        app = create_app(
            config=make_config(), store=BrokenStore(), pipeline=pipeline,
            production=False, allowed_origins=[ORIGIN],
        )
        with TestClient(app) as client:
            response = post(client, "a quiet evening with tea")
        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "DATABASE_ERROR"
        assert "5432" not in body["error"]
        assert body["error"] == "A database error occurred"

    def test_user_agent_policy(self, pipeline, store):
        app = create_app(
            config=make_config(), store=store, pipeline=pipeline,
            production=False, allowed_origins=[ORIGIN], require_browser_ua=True,
        )
        with TestClient(app) as client:
            rejected = post(client, "a walk in the woods", **{"user-agent": "curl/8.0"})
            accepted = post(
                client, "a walk in the woods",
                **{"user-agent": "Mozilla/5.0 (Macintosh) Safari/605.1.15"},
            )
        assert rejected.status_code == 403
        assert accepted.status_code == 201


class TestBlocked:
    def test_blocked_everywhere_on_first_request(self, test_client, pipeline):
        pipeline.block("192.0.2.66")
        write = post(test_client, "hello from a blocked client", ip="192.0.2.66")
        read = test_client.get("/api/get-memories", headers=headers(ip="192.0.2.66"))
        other = test_client.get("/api/anything", headers=headers(ip="192.0.2.66"))
        assert write.status_code == 403
        assert read.status_code == 403
        assert write.json()["code"] == "FORBIDDEN"
        assert other.status_code == 403


class TestOriginPolicy:
    def test_post_requires_origin(self, test_client):
        response = test_client.post(
            "/api/post-memory", json={"memory": "hello there"},
            headers={"x-forwarded-for": "1.1.1.1"},
        )
        assert response.status_code == 403
        assert response.json()["error"] == "Origin header required"

    def test_unknown_origin(self, test_client):
        response = test_client.get(
            "/api/get-memories", headers={"origin": "https://evil.example"}
        )
        assert response.status_code == 403
        assert response.json()["error"] == "CORS policy violation"

    def test_bad_referer(self, test_client):
        response = test_client.post(
            "/api/post-memory", json={"memory": "hello there"},
            headers=headers(referer="https://evil.example/page"),
        )
        assert response.status_code == 403
        assert response.json()["error"] == "Invalid referer"

    def test_allowed_referer(self, test_client):
        response = test_client.post(
            "/api/post-memory", json={"memory": "hello there friend"},
            headers=headers(referer=ORIGIN + "/space"),
        )
        assert response.status_code == 201

    def test_preflight(self, test_client):
        ok = test_client.options("/api/post-memory", headers={"origin": ORIGIN})
        assert ok.status_code == 204
        assert ok.headers["Access-Control-Allow-Origin"] == ORIGIN
        denied = test_client.options("/api/post-memory")
        assert denied.status_code == 403


class TestGetMemories:
    def test_newest_first(self, test_client):
        post(test_client, "the first memory")
        post(test_client, "a completely different second one")
        response = test_client.get("/api/get-memories", headers=headers())
        assert response.status_code == 200
        rows = response.json()
        assert [r["memory"] for r in rows] == [
            "a completely different second one",
            "the first memory",
        ]
        assert response.headers["X-RateLimit-Limit"] == "30"

    def test_read_limit(self, test_client):
        for _ in range(30):
            assert test_client.get("/api/get-memories", headers=headers()).status_code == 200
        response = test_client.get("/api/get-memories", headers=headers())
        assert response.status_code == 429
        assert "Retry-After" in response.headers

    def test_fetch_error(self, pipeline):
        class BrokenStore(MemoryStore):
            def query(self, limit=100):
                raise StoreError("timeout")

        app = create_app(
            config=make_config(), store=BrokenStore(), pipeline=pipeline,
            production=False, allowed_origins=[ORIGIN],
        )
        with TestClient(app) as client:
            response = client.get("/api/get-memories", headers=headers())
        assert response.status_code == 500
        assert response.json()["code"] == "DATABASE_ERROR"


class TestProductionMode:
    def test_generic_messages(self, pipeline, store):
        app = create_app(
            config=make_config(), store=store, pipeline=pipeline,
            production=True, allowed_origins=[ORIGIN],
        )
        with TestClient(app) as client:
            response = post(client, "ab")
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Invalid input provided"
        assert body["requestId"].startswith("req_")


def test_slow_write_does_not_stall_reads(pipeline, store, monkeypatch):
    def slow_check(text):
        time.sleep(0.5)
        return DuplicateResult(False, 0.0)

    monkeypatch.setattr(pipeline.duplicates, "check_duplicate", slow_check)
    app = create_app(
        config=make_config(), store=store, pipeline=pipeline,
        production=False, allowed_origins=[ORIGIN],
    )

    async def scenario():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            async def write():
                response = await client.post(
                    "/api/post-memory", json={"memory": "a slow summer afternoon"},
                    headers=headers(),
                )
                return response.status_code, time.perf_counter()

            async def read():
                await asyncio.sleep(0.1)
                response = await client.get(
                    "/api/get-memories", headers=headers(ip="203.0.113.50")
                )
                return response.status_code, time.perf_counter()

            return await asyncio.gather(write(), read())

    (write_status, write_done), (read_status, read_done) = asyncio.run(scenario())
    assert write_status == 201
    assert read_status == 200
    assert read_done < write_done


def test_unexpected_read_failure_has_error_body(pipeline):
    class FlakyStore(MemoryStore):
        def query(self, limit=100):
            raise RuntimeError("socket closed")

    app = create_app(
        config=make_config(), store=FlakyStore(), pipeline=pipeline,
        production=False, allowed_origins=[ORIGIN],
    )
    with TestClient(app) as client:
        response = client.get("/api/get-memories", headers=headers())
    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/json")
    body = response.json()
    assert body["code"] == "INTERNAL_ERROR"
    assert body["requestId"].startswith("req_")
    assert "socket" not in body["error"]


def test_pipeline_is_built_at_startup(store):
    assert app_module.app.state.pipeline is None
    app = create_app(
        config=make_config(sweep_interval_seconds=0), store=store,
        production=False, allowed_origins=[ORIGIN],
    )
    assert app.state.pipeline is None
    with TestClient(app) as client:
        assert isinstance(app.state.pipeline, AdmissionPipeline)
        assert client.get("/api/get-memories", headers=headers()).status_code == 200
