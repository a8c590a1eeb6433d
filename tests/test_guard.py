"""Tests for the AdmissionPipeline ordering and decisions."""
import json
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from memory_guard.config import make_config
from memory_guard.errors import (
    AccessDenied,
    DuplicateContent,
    InternalError,
    RateLimitExceeded,
    SpamDetected,
    ValidationError,
)
from memory_guard.guard import AdmissionDecision, AdmissionPipeline, Metrics, Outcome

WRITE = "/api/post-memory"
READ = "/api/get-memories"


@pytest.fixture
def pipeline(clock):
    p = AdmissionPipeline(make_config(), clock=clock, sweep_interval=0)
    yield p
    p.close()


class TestAdmitWrite:
    def test_allowed_carries_sanitized_text(self, pipeline):
        decision = pipeline.admit_write("1.1.1.1", WRITE, ' Tom & "Jerry" ', "req_1")
        assert decision.allowed
        assert decision.outcome is Outcome.ALLOWED
        assert decision.sanitized_text == "Tom &amp; &quot;Jerry&quot;"
        assert decision.request_id == "req_1"
        assert decision.rate.limit == 5
        assert decision.rate.remaining == 4

    def test_generates_request_id(self, pipeline):
        decision = pipeline.admit_write("1.1.1.1", WRITE, "a walk in the park")
        assert decision.request_id.startswith("req_")

    def test_blocked_before_anything_else(self, pipeline):
        pipeline.block("6.6.6.6")
        decision = pipeline.admit_write("6.6.6.6", WRITE, "hello world again")
        assert decision.outcome is Outcome.BLOCKED
        assert pipeline.limiter.peek("ip-6.6.6.6") is None
        assert len(pipeline.duplicates) == 0

    def test_unblock_restores_access(self, pipeline):
        pipeline.block("6.6.6.6")
        pipeline.unblock("6.6.6.6")
        assert pipeline.admit_write("6.6.6.6", WRITE, "hello world again").allowed

    def test_endpoint_limit(self, pipeline, clock):
        texts = [f"memory number {word}" for word in ("one", "two", "three", "four", "five")]
        for text in texts:
            assert pipeline.admit_write("1.1.1.1", WRITE, text).allowed
        clock.advance(10)
        decision = pipeline.admit_write("1.1.1.1", WRITE, "memory number six")
        assert decision.outcome is Outcome.RATE_LIMITED
        assert decision.retry_after == 50
        assert decision.rate.remaining == 0

    def test_ip_hourly_limit(self, clock):
        config = make_config(ip_hourly_limit=2)
        p = AdmissionPipeline(config, clock=clock, sweep_interval=0)
        assert p.admit_write("1.1.1.1", WRITE, "morning coffee on the porch").allowed
        assert p.admit_write("1.1.1.1", WRITE, "evening walk by the river").allowed
        decision = p.admit_write("1.1.1.1", WRITE, "late night stargazing trip")
        assert decision.outcome is Outcome.RATE_LIMITED
        assert decision.detail == "Too many requests from your IP"
        assert 3599 <= decision.retry_after <= 3600
        # The endpoint window was never touched by the rejected request.
        assert p.limiter.peek("1.1.1.1-" + WRITE).count == 2

    def test_invalid_reports_first_reason(self, pipeline):
        decision = pipeline.admit_write("1.1.1.1", WRITE, "12345")
        assert decision.outcome is Outcome.INVALID
        assert decision.detail == "Memory cannot contain only numbers"

    def test_spam_is_not_recorded_as_recent(self, pipeline):
        text = "Click here for free money from the beach house"
        decision = pipeline.admit_write("1.1.1.1", WRITE, text)
        assert decision.outcome is Outcome.SPAM
        assert decision.signals["spam_score"] == 60
        assert len(pipeline.duplicates) == 0

    def test_duplicate(self, pipeline):
        assert pipeline.admit_write("1.1.1.1", WRITE, "snow day in january").allowed
        decision = pipeline.admit_write("2.2.2.2", WRITE, "Snow day in January")
        assert decision.outcome is Outcome.DUPLICATE
        assert decision.signals["similarity"] == 100

    def test_invalid_request_consumes_rate_budget(self, pipeline):
        pipeline.admit_write("1.1.1.1", WRITE, "ab")
        assert pipeline.limiter.peek("1.1.1.1-" + WRITE).count == 1

    def test_unexpected_failure_maps_to_error(self, pipeline, monkeypatch):
        def boom(text):
            raise RuntimeError("scorer exploded")

        monkeypatch.setattr(pipeline.scorer, "score", boom)
        decision = pipeline.admit_write("1.1.1.1", WRITE, "a perfectly fine memory")
        assert decision.outcome is Outcome.ERROR
        assert "exploded" not in decision.detail
        assert len(pipeline.duplicates) == 0

    def test_blocked_ips_from_config(self, clock):
        p = AdmissionPipeline(
            make_config(blocked_ips=["9.9.9.9"]), clock=clock, sweep_interval=0
        )
        assert p.admit_write("9.9.9.9", WRITE, "hello world").outcome is Outcome.BLOCKED


class TestAdmitRead:
    def test_read_limit(self, pipeline):
        for _ in range(30):
            assert pipeline.admit_read("1.1.1.1", READ).allowed
        assert pipeline.admit_read("1.1.1.1", READ).outcome is Outcome.RATE_LIMITED

    def test_read_skips_ip_hourly_window(self, pipeline):
        pipeline.admit_read("1.1.1.1", READ)
        assert pipeline.limiter.peek("ip-1.1.1.1") is None

    def test_blocked_read(self, pipeline):
        pipeline.block("6.6.6.6")
        assert pipeline.admit_read("6.6.6.6", READ).outcome is Outcome.BLOCKED


class TestDecision:
    @pytest.mark.parametrize(
        "outcome, error_cls",
        [
            (Outcome.BLOCKED, AccessDenied),
            (Outcome.RATE_LIMITED, RateLimitExceeded),
            (Outcome.INVALID, ValidationError),
            (Outcome.SPAM, SpamDetected),
            (Outcome.DUPLICATE, DuplicateContent),
            (Outcome.ERROR, InternalError),
        ],
    )
    def test_to_error(self, outcome, error_cls):
        decision = AdmissionDecision(outcome, "req_x", detail="why", retry_after=7)
        err = decision.to_error()
        assert isinstance(err, error_cls)
        assert err.request_id == "req_x"

    def test_rate_limited_error_headers(self, pipeline):
        for _ in range(10):
            pipeline.admit_read("1.1.1.1", "/api/elsewhere")
        err = pipeline.admit_read("1.1.1.1", "/api/elsewhere").to_error()
        assert err.headers["Retry-After"] == "60"
        assert err.headers["X-RateLimit-Limit"] == "10"
        assert err.headers["X-RateLimit-Remaining"] == "0"
        assert err.headers["X-RateLimit-Reset"].endswith("Z")

    def test_to_json(self):
        decision = AdmissionDecision(Outcome.SPAM, "req_x", detail="spam")
        data = json.loads(decision.to_json())
        assert data["outcome"] == "Spam"
        assert data["request_id"] == "req_x"


class TestMetrics:
    def test_pipeline_records_every_decision(self, pipeline):
        pipeline.admit_write("1.1.1.1", WRITE, "a memory of rain")
        pipeline.admit_write("1.1.1.1", WRITE, "12345")
        summary = pipeline.metrics.summary()
        assert summary["total"] == 2
        assert summary["allows"] == 1
        assert summary["rejections"] == 1
        assert summary["outcomes"] == {"Allowed": 1, "Invalid": 1}

    def test_empty_summary(self):
        assert Metrics().summary()["rejection_rate"] == 0

    def test_concurrent_records_are_not_lost(self):
        metrics = Metrics()
        decision = AdmissionDecision(Outcome.ALLOWED, "req_x")

        def hit(_):
            for _ in range(200):
                metrics.record(decision)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(hit, range(8)))
        summary = metrics.summary()
        assert summary["total"] == 1600
        assert summary["outcomes"] == {"Allowed": 1600}


def test_default_clocks():
    p = AdmissionPipeline(make_config(), sweep_interval=0)
    assert p.limiter._clock is time.time
    assert p.duplicates._clock is time.monotonic
