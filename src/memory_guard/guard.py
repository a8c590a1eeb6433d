"""This module provides the admission pipeline for memory submissions.

It includes the `AdmissionPipeline` class, which runs every write through an
ordered chain of guards (IP block list, IP rate limit, endpoint rate limit,
validation, spam scoring, duplicate detection, sanitization) and returns a
single `AdmissionDecision`. The module also defines the decision and metrics
data structures.
"""

from __future__ import annotations
import hashlib
import json
import logging
import math
import os
import threading
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from prometheus_client import Counter as PromCounter

from .config import DEFAULT_CONFIG, validate_config
from .errors import (
    AccessDenied,
    DuplicateContent,
    GuardError,
    InternalError,
    RateLimitExceeded,
    SpamDetected,
    ValidationError,
    generate_request_id,
    log_event,
    to_iso,
)
from .ratelimit import EndpointGuard, IpGuard, RateLimiter
from .spam import DuplicateDetector, SpamScorer
from .validation import Validator, sanitize

# Prometheus metrics (opt-in via env in app.py)
PROMETHEUS_ENABLED = os.getenv("PROMETHEUS_ENABLED", "0") == "1"
if PROMETHEUS_ENABLED:
    memory_guard_requests_total = PromCounter(
        "memory_guard_requests_total", "Total requests processed", ["endpoint"]
    )
    memory_guard_decisions_total = PromCounter(
        "memory_guard_decisions_total", "Total admission decisions", ["outcome"]
    )


class Outcome(str, Enum):
    ALLOWED = "Allowed"
    RATE_LIMITED = "RateLimited"
    BLOCKED = "Blocked"
    INVALID = "Invalid"
    SPAM = "Spam"
    DUPLICATE = "Duplicate"
    ERROR = "Error"


@dataclass
class RateInfo:
    """The window that applied to a request, for rate-limit headers."""

    limit: int
    remaining: int
    reset_at: float

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": to_iso(self.reset_at),
        }


@dataclass
class AdmissionDecision:
    """Represents the terminal outcome of one request.

    Attributes:
        outcome: Which stage decided, or ALLOWED.
        request_id: Correlation id shared by logs and the client response.
        sanitized_text: The escaped text to persist (ALLOWED writes only).
        retry_after: Whole seconds until the window resets (RATE_LIMITED).
        detail: Human-readable reason for a rejection.
        rate: The rate-limit window that applied, when one was consulted.
        signals: Scores and similarity values, for audit logging.
    """

    outcome: Outcome
    request_id: str
    sanitized_text: Optional[str] = None
    retry_after: Optional[int] = None
    detail: Optional[str] = None
    rate: Optional[RateInfo] = None
    signals: Dict[str, Any] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.outcome is Outcome.ALLOWED

    def to_json(self) -> str:
        """Serializes the decision to a JSON string."""
        return json.dumps(asdict(self), ensure_ascii=False, separators=(",", ":"))

    def to_error(self) -> GuardError:
        """Builds the GuardError matching a rejected decision."""
        detail = self.detail or ""
        if self.outcome is Outcome.BLOCKED:
            return AccessDenied(detail, self.request_id)
        if self.outcome is Outcome.RATE_LIMITED:
            headers = {"Retry-After": str(self.retry_after)}
            if self.rate is not None:
                headers.update(self.rate.headers())
            return RateLimitExceeded(detail, self.request_id, headers=headers)
        if self.outcome is Outcome.INVALID:
            return ValidationError(detail, self.request_id)
        if self.outcome is Outcome.SPAM:
            return SpamDetected(detail, self.request_id)
        if self.outcome is Outcome.DUPLICATE:
            return DuplicateContent(detail, self.request_id)
        return InternalError(detail or "Internal server error", self.request_id)


@dataclass
class Metrics:
    """A class to track admission outcomes."""

    total_requests: int = 0
    allows: int = 0
    rejections: int = 0
    outcomes: Counter = field(default_factory=Counter)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def record(self, decision: AdmissionDecision):
        """Records a decision, updating the metrics."""
        with self._lock:
            self.total_requests += 1
            if decision.allowed:
                self.allows += 1
            else:
                self.rejections += 1
            self.outcomes[decision.outcome.value] += 1
        if PROMETHEUS_ENABLED:
            memory_guard_decisions_total.labels(outcome=decision.outcome.value).inc()

    def summary(self) -> Dict:
        """Returns a summary of the metrics as a dictionary."""
        with self._lock:
            return {
                "total": self.total_requests,
                "allows": self.allows,
                "rejections": self.rejections,
                "rejection_rate": self.rejections / max(1, self.total_requests),
                "outcomes": dict(self.outcomes),
            }


def text_hash(text: str) -> str:
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


class AdmissionPipeline:
    """The ordered chain of checks a request passes before persistence."""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        clock: Optional[Callable[[], float]] = None,
        sweep_interval: Optional[float] = None,
    ):
        """Initializes the pipeline and its guards.

        Args:
            config: Configuration dictionary; defaults to DEFAULT_CONFIG.
            clock: Time source in seconds, shared by every stateful guard.
                By default rate windows use wall time (their reset times are
                reported to clients) and duplicate history uses
                ``time.monotonic``.
            sweep_interval: Seconds between rate-limit sweeps; defaults to
                ``config["sweep_interval_seconds"]``. Pass 0 to disable.
        """
        config = config if config is not None else DEFAULT_CONFIG
        validate_config(config)
        self.config = config
        self.logger = logging.getLogger(self.__class__.__name__)
        self._clock = clock or time.time
        if sweep_interval is None:
            sweep_interval = config.get("sweep_interval_seconds", 300)
        self.limiter = RateLimiter(
            sweep_interval=sweep_interval or None, clock=self._clock
        )
        self.ip_guard = IpGuard(
            self.limiter, config["ip_hourly_limit"], config["ip_window_ms"]
        )
        self.endpoint_guard = EndpointGuard(
            self.limiter, config["rate_limits"], config["endpoint_classes"]
        )
        self.validator = Validator(config)
        self.scorer = SpamScorer(config)
        self.duplicates = DuplicateDetector.from_config(
            config, clock=clock or time.monotonic
        )
        self.metrics = Metrics()
        for ip in config.get("blocked_ips", []):
            self.ip_guard.block(ip)

    def is_blocked(self, client_id: str) -> bool:
        return self.ip_guard.is_blocked(client_id)

    def block(self, client_id: str):
        self.ip_guard.block(client_id)

    def unblock(self, client_id: str):
        self.ip_guard.unblock(client_id)

    def close(self):
        """Stops background work. Call at process shutdown."""
        self.limiter.destroy()

    def _retry_after(self, reset_at: float) -> int:
        return max(1, math.ceil(reset_at - self._clock()))

    def _finish(self, decision: AdmissionDecision, endpoint: str) -> AdmissionDecision:
        self.metrics.record(decision)
        if PROMETHEUS_ENABLED:
            memory_guard_requests_total.labels(endpoint=endpoint).inc()
        return decision

    def _check_access(
        self, client_id: str, endpoint: str, request_id: str, check_ip_rate: bool
    ):
        """Runs the block list and rate-limit stages.

        Returns:
            A rejection decision, or the RateInfo of the endpoint window when
            every stage passed.
        """
        if self.ip_guard.is_blocked(client_id):
            log_event(
                self.logger, logging.INFO, "Blocked client rejected",
                request_id=request_id, endpoint=endpoint,
            )
            return AdmissionDecision(Outcome.BLOCKED, request_id, detail="Access denied")

        if check_ip_rate:
            ip_check = self.ip_guard.check_limit(client_id)
            if not ip_check.allowed:
                log_event(
                    self.logger, logging.INFO, "IP rate limit exceeded",
                    request_id=request_id, endpoint=endpoint,
                )
                return AdmissionDecision(
                    Outcome.RATE_LIMITED,
                    request_id,
                    retry_after=self._retry_after(ip_check.reset_at),
                    detail="Too many requests from your IP",
                    rate=RateInfo(self.ip_guard.limit, 0, ip_check.reset_at),
                )

        ep = self.endpoint_guard.check(client_id, endpoint)
        rate = RateInfo(ep.limit, ep.remaining, ep.reset_at)
        if not ep.success:
            log_event(
                self.logger, logging.INFO, "Endpoint rate limit exceeded",
                request_id=request_id, endpoint=endpoint, limit=ep.limit,
            )
            return AdmissionDecision(
                Outcome.RATE_LIMITED,
                request_id,
                retry_after=self._retry_after(ep.reset_at),
                detail="Too many requests",
                rate=rate,
            )
        return rate

    def admit_read(
        self, client_id: str, endpoint: str, request_id: Optional[str] = None
    ) -> AdmissionDecision:
        """Admits a read request: block list, then the endpoint window."""
        request_id = request_id or generate_request_id()
        try:
            result = self._check_access(client_id, endpoint, request_id, check_ip_rate=False)
        except Exception as e:
            return self._finish(self._internal_error(e, request_id, endpoint), endpoint)
        if isinstance(result, AdmissionDecision):
            return self._finish(result, endpoint)
        return self._finish(AdmissionDecision(Outcome.ALLOWED, request_id, rate=result), endpoint)

    def admit_write(
        self,
        client_id: str,
        endpoint: str,
        text: str,
        request_id: Optional[str] = None,
    ) -> AdmissionDecision:
        """Runs a write through the full pipeline.

        Stages run in a fixed order and the first rejection is terminal:
        later stages, including the duplicate detector recording the text,
        never run for a rejected request.

        Args:
            client_id: The resolved client identifier.
            endpoint: The request path.
            text: The submitted memory, already known to be a string.
            request_id: Correlation id; generated when omitted.

        Returns:
            An AdmissionDecision; ALLOWED decisions carry the sanitized text.
        """
        request_id = request_id or generate_request_id()
        try:
            decision = self._admit_write(client_id, endpoint, text, request_id)
        except Exception as e:
            decision = self._internal_error(e, request_id, endpoint)
        return self._finish(decision, endpoint)

    def _admit_write(
        self, client_id: str, endpoint: str, text: str, request_id: str
    ) -> AdmissionDecision:
        result = self._check_access(client_id, endpoint, request_id, check_ip_rate=True)
        if isinstance(result, AdmissionDecision):
            return result
        rate = result

        verdict = self.validator.validate(text)
        if not verdict.is_valid:
            log_event(
                self.logger, logging.INFO, "Validation failed",
                request_id=request_id, reason=verdict.reason, memory_length=len(text),
            )
            return AdmissionDecision(
                Outcome.INVALID, request_id, detail=verdict.reason, rate=rate
            )

        spam = self.scorer.score(text)
        if spam.is_spam:
            log_event(
                self.logger, logging.WARNING, "Spam detected",
                request_id=request_id, spam_score=spam.score,
                reasons=spam.reasons, memory_hash=text_hash(text),
            )
            return AdmissionDecision(
                Outcome.SPAM,
                request_id,
                detail="Content flagged as spam",
                rate=rate,
                signals={"spam_score": spam.score, "spam_reasons": spam.reasons},
            )

        dup = self.duplicates.check_duplicate(text)
        if dup.is_duplicate:
            log_event(
                self.logger, logging.INFO, "Duplicate content detected",
                request_id=request_id, similarity=dup.similarity,
            )
            return AdmissionDecision(
                Outcome.DUPLICATE,
                request_id,
                detail="Duplicate or similar content detected",
                rate=rate,
                signals={"similarity": dup.similarity},
            )

        return AdmissionDecision(
            Outcome.ALLOWED,
            request_id,
            sanitized_text=sanitize(text),
            rate=rate,
            signals={"spam_score": spam.score},
        )

    def _internal_error(
        self, exc: Exception, request_id: str, endpoint: str
    ) -> AdmissionDecision:
        self.logger.exception(
            json.dumps(
                {"message": "Admission pipeline failed", "request_id": request_id,
                 "endpoint": endpoint, "error": repr(exc)}
            )
        )
        return AdmissionDecision(
            Outcome.ERROR, request_id, detail="Internal server error"
        )
