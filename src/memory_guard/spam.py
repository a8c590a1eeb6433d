"""Heuristic spam scoring and near-duplicate detection."""
from __future__ import annotations
import math
import re
import threading
import time
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import CJK_CLASS, DEFAULT_CONFIG
from .validation import EMOJI_RE, URL_RE, special_char_ratio

REPEATED_CHAR_RE = re.compile(r"(.)\1{4,}", re.DOTALL)
# A run of one or more words (starting with a 3+ char token) repeated at
# least three times back to back, e.g. "buy now buy now buy now".
REPEATED_WORDS_RE = re.compile(
    r"\b(\w{3,}(?:\s+\w+){0,4}?)(?:\s+\1\b){2,}", re.IGNORECASE
)
UPPERCASE_RE = re.compile(r"[A-Z]")
DIGITS_ONLY_RE = re.compile(r"[0-9]+")
FULL_WIDTH_RE = re.compile("[\u3000-\u303F\uFF00-\uFFEF" + CJK_CLASS + "]")
HALF_WIDTH_RE = re.compile(r"[a-zA-Z0-9]")


@dataclass
class SpamVerdict:
    """Outcome of spam scoring.

    Attributes:
        score: Sum of the points added by every heuristic that fired.
        reasons: One entry per triggered rule, in evaluation order. Meant
            for audit logs, not for branching.
        is_spam: ``score >= threshold``.
    """

    score: int = 0
    reasons: List[str] = field(default_factory=list)
    is_spam: bool = False


class SpamScorer:
    """Additive heuristic scorer over configuration data."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or DEFAULT_CONFIG
        self.threshold: int = config["spam_threshold"]
        self.weights: Dict[str, int] = dict(config["spam_weights"])
        self.keywords: List[str] = list(
            dict.fromkeys(k.lower() for k in config["spam_keywords"])
        )
        self.uppercase_ratio = config.get("spam_uppercase_ratio", 0.7)
        self.uppercase_min_length = config.get("spam_uppercase_min_length", 10)
        self.special_ratio = config.get("spam_special_char_ratio", 0.3)
        self.short_text_length = config.get("spam_short_text_length", 30)
        self.emoji_text_length = config.get("spam_emoji_short_text_length", 50)
        self.max_emojis = config.get("spam_max_emojis", 5)
        self.char_mix_ratio = config.get("spam_char_mix_ratio", 0.7)

    def score(self, text: str) -> SpamVerdict:
        """Scores ``text``; every heuristic is independent and may fire."""
        w = self.weights
        score = 0
        reasons: List[str] = []

        runs = REPEATED_CHAR_RE.findall(text)
        if runs:
            score += len(runs) * w["repeated_chars"]
            reasons.append("Repeated characters detected")

        repeats = REPEATED_WORDS_RE.findall(text)
        if repeats:
            score += len(repeats) * w["repeated_words"]
            reasons.append("Repeated word pattern detected")

        if text:
            upper = len(UPPERCASE_RE.findall(text)) / len(text)
            if upper > self.uppercase_ratio and len(text) > self.uppercase_min_length:
                score += w["uppercase"]
                reasons.append("Excessive uppercase")

        if special_char_ratio(text) > self.special_ratio:
            score += w["special_chars"]
            reasons.append("Too many special characters")

        urls = URL_RE.findall(text)
        if urls:
            score += len(urls) * w["url"]
            reasons.append("URL detected")
            if len(URL_RE.sub("", text).strip()) < self.short_text_length:
                score += w["short_text_url"]
                reasons.append("Short text with URL")
            if len(urls) > 2:
                score += len(urls) * w["multiple_urls"]
                reasons.append("Multiple URLs detected")

        if DIGITS_ONLY_RE.fullmatch(text.strip()):
            score += w["numbers_only"]
            reasons.append("Numbers only")

        if len(text) < self.emoji_text_length and len(EMOJI_RE.findall(text)) > self.max_emojis:
            score += w["emojis"]
            reasons.append("Excessive emojis")

        lowered = text.lower()
        for word in self.keywords:
            if word in lowered:
                score += w["keyword"]
                reasons.append(f"Spam word detected: {word}")

        full = len(FULL_WIDTH_RE.findall(text))
        half = len(HALF_WIDTH_RE.findall(text))
        if full and half and min(full, half) / max(full, half) > self.char_mix_ratio:
            score += w["char_mix"]
            reasons.append("Unusual character mix")

        return SpamVerdict(score=score, reasons=reasons, is_spam=score >= self.threshold)


def levenshtein_distance(a: str, b: str, max_distance: Optional[int] = None) -> int:
    """Unit-cost edit distance (substitution, insertion, deletion).

    With ``max_distance`` only the diagonal band of that width is computed,
    and ``max_distance + 1`` is returned as soon as the distance is known to
    exceed it.
    """
    if len(a) < len(b):
        a, b = b, a
    k = len(a) if max_distance is None else max_distance
    cap = k + 1
    if len(a) - len(b) > k:
        return cap
    previous = [min(j, cap) for j in range(len(b) + 1)]
    for i, ca in enumerate(a, start=1):
        current = [cap] * (len(b) + 1)
        current[0] = min(i, cap)
        for j in range(max(1, i - k), min(len(b), i + k) + 1):
            if ca == b[j - 1]:
                current[j] = previous[j - 1]
            else:
                current[j] = min(
                    cap, 1 + min(previous[j - 1], previous[j], current[j - 1])
                )
        if min(current) >= cap:
            return cap
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """``1 - distance / max_length``; two empty strings are identical."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1 - levenshtein_distance(a, b) / longest


@dataclass
class DuplicateResult:
    is_duplicate: bool
    similarity: float


def _count_gap(a: Counter, b: Counter) -> int:
    """Lower bound on the edit distance from character counts alone."""
    return max(sum((a - b).values()), sum((b - a).values()))


class DuplicateDetector:
    """Remembers recently accepted texts to reject near-duplicates.

    Entries older than ``window_seconds`` are purged before every lookup, so
    the same text is accepted again once the window has passed. The map is
    also capped at ``max_entries``, evicting the oldest first.

    The clock must not step backwards; the default is ``time.monotonic``.
    """

    def __init__(
        self,
        window_seconds: float = 300,
        threshold: float = 0.9,
        max_entries: Optional[int] = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.threshold = threshold
        self.max_entries = max_entries
        self._clock = clock
        self._recent: "OrderedDict[str, Tuple[float, Counter]]" = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def from_config(
        cls, config: Dict[str, Any], clock: Callable[[], float] = time.monotonic
    ):
        return cls(
            window_seconds=config["duplicate_window_seconds"],
            threshold=config["duplicate_similarity_threshold"],
            max_entries=config.get("duplicate_max_entries"),
            clock=clock,
        )

    def _purge(self, now: float):
        # Insertion order is also age order, so stop at the first fresh entry.
        while self._recent:
            text, (seen, _) = next(iter(self._recent.items()))
            if now - seen <= self.window_seconds:
                break
            del self._recent[text]

    def _similarity_above_threshold(
        self, text: str, counts: Counter, existing: str, existing_counts: Counter
    ) -> Optional[float]:
        longest = max(len(text), len(existing))
        # similarity > threshold  <=>  distance < bound
        bound = (1 - self.threshold) * longest
        if abs(len(text) - len(existing)) >= bound:
            return None
        if _count_gap(counts, existing_counts) >= bound:
            return None
        distance = levenshtein_distance(text, existing, max_distance=math.ceil(bound))
        sim = 1 - distance / longest
        return sim if sim > self.threshold else None

    def check_duplicate(self, text: str) -> DuplicateResult:
        """Checks ``text`` against recent submissions, recording it if new.

        Entries that cannot reach the threshold, judged by length or by
        character counts, are skipped without computing the edit distance.

        Returns:
            ``DuplicateResult(True, 100)`` for an exact normalized match,
            ``DuplicateResult(True, similarity * 100)`` when the edit-distance
            similarity to a retained entry exceeds the threshold, else
            ``DuplicateResult(False, 0)`` after recording the text.
        """
        normalized = text.lower().strip()
        counts = Counter(normalized)
        with self._lock:
            now = self._clock()
            self._purge(now)
            if normalized in self._recent:
                return DuplicateResult(True, 100.0)
            for existing, (_, existing_counts) in self._recent.items():
                sim = self._similarity_above_threshold(
                    normalized, counts, existing, existing_counts
                )
                if sim is not None:
                    return DuplicateResult(True, sim * 100)
            self._recent[normalized] = (now, counts)
            if self.max_entries is not None:
                while len(self._recent) > self.max_entries:
                    self._recent.popitem(last=False)
        return DuplicateResult(False, 0.0)

    def clear(self):
        with self._lock:
            self._recent.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._recent)
