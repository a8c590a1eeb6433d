"""Structural validation and sanitization of submitted memories."""
from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Pattern

from pydantic import BaseModel, StrictStr
from pydantic import ValidationError as PydanticValidationError

from .config import CJK_CLASS, DEFAULT_CONFIG
from .errors import ValidationError

URL_RE = re.compile(r"https?://[^\s]+")
# Emoticons, pictographs, transport/map, supplemental symbols, dingbats.
EMOJI_RE = re.compile(
    "[\U0001F300-\U0001F5FF\U0001F600-\U0001F64F\U0001F680-\U0001F6FF"
    "\U0001F900-\U0001F9FF\U0001FA70-\U0001FAFF\u2600-\u27BF]"
)
DIGITS_ONLY_RE = re.compile(r"[0-9]+")
SPECIAL_CHAR_RE = re.compile(r"[^a-zA-Z0-9\s" + CJK_CLASS + r"]")
WHITESPACE_RE = re.compile(r"\s+")

BROWSER_UA_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"Mozilla", r"Chrome", r"Safari", r"Firefox", r"Edge", r"Opera")
]
BOT_UA_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"bot", r"crawler", r"spider", r"scraper", r"curl", r"wget", r"python")
]

HTML_ESCAPES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
}
HTML_ESCAPE_TABLE = str.maketrans(HTML_ESCAPES)


@dataclass
class ValidationVerdict:
    is_valid: bool
    reason: Optional[str] = None


VALID = ValidationVerdict(True)


def special_char_ratio(text: str) -> float:
    """Share of characters outside ASCII alphanumerics, whitespace and CJK."""
    if not text:
        return 0.0
    return len(SPECIAL_CHAR_RE.findall(text)) / len(text)


class Validator:
    """Ordered rule engine; the first violated rule decides the verdict."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or DEFAULT_CONFIG
        self.min_length: int = config["min_length"]
        self.max_length: int = config["max_length"]
        self.max_urls: int = config["max_urls"]
        self.spam_url_count: int = config.get("spam_url_count", self.max_urls + 1)
        self.emoji_short_text_length: int = config.get("emoji_short_text_length", 50)
        self.max_emojis: int = config.get("max_emojis", 10)
        self.max_special_char_ratio: float = config.get("max_special_char_ratio", 0.5)
        self.forbidden_res: List[Pattern] = [
            re.compile(p, re.IGNORECASE | re.DOTALL)
            for p in config["forbidden_patterns"]
        ]
        self.spam_structure_res: List[Pattern] = [
            re.compile(p) for p in config["spam_structure_patterns"]
        ]
        self.forbidden_words: List[str] = [
            WHITESPACE_RE.sub("", w.lower()) for w in config["forbidden_words"]
        ]

    def validate(self, text: str) -> ValidationVerdict:
        """Validates a memory against the ordered rule list.

        Rules, first failure wins: empty, length bounds, markup/script
        patterns, spam structure (long character runs, URL floods, gibberish
        runs), forbidden words, URL ceiling, emoji density on short texts,
        digits only, special-character ratio.

        Args:
            text: The raw submitted text.

        Returns:
            A ValidationVerdict carrying exactly one reason when invalid.
        """
        if not text or not text.strip():
            return ValidationVerdict(False, "Memory cannot be empty")
        trimmed = text.strip()

        if len(trimmed) < self.min_length:
            return ValidationVerdict(
                False, f"Memory is too short (minimum {self.min_length} characters)"
            )
        if len(trimmed) > self.max_length:
            return ValidationVerdict(
                False, f"Memory is too long (maximum {self.max_length} characters)"
            )

        if any(p.search(text) for p in self.forbidden_res):
            return ValidationVerdict(False, "Memory contains forbidden patterns")

        urls = URL_RE.findall(text)
        if len(urls) >= self.spam_url_count or any(
            p.search(text) for p in self.spam_structure_res
        ):
            return ValidationVerdict(False, "Memory appears to be spam")

        normalized = WHITESPACE_RE.sub("", text.lower())
        if any(w and w in normalized for w in self.forbidden_words):
            return ValidationVerdict(False, "Memory contains forbidden words")

        if len(urls) > self.max_urls:
            return ValidationVerdict(False, "Too many URLs in memory")

        if (
            len(trimmed) < self.emoji_short_text_length
            and len(EMOJI_RE.findall(text)) > self.max_emojis
        ):
            return ValidationVerdict(False, "Too many emojis for short message")

        if DIGITS_ONLY_RE.fullmatch(trimmed):
            return ValidationVerdict(False, "Memory cannot contain only numbers")

        if special_char_ratio(text) > self.max_special_char_ratio:
            return ValidationVerdict(False, "Too many special characters")

        return VALID


def sanitize(text: str) -> str:
    """HTML-escapes ``& < > " ' /`` and trims.

    Not idempotent: escaping twice double-encodes, so apply exactly once,
    after validation and before persistence.
    """
    return text.translate(HTML_ESCAPE_TABLE).strip()


class MemoryRequest(BaseModel):
    """The write endpoint's JSON body."""

    memory: StrictStr


def validate_request_body(body: Any) -> str:
    """Checks the parsed JSON body and returns the submitted memory.

    Raises:
        ValidationError: If the body is not an object or ``memory`` is not a
            string.
    """
    if not isinstance(body, dict):
        raise ValidationError("Invalid request body")
    try:
        return MemoryRequest.model_validate(body).memory
    except PydanticValidationError:
        raise ValidationError("Memory must be a string")


def is_valid_content_type(content_type: Optional[str]) -> bool:
    return bool(content_type) and "application/json" in content_type


def is_valid_user_agent(user_agent: Optional[str]) -> bool:
    """Rough bot filter: known crawlers and scripts fail, browsers pass."""
    if not user_agent:
        return False
    if any(p.search(user_agent) for p in BOT_UA_PATTERNS):
        return False
    return any(p.search(user_agent) for p in BROWSER_UA_PATTERNS)
