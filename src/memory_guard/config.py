"""Default configuration for the memory admission pipeline.

All thresholds, word lists, regex patterns and rate-limit tables live in a
single dictionary so that every component can be built from (and tested
against) an explicit configuration rather than module constants.
"""
from __future__ import annotations
import copy
from typing import Any, Dict

# CJK ranges shared by the validator and the spam scorer
HIRAGANA = "\u3040-\u309F"
KATAKANA = "\u30A0-\u30FF"
KANJI = "\u4E00-\u9FAF"
CJK_CLASS = HIRAGANA + KATAKANA + KANJI

DEFAULT_CONFIG: Dict[str, Any] = {
    "min_length": 3,
    "max_length": 500,
    "forbidden_patterns": [
        r"<script\b[^>]*>",
        r"javascript:",
        r"on\w+\s*=",
        r"<iframe",
        r"<embed",
        r"<object",
        r"eval\(",
        r"expression\(",
        r"<link[^>]*>",
        r"<meta[^>]*>",
    ],
    "spam_structure_patterns": [
        r"(.)\1{9,}",
        r"[^\w\s" + CJK_CLASS + r".,!?、。！？]{20,}",
    ],
    "spam_url_count": 3,
    "forbidden_words": [
        "viagra",
        "casino",
        "出会い系",
        "副業",
    ],
    "max_urls": 2,
    "emoji_short_text_length": 50,
    "max_emojis": 10,
    "max_special_char_ratio": 0.5,
    "spam_threshold": 35,
    "spam_keywords": [
        "buy now",
        "click here",
        "free money",
        "limited offer",
        "earn money fast",
        "work from home",
        "guaranteed income",
        "今すぐ購入",
        "クリックして",
        "無料でお金",
        "限定オファー",
    ],
    "spam_weights": {
        "repeated_chars": 15,
        "repeated_words": 30,
        "uppercase": 20,
        "special_chars": 15,
        "url": 10,
        "short_text_url": 20,
        "multiple_urls": 15,
        "numbers_only": 25,
        "emojis": 20,
        "keyword": 30,
        "char_mix": 10,
    },
    "spam_uppercase_ratio": 0.7,
    "spam_uppercase_min_length": 10,
    "spam_special_char_ratio": 0.3,
    "spam_short_text_length": 30,
    "spam_emoji_short_text_length": 50,
    "spam_max_emojis": 5,
    "spam_char_mix_ratio": 0.7,
    "duplicate_window_seconds": 300,
    "duplicate_similarity_threshold": 0.9,
    "duplicate_max_entries": 1000,
    "rate_limits": {
        "write": {"limit": 5, "window_ms": 60 * 1000},
        "read": {"limit": 30, "window_ms": 60 * 1000},
        "default": {"limit": 10, "window_ms": 60 * 1000},
    },
    "endpoint_classes": {
        "/api/post-memory": "write",
        "/api/get-memories": "read",
    },
    "ip_hourly_limit": 20,
    "ip_window_ms": 60 * 60 * 1000,
    "sweep_interval_seconds": 300,
    "blocked_ips": [],
    "anonymous_user_id": "anonymous",
    "query_limit": 100,
}

REQUIRED_KEYS = [
    "min_length",
    "max_length",
    "forbidden_patterns",
    "spam_structure_patterns",
    "forbidden_words",
    "max_urls",
    "spam_threshold",
    "spam_keywords",
    "spam_weights",
    "duplicate_window_seconds",
    "duplicate_similarity_threshold",
    "rate_limits",
    "endpoint_classes",
    "ip_hourly_limit",
    "ip_window_ms",
]


def validate_config(config: Dict[str, Any]):
    """Validates the configuration dictionary.

    Raises:
        ValueError: If a required key is missing or a rate-limit table has
            no ``default`` entry.
    """
    missing = [k for k in REQUIRED_KEYS if k not in config]
    if missing:
        raise ValueError(f"Config missing keys: {missing}")
    if "default" not in config["rate_limits"]:
        raise ValueError("Config rate_limits must define a 'default' entry")


def make_config(**overrides: Any) -> Dict[str, Any]:
    """Returns a deep copy of DEFAULT_CONFIG with top-level keys overridden."""
    conf = copy.deepcopy(DEFAULT_CONFIG)
    conf.update(overrides)
    return conf
