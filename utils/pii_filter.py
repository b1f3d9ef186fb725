"""
PII scrubbing for logs and telemetry.

Session logs carry customer phone numbers (channel identities) and free text
from SMS and voice transcripts. Everything emitted through ``utils.ml_logging``
or exported as span attributes passes through :class:`PIIScrubber` first.

Configuration via environment variables:
- TELEMETRY_PII_SCRUBBING_ENABLED: Enable/disable scrubbing (default: true)
- TELEMETRY_PII_SCRUB_PHONE_NUMBERS: Scrub phone numbers (default: true)
- TELEMETRY_PII_SCRUB_EMAILS: Scrub email addresses (default: true)
- TELEMETRY_PII_SCRUB_CARDS: Scrub card numbers (default: true)
- TELEMETRY_PII_CUSTOM_PATTERNS: JSON array of {"pattern", "replacement"} objects
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from re import Pattern
from typing import Any

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════════
# PATTERNS
# ═══════════════════════════════════════════════════════════════════════════════

# (pattern, replacement, kind)
_PII_PATTERNS: list[tuple[Pattern[str], str, str]] = [
    (
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[EMAIL_REDACTED]",
        "email",
    ),
    (
        re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b"),
        "[CARD_REDACTED]",
        "card",
    ),
    # E.164 and common national formats: +15551234567, (555) 123-4567, 555.123.4567
    (
        re.compile(r"(?<![\w])\+?\d{0,3}[-.\s]?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"),
        "[PHONE_REDACTED]",
        "phone",
    ),
]

# Attribute keys whose values are customer identifiers
IDENTITY_ATTRIBUTE_NAMES = frozenset(
    [
        "channel.identity",
        "channel_identity",
        "customer.phone",
        "customer.email",
        "customer.name",
        "lead.phone",
    ]
)

# Attribute keys whose values are replaced outright
SECRET_ATTRIBUTE_NAMES = frozenset(
    ["password", "secret", "token", "api_key", "apikey", "authorization", "access_key"]
)


@dataclass
class PIIScrubberConfig:
    enabled: bool = True
    scrub_phone_numbers: bool = True
    scrub_emails: bool = True
    scrub_cards: bool = True
    custom_patterns: list[tuple[Pattern[str], str]] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> PIIScrubberConfig:
        def _flag(key: str, default: bool) -> bool:
            return os.getenv(key, str(default)).lower() in ("true", "1", "yes")

        config = cls(
            enabled=_flag("TELEMETRY_PII_SCRUBBING_ENABLED", True),
            scrub_phone_numbers=_flag("TELEMETRY_PII_SCRUB_PHONE_NUMBERS", True),
            scrub_emails=_flag("TELEMETRY_PII_SCRUB_EMAILS", True),
            scrub_cards=_flag("TELEMETRY_PII_SCRUB_CARDS", True),
        )

        raw = os.getenv("TELEMETRY_PII_CUSTOM_PATTERNS")
        if raw:
            try:
                for item in json.loads(raw):
                    if isinstance(item, dict) and "pattern" in item:
                        config.custom_patterns.append(
                            (re.compile(item["pattern"]), item.get("replacement", "[REDACTED]"))
                        )
            except (json.JSONDecodeError, re.error) as exc:
                logger.warning("Ignoring TELEMETRY_PII_CUSTOM_PATTERNS: %s", exc)
        return config


class PIIScrubber:
    """Replaces PII in strings and attribute maps. Stateless after construction."""

    def __init__(self, config: PIIScrubberConfig | None = None):
        self.config = config or PIIScrubberConfig.from_env()
        enabled_kinds = {
            "phone": self.config.scrub_phone_numbers,
            "email": self.config.scrub_emails,
            "card": self.config.scrub_cards,
        }
        self._patterns: list[tuple[Pattern[str], str]] = []
        if self.config.enabled:
            self._patterns = [
                (pattern, replacement)
                for pattern, replacement, kind in _PII_PATTERNS
                if enabled_kinds.get(kind, True)
            ]
            self._patterns.extend(self.config.custom_patterns)

    def scrub_string(self, value: str) -> str:
        if not self._patterns or not value:
            return value
        for pattern, replacement in self._patterns:
            value = pattern.sub(replacement, value)
        return value

    def scrub_attribute_value(self, name: str, value: Any) -> Any:
        if not self.config.enabled:
            return value
        lowered = name.lower()
        if any(secret in lowered for secret in SECRET_ATTRIBUTE_NAMES):
            return "[REDACTED]"
        if lowered in IDENTITY_ATTRIBUTE_NAMES:
            return "[IDENTITY_REDACTED]"
        if isinstance(value, str):
            return self.scrub_string(value)
        return value

    def scrub_dict(self, data: dict[str, Any]) -> dict[str, Any]:
        if not self.config.enabled:
            return data
        return {key: self.scrub_attribute_value(key, value) for key, value in data.items()}


_default_scrubber: PIIScrubber | None = None


def get_pii_scrubber() -> PIIScrubber:
    global _default_scrubber
    if _default_scrubber is None:
        _default_scrubber = PIIScrubber()
    return _default_scrubber


def scrub_pii(value: str) -> str:
    return get_pii_scrubber().scrub_string(value)
