"""Input sanitization for administrative payloads.

Each ``sanitize_*`` helper returns the cleaned value or raises ``ValueError``
with a user-facing message, so they can be used directly as pydantic field
validators.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from gatekeeper.core.identity import is_plausible_email, normalize_email
from gatekeeper.models.allowlist_entry import ROLE_VALUES

logger = logging.getLogger("gatekeeper.core.sanitization")

EMAIL_MAX_LENGTH = 255
DISPLAY_NAME_MAX_LENGTH = 100

_SUSPICIOUS_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"<script",
        r"javascript:",
        r"vbscript:",
        r"data:",
        r"on\w+\s*=",
        r"eval\s*\(",
        r"expression\s*\(",
        r"url\s*\(",
        r"@import",
        r"@charset",
    )
]

_SQL_INJECTION_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|UNION|SCRIPT)\b",
        r"\b(OR|AND)\s+\d+\s*=\s*\d+",
        r"\b(OR|AND)\s+['\"]\s*=\s*['\"]",
    )
]

_HTML_TAG = re.compile(r"<[^>]*>")


def contains_suspicious_patterns(value: str) -> bool:
    return _matches_any(value, _SUSPICIOUS_PATTERNS)


def contains_sql_injection_patterns(value: str) -> bool:
    return _matches_any(value, _SQL_INJECTION_PATTERNS)


def sanitize_email(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("Email is required")
    if len(cleaned) > EMAIL_MAX_LENGTH:
        raise ValueError(f"Email must be no more than {EMAIL_MAX_LENGTH} characters")
    if contains_suspicious_patterns(cleaned):
        raise ValueError("Email contains suspicious patterns")
    if not is_plausible_email(cleaned):
        raise ValueError("Email must be a valid email address")
    return normalize_email(cleaned)


def sanitize_display_name(value: Optional[str]) -> Optional[str]:
    """Strip markup from a display name; blank names become ``None``."""

    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    if len(cleaned) > DISPLAY_NAME_MAX_LENGTH:
        raise ValueError(f"Display name must be no more than {DISPLAY_NAME_MAX_LENGTH} characters")
    if contains_suspicious_patterns(cleaned):
        raise ValueError("Display name contains suspicious patterns")
    stripped = _HTML_TAG.sub("", cleaned).strip()
    if stripped != cleaned:
        logger.warning("sanitization_html_removed", extra={"field": "display_name"})
    if contains_sql_injection_patterns(stripped):
        raise ValueError("Display name contains potentially malicious content")
    return stripped or None


def sanitize_role(value: str) -> str:
    # Canonical roles come from the schema enum; the legacy "editor" role is not accepted.
    cleaned = value.strip().lower()
    if cleaned not in ROLE_VALUES:
        raise ValueError(f"Role must be one of: {', '.join(ROLE_VALUES)}")
    return cleaned


def _matches_any(value: str, patterns: Iterable[re.Pattern[str]]) -> bool:
    return any(pattern.search(value) for pattern in patterns)
