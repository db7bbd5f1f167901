"""Sensitive-content detection and scrubbing for interaction logs."""

from __future__ import annotations

import re

from taskpilot.audit.models import DataClassification

_PATTERNS = {
    "email": re.compile(r"\b[\w.+-]+@[\w-]+\.[\w.-]+\b"),
    "card": re.compile(r"\b(?:\d[ -]?){13,19}\b"),
    "phone": re.compile(r"(?<!\w)\+?\(?\d{3}\)?[ .-]?\d{3}[ .-]?\d{4}\b"),
    "api_key": re.compile(r"\b(?:sk|pk|api|key|token)[-_][A-Za-z0-9_-]{16,}\b|\bAIza[0-9A-Za-z_-]{35}\b"),
}

REDACTED = "[REDACTED]"


def find_sensitive(text: str) -> list[str]:
    """Return the names of the sensitive patterns present in *text*."""
    return [name for name, pattern in _PATTERNS.items() if pattern.search(text)]


def classify(*texts: str | None) -> tuple[bool, DataClassification]:
    """(contains_sensitive_data, classification) for a set of log texts."""
    if any(find_sensitive(t) for t in texts if t):
        return True, DataClassification.CONFIDENTIAL
    return False, DataClassification.INTERNAL


def redact(text: str | None) -> str | None:
    """Replace every sensitive match in *text* with a placeholder."""
    if not text:
        return text
    # card before phone so long digit runs are consumed whole
    for pattern in _PATTERNS.values():
        text = pattern.sub(REDACTED, text)
    return text
