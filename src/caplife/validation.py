"""Shared validation functions for the CLI and API entry points.

Pure functions: no FastAPI or Click dependencies.
"""

from __future__ import annotations

import unicodedata
from typing import Any

_MAX_ACTOR_LENGTH = 128
_MAX_REASON_LENGTH = 2000


def sanitize_actor(value: Any) -> tuple[str, str | None]:
    """Validate and clean an actor name.

    Returns (cleaned_actor, None) on success or ("", error_message) on failure.
    """
    if not isinstance(value, str):
        return ("", "actor must be a string")
    # Reject "\nbad" rather than silently absorbing the newline via strip()
    for ch in value:
        if unicodedata.category(ch).startswith("C"):
            return ("", f"actor must not contain control characters (found U+{ord(ch):04X})")
    cleaned = value.strip()
    if not cleaned:
        return ("", "actor must not be empty")
    if len(cleaned) > _MAX_ACTOR_LENGTH:
        return ("", f"actor must be at most {_MAX_ACTOR_LENGTH} characters")
    return (cleaned, None)


def sanitize_reason(value: Any) -> tuple[str, str | None]:
    """Validate a free-text reason (deprecation, rollback). Newlines are allowed."""
    if not isinstance(value, str):
        return ("", "reason must be a string")
    cleaned = value.strip()
    if not cleaned:
        return ("", "reason must not be empty")
    if len(cleaned) > _MAX_REASON_LENGTH:
        return ("", f"reason must be at most {_MAX_REASON_LENGTH} characters")
    return (cleaned, None)
