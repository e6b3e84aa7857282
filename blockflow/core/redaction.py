"""Redaction of run data before it is stored.

A run context carries tokens, passwords and raw form input. Execution
records keep a projection of it in which credential-bearing keys and
token-shaped strings are replaced by ``REDACTED``.
"""

import re
from typing import Any

REDACTED = "[REDACTED]"

SENSITIVE_KEY_PATTERN = re.compile(
    r"token|passw(or)?d|secret|authorization|api[_-]?key|cookie|credential|private[_-]?key|ssn",
    re.IGNORECASE,
)
JWT_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}$")
BEARER_PATTERN = re.compile(r"^\s*(bearer|basic)\s+\S+", re.IGNORECASE)


def is_sensitive_key(key: object) -> bool:
    return isinstance(key, str) and SENSITIVE_KEY_PATTERN.search(key) is not None


def redact(value: Any) -> Any:
    """Return a copy of ``value`` safe to persist.

    Mappings are walked recursively; a sensitive key has its whole value
    replaced. Strings that look like a JWT or an ``Authorization`` header
    are replaced wherever they appear.
    """
    if isinstance(value, dict):
        return {
            key: REDACTED if is_sensitive_key(key) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    if isinstance(value, str) and (JWT_PATTERN.match(value) or BEARER_PATTERN.match(value)):
        return REDACTED
    return value
