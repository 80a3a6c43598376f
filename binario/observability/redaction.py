from __future__ import annotations

import re
from typing import Any, Mapping

_SENSITIVE_KEYWORDS = ("authorization", "api_key", "apikey", "api-key", "token", "secret", "password")
_BEARER_PATTERN = re.compile(r"(?i)bearer\s+[a-z0-9_\-\.]+")
_QUERY_KEY_PATTERN = re.compile(r"(?i)([?&]key=)[^&\s]+")
_KEY_LIKE_PATTERN = re.compile(r"\b(sk|sk-or|sk-ant)-[A-Za-z0-9_\-]{8,}")

REDACTED = "<redacted>"


def _is_sensitive_key(key: str) -> bool:
    normalized = key.lower()
    return any(word in normalized for word in _SENSITIVE_KEYWORDS)


def redact_text(value: str) -> str:
    value = _BEARER_PATTERN.sub(f"Bearer {REDACTED}", value)
    value = _QUERY_KEY_PATTERN.sub(rf"\1{REDACTED}", value)
    return _KEY_LIKE_PATTERN.sub(REDACTED, value)


def redact(value: Any, key: str = "") -> Any:
    if isinstance(value, Mapping):
        return {k: redact(v, str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(item, key) for item in value]
    if isinstance(value, str):
        if key and _is_sensitive_key(key):
            return REDACTED if value else value
        return redact_text(value)
    return value
