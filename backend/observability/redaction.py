"""Credential / secrets redaction engine.

Patterns: device credentials, API keys, JWTs, bearer tokens,
Redis URIs with passwords, signed provider URLs.
"""
import re
from typing import List, Tuple

# (pattern, replacement_label)
_PATTERNS: List[Tuple[re.Pattern, str]] = [
    # JWT tokens
    (re.compile(r"eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"), "[REDACTED_JWT]"),
    # Key/value secrets (credential=..., api_key: ..., token=...)
    (re.compile(r"(?:api[_-]?key|credential|token|secret|password)[\s:=]+[\"']?[A-Za-z0-9_\-\.]{10,}[\"']?", re.IGNORECASE), "[REDACTED_SECRET]"),
    # Redis URI with credentials
    (re.compile(r"rediss?://[^\s@/]*:[^\s@/]*@[^\s]+"), "[REDACTED_REDIS_URI]"),
    # Signed provider URLs carry a one-time signature in the query string
    (re.compile(r"wss?://[^\s]+[?&]conversation_signature=[^\s\"']+"), "[REDACTED_SIGNED_URL]"),
    # Generic bearer token
    (re.compile(r"Bearer\s+[A-Za-z0-9_\-\.]+", re.IGNORECASE), "[REDACTED_BEARER]"),
]


def redact(text: str) -> str:
    """Apply all redaction patterns to text."""
    result = text
    for pattern, replacement in _PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def redact_dict(data: dict, sensitive_keys: set | None = None) -> dict:
    """Redact values of sensitive keys in a dictionary."""
    if sensitive_keys is None:
        sensitive_keys = {
            "credential", "token", "secret", "api_key",
            "signed_url", "xi-api-key", "password",
        }
    result = {}
    for k, v in data.items():
        if k.lower() in sensitive_keys:
            result[k] = "[REDACTED]"
        elif isinstance(v, dict):
            result[k] = redact_dict(v, sensitive_keys)
        elif isinstance(v, str):
            result[k] = redact(v)
        else:
            result[k] = v
    return result
