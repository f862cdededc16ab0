"""Secret redaction for logs, step errors and history entries.

Remote managers echo request details back in error bodies, and the
task console output can contain auth headers. Everything that is logged
or persisted goes through these helpers first.
"""

import re

_SENSITIVE_PATTERNS = frozenset({
    "token", "authorization", "password", "secret", "cookie",
    "contao-manager-auth",
})

_REDACTED = "***REDACTED***"

_SENSITIVE_KEYWORDS = r"token|password|secret|authorization|cookie|contao-manager-auth"
_SENSITIVE_VALUE_PATTERNS = re.compile(
    r"(?i)"
    r"(?:"
    # Authorization: Bearer <token>
    r"Authorization\s*:\s*Bearer\s+\S+"
    r"|"
    # "key": "value"
    r'"(?:' + _SENSITIVE_KEYWORDS + r')"\s*:\s*"[^"]*"'
    r"|"
    # key=value / key: value
    r"(?:" + _SENSITIVE_KEYWORDS + r")\s*[=:]\s*\S+"
    r")",
)


def _is_sensitive_key(key: str) -> bool:
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in _SENSITIVE_PATTERNS)


def redact_for_logging(obj: dict) -> dict:
    """Return a copy of obj with sensitive values replaced.

    Handles nested dicts and lists of dicts. The input is not mutated.
    """
    result = {}
    for key, value in obj.items():
        if _is_sensitive_key(str(key)):
            result[key] = _REDACTED
        elif isinstance(value, dict):
            result[key] = redact_for_logging(value)
        elif isinstance(value, list):
            result[key] = [
                redact_for_logging(item) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


def sanitize_error_message(msg: str | None, max_length: int = 2000) -> str | None:
    """Redact secret-looking fragments and truncate to max_length.

    Args:
        msg: Error message (None passes through).
        max_length: Maximum length of the result.

    Returns:
        Sanitized message, or None.
    """
    if msg is None:
        return None
    sanitized = _SENSITIVE_VALUE_PATTERNS.sub(_REDACTED, msg)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized


def mask_token(token: str | None, visible: int = 4) -> str:
    """Show only the first few characters of a token, e.g. 'abcd…'."""
    if not token:
        return "-"
    if len(token) <= visible:
        return "*" * len(token)
    return f"{token[:visible]}…"
