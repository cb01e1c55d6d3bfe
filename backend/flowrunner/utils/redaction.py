"""
Redaction for telemetry events and log payloads.

Two layers are applied: values under sensitive key names are replaced
wholesale, and every remaining string value is PII-scrubbed and clipped so a
progress event never carries raw user content into a log line.
"""
import re
from typing import Any

from flowrunner.prompt_engine.security import PIIScrubber

# Default sensitive field patterns (case-insensitive)
DEFAULT_SENSITIVE_PATTERNS = [
    re.compile(r"^.*password.*$", re.IGNORECASE),
    re.compile(r"^.*token$", re.IGNORECASE),
    re.compile(r"^.*api[_-]?key.*$", re.IGNORECASE),
    re.compile(r"^.*secret.*$", re.IGNORECASE),
    re.compile(r"^.*credential.*$", re.IGNORECASE),
    re.compile(r"^.*authorization.*$", re.IGNORECASE),
    re.compile(r"^.*private[_-]?key.*$", re.IGNORECASE),
]

REDACTION_PLACEHOLDER = "***REDACTED***"


def _is_sensitive_key(key: str) -> bool:
    return any(pattern.match(key) for pattern in DEFAULT_SENSITIVE_PATTERNS)


def redact_for_logs(
    data: Any,
    scrubber: PIIScrubber | None = None,
    max_length: int = 200,
    max_depth: int = 10,
) -> Any:
    """
    Return a copy of *data* that is safe to log.

    Args:
        data: Dict, list, or primitive value
        scrubber: PII scrubber applied to string values; a fresh one is used if omitted
        max_length: Clip length for string values
        max_depth: Maximum recursion depth; deeper values are dropped to a placeholder
    """
    scrubber = scrubber or PIIScrubber()
    if max_depth <= 0:
        return REDACTION_PLACEHOLDER

    if isinstance(data, dict):
        redacted = {}
        for key, value in data.items():
            if _is_sensitive_key(str(key)):
                redacted[key] = REDACTION_PLACEHOLDER
            else:
                redacted[key] = redact_for_logs(value, scrubber, max_length, max_depth - 1)
        return redacted

    elif isinstance(data, (list, tuple)):
        return [redact_for_logs(item, scrubber, max_length, max_depth - 1) for item in data]

    elif isinstance(data, str):
        return scrubber.scrub_for_logs(data, max_length)

    else:
        # int, float, bool, None pass through
        return data
