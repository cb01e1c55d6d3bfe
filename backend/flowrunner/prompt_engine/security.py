"""PII detection/redaction and prompt-injection heuristics.

Every pattern maps to a fixed placeholder.  Placeholders contain no digits and
no 32+ character alphanumeric runs, so scrubbing already-scrubbed text is a
no-op.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field

from flowrunner.utils.metrics import MetricsCollector

logger = logging.getLogger("flowrunner.prompt_engine.security")

# Applied in this order: structured identifiers first so that the looser
# digit patterns (phone, postal code) never eat part of a card or UUID.
PII_PATTERNS: dict[str, re.Pattern] = {
    "EMAIL": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "UUID": re.compile(
        r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE
    ),
    "CREDIT_CARD": re.compile(r"\b(?:\d{4}[-\s]?){3}\d{4}\b"),
    "SSN": re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b"),
    "PHONE": re.compile(r"(\+?1[-.\s]?)?\(?([0-9]{3})\)?[-.\s]?([0-9]{3})[-.\s]?([0-9]{4})\b"),
    "API_KEY": re.compile(r"\b[A-Za-z0-9]{32,}\b"),
    "POSTAL_CODE": re.compile(r"\b\d{5}(?:-\d{4})?\b"),
}

PII_PLACEHOLDERS: dict[str, str] = {
    "EMAIL": "[EMAIL_REDACTED]",
    "UUID": "[UUID_REDACTED]",
    "CREDIT_CARD": "[CARD_REDACTED]",
    "SSN": "[SSN_REDACTED]",
    "PHONE": "[PHONE_REDACTED]",
    "API_KEY": "[API_KEY_REDACTED]",
    "POSTAL_CODE": "[ZIP_REDACTED]",
}

INJECTION_PATTERNS: dict[str, re.Pattern] = {
    "HTML_SCRIPT": re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL),
    "HTML_COMMENT": re.compile(r"<!--.*?-->", re.DOTALL),
    "JAVASCRIPT_PROTOCOL": re.compile(r"javascript:", re.IGNORECASE),
    "EVENT_HANDLER": re.compile(r"on\w+\s*=", re.IGNORECASE),
    "TEMPLATE_LITERAL": re.compile(r"\$\{.*?\}"),
    "DOUBLE_BRACKETS": re.compile(r"\[\[.*?\]\]"),
    "SYSTEM_OVERRIDE": re.compile(r"\{\{.*?system.*?\}\}", re.IGNORECASE),
    "IGNORE_INSTRUCTIONS": re.compile(r"ignore\s+previous\s+instructions", re.IGNORECASE),
    "ROLE_OVERRIDE": re.compile(r"you\s+are\s+now", re.IGNORECASE),
    "INSTRUCTION_TERMINATION": re.compile(
        r"(?:stop|end|ignore|forget)\s+(?:instructions|prompt|system)", re.IGNORECASE
    ),
}

MAX_CONTENT_CHARS = 500_000
OVERFLOW_WARNING_CHARS = 300_000


@dataclass
class PIIDetection:
    has_pii: bool
    types: list[str] = field(default_factory=list)


@dataclass
class InjectionRisk:
    type: str
    matches: int


@dataclass
class ContentValidation:
    is_valid: bool
    errors: list[str]
    warnings: list[str]
    sanitized: str
    pii_detected: bool
    injection_risks: list[InjectionRisk]


class PIIScrubber:
    """Pattern-based PII detection and redaction."""

    def __init__(self, metrics: MetricsCollector | None = None):
        self.metrics = metrics or MetricsCollector()

    def detect_pii(self, content: str) -> PIIDetection:
        if not content or not isinstance(content, str):
            return PIIDetection(has_pii=False)
        types = [name for name, pattern in PII_PATTERNS.items() if pattern.search(content)]
        if types:
            logger.debug("PII detected: types=%s length=%d", types, len(content))
        return PIIDetection(has_pii=bool(types), types=types)

    def scrub(self, content: str) -> str:
        if not content or not isinstance(content, str):
            return content
        scrubbed = content
        for name, pattern in PII_PATTERNS.items():
            scrubbed, count = pattern.subn(PII_PLACEHOLDERS[name], scrubbed)
            if count:
                self.metrics.increment_counter("pii_redactions_total", value=count, labels={"type": name})
        return scrubbed

    def scrub_for_logs(self, content: str, max_length: int = 200) -> str:
        """Scrub and clip a value so it is safe to put in a log line."""
        if not content or not isinstance(content, str):
            return ""
        scrubbed = self.scrub(content)
        if len(scrubbed) > max_length:
            return scrubbed[:max_length] + "...[TRUNCATED]"
        return scrubbed

    def detect_injection(self, content: str) -> list[InjectionRisk]:
        if not content or not isinstance(content, str):
            return []
        risks = []
        for name, pattern in INJECTION_PATTERNS.items():
            hits = len(pattern.findall(content))
            if hits:
                risks.append(InjectionRisk(type=name, matches=hits))
        if risks:
            logger.warning("Potential injection patterns detected: %s", [r.type for r in risks])
            self.metrics.increment_counter("injection_attempts_total")
        return risks

    def sanitize_content(self, content: str) -> str:
        """Strip executable markup and collapse runaway whitespace."""
        sanitized = INJECTION_PATTERNS["HTML_SCRIPT"].sub("[SCRIPT_REMOVED]", content)
        sanitized = INJECTION_PATTERNS["HTML_COMMENT"].sub("", sanitized)
        sanitized = INJECTION_PATTERNS["JAVASCRIPT_PROTOCOL"].sub("[JS_PROTOCOL_REMOVED]", sanitized)
        sanitized = re.sub(r"\n{3,}", "\n\n", sanitized)
        sanitized = re.sub(r"[ \t]{3,}", "  ", sanitized).strip()
        if sanitized != content:
            logger.info("Content sanitized: %d -> %d chars", len(content), len(sanitized))
            self.metrics.increment_counter("content_sanitized_total")
        return sanitized

    def validate_content(self, content: str) -> ContentValidation:
        """Check a prompt body before it is stored as a version."""
        if not content or not isinstance(content, str):
            return ContentValidation(
                is_valid=False,
                errors=["Content must be a non-empty string"],
                warnings=[],
                sanitized="",
                pii_detected=False,
                injection_risks=[],
            )

        errors: list[str] = []
        warnings: list[str] = []
        if len(content) > MAX_CONTENT_CHARS:
            errors.append(f"Content exceeds maximum size limit ({MAX_CONTENT_CHARS} chars)")
        elif len(content) > OVERFLOW_WARNING_CHARS:
            warnings.append("Content size approaching limit - will be stored in overflow storage")

        pii = self.detect_pii(content)
        if pii.has_pii:
            warnings.append("PII detected in content - will be scrubbed")

        risks = self.detect_injection(content)
        if risks:
            warnings.append("Potential injection patterns detected")

        if unicodedata.normalize("NFC", content) != content:
            warnings.append("Content contains non-normalized Unicode sequences")

        return ContentValidation(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            sanitized=self.sanitize_content(content),
            pii_detected=pii.has_pii,
            injection_risks=risks,
        )
