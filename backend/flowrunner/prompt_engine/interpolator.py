"""Template interpolator: ``{{dotted.path}}`` expansion with hard limits.

Every ``{{...}}`` placeholder is validated before anything is substituted:
a path outside ``[a-zA-Z0-9_.]``, a path deeper than five segments, or more
than 100 distinct variables rejects the whole template.  Substitution then
runs up to three passes so values that themselves contain placeholders are
expanded; anything still unresolved after the third pass is left as-is.
Substituted values and the final result are sanitized unconditionally.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from flowrunner.errors import InterpolationError

logger = logging.getLogger("flowrunner.prompt_engine.interpolator")

MAX_TEMPLATE_SIZE = 500_000
MAX_VARIABLE_VALUE_SIZE = 50_000
MAX_INTERPOLATED_SIZE = 1_000_000
MAX_VARIABLE_DEPTH = 5
MAX_VARIABLES_PER_TEMPLATE = 100
MAX_RECURSION_DEPTH = 3

VALUE_TRUNCATION_MARKER = "[...TRUNCATED]"

_SAFE_PATH_RE = re.compile(r"^[a-zA-Z0-9_.]+$")
_VARIABLE_RE = re.compile(r"\{\{([a-zA-Z0-9_.]+)\}\}")
_ANY_PLACEHOLDER_RE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)

_SANITIZERS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL), "[SCRIPT_REMOVED]"),
    (re.compile(r"<!--.*?-->", re.DOTALL), ""),
    (re.compile(r"javascript:", re.IGNORECASE), "[JS_PROTOCOL_REMOVED]"),
    (re.compile(r"\bon\w+\s*=", re.IGNORECASE), "[EVENT_HANDLER_REMOVED]"),
)


@dataclass
class InterpolationContext:
    """Values visible to a prompt template.

    Generic dotted paths resolve against :meth:`as_lookup`; the aliases in
    ``_ALIASES`` (``user.id``, ``current.date``, ...) resolve first.
    """

    workflow_id: str = ""
    conversation_id: str = ""
    user_id: str = ""
    node_id: str = ""
    node_type: str = ""
    intent: str = ""
    correlation_id: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    workflow_state: dict[str, Any] = field(default_factory=dict)
    slots: dict[str, Any] = field(default_factory=dict)
    model: dict[str, Any] = field(default_factory=dict)
    extras: dict[str, Any] = field(default_factory=dict)

    def as_lookup(self) -> dict[str, Any]:
        lookup: dict[str, Any] = dict(self.extras)
        lookup.update({
            "workflow_state": self.workflow_state,
            "slots": self.slots,
            "model": self.model,
            "workflow_id": self.workflow_id,
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "intent": self.intent,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp,
        })
        return lookup


def _parse_timestamp(ctx: InterpolationContext) -> datetime:
    try:
        return datetime.fromisoformat(ctx.timestamp)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


_ALIASES: dict[str, Any] = {
    "user.id": lambda c: c.user_id,
    "workflow.id": lambda c: c.workflow_id,
    "conversation.id": lambda c: c.conversation_id,
    "node.id": lambda c: c.node_id,
    "node.type": lambda c: c.node_type,
    "model.name": lambda c: c.model.get("display_name"),
    "model.provider": lambda c: c.model.get("provider"),
    "model.id": lambda c: c.model.get("id"),
    "current.timestamp": lambda c: c.timestamp,
    "current.date": lambda c: _parse_timestamp(c).date().isoformat(),
    "current.time": lambda c: _parse_timestamp(c).strftime("%H:%M:%S"),
    "current.iso": lambda c: c.timestamp,
    "intent": lambda c: c.intent,
    "correlation.id": lambda c: c.correlation_id,
}


def resolve_path(path: str, ctx: dict[str, Any]) -> Any:
    """Resolve a dotted path like 'workflow_state.input.city' against a dict."""
    current: Any = ctx
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part in ("length", "len", "count"):
            current = len(current)
        elif isinstance(current, list) and part.isdigit():
            idx = int(part)
            current = current[idx] if idx < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def sanitize(text: str) -> str:
    for pattern, replacement in _SANITIZERS:
        text = pattern.sub(replacement, text)
    return text


def _lookup(path: str, ctx: InterpolationContext) -> Any:
    alias = _ALIASES.get(path)
    if alias is not None:
        value = alias(ctx)
        if value not in (None, ""):
            return value
    return resolve_path(path, ctx.as_lookup())


def _render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        text = json.dumps(value, default=str)
    else:
        text = str(value)
    if len(text) > MAX_VARIABLE_VALUE_SIZE:
        logger.warning("Variable value truncated: %d chars", len(text))
        text = text[:MAX_VARIABLE_VALUE_SIZE] + VALUE_TRUNCATION_MARKER
    return sanitize(text)


def extract_variables(template: str) -> list[str]:
    """Distinct well-formed variable paths, in order of first appearance."""
    return list(dict.fromkeys(_VARIABLE_RE.findall(template or "")))


def has_variables(template: str) -> bool:
    return bool(_VARIABLE_RE.search(template or ""))


def _template_violations(template: str) -> list[tuple[str, str]]:
    violations: list[tuple[str, str]] = []
    if len(template) > MAX_TEMPLATE_SIZE:
        violations.append(("TEMPLATE_TOO_LARGE", f"Template exceeds maximum size ({MAX_TEMPLATE_SIZE} chars)"))

    paths = list(dict.fromkeys(_ANY_PLACEHOLDER_RE.findall(template)))
    if len(paths) > MAX_VARIABLES_PER_TEMPLATE:
        violations.append(("TOO_MANY_VARIABLES", f"Too many variables ({len(paths)}), max {MAX_VARIABLES_PER_TEMPLATE}"))
    for path in paths:
        if not _SAFE_PATH_RE.match(path):
            violations.append(("UNSAFE_VARIABLE", f"Unsafe variable name: {path!r}"))
        elif len(path.split(".")) > MAX_VARIABLE_DEPTH:
            violations.append(("PATH_TOO_DEEP", f"Variable path too deep: {path} (max depth: {MAX_VARIABLE_DEPTH})"))
    return violations


def validate_template(template: str) -> list[str]:
    """Return human-readable validation errors; empty when the template is safe."""
    return [message for _, message in _template_violations(template)]


def _check_exposed_paths(paths: list[str], seen_paths: set[str]) -> None:
    # Placeholders can surface inside substituted values; limits still hold.
    for path in paths:
        if len(path.split(".")) > MAX_VARIABLE_DEPTH:
            raise InterpolationError(
                "PATH_TOO_DEEP",
                f"Variable path too deep: {path} (max depth: {MAX_VARIABLE_DEPTH})",
                {"path": path, "max_depth": MAX_VARIABLE_DEPTH},
            )
    seen_paths.update(paths)
    if len(seen_paths) > MAX_VARIABLES_PER_TEMPLATE:
        raise InterpolationError(
            "TOO_MANY_VARIABLES",
            f"Too many variables ({len(seen_paths)}), max {MAX_VARIABLES_PER_TEMPLATE}",
            {"count": len(seen_paths)},
        )


def interpolate(template: str, ctx: InterpolationContext) -> str:
    """Expand ``{{path}}`` placeholders in *template*.

    Raises:
        InterpolationError: before any substitution when the template breaks a
            limit (``TEMPLATE_TOO_LARGE``, ``TOO_MANY_VARIABLES``,
            ``UNSAFE_VARIABLE``, ``PATH_TOO_DEEP``); ``PATH_TOO_DEEP`` or
            ``TOO_MANY_VARIABLES`` when a substituted value exposes a placeholder
            past the limits; ``SIZE_LIMIT_EXCEEDED`` when the expanded result
            grows too large.
    """
    if not isinstance(template, str):
        raise InterpolationError("VALIDATION_FAILED", "Template must be a string")

    violations = _template_violations(template)
    if violations:
        code, _ = violations[0]
        errors = [message for _, message in violations]
        raise InterpolationError(
            code,
            f"Template validation failed: {', '.join(errors)}",
            {"errors": errors},
        )

    result = template
    replacements = 0
    seen_paths: set[str] = set()
    for _ in range(MAX_RECURSION_DEPTH):
        paths = extract_variables(result)
        if not paths:
            break
        _check_exposed_paths(paths, seen_paths)

        def _replace(match: re.Match) -> str:
            nonlocal replacements
            replacements += 1
            return _render_value(_lookup(match.group(1), ctx))

        result = _VARIABLE_RE.sub(_replace, result)
        if len(result) > MAX_INTERPOLATED_SIZE:
            raise InterpolationError(
                "SIZE_LIMIT_EXCEEDED",
                f"Interpolated result exceeds maximum size ({MAX_INTERPOLATED_SIZE} chars)",
                {"result_size": len(result), "limit": MAX_INTERPOLATED_SIZE},
            )
    else:
        if _VARIABLE_RE.search(result):
            logger.warning(
                "Max recursion depth %d reached with unresolved variables (correlation_id=%s)",
                MAX_RECURSION_DEPTH, ctx.correlation_id,
            )

    logger.debug(
        "Interpolated template: %d -> %d chars, %d replacements",
        len(template), len(result), replacements,
    )
    return sanitize(result)


@dataclass
class InterpolationPreview:
    variables_found: list[str]
    variable_values: dict[str, Any]
    missing_variables: list[str]

    @property
    def has_all_variables(self) -> bool:
        return not self.missing_variables


def preview_interpolation(template: str, ctx: InterpolationContext) -> InterpolationPreview:
    """Show which variables a template uses and what they would resolve to."""
    found = extract_variables(template)
    values: dict[str, Any] = {}
    missing: list[str] = []
    for path in found:
        value = _lookup(path, ctx)
        values[path] = value
        if value is None:
            missing.append(path)
    return InterpolationPreview(variables_found=found, variable_values=values, missing_variables=missing)
