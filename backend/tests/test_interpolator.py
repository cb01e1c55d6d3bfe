"""Tests for the prompt template interpolator."""

from __future__ import annotations

import pytest

from flowrunner.errors import InterpolationError
from flowrunner.prompt_engine.interpolator import (
    InterpolationContext,
    extract_variables,
    has_variables,
    interpolate,
    preview_interpolation,
    resolve_path,
    sanitize,
    validate_template,
)


@pytest.fixture
def ctx() -> InterpolationContext:
    return InterpolationContext(
        workflow_id="wf1",
        conversation_id="c1",
        user_id="u1",
        node_id="ai",
        node_type="ModelInvoke",
        intent="billing",
        timestamp="2024-05-01T10:30:00+00:00",
        workflow_state={"memory": [{"role": "user", "content": "hi"}], "input": {"city": "Paris"}},
        slots={"city": "Lyon"},
        model={"id": "gpt-4o", "provider": "openai", "display_name": "GPT-4 Omni"},
    )


class TestInterpolate:
    """Tests for interpolate()."""

    def test_aliases(self, ctx):
        assert interpolate("{{user.id}}/{{workflow.id}}/{{node.type}}", ctx) == "u1/wf1/ModelInvoke"

    def test_model_alias(self, ctx):
        assert interpolate("Running on {{model.name}}", ctx) == "Running on GPT-4 Omni"

    def test_date_alias(self, ctx):
        assert interpolate("{{current.date}} {{current.time}}", ctx) == "2024-05-01 10:30:00"

    def test_slot_path(self, ctx):
        assert interpolate("Going to {{slots.city}}", ctx) == "Going to Lyon"

    def test_workflow_state_path(self, ctx):
        assert interpolate("{{workflow_state.input.city}}", ctx) == "Paris"

    def test_list_length(self, ctx):
        assert interpolate("{{workflow_state.memory.length}} turn(s)", ctx) == "1 turn(s)"

    def test_dict_rendered_as_json(self, ctx):
        assert interpolate("{{workflow_state.input}}", ctx) == '{"city": "Paris"}'

    def test_missing_variable_becomes_empty(self, ctx):
        assert interpolate("[{{nothing.here}}]", ctx) == "[]"

    def test_text_without_variables(self, ctx):
        assert interpolate("plain text", ctx) == "plain text"

    def test_three_levels_of_nesting(self, ctx):
        ctx.extras = {"a": "{{b}}", "b": "{{c}}", "c": "done"}
        assert interpolate("{{a}}", ctx) == "done"

    def test_fourth_level_left_unresolved(self, ctx):
        ctx.extras = {"a": "{{b}}", "b": "{{c}}", "c": "{{d}}", "d": "done"}
        assert interpolate("{{a}}", ctx) == "{{d}}"

    def test_values_are_sanitized(self, ctx):
        ctx.extras = {"evil": "<script>alert(1)</script>ok"}
        assert interpolate("{{evil}}", ctx) == "[SCRIPT_REMOVED]ok"

    def test_template_is_sanitized(self, ctx):
        assert interpolate("<!-- hidden -->visible", ctx) == "visible"

    def test_non_string_template(self, ctx):
        with pytest.raises(InterpolationError) as exc:
            interpolate(None, ctx)
        assert exc.value.code == "VALIDATION_FAILED"

    def test_unsafe_variable(self, ctx):
        with pytest.raises(InterpolationError) as exc:
            interpolate("{{ user.id }}", ctx)
        assert exc.value.code == "UNSAFE_VARIABLE"

    def test_path_too_deep(self, ctx):
        with pytest.raises(InterpolationError) as exc:
            interpolate("{{a.b.c.d.e.f}}", ctx)
        assert exc.value.code == "PATH_TOO_DEEP"

    def test_too_many_variables(self, ctx):
        template = " ".join(f"{{{{v{i}}}}}" for i in range(101))
        with pytest.raises(InterpolationError) as exc:
            interpolate(template, ctx)
        assert exc.value.code == "TOO_MANY_VARIABLES"

    def test_rejected_before_substitution(self, ctx):
        with pytest.raises(InterpolationError) as exc:
            interpolate("{{user.id}} {{bad-name}}", ctx)
        assert exc.value.details["errors"]

    def test_exposed_path_too_deep(self, ctx):
        ctx.extras = {"nested": "{{a.b.c.d.e.f}}"}
        with pytest.raises(InterpolationError) as exc:
            interpolate("{{nested}}", ctx)
        assert exc.value.code == "PATH_TOO_DEEP"

    def test_exposed_variables_count_toward_limit(self, ctx):
        ctx.extras = {"many": " ".join(f"{{{{v{i}}}}}" for i in range(100))}
        with pytest.raises(InterpolationError) as exc:
            interpolate("{{many}}", ctx)
        assert exc.value.code == "TOO_MANY_VARIABLES"


class TestHelpers:
    """Tests for the interpolator helper functions."""

    def test_resolve_path_index(self):
        assert resolve_path("items.1", {"items": ["a", "b"]}) == "b"

    def test_resolve_path_out_of_range(self):
        assert resolve_path("items.5", {"items": ["a"]}) is None

    def test_resolve_path_through_scalar(self):
        assert resolve_path("a.b", {"a": "text"}) is None

    def test_sanitize_event_handler(self):
        assert sanitize('<img onerror="x">') == '<img [EVENT_HANDLER_REMOVED]"x">'

    def test_sanitize_js_protocol(self):
        assert sanitize("javascript:alert(1)") == "[JS_PROTOCOL_REMOVED]alert(1)"

    def test_extract_variables_dedupes(self):
        assert extract_variables("{{a}} {{b.c}} {{a}}") == ["a", "b.c"]

    def test_has_variables(self):
        assert has_variables("Hi {{user.name}}")
        assert not has_variables("Hi there")
        assert not has_variables("")

    def test_validate_template(self):
        assert validate_template("{{ok}}") == []
        assert validate_template("{{not ok}}")

    def test_preview(self, ctx):
        preview = preview_interpolation("{{user.id}} {{missing}}", ctx)
        assert preview.variables_found == ["user.id", "missing"]
        assert preview.variable_values["user.id"] == "u1"
        assert preview.missing_variables == ["missing"]
        assert preview.has_all_variables is False
