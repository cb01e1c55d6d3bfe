"""Tests for log and telemetry redaction."""

from __future__ import annotations

import pytest

from flowrunner.utils.redaction import REDACTION_PLACEHOLDER, _is_sensitive_key, redact_for_logs


class TestIsSensitiveKey:
    """Tests for sensitive key detection."""

    @pytest.mark.parametrize("key", [
        "password",
        "db_password",
        "PASSWORD",
        "access_token",
        "jwt_token",
        "api_key",
        "apiKey",
        "client_secret",
        "credentials",
        "Authorization",
        "private_key",
    ])
    def test_sensitive(self, key):
        assert _is_sensitive_key(key) is True

    @pytest.mark.parametrize("key", [
        "username",
        "email",
        "tokens_used",
        "nodeType",
        "responseLength",
        "conversationId",
    ])
    def test_not_sensitive(self, key):
        assert _is_sensitive_key(key) is False


class TestRedactForLogs:
    """Tests for redact_for_logs()."""

    def test_redacts_sensitive_values(self):
        result = redact_for_logs({"api_key": "abc", "nodeType": "Router"})
        assert result == {"api_key": REDACTION_PLACEHOLDER, "nodeType": "Router"}

    def test_scrubs_pii_in_strings(self):
        result = redact_for_logs({"note": "mail me at jane@example.com"})
        assert result["note"] == "mail me at [EMAIL_REDACTED]"

    def test_clips_long_strings(self):
        result = redact_for_logs({"message": "hello " * 50}, max_length=10)
        assert result["message"] == "hello hell...[TRUNCATED]"

    def test_nested_structures(self):
        data = {"outer": {"password": "x", "items": [{"secret": "y"}, "plain"]}}
        result = redact_for_logs(data)
        assert result["outer"]["password"] == REDACTION_PLACEHOLDER
        assert result["outer"]["items"][0]["secret"] == REDACTION_PLACEHOLDER
        assert result["outer"]["items"][1] == "plain"

    def test_tuples_become_lists(self):
        assert redact_for_logs(("a", 1)) == ["a", 1]

    def test_primitives_pass_through(self):
        assert redact_for_logs({"n": 3, "ok": True, "none": None}) == {"n": 3, "ok": True, "none": None}

    def test_depth_limit(self):
        result = redact_for_logs({"a": {"b": {"c": "deep"}}}, max_depth=2)
        assert result == {"a": {"b": REDACTION_PLACEHOLDER}}

    def test_input_not_mutated(self):
        data = {"password": "x"}
        redact_for_logs(data)
        assert data == {"password": "x"}
