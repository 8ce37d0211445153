"""Tests for provider error classification."""

from __future__ import annotations

import pytest

from sourcewise.ai.errors import ProviderError, classify_error, format_error_for_user


class TestClassifyError:
    """Tests for mapping raw failures onto categories."""

    @pytest.mark.parametrize(
        ("message", "category"),
        [
            ("Incorrect API key provided", "auth"),
            ("Rate limit reached for requests", "rate_limit"),
            ("Connection refused", "network"),
            ("Request timed out", "network"),
            ("The model `gpt-9` does not exist: model not found", "model"),
            ("This model's maximum context length is 8192 tokens", "content"),
            ("No AI model configured", "config"),
            ("Something odd happened", "unknown"),
        ],
    )
    def test_message_patterns(self, message: str, category: str) -> None:
        assert classify_error(RuntimeError(message)).category == category

    def test_status_code_is_used_when_message_is_opaque(self) -> None:
        assert classify_error(ProviderError("nope", status_code=403)).category == "auth"
        assert classify_error(ProviderError("slow down", status_code=429)).category == "rate_limit"
        assert classify_error(ProviderError("oops", status_code=502)).category == "network"

    def test_status_code_can_come_from_message(self) -> None:
        classified = classify_error("upstream answered 503")

        assert classified.category == "network"
        assert classified.recoverable

    def test_technical_message_is_preserved(self) -> None:
        classified = ProviderError("Connection reset").classified

        assert classified.technical_message == "Connection reset"
        assert classified.suggested_action == "Check your internet connection and try again"


class TestFormatErrorForUser:
    """Tests for the user-facing transcript message."""

    def test_message_and_action_are_joined(self) -> None:
        assert format_error_for_user("Invalid API key") == "API key is invalid or missing. Check your API key in Settings."

    def test_trailing_periods_are_not_doubled(self) -> None:
        text = format_error_for_user(ProviderError("boom", status_code=500))

        assert text == "Server error. Try again later. Wait a moment and try again."
