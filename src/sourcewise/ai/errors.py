"""Classification of model/provider failures into user-facing messages."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Pattern, Sequence

ErrorCategory = Literal["auth", "network", "rate_limit", "model", "content", "config", "unknown"]


@dataclass(slots=True, frozen=True)
class ClassifiedError:
    """User-facing interpretation of a raw failure."""

    category: ErrorCategory
    user_message: str
    technical_message: str
    recoverable: bool
    suggested_action: str | None = None


class ProviderError(RuntimeError):
    """Opening or consuming the model stream failed.

    Turns that hit it fall back to the response cache when an entry exists.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def classified(self) -> ClassifiedError:
        return classify_error(self)


@dataclass(slots=True, frozen=True)
class _ErrorPattern:
    patterns: Sequence[Pattern[str]]
    category: ErrorCategory
    user_message: str
    recoverable: bool
    suggested_action: str | None


def _compile(*expressions: str, flags: int = re.IGNORECASE) -> tuple[Pattern[str], ...]:
    return tuple(re.compile(expression, flags) for expression in expressions)


_ERROR_PATTERNS: tuple[_ErrorPattern, ...] = (
    _ErrorPattern(
        _compile(r"api.?key", r"authentication", r"unauthorized", r"401", r"invalid.*key", r"invalid.*token"),
        "auth",
        "API key is invalid or missing",
        False,
        "Check your API key in Settings",
    ),
    _ErrorPattern(
        _compile(r"rate.?limit", r"too.?many.?requests", r"429", r"quota", r"exceeded"),
        "rate_limit",
        "Too many requests. Please wait a moment.",
        True,
        "Wait a few seconds and try again",
    ),
    _ErrorPattern(
        _compile(
            r"network",
            r"connection",
            r"offline",
            r"enotfound",
            r"etimedout",
            r"timed?\s?out",
            r"fetch.*failed",
        ),
        "network",
        "Connection error. Check your internet.",
        True,
        "Check your internet connection and try again",
    ),
    _ErrorPattern(
        _compile(r"model.*not.*found", r"model.*not.*available", r"invalid.*model", r"unknown.*model"),
        "model",
        "The selected AI model is not available",
        False,
        "Try a different model in Settings",
    ),
    _ErrorPattern(
        _compile(r"context.*length", r"too.*long", r"maximum.*token", r"content.*large", r"payload.*large"),
        "content",
        "Content is too long for the AI model",
        False,
        "Try removing some sources or using shorter content",
    ),
    _ErrorPattern(
        _compile(r"no.*model.*configured", r"no.*ai.*configured", r"please.*configure", r"not.*configured"),
        "config",
        "AI is not configured",
        False,
        "Add an AI profile in Settings",
    ),
)

_STATUS_RE = re.compile(r"\b([45]\d{2})\b")


def classify_error(error: BaseException | str) -> ClassifiedError:
    """Map a raw error onto a category with a user message and suggested action."""

    technical = str(error)
    for entry in _ERROR_PATTERNS:
        if any(pattern.search(technical) for pattern in entry.patterns):
            return ClassifiedError(
                category=entry.category,
                user_message=entry.user_message,
                technical_message=technical,
                recoverable=entry.recoverable,
                suggested_action=entry.suggested_action,
            )

    status = getattr(error, "status_code", None)
    if status is None:
        match = _STATUS_RE.search(technical)
        status = int(match.group(1)) if match else None
    if status in (401, 403):
        return ClassifiedError("auth", "Authentication failed", technical, False, "Check your API key in Settings")
    if status == 429:
        return ClassifiedError("rate_limit", "Rate limited. Please wait.", technical, True, "Wait a moment and try again")
    if status is not None and status >= 500:
        return ClassifiedError("network", "Server error. Try again later.", technical, True, "Wait a moment and try again")

    return ClassifiedError("unknown", "An unexpected error occurred", technical, True, "Please try again")


def format_error_for_user(error: BaseException | str) -> str:
    """Render ``"<message>. <action>."`` for display in the chat transcript."""

    classified = classify_error(error)
    message = classified.user_message
    if classified.suggested_action:
        message = f"{message.rstrip('.')}. {classified.suggested_action.rstrip('.')}."
    return message


__all__ = [
    "ClassifiedError",
    "ErrorCategory",
    "ProviderError",
    "classify_error",
    "format_error_for_user",
]
