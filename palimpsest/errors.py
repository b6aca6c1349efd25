"""Error definitions and classification helpers for Palimpsest."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import openai


class ErrorCategory(Enum):
    """Categorises failures so the retry policy can act on them."""

    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILURE = "auth_failure"
    INVALID_RESPONSE = "invalid_response"
    CANCELLED = "cancelled"
    FILE_TOO_LARGE = "file_too_large"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = frozenset(
    {
        ErrorCategory.NETWORK,
        ErrorCategory.RATE_LIMITED,
        ErrorCategory.INVALID_RESPONSE,
        ErrorCategory.UNKNOWN,
    }
)


class PalimpsestError(Exception):
    """Base exception for all custom errors."""


class TranslationError(PalimpsestError):
    """A classified failure of the translation pipeline."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return self.category.retryable


class TranslationCancelled(TranslationError):
    """Raised when a cancellation request stops the pipeline."""

    def __init__(self, message: str = "Translation was cancelled.") -> None:
        super().__init__(message, ErrorCategory.CANCELLED)


class FileTooLargeError(TranslationError):
    """Raised when a document exceeds the token ceiling."""

    def __init__(self, message: str, estimated_tokens: int = 0) -> None:
        super().__init__(message, ErrorCategory.FILE_TOO_LARGE)
        self.estimated_tokens = estimated_tokens


class TranslationProviderConfigurationError(PalimpsestError):
    """Raised when the translation provider is misconfigured."""


class MetadataError(PalimpsestError):
    """Raised when translation metadata cannot be read or written."""


@dataclass
class ErrorRecord:
    """Stores context for a handled error."""

    category: ErrorCategory
    message: str
    attempt: int = 0
    details: Optional[str] = None


_MESSAGE_HINTS = (
    (ErrorCategory.RATE_LIMITED, ("rate limit", "429")),
    (
        ErrorCategory.AUTH_FAILURE,
        ("unauthorized", "401", "invalid api key", "authentication"),
    ),
    (
        ErrorCategory.NETWORK,
        ("network", "econnrefused", "timeout", "enotfound", "connection"),
    ),
    (ErrorCategory.CANCELLED, ("abort", "cancel")),
)

_CATEGORY_MESSAGES = {
    ErrorCategory.RATE_LIMITED: "Rate limit exceeded. Please wait before retrying.",
    ErrorCategory.AUTH_FAILURE: "Authentication failed. Please check your API key.",
    ErrorCategory.NETWORK: "Network error. Please check your connection.",
    ErrorCategory.CANCELLED: "Translation was cancelled.",
}


def _classify_sdk_exception(exc: BaseException) -> Optional[ErrorCategory]:
    if isinstance(exc, openai.RateLimitError):
        return ErrorCategory.RATE_LIMITED
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ErrorCategory.AUTH_FAILURE
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return ErrorCategory.NETWORK
    if isinstance(exc, openai.APIStatusError):
        status = getattr(exc, "status_code", None)
        if status == 429:
            return ErrorCategory.RATE_LIMITED
        if status in {401, 403}:
            return ErrorCategory.AUTH_FAILURE
        if isinstance(status, int) and status >= 500:
            return ErrorCategory.NETWORK
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorCategory.NETWORK
    return None


def classify_error(exc: BaseException) -> TranslationError:
    """Turn any failure into a TranslationError with a category."""

    if isinstance(exc, TranslationError):
        return exc

    category = _classify_sdk_exception(exc)
    message = str(exc) or exc.__class__.__name__
    if category is None:
        lowered = message.lower()
        for candidate, hints in _MESSAGE_HINTS:
            if any(hint in lowered for hint in hints):
                category = candidate
                break
        else:
            category = ErrorCategory.UNKNOWN

    if category is ErrorCategory.CANCELLED:
        cancelled = TranslationCancelled()
        cancelled.cause = exc
        return cancelled

    friendly = _CATEGORY_MESSAGES.get(category)
    text = f"{friendly} ({message})" if friendly else message
    return TranslationError(text, category, cause=exc)
