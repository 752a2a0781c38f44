"""Classification of reasoning-service failures into retry categories."""

import httpx
import openai

from services.shared.errors import (
    ErrorCategory,
    OperationCancelledError,
    ReasoningServiceError,
)

_STATUS_CATEGORIES: dict[int, ErrorCategory] = {
    400: ErrorCategory.BAD_INPUT,
    401: ErrorCategory.AUTH,
    403: ErrorCategory.FORBIDDEN,
    404: ErrorCategory.NOT_FOUND,
    408: ErrorCategory.TIMEOUT,
    413: ErrorCategory.PAYLOAD_TOO_LARGE,
    429: ErrorCategory.RATE_LIMITED,
}

_MESSAGE_HINTS: tuple[tuple[tuple[str, ...], ErrorCategory], ...] = (
    (("rate limit", "resource exhausted", "quota", "429"), ErrorCategory.RATE_LIMITED),
    (("timeout", "timed out", "deadline"), ErrorCategory.TIMEOUT),
    (("connection", "network", "unreachable"), ErrorCategory.NETWORK),
    (("unavailable", "internal server error", "bad gateway"), ErrorCategory.SERVER_ERROR),
)


def category_for_status(status_code: int) -> ErrorCategory:
    """Map an HTTP status code to a category."""
    if status_code in _STATUS_CATEGORIES:
        return _STATUS_CATEGORIES[status_code]
    if 500 <= status_code < 600:
        return ErrorCategory.SERVER_ERROR
    if 400 <= status_code < 500:
        return ErrorCategory.BAD_INPUT
    return ErrorCategory.UNKNOWN


def classify_error(exc: BaseException) -> ReasoningServiceError:
    """Wrap any failure in a ReasoningServiceError carrying its category.

    Already-classified errors are returned unchanged.
    """
    if isinstance(exc, ReasoningServiceError):
        return exc
    if isinstance(exc, OperationCancelledError):
        return ReasoningServiceError(ErrorCategory.CANCELED, str(exc))

    status_code: int | None = None
    category: ErrorCategory | None = None

    # APITimeoutError subclasses APIConnectionError, so check it first
    if isinstance(exc, openai.APITimeoutError):
        category = ErrorCategory.TIMEOUT
    elif isinstance(exc, openai.APIConnectionError):
        category = ErrorCategory.NETWORK
    elif isinstance(exc, openai.APIStatusError):
        status_code = exc.status_code
        category = category_for_status(status_code)
    elif isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
        category = category_for_status(status_code)
    elif isinstance(exc, httpx.TimeoutException):
        category = ErrorCategory.TIMEOUT
    elif isinstance(exc, httpx.TransportError):
        category = ErrorCategory.NETWORK
    elif isinstance(exc, TimeoutError):
        category = ErrorCategory.TIMEOUT
    elif isinstance(exc, ConnectionError):
        category = ErrorCategory.NETWORK

    if category is None:
        message = str(exc).lower()
        category = next(
            (cat for hints, cat in _MESSAGE_HINTS if any(h in message for h in hints)),
            ErrorCategory.UNKNOWN,
        )

    return ReasoningServiceError(category, f"{type(exc).__name__}: {exc}", status_code)
