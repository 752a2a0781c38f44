"""Exception types shared across the engine.

Only infrastructure failures are exceptions. "No match" and "not balanced"
are ordinary result values and never raise.
"""

from enum import Enum


class ErrorCategory(str, Enum):
    """Classification of an outbound reasoning-service failure."""

    BAD_INPUT = "bad_input"
    AUTH = "auth"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    CANCELED = "canceled"
    NETWORK = "network"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_CATEGORIES


RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.RATE_LIMITED,
        ErrorCategory.SERVER_ERROR,
        ErrorCategory.TIMEOUT,
        ErrorCategory.NETWORK,
    }
)

_SUGGESTIONS: dict[ErrorCategory, str] = {
    ErrorCategory.BAD_INPUT: "Check that the images are valid JPEG/PNG files and try again.",
    ErrorCategory.AUTH: "The reasoning service credentials are invalid. Contact the administrator.",
    ErrorCategory.FORBIDDEN: "The reasoning service denied access. Contact the administrator.",
    ErrorCategory.NOT_FOUND: "The configured reasoning model was not found. Check the settings.",
    ErrorCategory.PAYLOAD_TOO_LARGE: "Reduce the image size or send fewer images per request.",
    ErrorCategory.RATE_LIMITED: "The reasoning service is busy. Wait a minute and try again.",
    ErrorCategory.SERVER_ERROR: "The reasoning service is temporarily unavailable. Try again.",
    ErrorCategory.TIMEOUT: "The reasoning service took too long. Try again with fewer images.",
    ErrorCategory.CANCELED: "The request was cancelled before it completed.",
    ErrorCategory.NETWORK: "Could not reach the reasoning service. Check network connectivity.",
    ErrorCategory.UNKNOWN: "An unexpected error occurred. Try again or contact support.",
}


class EngineError(Exception):
    """Base class for engine errors."""


class BackingStoreError(EngineError):
    """A reference data collection could not be read for a tenant."""

    def __init__(self, tenant_id: str, collection: str, cause: Exception | None = None) -> None:
        self.tenant_id = tenant_id
        self.collection = collection
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Failed to load {collection} for tenant '{tenant_id}'{detail}")


class ReasoningServiceError(EngineError):
    """A classified failure of a reasoning-service call.

    Attributes:
        category: Classified error category
        status_code: HTTP status code when the failure carried one
    """

    def __init__(
        self,
        category: ErrorCategory,
        message: str,
        status_code: int | None = None,
    ) -> None:
        self.category = category
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.category.retryable

    def user_message(self) -> str:
        """Actionable suggestion for the category."""
        return _SUGGESTIONS[self.category]


class RetriesExhaustedError(ReasoningServiceError):
    """Every permitted attempt of a retryable call failed."""

    def __init__(self, category: ErrorCategory, message: str, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(category, f"{message} (after {attempts} attempts)")


class OperationCancelledError(EngineError):
    """The caller cancelled (or the deadline fired) while an operation was waiting."""


class ResponseParseError(EngineError):
    """Structured output could not be parsed, even by the degraded fallback."""

    def __init__(self, message: str, raw_text: str = "") -> None:
        self.raw_text = raw_text
        super().__init__(message)
