"""
Error taxonomy.

The completion client raises a single exception type, ``CompletionError``,
tagged with an ``ErrorKind`` from a closed set. Call sites branch on
``error.kind`` instead of on a class hierarchy.

Domain errors raised by the meal plan layers are plain exceptions.
"""

from enum import Enum
from typing import Any, List, Optional


class ErrorKind(str, Enum):
    """Kind of failure reported by the completion client."""
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    MODEL = "model"
    TIMEOUT = "timeout"
    NETWORK = "network"
    GENERIC = "generic"


# Kinds the client retries with backoff
RETRYABLE_KINDS = frozenset({ErrorKind.MODEL, ErrorKind.TIMEOUT, ErrorKind.NETWORK})

# "error" label of HTTP responses to malformed request bodies
VALIDATION_ERROR = "Validation error"

_DEFAULT_MESSAGES = {
    ErrorKind.AUTH: "Authentication failed. Check your API key.",
    ErrorKind.RATE_LIMIT: "Rate limit exceeded.",
    ErrorKind.VALIDATION: "Invalid request.",
    ErrorKind.MODEL: "Model error.",
    ErrorKind.TIMEOUT: "Request timeout.",
    ErrorKind.NETWORK: "Network error occurred.",
    ErrorKind.GENERIC: "Unknown error occurred",
}


class CompletionError(Exception):
    """
    Failure of a completion client call.

    Attributes:
        kind: Closed classification of the failure
        message: Human readable description
        status_code: HTTP status of the upstream response, if any
        field: Offending request field for VALIDATION errors
        retry_after: Seconds hint sent with RATE_LIMIT responses (not consumed)
        detail: Original error body or exception
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        field: Optional[str] = None,
        retry_after: Optional[float] = None,
        detail: Any = None,
    ):
        self.kind = kind
        self.message = message or _DEFAULT_MESSAGES[kind]
        self.status_code = status_code
        self.field = field
        self.retry_after = retry_after
        self.detail = detail
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def __repr__(self) -> str:
        return f"CompletionError(kind={self.kind.value}, message={self.message!r}, status_code={self.status_code})"


class SchemaValidationError(ValueError):
    """Generated content does not have the shape of a meal plan."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class MealPlanGenerationError(Exception):
    """Meal plan could not be generated after the client's retry budget."""

    def __init__(self, message: str, retry_count: Optional[int] = None, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        self.retry_count = retry_count
        self.kind = kind


class MealPlanServiceError(Exception):
    """Persistence or orchestration failure around meal plans."""


class PlanConflictError(MealPlanServiceError):
    """A generation is already in progress for this user."""


class MealPlanNotFoundError(Exception):
    """User has no generated plan yet."""


class PreferencesNotFoundError(Exception):
    """User has not saved dietary preferences yet."""


class FeedbackServiceError(Exception):
    """Feedback could not be stored."""


class FeedbackNotFoundError(Exception):
    """No feedback with the given id."""


class FeedbackForbiddenError(Exception):
    """Feedback belongs to another user's plan."""
