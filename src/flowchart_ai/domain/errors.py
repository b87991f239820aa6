"""Error taxonomy and exceptions shared across the pipeline."""

from dataclasses import dataclass
from enum import StrEnum


class ErrorKind(StrEnum):
    """Closed set of failure classifications."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    MALFORMED_RESPONSE = "malformed_response"
    VALIDATION = "validation"
    SYSTEM = "system"


class Severity(StrEnum):
    """How loudly a failure should be surfaced."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.NETWORK,
        ErrorKind.TIMEOUT,
        ErrorKind.RATE_LIMIT,
        ErrorKind.MALFORMED_RESPONSE,
    }
)


@dataclass(frozen=True)
class ErrorClassification:
    """Outcome of classifying a single failed attempt."""

    kind: ErrorKind
    retryable: bool
    severity: Severity
    message: str
    cause: BaseException
    status_code: int | None = None


class FlowchartError(Exception):
    """Base class for application errors."""


class RequestValidationError(FlowchartError):
    """Caller input was rejected."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


class SessionCapacityError(FlowchartError):
    """The store already tracks the maximum number of in-flight sessions."""


class MalformedResponseError(FlowchartError):
    """Generated text did not contain a usable diagram."""


class GenerationError(FlowchartError):
    """The generation service answered with a failure status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RenderError(FlowchartError):
    """The renderer could not produce an artifact."""


class RetryExhaustedError(FlowchartError):
    """Raised once an operation stops being retried.

    Carries the classification of the last failure together with the number
    of attempts made, so callers can decide on a fallback without inspecting
    the original exception.
    """

    def __init__(self, classification: ErrorClassification, attempts: int) -> None:
        super().__init__(classification.message)
        self.classification = classification
        self.attempts = attempts

    @property
    def kind(self) -> ErrorKind:
        return self.classification.kind

    @property
    def cause(self) -> BaseException:
        return self.classification.cause

    @property
    def user_message(self) -> str:
        return self.classification.message

    @property
    def retryable(self) -> bool:
        return self.classification.retryable

    @property
    def severity(self) -> Severity:
        return self.classification.severity
