"""Retry with exponential backoff, error classification and fallbacks."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TypeVar

import httpx
import openai

from flowchart_ai.domain.errors import (
    RETRYABLE_KINDS,
    ErrorClassification,
    ErrorKind,
    GenerationError,
    MalformedResponseError,
    RequestValidationError,
    RetryExhaustedError,
    Severity,
)

_logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "Network connection failed, please check it and retry",
    ErrorKind.TIMEOUT: "The AI service timed out, please retry later",
    ErrorKind.AUTH: "AI service authentication failed, please check the API key",
    ErrorKind.RATE_LIMIT: "Too many requests to the AI service, please retry later",
    ErrorKind.MALFORMED_RESPONSE: "The AI service is temporarily unavailable",
    ErrorKind.VALIDATION: "Invalid input, please check the request",
    ErrorKind.SYSTEM: "Internal error, please contact the administrator",
}

_SEVERITIES: dict[ErrorKind, Severity] = {
    ErrorKind.NETWORK: Severity.MEDIUM,
    ErrorKind.TIMEOUT: Severity.MEDIUM,
    ErrorKind.AUTH: Severity.HIGH,
    ErrorKind.RATE_LIMIT: Severity.LOW,
    ErrorKind.MALFORMED_RESPONSE: Severity.LOW,
    ErrorKind.VALIDATION: Severity.MEDIUM,
    ErrorKind.SYSTEM: Severity.HIGH,
}

_FALLBACK_KINDS = frozenset({ErrorKind.AUTH, ErrorKind.RATE_LIMIT})

_TIMEOUT_ERRORS = (openai.APITimeoutError, httpx.TimeoutException, TimeoutError)
_NETWORK_ERRORS = (openai.APIConnectionError, httpx.TransportError, ConnectionError)

FALLBACK_DIAGRAM = """flowchart TD
    A([Start]) --> B[Analyze requirement]
    B --> C{Permission check}
    C -->|pass| D[Handle business logic]
    C -->|fail| E[Handle error]
    D --> F[Produce result]
    E --> G([End])
    F --> G

    %% styles
    style A fill:#e1f5fe,stroke:#01579b,stroke-width:2px
    style G fill:#f3e5f5,stroke:#4a148c,stroke-width:2px
    style D fill:#e8f5e8,stroke:#2e7d32,stroke-width:2px
    style C fill:#fff3e0,stroke:#ef6c00,stroke-width:2px
    style E fill:#ffebee,stroke:#d32f2f,stroke-width:2px"""


@dataclass(frozen=True)
class RetryConfig:
    """Backoff policy for a retried operation."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter_range: float = 0.1


@dataclass
class RetryStats:
    """Counters describing failures seen by the executor."""

    total: int = 0
    by_kind: dict[str, int] = field(default_factory=dict)
    retry_attempts: int = 0
    success_after_retry: int = 0

    def as_dict(self) -> dict[str, object]:
        rate = (
            self.success_after_retry / self.retry_attempts * 100
            if self.retry_attempts
            else 0.0
        )
        return {
            "total": self.total,
            "by_kind": dict(self.by_kind),
            "retry_attempts": self.retry_attempts,
            "success_after_retry": self.success_after_retry,
            "retry_success_rate": f"{rate:.2f}%",
        }


@dataclass
class RetryExecutor:
    """Run fallible async operations with classification-driven retries."""

    config: RetryConfig = field(default_factory=RetryConfig)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    random_source: Callable[[], float] = random.random
    stats: RetryStats = field(default_factory=RetryStats)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        config: RetryConfig | None = None,
        *,
        action: str = "operation",
        on_retry: Callable[[int, ErrorClassification], None] | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds or stops being retryable.

        Raises ``RetryExhaustedError`` carrying the last classification and
        the number of attempts once retries are exhausted or the failure is
        not retryable.
        """
        policy = config or self.config
        attempt = 0
        while True:
            try:
                result = await operation()
            except Exception as exc:  # noqa: BLE001
                attempt += 1
                classification = classify_error(exc)
                self._record(classification)
                _logger.warning(
                    "%s failed (attempt %s/%s, kind=%s): %s",
                    action,
                    attempt,
                    policy.max_retries + 1,
                    classification.kind.value,
                    exc,
                )
                if attempt > policy.max_retries or not classification.retryable:
                    raise RetryExhaustedError(classification, attempt) from exc
                self.stats.retry_attempts += 1
                if on_retry is not None:
                    on_retry(attempt, classification)
                delay = self.compute_delay(attempt - 1, policy)
                await self.sleep(delay)
                continue
            if attempt > 0:
                self.stats.success_after_retry += 1
                _logger.info("%s succeeded after %s retries", action, attempt)
            return result

    def compute_delay(self, attempt: int, config: RetryConfig | None = None) -> float:
        """Exponential backoff capped at max_delay with symmetric jitter."""
        policy = config or self.config
        delay = min(
            policy.base_delay * policy.backoff_multiplier**attempt, policy.max_delay
        )
        jitter = delay * policy.jitter_range * (self.random_source() * 2 - 1)
        return max(delay + jitter, 0.0)

    def reset_stats(self) -> None:
        self.stats = RetryStats()

    def _record(self, classification: ErrorClassification) -> None:
        self.stats.total += 1
        kind = classification.kind.value
        self.stats.by_kind[kind] = self.stats.by_kind.get(kind, 0) + 1


def classify_error(exc: BaseException) -> ErrorClassification:
    """Map any exception onto the closed error taxonomy."""
    if isinstance(exc, RetryExhaustedError):
        return exc.classification
    status_code = _status_code(exc)
    kind = _kind_for(exc, status_code)
    return ErrorClassification(
        kind=kind,
        retryable=kind in RETRYABLE_KINDS,
        severity=_SEVERITIES[kind],
        message=user_message(kind),
        cause=exc,
        status_code=status_code,
    )


def user_message(kind: ErrorKind) -> str:
    """User-facing text for a classification kind."""
    return USER_MESSAGES[kind]


def should_use_fallback(kind: ErrorKind) -> bool:
    """Whether a caller should degrade to a canned payload for this kind."""
    return kind in _FALLBACK_KINDS


def create_fallback(
    operation_name: str, context: dict[str, object] | None = None
) -> dict[str, object]:
    """Return a canned substitute payload for a known operation."""
    _logger.warning("Using fallback payload for %s", operation_name)
    if operation_name == "ai_analysis":
        return {
            "raw_response": (
                "The AI service is temporarily unavailable, a basic flowchart "
                "was generated instead. Retry later for a full analysis."
            ),
            "diagram_source": FALLBACK_DIAGRAM,
            "validation": {
                "is_valid": True,
                "errors": [],
                "warnings": ["Basic flowchart generated by the fallback path"],
            },
            "metadata": {
                "model": "fallback",
                "timestamp": datetime.now(tz=UTC).isoformat(),
                "processed": True,
                "fallback": True,
                "context": dict(context or {}),
            },
        }
    return {
        "success": False,
        "error": "No fallback available for this operation",
        "fallback": True,
    }


def validate_generation_response(text: str | None) -> dict[str, object]:
    """Cheap sanity checks on raw generated text."""
    errors: list[str] = []
    warnings: list[str] = []
    if not text or not text.strip():
        errors.append("Generated response is empty")
        return {"is_valid": False, "errors": errors, "warnings": warnings}
    if "flowchart" not in text and "graph" not in text:
        warnings.append("No flowchart declaration found in the response")
    if len(text) < 50:
        warnings.append("Generated response is unusually short")
    if "error" in text.lower():
        warnings.append("Generated response mentions an error")
    return {"is_valid": True, "errors": errors, "warnings": warnings}


def _status_code(exc: BaseException) -> int | None:
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    if isinstance(exc, GenerationError):
        return exc.status_code
    return None


def _kind_for(  # noqa: PLR0911
    exc: BaseException, status_code: int | None
) -> ErrorKind:
    if isinstance(exc, RequestValidationError):
        return ErrorKind.VALIDATION
    if isinstance(exc, MalformedResponseError):
        return ErrorKind.MALFORMED_RESPONSE
    if isinstance(exc, _TIMEOUT_ERRORS):
        return ErrorKind.TIMEOUT
    if isinstance(exc, _NETWORK_ERRORS):
        return ErrorKind.NETWORK
    if status_code is not None:
        if status_code in {401, 403}:
            return ErrorKind.AUTH
        if status_code == 429:
            return ErrorKind.RATE_LIMIT
        if status_code >= 500:
            return ErrorKind.MALFORMED_RESPONSE
        if status_code >= 400:
            return ErrorKind.VALIDATION
    if isinstance(exc, GenerationError):
        return ErrorKind.MALFORMED_RESPONSE
    return ErrorKind.SYSTEM
