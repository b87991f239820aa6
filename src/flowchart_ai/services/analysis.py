"""Analysis pipeline: requirement in, validated flowchart out."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from flowchart_ai.domain.diagrams import ValidationResult
from flowchart_ai.domain.errors import (
    MalformedResponseError,
    RequestValidationError,
    RetryExhaustedError,
    SessionCapacityError,
)
from flowchart_ai.domain.sessions import AnalysisRequest, Session, SessionStatus
from flowchart_ai.services.clock import Clock, SystemClock, elapsed_ms
from flowchart_ai.services.diagrams import DiagramTextProcessor
from flowchart_ai.services.retry import (
    RetryExecutor,
    classify_error,
    create_fallback,
    should_use_fallback,
    validate_generation_response,
)
from flowchart_ai.services.sessions import SessionStore

_logger = logging.getLogger(__name__)

SYSTEM_ROLE = (
    "You are a senior product architect who turns short requirement "
    "descriptions into clear business flowcharts."
)

PRODUCT_CONTEXT: dict[str, tuple[str, tuple[str, ...]]] = {
    "web": (
        "browser based product",
        ("login and session handling", "responsive pages", "form validation"),
    ),
    "mobile": (
        "native mobile app",
        ("permission prompts", "offline states", "push notifications"),
    ),
    "desktop": (
        "desktop application",
        ("installation and updates", "local files", "multi-window flows"),
    ),
    "api": (
        "backend API",
        ("authentication", "rate limiting", "error responses"),
    ),
    "miniprogram": (
        "mini program inside a host app",
        ("host account authorization", "sharing entry points", "payment"),
    ),
}

IMPLEMENT_GUIDANCE = {
    "standard": "conventional business logic without AI components",
    "ai": "an AI model call is part of the core flow, include its failure path",
    "uncertain": "infer the most reasonable implementation from the requirement",
    "hybrid": "rule based steps combined with AI assisted steps",
}

OUTPUT_REQUIREMENTS = (
    "Include the key business steps and decision points",
    "Show the real path a user takes, including permission and payment checks",
    "Add meaningful error handling branches",
    "Use specific node names instead of generic words like 'process'",
    "Use standard Mermaid flowchart TD syntax that renders without errors",
    "Use rectangles [text] for steps, diamonds {text} for decisions "
    "and circles ((text)) for important notices",
)

PIPELINE_STEPS = (
    "Requirement parsing",
    "Prompt generation",
    "AI call",
    "Diagram generation",
    "Result validation",
    "Completed",
)


class GenerationClient(Protocol):
    """Text generation service used to draft flowcharts."""

    async def complete(
        self, prompt: str, *, model: str, temperature: float, max_tokens: int
    ) -> str:
        """Return the generated text for a prompt."""


@dataclass
class AnalysisService:
    """Drives sessions through prompt, generation, formatting and validation."""

    store: SessionStore
    client: GenerationClient
    retry_executor: RetryExecutor
    processor: DiagramTextProcessor
    model: str
    temperature: float = 0.3
    max_tokens: int = 4000
    max_batch_size: int = 10
    clock: Clock = field(default_factory=SystemClock)
    _tasks: set[asyncio.Task[None]] = field(default_factory=set, init=False)

    def build_prompt(self, request: AnalysisRequest) -> str:
        focus, considerations = PRODUCT_CONTEXT.get(request.product_type, ("", ()))
        product_line = request.product_type + (f" ({focus})" if focus else "")
        lines = [
            SYSTEM_ROLE,
            "",
            f"Requirement: {request.requirement.strip()}",
            f"Product type: {product_line}",
            "Implementation: "
            f"{IMPLEMENT_GUIDANCE.get(request.implement_type, request.implement_type)}",
        ]
        if considerations:
            lines.append(f"Technical considerations: {', '.join(considerations)}")
        lines.extend(["", "Output requirements:"])
        lines.extend(f"- {item}" for item in OUTPUT_REQUIREMENTS)
        lines.extend(
            [
                "",
                "Reply with the diagram only, inside a fenced block:",
                "```mermaid",
                "flowchart TD",
                "    A[Start] --> B{Decision}",
                "    B -->|yes| C[Next step]",
                "```",
            ]
        )
        return "\n".join(lines)

    async def generate(
        self, request: AnalysisRequest, session_id: str | None = None
    ) -> dict[str, object]:
        """Produce an analysis result without touching session progress.

        Auth and rate-limit failures degrade to the canned fallback diagram;
        every other exhausted failure propagates as ``RetryExhaustedError``.
        """
        prompt = self.build_prompt(request)
        try:
            raw, attempts = await self._call_generation(prompt, request, session_id)
        except RetryExhaustedError as exc:
            return self._fallback_or_raise(exc, request)
        source = self.processor.optimize(self.processor.extract(raw))
        validation = self.processor.validate(source)
        return self._result(raw, source, validation, request, attempts)

    async def run(self, session_id: str) -> None:
        """Execute the pipeline for one session.

        Failures are recorded on the session and never raised. Every stage
        update is skipped once the session is terminal, which is how a
        cancelled or timed-out session discards late results.
        """
        session = self.store.get_session(session_id)
        if session is None:
            _logger.error("Cannot run unknown session %s", session_id)
            return
        request = session.request
        started = self.clock.now()
        try:
            if not self._advance(session_id, SessionStatus.PROCESSING, "analyzing"):
                return
            stage_start = self.clock.now()
            prompt = self.build_prompt(request)
            performance = {"prompt_generation": self._since(stage_start)}

            if not self._advance(
                session_id, SessionStatus.PROCESSING, "ai_processing", performance
            ):
                return
            stage_start = self.clock.now()
            try:
                raw, attempts = await self._call_generation(
                    prompt, request, session_id
                )
            except RetryExhaustedError as exc:
                fallback = self._fallback_or_raise(exc, request)
                self._complete(session_id, fallback, started)
                return
            performance = {"ai_call": self._since(stage_start)}

            if not self._advance(
                session_id, SessionStatus.GENERATING, "generating", performance
            ):
                return
            stage_start = self.clock.now()
            source = self.processor.optimize(self.processor.extract(raw))
            performance = {"diagram_generation": self._since(stage_start)}

            if not self._advance(
                session_id, SessionStatus.VALIDATING, "validating", performance
            ):
                return
            stage_start = self.clock.now()
            validation = self.processor.validate(source)
            if not validation.is_valid:
                raise MalformedResponseError("Formatted diagram failed validation")
            self.store.update_session(
                session_id,
                SessionStatus.VALIDATING,
                performance={"validation": self._since(stage_start)},
            )
            result = self._result(raw, source, validation, request, attempts)
            self._complete(session_id, result, started)
        except Exception as exc:
            self._fail(session_id, exc)

    def submit(self, request: AnalysisRequest) -> tuple[Session, bool]:
        """Create a session and schedule its pipeline on the running loop.

        A deduplicated request returns the existing session and schedules
        nothing.
        """
        session, created = self.store.create_session(request)
        if created:
            task = asyncio.create_task(self.run(session.id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return session, created

    def submit_batch(self, requests: list[AnalysisRequest]) -> dict[str, object]:
        """Submit several requests; a rejected one never blocks the others."""
        if not requests:
            raise RequestValidationError("requests", "Provide at least one request")
        if len(requests) > self.max_batch_size:
            raise RequestValidationError(
                "requests",
                f"A batch may contain at most {self.max_batch_size} requests",
            )
        entries: list[dict[str, object]] = []
        for index, request in enumerate(requests):
            try:
                session, created = self.submit(request)
            except RequestValidationError as exc:
                entries.append(
                    _failed_entry(index, {"field": exc.field, "message": exc.message})
                )
            except SessionCapacityError as exc:
                entries.append(_failed_entry(index, {"message": str(exc)}))
            else:
                entries.append(
                    {
                        "index": index,
                        "session_id": session.id,
                        "status": session.status.value,
                        "duplicate": not created,
                        "error": None,
                    }
                )
        successful = sum(1 for entry in entries if entry["error"] is None)
        _logger.info("Batch analysis accepted %s of %s", successful, len(requests))
        return {
            "sessions": entries,
            "total_requests": len(requests),
            "successful_sessions": successful,
        }

    async def wait_idle(self) -> None:
        """Wait for every scheduled pipeline task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _call_generation(
        self, prompt: str, request: AnalysisRequest, session_id: str | None
    ) -> tuple[str, int]:
        options = request.options
        model = str(options.get("model") or self.model)
        temperature = float(options.get("temperature", self.temperature))
        max_tokens = int(options.get("max_tokens", self.max_tokens))
        attempts = 0

        async def attempt() -> str:
            nonlocal attempts
            attempts += 1
            raw = await self.client.complete(
                prompt, model=model, temperature=temperature, max_tokens=max_tokens
            )
            check = validate_generation_response(raw)
            if not check["is_valid"]:
                raise MalformedResponseError("; ".join(check["errors"]))
            if check["warnings"]:
                _logger.warning("Generation warnings: %s", check["warnings"])
            extracted = self.processor.validate(self.processor.extract(raw))
            if not extracted.is_valid:
                raise MalformedResponseError(
                    "Generated diagram is invalid: "
                    + ", ".join(issue.message for issue in extracted.errors)
                )
            return raw

        def on_retry(attempt_number: int, _classification: object) -> None:
            if session_id is not None:
                self.store.record_retry(session_id, attempt_number)

        raw = await self.retry_executor.execute_with_retry(
            attempt, action="ai_analysis", on_retry=on_retry
        )
        return raw, attempts

    def _fallback_or_raise(
        self, exc: RetryExhaustedError, request: AnalysisRequest
    ) -> dict[str, object]:
        if not should_use_fallback(exc.kind):
            raise exc
        _logger.warning("Generation unavailable (%s), using fallback", exc.kind.value)
        return create_fallback(
            "ai_analysis",
            {
                "requirement": request.requirement,
                "product_type": request.product_type,
                "implement_type": request.implement_type,
                "error_kind": exc.kind.value,
            },
        )

    def _result(
        self,
        raw: str,
        source: str,
        validation: ValidationResult,
        request: AnalysisRequest,
        attempts: int,
    ) -> dict[str, object]:
        return {
            "raw_response": raw,
            "diagram_source": source,
            "validation": validation.as_dict(),
            "metadata": {
                "model": str(request.options.get("model") or self.model),
                "timestamp": self.clock.now().isoformat(),
                "processed": True,
                "fallback": False,
                "attempts": attempts,
            },
        }

    def _advance(
        self,
        session_id: str,
        status: SessionStatus,
        stage: str,
        performance: dict[str, float] | None = None,
    ) -> bool:
        percentage, message, completed_steps = _STAGES[stage]
        updated = self.store.update_session(
            session_id,
            status,
            progress={
                "stage": stage,
                "percentage": percentage,
                "message": message,
                "steps": list(PIPELINE_STEPS[:completed_steps]),
            },
            performance=performance,
        )
        if not updated:
            _logger.info("Session %s is no longer running, stopping", session_id)
        return updated

    def _complete(
        self, session_id: str, result: dict[str, object], started: datetime
    ) -> None:
        total = self._since(started)
        metadata = dict(result.get("metadata") or {})
        metadata.update({"session_id": session_id, "total_processing_time_ms": total})
        updated = self.store.update_session(
            session_id,
            SessionStatus.COMPLETED,
            progress={
                "stage": "completed",
                "percentage": 100,
                "message": _STAGES["completed"][1],
                "steps": list(PIPELINE_STEPS),
            },
            result={**result, "metadata": metadata},
            performance={"total": total},
        )
        if updated:
            _logger.info("Analysis %s completed in %.0fms", session_id, total)
        else:
            _logger.info("Discarding result of finished session %s", session_id)

    def _fail(self, session_id: str, exc: Exception) -> None:
        if isinstance(exc, RetryExhaustedError):
            classification = exc.classification
            attempts = exc.attempts
        else:
            classification = classify_error(exc)
            attempts = 1
        _logger.error(
            "Analysis %s failed (kind=%s, attempts=%s)",
            session_id,
            classification.kind.value,
            attempts,
            exc_info=exc,
        )
        self.store.update_session(
            session_id,
            SessionStatus.FAILED,
            error={
                "kind": classification.kind.value,
                "message": classification.message,
                "detail": str(classification.cause),
                "attempts": attempts,
                "retryable": classification.retryable,
                "severity": classification.severity.value,
            },
            progress={
                "stage": "failed",
                "percentage": 0,
                "message": f"Analysis failed: {classification.message}",
            },
        )

    def _since(self, start: datetime) -> float:
        return elapsed_ms(start, self.clock.now())


_STAGES: dict[str, tuple[int, str, int]] = {
    "analyzing": (10, "Analyzing the requirement", 1),
    "ai_processing": (30, "Calling the AI service", 3),
    "generating": (70, "Generating the flowchart", 4),
    "validating": (90, "Validating the result", 5),
    "completed": (100, "Analysis complete", 6),
}


def _failed_entry(index: int, error: dict[str, str]) -> dict[str, object]:
    return {
        "index": index,
        "session_id": None,
        "status": SessionStatus.FAILED.value,
        "duplicate": False,
        "error": error,
    }
