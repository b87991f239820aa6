"""Shared test fixtures."""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import pytest

from flowchart_ai.config import Settings
from flowchart_ai.containers import AppContainer
from flowchart_ai.domain.rendering import RenderOptions
from flowchart_ai.services.analysis import AnalysisService, GenerationClient
from flowchart_ai.services.cache import RenderCache
from flowchart_ai.services.clock import Clock
from flowchart_ai.services.diagrams import DiagramTextProcessor
from flowchart_ai.services.documents import PlainTextDocumentParser
from flowchart_ai.services.rendering import Renderer, RenderService
from flowchart_ai.services.retry import RetryConfig, RetryExecutor
from flowchart_ai.services.sessions import SessionConfig, SessionStore, SessionSweeper

VALID_REPLY = """Here is the flowchart for the requirement.

```mermaid
flowchart TD
    A[User opens app] --> B{Logged in?}
    B -->|yes| C[Show order list]
    B -->|no| D[Show login page]
    D --> E[Submit credentials]
    E --> B
```

It covers the login check and the order list."""


@dataclass
class ManualClock(Clock):
    """Clock that only moves when a test advances it."""

    current: datetime = field(
        default_factory=lambda: datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
    )

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@dataclass
class FakeGenerationClient(GenerationClient):
    """Generation client replaying scripted replies or exceptions."""

    replies: list[str | BaseException] = field(default_factory=list)
    default_reply: str = VALID_REPLY
    calls: list[dict[str, object]] = field(default_factory=list)

    async def complete(
        self, prompt: str, *, model: str, temperature: float, max_tokens: int
    ) -> str:
        self.calls.append(
            {
                "prompt": prompt,
                "model": model,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, BaseException):
                raise reply
            return reply
        return self.default_reply


@dataclass
class FakeRenderer(Renderer):
    """Renderer returning predictable bytes and recording calls."""

    calls: list[tuple[str, str, RenderOptions]] = field(default_factory=list)
    error: Exception | None = None

    async def render(
        self, source: str, *, diagram_type: str, options: RenderOptions
    ) -> bytes:
        self.calls.append((source, diagram_type, options))
        if self.error is not None:
            raise self.error
        return f"<{options.format}:{diagram_type}>".encode()


async def no_sleep(_delay: float) -> None:
    return None


@dataclass
class RecordingSleep:
    """Sleep replacement that records requested delays."""

    delays: list[float] = field(default_factory=list)

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        deepseek_api_key="deepseek-key",
        admin_token="admin-token",
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def processor() -> DiagramTextProcessor:
    return DiagramTextProcessor()


@pytest.fixture
def session_store(clock: ManualClock) -> SessionStore:
    return SessionStore(config=SessionConfig(), clock=clock)


@pytest.fixture
def generation_client() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def retry_executor() -> RetryExecutor:
    return RetryExecutor(
        config=RetryConfig(max_retries=3, base_delay=0.01, max_delay=0.05),
        sleep=no_sleep,
    )


@pytest.fixture
def analysis_service(
    session_store: SessionStore,
    generation_client: FakeGenerationClient,
    retry_executor: RetryExecutor,
    processor: DiagramTextProcessor,
    clock: ManualClock,
) -> AnalysisService:
    return AnalysisService(
        store=session_store,
        client=generation_client,
        retry_executor=retry_executor,
        processor=processor,
        model="deepseek-chat",
        clock=clock,
    )


@pytest.fixture
def render_service(
    processor: DiagramTextProcessor, renderer: FakeRenderer, clock: ManualClock
) -> RenderService:
    return RenderService(
        processor=processor,
        cache=RenderCache(capacity=10, ttl_seconds=60, clock=clock),
        renderer=renderer,
        clock=clock,
    )


@pytest.fixture
def container(
    settings: Settings,
    session_store: SessionStore,
    retry_executor: RetryExecutor,
    processor: DiagramTextProcessor,
    analysis_service: AnalysisService,
    render_service: RenderService,
) -> AppContainer:
    async def close_resources() -> None:
        await analysis_service.shutdown()

    return AppContainer(
        settings=settings,
        session_store=session_store,
        session_sweeper=SessionSweeper(store=session_store, interval_seconds=3600),
        retry_executor=retry_executor,
        diagram_processor=processor,
        analysis_service=analysis_service,
        render_service=render_service,
        document_parser=PlainTextDocumentParser(),
        close_resources=close_resources,
    )
