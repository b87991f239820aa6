"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from flowchart_ai.adapters.kroki_renderer import HttpxKrokiRenderer
from flowchart_ai.adapters.openai_generation_client import OpenAIGenerationClient
from flowchart_ai.config import Settings
from flowchart_ai.services.analysis import AnalysisService
from flowchart_ai.services.cache import RenderCache
from flowchart_ai.services.diagrams import DiagramTextProcessor
from flowchart_ai.services.documents import DocumentParser, PlainTextDocumentParser
from flowchart_ai.services.rendering import RenderService
from flowchart_ai.services.retry import RetryExecutor
from flowchart_ai.services.sessions import SessionStore, SessionSweeper


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    session_store: SessionStore
    session_sweeper: SessionSweeper
    retry_executor: RetryExecutor
    diagram_processor: DiagramTextProcessor
    analysis_service: AnalysisService
    render_service: RenderService
    document_parser: DocumentParser
    close_resources: Callable[[], Awaitable[None]]


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    session_store = SessionStore(config=resolved_settings.session_config())
    session_sweeper = SessionSweeper(
        store=session_store,
        interval_seconds=resolved_settings.cleanup_interval_seconds,
    )
    retry_executor = RetryExecutor(config=resolved_settings.retry_config())
    diagram_processor = DiagramTextProcessor(
        max_batch_size=resolved_settings.max_validation_batch_size
    )
    generation_client = OpenAIGenerationClient.create(
        api_key=resolved_settings.deepseek_api_key,
        base_url=resolved_settings.deepseek_base_url,
        timeout=resolved_settings.deepseek_timeout_seconds,
    )
    analysis_service = AnalysisService(
        store=session_store,
        client=generation_client,
        retry_executor=retry_executor,
        processor=diagram_processor,
        model=resolved_settings.deepseek_model,
        max_batch_size=resolved_settings.max_analysis_batch_size,
    )
    renderer = HttpxKrokiRenderer.create(
        base_url=resolved_settings.renderer_base_url,
        timeout=resolved_settings.renderer_timeout_seconds,
    )
    render_service = RenderService(
        processor=diagram_processor,
        cache=RenderCache(
            capacity=resolved_settings.render_cache_size,
            ttl_seconds=resolved_settings.render_cache_ttl_seconds,
        ),
        renderer=renderer,
        max_batch_size=resolved_settings.max_batch_size,
    )
    document_parser = PlainTextDocumentParser(
        max_length=resolved_settings.max_requirement_length
    )

    async def close_resources() -> None:
        await analysis_service.shutdown()
        await generation_client.close()
        await renderer.close()

    return AppContainer(
        settings=resolved_settings,
        session_store=session_store,
        session_sweeper=session_sweeper,
        retry_executor=retry_executor,
        diagram_processor=diagram_processor,
        analysis_service=analysis_service,
        render_service=render_service,
        document_parser=document_parser,
        close_resources=close_resources,
    )
