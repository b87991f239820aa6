"""Tests for container wiring."""

import asyncio

from flowchart_ai.config import Settings
from flowchart_ai.containers import build_container


def test_build_container_creates_services(settings: Settings) -> None:
    container = build_container(settings)

    assert container.analysis_service.store is container.session_store
    assert container.session_sweeper.store is container.session_store
    assert container.render_service.processor is container.diagram_processor
    assert container.analysis_service.model == settings.deepseek_model
    assert container.render_service.max_batch_size == settings.max_batch_size
    assert (
        container.diagram_processor.max_batch_size
        == settings.max_validation_batch_size
    )
    assert (
        container.analysis_service.max_batch_size
        == settings.max_analysis_batch_size
    )
    assert container.session_store.config.max_sessions == settings.max_sessions
    asyncio.run(container.close_resources())
