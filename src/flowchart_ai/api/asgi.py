"""ASGI entrypoint for the flowchart analysis API.

``uvicorn flowchart_ai.api.asgi:app`` serves it; the ``flowchart-ai`` script
runs the same app through ``run``.
"""

import logging

import uvicorn

from flowchart_ai.api.app import create_app
from flowchart_ai.app_logging import level_for_environment
from flowchart_ai.containers import build_container

container = build_container()
app = create_app(container)


def run() -> None:
    settings = container.settings
    level = level_for_environment(settings.environment)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=logging.getLevelName(level).lower(),
    )
