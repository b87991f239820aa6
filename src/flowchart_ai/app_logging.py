"""Logging configuration helpers."""

import logging

_VERBOSE_ENVIRONMENTS = frozenset({"local", "dev", "test"})


def level_for_environment(environment: str) -> int:
    """DEBUG while developing, INFO everywhere else."""
    if environment.lower() in _VERBOSE_ENVIRONMENTS:
        return logging.DEBUG
    return logging.INFO


def configure_logging(level: int = logging.INFO) -> None:
    """Attach one stream handler to the package logger.

    Calling it again only adjusts the level.
    """
    logger = logging.getLogger("flowchart_ai")
    logger.setLevel(level)
    if logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(levelname)s: %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
