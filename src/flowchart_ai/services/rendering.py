"""Render stage: validated diagram source in, cached artifact out."""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol
from uuid import uuid4

from flowchart_ai.domain.diagrams import DiagramConnection, DiagramNode
from flowchart_ai.domain.errors import RenderError, RequestValidationError
from flowchart_ai.domain.rendering import (
    SUPPORTED_FORMATS,
    BatchRenderResult,
    RenderArtifact,
    RenderOptions,
    RenderResult,
)
from flowchart_ai.services.cache import RenderCache
from flowchart_ai.services.clock import Clock, SystemClock, elapsed_ms
from flowchart_ai.services.diagrams import DiagramTextProcessor

_logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    "json": "application/json",
    "svg": "image/svg+xml",
    "png": "image/png",
    "pdf": "application/pdf",
}

THEME_PALETTES: dict[str, dict[str, str]] = {
    "default": {"fill": "#f9f9f9", "stroke": "#333333", "text": "#333333"},
    "dark": {"fill": "#1f2020", "stroke": "#cccccc", "text": "#f0f0f0"},
    "forest": {"fill": "#cde498", "stroke": "#13540c", "text": "#000000"},
    "neutral": {"fill": "#eeeeee", "stroke": "#999999", "text": "#333333"},
    "base": {"fill": "#fff4dd", "stroke": "#9f6b00", "text": "#333333"},
}

_DIRECTION = re.compile(r"^(?:flowchart|graph)\s+(TD|TB|BT|RL|LR|DT)\b")
_NODE_WIDTH = 120
_NODE_HEIGHT = 60
_NODE_GAP = 50
_RANK_GAP = 80
_MARGIN = 100


class Renderer(Protocol):
    """External engine producing image or document bytes."""

    async def render(
        self, source: str, *, diagram_type: str, options: RenderOptions
    ) -> bytes:
        """Render validated, normalized source into the requested format."""


@dataclass
class RenderStats:
    total_renders: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    errors: int = 0
    average_render_time_ms: float = 0.0


@dataclass
class RenderService:
    """Validates, memoizes and renders diagrams one at a time or in batches."""

    processor: DiagramTextProcessor
    cache: RenderCache
    renderer: Renderer | None = None
    max_batch_size: int = 20
    clock: Clock = field(default_factory=SystemClock)
    _stats: RenderStats = field(default_factory=RenderStats, init=False)

    async def render_one(
        self, source: str, options: RenderOptions | None = None
    ) -> RenderResult:
        """Render a single diagram; failures come back as a failed result."""
        render_id = uuid4().hex
        started = self.clock.now()
        options = options or RenderOptions()

        if options.format not in SUPPORTED_FORMATS:
            return self._failed(
                render_id,
                started,
                "UNSUPPORTED_FORMAT",
                f"Format must be one of {', '.join(SUPPORTED_FORMATS)}",
                options.format,
            )
        validation = self.processor.validate(source)
        if not validation.is_valid or validation.normalized_source is None:
            return self._failed(
                render_id,
                started,
                "INVALID_DIAGRAM",
                "Diagram failed validation",
                [issue.as_dict() for issue in validation.errors],
            )

        normalized = validation.normalized_source
        diagram_type = validation.detected_type or "flowchart"
        key = self.cache.key(normalized, options)
        cached = self.cache.get(key)
        if cached is not None:
            self._stats.cache_hits += 1
            return self._succeeded(render_id, started, cached, cached=True)

        self._stats.cache_misses += 1
        try:
            artifact = await self._build_artifact(normalized, diagram_type, options)
        except Exception as exc:
            _logger.exception("Render %s failed", render_id)
            return self._failed(
                render_id, started, "RENDER_ERROR", "Diagram rendering failed", str(exc)
            )
        self.cache.put(key, artifact)
        return self._succeeded(render_id, started, artifact, cached=False)

    async def render_batch(
        self, sources: list[str], options: RenderOptions | None = None
    ) -> BatchRenderResult:
        """Render every source concurrently; one failure never aborts the rest."""
        if len(sources) > self.max_batch_size:
            raise RequestValidationError(
                "items", f"A batch may contain at most {self.max_batch_size} diagrams"
            )
        batch_id = uuid4().hex
        started = self.clock.now()
        outcomes = await asyncio.gather(
            *(self.render_one(source, options) for source in sources),
            return_exceptions=True,
        )
        results: list[RenderResult] = []
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                _logger.error("Batch %s item %s raised: %s", batch_id, index, outcome)
                results.append(
                    RenderResult(
                        render_id=f"{batch_id}-{index}",
                        success=False,
                        cached=False,
                        processing_time_ms=0.0,
                        error={
                            "kind": "RENDER_ERROR",
                            "message": "Batch item failed",
                            "details": str(outcome),
                        },
                    )
                )
            else:
                results.append(outcome)
        return BatchRenderResult(
            batch_id=batch_id,
            results=results,
            processing_time_ms=elapsed_ms(started, self.clock.now()),
            counts={
                "total": len(results),
                "success": sum(1 for result in results if result.success),
                "failed": sum(1 for result in results if not result.success),
                "cached": sum(1 for result in results if result.cached),
            },
        )

    def stats(self) -> dict[str, object]:
        stats = self._stats
        lookups = stats.cache_hits + stats.cache_misses
        hit_rate = stats.cache_hits / lookups * 100 if lookups else 0.0
        return {
            "total_renders": stats.total_renders,
            "cache_hits": stats.cache_hits,
            "cache_misses": stats.cache_misses,
            "errors": stats.errors,
            "average_render_time_ms": round(stats.average_render_time_ms, 2),
            "cache_size": len(self.cache),
            "cache_hit_rate": f"{hit_rate:.2f}%",
        }

    def reset_stats(self) -> None:
        self._stats = RenderStats()

    def clear_cache(self) -> dict[str, int]:
        cleared = len(self.cache)
        self.cache.clear()
        _logger.info("Render cache cleared (%s entries)", cleared)
        return {"cleared_count": cleared}

    async def _build_artifact(
        self, source: str, diagram_type: str, options: RenderOptions
    ) -> RenderArtifact:
        if options.format == "json":
            content: dict[str, object] | bytes = self._layout(
                source, diagram_type, options
            )
        else:
            if self.renderer is None:
                raise RenderError(f"No renderer configured for {options.format}")
            content = await self.renderer.render(
                source, diagram_type=diagram_type, options=options
            )
            if not content:
                raise RenderError("Renderer returned an empty artifact")
        return RenderArtifact(
            format=options.format,
            diagram_type=diagram_type,
            theme=options.theme,
            content=content,
            media_type=MEDIA_TYPES[options.format],
            created_at=self.clock.now(),
        )

    def _layout(
        self, source: str, diagram_type: str, options: RenderOptions
    ) -> dict[str, object]:
        """Deterministic structural description of the diagram."""
        nodes = _first_declarations(self.processor.extract_nodes(source))
        connections = self.processor.extract_connections(source)
        direction_match = _DIRECTION.match(source)
        direction = direction_match.group(1) if direction_match else "TD"
        positions = _grid_positions(len(nodes), options.width, direction)
        palette = THEME_PALETTES.get(options.theme, THEME_PALETTES["default"])
        return {
            "source": source,
            "diagram_type": diagram_type,
            "nodes": [
                {
                    "id": node.id,
                    "label": node.label,
                    "shape": node.shape,
                    "position": position,
                    "size": {"width": _NODE_WIDTH, "height": _NODE_HEIGHT},
                }
                for node, position in zip(nodes, positions, strict=True)
            ],
            "connections": [_connection_dict(edge) for edge in connections],
            "layout": {
                "direction": direction,
                "spacing": {"node": _NODE_GAP, "rank": _RANK_GAP},
                "alignment": "center",
                "bounds": {"width": options.width, "height": options.height},
            },
            "styles": {
                "theme": options.theme,
                "node": {"fill": palette["fill"], "stroke": palette["stroke"]},
                "edge": {"stroke": palette["stroke"]},
                "text": {"color": palette["text"], "font_size": 14},
            },
            "stats": self.processor.stats(source).as_dict(),
        }

    def _succeeded(
        self,
        render_id: str,
        started: datetime,
        artifact: RenderArtifact,
        *,
        cached: bool,
    ) -> RenderResult:
        duration = elapsed_ms(started, self.clock.now())
        self._stats.total_renders += 1
        total = self._stats.total_renders
        self._stats.average_render_time_ms = (
            self._stats.average_render_time_ms * (total - 1) + duration
        ) / total
        return RenderResult(
            render_id=render_id,
            success=True,
            cached=cached,
            processing_time_ms=duration,
            artifact=artifact,
        )

    def _failed(
        self,
        render_id: str,
        started: datetime,
        kind: str,
        message: str,
        details: object,
    ) -> RenderResult:
        self._stats.errors += 1
        return RenderResult(
            render_id=render_id,
            success=False,
            cached=False,
            processing_time_ms=elapsed_ms(started, self.clock.now()),
            error={"kind": kind, "message": message, "details": details},
        )


def _first_declarations(nodes: list[DiagramNode]) -> list[DiagramNode]:
    seen: dict[str, DiagramNode] = {}
    for node in nodes:
        seen.setdefault(node.id, node)
    return list(seen.values())


def _grid_positions(count: int, width: int, direction: str) -> list[dict[str, int]]:
    per_rank = max(1, (width - _MARGIN) // (_NODE_WIDTH + _NODE_GAP))
    positions = []
    for index in range(count):
        rank, slot = divmod(index, per_rank)
        across = _MARGIN + slot * (_NODE_WIDTH + _NODE_GAP)
        along = _MARGIN + rank * (_NODE_HEIGHT + _RANK_GAP)
        if direction in {"LR", "RL"}:
            across, along = along, across
        positions.append({"x": across, "y": along})
    return positions


def _connection_dict(edge: DiagramConnection) -> dict[str, str]:
    return {"from": edge.source, "to": edge.target, "style": edge.style}
