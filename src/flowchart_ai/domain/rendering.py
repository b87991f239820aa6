"""Domain models for diagram rendering."""

import base64
from dataclasses import dataclass, field
from datetime import datetime

SUPPORTED_THEMES = ("default", "dark", "forest", "neutral", "base")
SUPPORTED_FORMATS = ("json", "svg", "png", "pdf")
MAX_RENDER_DIMENSION = 4000


@dataclass(frozen=True)
class RenderOptions:
    """Options that affect the visual output of a render."""

    theme: str = "default"
    format: str = "json"
    width: int = 800
    height: int = 600

    @classmethod
    def parse(cls, raw: dict[str, object] | None) -> "RenderOptions":
        """Build options from loosely typed input, clamping sizes."""
        raw = raw or {}
        theme = str(raw.get("theme") or "default")
        if theme not in SUPPORTED_THEMES:
            theme = "default"
        output_format = str(raw.get("format") or "json").lower()
        width = _clamp_dimension(raw.get("width"), 800)
        height = _clamp_dimension(raw.get("height"), 600)
        return cls(theme=theme, format=output_format, width=width, height=height)

    def cache_fields(self) -> dict[str, object]:
        return {
            "theme": self.theme,
            "format": self.format,
            "width": self.width,
            "height": self.height,
        }


@dataclass(frozen=True)
class RenderArtifact:
    """Rendered output of a diagram."""

    format: str
    diagram_type: str
    theme: str
    content: dict[str, object] | bytes
    media_type: str
    created_at: datetime

    def as_dict(self) -> dict[str, object]:
        """Serialize the artifact; binary content is base64 encoded."""
        if isinstance(self.content, bytes):
            content: object = base64.b64encode(self.content).decode("ascii")
            encoding = "base64"
        else:
            content = self.content
            encoding = "json"
        return {
            "format": self.format,
            "diagram_type": self.diagram_type,
            "theme": self.theme,
            "media_type": self.media_type,
            "encoding": encoding,
            "content": content,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class RenderResult:
    """Per-item outcome of the render stage."""

    render_id: str
    success: bool
    cached: bool
    processing_time_ms: float
    artifact: RenderArtifact | None = None
    error: dict[str, object] | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "render_id": self.render_id,
            "success": self.success,
            "cached": self.cached,
            "processing_time_ms": self.processing_time_ms,
            "artifact": self.artifact.as_dict() if self.artifact else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class BatchRenderResult:
    """Aggregate outcome of a batch render."""

    batch_id: str
    results: list[RenderResult]
    processing_time_ms: float
    counts: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {
            "batch_id": self.batch_id,
            "results": [result.as_dict() for result in self.results],
            "counts": dict(self.counts),
            "processing_time_ms": self.processing_time_ms,
        }


def _clamp_dimension(value: object, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float | str):
        return default
    try:
        number = int(float(value))
    except (ValueError, OverflowError):
        return default
    if number <= 0:
        return default
    return min(number, MAX_RENDER_DIMENSION)
