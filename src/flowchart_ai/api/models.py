"""Pydantic models for API request payloads."""

from pydantic import BaseModel, Field

from flowchart_ai.domain.rendering import RenderOptions


class AnalysisCreate(BaseModel):
    """Request to start a new analysis session."""

    requirement: str
    product_type: str = "web"
    implement_type: str = "standard"
    options: dict[str, object] = Field(default_factory=dict)


class DiagramPayload(BaseModel):
    """Diagram source submitted for validation."""

    code: str
    expected_type: str | None = None
    tolerate_type_mismatch: bool = False


class OptimizePayload(BaseModel):
    """Diagram source submitted for formatting."""

    code: str
    remove_comments: bool = False
    format_indentation: bool = True
    fix_special_chars: bool = True


class RenderOptionsPayload(BaseModel):
    """Loosely typed render options; sizes are clamped when parsed."""

    theme: str | None = None
    format: str | None = None
    width: int | None = None
    height: int | None = None

    def to_options(self) -> RenderOptions:
        return RenderOptions.parse(self.model_dump(exclude_none=True))


class RenderPayload(BaseModel):
    """Single diagram render request."""

    code: str
    options: RenderOptionsPayload = Field(default_factory=RenderOptionsPayload)


class BatchRenderPayload(BaseModel):
    """Batch render request sharing one set of options."""

    items: list[str]
    options: RenderOptionsPayload = Field(default_factory=RenderOptionsPayload)


class AnalysisBatchCreate(BaseModel):
    """Several analysis requests submitted together."""

    requests: list[AnalysisCreate]


class BatchDiagramPayload(BaseModel):
    """Diagram sources validated independently of each other."""

    items: list[str]
    expected_type: str | None = None
    tolerate_type_mismatch: bool = False


class RepairPayload(BaseModel):
    """Diagram source the renderer rejected, with its error message."""

    code: str
    error_message: str | None = None
    requirement: str = ""
