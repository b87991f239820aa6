"""Domain models for diagram validation."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class IssueKind(StrEnum):
    """Categories of diagram validation issues."""

    SYNTAX_ERROR = "SYNTAX_ERROR"
    INVALID_TYPE = "INVALID_TYPE"
    MISSING_NODES = "MISSING_NODES"
    INVALID_CONNECTIONS = "INVALID_CONNECTIONS"
    MALFORMED_SYNTAX = "MALFORMED_SYNTAX"
    EMPTY_CONTENT = "EMPTY_CONTENT"
    TOO_LARGE = "TOO_LARGE"
    PROCESSING_ERROR = "PROCESSING_ERROR"


class ComplexityTier(StrEnum):
    """Coarse size bucket of a diagram."""

    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"
    VERY_COMPLEX = "very_complex"


@dataclass(frozen=True)
class DiagramIssue:
    """Single structured validation error."""

    kind: IssueKind
    message: str
    detail: str
    position: int | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "detail": self.detail,
            "position": self.position,
        }


@dataclass(frozen=True)
class DiagramNode:
    """Node declaration found in diagram source."""

    id: str
    label: str
    shape: str
    raw: str


@dataclass(frozen=True)
class DiagramConnection:
    """Edge declaration found in diagram source."""

    source: str
    target: str
    style: str


@dataclass(frozen=True)
class DiagramStats:
    """Derived statistics for a diagram source."""

    line_count: int
    node_count: int
    connection_count: int
    subgraph_count: int
    has_styles: bool
    has_subgraphs: bool
    has_labels: bool
    complexity: ComplexityTier

    def as_dict(self) -> dict[str, object]:
        return {
            "line_count": self.line_count,
            "node_count": self.node_count,
            "connection_count": self.connection_count,
            "subgraph_count": self.subgraph_count,
            "has_styles": self.has_styles,
            "has_subgraphs": self.has_subgraphs,
            "has_labels": self.has_labels,
            "complexity": self.complexity.value,
        }


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a diagram source."""

    validation_id: str
    is_valid: bool
    errors: list[DiagramIssue]
    timestamp: datetime
    processing_time_ms: float
    normalized_source: str | None = None
    detected_type: str | None = None
    stats: DiagramStats | None = None
    features: dict[str, bool] = field(default_factory=dict)
    warnings: list[DiagramIssue] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        """Serialize the result for API responses and session payloads."""
        return {
            "validation_id": self.validation_id,
            "is_valid": self.is_valid,
            "errors": [issue.as_dict() for issue in self.errors],
            "warnings": [issue.as_dict() for issue in self.warnings],
            "normalized_source": self.normalized_source,
            "detected_type": self.detected_type,
            "stats": self.stats.as_dict() if self.stats else None,
            "features": dict(self.features),
            "timestamp": self.timestamp.isoformat(),
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass(frozen=True)
class BatchValidationResult:
    """Per-item validation results plus aggregate counts."""

    results: list[ValidationResult]
    processing_time_ms: float

    def as_dict(self) -> dict[str, object]:
        valid = sum(1 for result in self.results if result.is_valid)
        return {
            "results": [result.as_dict() for result in self.results],
            "stats": {
                "total": len(self.results),
                "valid": valid,
                "invalid": len(self.results) - valid,
                "processing_time_ms": self.processing_time_ms,
            },
        }


@dataclass(frozen=True)
class RepairResult:
    """Source before and after an automatic repair attempt."""

    original_source: str
    repaired_source: str
    method: str

    @property
    def modified(self) -> bool:
        return self.repaired_source != self.original_source

    def as_dict(self) -> dict[str, object]:
        return {
            "original_source": self.original_source,
            "repaired_source": self.repaired_source,
            "method": self.method,
            "changes": {
                "length_before": len(self.original_source),
                "length_after": len(self.repaired_source),
                "modified": self.modified,
            },
        }
