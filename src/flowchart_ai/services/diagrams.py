"""Pattern-based processing of Mermaid diagram source text.

Extraction, validation, normalization and statistics all live behind
``DiagramTextProcessor`` so callers never touch the regular expressions
directly. The matching is deliberately line oriented: it recognizes the node
shapes and connectors produced by the generation prompt rather than the full
Mermaid grammar.
"""

import logging
import re
from dataclasses import dataclass, field
from uuid import uuid4

from flowchart_ai.domain.diagrams import (
    BatchValidationResult,
    ComplexityTier,
    DiagramConnection,
    DiagramIssue,
    DiagramNode,
    DiagramStats,
    IssueKind,
    RepairResult,
    ValidationResult,
)
from flowchart_ai.domain.errors import RequestValidationError
from flowchart_ai.services.clock import Clock, SystemClock, elapsed_ms

_logger = logging.getLogger(__name__)

DIAGRAM_TYPES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("flowchart", re.compile(r"flowchart(?:\s+(?:TD|TB|BT|RL|LR|DT))?(?![\w-])")),
    ("graph", re.compile(r"graph(?:\s+(?:TD|TB|BT|RL|LR|DT))?(?![\w-])")),
    ("gitgraph", re.compile(r"gitgraph(?![\w-])", re.IGNORECASE)),
    ("sequenceDiagram", re.compile(r"sequenceDiagram(?![\w-])")),
    ("classDiagram", re.compile(r"classDiagram(?:-v2)?(?![\w-])")),
    ("stateDiagram", re.compile(r"stateDiagram(?:-v2)?(?![\w-])")),
    ("erDiagram", re.compile(r"erDiagram(?![\w-])")),
    ("journey", re.compile(r"journey(?![\w-])")),
    ("gantt", re.compile(r"gantt(?![\w-])")),
    ("pie", re.compile(r"pie(?![\w-])")),
)

_KEYWORD_ALTERNATION = (
    r"flowchart|graph|gitGraph|sequenceDiagram|classDiagram|stateDiagram"
    r"|erDiagram|journey|gantt|pie"
)
_FENCED_BLOCK = re.compile(r"```[ \t]*[\w-]*[ \t]*\r?\n(.*?)```", re.DOTALL)
_DECLARATION_BLOCK = re.compile(
    rf"^[ \t]*(?:{_KEYWORD_ALTERNATION})\b.*?(?=\n[ \t]*\n|\n[ \t]*#|\Z)",
    re.MULTILINE | re.DOTALL,
)

# Longest delimiters first so "((" is never read as two "(".
_NODE_PATTERN = re.compile(
    r"\b(?P<id>\w+)[ \t]*(?:"
    r"\(\((?P<circle>[^\n]*?)\)\)"
    r"|\{\{(?P<hexagon>[^\n]*?)\}\}"
    r"|\((?P<rounded>[^\n]*?)\)"
    r"|\{(?P<diamond>[^\n]*?)\}"
    r"|\[(?P<rectangle>[^\n]*?)\]"
    r")"
)
_NODE_SHAPES = ("circle", "hexagon", "rounded", "diamond", "rectangle")

_CONNECTOR = r"-\.+->?|={2,}>|-{2,}>|-{3,}"
_CONNECTION_PATTERN = re.compile(
    rf"(?P<source>\w+)[ \t]*(?P<op>{_CONNECTOR})[ \t]*(?:\|[^|\n]*\|[ \t]*)?"
    r"(?=(?P<target>\w+))"
)
_INLINE_EDGE_LABEL = re.compile(r"(?<![-=.])--[ \t]+[^-|>\n]+?[ \t]+(-->)")
_EDGE_LABEL = re.compile(r"\|[^|\n]+\|")
_STYLE_LINE = re.compile(r"^[ \t]*(?:style|classDef)[ \t]+\w+", re.MULTILINE)
_SUBGRAPH_LINE = re.compile(r"^[ \t]*subgraph\b", re.MULTILINE)
_NON_GRAPH_PREFIXES = ("subgraph", "style", "classDef", "class ", "linkStyle", "click")

_OPENERS = {"((": "))", "{{": "}}", "[": "]", "(": ")", "{": "}"}
_CLOSERS = {closer: opener for opener, closer in _OPENERS.items()}

_FULL_WIDTH_PUNCTUATION = str.maketrans(
    {
        "“": '"',
        "”": '"',
        "‘": "'",
        "’": "'",
        "：": ":",
        "？": "?",
        "！": "!",
    }
)

_MIN_REPAIRED_LENGTH = 50
_ERROR_LINE = re.compile(r"line (\d+)")
_GLUED_NODE = re.compile(r"(\w+\[[^\]\n]*\])(\w+)")
_GLUED_NODE_BEFORE_ARROW = re.compile(r"(\w+\[[^\]\n]*\])(\w+)([ \t]*-->)")
_NON_ASCII_BARE_ID = re.compile(r"(-->|---)[ \t]+[^\sA-Za-z0-9_\[({]+[ \t]+")
_BROKEN_ARROW = re.compile(r"={2,}>+|-{3,}>|>{2,}")
_CONNECTOR_SPACING = re.compile(r"[ \t]*(-->|---)[ \t]*")

LOGIN_TEMPLATE = """flowchart TD
    A[User opens the product] --> B{Logged in?}
    B -->|yes| C[Use the feature]
    B -->|no| D[Show login page]
    D --> E[Complete login]
    E --> C
    C --> F[Done]"""

MEMBERSHIP_TEMPLATE = """flowchart TD
    A[Feature entry] --> B{Member?}
    B -->|yes| C[Use directly]
    B -->|no| D[Offer trial or payment]
    D --> E[Choose a plan]
    E --> C
    C --> F[Done]"""

DEFAULT_TEMPLATE = """flowchart TD
    A[Start] --> B[Process request]
    B --> C{Condition met?}
    C -->|yes| D[Handle main path]
    C -->|no| E[Handle alternative]
    D --> F[End]
    E --> F"""

_TEMPLATE_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("登录", "用户", "login", "user"), LOGIN_TEMPLATE),
    (("付费", "会员", "pay", "member"), MEMBERSHIP_TEMPLATE),
)


@dataclass
class DiagramTextProcessor:
    """Extract, validate, normalize and measure diagram source."""

    max_source_length: int = 50_000
    max_nodes: int = 500
    max_connections: int = 1000
    max_subgraphs: int = 50
    max_batch_size: int = 10
    clock: Clock = field(default_factory=SystemClock)

    def extract(self, model_text: str | None) -> str:
        """Pull the diagram source out of free-form model output."""
        if not model_text:
            return ""
        fenced = _FENCED_BLOCK.search(model_text)
        if fenced:
            return fenced.group(1).strip()
        declared = _DECLARATION_BLOCK.search(model_text)
        if declared:
            return declared.group(0).strip()
        return model_text.strip()

    def detect_type(self, source: str) -> str | None:
        """Return the diagram type declared by the first significant line."""
        line = _declaration_line(source)
        if line is None:
            return None
        for name, pattern in DIAGRAM_TYPES:
            if pattern.match(line):
                return name
        return None

    def validate(
        self,
        source: str | None,
        expected_type: str | None = None,
        *,
        tolerate_type_mismatch: bool = False,
    ) -> ValidationResult:
        """Run the ordered validation checks, stopping at the first failing one."""
        validation_id = uuid4().hex
        started = self.clock.now()
        warnings: list[DiagramIssue] = []

        def failed(errors: list[DiagramIssue]) -> ValidationResult:
            _logger.debug(
                "Diagram validation %s failed: %s",
                validation_id,
                [issue.kind.value for issue in errors],
            )
            finished = self.clock.now()
            return ValidationResult(
                validation_id=validation_id,
                is_valid=False,
                errors=errors,
                timestamp=finished,
                processing_time_ms=elapsed_ms(started, finished),
                warnings=warnings,
            )

        text = source or ""
        basic = self._check_basic(text)
        if basic:
            return failed(basic)

        brackets = self.check_brackets(text)
        if brackets:
            return failed(brackets)

        detected = self.detect_type(text)
        if detected is None:
            return failed(
                [
                    DiagramIssue(
                        kind=IssueKind.INVALID_TYPE,
                        message="Unrecognized diagram type",
                        detail="Source must start with a supported Mermaid keyword",
                    )
                ]
            )
        if expected_type and expected_type != detected:
            mismatch = DiagramIssue(
                kind=IssueKind.INVALID_TYPE,
                message="Diagram type mismatch",
                detail=f"expected {expected_type}, detected {detected}",
            )
            if not tolerate_type_mismatch:
                return failed([mismatch])
            warnings.append(mismatch)

        nodes = self.extract_nodes(text)
        connections = self.extract_connections(text)
        structure = self._check_structure(nodes, connections)
        if structure:
            return failed(structure)

        unique_nodes = _unique_node_ids(nodes)
        subgraphs = len(_SUBGRAPH_LINE.findall(text))
        limits = self._check_limits(len(unique_nodes), len(connections), subgraphs)
        if limits:
            return failed(limits)

        normalized = self.normalize(text)
        stats = self.stats(normalized)
        finished = self.clock.now()
        return ValidationResult(
            validation_id=validation_id,
            is_valid=True,
            errors=[],
            timestamp=finished,
            processing_time_ms=elapsed_ms(started, finished),
            normalized_source=normalized,
            detected_type=detected,
            stats=stats,
            features={
                "has_nodes": stats.node_count > 0,
                "has_connections": stats.connection_count > 0,
                "has_labels": stats.has_labels,
                "has_styles": stats.has_styles,
                "has_subgraphs": stats.has_subgraphs,
            },
            warnings=warnings,
        )

    def validate_batch(
        self,
        sources: list[str],
        expected_type: str | None = None,
        *,
        tolerate_type_mismatch: bool = False,
    ) -> BatchValidationResult:
        """Validate each source independently; one failure never aborts the rest."""
        if not sources:
            raise RequestValidationError("items", "Provide at least one diagram")
        if len(sources) > self.max_batch_size:
            raise RequestValidationError(
                "items", f"A batch may contain at most {self.max_batch_size} diagrams"
            )
        results: list[ValidationResult] = []
        for index, source in enumerate(sources):
            try:
                result = self.validate(
                    source,
                    expected_type,
                    tolerate_type_mismatch=tolerate_type_mismatch,
                )
            except Exception as exc:
                _logger.exception("Validation of batch item %s raised", index)
                result = ValidationResult(
                    validation_id=uuid4().hex,
                    is_valid=False,
                    errors=[
                        DiagramIssue(
                            kind=IssueKind.PROCESSING_ERROR,
                            message="Validation could not run",
                            detail=str(exc),
                        )
                    ],
                    timestamp=self.clock.now(),
                    processing_time_ms=0.0,
                )
            results.append(result)
        return BatchValidationResult(
            results=results,
            processing_time_ms=max(result.processing_time_ms for result in results),
        )

    def check_brackets(self, source: str) -> list[DiagramIssue]:
        """Report every unmatched opener or orphan closer, in scan order."""
        issues: list[DiagramIssue] = []
        stack: list[tuple[str, int]] = []
        offset = 0
        for line in source.splitlines(keepends=True):
            if not _is_comment(line):
                _scan_line(line, offset, stack, issues)
            offset += len(line)
        for opener, position in stack:
            issues.append(
                DiagramIssue(
                    kind=IssueKind.MALFORMED_SYNTAX,
                    message="Unclosed bracket",
                    detail=f"'{opener}' at position {position} is never closed",
                    position=position,
                )
            )
        issues.sort(key=lambda issue: issue.position or 0)
        return issues

    def extract_nodes(self, source: str) -> list[DiagramNode]:
        """Return node declarations in source order, repeats included."""
        nodes: list[DiagramNode] = []
        for line in _graph_lines(source):
            for match in _NODE_PATTERN.finditer(_without_edge_labels(line)):
                shape = next(
                    name for name in _NODE_SHAPES if match.group(name) is not None
                )
                nodes.append(
                    DiagramNode(
                        id=match.group("id"),
                        label=match.group(shape).strip(),
                        shape=shape,
                        raw=match.group(0),
                    )
                )
        return nodes

    def extract_connections(self, source: str) -> list[DiagramConnection]:
        """Return edges in source order; chained edges yield one entry each."""
        connections: list[DiagramConnection] = []
        for line in _graph_lines(source):
            bare = _NODE_PATTERN.sub(
                lambda match: match.group("id"), _without_edge_labels(line)
            )
            for match in _CONNECTION_PATTERN.finditer(bare):
                connections.append(
                    DiagramConnection(
                        source=match.group("source"),
                        target=match.group("target"),
                        style=_connector_style(match.group("op")),
                    )
                )
        return connections

    def normalize(self, source: str) -> str:
        """Canonical layout: LF endings, two-space indents, no blank lines."""
        text = source.replace("\r\n", "\n").replace("\r", "\n").replace("\t", "  ")
        lines = [line.rstrip() for line in text.split("\n")]
        cleaned = "\n".join(line for line in lines if line.strip()).strip()
        if not cleaned:
            return ""
        return "\n".join(_reindent(line) for line in cleaned.split("\n"))

    def stats(self, source: str) -> DiagramStats:
        """Compute counts, feature flags and the complexity tier."""
        nodes = _unique_node_ids(self.extract_nodes(source))
        connections = self.extract_connections(source)
        subgraphs = len(_SUBGRAPH_LINE.findall(source))
        return DiagramStats(
            line_count=sum(1 for line in source.splitlines() if line.strip()),
            node_count=len(nodes),
            connection_count=len(connections),
            subgraph_count=subgraphs,
            has_styles=bool(_STYLE_LINE.search(source)),
            has_subgraphs=subgraphs > 0,
            has_labels=bool(_EDGE_LABEL.search(source)),
            complexity=complexity_tier(len(nodes), len(connections)),
        )

    def optimize(
        self,
        source: str,
        *,
        remove_comments: bool = False,
        format_indentation: bool = True,
        fix_special_chars: bool = True,
    ) -> str:
        """Formatting-only cleanup; node and edge counts are preserved."""
        text = source.replace("\r\n", "\n").replace("\r", "\n")
        if fix_special_chars:
            text = text.translate(_FULL_WIDTH_PUNCTUATION)
        if remove_comments:
            text = "\n".join(
                line for line in text.split("\n") if not _is_comment(line)
            )
        if format_indentation:
            text = _format_indentation(text)
        text = re.sub(r"\n[ \t]*\n(?:[ \t]*\n)+", "\n\n", text)
        return text.strip()

    def repair(
        self,
        source: str,
        error_message: str | None = None,
        requirement: str = "",
    ) -> RepairResult:
        """Rewrite source the renderer rejected, guided by its error message.

        Without an error message only whitespace and comments are cleaned.
        When targeted fixes change nothing, or leave too little to be a
        diagram, a canned template chosen from the requirement is returned.
        """
        if not error_message:
            repaired, method = _cleanup(source), "general-cleanup"
        else:
            repaired = _repair_by_error(source, error_message)
            method = "error-based-repair"
            if repaired == source or len(repaired) < _MIN_REPAIRED_LENGTH:
                repaired, method = fallback_template(requirement), "fallback-template"
        if self.detect_type(repaired) is None:
            repaired = "flowchart TD\n" + repaired
        _logger.info(
            "Diagram repaired with %s (%s -> %s chars)",
            method,
            len(source),
            len(repaired),
        )
        return RepairResult(
            original_source=source, repaired_source=repaired, method=method
        )

    def _check_basic(self, text: str) -> list[DiagramIssue]:
        if not text.strip():
            return [
                DiagramIssue(
                    kind=IssueKind.EMPTY_CONTENT,
                    message="Diagram source is empty",
                    detail="code must be a non-empty string",
                )
            ]
        if len(text) > self.max_source_length:
            return [
                DiagramIssue(
                    kind=IssueKind.TOO_LARGE,
                    message="Diagram source is too long",
                    detail=f"length {len(text)} exceeds {self.max_source_length}",
                )
            ]
        return []

    def _check_structure(
        self, nodes: list[DiagramNode], connections: list[DiagramConnection]
    ) -> list[DiagramIssue]:
        issues: list[DiagramIssue] = []
        if not nodes:
            return [
                DiagramIssue(
                    kind=IssueKind.MISSING_NODES,
                    message="Diagram has no nodes",
                    detail="at least one node declaration is required",
                )
            ]
        seen: set[str] = set()
        for node in nodes:
            if node.id not in seen:
                seen.add(node.id)
                continue
            issues.append(
                DiagramIssue(
                    kind=IssueKind.MALFORMED_SYNTAX,
                    message="Duplicate node id",
                    detail=f"node '{node.id}' is declared more than once",
                )
            )
        if len(seen) > 1 and not connections:
            issues.append(
                DiagramIssue(
                    kind=IssueKind.INVALID_CONNECTIONS,
                    message="Nodes are not connected",
                    detail="multiple nodes require at least one connection",
                )
            )
        return issues

    def _check_limits(
        self, node_count: int, connection_count: int, subgraph_count: int
    ) -> list[DiagramIssue]:
        issues: list[DiagramIssue] = []
        for label, count, limit in (
            ("nodes", node_count, self.max_nodes),
            ("connections", connection_count, self.max_connections),
            ("subgraphs", subgraph_count, self.max_subgraphs),
        ):
            if count > limit:
                issues.append(
                    DiagramIssue(
                        kind=IssueKind.TOO_LARGE,
                        message=f"Too many {label}",
                        detail=f"{count} {label} exceeds the limit of {limit}",
                    )
                )
        return issues


def complexity_tier(node_count: int, connection_count: int) -> ComplexityTier:
    """Bucket a diagram by nodes + half its connections."""
    score = node_count + connection_count * 0.5
    if score <= 10:
        return ComplexityTier.SIMPLE
    if score <= 30:
        return ComplexityTier.MEDIUM
    if score <= 100:
        return ComplexityTier.COMPLEX
    return ComplexityTier.VERY_COMPLEX


def fallback_template(requirement: str = "") -> str:
    """Pick a canned diagram whose theme matches the requirement keywords."""
    text = requirement.lower()
    for keywords, template in _TEMPLATE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return template
    return DEFAULT_TEMPLATE


def _repair_by_error(source: str, error_message: str) -> str:
    text = source
    if "Parse error" in error_message:
        text = _fix_reported_line(text, error_message)
    if "NODE_STRING" in error_message:
        text = _GLUED_NODE.sub("\\1\n\\2", text)
        text = _CONNECTOR_SPACING.sub(r" \1 ", text)
    if "LINK" in error_message or "ARROW" in error_message:
        text = _BROKEN_ARROW.sub(" --> ", text)
        text = _CONNECTOR_SPACING.sub(r" \1 ", text)
    return _cleanup(text)


def _fix_reported_line(source: str, error_message: str) -> str:
    match = _ERROR_LINE.search(error_message)
    lines = source.split("\n")
    if match is None or not 1 <= int(match.group(1)) <= len(lines):
        return source
    index = int(match.group(1)) - 1
    line = _GLUED_NODE_BEFORE_ARROW.sub("\\1\n\\2\\3", lines[index])
    line = _NON_ASCII_BARE_ID.sub(r"\1 ", line)
    lines[index] = "\n".join(
        re.sub(r"[ \t]+", " ", part).strip() for part in line.split("\n")
    )
    return "\n".join(lines)


def _cleanup(source: str) -> str:
    lines = (line.strip() for line in source.splitlines())
    kept = [line for line in lines if line and not line.startswith(("#", "%%"))]
    return re.sub(r"[ \t]{2,}", " ", "\n".join(kept))


def _scan_line(
    line: str,
    offset: int,
    stack: list[tuple[str, int]],
    issues: list[DiagramIssue],
) -> None:
    index = 0
    while index < len(line):
        pair = line[index : index + 2]
        char = line[index]
        if pair in _OPENERS:
            stack.append((pair, offset + index))
            index += 2
            continue
        if char in _OPENERS:
            stack.append((char, offset + index))
            index += 1
            continue
        if pair in _CLOSERS and stack and stack[-1][0] == _CLOSERS[pair]:
            stack.pop()
            index += 2
            continue
        if char in _CLOSERS:
            if stack and stack[-1][0] == _CLOSERS[char]:
                stack.pop()
            else:
                issues.append(
                    DiagramIssue(
                        kind=IssueKind.MALFORMED_SYNTAX,
                        message="Unmatched closing bracket",
                        detail=f"'{char}' at position {offset + index} has no opener",
                        position=offset + index,
                    )
                )
        index += 1


def _declaration_line(source: str) -> str | None:
    lines = iter(source.splitlines())
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("%%"):
            continue
        if line == "---":
            # Skip a front-matter block.
            for inner in lines:
                if inner.strip() == "---":
                    break
            continue
        return line
    return None


def _is_comment(line: str) -> bool:
    return line.lstrip().startswith("%%")


def _graph_lines(source: str) -> list[str]:
    lines = []
    for line in source.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("%%"):
            continue
        if stripped.startswith(_NON_GRAPH_PREFIXES):
            continue
        lines.append(line)
    return lines


def _without_edge_labels(line: str) -> str:
    """Drop edge label text so words inside labels never read as nodes."""
    line = _INLINE_EDGE_LABEL.sub(r"\1", line)
    return _EDGE_LABEL.sub(" ", line)


def _unique_node_ids(nodes: list[DiagramNode]) -> list[str]:
    return list(dict.fromkeys(node.id for node in nodes))


def _connector_style(op: str) -> str:
    if "." in op:
        return "dotted"
    if op.startswith("="):
        return "thick"
    if op.endswith(">"):
        return "arrow"
    return "line"


def _reindent(line: str) -> str:
    content = line.lstrip()
    width = len(line) - len(content)
    return "  " * (width // 2) + content


def _format_indentation(text: str) -> str:
    formatted: list[str] = []
    depth = 0
    declared = False
    for raw in text.split("\n"):
        line = raw.strip()
        if not line:
            formatted.append("")
            continue
        if not declared and not line.startswith("%%"):
            declared = True
            if any(pattern.match(line) for _, pattern in DIAGRAM_TYPES):
                formatted.append(line)
                continue
        if line == "end" and depth > 0:
            depth -= 1
        formatted.append("    " * (depth + 1) + line)
        if line.startswith("subgraph"):
            depth += 1
    return "\n".join(formatted)
