"""
Line-oriented parsers for the diagram DSLs.

Each family has a fixed header token. After the header, every line is tried
first as a connection and then as a node definition; the first match wins.
Lines that match neither are skipped and reported as diagnostics, unless the
caller asked for strict parsing.

Grammars:
  flow (bpmn)          flowchart LR
                       A((Start)) --> B[Review]
                       B -->|ok| C{Approved?}
  hierarchical         architecture-beta
  (architecture)       group api(cloud)[API Layer]
                       service db(database)[Database] in api
                       db:R --> L:web
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from diagram_import.errors import FormatError
from diagram_import.models import (
    DiagramType,
    DslId,
    LineDiagnostic,
    NodeKind,
    ParsedConnection,
    ParsedNode,
    ParseResult,
)

logger = logging.getLogger("diagram-import.parser")

COMMENT_MARKER = "%%"


class BaseDslParser:
    """Shared driver: header check, comment stripping, per-line dispatch."""

    diagram_type: str = ""
    headers: tuple[str, ...] = ()

    def validate(self, text: str) -> str:
        """Return the header line, or raise ``FormatError``."""
        if not isinstance(text, str) or not text.strip():
            raise FormatError("Empty DSL text")
        header = next(
            (line for _, line in self._content_lines(text)),
            "",
        )
        if not any(header == h or header.startswith(h + " ") for h in self.headers):
            expected = " or ".join(repr(h) for h in self.headers)
            raise FormatError(
                f"Incorrect format for {self.diagram_type} diagram. "
                f"Expected {expected} header."
            )
        return header

    def parse(self, text: str, strict: bool = False) -> ParseResult:
        header = self.validate(text)
        result = ParseResult(direction=self._direction(header))
        seen: dict[DslId, ParsedNode] = {}
        header_seen = False

        for line_number, line in self._content_lines(text):
            if not header_seen:
                header_seen = True
                continue
            for statement in self._statements(line):
                if not self._parse_statement(statement, result, seen):
                    if strict:
                        raise FormatError(f"unrecognized line '{statement}'", line_number)
                    result.diagnostics.append(LineDiagnostic(line_number, statement))

        logger.debug(
            "Parsed %s DSL: %d nodes, %d connections, %d skipped lines",
            self.diagram_type, len(result.nodes), len(result.connections),
            len(result.diagnostics),
        )
        return result

    # ----- hooks -----

    def _parse_statement(
        self,
        statement: str,
        result: ParseResult,
        seen: dict[DslId, ParsedNode],
    ) -> bool:
        raise NotImplementedError

    def _direction(self, header: str) -> Optional[str]:
        return None

    def _statements(self, line: str) -> list[str]:
        return [line]

    # ----- helpers -----

    @staticmethod
    def _add_node(
        node: ParsedNode,
        result: ParseResult,
        seen: dict[DslId, ParsedNode],
    ) -> None:
        # First definition wins; later references never relabel a node.
        if node.id not in seen:
            seen[node.id] = node
            result.nodes.append(node)

    @staticmethod
    def _content_lines(text: str):
        """Yield (1-based line number, stripped line) for non-comment lines."""
        for number, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith(COMMENT_MARKER):
                continue
            yield number, line


# ===================================================================
# Flow family (BPMN, flowchart text)
# ===================================================================

_FLOW_ARROW = re.compile(r"\s+(-\.->|-\.-|-->|---)\s*(?:\|([^|]*)\|)?\s*")

# Order matters: quoted before unquoted, triple circle before circle
# before rounded rectangle.
_FLOW_NODE_PATTERNS: list[tuple[re.Pattern[str], NodeKind, Optional[str]]] = [
    (re.compile(r'^([A-Za-z0-9_]+)\[\s*"([^"]*)"\s*\]$'), NodeKind.TASK, "user"),
    (re.compile(r"^([A-Za-z0-9_]+)\[\s*([^\]]*)\s*\]$"), NodeKind.TASK, "user"),
    (re.compile(r'^([A-Za-z0-9_]+)\(\(\(\s*"?([^")]*)"?\s*\)\)\)$'), NodeKind.EVENT, "end"),
    (re.compile(r'^([A-Za-z0-9_]+)\(\(\s*"?([^")]*)"?\s*\)\)$'), NodeKind.EVENT, None),
    (re.compile(r'^([A-Za-z0-9_]+)\{\s*"([^"]*)"\s*\}$'), NodeKind.GATEWAY, "exclusive"),
    (re.compile(r"^([A-Za-z0-9_]+)\{\s*([^}]*)\s*\}$"), NodeKind.GATEWAY, "exclusive"),
    (re.compile(r'^([A-Za-z0-9_]+)\(\s*"?([^")]*)"?\s*\)$'), NodeKind.SUBPROCESS, "subprocess"),
]
_BARE_ID = re.compile(r"^([A-Za-z0-9_]+)$")
_FLOW_DIRECTION = re.compile(r"^(?:flowchart|graph)\s+(TD|TB|BT|RL|LR)\b", re.IGNORECASE)

# Flowchart statements that are not nodes when written on their own.
_FLOW_KEYWORDS = {
    "end", "subgraph", "direction", "classDef", "class", "style",
    "linkStyle", "click",
}


def unsanitize_text(text: str) -> str:
    """Restore characters the exporter escaped."""
    return text.replace("#quot;", '"').strip()


def remove_quotes(text: str) -> str:
    trimmed = text.strip()
    if len(trimmed) >= 2 and trimmed[0] == trimmed[-1] and trimmed[0] in "\"'":
        return trimmed[1:-1]
    return trimmed


class FlowDslParser(BaseDslParser):
    """Parser for flowchart text describing a BPMN process."""

    diagram_type = DiagramType.BPMN.value
    headers = ("flowchart", "graph")

    def _direction(self, header: str) -> Optional[str]:
        match = _FLOW_DIRECTION.match(header)
        return match.group(1).upper() if match else None

    def _statements(self, line: str) -> list[str]:
        """Split on ';' outside quotes and brackets."""
        parts: list[str] = []
        depth = 0
        quoted = False
        current: list[str] = []
        for ch in line:
            if ch == '"':
                quoted = not quoted
            elif not quoted and ch in "[({":
                depth += 1
            elif not quoted and ch in "])}" and depth > 0:
                depth -= 1
            if ch == ";" and depth == 0 and not quoted:
                parts.append("".join(current))
                current = []
                continue
            current.append(ch)
        parts.append("".join(current))
        return [p.strip() for p in parts if p.strip()]

    def _parse_statement(
        self,
        statement: str,
        result: ParseResult,
        seen: dict[DslId, ParsedNode],
    ) -> bool:
        chain = self.parse_connection_line(statement)
        if chain is not None:
            nodes, connections = chain
            for node in nodes:
                self._add_node(node, result, seen)
            result.connections.extend(connections)
            return True

        if _BARE_ID.match(statement) and statement in _FLOW_KEYWORDS:
            return False
        node = self.parse_node_definition(statement)
        if node is not None:
            self._add_node(node, result, seen)
            return True
        return False

    def parse_connection_line(
        self, line: str,
    ) -> Optional[tuple[list[ParsedNode], list[ParsedConnection]]]:
        """Parse ``A --> B`` (optionally chained / labelled) into nodes and edges."""
        parts = _FLOW_ARROW.split(line)
        # [node, arrow, label, node, arrow, label, node, ...]
        if len(parts) < 4 or (len(parts) - 1) % 3 != 0:
            return None

        nodes: list[ParsedNode] = []
        for expr in parts[0::3]:
            node = self.parse_node_definition(expr.strip())
            if node is None:
                return None
            nodes.append(node)

        connections: list[ParsedConnection] = []
        for i, (arrow, label) in enumerate(zip(parts[1::3], parts[2::3])):
            text = unsanitize_text(remove_quotes(label)) if label else ""
            connections.append(ParsedConnection(
                source_id=nodes[i].id,
                target_id=nodes[i + 1].id,
                label=text or None,
                line_type="dashed" if "-." in arrow else "solid",
                marker_end="arrow" if ">" in arrow else "none",
            ))
        return nodes, connections

    def parse_node_definition(self, expr: str) -> Optional[ParsedNode]:
        """Parse ``id[label]``, ``id((label))``, ``id{label}`` ... or a bare id."""
        for pattern, kind, subtype in _FLOW_NODE_PATTERNS:
            match = pattern.match(expr)
            if not match:
                continue
            label = unsanitize_text(remove_quotes(match.group(2)))
            if kind is NodeKind.EVENT and subtype is None:
                lowered = label.lower()
                if "start" in lowered:
                    subtype = "start"
                elif "end" in lowered:
                    subtype = "end"
            return ParsedNode(
                id=DslId(match.group(1)),
                label=label,
                kind=kind,
                subtype=subtype,
            )

        match = _BARE_ID.match(expr)
        if match:
            return ParsedNode(
                id=DslId(match.group(1)),
                label=match.group(1),
                kind=NodeKind.TASK,
                subtype="user",
            )
        return None


# ===================================================================
# Hierarchical family (architecture)
# ===================================================================

_ARCH_NODE = re.compile(
    r"^(group|service)\s+(\w+)(?:\(([\w:-]+)\))?\[([^\]]+)\](?:\s+in\s+(\w+))?"
)
_ARCH_EDGE = re.compile(
    r"^(\w+)(?::([TBLRNSEW]))?\s+(<-->|<--|-->)\s+(?:([TBLRNSEW]):)?(\w+)"
)


class ArchitectureDslParser(BaseDslParser):
    """Parser for architecture text (groups containing services)."""

    diagram_type = DiagramType.ARCHITECTURE.value
    headers = ("architecture-beta",)

    def _parse_statement(
        self,
        statement: str,
        result: ParseResult,
        seen: dict[DslId, ParsedNode],
    ) -> bool:
        connection = self.parse_connection_line(statement)
        if connection is not None:
            result.connections.append(connection)
            return True
        node = self.parse_node_definition(statement)
        if node is not None:
            self._add_node(node, result, seen)
            return True
        return False

    @staticmethod
    def parse_node_definition(line: str) -> Optional[ParsedNode]:
        """``group api(cloud)[API Layer]`` / ``service db(database)[DB] in api``."""
        match = _ARCH_NODE.match(line)
        if not match:
            return None
        kind_token, node_id, icon, label, parent = match.groups()
        return ParsedNode(
            id=DslId(node_id),
            label=label.strip(),
            kind=NodeKind(kind_token),
            icon=icon,
            parent=DslId(parent) if parent else None,
        )

    @staticmethod
    def parse_connection_line(line: str) -> Optional[ParsedConnection]:
        """``a:R --> L:b``; ``<--`` is stored in flow direction (b to a)."""
        match = _ARCH_EDGE.match(line)
        if not match:
            return None
        left_id, left_dir, arrow, right_dir, right_id = match.groups()
        if arrow == "<--":
            return ParsedConnection(
                source_id=DslId(right_id),
                target_id=DslId(left_id),
                source_dir=right_dir,
                target_dir=left_dir,
            )
        return ParsedConnection(
            source_id=DslId(left_id),
            target_id=DslId(right_id),
            source_dir=left_dir,
            target_dir=right_dir,
            bidirectional=arrow == "<-->",
        )


# ===================================================================
# Registry
# ===================================================================

_PARSERS: dict[str, type[BaseDslParser]] = {
    DiagramType.BPMN.value: FlowDslParser,
    DiagramType.ARCHITECTURE.value: ArchitectureDslParser,
}


def get_parser(diagram_type: str) -> BaseDslParser:
    """Return a fresh parser for *diagram_type* or raise ``FormatError``."""
    key = diagram_type.value if isinstance(diagram_type, DiagramType) else str(diagram_type).lower()
    parser_cls = _PARSERS.get(key)
    if parser_cls is None:
        raise FormatError(f"No DSL parser for diagram type: {diagram_type}")
    return parser_cls()


def parse_dsl(text: str, diagram_type: str, strict: bool = False) -> ParseResult:
    """Parse *text* as the given diagram family."""
    return get_parser(diagram_type).parse(text, strict=strict)
