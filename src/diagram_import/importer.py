"""
Projection of parsed, laid-out graphs into store creation payloads.

An importer runs parse -> layout -> projection for one diagram family and
returns an ``ImportResult`` whose shapes and connectors refer to each other
by position (``parent_index``, ``from_shape_index``, ``to_shape_index``),
never by DSL id or store id.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional, Sequence

from diagram_import.config import ImportOptions
from diagram_import.errors import FormatError, UnresolvedReferenceError
from diagram_import.layout import center_on_point
from diagram_import.layout_engine import layout_flow_graph, layout_hierarchy
from diagram_import.models import (
    ConnectorRef,
    DiagramType,
    ImportMetadata,
    ImportResult,
    LayoutNode,
    NodeKind,
    ParsedConnection,
    ParsedNode,
    ParseResult,
    ShapeRef,
    node_index,
)
from diagram_import.parser import get_parser

logger = logging.getLogger("diagram-import.importer")


# Direction letters (mermaid and compass) -> connection point names
CONNECTION_POINTS = {
    "T": "top", "N": "top",
    "B": "bottom", "S": "bottom",
    "L": "left", "W": "left",
    "R": "right", "E": "right",
}

_BPMN_SHAPE_TYPES = {
    NodeKind.TASK: "bpmn-task",
    NodeKind.EVENT: "bpmn-event",
    NodeKind.GATEWAY: "bpmn-gateway",
    NodeKind.SUBPROCESS: "bpmn-subprocess",
}

DEFAULT_SERVICE_SUBTYPE = "server"


def connection_point(direction: Optional[str]) -> Optional[str]:
    if not direction:
        return None
    return CONNECTION_POINTS.get(direction.upper())


class BaseImporter:
    """parse -> layout -> projection for one diagram family."""

    diagram_type: str = ""

    def __init__(self, options: Optional[ImportOptions] = None) -> None:
        self.options = options or ImportOptions()

    def parse(self, text: str) -> ParseResult:
        return get_parser(self.diagram_type).parse(text, strict=self.options.strict)

    def import_text(self, text: str) -> ImportResult:
        """Run the whole pipeline. Raises ``FormatError`` on a bad header."""
        parsed = self.parse(text)
        nodes = self.layout(parsed)

        index = node_index(nodes)

        shapes = [self.shape_ref(node, index) for node in nodes]
        self.place(shapes)

        connectors: list[ConnectorRef] = []
        dropped = 0
        for conn in parsed.connections:
            try:
                source, target = self.resolve(conn, index)
            except UnresolvedReferenceError as exc:
                logger.warning("Dropping connection: %s", exc.message)
                dropped += 1
                continue
            connectors.append(self.connector_ref(conn, source, target))

        metadata = ImportMetadata(
            diagram_type=self.diagram_type,
            node_count=len(shapes),
            edge_count=len(connectors),
        )
        logger.debug(
            "Imported %s: %d shapes, %d connectors, %d dropped",
            self.diagram_type, len(shapes), len(connectors), dropped,
        )
        return ImportResult(shapes, connectors, metadata, dropped=dropped)

    @staticmethod
    def resolve(conn: ParsedConnection, index: dict[str, int]) -> tuple[int, int]:
        source = index.get(conn.source_id)
        target = index.get(conn.target_id)
        if source is None or target is None:
            raise UnresolvedReferenceError(conn.source_id, conn.target_id)
        return source, target

    # ----- family hooks -----

    def layout(self, parsed: ParseResult) -> list[LayoutNode]:
        raise NotImplementedError

    def shape_ref(self, node: LayoutNode, index: dict[str, int]) -> ShapeRef:
        raise NotImplementedError

    def connector_ref(self, conn: ParsedConnection, source: int, target: int) -> ConnectorRef:
        raise NotImplementedError

    def place(self, shapes: list[ShapeRef]) -> None:
        """Final translation of the projected shapes (in place)."""


# ---------------------------------------------------------------------------
# Flow family
# ---------------------------------------------------------------------------

def assign_event_subtypes(
    nodes: Sequence[ParsedNode],
    connections: Sequence[ParsedConnection],
) -> list[ParsedNode]:
    """Give events without an explicit start/end subtype one by position.

    No incoming edge -> ``start``; otherwise no outgoing edge -> ``end``;
    otherwise ``intermediate``.
    """
    has_incoming = {c.target_id for c in connections}
    has_outgoing = {c.source_id for c in connections}
    result: list[ParsedNode] = []
    for node in nodes:
        if node.kind is NodeKind.EVENT and node.subtype not in ("start", "end"):
            if node.id not in has_incoming:
                subtype = "start"
            elif node.id not in has_outgoing:
                subtype = "end"
            else:
                subtype = "intermediate"
            node = replace(node, subtype=subtype)
        result.append(node)
    return result


class FlowImporter(BaseImporter):
    """BPMN diagrams from flowchart text."""

    diagram_type = DiagramType.BPMN.value

    def layout(self, parsed: ParseResult) -> list[LayoutNode]:
        nodes = assign_event_subtypes(parsed.nodes, parsed.connections)
        return layout_flow_graph(
            nodes, parsed.connections, self.options.flow, self.options.dimensions,
        )

    def shape_ref(self, node: LayoutNode, index: dict[str, int]) -> ShapeRef:
        return ShapeRef(
            type=_BPMN_SHAPE_TYPES.get(node.kind, "bpmn-task"),
            subtype=node.subtype,
            x=node.x,
            y=node.y,
            width=node.width,
            height=node.height,
            label=node.label,
        )

    def connector_ref(self, conn: ParsedConnection, source: int, target: int) -> ConnectorRef:
        return ConnectorRef(
            from_shape_index=source,
            to_shape_index=target,
            type="bpmn-sequence-flow",
            marker_end=conn.marker_end,
            line_type=conn.line_type,
            label=conn.label,
        )

    def place(self, shapes: list[ShapeRef]) -> None:
        center_on_point(shapes, self.options.center_point)


# ---------------------------------------------------------------------------
# Hierarchical family
# ---------------------------------------------------------------------------

class ArchitectureImporter(BaseImporter):
    """Architecture diagrams: groups containing services."""

    diagram_type = DiagramType.ARCHITECTURE.value

    def layout(self, parsed: ParseResult) -> list[LayoutNode]:
        return layout_hierarchy(parsed.nodes, self.options.hierarchy)

    def shape_ref(self, node: LayoutNode, index: dict[str, int]) -> ShapeRef:
        is_group = node.kind.is_container
        return ShapeRef(
            type="architecture-group" if is_group else "architecture-service",
            subtype=None if is_group else (node.icon or DEFAULT_SERVICE_SUBTYPE),
            x=node.x,
            y=node.y,
            width=node.width,
            height=node.height,
            label=node.label,
            data={"icon": node.icon} if node.icon else None,
            parent_index=index.get(node.parent) if node.parent else None,
        )

    def connector_ref(self, conn: ParsedConnection, source: int, target: int) -> ConnectorRef:
        return ConnectorRef(
            from_shape_index=source,
            to_shape_index=target,
            type="bidirectional-edge" if conn.bidirectional else "directed-edge",
            marker_start="arrow" if conn.bidirectional else "none",
            source_connection_point=connection_point(conn.source_dir),
            target_connection_point=connection_point(conn.target_dir),
        )

    def place(self, shapes: list[ShapeRef]) -> None:
        if self.options.center_hierarchy:
            center_on_point(shapes, self.options.center_point)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_IMPORTERS: dict[str, type[BaseImporter]] = {
    DiagramType.BPMN.value: FlowImporter,
    DiagramType.ARCHITECTURE.value: ArchitectureImporter,
}


def get_importer(diagram_type: str, options: Optional[ImportOptions] = None) -> BaseImporter:
    """Return the importer for *diagram_type* or raise ``FormatError``."""
    key = diagram_type.value if isinstance(diagram_type, DiagramType) else str(diagram_type).lower()
    importer_cls = _IMPORTERS.get(key)
    if importer_cls is None:
        raise FormatError(f"No importer found for diagram type: {diagram_type}")
    return importer_cls(options)


def import_dsl(
    text: str,
    diagram_type: str,
    options: Optional[ImportOptions] = None,
) -> ImportResult:
    """Parse, lay out and project *text* in one call."""
    return get_importer(diagram_type, options).import_text(text)
