"""
Core data model for the diagram import engine.

Three identifier spaces never mix:
- ``DslId``       - tokens written in the DSL text, unique within one parse.
- shape indices   - positions in an ``ImportResult`` (``ShapeRef`` order).
- ``ShapeId`` / ``ConnectorId`` - identifiers assigned by the diagram store.

Parse and layout objects are ephemeral; ``Shape``/``Connector``/``Diagram``
mirror what the store persists.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, NewType, Optional, Union


DslId = NewType("DslId", str)
ShapeId = NewType("ShapeId", str)
ConnectorId = NewType("ConnectorId", str)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DiagramType(str, Enum):
    """Diagram families the importer understands."""
    BPMN = "bpmn"
    ARCHITECTURE = "architecture"


class NodeKind(str, Enum):
    # hierarchical family
    GROUP = "group"
    SERVICE = "service"
    # flow family
    TASK = "task"
    EVENT = "event"
    GATEWAY = "gateway"
    SUBPROCESS = "subprocess"

    @property
    def is_container(self) -> bool:
        return self is NodeKind.GROUP


# ---------------------------------------------------------------------------
# Parse output
# ---------------------------------------------------------------------------

@dataclass
class ParsedNode:
    """A node declared in DSL text."""
    id: DslId
    label: str
    kind: NodeKind
    icon: Optional[str] = None
    parent: Optional[DslId] = None
    subtype: Optional[str] = None

    @property
    def is_tagged_start(self) -> bool:
        """Explicit start event, ordered first among flow start nodes."""
        return self.kind is NodeKind.EVENT and self.subtype == "start"


@dataclass
class ParsedConnection:
    """A directed edge between two DSL ids."""
    source_id: DslId
    target_id: DslId
    source_dir: Optional[str] = None
    target_dir: Optional[str] = None
    bidirectional: bool = False
    label: Optional[str] = None
    line_type: str = "solid"
    marker_end: str = "arrow"


@dataclass
class LineDiagnostic:
    """A DSL line the parser skipped."""
    line_number: int
    text: str
    reason: str = "unrecognized line"


@dataclass
class ParseResult:
    nodes: list[ParsedNode] = field(default_factory=list)
    connections: list[ParsedConnection] = field(default_factory=list)
    diagnostics: list[LineDiagnostic] = field(default_factory=list)
    direction: Optional[str] = None


def node_index(nodes: Iterable[Union[ParsedNode, LayoutNode]]) -> dict[str, int]:
    """Map each DSL id to the position of its first declaration."""
    index: dict[str, int] = {}
    for i, node in enumerate(nodes):
        index.setdefault(node.id, i)
    return index


# ---------------------------------------------------------------------------
# Layout output
# ---------------------------------------------------------------------------

@dataclass
class LayoutNode:
    """A parsed node with an absolute, axis-aligned box."""
    id: DslId
    label: str
    kind: NodeKind
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0
    icon: Optional[str] = None
    parent: Optional[DslId] = None
    subtype: Optional[str] = None

    @classmethod
    def from_parsed(
        cls,
        node: ParsedNode,
        width: float = 0,
        height: float = 0,
    ) -> LayoutNode:
        return cls(
            id=node.id,
            label=node.label,
            kind=node.kind,
            width=width,
            height=height,
            icon=node.icon,
            parent=node.parent,
            subtype=node.subtype,
        )

    @property
    def bounds(self) -> Bounds:
        return Bounds(self.x, self.y, self.width, self.height)


# ---------------------------------------------------------------------------
# Projection (index space)
# ---------------------------------------------------------------------------

@dataclass
class ShapeRef:
    """Creation payload for one shape; parent expressed as an index."""
    type: str
    x: float
    y: float
    width: float
    height: float
    label: Optional[str] = None
    subtype: Optional[str] = None
    z_index: int = 0
    locked: bool = False
    is_preview: bool = False
    data: Optional[dict[str, Any]] = None
    parent_index: Optional[int] = None

    def to_shape(self, is_preview: Optional[bool] = None) -> Shape:
        """Build a store payload (no identifier, no parent yet)."""
        return Shape(
            type=self.type,
            subtype=self.subtype,
            x=self.x,
            y=self.y,
            width=self.width,
            height=self.height,
            label=self.label,
            z_index=self.z_index,
            locked=self.locked,
            is_preview=self.is_preview if is_preview is None else is_preview,
            data=dict(self.data) if self.data else None,
        )


@dataclass
class ConnectorRef:
    """Creation payload for one connector; endpoints expressed as indices."""
    from_shape_index: int
    to_shape_index: int
    type: str
    style: str = "orthogonal"
    marker_start: str = "none"
    marker_end: str = "arrow"
    line_type: str = "solid"
    label: Optional[str] = None
    source_connection_point: Optional[str] = None
    target_connection_point: Optional[str] = None
    z_index: int = 0


@dataclass
class ImportMetadata:
    diagram_type: str
    node_count: int
    edge_count: int
    imported_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class ImportResult:
    shapes: list[ShapeRef]
    connectors: list[ConnectorRef]
    metadata: ImportMetadata
    dropped: int = 0

    def bounding_box(self) -> Optional[Bounds]:
        return bounding_box(
            Bounds(s.x, s.y, s.width, s.height) for s in self.shapes
        )


# ---------------------------------------------------------------------------
# Store-side entities
# ---------------------------------------------------------------------------

@dataclass
class Shape:
    """A persisted (or to-be-persisted) diagram shape."""
    type: str
    x: float
    y: float
    width: float
    height: float
    id: Optional[ShapeId] = None
    subtype: Optional[str] = None
    label: Optional[str] = None
    z_index: int = 0
    locked: bool = False
    is_preview: bool = False
    parent_id: Optional[ShapeId] = None
    children: list[ShapeId] = field(default_factory=list)
    data: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "subtype": self.subtype,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "label": self.label,
            "z_index": self.z_index,
            "locked": self.locked,
            "is_preview": self.is_preview,
            "parent_id": self.parent_id,
            "children": list(self.children),
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Shape:
        return cls(
            id=raw.get("id"),
            type=raw["type"],
            subtype=raw.get("subtype"),
            x=float(raw["x"]),
            y=float(raw["y"]),
            width=float(raw["width"]),
            height=float(raw["height"]),
            label=raw.get("label"),
            z_index=int(raw.get("z_index", 0)),
            locked=bool(raw.get("locked", False)),
            is_preview=bool(raw.get("is_preview", False)),
            parent_id=raw.get("parent_id"),
            children=list(raw.get("children") or []),
            data=raw.get("data"),
        )


@dataclass
class Connector:
    """A persisted (or to-be-persisted) connector between two shapes."""
    type: str
    source_shape_id: ShapeId
    target_shape_id: ShapeId
    id: Optional[ConnectorId] = None
    style: str = "orthogonal"
    marker_start: str = "none"
    marker_end: str = "arrow"
    line_type: str = "solid"
    label: Optional[str] = None
    source_connection_point: Optional[str] = None
    target_connection_point: Optional[str] = None
    z_index: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source_shape_id": self.source_shape_id,
            "target_shape_id": self.target_shape_id,
            "style": self.style,
            "marker_start": self.marker_start,
            "marker_end": self.marker_end,
            "line_type": self.line_type,
            "label": self.label,
            "source_connection_point": self.source_connection_point,
            "target_connection_point": self.target_connection_point,
            "z_index": self.z_index,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Connector:
        return cls(
            id=raw.get("id"),
            type=raw["type"],
            source_shape_id=raw["source_shape_id"],
            target_shape_id=raw["target_shape_id"],
            style=raw.get("style", "orthogonal"),
            marker_start=raw.get("marker_start", "none"),
            marker_end=raw.get("marker_end", "arrow"),
            line_type=raw.get("line_type", "solid"),
            label=raw.get("label"),
            source_connection_point=raw.get("source_connection_point"),
            target_connection_point=raw.get("target_connection_point"),
            z_index=int(raw.get("z_index", 0)),
        )


@dataclass
class Diagram:
    """Ordered collection of shapes and connectors owned by the store."""
    id: str
    type: str = DiagramType.BPMN.value
    name: str = "Untitled"
    shapes: list[Shape] = field(default_factory=list)
    connectors: list[Connector] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "shapes": [s.to_dict() for s in self.shapes],
            "connectors": [c.to_dict() for c in self.connectors],
        }


PREVIEW_SHAPE_TYPE = "llm-preview"


@dataclass
class PreviewData:
    """Payload stored on a preview container shape."""
    dsl_text: str
    generator_shape_id: str = ""
    preview_shape_ids: list[ShapeId] = field(default_factory=list)
    preview_connector_ids: list[ConnectorId] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dsl_text": self.dsl_text,
            "generator_shape_id": self.generator_shape_id,
            "preview_shape_ids": list(self.preview_shape_ids),
            "preview_connector_ids": list(self.preview_connector_ids),
        }

    @classmethod
    def from_shape(cls, shape: Optional[Shape]) -> Optional[PreviewData]:
        """Recover preview data from a container shape, if it holds any."""
        if shape is None or not isinstance(shape.data, dict):
            return None
        data = shape.data
        shape_ids = data.get("preview_shape_ids")
        connector_ids = data.get("preview_connector_ids")
        if not isinstance(shape_ids, list) or not isinstance(connector_ids, list):
            return None
        return cls(
            dsl_text=str(data.get("dsl_text", "")),
            generator_shape_id=str(data.get("generator_shape_id", "")),
            preview_shape_ids=list(shape_ids),
            preview_connector_ids=list(connector_ids),
        )


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

@dataclass
class Bounds:
    """Axis-aligned bounding box."""
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def cx(self) -> float:
        return self.x + self.width / 2

    @property
    def cy(self) -> float:
        return self.y + self.height / 2

    def contains(self, other: Bounds, margin: float = 0) -> bool:
        """True when *other* lies fully inside this box shrunk by *margin*."""
        return (
            other.x >= self.x + margin
            and other.y >= self.y + margin
            and other.right <= self.right - margin
            and other.bottom <= self.bottom - margin
        )

    def intersects(self, other: Bounds, margin: float = 0) -> bool:
        return not (
            self.right + margin <= other.x
            or other.right + margin <= self.x
            or self.bottom + margin <= other.y
            or other.bottom + margin <= self.y
        )

    def expanded(self, margin: float) -> Bounds:
        return Bounds(
            self.x - margin,
            self.y - margin,
            self.width + 2 * margin,
            self.height + 2 * margin,
        )


def bounding_box(boxes) -> Optional[Bounds]:
    """Smallest box enclosing every box in *boxes*, or None when empty."""
    boxes = list(boxes)
    if not boxes:
        return None
    min_x = min(b.x for b in boxes)
    min_y = min(b.y for b in boxes)
    max_x = max(b.right for b in boxes)
    max_y = max(b.bottom for b in boxes)
    return Bounds(min_x, min_y, max_x - min_x, max_y - min_y)
