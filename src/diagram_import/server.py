"""
Diagram Import MCP Server: turn diagram DSL text into laid-out, undoable
diagram content via Model Context Protocol.

Tools:
  1. diagram (lifecycle): create, list, get
  2. preview (content): paste, update, apply, restore
  3. history (undo): undo, list
  4. inspect (read-only): parse, layout
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP

from diagram_import.commands import CommandFactory, CommandHistory
from diagram_import.config import ImportOptions
from diagram_import.errors import DiagramImportError
from diagram_import.importer import import_dsl
from diagram_import.models import Connector, DiagramType, Shape, ShapeId
from diagram_import.parser import parse_dsl
from diagram_import.store import InMemoryDiagramStore
from diagram_import.validation import (
    ValidationError,
    validate_action,
    validate_bool,
    validate_box,
    validate_connector_dict,
    validate_dict,
    validate_diagram_type,
    validate_list,
    validate_non_empty_string,
    validate_point,
    validate_shape_dict,
    validate_string,
    _DIAGRAM_ACTIONS,
    _HISTORY_ACTIONS,
    _INSPECT_ACTIONS,
    _PREVIEW_ACTIONS,
)

# ---------------------------------------------------------------------------
# Logging: suppress routine FastMCP INFO messages that VS Code shows
# as warnings (they go to stderr which VS Code labels [warning]).
# ---------------------------------------------------------------------------
logging.getLogger("mcp.server").setLevel(logging.WARNING)
logger = logging.getLogger("diagram-import")

# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------
mcp = FastMCP(
    "diagram-import-mcp",
    instructions=(
        "MCP server that imports diagram DSL text as laid-out diagram content.\n\n"
        "=== 4 TOOLS: use the 'action' parameter to pick the operation ===\n\n"
        "1. diagram(action, ...): create, list, get.\n"
        "2. preview(action, ...): paste (import text as a preview),\n"
        "   update (replace an editor shape / old preview), apply (make a\n"
        "   preview regular content), restore (re-insert a saved snapshot).\n"
        "3. history(action, ...): undo the latest command, list the stack.\n"
        "4. inspect(action, ...): read-only; parse (nodes, connections,\n"
        "   skipped lines), layout (positioned shapes without storing them).\n\n"
        "=== DSL FAMILIES ===\n"
        "- bpmn: header 'flowchart LR' or 'graph TD'; A[Task] --> B{Gateway}.\n"
        "- architecture: header 'architecture-beta';\n"
        "  group api(cloud)[API] / service db(database)[DB] in api / db:R --> L:web.\n"
        "Read the resource diagram-import://guide/dsl for the full grammar.\n"
    ),
)

# In-memory store shared by all tools; commands are serialised per diagram
# by the history.
_store = InMemoryDiagramStore()
_history = CommandHistory()
_factory = CommandFactory(_store)


# ===================================================================
# RESOURCES
# ===================================================================

@mcp.resource("diagram-import://guide/dsl")
def dsl_guide() -> str:
    """Grammar reference for both DSL families."""
    return """# Diagram DSL Guide

Lines starting with %% are comments. Blank lines are ignored. Unrecognised
lines are skipped (use inspect(action='parse', strict=true) to find them).

## bpmn (flow)

Header: `flowchart <dir>` or `graph <dir>` (dir: TD, TB, BT, RL, LR).

| Syntax            | Shape                               |
|-------------------|-------------------------------------|
| `A[Label]`        | task                                |
| `A((Label))`      | event (start/end from label or flow) |
| `A(((Label)))`    | end event                           |
| `A{Label}`        | exclusive gateway                   |
| `A(Label)`        | subprocess                          |
| `A`               | task labelled "A"                   |

Arrows: `-->` solid, `---` no arrow head, `-.->` dotted, `-.-` dotted without
head. Labels: `A -->|yes| B`. Chains: `A --> B --> C`. Several statements
may share a line separated by `;`.

## architecture (hierarchical)

Header: `architecture-beta`.

    group <id>(<icon>)[<label>] [in <parent>]
    service <id>(<icon>)[<label>] [in <parent>]
    <id>[:<dir>] --> [<dir>:]<id>       (also <-- and <-->)

Directions: T/B/L/R or N/S/E/W.
"""


def _error(exc: Exception) -> str:
    message = getattr(exc, "message", str(exc))
    logger.debug("Tool call failed: %s", message)
    return f"Error: {message}"


# ===================================================================
# TOOL 1: diagram (lifecycle)
# ===================================================================

@mcp.tool()
async def diagram(
    action: str,
    diagram_type: str = "bpmn",
    name: str = "Untitled",
    diagram_id: str = "",
) -> str:
    """Diagram lifecycle management.

    Actions:
      create: Create an empty diagram. Params: diagram_type, name.
      list:   List diagrams with shape/connector counts.
      get:    Full JSON of one diagram. Params: diagram_id.

    Args:
        action: One of: create, list, get.
        diagram_type: bpmn or architecture (create only).
        name: Display name (create only).
        diagram_id: Target diagram (get only).

    Returns:
        JSON for every action, or an "Error: ..." string.
    """
    try:
        action = validate_action(action, "diagram", _DIAGRAM_ACTIONS)
    except ValidationError as exc:
        return _error(exc)

    if action == "create":
        try:
            diagram_type = validate_diagram_type(diagram_type)
            name = validate_non_empty_string(name, "name")
        except ValidationError as exc:
            return _error(exc)
        created = await _store.create_diagram(diagram_type, name)
        return json.dumps({"id": created.id, "type": created.type, "name": created.name})

    if action == "list":
        diagrams = await _store.list_diagrams()
        return json.dumps([
            {
                "id": d.id,
                "type": d.type,
                "name": d.name,
                "shapes": len(d.shapes),
                "connectors": len(d.connectors),
            }
            for d in diagrams
        ], indent=2)

    # get
    try:
        diagram_id = validate_non_empty_string(diagram_id, "diagram_id")
        found = await _store.get_diagram(diagram_id)
    except (ValidationError, DiagramImportError) as exc:
        return _error(exc)
    return json.dumps(found.to_dict(), indent=2)


# ===================================================================
# TOOL 2: preview (import content)
# ===================================================================

@mcp.tool()
async def preview(
    action: str,
    diagram_id: str,
    text: str = "",
    diagram_type: str = "",
    position: Optional[dict[str, Any]] = None,
    editor_shape_id: str = "",
    editor_bounds: Optional[dict[str, Any]] = None,
    generator_shape_id: str = "",
    old_preview_id: str = "",
    preview_shape_id: str = "",
    shapes: Optional[list[dict[str, Any]]] = None,
    connectors: Optional[list[dict[str, Any]]] = None,
    layout_options: Optional[dict[str, Any]] = None,
) -> str:
    """Import DSL text into a diagram as undoable preview content.

    Actions:
      paste:   Import text as a preview centred on position.
                Params: text, position {x, y}, diagram_type, layout_options.
      update:  Replace an editor shape (and an older preview) with a new
                preview. Params: text, editor_shape_id, editor_bounds
                {x, y, width, height}, generator_shape_id, old_preview_id.
      apply:   Turn a preview into regular content. Params: preview_shape_id.
      restore: Re-insert shapes/connectors with known ids (e.g. from
                diagram(action='get')). Params: shapes, connectors.

    Args:
        action: One of: paste, update, apply, restore.
        diagram_id: Target diagram.
        text: DSL text (paste/update).
        diagram_type: bpmn or architecture; defaults to the diagram's type.
        position: Paste centre {x, y}; defaults to the origin.
        editor_shape_id: Shape holding the text being edited (update).
        editor_bounds: Box of the editor shape (update).
        generator_shape_id: Shape that generated the text (update).
        old_preview_id: Preview container to replace (update).
        preview_shape_id: Preview container to apply (apply).
        shapes: Shape dicts with ids (restore).
        connectors: Connector dicts with ids (restore).
        layout_options: Layout overrides, e.g. {"horizontal_spacing": 150}
                        for bpmn or {"max_grid_columns": 2} for architecture.

    Returns:
        JSON with the created store ids, or an "Error: ..." string.
    """
    try:
        action = validate_action(action, "preview", _PREVIEW_ACTIONS)
        diagram_id = validate_non_empty_string(diagram_id, "diagram_id")
        target = await _store.get_diagram(diagram_id)
    except (ValidationError, DiagramImportError) as exc:
        return _error(exc)

    try:
        if action in ("paste", "update"):
            text = validate_non_empty_string(text, "text")
            family = validate_diagram_type(diagram_type or target.type)
            options = _import_options(family, layout_options)

            if action == "paste":
                point = validate_point(position, "position") if position is not None else (0.0, 0.0)
                command = _factory.create_preview_from_paste(
                    diagram_id, family, text, point, options,
                )
            else:
                editor_id = validate_non_empty_string(editor_shape_id, "editor_shape_id")
                box = validate_box(editor_bounds, "editor_bounds")
                command = _factory.update_preview(
                    diagram_id, family, text, ShapeId(editor_id), box,
                    validate_string(generator_shape_id, "generator_shape_id"),
                    ShapeId(old_preview_id) if old_preview_id else None,
                    options,
                )
            await _history.execute(command)
            return json.dumps({
                "preview_shape_id": command.preview_shape_id,
                "shape_ids": command.shape_ids,
                "connector_ids": command.connector_ids,
            })

        if action == "apply":
            container_id = validate_non_empty_string(preview_shape_id, "preview_shape_id")
            command = _factory.apply_preview(diagram_id, ShapeId(container_id))
            await _history.execute(command)
            return json.dumps({
                "shape_ids": command.shape_ids,
                "connector_ids": command.connector_ids,
            })

        # restore
        raw_shapes = validate_list(shapes if shapes is not None else [], "shapes")
        raw_connectors = validate_list(
            connectors if connectors is not None else [], "connectors",
        )
        if not raw_shapes and not raw_connectors:
            raise ValidationError("'restore' needs at least one shape or connector.")
        for i, s in enumerate(raw_shapes):
            validate_shape_dict(s, i)
        for i, c in enumerate(raw_connectors):
            validate_connector_dict(c, i)
        command = _factory.restore_snapshot(
            diagram_id,
            [Shape.from_dict(s) for s in raw_shapes],
            [Connector.from_dict(c) for c in raw_connectors],
        )
        await _history.execute(command)
        return (
            f"Restored {len(command.shape_ids)} shape(s) and "
            f"{len(command.connector_ids)} connector(s) into '{diagram_id}'."
        )
    except (ValidationError, DiagramImportError) as exc:
        return _error(exc)


def _import_options(
    diagram_type: str,
    layout_options: Optional[dict[str, Any]],
    center_point: tuple[float, float] = (0.0, 0.0),
    strict: bool = False,
) -> ImportOptions:
    """Build import options, applying layout overrides for the family."""
    options = ImportOptions(center_point=center_point, strict=strict)
    if layout_options:
        overrides = validate_dict(layout_options, "layout_options")
        if diagram_type == DiagramType.BPMN.value:
            options.flow = options.flow.with_overrides(**overrides)
        else:
            options.hierarchy = options.hierarchy.with_overrides(**overrides)
    return options


# ===================================================================
# TOOL 3: history (undo)
# ===================================================================

@mcp.tool()
async def history(action: str, diagram_id: str) -> str:
    """Undo stack per diagram.

    Actions:
      undo: Undo the most recent command on the diagram.
      list: Descriptions of undoable commands, oldest first.

    Args:
        action: One of: undo, list.
        diagram_id: Target diagram.
    """
    try:
        action = validate_action(action, "history", _HISTORY_ACTIONS)
        diagram_id = validate_non_empty_string(diagram_id, "diagram_id")
    except ValidationError as exc:
        return _error(exc)

    if action == "list":
        return json.dumps(_history.entries(diagram_id))

    try:
        command = await _history.undo(diagram_id)
    except DiagramImportError as exc:
        return _error(exc)
    if command is None:
        return f"Nothing to undo for '{diagram_id}'."
    return f"Undid '{command.description}'."


# ===================================================================
# TOOL 4: inspect (read-only)
# ===================================================================

@mcp.tool()
async def inspect(
    action: str,
    text: str,
    diagram_type: str = "bpmn",
    strict: bool = False,
    center_point: Optional[dict[str, Any]] = None,
    layout_options: Optional[dict[str, Any]] = None,
) -> str:
    """Parse or lay out DSL text without touching any diagram.

    Actions:
      parse:  Nodes, connections and skipped lines (diagnostics).
      layout: Positioned shapes and index-based connectors.

    Args:
        action: One of: parse, layout.
        text: DSL text.
        diagram_type: bpmn or architecture.
        strict: Fail on the first unrecognised line instead of skipping it.
        center_point: {x, y} centre for bpmn layouts (layout only).
        layout_options: Layout overrides (layout only).
    """
    try:
        action = validate_action(action, "inspect", _INSPECT_ACTIONS)
        text = validate_non_empty_string(text, "text")
        family = validate_diagram_type(diagram_type)
        strict = validate_bool(strict, "strict")
    except ValidationError as exc:
        return _error(exc)

    try:
        if action == "parse":
            parsed = parse_dsl(text, family, strict=strict)
            return json.dumps({
                "direction": parsed.direction,
                "nodes": [_node_dict(n) for n in parsed.nodes],
                "connections": [asdict(c) for c in parsed.connections],
                "diagnostics": [asdict(d) for d in parsed.diagnostics],
            }, indent=2)

        point = validate_point(center_point, "center_point") if center_point is not None else (0.0, 0.0)
        options = _import_options(family, layout_options, point, strict)
        result = import_dsl(text, family, options)
        return json.dumps({
            "shapes": [asdict(s) for s in result.shapes],
            "connectors": [asdict(c) for c in result.connectors],
            "dropped": result.dropped,
            "metadata": {
                "diagram_type": result.metadata.diagram_type,
                "node_count": result.metadata.node_count,
                "edge_count": result.metadata.edge_count,
                "imported_at": result.metadata.imported_at.isoformat(),
            },
        }, indent=2)
    except (ValidationError, DiagramImportError) as exc:
        return _error(exc)


def _node_dict(node: Any) -> dict[str, Any]:
    data = asdict(node)
    data["kind"] = node.kind.value
    return data


# ===================================================================
# Entry point
# ===================================================================

def main() -> None:
    """Run the MCP server."""
    mcp.run()


if __name__ == "__main__":
    main()
