"""
Layout engines for imported diagrams.

- ``layout_flow_graph``: row/branch layout for process flows. Flow reads
  left to right; a gateway's longest branch stays on the gateway's row and
  shorter branches drop to rows below, all starting in the same column.
- ``layout_hierarchy``: containment/grid layout for architecture diagrams.
  Groups auto-size around a fixed-column grid of their children; top-level
  groups sit side by side and parentless services form a grid beneath them.

Both are pure functions of their input: nodes come back as new
``LayoutNode`` objects in declaration order, and the result depends only
on the order of the input lists.
"""

from __future__ import annotations

import logging
from typing import Collection, Optional, Sequence

from diagram_import.config import (
    FlowLayoutConfig,
    HierarchyLayoutConfig,
    ShapeDimensions,
)
from diagram_import.layout import center_layout, center_rows_vertically, layout_grid
from diagram_import.models import LayoutNode, ParsedConnection, ParsedNode, node_index

logger = logging.getLogger("diagram-import.layout")


# ---------------------------------------------------------------------------
# Flow (row/branch) layout
# ---------------------------------------------------------------------------

def layout_flow_graph(
    nodes: Sequence[ParsedNode],
    connections: Sequence[ParsedConnection],
    config: Optional[FlowLayoutConfig] = None,
    dimensions: Optional[ShapeDimensions] = None,
) -> list[LayoutNode]:
    """Place a directed, possibly cyclic flow graph in rows.

    Args:
        nodes: Parsed nodes in declaration order.
        connections: Directed edges; edges naming unknown ids are ignored.
        config: Spacing options.
        dimensions: Shape size per node kind.

    Returns:
        One positioned ``LayoutNode`` per input node, in input order.
    """
    cfg = config or FlowLayoutConfig()
    dims = dimensions or ShapeDimensions()
    if not nodes:
        return []

    placed = [LayoutNode.from_parsed(n, *dims.size_for(n.kind)) for n in nodes]

    index = node_index(nodes)

    outgoing: list[list[int]] = [[] for _ in nodes]
    has_incoming: set[int] = set()
    for conn in connections:
        src = index.get(conn.source_id)
        tgt = index.get(conn.target_id)
        if src is None or tgt is None:
            continue
        if tgt not in outgoing[src]:
            outgoing[src].append(tgt)
        has_incoming.add(tgt)

    starts = [i for i in range(len(nodes)) if i not in has_incoming]
    if not starts:
        starts = [0]
    # Stable: explicit start events first, others keep declaration order.
    starts.sort(key=lambda i: 0 if nodes[i].is_tagged_start else 1)

    cursors: dict[int, float] = {}
    visited: set[int] = set()

    for i in starts:
        if i in visited:
            continue
        row = _next_free_row(cursors)
        _walk(i, row, placed, outgoing, cursors, visited, cfg)

    # Disconnected components (or cycles with no entry) go below everything.
    for i in range(len(nodes)):
        if i in visited:
            continue
        row = _next_free_row(cursors)
        _walk(i, row, placed, outgoing, cursors, visited, cfg)

    center_rows_vertically(placed, cfg.row_tolerance)

    logger.debug(
        "Flow layout: %d nodes on %d rows from %d start node(s)",
        len(placed), len(cursors), len(starts),
    )
    return placed


def _next_free_row(cursors: dict[int, float]) -> int:
    return max(cursors) + 1 if cursors else 0


def _walk(
    start: int,
    row: int,
    placed: list[LayoutNode],
    outgoing: list[list[int]],
    cursors: dict[int, float],
    visited: set[int],
    cfg: FlowLayoutConfig,
) -> None:
    """Depth-first placement from *start* using an explicit work stack.

    Stack items are ``("place", node, row)`` or
    ``("branch", node, gateway_row, seed_x)``. A node already in *visited*
    is never placed again, so converging edges and cycles terminate.
    """
    stack: list[tuple] = [("place", start, row)]

    while stack:
        item = stack.pop()

        if item[0] == "branch":
            _, target, gateway_row, seed_x = item
            if target in visited:
                continue
            branch_row = _branch_row(cursors, gateway_row, seed_x)
            cursors[branch_row] = seed_x
            stack.append(("place", target, branch_row))
            continue

        _, current, current_row = item
        if current in visited:
            continue

        node = placed[current]
        x = cursors.get(current_row, 0.0)
        node.x = x
        node.y = current_row * cfg.vertical_spacing
        cursors[current_row] = x + node.width + cfg.horizontal_spacing
        visited.add(current)

        targets = [t for t in outgoing[current] if t not in visited]
        if not targets:
            continue
        if len(targets) == 1:
            stack.append(("place", targets[0], current_row))
            continue

        # Gateway: longest branch continues, the rest start below at seed_x.
        seed_x = cursors[current_row]
        lengths = {t: branch_length(t, outgoing, visited) for t in targets}
        ranked = sorted(targets, key=lambda t: -lengths[t])
        for target in reversed(ranked[1:]):
            stack.append(("branch", target, current_row, seed_x))
        stack.append(("place", ranked[0], current_row))


def _branch_row(cursors: dict[int, float], gateway_row: int, seed_x: float) -> int:
    """First row below the gateway that is empty or free from *seed_x* on."""
    row = gateway_row + 1
    while row in cursors and cursors[row] > seed_x:
        row += 1
    return row


def branch_length(
    start: int,
    outgoing: Sequence[Sequence[int]],
    processed: Collection[int] = (),
) -> int:
    """Count nodes reachable from *start* (itself included).

    Nodes in *processed*, and nodes seen earlier in this walk, add nothing,
    so cycles terminate.
    """
    if start in processed:
        return 0
    seen = {start}
    stack = [start]
    while stack:
        current = stack.pop()
        for target in outgoing[current]:
            if target in seen or target in processed:
                continue
            seen.add(target)
            stack.append(target)
    return len(seen)


# ---------------------------------------------------------------------------
# Hierarchical (containment/grid) layout
# ---------------------------------------------------------------------------

def resolve_parents(nodes: Sequence[ParsedNode]) -> list[Optional[int]]:
    """Return each node's effective parent index, or None for a root.

    A parent that is undeclared, is not a container, or closes a
    containment cycle is ignored and the node becomes a root.
    """
    index = node_index(nodes)

    parents: list[Optional[int]] = []
    for i, node in enumerate(nodes):
        p = index.get(node.parent) if node.parent is not None else None
        if p is None or p == i or not nodes[p].kind.is_container:
            if node.parent is not None:
                logger.debug("Node %s: parent %s ignored", node.id, node.parent)
            p = None
        parents.append(p)

    for i in range(len(nodes)):
        seen = {i}
        current = parents[i]
        while current is not None:
            if current == i:
                logger.debug("Node %s: containment cycle broken", nodes[i].id)
                parents[i] = None
                break
            if current in seen:
                break
            seen.add(current)
            current = parents[current]
    return parents


def layout_hierarchy(
    nodes: Sequence[ParsedNode],
    config: Optional[HierarchyLayoutConfig] = None,
    center: bool = False,
) -> list[LayoutNode]:
    """Place groups and services with containment.

    Sizes are computed bottom-up (children before their container), then
    positions top-down. The returned nodes carry their effective parent.

    Args:
        nodes: Parsed nodes in declaration order.
        config: Spacing, padding and size options.
        center: Re-centre the whole layout on the origin.
    """
    cfg = config or HierarchyLayoutConfig()
    if not nodes:
        return []

    parents = resolve_parents(nodes)
    placed = [LayoutNode.from_parsed(n) for n in nodes]
    for i, p in enumerate(parents):
        placed[i].parent = nodes[p].id if p is not None else None

    children: list[list[int]] = [[] for _ in nodes]
    roots: list[int] = []
    for i, p in enumerate(parents):
        if p is None:
            roots.append(i)
        else:
            children[p].append(i)

    # Pre-order over the (now acyclic) forest.
    order: list[int] = []
    stack = list(reversed(roots))
    while stack:
        current = stack.pop()
        order.append(current)
        stack.extend(reversed(children[current]))

    # Pass 1: sizes, innermost first.
    offsets: dict[int, list[tuple[float, float]]] = {}
    pad = cfg.group_padding
    for i in reversed(order):
        node = placed[i]
        if not node.kind.is_container:
            node.width, node.height = cfg.service_width, cfg.service_height
            continue
        kids = children[i]
        if not kids:
            node.width, node.height = cfg.min_group_width, cfg.min_group_height
            continue
        grid = layout_grid(
            [(placed[k].width, placed[k].height) for k in kids],
            cfg.max_grid_columns, cfg.grid_spacing_x, cfg.grid_spacing_y,
        )
        offsets[i] = grid.offsets
        node.width = max(cfg.min_group_width, grid.width + pad.left + pad.right)
        node.height = max(cfg.min_group_height, grid.height + pad.top + pad.bottom)

    # Pass 2: positions, outermost first.
    root_groups = [i for i in roots if placed[i].kind.is_container]
    orphans = [i for i in roots if not placed[i].kind.is_container]

    x = cfg.start_x
    for i in root_groups:
        placed[i].x = x
        placed[i].y = cfg.start_y
        x += placed[i].width + cfg.group_spacing

    if orphans:
        if root_groups:
            top = max(placed[i].y + placed[i].height for i in root_groups) + cfg.orphan_spacing
        else:
            top = cfg.start_y
        grid = layout_grid(
            [(placed[i].width, placed[i].height) for i in orphans],
            cfg.max_grid_columns, cfg.grid_spacing_x, cfg.grid_spacing_y,
        )
        for i, (dx, dy) in zip(orphans, grid.offsets):
            placed[i].x = cfg.start_x + dx
            placed[i].y = top + dy

    for i in order:
        if i not in offsets:
            continue
        container = placed[i]
        for k, (dx, dy) in zip(children[i], offsets[i]):
            placed[k].x = container.x + pad.left + dx
            placed[k].y = container.y + pad.top + dy

    if center:
        center_layout(placed)

    logger.debug(
        "Hierarchy layout: %d nodes, %d top-level groups, %d orphans",
        len(placed), len(root_groups), len(orphans),
    )
    return placed
