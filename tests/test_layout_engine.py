"""Tests for the flow and hierarchy layout engines."""

from diagram_import.config import FlowLayoutConfig, HierarchyLayoutConfig, Padding
from diagram_import.layout import items_bounds
from diagram_import.layout_engine import (
    branch_length,
    layout_flow_graph,
    layout_hierarchy,
    resolve_parents,
)
from diagram_import.models import (
    DslId,
    LayoutNode,
    NodeKind,
    ParsedConnection,
    ParsedNode,
)
from diagram_import.parser import parse_dsl


def _flow(text: str, config: FlowLayoutConfig | None = None) -> dict[str, LayoutNode]:
    parsed = parse_dsl("flowchart LR\n" + text, "bpmn")
    nodes = layout_flow_graph(parsed.nodes, parsed.connections, config)
    return {n.id: n for n in nodes}


def _arch(text: str, **kwargs) -> list[LayoutNode]:
    parsed = parse_dsl("architecture-beta\n" + text, "architecture")
    return layout_hierarchy(parsed.nodes, **kwargs)


# ===================================================================
# Flow layout
# ===================================================================

class TestFlowLayout:
    """Row/branch layout: rows are 150 apart, shapes 200 apart on a row."""

    def test_empty(self) -> None:
        assert layout_flow_graph([], []) == []

    def test_chain_on_one_row(self) -> None:
        nodes = _flow("A --> B --> C")
        assert [nodes[k].y for k in "ABC"] == [0, 0, 0]
        assert [nodes[k].x for k in "ABC"] == [0, 320, 640]

    def test_longest_branch_continues_on_gateway_row(self) -> None:
        """start -> A; A -> B (1 hop to finish), A -> C (3 hops to finish)."""
        nodes = _flow("\n".join([
            "start --> A",
            "A --> B",
            "A --> C",
            "B --> finish",
            "C --> X",
            "X --> Y",
            "Y --> finish",
        ]))
        assert nodes["A"].y == 0
        assert nodes["C"].y == 0
        assert nodes["B"].y == 150
        assert nodes["B"].x == nodes["C"].x == 640
        # Convergence point placed once, by the first branch to reach it
        assert nodes["finish"].y == 0
        assert nodes["finish"].x == 1600

    def test_nested_gateways_move_down(self) -> None:
        nodes = _flow("\n".join([
            "A --> B",
            "A --> C",
            "C --> D",
            "C --> E",
            "D --> F",
            "F --> G",
        ]))
        # A's longest branch is C, C's longest is D
        assert nodes["C"].y == nodes["D"].y == nodes["G"].y == 0
        # C's short branch takes the first free row below, at D's column
        assert nodes["E"].y == 150
        assert nodes["E"].x == nodes["D"].x
        # Row 1 is occupied from C's column on, so A's short branch goes lower
        assert nodes["B"].y == 300
        assert nodes["B"].x == nodes["C"].x

    def test_no_overlaps_in_branching_flow(self) -> None:
        nodes = list(_flow("\n".join([
            "A --> B", "A --> C", "A --> D",
            "C --> E", "C --> F", "E --> G", "D --> H", "H --> I",
        ])).values())
        for i, a in enumerate(nodes):
            for b in nodes[i + 1:]:
                assert not a.bounds.intersects(b.bounds), (a.id, b.id)

    def test_cycle_without_start_uses_first_node(self) -> None:
        nodes = _flow("A --> B\nB --> A")
        assert (nodes["A"].x, nodes["A"].y) == (0, 0)
        assert (nodes["B"].x, nodes["B"].y) == (320, 0)

    def test_self_loop(self) -> None:
        nodes = _flow("A --> A")
        assert len(nodes) == 1
        assert (nodes["A"].x, nodes["A"].y) == (0, 0)

    def test_second_start_gets_new_row(self) -> None:
        nodes = _flow("A --> B\nC --> D")
        assert nodes["A"].y == 0
        assert nodes["C"].y == 150
        assert nodes["C"].x == 0

    def test_unreached_cycle_placed_below(self) -> None:
        nodes = _flow("A --> B\nC --> D\nD --> C")
        assert nodes["A"].y == nodes["B"].y == 0
        assert nodes["C"].y == nodes["D"].y == 150
        assert nodes["D"].x == 320

    def test_tagged_start_ordered_first(self) -> None:
        nodes = _flow("X --> Y\nS((Start)) --> T")
        assert nodes["S"].y + nodes["S"].height / 2 == 40
        assert nodes["X"].y == 150

    def test_rows_centred_on_tallest_node(self) -> None:
        nodes = _flow("E((Begin)) --> T[Task]")
        # event 40x40, task 120x80
        assert nodes["T"].y == 0
        assert nodes["E"].y == 20
        assert nodes["T"].x == 240

    def test_custom_spacing(self) -> None:
        cfg = FlowLayoutConfig(horizontal_spacing=50, vertical_spacing=100)
        nodes = _flow("A --> B\nA --> C\nC --> D", cfg)
        assert nodes["C"].x == 170
        assert nodes["B"].y == 100

    def test_output_keeps_declaration_order(self) -> None:
        parsed = parse_dsl("flowchart LR\nA --> B\nA --> C\nC --> D", "bpmn")
        nodes = layout_flow_graph(parsed.nodes, parsed.connections)
        assert [n.id for n in nodes] == [n.id for n in parsed.nodes]

    def test_deterministic(self) -> None:
        text = "A --> B\nA --> C\nB --> D\nC --> D\nD --> A"
        assert _flow(text) == _flow(text)

    def test_long_chain_does_not_recurse(self) -> None:
        count = 5000
        nodes = [ParsedNode(DslId(f"n{i}"), f"n{i}", NodeKind.TASK) for i in range(count)]
        conns = [
            ParsedConnection(DslId(f"n{i}"), DslId(f"n{i + 1}")) for i in range(count - 1)
        ]
        placed = layout_flow_graph(nodes, conns)
        assert placed[-1].x == (count - 1) * 320
        assert placed[-1].y == 0

    def test_unknown_edge_endpoints_ignored(self) -> None:
        nodes = [ParsedNode(DslId("A"), "A", NodeKind.TASK)]
        conns = [ParsedConnection(DslId("A"), DslId("ghost"))]
        placed = layout_flow_graph(nodes, conns)
        assert (placed[0].x, placed[0].y) == (0, 0)


class TestBranchLength:

    def test_counts_reachable_nodes(self) -> None:
        outgoing = [[1, 2], [3], [3], []]
        assert branch_length(0, outgoing) == 4
        assert branch_length(1, outgoing) == 2

    def test_cycle_terminates(self) -> None:
        assert branch_length(0, [[1], [0]]) == 2

    def test_processed_nodes_add_nothing(self) -> None:
        outgoing = [[1], [2], []]
        assert branch_length(0, outgoing, {1}) == 1
        assert branch_length(1, outgoing, {1}) == 0


# ===================================================================
# Hierarchy layout
# ===================================================================

def _descendants_inside(nodes: list[LayoutNode]) -> None:
    by_id = {n.id: n for n in nodes}
    for node in nodes:
        parent_id = node.parent
        while parent_id is not None:
            parent = by_id[parent_id]
            assert parent.bounds.contains(node.bounds), (parent.id, node.id)
            parent_id = parent.parent


class TestHierarchyLayout:
    """Containment/grid layout with the default options."""

    def test_empty(self) -> None:
        assert layout_hierarchy([]) == []

    def test_seven_children_three_columns(self) -> None:
        text = "group g[G]\n" + "\n".join(f"service s{i}[S{i}] in g" for i in range(1, 8))
        nodes = {n.id: n for n in _arch(text)}
        g = nodes["g"]
        assert (g.x, g.y) == (100, 100)
        assert g.width >= 3 * 100 + 2 * 20 + 20 + 20
        assert g.width == 380
        assert g.height == 3 * 80 + 2 * 20 + 40 + 20
        assert (nodes["s1"].x, nodes["s1"].y) == (120, 140)
        assert (nodes["s3"].x, nodes["s3"].y) == (360, 140)
        assert (nodes["s7"].x, nodes["s7"].y) == (120, 340)

    def test_empty_group_gets_minimum_size(self) -> None:
        (g,) = _arch("group g[Empty]")
        assert (g.width, g.height) == (150, 100)

    def test_nested_containment(self) -> None:
        nodes = _arch("\n".join([
            "group outer[Outer]",
            "group mid[Mid] in outer",
            "group inner[Inner] in mid",
            "service a[A] in inner",
            "service b[B] in inner",
            "service c[C] in mid",
            "service d[D] in outer",
        ]))
        _descendants_inside(nodes)

    def test_child_centred_in_cell(self) -> None:
        nodes = {n.id: n for n in _arch("\n".join([
            "group outer[Outer]",
            "group inner[Inner] in outer",
            "service s1[S1] in inner",
            "service s2[S2] in outer",
        ]))}
        inner, s2, outer = nodes["inner"], nodes["s2"], nodes["outer"]
        assert (inner.width, inner.height) == (150, 140)
        assert s2.x == outer.x + 20 + 150 + 20
        assert s2.y == outer.y + 40 + (140 - 80) / 2

    def test_top_level_groups_side_by_side(self) -> None:
        g1, g2 = _arch("group g1[One]\ngroup g2[Two]")
        assert g1.y == g2.y == 100
        assert g2.x == g1.x + g1.width + 50

    def test_orphans_below_groups(self) -> None:
        g, s = _arch("group g[G]\nservice s[S]")
        assert s.parent is None
        assert s.x == 100
        assert s.y == g.y + g.height + 50

    def test_orphans_without_groups_start_at_origin_position(self) -> None:
        a, b = _arch("service a[A]\nservice b[B]")
        assert (a.x, a.y) == (100, 100)
        assert (b.x, b.y) == (220, 100)

    def test_missing_parent_becomes_orphan(self) -> None:
        (s,) = _arch("service s[S] in ghost")
        assert s.parent is None
        assert (s.x, s.y) == (100, 100)

    def test_service_parent_ignored(self) -> None:
        a, b = _arch("service a[A]\nservice b[B] in a")
        assert b.parent is None

    def test_parent_cycle_broken(self) -> None:
        a, b = _arch("group a[A] in b\ngroup b[B] in a")
        assert a.parent is None
        assert b.parent == "a"
        assert a.bounds.contains(b.bounds)

    def test_center(self) -> None:
        nodes = _arch("group g[G]\nservice s[S] in g\nservice o[O]", center=True)
        box = items_bounds(nodes)
        assert abs(box.cx) < 1e-9
        assert abs(box.cy) < 1e-9

    def test_custom_config(self) -> None:
        cfg = HierarchyLayoutConfig(max_grid_columns=1, group_padding=Padding(10, 10, 10, 10))
        nodes = {n.id: n for n in _arch(
            "group g[G]\nservice a[A] in g\nservice b[B] in g", config=cfg,
        )}
        assert nodes["a"].x == nodes["b"].x == 110
        assert nodes["b"].y == nodes["a"].y + 80 + 20
        assert nodes["g"].width == 150  # floored at the minimum

    def test_output_keeps_declaration_order(self) -> None:
        nodes = _arch("service o[O]\nservice s[S] in g\ngroup g[G]")
        assert [n.id for n in nodes] == ["o", "s", "g"]
        assert nodes[1].parent == "g"


class TestResolveParents:

    def test_indices(self) -> None:
        nodes = [
            ParsedNode(DslId("g"), "G", NodeKind.GROUP),
            ParsedNode(DslId("s"), "S", NodeKind.SERVICE, parent=DslId("g")),
            ParsedNode(DslId("t"), "T", NodeKind.SERVICE, parent=DslId("s")),
        ]
        assert resolve_parents(nodes) == [None, 0, None]

    def test_three_cycle(self) -> None:
        nodes = [
            ParsedNode(DslId("a"), "A", NodeKind.GROUP, parent=DslId("c")),
            ParsedNode(DslId("b"), "B", NodeKind.GROUP, parent=DslId("a")),
            ParsedNode(DslId("c"), "C", NodeKind.GROUP, parent=DslId("b")),
        ]
        assert resolve_parents(nodes) == [None, 0, 1]
