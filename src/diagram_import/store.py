"""
Diagram store interface and an in-memory implementation.

The command layer only talks to a ``DiagramStore``. Every mutating call
returns the updated ``Diagram`` so callers can read newly assigned
identifiers off the tail of ``shapes`` / ``connectors`` in creation order.
``add_shapes_batch``, ``add_connectors_batch`` and ``update_shape`` are
optional on a concrete store; commands fall back to single calls when a
batch method is missing.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from diagram_import.errors import StoreOperationError
from diagram_import.models import (
    Connector,
    ConnectorId,
    Diagram,
    DiagramType,
    Shape,
    ShapeId,
)

logger = logging.getLogger("diagram-import.store")

# Shape fields a partial update may change
UPDATABLE_SHAPE_FIELDS = {
    "x", "y", "width", "height", "label", "subtype", "z_index", "locked",
    "is_preview", "parent_id", "data",
}


@runtime_checkable
class DiagramStore(Protocol):
    """Shape/connector CRUD consumed by the commands."""

    async def add_shape(self, diagram_id: str, shape: Shape) -> Diagram: ...

    async def add_shapes_batch(self, diagram_id: str, shapes: Sequence[Shape]) -> Diagram: ...

    async def update_shape(
        self, diagram_id: str, shape_id: ShapeId, updates: dict[str, Any],
    ) -> Optional[Diagram]: ...

    async def delete_shape(self, diagram_id: str, shape_id: ShapeId) -> Optional[Diagram]: ...

    async def delete_shapes(
        self, diagram_id: str, shape_ids: Sequence[ShapeId],
    ) -> Optional[Diagram]: ...

    async def get_shape(self, diagram_id: str, shape_id: ShapeId) -> Optional[Shape]: ...

    async def add_connector(self, diagram_id: str, connector: Connector) -> Optional[Diagram]: ...

    async def add_connectors_batch(
        self, diagram_id: str, connectors: Sequence[Connector],
    ) -> Optional[Diagram]: ...

    async def delete_connector(
        self, diagram_id: str, connector_id: ConnectorId,
    ) -> Optional[Diagram]: ...

    async def delete_connectors(
        self, diagram_id: str, connector_ids: Sequence[ConnectorId],
    ) -> Optional[Diagram]: ...

    async def get_connector(
        self, diagram_id: str, connector_id: ConnectorId,
    ) -> Optional[Connector]: ...

    async def restore_shapes(self, diagram_id: str, shapes: Sequence[Shape]) -> Diagram: ...

    async def restore_connectors(
        self, diagram_id: str, connectors: Sequence[Connector],
    ) -> Diagram: ...


class InMemoryDiagramStore:
    """Dict-backed store with sequential identifiers.

    Shape ids are ``shape-N`` and connector ids ``connector-N``; both
    counters are global to the store so ids never repeat across diagrams.
    Deleting a shape deletes the connectors attached to it and detaches its
    children. Deleting an unknown id is a no-op returning ``None``.
    """

    def __init__(self) -> None:
        self._diagrams: dict[str, Diagram] = {}
        self._next_diagram = 1
        self._next_shape = 1
        self._next_connector = 1

    def clear(self) -> None:
        """Drop every diagram and restart identifier counters."""
        self._diagrams.clear()
        self._next_diagram = 1
        self._next_shape = 1
        self._next_connector = 1

    # ----- diagrams -----

    async def create_diagram(
        self,
        diagram_type: str = DiagramType.BPMN.value,
        name: str = "Untitled",
        diagram_id: Optional[str] = None,
    ) -> Diagram:
        if diagram_id is None:
            diagram_id = f"diagram-{self._next_diagram}"
            self._next_diagram += 1
        if diagram_id in self._diagrams:
            raise StoreOperationError("create_diagram", f"diagram '{diagram_id}' already exists")
        diagram = Diagram(id=diagram_id, type=diagram_type, name=name)
        self._diagrams[diagram_id] = diagram
        return diagram

    async def get_diagram(self, diagram_id: str) -> Diagram:
        return self._diagram(diagram_id, "get_diagram")

    async def list_diagrams(self) -> list[Diagram]:
        return list(self._diagrams.values())

    def _diagram(self, diagram_id: str, operation: str) -> Diagram:
        diagram = self._diagrams.get(diagram_id)
        if diagram is None:
            raise StoreOperationError(operation, f"diagram '{diagram_id}' not found")
        return diagram

    # ----- shapes -----

    async def add_shape(self, diagram_id: str, shape: Shape) -> Diagram:
        diagram = self._diagram(diagram_id, "add_shape")
        self._insert_shape(diagram, shape, "add_shape")
        return diagram

    async def add_shapes_batch(self, diagram_id: str, shapes: Sequence[Shape]) -> Diagram:
        diagram = self._diagram(diagram_id, "add_shapes_batch")
        for shape in shapes:
            self._insert_shape(diagram, shape, "add_shapes_batch")
        return diagram

    def _insert_shape(
        self,
        diagram: Diagram,
        shape: Shape,
        operation: str,
        keep_id: bool = False,
    ) -> Shape:
        if keep_id:
            if not shape.id:
                raise StoreOperationError(operation, "shape has no id")
            if _find(diagram.shapes, shape.id) is not None:
                raise StoreOperationError(operation, f"shape '{shape.id}' already exists")
            shape_id = shape.id
        else:
            shape_id = ShapeId(f"shape-{self._next_shape}")
            self._next_shape += 1

        stored = replace(
            shape,
            id=shape_id,
            children=[],
            data=dict(shape.data) if shape.data else shape.data,
        )
        parent = _find(diagram.shapes, stored.parent_id) if stored.parent_id else None
        if stored.parent_id and parent is None:
            raise StoreOperationError(operation, f"parent shape '{stored.parent_id}' not found")
        diagram.shapes.append(stored)
        if parent is not None:
            parent.children.append(stored.id)
        return stored

    async def update_shape(
        self, diagram_id: str, shape_id: ShapeId, updates: dict[str, Any],
    ) -> Optional[Diagram]:
        diagram = self._diagram(diagram_id, "update_shape")
        shape = _find(diagram.shapes, shape_id)
        if shape is None:
            return None
        unknown = set(updates) - UPDATABLE_SHAPE_FIELDS
        if unknown:
            raise StoreOperationError(
                "update_shape", f"cannot update field(s): {', '.join(sorted(unknown))}"
            )
        if "parent_id" in updates and updates["parent_id"] != shape.parent_id:
            self._reparent(diagram, shape, updates["parent_id"])
        for key, value in updates.items():
            if key != "parent_id":
                setattr(shape, key, value)
        return diagram

    @staticmethod
    def _reparent(diagram: Diagram, shape: Shape, parent_id: Optional[ShapeId]) -> None:
        new_parent = _find(diagram.shapes, parent_id) if parent_id else None
        if parent_id and new_parent is None:
            raise StoreOperationError("update_shape", f"parent shape '{parent_id}' not found")
        if parent_id == shape.id:
            raise StoreOperationError("update_shape", "a shape cannot be its own parent")
        old_parent = _find(diagram.shapes, shape.parent_id) if shape.parent_id else None
        if old_parent is not None and shape.id in old_parent.children:
            old_parent.children.remove(shape.id)
        shape.parent_id = parent_id
        if new_parent is not None:
            new_parent.children.append(shape.id)

    async def delete_shape(self, diagram_id: str, shape_id: ShapeId) -> Optional[Diagram]:
        diagram = self._diagram(diagram_id, "delete_shape")
        if not self._remove_shape(diagram, shape_id):
            return None
        return diagram

    async def delete_shapes(
        self, diagram_id: str, shape_ids: Sequence[ShapeId],
    ) -> Optional[Diagram]:
        diagram = self._diagram(diagram_id, "delete_shapes")
        removed = [sid for sid in shape_ids if self._remove_shape(diagram, sid)]
        return diagram if removed else None

    @staticmethod
    def _remove_shape(diagram: Diagram, shape_id: ShapeId) -> bool:
        shape = _find(diagram.shapes, shape_id)
        if shape is None:
            return False
        diagram.shapes.remove(shape)
        if shape.parent_id:
            parent = _find(diagram.shapes, shape.parent_id)
            if parent is not None and shape_id in parent.children:
                parent.children.remove(shape_id)
        for child in diagram.shapes:
            if child.parent_id == shape_id:
                child.parent_id = None
        diagram.connectors = [
            c for c in diagram.connectors
            if c.source_shape_id != shape_id and c.target_shape_id != shape_id
        ]
        return True

    async def get_shape(self, diagram_id: str, shape_id: ShapeId) -> Optional[Shape]:
        diagram = self._diagram(diagram_id, "get_shape")
        return _find(diagram.shapes, shape_id)

    # ----- connectors -----

    async def add_connector(self, diagram_id: str, connector: Connector) -> Optional[Diagram]:
        diagram = self._diagram(diagram_id, "add_connector")
        self._insert_connector(diagram, connector, "add_connector")
        return diagram

    async def add_connectors_batch(
        self, diagram_id: str, connectors: Sequence[Connector],
    ) -> Optional[Diagram]:
        diagram = self._diagram(diagram_id, "add_connectors_batch")
        for connector in connectors:
            self._insert_connector(diagram, connector, "add_connectors_batch")
        return diagram

    def _insert_connector(
        self,
        diagram: Diagram,
        connector: Connector,
        operation: str,
        keep_id: bool = False,
    ) -> Connector:
        for endpoint in (connector.source_shape_id, connector.target_shape_id):
            if _find(diagram.shapes, endpoint) is None:
                raise StoreOperationError(operation, f"endpoint shape '{endpoint}' not found")
        if keep_id:
            if not connector.id:
                raise StoreOperationError(operation, "connector has no id")
            if _find(diagram.connectors, connector.id) is not None:
                raise StoreOperationError(operation, f"connector '{connector.id}' already exists")
            connector_id = connector.id
        else:
            connector_id = ConnectorId(f"connector-{self._next_connector}")
            self._next_connector += 1
        stored = replace(connector, id=connector_id)
        diagram.connectors.append(stored)
        return stored

    async def delete_connector(
        self, diagram_id: str, connector_id: ConnectorId,
    ) -> Optional[Diagram]:
        diagram = self._diagram(diagram_id, "delete_connector")
        connector = _find(diagram.connectors, connector_id)
        if connector is None:
            return None
        diagram.connectors.remove(connector)
        return diagram

    async def delete_connectors(
        self, diagram_id: str, connector_ids: Sequence[ConnectorId],
    ) -> Optional[Diagram]:
        diagram = self._diagram(diagram_id, "delete_connectors")
        wanted = set(connector_ids)
        before = len(diagram.connectors)
        diagram.connectors = [c for c in diagram.connectors if c.id not in wanted]
        return diagram if len(diagram.connectors) != before else None

    async def get_connector(
        self, diagram_id: str, connector_id: ConnectorId,
    ) -> Optional[Connector]:
        diagram = self._diagram(diagram_id, "get_connector")
        return _find(diagram.connectors, connector_id)

    # ----- restore (known identifiers) -----

    async def restore_shapes(self, diagram_id: str, shapes: Sequence[Shape]) -> Diagram:
        diagram = self._diagram(diagram_id, "restore_shapes")
        # Parents first so parent_id always resolves.
        pending = list(shapes)
        known = {s.id for s in diagram.shapes} | {s.id for s in pending}
        while pending:
            ready = [
                s for s in pending
                if not s.parent_id
                or s.parent_id not in known
                or _find(diagram.shapes, s.parent_id) is not None
            ]
            if not ready:
                raise StoreOperationError("restore_shapes", "parent cycle in restored shapes")
            for shape in ready:
                if shape.parent_id and shape.parent_id not in known:
                    logger.warning(
                        "Restoring shape %s without missing parent %s", shape.id, shape.parent_id,
                    )
                    shape = replace(shape, parent_id=None)
                self._insert_shape(diagram, shape, "restore_shapes", keep_id=True)
            ready_ids = {s.id for s in ready}
            pending = [s for s in pending if s.id not in ready_ids]
        return diagram

    async def restore_connectors(
        self, diagram_id: str, connectors: Sequence[Connector],
    ) -> Diagram:
        diagram = self._diagram(diagram_id, "restore_connectors")
        for connector in connectors:
            self._insert_connector(diagram, connector, "restore_connectors", keep_id=True)
        return diagram


def _find(items: Sequence, item_id: Optional[str]):
    if item_id is None:
        return None
    return next((item for item in items if item.id == item_id), None)
