"""
Undoable commands that commit imported diagrams to a ``DiagramStore``.

Every command records the store identifiers it created so ``undo`` can
remove exactly that content. Commands share the module-level helpers below
instead of a base class; ``Command`` is only the calling surface used by
``CommandHistory``.

Execution order for content creation:
  1. shapes (one batch call when the store supports it)
  2. parent links, once every shape has its store id
  3. connectors, resolved through the index -> store id map
  4. the preview container recording what was created
Undo runs the reverse: container, connectors, shapes.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import replace
from typing import Optional, Protocol, Sequence, Union

from diagram_import.config import ImportOptions
from diagram_import.errors import DiagramImportError
from diagram_import.importer import import_dsl
from diagram_import.models import (
    PREVIEW_SHAPE_TYPE,
    Bounds,
    Connector,
    ConnectorId,
    ImportResult,
    PreviewData,
    Shape,
    ShapeId,
)
from diagram_import.store import DiagramStore

logger = logging.getLogger("diagram-import.commands")

# Margin between preview content and its container
PREVIEW_MARGIN = 20
# Container size when the imported text produced no shapes
EMPTY_PREVIEW_WIDTH = 300
EMPTY_PREVIEW_HEIGHT = 200

DEFAULT_HISTORY_DEPTH = 100


class Command(Protocol):
    description: str
    diagram_id: str

    async def execute(self) -> None: ...

    async def undo(self) -> None: ...


# ---------------------------------------------------------------------------
# Shared store helpers
# ---------------------------------------------------------------------------

async def create_shapes(
    store: DiagramStore,
    diagram_id: str,
    payloads: Sequence[Shape],
) -> list[Optional[ShapeId]]:
    """Create shapes in order; returns one store id (or None) per payload."""
    if not payloads:
        return []
    batch = getattr(store, "add_shapes_batch", None)
    if batch is not None:
        diagram = await batch(diagram_id, list(payloads))
        return [s.id for s in diagram.shapes[len(diagram.shapes) - len(payloads):]]

    ids: list[Optional[ShapeId]] = []
    for payload in payloads:
        diagram = await store.add_shape(diagram_id, payload)
        ids.append(diagram.shapes[-1].id if diagram and diagram.shapes else None)
    return ids


async def create_connectors(
    store: DiagramStore,
    diagram_id: str,
    payloads: Sequence[Connector],
) -> list[ConnectorId]:
    if not payloads:
        return []
    batch = getattr(store, "add_connectors_batch", None)
    if batch is not None:
        diagram = await batch(diagram_id, list(payloads))
        if diagram is None:
            logger.warning("Connector batch returned no diagram; ids not tracked")
            return []
        return [c.id for c in diagram.connectors[len(diagram.connectors) - len(payloads):]]

    ids: list[ConnectorId] = []
    for payload in payloads:
        diagram = await store.add_connector(diagram_id, payload)
        if diagram and diagram.connectors:
            ids.append(diagram.connectors[-1].id)
    return ids


async def delete_connectors(
    store: DiagramStore,
    diagram_id: str,
    connector_ids: Sequence[ConnectorId],
) -> None:
    if not connector_ids:
        return
    batch = getattr(store, "delete_connectors", None)
    if batch is not None:
        await batch(diagram_id, list(connector_ids))
        return
    for connector_id in connector_ids:
        await store.delete_connector(diagram_id, connector_id)


async def delete_shapes(
    store: DiagramStore,
    diagram_id: str,
    shape_ids: Sequence[ShapeId],
) -> None:
    if not shape_ids:
        return
    batch = getattr(store, "delete_shapes", None)
    if batch is not None:
        await batch(diagram_id, list(shape_ids))
        return
    for shape_id in shape_ids:
        await store.delete_shape(diagram_id, shape_id)


async def link_parents(
    store: DiagramStore,
    diagram_id: str,
    links: Sequence[tuple[Optional[ShapeId], Optional[ShapeId]]],
) -> None:
    """Apply (child id, parent id) links after all shapes exist."""
    update = getattr(store, "update_shape", None)
    if update is None:
        if any(child and parent for child, parent in links):
            logger.warning("Store cannot update shapes; parent links skipped")
        return
    for child_id, parent_id in links:
        if child_id and parent_id:
            await update(diagram_id, child_id, {"parent_id": parent_id})


async def materialize(
    store: DiagramStore,
    diagram_id: str,
    result: ImportResult,
) -> tuple[list[ShapeId], list[ConnectorId]]:
    """Create an import result's shapes and connectors as preview content."""
    created = await create_shapes(
        store, diagram_id, [ref.to_shape(is_preview=True) for ref in result.shapes],
    )

    links = [
        (created[i], created[ref.parent_index])
        for i, ref in enumerate(result.shapes)
        if ref.parent_index is not None and ref.parent_index < len(created)
    ]
    await link_parents(store, diagram_id, links)

    payloads: list[Connector] = []
    for ref in result.connectors:
        source = created[ref.from_shape_index] if ref.from_shape_index < len(created) else None
        target = created[ref.to_shape_index] if ref.to_shape_index < len(created) else None
        if not source or not target:
            logger.warning(
                "Skipping connector %d -> %d: shape was not created",
                ref.from_shape_index, ref.to_shape_index,
            )
            continue
        payloads.append(Connector(
            type=ref.type,
            source_shape_id=source,
            target_shape_id=target,
            style=ref.style,
            marker_start=ref.marker_start,
            marker_end=ref.marker_end,
            line_type=ref.line_type,
            label=ref.label,
            source_connection_point=ref.source_connection_point,
            target_connection_point=ref.target_connection_point,
            z_index=ref.z_index,
        ))
    connector_ids = await create_connectors(store, diagram_id, payloads)
    return [sid for sid in created if sid], connector_ids


def preview_container(
    result: ImportResult,
    fallback: tuple[float, float],
    preview: PreviewData,
) -> Shape:
    """Container shape around the content plus a margin.

    Empty content gets a default-size box at *fallback*.
    """
    box = result.bounding_box() or Bounds(
        fallback[0], fallback[1], EMPTY_PREVIEW_WIDTH, EMPTY_PREVIEW_HEIGHT,
    )
    box = box.expanded(PREVIEW_MARGIN)
    return Shape(
        type=PREVIEW_SHAPE_TYPE,
        x=box.x,
        y=box.y,
        width=box.width,
        height=box.height,
        data=preview.to_dict(),
    )


async def snapshot_preview(
    store: DiagramStore,
    diagram_id: str,
    container: Shape,
    data: PreviewData,
) -> tuple[list[Shape], list[Connector]]:
    """Copies of a preview container, its shapes and connectors.

    The container comes first so ``restore_shapes`` can put it back before
    its content. Tracked ids that no longer exist are left out.
    """
    shapes = [replace(container, children=[])]
    for shape_id in data.preview_shape_ids:
        shape = await store.get_shape(diagram_id, shape_id)
        if shape is not None:
            shapes.append(replace(shape, children=[]))
    connectors: list[Connector] = []
    for connector_id in data.preview_connector_ids:
        connector = await store.get_connector(diagram_id, connector_id)
        if connector is not None:
            connectors.append(replace(connector))
    return shapes, connectors


async def _add_container(store: DiagramStore, diagram_id: str, shape: Shape) -> ShapeId:
    diagram = await store.add_shape(diagram_id, shape)
    if not diagram or not diagram.shapes:
        raise DiagramImportError("Failed to create preview shape")
    return diagram.shapes[-1].id


# ---------------------------------------------------------------------------
# Create preview from paste
# ---------------------------------------------------------------------------

class CreatePreviewFromPasteCommand:
    """Import pasted DSL text as a preview centred on the paste position."""

    def __init__(
        self,
        store: DiagramStore,
        diagram_id: str,
        diagram_type: str,
        text: str,
        paste_position: tuple[float, float],
        options: Optional[ImportOptions] = None,
    ) -> None:
        self.store = store
        self.diagram_id = diagram_id
        self.diagram_type = diagram_type
        self.text = text
        self.paste_position = paste_position
        self.options = options or ImportOptions()
        self.description = "Create preview from paste"
        self.preview_shape_id: Optional[ShapeId] = None
        self.shape_ids: list[ShapeId] = []
        self.connector_ids: list[ConnectorId] = []

    async def execute(self) -> None:
        options = replace(self.options, center_point=self.paste_position)
        result = import_dsl(self.text, self.diagram_type, options)

        self.shape_ids, self.connector_ids = await materialize(
            self.store, self.diagram_id, result,
        )
        container = preview_container(result, self.paste_position, PreviewData(
            dsl_text=self.text,
            preview_shape_ids=list(self.shape_ids),
            preview_connector_ids=list(self.connector_ids),
        ))
        self.preview_shape_id = await _add_container(self.store, self.diagram_id, container)
        logger.info(
            "Created preview %s with %d shapes and %d connectors",
            self.preview_shape_id, len(self.shape_ids), len(self.connector_ids),
        )

    async def undo(self) -> None:
        if self.preview_shape_id is None:
            logger.warning("Cannot undo '%s': nothing was created", self.description)
            return
        await self.store.delete_shape(self.diagram_id, self.preview_shape_id)
        await delete_connectors(self.store, self.diagram_id, self.connector_ids)
        await delete_shapes(self.store, self.diagram_id, self.shape_ids)
        self.preview_shape_id = None
        self.shape_ids = []
        self.connector_ids = []


# ---------------------------------------------------------------------------
# Update an existing preview
# ---------------------------------------------------------------------------

BoxLike = Union[Bounds, tuple[float, float, float, float]]


class UpdatePreviewCommand:
    """Replace an editor shape (and any previous preview) with new content."""

    def __init__(
        self,
        store: DiagramStore,
        diagram_id: str,
        diagram_type: str,
        text: str,
        editor_shape_id: ShapeId,
        editor_bounds: BoxLike,
        generator_shape_id: str = "",
        old_preview_id: Optional[ShapeId] = None,
        options: Optional[ImportOptions] = None,
    ) -> None:
        self.store = store
        self.diagram_id = diagram_id
        self.diagram_type = diagram_type
        self.text = text
        self.editor_shape_id = editor_shape_id
        self.editor_bounds = (
            editor_bounds if isinstance(editor_bounds, Bounds) else Bounds(*editor_bounds)
        )
        self.generator_shape_id = generator_shape_id
        self.old_preview_id = old_preview_id
        self.options = options or ImportOptions()
        self.description = "Update diagram preview"
        self.preview_shape_id: Optional[ShapeId] = None
        self.shape_ids: list[ShapeId] = []
        self.connector_ids: list[ConnectorId] = []
        self.editor_snapshot: Optional[Shape] = None
        self.old_preview_shapes: list[Shape] = []
        self.old_preview_connectors: list[Connector] = []

    async def execute(self) -> None:
        box = self.editor_bounds
        options = replace(self.options, center_point=(box.cx, box.cy))
        result = import_dsl(self.text, self.diagram_type, options)

        editor = await self.store.get_shape(self.diagram_id, self.editor_shape_id)
        self.editor_snapshot = replace(editor, children=[]) if editor else None
        await self.store.delete_shape(self.diagram_id, self.editor_shape_id)

        if self.old_preview_id:
            await self._remove_old_preview(self.old_preview_id)

        self.shape_ids, self.connector_ids = await materialize(
            self.store, self.diagram_id, result,
        )
        container = preview_container(result, (box.x, box.y), PreviewData(
            dsl_text=self.text,
            generator_shape_id=self.generator_shape_id,
            preview_shape_ids=list(self.shape_ids),
            preview_connector_ids=list(self.connector_ids),
        ))
        self.preview_shape_id = await _add_container(self.store, self.diagram_id, container)

    async def _remove_old_preview(self, preview_id: ShapeId) -> None:
        old = await self.store.get_shape(self.diagram_id, preview_id)
        data = PreviewData.from_shape(old)
        if data is None:
            logger.warning("Old preview %s not found or has no preview data", preview_id)
            return
        self.old_preview_shapes, self.old_preview_connectors = await snapshot_preview(
            self.store, self.diagram_id, old, data,
        )
        await delete_connectors(self.store, self.diagram_id, data.preview_connector_ids)
        await delete_shapes(self.store, self.diagram_id, data.preview_shape_ids)
        await self.store.delete_shape(self.diagram_id, preview_id)

    async def undo(self) -> None:
        if self.preview_shape_id is None:
            logger.warning("Cannot undo '%s': nothing was created", self.description)
            return
        await self.store.delete_shape(self.diagram_id, self.preview_shape_id)
        await delete_connectors(self.store, self.diagram_id, self.connector_ids)
        await delete_shapes(self.store, self.diagram_id, self.shape_ids)
        if self.editor_snapshot is not None:
            await self.store.restore_shapes(self.diagram_id, [self.editor_snapshot])
        if self.old_preview_shapes:
            await self.store.restore_shapes(self.diagram_id, self.old_preview_shapes)
        if self.old_preview_connectors:
            await self.store.restore_connectors(self.diagram_id, self.old_preview_connectors)
        self.preview_shape_id = None
        self.shape_ids = []
        self.connector_ids = []
        self.old_preview_shapes = []
        self.old_preview_connectors = []


# ---------------------------------------------------------------------------
# Bulk import with known identifiers
# ---------------------------------------------------------------------------

class RestoreSnapshotCommand:
    """Re-insert shapes and connectors whose identifiers are already fixed."""

    def __init__(
        self,
        store: DiagramStore,
        diagram_id: str,
        shapes: Sequence[Shape],
        connectors: Sequence[Connector],
    ) -> None:
        self.store = store
        self.diagram_id = diagram_id
        self.shapes = list(shapes)
        self.connectors = list(connectors)
        self.description = "Restore snapshot"
        self.shape_ids: list[ShapeId] = []
        self.connector_ids: list[ConnectorId] = []

    async def execute(self) -> None:
        if self.shapes:
            await self.store.restore_shapes(self.diagram_id, self.shapes)
        self.shape_ids = [s.id for s in self.shapes]
        if self.connectors:
            await self.store.restore_connectors(self.diagram_id, self.connectors)
        self.connector_ids = [c.id for c in self.connectors]

    async def undo(self) -> None:
        if not self.shape_ids and not self.connector_ids:
            logger.warning("Cannot undo '%s': nothing was restored", self.description)
            return
        await delete_connectors(self.store, self.diagram_id, self.connector_ids)
        await delete_shapes(self.store, self.diagram_id, self.shape_ids)
        self.shape_ids = []
        self.connector_ids = []


# ---------------------------------------------------------------------------
# Apply a preview
# ---------------------------------------------------------------------------

class ApplyPreviewCommand:
    """Turn a preview into regular, interactive diagram content."""

    def __init__(self, store: DiagramStore, diagram_id: str, preview_shape_id: ShapeId) -> None:
        self.store = store
        self.diagram_id = diagram_id
        self.preview_shape_id = preview_shape_id
        self.description = "Apply diagram"
        self.shape_ids: list[ShapeId] = []
        self.connector_ids: list[ConnectorId] = []
        self.snapshot_shapes: list[Shape] = []
        self.snapshot_connectors: list[Connector] = []

    async def execute(self) -> None:
        container = await self.store.get_shape(self.diagram_id, self.preview_shape_id)
        if container is None:
            raise DiagramImportError(f"Preview shape '{self.preview_shape_id}' not found")
        data = PreviewData.from_shape(container)
        if data is None:
            raise DiagramImportError(f"Shape '{self.preview_shape_id}' holds no preview data")

        self.snapshot_shapes, self.snapshot_connectors = await snapshot_preview(
            self.store, self.diagram_id, container, data,
        )
        old_shapes = self.snapshot_shapes[1:]
        old_connectors = self.snapshot_connectors

        await delete_connectors(self.store, self.diagram_id, data.preview_connector_ids)
        await self.store.delete_shape(self.diagram_id, self.preview_shape_id)
        await delete_shapes(self.store, self.diagram_id, [s.id for s in old_shapes])

        created = await create_shapes(self.store, self.diagram_id, [
            replace(s, id=None, parent_id=None, children=[], is_preview=False)
            for s in old_shapes
        ])
        id_map = {old.id: new for old, new in zip(old_shapes, created) if new}
        self.shape_ids = [sid for sid in created if sid]

        await link_parents(self.store, self.diagram_id, [
            (id_map.get(s.id), id_map.get(s.parent_id))
            for s in old_shapes if s.parent_id
        ])

        payloads: list[Connector] = []
        for connector in old_connectors:
            source = id_map.get(connector.source_shape_id)
            target = id_map.get(connector.target_shape_id)
            if not source or not target:
                logger.warning("Skipping connector %s: endpoint was not re-created", connector.id)
                continue
            payloads.append(replace(
                connector, id=None, source_shape_id=source, target_shape_id=target,
            ))
        self.connector_ids = await create_connectors(self.store, self.diagram_id, payloads)
        logger.info(
            "Applied preview %s: %d shapes, %d connectors",
            self.preview_shape_id, len(self.shape_ids), len(self.connector_ids),
        )

    async def undo(self) -> None:
        if not self.snapshot_shapes:
            logger.warning("Cannot undo '%s': preview was not applied", self.description)
            return
        await delete_connectors(self.store, self.diagram_id, list(reversed(self.connector_ids)))
        await delete_shapes(self.store, self.diagram_id, list(reversed(self.shape_ids)))
        await self.store.restore_shapes(self.diagram_id, self.snapshot_shapes)
        if self.snapshot_connectors:
            await self.store.restore_connectors(self.diagram_id, self.snapshot_connectors)
        self.shape_ids = []
        self.connector_ids = []
        self.snapshot_shapes = []
        self.snapshot_connectors = []


# ---------------------------------------------------------------------------
# History and factory
# ---------------------------------------------------------------------------

class CommandHistory:
    """Serialises commands per diagram and keeps a bounded undo stack."""

    def __init__(self, max_depth: int = DEFAULT_HISTORY_DEPTH) -> None:
        self.max_depth = max_depth
        self._locks: dict[str, asyncio.Lock] = {}
        self._stacks: dict[str, deque[Command]] = {}

    def clear(self) -> None:
        self._locks.clear()
        self._stacks.clear()

    def _lock(self, diagram_id: str) -> asyncio.Lock:
        lock = self._locks.get(diagram_id)
        if lock is None:
            lock = self._locks[diagram_id] = asyncio.Lock()
        return lock

    async def execute(self, command: Command) -> Command:
        """Run *command*; it joins the undo stack only if it succeeds."""
        async with self._lock(command.diagram_id):
            await command.execute()
            stack = self._stacks.setdefault(
                command.diagram_id, deque(maxlen=self.max_depth),
            )
            stack.append(command)
        return command

    async def undo(self, diagram_id: str) -> Optional[Command]:
        """Undo the latest command for *diagram_id*; None when there is none.

        A command whose undo raises stays on the stack so it can be retried.
        """
        async with self._lock(diagram_id):
            stack = self._stacks.get(diagram_id)
            if not stack:
                return None
            command = stack[-1]
            await command.undo()
            stack.pop()
        return command

    def entries(self, diagram_id: str) -> list[str]:
        """Descriptions on the undo stack, oldest first."""
        return [c.description for c in self._stacks.get(diagram_id, ())]


class CommandFactory:
    """Builds commands bound to one store."""

    def __init__(self, store: DiagramStore, options: Optional[ImportOptions] = None) -> None:
        self.store = store
        self.options = options

    def create_preview_from_paste(
        self,
        diagram_id: str,
        diagram_type: str,
        text: str,
        paste_position: tuple[float, float],
        options: Optional[ImportOptions] = None,
    ) -> CreatePreviewFromPasteCommand:
        return CreatePreviewFromPasteCommand(
            self.store, diagram_id, diagram_type, text, paste_position,
            options or self.options,
        )

    def update_preview(
        self,
        diagram_id: str,
        diagram_type: str,
        text: str,
        editor_shape_id: ShapeId,
        editor_bounds: BoxLike,
        generator_shape_id: str = "",
        old_preview_id: Optional[ShapeId] = None,
        options: Optional[ImportOptions] = None,
    ) -> UpdatePreviewCommand:
        return UpdatePreviewCommand(
            self.store, diagram_id, diagram_type, text, editor_shape_id,
            editor_bounds, generator_shape_id, old_preview_id,
            options or self.options,
        )

    def restore_snapshot(
        self,
        diagram_id: str,
        shapes: Sequence[Shape],
        connectors: Sequence[Connector],
    ) -> RestoreSnapshotCommand:
        return RestoreSnapshotCommand(self.store, diagram_id, shapes, connectors)

    def apply_preview(self, diagram_id: str, preview_shape_id: ShapeId) -> ApplyPreviewCommand:
        return ApplyPreviewCommand(self.store, diagram_id, preview_shape_id)
