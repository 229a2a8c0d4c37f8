"""Tests for the undoable import commands and the command history."""

import asyncio
import logging

import pytest

from diagram_import.commands import (
    ApplyPreviewCommand,
    CommandFactory,
    CommandHistory,
    CreatePreviewFromPasteCommand,
    RestoreSnapshotCommand,
    UpdatePreviewCommand,
)
from diagram_import.errors import DiagramImportError, FormatError, StoreOperationError
from diagram_import.models import PREVIEW_SHAPE_TYPE, Connector, PreviewData, Shape
from diagram_import.store import InMemoryDiagramStore


FLOW = "flowchart LR\nA --> B"
ARCH = "architecture-beta\ngroup g[G]\nservice a[A] in g\nservice b[B] in g\na --> b"


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def store() -> InMemoryDiagramStore:
    s = InMemoryDiagramStore()
    _run(s.create_diagram("bpmn", "Test", diagram_id="d1"))
    return s


def _diagram(store: InMemoryDiagramStore):
    return _run(store.get_diagram("d1"))


class SingleCallStore:
    """Store exposing only the single-item operations."""

    def __init__(self, inner: InMemoryDiagramStore) -> None:
        self.inner = inner
        self.calls: list[str] = []

    async def add_shape(self, diagram_id, shape):
        self.calls.append("add_shape")
        return await self.inner.add_shape(diagram_id, shape)

    async def update_shape(self, diagram_id, shape_id, updates):
        self.calls.append("update_shape")
        return await self.inner.update_shape(diagram_id, shape_id, updates)

    async def delete_shape(self, diagram_id, shape_id):
        self.calls.append("delete_shape")
        return await self.inner.delete_shape(diagram_id, shape_id)

    async def get_shape(self, diagram_id, shape_id):
        return await self.inner.get_shape(diagram_id, shape_id)

    async def add_connector(self, diagram_id, connector):
        self.calls.append("add_connector")
        return await self.inner.add_connector(diagram_id, connector)

    async def delete_connector(self, diagram_id, connector_id):
        self.calls.append("delete_connector")
        return await self.inner.delete_connector(diagram_id, connector_id)

    async def get_connector(self, diagram_id, connector_id):
        return await self.inner.get_connector(diagram_id, connector_id)


# ===================================================================
# Create preview from paste
# ===================================================================

class TestCreatePreviewFromPaste:

    def test_execute(self, store: InMemoryDiagramStore) -> None:
        cmd = CreatePreviewFromPasteCommand(store, "d1", "bpmn", FLOW, (500, 300))
        _run(cmd.execute())
        assert cmd.shape_ids == ["shape-1", "shape-2"]
        assert cmd.connector_ids == ["connector-1"]
        assert cmd.preview_shape_id == "shape-3"

        diagram = _diagram(store)
        assert len(diagram.shapes) == 3
        assert all(s.is_preview for s in diagram.shapes[:2])
        connector = diagram.connectors[0]
        assert (connector.source_shape_id, connector.target_shape_id) == ("shape-1", "shape-2")

    def test_container(self, store: InMemoryDiagramStore) -> None:
        cmd = CreatePreviewFromPasteCommand(store, "d1", "bpmn", FLOW, (500, 300))
        _run(cmd.execute())
        container = _run(store.get_shape("d1", cmd.preview_shape_id))
        assert container.type == PREVIEW_SHAPE_TYPE
        # content spans 440x80 centred on (500, 300), plus a 20 px margin
        assert (container.x, container.y) == (260, 240)
        assert (container.width, container.height) == (480, 120)
        data = PreviewData.from_shape(container)
        assert data.dsl_text == FLOW
        assert data.preview_shape_ids == ["shape-1", "shape-2"]
        assert data.preview_connector_ids == ["connector-1"]

    def test_empty_content_gets_default_container(self, store: InMemoryDiagramStore) -> None:
        cmd = CreatePreviewFromPasteCommand(store, "d1", "bpmn", "flowchart LR", (100, 50))
        _run(cmd.execute())
        assert cmd.shape_ids == []
        container = _run(store.get_shape("d1", cmd.preview_shape_id))
        assert (container.x, container.y) == (80, 30)
        assert (container.width, container.height) == (340, 240)

    def test_undo_removes_everything(self, store: InMemoryDiagramStore) -> None:
        cmd = CreatePreviewFromPasteCommand(store, "d1", "bpmn", FLOW, (0, 0))
        _run(cmd.execute())
        _run(cmd.undo())
        diagram = _diagram(store)
        assert diagram.shapes == []
        assert diagram.connectors == []
        assert cmd.preview_shape_id is None

    def test_undo_before_execute_warns(self, store: InMemoryDiagramStore, caplog) -> None:
        cmd = CreatePreviewFromPasteCommand(store, "d1", "bpmn", FLOW, (0, 0))
        with caplog.at_level(logging.WARNING, logger="diagram-import.commands"):
            _run(cmd.undo())
        assert "nothing was created" in caplog.text

    def test_second_undo_is_noop(self, store: InMemoryDiagramStore, caplog) -> None:
        cmd = CreatePreviewFromPasteCommand(store, "d1", "bpmn", FLOW, (0, 0))
        _run(cmd.execute())
        _run(store.add_shape("d1", Shape(type="note", x=0, y=0, width=10, height=10)))
        _run(cmd.undo())
        with caplog.at_level(logging.WARNING, logger="diagram-import.commands"):
            _run(cmd.undo())
        assert [s.type for s in _diagram(store).shapes] == ["note"]
        assert "nothing was created" in caplog.text

    def test_architecture_parents_linked(self, store: InMemoryDiagramStore) -> None:
        cmd = CreatePreviewFromPasteCommand(store, "d1", "architecture", ARCH, (0, 0))
        _run(cmd.execute())
        group, a, b = (_run(store.get_shape("d1", sid)) for sid in cmd.shape_ids)
        assert a.parent_id == group.id
        assert b.parent_id == group.id
        assert group.children == [a.id, b.id]
        assert len(cmd.connector_ids) == 1

    def test_format_error_leaves_store_untouched(self, store: InMemoryDiagramStore) -> None:
        cmd = CreatePreviewFromPasteCommand(store, "d1", "bpmn", "pie\nA --> B", (0, 0))
        with pytest.raises(FormatError):
            _run(cmd.execute())
        assert _diagram(store).shapes == []
        assert cmd.preview_shape_id is None

    def test_unknown_diagram(self, store: InMemoryDiagramStore) -> None:
        cmd = CreatePreviewFromPasteCommand(store, "missing", "bpmn", FLOW, (0, 0))
        with pytest.raises(StoreOperationError):
            _run(cmd.execute())

    def test_execute_after_undo(self, store: InMemoryDiagramStore) -> None:
        cmd = CreatePreviewFromPasteCommand(store, "d1", "bpmn", FLOW, (0, 0))
        _run(cmd.execute())
        _run(cmd.undo())
        _run(cmd.execute())
        assert len(_diagram(store).shapes) == 3
        assert cmd.preview_shape_id == "shape-6"

    def test_store_without_batch_methods(self, store: InMemoryDiagramStore) -> None:
        single = SingleCallStore(store)
        cmd = CreatePreviewFromPasteCommand(single, "d1", "architecture", ARCH, (0, 0))
        _run(cmd.execute())
        assert single.calls.count("add_shape") == 4
        assert single.calls.count("update_shape") == 2
        assert single.calls.count("add_connector") == 1
        a = _run(store.get_shape("d1", cmd.shape_ids[1]))
        assert a.parent_id == cmd.shape_ids[0]

        _run(cmd.undo())
        assert _diagram(store).shapes == []
        assert "delete_connector" in single.calls


# ===================================================================
# Update preview
# ===================================================================

def _editor(store: InMemoryDiagramStore) -> str:
    diagram = _run(store.add_shape("d1", Shape(
        type="text-editor", x=0, y=0, width=200, height=100, label=FLOW,
    )))
    return diagram.shapes[-1].id


class TestUpdatePreview:

    def test_replaces_editor(self, store: InMemoryDiagramStore) -> None:
        editor_id = _editor(store)
        cmd = UpdatePreviewCommand(
            store, "d1", "bpmn", FLOW, editor_id, (0, 0, 200, 100), generator_shape_id="gen-1",
        )
        _run(cmd.execute())
        assert _run(store.get_shape("d1", editor_id)) is None
        container = _run(store.get_shape("d1", cmd.preview_shape_id))
        assert PreviewData.from_shape(container).generator_shape_id == "gen-1"
        # Content centred on the editor's centre
        assert container.x + container.width / 2 == 100
        assert container.y + container.height / 2 == 50

    def test_undo_restores_editor_with_same_id(self, store: InMemoryDiagramStore) -> None:
        editor_id = _editor(store)
        cmd = UpdatePreviewCommand(store, "d1", "bpmn", FLOW, editor_id, (0, 0, 200, 100))
        _run(cmd.execute())
        _run(cmd.undo())
        diagram = _diagram(store)
        assert [s.id for s in diagram.shapes] == [editor_id]
        assert diagram.shapes[0].label == FLOW
        assert diagram.connectors == []

    def test_old_preview_removed(self, store: InMemoryDiagramStore) -> None:
        paste = CreatePreviewFromPasteCommand(store, "d1", "bpmn", FLOW, (0, 0))
        _run(paste.execute())
        editor_id = _editor(store)
        cmd = UpdatePreviewCommand(
            store, "d1", "bpmn", "flowchart LR\nX --> Y --> Z", editor_id,
            (0, 0, 200, 100), old_preview_id=paste.preview_shape_id,
        )
        _run(cmd.execute())
        diagram = _diagram(store)
        ids = {s.id for s in diagram.shapes}
        assert not ids & set(paste.shape_ids)
        assert paste.preview_shape_id not in ids
        assert len(diagram.shapes) == 4

    def test_undo_brings_back_old_preview(self, store: InMemoryDiagramStore) -> None:
        paste = CreatePreviewFromPasteCommand(store, "d1", "bpmn", FLOW, (0, 0))
        _run(paste.execute())
        editor_id = _editor(store)
        before = _diagram(store)
        shapes_before = [(s.id, s.type, s.x, s.y) for s in before.shapes]
        connectors_before = [(c.id, c.source_shape_id, c.target_shape_id) for c in before.connectors]
        assert (len(shapes_before), len(connectors_before)) == (4, 1)

        cmd = UpdatePreviewCommand(
            store, "d1", "bpmn", "flowchart LR\nX --> Y --> Z", editor_id,
            (0, 0, 200, 100), old_preview_id=paste.preview_shape_id,
        )
        _run(cmd.execute())
        _run(cmd.undo())

        after = _diagram(store)
        assert sorted((s.id, s.type, s.x, s.y) for s in after.shapes) == sorted(shapes_before)
        assert [(c.id, c.source_shape_id, c.target_shape_id) for c in after.connectors] == (
            connectors_before
        )
        # The restored preview can still be undone by its own paste command
        _run(paste.undo())
        assert [s.id for s in _diagram(store).shapes] == [editor_id]
        assert _diagram(store).connectors == []

    def test_missing_old_preview_warns(self, store: InMemoryDiagramStore, caplog) -> None:
        editor_id = _editor(store)
        cmd = UpdatePreviewCommand(
            store, "d1", "bpmn", FLOW, editor_id, (0, 0, 200, 100), old_preview_id="ghost",
        )
        with caplog.at_level(logging.WARNING, logger="diagram-import.commands"):
            _run(cmd.execute())
        assert "ghost" in caplog.text
        assert cmd.preview_shape_id is not None


# ===================================================================
# Restore snapshot
# ===================================================================

class TestRestoreSnapshot:

    def test_execute_and_undo(self, store: InMemoryDiagramStore) -> None:
        shapes = [
            Shape(id="s1", type="bpmn-task", x=0, y=0, width=120, height=80),
            Shape(id="s2", type="bpmn-task", x=300, y=0, width=120, height=80),
        ]
        connectors = [Connector("bpmn-sequence-flow", "s1", "s2", id="c1")]
        cmd = RestoreSnapshotCommand(store, "d1", shapes, connectors)
        _run(cmd.execute())
        diagram = _diagram(store)
        assert [s.id for s in diagram.shapes] == ["s1", "s2"]
        assert [c.id for c in diagram.connectors] == ["c1"]

        _run(cmd.undo())
        assert _diagram(store).shapes == []
        assert _diagram(store).connectors == []

    def test_duplicate_ids_fail(self, store: InMemoryDiagramStore) -> None:
        shape = Shape(id="s1", type="bpmn-task", x=0, y=0, width=120, height=80)
        _run(RestoreSnapshotCommand(store, "d1", [shape], []).execute())
        with pytest.raises(StoreOperationError):
            _run(RestoreSnapshotCommand(store, "d1", [shape], []).execute())


# ===================================================================
# Apply preview
# ===================================================================

class TestApplyPreview:

    def _paste(self, store: InMemoryDiagramStore) -> CreatePreviewFromPasteCommand:
        cmd = CreatePreviewFromPasteCommand(store, "d1", "architecture", ARCH, (0, 0))
        _run(cmd.execute())
        return cmd

    def test_execute(self, store: InMemoryDiagramStore) -> None:
        paste = self._paste(store)
        cmd = ApplyPreviewCommand(store, "d1", paste.preview_shape_id)
        _run(cmd.execute())

        diagram = _diagram(store)
        assert [s.id for s in diagram.shapes] == ["shape-5", "shape-6", "shape-7"]
        assert not any(s.is_preview for s in diagram.shapes)
        assert all(s.type != PREVIEW_SHAPE_TYPE for s in diagram.shapes)
        group, a, b = diagram.shapes
        assert a.parent_id == b.parent_id == group.id
        (connector,) = diagram.connectors
        assert (connector.source_shape_id, connector.target_shape_id) == (a.id, b.id)
        assert cmd.shape_ids == ["shape-5", "shape-6", "shape-7"]
        assert cmd.connector_ids == [connector.id]

    def test_positions_kept(self, store: InMemoryDiagramStore) -> None:
        paste = self._paste(store)
        before = [
            (s.x, s.y, s.width, s.height)
            for s in (_run(store.get_shape("d1", sid)) for sid in paste.shape_ids)
        ]
        _run(ApplyPreviewCommand(store, "d1", paste.preview_shape_id).execute())
        after = [(s.x, s.y, s.width, s.height) for s in _diagram(store).shapes]
        assert after == before

    def test_undo_restores_preview(self, store: InMemoryDiagramStore) -> None:
        paste = self._paste(store)
        cmd = ApplyPreviewCommand(store, "d1", paste.preview_shape_id)
        _run(cmd.execute())
        _run(cmd.undo())

        diagram = _diagram(store)
        ids = [s.id for s in diagram.shapes]
        assert sorted(ids) == sorted(paste.shape_ids + [paste.preview_shape_id])
        assert [c.id for c in diagram.connectors] == paste.connector_ids
        group = _run(store.get_shape("d1", paste.shape_ids[0]))
        assert group.children == paste.shape_ids[1:]
        assert all(s.is_preview for s in diagram.shapes if s.type != PREVIEW_SHAPE_TYPE)

        # The restored preview can be undone by the original paste command
        _run(paste.undo())
        assert _diagram(store).shapes == []

    def test_missing_preview(self, store: InMemoryDiagramStore) -> None:
        with pytest.raises(DiagramImportError, match="not found"):
            _run(ApplyPreviewCommand(store, "d1", "ghost").execute())

    def test_shape_without_preview_data(self, store: InMemoryDiagramStore) -> None:
        _run(store.add_shape("d1", Shape(type="note", x=0, y=0, width=10, height=10)))
        with pytest.raises(DiagramImportError, match="no preview data"):
            _run(ApplyPreviewCommand(store, "d1", "shape-1").execute())
        assert len(_diagram(store).shapes) == 1


# ===================================================================
# History and factory
# ===================================================================

class RecordingCommand:
    """Minimal command that records the order of its steps."""

    def __init__(self, diagram_id: str, log: list[str], name: str, fail: bool = False) -> None:
        self.diagram_id = diagram_id
        self.description = name
        self.log = log
        self.fail = fail

    async def execute(self) -> None:
        self.log.append(f"{self.description}:start")
        await asyncio.sleep(0)
        if self.fail:
            raise DiagramImportError("boom")
        self.log.append(f"{self.description}:end")

    async def undo(self) -> None:
        self.log.append(f"{self.description}:undo")


class FlakyUndoCommand(RecordingCommand):
    """Command whose first undo fails in the store."""

    def __init__(self, diagram_id: str, log: list[str], name: str) -> None:
        super().__init__(diagram_id, log, name)
        self.undo_attempts = 0

    async def undo(self) -> None:
        self.undo_attempts += 1
        if self.undo_attempts == 1:
            raise StoreOperationError("delete_shapes", "store unavailable")
        await super().undo()


class TestCommandHistory:

    def test_undo_order(self) -> None:
        log: list[str] = []
        history = CommandHistory()

        async def scenario() -> None:
            await history.execute(RecordingCommand("d1", log, "one"))
            await history.execute(RecordingCommand("d1", log, "two"))
            assert history.entries("d1") == ["one", "two"]
            undone = await history.undo("d1")
            assert undone.description == "two"

        _run(scenario())
        assert log[-1] == "two:undo"
        assert history.entries("d1") == ["one"]

    def test_undo_empty_returns_none(self) -> None:
        assert _run(CommandHistory().undo("d1")) is None

    def test_failed_undo_stays_on_stack(self) -> None:
        log: list[str] = []
        history = CommandHistory()
        command = FlakyUndoCommand("d1", log, "flaky")

        async def scenario() -> None:
            await history.execute(command)
            with pytest.raises(StoreOperationError):
                await history.undo("d1")
            assert history.entries("d1") == ["flaky"]
            assert await history.undo("d1") is command

        _run(scenario())
        assert log[-1] == "flaky:undo"
        assert history.entries("d1") == []

    def test_failed_command_not_recorded(self) -> None:
        history = CommandHistory()
        with pytest.raises(DiagramImportError):
            _run(history.execute(RecordingCommand("d1", [], "bad", fail=True)))
        assert history.entries("d1") == []

    def test_depth_bounded(self) -> None:
        history = CommandHistory(max_depth=2)

        async def scenario() -> None:
            for name in ("a", "b", "c"):
                await history.execute(RecordingCommand("d1", [], name))

        _run(scenario())
        assert history.entries("d1") == ["b", "c"]

    def test_per_diagram_stacks(self) -> None:
        history = CommandHistory()

        async def scenario() -> None:
            await history.execute(RecordingCommand("d1", [], "one"))
            await history.execute(RecordingCommand("d2", [], "two"))
            await history.undo("d2")

        _run(scenario())
        assert history.entries("d1") == ["one"]
        assert history.entries("d2") == []

    def test_same_diagram_serialised(self) -> None:
        log: list[str] = []
        history = CommandHistory()

        async def scenario() -> None:
            await asyncio.gather(
                history.execute(RecordingCommand("d1", log, "a")),
                history.execute(RecordingCommand("d1", log, "b")),
            )

        _run(scenario())
        assert log == ["a:start", "a:end", "b:start", "b:end"]

    def test_concurrent_pastes(self, store: InMemoryDiagramStore) -> None:
        history = CommandHistory()
        factory = CommandFactory(store)
        first = factory.create_preview_from_paste("d1", "bpmn", FLOW, (0, 0))
        second = factory.create_preview_from_paste("d1", "bpmn", FLOW, (0, 500))

        async def scenario() -> None:
            await asyncio.gather(history.execute(first), history.execute(second))

        _run(scenario())
        assert not set(first.shape_ids) & set(second.shape_ids)
        assert len(_diagram(store).shapes) == 6


class TestCommandFactory:

    def test_builds_bound_commands(self, store: InMemoryDiagramStore) -> None:
        factory = CommandFactory(store)
        paste = factory.create_preview_from_paste("d1", "bpmn", FLOW, (0, 0))
        update = factory.update_preview("d1", "bpmn", FLOW, "shape-1", (0, 0, 10, 10))
        restore = factory.restore_snapshot("d1", [], [])
        apply_ = factory.apply_preview("d1", "shape-1")
        assert isinstance(paste, CreatePreviewFromPasteCommand)
        assert isinstance(update, UpdatePreviewCommand)
        assert isinstance(restore, RestoreSnapshotCommand)
        assert isinstance(apply_, ApplyPreviewCommand)
        assert {c.store for c in (paste, update, restore, apply_)} == {store}

    def test_descriptions(self, store: InMemoryDiagramStore) -> None:
        factory = CommandFactory(store)
        assert factory.create_preview_from_paste(
            "d1", "bpmn", FLOW, (0, 0),
        ).description == "Create preview from paste"
        assert factory.apply_preview("d1", "x").description == "Apply diagram"
