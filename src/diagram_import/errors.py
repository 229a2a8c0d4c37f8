"""
Error taxonomy for the import engine.

- ``FormatError``             - wrong DSL header / unsupported family; fails the
                                whole import before any store mutation.
- ``UnresolvedReferenceError`` - a connection names an unknown node; only that
                                connection is dropped.
- ``StoreOperationError``     - a remote create/delete failed mid-command; the
                                command is left partially applied.
"""

from __future__ import annotations

from typing import Optional


class DiagramImportError(Exception):
    """Base class for import engine failures."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class FormatError(DiagramImportError):
    """Raised when DSL text cannot be imported as the requested family."""

    def __init__(self, message: str, line_number: Optional[int] = None) -> None:
        self.line_number = line_number
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)


class UnresolvedReferenceError(DiagramImportError):
    """Raised when a connection references a node id that was never declared."""

    def __init__(self, source_id: str, target_id: str) -> None:
        self.source_id = source_id
        self.target_id = target_id
        super().__init__(f"Invalid connection: {source_id} -> {target_id}")


class StoreOperationError(DiagramImportError):
    """Raised by a diagram store when a remote mutation fails."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")
