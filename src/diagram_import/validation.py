"""
Input validation for the diagram import MCP tools and layout overrides.

Every validator either returns the cleaned value or raises
``ValidationError`` with a message naming the offending field, so tool
handlers can turn it straight into an ``"Error: ..."`` reply.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional


class ValidationError(Exception):
    """Raised when input validation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


def _kind(value: Any) -> str:
    return type(value).__name__


def _check_range(
    value: float,
    field_name: str,
    min_val: Optional[float],
    max_val: Optional[float],
) -> None:
    if min_val is not None and value < min_val:
        raise ValidationError(f"'{field_name}' must be >= {min_val}, got {value}.")
    if max_val is not None and value > max_val:
        raise ValidationError(f"'{field_name}' must be <= {max_val}, got {value}.")


def _require_keys(value: dict, keys: Iterable[str], owner: str) -> None:
    for key in keys:
        if key not in value:
            raise ValidationError(f"{owner} missing required key '{key}'.")


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------

def validate_non_empty_string(value: Any, field_name: str) -> str:
    """Return *value* stripped; blank or non-string input is rejected."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ValidationError(f"'{field_name}' must be a non-empty string.")


def validate_string(value: Any, field_name: str, *, allow_empty: bool = True) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"'{field_name}' must be a string, got {_kind(value)}.")
    if not (allow_empty or value.strip()):
        raise ValidationError(f"'{field_name}' must not be empty.")
    return value


def validate_number(
    value: Any,
    field_name: str,
    *,
    min_val: float | None = None,
    max_val: float | None = None,
) -> float:
    """Accept an int or float (never a bool) and return it as a float."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"'{field_name}' must be a number, got {_kind(value)}.")
    number = float(value)
    _check_range(number, field_name, min_val, max_val)
    return number


def validate_int(
    value: Any,
    field_name: str,
    *,
    min_val: int | None = None,
    max_val: int | None = None,
) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"'{field_name}' must be an integer, got {_kind(value)}.")
    _check_range(value, field_name, min_val, max_val)
    return value


def validate_bool(value: Any, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ValidationError(f"'{field_name}' must be a boolean, got {_kind(value)}.")


def validate_enum(value: Any, field_name: str, allowed: set[str]) -> str:
    """Case-insensitive choice; returns the upper-cased value."""
    if not isinstance(value, str):
        raise ValidationError(f"'{field_name}' must be a string, got {_kind(value)}.")
    choice = value.strip().upper()
    if choice in {a.upper() for a in allowed}:
        return choice
    raise ValidationError(
        f"'{field_name}' must be one of [{', '.join(sorted(allowed))}], got '{value}'."
    )


def validate_positive_number(value: Any, field_name: str) -> float:
    """Strictly greater than zero."""
    return validate_number(value, field_name, min_val=0.001)


def validate_non_negative_number(value: Any, field_name: str) -> float:
    return validate_number(value, field_name, min_val=0)


def validate_spacing(value: Any, field_name: str) -> float:
    """Gap between shapes, rows or columns."""
    return validate_non_negative_number(value, field_name)


def validate_columns(value: Any, field_name: str = "max_grid_columns") -> int:
    return validate_int(value, field_name, min_val=1)


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------

def validate_list(value: Any, field_name: str, *, min_length: int = 0) -> list:
    if not isinstance(value, list):
        raise ValidationError(f"'{field_name}' must be a list, got {_kind(value)}.")
    if len(value) < min_length:
        raise ValidationError(
            f"'{field_name}' must have at least {min_length} item(s), got {len(value)}."
        )
    return value


def validate_dict(value: Any, field_name: str) -> dict:
    if isinstance(value, dict):
        return value
    raise ValidationError(f"'{field_name}' must be a dict/object, got {_kind(value)}.")


# ---------------------------------------------------------------------------
# Tool parameters
# ---------------------------------------------------------------------------

_DIAGRAM_TYPES = {"BPMN", "ARCHITECTURE"}

_DIAGRAM_ACTIONS = {"CREATE", "LIST", "GET"}
_PREVIEW_ACTIONS = {"PASTE", "UPDATE", "APPLY", "RESTORE"}
_HISTORY_ACTIONS = {"UNDO", "LIST"}
_INSPECT_ACTIONS = {"PARSE", "LAYOUT"}


def validate_action(value: Any, tool_name: str, allowed: set[str]) -> str:
    """Return the lower-cased action, or explain which actions exist."""
    choices = ", ".join(sorted(a.lower() for a in allowed))
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f"'{tool_name}' requires an 'action' parameter. Valid actions: {choices}."
        )
    action = value.strip().lower()
    if action.upper() not in allowed:
        raise ValidationError(
            f"Unknown {tool_name} action '{value}'. Valid actions: {choices}."
        )
    return action


def validate_diagram_type(value: Any) -> str:
    """bpmn or architecture, lower-cased."""
    return validate_enum(value, "diagram_type", _DIAGRAM_TYPES).lower()


def validate_point(value: Any, field_name: str) -> tuple[float, float]:
    """``{x, y}`` -> ``(x, y)``."""
    point = validate_dict(value, field_name)
    _require_keys(point, ("x", "y"), f"'{field_name}'")
    return (
        validate_number(point["x"], f"{field_name}.x"),
        validate_number(point["y"], f"{field_name}.y"),
    )


def validate_box(value: Any, field_name: str) -> tuple[float, float, float, float]:
    """``{x, y, width, height}`` -> ``(x, y, width, height)``; sizes >= 0."""
    x, y = validate_point(value, field_name)
    _require_keys(value, ("width", "height"), f"'{field_name}'")
    width = validate_non_negative_number(value["width"], f"{field_name}.width")
    height = validate_non_negative_number(value["height"], f"{field_name}.height")
    return x, y, width, height


# ---------------------------------------------------------------------------
# Snapshot payloads (restore)
# ---------------------------------------------------------------------------

def _require_ids(value: dict, keys: Iterable[str], owner: str) -> None:
    for key in keys:
        item = value.get(key)
        if not isinstance(item, str) or not item.strip():
            raise ValidationError(f"{owner}: '{key}' must be a non-empty string.")


def validate_shape_dict(s: Any, index: int) -> None:
    owner = f"Shape at index {index}"
    if not isinstance(s, dict):
        raise ValidationError(f"{owner} must be a dict/object.")
    _require_ids(s, ("id", "type"), owner)
    _require_keys(s, ("x", "y", "width", "height"), owner)
    for key in ("x", "y", "width", "height"):
        validate_number(s[key], f"shapes[{index}].{key}")


def validate_connector_dict(c: Any, index: int) -> None:
    owner = f"Connector at index {index}"
    if not isinstance(c, dict):
        raise ValidationError(f"{owner} must be a dict/object.")
    _require_ids(c, ("id", "type", "source_shape_id", "target_shape_id"), owner)
