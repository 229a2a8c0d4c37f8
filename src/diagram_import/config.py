"""
Configuration for the layout engines and the importers.

Every option has a documented default and can be overridden per call with
``with_overrides``, which validates the new values and returns a copy.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any

from diagram_import.models import NodeKind
from diagram_import.validation import (
    ValidationError,
    validate_columns,
    validate_dict,
    validate_non_negative_number,
    validate_number,
    validate_positive_number,
    validate_spacing,
)


def _validated_overrides(cfg: Any, values: dict[str, Any]) -> dict[str, Any]:
    known = {f.name for f in fields(cfg)}
    clean: dict[str, Any] = {}
    for key, value in values.items():
        if key not in known:
            raise ValidationError(
                f"Unknown option '{key}' for {type(cfg).__name__}. "
                f"Valid options: {', '.join(sorted(known))}."
            )
        clean[key] = value
    return clean


# ---------------------------------------------------------------------------
# Shape dimensions
# ---------------------------------------------------------------------------

@dataclass
class ShapeDimensions:
    """Default shape sizes per kind, in canvas pixels."""
    task_width: float = 120
    task_height: float = 80
    event_width: float = 40
    event_height: float = 40
    gateway_width: float = 40
    gateway_height: float = 40
    default_width: float = 120
    default_height: float = 60

    def size_for(self, kind: NodeKind) -> tuple[float, float]:
        if kind is NodeKind.TASK:
            return self.task_width, self.task_height
        if kind is NodeKind.EVENT:
            return self.event_width, self.event_height
        if kind is NodeKind.GATEWAY:
            return self.gateway_width, self.gateway_height
        return self.default_width, self.default_height


# ---------------------------------------------------------------------------
# Flow layout
# ---------------------------------------------------------------------------

@dataclass
class FlowLayoutConfig:
    """Row/branch layout options."""
    horizontal_spacing: float = 200  # Gap after each shape on a row
    vertical_spacing: float = 150    # Pitch between row top edges
    row_tolerance: float = 10        # Y bucket used to group a row for centering

    def with_overrides(self, **values: Any) -> FlowLayoutConfig:
        clean = _validated_overrides(self, values)
        for key in ("horizontal_spacing", "vertical_spacing"):
            if key in clean:
                clean[key] = validate_spacing(clean[key], key)
        if "row_tolerance" in clean:
            clean["row_tolerance"] = validate_positive_number(clean["row_tolerance"], "row_tolerance")
        return replace(self, **clean)


# ---------------------------------------------------------------------------
# Hierarchical layout
# ---------------------------------------------------------------------------

@dataclass
class Padding:
    """Per-side inner padding of a container."""
    top: float = 40  # Room for the group label
    right: float = 20
    bottom: float = 20
    left: float = 20

    @classmethod
    def coerce(cls, value: Any) -> Padding:
        """Accept a Padding, a number (all sides) or a dict of sides."""
        if isinstance(value, Padding):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            side = validate_non_negative_number(value, "group_padding")
            return cls(side, side, side, side)
        raw = validate_dict(value, "group_padding")
        base = cls()
        sides: dict[str, float] = {}
        for key, side_value in raw.items():
            if key not in ("top", "right", "bottom", "left"):
                raise ValidationError(f"'group_padding' has unknown side '{key}'.")
            sides[key] = validate_non_negative_number(side_value, f"group_padding.{key}")
        return replace(base, **sides)


@dataclass
class HierarchyLayoutConfig:
    """Containment/grid layout options."""
    group_spacing: float = 50        # Horizontal gap between top-level groups
    group_padding: Padding = field(default_factory=Padding)
    grid_spacing_x: float = 20       # Gap between grid columns
    grid_spacing_y: float = 20       # Gap between grid rows
    max_grid_columns: int = 3
    orphan_spacing: float = 50       # Gap between the groups and the orphan grid
    start_x: float = 100
    start_y: float = 100
    service_width: float = 100
    service_height: float = 80
    min_group_width: float = 150
    min_group_height: float = 100

    def with_overrides(self, **values: Any) -> HierarchyLayoutConfig:
        clean = _validated_overrides(self, values)
        for key, value in list(clean.items()):
            if key == "group_padding":
                clean[key] = Padding.coerce(value)
            elif key == "max_grid_columns":
                clean[key] = validate_columns(value, key)
            elif key in ("start_x", "start_y"):
                clean[key] = validate_number(value, key)
            else:
                clean[key] = validate_non_negative_number(value, key)
        return replace(self, **clean)


# ---------------------------------------------------------------------------
# Import options
# ---------------------------------------------------------------------------

@dataclass
class ImportOptions:
    """Options shared by all importers."""
    center_point: tuple[float, float] = (0.0, 0.0)
    flow: FlowLayoutConfig = field(default_factory=FlowLayoutConfig)
    hierarchy: HierarchyLayoutConfig = field(default_factory=HierarchyLayoutConfig)
    dimensions: ShapeDimensions = field(default_factory=ShapeDimensions)
    strict: bool = False
    # Re-center architecture layouts on center_point as well
    center_hierarchy: bool = False
