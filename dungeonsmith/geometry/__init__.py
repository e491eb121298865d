"""Grid geometry, module shapes and configuration spaces."""

from dungeonsmith.geometry.configuration_space import (
    ConfigurationSpace,
    ConfigurationSpaceLibrary,
    compute_offsets,
)
from dungeonsmith.geometry.grid import Cell, Side
from dungeonsmith.geometry.shapes import (
    ModuleRole,
    ModuleShape,
    Socket,
    build_module_shape,
    rectangle_room_shape,
)

__all__ = [
    "Cell",
    "ConfigurationSpace",
    "ConfigurationSpaceLibrary",
    "ModuleRole",
    "ModuleShape",
    "Side",
    "Socket",
    "build_module_shape",
    "compute_offsets",
    "rectangle_room_shape",
]
