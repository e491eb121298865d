"""Discrete module geometry: sockets, shapes and the carving rules.

A module (room or connector) is described by the floor and wall cells it
occupies plus the sockets it can dock through, all relative to its root cell.
Shapes are immutable once built and are shared by every placement of the same
template.

Carving
-------
Docking opens a passage through walls. A connector that is bitten ``x`` cells
deep along its socket loses the cells of the inward ray ``0..x`` and their two
tangential neighbours, except that the terminal door cell (``k == x``) stays
floor so the passage never has a hole where the room lacks a floor tile. A room
door is carved by turning the socket cell from wall into floor.
"""

from dataclasses import dataclass, field
from enum import Enum

from dungeonsmith.geometry.grid import Cell, Side


class ModuleRole(Enum):
    """Role a module template plays in the dungeon graph."""

    ROOM = "room"
    CONNECTOR = "connector"


@dataclass(frozen=True)
class Socket:
    """Docking point on a module boundary, in module-local coordinates."""

    side: Side
    """Side of the module the socket faces out of."""

    cell: Cell
    """Socket base cell relative to the module root."""

    bite_depth: int = 1
    """How many cells a docking partner may penetrate inward from ``cell``.
    1 means strict single-cell docking."""

    width: int = 1
    """Doorway width in cells. Only width 1 is carved, wider values are used
    for catalog matching."""

    span_id: str | None = None
    """Optional group name. Sockets sharing a span on one module are locked
    together once any of them is used."""

    def __post_init__(self):
        if self.bite_depth < 1:
            raise ValueError(f"Socket bite_depth must be >= 1, got {self.bite_depth}")
        if self.width < 1:
            raise ValueError(f"Socket width must be >= 1, got {self.width}")

    def to_dict(self) -> dict:
        """Serialize socket to dictionary."""
        return {
            "side": self.side.value,
            "cell": self.cell.to_list(),
            "bite_depth": self.bite_depth,
            "width": self.width,
            "span_id": self.span_id,
        }

    @classmethod
    def from_dict(cls, data) -> "Socket":
        """Deserialize socket from dictionary."""
        return cls(
            side=Side(data["side"]),
            cell=Cell.from_list(data["cell"]),
            bite_depth=int(data.get("bite_depth", 1)),
            width=int(data.get("width", 1)),
            span_id=data.get("span_id"),
        )


@dataclass(frozen=True)
class ModuleShape:
    """Immutable floor/wall/socket geometry of one module template.

    Use ``build_module_shape`` to construct shapes from raw authoring data so
    the floor/wall normalization is applied.
    """

    floor_cells: frozenset[Cell] = field(default_factory=frozenset)
    wall_cells: frozenset[Cell] = field(default_factory=frozenset)
    sockets: tuple[Socket, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.floor_cells and not self.wall_cells

    def bounds(self) -> tuple[Cell, Cell] | None:
        """Inclusive (min, max) corners of all occupied cells, or None if empty."""
        cells = self.floor_cells | self.wall_cells
        if not cells:
            return None
        xs = [c.x for c in cells]
        ys = [c.y for c in cells]
        return Cell(min(xs), min(ys)), Cell(max(xs), max(ys))

    def to_dict(self) -> dict:
        """Serialize shape to dictionary (cells sorted for stable output)."""
        return {
            "floor": [c.to_list() for c in sorted(self.floor_cells)],
            "walls": [c.to_list() for c in sorted(self.wall_cells)],
            "sockets": [s.to_dict() for s in self.sockets],
        }

    @classmethod
    def from_dict(cls, data) -> "ModuleShape":
        """Deserialize shape from dictionary, applying floor/wall normalization."""
        return build_module_shape(
            floor_cells=[Cell.from_list(c) for c in data.get("floor", [])],
            wall_cells=[Cell.from_list(c) for c in data.get("walls", [])],
            sockets=[Socket.from_dict(s) for s in data.get("sockets", [])],
        )


def build_module_shape(floor_cells, wall_cells, sockets) -> ModuleShape:
    """Build a normalized shape from authoring cell sets.

    Authoring data often paints floor under walls. Any cell that has a wall is
    treated as non-floor, except socket base cells: rooms usually have a wall
    tile where the door will be carved, so the socket cell counts as floor for
    docking purposes.

    Args:
        floor_cells: Iterable of module-local floor cells.
        wall_cells: Iterable of module-local wall cells.
        sockets: Iterable of sockets on the module boundary.

    Returns:
        The immutable shape.
    """
    walls = frozenset(wall_cells)
    floors = set(floor_cells) - walls
    socket_list = tuple(sockets)
    for socket in socket_list:
        floors.add(socket.cell)
    return ModuleShape(
        floor_cells=frozenset(floors), wall_cells=walls, sockets=socket_list
    )


def rectangle_room_shape(
    width: int, height: int, sockets: list[Socket]
) -> ModuleShape:
    """Walled rectangular room: a one-cell wall ring around a floor interior.

    Args:
        width: Total width in cells, including both walls.
        height: Total height in cells, including both walls.
        sockets: Sockets, normally placed on the wall ring.
    """
    floors = set()
    walls = set()
    for x in range(width):
        for y in range(height):
            if x in (0, width - 1) or y in (0, height - 1):
                walls.add(Cell(x, y))
            else:
                floors.add(Cell(x, y))
    return build_module_shape(floors, walls, sockets)


def carve_connector_ray(
    floor_cells: set[Cell],
    wall_cells: set[Cell],
    base: Cell,
    side: Side,
    depth: int,
) -> None:
    """Carve the bite ray of a connector socket in place.

    Args:
        floor_cells: Mutable absolute floor cells of the connector.
        wall_cells: Mutable absolute wall cells of the connector.
        base: Absolute socket base cell.
        side: Side of the connector socket.
        depth: Bite depth ``x`` chosen for this docking.
    """
    for center, neighbours, is_door in iter_bite_ray(base, side, depth):
        if not is_door:
            floor_cells.discard(center)
        wall_cells.discard(center)
        for cell in neighbours:
            floor_cells.discard(cell)
            wall_cells.discard(cell)


def iter_bite_ray(base: Cell, side: Side, depth: int):
    """Yield ``(center, (left, right), is_door_cell)`` for k in ``0..depth``."""
    inward = side.inward()
    tangent = side.tangent()
    max_k = max(0, depth)
    for k in range(max_k + 1):
        center = base + inward.scale(k)
        yield center, (center + tangent, center - tangent), k == max_k


def carve_room_door(floor_cells: set[Cell], wall_cells: set[Cell], door: Cell) -> None:
    """Open a room door cell in place."""
    wall_cells.discard(door)
    floor_cells.add(door)


def bite_depth_between(base: Cell, side: Side, max_depth: int, door: Cell) -> int | None:
    """Depth at which a connector socket at ``base`` reaches ``door``.

    Returns:
        ``x`` such that ``door == base + inward * x`` and ``0 <= x < max_depth``,
        or None if the door is off-axis or out of reach.
    """
    inward = side.inward()
    delta = door - base
    x = delta.dot(inward)
    if x < 0 or x >= max(1, max_depth):
        return None
    if delta != inward.scale(x):
        return None
    return x
