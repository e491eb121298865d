"""Integer grid primitives shared by shapes, configuration spaces and placements.

Cells are plain value types. All module geometry lives in module-local
coordinates until a placement translates it by its root cell.
"""

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True, order=True)
class Cell:
    """Integer (x, y) grid coordinate. Also used as a translation vector."""

    x: int
    y: int

    def __add__(self, other: "Cell") -> "Cell":
        return Cell(self.x + other.x, self.y + other.y)

    def __sub__(self, other: "Cell") -> "Cell":
        return Cell(self.x - other.x, self.y - other.y)

    def __neg__(self) -> "Cell":
        return Cell(-self.x, -self.y)

    def scale(self, k: int) -> "Cell":
        return Cell(self.x * k, self.y * k)

    def dot(self, other: "Cell") -> int:
        return self.x * other.x + self.y * other.y

    def to_list(self) -> list[int]:
        return [self.x, self.y]

    @classmethod
    def from_list(cls, data) -> "Cell":
        """Build a cell from an ``[x, y]`` pair (list, tuple or ListConfig)."""
        return cls(int(data[0]), int(data[1]))

    def __repr__(self) -> str:
        return f"({self.x},{self.y})"


ORIGIN = Cell(0, 0)


class Side(Enum):
    """Facing side of a socket on a module boundary."""

    NORTH = "north"
    EAST = "east"
    SOUTH = "south"
    WEST = "west"

    def opposite(self) -> "Side":
        """Side a docking partner's socket must face."""
        return _OPPOSITE[self]

    def inward(self) -> Cell:
        """Unit vector pointing INTO the module from a socket on this side.

        Returns:
            North sockets point down (0, -1), south sockets up (0, 1), east
            sockets left (-1, 0) and west sockets right (1, 0).
        """
        if self == Side.NORTH:
            return Cell(0, -1)
        elif self == Side.SOUTH:
            return Cell(0, 1)
        elif self == Side.EAST:
            return Cell(-1, 0)
        else:  # WEST
            return Cell(1, 0)

    def tangent(self) -> Cell:
        """Unit vector running along the boundary this side lies on."""
        if self in (Side.NORTH, Side.SOUTH):
            return Cell(1, 0)
        return Cell(0, 1)


_OPPOSITE = {
    Side.NORTH: Side.SOUTH,
    Side.SOUTH: Side.NORTH,
    Side.EAST: Side.WEST,
    Side.WEST: Side.EAST,
}


def translate(cells, offset: Cell) -> set[Cell]:
    """Return a new set with every cell shifted by ``offset``."""
    return {c + offset for c in cells}


def round_position(position: tuple[float, float] | None) -> Cell:
    """Round a graph-editor position to the nearest grid cell."""
    if position is None:
        return ORIGIN
    return Cell(int(round(position[0])), int(round(position[1])))
