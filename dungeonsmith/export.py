"""Rasterize and serialize solved placements for downstream materializers."""

import numpy as np

from dungeonsmith.geometry.grid import Cell

EMPTY = 0
FLOOR = 1
WALL = 2

_ASCII = {EMPTY: " ", FLOOR: ".", WALL: "#"}


def placements_to_grid(placements) -> tuple[np.ndarray, Cell]:
    """Paint placements into a dense grid.

    Floor wins over wall where two placements disagree, since carved doors
    are floor in one placement and may still be wall in a neighbour.

    Args:
        placements: Committed placements.

    Returns:
        (grid, origin) where ``grid[y - origin.y, x - origin.x]`` holds
        ``EMPTY``, ``FLOOR`` or ``WALL``. An empty input yields a 0x0 grid.
    """
    floor = set()
    walls = set()
    for placement in placements:
        floor.update(placement.floor_cells)
        walls.update(placement.wall_cells)

    cells = floor | walls
    if not cells:
        return np.zeros((0, 0), dtype=np.int8), Cell(0, 0)

    xs = np.array([c.x for c in cells])
    ys = np.array([c.y for c in cells])
    origin = Cell(int(xs.min()), int(ys.min()))
    grid = np.zeros(
        (int(ys.max()) - origin.y + 1, int(xs.max()) - origin.x + 1), dtype=np.int8
    )
    for cell in walls:
        grid[cell.y - origin.y, cell.x - origin.x] = WALL
    for cell in floor:
        grid[cell.y - origin.y, cell.x - origin.x] = FLOOR
    return grid, origin


def grid_to_ascii(grid: np.ndarray) -> str:
    """Render a grid top row first (highest y at the top)."""
    rows = []
    for row in grid[::-1]:
        rows.append("".join(_ASCII[int(v)] for v in row).rstrip())
    return "\n".join(rows)


def placements_to_dict(result) -> dict:
    """JSON-ready summary of a ``SolveResult``."""
    return {
        "success": result.success,
        "failure": result.failure.value if result.failure else None,
        "message": result.message,
        "seed": result.seed,
        "progress": {
            "nodes_placed": result.progress.nodes_placed,
            "nodes_total": result.progress.nodes_total,
            "edges_placed": result.progress.edges_placed,
            "edges_total": result.progress.edges_total,
        },
        "placements": [p.to_dict() for p in result.placements],
    }
