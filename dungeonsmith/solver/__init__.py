"""Backtracking placement engine and its transactional state."""

from dungeonsmith.solver.config import SolverConfig
from dungeonsmith.solver.layout import Layout, LayoutRoom
from dungeonsmith.solver.placement_engine import PlacementEngine
from dungeonsmith.solver.placement_state import Placement, PlacementState, SocketRef

__all__ = [
    "Layout",
    "LayoutRoom",
    "Placement",
    "PlacementEngine",
    "PlacementState",
    "SocketRef",
    "SolverConfig",
]
