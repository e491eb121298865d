"""Transactional state of one placement attempt.

Every mutation of occupancy, socket usage, placed nodes/edges and committed
geometry goes through this module and appends an undo record to a journal.
``rollback`` replays the journal backwards, so any sequence of commits and
carves can be undone to an earlier ``checkpoint`` with no residue. Only cells
that actually changed are recorded, which keeps overlapping unions exact.
"""

import logging

from collections import Counter
from dataclasses import dataclass, field

from dungeonsmith.catalog import ModuleTemplate
from dungeonsmith.geometry.grid import Cell, Side, translate
from dungeonsmith.geometry.shapes import ModuleRole, ModuleShape, Socket, iter_bite_ray

console_logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class SocketRef:
    """A socket of one placed instance."""

    placement_id: str
    index: int


@dataclass
class Placement:
    """A module instance at an absolute root cell.

    Cell sets are mutable until the placement is committed; afterwards they
    change only through ``PlacementState`` carving so rollback can restore them.
    """

    placement_id: str
    template_id: str
    role: ModuleRole
    root: Cell
    shape: ModuleShape = field(repr=False)
    floor_cells: set[Cell] = field(default_factory=set, repr=False)
    wall_cells: set[Cell] = field(default_factory=set, repr=False)
    consumed_sockets: list[SocketRef] = field(default_factory=list)
    """Sockets marked used when this placement is committed. May include
    sockets of the placements it docks to."""

    node_id: str | None = None
    """Graph node this placement realizes (rooms, corridor nodes)."""

    edge_key: tuple[str, str] | None = None
    """Normalized edge key for connectors interposed on a room/room edge."""

    @classmethod
    def from_template(
        cls,
        placement_id: str,
        template: ModuleTemplate,
        root: Cell,
        node_id: str | None = None,
    ) -> "Placement":
        """Instantiate a template at ``root`` with uncarved absolute cells."""
        return cls(
            placement_id=placement_id,
            template_id=template.template_id,
            role=template.role,
            root=root,
            shape=template.shape,
            floor_cells=translate(template.shape.floor_cells, root),
            wall_cells=translate(template.shape.wall_cells, root),
            node_id=node_id,
        )

    @property
    def is_connector(self) -> bool:
        return self.role == ModuleRole.CONNECTOR

    def socket(self, index: int) -> Socket:
        return self.shape.sockets[index]

    def socket_cell(self, index: int) -> Cell:
        """Absolute base cell of a socket."""
        return self.root + self.shape.sockets[index].cell

    def socket_ref(self, index: int) -> SocketRef:
        return SocketRef(self.placement_id, index)

    def to_dict(self) -> dict:
        """Serialize for downstream materializers (cells sorted)."""
        return {
            "placement_id": self.placement_id,
            "template_id": self.template_id,
            "role": self.role.value,
            "root": self.root.to_list(),
            "floor": [c.to_list() for c in sorted(self.floor_cells)],
            "walls": [c.to_list() for c in sorted(self.wall_cells)],
            "consumed_sockets": [
                {"placement_id": r.placement_id, "index": r.index}
                for r in self.consumed_sockets
            ],
            "node_id": self.node_id,
            "edge_key": list(self.edge_key) if self.edge_key else None,
        }


@dataclass(frozen=True)
class StateSnapshot:
    """Value copy of a ``PlacementState`` for equality checks."""

    occupied_floor: frozenset
    occupied_wall: frozenset
    used_sockets: frozenset
    span_refs: tuple
    placements: tuple
    placed_nodes: tuple
    placed_edges: frozenset


def find_overlap(cells, occupied: set[Cell], allowed=()) -> Cell | None:
    """First cell of ``cells`` in ``occupied`` and not in ``allowed``."""
    for cell in cells:
        if cell in occupied and cell not in allowed:
            return cell
    return None


class PlacementState:
    """Occupancy, socket usage and the placement stack for one attempt."""

    def __init__(self):
        self.occupied_floor: set[Cell] = set()
        self.occupied_wall: set[Cell] = set()
        self.used_sockets: set[SocketRef] = set()
        self.placements: list[Placement] = []
        self.placed_nodes: dict[str, Placement] = {}
        self.placed_edges: set[tuple[str, str]] = set()
        self._span_refs: Counter = Counter()
        self._by_id: dict[str, Placement] = {}
        self._journal: list = []

    @property
    def depth(self) -> int:
        """Number of committed placements."""
        return len(self.placements)

    def checkpoint(self) -> int:
        """Opaque marker to pass to ``rollback``."""
        return len(self._journal)

    def rollback(self, checkpoint: int) -> None:
        """Undo every mutation made after ``checkpoint``, newest first."""
        while len(self._journal) > checkpoint:
            undo = self._journal.pop()
            undo()

    def get_placement(self, placement_id: str) -> Placement:
        return self._by_id[placement_id]

    def has_placement(self, placement_id: str) -> bool:
        return placement_id in self._by_id

    def commit(self, placement: Placement) -> None:
        """Push a placement and apply all of its effects.

        Raises:
            ValueError: If a placement with the same id is already committed.
        """
        if placement.placement_id in self._by_id:
            raise ValueError(f"Placement '{placement.placement_id}' is already committed")

        self.placements.append(placement)
        self._by_id[placement.placement_id] = placement
        self._journal.append(self._pop_placement)

        self._add_cells(self.occupied_floor, placement.floor_cells)
        self._add_cells(self.occupied_wall, placement.wall_cells)
        for ref in placement.consumed_sockets:
            self.use_socket(ref)
        if placement.node_id is not None:
            self._set_node(placement.node_id, placement)
        if placement.edge_key is not None:
            self.mark_edge_placed(placement.edge_key)

    def _pop_placement(self) -> None:
        placement = self.placements.pop()
        del self._by_id[placement.placement_id]

    def _set_node(self, node_id: str, placement: Placement) -> None:
        previous = self.placed_nodes.get(node_id)
        self.placed_nodes[node_id] = placement

        def undo():
            if previous is None:
                del self.placed_nodes[node_id]
            else:
                self.placed_nodes[node_id] = previous

        self._journal.append(undo)

    def mark_edge_placed(self, key: tuple[str, str]) -> None:
        if key in self.placed_edges:
            return
        self.placed_edges.add(key)
        self._journal.append(lambda: self.placed_edges.discard(key))

    def _span_key(self, ref: SocketRef) -> tuple[str, str] | None:
        span_id = self._by_id[ref.placement_id].socket(ref.index).span_id
        return (ref.placement_id, span_id) if span_id else None

    def use_socket(self, ref: SocketRef) -> bool:
        """Mark a socket (and its span) used.

        Returns:
            False if the socket was already used.
        """
        if ref in self.used_sockets:
            return False
        self.used_sockets.add(ref)
        span_key = self._span_key(ref)
        if span_key is not None:
            self._span_refs[span_key] += 1

        def undo():
            self.used_sockets.discard(ref)
            if span_key is not None:
                self._span_refs[span_key] -= 1
                if self._span_refs[span_key] <= 0:
                    del self._span_refs[span_key]

        self._journal.append(undo)
        return True

    def is_socket_used(self, ref: SocketRef) -> bool:
        return ref in self.used_sockets

    def is_socket_blocked(self, ref: SocketRef) -> bool:
        """Used, or another socket of the same span is in use."""
        if ref in self.used_sockets:
            return True
        span_key = self._span_key(ref)
        return span_key is not None and self._span_refs[span_key] > 0

    def free_socket_indices(self, placement: Placement) -> list[int]:
        return [
            i
            for i in range(len(placement.shape.sockets))
            if not self.is_socket_blocked(placement.socket_ref(i))
        ]

    def carve_room_door(
        self, placement: Placement, door: Cell, update_occupancy: bool
    ) -> None:
        """Turn a committed room's door cell from wall into floor."""
        if placement.is_connector:
            return
        self._remove_cells(placement.wall_cells, [door])
        self._add_cells(placement.floor_cells, [door])
        if update_occupancy:
            self._release_cells(self.occupied_wall, [door], walls=True)
            self._add_cells(self.occupied_floor, [door])

    def carve_connector_ray(
        self,
        placement: Placement,
        base: Cell,
        side: Side,
        depth: int,
        update_occupancy: bool,
    ) -> None:
        """Carve a committed connector's bite ray (see ``shapes.carve_connector_ray``)."""
        if not placement.is_connector:
            return
        for center, neighbours, is_door in iter_bite_ray(base, side, depth):
            floor_removed = list(neighbours) if is_door else [center, *neighbours]
            wall_removed = [center, *neighbours]
            self._remove_cells(placement.floor_cells, floor_removed)
            self._remove_cells(placement.wall_cells, wall_removed)
            if update_occupancy:
                self._release_cells(self.occupied_floor, floor_removed, walls=False)
                self._release_cells(self.occupied_wall, wall_removed, walls=True)

    def _add_cells(self, target: set, cells) -> None:
        added = set(cells) - target
        if not added:
            return
        target.update(added)
        self._journal.append(lambda: target.difference_update(added))

    def _remove_cells(self, target: set, cells) -> None:
        removed = target.intersection(cells)
        if not removed:
            return
        target.difference_update(removed)
        self._journal.append(lambda: target.update(removed))

    def _release_cells(self, occupied: set, cells, walls: bool) -> None:
        """Remove cells from occupancy unless another placement still holds them."""
        held = [
            cell
            for cell in cells
            if any(
                cell in (p.wall_cells if walls else p.floor_cells) for p in self.placements
            )
        ]
        self._remove_cells(occupied, set(cells) - set(held))

    def snapshot(self) -> StateSnapshot:
        return StateSnapshot(
            occupied_floor=frozenset(self.occupied_floor),
            occupied_wall=frozenset(self.occupied_wall),
            used_sockets=frozenset(self.used_sockets),
            span_refs=tuple(sorted(self._span_refs.items())),
            placements=tuple(
                (
                    p.placement_id,
                    p.template_id,
                    p.root,
                    frozenset(p.floor_cells),
                    frozenset(p.wall_cells),
                    tuple(p.consumed_sockets),
                )
                for p in self.placements
            ),
            placed_nodes=tuple(
                sorted((k, v.placement_id) for k, v in self.placed_nodes.items())
            ),
            placed_edges=frozenset(self.placed_edges),
        )
