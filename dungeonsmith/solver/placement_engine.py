"""Backtracking placement of room and connector modules on an integer grid.

Algorithm Overview
------------------
1. **Seeding**: The first chain node with an assignment is placed as a room at
   the start cell, trying its room type's templates in shuffled order.

2. **Chain Walk**: Edges are attempted strictly in the externally supplied
   chain order. Each edge is placed by one of three strategies depending on
   how many endpoints are already placed:
   - one endpoint (the anchor): interpose a connector between the anchor and a
     new room for the other endpoint, searching anchor socket x connector
     template x primary socket x depth x secondary socket x depth x room
     template;
   - both endpoints: first the fast path, which docks the two placements
     directly when their offset already lies in their configuration space,
     then an interposed connector whose two ends must land exactly on the
     fixed endpoints;
   - no endpoint: the chain order is malformed, raise an invariant violation.

3. **Backtracking**: Every step records a checkpoint of the placement state,
   commits its placements and recurses into the next edge. When the rest of
   the search fails, the state is rolled back exactly to the checkpoint and
   the next candidate is tried.

4. **Deadline**: The wall-clock deadline is checked at every recursive step
   and before each heavy enumeration. Exceeding it aborts the whole attempt.

Properties
----------
- **Determinism**: All candidate orders come from a ``random.Random`` seeded
  per attempt and from catalog/socket order, so identical inputs and seeds
  produce identical placements.

- **Soundness**: Every committed docking offset lies in the cached
  configuration space of its template pair and passes occupancy checks
  against all earlier placements.

- **Exact Rollback**: See ``placement_state``. A failed or aborted attempt
  leaves occupancy equal to what its placement stack implies.
"""

import logging
import random
import time

from dungeonsmith.catalog import ModuleCatalog
from dungeonsmith.errors import (
    DeadlineExceededError,
    FailureKind,
    InvariantViolationError,
    PlacementError,
    SolveProgress,
    SolveResult,
)
from dungeonsmith.geometry.configuration_space import ConfigurationSpaceLibrary
from dungeonsmith.geometry.grid import ORIGIN, Cell, Side, round_position
from dungeonsmith.geometry.shapes import (
    ModuleRole,
    bite_depth_between,
    carve_connector_ray,
    carve_room_door,
)
from dungeonsmith.graph.chains import Chain
from dungeonsmith.graph.expansion import corridor_node_id
from dungeonsmith.graph.map_graph import MapGraph, normalize_key
from dungeonsmith.solver.config import SolverConfig
from dungeonsmith.solver.layout import Layout
from dungeonsmith.solver.placement_state import (
    Placement,
    PlacementState,
    SocketRef,
    find_overlap,
)

console_logger = logging.getLogger(__name__)


class PlacementEngine:
    """Stateful backtracking search for one solve attempt at a time.

    Each ``solve`` or ``place_from_layout`` call starts from a fresh
    ``PlacementState``. The catalog and configuration space library are only
    read, so a frozen library can be shared between engines.

    Args:
        catalog: Template registry.
        library: Configuration space cache. Built from ``catalog`` if omitted.
        config: Solver configuration (timeout, seed, verbosity).
    """

    def __init__(
        self,
        catalog: ModuleCatalog,
        library: ConfigurationSpaceLibrary | None = None,
        config: SolverConfig | None = None,
    ):
        self.catalog = catalog
        self.config = config or SolverConfig()
        self.library = library or ConfigurationSpaceLibrary(
            catalog,
            verbose=self.config.verbose,
            max_verbose_logs=self.config.max_verbose_logs,
        )
        self.state = PlacementState()
        self._rng = random.Random(self.config.seed)
        self._deadline: float | None = None
        self._node_assignments: dict[str, str] = {}
        self._edge_assignments: dict[tuple[str, str], str] = {}
        self._last_failure: tuple[FailureKind, str] | None = None
        self._verbose_logs_left = self.config.max_verbose_logs

    # Attempt lifecycle.

    def _reset(
        self,
        node_assignments: dict[str, str],
        edge_assignments: dict[tuple[str, str], str],
        seed: int,
        deadline: float | None,
    ) -> None:
        self.state = PlacementState()
        self._rng = random.Random(seed)
        self._node_assignments = dict(node_assignments)
        self._edge_assignments = {
            normalize_key(*key): value for key, value in edge_assignments.items()
        }
        self._deadline = (
            deadline if deadline is not None else time.time() + self.config.timeout_seconds
        )
        self._last_failure = None
        self._verbose_logs_left = self.config.max_verbose_logs

    def progress(self) -> SolveProgress:
        return SolveProgress(
            nodes_placed=len(self.state.placed_nodes),
            nodes_total=len(self._node_assignments),
            edges_placed=len(self.state.placed_edges),
            edges_total=len(self._edge_assignments),
        )

    def _check_deadline(self) -> None:
        if self._deadline is not None and time.time() > self._deadline:
            raise DeadlineExceededError(self.progress())

    def _note_failure(self, kind: FailureKind, message: str) -> None:
        """Remember the most recent local failure and log it when verbose."""
        self._last_failure = (kind, message)
        if self.config.verbose and self._verbose_logs_left > 0:
            self._verbose_logs_left -= 1
            console_logger.debug(f"[Placement] {kind.value}: {message}")

    def _shuffled(self, items) -> list:
        items = list(items)
        self._rng.shuffle(items)
        return items

    def _all_placed(self) -> bool:
        return len(self.state.placed_nodes) >= len(self._node_assignments) and len(
            self.state.placed_edges
        ) >= len(self._edge_assignments)

    def _result(self, seed: int | None, start_time: float, mode: str) -> SolveResult:
        elapsed_time = time.time() - start_time
        progress = self.progress()
        console_logger.info(
            f"{mode} succeeded in {elapsed_time:.2f}s: {len(self.state.placements)} "
            f"placements. {progress.describe()}"
        )
        return SolveResult(
            placements=list(self.state.placements), progress=progress, seed=seed
        )

    def _failure(
        self,
        kind: FailureKind,
        message: str,
        seed: int | None,
        start_time: float,
        mode: str,
    ) -> SolveResult:
        elapsed_time = time.time() - start_time
        console_logger.warning(
            f"{mode} failed after {elapsed_time:.2f}s ({kind.value}): {message}"
        )
        return SolveResult(
            failure=kind, message=message, progress=self.progress(), seed=seed
        )

    # From-scratch mode.

    def solve(
        self,
        node_assignments: dict[str, str],
        edge_assignments: dict[tuple[str, str], str],
        chains: list[Chain],
        seed: int | None = None,
        deadline: float | None = None,
        start_cell: Cell | None = None,
        node_positions: dict[str, tuple[float, float]] | None = None,
    ) -> SolveResult:
        """Place every node and edge of a logical room graph.

        Connectors are interposed on every edge; nodes must be assigned room
        types.

        Args:
            node_assignments: Node id to room type name.
            edge_assignments: Edge key (any order) to connection type name.
            chains: Ordered edge groups controlling the search order.
            seed: RNG seed for candidate shuffling (config seed if None).
            deadline: Absolute ``time.time()`` instant at which to abort.
                Defaults to now + ``config.timeout_seconds``.
            start_cell: Root of the first room. Overrides the config and the
                node position.
            node_positions: Editor positions, used to pick the start cell.

        Returns:
            SolveResult with the committed placements, or the failure kind,
            reason and progress counters.
        """
        seed = self.config.seed if seed is None else seed
        self._reset(node_assignments, edge_assignments, seed, deadline)
        start_time = time.time()
        try:
            self._validate_assignments()
            solved = self._place_internal(chains, start_cell, node_positions or {})
        except PlacementError as e:
            return self._failure(e.kind, e.message, seed, start_time, "Placement")

        if solved:
            return self._result(seed, start_time, "Placement")
        kind, message = self._last_failure or (
            FailureKind.SOCKET_EXHAUSTED,
            "Search space exhausted.",
        )
        return self._failure(
            kind,
            f"{message} {self.progress().describe()}",
            seed,
            start_time,
            "Placement",
        )

    def _check_type_templates(self, type_name: str) -> None:
        missing = [
            t for t in self.catalog.type_template_ids(type_name)
            if not self.catalog.has_template(t)
        ]
        if missing:
            raise InvariantViolationError(
                f"Type '{type_name}' references unknown templates {missing}."
            )

    def _validate_assignments(self) -> None:
        for node_id, type_name in self._node_assignments.items():
            if not self.catalog.has_type(type_name):
                raise InvariantViolationError(
                    f"Node {node_id} is assigned unknown room type '{type_name}'."
                )
            self._check_type_templates(type_name)
            if self.catalog.is_connection_type(type_name) or any(
                self.catalog.role_of(t) == ModuleRole.CONNECTOR
                for t in self.catalog.type_template_ids(type_name)
            ):
                raise InvariantViolationError(
                    f"Node {node_id} resolves to connector templates ('{type_name}'); "
                    "connectors may only be interposed on edges, not docked to each other."
                )
        for (a, b), type_name in self._edge_assignments.items():
            if a == b:
                raise InvariantViolationError(f"Edge {a}-{b} is a self loop.")
            for node_id in (a, b):
                if node_id not in self._node_assignments:
                    raise InvariantViolationError(
                        f"Edge {a}-{b} references unassigned node {node_id}."
                    )
            if not self.catalog.is_connection_type(type_name):
                raise InvariantViolationError(
                    f"Edge {a}-{b} is assigned unknown connection type '{type_name}'."
                )
            self._check_type_templates(type_name)
            # Interposed connectors are committed under this id.
            connector_id = corridor_node_id(a, b)
            if connector_id in self._node_assignments:
                raise InvariantViolationError(
                    f"Edge {a}-{b} connector id '{connector_id}' collides with a node id."
                )

    def _place_internal(
        self,
        chains: list[Chain],
        start_cell: Cell | None,
        node_positions: dict[str, tuple[float, float]],
    ) -> bool:
        self._check_deadline()

        candidates = [n for chain in chains for n in chain.nodes]
        if not candidates:
            candidates = list(self._node_assignments.keys())
        start_node = next((n for n in candidates if n in self._node_assignments), None)
        if start_node is None:
            if not self._node_assignments:
                return True
            raise InvariantViolationError("No start node found.")

        if start_cell is None and self.config.start_cell is not None:
            start_cell = Cell.from_list(self.config.start_cell)
        if start_cell is None:
            start_cell = round_position(node_positions.get(start_node))

        if not self._place_room(start_node, start_cell):
            kind, message = self._last_failure or (FailureKind.SOCKET_EXHAUSTED, "")
            self._last_failure = (kind, f"Failed to place start node {start_node}. {message}")
            return False

        return self._place_chains(chains, 0, 0)

    def _place_room(self, node_id: str, cell: Cell) -> bool:
        room_type = self._node_assignments[node_id]
        template_ids = self._shuffled(self.catalog.templates_for(room_type))
        if not template_ids:
            self._note_failure(
                FailureKind.SOCKET_EXHAUSTED, f"Room type '{room_type}' has no templates."
            )
            return False

        for template_id in template_ids:
            self._check_deadline()
            placement = Placement.from_template(
                placement_id=node_id,
                template=self.catalog.get_template(template_id),
                root=cell,
                node_id=node_id,
            )
            bad = find_overlap(placement.floor_cells, self.state.occupied_floor)
            if bad is None:
                bad = find_overlap(placement.wall_cells, self.state.occupied_wall)
            if bad is not None:
                self._note_failure(
                    FailureKind.OVERLAP_REJECTED,
                    f"Room {template_id} for node {node_id} overlaps at {bad}.",
                )
                continue
            self.state.commit(placement)
            return True
        return False

    def _place_chains(self, chains: list[Chain], chain_index: int, edge_index: int) -> bool:
        self._check_deadline()

        if self._all_placed():
            return True
        if chain_index >= len(chains):
            return False

        chain = chains[chain_index]
        for i in range(edge_index, len(chain.edges)):
            u, v = chain.edges[i]
            key = normalize_key(u, v)
            if key not in self._edge_assignments or key in self.state.placed_edges:
                continue

            u_placed = u in self.state.placed_nodes
            v_placed = v in self.state.placed_nodes
            if not u_placed and not v_placed:
                raise InvariantViolationError(
                    f"Edge {u}-{v} in chain {chain_index} has no placed endpoint; "
                    "chains must extend the placed region one edge at a time."
                )

            checkpoint = self.state.checkpoint()

            def continuation(next_index=i + 1):
                return self._place_chains(chains, chain_index, next_index)

            if u_placed and v_placed:
                placed = self._try_place_edge_between_placed(u, v, key, continuation)
            else:
                anchor_id, target_id = (u, v) if u_placed else (v, u)
                placed = self._try_place_edge(anchor_id, target_id, key, continuation)
            if placed:
                return True

            # Every later step depends on this edge, so the branch is dead.
            self.state.rollback(checkpoint)
            return False

        return self._place_chains(chains, chain_index + 1, 0)

    # Edge strategies.

    def _connector_templates(
        self, connection_type: str, side: Side, width: int
    ) -> list[str]:
        return [
            t
            for t in self.catalog.templates_for(connection_type, side, width)
            if self.catalog.role_of(t) == ModuleRole.CONNECTOR
        ]

    def _primary_sockets(self, shape, side: Side, width: int) -> list[int]:
        exact = [
            i for i, s in enumerate(shape.sockets) if s.side == side and s.width == width
        ]
        if exact:
            return exact
        return [i for i, s in enumerate(shape.sockets) if s.side == side]

    def _try_place_edge(
        self, anchor_id: str, target_id: str, key: tuple[str, str], continuation
    ) -> bool:
        """Interpose a connector between a placed anchor and a new target room."""
        self._check_deadline()

        connection_type = self._edge_assignments[key]
        target_room_type = self._node_assignments[target_id]
        anchor = self.state.placed_nodes[anchor_id]
        connector_id = corridor_node_id(*key)

        anchor_sockets = self._shuffled(self.state.free_socket_indices(anchor))
        if not anchor_sockets:
            self._note_failure(
                FailureKind.SOCKET_EXHAUSTED,
                f"Edge {anchor_id}-{target_id}: anchor {anchor.template_id} has no free socket.",
            )
            return False

        for a_idx in anchor_sockets:
            a_sock = anchor.socket(a_idx)
            anchor_cell = anchor.socket_cell(a_idx)
            need_side = a_sock.side.opposite()
            conn_templates = self._shuffled(
                self._connector_templates(connection_type, need_side, a_sock.width)
            )
            for conn_id in conn_templates:
                self._check_deadline()
                anchor_space = self.library.get_space(anchor.template_id, conn_id)
                if anchor_space.is_empty:
                    self._note_failure(
                        FailureKind.CONFIGURATION_SPACE_EMPTY,
                        f"Edge {anchor_id}-{target_id}: no docking between "
                        f"{anchor.template_id} and {conn_id}.",
                    )
                    continue

                conn_template = self.catalog.get_template(conn_id)
                conn_shape = conn_template.shape
                s1_candidates = self._shuffled(
                    self._primary_sockets(conn_shape, need_side, a_sock.width)
                )
                for s1 in s1_candidates:
                    sock1 = conn_shape.sockets[s1]
                    for depth1 in range(max(1, sock1.bite_depth)):
                        conn_root = anchor_cell - (sock1.cell + sock1.side.inward().scale(depth1))
                        if (conn_root - anchor.root) not in anchor_space:
                            self._note_failure(
                                FailureKind.CONFIGURATION_SPACE_EMPTY,
                                f"Edge {anchor_id}-{target_id}: {conn_id} depth {depth1} "
                                f"not in space of {anchor.template_id}.",
                            )
                            continue

                        base = Placement.from_template(connector_id, conn_template, conn_root)
                        carve_connector_ray(
                            base.floor_cells,
                            base.wall_cells,
                            conn_root + sock1.cell,
                            sock1.side,
                            depth1,
                        )
                        bad = find_overlap(
                            base.floor_cells, self.state.occupied_floor, {anchor_cell}
                        )
                        if bad is not None:
                            self._note_failure(
                                FailureKind.OVERLAP_REJECTED,
                                f"Edge {anchor_id}-{target_id}: connector {conn_id} floor "
                                f"overlaps at {bad}.",
                            )
                            continue

                        s2_candidates = self._shuffled(
                            i for i in range(len(conn_shape.sockets)) if i != s1
                        )
                        for s2 in s2_candidates:
                            if self._try_secondary(
                                anchor=anchor,
                                anchor_socket=a_idx,
                                target_id=target_id,
                                target_room_type=target_room_type,
                                key=key,
                                base=base,
                                s1=s1,
                                s2=s2,
                                continuation=continuation,
                            ):
                                return True
        return False

    def _try_secondary(
        self,
        anchor: Placement,
        anchor_socket: int,
        target_id: str,
        target_room_type: str,
        key: tuple[str, str],
        base: Placement,
        s1: int,
        s2: int,
        continuation,
    ) -> bool:
        sock2 = base.socket(s2)
        anchor_cell = anchor.socket_cell(anchor_socket)
        room_side = sock2.side.opposite()
        room_templates = self._shuffled(
            t
            for t in self.catalog.templates_for(target_room_type, room_side, sock2.width)
            if self.catalog.role_of(t) == ModuleRole.ROOM
        )
        if not room_templates:
            self._note_failure(
                FailureKind.SOCKET_EXHAUSTED,
                f"Edge {anchor.node_id}-{target_id}: no '{target_room_type}' template "
                f"with a {room_side.value} socket.",
            )
            return False

        for depth2 in range(max(1, sock2.bite_depth)):
            floor_cells = set(base.floor_cells)
            wall_cells = set(base.wall_cells)
            s2_base = base.socket_cell(s2)
            carve_connector_ray(floor_cells, wall_cells, s2_base, sock2.side, depth2)
            s2_target = s2_base + sock2.side.inward().scale(depth2)

            for room_id in room_templates:
                self._check_deadline()
                room_space = self.library.get_space(base.template_id, room_id)
                if room_space.is_empty:
                    self._note_failure(
                        FailureKind.CONFIGURATION_SPACE_EMPTY,
                        f"Edge {anchor.node_id}-{target_id}: no docking between "
                        f"{base.template_id} and {room_id}.",
                    )
                    continue

                room_template = self.catalog.get_template(room_id)
                room_sockets = [
                    i for i, s in enumerate(room_template.shape.sockets) if s.side == room_side
                ]
                for r_idx in room_sockets:
                    room_root = s2_target - room_template.shape.sockets[r_idx].cell
                    if (room_root - base.root) not in room_space:
                        self._note_failure(
                            FailureKind.CONFIGURATION_SPACE_EMPTY,
                            f"Edge {anchor.node_id}-{target_id}: {room_id} at depth {depth2} "
                            f"not in space of {base.template_id}.",
                        )
                        continue

                    room = Placement.from_template(
                        target_id, room_template, room_root, node_id=target_id
                    )
                    carve_room_door(room.floor_cells, room.wall_cells, s2_target)
                    reason = self._room_overlap(room)
                    if reason is None:
                        reason = self._connector_overlap(
                            floor_cells, wall_cells, [anchor], {anchor_cell}
                        )
                    if reason is not None:
                        self._note_failure(
                            FailureKind.OVERLAP_REJECTED,
                            f"Edge {anchor.node_id}-{target_id}: {base.template_id}/{room_id} "
                            f"{reason}.",
                        )
                        continue

                    checkpoint = self.state.checkpoint()
                    self.state.carve_room_door(anchor, anchor_cell, update_occupancy=True)
                    connector = Placement(
                        placement_id=base.placement_id,
                        template_id=base.template_id,
                        role=base.role,
                        root=base.root,
                        shape=base.shape,
                        floor_cells=set(floor_cells),
                        wall_cells=set(wall_cells),
                        consumed_sockets=[
                            base.socket_ref(s1),
                            base.socket_ref(s2),
                            anchor.socket_ref(anchor_socket),
                        ],
                        edge_key=key,
                    )
                    room.consumed_sockets = [room.socket_ref(r_idx)]
                    self.state.commit(connector)
                    self.state.commit(room)
                    if continuation():
                        return True
                    self.state.rollback(checkpoint)
        return False

    def _room_overlap(self, room: Placement) -> str | None:
        bad = find_overlap(room.floor_cells, self.state.occupied_floor)
        if bad is not None:
            return f"room floor overlaps floor at {bad}"
        bad = find_overlap(room.wall_cells, self.state.occupied_floor)
        if bad is not None:
            return f"room wall overlaps floor at {bad}"
        bad = find_overlap(room.floor_cells, self.state.occupied_wall)
        if bad is not None:
            return f"room floor overlaps wall at {bad}"
        return None

    def _connector_overlap(
        self,
        floor_cells: set[Cell],
        wall_cells: set[Cell],
        endpoints: list[Placement],
        door_cells: set[Cell],
    ) -> str | None:
        """Connector cells against occupancy. Overlaps with the docked
        endpoints are governed by their configuration spaces instead."""
        endpoint_floor = set().union(*(p.floor_cells for p in endpoints))
        endpoint_walls = set().union(*(p.wall_cells for p in endpoints))
        bad = find_overlap(floor_cells, self.state.occupied_floor, door_cells)
        if bad is not None:
            return f"connector floor overlaps floor at {bad}"
        bad = find_overlap(wall_cells, self.state.occupied_wall, endpoint_walls)
        if bad is not None:
            return f"connector wall overlaps wall at {bad}"
        bad = find_overlap(wall_cells, self.state.occupied_floor, endpoint_floor)
        if bad is not None:
            return f"connector wall overlaps floor at {bad}"
        bad = find_overlap(floor_cells, self.state.occupied_wall, endpoint_walls)
        if bad is not None:
            return f"connector floor overlaps wall at {bad}"
        return None

    def connect_placed(
        self, a_id: str, b_id: str, connection_type: str | None = None
    ) -> bool:
        """Close the edge between two committed nodes without continuing the search.

        The interposed-connector fallback uses ``connection_type`` when given,
        otherwise the edge's assigned connection type, if it has one. The
        assignment is only kept when the edge is placed.
        """
        key = normalize_key(a_id, b_id)
        previous = self._edge_assignments.get(key)
        if connection_type is not None:
            self._edge_assignments[key] = connection_type
        placed = False
        try:
            placed = self._try_place_edge_between_placed(a_id, b_id, key, lambda: True)
        finally:
            if not placed and connection_type is not None:
                if previous is None:
                    del self._edge_assignments[key]
                else:
                    self._edge_assignments[key] = previous
        return placed

    def _try_place_edge_between_placed(
        self, a_id: str, b_id: str, key: tuple[str, str], continuation
    ) -> bool:
        self._check_deadline()
        a = self.state.placed_nodes[a_id]
        b = self.state.placed_nodes[b_id]

        space = self.library.get_space(a.template_id, b.template_id)
        if (b.root - a.root) in space:
            if self._dock_placed(a, b, key, continuation):
                return True
        else:
            self._note_failure(
                FailureKind.CONFIGURATION_SPACE_EMPTY,
                f"Edge {a_id}-{b_id}: offset {b.root - a.root} not in direct space of "
                f"{a.template_id}/{b.template_id}.",
            )

        if key not in self._edge_assignments:
            return False
        return self._try_interpose_between_placed(a, b, key, continuation)

    def _dock_placed(self, a: Placement, b: Placement, key, continuation) -> bool:
        """Fast path: mark one opposite socket pair used and carve both doors."""
        if a.is_connector != b.is_connector:
            conn, room = (a, b) if a.is_connector else (b, a)
            for ci in self.state.free_socket_indices(conn):
                c_sock = conn.socket(ci)
                for ri in self.state.free_socket_indices(room):
                    if room.socket(ri).side != c_sock.side.opposite():
                        continue
                    door = room.socket_cell(ri)
                    depth = bite_depth_between(
                        conn.socket_cell(ci), c_sock.side, c_sock.bite_depth, door
                    )
                    if depth is None:
                        continue
                    checkpoint = self.state.checkpoint()
                    self.state.carve_room_door(room, door, update_occupancy=True)
                    self.state.carve_connector_ray(
                        conn, conn.socket_cell(ci), c_sock.side, depth, update_occupancy=True
                    )
                    self.state.use_socket(conn.socket_ref(ci))
                    self.state.use_socket(room.socket_ref(ri))
                    self.state.mark_edge_placed(key)
                    if continuation():
                        return True
                    self.state.rollback(checkpoint)
        else:
            for ai in self.state.free_socket_indices(a):
                for bi in self.state.free_socket_indices(b):
                    if a.socket(ai).side != b.socket(bi).side.opposite():
                        continue
                    door = a.socket_cell(ai)
                    if door != b.socket_cell(bi):
                        continue
                    checkpoint = self.state.checkpoint()
                    self.state.carve_room_door(a, door, update_occupancy=True)
                    self.state.carve_room_door(b, door, update_occupancy=True)
                    self.state.use_socket(a.socket_ref(ai))
                    self.state.use_socket(b.socket_ref(bi))
                    self.state.mark_edge_placed(key)
                    if continuation():
                        return True
                    self.state.rollback(checkpoint)

        self._note_failure(
            FailureKind.SOCKET_EXHAUSTED,
            f"Edge {a.placement_id}-{b.placement_id}: no free aligned socket pair.",
        )
        return False

    def _try_interpose_between_placed(
        self, a: Placement, b: Placement, key: tuple[str, str], continuation
    ) -> bool:
        """Connector whose two ends must land exactly on the fixed endpoints."""
        connection_type = self._edge_assignments[key]
        connector_id = corridor_node_id(*key)
        if self.state.has_placement(connector_id):
            self._note_failure(
                FailureKind.SOCKET_EXHAUSTED,
                f"Edge {a.placement_id}-{b.placement_id}: placement id '{connector_id}' "
                "is already taken.",
            )
            return False

        for a_idx in self._shuffled(self.state.free_socket_indices(a)):
            a_sock = a.socket(a_idx)
            anchor_cell = a.socket_cell(a_idx)
            need_side = a_sock.side.opposite()
            for conn_id in self._shuffled(
                self._connector_templates(connection_type, need_side, a_sock.width)
            ):
                self._check_deadline()
                space_a = self.library.get_space(a.template_id, conn_id)
                space_b = self.library.get_space(conn_id, b.template_id)
                if space_a.is_empty or space_b.is_empty:
                    self._note_failure(
                        FailureKind.CONFIGURATION_SPACE_EMPTY,
                        f"Edge {a.placement_id}-{b.placement_id}: {conn_id} cannot dock "
                        "both endpoints.",
                    )
                    continue

                conn_template = self.catalog.get_template(conn_id)
                conn_shape = conn_template.shape
                for s1 in self._shuffled(self._primary_sockets(conn_shape, need_side, a_sock.width)):
                    sock1 = conn_shape.sockets[s1]
                    for depth1 in range(max(1, sock1.bite_depth)):
                        conn_root = anchor_cell - (sock1.cell + sock1.side.inward().scale(depth1))
                        if (conn_root - a.root) not in space_a:
                            continue
                        if (b.root - conn_root) not in space_b:
                            self._note_failure(
                                FailureKind.CONFIGURATION_SPACE_EMPTY,
                                f"Edge {a.placement_id}-{b.placement_id}: {conn_id} at depth "
                                f"{depth1} does not reach {b.template_id}.",
                            )
                            continue

                        for s2 in self._shuffled(
                            i for i in range(len(conn_shape.sockets)) if i != s1
                        ):
                            if self._try_close_secondary(
                                a, a_idx, b, key, connector_id, conn_template, conn_root,
                                s1, depth1, s2, continuation,
                            ):
                                return True
        return False

    def _try_close_secondary(
        self,
        a: Placement,
        a_idx: int,
        b: Placement,
        key: tuple[str, str],
        connector_id: str,
        conn_template,
        conn_root: Cell,
        s1: int,
        depth1: int,
        s2: int,
        continuation,
    ) -> bool:
        sock1 = conn_template.shape.sockets[s1]
        sock2 = conn_template.shape.sockets[s2]
        s2_base = conn_root + sock2.cell
        anchor_cell = a.socket_cell(a_idx)

        for b_idx in self.state.free_socket_indices(b):
            if b.socket(b_idx).side != sock2.side.opposite():
                continue
            target_cell = b.socket_cell(b_idx)
            depth2 = bite_depth_between(s2_base, sock2.side, sock2.bite_depth, target_cell)
            if depth2 is None:
                continue

            connector = Placement.from_template(connector_id, conn_template, conn_root)
            carve_connector_ray(
                connector.floor_cells, connector.wall_cells, conn_root + sock1.cell,
                sock1.side, depth1,
            )
            carve_connector_ray(
                connector.floor_cells, connector.wall_cells, s2_base, sock2.side, depth2
            )
            reason = self._connector_overlap(
                connector.floor_cells, connector.wall_cells, [a, b], {anchor_cell, target_cell}
            )
            if reason is not None:
                self._note_failure(
                    FailureKind.OVERLAP_REJECTED,
                    f"Edge {a.placement_id}-{b.placement_id}: {conn_template.template_id} "
                    f"{reason}.",
                )
                continue

            checkpoint = self.state.checkpoint()
            self.state.carve_room_door(a, anchor_cell, update_occupancy=True)
            self.state.carve_room_door(b, target_cell, update_occupancy=True)
            connector.consumed_sockets = [
                connector.socket_ref(s1),
                connector.socket_ref(s2),
                a.socket_ref(a_idx),
                b.socket_ref(b_idx),
            ]
            connector.edge_key = key
            self.state.commit(connector)
            if continuation():
                return True
            self.state.rollback(checkpoint)
        return False

    # Layout mode.

    def place_from_layout(
        self,
        layout: Layout,
        graph: MapGraph,
        start_cell: Cell | None = None,
        deadline: float | None = None,
    ) -> SolveResult:
        """Verify and commit a precomputed layout of an expanded graph.

        The graph must alternate Room and Connector nodes. Every connector is
        carved along the bite ray that reaches each neighbouring room socket,
        every room door is opened, overlaps outside door cells are rejected and
        finally every edge's offset is checked against its configuration space.

        Args:
            layout: Node id to template and root cell, in placement order.
            graph: Expanded (corridor) graph the layout realizes.
            start_cell: If given, the layout is translated so its first room's
                root lands here.
            deadline: Absolute ``time.time()`` instant at which to abort.

        Returns:
            SolveResult. Malformed layouts fail with INVARIANT_VIOLATION,
            overlapping ones with OVERLAP_REJECTED.
        """
        node_assignments = {
            n.node_id: graph.node_room_type(n.node_id) or "" for n in graph.nodes
        }
        edge_assignments = {e.key: graph.edge_connection_type(e) or "" for e in graph.edges}
        self._reset(node_assignments, edge_assignments, self.config.seed, deadline)
        start_time = time.time()
        try:
            self._place_layout(layout, graph, start_cell)
        except PlacementError as e:
            return self._failure(e.kind, e.message, None, start_time, "Layout placement")
        if self._last_failure is not None:
            kind, message = self._last_failure
            return self._failure(kind, message, None, start_time, "Layout placement")
        return self._result(None, start_time, "Layout placement")

    def _place_layout(self, layout: Layout, graph: MapGraph, start_cell: Cell | None) -> None:
        if layout is None or layout.is_empty:
            raise InvariantViolationError("Layout is empty.")
        self._check_deadline()
        for node_id, layout_room in layout.rooms.items():
            if not self.catalog.has_template(layout_room.template_id):
                raise InvariantViolationError(
                    f"Layout node {node_id} uses unknown template "
                    f"'{layout_room.template_id}'."
                )

        offset = ORIGIN
        if start_cell is not None:
            first = next(iter(layout.rooms.values()))
            offset = start_cell - first.root

        connector_plan: dict[str, list[tuple[Cell, Side, int]]] = {}
        door_plan: dict[str, set[Cell]] = {}
        socket_pairs: list[tuple[str, int, str, int]] = []
        for edge in graph.edges:
            a = layout.rooms.get(edge.from_node_id)
            b = layout.rooms.get(edge.to_node_id)
            if a is None or b is None:
                missing = edge.from_node_id if a is None else edge.to_node_id
                raise InvariantViolationError(f"Layout is missing node {missing}.")
            a_is_connector = self.catalog.role_of(a.template_id) == ModuleRole.CONNECTOR
            b_is_connector = self.catalog.role_of(b.template_id) == ModuleRole.CONNECTOR
            if a_is_connector == b_is_connector:
                raise InvariantViolationError(
                    f"Invalid edge {edge.from_node_id}->{edge.to_node_id}: expected "
                    "Room<->Connector only."
                )
            conn, room = (a, b) if a_is_connector else (b, a)
            match = self._find_layout_bite(conn, room, offset)
            if match is None:
                raise InvariantViolationError(
                    f"Edge {edge.from_node_id}->{edge.to_node_id}: no socket pair within "
                    "bite depth in layout."
                )
            conn_idx, room_idx, base, side, depth = match
            connector_plan.setdefault(conn.node_id, []).append((base, side, depth))
            door_plan.setdefault(room.node_id, set()).add(base + side.inward().scale(depth))
            socket_pairs.append((conn.node_id, conn_idx, room.node_id, room_idx))

        for node_id, layout_room in layout.rooms.items():
            self._check_deadline()
            placement = Placement.from_template(
                placement_id=node_id,
                template=self.catalog.get_template(layout_room.template_id),
                root=layout_room.root + offset,
                node_id=node_id,
            )
            if placement.is_connector:
                for base, side, depth in connector_plan.get(node_id, []):
                    carve_connector_ray(
                        placement.floor_cells, placement.wall_cells, base, side, depth
                    )
                doors = {
                    base + side.inward().scale(depth)
                    for base, side, depth in connector_plan.get(node_id, [])
                }
            else:
                doors = door_plan.get(node_id, set())
                for door in doors:
                    carve_room_door(placement.floor_cells, placement.wall_cells, door)

            reason = self._layout_overlap(placement, doors)
            if reason is not None:
                self._note_failure(
                    FailureKind.OVERLAP_REJECTED,
                    f"Layout {placement.role.value} {layout_room.template_id} for node "
                    f"{node_id} {reason}.",
                )
                return
            self.state.commit(placement)

        for conn_id, conn_idx, room_id, room_idx in socket_pairs:
            self.state.use_socket(SocketRef(conn_id, conn_idx))
            self.state.use_socket(SocketRef(room_id, room_idx))
            self.state.mark_edge_placed(normalize_key(conn_id, room_id))

        self._validate_all_edges_touch(graph)

    def _find_layout_bite(self, conn, room, offset: Cell):
        conn_shape = self.catalog.shape_of(conn.template_id)
        room_shape = self.catalog.shape_of(room.template_id)
        conn_root = conn.root + offset
        room_root = room.root + offset
        for ci, conn_sock in enumerate(conn_shape.sockets):
            base = conn_root + conn_sock.cell
            for ri, room_sock in enumerate(room_shape.sockets):
                if room_sock.side != conn_sock.side.opposite():
                    continue
                depth = bite_depth_between(
                    base, conn_sock.side, conn_sock.bite_depth, room_root + room_sock.cell
                )
                if depth is not None:
                    return ci, ri, base, conn_sock.side, depth
        return None

    def _layout_overlap(self, placement: Placement, doors: set[Cell]) -> str | None:
        bad = find_overlap(placement.floor_cells, self.state.occupied_floor, doors)
        if bad is not None:
            return f"overlaps existing floor at {bad}"
        bad = find_overlap(placement.wall_cells, self.state.occupied_floor)
        if bad is not None:
            return f"walls overlap existing floor at {bad}"
        bad = find_overlap(placement.floor_cells, self.state.occupied_wall)
        if bad is not None:
            return f"floor overlaps existing walls at {bad}"
        return None

    def _validate_all_edges_touch(self, graph: MapGraph) -> None:
        for edge in graph.edges:
            a = self.state.placed_nodes.get(edge.from_node_id)
            b = self.state.placed_nodes.get(edge.to_node_id)
            if a is None or b is None:
                continue
            name = f"{edge.from_node_id}->{edge.to_node_id}"
            if a.is_connector == b.is_connector:
                raise InvariantViolationError(
                    f"Invalid edge {name}: expected Room<->Connector only."
                )
            space = self.library.get_space(a.template_id, b.template_id)
            if space.is_empty:
                raise InvariantViolationError(f"Edge {name} has empty configuration space.")
            if (b.root - a.root) not in space:
                raise InvariantViolationError(f"Edge {name} not satisfied in layout.")
