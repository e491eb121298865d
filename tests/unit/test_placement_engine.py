"""Tests for the backtracking placement engine."""

import time
import unittest

from unittest.mock import patch

from dungeonsmith.catalog import ConnectionType, RoomType
from dungeonsmith.errors import FailureKind, InvariantViolationError
from dungeonsmith.geometry.configuration_space import ConfigurationSpaceLibrary
from dungeonsmith.geometry.grid import Cell
from dungeonsmith.graph.chains import Chain
from dungeonsmith.graph.expansion import expand_corridor_graph
from dungeonsmith.graph.map_graph import MapGraph
from dungeonsmith.solver.config import SolverConfig
from dungeonsmith.solver.layout import Layout
from dungeonsmith.solver.placement_engine import PlacementEngine
from dungeonsmith.solver.placement_state import Placement, PlacementState, SocketRef
from tests.unit.dungeon_fixtures import create_square_catalog, create_test_catalog


def two_room_problem():
    node_assignments = {"a": "start", "b": "end"}
    edge_assignments = {("a", "b"): "corridor"}
    chains = [Chain(edges=[("a", "b")])]
    return node_assignments, edge_assignments, chains


def three_room_problem():
    node_assignments = {"a": "start", "h": "hall", "b": "end"}
    edge_assignments = {("a", "h"): "corridor", ("h", "b"): "corridor"}
    chains = [Chain(edges=[("a", "h"), ("h", "b")])]
    return node_assignments, edge_assignments, chains


def signature(result) -> list:
    return [
        (p.placement_id, p.template_id, p.root, tuple(p.consumed_sockets))
        for p in result.placements
    ]


def assert_no_illegal_overlap(placements):
    """Floors of different placements may only meet on shared door cells."""
    for i, first in enumerate(placements):
        for second in placements[i + 1 :]:
            shared = first.floor_cells & second.floor_cells
            assert len(shared) <= 1, (first.placement_id, second.placement_id, shared)
            assert not (first.floor_cells & second.wall_cells), (
                first.placement_id,
                second.placement_id,
            )
            assert not (first.wall_cells & second.floor_cells), (
                first.placement_id,
                second.placement_id,
            )


class TestSolve(unittest.TestCase):
    """Tests for from-scratch solving."""

    def setUp(self):
        self.catalog = create_test_catalog()
        self.engine = PlacementEngine(self.catalog)

    def test_two_rooms_one_corridor(self):
        """A single edge interposes one strictly docked corridor."""
        result = self.engine.solve(*two_room_problem(), seed=0)

        assert result.success, result.message
        placements = {p.placement_id: p for p in result.placements}
        assert set(placements) == {"a", "a~b", "b"}
        assert placements["a"].root == Cell(0, 0)
        assert placements["a~b"].root == Cell(4, 1)
        assert placements["a~b"].edge_key == ("a", "b")
        assert placements["b"].root == Cell(8, 0)
        assert result.progress.nodes_placed == 2
        assert result.progress.edges_placed == 1

    def test_sockets_and_doors(self):
        """Every docked socket is used once and both doors are carved open."""
        result = self.engine.solve(*two_room_problem(), seed=0)
        placements = {p.placement_id: p for p in result.placements}

        assert self.engine.state.used_sockets == {
            SocketRef("a~b", 0),
            SocketRef("a~b", 1),
            SocketRef("a", 0),
            SocketRef("b", 0),
        }
        assert Cell(4, 2) in placements["a"].floor_cells
        assert Cell(4, 2) not in placements["a"].wall_cells
        assert Cell(8, 2) not in placements["b"].wall_cells
        assert_no_illegal_overlap(result.placements)

    def test_chain_through_hall(self):
        """Two chained edges with bite depth place all rooms without overlap."""
        engine = PlacementEngine(create_test_catalog(bite_depth=3))

        for seed in range(3):
            result = engine.solve(*three_room_problem(), seed=seed)
            assert result.success, result.message
            assert len(result.placements) == 5
            assert result.progress.edges_placed == 2
            assert_no_illegal_overlap(result.placements)

    def test_deterministic_for_seed(self):
        """Same inputs and seed give the same placements."""
        catalog = create_test_catalog(bite_depth=3)
        library = ConfigurationSpaceLibrary(catalog)
        library.precompute()

        first = PlacementEngine(catalog, library=library).solve(
            *three_room_problem(), seed=11
        )
        second = PlacementEngine(catalog, library=library).solve(
            *three_room_problem(), seed=11
        )

        assert first.success
        assert signature(first) == signature(second)
        assert first.seed == 11

    def test_start_cell_overrides(self):
        """Explicit start cell wins over config and node positions."""
        result = self.engine.solve(
            *two_room_problem(),
            start_cell=Cell(10, -3),
            node_positions={"a": (50.0, 50.0)},
        )

        placements = {p.placement_id: p for p in result.placements}
        assert placements["a"].root == Cell(10, -3)
        assert placements["b"].root == Cell(18, -3)

    def test_start_cell_from_position_and_config(self):
        """Without an explicit cell the config, then the node position, is used."""
        result = self.engine.solve(*two_room_problem(), node_positions={"a": (2.4, 1.6)})
        assert result.placements[0].root == Cell(2, 2)

        engine = PlacementEngine(self.catalog, config=SolverConfig(start_cell=(5, 5)))
        result = engine.solve(*two_room_problem(), node_positions={"a": (2.4, 1.6)})
        assert result.placements[0].root == Cell(5, 5)

    def test_empty_problem(self):
        """Nothing to place is a trivial success."""
        result = self.engine.solve({}, {}, [])

        assert result.success
        assert result.placements == []

    def test_socket_exhausted(self):
        """Two east-only rooms cannot be connected."""
        result = self.engine.solve(
            {"a": "start", "b": "start"},
            {("a", "b"): "corridor"},
            [Chain(edges=[("a", "b")])],
        )

        assert not result.success
        assert result.failure == FailureKind.SOCKET_EXHAUSTED
        assert result.failure.is_recoverable
        assert "Nodes placed 1/2, edges placed 0/1." in result.message
        assert result.placements == []

    def test_failed_attempt_leaves_no_residue(self):
        """After a failed attempt occupancy matches the placement stack."""
        result = self.engine.solve(
            {"a": "start", "b": "start"},
            {("a", "b"): "corridor"},
            [Chain(edges=[("a", "b")])],
        )

        assert not result.success
        state = self.engine.state
        expected_floor = set().union(*(p.floor_cells for p in state.placements))
        expected_walls = set().union(*(p.wall_cells for p in state.placements))
        assert state.occupied_floor == expected_floor
        assert state.occupied_wall == expected_walls
        assert state.used_sockets == set()


def assert_occupancy_matches(state):
    assert state.occupied_floor == set().union(*(p.floor_cells for p in state.placements))
    assert state.occupied_wall == set().union(*(p.wall_cells for p in state.placements))


class TestCycle(unittest.TestCase):
    """Tests for graphs whose last chain edge closes a loop."""

    def test_square_loop_closes(self):
        """Four rooms around a square close the loop with a fixed-ends corridor."""
        catalog = create_square_catalog(bite_depth=3)
        library = ConfigurationSpaceLibrary(catalog)
        library.precompute()
        corners = ["sw", "se", "ne", "nw"]
        node_assignments = {corner: corner for corner in corners}
        edges = [("sw", "se"), ("se", "ne"), ("ne", "nw"), ("nw", "sw")]
        edge_assignments = {edge: "corridor" for edge in edges}

        for seed in range(5):
            engine = PlacementEngine(catalog, library=library)
            result = engine.solve(
                node_assignments, edge_assignments, [Chain(edges=edges)], seed=seed
            )

            assert result.success, result.message
            assert len(result.placements) == 8
            assert result.progress.edges_placed == 4
            assert len(engine.state.used_sockets) == 16
            assert len({p.edge_key for p in result.placements if p.is_connector}) == 4
            assert_no_illegal_overlap(result.placements)
            assert_occupancy_matches(engine.state)


class TestBacktracking(unittest.TestCase):
    """Tests for recovering from dead-end candidates."""

    def test_dead_end_template_is_undone(self):
        """A room template with no onward socket is rolled back for the next one."""
        catalog = create_test_catalog()
        catalog.add_room_type(RoomType(name="fork", template_ids=["room_w", "room_ew"]))
        engine = PlacementEngine(catalog)
        node_assignments, edge_assignments, chains = three_room_problem()
        node_assignments["h"] = "fork"

        # Catalog order puts the dead end first.
        with patch.object(engine, "_shuffled", side_effect=list), patch.object(
            PlacementState,
            "rollback",
            autospec=True,
            side_effect=PlacementState.rollback,
        ) as rollback:
            result = engine.solve(node_assignments, edge_assignments, chains)

        assert result.success, result.message
        assert rollback.called
        placements = {p.placement_id: p for p in result.placements}
        assert placements["h"].template_id == "room_ew"
        assert len(result.placements) == 5
        assert len(engine.state.used_sockets) == 8
        assert_no_illegal_overlap(result.placements)
        assert_occupancy_matches(engine.state)


class TestDeadline(unittest.TestCase):
    """Tests for the wall-clock deadline."""

    def test_past_deadline_aborts(self):
        """A deadline in the past fails immediately with no placements."""
        engine = PlacementEngine(create_test_catalog())

        result = engine.solve(*two_room_problem(), deadline=time.time() - 1.0)

        assert result.failure == FailureKind.DEADLINE_EXCEEDED
        assert result.message.startswith("Placement time limit exceeded.")
        assert not result.failure.is_recoverable
        assert result.placements == []
        assert engine.state.occupied_floor == set()
        assert engine.state.occupied_wall == set()

    def test_layout_deadline(self):
        """Layout mode honours the deadline too."""
        engine = PlacementEngine(create_test_catalog())
        layout = Layout()
        layout.add("a", "room_e", Cell(0, 0))

        result = engine.place_from_layout(layout, MapGraph(), deadline=time.time() - 1.0)

        assert result.failure == FailureKind.DEADLINE_EXCEEDED


class TestInvariantViolations(unittest.TestCase):
    """Tests for malformed inputs."""

    def setUp(self):
        self.engine = PlacementEngine(create_test_catalog())

    def test_edge_with_no_placed_endpoint(self):
        """A chain edge that does not touch the placed region is malformed."""
        result = self.engine.solve(
            {"a": "start", "h": "hall", "b": "end", "c": "end"},
            {("a", "h"): "corridor", ("b", "c"): "corridor"},
            [Chain(edges=[("a", "h"), ("b", "c")])],
        )

        assert result.failure == FailureKind.INVARIANT_VIOLATION
        assert "no placed endpoint" in result.message
        with self.assertRaises(InvariantViolationError):
            result.raise_for_failure()

    def test_node_with_connection_type(self):
        """Connectors can never be assigned to nodes."""
        result = self.engine.solve(
            {"a": "start", "b": "corridor"},
            {("a", "b"): "corridor"},
            [Chain(edges=[("a", "b")])],
        )

        assert result.failure == FailureKind.INVARIANT_VIOLATION

    def test_unknown_types(self):
        """Unknown room and connection types are rejected up front."""
        result = self.engine.solve({"a": "attic"}, {}, [])
        assert result.failure == FailureKind.INVARIANT_VIOLATION

        result = self.engine.solve(
            {"a": "start", "b": "end"},
            {("a", "b"): "tunnel"},
            [Chain(edges=[("a", "b")])],
        )
        assert result.failure == FailureKind.INVARIANT_VIOLATION

    def test_edge_to_unassigned_node(self):
        """Edges must reference assigned nodes."""
        result = self.engine.solve(
            {"a": "start"},
            {("a", "z"): "corridor"},
            [Chain(edges=[("a", "z")])],
        )

        assert result.failure == FailureKind.INVARIANT_VIOLATION

    def test_type_with_missing_templates(self):
        """Types listing templates absent from the catalog fail as a result."""
        catalog = create_test_catalog()
        catalog.add_room_type(RoomType(name="ghost", template_ids=["nope"]))
        catalog.add_connection_type(ConnectionType(name="tunnel", template_ids=["nope"]))
        engine = PlacementEngine(catalog)

        result = engine.solve({"a": "ghost"}, {}, [])
        assert result.failure == FailureKind.INVARIANT_VIOLATION
        assert "nope" in result.message

        result = engine.solve(
            {"a": "start", "b": "end"},
            {("a", "b"): "tunnel"},
            [Chain(edges=[("a", "b")])],
        )
        assert result.failure == FailureKind.INVARIANT_VIOLATION

    def test_connector_id_collides_with_node(self):
        """A node named like an edge's connector is rejected up front."""
        result = self.engine.solve(
            {"a": "start", "b": "hall", "a~b": "end"},
            {("a", "b"): "corridor", ("b", "a~b"): "corridor"},
            [Chain(edges=[("a", "b"), ("b", "a~b")])],
        )

        assert result.failure == FailureKind.INVARIANT_VIOLATION
        assert "collides" in result.message
        assert result.placements == []


class TestConnectPlaced(unittest.TestCase):
    """Tests for closing edges between already placed nodes."""

    def setUp(self):
        self.catalog = create_test_catalog()
        self.engine = PlacementEngine(self.catalog)
        self.state = self.engine.state

    def commit(self, placement_id: str, template_id: str, root: Cell) -> Placement:
        placement = Placement.from_template(
            placement_id, self.catalog.get_template(template_id), root, node_id=placement_id
        )
        self.state.commit(placement)
        return placement

    def test_fast_path_docks_room_and_connector(self):
        """Already aligned placements dock without new placements."""
        room = self.commit("a", "room_e", Cell(0, 0))
        self.commit("c", "corridor", Cell(4, 1))

        assert self.engine.connect_placed("a", "c")

        assert self.state.depth == 2
        assert self.state.used_sockets == {SocketRef("c", 0), SocketRef("a", 0)}
        assert ("a", "c") in self.state.placed_edges
        assert Cell(4, 2) in room.floor_cells
        assert Cell(4, 2) not in self.state.occupied_wall

    def test_fast_path_docks_two_rooms(self):
        """Rooms sharing a socket cell dock directly."""
        self.commit("a", "room_e", Cell(0, 0))
        self.commit("b", "room_w", Cell(4, 0))

        assert self.engine.connect_placed("a", "b")

        assert self.state.depth == 2
        assert self.state.used_sockets == {SocketRef("a", 0), SocketRef("b", 0)}

    def test_interposes_connector_between_rooms(self):
        """Rooms one corridor apart get a connector landing on both sockets."""
        self.commit("a", "room_e", Cell(0, 0))
        self.commit("b", "room_w", Cell(8, 0))

        assert self.engine.connect_placed("a", "b", connection_type="corridor")

        connector = self.state.get_placement("a~b")
        assert connector.root == Cell(4, 1)
        assert connector.edge_key == ("a", "b")
        assert self.state.used_sockets == {
            SocketRef("a~b", 0),
            SocketRef("a~b", 1),
            SocketRef("a", 0),
            SocketRef("b", 0),
        }

    def test_misaligned_rooms_without_connection_type(self):
        """Without a connection type there is no fallback."""
        self.commit("a", "room_e", Cell(0, 0))
        before = self.state.snapshot()
        self.commit("b", "room_w", Cell(6, 0))
        after_commit = self.state.snapshot()

        assert not self.engine.connect_placed("a", "b")
        assert self.state.snapshot() == after_commit
        assert self.state.snapshot() != before

    def test_unreachable_rooms_fail_cleanly(self):
        """A gap no corridor can bridge leaves the state untouched."""
        self.commit("a", "room_e", Cell(0, 0))
        self.commit("b", "room_w", Cell(20, 0))
        before = self.state.snapshot()

        assert not self.engine.connect_placed("a", "b", connection_type="corridor")
        assert self.state.snapshot() == before

    def test_connector_id_already_taken(self):
        """A committed placement named like the connector blocks the fallback."""
        self.commit("a", "room_e", Cell(0, 0))
        self.commit("b", "room_w", Cell(8, 0))
        self.commit("a~b", "room_ew", Cell(30, 0))
        before = self.state.snapshot()

        assert not self.engine.connect_placed("a", "b", connection_type="corridor")
        assert self.state.snapshot() == before

    def test_failed_call_does_not_keep_connection_type(self):
        """Only placed edges count towards the edge total."""
        self.commit("a", "room_e", Cell(0, 0))
        self.commit("b", "room_w", Cell(20, 0))

        assert not self.engine.connect_placed("a", "b", connection_type="corridor")
        assert self.engine.progress().edges_total == 0

        self.engine.state.rollback(0)
        self.commit("a", "room_e", Cell(0, 0))
        self.commit("b", "room_w", Cell(8, 0))
        assert self.engine.connect_placed("a", "b", connection_type="corridor")
        assert self.engine.progress().edges_total == 1


class TestPlaceFromLayout(unittest.TestCase):
    """Tests for layout mode."""

    def setUp(self):
        self.catalog = create_test_catalog()
        self.engine = PlacementEngine(self.catalog)
        self.graph = MapGraph()
        self.graph.add_node(room_type="start", node_id="a")
        self.graph.add_node(room_type="end", node_id="b")
        self.graph.add_edge("a", "b", "corridor")

    def layout(self, b_root: Cell = Cell(8, 0)) -> Layout:
        layout = Layout()
        layout.add("a", "room_e", Cell(0, 0))
        layout.add("a~b", "corridor", Cell(4, 1))
        layout.add("b", "room_w", b_root)
        return layout

    def test_valid_layout(self):
        """A consistent layout of the expanded graph is committed as is."""
        result = self.engine.place_from_layout(
            self.layout(), expand_corridor_graph(self.graph)
        )

        assert result.success, result.message
        assert [p.placement_id for p in result.placements] == ["a", "a~b", "b"]
        assert result.progress.edges_placed == 2
        assert SocketRef("a~b", 1) in self.engine.state.used_sockets
        assert_no_illegal_overlap(result.placements)

    def test_layout_translated_to_start_cell(self):
        """The first room's root is moved to the start cell."""
        result = self.engine.place_from_layout(
            self.layout(), expand_corridor_graph(self.graph), start_cell=Cell(10, 10)
        )

        assert result.success, result.message
        roots = {p.placement_id: p.root for p in result.placements}
        assert roots == {"a": Cell(10, 10), "a~b": Cell(14, 11), "b": Cell(18, 10)}

    def test_room_to_room_edge_rejected(self):
        """Layout mode needs an alternating Room/Connector graph."""
        layout = Layout()
        layout.add("a", "room_e", Cell(0, 0))
        layout.add("b", "room_w", Cell(4, 0))

        result = self.engine.place_from_layout(layout, self.graph)

        assert result.failure == FailureKind.INVARIANT_VIOLATION
        assert "Room<->Connector" in result.message

    def test_misaligned_layout_rejected(self):
        """A room the corridor cannot reach is a malformed layout."""
        result = self.engine.place_from_layout(
            self.layout(b_root=Cell(9, 0)), expand_corridor_graph(self.graph)
        )

        assert result.failure == FailureKind.INVARIANT_VIOLATION

    def test_overlapping_layout_rejected(self):
        """An unconnected room on top of another one is an overlap."""
        self.graph.add_node(room_type="start", node_id="x")
        layout = self.layout()
        layout.add("x", "room_e", Cell(1, 0))

        result = self.engine.place_from_layout(layout, expand_corridor_graph(self.graph))

        assert result.failure == FailureKind.OVERLAP_REJECTED
        assert result.placements == []

    def test_unknown_layout_template(self):
        """A layout naming a template the catalog lacks is malformed."""
        layout = self.layout()
        layout.add("x", "room_missing", Cell(30, 0))

        result = self.engine.place_from_layout(layout, expand_corridor_graph(self.graph))

        assert result.failure == FailureKind.INVARIANT_VIOLATION
        assert "room_missing" in result.message

    def test_empty_layout(self):
        """An empty layout is malformed."""
        result = self.engine.place_from_layout(Layout(), self.graph)

        assert result.failure == FailureKind.INVARIANT_VIOLATION


if __name__ == "__main__":
    unittest.main()
