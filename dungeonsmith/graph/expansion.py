"""Derived graphs and type assignments built from a logical room graph."""

import logging

from dungeonsmith.errors import InvariantViolationError
from dungeonsmith.graph.map_graph import GraphEdge, GraphNode, MapGraph, normalize_key

console_logger = logging.getLogger(__name__)

CORRIDOR_SEPARATOR = "~"


def corridor_node_id(a: str, b: str) -> str:
    """Deterministic id of the corridor node interposed on edge (a, b)."""
    first, second = normalize_key(a, b)
    return f"{first}{CORRIDOR_SEPARATOR}{second}"


def expand_corridor_graph(graph: MapGraph) -> MapGraph:
    """Replace every edge by a corridor node and two edges.

    The corridor node's type is the edge's connection type (or the graph
    default), and it sits at the midpoint of its endpoints. The result is a
    strictly alternating Room/Connector graph suitable for layout placement.

    Args:
        graph: Logical room graph. Left unchanged.

    Returns:
        A new graph with the same defaults.
    """
    nodes = []
    for node in graph.nodes:
        nodes.append(
            GraphNode(
                node_id=node.node_id,
                label=node.label,
                room_type=node.room_type or graph.default_room_type,
                position=node.position,
                notes=node.notes,
            )
        )

    edges = []
    for edge in graph.edges:
        a = graph.get_node(edge.from_node_id)
        b = graph.get_node(edge.to_node_id)
        connection_type = graph.edge_connection_type(edge)
        corridor = GraphNode(
            node_id=corridor_node_id(a.node_id, b.node_id),
            label=connection_type or "Corridor",
            room_type=connection_type,
            position=(
                (a.position[0] + b.position[0]) * 0.5,
                (a.position[1] + b.position[1]) * 0.5,
            ),
        )
        nodes.append(corridor)
        edges.append(GraphEdge(a.node_id, corridor.node_id, connection_type))
        edges.append(GraphEdge(corridor.node_id, b.node_id, connection_type))

    expanded = MapGraph(
        nodes=nodes,
        edges=edges,
        default_room_type=graph.default_room_type,
        default_connection_type=graph.default_connection_type,
    )
    console_logger.debug(
        f"Expanded graph: {len(graph.nodes)} -> {len(expanded.nodes)} nodes, "
        f"{len(graph.edges)} -> {len(expanded.edges)} edges"
    )
    return expanded


def build_direct_assignments(
    graph: MapGraph,
) -> tuple[dict[str, str], dict[tuple[str, str], str]]:
    """Resolve node room types and edge connection types using graph defaults.

    Returns:
        (node_assignments, edge_assignments) where edge keys are normalized.

    Raises:
        InvariantViolationError: If a node or edge has no type and the graph
            has no default for it.
    """
    node_assignments: dict[str, str] = {}
    for node in graph.nodes:
        room_type = node.room_type or graph.default_room_type
        if room_type is None:
            raise InvariantViolationError(
                f"Node {node.node_id} ({node.label}) has no room type and no default is set."
            )
        node_assignments[node.node_id] = room_type

    edge_assignments: dict[tuple[str, str], str] = {}
    for edge in graph.edges:
        connection_type = graph.edge_connection_type(edge)
        if connection_type is None:
            raise InvariantViolationError(
                f"Edge {edge.from_node_id}-{edge.to_node_id} has no connection type "
                "and no default is set."
            )
        edge_assignments[normalize_key(edge.from_node_id, edge.to_node_id)] = (
            connection_type
        )
    return node_assignments, edge_assignments
