"""Logical room graph, derived corridor graphs and edge chains."""

from dungeonsmith.graph.chains import Chain, chains_from_dict, graph_order_chain
from dungeonsmith.graph.expansion import (
    build_direct_assignments,
    corridor_node_id,
    expand_corridor_graph,
)
from dungeonsmith.graph.map_graph import (
    AddEdgeResult,
    EdgeInsertStatus,
    GraphEdge,
    GraphNode,
    MapGraph,
    normalize_key,
)

__all__ = [
    "AddEdgeResult",
    "Chain",
    "EdgeInsertStatus",
    "GraphEdge",
    "GraphNode",
    "MapGraph",
    "build_direct_assignments",
    "chains_from_dict",
    "corridor_node_id",
    "expand_corridor_graph",
    "graph_order_chain",
    "normalize_key",
]
