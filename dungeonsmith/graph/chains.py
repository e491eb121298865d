"""Ordered edge groups that drive the placement search.

Chains come from an external planar-face decomposition. The engine never
reorders edges within or across chains.
"""

from dataclasses import dataclass, field

from dungeonsmith.graph.map_graph import MapGraph


@dataclass
class Chain:
    """An ordered group of (node, node) edges."""

    edges: list[tuple[str, str]] = field(default_factory=list)

    @property
    def nodes(self) -> list[str]:
        """Endpoints in order of first appearance."""
        seen = []
        for a, b in self.edges:
            for node_id in (a, b):
                if node_id not in seen:
                    seen.append(node_id)
        return seen

    def to_dict(self) -> dict:
        return {"edges": [list(e) for e in self.edges]}


def chains_from_dict(data) -> list[Chain]:
    """Parse ``[{"edges": [[a, b], ...]}, ...]``."""
    return [
        Chain(edges=[(str(e[0]), str(e[1])) for e in chain.get("edges", [])])
        for chain in data
    ]


def graph_order_chain(graph: MapGraph) -> list[Chain]:
    """Single chain listing the graph's edges in insertion order.

    Only valid when every edge touches a node introduced by an earlier edge,
    as in trees built outward from the first node.
    """
    return [Chain(edges=[(e.from_node_id, e.to_node_id) for e in graph.edges])]
