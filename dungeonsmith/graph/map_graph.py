"""Logical room graph: nodes reference room types, edges reference connection types."""

import json
import logging
import uuid

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

console_logger = logging.getLogger(__name__)


def normalize_key(a: str, b: str) -> tuple[str, str]:
    """Order-independent edge key (ordinal string order)."""
    return (a, b) if a <= b else (b, a)


@dataclass
class GraphNode:
    """A room in the logical graph."""

    node_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    label: str = ""
    """Display name (not required to be unique)."""

    room_type: str | None = None
    """Room type name; falls back to the graph default when None."""

    position: tuple[float, float] = (0.0, 0.0)
    """Editor position. Rounded to a grid cell for the start room."""

    notes: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.node_id,
            "label": self.label,
            "room_type": self.room_type,
            "position": list(self.position),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GraphNode":
        position = data.get("position", (0.0, 0.0))
        return cls(
            node_id=str(data["id"]),
            label=data.get("label", ""),
            room_type=data.get("room_type"),
            position=(float(position[0]), float(position[1])),
            notes=data.get("notes", ""),
        )


@dataclass
class GraphEdge:
    """An undirected connection between two nodes."""

    from_node_id: str
    to_node_id: str
    connection_type: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return normalize_key(self.from_node_id, self.to_node_id)

    def connects(self, node_id: str) -> bool:
        return node_id in (self.from_node_id, self.to_node_id)

    def matches(self, a: str, b: str) -> bool:
        return self.key == normalize_key(a, b)

    def to_dict(self) -> dict:
        return {
            "from": self.from_node_id,
            "to": self.to_node_id,
            "connection_type": self.connection_type,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GraphEdge":
        return cls(
            from_node_id=str(data["from"]),
            to_node_id=str(data["to"]),
            connection_type=data.get("connection_type"),
        )


class EdgeInsertStatus(Enum):
    ADDED = "added"
    DUPLICATE_EDGE = "duplicate_edge"
    SELF_LOOP = "self_loop"
    UNKNOWN_NODE = "unknown_node"


@dataclass
class AddEdgeResult:
    """Outcome of ``MapGraph.add_edge``."""

    status: EdgeInsertStatus
    edge: GraphEdge | None = None

    @property
    def ok(self) -> bool:
        return self.status == EdgeInsertStatus.ADDED


class MapGraph:
    """Room graph with default room and connection types.

    Args:
        nodes: Initial nodes. Node ids must be unique.
        edges: Initial edges, inserted through ``add_edge``.
        default_room_type: Room type for nodes without one.
        default_connection_type: Connection type for edges without one.

    Raises:
        ValueError: If node ids repeat or an initial edge cannot be inserted.
    """

    def __init__(
        self,
        nodes: list[GraphNode] | None = None,
        edges: list[GraphEdge] | None = None,
        default_room_type: str | None = None,
        default_connection_type: str | None = None,
    ):
        self.default_room_type = default_room_type
        self.default_connection_type = default_connection_type
        self._nodes: dict[str, GraphNode] = {}
        self._edges: list[GraphEdge] = []
        self._edge_keys: set[tuple[str, str]] = set()
        for node in nodes or []:
            if node.node_id in self._nodes:
                raise ValueError(f"Duplicate node id '{node.node_id}'")
            self._nodes[node.node_id] = node
        for edge in edges or []:
            result = self.add_edge(
                edge.from_node_id, edge.to_node_id, edge.connection_type
            )
            if not result.ok:
                raise ValueError(
                    f"Cannot add edge {edge.from_node_id}-{edge.to_node_id}: "
                    f"{result.status.value}"
                )

    @property
    def nodes(self) -> list[GraphNode]:
        return list(self._nodes.values())

    @property
    def edges(self) -> list[GraphEdge]:
        return list(self._edges)

    def get_node(self, node_id: str) -> GraphNode | None:
        return self._nodes.get(node_id)

    def edges_for(self, node_id: str) -> list[GraphEdge]:
        return [e for e in self._edges if e.connects(node_id)]

    def add_node(
        self,
        label: str = "",
        room_type: str | None = None,
        position: tuple[float, float] = (0.0, 0.0),
        node_id: str | None = None,
    ) -> GraphNode:
        node = GraphNode(
            label=label or (room_type or self.default_room_type or "Room"),
            room_type=room_type,
            position=position,
        )
        if node_id is not None:
            if node_id in self._nodes:
                raise ValueError(f"Duplicate node id '{node_id}'")
            node.node_id = node_id
        self._nodes[node.node_id] = node
        return node

    def add_edge(
        self, from_node_id: str, to_node_id: str, connection_type: str | None = None
    ) -> AddEdgeResult:
        """Insert an undirected edge, reporting why it was refused if it was."""
        if from_node_id == to_node_id:
            return AddEdgeResult(status=EdgeInsertStatus.SELF_LOOP)
        if from_node_id not in self._nodes or to_node_id not in self._nodes:
            return AddEdgeResult(status=EdgeInsertStatus.UNKNOWN_NODE)
        key = normalize_key(from_node_id, to_node_id)
        if key in self._edge_keys:
            return AddEdgeResult(status=EdgeInsertStatus.DUPLICATE_EDGE)

        edge = GraphEdge(
            from_node_id=from_node_id,
            to_node_id=to_node_id,
            connection_type=connection_type,
        )
        self._edges.append(edge)
        self._edge_keys.add(key)
        return AddEdgeResult(status=EdgeInsertStatus.ADDED, edge=edge)

    def remove_edge(self, edge: GraphEdge) -> None:
        if edge in self._edges:
            self._edges.remove(edge)
            self._edge_keys.discard(edge.key)

    def remove_node(self, node_id: str) -> None:
        if self._nodes.pop(node_id, None) is None:
            return
        for edge in self.edges_for(node_id):
            self.remove_edge(edge)

    def node_room_type(self, node_id: str) -> str | None:
        node = self._nodes[node_id]
        return node.room_type or self.default_room_type

    def edge_connection_type(self, edge: GraphEdge) -> str | None:
        return edge.connection_type or self.default_connection_type

    def to_dict(self) -> dict:
        return {
            "default_room_type": self.default_room_type,
            "default_connection_type": self.default_connection_type,
            "nodes": [n.to_dict() for n in self._nodes.values()],
            "edges": [e.to_dict() for e in self._edges],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MapGraph":
        return cls(
            nodes=[GraphNode.from_dict(n) for n in data.get("nodes", [])],
            edges=[GraphEdge.from_dict(e) for e in data.get("edges", [])],
            default_room_type=data.get("default_room_type"),
            default_connection_type=data.get("default_connection_type"),
        )

    @classmethod
    def from_json_file(cls, path: Path) -> "MapGraph":
        with open(path) as f:
            graph = cls.from_dict(json.load(f))
        console_logger.info(
            f"Loaded graph {path}: {len(graph.nodes)} nodes, {len(graph.edges)} edges"
        )
        return graph
