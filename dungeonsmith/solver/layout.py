"""Approximate layouts consumed by ``PlacementEngine.place_from_layout``."""

from dataclasses import dataclass, field

from dungeonsmith.geometry.grid import Cell


@dataclass
class LayoutRoom:
    """Chosen template and root cell for one node of an expanded graph."""

    node_id: str
    template_id: str
    root: Cell

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "template_id": self.template_id,
            "root": self.root.to_list(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LayoutRoom":
        return cls(
            node_id=str(data["node_id"]),
            template_id=str(data["template_id"]),
            root=Cell.from_list(data["root"]),
        )


@dataclass
class Layout:
    """Node id to layout room, in placement order."""

    rooms: dict[str, LayoutRoom] = field(default_factory=dict)

    def add(self, node_id: str, template_id: str, root: Cell) -> LayoutRoom:
        room = LayoutRoom(node_id=node_id, template_id=template_id, root=root)
        self.rooms[node_id] = room
        return room

    @property
    def is_empty(self) -> bool:
        return not self.rooms

    def to_dict(self) -> dict:
        return {"rooms": [r.to_dict() for r in self.rooms.values()]}

    @classmethod
    def from_dict(cls, data: dict) -> "Layout":
        layout = cls()
        for entry in data.get("rooms", []):
            room = LayoutRoom.from_dict(entry)
            layout.rooms[room.node_id] = room
        return layout
