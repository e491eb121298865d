"""Registry of module templates and the room/connection types that use them.

Templates are addressed by opaque string ids. A room type or connection type
is a named list of template ids; the engine asks the catalog which templates
of a type expose a socket on a given side.
"""

import hashlib
import json
import logging

from dataclasses import dataclass, field
from pathlib import Path

from omegaconf import DictConfig, OmegaConf

from dungeonsmith.geometry.grid import Side
from dungeonsmith.geometry.shapes import ModuleRole, ModuleShape

console_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModuleTemplate:
    """A room or connector template with fixed geometry."""

    template_id: str
    role: ModuleRole
    shape: ModuleShape

    def to_dict(self) -> dict:
        return {
            "template_id": self.template_id,
            "role": self.role.value,
            "shape": self.shape.to_dict(),
        }

    @classmethod
    def from_dict(cls, data) -> "ModuleTemplate":
        return cls(
            template_id=str(data["template_id"]),
            role=ModuleRole(data.get("role", ModuleRole.ROOM.value)),
            shape=ModuleShape.from_dict(data["shape"]),
        )


@dataclass
class RoomType:
    """Logical room type (start, shop, boss...) with its template variants."""

    name: str
    template_ids: list[str] = field(default_factory=list)
    notes: str = ""


@dataclass
class ConnectionType:
    """Kind of connection between rooms with its connector template variants."""

    name: str
    template_ids: list[str] = field(default_factory=list)

    default_width: int = 1
    """Doorway width (cells) this connection expects."""

    notes: str = ""


class ModuleCatalog:
    """Template registry with cached side/width lookups.

    Lookups are cached per ``(type, side, width)`` query. Mutating the catalog
    after lookups clears the cache.
    """

    def __init__(
        self,
        templates: list[ModuleTemplate] | None = None,
        room_types: list[RoomType] | None = None,
        connection_types: list[ConnectionType] | None = None,
    ):
        self._templates: dict[str, ModuleTemplate] = {}
        self._room_types: dict[str, RoomType] = {}
        self._connection_types: dict[str, ConnectionType] = {}
        self._lookup_cache: dict[tuple, list[str]] = {}
        for template in templates or []:
            self.add_template(template)
        for room_type in room_types or []:
            self.add_room_type(room_type)
        for connection_type in connection_types or []:
            self.add_connection_type(connection_type)

    def add_template(self, template: ModuleTemplate) -> None:
        if template.template_id in self._templates:
            raise ValueError(f"Duplicate template id '{template.template_id}'")
        self._templates[template.template_id] = template
        self._lookup_cache.clear()

    def add_room_type(self, room_type: RoomType) -> None:
        self._check_type_name(room_type.name)
        self._room_types[room_type.name] = room_type
        self._lookup_cache.clear()

    def add_connection_type(self, connection_type: ConnectionType) -> None:
        self._check_type_name(connection_type.name)
        self._connection_types[connection_type.name] = connection_type
        self._lookup_cache.clear()

    def _check_type_name(self, name: str) -> None:
        if name in self._room_types or name in self._connection_types:
            raise ValueError(f"Duplicate type name '{name}'")

    def template_ids(self) -> list[str]:
        return list(self._templates.keys())

    def has_template(self, template_id: str) -> bool:
        return template_id in self._templates

    def get_template(self, template_id: str) -> ModuleTemplate:
        try:
            return self._templates[template_id]
        except KeyError:
            raise KeyError(f"Unknown template id '{template_id}'") from None

    def shape_of(self, template_id: str) -> ModuleShape:
        return self.get_template(template_id).shape

    def role_of(self, template_id: str) -> ModuleRole:
        return self.get_template(template_id).role

    def has_type(self, type_name: str) -> bool:
        return type_name in self._room_types or type_name in self._connection_types

    def is_connection_type(self, type_name: str) -> bool:
        return type_name in self._connection_types

    def type_template_ids(self, type_name: str) -> list[str]:
        """Template ids of a room or connection type, in catalog order.

        Raises:
            KeyError: If the type is unknown.
        """
        if type_name in self._room_types:
            return list(self._room_types[type_name].template_ids)
        if type_name in self._connection_types:
            return list(self._connection_types[type_name].template_ids)
        raise KeyError(f"Unknown room or connection type '{type_name}'")

    def connection_width(self, type_name: str) -> int:
        connection_type = self._connection_types.get(type_name)
        return max(1, connection_type.default_width) if connection_type else 1

    def templates_for(
        self,
        type_name: str,
        required_side: Side | None = None,
        required_width: int | None = None,
    ) -> list[str]:
        """Templates of a type exposing a socket on ``required_side``.

        When no template matches both side and width, templates matching the
        side alone are returned.

        Args:
            type_name: Room or connection type name.
            required_side: Side a socket must face, or None for any template.
            required_width: Socket width to prefer, or None to ignore width.

        Returns:
            Matching template ids in catalog order.
        """
        key = (type_name, required_side, required_width)
        cached = self._lookup_cache.get(key)
        if cached is not None:
            return list(cached)

        candidates = self.type_template_ids(type_name)
        missing = [t for t in candidates if not self.has_template(t)]
        if missing:
            raise KeyError(f"Type '{type_name}' references unknown templates {missing}")

        if required_side is None:
            result = candidates
        else:
            result = [
                t
                for t in candidates
                if self._has_socket(t, required_side, required_width)
            ]
            if not result and required_width is not None:
                result = [t for t in candidates if self._has_socket(t, required_side, None)]
                if result:
                    console_logger.debug(
                        f"No '{type_name}' template with width {required_width} on "
                        f"{required_side.value}, falling back to side-only match"
                    )
        self._lookup_cache[key] = result
        return list(result)

    def _has_socket(self, template_id: str, side: Side, width: int | None) -> bool:
        for socket in self._templates[template_id].shape.sockets:
            if socket.side == side and (width is None or socket.width == width):
                return True
        return False

    def fingerprint(self) -> str:
        """SHA-256 of the catalog's canonical JSON form (first 16 chars)."""
        content_json = json.dumps(self.to_dict(), sort_keys=True)
        return hashlib.sha256(content_json.encode()).hexdigest()[:16]

    def to_dict(self) -> dict:
        return {
            "templates": [t.to_dict() for t in self._templates.values()],
            "room_types": [
                {"name": r.name, "templates": r.template_ids, "notes": r.notes}
                for r in self._room_types.values()
            ],
            "connection_types": [
                {
                    "name": c.name,
                    "templates": c.template_ids,
                    "default_width": c.default_width,
                    "notes": c.notes,
                }
                for c in self._connection_types.values()
            ],
        }

    @classmethod
    def from_dict(cls, data) -> "ModuleCatalog":
        """Build a catalog from a dict or DictConfig."""
        if isinstance(data, DictConfig):
            data = OmegaConf.to_container(data, resolve=True)
        return cls(
            templates=[ModuleTemplate.from_dict(t) for t in data.get("templates", [])],
            room_types=[
                RoomType(
                    name=r["name"],
                    template_ids=list(r.get("templates", [])),
                    notes=r.get("notes", ""),
                )
                for r in data.get("room_types", [])
            ],
            connection_types=[
                ConnectionType(
                    name=c["name"],
                    template_ids=list(c.get("templates", [])),
                    default_width=int(c.get("default_width", 1)),
                    notes=c.get("notes", ""),
                )
                for c in data.get("connection_types", [])
            ],
        )

    @classmethod
    def from_json_file(cls, path: Path) -> "ModuleCatalog":
        with open(path) as f:
            catalog = cls.from_dict(json.load(f))
        console_logger.info(
            f"Loaded catalog {path} with {len(catalog.template_ids())} templates"
        )
        return catalog
