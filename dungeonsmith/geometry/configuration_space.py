"""Discrete configuration spaces between module templates.

A configuration space is the set of integer offsets ``delta`` at which a moving
template may be placed relative to a fixed one (``moving.root = fixed.root +
delta``) so that the two dock through a pair of opposite-facing sockets without
illegal overlap.

Regimes
-------
1. **Symmetric** (room/room, connector/connector): the sockets must coincide
   exactly. Floor overlap must be the single socket cell, and walls may only
   touch the other shape's floor at that cell.

2. **Asymmetric** (exactly one connector): the connector's socket has a bite
   depth ``D``. Every penetration depth ``x`` in ``[0, D)`` yields one
   candidate offset that places the connector cell ``x`` steps inward from its
   socket on the room's socket cell. Floor may overlap along the inward ray
   ``0..x``; connector walls may additionally overlap room floor on the ray's
   tangential neighbours, since those walls are carved away on docking.

Spaces depend only on immutable shapes, so they are cached per ordered pair of
template ids. After ``precompute`` the cache is frozen and safe to share
read-only between independent solve attempts.
"""

import json
import logging

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path

from dungeonsmith.geometry.grid import Cell
from dungeonsmith.geometry.shapes import ModuleRole, ModuleShape, Socket

console_logger = logging.getLogger(__name__)

_OVERLAP_PREVIEW_LIMIT = 8

# Bit flags for AllowedCells.mask.
RAY_FLOOR = 1
RAY_WALLS = 2


@dataclass(frozen=True)
class ConfigurationSpace:
    """Immutable set of legal offsets for an ordered (fixed, moving) pair."""

    offsets: frozenset[Cell] = field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not self.offsets

    def __contains__(self, delta: Cell) -> bool:
        return delta in self.offsets

    def __len__(self) -> int:
        return len(self.offsets)


EMPTY_SPACE = ConfigurationSpace()


@dataclass(frozen=True)
class AllowedCells:
    """Cells where an overlap is tolerated while docking at depth ``max_k``.

    Membership is evaluated analytically instead of materializing a set: a cell
    is on the ray when its projection ``k`` on the inward axis lies in
    ``0..max_k``. With ``RAY_FLOOR`` the ray centre is allowed, with
    ``RAY_WALLS`` its two tangential neighbours are allowed.
    """

    base: Cell
    inward: Cell
    tangent: Cell
    max_k: int
    mask: int
    extra: frozenset[Cell] = field(default_factory=frozenset)

    def __contains__(self, cell: Cell) -> bool:
        if cell in self.extra:
            return True
        offset = cell - self.base
        k = offset.dot(self.inward)
        if k < 0 or k > self.max_k:
            return False
        perp = offset - self.inward.scale(k)
        if perp == Cell(0, 0):
            return bool(self.mask & RAY_FLOOR)
        if perp == self.tangent or perp == -self.tangent:
            return bool(self.mask & RAY_WALLS)
        return False


def _shifted_overlaps(fixed_cells, moving_cells, delta: Cell) -> list[Cell]:
    """Cells of ``moving_cells + delta`` that are also in ``fixed_cells``."""
    overlaps = []
    for cell in moving_cells:
        shifted = cell + delta
        if shifted in fixed_cells:
            overlaps.append(shifted)
    return overlaps


def _first_disallowed(fixed_cells, moving_cells, delta: Cell, allowed) -> Cell | None:
    """First cell of ``moving_cells + delta`` in ``fixed_cells`` and not allowed."""
    for cell in moving_cells:
        shifted = cell + delta
        if shifted in fixed_cells and shifted not in allowed:
            return shifted
    return None


def _first_wall_on_moving_floor(fixed_walls, moving_floor, delta: Cell, allowed) -> Cell | None:
    """Like ``_first_disallowed`` but walking the fixed walls (fixed frame)."""
    for wall in fixed_walls:
        if (wall - delta) in moving_floor and wall not in allowed:
            return wall
    return None


def bite_overlap_status(
    fixed_floor, moving_floor, delta: Cell, door: Cell
) -> tuple[str, int]:
    """Classify the floor overlap of a symmetric docking candidate.

    Returns:
        (status, overlap_count) where status is one of ``"OK"``, ``"Null"``,
        ``"None"``, ``"TooMany"`` or ``"WrongCell"``.
    """
    if fixed_floor is None or moving_floor is None:
        return "Null", 0
    overlaps = _shifted_overlaps(fixed_floor, moving_floor, delta)
    if not overlaps:
        return "None", 0
    if len(overlaps) > 1:
        return "TooMany", len(overlaps)
    if overlaps[0] != door:
        return "WrongCell", 1
    return "OK", 1


def compatible_socket_pairs(
    fixed_shape: ModuleShape, moving_shape: ModuleShape
) -> list[tuple[Socket, Socket]]:
    """All (fixed, moving) socket pairs facing each other."""
    pairs = []
    for a in fixed_shape.sockets:
        for b in moving_shape.sockets:
            if a.side == b.side.opposite():
                pairs.append((a, b))
    return pairs


class _Diagnostics:
    """Rejection tallies and capped verbose logging for one computation."""

    def __init__(self, tally: Counter | None, verbose: bool, max_logs: int):
        self.tally = tally
        self.verbose = verbose
        self.remaining_logs = max_logs

    def reject(self, category: str, message: str) -> None:
        if self.tally is not None:
            self.tally[category] += 1
        if self.verbose and self.remaining_logs > 0:
            self.remaining_logs -= 1
            console_logger.debug(f"[ConfigSpace] reject {category}: {message}")

    def accept(self) -> None:
        if self.tally is not None:
            self.tally["OK"] += 1


def compute_offsets(
    fixed_shape: ModuleShape | None,
    moving_shape: ModuleShape | None,
    fixed_is_connector: bool,
    moving_is_connector: bool,
    tally: Counter | None = None,
    verbose: bool = False,
    max_verbose_logs: int = 64,
) -> set[Cell]:
    """Compute all legal offsets of ``moving_shape`` relative to ``fixed_shape``.

    Args:
        fixed_shape: Shape that stays in place.
        moving_shape: Shape that is translated.
        fixed_is_connector: Whether the fixed template plays the connector role.
        moving_is_connector: Whether the moving template plays the connector role.
        tally: Optional counter receiving one increment per rejection category
            (and ``"OK"`` per accepted candidate).
        verbose: Log individual rejections at debug level.
        max_verbose_logs: Cap on verbose rejection logs.

    Returns:
        Set of accepted offsets. Empty when either shape is missing or empty.
    """
    offsets: set[Cell] = set()
    if fixed_shape is None or moving_shape is None:
        return offsets
    if fixed_shape.is_empty or moving_shape.is_empty:
        return offsets

    diagnostics = _Diagnostics(tally=tally, verbose=verbose, max_logs=max_verbose_logs)
    asymmetric = fixed_is_connector != moving_is_connector

    for a_sock, b_sock in compatible_socket_pairs(fixed_shape, moving_shape):
        if asymmetric:
            offsets.update(
                _asymmetric_offsets(
                    fixed_shape=fixed_shape,
                    moving_shape=moving_shape,
                    a_sock=a_sock,
                    b_sock=b_sock,
                    fixed_is_connector=fixed_is_connector,
                    diagnostics=diagnostics,
                )
            )
        else:
            delta = _symmetric_offset(
                fixed_shape=fixed_shape,
                moving_shape=moving_shape,
                a_sock=a_sock,
                b_sock=b_sock,
                diagnostics=diagnostics,
            )
            if delta is not None:
                offsets.add(delta)
    return offsets


def _symmetric_offset(
    fixed_shape: ModuleShape,
    moving_shape: ModuleShape,
    a_sock: Socket,
    b_sock: Socket,
    diagnostics: _Diagnostics,
) -> Cell | None:
    # Only exact socket-to-socket alignment, so there is never a gap.
    delta = a_sock.cell - b_sock.cell
    status, count = bite_overlap_status(
        fixed_shape.floor_cells, moving_shape.floor_cells, delta, a_sock.cell
    )
    if status != "OK":
        preview = ""
        if diagnostics.verbose:
            overlaps = _shifted_overlaps(
                fixed_shape.floor_cells, moving_shape.floor_cells, delta
            )[:_OVERLAP_PREVIEW_LIMIT]
            preview = f" overlaps={overlaps}"
        diagnostics.reject(
            f"Bite:{status}",
            f"delta={delta} sockets={a_sock.cell}/{b_sock.cell} count={count}{preview}",
        )
        return None

    door_only = frozenset([a_sock.cell])
    bad = _first_disallowed(
        fixed_shape.floor_cells, moving_shape.wall_cells, delta, door_only
    )
    if bad is not None:
        diagnostics.reject("WallOnFloor", f"delta={delta} moving wall on floor at {bad}")
        return None

    bad = _first_wall_on_moving_floor(
        fixed_shape.wall_cells, moving_shape.floor_cells, delta, door_only
    )
    if bad is not None:
        diagnostics.reject("FloorOnWall", f"delta={delta} moving floor on wall at {bad}")
        return None

    diagnostics.accept()
    return delta


def _asymmetric_offsets(
    fixed_shape: ModuleShape,
    moving_shape: ModuleShape,
    a_sock: Socket,
    b_sock: Socket,
    fixed_is_connector: bool,
    diagnostics: _Diagnostics,
) -> list[Cell]:
    conn_sock, room_sock = (a_sock, b_sock) if fixed_is_connector else (b_sock, a_sock)
    conn_shape, room_shape = (
        (fixed_shape, moving_shape) if fixed_is_connector else (moving_shape, fixed_shape)
    )
    inward = conn_sock.side.inward()
    tangent = conn_sock.side.tangent()
    moving_is_connector = not fixed_is_connector

    accepted = []
    for x in range(max(1, conn_sock.bite_depth)):
        conn_door = conn_sock.cell + inward.scale(x)
        if fixed_is_connector:
            fixed_door, moving_door = conn_door, room_sock.cell
        else:
            fixed_door, moving_door = room_sock.cell, conn_door
        delta = fixed_door - moving_door

        if conn_door not in conn_shape.floor_cells or room_sock.cell not in room_shape.floor_cells:
            diagnostics.reject("DoorNotOnFloor", f"delta={delta} depth={x}")
            continue

        # Connector socket base expressed in the fixed shape's frame.
        conn_base_fixed = conn_sock.cell if fixed_is_connector else conn_sock.cell + delta
        floor_ray = AllowedCells(
            base=conn_base_fixed, inward=inward, tangent=tangent, max_k=x, mask=RAY_FLOOR
        )
        bad = _first_disallowed(
            fixed_shape.floor_cells, moving_shape.floor_cells, delta, floor_ray
        )
        if bad is not None:
            diagnostics.reject(
                "FloorOverlapOutsideCut", f"delta={delta} depth={x} floor overlap at {bad}"
            )
            continue

        door_cell_fixed = fixed_door
        door_only = frozenset([door_cell_fixed])
        door_plus_side = AllowedCells(
            base=conn_base_fixed,
            inward=inward,
            tangent=tangent,
            max_k=x,
            mask=RAY_WALLS,
            extra=door_only,
        )
        allowed_for_moving_walls = door_plus_side if moving_is_connector else door_only
        bad = _first_disallowed(
            fixed_shape.floor_cells, moving_shape.wall_cells, delta, allowed_for_moving_walls
        )
        if bad is not None:
            diagnostics.reject(
                "WallOnFloor", f"delta={delta} depth={x} moving wall on floor at {bad}"
            )
            continue

        allowed_for_fixed_walls = door_plus_side if fixed_is_connector else door_only
        bad = _first_wall_on_moving_floor(
            fixed_shape.wall_cells, moving_shape.floor_cells, delta, allowed_for_fixed_walls
        )
        if bad is not None:
            diagnostics.reject(
                "FloorOnWall", f"delta={delta} depth={x} moving floor on wall at {bad}"
            )
            continue

        diagnostics.accept()
        accepted.append(delta)
    return accepted


class ConfigurationSpaceLibrary:
    """Memoized configuration spaces keyed by (fixed, moving) template ids.

    Args:
        catalog: Template registry providing ``shape_of`` and ``role_of``.
        verbose: Log individual candidate rejections at debug level.
        max_verbose_logs: Cap on verbose logs per computed pair.
    """

    def __init__(self, catalog, verbose: bool = False, max_verbose_logs: int = 64):
        self.catalog = catalog
        self.verbose = verbose
        self.max_verbose_logs = max(0, max_verbose_logs)
        self.rejection_counts: Counter = Counter()
        self._cache: dict[tuple[str, str], ConfigurationSpace] = {}
        self._frozen = False

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        """Stop mutating the cache. Later misses are computed but not stored."""
        self._frozen = True

    def get_space(self, fixed_id: str, moving_id: str) -> ConfigurationSpace:
        """Return the configuration space for an ordered template pair.

        Raises:
            KeyError: If either template id is not in the catalog.
        """
        key = (fixed_id, moving_id)
        space = self._cache.get(key)
        if space is not None:
            return space

        fixed_shape = self.catalog.shape_of(fixed_id)
        moving_shape = self.catalog.shape_of(moving_id)
        offsets = compute_offsets(
            fixed_shape=fixed_shape,
            moving_shape=moving_shape,
            fixed_is_connector=self.catalog.role_of(fixed_id) == ModuleRole.CONNECTOR,
            moving_is_connector=self.catalog.role_of(moving_id) == ModuleRole.CONNECTOR,
            tally=None if self._frozen else self.rejection_counts,
            verbose=self.verbose,
            max_verbose_logs=self.max_verbose_logs,
        )
        space = ConfigurationSpace(frozenset(offsets)) if offsets else EMPTY_SPACE
        if self._frozen:
            return space

        if space.is_empty:
            console_logger.warning(
                f"[ConfigSpace] Empty offsets for {fixed_id} -> {moving_id}"
            )
        self._cache[key] = space
        return space

    def precompute(self, template_ids: list[str] | None = None) -> None:
        """Compute every relevant pair among ``template_ids`` and freeze the cache.

        Connector/connector pairs never dock directly and are skipped.
        """
        ids = list(template_ids) if template_ids is not None else self.catalog.template_ids()
        for fixed_id in ids:
            for moving_id in ids:
                fixed_is_connector = self.catalog.role_of(fixed_id) == ModuleRole.CONNECTOR
                moving_is_connector = self.catalog.role_of(moving_id) == ModuleRole.CONNECTOR
                if fixed_is_connector and moving_is_connector:
                    continue
                self.get_space(fixed_id, moving_id)
        self.freeze()
        console_logger.info(
            f"[ConfigSpace] Precomputed {len(self._cache)} pairs "
            f"({sum(1 for s in self._cache.values() if s.is_empty)} empty)"
        )
        if self.verbose:
            console_logger.info(f"[ConfigSpace] Rejections: {dict(self.rejection_counts)}")

    def cached_pairs(self) -> list[tuple[str, str]]:
        return list(self._cache.keys())

    def save(self, path: Path) -> None:
        """Write the cache to JSON, tagged with the catalog fingerprint."""
        data = {
            "fingerprint": self.catalog.fingerprint(),
            "spaces": [
                {
                    "fixed": fixed_id,
                    "moving": moving_id,
                    "offsets": [c.to_list() for c in sorted(space.offsets)],
                }
                for (fixed_id, moving_id), space in sorted(self._cache.items())
            ],
        }
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(data, f)

    def load(self, path: Path) -> bool:
        """Load a cache written by ``save``.

        Returns:
            True if entries were loaded, False if the file is missing or was
            written for a different catalog.
        """
        path = Path(path)
        if not path.exists():
            return False
        with open(path) as f:
            data = json.load(f)
        if data.get("fingerprint") != self.catalog.fingerprint():
            console_logger.info(f"[ConfigSpace] Ignoring stale cache {path}")
            return False
        if self._frozen:
            raise RuntimeError("Cannot load into a frozen configuration space cache")
        for entry in data.get("spaces", []):
            offsets = frozenset(Cell.from_list(c) for c in entry["offsets"])
            self._cache[(entry["fixed"], entry["moving"])] = (
                ConfigurationSpace(offsets) if offsets else EMPTY_SPACE
            )
        return True
