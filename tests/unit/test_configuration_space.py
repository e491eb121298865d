"""Tests for configuration space computation and caching."""

import json
import tempfile
import unittest

from collections import Counter
from pathlib import Path

from dungeonsmith.catalog import ModuleTemplate
from dungeonsmith.geometry.configuration_space import (
    RAY_FLOOR,
    RAY_WALLS,
    AllowedCells,
    ConfigurationSpaceLibrary,
    bite_overlap_status,
    compute_offsets,
)
from dungeonsmith.geometry.grid import Cell, Side
from dungeonsmith.geometry.shapes import (
    ModuleRole,
    ModuleShape,
    Socket,
    build_module_shape,
)
from tests.unit.dungeon_fixtures import create_test_catalog


def floor_overlap(fixed_shape, moving_shape, delta: Cell) -> set[Cell]:
    return {c + delta for c in moving_shape.floor_cells} & set(fixed_shape.floor_cells)


class TestAllowedCells(unittest.TestCase):
    """Tests for analytic allowed-cell membership."""

    def test_floor_ray_membership(self):
        """RAY_FLOOR admits the ray centres from 0 to max_k only."""
        allowed = AllowedCells(
            base=Cell(0, 1), inward=Cell(1, 0), tangent=Cell(0, 1), max_k=2, mask=RAY_FLOOR
        )

        assert Cell(0, 1) in allowed
        assert Cell(2, 1) in allowed
        assert Cell(3, 1) not in allowed
        assert Cell(-1, 1) not in allowed
        assert Cell(1, 2) not in allowed

    def test_wall_ray_membership(self):
        """RAY_WALLS admits tangential neighbours and the extra cells."""
        allowed = AllowedCells(
            base=Cell(0, 1),
            inward=Cell(1, 0),
            tangent=Cell(0, 1),
            max_k=1,
            mask=RAY_WALLS,
            extra=frozenset({Cell(1, 1)}),
        )

        assert Cell(0, 0) in allowed
        assert Cell(1, 2) in allowed
        assert Cell(1, 1) in allowed
        assert Cell(0, 1) not in allowed
        assert Cell(2, 2) not in allowed


class TestSymmetricDocking(unittest.TestCase):
    """Tests for room/room docking."""

    def setUp(self):
        self.catalog = create_test_catalog()
        self.library = ConfigurationSpaceLibrary(self.catalog)

    def test_single_offset_for_facing_rooms(self):
        """East socket docks a west socket at exactly one offset."""
        space = self.library.get_space("room_e", "room_w")

        assert space.offsets == frozenset({Cell(4, 0)})
        assert self.library.get_space("room_w", "room_e").offsets == frozenset(
            {Cell(-4, 0)}
        )

    def test_overlap_is_exactly_the_door(self):
        """Every accepted offset overlaps floor in exactly one cell."""
        for fixed_id, moving_id in [("room_e", "room_w"), ("room_ew", "room_ew")]:
            fixed = self.catalog.shape_of(fixed_id)
            moving = self.catalog.shape_of(moving_id)
            space = self.library.get_space(fixed_id, moving_id)
            assert not space.is_empty
            for delta in space.offsets:
                assert len(floor_overlap(fixed, moving, delta)) == 1

    def test_no_facing_sockets_gives_empty_space(self):
        """Two east-only rooms cannot dock."""
        space = self.library.get_space("room_e", "room_e")

        assert space.is_empty
        assert len(space) == 0

    def test_too_many_overlaps_rejected(self):
        """A candidate whose floors overlap in two cells is rejected."""
        fixed = build_module_shape(
            [Cell(0, 0), Cell(1, 0)], [], [Socket(Side.EAST, Cell(1, 0))]
        )
        moving = build_module_shape(
            [Cell(0, 0), Cell(-1, 0)], [], [Socket(Side.WEST, Cell(0, 0))]
        )
        tally = Counter()

        offsets = compute_offsets(fixed, moving, False, False, tally=tally)

        assert offsets == set()
        assert tally["Bite:TooMany"] == 1

    def test_bite_overlap_status(self):
        """Status distinguishes missing, absent, multiple and misplaced overlap."""
        floor = {Cell(0, 0), Cell(1, 0)}

        assert bite_overlap_status(None, floor, Cell(0, 0), Cell(0, 0)) == ("Null", 0)
        assert bite_overlap_status(floor, floor, Cell(5, 0), Cell(0, 0)) == ("None", 0)
        assert bite_overlap_status(floor, floor, Cell(0, 0), Cell(0, 0)) == ("TooMany", 2)
        assert bite_overlap_status(floor, floor, Cell(1, 0), Cell(0, 0)) == ("WrongCell", 1)
        assert bite_overlap_status(floor, floor, Cell(1, 0), Cell(1, 0)) == ("OK", 1)


class TestAsymmetricDocking(unittest.TestCase):
    """Tests for room/connector docking with bite depth."""

    def test_strict_connector_docks_once(self):
        """Bite depth 1 allows only the socket-to-socket offset."""
        library = ConfigurationSpaceLibrary(create_test_catalog(bite_depth=1))

        assert library.get_space("room_e", "corridor").offsets == frozenset({Cell(4, 1)})
        assert library.get_space("corridor", "room_w").offsets == frozenset({Cell(4, -1)})

    def test_one_offset_per_depth(self):
        """Bite depth 3 yields one offset for each depth 0, 1 and 2."""
        library = ConfigurationSpaceLibrary(create_test_catalog(bite_depth=3))

        assert library.get_space("corridor", "room_e").offsets == frozenset(
            {Cell(-4, -1), Cell(-3, -1), Cell(-2, -1)}
        )
        assert library.get_space("room_e", "corridor").offsets == frozenset(
            {Cell(4, 1), Cell(3, 1), Cell(2, 1)}
        )

    def test_floor_overlap_stays_on_bite_ray(self):
        """At depth x the floors overlap exactly on ray cells 0..x."""
        catalog = create_test_catalog(bite_depth=3)
        library = ConfigurationSpaceLibrary(catalog)
        corridor = catalog.shape_of("corridor")
        room = catalog.shape_of("room_e")

        depths = set()
        for delta in library.get_space("corridor", "room_e").offsets:
            overlap = floor_overlap(corridor, room, delta)
            depth = len(overlap) - 1
            depths.add(depth)
            assert overlap == {Cell(k, 1) for k in range(depth + 1)}

        assert depths == {0, 1, 2}

    def test_door_must_be_on_floor(self):
        """A connector socket without floor under it never docks."""
        connector = ModuleShape(
            floor_cells=frozenset({Cell(1, 0)}),
            wall_cells=frozenset(),
            sockets=(Socket(Side.WEST, Cell(0, 0)),),
        )
        room = build_module_shape([Cell(0, 0)], [], [Socket(Side.EAST, Cell(0, 0))])
        tally = Counter()

        assert compute_offsets(room, connector, False, True, tally=tally) == set()
        assert tally["DoorNotOnFloor"] == 1

    def test_empty_shapes(self):
        """Missing or empty shapes have an empty space."""
        room = build_module_shape([Cell(0, 0)], [], [Socket(Side.EAST, Cell(0, 0))])

        assert compute_offsets(None, room, False, True) == set()
        assert compute_offsets(ModuleShape(), room, True, False) == set()


class TestConfigurationSpaceLibrary(unittest.TestCase):
    """Tests for caching, precomputation and persistence."""

    def setUp(self):
        self.catalog = create_test_catalog(bite_depth=2)

    def test_get_space_is_cached(self):
        """Repeated lookups return the cached object."""
        library = ConfigurationSpaceLibrary(self.catalog)

        first = library.get_space("room_e", "corridor")
        second = library.get_space("room_e", "corridor")

        assert first is second
        assert ("room_e", "corridor") in library.cached_pairs()

    def test_unknown_template_raises(self):
        """Lookups for templates missing from the catalog raise KeyError."""
        library = ConfigurationSpaceLibrary(self.catalog)

        with self.assertRaises(KeyError):
            library.get_space("room_e", "missing")

    def test_rejection_counts(self):
        """Accepted candidates and rejections are tallied by category."""
        library = ConfigurationSpaceLibrary(self.catalog, verbose=True, max_verbose_logs=2)

        library.get_space("room_e", "room_w")

        assert library.rejection_counts["OK"] == 1

    def test_precompute_skips_connector_pairs_and_freezes(self):
        """Precompute caches every pair except connector/connector, then freezes."""
        library = ConfigurationSpaceLibrary(self.catalog)

        library.precompute()

        pairs = set(library.cached_pairs())
        assert library.is_frozen
        assert ("corridor", "corridor") not in pairs
        assert len(pairs) == 4 * 4 - 1

    def test_frozen_misses_are_not_cached(self):
        """After freezing, new pairs are computed but not stored."""
        library = ConfigurationSpaceLibrary(self.catalog)
        library.freeze()

        space = library.get_space("room_e", "room_w")

        assert space.offsets == frozenset({Cell(4, 0)})
        assert library.cached_pairs() == []

    def test_save_and_load(self):
        """A saved cache loads into a fresh library for the same catalog."""
        library = ConfigurationSpaceLibrary(self.catalog)
        library.precompute()

        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "spaces.json"
            library.save(path)

            restored = ConfigurationSpaceLibrary(self.catalog)
            assert restored.load(path)

        assert set(restored.cached_pairs()) == set(library.cached_pairs())
        for fixed_id, moving_id in library.cached_pairs():
            assert (
                restored.get_space(fixed_id, moving_id).offsets
                == library.get_space(fixed_id, moving_id).offsets
            )

    def test_load_rejects_stale_cache(self):
        """A cache written for another catalog is ignored."""
        library = ConfigurationSpaceLibrary(self.catalog)
        library.precompute()

        other = create_test_catalog(bite_depth=2)
        other.add_template(
            ModuleTemplate(
                template_id="extra",
                role=ModuleRole.ROOM,
                shape=build_module_shape([Cell(0, 0)], [], []),
            )
        )

        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "spaces.json"
            library.save(path)
            with open(path) as f:
                assert json.load(f)["fingerprint"] == self.catalog.fingerprint()

            restored = ConfigurationSpaceLibrary(other)
            assert not restored.load(path)
            assert not restored.load(Path(tmpdir) / "missing.json")

        assert restored.cached_pairs() == []

    def test_load_into_frozen_library_raises(self):
        """Frozen caches are read-only."""
        library = ConfigurationSpaceLibrary(self.catalog)
        library.precompute()

        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "spaces.json"
            library.save(path)
            with self.assertRaises(RuntimeError):
                library.load(path)


if __name__ == "__main__":
    unittest.main()
