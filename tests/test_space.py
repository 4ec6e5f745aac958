# tests/test_space.py
import dataclasses
import math

import pytest

from noosphere.config import Config
from noosphere.errors import (
    DegenerateGeometryError,
    InvalidStateTransition,
    NotFound,
    ReplayCorruption,
    ValidationError,
)
from noosphere.events import ConceptPlaced, PatternsDetected, TessellationComputed, TopologyEvolved
from noosphere.patterns import Cluster
from noosphere.space import ConceptualSpace
from noosphere.sphere import generate
from noosphere.tessellation import build_tessellation
from noosphere.topology import Point, Toroidal


def _populate(space, positions, prefix="c"):
    history = []
    for i, pos in enumerate(positions):
        space, events = space.place_concept(f"{prefix}{i}", pos)
        history.extend(events)
    return space, history


@pytest.fixture
def empty_space():
    space, events = ConceptualSpace.create("physics")
    return space, list(events)


class TestCreate:
    def test_empty_space(self, empty_space):
        space, events = empty_space
        assert space.version == 1
        assert len(events) == 1
        assert space.concept_count == 0
        assert space.topology.kind == "undefined"
        assert space.tessellation is None

    @pytest.mark.parametrize("kwargs", [{"name": ""}, {"name": "x", "radius": 0.0}, {"name": "x", "radius": -2}])
    def test_invalid(self, kwargs):
        with pytest.raises(ValidationError):
            ConceptualSpace.create(**kwargs)

    def test_override_at_creation(self):
        space, events = ConceptualSpace.create("loops", override=Toroidal())
        assert len(events) == 2
        assert space.topology.override == Toroidal()


class TestPlacement:
    """Each placement settles topology, tessellation and patterns."""

    def test_topology_follows_growth(self, empty_space):
        space, _ = empty_space
        kinds = []
        for i, pos in enumerate(generate(4)):
            space, events = space.place_concept(f"c{i}", pos)
            assert isinstance(events[0], ConceptPlaced)
            kinds.append(tuple(e.to_type.kind for e in events if isinstance(e, TopologyEvolved)))
            assert isinstance(events[-1], PatternsDetected)
        assert kinds == [("point",), ("line_segment",), ("spherical_voronoi",), ()]
        assert space.euler_characteristic == 2
        assert space.tessellation.cell_count == 4
        assert space.tessellation.total_area == pytest.approx(4 * math.pi)

    def test_single_concept_cell(self, empty_space):
        space, _ = empty_space
        space, _ = space.place_concept("solo", (0.0, 0.0, 1.0))
        assert space.topology.topology_type == Point()
        assert space.tessellation.cell("solo").area == pytest.approx(4 * math.pi)

    def test_radius_scales_cells(self):
        space, _ = ConceptualSpace.create("big", radius=2.0)
        space, _ = _populate(space, generate(5))
        assert space.tessellation.total_area == pytest.approx(16 * math.pi)

    def test_radius_scales_distances(self):
        space, _ = ConceptualSpace.create("big", radius=2.0)
        space, _ = space.place_concept("east", (1.0, 0.0, 0.0))
        assert space.sphere.surface_area == pytest.approx(16 * math.pi)
        [(sid, distance)] = space.nearest_concepts((0.0, 1.0, 0.0), k=1)
        assert sid == "east"
        assert distance == pytest.approx(math.pi)

    def test_tetrahedron_patterns(self, empty_space, tetrahedron):
        space, _ = empty_space
        space, _ = _populate(space, [pos for _, pos in tetrahedron])
        assert len(space.patterns) == 1
        assert isinstance(space.patterns[0], Cluster)

    def test_duplicate_placement(self, empty_space):
        space, _ = empty_space
        space, _ = space.place_concept("a", (1.0, 0.0, 0.0))
        with pytest.raises(InvalidStateTransition):
            space.place_concept("a", (0.0, 1.0, 0.0))

    def test_coincident_placement(self, empty_space):
        space, _ = empty_space
        space, _ = _populate(space, generate(3))
        with pytest.raises(DegenerateGeometryError):
            space.place_concept("twin", generate(3)[1])
        assert space.concept_count == 3

    def test_release_and_relocate(self, empty_space):
        space, _ = empty_space
        space, _ = _populate(space, generate(5))
        space, _ = space.relocate_concept("c2", (0.3, 0.3, 0.9))
        assert space.position_of("c2") == pytest.approx(
            tuple(v / math.sqrt(0.99) for v in (0.3, 0.3, 0.9))
        )
        space, events = space.release_concept("c0")
        assert "c0" not in space
        assert space.tessellation.cell_count == 4
        with pytest.raises(NotFound):
            space.release_concept("c0")
        with pytest.raises(NotFound):
            space.relocate_concept("missing", (1.0, 0.0, 0.0))

    def test_release_everything(self, empty_space):
        space, _ = empty_space
        space, _ = _populate(space, generate(2))
        space, _ = space.release_concept("c0")
        space, events = space.release_concept("c1")
        assert space.topology.kind == "undefined"
        assert space.tessellation is None
        assert not any(isinstance(e, TessellationComputed) for e in events)


class TestNonSphericalTopology:
    def test_toroidal_skips_tessellation(self, caplog):
        space, _ = ConceptualSpace.create("loops", override=Toroidal())
        space, _ = _populate(space, generate(3)[:2])
        assert space.tessellation is not None
        with caplog.at_level("WARNING"):
            space, events = space.place_concept("c2", generate(3)[2])
        assert space.topology.kind == "toroidal"
        assert space.tessellation is None
        assert space.patterns == ()
        assert not any(isinstance(e, TessellationComputed) for e in events)
        assert "skipping tessellation" in caplog.text

    def test_clearing_override_restores_tessellation(self):
        space, _ = ConceptualSpace.create("loops", override=Toroidal())
        space, _ = _populate(space, generate(4))
        space, _ = space.set_topology_override(None)
        assert space.topology.kind == "spherical_voronoi"
        assert space.tessellation.cell_count == 4


class TestIncremental:
    def test_incremental_matches_full_build(self, empty_space):
        Config.geometry.INCREMENTAL_THRESHOLD = 4
        space, _ = empty_space
        space, _ = _populate(space, generate(8))
        space, _ = space.release_concept("c3")
        space, _ = space.relocate_concept("c5", (0.1, -0.2, 0.97))
        expected = build_tessellation(space.sites, order=space.site_ids)
        assert space.tessellation.site_ids == expected.site_ids
        for cell in expected.cells:
            live = space.tessellation.cell(cell.site_id)
            assert set(live.neighbor_ids) == set(cell.neighbor_ids)
            assert live.area == pytest.approx(cell.area, abs=1e-9)


class TestReplay:
    def test_replay_rebuilds_state(self, empty_space):
        space, history = empty_space
        space, more = _populate(space, generate(6))
        history += more
        space, more = space.release_concept("c1")
        history += more
        replayed = ConceptualSpace.replay(history, space.space_id)
        assert replayed.version == space.version
        assert replayed.sites == space.sites
        assert replayed.topology == space.topology
        assert replayed.patterns == space.patterns
        assert replayed.tessellation.cell_count == space.tessellation.cell_count

    def test_tampered_cell_count(self, empty_space):
        space, history = empty_space
        space, more = _populate(space, generate(4))
        history += more
        idx = max(i for i, e in enumerate(history) if isinstance(e, TessellationComputed))
        history[idx] = dataclasses.replace(history[idx], cell_count=99)
        with pytest.raises(ReplayCorruption):
            ConceptualSpace.replay(history, space.space_id)

    def test_replay_tessellates_once(self, empty_space, monkeypatch):
        import noosphere.space as space_module

        space, history = empty_space
        space, more = _populate(space, generate(12))
        history += more
        calls = []
        real = space_module.build_tessellation

        def counting(*args, **kwargs):
            calls.append(args)
            return real(*args, **kwargs)

        monkeypatch.setattr(space_module, "build_tessellation", counting)
        replayed = ConceptualSpace.replay(history, space.space_id)
        assert len(calls) == 1
        assert replayed.tessellation.site_ids == space.tessellation.site_ids
        assert replayed.tessellation.total_area == pytest.approx(4 * math.pi)

    def test_replay_after_release_of_all(self, empty_space):
        space, history = empty_space
        space, more = _populate(space, generate(3))
        history += more
        for sid in ("c0", "c1", "c2"):
            space, more = space.release_concept(sid)
            history += more
        replayed = ConceptualSpace.replay(history, space.space_id)
        assert replayed.tessellation is None
        assert replayed.version == space.version

    def test_empty_history(self):
        with pytest.raises(NotFound):
            ConceptualSpace.replay([], "space-missing")


def test_nearest_concepts(empty_space):
    space, _ = empty_space
    space, _ = space.place_concept("north", (0.0, 0.0, 1.0))
    space, _ = space.place_concept("east", (1.0, 0.0, 0.0))
    space, _ = space.place_concept("south", (0.0, 0.0, -1.0))
    nearest = space.nearest_concepts((0.1, 0.0, 1.0), k=2)
    assert [sid for sid, _ in nearest] == ["north", "east"]
    assert nearest[0][1] < nearest[1][1]
    assert space.nearest_concepts((1.0, 0.0, 0.0), k=0) == []
