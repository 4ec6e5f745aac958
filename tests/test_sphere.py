# tests/test_sphere.py
import math

import numpy as np
import pytest

from noosphere.errors import ValidationError
from noosphere.sphere import (
    UnitSphere,
    angular_distance,
    cap_radius,
    generate,
    normalize,
    seed_position,
    signed_triangle_area,
)


class TestGenerate:
    """Fibonacci lattice."""

    @pytest.mark.parametrize("n", [1, 2, 3, 10, 100])
    def test_unit_norm(self, n):
        for p in generate(n):
            assert abs(np.linalg.norm(p) - 1.0) <= 1e-10

    def test_pairwise_distinct(self):
        pts = np.array(generate(200))
        gaps = np.linalg.norm(pts[:, None, :] - pts[None, :, :], axis=-1)
        np.fill_diagonal(gaps, np.inf)
        assert gaps.min() > 1e-3

    def test_deterministic(self):
        assert generate(37) == generate(37)

    def test_polar_spacing(self):
        """The polar coordinate is linearly spaced with a half-step offset."""
        pts = generate(4)
        assert [p[1] for p in pts] == pytest.approx([0.75, 0.25, -0.25, -0.75])

    def test_empty(self):
        assert generate(0) == []

    def test_negative_count(self):
        with pytest.raises(ValidationError):
            generate(-1)


class TestPrimitives:
    def test_normalize(self):
        assert np.allclose(normalize([3.0, 0.0, 4.0]), [0.6, 0.0, 0.8])

    @pytest.mark.parametrize("vec", [(0.0, 0.0, 0.0), (float("nan"), 0.0, 1.0), (float("inf"), 0.0, 0.0)])
    def test_normalize_rejects_degenerate(self, vec):
        with pytest.raises(ValidationError):
            normalize(vec)

    def test_normalize_rejects_wrong_shape(self):
        with pytest.raises(ValidationError):
            normalize([1.0, 0.0])

    def test_angular_distance(self):
        assert angular_distance((1, 0, 0), (0, 1, 0)) == pytest.approx(math.pi / 2)
        assert angular_distance((1, 0, 0), (-1, 0, 0)) == pytest.approx(math.pi)
        assert angular_distance((0, 0, 1), (0, 0, 1)) == pytest.approx(0.0)

    def test_octant_triangle_area(self):
        """One octant covers an eighth of the sphere; reversing orientation flips the sign."""
        x, y, z = np.eye(3)
        assert signed_triangle_area(x, y, z) == pytest.approx(math.pi / 2)
        assert signed_triangle_area(x, z, y) == pytest.approx(-math.pi / 2)

    def test_cap_radius(self):
        assert cap_radius(2 * math.pi) == pytest.approx(math.pi / 2)
        assert cap_radius(4 * math.pi) == pytest.approx(math.pi)
        assert cap_radius(0.0) == pytest.approx(0.0)


class TestSeedPosition:
    def test_first_seed_is_lattice_origin(self):
        assert seed_position([]) == generate(1)[0]

    def test_seed_avoids_existing(self):
        existing = generate(5)
        seeded = seed_position(existing)
        assert min(angular_distance(seeded, p) for p in existing) > 0.1

    def test_existing_untouched(self):
        existing = [(1.0, 0.0, 0.0), (0.0, 1.0, 0.0)]
        before = list(existing)
        seed_position(existing)
        assert existing == before


class TestUnitSphere:
    def test_surface_area(self):
        assert UnitSphere(radius=2.0).surface_area == pytest.approx(16 * math.pi)

    def test_distance_scales_with_radius(self):
        assert UnitSphere(radius=3.0).distance((1, 0, 0), (0, 1, 0)) == pytest.approx(1.5 * math.pi)

    def test_project(self):
        sphere = UnitSphere()
        assert sphere.is_unit(sphere.project((0.0, 2.0, 0.0)))

    @pytest.mark.parametrize("radius", [0.0, -1.0, float("inf")])
    def test_invalid_radius(self, radius):
        with pytest.raises(ValidationError):
            UnitSphere(radius=radius)
