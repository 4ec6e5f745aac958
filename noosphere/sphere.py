# noosphere/sphere.py
from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple
import numpy as np

from .config import Config
from .errors import ValidationError

Vec3 = Tuple[float, float, float]

GOLDEN_ANGLE = math.pi * (3.0 - math.sqrt(5.0))
FULL_SPHERE = 4.0 * math.pi


def as_array(vec: Sequence[float]) -> np.ndarray:
    arr = np.asarray(vec, dtype=np.float64)
    if arr.shape != (3,):
        raise ValidationError(f"Expected a 3-vector, got shape {arr.shape}")
    return arr


def as_vec3(vec: Sequence[float]) -> Vec3:
    return (float(vec[0]), float(vec[1]), float(vec[2]))


def normalize(vec: Sequence[float]) -> np.ndarray:
    """Return a unit-length copy of `vec`; zero or non-finite input is rejected."""
    arr = as_array(vec)
    if not np.all(np.isfinite(arr)):
        raise ValidationError(f"Position has non-finite components: {tuple(arr)}")
    n = float(np.linalg.norm(arr))
    if n <= Config.core.TOLERANCE:
        raise ValidationError("Cannot place a concept at the zero vector")
    return arr / n


def angular_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """Central angle between two unit vectors (radians), stable near 0 and pi."""
    a = as_array(a)
    b = as_array(b)
    return float(math.atan2(np.linalg.norm(np.cross(a, b)), float(np.dot(a, b))))


def geodesic_distance(a: Sequence[float], b: Sequence[float], radius: float = 1.0) -> float:
    return radius * angular_distance(a, b)


def signed_triangle_area(a: np.ndarray, b: np.ndarray, c: np.ndarray) -> float:
    """
    Signed spherical excess of the unit-sphere triangle (a, b, c).

    Positive when the vertices run counter-clockwise seen from outside the
    sphere. Van Oosterom & Strackee:
        tan(E/2) = a.(b x c) / (1 + a.b + b.c + c.a)
    """
    det = float(np.dot(a, np.cross(b, c)))
    denom = 1.0 + float(np.dot(a, b)) + float(np.dot(b, c)) + float(np.dot(c, a))
    return 2.0 * math.atan2(det, denom)


def cap_radius(area: float, radius: float = 1.0) -> float:
    """Geodesic radius of the spherical cap with the given area."""
    frac = min(max(area / (2.0 * math.pi * radius * radius), 0.0), 2.0)
    return radius * math.acos(1.0 - frac)


def generate(n: int) -> List[Vec3]:
    """
    Fibonacci lattice: `n` near-uniform unit vectors.

    The polar coordinate y is linearly spaced (offset by half a step so no
    point lands on a pole) and the azimuth advances by the golden angle.
    Deterministic for a given `n`; all y values differ so no two points coincide.
    """
    if n < 0:
        raise ValidationError(f"Point count must be non-negative, got {n}")
    points: List[Vec3] = []
    for i in range(n):
        y = 1.0 - 2.0 * (i + 0.5) / n
        r = math.sqrt(max(0.0, 1.0 - y * y))
        theta = GOLDEN_ANGLE * i
        p = np.array([math.cos(theta) * r, y, math.sin(theta) * r])
        p /= np.linalg.norm(p)
        points.append(as_vec3(p))
    return points


def seed_position(existing: Iterable[Sequence[float]]) -> Vec3:
    """
    Seed a position for a brand-new concept.

    Candidates come from `generate(len(existing) + 1)`; the one farthest from
    every existing position wins (first index on ties). Existing positions are
    never touched.
    """
    current = [as_array(p) for p in existing]
    candidates = generate(len(current) + 1)
    if not current:
        return candidates[0]

    mat = np.stack(current, axis=0)
    best, best_score = candidates[0], -1.0
    for cand in candidates:
        score = float(np.min(np.linalg.norm(mat - np.asarray(cand), axis=1)))
        if score > best_score + 1e-12:
            best, best_score = cand, score
    return best


@dataclass
class UnitSphere:
    """
    Sphere of a declared radius on which concept positions live.

    Positions are always stored as unit vectors; the radius only scales
    lengths and areas.
    """
    radius: float = 1.0
    tolerance: Optional[float] = None

    def __post_init__(self):
        if not math.isfinite(self.radius) or self.radius <= 0:
            raise ValidationError(f"Sphere radius must be positive, got {self.radius}")
        if self.tolerance is None:
            self.tolerance = Config.core.TOLERANCE

    @property
    def surface_area(self) -> float:
        return FULL_SPHERE * self.radius * self.radius

    def project(self, vec: Sequence[float]) -> Vec3:
        """Project a raw vector onto the unit sphere."""
        return as_vec3(normalize(vec))

    def is_unit(self, vec: Sequence[float], tol: float = 1e-9) -> bool:
        return abs(float(np.linalg.norm(as_array(vec))) - 1.0) <= tol

    def distance(self, a: Sequence[float], b: Sequence[float]) -> float:
        return geodesic_distance(a, b, self.radius)
