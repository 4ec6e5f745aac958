"""
Spherical Delaunay triangulation and its Voronoi dual.

For points on a sphere the Delaunay triangulation is the convex hull of the
points, and the spherical circumcenter of a hull face is its outward unit
normal. `SphericalDelaunay` keeps that hull in a `scipy.spatial.ConvexHull`
built in incremental mode:

    insert: the new site is handed to Qhull with `add_points`.
    remove: Qhull cannot delete points, so the hull is rebuilt from the
            remaining sites in one pass.

Qhull always triangulates its output ("Qt"), so cocircular sites on one hull
facet (a cube's square faces, say) become several triangles sharing one
circumcenter; the zero-length Voronoi edges between them are dropped.

While every site lies on one plane (three sites, or a cocircular set) there is
no hull. The triangulation is two opposite fans over the same polygon and each
cell is a lune between the plane's two poles.

A cell area is the fan of signed spherical triangles from its generator over
its ordered vertices. A Voronoi cell is an intersection of hemispheres, so it
is convex, holds its generator and has edges shorter than a half turn.
"""

from __future__ import annotations
import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.spatial import ConvexHull, QhullError

from .config import Config
from .errors import DegenerateGeometryError, NotFound, ValidationError
from .events import register
from .sphere import FULL_SPHERE, Vec3, angular_distance, as_vec3, normalize, signed_triangle_area

logger = logging.getLogger(__name__)

Face = Tuple[str, str, str]
Plane = Tuple[np.ndarray, float]
SiteInput = Union[Mapping[str, Sequence[float]], Iterable[Tuple[str, Sequence[float]]]]


# --- Output value types ---
@register
@dataclass(frozen=True)
class VoronoiCell:
    site_id: str
    generator: Vec3
    neighbor_ids: Tuple[str, ...]
    vertices: Tuple[Vec3, ...]
    area: float


@register
@dataclass(frozen=True)
class DelaunayTriangle:
    site_ids: Tuple[str, str, str]
    circumcenter: Vec3


@register
@dataclass(frozen=True)
class DelaunayTriangulation:
    triangles: Tuple[DelaunayTriangle, ...] = ()

    def edges(self) -> List[Tuple[str, str]]:
        pairs = set()
        for tri in self.triangles:
            a, b, c = tri.site_ids
            for u, v in ((a, b), (b, c), (c, a)):
                pairs.add((u, v) if u < v else (v, u))
        return sorted(pairs)

    def __len__(self):
        return len(self.triangles)


@dataclass(frozen=True)
class VoronoiTessellation:
    cells: Tuple[VoronoiCell, ...]
    triangulation: DelaunayTriangulation
    radius: float = 1.0

    @property
    def cell_count(self) -> int:
        return len(self.cells)

    @property
    def total_area(self) -> float:
        return float(sum(c.area for c in self.cells))

    @property
    def site_ids(self) -> Tuple[str, ...]:
        return tuple(c.site_id for c in self.cells)

    def cell(self, site_id: str) -> VoronoiCell:
        for c in self.cells:
            if c.site_id == site_id:
                return c
        raise NotFound(f"No Voronoi cell for site {site_id}")

    def adjacency(self) -> Dict[str, Tuple[str, ...]]:
        return {c.site_id: c.neighbor_ids for c in self.cells}


def _rotate_to(face: Face, site_id: str) -> Face:
    a, b, c = face
    if site_id == a:
        return face
    if site_id == b:
        return (b, c, a)
    return (c, a, b)


def _canonical(face: Face) -> Face:
    """Rotation starting at the smallest id; orientation is preserved."""
    return _rotate_to(face, min(face))


def _site_items(sites: SiteInput) -> List[Tuple[str, Sequence[float]]]:
    if isinstance(sites, Mapping):
        return list(sites.items())
    return [(sid, pos) for sid, pos in sites]


class SphericalDelaunay:
    """Mutable triangulation over a Qhull hull. Failed operations leave it unchanged."""

    def __init__(self, tolerance: Optional[float] = None, min_separation: Optional[float] = None):
        self.tolerance = Config.core.TOLERANCE if tolerance is None else tolerance
        self.min_separation = (
            Config.geometry.MIN_SITE_SEPARATION if min_separation is None else min_separation
        )
        self._sites: Dict[str, np.ndarray] = {}
        self._hull: Optional[ConvexHull] = None
        self._hull_ids: List[str] = []
        self._flat_plane: Optional[Plane] = None
        self._faces: Optional[List[Tuple[Face, np.ndarray]]] = None

    def __len__(self) -> int:
        return len(self._sites)

    def __contains__(self, site_id: str) -> bool:
        return site_id in self._sites

    @property
    def site_ids(self) -> List[str]:
        return list(self._sites)

    @property
    def is_flat(self) -> bool:
        return self._flat_plane is not None

    def position(self, site_id: str) -> np.ndarray:
        try:
            return self._sites[site_id]
        except KeyError:
            raise NotFound(f"Site {site_id} is not in the triangulation")

    # --- Construction ---
    @classmethod
    def from_sites(cls, sites: SiteInput, **kwargs) -> "SphericalDelaunay":
        """Build in one pass: every site is validated, then Qhull runs once."""
        tri = cls(**kwargs)
        for sid, pos in _site_items(sites):
            tri._sites[sid] = tri._admit(sid, pos)
        tri._build()
        return tri

    def _admit(self, site_id: str, position: Sequence[float]) -> np.ndarray:
        if site_id in self._sites:
            raise ValidationError(f"Site {site_id} is already in the triangulation")
        p = normalize(position)
        if self._sites:
            mat = np.stack(list(self._sites.values()), axis=0)
            gaps = np.linalg.norm(mat - p, axis=1)
            idx = int(np.argmin(gaps))
            if gaps[idx] < self.min_separation:
                other = list(self._sites)[idx]
                raise DegenerateGeometryError(f"Site {site_id} coincides with {other}")
        return p

    def _build(self):
        self._hull, self._hull_ids, self._flat_plane, self._faces = None, [], None, None
        if len(self._sites) < 3:
            return
        ids = list(self._sites)
        plane = self._plane(*(self._sites[sid] for sid in ids[:3]))
        if all(self._on_plane(plane, self._sites[sid]) for sid in ids[3:]):
            self._flat_plane = plane
            return
        points = np.stack([self._sites[sid] for sid in ids], axis=0)
        try:
            self._hull = ConvexHull(points, incremental=True)
        except QhullError as exc:
            raise DegenerateGeometryError(f"Qhull rejected {len(ids)} sites: {exc}") from exc
        self._hull_ids = ids
        self._check_hull()

    def _plane(self, a: np.ndarray, b: np.ndarray, c: np.ndarray) -> Plane:
        normal = np.cross(b - a, c - a)
        norm = float(np.linalg.norm(normal))
        if norm <= self.tolerance:
            raise DegenerateGeometryError("Three sites span no plane")
        n = normal / norm
        return n, float(np.dot(n, a))

    def _on_plane(self, plane: Plane, p: np.ndarray) -> bool:
        n, d = plane
        return abs(float(np.dot(n, p)) - d) <= self.tolerance

    def _check_hull(self):
        if len(self._hull.vertices) != len(self._hull_ids):
            raise DegenerateGeometryError(
                f"{len(self._hull_ids) - len(self._hull.vertices)} sites fell inside the hull"
            )

    # --- Insertion ---
    def insert(self, site_id: str, position: Sequence[float]):
        p = self._admit(site_id, position)
        before = dict(self._sites)
        self._sites[site_id] = p
        try:
            if self._hull is None:
                self._build()
            else:
                self._faces = None
                try:
                    self._hull.add_points(p[np.newaxis, :])
                except QhullError as exc:
                    raise DegenerateGeometryError(f"Qhull rejected site {site_id}: {exc}") from exc
                self._hull_ids.append(site_id)
                self._check_hull()
        except DegenerateGeometryError:
            self._sites = before
            self._build()
            raise
        logger.debug(f"[Delaunay] inserted {site_id}: {len(self._sites)} sites")

    # --- Removal ---
    def remove(self, site_id: str):
        if site_id not in self._sites:
            raise NotFound(f"Site {site_id} is not in the triangulation")
        remaining = {sid: pos for sid, pos in self._sites.items() if sid != site_id}
        fresh = SphericalDelaunay.from_sites(
            remaining, tolerance=self.tolerance, min_separation=self.min_separation
        )
        self.__dict__.update(fresh.__dict__)
        logger.debug(f"[Delaunay] removed {site_id}: {len(self._sites)} sites")

    # --- Faces ---
    def _oriented_faces(self) -> List[Tuple[Face, np.ndarray]]:
        """Faces counter-clockwise seen from outside, each with its circumcenter."""
        if self._faces is not None:
            return self._faces
        faces = []
        if self._flat_plane is not None:
            n, _ = self._flat_plane
            ordered = self._around_plane()
            v0 = ordered[0]
            for i in range(1, len(ordered) - 1):
                faces.append(((v0, ordered[i], ordered[i + 1]), n))
                faces.append(((v0, ordered[i + 1], ordered[i]), -n))
        elif self._hull is not None:
            for simplex, equation in zip(self._hull.simplices, self._hull.equations):
                a, b, c = (self._hull_ids[int(k)] for k in simplex)
                normal = np.asarray(equation[:3], dtype=np.float64)
                normal = normal / np.linalg.norm(normal)
                pa, pb, pc = self._sites[a], self._sites[b], self._sites[c]
                if float(np.dot(np.cross(pb - pa, pc - pa), normal)) < 0.0:
                    b, c = c, b
                faces.append(((a, b, c), normal))
        self._faces = faces
        return faces

    def _around_plane(self) -> List[str]:
        """Sites of a flat set sorted by azimuth about the plane normal."""
        angles = self._azimuths()
        return sorted(self._sites, key=lambda sid: (angles[sid], sid))

    def _azimuths(self) -> Dict[str, float]:
        n, d = self._flat_plane
        ref = self._sites[next(iter(self._sites))] - d * n
        e1 = ref / np.linalg.norm(ref)
        e2 = np.cross(n, e1)
        return {
            sid: math.atan2(float(np.dot(v, e2)), float(np.dot(v, e1))) % (2.0 * math.pi)
            for sid, v in self._sites.items()
        }

    def triangulation(self) -> DelaunayTriangulation:
        triangles = [
            DelaunayTriangle(site_ids=_canonical(face), circumcenter=as_vec3(center))
            for face, center in self._oriented_faces()
        ]
        triangles.sort(key=lambda t: t.site_ids)
        return DelaunayTriangulation(tuple(triangles))

    # --- Dual ---
    def cells(self, radius: float = 1.0, order: Optional[Sequence[str]] = None) -> List[VoronoiCell]:
        if not math.isfinite(radius) or radius <= 0:
            raise ValidationError(f"Sphere radius must be positive, got {radius}")
        ids = list(order) if order is not None else list(self._sites)
        if len(ids) != len(self._sites) or set(ids) != set(self._sites):
            raise ValidationError("Cell order must list every site exactly once")

        surface = FULL_SPHERE * radius * radius
        if not ids:
            return []
        if len(ids) == 1:
            sid = ids[0]
            return [VoronoiCell(sid, as_vec3(self._sites[sid]), (), (), surface)]
        if len(ids) == 2:
            a, b = ids
            return [
                VoronoiCell(a, as_vec3(self._sites[a]), (b,), (), surface / 2.0),
                VoronoiCell(b, as_vec3(self._sites[b]), (a,), (), surface / 2.0),
            ]

        rank = {sid: i for i, sid in enumerate(ids)}
        if self._flat_plane is not None:
            by_id = self._lunes(radius, rank)
        else:
            by_id = self._hull_cells(radius, rank)
        cells = [by_id[sid] for sid in ids]

        total = sum(c.area for c in cells)
        if abs(total - surface) > Config.geometry.AREA_RTOL * surface:
            raise DegenerateGeometryError(
                f"Cell areas sum to {total:.12f}, expected {surface:.12f}"
            )
        return cells

    def _lunes(self, radius: float, rank: Dict[str, int]) -> Dict[str, VoronoiCell]:
        """Cells of a flat set: lunes bounded by the bisecting meridians of circle neighbours."""
        n, _ = self._flat_plane
        angles = self._azimuths()
        ordered = self._around_plane()
        poles = tuple(sorted((as_vec3(n), as_vec3(-n))))
        k = len(ordered)
        cells = {}
        for i, sid in enumerate(ordered):
            prev, nxt = ordered[i - 1], ordered[(i + 1) % k]
            before = (angles[sid] - angles[prev]) % (2.0 * math.pi)
            after = (angles[nxt] - angles[sid]) % (2.0 * math.pi)
            width = (before + after) / 2.0
            cells[sid] = VoronoiCell(
                site_id=sid,
                generator=as_vec3(self._sites[sid]),
                neighbor_ids=tuple(sorted({prev, nxt}, key=rank.__getitem__)),
                vertices=poles,
                area=2.0 * width * radius * radius,
            )
        return cells

    def _hull_cells(self, radius: float, rank: Dict[str, int]) -> Dict[str, VoronoiCell]:
        merge = Config.geometry.VERTEX_MERGE_TOL
        # star[s][u] = (v, center) for each face (s, u, v)
        star: Dict[str, Dict[str, Tuple[str, np.ndarray]]] = {sid: {} for sid in self._sites}
        for (a, b, c), center in self._oriented_faces():
            for s, u, v in ((a, b, c), (b, c, a), (c, a, b)):
                if u in star[s]:
                    raise DegenerateGeometryError(f"Star of {s} is not a disk")
                star[s][u] = (v, center)

        cells = {}
        for sid, links in star.items():
            s = self._sites[sid]
            start = min(links)
            ring, centers = [], []
            u = start
            while True:
                v, center = links[u]
                ring.append(u)
                centers.append(center)
                u = v
                if u == start or len(ring) > len(links):
                    break
            if u != start or len(ring) != len(links):
                raise DegenerateGeometryError(f"Star of {sid} is not closed")

            k = len(ring)
            excess = sum(signed_triangle_area(s, centers[i], centers[(i + 1) % k]) for i in range(k))
            # ring[i] is shared by faces i - 1 and i
            neighbors = [
                ring[i] for i in range(k)
                if angular_distance(centers[i - 1], centers[i]) > merge
            ]
            cells[sid] = VoronoiCell(
                site_id=sid,
                generator=as_vec3(s),
                neighbor_ids=tuple(sorted(set(neighbors), key=rank.__getitem__)),
                vertices=self._polygon(centers, merge),
                area=excess * radius * radius,
            )
        return cells

    @staticmethod
    def _polygon(centers: List[np.ndarray], merge: float) -> Tuple[Vec3, ...]:
        kept: List[np.ndarray] = []
        for o in centers:
            if not kept or angular_distance(kept[-1], o) > merge:
                kept.append(o)
        while len(kept) > 1 and angular_distance(kept[-1], kept[0]) <= merge:
            kept.pop()
        if not kept:
            return ()
        keys = [tuple(np.round(v, 9)) for v in kept]
        start = keys.index(min(keys))
        kept = kept[start:] + kept[:start]
        return tuple(as_vec3(v) for v in kept)

    def tessellation(self, radius: float = 1.0, order: Optional[Sequence[str]] = None) -> VoronoiTessellation:
        return VoronoiTessellation(
            cells=tuple(self.cells(radius, order)),
            triangulation=self.triangulation(),
            radius=radius,
        )


# --- Module-level entry points ---
def tessellate(sites: SiteInput, radius: float = 1.0) -> Tuple[List[VoronoiCell], DelaunayTriangulation]:
    """Full rebuild: Voronoi cells (in input order) and the Delaunay triangulation."""
    tri = SphericalDelaunay.from_sites(sites)
    return tri.cells(radius), tri.triangulation()


def build_tessellation(
    sites: SiteInput,
    radius: float = 1.0,
    order: Optional[Sequence[str]] = None,
) -> VoronoiTessellation:
    tri = SphericalDelaunay.from_sites(_site_items(sites))
    tess = tri.tessellation(radius, order)
    logger.debug(f"[Tessellation] rebuilt {tess.cell_count} cells, {len(tess.triangulation)} triangles")
    return tess


def update_tessellation(
    previous: VoronoiTessellation,
    inserted: Iterable[Tuple[str, Sequence[float]]] = (),
    removed: Iterable[str] = (),
    order: Optional[Sequence[str]] = None,
) -> VoronoiTessellation:
    """
    Apply site removals then insertions to `previous`; `previous` is left untouched.

    The surviving sites are hulled once, then each inserted site is added to
    the live hull.
    """
    removed = set(removed)
    known = set(previous.site_ids)
    for sid in removed:
        if sid not in known:
            raise NotFound(f"Site {sid} is not in the tessellation")
    kept = [(c.site_id, c.generator) for c in previous.cells if c.site_id not in removed]
    tri = SphericalDelaunay.from_sites(kept)
    for sid, pos in inserted:
        tri.insert(sid, pos)
    tess = tri.tessellation(previous.radius, order)
    logger.debug(f"[Tessellation] updated to {tess.cell_count} cells")
    return tess
