"""
Emergent pattern detection over a Voronoi tessellation.

All detectors work on the cell adjacency graph, held as a `networkx.Graph`:

- Clusters: connected components of the graph (optionally only over short
  edges).
- Voids: cells whose area is far above the mean.
- Bridges: minimum vertex cut between two clusters.
- Spirals: cluster centroids whose height along some axis grows linearly with
  their azimuth about it.

Patterns are derived values; they are recomputed from scratch for every
tessellation and never mutated.
"""

from __future__ import annotations
import logging
import math
from dataclasses import dataclass
from typing import Any, ClassVar, Iterable, List, Optional, Sequence, Set, Tuple

import networkx as nx
import numpy as np

from .config import Config
from .errors import ValidationError
from .events import register
from .sphere import FULL_SPHERE, Vec3, angular_distance, as_vec3, cap_radius, generate

logger = logging.getLogger(__name__)

_INF = float("inf")


@register
@dataclass(frozen=True)
class Cluster:
    member_ids: Tuple[str, ...]
    centroid: Vec3
    density: float
    stability: float

    kind: ClassVar[str] = "cluster"


@register
@dataclass(frozen=True)
class ConceptualVoid:
    site_id: str
    center: Vec3
    radius: float
    surrounding_ids: Tuple[str, ...]

    kind: ClassVar[str] = "void"


@register
@dataclass(frozen=True)
class BridgePattern:
    source_cluster: int  # index into the cluster list of the same detection
    target_cluster: int
    bridge_ids: Tuple[str, ...]
    strength: float
    direct_adjacencies: int = 0

    kind: ClassVar[str] = "bridge"


@register
@dataclass(frozen=True)
class SpiralArrangement:
    member_ids: Tuple[str, ...]
    axis: Vec3
    pitch: float
    rotation: float
    residual: float

    kind: ClassVar[str] = "spiral"


def _cells_of(cells: Any) -> List[Any]:
    # Accept a VoronoiTessellation or any sequence of cells
    return list(getattr(cells, "cells", cells))


def _edges(cells: Sequence[Any]) -> List[Tuple[str, str]]:
    known = {c.site_id for c in cells}
    seen: Set[Tuple[str, str]] = set()
    ordered = []
    for c in cells:
        for n in c.neighbor_ids:
            if n not in known:
                continue
            key = (c.site_id, n) if c.site_id < n else (n, c.site_id)
            if key not in seen:
                seen.add(key)
                ordered.append(key)
    return ordered


def adjacency_graph(cells: Any) -> nx.Graph:
    """Undirected Voronoi adjacency graph; nodes keep the cell order and carry generator and area."""
    cells = _cells_of(cells)
    graph = nx.Graph()
    for c in cells:
        graph.add_node(c.site_id, generator=c.generator, area=c.area)
    graph.add_edges_from(_edges(cells))
    return graph


def _basis(axis: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    helper = np.array([1.0, 0.0, 0.0]) if abs(axis[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
    e1 = np.cross(axis, helper)
    e1 /= np.linalg.norm(e1)
    return e1, np.cross(axis, e1)


@dataclass
class PatternDetector:
    """
    Detects clusters, voids, bridges and spirals.

    Clusters grow over every adjacency edge. With linked_only, only edges no
    longer than mean edge length * (1 + sensitivity) link two cells.
    sensitivity also lowers the area ratio that marks a void
    (mean area * (1 + 1 / sensitivity)).
    """
    sensitivity: Optional[float] = None
    min_cluster_size: Optional[int] = None
    min_stability: Optional[float] = None
    linked_only: Optional[bool] = None

    def __post_init__(self):
        cfg = Config.patterns
        if self.sensitivity is None:
            self.sensitivity = cfg.SENSITIVITY
        if self.min_cluster_size is None:
            self.min_cluster_size = cfg.MIN_CLUSTER_SIZE
        if self.min_stability is None:
            self.min_stability = cfg.MIN_STABILITY
        if self.linked_only is None:
            self.linked_only = cfg.LINKED_ONLY

        if not math.isfinite(self.sensitivity) or self.sensitivity <= 0:
            raise ValidationError(f"Sensitivity must be positive, got {self.sensitivity}")
        if int(self.min_cluster_size) < 1:
            raise ValidationError(f"min_cluster_size must be at least 1, got {self.min_cluster_size}")
        if not (0.0 <= self.min_stability <= 1.0):
            raise ValidationError(f"min_stability must be in [0, 1], got {self.min_stability}")
        self.min_cluster_size = int(self.min_cluster_size)

    def detect(self, cells: Any) -> List[Any]:
        cells = _cells_of(cells)
        clusters = self.detect_clusters(cells)
        voids = self.detect_voids(cells)
        bridges = self.detect_bridges(cells, clusters)
        spirals = self.detect_spirals(clusters)
        logger.debug(
            f"[Patterns] {len(cells)} cells: {len(clusters)} clusters, {len(voids)} voids, "
            f"{len(bridges)} bridges, {len(spirals)} spirals"
        )
        return [*clusters, *voids, *bridges, *spirals]

    # --- Clusters ---
    def detect_clusters(self, cells: Any) -> List[Cluster]:
        cells = _cells_of(cells)
        if not cells:
            return []
        by_id = {c.site_id: c for c in cells}
        rank = {c.site_id: i for i, c in enumerate(cells)}
        graph = adjacency_graph(cells)
        if self.linked_only:
            graph = self._linked(graph)

        clusters = []
        for component in nx.connected_components(graph):
            if len(component) < self.min_cluster_size:
                continue
            cluster = self._cluster([by_id[sid] for sid in sorted(component, key=rank.__getitem__)])
            if cluster.stability >= self.min_stability:
                clusters.append(cluster)
        return clusters

    def _linked(self, graph: nx.Graph) -> nx.Graph:
        """Keep only edges no longer than the mean generator distance * (1 + sensitivity)."""
        for a, b in graph.edges:
            graph.edges[a, b]["length"] = angular_distance(
                graph.nodes[a]["generator"], graph.nodes[b]["generator"]
            )
        linked = nx.Graph()
        linked.add_nodes_from(graph.nodes(data=True))
        if graph.number_of_edges() == 0:
            return linked
        lengths = [length for _, _, length in graph.edges.data("length")]
        threshold = float(np.mean(lengths)) * (1.0 + self.sensitivity) + Config.core.TOLERANCE
        linked.add_edges_from(
            (a, b) for a, b, length in graph.edges.data("length") if length <= threshold
        )
        return linked

    def _cluster(self, members: List[Any]) -> Cluster:
        ids = {m.site_id for m in members}
        areas = np.array([m.area for m in members], dtype=np.float64)
        mean = np.mean(np.array([m.generator for m in members], dtype=np.float64), axis=0)
        norm = float(np.linalg.norm(mean))
        if norm > Config.core.TOLERANCE:
            centroid = as_vec3(mean / norm)
        else:
            # Balanced members (e.g. a regular polyhedron) have no mean direction
            centroid = as_vec3(members[int(np.argmin(areas))].generator)
        interior = sum(1 for m in members if all(n in ids for n in m.neighbor_ids))
        mean_area = float(np.mean(areas))
        return Cluster(
            member_ids=tuple(m.site_id for m in members),
            centroid=centroid,
            density=1.0 / mean_area if mean_area > 0 else _INF,
            stability=interior / len(members),
        )

    # --- Voids ---
    def detect_voids(self, cells: Any) -> List[ConceptualVoid]:
        cells = _cells_of(cells)
        if len(cells) < 2:
            return []
        areas = np.array([c.area for c in cells], dtype=np.float64)
        total = float(np.sum(areas))
        radius = math.sqrt(total / FULL_SPHERE)
        limit = float(np.mean(areas)) * (1.0 + 1.0 / self.sensitivity)
        voids = []
        for c in cells:
            if c.area > limit:
                voids.append(ConceptualVoid(
                    site_id=c.site_id,
                    center=as_vec3(c.generator),
                    radius=cap_radius(c.area, radius),
                    surrounding_ids=tuple(c.neighbor_ids),
                ))
        return voids

    # --- Bridges ---
    def detect_bridges(self, cells: Any, clusters: Sequence[Cluster]) -> List[BridgePattern]:
        graph = adjacency_graph(cells)
        bridges = []
        for i in range(len(clusters)):
            for j in range(i + 1, len(clusters)):
                source = set(clusters[i].member_ids)
                target = set(clusters[j].member_ids)
                if source & target:
                    continue
                direct = sum(
                    1 for a, b in graph.edges
                    if (a in source and b in target) or (a in target and b in source)
                )
                cut = minimum_vertex_cut(graph, source, target)
                if not cut and direct == 0:
                    continue
                bridges.append(BridgePattern(
                    source_cluster=i,
                    target_cluster=j,
                    bridge_ids=tuple(cut),
                    strength=direct / min(len(source), len(target)),
                    direct_adjacencies=direct,
                ))
        return bridges

    # --- Spirals ---
    def detect_spirals(self, clusters: Sequence[Cluster]) -> List[SpiralArrangement]:
        cfg = Config.patterns
        if len(clusters) < cfg.SPIRAL_MIN_CLUSTERS:
            return []
        fit = self.fit_spiral(
            [c.member_ids for c in clusters],
            [c.centroid for c in clusters],
        )
        return [fit] if fit is not None else []

    def fit_spiral(
        self,
        member_groups: Sequence[Iterable[str]],
        points: Sequence[Sequence[float]],
    ) -> Optional[SpiralArrangement]:
        """
        Best helical axis through `points`, or None if no axis fits well enough.

        Candidate axes are the principal axes of the points plus a Fibonacci
        grid; the best few seed a pattern search on the sphere of axes.
        """
        cfg = Config.patterns
        pts = np.asarray(points, dtype=np.float64)
        if len(pts) < 3:
            return None

        centered = pts - pts.mean(axis=0)
        _, _, vt = np.linalg.svd(centered, full_matrices=False)
        candidates = [np.asarray(v, dtype=np.float64) for v in vt]
        candidates += [np.asarray(g) for g in generate(cfg.SPIRAL_GRID_SIZE)]
        scored = sorted((self._spiral_residual(pts, a), k) for k, a in enumerate(candidates))
        best_axis, best_res = None, _INF
        for _, k in scored[:cfg.SPIRAL_STARTS]:
            axis, res = self._refine_axis(pts, candidates[k])
            if res < best_res:
                best_axis, best_res = axis, res
        if best_axis is None or not math.isfinite(best_res):
            return None

        order, heights, phi, slope, residual = self._helix(pts, best_axis)
        rotation = float(phi[-1] - phi[0])
        if residual > cfg.SPIRAL_MAX_RESIDUAL or abs(rotation) < cfg.SPIRAL_MIN_ROTATION:
            return None
        members: List[str] = []
        for idx in order:
            members.extend(member_groups[idx])
        return SpiralArrangement(
            member_ids=tuple(members),
            axis=as_vec3(best_axis),
            pitch=2.0 * math.pi * slope,
            rotation=rotation,
            residual=residual,
        )

    def _refine_axis(self, pts: np.ndarray, axis: np.ndarray) -> Tuple[np.ndarray, float]:
        axis = axis / np.linalg.norm(axis)
        best = self._spiral_residual(pts, axis)
        step = 0.2
        iterations = 0
        while step > 1e-6 and iterations < 500:
            iterations += 1
            e1, e2 = _basis(axis)
            improved = False
            for direction in (e1, -e1, e2, -e2):
                trial = axis + step * direction
                trial /= np.linalg.norm(trial)
                res = self._spiral_residual(pts, trial)
                if res < best:
                    axis, best, improved = trial, res, True
                    break
            if not improved:
                step /= 2.0
        return axis, best

    def _spiral_residual(self, pts: np.ndarray, axis: np.ndarray) -> float:
        return self._helix(pts, axis)[4]

    @staticmethod
    def _helix(pts: np.ndarray, axis: np.ndarray):
        """Order by height along `axis` and fit height = a + b * unwrapped azimuth."""
        axis = axis / np.linalg.norm(axis)
        e1, e2 = _basis(axis)
        heights = pts @ axis
        order = np.argsort(heights, kind="stable")
        heights = heights[order]
        phi = np.unwrap(np.arctan2(pts[order] @ e2, pts[order] @ e1))
        extent = float(np.ptp(heights))
        if extent <= Config.core.TOLERANCE or float(np.ptp(phi)) <= Config.core.TOLERANCE:
            return order, heights, phi, 0.0, _INF
        slope, intercept = np.polyfit(phi, heights, 1)
        rms = float(np.sqrt(np.mean((heights - (intercept + slope * phi)) ** 2)))
        return order, heights, phi, float(slope), rms / extent


def minimum_vertex_cut(graph: nx.Graph, source: Set[str], target: Set[str]) -> List[str]:
    """
    Smallest set of cells outside `source` and `target` whose removal leaves no
    path between them, in graph node order. Direct source/target adjacencies
    are not cuttable and are ignored.

    Each side is contracted to a single node and networkx computes the
    minimum s-t node cut between the two.
    """
    if not source or not target:
        return []
    src, dst = ("source",), ("target",)
    mapping = {sid: src for sid in source if sid in graph}
    mapping.update({sid: dst for sid in target if sid in graph})
    contracted = nx.relabel_nodes(graph, mapping, copy=True)
    if src not in contracted or dst not in contracted:
        return []
    contracted.remove_edges_from(list(nx.selfloop_edges(contracted)))
    if contracted.has_edge(src, dst):
        contracted.remove_edge(src, dst)
    if not nx.has_path(contracted, src, dst):
        return []
    cut = nx.minimum_node_cut(contracted, src, dst)
    rank = {sid: i for i, sid in enumerate(graph.nodes)}
    return sorted(cut, key=rank.__getitem__)


def detect(
    cells: Any,
    sensitivity: Optional[float] = None,
    min_cluster_size: Optional[int] = None,
    min_stability: Optional[float] = None,
    linked_only: Optional[bool] = None,
) -> List[Any]:
    return PatternDetector(sensitivity, min_cluster_size, min_stability, linked_only).detect(cells)
