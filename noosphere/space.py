"""
ConceptualSpace aggregate.

Owns the ordered set of concept sites on one sphere, its topological
classification, and the derived tessellation and patterns. Every membership
change settles the space: the topology is re-classified, the tessellation is
recomputed (incrementally for large spaces) and patterns are re-detected, each
step recorded as an event in the space's stream.
"""

from __future__ import annotations
import dataclasses
import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from .config import Config
from .errors import InvalidStateTransition, NoosphereError, NotFound, ReplayCorruption, ValidationError
from .events import (
    ConceptPlaced,
    ConceptRelocated,
    ConceptReleased,
    DomainEvent,
    PatternsDetected,
    SpaceCreated,
    TessellationComputed,
    TopologyEvolved,
    TopologyOverrideSet,
    unwrap,
    utc_now,
)
from .ids import new_space_id, new_topology_id
from .index import SiteIndex
from .patterns import PatternDetector
from .sphere import UnitSphere, Vec3, as_vec3, normalize
from .tessellation import VoronoiTessellation, build_tessellation, update_tessellation
from .topology import TopologicalSpace, validate_override

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConceptualSpace:
    space_id: str
    name: str
    topology: TopologicalSpace
    radius: float = 1.0
    sites: Tuple[Tuple[str, Vec3], ...] = ()
    tessellation: Optional[VoronoiTessellation] = None
    patterns: Tuple[Any, ...] = ()
    version: int = 0
    created_at: str = ""
    updated_at: str = ""

    # --- Queries ---
    @property
    def site_ids(self) -> Tuple[str, ...]:
        return tuple(sid for sid, _ in self.sites)

    @property
    def concept_count(self) -> int:
        return len(self.sites)

    @property
    def sphere(self) -> UnitSphere:
        return UnitSphere(self.radius)

    @property
    def euler_characteristic(self) -> int:
        return self.topology.euler_characteristic

    def __contains__(self, concept_id: str) -> bool:
        return any(sid == concept_id for sid, _ in self.sites)

    def position_of(self, concept_id: str) -> Vec3:
        for sid, pos in self.sites:
            if sid == concept_id:
                return pos
        raise NotFound(f"Concept {concept_id} is not placed in space {self.space_id}")

    def nearest_concepts(self, position: Sequence[float], k: int = 5) -> List[Tuple[str, float]]:
        """The `k` closest concepts as (concept_id, geodesic distance), closest first."""
        if k <= 0 or not self.sites:
            return []
        query = normalize(position)
        index = SiteIndex(self.sites)
        candidates = index.search(query, top_k=min(len(self.sites), 2 * k))
        rank = {sid: i for i, sid in enumerate(self.site_ids)}
        scored = [
            (sid, self.sphere.distance(query, self.position_of(sid)))
            for sid, _ in candidates
        ]
        scored.sort(key=lambda item: (item[1], rank[item[0]]))
        return scored[:k]

    # --- Commands ---
    @classmethod
    def create(
        cls,
        name: str,
        radius: Optional[float] = None,
        override: Optional[Any] = None,
        space_id: Optional[str] = None,
    ) -> Tuple["ConceptualSpace", List[DomainEvent]]:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Space name must be a non-empty string")
        radius = UnitSphere(Config.geometry.SPHERE_RADIUS if radius is None else float(radius)).radius
        override = validate_override(override)

        created = SpaceCreated(
            space_id=space_id or new_space_id(),
            name=name.strip(),
            topology_id=new_topology_id(),
            radius=radius,
            occurred_at=utc_now(),
        )
        state = cls._from_created(created)
        events: List[DomainEvent] = [created]
        if override is not None:
            state, more = state.set_topology_override(override)
            events.extend(more)
        return state, events

    def place_concept(
        self,
        concept_id: str,
        position: Sequence[float],
        detector: Optional[PatternDetector] = None,
    ):
        if concept_id in self:
            raise InvalidStateTransition(f"Concept {concept_id} is already in space {self.space_id}")
        unit = as_vec3(normalize(position))
        event = ConceptPlaced(
            space_id=self.space_id, concept_id=concept_id, position=unit, occurred_at=utc_now()
        )
        state = self.apply(event)
        return state._settle(
            [event], f"placed {concept_id}", detector,
            previous=self.tessellation, inserted=[(concept_id, unit)],
        )

    def relocate_concept(
        self,
        concept_id: str,
        position: Sequence[float],
        detector: Optional[PatternDetector] = None,
    ):
        current = self.position_of(concept_id)
        unit = as_vec3(normalize(position))
        event = ConceptRelocated(
            space_id=self.space_id,
            concept_id=concept_id,
            from_position=current,
            to_position=unit,
            occurred_at=utc_now(),
        )
        state = self.apply(event)
        return state._settle(
            [event], f"relocated {concept_id}", detector,
            previous=self.tessellation, inserted=[(concept_id, unit)], removed=[concept_id],
        )

    def release_concept(self, concept_id: str, detector: Optional[PatternDetector] = None):
        self.position_of(concept_id)  # raises NotFound
        event = ConceptReleased(space_id=self.space_id, concept_id=concept_id, occurred_at=utc_now())
        state = self.apply(event)
        return state._settle(
            [event], f"released {concept_id}", detector,
            previous=self.tessellation, removed=[concept_id],
        )

    def set_topology_override(self, override: Optional[Any], detector: Optional[PatternDetector] = None):
        _, events = self.topology.set_override(override)
        state = self
        for event in events:
            state = state.apply(event)
        return state._settle(events, "override", detector)

    def refresh(self, detector: Optional[PatternDetector] = None):
        """Recompute tessellation and patterns from scratch without changing membership."""
        return self._settle([], "refresh", detector)

    def _settle(
        self,
        events: List[DomainEvent],
        trigger: str,
        detector: Optional[PatternDetector],
        previous: Optional[VoronoiTessellation] = None,
        inserted: Sequence[Tuple[str, Vec3]] = (),
        removed: Sequence[str] = (),
    ):
        state = self
        events = list(events)
        positions = [pos for _, pos in state.sites]

        _, topo_events = state.topology.observe(positions, state.radius, trigger)
        for event in topo_events:
            state = state.apply(event)
        events.extend(topo_events)

        if not state.sites:
            return state, events
        if not state.topology.tessellable:
            logger.warning(
                f"[Space] {state.name}: {state.topology.kind} manifold, skipping tessellation"
            )
            return state, events

        tess = state._compute_tessellation(previous, inserted, removed)
        computed = TessellationComputed(
            space_id=state.space_id,
            cell_count=tess.cell_count,
            total_area=tess.total_area,
            occurred_at=utc_now(),
        )
        state = state.apply(computed, tessellation=tess)
        events.append(computed)

        detector = detector or PatternDetector()
        detected = PatternsDetected(
            space_id=state.space_id,
            patterns=tuple(detector.detect(tess)),
            occurred_at=utc_now(),
        )
        state = state.apply(detected)
        events.append(detected)
        logger.info(
            f"[Space] {state.name}: {tess.cell_count} cells, {len(detected.patterns)} patterns ({trigger})"
        )
        return state, events

    def _compute_tessellation(
        self,
        previous: Optional[VoronoiTessellation],
        inserted: Sequence[Tuple[str, Vec3]],
        removed: Sequence[str],
    ) -> VoronoiTessellation:
        incremental = (
            previous is not None
            and len(self.sites) >= Config.geometry.INCREMENTAL_THRESHOLD
            and math.isclose(previous.radius, self.radius)
        )
        if incremental:
            return update_tessellation(previous, inserted, removed, order=self.site_ids)
        return build_tessellation(self.sites, self.radius, order=self.site_ids)

    # --- Event application ---
    @classmethod
    def _from_created(cls, event: SpaceCreated) -> "ConceptualSpace":
        return cls(
            space_id=event.space_id,
            name=event.name,
            topology=TopologicalSpace.empty(event.name, event.topology_id),
            radius=event.radius,
            version=1,
            created_at=event.occurred_at,
            updated_at=event.occurred_at,
        )

    def apply(
        self,
        event: DomainEvent,
        tessellation: Optional[VoronoiTessellation] = None,
        rebuild: bool = True,
    ) -> "ConceptualSpace":
        """
        Fold one event into a new space value.

        `tessellation` lets the command path hand over the tessellation it has
        just computed. Otherwise a TessellationComputed is recomputed and
        checked against the event, unless `rebuild` is off (replay defers it).
        """
        if isinstance(event, SpaceCreated):
            raise InvalidStateTransition(f"Space {self.space_id} already exists")
        if isinstance(event, (TopologyEvolved, TopologyOverrideSet)):
            topology = self.topology.apply(event)
            changes = {"topology": topology}
            if not topology.tessellable:
                changes.update(tessellation=None, patterns=())
            return self._bump(event, **changes)

        if getattr(event, "space_id", None) != self.space_id:
            raise ValidationError(f"Event for {getattr(event, 'space_id', None)} applied to {self.space_id}")

        if isinstance(event, ConceptPlaced):
            if event.concept_id in self:
                raise InvalidStateTransition(f"Concept {event.concept_id} is already placed")
            return self._with_sites(event, self.sites + ((event.concept_id, as_vec3(event.position)),))
        if isinstance(event, ConceptRelocated):
            self.position_of(event.concept_id)
            sites = tuple(
                (sid, as_vec3(event.to_position) if sid == event.concept_id else pos)
                for sid, pos in self.sites
            )
            return self._with_sites(event, sites)
        if isinstance(event, ConceptReleased):
            self.position_of(event.concept_id)
            return self._with_sites(event, tuple(s for s in self.sites if s[0] != event.concept_id))
        if isinstance(event, TessellationComputed):
            if tessellation is None:
                if not rebuild:
                    return self._bump(event)
                tessellation = build_tessellation(self.sites, self.radius, order=self.site_ids)
            self._verify(tessellation, event)
            return self._bump(event, tessellation=tessellation)
        if isinstance(event, PatternsDetected):
            return self._bump(event, patterns=tuple(event.patterns))
        raise ValidationError(f"Conceptual space cannot apply {type(event).__name__}")

    def _with_sites(self, event: DomainEvent, sites: Tuple[Tuple[str, Vec3], ...]) -> "ConceptualSpace":
        return self._bump(
            event,
            sites=sites,
            topology=self.topology.refreshed([pos for _, pos in sites], self.radius),
            tessellation=None,
            patterns=(),
        )

    def _bump(self, event: DomainEvent, **changes) -> "ConceptualSpace":
        return dataclasses.replace(
            self, version=self.version + 1, updated_at=event.occurred_at, **changes
        )

    def _verify(self, tess: VoronoiTessellation, event: TessellationComputed):
        if tess.cell_count != event.cell_count:
            raise InvalidStateTransition(
                f"Recorded {event.cell_count} cells but tessellation has {tess.cell_count}"
            )
        surface = self.sphere.surface_area
        if abs(tess.total_area - event.total_area) > Config.geometry.AREA_RTOL * surface:
            raise InvalidStateTransition(
                f"Recorded total area {event.total_area} but tessellation has {tess.total_area}"
            )

    # --- Replay ---
    @classmethod
    def replay(cls, history: Iterable[Any], space_id: Optional[str] = None) -> "ConceptualSpace":
        """
        Rebuild a space from its history.

        Recorded tessellations are not recomputed one by one: the tessellation
        is rebuilt once, after the last event, and checked against the latest
        TessellationComputed that still describes the final membership.
        """
        state: Optional[ConceptualSpace] = None
        pending: Optional[TessellationComputed] = None
        event = None
        try:
            for event in unwrap(history, space_id):
                if state is None:
                    if not isinstance(event, SpaceCreated):
                        raise InvalidStateTransition(
                            f"History starts with {type(event).__name__}, not SpaceCreated"
                        )
                    state = cls._from_created(event)
                    continue
                state = state.apply(event, rebuild=False)
                if isinstance(event, TessellationComputed):
                    pending = event
                elif isinstance(event, (ConceptPlaced, ConceptRelocated, ConceptReleased)):
                    pending = None
                elif not state.topology.tessellable:
                    pending = None
            if state is not None and pending is not None:
                event = pending
                tess = build_tessellation(state.sites, state.radius, order=state.site_ids)
                state._verify(tess, pending)
                state = dataclasses.replace(state, tessellation=tess)
        except ReplayCorruption:
            raise
        except NoosphereError as exc:
            raise ReplayCorruption(space_id or getattr(event, "space_id", None), event, str(exc)) from exc
        if state is None:
            raise NotFound(f"No history for space {space_id}")
        return state
