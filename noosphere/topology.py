"""
Topology tracker.

Classifies the shape of a conceptual space purely from its concept count and
an optional explicit override, and derives the Euler characteristic, genus and
orientability of each classification. The `TopologicalSpace` aggregate records
transitions between variants as `TopologyEvolved` events.
"""

from __future__ import annotations
import dataclasses
import logging
import math
from dataclasses import dataclass
from typing import Any, ClassVar, Iterable, Optional, Sequence, Union

from .errors import InvalidStateTransition, NoosphereError, ReplayCorruption, ValidationError
from .events import DomainEvent, TopologyEvolved, TopologyOverrideSet, register, unwrap, utc_now
from .ids import new_topology_id
from .sphere import angular_distance

logger = logging.getLogger(__name__)


@register
@dataclass(frozen=True)
class Undefined:
    kind: ClassVar[str] = "undefined"
    euler_characteristic: ClassVar[int] = 0
    genus: ClassVar[int] = 0
    orientable: ClassVar[bool] = True


@register
@dataclass(frozen=True)
class Point:
    kind: ClassVar[str] = "point"
    euler_characteristic: ClassVar[int] = 1
    genus: ClassVar[int] = 0
    orientable: ClassVar[bool] = True


@register
@dataclass(frozen=True)
class LineSegment:
    length: float = 0.0

    kind: ClassVar[str] = "line_segment"
    euler_characteristic: ClassVar[int] = 1
    genus: ClassVar[int] = 0
    orientable: ClassVar[bool] = True


@register
@dataclass(frozen=True)
class SphericalVoronoi:
    site_count: int = 3
    radius: float = 1.0

    kind: ClassVar[str] = "spherical_voronoi"
    euler_characteristic: ClassVar[int] = 2
    genus: ClassVar[int] = 0
    orientable: ClassVar[bool] = True


@register
@dataclass(frozen=True)
class Toroidal:
    major_radius: float = 2.0
    minor_radius: float = 1.0

    kind: ClassVar[str] = "toroidal"
    euler_characteristic: ClassVar[int] = 0
    genus: ClassVar[int] = 1
    orientable: ClassVar[bool] = True


@register
@dataclass(frozen=True)
class Hyperbolic:
    curvature: float = -1.0

    # Modelled as the closed orientable surface of genus 2: chi = 2 - 2g
    kind: ClassVar[str] = "hyperbolic"
    euler_characteristic: ClassVar[int] = -2
    genus: ClassVar[int] = 2
    orientable: ClassVar[bool] = True


TopologyType = Union[Undefined, Point, LineSegment, SphericalVoronoi, Toroidal, Hyperbolic]
OverrideType = Union[Toroidal, Hyperbolic]

# Variants on which the spherical tessellator can run
TESSELLABLE_KINDS = frozenset({Point.kind, LineSegment.kind, SphericalVoronoi.kind})


def validate_override(override: Optional[Any]) -> Optional[OverrideType]:
    if override is None:
        return None
    if isinstance(override, Toroidal):
        if not (0.0 < override.minor_radius < override.major_radius):
            raise ValidationError(
                f"Torus needs 0 < minor < major, got {override.minor_radius}, {override.major_radius}"
            )
        return override
    if isinstance(override, Hyperbolic):
        if not (math.isfinite(override.curvature) and override.curvature < 0.0):
            raise ValidationError(f"Hyperbolic curvature must be negative, got {override.curvature}")
        return override
    raise ValidationError(f"Only Toroidal or Hyperbolic may override the topology, got {override!r}")


def classify(
    concept_count: int,
    explicit_override: Optional[OverrideType] = None,
    sites: Optional[Sequence[Sequence[float]]] = None,
    radius: float = 1.0,
) -> TopologyType:
    """
    Total, deterministic classification.

    0 -> Undefined, 1 -> Point, 2 -> LineSegment, >=3 -> the override if any,
    otherwise SphericalVoronoi.
    """
    if concept_count < 0:
        raise ValidationError(f"Concept count must be non-negative, got {concept_count}")
    if concept_count == 0:
        return Undefined()
    if concept_count == 1:
        return Point()
    if concept_count == 2:
        length = 0.0
        if sites is not None and len(sites) == 2:
            length = radius * angular_distance(sites[0], sites[1])
        return LineSegment(length=length)
    override = validate_override(explicit_override)
    if override is not None:
        return override
    return SphericalVoronoi(site_count=concept_count, radius=radius)


@dataclass(frozen=True)
class TopologicalSpace:
    topology_id: str
    name: str
    topology_type: Any = Undefined()
    override: Optional[Any] = None
    version: int = 0

    @classmethod
    def empty(cls, name: str, topology_id: Optional[str] = None) -> "TopologicalSpace":
        return cls(topology_id=topology_id or new_topology_id(), name=name)

    @property
    def kind(self) -> str:
        return self.topology_type.kind

    @property
    def euler_characteristic(self) -> int:
        return self.topology_type.euler_characteristic

    @property
    def genus(self) -> int:
        return self.topology_type.genus

    @property
    def orientable(self) -> bool:
        return self.topology_type.orientable

    @property
    def tessellable(self) -> bool:
        return self.kind in TESSELLABLE_KINDS

    # --- Commands ---
    def observe(self, sites: Sequence[Sequence[float]], radius: float = 1.0, trigger: str = ""):
        """
        Re-classify for the current site set.

        A change of variant emits TopologyEvolved; a same-variant parameter
        change (site count, segment length) is refreshed silently.
        """
        new_type = classify(len(sites), self.override, sites, radius)
        if new_type.kind == self.kind:
            return dataclasses.replace(self, topology_type=new_type), []
        event = TopologyEvolved(
            space_id=self.topology_id,
            from_type=self.topology_type,
            to_type=new_type,
            trigger=trigger,
            occurred_at=utc_now(),
        )
        logger.info(f"[Topology] {self.name}: {self.kind} -> {new_type.kind} ({trigger})")
        return self.apply(event), [event]

    def set_override(self, override: Optional[Any]):
        override = validate_override(override)
        event = TopologyOverrideSet(space_id=self.topology_id, override=override, occurred_at=utc_now())
        return self.apply(event), [event]

    def refreshed(self, sites: Sequence[Sequence[float]], radius: float = 1.0) -> "TopologicalSpace":
        """Same-variant parameter refresh used while replaying membership events."""
        new_type = classify(len(sites), self.override, sites, radius)
        if new_type.kind != self.kind:
            return self
        return dataclasses.replace(self, topology_type=new_type)

    # --- Event application ---
    def apply(self, event: DomainEvent) -> "TopologicalSpace":
        if getattr(event, "space_id", None) != self.topology_id:
            raise ValidationError(f"Event for {getattr(event, 'space_id', None)} applied to {self.topology_id}")
        if isinstance(event, TopologyEvolved):
            if event.from_type.kind != self.kind:
                raise InvalidStateTransition(
                    f"Transition recorded from {event.from_type.kind} but topology is {self.kind}"
                )
            if event.to_type.kind == self.kind:
                raise InvalidStateTransition(f"Transition {self.kind} -> {self.kind} is not a transition")
            return dataclasses.replace(self, topology_type=event.to_type, version=self.version + 1)
        if isinstance(event, TopologyOverrideSet):
            return dataclasses.replace(
                self, override=validate_override(event.override), version=self.version + 1
            )
        raise ValidationError(f"Topological space cannot apply {type(event).__name__}")

    @classmethod
    def replay(cls, topology_id: str, name: str, history: Iterable[Any]) -> "TopologicalSpace":
        state = cls.empty(name, topology_id)
        for event in unwrap(history, topology_id):
            try:
                state = state.apply(event)
            except NoosphereError as exc:
                raise ReplayCorruption(topology_id, event, str(exc)) from exc
        return state
