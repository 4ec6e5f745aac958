"""
noosphere.events
================

Event payloads appended to, and replayed from, the external event log.

Payloads are frozen dataclasses. They are wrapped in an `EventEnvelope`
carrying the stream position and causation metadata before being appended.
`to_payload` / `from_payload` convert payloads (and the value types they
reference) to JSON-compatible dictionaries tagged with `__type__` / `__enum__`.
"""

from __future__ import annotations
import dataclasses
import importlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import ReplayCorruption, ValidationError
from .ids import EventId, new_event_id

_REGISTRY: Dict[str, type] = {}

# Modules whose value types may appear inside event payloads
_PAYLOAD_MODULES = (
    "noosphere.evidence",
    "noosphere.concept",
    "noosphere.topology",
    "noosphere.tessellation",
    "noosphere.patterns",
)


def register(cls):
    """Class decorator: make a dataclass or Enum reconstructible by `from_payload`."""
    _REGISTRY[cls.__name__] = cls
    return cls


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DomainEvent:
    """Marker base class for event payloads."""

    @property
    def event_type(self) -> str:
        return type(self).__name__


# --- Concept events ---
@register
@dataclass(frozen=True)
class ConceptCreated(DomainEvent):
    concept_id: str
    name: str
    position: Tuple[float, float, float]
    initial_level: Any
    space_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class PositionUpdated(DomainEvent):
    concept_id: str
    from_position: Tuple[float, float, float]
    to_position: Tuple[float, float, float]
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class EvidenceAdded(DomainEvent):
    concept_id: str
    evidence_ref: str
    kind: Any
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class AttentionReceived(DomainEvent):
    concept_id: str
    amount: float
    source: str
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class KnowledgeLevelProgressed(DomainEvent):
    concept_id: str
    from_level: Any
    to_level: Any
    new_confidence: float
    trigger: str = ""
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class RelationshipFormed(DomainEvent):
    concept_id: str
    relationship_id: str
    target_id: str
    kind: Any
    strength: float
    evidence_refs: Tuple[str, ...] = ()
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class RelationshipDissolved(DomainEvent):
    concept_id: str
    relationship_id: str
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class PropertiesUpdated(DomainEvent):
    concept_id: str
    properties: Dict[str, Any]
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class ConceptArchived(DomainEvent):
    concept_id: str
    reason: str = ""
    occurred_at: str = ""


# --- Space / topology events ---
@register
@dataclass(frozen=True)
class SpaceCreated(DomainEvent):
    space_id: str
    name: str
    topology_id: str
    radius: float = 1.0
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class ConceptPlaced(DomainEvent):
    space_id: str
    concept_id: str
    position: Tuple[float, float, float]
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class ConceptRelocated(DomainEvent):
    space_id: str
    concept_id: str
    from_position: Tuple[float, float, float]
    to_position: Tuple[float, float, float]
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class ConceptReleased(DomainEvent):
    space_id: str
    concept_id: str
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class TopologyOverrideSet(DomainEvent):
    space_id: str  # topological space id
    override: Any = None
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class TopologyEvolved(DomainEvent):
    space_id: str  # topological space id
    from_type: Any
    to_type: Any
    trigger: str = ""
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class TessellationComputed(DomainEvent):
    space_id: str
    cell_count: int
    total_area: float
    occurred_at: str = ""


@register
@dataclass(frozen=True)
class PatternsDetected(DomainEvent):
    space_id: str
    patterns: Tuple[Any, ...] = ()
    occurred_at: str = ""


# --- Envelope ---
@dataclass(frozen=True)
class EventEnvelope:
    event_id: EventId
    aggregate_id: str
    version: int
    event: DomainEvent
    correlation_id: str
    causation_id: str
    recorded_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "aggregate_id": self.aggregate_id,
            "version": self.version,
            "event_type": self.event.event_type,
            "payload": to_payload(self.event),
            "correlation_id": self.correlation_id,
            "causation_id": self.causation_id,
            "recorded_at": self.recorded_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventEnvelope":
        return cls(
            event_id=EventId(data["event_id"]),
            aggregate_id=data["aggregate_id"],
            version=int(data["version"]),
            event=from_payload(data["payload"]),
            correlation_id=data["correlation_id"],
            causation_id=data["causation_id"],
            recorded_at=data["recorded_at"],
        )


def wrap(
    aggregate_id: str,
    events: Iterable[DomainEvent],
    start_version: int,
    correlation_id: Optional[str] = None,
    causation_id: Optional[str] = None,
) -> List[EventEnvelope]:
    """
    Wrap a batch of events produced by one command.

    The first event is caused by `causation_id` (or is a root event that
    references itself); later events in the batch are caused by the first.
    """
    envelopes: List[EventEnvelope] = []
    recorded_at = utc_now()
    root: Optional[str] = None
    for offset, event in enumerate(events, start=1):
        event_id = new_event_id()
        if root is None:
            root = event_id
            cause = causation_id or event_id
            correlation_id = correlation_id or event_id
        else:
            cause = root
        envelopes.append(EventEnvelope(
            event_id=event_id,
            aggregate_id=aggregate_id,
            version=start_version + offset,
            event=event,
            correlation_id=correlation_id,
            causation_id=cause,
            recorded_at=recorded_at,
        ))
    return envelopes


def unwrap(history: Iterable[Any], aggregate_id: Optional[str] = None) -> Iterator[DomainEvent]:
    """
    Yield bare events from a history of events or envelopes.

    Envelopes redelivered by an at-least-once log (same event_id) are skipped;
    a gap or reordering in envelope versions is reported as corruption.
    """
    seen = set()
    expected = 1
    for item in history:
        if isinstance(item, EventEnvelope):
            if item.event_id in seen:
                continue
            if item.version != expected:
                raise ReplayCorruption(
                    aggregate_id or item.aggregate_id, item,
                    f"expected version {expected}, got {item.version}",
                )
            seen.add(item.event_id)
            expected += 1
            yield item.event
        else:
            yield item


# --- Serialization ---
def _ensure_registered():
    for module in _PAYLOAD_MODULES:
        importlib.import_module(module)


def to_payload(value: Any) -> Any:
    """Convert an event (or nested value) into JSON-compatible data."""
    if isinstance(value, Enum):
        return {"__enum__": type(value).__name__, "value": value.value}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        data = {"__type__": type(value).__name__}
        for f in dataclasses.fields(value):
            data[f.name] = to_payload(getattr(value, f.name))
        return data
    if isinstance(value, (list, tuple)):
        return [to_payload(v) for v in value]
    if isinstance(value, dict):
        return {str(k): to_payload(v) for k, v in value.items()}
    if hasattr(value, "item"):  # numpy scalars
        return value.item()
    return value


def from_payload(data: Any, plain: bool = False) -> Any:
    """
    Inverse of `to_payload`.

    Lists become tuples when they fill a dataclass field and stay lists
    inside plain mappings such as concept properties.
    """
    if isinstance(data, dict):
        if "__enum__" in data:
            cls = _lookup(data["__enum__"])
            return cls(data["value"])
        if "__type__" in data:
            cls = _lookup(data["__type__"])
            kwargs = {k: from_payload(v) for k, v in data.items() if k != "__type__"}
            return cls(**kwargs)
        return {k: from_payload(v, plain=True) for k, v in data.items()}
    if isinstance(data, list):
        items = [from_payload(v, plain) for v in data]
        return items if plain else tuple(items)
    return data


def _lookup(name: str) -> type:
    if name not in _REGISTRY:
        _ensure_registered()
    try:
        return _REGISTRY[name]
    except KeyError:
        raise ValidationError(f"Unknown payload type: {name}")
