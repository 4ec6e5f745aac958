# noosphere/concept.py
"""
Concept aggregate: the epistemic unit placed on the sphere.

A Concept is an immutable value. Commands validate their input, build exactly
one event and return `(new_concept, [event])`; the new value is obtained by
applying that event, so command handling and replay share one code path.
"""

from __future__ import annotations
import dataclasses
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import (
    InvalidStateTransition,
    NoosphereError,
    NotFound,
    ReplayCorruption,
    ValidationError,
)
from .events import (
    AttentionReceived,
    ConceptArchived,
    ConceptCreated,
    DomainEvent,
    EvidenceAdded,
    KnowledgeLevelProgressed,
    PositionUpdated,
    PropertiesUpdated,
    RelationshipDissolved,
    RelationshipFormed,
    register,
    unwrap,
    utc_now,
)
from .evidence import (
    CONFIDENCE_FLOORS,
    EvidenceKind,
    KnowledgeLevel,
    check_transition,
    confidence,
    eligible_targets,
)
from .ids import new_concept_id, new_relationship_id
from .sphere import Vec3, as_vec3, normalize

# Small slack when comparing a recorded confidence with the recomputed one
CONFIDENCE_EPSILON = 1e-12


@register
class RelationshipKind(Enum):
    SYNONYM = "synonym"
    PARENT = "parent"
    CHILD = "child"
    CONFLICTS_WITH = "conflicts_with"
    RELATED_TO = "related_to"
    DEPENDS_ON = "depends_on"


@register
@dataclass(frozen=True)
class EvidenceRecord:
    evidence_ref: str
    kind: EvidenceKind


@register
@dataclass(frozen=True)
class ConceptRelationship:
    relationship_id: str
    source_id: str
    target_id: str
    kind: RelationshipKind
    strength: float
    evidence_refs: Tuple[str, ...] = ()


def _validated_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Concept name must be a non-empty string")
    return name.strip()


@dataclass(frozen=True)
class Concept:
    concept_id: str
    name: str
    position: Vec3
    space_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)
    knowledge_level: KnowledgeLevel = KnowledgeLevel.UNKNOWN
    confidence: float = 0.0
    evidence: Tuple[EvidenceRecord, ...] = ()
    attention: float = 0.0
    relationships: Tuple[ConceptRelationship, ...] = ()
    archived: bool = False
    version: int = 0
    created_at: str = ""
    updated_at: str = ""

    # --- Derived views ---
    @property
    def evidence_refs(self) -> Tuple[str, ...]:
        return tuple(rec.evidence_ref for rec in self.evidence)

    def evidence_by_kind(self) -> Dict[EvidenceKind, int]:
        counts: Dict[EvidenceKind, int] = {}
        for rec in self.evidence:
            counts[rec.kind] = counts.get(rec.kind, 0) + 1
        return counts

    def relationship(self, relationship_id: str) -> ConceptRelationship:
        for rel in self.relationships:
            if rel.relationship_id == relationship_id:
                return rel
        raise NotFound(f"Relationship {relationship_id} not found on {self.concept_id}")

    def eligible_levels(self) -> List[KnowledgeLevel]:
        return eligible_targets(self.knowledge_level, self.confidence)

    # --- Commands ---
    @classmethod
    def create(
        cls,
        name: str,
        position: Sequence[float],
        initial_level: KnowledgeLevel = KnowledgeLevel.UNKNOWN,
        space_id: Optional[str] = None,
        properties: Optional[Mapping[str, Any]] = None,
        concept_id: Optional[str] = None,
    ) -> Tuple["Concept", List[DomainEvent]]:
        name = _validated_name(name)
        unit = as_vec3(normalize(position))
        initial_level = KnowledgeLevel(initial_level)
        if CONFIDENCE_FLOORS[initial_level] > 0.0:
            raise InvalidStateTransition(
                f"A new concept has no evidence and cannot start at {initial_level.value}"
            )
        event = ConceptCreated(
            concept_id=concept_id or new_concept_id(),
            name=name,
            position=unit,
            initial_level=initial_level,
            space_id=space_id,
            properties=dict(properties or {}),
            occurred_at=utc_now(),
        )
        return cls._from_created(event), [event]

    def reposition(self, new_position: Sequence[float]) -> Tuple["Concept", List[DomainEvent]]:
        self._ensure_active()
        unit = as_vec3(normalize(new_position))
        event = PositionUpdated(
            concept_id=self.concept_id,
            from_position=self.position,
            to_position=unit,
            occurred_at=utc_now(),
        )
        return self.apply(event), [event]

    def add_evidence(self, evidence_ref: str, kind: EvidenceKind = EvidenceKind.OBSERVATION):
        self._ensure_active()
        if not evidence_ref:
            raise ValidationError("Evidence reference must be non-empty")
        event = EvidenceAdded(
            concept_id=self.concept_id,
            evidence_ref=evidence_ref,
            kind=EvidenceKind(kind),
            occurred_at=utc_now(),
        )
        return self.apply(event), [event]

    def receive_attention(self, amount: float, source: str = ""):
        self._ensure_active()
        amount = float(amount)
        if not math.isfinite(amount) or amount < 0:
            raise ValidationError(f"Attention amount must be finite and non-negative, got {amount}")
        event = AttentionReceived(
            concept_id=self.concept_id,
            amount=amount,
            source=source,
            occurred_at=utc_now(),
        )
        return self.apply(event), [event]

    def progress_knowledge(self, target_level: KnowledgeLevel, trigger: str = ""):
        self._ensure_active()
        target_level = KnowledgeLevel(target_level)
        fresh = confidence(len(self.evidence), self.attention)
        check_transition(self.knowledge_level, target_level, fresh)
        event = KnowledgeLevelProgressed(
            concept_id=self.concept_id,
            from_level=self.knowledge_level,
            to_level=target_level,
            new_confidence=fresh,
            trigger=trigger,
            occurred_at=utc_now(),
        )
        return self.apply(event), [event]

    def form_relationship(
        self,
        target_id: str,
        kind: RelationshipKind,
        strength: float,
        evidence_refs: Iterable[str] = (),
        relationship_id: Optional[str] = None,
    ):
        self._ensure_active()
        if not target_id:
            raise ValidationError("Relationship target must be non-empty")
        if target_id == self.concept_id:
            raise ValidationError("A concept cannot relate to itself")
        strength = float(strength)
        if not (0.0 <= strength <= 1.0):
            raise ValidationError(f"Relationship strength must be in [0, 1], got {strength}")
        event = RelationshipFormed(
            concept_id=self.concept_id,
            relationship_id=relationship_id or new_relationship_id(),
            target_id=target_id,
            kind=RelationshipKind(kind),
            strength=strength,
            evidence_refs=tuple(evidence_refs),
            occurred_at=utc_now(),
        )
        return self.apply(event), [event]

    def dissolve_relationship(self, relationship_id: str):
        self._ensure_active()
        self.relationship(relationship_id)  # raises NotFound
        event = RelationshipDissolved(
            concept_id=self.concept_id,
            relationship_id=relationship_id,
            occurred_at=utc_now(),
        )
        return self.apply(event), [event]

    def update_properties(self, properties: Mapping[str, Any]):
        self._ensure_active()
        event = PropertiesUpdated(
            concept_id=self.concept_id,
            properties=dict(properties),
            occurred_at=utc_now(),
        )
        return self.apply(event), [event]

    def archive(self, reason: str = ""):
        self._ensure_active()
        event = ConceptArchived(concept_id=self.concept_id, reason=reason, occurred_at=utc_now())
        return self.apply(event), [event]

    def _ensure_active(self):
        if self.archived:
            raise InvalidStateTransition(f"Concept {self.concept_id} is archived")

    # --- Event application ---
    @classmethod
    def _from_created(cls, event: ConceptCreated) -> "Concept":
        return cls(
            concept_id=event.concept_id,
            name=event.name,
            position=as_vec3(event.position),
            space_id=event.space_id,
            properties=dict(event.properties),
            knowledge_level=KnowledgeLevel(event.initial_level),
            confidence=confidence(0, 0.0),
            version=1,
            created_at=event.occurred_at,
            updated_at=event.occurred_at,
        )

    def apply(self, event: DomainEvent) -> "Concept":
        """Fold one event into a new Concept value (version + 1)."""
        if isinstance(event, ConceptCreated):
            raise InvalidStateTransition(f"Concept {self.concept_id} already exists")
        if getattr(event, "concept_id", None) != self.concept_id:
            raise ValidationError(
                f"Event for {getattr(event, 'concept_id', None)} applied to {self.concept_id}"
            )
        self._ensure_active()
        handler = _HANDLERS.get(type(event))
        if handler is None:
            raise ValidationError(f"Concept cannot apply {type(event).__name__}")
        changes = handler(self, event)
        return dataclasses.replace(
            self, version=self.version + 1, updated_at=event.occurred_at, **changes
        )

    def _on_position_updated(self, event: PositionUpdated) -> Dict[str, Any]:
        return {"position": as_vec3(normalize(event.to_position))}

    def _on_evidence_added(self, event: EvidenceAdded) -> Dict[str, Any]:
        evidence = self.evidence + (EvidenceRecord(event.evidence_ref, EvidenceKind(event.kind)),)
        return {"evidence": evidence, "confidence": confidence(len(evidence), self.attention)}

    def _on_attention_received(self, event: AttentionReceived) -> Dict[str, Any]:
        if event.amount < 0:
            raise ValidationError(f"Negative attention {event.amount}")
        attention = self.attention + event.amount
        return {"attention": attention, "confidence": confidence(len(self.evidence), attention)}

    def _on_level_progressed(self, event: KnowledgeLevelProgressed) -> Dict[str, Any]:
        from_level = KnowledgeLevel(event.from_level)
        to_level = KnowledgeLevel(event.to_level)
        if from_level is not self.knowledge_level:
            raise InvalidStateTransition(
                f"Progression recorded from {from_level.value} but concept is {self.knowledge_level.value}"
            )
        if abs(event.new_confidence - self.confidence) > CONFIDENCE_EPSILON:
            raise InvalidStateTransition(
                f"Recorded confidence {event.new_confidence} disagrees with {self.confidence}"
            )
        check_transition(from_level, to_level, self.confidence)
        return {"knowledge_level": to_level}

    def _on_relationship_formed(self, event: RelationshipFormed) -> Dict[str, Any]:
        if any(r.relationship_id == event.relationship_id for r in self.relationships):
            raise InvalidStateTransition(f"Relationship {event.relationship_id} already exists")
        rel = ConceptRelationship(
            relationship_id=event.relationship_id,
            source_id=self.concept_id,
            target_id=event.target_id,
            kind=RelationshipKind(event.kind),
            strength=event.strength,
            evidence_refs=tuple(event.evidence_refs),
        )
        return {"relationships": self.relationships + (rel,)}

    def _on_relationship_dissolved(self, event: RelationshipDissolved) -> Dict[str, Any]:
        self.relationship(event.relationship_id)
        kept = tuple(r for r in self.relationships if r.relationship_id != event.relationship_id)
        return {"relationships": kept}

    def _on_properties_updated(self, event: PropertiesUpdated) -> Dict[str, Any]:
        merged = dict(self.properties)
        merged.update(event.properties)
        return {"properties": merged}

    def _on_archived(self, event: ConceptArchived) -> Dict[str, Any]:
        return {"archived": True}

    # --- Replay ---
    @classmethod
    def replay(cls, history: Iterable[Any], concept_id: Optional[str] = None) -> "Concept":
        """
        Rebuild a Concept from its full event history.

        Any event that cannot legally apply is reported as ReplayCorruption,
        never as an ordinary validation error.
        """
        state: Optional[Concept] = None
        for event in unwrap(history, concept_id):
            try:
                if state is None:
                    if not isinstance(event, ConceptCreated):
                        raise InvalidStateTransition(
                            f"History starts with {type(event).__name__}, not ConceptCreated"
                        )
                    state = cls._from_created(event)
                else:
                    state = state.apply(event)
            except NoosphereError as exc:
                raise ReplayCorruption(concept_id or getattr(event, "concept_id", None), event, str(exc)) from exc
        if state is None:
            raise NotFound(f"No history for concept {concept_id}")
        return state


_HANDLERS = {
    PositionUpdated: Concept._on_position_updated,
    EvidenceAdded: Concept._on_evidence_added,
    AttentionReceived: Concept._on_attention_received,
    KnowledgeLevelProgressed: Concept._on_level_progressed,
    RelationshipFormed: Concept._on_relationship_formed,
    RelationshipDissolved: Concept._on_relationship_dissolved,
    PropertiesUpdated: Concept._on_properties_updated,
    ConceptArchived: Concept._on_archived,
}
