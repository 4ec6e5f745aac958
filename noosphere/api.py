# noosphere/api.py
from __future__ import annotations
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .concept import Concept, RelationshipKind
from .config import Config
from .errors import ConcurrencyConflict, NoosphereError, NotFound
from .events import ConceptCreated, DomainEvent, EventEnvelope
from .evidence import EvidenceKind, KnowledgeLevel
from .patterns import PatternDetector
from .space import ConceptualSpace
from .sphere import seed_position
from .store import InMemoryEventStore, InMemoryEvidenceStore

logger = logging.getLogger(__name__)


@dataclass
class Noosphere:
    """
    Application service over the event log:
    - loads aggregates by replaying their streams
    - runs a command against the fresh state and appends its events
      conditionally on the version that was read
    - retries on concurrency conflicts
    - keeps a concept's space in step when the concept moves or is archived
    """
    events: Any
    evidence: Any
    detector: PatternDetector = field(default_factory=PatternDetector)
    max_retries: Optional[int] = None

    # --- Initialization ---
    @classmethod
    def init(
        cls,
        path: Optional[str] = None,
        use_sqlite: Optional[bool] = None,
        detector: Optional[PatternDetector] = None,
    ) -> "Noosphere":
        if use_sqlite is None:
            use_sqlite = Config.storage.USE_SQLITE or path is not None
        if use_sqlite:
            from .storage.sqlite_store import SqliteEventStore, SqliteEvidenceStore

            path = path or Config.get_db_path()
            parent = os.path.dirname(path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            events = SqliteEventStore(path)
            evidence = SqliteEvidenceStore(path)
            logger.info(f"[Noosphere] SQLite event log at {path}")
        else:
            events = InMemoryEventStore()
            evidence = InMemoryEvidenceStore()
        return cls(events=events, evidence=evidence, detector=detector or PatternDetector())

    def close(self):
        for store in (self.events, self.evidence):
            if hasattr(store, "close"):
                store.close()

    # --- Loading ---
    def load_concept(self, concept_id: str) -> Concept:
        return Concept.replay(self.events.load(concept_id), concept_id)

    def load_space(self, space_id: str) -> ConceptualSpace:
        return ConceptualSpace.replay(self.events.load(space_id), space_id)

    def history(self, aggregate_id: str) -> List[EventEnvelope]:
        return self.events.load(aggregate_id)

    def _retries(self) -> int:
        return Config.concurrency.MAX_RETRIES if self.max_retries is None else self.max_retries

    def _append(
        self,
        aggregate_id: str,
        events: List[DomainEvent],
        expected_version: int,
        correlation_id: Optional[str] = None,
        causation_id: Optional[str] = None,
    ) -> List[EventEnvelope]:
        if not events:
            return []
        return self.events.append(aggregate_id, events, expected_version, correlation_id, causation_id)

    def _execute(
        self,
        aggregate_id: str,
        load: Callable[[str], Any],
        command: Callable[[Any], Tuple[Any, List[DomainEvent]]],
        state: Any = None,
        prepared: Optional[Tuple[Any, List[DomainEvent]]] = None,
        correlation_id: Optional[str] = None,
        causation_id: Optional[str] = None,
    ):
        """
        Read, decide, conditionally append; on conflict, re-read and retry.

        `state`/`prepared` let a caller reuse a read and a result it already
        computed for the first attempt.
        """
        retries = self._retries()
        attempt = 0
        while True:
            if state is None:
                state = load(aggregate_id)
            if prepared is not None:
                new_state, events = prepared
                prepared = None
            else:
                new_state, events = command(state)
            try:
                envelopes = self._append(aggregate_id, events, state.version, correlation_id, causation_id)
                return new_state, envelopes
            except ConcurrencyConflict as exc:
                attempt += 1
                if attempt > retries:
                    logger.error(f"[Noosphere] giving up on {aggregate_id} after {retries} retries")
                    raise
                logger.warning(f"[Noosphere] {exc}; retry {attempt}/{retries}")
                state = None

    def _concept_command(self, concept_id: str, command: Callable[[Concept], Tuple[Concept, List[DomainEvent]]]):
        concept, _ = self._execute(concept_id, self.load_concept, command)
        return concept

    def _space_command(self, space_id: str, command, **kwargs):
        space, _ = self._execute(space_id, self.load_space, command, **kwargs)
        return space

    def _compensate(self, concept_id: str, command, cause: EventEnvelope, exc: Exception):
        """Undo a concept change whose space could not follow, so no stream is left half-applied."""
        logger.error(f"[Noosphere] space update for {concept_id} failed ({exc}); compensating")
        self._execute(
            concept_id, self.load_concept, command,
            correlation_id=cause.correlation_id, causation_id=cause.event_id,
        )

    # --- Space commands ---
    def create_space(self, name: str, radius: Optional[float] = None, override: Optional[Any] = None) -> ConceptualSpace:
        space, events = ConceptualSpace.create(name, radius, override)
        self._append(space.space_id, events, 0)
        logger.info(f"[Noosphere] created space {space.name} ({space.space_id})")
        return space

    def set_topology_override(self, space_id: str, override: Optional[Any]) -> ConceptualSpace:
        return self._space_command(space_id, lambda s: s.set_topology_override(override, self.detector))

    def refresh_space(self, space_id: str) -> ConceptualSpace:
        return self._space_command(space_id, lambda s: s.refresh(self.detector))

    # --- Concept commands ---
    def create_concept(
        self,
        space_id: str,
        name: str,
        position: Optional[Sequence[float]] = None,
        properties: Optional[Mapping[str, Any]] = None,
        initial_level: KnowledgeLevel = KnowledgeLevel.UNKNOWN,
        concept_id: Optional[str] = None,
    ) -> Concept:
        """
        Create a concept and place it in a space.

        The placement is computed before anything is written so a geometric
        failure leaves both streams untouched. Without a position, one is
        seeded from the Fibonacci lattice away from the existing sites.
        """
        space = self.load_space(space_id)
        if position is None:
            position = seed_position([pos for _, pos in space.sites])
        concept, events = Concept.create(
            name, position, initial_level, space_id=space_id, properties=properties, concept_id=concept_id
        )
        place = lambda s: s.place_concept(concept.concept_id, concept.position, self.detector)
        prepared = place(space)

        envelopes = self._append(concept.concept_id, events, 0)
        try:
            self._space_command(
                space_id, place, state=space, prepared=prepared,
                correlation_id=envelopes[0].correlation_id, causation_id=envelopes[0].event_id,
            )
        except NoosphereError as exc:
            self._compensate(concept.concept_id, lambda c: c.archive(f"placement failed: {exc}"), envelopes[0], exc)
            raise
        logger.info(f"[Noosphere] created concept {concept.name} ({concept.concept_id}) in {space_id}")
        return concept

    def add_evidence(
        self,
        concept_id: str,
        content: Union[bytes, str],
        kind: EvidenceKind = EvidenceKind.OBSERVATION,
    ) -> Concept:
        ref = self.evidence.put(content)
        return self._concept_command(concept_id, lambda c: c.add_evidence(ref, kind))

    def receive_attention(self, concept_id: str, amount: float, source: str = "") -> Concept:
        return self._concept_command(concept_id, lambda c: c.receive_attention(amount, source))

    def progress_knowledge(self, concept_id: str, target_level: KnowledgeLevel, trigger: str = "") -> Concept:
        return self._concept_command(concept_id, lambda c: c.progress_knowledge(target_level, trigger))

    def form_relationship(
        self,
        concept_id: str,
        target_id: str,
        kind: RelationshipKind,
        strength: float,
        evidence_refs: Iterable[str] = (),
    ) -> Concept:
        self.load_concept(target_id)  # raises NotFound
        evidence_refs = tuple(evidence_refs)
        for ref in evidence_refs:
            if not self.evidence.contains(ref):
                raise NotFound(f"No evidence stored under {ref}")
        return self._concept_command(
            concept_id, lambda c: c.form_relationship(target_id, kind, strength, evidence_refs)
        )

    def dissolve_relationship(self, concept_id: str, relationship_id: str) -> Concept:
        return self._concept_command(concept_id, lambda c: c.dissolve_relationship(relationship_id))

    def update_properties(self, concept_id: str, properties: Mapping[str, Any]) -> Concept:
        return self._concept_command(concept_id, lambda c: c.update_properties(properties))

    def reposition(self, concept_id: str, new_position: Sequence[float]) -> Concept:
        """Move a concept; its space relocates the site in the same step."""
        concept = self.load_concept(concept_id)
        moved, events = concept.reposition(new_position)
        if moved.space_id is None:
            self._execute(concept_id, self.load_concept, lambda c: c.reposition(new_position),
                          state=concept, prepared=(moved, events))
            return moved

        space = self.load_space(moved.space_id)
        relocate = lambda s: s.relocate_concept(concept_id, moved.position, self.detector)
        prepared = relocate(space)
        moved, envelopes = self._execute(
            concept_id, self.load_concept, lambda c: c.reposition(new_position),
            state=concept, prepared=(moved, events),
        )
        try:
            self._space_command(
                moved.space_id, lambda s: s.relocate_concept(concept_id, moved.position, self.detector),
                state=space, prepared=prepared,
                correlation_id=envelopes[0].correlation_id, causation_id=envelopes[0].event_id,
            )
        except NoosphereError as exc:
            self._compensate(concept_id, lambda c: c.reposition(concept.position), envelopes[0], exc)
            raise
        return moved

    def archive_concept(self, concept_id: str, reason: str = "") -> Concept:
        """Archive a concept and release its site from its space."""
        concept, envelopes = self._execute(concept_id, self.load_concept, lambda c: c.archive(reason))
        if concept.space_id is not None and envelopes:
            space = self.load_space(concept.space_id)
            if concept_id in space:
                self._space_command(
                    concept.space_id, lambda s: s.release_concept(concept_id, self.detector),
                    correlation_id=envelopes[0].correlation_id, causation_id=envelopes[0].event_id,
                )
        return concept

    # --- Queries ---
    def get_evidence(self, ref: str) -> bytes:
        return self.evidence.get(ref)

    def concepts_in(self, space_id: str) -> List[Concept]:
        return [self.load_concept(cid) for cid in self.load_space(space_id).site_ids]

    def all_concepts(self) -> List[Concept]:
        concepts = []
        for stream_id in self.events.stream_ids():
            history = self.events.load(stream_id)
            if history and isinstance(history[0].event, ConceptCreated):
                concepts.append(Concept.replay(history, stream_id))
        return concepts

    def _active(self, space_id: Optional[str]) -> List[Concept]:
        concepts = self.concepts_in(space_id) if space_id is not None else self.all_concepts()
        return [c for c in concepts if not c.archived]

    def nearest_concepts(self, space_id: str, position: Sequence[float], k: int = 5) -> List[Tuple[str, float]]:
        return self.load_space(space_id).nearest_concepts(position, k)

    def patterns(self, space_id: str) -> Tuple[Any, ...]:
        return self.load_space(space_id).patterns

    def knowledge_distribution(self, space_id: Optional[str] = None) -> Dict[KnowledgeLevel, int]:
        """Number of active concepts at each knowledge level (every level present)."""
        counts = {level: 0 for level in KnowledgeLevel}
        for concept in self._active(space_id):
            counts[concept.knowledge_level] += 1
        return counts

    def average_confidence(self, space_id: Optional[str] = None) -> float:
        concepts = self._active(space_id)
        if not concepts:
            return 0.0
        return sum(c.confidence for c in concepts) / len(concepts)

    def concepts_by_confidence(self, space_id: Optional[str] = None) -> List[Concept]:
        """Active concepts, weakest first: the knowledge gaps to work on next."""
        return sorted(self._active(space_id), key=lambda c: (c.confidence, c.name, c.concept_id))
