# tests/test_concept.py
import json
import math

import pytest

from noosphere.concept import Concept, RelationshipKind
from noosphere.errors import InvalidStateTransition, NotFound, ReplayCorruption, ValidationError
from noosphere.events import EventEnvelope, KnowledgeLevelProgressed, wrap
from noosphere.evidence import EvidenceKind, KnowledgeLevel


def _concept(name="entropy", position=(0.0, 0.0, 2.0)):
    concept, events = Concept.create(name, position)
    return concept, list(events)


class TestCreate:
    def test_initial_state(self):
        concept, events = _concept()
        assert concept.version == 1
        assert len(events) == 1
        assert concept.name == "entropy"
        assert concept.position == (0.0, 0.0, 1.0)
        assert concept.knowledge_level is KnowledgeLevel.UNKNOWN
        assert concept.confidence == 0.0
        assert concept.evidence == ()
        assert concept.relationships == ()

    @pytest.mark.parametrize("name", ["", "   "])
    def test_empty_name(self, name):
        with pytest.raises(ValidationError):
            Concept.create(name, (1.0, 0.0, 0.0))

    def test_zero_position(self):
        with pytest.raises(ValidationError):
            Concept.create("x", (0.0, 0.0, 0.0))

    def test_initial_level_must_have_no_floor(self):
        with pytest.raises(InvalidStateTransition):
            Concept.create("x", (1.0, 0.0, 0.0), initial_level=KnowledgeLevel.KNOWN)
        concept, _ = Concept.create("x", (1.0, 0.0, 0.0), initial_level=KnowledgeLevel.KNOWN_UNKNOWN)
        assert concept.knowledge_level is KnowledgeLevel.KNOWN_UNKNOWN


class TestCommands:
    """Each command bumps the version by one and emits exactly one event."""

    def test_versions_increment(self):
        concept, _ = _concept()
        steps = [
            lambda c: c.add_evidence("blake2b:aa", EvidenceKind.UNIT_TEST),
            lambda c: c.receive_attention(2.5, source="reader"),
            lambda c: c.reposition((1.0, 1.0, 0.0)),
            lambda c: c.update_properties({"domain": "physics"}),
            lambda c: c.form_relationship("concept-other", RelationshipKind.RELATED_TO, 0.4),
        ]
        for i, step in enumerate(steps, start=2):
            concept, events = step(concept)
            assert len(events) == 1
            assert concept.version == i

    def test_evidence_and_attention_drive_confidence(self):
        concept, _ = _concept()
        concept, _ = concept.add_evidence("ref-1")
        concept, _ = concept.receive_attention(10.0)
        assert concept.confidence == pytest.approx(math.log(2) / 10 + math.log(11) / 10)
        assert concept.evidence_by_kind() == {EvidenceKind.OBSERVATION: 1}

    def test_progress_to_suspected(self):
        concept, _ = _concept()
        concept, _ = concept.receive_attention(1.0)
        concept, events = concept.progress_knowledge(KnowledgeLevel.SUSPECTED, trigger="review")
        assert concept.knowledge_level is KnowledgeLevel.SUSPECTED
        assert events[0].new_confidence == pytest.approx(math.log(2) / 10)

    def test_progress_to_known(self):
        concept, _ = _concept()
        concept, _ = concept.receive_attention(1.0)
        concept, _ = concept.progress_knowledge(KnowledgeLevel.SUSPECTED)
        concept, _ = concept.receive_attention(1e4)
        concept, _ = concept.add_evidence("ref-1")
        concept, _ = concept.progress_knowledge(KnowledgeLevel.KNOWN)
        assert concept.knowledge_level is KnowledgeLevel.KNOWN
        assert concept.confidence >= 0.95

    def test_progress_below_floor(self):
        concept, _ = _concept()
        with pytest.raises(InvalidStateTransition):
            concept.progress_knowledge(KnowledgeLevel.SUSPECTED)

    def test_skip_to_known_not_allowed(self):
        concept, _ = _concept()
        concept, _ = concept.receive_attention(1e6)
        with pytest.raises(InvalidStateTransition):
            concept.progress_knowledge(KnowledgeLevel.KNOWN)

    def test_known_is_terminal(self):
        concept, _ = _concept()
        concept, _ = concept.progress_knowledge(KnowledgeLevel.KNOWN_UNKNOWN)
        concept, _ = concept.receive_attention(1e6)
        concept, _ = concept.progress_knowledge(KnowledgeLevel.KNOWN)
        for level in KnowledgeLevel:
            with pytest.raises(InvalidStateTransition):
                concept.progress_knowledge(level)

    @pytest.mark.parametrize("amount", [-1.0, float("nan"), float("inf")])
    def test_invalid_attention(self, amount):
        concept, _ = _concept()
        with pytest.raises(ValidationError):
            concept.receive_attention(amount)

    def test_relationship_validation(self):
        concept, _ = _concept()
        with pytest.raises(ValidationError):
            concept.form_relationship(concept.concept_id, RelationshipKind.SYNONYM, 0.5)
        with pytest.raises(ValidationError):
            concept.form_relationship("other", RelationshipKind.SYNONYM, 1.5)

    def test_dissolve(self):
        concept, _ = _concept()
        concept, events = concept.form_relationship("other", RelationshipKind.PARENT, 0.9, ["ref"])
        rel_id = events[0].relationship_id
        assert concept.relationship(rel_id).evidence_refs == ("ref",)
        concept, _ = concept.dissolve_relationship(rel_id)
        assert concept.relationships == ()
        with pytest.raises(NotFound):
            concept.dissolve_relationship(rel_id)

    def test_archived_rejects_commands(self):
        concept, _ = _concept()
        concept, _ = concept.archive("merged")
        assert concept.archived
        with pytest.raises(InvalidStateTransition):
            concept.add_evidence("ref")
        with pytest.raises(InvalidStateTransition):
            concept.archive()

    def test_eligible_levels(self):
        concept, _ = _concept()
        assert concept.eligible_levels() == [KnowledgeLevel.KNOWN_UNKNOWN]
        concept, _ = concept.receive_attention(1.0)
        assert KnowledgeLevel.SUSPECTED in concept.eligible_levels()
        assert concept.knowledge_level.description()

    def test_properties_merge(self):
        concept, _ = Concept.create("x", (1.0, 0.0, 0.0), properties={"a": 1})
        concept, _ = concept.update_properties({"b": 2})
        assert concept.properties == {"a": 1, "b": 2}


class TestReplay:
    def _history(self):
        concept, history = _concept()
        for step in (
            lambda c: c.add_evidence("ref-1", EvidenceKind.CITATION),
            lambda c: c.receive_attention(3.0, "reader"),
            lambda c: c.progress_knowledge(KnowledgeLevel.SUSPECTED),
            lambda c: c.form_relationship("other", RelationshipKind.DEPENDS_ON, 0.3),
            lambda c: c.update_properties({"tags": "x"}),
        ):
            concept, events = step(concept)
            history.extend(events)
        return concept, history

    def test_replay_matches_live_state(self):
        concept, history = self._history()
        assert Concept.replay(history, concept.concept_id) == concept

    def test_replay_through_json_envelopes(self):
        concept, history = self._history()
        envelopes = wrap(concept.concept_id, history, start_version=0)
        stored = [json.loads(json.dumps(env.to_dict())) for env in envelopes]
        restored = [EventEnvelope.from_dict(d) for d in stored]
        assert Concept.replay(restored, concept.concept_id) == concept

    def test_redelivered_envelope_is_skipped(self):
        concept, history = self._history()
        envelopes = wrap(concept.concept_id, history, start_version=0)
        doubled = envelopes[:3] + [envelopes[2]] + envelopes[3:]
        assert Concept.replay(doubled, concept.concept_id) == concept

    def test_version_gap(self):
        concept, history = self._history()
        envelopes = wrap(concept.concept_id, history, start_version=0)
        with pytest.raises(ReplayCorruption):
            Concept.replay(envelopes[:2] + envelopes[3:], concept.concept_id)

    def test_illegal_progression_in_history(self):
        concept, history = _concept()
        forged = KnowledgeLevelProgressed(
            concept_id=concept.concept_id,
            from_level=KnowledgeLevel.UNKNOWN,
            to_level=KnowledgeLevel.KNOWN,
            new_confidence=0.0,
        )
        with pytest.raises(ReplayCorruption):
            Concept.replay(history + [forged], concept.concept_id)

    def test_history_must_start_with_creation(self):
        concept, history = self._history()
        with pytest.raises(ReplayCorruption):
            Concept.replay(history[1:], concept.concept_id)

    def test_empty_history(self):
        with pytest.raises(NotFound):
            Concept.replay([], "concept-missing")
