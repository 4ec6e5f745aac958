"""
Evidence / confidence engine.

Confidence grows logarithmically with both the number of evidence references
and the accumulated attention a concept has received:

    confidence(e, a) = min(1, ln(e + 1) / 10 + ln(a + 1) / 10)

Each knowledge level has a confidence floor that must hold when a concept
enters it. KnownUnknown marks a recognised gap rather than accumulated
certainty, so it carries no floor.
"""

import math
from enum import Enum
from typing import Dict, FrozenSet, List, Tuple

from .errors import InvalidStateTransition, ValidationError
from .events import register

LOG_SCALE = 10.0


@register
class KnowledgeLevel(Enum):
    UNKNOWN = "unknown"
    SUSPECTED = "suspected"
    KNOWN_UNKNOWN = "known_unknown"
    KNOWN = "known"

    @property
    def floor(self) -> float:
        return CONFIDENCE_FLOORS[self]

    def description(self) -> str:
        return _DESCRIPTIONS[self]


@register
class EvidenceKind(Enum):
    OBSERVATION = "observation"
    UNIT_TEST = "unit_test"
    BDD_SCENARIO = "bdd_scenario"
    PROPERTY_TEST = "property_test"
    DOCUMENTATION = "documentation"
    USAGE = "usage"
    CITATION = "citation"


CONFIDENCE_FLOORS: Dict[KnowledgeLevel, float] = {
    KnowledgeLevel.UNKNOWN: 0.0,
    KnowledgeLevel.SUSPECTED: 0.05,
    KnowledgeLevel.KNOWN_UNKNOWN: 0.0,
    KnowledgeLevel.KNOWN: 0.95,
}

# Conventional upper bound for a recognised gap; informational only.
KNOWN_UNKNOWN_CEILING = 0.05

ALLOWED_TRANSITIONS: FrozenSet[Tuple[KnowledgeLevel, KnowledgeLevel]] = frozenset({
    (KnowledgeLevel.UNKNOWN, KnowledgeLevel.SUSPECTED),
    (KnowledgeLevel.UNKNOWN, KnowledgeLevel.KNOWN_UNKNOWN),
    (KnowledgeLevel.SUSPECTED, KnowledgeLevel.KNOWN_UNKNOWN),
    (KnowledgeLevel.SUSPECTED, KnowledgeLevel.KNOWN),
    (KnowledgeLevel.KNOWN_UNKNOWN, KnowledgeLevel.KNOWN),
})

_DESCRIPTIONS = {
    KnowledgeLevel.UNKNOWN: "Not yet examined",
    KnowledgeLevel.SUSPECTED: "Partial evidence suggests the concept holds",
    KnowledgeLevel.KNOWN_UNKNOWN: "Recognised gap in knowledge",
    KnowledgeLevel.KNOWN: "Established by strong evidence",
}


def confidence(evidence_count: int, total_attention: float) -> float:
    """Bounded confidence in [0, 1], non-decreasing in both arguments."""
    if evidence_count < 0:
        raise ValidationError(f"Evidence count must be non-negative, got {evidence_count}")
    if not math.isfinite(total_attention) or total_attention < 0:
        raise ValidationError(f"Attention must be finite and non-negative, got {total_attention}")
    score = math.log(evidence_count + 1) / LOG_SCALE + math.log(total_attention + 1) / LOG_SCALE
    return min(1.0, score)


def satisfies_floor(level: KnowledgeLevel, value: float) -> bool:
    return value >= CONFIDENCE_FLOORS[level]


def check_transition(current: KnowledgeLevel, target: KnowledgeLevel, value: float):
    """Raise InvalidStateTransition unless `current -> target` is allowed at `value`."""
    if (current, target) not in ALLOWED_TRANSITIONS:
        raise InvalidStateTransition(
            f"Knowledge level cannot move from {current.value} to {target.value}"
        )
    if not satisfies_floor(target, value):
        raise InvalidStateTransition(
            f"Confidence {value:.4f} is below the {target.value} floor of {target.floor:.2f}"
        )


def eligible_targets(current: KnowledgeLevel, value: float) -> List[KnowledgeLevel]:
    """Levels reachable from `current` whose floor `value` already meets."""
    targets = [to for (frm, to) in ALLOWED_TRANSITIONS if frm is current and satisfies_floor(to, value)]
    order = list(KnowledgeLevel)
    return sorted(targets, key=order.index)
