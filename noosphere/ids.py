# noosphere/ids.py
import uuid
from typing import NewType

ConceptId = NewType("ConceptId", str)
SpaceId = NewType("SpaceId", str)
TopologyId = NewType("TopologyId", str)
RelationshipId = NewType("RelationshipId", str)
EventId = NewType("EventId", str)


def _new(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def new_concept_id() -> ConceptId:
    return ConceptId(_new("concept"))


def new_space_id() -> SpaceId:
    return SpaceId(_new("space"))


def new_topology_id() -> TopologyId:
    return TopologyId(_new("topology"))


def new_relationship_id() -> RelationshipId:
    return RelationshipId(_new("rel"))


def new_event_id() -> EventId:
    return EventId(uuid.uuid4().hex)
