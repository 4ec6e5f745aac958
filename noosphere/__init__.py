from .api import Noosphere
from .concept import Concept, ConceptRelationship, EvidenceRecord, RelationshipKind
from .config import Config
from .errors import (
    ConcurrencyConflict,
    DegenerateGeometryError,
    InvalidStateTransition,
    NoosphereError,
    NotFound,
    ReplayCorruption,
    ValidationError,
)
from .evidence import EvidenceKind, KnowledgeLevel, confidence
from .patterns import BridgePattern, Cluster, ConceptualVoid, PatternDetector, SpiralArrangement, detect
from .space import ConceptualSpace
from .sphere import UnitSphere, generate, seed_position
from .tessellation import (
    DelaunayTriangulation,
    SphericalDelaunay,
    VoronoiCell,
    VoronoiTessellation,
    build_tessellation,
    tessellate,
    update_tessellation,
)
from .topology import (
    Hyperbolic,
    LineSegment,
    Point,
    SphericalVoronoi,
    TopologicalSpace,
    Toroidal,
    Undefined,
    classify,
)

__all__ = [
    "Noosphere",
    "Concept",
    "ConceptRelationship",
    "EvidenceRecord",
    "RelationshipKind",
    "Config",
    "ConcurrencyConflict",
    "DegenerateGeometryError",
    "InvalidStateTransition",
    "NoosphereError",
    "NotFound",
    "ReplayCorruption",
    "ValidationError",
    "EvidenceKind",
    "KnowledgeLevel",
    "confidence",
    "BridgePattern",
    "Cluster",
    "ConceptualVoid",
    "PatternDetector",
    "SpiralArrangement",
    "detect",
    "ConceptualSpace",
    "UnitSphere",
    "generate",
    "seed_position",
    "DelaunayTriangulation",
    "SphericalDelaunay",
    "VoronoiCell",
    "VoronoiTessellation",
    "build_tessellation",
    "tessellate",
    "update_tessellation",
    "Hyperbolic",
    "LineSegment",
    "Point",
    "SphericalVoronoi",
    "TopologicalSpace",
    "Toroidal",
    "Undefined",
    "classify",
]
