import math
import os
from dataclasses import dataclass, fields
from typing import Dict, Any


@dataclass
class CoreConfig:
    # Numerical tolerance used by every geometric predicate
    TOLERANCE: float = float(os.getenv("NOOSPHERE_TOLERANCE", "1e-10"))


@dataclass
class GeometryConfig:
    SPHERE_RADIUS: float = float(os.getenv("NOOSPHERE_SPHERE_RADIUS", "1.0"))

    # Sites closer than this (chordal distance) are treated as coincident
    MIN_SITE_SEPARATION: float = 1e-7

    # Voronoi vertices closer than this (radians) are merged; shorter dual edges are dropped
    VERTEX_MERGE_TOL: float = 1e-9

    # Relative tolerance on sum(cell areas) == 4*pi*R^2
    AREA_RTOL: float = 1e-6

    # Spaces with at least this many sites update the tessellation incrementally
    INCREMENTAL_THRESHOLD: int = int(os.getenv("NOOSPHERE_INCREMENTAL_THRESHOLD", "64"))


@dataclass
class PatternConfig:
    SENSITIVITY: float = 0.5
    MIN_CLUSTER_SIZE: int = 3
    MIN_STABILITY: float = 0.0

    # Grow clusters only over edges no longer than mean edge length * (1 + SENSITIVITY)
    LINKED_ONLY: bool = os.getenv("NOOSPHERE_LINKED_ONLY", "0") == "1"

    # Spiral fitting
    SPIRAL_MIN_CLUSTERS: int = 5
    SPIRAL_MAX_RESIDUAL: float = 0.05  # RMS residual relative to axial extent
    SPIRAL_MIN_ROTATION: float = math.pi
    SPIRAL_GRID_SIZE: int = 32
    SPIRAL_STARTS: int = 8


@dataclass
class StorageConfig:
    DATA_DIR: str = os.getenv("NOOSPHERE_DATA_DIR", os.path.expanduser("~/.noosphere"))
    USE_SQLITE: bool = os.getenv("NOOSPHERE_USE_SQLITE", "0") == "1"
    SQLITE_DB_NAME: str = "events.db"


@dataclass
class ConcurrencyConfig:
    MAX_RETRIES: int = int(os.getenv("NOOSPHERE_MAX_RETRIES", "3"))


class Config:
    """Centralized configuration."""
    core = CoreConfig()
    geometry = GeometryConfig()
    patterns = PatternConfig()
    storage = StorageConfig()
    concurrency = ConcurrencyConfig()

    SECTIONS = ("core", "geometry", "patterns", "storage", "concurrency")

    @classmethod
    def to_dict(cls) -> Dict[str, Any]:
        """Serialize all config sections to a flat dictionary."""
        result = {}
        for section_name in cls.SECTIONS:
            section = getattr(cls, section_name)
            for f in fields(section):
                result[f"{section_name}.{f.name}"] = getattr(section, f.name)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any], apply_env_overrides: bool = True):
        """
        Update config from a flat dictionary.
        If apply_env_overrides is True, environment variables take precedence.
        """
        for key, value in data.items():
            if "." not in key:
                continue
            section_name, field_name = key.split(".", 1)
            if section_name not in cls.SECTIONS:
                continue
            section = getattr(cls, section_name)
            if not hasattr(section, field_name):
                continue

            env_key = f"NOOSPHERE_{field_name}"
            if apply_env_overrides and env_key in os.environ:
                continue

            current_value = getattr(section, field_name)
            if isinstance(current_value, bool):
                value = str(value).lower() in ("1", "true", "yes")
            elif isinstance(current_value, int):
                value = int(value)
            elif isinstance(current_value, float):
                value = float(value)

            setattr(section, field_name, value)

    @classmethod
    def get_db_path(cls) -> str:
        """Path of the default SQLite event log."""
        return os.path.join(cls.storage.DATA_DIR, cls.storage.SQLITE_DB_NAME)
