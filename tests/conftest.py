"""
Pytest configuration and shared fixtures for test isolation.
"""
import math

import numpy as np
import pytest


# Reset global state between tests
@pytest.fixture(autouse=True)
def reset_config():
    """Snapshot Config before each test and restore it afterwards."""
    from noosphere.config import Config

    snapshot = Config.to_dict()
    yield
    Config.from_dict(snapshot, apply_env_overrides=False)


@pytest.fixture
def service():
    """In-memory Noosphere service."""
    from noosphere.api import Noosphere

    noo = Noosphere.init(use_sqlite=False)
    yield noo
    noo.close()


@pytest.fixture
def sqlite_path(tmp_path):
    return str(tmp_path / "noosphere" / "events.db")


@pytest.fixture
def tetrahedron():
    """Vertices of a regular tetrahedron, as (site_id, unit vector) pairs."""
    raw = [(1, 1, 1), (1, -1, -1), (-1, 1, -1), (-1, -1, 1)]
    return [(f"t{i}", tuple(np.array(v) / math.sqrt(3.0))) for i, v in enumerate(raw)]


@pytest.fixture
def octahedron():
    raw = [(1, 0, 0), (-1, 0, 0), (0, 1, 0), (0, -1, 0), (0, 0, 1), (0, 0, -1)]
    names = ["+x", "-x", "+y", "-y", "+z", "-z"]
    return [(name, tuple(float(c) for c in v)) for name, v in zip(names, raw)]


@pytest.fixture
def cube():
    import itertools

    corners = itertools.product((-1.0, 1.0), repeat=3)
    return [(f"c{i}", tuple(np.array(v) / math.sqrt(3.0))) for i, v in enumerate(corners)]
