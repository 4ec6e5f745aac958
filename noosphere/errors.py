"""
Error taxonomy.

Validation, transition and geometry errors are raised synchronously by pure
domain functions and never leave partially updated state behind.
`ConcurrencyConflict` is an expected outcome of optimistic appends and should
be retried with a fresh read. `ReplayCorruption` signals that a stored history
cannot be folded back into a valid aggregate, i.e. the event log broke its
contract.
"""

from typing import Any, Optional


class NoosphereError(Exception):
    """Base class for all domain errors."""


class ValidationError(NoosphereError, ValueError):
    """Malformed input: degenerate position, empty name, out-of-range value."""


class InvalidStateTransition(NoosphereError):
    """Knowledge-level or topology transition not allowed, or floor unmet."""


class DegenerateGeometryError(NoosphereError):
    """Coincident or otherwise degenerate sites defeat the triangulation."""


class NotFound(NoosphereError, LookupError):
    """Referenced concept, relationship, space or evidence does not exist."""


class ConcurrencyConflict(NoosphereError):
    """Stream version changed between read and conditional append."""

    def __init__(self, aggregate_id: str, expected: int, actual: int):
        super().__init__(
            f"Version conflict on {aggregate_id}: expected {expected}, found {actual}"
        )
        self.aggregate_id = aggregate_id
        self.expected = expected
        self.actual = actual


class ReplayCorruption(NoosphereError):
    """An event in a stored history cannot legally apply to the rebuilt state."""

    def __init__(self, aggregate_id: Optional[str], event: Any, reason: str):
        super().__init__(f"Corrupt history for {aggregate_id}: {reason}")
        self.aggregate_id = aggregate_id
        self.event = event
        self.reason = reason
