# noosphere/store.py
import hashlib
import logging
import threading
from typing import Dict, Iterable, List, Optional, Union

from .errors import ConcurrencyConflict, NotFound, ValidationError
from .events import DomainEvent, EventEnvelope, wrap

logger = logging.getLogger(__name__)


def content_ref(content: Union[bytes, str]) -> str:
    """Content address of a piece of evidence (BLAKE2b, hex)."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    if not isinstance(content, (bytes, bytearray)):
        raise ValidationError(f"Evidence content must be bytes or str, got {type(content).__name__}")
    return "blake2b:" + hashlib.blake2b(bytes(content), digest_size=32).hexdigest()


# --- Event log ---
class InMemoryEventStore:
    """Append-only per-aggregate streams with optimistic concurrency."""

    def __init__(self):
        self._lock = threading.RLock()
        self._streams: Dict[str, List[EventEnvelope]] = {}

    def version(self, aggregate_id: str) -> int:
        with self._lock:
            return len(self._streams.get(aggregate_id, []))

    def append(
        self,
        aggregate_id: str,
        events: Iterable[DomainEvent],
        expected_version: int,
        correlation_id: Optional[str] = None,
        causation_id: Optional[str] = None,
    ) -> List[EventEnvelope]:
        with self._lock:
            stream = self._streams.setdefault(aggregate_id, [])
            if len(stream) != expected_version:
                raise ConcurrencyConflict(aggregate_id, expected_version, len(stream))
            envelopes = wrap(aggregate_id, events, expected_version, correlation_id, causation_id)
            stream.extend(envelopes)
            logger.debug(f"[EventStore] {aggregate_id}: +{len(envelopes)} -> v{len(stream)}")
            return envelopes

    def load(self, aggregate_id: str) -> List[EventEnvelope]:
        with self._lock:
            return list(self._streams.get(aggregate_id, []))

    def stream_ids(self) -> List[str]:
        with self._lock:
            return [sid for sid, stream in self._streams.items() if stream]


# --- Evidence ---
class InMemoryEvidenceStore:
    """Content-addressed evidence blobs."""

    def __init__(self):
        self._lock = threading.RLock()
        self._blobs: Dict[str, bytes] = {}

    def put(self, content: Union[bytes, str]) -> str:
        ref = content_ref(content)
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        with self._lock:
            self._blobs.setdefault(ref, data)
        return ref

    def get(self, ref: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[ref]
            except KeyError:
                raise NotFound(f"No evidence stored under {ref}")

    def contains(self, ref: str) -> bool:
        with self._lock:
            return ref in self._blobs
