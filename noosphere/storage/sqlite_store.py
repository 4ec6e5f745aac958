
import sqlite3
import json
import logging
import threading
from typing import Iterable, List, Optional, Union

from ..errors import ConcurrencyConflict, NotFound
from ..events import DomainEvent, EventEnvelope, wrap
from ..store import content_ref

logger = logging.getLogger(__name__)


class SqliteEventStore:
    """Event log in a single SQLite table; (aggregate_id, version) is the primary key."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(path, check_same_thread=False)
        self._init_schema()

    def _init_schema(self):
        with self.conn:
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    aggregate_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    event_id TEXT NOT NULL UNIQUE,
                    event_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    correlation_id TEXT,
                    causation_id TEXT,
                    recorded_at TEXT,
                    PRIMARY KEY (aggregate_id, version)
                )
            """)

    def version(self, aggregate_id: str) -> int:
        with self._lock:
            cur = self.conn.execute(
                "SELECT COALESCE(MAX(version), 0) FROM events WHERE aggregate_id = ?", (aggregate_id,)
            )
            return int(cur.fetchone()[0])

    def append(
        self,
        aggregate_id: str,
        events: Iterable[DomainEvent],
        expected_version: int,
        correlation_id: Optional[str] = None,
        causation_id: Optional[str] = None,
    ) -> List[EventEnvelope]:
        with self._lock:
            actual = self.version(aggregate_id)
            if actual != expected_version:
                raise ConcurrencyConflict(aggregate_id, expected_version, actual)
            envelopes = wrap(aggregate_id, events, expected_version, correlation_id, causation_id)
            rows = []
            for env in envelopes:
                data = env.to_dict()
                rows.append((
                    env.aggregate_id, env.version, env.event_id, data["event_type"],
                    json.dumps(data["payload"]), env.correlation_id, env.causation_id, env.recorded_at,
                ))
            try:
                with self.conn:
                    self.conn.executemany(
                        "INSERT INTO events (aggregate_id, version, event_id, event_type, payload, "
                        "correlation_id, causation_id, recorded_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        rows,
                    )
            except sqlite3.IntegrityError:
                # Another writer on the same file won the race for these versions
                raise ConcurrencyConflict(aggregate_id, expected_version, self.version(aggregate_id))
            logger.debug(f"[SqliteEventStore] {aggregate_id}: +{len(envelopes)} -> v{expected_version + len(envelopes)}")
            return envelopes

    def load(self, aggregate_id: str) -> List[EventEnvelope]:
        with self._lock:
            cur = self.conn.execute(
                "SELECT event_id, aggregate_id, version, payload, correlation_id, causation_id, recorded_at "
                "FROM events WHERE aggregate_id = ? ORDER BY version",
                (aggregate_id,),
            )
            envelopes = []
            for row in cur:
                event_id, agg_id, version, payload_json, correlation_id, causation_id, recorded_at = row
                envelopes.append(EventEnvelope.from_dict({
                    "event_id": event_id,
                    "aggregate_id": agg_id,
                    "version": version,
                    "payload": json.loads(payload_json),
                    "correlation_id": correlation_id,
                    "causation_id": causation_id,
                    "recorded_at": recorded_at,
                }))
            return envelopes

    def stream_ids(self) -> List[str]:
        with self._lock:
            cur = self.conn.execute(
                "SELECT aggregate_id FROM events GROUP BY aggregate_id ORDER BY MIN(rowid)"
            )
            return [row[0] for row in cur]

    def close(self):
        self.conn.close()


class SqliteEvidenceStore:
    """Content-addressed evidence blobs in SQLite."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(path, check_same_thread=False)
        with self.conn:
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS evidence (
                    ref TEXT PRIMARY KEY,
                    content BLOB NOT NULL
                )
            """)

    def put(self, content: Union[bytes, str]) -> str:
        ref = content_ref(content)
        data = content.encode("utf-8") if isinstance(content, str) else bytes(content)
        with self._lock, self.conn:
            self.conn.execute("INSERT OR IGNORE INTO evidence (ref, content) VALUES (?, ?)", (ref, data))
        return ref

    def get(self, ref: str) -> bytes:
        with self._lock:
            row = self.conn.execute("SELECT content FROM evidence WHERE ref = ?", (ref,)).fetchone()
        if row is None:
            raise NotFound(f"No evidence stored under {ref}")
        return bytes(row[0])

    def contains(self, ref: str) -> bool:
        with self._lock:
            row = self.conn.execute("SELECT 1 FROM evidence WHERE ref = ?", (ref,)).fetchone()
        return row is not None

    def close(self):
        self.conn.close()
