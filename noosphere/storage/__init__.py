from .sqlite_store import SqliteEventStore, SqliteEvidenceStore

__all__ = ["SqliteEventStore", "SqliteEvidenceStore"]
