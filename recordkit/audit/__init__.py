"""
Change auditing.

Pending mutations are diffed into immutable change records, either directly
or through the in-memory change tracker, and stored as audit trail rows.
"""
from .diff import ChangeDiffEngine, ChangeRecord, FieldChange, MissingKeyError, OperationKind, PendingMutation
from .tracker import ChangeTracker, EntryState, TrackedEntry
from .trail_sql import AuditTrailSQL, write_trails

__all__ = [
    "ChangeDiffEngine", "ChangeRecord", "FieldChange", "MissingKeyError", "OperationKind", "PendingMutation",
    "ChangeTracker", "EntryState", "TrackedEntry",
    "AuditTrailSQL", "write_trails",
]
