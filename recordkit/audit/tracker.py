"""
In-memory change tracker.

A ChangeTracker is a small unit of work over caller-owned entities:

1. TRACKING:
   - `add` registers a new entity (Create on save)
   - `attach` takes a cold snapshot of an existing entity; with `cascade` every
     keyed entity reachable from it is attached too, dependencies first
   - `remove` schedules a Delete, or forgets an entity added in the same unit

2. SAVE:
   - Field changes are detected against the snapshots with the equality
     comparator, merged with fields marked modified by the caller
   - Soft-deletable entities are never removed: a removed entity gets its
     soft-active flag cleared and is saved as a modification; every saved
     soft-deletable entity is stamped with the save time and actor
   - Auditable entities get their creation stamps on add, and keep their
     original creation stamps on modification
   - The pending mutations go through the diff engine as one batch; only when
     it succeeds are the changes accepted and the snapshots refreshed

The tracker holds references to its entities until `save` or `clear`. It is
meant for a single unit of work and is not thread-safe.
"""
import logging
from copy import deepcopy
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from recordkit.audit.diff import (
    ChangeDiffEngine, ChangeRecord, FieldChange, OperationKind, PendingMutation, utc_now
)
from recordkit.config import RecordKitSettings, get_settings
from recordkit.ecs.descriptors import DescriptorCache, FieldDescriptor, TypeDescriptor, default_cache
from recordkit.ecs.equality import EqualityComparator
from recordkit.ecs.graph import ObjectGraph
from recordkit.validation import require_not_none


class EntryState(str, Enum):
    ADDED = "added"
    UNCHANGED = "unchanged"
    MODIFIED = "modified"
    DELETED = "deleted"


class TrackedEntry:
    """
    Tracking state of one entity.

    Attributes:
        entity: The tracked entity
        descriptor: Its type descriptor
        state: Current entry state
        snapshot: Deep copies of the field values when tracking started
        marked: Fields the caller marked modified explicitly
        detected: Fields found changed by the last detect_changes
    """

    def __init__(self, entity: Any, descriptor: TypeDescriptor, state: EntryState):
        self.entity = entity
        self.descriptor = descriptor
        self.state = state
        self.snapshot: Dict[str, Any] = {}
        self.marked: Set[str] = set()
        self.detected: Set[str] = set()

    def __repr__(self) -> str:
        return f"TrackedEntry({self.descriptor.table_name}, {self.state.value})"

    @property
    def tracked_fields(self) -> List[FieldDescriptor]:
        return list(self.descriptor.view())

    def take_snapshot(self) -> None:
        self.snapshot = {f.name: deepcopy(getattr(self.entity, f.name, None)) for f in self.tracked_fields}
        self.marked.clear()
        self.detected.clear()

    @property
    def modified_fields(self) -> Set[str]:
        return self.marked | self.detected


class ChangeTracker:
    """
    Unit of work producing change records for tracked entities.

    Attributes:
        cache: Descriptor cache used to describe entities
        comparator: Equality comparator used for change detection
        engine: Diff engine producing the change records
        settings: Soft-delete and auditable field names
        clock: Returns the save time
    """
    _logger = logging.getLogger("ChangeTracker")

    def __init__(
        self,
        cache: Optional[DescriptorCache] = None,
        comparator: Optional[EqualityComparator] = None,
        engine: Optional[ChangeDiffEngine] = None,
        settings: Optional[RecordKitSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self.cache = cache or default_cache
        self.comparator = comparator or EqualityComparator(self.cache, self.settings)
        self.clock = clock or utc_now
        self.engine = engine or ChangeDiffEngine(self.settings, self.clock)
        self._entries: Dict[int, TrackedEntry] = {}

    # Tracking

    def add(self, entity: Any) -> TrackedEntry:
        """Track a new entity; it is saved as a Create."""
        descriptor = self._describe(entity)
        entry = self._entries.get(id(entity))
        if entry is not None and entry.state != EntryState.DELETED:
            raise ValueError(f"{descriptor.table_name} is already tracked as {entry.state.value}")
        entry = TrackedEntry(entity, descriptor, EntryState.ADDED)
        self._entries[id(entity)] = entry
        self._logger.debug(f"Added {entry!r}")
        return entry

    def attach(self, entity: Any, cascade: bool = False) -> TrackedEntry:
        """
        Track an existing entity as unchanged, snapshotting its current values.

        Args:
            entity: The entity to attach
            cascade: Also attach every keyed entity reachable from it

        Returns:
            The entry of the root entity
        """
        descriptor = self._describe(entity)
        if cascade:
            graph = ObjectGraph()
            graph.build(entity, self.cache)
            for obj in graph.get_topological_sort():
                if obj is entity or id(obj) in self._entries:
                    continue
                if not self.cache.describe_instance(obj).key_fields:
                    self._logger.debug(f"Skipping keyless {type(obj).__name__} during cascade attach")
                    continue
                self._attach_one(obj, self.cache.describe_instance(obj))
        return self._attach_one(entity, descriptor)

    def _attach_one(self, entity: Any, descriptor: TypeDescriptor) -> TrackedEntry:
        entry = self._entries.get(id(entity))
        if entry is not None:
            return entry
        entry = TrackedEntry(entity, descriptor, EntryState.UNCHANGED)
        entry.take_snapshot()
        self._entries[id(entity)] = entry
        self._logger.debug(f"Attached {entry!r}")
        return entry

    def remove(self, entity: Any) -> Optional[TrackedEntry]:
        """
        Schedule a Delete. An entity added in this unit of work is simply
        forgotten and None is returned.
        """
        require_not_none(entity, "entity")
        entry = self._entries.get(id(entity))
        if entry is None:
            entry = self.attach(entity)
        if entry.state == EntryState.ADDED:
            del self._entries[id(entity)]
            self._logger.debug(f"Forgot added {entry.descriptor.table_name}")
            return None
        entry.state = EntryState.DELETED
        return entry

    def mark_modified(self, entity: Any, *field_names: str) -> TrackedEntry:
        """Mark fields of an attached entity as modified, whether or not their values changed."""
        require_not_none(entity, "entity")
        entry = self._entries.get(id(entity))
        if entry is None:
            raise ValueError(f"{type(entity).__name__} is not tracked")
        for name in field_names:
            if entry.descriptor.field(name) is None:
                raise ValueError(f"{entry.descriptor.table_name} has no field '{name}'")
            entry.marked.add(name)
        if entry.state == EntryState.UNCHANGED and entry.marked:
            entry.state = EntryState.MODIFIED
        return entry

    def entry(self, entity: Any) -> Optional[TrackedEntry]:
        return self._entries.get(id(entity))

    @property
    def entries(self) -> List[TrackedEntry]:
        return list(self._entries.values())

    def has_changes(self) -> bool:
        self.detect_changes()
        return any(entry.state != EntryState.UNCHANGED for entry in self._entries.values())

    def clear(self) -> None:
        self._entries.clear()

    # Change detection

    def detect_changes(self) -> int:
        """
        Compare attached entities with their snapshots.

        Returns:
            Number of entries in the modified state afterwards
        """
        modified = 0
        for entry in self._entries.values():
            if entry.state in (EntryState.ADDED, EntryState.DELETED):
                continue
            entry.detected = {
                f.name
                for f in entry.tracked_fields
                if not self.comparator.equal(entry.snapshot.get(f.name), getattr(entry.entity, f.name, None))
            }
            if entry.modified_fields:
                entry.state = EntryState.MODIFIED
                modified += 1
            else:
                entry.state = EntryState.UNCHANGED
        self._logger.debug(f"Detected {modified} modified entities")
        return modified

    # Save

    def save(self, actor: Optional[str] = None) -> List[ChangeRecord]:
        """
        Apply the save hooks, diff every pending entity and accept the changes.

        Args:
            actor: Identity stamped on entities and records

        Returns:
            The change records, in tracking order
        """
        actor = actor or self.settings.default_actor
        self.detect_changes()
        now = self.clock()

        pending = [e for e in self._entries.values() if e.state != EntryState.UNCHANGED]
        for entry in pending:
            self._apply_soft_delete(entry, actor, now)
            self._apply_auditable(entry, actor, now)

        mutations = [self._mutation_for(entry) for entry in pending]
        records = self.engine.diff_all(mutations, actor)

        self._accept(pending)
        self._logger.info(f"Saved {len(pending)} entities, {len(records)} change records")
        return records

    def _apply_soft_delete(self, entry: TrackedEntry, actor: str, now: datetime) -> None:
        flag = self.settings.soft_active_field
        if not self._writable(entry, flag):
            return

        if entry.state == EntryState.DELETED:
            setattr(entry.entity, flag, False)
            entry.state = EntryState.MODIFIED
            entry.marked.add(flag)
            self._logger.debug(f"Soft deleting {entry.descriptor.table_name}")
        else:
            # not marked: an untouched inactive flag is reactivated by the diff engine
            setattr(entry.entity, flag, True)

        for name, value in ((self.settings.updated_field, now), (self.settings.updated_by_field, actor)):
            if self._writable(entry, name):
                setattr(entry.entity, name, value)
                entry.marked.add(name)

    def _apply_auditable(self, entry: TrackedEntry, actor: str, now: datetime) -> None:
        stamps = ((self.settings.created_by_field, actor), (self.settings.created_on_field, now))
        for name, value in stamps:
            if not self._writable(entry, name):
                continue
            if entry.state == EntryState.ADDED:
                setattr(entry.entity, name, value)
            elif entry.state == EntryState.MODIFIED and name in entry.snapshot:
                setattr(entry.entity, name, entry.snapshot[name])
                entry.marked.discard(name)
                entry.detected.discard(name)

    def _mutation_for(self, entry: TrackedEntry) -> PendingMutation:
        operation = {
            EntryState.ADDED: OperationKind.CREATE,
            EntryState.MODIFIED: OperationKind.UPDATE,
            EntryState.DELETED: OperationKind.DELETE,
        }[entry.state]
        modified = entry.modified_fields

        changes = []
        for f in entry.tracked_fields:
            current = getattr(entry.entity, f.name, None)
            if entry.state == EntryState.ADDED:
                changes.append(FieldChange(
                    name=f.name,
                    new_value=current,
                    is_modified=True,
                    is_key=f.is_key,
                    is_temporary=f.is_key and current is None,
                ))
            else:
                changes.append(FieldChange(
                    name=f.name,
                    old_value=entry.snapshot.get(f.name),
                    new_value=current,
                    is_modified=f.name in modified,
                    is_key=f.is_key,
                ))

        soft_active = self.settings.soft_active_field
        return PendingMutation(
            entity_name=entry.descriptor.table_name,
            operation=operation,
            fields=changes,
            soft_active_field=soft_active if entry.descriptor.field(soft_active) is not None else None,
        )

    def _accept(self, entries: Iterable[TrackedEntry]) -> None:
        for entry in entries:
            if entry.state == EntryState.DELETED:
                del self._entries[id(entry.entity)]
                continue
            entry.state = EntryState.UNCHANGED
            entry.take_snapshot()

    # Helpers

    def _describe(self, entity: Any) -> TypeDescriptor:
        require_not_none(entity, "entity")
        if not self.cache.is_described(entity):
            raise ValueError(f"{type(entity).__name__} is not a described entity type")
        descriptor = self.cache.describe_instance(entity)
        if not descriptor.key_fields:
            raise ValueError(f"{descriptor.table_name} has no key fields")
        return descriptor

    @staticmethod
    def _writable(entry: TrackedEntry, name: str) -> bool:
        field = entry.descriptor.field(name)
        return field is not None and field.writable
