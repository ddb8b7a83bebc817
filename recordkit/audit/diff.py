"""
Change diff engine and audit records.

A PendingMutation describes one entity about to be saved: its name, the
operation the persistence layer intends to run and, per field, the old value,
the new value and whether the field was modified. The engine turns each
mutation into an immutable ChangeRecord:

1. KEYS:
   - Key fields go to the key map only, never to the old/new maps
   - Temporary (database generated) keys are recorded as pending and filled in
     later with ChangeRecord.resolve_keys
   - A key without a value, or a mutation without any key field, aborts the
     batch with MissingKeyError

2. OPERATIONS:
   - Create: every non-key new value, old map empty
   - Delete: every non-key old value, new map empty
   - Update: only fields that are modified and whose values differ

3. SOFT-ACTIVE FLAG (Update only):
   - Flag modified True -> False: the record becomes a Delete. Other changed
     fields of the same mutation are still recorded.
   - Flag False, untouched, and another non-passive field changed: the flag is
     forced to True and recorded (reactivation). The record stays an Update.
"""
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_core import to_jsonable_python

from recordkit.config import RecordKitSettings, get_settings
from recordkit.ecs.coercion import default_coercer
from recordkit.validation import require_not_none


class OperationKind(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


class MissingKeyError(RuntimeError):
    """A key field of a mutation carries no value."""

    def __init__(self, entity_name: str, field_name: str):
        self.entity_name = entity_name
        self.field_name = field_name
        super().__init__(f"Key field '{field_name}' of {entity_name} has no value")


class FieldChange(BaseModel):
    """Old and new value of one field of a pending mutation."""
    name: str
    old_value: Any = None
    new_value: Any = None
    is_modified: bool = False
    is_key: bool = False
    is_temporary: bool = False

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class PendingMutation(BaseModel):
    """An entity about to be saved, as seen by the diff engine."""
    entity_name: str = Field(max_length=100)
    operation: OperationKind
    fields: List[FieldChange] = Field(default_factory=list)
    soft_active_field: Optional[str] = Field(
        default=None,
        description="Name of the soft-active flag, None if the entity is not soft-deletable"
    )

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    def field(self, name: str) -> Optional[FieldChange]:
        for change in self.fields:
            if change.name == name:
                return change
        return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_json(values: Any) -> str:
    return json.dumps(to_jsonable_python(values, fallback=str))


class ChangeRecord(BaseModel):
    """
    Audit record of one mutated entity in one save.

    Attributes:
        entity_name: Entity or table name
        operation: Create, Update or Delete
        key_values: Key field name to value
        old_values: Field name to value before the save
        new_values: Field name to value after the save
        changed_fields: Changed field names in field order (Update and soft delete)
        actor: Identity of the user or process that saved
        timestamp: UTC, millisecond precision
        pending_keys: Temporary key fields awaiting their generated values
        pending_fields: Temporary non-key fields awaiting their generated values
    """
    entity_name: str = Field(max_length=100)
    operation: OperationKind
    key_values: Dict[str, Any] = Field(default_factory=dict)
    old_values: Dict[str, Any] = Field(default_factory=dict)
    new_values: Dict[str, Any] = Field(default_factory=dict)
    changed_fields: Tuple[str, ...] = ()
    actor: str = Field(max_length=50)
    timestamp: datetime = Field(default_factory=utc_now)
    pending_keys: Tuple[str, ...] = ()
    pending_fields: Tuple[str, ...] = ()

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        else:
            value = value.astimezone(timezone.utc)
        return value.replace(microsecond=value.microsecond // 1000 * 1000)

    @property
    def has_pending_keys(self) -> bool:
        return bool(self.pending_keys or self.pending_fields)

    def resolve_keys(self, values: Mapping[str, Any]) -> "ChangeRecord":
        """
        Fill in generated values for temporary fields.

        Keys go to the key map, other fields to the new-value map. Names that
        are not pending raise ValueError; pending names left out of `values`
        stay pending.

        Returns:
            A new record; this one is left untouched
        """
        require_not_none(values, "values")
        unknown = [name for name in values if name not in self.pending_keys and name not in self.pending_fields]
        if unknown:
            raise ValueError(f"Fields {unknown} of {self.entity_name} are not pending")

        key_values = dict(self.key_values)
        new_values = dict(self.new_values)
        for name, value in values.items():
            if value is None:
                raise MissingKeyError(self.entity_name, name)
            if name in self.pending_keys:
                key_values[name] = value
            else:
                new_values[name] = value

        return self.model_copy(update={
            "key_values": key_values,
            "new_values": new_values,
            "pending_keys": tuple(name for name in self.pending_keys if name not in values),
            "pending_fields": tuple(name for name in self.pending_fields if name not in values),
        })

    def to_trail(self) -> Dict[str, Any]:
        """
        Persisted layout of the record. Empty maps and an empty changed list are
        omitted; the primary key is always present.
        """
        if self.pending_keys:
            raise ValueError(f"Record for {self.entity_name} has unresolved keys {list(self.pending_keys)}")

        trail: Dict[str, Any] = {
            "UserId": self.actor,
            "Type": self.operation.value,
            "TableName": self.entity_name,
            "AuditOn": self.timestamp,
        }
        if self.old_values:
            trail["OldValues"] = _to_json(self.old_values)
        if self.new_values:
            trail["NewValues"] = _to_json(self.new_values)
        if self.changed_fields:
            trail["AffectedColumns"] = _to_json(list(self.changed_fields))
        trail["PrimaryKey"] = _to_json(self.key_values)
        return trail


def _differs(old: Any, new: Any) -> bool:
    """Shallow inequality; values that cannot be compared count as different."""
    if old is new:
        return False
    if old is None or new is None:
        return True
    try:
        return bool(old != new)
    except (TypeError, ValueError, ArithmeticError):
        return True


def _flag(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    return default_coercer.coerce_or_default(value, bool)


class ChangeDiffEngine:
    """
    Turns pending mutations into change records.

    Attributes:
        settings: Immutable/passive field policy and empty-update suppression
        clock: Returns the current time; records are stamped with it
    """
    _logger = logging.getLogger("ChangeDiffEngine")

    def __init__(self, settings: Optional[RecordKitSettings] = None, clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings or get_settings()
        self.clock = clock or utc_now

    def diff(self, mutation: PendingMutation, actor: Optional[str] = None) -> Optional[ChangeRecord]:
        """
        Diff one mutation.

        Args:
            mutation: The pending mutation
            actor: Identity stamped on the record, defaults to the configured actor

        Returns:
            The change record, or None if it was an empty Update and empty
            updates are suppressed

        Raises:
            MissingKeyError: If a non-temporary key field has no value, or the
                mutation carries no key field at all
        """
        require_not_none(mutation, "mutation")
        actor = actor or self.settings.default_actor

        key_values: Dict[str, Any] = {}
        pending_keys: List[str] = []
        pending_fields: List[str] = []
        for change in mutation.fields:
            if not change.is_key:
                continue
            if change.is_temporary:
                pending_keys.append(change.name)
                continue
            value = self._key_value(mutation.operation, change)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise MissingKeyError(mutation.entity_name, change.name)
            key_values[change.name] = value
        if not key_values and not pending_keys:
            raise MissingKeyError(mutation.entity_name, "<key>")

        if mutation.operation == OperationKind.CREATE:
            operation = OperationKind.CREATE
            old_values: Dict[str, Any] = {}
            new_values: Dict[str, Any] = {}
            for change in mutation.fields:
                if change.is_key:
                    continue
                if change.is_temporary:
                    pending_fields.append(change.name)
                    continue
                new_values[change.name] = change.new_value
            changed: List[str] = []
        elif mutation.operation == OperationKind.DELETE:
            operation = OperationKind.DELETE
            old_values = {c.name: c.old_value for c in mutation.fields if not c.is_key}
            new_values = {}
            changed = []
        else:
            operation, old_values, new_values, changed = self._diff_update(mutation)

        record = ChangeRecord(
            entity_name=mutation.entity_name,
            operation=operation,
            key_values=key_values,
            old_values=old_values,
            new_values=new_values,
            changed_fields=tuple(changed),
            actor=actor,
            timestamp=self.clock(),
            pending_keys=tuple(pending_keys),
            pending_fields=tuple(pending_fields),
        )

        if operation == OperationKind.UPDATE and not changed and self.settings.suppress_empty_updates:
            self._logger.warning(f"Suppressed empty update of {mutation.entity_name} {key_values}")
            return None

        self._logger.debug(f"{operation.value} {mutation.entity_name} {key_values}: changed={list(changed)}")
        return record

    def diff_all(self, mutations: Iterable[PendingMutation], actor: Optional[str] = None) -> List[ChangeRecord]:
        """
        Diff a batch of mutations in order. A MissingKeyError in any mutation
        propagates and no record of the batch is returned.
        """
        require_not_none(mutations, "mutations")
        records: List[ChangeRecord] = []
        for mutation in mutations:
            record = self.diff(mutation, actor)
            if record is not None:
                records.append(record)
        self._logger.info(f"Produced {len(records)} change records")
        return records

    @staticmethod
    def _key_value(operation: OperationKind, change: FieldChange) -> Any:
        if operation == OperationKind.DELETE:
            return change.old_value if change.old_value is not None else change.new_value
        return change.new_value if change.new_value is not None else change.old_value

    def _diff_update(self, mutation: PendingMutation) -> Tuple[OperationKind, Dict[str, Any], Dict[str, Any], List[str]]:
        immutable = set(self.settings.immutable_fields)
        passive = set(self.settings.passive_fields)
        flag_name = mutation.soft_active_field
        flag = mutation.field(flag_name) if flag_name else None

        def genuinely_changed(change: FieldChange) -> bool:
            return change.is_modified and _differs(change.old_value, change.new_value)

        soft_delete = bool(
            flag is not None
            and flag.is_modified
            and _flag(flag.old_value) is True
            and _flag(flag.new_value) is False
        )
        reactivate = bool(
            flag is not None
            and not flag.is_modified
            and _flag(flag.old_value) is False
            and any(
                genuinely_changed(c)
                for c in mutation.fields
                if c.name != flag_name and not c.is_key and c.name not in immutable and c.name not in passive
            )
        )

        old_values: Dict[str, Any] = {}
        new_values: Dict[str, Any] = {}
        changed: List[str] = []
        for change in mutation.fields:
            if change.is_key or change.name in immutable:
                continue
            if flag is not None and change.name == flag_name:
                if soft_delete:
                    old_values[change.name] = change.old_value
                    new_values[change.name] = change.new_value
                    changed.append(change.name)
                elif reactivate:
                    old_values[change.name] = change.old_value
                    new_values[change.name] = True
                    changed.append(change.name)
                elif genuinely_changed(change):
                    old_values[change.name] = change.old_value
                    new_values[change.name] = change.new_value
                    changed.append(change.name)
                continue
            if genuinely_changed(change):
                old_values[change.name] = change.old_value
                new_values[change.name] = change.new_value
                changed.append(change.name)

        if soft_delete:
            self._logger.info(f"Soft delete of {mutation.entity_name} recorded as Delete")
            return OperationKind.DELETE, old_values, new_values, changed
        if reactivate:
            self._logger.info(f"Reactivated {mutation.entity_name}")
        return OperationKind.UPDATE, old_values, new_values, changed
