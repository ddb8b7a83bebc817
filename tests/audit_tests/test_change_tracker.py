"""
Tests for the in-memory change tracker.
These tests focus on the save hooks (soft delete, reactivation, creation
stamps), change detection against snapshots and cascade attach.
"""
import pytest
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from recordkit.audit.diff import MissingKeyError, OperationKind
from recordkit.audit.tracker import ChangeTracker, EntryState
from recordkit.config import RecordKitSettings
from recordkit.ecs.markers import AuditableEntity, SoftDeleteEntity

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)
NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class Account(SoftDeleteEntity, AuditableEntity):
    id: Optional[int] = None
    name: str = ""
    balance: float = 0.0


class Tag(BaseModel):
    id: int
    label: str = ""


class Invoice(BaseModel):
    id: int
    number: str = ""
    tags: List[Tag] = Field(default_factory=list)


class Note(BaseModel):
    text: str = ""


@pytest.fixture
def tracker() -> ChangeTracker:
    return ChangeTracker(settings=RecordKitSettings(), clock=lambda: NOW)


@pytest.fixture
def account() -> Account:
    return Account(id=1, name="A", balance=10.0, created_by="alice", created_on=CREATED)


class TestCreate:
    """Added entities produce Create records and get stamped."""

    def test_add_and_save(self, tracker):
        entity = Account(id=5, name="New")
        tracker.add(entity)
        records = tracker.save("bob")

        assert len(records) == 1
        record = records[0]
        assert record.operation == OperationKind.CREATE
        assert record.entity_name == "Account"
        assert record.key_values == {"id": 5}
        assert record.new_values["name"] == "New"
        assert record.new_values["created_by"] == "bob"
        assert record.actor == "bob"

        assert entity.created_by == "bob"
        assert entity.created_on == NOW
        assert entity.active is True
        assert entity.updated == NOW
        assert entity.updated_by == "bob"
        assert tracker.entry(entity).state == EntryState.UNCHANGED

    def test_generated_key_is_pending(self, tracker):
        tracker.add(Account(name="New"))
        record = tracker.save()[0]
        assert record.pending_keys == ("id",)
        assert record.resolve_keys({"id": 77}).key_values == {"id": 77}

    def test_remove_added_entity_forgets_it(self, tracker):
        entity = Account(id=5)
        tracker.add(entity)
        assert tracker.remove(entity) is None
        assert tracker.entry(entity) is None
        assert tracker.save() == []

    def test_add_twice_rejected(self, tracker):
        entity = Account(id=5)
        tracker.add(entity)
        with pytest.raises(ValueError):
            tracker.add(entity)


class TestUpdate:
    """Attached entities are compared with their snapshots."""

    def test_unchanged_entity_produces_nothing(self, tracker, account):
        tracker.attach(account)
        assert not tracker.has_changes()
        assert tracker.save() == []

    def test_modified_field(self, tracker, account):
        tracker.attach(account)
        account.name = "B"
        records = tracker.save("bob")

        assert len(records) == 1
        record = records[0]
        assert record.operation == OperationKind.UPDATE
        assert set(record.changed_fields) == {"name", "updated", "updated_by"}
        assert record.old_values["name"] == "A"
        assert record.new_values["name"] == "B"
        assert record.new_values["updated_by"] == "bob"

    def test_snapshot_refreshed_after_save(self, tracker, account):
        tracker.attach(account)
        account.name = "B"
        tracker.save()
        assert tracker.save() == []

    def test_snapshot_is_a_copy(self, tracker):
        invoice = Invoice(id=1, number="INV-1")
        tracker.attach(invoice)
        invoice.number = "INV-2"
        assert tracker.entry(invoice).snapshot["number"] == "INV-1"
        assert tracker.detect_changes() == 1

    def test_creation_stamps_are_kept(self, tracker, account):
        tracker.attach(account)
        account.name = "B"
        account.created_on = NOW
        account.created_by = "mallory"
        record = tracker.save("bob")[0]

        assert account.created_on == CREATED
        assert account.created_by == "alice"
        assert "created_on" not in record.changed_fields
        assert "created_by" not in record.changed_fields

    def test_mark_modified_without_value_change(self, tracker, account):
        tracker.attach(account)
        entry = tracker.mark_modified(account, "name")
        assert entry.state == EntryState.MODIFIED

        record = tracker.save()[0]
        assert record.operation == OperationKind.UPDATE
        assert "name" not in record.changed_fields

    def test_mark_modified_validation(self, tracker, account):
        with pytest.raises(ValueError):
            tracker.mark_modified(account, "name")
        tracker.attach(account)
        with pytest.raises(ValueError):
            tracker.mark_modified(account, "no_such_field")

    def test_plain_entity_update(self, tracker):
        invoice = Invoice(id=1, number="INV-1")
        tracker.attach(invoice)
        invoice.number = "INV-2"
        record = tracker.save()[0]
        assert record.changed_fields == ("number",)
        assert record.new_values == {"number": "INV-2"}


class TestSoftDelete:
    """Soft-deletable entities are deactivated instead of deleted."""

    def test_remove_soft_entity(self, tracker, account):
        tracker.attach(account)
        tracker.remove(account)
        record = tracker.save("bob")[0]

        assert record.operation == OperationKind.DELETE
        assert record.old_values["active"] is True
        assert record.new_values["active"] is False
        assert "active" in record.changed_fields
        assert account.active is False
        assert account.updated_by == "bob"
        assert tracker.entry(account).state == EntryState.UNCHANGED

    def test_remove_unattached_soft_entity(self, tracker, account):
        tracker.remove(account)
        assert tracker.save()[0].operation == OperationKind.DELETE

    def test_reactivation_on_modification(self, tracker):
        account = Account(id=1, name="A", active=False)
        tracker.attach(account)
        account.name = "B"
        record = tracker.save()[0]

        assert record.operation == OperationKind.UPDATE
        assert {"name", "active"} <= set(record.changed_fields)
        assert record.new_values["active"] is True
        assert account.active is True

    def test_remove_plain_entity(self, tracker):
        invoice = Invoice(id=3, number="INV-3", tags=[Tag(id=1)])
        tracker.attach(invoice)
        tracker.remove(invoice)
        record = tracker.save()[0]

        assert record.operation == OperationKind.DELETE
        assert record.old_values == {"number": "INV-3"}
        assert tracker.entry(invoice) is None


class TestCascadeAndValidation:
    """Cascade attach and rejected entities."""

    def test_cascade_attach(self, tracker):
        tag = Tag(id=7, label="old")
        invoice = Invoice(id=1, tags=[tag])
        tracker.attach(invoice, cascade=True)

        assert tracker.entry(tag) is not None
        tag.label = "new"
        records = tracker.save()
        assert [(r.entity_name, r.changed_fields) for r in records] == [("Tag", ("label",))]

    def test_attach_without_cascade(self, tracker):
        tag = Tag(id=7)
        tracker.attach(Invoice(id=1, tags=[tag]))
        assert tracker.entry(tag) is None

    def test_keyless_entity_rejected(self, tracker):
        with pytest.raises(ValueError):
            tracker.add(Note(text="x"))

    def test_undescribed_entity_rejected(self, tracker):
        with pytest.raises(ValueError):
            tracker.attach(42)

    def test_failed_save_keeps_changes_pending(self, tracker):
        account = Account(name="A")
        tracker.attach(account)
        account.name = "B"
        with pytest.raises(MissingKeyError):
            tracker.save()
        assert tracker.entry(account).state == EntryState.MODIFIED

    def test_clear(self, tracker, account):
        tracker.attach(account)
        tracker.clear()
        assert tracker.entries == []
