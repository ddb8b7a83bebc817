"""
Tests for deep structural equality.
These tests focus on numeric tolerance, ignore policies, navigation fields and
termination on cyclic and deep graphs.
"""
import math
import pytest
from datetime import datetime, timezone
from decimal import Decimal

from recordkit.config import RecordKitSettings
from recordkit.ecs.equality import EqualityComparator, are_equal, entities_equal

from conftest import Account, Customer, Item, ItemDto, Node, Order, Point, make_chain


@pytest.fixture
def comparator(settings) -> EqualityComparator:
    return EqualityComparator(settings=settings)


class TestScalarEquality:
    """Scalars, floats and decimals."""

    def test_reflexive(self, comparator, customer, order):
        for value in (1, "a", 1.5, Decimal("2.0"), customer, order, [1, 2], {"a": 1}):
            assert comparator.equal(value, value)

    def test_float_tolerance(self, comparator):
        assert comparator.equal(1.0, 1.0000001)
        assert not comparator.equal(1.0, 1.1)

    def test_nan_equals_nan(self, comparator):
        assert comparator.equal(float("nan"), float("nan"))
        assert not comparator.equal(float("nan"), 1.0)

    def test_infinities(self, comparator):
        assert comparator.equal(math.inf, math.inf)
        assert not comparator.equal(math.inf, -math.inf)
        assert not comparator.equal(math.inf, 1e308)

    def test_custom_tolerance(self):
        loose = EqualityComparator(settings=RecordKitSettings(float_tolerance=0.5))
        assert loose.equal(1.0, 1.4)
        assert not loose.equal(1.0, 1.6)

    def test_decimal_is_exact(self, comparator):
        assert comparator.equal(Decimal("10.00"), Decimal("10.000"))
        assert not comparator.equal(Decimal("10.01"), Decimal("10.00"))

    def test_none_handling(self, comparator):
        assert comparator.equal(None, None)
        assert not comparator.equal(None, 0)
        assert not comparator.equal("", None)

    def test_type_mismatch_is_not_equal(self, comparator):
        assert not comparator.equal(1, 1.0)
        assert not comparator.equal(1, True)
        assert not comparator.equal(Item(id=1), ItemDto(id=1))

    def test_datetimes_compare_natively(self, comparator):
        a = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert comparator.equal(a, datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert not comparator.equal(a, datetime(2024, 1, 2, tzinfo=timezone.utc))

    def test_mismatched_native_comparison_does_not_raise(self, comparator):
        class Grumpy:
            def __eq__(self, other):
                raise TypeError("no comparison")

        assert not comparator.equal(Grumpy(), Grumpy())


class TestObjectEquality:
    """Field by field comparison of described objects."""

    def test_equal_objects(self, comparator):
        a = Customer(id=1, name="A", score=1.0, balance=Decimal("1.0"), tags=["x"])
        b = Customer(id=1, name="A", score=1.0000001, balance=Decimal("1.00"), tags=["x"])
        assert comparator.equal(a, b)

    def test_field_difference(self, comparator):
        a = Customer(id=1, name="A")
        b = Customer(id=1, name="B")
        assert not comparator.equal(a, b)

    def test_list_field_difference(self, comparator):
        a = Customer(id=1, name="A", tags=["x", "y"])
        b = Customer(id=1, name="A", tags=["y", "x"])
        assert not comparator.equal(a, b)

    def test_dataclasses(self, comparator):
        assert comparator.equal(Point(1.0, 2.0), Point(1.0000001, 2.0))
        assert not comparator.equal(Point(1.0, 2.0), Point(1.0, 3.0))

    def test_mappings(self, comparator):
        assert comparator.equal({"a": 1.0, "b": [1]}, {"b": [1], "a": 1.0000001})
        assert not comparator.equal({"a": 1}, {"a": 1, "b": 2})

    def test_nested_objects_are_compared(self, comparator, customer):
        a = Order(id=1, customer=customer)
        b = Order(id=1, customer=customer.model_copy(update={"name": "Other"}))
        assert not comparator.equal(a, b)

    def test_ignore_fields_case_insensitive(self, comparator):
        a = Customer(id=1, name="A")
        b = Customer(id=1, name="B")
        assert comparator.equal(a, b, ignore_fields=["NAME"])

    def test_ignore_fields_apply_at_every_depth(self, comparator, customer):
        a = Order(id=1, customer=customer)
        b = Order(id=1, customer=customer.model_copy(update={"name": "Other"}))
        assert comparator.equal(a, b, ignore_fields=["name"])


class TestNavigationFields:
    """Navigation fields are skipped unless included."""

    def test_navigation_skipped_by_default(self, comparator):
        a = Order(id=1, items=[Item(id=1)])
        b = Order(id=1, items=[Item(id=2), Item(id=3)])
        assert comparator.equal(a, b)

    def test_navigation_included_on_request(self, comparator):
        a = Order(id=1, items=[Item(id=1)])
        b = Order(id=1, items=[Item(id=2)])
        assert not comparator.equal(a, b, include_fields=["items"])
        assert comparator.equal(a, Order(id=1, items=[Item(id=1)]), include_fields=["items"])


class TestEntityEquality:
    """Soft-delete and auditable bookkeeping fields are ignored."""

    def test_bookkeeping_fields_ignored(self):
        a = Account(id=1, name="A", active=True, updated_by="alice")
        b = Account(id=1, name="A", active=False, updated_by="bob",
                    created_on=datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert entities_equal(a, b)
        assert not are_equal(a, b)

    def test_business_fields_still_compared(self):
        a = Account(id=1, name="A")
        b = Account(id=1, name="B")
        assert not entities_equal(a, b)


class TestCycles:
    """Cyclic and deep graphs terminate."""

    def test_cyclic_graphs_equal(self, comparator, cyclic_nodes):
        a1, _ = cyclic_nodes
        a2 = Node(id=1, name="a")
        b2 = Node(id=2, name="b", next=a2)
        a2.next = b2
        assert comparator.equal(a1, a2)

    def test_cyclic_graphs_differ(self, comparator, cyclic_nodes):
        a1, _ = cyclic_nodes
        a2 = Node(id=1, name="a")
        b2 = Node(id=2, name="different", next=a2)
        a2.next = b2
        assert not comparator.equal(a1, a2)

    def test_self_loop(self, comparator):
        a = Node(id=1)
        a.next = a
        b = Node(id=1)
        b.next = b
        assert comparator.equal(a, b)

    def test_deep_chain_does_not_recurse(self, comparator):
        assert comparator.equal(make_chain(5000), make_chain(5000))

    def test_deep_chain_difference_at_tail(self, comparator):
        a = make_chain(3000)
        b = make_chain(3000)
        tail = b
        while tail.next is not None:
            tail = tail.next
        tail.name = "changed"
        assert not comparator.equal(a, b)


def nested_lists(depth: int, leaf=0) -> list:
    value = [leaf]
    for _ in range(depth):
        value = [value]
    return value


class TestDeepContainers:
    """Nested sequences and mappings share the work stack."""

    def test_deeply_nested_lists(self, comparator):
        assert comparator.equal(nested_lists(5000), nested_lists(5000))
        assert not comparator.equal(nested_lists(5000), nested_lists(5000, leaf=1))

    def test_deeply_nested_mappings(self, comparator):
        a, b = {"leaf": 1}, {"leaf": 1}
        for _ in range(5000):
            a, b = {"child": a}, {"child": b}
        assert comparator.equal(a, b)

    def test_self_containing_lists(self, comparator):
        a, b = [1], [1]
        a.append(a)
        b.append(b)
        assert comparator.equal(a, b)
