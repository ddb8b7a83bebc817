"""
Deep structural equality.

Two values are equal when they have the same runtime type and every compared
field is equal. Nested described objects, sequences and mappings are not
compared through recursion: each pair is pushed onto an explicit work stack,
and a visited-pair set keyed by object identity guarantees that a pair is
compared at most once. Cyclic graphs therefore terminate and deep graphs
never exhaust the call stack.

The comparator never raises. Type mismatches, unconvertible values and errors
from a native `__eq__` all resolve to "not equal".
"""
import logging
import math
from collections.abc import Mapping as MappingABC
from typing import Any, Iterable, List, Optional, Set, Tuple

from recordkit.config import RecordKitSettings, get_settings
from recordkit.ecs.descriptors import DescriptorCache, default_cache
from recordkit.ecs.markers import AuditableEntity, SoftDeleteEntity

ENTITY_MARKERS: Tuple[type, ...] = (SoftDeleteEntity, AuditableEntity)

# (is_object, left, right): objects are compared field by field, other pairs as values
_Work = Tuple[bool, Any, Any]


class EqualityComparator:
    """
    Cycle-safe deep comparator driven by type descriptors.

    Attributes:
        cache: Descriptor cache used to classify fields
        tolerance: Absolute tolerance for floating point values
    """
    _logger = logging.getLogger("EntityComparison")

    def __init__(self, cache: Optional[DescriptorCache] = None, settings: Optional[RecordKitSettings] = None):
        self.cache = cache or default_cache
        self.tolerance = (settings or get_settings()).float_tolerance

    def equal(
        self,
        a: Any,
        b: Any,
        ignore_fields: Optional[Iterable[str]] = None,
        ignore_markers: Iterable[type] = (),
        include_fields: Optional[Iterable[str]] = None,
    ) -> bool:
        """
        Compare two values deeply.

        Args:
            a: First value
            b: Second value
            ignore_fields: Field names skipped at every depth (case-insensitive)
            ignore_markers: Marker classes whose declared fields are skipped
            include_fields: Navigation fields to compare anyway

        Returns:
            True if the values are structurally equal
        """
        ignore_fields = set(ignore_fields) if ignore_fields else None
        ignore_markers = tuple(ignore_markers)
        include_fields = set(include_fields) if include_fields else None

        stack: List[_Work] = []
        seen: Set[Tuple[int, int]] = set()

        if not self._values_equal(a, b, stack, seen):
            return False

        while stack:
            is_object, left, right = stack.pop()
            if not is_object:
                if not self._values_equal(left, right, stack, seen):
                    return False
                continue
            descriptor = self.cache.resolve(type(left))
            for field in descriptor.view(ignore_fields, ignore_markers, include_fields):
                value1 = getattr(left, field.name, None)
                value2 = getattr(right, field.name, None)
                if not self._values_equal(value1, value2, stack, seen):
                    self._logger.debug(f"Field '{field.name}' differs on {type(left).__name__}")
                    return False

        self._logger.debug(f"Compared {len(seen)} nested pairs: equal")
        return True

    def entities_equal(self, a: Any, b: Any, ignore_fields: Optional[Iterable[str]] = None) -> bool:
        """Equality that also skips soft-delete and auditable bookkeeping fields."""
        return self.equal(a, b, ignore_fields=ignore_fields, ignore_markers=ENTITY_MARKERS)

    def floats_equal(self, a: float, b: float) -> bool:
        if math.isnan(a) and math.isnan(b):
            return True
        if math.isinf(a) or math.isinf(b):
            return a == b
        return abs(a - b) <= self.tolerance

    @staticmethod
    def _first_visit(value1: Any, value2: Any, seen: Set[Tuple[int, int]]) -> bool:
        pair = (id(value1), id(value2))
        if pair in seen:
            return False
        seen.add(pair)
        return True

    def _values_equal(self, value1: Any, value2: Any, stack: List[_Work], seen: Set[Tuple[int, int]]) -> bool:
        if value1 is value2:
            return True
        if value1 is None or value2 is None:
            return False

        value_type = type(value1)
        if value_type is not type(value2):
            return False

        if isinstance(value1, float):
            return self.floats_equal(value1, value2)

        if isinstance(value1, (bool, int, str, bytes)):
            return value1 == value2

        if self.cache.is_object_type(value_type):
            if self._first_visit(value1, value2, seen):
                stack.append((True, value1, value2))
            return True

        if isinstance(value1, MappingABC):
            if set(value1.keys()) != set(value2.keys()):
                return False
            if self._first_visit(value1, value2, seen):
                stack.extend((False, value1[key], value2[key]) for key in value1)
            return True

        if isinstance(value1, (list, tuple)):
            if len(value1) != len(value2):
                return False
            if self._first_visit(value1, value2, seen):
                stack.extend((False, x, y) for x, y in zip(value1, value2))
            return True

        try:
            # Decimal lands here too: exact value equality, no tolerance
            return bool(value1 == value2)
        except (ArithmeticError, TypeError, ValueError) as e:
            self._logger.debug(f"Native equality failed for {value_type.__name__}: {e}")
            return False


def are_equal(a: Any, b: Any, **kwargs: Any) -> bool:
    """Compare with a comparator over the default descriptor cache."""
    return EqualityComparator().equal(a, b, **kwargs)


def entities_equal(a: Any, b: Any, ignore_fields: Optional[Iterable[str]] = None) -> bool:
    return EqualityComparator().entities_equal(a, b, ignore_fields=ignore_fields)
