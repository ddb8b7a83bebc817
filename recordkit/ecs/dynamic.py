"""
Schema-less records.

Rows that arrive without a registered type (query results, decoded JSON) are
represented as a tagged DynamicValue instead of an open-ended object:

    Null | Bool | Number | String | List | Map

Helpers convert rows to typed instances through the GraphMapper and typed
instances back to plain dictionaries.
"""
import logging
from collections.abc import Mapping as MappingABC
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic_core import to_jsonable_python

from recordkit.ecs.descriptors import DescriptorCache, default_cache
from recordkit.ecs.mapper import GraphMapper
from recordkit.validation import require_not_none

T = TypeVar('T')

logger = logging.getLogger("DynamicValue")


class ValueKind(str, Enum):
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    LIST = "list"
    MAP = "map"


class DynamicValue(BaseModel):
    """
    Tagged value of a schema-less record.

    `value` holds a bool, a number, a string, a tuple of DynamicValues (LIST)
    or a dict of name to DynamicValue (MAP); it is None for NULL.
    """
    kind: ValueKind
    value: Any = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"DynamicValue({self.kind.value}, {self.value!r})"

    @property
    def is_null(self) -> bool:
        return self.kind == ValueKind.NULL

    def __getitem__(self, key: Any) -> "DynamicValue":
        if self.kind == ValueKind.MAP:
            return self.value[key]
        if self.kind == ValueKind.LIST:
            return self.value[key]
        raise TypeError(f"{self.kind.value} value is not subscriptable")

    def get(self, key: str, default: Optional["DynamicValue"] = None) -> Optional["DynamicValue"]:
        if self.kind != ValueKind.MAP:
            return default
        return self.value.get(key, default)

    def to_python(self) -> Any:
        """Plain Python structure: dicts, lists and scalars."""
        if self.kind == ValueKind.MAP:
            return {name: item.to_python() for name, item in self.value.items()}
        if self.kind == ValueKind.LIST:
            return [item.to_python() for item in self.value]
        return self.value

    @classmethod
    def null(cls) -> "DynamicValue":
        return cls(kind=ValueKind.NULL)

    @classmethod
    def from_python(cls, obj: Any, cache: Optional[DescriptorCache] = None) -> "DynamicValue":
        """
        Build a DynamicValue from plain data or described objects.

        Nested structures are converted with an explicit stack. Structures that
        contain themselves cannot be represented and raise ValueError.
        """
        cache = cache or default_cache
        results: List[DynamicValue] = []
        in_progress: set = set()
        stack: List[Tuple[Any, Optional[List[str]]]] = [(obj, None)]

        while stack:
            current, keys = stack.pop()

            if keys is not None:
                count = len(keys)
                children = results[len(results) - count:] if count else []
                if count:
                    del results[len(results) - count:]
                in_progress.discard(id(current))
                if isinstance(current, (list, tuple, set, frozenset)):
                    results.append(cls(kind=ValueKind.LIST, value=tuple(children)))
                else:
                    results.append(cls(kind=ValueKind.MAP, value=dict(zip(keys, children))))
                continue

            leaf = _leaf(current, cache)
            if leaf is not None:
                results.append(leaf)
                continue

            if id(current) in in_progress:
                raise ValueError(f"Cyclic {type(current).__name__} cannot be represented as a DynamicValue")
            in_progress.add(id(current))

            names, children = _children(current, cache)
            stack.append((current, names))
            for child in reversed(children):
                stack.append((child, None))

        return results[0]


def _leaf(value: Any, cache: DescriptorCache) -> Optional[DynamicValue]:
    if value is None:
        return DynamicValue.null()
    if isinstance(value, bool):
        return DynamicValue(kind=ValueKind.BOOL, value=value)
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, Enum):
        return DynamicValue(kind=ValueKind.NUMBER, value=value)
    if isinstance(value, str):
        return DynamicValue(kind=ValueKind.STRING, value=value)
    if isinstance(value, (list, tuple, set, frozenset, MappingABC)) or cache.is_described(value):
        return None
    if isinstance(value, Enum):
        return DynamicValue(kind=ValueKind.STRING, value=value.name)
    encoded = to_jsonable_python(value, fallback=str)
    if isinstance(encoded, (bool, int, float, str)) or encoded is None:
        return _leaf(encoded, cache)
    return DynamicValue(kind=ValueKind.STRING, value=str(value))


def _children(value: Any, cache: DescriptorCache) -> Tuple[List[str], List[Any]]:
    if isinstance(value, MappingABC):
        return [str(k) for k in value.keys()], list(value.values())
    if isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
        return [str(i) for i in range(len(items))], items
    descriptor = cache.describe_instance(value)
    names = [f.name for f in descriptor.fields]
    return names, [getattr(value, name, None) for name in names]


def to_dynamic_list(rows: Iterable[Any], cache: Optional[DescriptorCache] = None) -> List[DynamicValue]:
    """Convert rows to DynamicValues, one per row."""
    require_not_none(rows, "rows")
    return [DynamicValue.from_python(row, cache) for row in rows]


def map_rows(rows: Iterable[MappingABC], target_type: Type[T], mapper: Optional[GraphMapper] = None,
             **kwargs: Any) -> List[T]:
    """
    Map schema-less rows to typed instances. Only keys that name a field of
    the target type are used; values are coerced to the declared field types.
    """
    require_not_none(rows, "rows")
    mapper = mapper or GraphMapper()
    result = mapper.map_many(rows, target_type, **kwargs)
    logger.debug(f"Mapped {len(result)} rows to {target_type.__name__}")
    return result


def to_records(objects: Iterable[Any], mapper: Optional[GraphMapper] = None, **kwargs: Any) -> List[Dict[str, Any]]:
    """Map typed instances to plain dictionaries, nested objects included."""
    require_not_none(objects, "objects")
    mapper = mapper or GraphMapper()
    return mapper.map_many(objects, dict, **kwargs)
