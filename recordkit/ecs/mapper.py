"""
Graph mapper.

Copies one object graph into another, possibly differently shaped, set of
types. Fields are matched by name; only fields present on both sides are
touched.

1. VALUE RULES (per field):
   - Destination already accepts the source value: copied as-is
   - Scalars of a different but convertible type: coerced, skipped on failure
   - Nested objects: mapped into the type given by the caller's type mappings,
     falling back to the destination field's declared type
   - Sequences: a new container of independently mapped elements, in order
   - None is never written, so destination defaults survive

2. TRAVERSAL:
   - Nested objects are not mapped through recursion. Each (source, new
     destination) pair is pushed onto a work stack and filled later.
   - A memo keyed by (source identity, destination type) returns the already
     allocated destination, so a self-referential source maps to a
     self-referential result instead of looping.

Sources may be described objects or plain mappings (schema-less rows).
Destinations may be pydantic models, dataclasses, registered plain classes
or `dict`.
"""
import dataclasses
import logging
import types
from collections.abc import Mapping as MappingABC
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar, Union, get_origin

from pydantic import BaseModel

from recordkit.ecs.coercion import ValueCoercer, default_coercer
from recordkit.ecs.descriptors import (
    DescriptorCache, FieldDescriptor, FieldKind, default_cache
)
from recordkit.validation import require_not_none, require_type

T = TypeVar('T')

TypeMappings = Dict[type, type]

_SEQUENCE_TYPES = (list, tuple, set, frozenset)


def _is_instance(value: Any, declared: Any) -> bool:
    """isinstance that tolerates typing constructs it cannot check."""
    if declared is Any or declared is None:
        return True
    origin = get_origin(declared)
    check = declared if origin is Union or origin is types.UnionType else (origin or declared)
    try:
        return isinstance(value, check)
    except TypeError:
        return False


class _MappingRun:
    """State of one map call: the work stack and the identity memo."""

    def __init__(
        self,
        mapper: "GraphMapper",
        type_mappings: Optional[TypeMappings],
        ignore_sequences: bool,
        ignore_fields: Iterable[str],
    ):
        self.mapper = mapper
        self.type_mappings: TypeMappings = dict(type_mappings or {})
        self.ignore_sequences = ignore_sequences
        self.ignored = {name.lower() for name in ignore_fields}
        self.memo: Dict[Tuple[int, Any], Any] = {}
        self.stack: List[Tuple[Any, Any]] = []

    def allocate(self, source: Any, destination_type: Any) -> Any:
        key = (id(source), destination_type)
        existing = self.memo.get(key)
        if existing is not None:
            return existing
        instance = self.mapper.new_instance(destination_type)
        self.memo[key] = instance
        self.stack.append((source, instance))
        return instance

    def adopt(self, source: Any, destination: Any) -> None:
        self.memo[(id(source), type(destination))] = destination
        self.stack.append((source, destination))

    def drain(self) -> int:
        filled = 0
        while self.stack:
            source, destination = self.stack.pop()
            if isinstance(destination, dict):
                self._fill_dict(source, destination)
            else:
                self._fill(source, destination)
            filled += 1
        return filled

    def _fill(self, source: Any, destination: Any) -> None:
        cache = self.mapper.cache
        source_descriptor = cache.describe_instance(source)
        destination_descriptor = cache.resolve(type(destination))

        for source_field in source_descriptor.fields:
            if source_field.name.lower() in self.ignored:
                continue
            destination_field = destination_descriptor.field(source_field.name)
            if destination_field is None or not destination_field.writable:
                continue

            value = _read(source, source_field.name)
            if value is None:
                continue

            mapped, ok = self._convert(value, source_field, destination_field)
            if ok:
                setattr(destination, destination_field.name, mapped)

    def _fill_dict(self, source: Any, destination: Dict[str, Any]) -> None:
        source_descriptor = self.mapper.cache.describe_instance(source)
        for source_field in source_descriptor.fields:
            if source_field.name.lower() in self.ignored:
                continue
            value = _read(source, source_field.name)
            if value is None:
                destination[source_field.name] = None
                continue
            if self.mapper.cache.is_described(value):
                destination[source_field.name] = self.allocate(value, dict)
            elif isinstance(value, _SEQUENCE_TYPES):
                if self.ignore_sequences:
                    continue
                destination[source_field.name] = [
                    self.allocate(item, dict) if self.mapper.cache.is_described(item) else item
                    for item in value
                ]
            elif isinstance(value, MappingABC):
                destination[source_field.name] = dict(value)
            else:
                destination[source_field.name] = value

    def _convert(self, value: Any, source_field: FieldDescriptor, destination_field: FieldDescriptor) -> Tuple[Any, bool]:
        cache = self.mapper.cache
        declared = destination_field.value_type

        if declared is Any:
            return value, True

        if cache.is_described(value) or (isinstance(value, MappingABC) and destination_field.kind == FieldKind.OBJECT):
            if destination_field.kind != FieldKind.OBJECT:
                return None, False
            if _is_instance(value, declared):
                return value, True
            target = self._target_type(type(value), source_field.value_type, declared)
            if target is None:
                return None, False
            return self.allocate(value, target), True

        if isinstance(value, _SEQUENCE_TYPES):
            if destination_field.kind != FieldKind.SEQUENCE:
                return None, False
            element_type = destination_field.element_type
            if all(item is None or _is_instance(item, element_type) for item in value):
                return _container_for(destination_field, value), True
            if self.ignore_sequences:
                return None, False
            return self._map_sequence(value, source_field, destination_field), True

        if isinstance(value, MappingABC):
            if destination_field.kind != FieldKind.MAPPING:
                return None, False
            return dict(value), True

        if destination_field.kind not in (FieldKind.SCALAR, FieldKind.STRING):
            return None, False

        result = self.mapper.coercer.try_coerce(value, destination_field.annotation)
        if not result.ok or result.value is None:
            return None, False
        return result.value, True

    def _map_sequence(self, value: Iterable[Any], source_field: FieldDescriptor, destination_field: FieldDescriptor) -> Any:
        cache = self.mapper.cache
        declared_element = destination_field.element_type
        items = []
        for item in value:
            if item is None:
                continue
            if cache.is_described(item) or isinstance(item, MappingABC):
                target = self._target_type(type(item), source_field.element_type, declared_element)
                if target is None:
                    continue
                items.append(self.allocate(item, target))
            elif _is_instance(item, declared_element):
                items.append(item)
            else:
                converted = self.mapper.coercer.coerce_or_default(item, declared_element)
                if converted is not None:
                    items.append(converted)
        return _container_for(destination_field, items)

    def _target_type(self, runtime_type: type, declared_source: Any, declared_destination: Any) -> Optional[Any]:
        for candidate in (runtime_type, declared_source):
            if isinstance(candidate, type) and candidate in self.type_mappings:
                return self.type_mappings[candidate]
        if declared_destination is dict or self.mapper.cache.is_object_type(declared_destination):
            return declared_destination
        return None


def _read(source: Any, name: str) -> Any:
    if isinstance(source, MappingABC):
        return source.get(name)
    return getattr(source, name, None)


def _container_for(destination_field: FieldDescriptor, items: Iterable[Any]) -> Any:
    declared = destination_field.value_type
    container = get_origin(declared) or declared
    if container in (tuple, set, frozenset):
        return container(items)
    return list(items)


_SCALAR_ZEROS = {bool: False, int: 0, float: 0.0, Decimal: Decimal(0), str: ""}


def _zero_value(field: Optional[FieldDescriptor]) -> Any:
    """Zero value for a required destination field no source has filled yet."""
    if field is None or field.nullable:
        return None
    if field.kind == FieldKind.SEQUENCE:
        return _container_for(field, ())
    if field.kind == FieldKind.MAPPING:
        return {}
    if isinstance(field.value_type, type):
        return _SCALAR_ZEROS.get(field.value_type)
    return None


class GraphMapper:
    """
    Maps source graphs into destination types using type descriptors.

    Attributes:
        cache: Descriptor cache used for both source and destination types
        coercer: Value coercer used for scalar conversions
    """
    _logger = logging.getLogger("GraphMapper")

    def __init__(self, cache: Optional[DescriptorCache] = None, coercer: Optional[ValueCoercer] = None):
        self.cache = cache or default_cache
        self.coercer = coercer or default_coercer

    def map(
        self,
        source: Any,
        destination_type: Type[T],
        type_mappings: Optional[TypeMappings] = None,
        ignore_sequences: bool = False,
        ignore_fields: Iterable[str] = (),
    ) -> T:
        """
        Map a source object into a newly allocated destination instance.

        Args:
            source: Object or mapping to read from
            destination_type: Type of the result
            type_mappings: Source type to destination type overrides for nested objects
            ignore_sequences: Skip sequences whose elements need mapping
            ignore_fields: Field names to skip at every depth (case-insensitive)

        Returns:
            The new destination instance
        """
        require_not_none(source, "source")
        require_type(destination_type, "destination_type")

        run = _MappingRun(self, type_mappings, ignore_sequences, ignore_fields)
        result = run.allocate(source, destination_type)
        filled = run.drain()
        self._logger.info(f"Mapped {type(source).__name__} to {destination_type.__name__} ({filled} objects)")
        return result

    def map_into(
        self,
        source: Any,
        destination: T,
        type_mappings: Optional[TypeMappings] = None,
        ignore_sequences: bool = False,
        ignore_fields: Iterable[str] = (),
    ) -> T:
        """Map a source object into an existing destination instance and return it."""
        require_not_none(source, "source")
        require_not_none(destination, "destination")

        run = _MappingRun(self, type_mappings, ignore_sequences, ignore_fields)
        run.adopt(source, destination)
        filled = run.drain()
        self._logger.info(f"Mapped {type(source).__name__} into existing {type(destination).__name__} ({filled} objects)")
        return destination

    def map_many(
        self,
        sources: Iterable[Any],
        destination_type: Type[T],
        type_mappings: Optional[TypeMappings] = None,
        ignore_sequences: bool = False,
        ignore_fields: Iterable[str] = (),
    ) -> List[T]:
        """Map every source independently; None entries are dropped."""
        require_not_none(sources, "sources")
        return [
            self.map(source, destination_type, type_mappings, ignore_sequences, ignore_fields)
            for source in sources
            if source is not None
        ]

    def new_instance(self, destination_type: Any) -> Any:
        """
        Allocate an empty destination without running validation.

        Declared defaults are applied. Required fields get the zero value of
        their type (None when nullable, 0, False, "" or an empty container),
        so every field of the result is readable even when no source field
        fills it.
        """
        if destination_type is dict:
            return {}
        if isinstance(destination_type, type) and issubclass(destination_type, BaseModel):
            descriptor = self.cache.resolve(destination_type)
            zeros = {
                name: _zero_value(descriptor.field(name))
                for name, info in destination_type.model_fields.items()
                if info.is_required()
            }
            return destination_type.model_construct(_fields_set=set(), **zeros)
        if dataclasses.is_dataclass(destination_type):
            descriptor = self.cache.resolve(destination_type)
            instance = object.__new__(destination_type)
            for f in dataclasses.fields(destination_type):
                if f.default is not dataclasses.MISSING:
                    object.__setattr__(instance, f.name, f.default)
                elif f.default_factory is not dataclasses.MISSING:
                    object.__setattr__(instance, f.name, f.default_factory())
                else:
                    object.__setattr__(instance, f.name, _zero_value(descriptor.field(f.name)))
            return instance
        return destination_type()


def map_object(source: Any, destination_type: Type[T], **kwargs: Any) -> T:
    """Map with a mapper over the default cache and coercer."""
    return GraphMapper().map(source, destination_type, **kwargs)
