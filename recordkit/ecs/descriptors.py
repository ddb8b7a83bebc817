"""
Type descriptor cache.

Every other component works on TypeDescriptors instead of inspecting objects
directly. A descriptor lists the fields of a type in declaration order and
classifies each one:

1. SCALAR / STRING:  plain values compared and copied as-is
2. OBJECT:           nested described objects, walked field by field
3. SEQUENCE:         ordered collections; sequences of objects are navigation
4. MAPPING:          dict-like values compared key by key

Schemas come from an explicit registry (`register` / `describe`). Pydantic
models and dataclasses that were never registered are described from their
own field declarations the first time they are resolved. Descriptors are
immutable and cached for the lifetime of the cache; ignore policies are
applied through `TypeDescriptor.view` and never change the cached entry.
"""
import dataclasses
import inspect
import logging
import types
import typing
from collections.abc import Mapping as MappingABC, Sequence as SequenceABC
from collections.abc import Set as SetABC, Iterable as IterableABC
from enum import Enum
from functools import lru_cache
from typing import (
    Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple,
    Type, TypeVar, Union, get_args, get_origin
)

from pydantic import BaseModel, ConfigDict, Field
from pydantic.errors import PydanticUndefinedAnnotation

from recordkit.validation import require_not_none, require_type

T = TypeVar('T')

NoneType = type(None)

SEQUENCE_ORIGINS = (list, tuple, set, frozenset, SequenceABC, SetABC, IterableABC)
MAPPING_ORIGINS = (dict, MappingABC)


class FieldKind(str, Enum):
    """Declared value kind of a field."""
    SCALAR = "scalar"
    STRING = "string"
    OBJECT = "object"
    SEQUENCE = "sequence"
    MAPPING = "mapping"


class FieldDescriptor(BaseModel):
    """One accessible field of a described type."""
    name: str
    kind: FieldKind
    annotation: Any = Field(default=Any, description="Declared annotation, Optional wrapper included")
    value_type: Any = Field(default=Any, description="Declared type with the Optional wrapper removed")
    element_type: Any = Field(default=None, description="Element type for sequences")
    nullable: bool = False
    readable: bool = True
    writable: bool = True
    is_key: bool = False
    navigation: bool = False

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"FieldDescriptor({self.name}, {self.kind.value})"


class TypeDescriptor(BaseModel):
    """
    Ordered field list of a type together with its key fields and table name.
    """
    described_type: Any
    fields: Tuple[FieldDescriptor, ...] = ()
    table_name: str = ""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    def __repr__(self) -> str:
        return f"TypeDescriptor({self.table_name}, fields={len(self.fields)})"

    @property
    def key_fields(self) -> Tuple[FieldDescriptor, ...]:
        return tuple(f for f in self.fields if f.is_key)

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def field(self, name: str, case_insensitive: bool = False) -> Optional[FieldDescriptor]:
        """Look up a field by name, or None when the type has no such field."""
        if case_insensitive:
            lowered = name.lower()
            for f in self.fields:
                if f.name.lower() == lowered:
                    return f
            return None
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def view(
        self,
        ignore_fields: Optional[Iterable[str]] = None,
        ignore_markers: Iterable[type] = (),
        include_fields: Optional[Iterable[str]] = None,
        include_navigation: bool = False,
    ) -> Tuple[FieldDescriptor, ...]:
        """
        Effective field list under an ignore policy.

        Args:
            ignore_fields: Field names to drop (case-insensitive)
            ignore_markers: Marker classes whose declared fields are dropped
                when the described type derives from them
            include_fields: Navigation fields to keep anyway (case-insensitive)
            include_navigation: Keep every navigation field

        Returns:
            Tuple of field descriptors in declaration order
        """
        ignored = {name.lower() for name in ignore_fields} if ignore_fields else set()
        included = {name.lower() for name in include_fields} if include_fields else set()

        if isinstance(self.described_type, type):
            for marker in ignore_markers:
                if isinstance(marker, type) and issubclass(self.described_type, marker):
                    ignored |= marker_field_names(marker)

        result = []
        for f in self.fields:
            lowered = f.name.lower()
            if not f.readable or lowered in ignored:
                continue
            if f.navigation and not include_navigation and lowered not in included:
                continue
            result.append(f)
        return tuple(result)


@lru_cache(maxsize=None)
def marker_field_names(marker: type) -> FrozenSet[str]:
    """Lower-cased names of the fields a marker class declares."""
    if isinstance(marker, type) and issubclass(marker, BaseModel):
        return frozenset(name.lower() for name in marker.model_fields)
    if dataclasses.is_dataclass(marker):
        return frozenset(f.name.lower() for f in dataclasses.fields(marker))
    names = set()
    for klass in getattr(marker, "__mro__", (marker,)):
        if klass is object:
            continue
        names.update(name.lower() for name in getattr(klass, "__annotations__", {}))
    return frozenset(names)


def unwrap_optional(annotation: Any) -> Tuple[Any, bool]:
    """Split `Optional[X]` into `(X, True)`; other annotations come back as `(annotation, False)`."""
    origin = get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        args = get_args(annotation)
        remaining = tuple(a for a in args if a is not NoneType)
        nullable = len(remaining) != len(args)
        if len(remaining) == 1:
            return remaining[0], nullable
        return Union[remaining], nullable
    if annotation is None or annotation is NoneType:
        return Any, True
    return annotation, False


class _RegisteredSchema(BaseModel):
    """Raw registration, classified lazily at first resolve."""
    fields: Dict[str, Any]
    keys: Tuple[str, ...] = ()
    navigation: Tuple[str, ...] = ()
    read_only: Tuple[str, ...] = ()
    table_name: Optional[str] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class DescriptorCache:
    """
    Get-or-compute cache of TypeDescriptors keyed by type identity.

    Concurrent first resolution of the same type may build the descriptor
    twice; `dict.setdefault` keeps whichever landed first, so every caller
    sees the same instance afterwards.
    """
    _logger = logging.getLogger("DescriptorCache")

    def __init__(self) -> None:
        self._descriptors: Dict[type, TypeDescriptor] = {}
        self._schemas: Dict[type, _RegisteredSchema] = {}

    # Registration

    def register(
        self,
        described_type: type,
        fields: Optional[Mapping[str, Any]] = None,
        keys: Iterable[str] = (),
        navigation: Iterable[str] = (),
        read_only: Iterable[str] = (),
        table_name: Optional[str] = None,
    ) -> None:
        """
        Register the schema of a type.

        Args:
            described_type: The type being described
            fields: Ordered mapping of field name to annotation. When omitted the
                fields are derived from the type (pydantic, dataclass or class
                annotations) and only the overrides below are applied.
            keys: Names of key fields
            navigation: Names of fields to treat as navigation
            read_only: Names of fields that must never be written
            table_name: Entity/table name used in audit records
        """
        require_type(described_type, "described_type")
        if fields is None:
            fields = _declared_annotations(described_type)
        schema = _RegisteredSchema(
            fields=dict(fields),
            keys=tuple(keys),
            navigation=tuple(navigation),
            read_only=tuple(read_only),
            table_name=table_name,
        )
        if described_type in self._descriptors:
            self._logger.warning(f"Re-registering {described_type.__name__} after it was resolved")
            self._descriptors.pop(described_type, None)
        self._schemas[described_type] = schema
        self._logger.debug(f"Registered schema for {described_type.__name__} with {len(schema.fields)} fields")

    def describe(
        self,
        keys: Iterable[str] = (),
        navigation: Iterable[str] = (),
        read_only: Iterable[str] = (),
        table_name: Optional[str] = None,
    ) -> Callable[[Type[T]], Type[T]]:
        """Class decorator form of `register` using the class's own annotations."""
        def decorator(cls: Type[T]) -> Type[T]:
            self.register(cls, keys=keys, navigation=navigation, read_only=read_only, table_name=table_name)
            return cls
        return decorator

    def is_registered(self, described_type: Any) -> bool:
        return described_type in self._schemas

    def is_object_type(self, candidate: Any) -> bool:
        """True for types whose instances are walked field by field."""
        if not isinstance(candidate, type):
            return False
        if candidate in self._schemas:
            return True
        if issubclass(candidate, (str, bytes, Enum)):
            return False
        if issubclass(candidate, BaseModel):
            return True
        return dataclasses.is_dataclass(candidate)

    def is_described(self, value: Any) -> bool:
        """True for instances of object types."""
        return value is not None and self.is_object_type(type(value))

    def clear(self) -> None:
        """Drop cached descriptors; registrations are kept."""
        self._descriptors.clear()

    # Resolution

    def resolve(self, described_type: type) -> TypeDescriptor:
        """Return the cached descriptor for a type, building it on first use."""
        require_not_none(described_type, "described_type")
        cached = self._descriptors.get(described_type)
        if cached is not None:
            return cached

        descriptor = self._build(described_type)
        self._logger.debug(f"Resolved {descriptor!r}")
        return self._descriptors.setdefault(described_type, descriptor)

    def describe_instance(self, obj: Any) -> TypeDescriptor:
        """
        Descriptor for a concrete object. Mappings (schema-less records) are
        described from their keys and values and are not cached.
        """
        require_not_none(obj, "obj")
        if isinstance(obj, MappingABC) and not self.is_object_type(type(obj)):
            fields = []
            for name, value in obj.items():
                kind, element_type, navigation = self._classify_value(value)
                fields.append(FieldDescriptor(
                    name=str(name),
                    kind=kind,
                    value_type=type(value) if value is not None else Any,
                    element_type=element_type,
                    nullable=True,
                    navigation=navigation,
                    is_key=str(name).lower() == "id",
                ))
            return TypeDescriptor(described_type=type(obj), fields=tuple(fields), table_name=type(obj).__name__)
        return self.resolve(type(obj))

    def _build(self, described_type: type) -> TypeDescriptor:
        schema = self._schemas.get(described_type)
        if schema is not None:
            raw_fields = schema.fields
            keys, navigation, read_only = set(schema.keys), set(schema.navigation), set(schema.read_only)
            table_name = schema.table_name
        else:
            raw_fields = _declared_annotations(described_type)
            keys, navigation, read_only = set(), set(), set()
            table_name = None

        declared = _declared_hints(described_type)
        frozen = _is_frozen(described_type)

        fields = []
        for name, annotation in raw_fields.items():
            declared_key, declared_nav, declared_writable = declared.get(name, (None, None, True))
            descriptor = self._classify(name, annotation)

            is_navigation = descriptor.navigation
            if name in navigation:
                is_navigation = True
            elif declared_nav is not None:
                is_navigation = bool(declared_nav)

            fields.append(descriptor.model_copy(update={
                "is_key": name in keys or bool(declared_key),
                "navigation": is_navigation,
                "writable": declared_writable and name not in read_only and not frozen,
            }))

        # Conventional key when none is declared
        if fields and not any(f.is_key for f in fields):
            fields = [f.model_copy(update={"is_key": True}) if f.name.lower() == "id" else f for f in fields]

        if table_name is None:
            table_name = getattr(described_type, "__tablename__", None) or getattr(described_type, "__name__", str(described_type))

        return TypeDescriptor(described_type=described_type, fields=tuple(fields), table_name=table_name)

    def _classify(self, name: str, annotation: Any) -> FieldDescriptor:
        value_type, nullable = unwrap_optional(annotation)
        origin = get_origin(value_type)

        if value_type is str:
            return FieldDescriptor(name=name, kind=FieldKind.STRING, annotation=annotation,
                                   value_type=value_type, nullable=nullable)

        if origin is Union or origin is types.UnionType:
            # Polymorphic reference: any object member makes it navigation
            members = get_args(value_type)
            is_reference = any(self.is_object_type(m) for m in members)
            kind = FieldKind.OBJECT if is_reference else FieldKind.SCALAR
            return FieldDescriptor(name=name, kind=kind, annotation=annotation, value_type=value_type,
                                   nullable=nullable, navigation=is_reference)

        if value_type in (list, tuple, set, frozenset) or (origin is not None and _is_subclass(origin, SEQUENCE_ORIGINS)
                                                        and not _is_subclass(origin, MAPPING_ORIGINS)):
            args = [a for a in get_args(value_type) if a is not Ellipsis]
            element_type = args[0] if args else Any
            element_type, _ = unwrap_optional(element_type)
            return FieldDescriptor(name=name, kind=FieldKind.SEQUENCE, annotation=annotation,
                                   value_type=value_type, element_type=element_type, nullable=nullable,
                                   navigation=self.is_object_type(element_type))

        if value_type is dict or (origin is not None and _is_subclass(origin, MAPPING_ORIGINS)):
            return FieldDescriptor(name=name, kind=FieldKind.MAPPING, annotation=annotation,
                                   value_type=value_type, nullable=nullable)

        if self.is_object_type(value_type):
            return FieldDescriptor(name=name, kind=FieldKind.OBJECT, annotation=annotation,
                                   value_type=value_type, nullable=nullable)

        return FieldDescriptor(name=name, kind=FieldKind.SCALAR, annotation=annotation,
                               value_type=value_type, nullable=nullable)

    def _classify_value(self, value: Any) -> Tuple[FieldKind, Any, bool]:
        if isinstance(value, str):
            return FieldKind.STRING, None, False
        if isinstance(value, MappingABC) and not self.is_described(value):
            return FieldKind.MAPPING, None, False
        if isinstance(value, (list, tuple)):
            first = next((item for item in value if item is not None), None)
            element_type = type(first) if first is not None else Any
            return FieldKind.SEQUENCE, element_type, self.is_object_type(element_type)
        if self.is_described(value):
            return FieldKind.OBJECT, None, False
        return FieldKind.SCALAR, None, False


def _is_subclass(candidate: Any, bases: Tuple[type, ...]) -> bool:
    return isinstance(candidate, type) and issubclass(candidate, bases)


def _is_frozen(described_type: type) -> bool:
    if issubclass(described_type, BaseModel):
        return bool(described_type.model_config.get("frozen", False))
    if dataclasses.is_dataclass(described_type):
        return bool(described_type.__dataclass_params__.frozen)
    return False


def _declared_annotations(described_type: type) -> Dict[str, Any]:
    """Field name to annotation in declaration order."""
    if issubclass(described_type, BaseModel):
        if not described_type.__pydantic_complete__:
            try:
                described_type.model_rebuild()
            except PydanticUndefinedAnnotation as e:
                DescriptorCache._logger.warning(f"Unresolved annotation on {described_type.__name__}: {e}")
        return {name: info.annotation for name, info in described_type.model_fields.items()}

    try:
        resolved = typing.get_type_hints(described_type)
    except (NameError, TypeError):
        resolved = {}

    if dataclasses.is_dataclass(described_type):
        return {f.name: resolved.get(f.name, f.type) for f in dataclasses.fields(described_type)}

    annotations: Dict[str, Any] = {}
    for klass in reversed(described_type.__mro__):
        if klass is object:
            continue
        for name, annotation in inspect.get_annotations(klass).items():
            if name.startswith("_") or typing.get_origin(annotation) is typing.ClassVar:
                continue
            annotations[name] = resolved.get(name, annotation)
    return annotations


def _declared_hints(described_type: type) -> Dict[str, Tuple[Optional[bool], Optional[bool], bool]]:
    """Per-field (key, navigation, writable) hints declared on the type itself."""
    hints: Dict[str, Tuple[Optional[bool], Optional[bool], bool]] = {}
    if issubclass(described_type, BaseModel):
        for name, info in described_type.model_fields.items():
            extra = info.json_schema_extra if isinstance(info.json_schema_extra, dict) else {}
            hints[name] = (extra.get("key"), extra.get("navigation"), not bool(info.frozen))
    elif dataclasses.is_dataclass(described_type):
        for f in dataclasses.fields(described_type):
            hints[f.name] = (f.metadata.get("key"), f.metadata.get("navigation"), True)
    return hints


default_cache = DescriptorCache()


def resolve(described_type: type) -> TypeDescriptor:
    """Resolve a type against the process-wide default cache."""
    return default_cache.resolve(described_type)


def register(described_type: type, **kwargs: Any) -> None:
    """Register a schema with the process-wide default cache."""
    default_cache.register(described_type, **kwargs)


def describe(**kwargs: Any) -> Callable[[Type[T]], Type[T]]:
    """Class decorator registering a schema with the default cache."""
    return default_cache.describe(**kwargs)
