"""
Type descriptors and the components built on them.

This package resolves field schemas of arbitrary types and uses them to
coerce values, compare object graphs, map one graph into another and walk
the objects reachable from a root without recursion.
"""
from .descriptors import DescriptorCache, FieldDescriptor, FieldKind, TypeDescriptor, default_cache, describe, register
from .coercion import CoercionResult, ConversionError, ValueCoercer, coerce, coerce_or_default, try_coerce
from .equality import EqualityComparator, are_equal, entities_equal
from .mapper import GraphMapper, map_object
from .dynamic import DynamicValue, ValueKind, map_rows, to_dynamic_list, to_records
from .graph import CycleStatus, GraphNode, ObjectGraph
from .markers import AuditableEntity, SoftDeleteEntity

__all__ = [
    "DescriptorCache", "FieldDescriptor", "FieldKind", "TypeDescriptor", "default_cache", "describe", "register",
    "CoercionResult", "ConversionError", "ValueCoercer", "coerce", "coerce_or_default", "try_coerce",
    "EqualityComparator", "are_equal", "entities_equal",
    "GraphMapper", "map_object",
    "DynamicValue", "ValueKind", "map_rows", "to_dynamic_list", "to_records",
    "CycleStatus", "GraphNode", "ObjectGraph",
    "AuditableEntity", "SoftDeleteEntity",
]
