"""
Object graph discovery.

Walks the described objects reachable from a root through object fields,
sequences and mapping values, records which object references which, and
detects reference cycles. The walk and the cycle search both use explicit
stacks, so graph depth never turns into call-stack depth.
"""
import logging
from collections import deque
from collections.abc import Mapping as MappingABC
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from recordkit.ecs.descriptors import DescriptorCache, default_cache

logger = logging.getLogger("ObjectGraph")


class CycleStatus(Enum):
    """Status of cycle detection."""
    NO_CYCLE = 0
    CYCLE_DETECTED = 1


class GraphNode(BaseModel):
    """A described object and its references inside the graph."""
    obj: Any = Field(exclude=True)
    node_id: int
    label: str
    dependencies: List[int] = Field(default_factory=list)  # objects this object references
    dependents: Set[int] = Field(default_factory=set)      # objects referencing this object

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def add_dependency(self, dep_id: int) -> None:
        if dep_id not in self.dependencies:
            self.dependencies.append(dep_id)

    def add_dependent(self, dep_id: int) -> None:
        self.dependents.add(dep_id)

    def __str__(self) -> str:
        return f"Node({self.label}, deps={len(self.dependencies)}, dependents={len(self.dependents)})"

    def __repr__(self) -> str:
        return self.__str__()


class ObjectGraph(BaseModel):
    """
    Reference graph of the described objects reachable from a root.

    Node ids are object identities, so the graph is only meaningful while the
    objects it was built from are alive.
    """
    nodes: Dict[int, GraphNode] = Field(default_factory=dict)
    cycles: List[List[int]] = Field(default_factory=list)
    order: List[int] = Field(default_factory=list)  # dependencies first

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def build(self, root: Any, cache: Optional[DescriptorCache] = None) -> CycleStatus:
        """
        Build the graph starting from a root object.

        Args:
            root: The root object
            cache: Descriptor cache used to find object references

        Returns:
            CycleStatus indicating if any cycles were detected
        """
        cache = cache or default_cache
        logger.debug(f"Building object graph for {type(root).__name__}")

        self.nodes.clear()
        self.cycles.clear()
        self.order.clear()

        if not cache.is_described(root):
            return CycleStatus.NO_CYCLE

        pending = deque([root])
        while pending:
            obj = pending.popleft()
            node_id = id(obj)
            node = self._ensure_node(obj)
            if node.dependencies:
                continue

            for ref, path in _find_references(obj, cache):
                ref_id = id(ref)
                known = ref_id in self.nodes
                ref_node = self._ensure_node(ref)
                node.add_dependency(ref_id)
                ref_node.add_dependent(node_id)
                logger.debug(f"{node.label} references {ref_node.label} at {path}")
                if not known:
                    pending.append(ref)

        self._detect_cycles()

        logger.info(f"Built object graph with {len(self.nodes)} nodes")
        if self.cycles:
            logger.warning(f"Detected {len(self.cycles)} cycles in the object graph")
            return CycleStatus.CYCLE_DETECTED
        return CycleStatus.NO_CYCLE

    def _ensure_node(self, obj: Any) -> GraphNode:
        node_id = id(obj)
        node = self.nodes.get(node_id)
        if node is None:
            node = GraphNode(obj=obj, node_id=node_id, label=f"{type(obj).__name__}@{node_id:x}")
            self.nodes[node_id] = node
        return node

    def _detect_cycles(self) -> None:
        # 1 = on the current path, 2 = finished
        state: Dict[int, int] = {}
        for start in self.nodes:
            if start in state:
                continue
            state[start] = 1
            path = [start]
            stack: List[Tuple[int, Iterator[int]]] = [(start, iter(self.nodes[start].dependencies))]
            while stack:
                node_id, deps = stack[-1]
                advanced = False
                for dep_id in deps:
                    dep_state = state.get(dep_id, 0)
                    if dep_state == 1:
                        self.cycles.append(path[path.index(dep_id):] + [dep_id])
                    elif dep_state == 0:
                        state[dep_id] = 1
                        path.append(dep_id)
                        stack.append((dep_id, iter(self.nodes[dep_id].dependencies)))
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    path.pop()
                    state[node_id] = 2
                    self.order.append(node_id)

    def get_node(self, node_id: int) -> Optional[GraphNode]:
        return self.nodes.get(node_id)

    def node_for(self, obj: Any) -> Optional[GraphNode]:
        return self.nodes.get(id(obj))

    def is_graph_root(self, obj: Any) -> bool:
        """True if no other object in the graph references this one."""
        node = self.node_for(obj)
        if node:
            return len(node.dependents) == 0
        return True

    def get_topological_sort(self) -> List[Any]:
        """Objects with their dependencies first; cycles are broken arbitrarily."""
        return [self.nodes[node_id].obj for node_id in self.order]

    def get_cycles(self) -> List[List[int]]:
        return self.cycles

    def objects(self) -> List[Any]:
        return [node.obj for node in self.nodes.values()]


def _find_references(obj: Any, cache: DescriptorCache) -> List[Tuple[Any, str]]:
    """Described objects referenced directly by obj, with their field paths."""
    results: List[Tuple[Any, str]] = []
    descriptor = cache.describe_instance(obj)
    for field in descriptor.fields:
        value = getattr(obj, field.name, None)
        if value is None:
            continue
        if cache.is_described(value):
            results.append((value, field.name))
        elif isinstance(value, (list, tuple, set, frozenset)):
            for i, item in enumerate(value):
                if cache.is_described(item):
                    results.append((item, f"{field.name}[{i}]"))
        elif isinstance(value, MappingABC):
            for key, item in value.items():
                if cache.is_described(item):
                    results.append((item, f"{field.name}.{key}"))
    return results
