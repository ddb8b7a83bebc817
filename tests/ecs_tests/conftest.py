"""
Common fixtures and setup for ECS tests.
Provides test entity classes shared by the descriptor, coercion, equality,
mapper, dynamic value and object graph tests.
"""
import pytest
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, Field

from recordkit.config import RecordKitSettings
from recordkit.ecs.descriptors import default_cache
from recordkit.ecs.markers import AuditableEntity, SoftDeleteEntity

# ========================================================================
# Test entity classes
# ========================================================================

class Color(Enum):
    RED = 1
    GREEN = 2


class Customer(BaseModel):
    """A flat entity with scalar, decimal and list fields."""
    id: int
    name: str
    score: float = 0.0
    balance: Decimal = Decimal("0")
    tags: List[str] = Field(default_factory=list)


class CustomerDto(BaseModel):
    """Differently shaped counterpart of Customer."""
    id: int = 0
    name: str = ""
    score: float = 0.0
    balance: Optional[Decimal] = None


class Item(BaseModel):
    id: int
    label: str = ""


class ItemDto(BaseModel):
    id: int = 0
    label: str = ""


class Order(BaseModel):
    """Entity with a navigation list and a nested reference."""
    id: int
    items: List[Item] = Field(default_factory=list)
    customer: Optional[Customer] = None


class OrderDto(BaseModel):
    id: int = 0
    items: List[ItemDto] = Field(default_factory=list)
    customer: Optional[CustomerDto] = None


class Node(BaseModel):
    """Self-referential entity used for cycles and deep chains."""
    id: int
    name: str = ""
    next: Optional["Node"] = None


class NodeDto(BaseModel):
    id: int = 0
    name: str = ""
    next: Optional["NodeDto"] = None


class Holder(BaseModel):
    """Entity with a polymorphic reference."""
    id: int
    target: Union[Item, Customer, None] = None


class Account(SoftDeleteEntity, AuditableEntity):
    """Soft-deletable, auditable entity."""
    id: int
    name: str = ""
    balance: float = 0.0


@dataclass
class Point:
    x: float
    y: float


@dataclass
class PointDto:
    x: float = 0.0
    y: float = 0.0
    labels: List[str] = field(default_factory=list)


# Diamond reference pattern
class DiamondBottom(BaseModel):
    id: int
    name: str = ""


class DiamondLeft(BaseModel):
    id: int
    bottom: Optional[DiamondBottom] = None


class DiamondRight(BaseModel):
    id: int
    bottom: Optional[DiamondBottom] = None


class DiamondTop(BaseModel):
    id: int
    left: Optional[DiamondLeft] = None
    right: Optional[DiamondRight] = None


# ========================================================================
# Fixtures
# ========================================================================

@pytest.fixture(autouse=True)
def reset_descriptors():
    """Start every test from freshly resolved descriptors."""
    default_cache.clear()
    yield
    default_cache.clear()


@pytest.fixture
def settings() -> RecordKitSettings:
    return RecordKitSettings()


@pytest.fixture
def customer() -> Customer:
    return Customer(id=1, name="A", score=1.5, balance=Decimal("10.00"), tags=["x", "y"])


@pytest.fixture
def order(customer) -> Order:
    return Order(id=10, items=[Item(id=1, label="first"), Item(id=2, label="second")], customer=customer)


@pytest.fixture
def cyclic_nodes() -> tuple[Node, Node]:
    """Two nodes referencing each other."""
    a = Node(id=1, name="a")
    b = Node(id=2, name="b", next=a)
    a.next = b
    return a, b


@pytest.fixture
def diamond() -> tuple[DiamondTop, DiamondLeft, DiamondRight, DiamondBottom]:
    bottom = DiamondBottom(id=4, name="Bottom")
    left = DiamondLeft(id=2, bottom=bottom)
    right = DiamondRight(id=3, bottom=bottom)
    top = DiamondTop(id=1, left=left, right=right)
    return top, left, right, bottom


def make_chain(length: int) -> Node:
    """Singly linked chain of nodes, head first."""
    head = None
    for i in reversed(range(length)):
        head = Node(id=i, name=f"n{i}", next=head)
    return head
