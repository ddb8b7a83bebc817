"""
Example usage of recordkit illustrating:
 - Mapping entities to differently shaped DTOs
 - Entity equality that ignores bookkeeping fields
 - Change tracking with soft delete and reactivation
 - Writing audit trail rows with SQLAlchemy
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from recordkit.audit.tracker import ChangeTracker
from recordkit.audit.trail_sql import AuditTrailSQL, Base, write_trails
from recordkit.config import configure_logging, get_settings
from recordkit.ecs.equality import entities_equal
from recordkit.ecs.mapper import GraphMapper
from recordkit.ecs.markers import AuditableEntity, SoftDeleteEntity


class Product(SoftDeleteEntity, AuditableEntity):
    id: int
    name: str
    price: Decimal = Decimal("0")


class OrderLine(BaseModel):
    id: int
    quantity: int = 1
    product: Optional[Product] = None


class Order(SoftDeleteEntity, AuditableEntity):
    id: int
    customer: str
    lines: List[OrderLine] = Field(default_factory=list)


class OrderLineDto(BaseModel):
    id: int = 0
    quantity: str = ""


class OrderDto(BaseModel):
    id: int = 0
    customer: str = ""
    lines: List[OrderLineDto] = Field(default_factory=list)


def create_example_entities():
    """Create example entities"""
    keyboard = Product(id=1, name="Keyboard", price=Decimal("49.90"))
    mouse = Product(id=2, name="Mouse", price=Decimal("19.90"), active=False)
    order = Order(
        id=100,
        customer="ACME",
        lines=[OrderLine(id=1, quantity=2, product=keyboard), OrderLine(id=2, product=mouse)],
    )
    return order, keyboard, mouse


def run_example(engine):
    order, keyboard, mouse = create_example_entities()

    # Map to a DTO; quantities are coerced to text
    dto = GraphMapper().map(order, OrderDto)
    assert [line.quantity for line in dto.lines] == ["2", "1"], "Mapping mismatch"
    print(f"Mapped DTO: {dto}")

    # Bookkeeping fields do not affect entity equality
    stamped = keyboard.model_copy(update={"updated_by": "someone", "updated": datetime.now(timezone.utc)})
    assert entities_equal(keyboard, stamped), "Entity equality mismatch"

    tracker = ChangeTracker()
    tracker.attach(order, cascade=True)

    keyboard.price = Decimal("44.90")   # plain update
    mouse.name = "Wireless Mouse"       # reactivates the inactive product
    tracker.remove(order)               # soft delete of the order

    records = tracker.save("example-user")
    for record in records:
        print(f"{record.operation.value:<6} {record.entity_name:<8} {record.key_values} {list(record.changed_fields)}")

    with Session(engine) as session:
        write_trails(session, records)
        session.commit()

        for row in session.scalars(select(AuditTrailSQL).order_by(AuditTrailSQL.id)):
            print(f"{row.type:<6} {row.table_name:<8} {row.primary_key} {row.affected_columns}")

    assert mouse.active, "Product was not reactivated"
    assert not order.active, "Order was not soft deleted"
    print("✅ All assertions passed!")


def main():
    """Main function to run the example"""
    configure_logging(get_settings())
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    run_example(engine)


if __name__ == "__main__":
    main()
