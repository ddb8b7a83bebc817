"""
SQLAlchemy model for persisted audit trails.

Rows follow the layout of ChangeRecord.to_trail(). The module only builds and
adds rows; the caller owns the session and decides when to commit.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Session, declarative_base, mapped_column

from recordkit.audit.diff import ChangeRecord, OperationKind

logger = logging.getLogger("AuditTrailSQL")

# Create SQLAlchemy Base
Base = declarative_base()


class AuditTrailSQL(Base):
    """SQLAlchemy model for audit trail rows."""
    __tablename__ = "audit_trail"

    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id = mapped_column(String(50), nullable=False)
    type = mapped_column(String(50), nullable=False)
    table_name = mapped_column(String(100), nullable=False, index=True)
    audit_on = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    # JSON documents, NULL when the record has nothing to say
    old_values = mapped_column(Text, nullable=True)
    new_values = mapped_column(Text, nullable=True)
    affected_columns = mapped_column(Text, nullable=True)
    primary_key = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"AuditTrailSQL({self.type} {self.table_name} {self.primary_key})"

    @classmethod
    def from_record(cls, record: ChangeRecord) -> 'AuditTrailSQL':
        """Convert from ChangeRecord to SQL model."""
        trail = record.to_trail()
        return cls(
            user_id=trail["UserId"],
            type=trail["Type"],
            table_name=trail["TableName"],
            audit_on=trail["AuditOn"],
            old_values=trail.get("OldValues"),
            new_values=trail.get("NewValues"),
            affected_columns=trail.get("AffectedColumns"),
            primary_key=trail["PrimaryKey"],
        )

    def to_trail(self) -> Dict[str, Any]:
        """Convert back to the persisted layout, omitting NULL columns."""
        trail: Dict[str, Any] = {
            "UserId": self.user_id,
            "Type": self.type,
            "TableName": self.table_name,
            "AuditOn": self.audit_on,
        }
        if self.old_values is not None:
            trail["OldValues"] = self.old_values
        if self.new_values is not None:
            trail["NewValues"] = self.new_values
        if self.affected_columns is not None:
            trail["AffectedColumns"] = self.affected_columns
        trail["PrimaryKey"] = self.primary_key
        return trail

    @property
    def operation(self) -> OperationKind:
        return OperationKind(self.type)

    @property
    def key_values(self) -> Dict[str, Any]:
        return json.loads(self.primary_key)

    @property
    def changed_fields(self) -> List[str]:
        return json.loads(self.affected_columns) if self.affected_columns else []

    def values(self, which: str) -> Optional[Dict[str, Any]]:
        """Decoded old ("old") or new ("new") value map, None when absent."""
        raw = {"old": self.old_values, "new": self.new_values}[which]
        return json.loads(raw) if raw is not None else None


def write_trails(session: Session, records: Iterable[ChangeRecord]) -> List[AuditTrailSQL]:
    """
    Add one audit trail row per record to the session without committing.

    Records with unresolved keys raise ValueError before any row is added.
    """
    rows = [AuditTrailSQL.from_record(record) for record in records]
    session.add_all(rows)
    logger.info(f"Added {len(rows)} audit trail rows to the session")
    return rows
