"""
nsguard SQLAlchemy ORM models.
Uses SQLAlchemy 2.0 Mapped + mapped_column.

  PolicyObjectRow  one row per live policy object (body = canonical JSON dump)
  StoreMeta        single row holding the committed store version
  AuditLogRow      append-only mirror of the in-memory AuditTrail
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import DateTime, Index, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from nsguard.services.shared.database import Base


class PolicyObjectRow(Base):
    __tablename__ = "policy_objects"

    id:         Mapped[int]            = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind:       Mapped[str]            = mapped_column(String(32), nullable=False)
    object_id:  Mapped[str]            = mapped_column(String(512), nullable=False)
    namespace:  Mapped[Optional[str]]  = mapped_column(String(255), nullable=True, index=True)
    body:       Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    version:    Mapped[int]            = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime]       = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        UniqueConstraint("kind", "object_id", name="uq_policy_object_kind_id"),
    )


class StoreMeta(Base):
    __tablename__ = "store_meta"

    id:      Mapped[int] = mapped_column(Integer, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AuditLogRow(Base):
    """
    Immutable audit trail for mutating operations (policy writes, JIT transitions, baseline changes).
    Resource is a short "type:id" reference (e.g. "grant:3f2a", "RoleBinding:ns-a/jit-3f2a").
    """
    __tablename__ = "audit_logs"

    id:        Mapped[int]            = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor:     Mapped[str]            = mapped_column(String(255), nullable=False)
    action:    Mapped[str]            = mapped_column(String(255), nullable=False)
    resource:  Mapped[Optional[str]]  = mapped_column(String(512), nullable=True)
    detail:    Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    timestamp: Mapped[datetime]       = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc), index=True)

    __table_args__ = (
        Index("ix_audit_log_action_ts", "action", "timestamp"),
    )
