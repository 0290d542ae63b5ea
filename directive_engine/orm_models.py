"""SQLAlchemy ORM models for signals and directives.

Both tables are tenant-scoped: every row carries ``tenant`` and every query
filters by it. JSON columns use ``JSONB`` on PostgreSQL and the generic
``JSON`` type elsewhere (SQLite in tests and local runs).

Models provided:
- ``Signal``: Append-only, deduplicated facts
- ``Directive``: Durable commands with a lifecycle state machine
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from directive_engine.constants import STATUS_REQUESTED

JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class Signal(Base):
    """Immutable fact recorded for a tenant.

    Fields:
        - id: UUID string
        - tenant: Tenant (schema/namespace) identifier
        - type: Dotted signal name (e.g. ``forum.thread.locked``)
        - subject_type / subject_id: Entity the fact is about
        - dedupe_key: Optional, unique per tenant when present
        - payload / meta: Bounded JSON maps (``meta`` is stored as ``metadata``)
        - correlation_id / causation_id: Optional tracing chain
        - actor_type / actor_id: Optional attribution
        - source: Origin of the fact (``directive_runner``, ``web`` ...)
        - occurred_at: Event time; created_at: insert time
    """
    __tablename__ = "signals"
    __table_args__ = (
        UniqueConstraint("tenant", "dedupe_key", name="signals_tenant_dedupe_key_uq"),
        Index("signals_tenant_subject_idx", "tenant", "subject_type", "subject_id"),
        Index("signals_tenant_created_at_idx", "tenant", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant: Mapped[str] = mapped_column(String(255), index=True)
    type: Mapped[str] = mapped_column(String(255), index=True)
    subject_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict)
    meta: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    causation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def subject(self) -> dict[str, str] | None:
        if self.subject_type is None or self.subject_id is None:
            return None
        return {"type": self.subject_type, "id": self.subject_id}


class Directive(Base):
    """Durable, idempotent command.

    ``(tenant, type, idempotency_key)`` is unique so repeated create requests
    collapse onto one row. ``status`` only moves through the conditional
    updates in ``directive_store``.
    """
    __tablename__ = "directives"
    __table_args__ = (
        UniqueConstraint("tenant", "type", "idempotency_key", name="directives_tenant_type_idempotency_key_uq"),
        Index("directives_tenant_status_idx", "tenant", "status"),
        Index("directives_tenant_subject_idx", "tenant", "subject_type", "subject_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant: Mapped[str] = mapped_column(String(255), index=True)
    type: Mapped[str] = mapped_column(String(255))
    payload: Mapped[dict] = mapped_column(JSONType, default=dict)
    subject_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(512))
    status: Mapped[str] = mapped_column(String(32), default=STATUS_REQUESTED)
    attempt: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=10)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    rerun_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    requested_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def subject(self) -> dict[str, str] | None:
        if self.subject_type is None or self.subject_id is None:
            return None
        return {"type": self.subject_type, "id": self.subject_id}
