"""Append-only, tenant-scoped signal storage.

Only inserts and reads exist here. A signal with a ``dedupe_key`` is written
at most once per tenant: the unique constraint on ``(tenant, dedupe_key)``
turns a concurrent duplicate insert into an ``IntegrityError``, which is
answered by re-reading the row that won.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from directive_engine.constants import DEFAULT_LIST_LIMIT, MAX_SIGNAL_LIST_LIMIT
from directive_engine.db import get_session
from directive_engine.errors import StorageError
from directive_engine.orm_models import Signal, utcnow
from directive_engine.validation import SignalDraft

logger = logging.getLogger(__name__)


async def get_signal(tenant: str, signal_id: str) -> Optional[Signal]:
    try:
        async with get_session() as session:
            res = await session.execute(
                select(Signal).where(Signal.tenant == tenant, Signal.id == signal_id)
            )
            return res.scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise StorageError(f"failed to load signal {signal_id}: {exc}") from exc


async def get_signal_by_dedupe_key(tenant: str, dedupe_key: str) -> Optional[Signal]:
    try:
        async with get_session() as session:
            res = await session.execute(
                select(Signal).where(Signal.tenant == tenant, Signal.dedupe_key == dedupe_key)
            )
            return res.scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise StorageError(f"failed to load signal by dedupe key: {exc}") from exc


def _row_from_draft(draft: SignalDraft) -> Signal:
    now = utcnow()
    return Signal(
        tenant=draft.tenant,
        type=draft.type,
        subject_type=draft.subject.type if draft.subject else None,
        subject_id=draft.subject.id if draft.subject else None,
        dedupe_key=draft.dedupe_key,
        payload=draft.payload,
        meta=draft.metadata,
        correlation_id=draft.correlation_id,
        causation_id=draft.causation_id,
        actor_type=draft.actor.type if draft.actor else None,
        actor_id=draft.actor.id if draft.actor else None,
        source=draft.source,
        occurred_at=draft.occurred_at or now,
        created_at=now,
    )


async def insert_signal(draft: SignalDraft) -> tuple[Signal, bool]:
    """Persist ``draft`` unless its dedupe key already exists.

    Returns ``(signal, created)``; ``created`` is False when an existing row
    with the same ``(tenant, dedupe_key)`` was returned instead.
    """
    if draft.dedupe_key is not None:
        existing = await get_signal_by_dedupe_key(draft.tenant, draft.dedupe_key)
        if existing is not None:
            return existing, False

    row = _row_from_draft(draft)
    try:
        async with get_session() as session:
            session.add(row)
            await session.commit()
            return row, True
    except IntegrityError as exc:
        if draft.dedupe_key is None:
            raise StorageError(f"failed to insert signal: {exc}") from exc
        # Lost an insert race on the dedupe key
        existing = await get_signal_by_dedupe_key(draft.tenant, draft.dedupe_key)
        if existing is None:
            raise StorageError(f"failed to insert signal: {exc}") from exc
        logger.debug("signal dedupe race resolved", extra={"tenant": draft.tenant, "dedupe_key": draft.dedupe_key})
        return existing, False
    except SQLAlchemyError as exc:
        raise StorageError(f"failed to insert signal: {exc}") from exc


async def list_signals(
    tenant: str,
    *,
    types: Sequence[str] | None = None,
    exclude_types: Sequence[str] | None = None,
    subject_type: str | None = None,
    subject_id: str | None = None,
    ids: Sequence[str] | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = DEFAULT_LIST_LIMIT,
    newest_first: bool = True,
) -> list[Signal]:
    """Read signals for a tenant with optional filters (read-only)."""
    query = select(Signal).where(Signal.tenant == tenant)
    if types:
        query = query.where(Signal.type.in_(list(types)))
    if exclude_types:
        query = query.where(Signal.type.not_in(list(exclude_types)))
    if subject_type is not None:
        query = query.where(Signal.subject_type == subject_type)
    if subject_id is not None:
        query = query.where(Signal.subject_id == subject_id)
    if ids is not None:
        query = query.where(Signal.id.in_(list(ids)))
    if since is not None:
        query = query.where(Signal.created_at >= since)
    if until is not None:
        query = query.where(Signal.created_at <= until)
    order = Signal.created_at.desc() if newest_first else Signal.created_at.asc()
    query = query.order_by(order, Signal.id).limit(max(1, min(int(limit), MAX_SIGNAL_LIST_LIMIT)))
    try:
        async with get_session() as session:
            res = await session.execute(query)
            return list(res.scalars().all())
    except SQLAlchemyError as exc:
        raise StorageError(f"failed to list signals: {exc}") from exc
