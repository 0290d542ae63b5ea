"""Tenant-scoped directive storage and its atomic state transitions.

Creation is idempotent on ``(tenant, type, idempotency_key)``. Every status
change is a single conditional ``UPDATE`` whose ``WHERE`` clause encodes the
allowed source state; the affected-row count tells the caller whether the
transition happened. Nothing here loads a row and writes it back.

Transitions:
- ``requested -> running``            (``claim_for_execution``)
- ``terminal + rerun -> running``     (``claim_for_execution``)
- ``running -> succeeded``            (``mark_succeeded``)
- ``running -> failed``               (``mark_failed``)
- ``running -> requested``            (``release_for_retry``, ``recover_stale_running``)
- ``requested -> canceled``           (``cancel_directive``)

Finalizing transitions are also conditioned on the claimed ``attempt`` so a
runner that lost its claim (for example after operator recovery) cannot
overwrite a later attempt.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from directive_engine.config import Settings
from directive_engine.constants import (
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    STATUS_CANCELED,
    STATUS_FAILED,
    STATUS_REQUESTED,
    STATUS_RUNNING,
    STATUS_SUCCEEDED,
    TERMINAL_STATUSES,
)
from directive_engine.db import get_session
from directive_engine.errors import StorageError
from directive_engine.metrics import DIRECTIVE_REQUESTED_TOTAL
from directive_engine.orm_models import Directive, new_id, utcnow
from directive_engine.validation import validate_directive

logger = logging.getLogger(__name__)


async def _select_directive(session: AsyncSession, tenant: str, directive_id: str) -> Optional[Directive]:
    res = await session.execute(
        select(Directive).where(Directive.tenant == tenant, Directive.id == directive_id)
    )
    return res.scalar_one_or_none()


async def get_directive(tenant: str, directive_id: str) -> Optional[Directive]:
    try:
        async with get_session() as session:
            return await _select_directive(session, tenant, directive_id)
    except SQLAlchemyError as exc:
        raise StorageError(f"failed to load directive {directive_id}: {exc}") from exc


async def get_directive_by_idempotency_key(tenant: str, directive_type: str, idempotency_key: str) -> Optional[Directive]:
    try:
        async with get_session() as session:
            res = await session.execute(
                select(Directive).where(
                    Directive.tenant == tenant,
                    Directive.type == directive_type,
                    Directive.idempotency_key == idempotency_key,
                )
            )
            return res.scalar_one_or_none()
    except SQLAlchemyError as exc:
        raise StorageError(f"failed to load directive by idempotency key: {exc}") from exc


async def request_directive(
    tenant: str,
    type: str,
    payload: Optional[Mapping[str, Any]],
    idempotency_key: str,
    *,
    scheduled_at: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
    subject: Optional[Mapping[str, Any]] = None,
    correlation_id: Optional[str] = None,
    requested_by: Optional[str] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    settings: Optional[Settings] = None,
) -> Directive:
    """Create a directive, or return the existing one for the same idempotency key.

    An existing directive is returned unchanged: options passed on a repeated
    request (``scheduled_at``, ``payload`` ...) are ignored.

    Raises ``ValidationError`` for bad input and ``StorageError`` when the
    database is unavailable.
    """
    settings = settings or Settings()
    draft = validate_directive(
        {
            "tenant": tenant,
            "type": type,
            "payload": dict(payload) if payload is not None else {},
            "idempotency_key": idempotency_key,
            "scheduled_at": scheduled_at,
            "max_attempts": settings.default_max_attempts if max_attempts is None else max_attempts,
            "subject": dict(subject) if subject is not None else None,
            "correlation_id": correlation_id,
            "requested_by": requested_by,
            "metadata": dict(metadata) if metadata is not None else {},
        },
        settings.max_payload_bytes,
    )

    existing = await get_directive_by_idempotency_key(draft.tenant, draft.type, draft.idempotency_key)
    if existing is not None:
        DIRECTIVE_REQUESTED_TOTAL.labels(type=draft.type, result="existing").inc()
        return existing

    now = utcnow()
    directive_id = new_id()
    row = Directive(
        id=directive_id,
        tenant=draft.tenant,
        type=draft.type,
        payload=draft.payload,
        subject_type=draft.subject.type if draft.subject else None,
        subject_id=draft.subject.id if draft.subject else None,
        idempotency_key=draft.idempotency_key,
        status=STATUS_REQUESTED,
        attempt=0,
        max_attempts=draft.max_attempts,
        scheduled_at=draft.scheduled_at,
        rerun_requested=False,
        correlation_id=draft.correlation_id or directive_id,
        requested_by=draft.requested_by,
        meta=draft.metadata,
        created_at=now,
        updated_at=now,
    )
    try:
        async with get_session() as session:
            session.add(row)
            await session.commit()
    except IntegrityError as exc:
        # Concurrent request with the same key won the insert
        winner = await get_directive_by_idempotency_key(draft.tenant, draft.type, draft.idempotency_key)
        if winner is None:
            raise StorageError(f"failed to create directive: {exc}") from exc
        DIRECTIVE_REQUESTED_TOTAL.labels(type=draft.type, result="existing").inc()
        return winner
    except SQLAlchemyError as exc:
        raise StorageError(f"failed to create directive: {exc}") from exc

    DIRECTIVE_REQUESTED_TOTAL.labels(type=draft.type, result="created").inc()
    logger.info(
        "directive requested",
        extra={"tenant": draft.tenant, "directive_id": directive_id, "directive_type": draft.type},
    )
    return row


async def list_directives(
    tenant: str,
    *,
    status: Optional[str] = None,
    types: Sequence[str] | None = None,
    subject_type: Optional[str] = None,
    subject_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    ids: Sequence[str] | None = None,
    limit: int = DEFAULT_LIST_LIMIT,
    newest_first: bool = True,
) -> list[Directive]:
    """Read directives for a tenant with optional filters (read-only)."""
    query = select(Directive).where(Directive.tenant == tenant)
    if status is not None:
        query = query.where(Directive.status == status)
    if types:
        query = query.where(Directive.type.in_(list(types)))
    if subject_type is not None:
        query = query.where(Directive.subject_type == subject_type)
    if subject_id is not None:
        query = query.where(Directive.subject_id == subject_id)
    if correlation_id is not None:
        query = query.where(Directive.correlation_id == correlation_id)
    if ids is not None:
        query = query.where(Directive.id.in_(list(ids)))
    order = Directive.created_at.desc() if newest_first else Directive.created_at.asc()
    query = query.order_by(order, Directive.id).limit(max(1, min(int(limit), MAX_LIST_LIMIT)))
    try:
        async with get_session() as session:
            res = await session.execute(query)
            return list(res.scalars().all())
    except SQLAlchemyError as exc:
        raise StorageError(f"failed to list directives: {exc}") from exc


async def _conditional_update(operation: str, directive_id: str, stmt: Any) -> int:
    try:
        async with get_session() as session:
            res = await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()
            return int(res.rowcount or 0)
    except SQLAlchemyError as exc:
        raise StorageError(f"failed to {operation} directive {directive_id}: {exc}") from exc


async def cancel_directive(tenant: str, directive_id: str) -> bool:
    """Move a ``requested`` directive to ``canceled``.

    Returns False when the directive is missing or not ``requested``; a
    ``running`` directive cannot be canceled because the in-flight handler
    call cannot be interrupted.
    """
    now = utcnow()
    stmt = (
        update(Directive)
        .where(Directive.tenant == tenant, Directive.id == directive_id, Directive.status == STATUS_REQUESTED)
        .values(status=STATUS_CANCELED, completed_at=now, updated_at=now)
    )
    return await _conditional_update("cancel", directive_id, stmt) == 1


async def request_rerun(tenant: str, directive_id: str) -> bool:
    """Flag a terminal directive so the next delivery executes it once more."""
    stmt = (
        update(Directive)
        .where(
            Directive.tenant == tenant,
            Directive.id == directive_id,
            Directive.status.in_(TERMINAL_STATUSES),
        )
        .values(rerun_requested=True, updated_at=utcnow())
    )
    return await _conditional_update("request rerun for", directive_id, stmt) == 1


async def claim_for_execution(tenant: str, directive_id: str, now: Optional[datetime] = None) -> Optional[Directive]:
    """Atomically claim a directive for one execution attempt.

    Applies when the directive is ``requested``, or terminal with
    ``rerun_requested`` set, and is due. The same statement moves it to
    ``running``, bumps ``attempt``, clears the rerun flag and the previous
    outcome. Returns the claimed row, or ``None`` when another delivery won
    or the directive is not claimable.

    The claimed row is read back in the same transaction, before commit: if
    that read fails the claim is rolled back and the directive stays
    claimable.
    """
    now = now or utcnow()
    stmt = (
        update(Directive)
        .where(
            Directive.tenant == tenant,
            Directive.id == directive_id,
            or_(
                Directive.status == STATUS_REQUESTED,
                and_(Directive.status.in_(TERMINAL_STATUSES), Directive.rerun_requested.is_(True)),
            ),
            or_(Directive.scheduled_at.is_(None), Directive.scheduled_at <= now),
        )
        .values(
            status=STATUS_RUNNING,
            attempt=Directive.attempt + 1,
            rerun_requested=False,
            result=None,
            error=None,
            completed_at=None,
            started_at=now,
            updated_at=now,
        )
    )
    try:
        async with get_session() as session:
            res = await session.execute(stmt.execution_options(synchronize_session=False))
            if int(res.rowcount or 0) != 1:
                await session.rollback()
                return None
            claimed = await _select_directive(session, tenant, directive_id)
            await session.commit()
            return claimed
    except SQLAlchemyError as exc:
        raise StorageError(f"failed to claim directive {directive_id}: {exc}") from exc


def _running_attempt(tenant: str, directive_id: str, attempt: int) -> tuple[Any, ...]:
    return (
        Directive.tenant == tenant,
        Directive.id == directive_id,
        Directive.status == STATUS_RUNNING,
        Directive.attempt == attempt,
    )


async def mark_succeeded(tenant: str, directive_id: str, attempt: int, result: Mapping[str, Any],
                         now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    stmt = (
        update(Directive)
        .where(*_running_attempt(tenant, directive_id, attempt))
        .values(status=STATUS_SUCCEEDED, result=dict(result), error=None, completed_at=now, updated_at=now)
    )
    return await _conditional_update("mark succeeded", directive_id, stmt) == 1


async def mark_failed(tenant: str, directive_id: str, attempt: int, error: Mapping[str, Any],
                      now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    stmt = (
        update(Directive)
        .where(*_running_attempt(tenant, directive_id, attempt))
        .values(status=STATUS_FAILED, error=dict(error), completed_at=now, updated_at=now)
    )
    return await _conditional_update("mark failed", directive_id, stmt) == 1


async def release_for_retry(tenant: str, directive_id: str, attempt: int, error: Optional[Mapping[str, Any]],
                            now: Optional[datetime] = None) -> bool:
    """Return a ``running`` directive to ``requested``, keeping the attempt's error."""
    now = now or utcnow()
    stmt = (
        update(Directive)
        .where(*_running_attempt(tenant, directive_id, attempt))
        .values(status=STATUS_REQUESTED, error=dict(error) if error is not None else None, updated_at=now)
    )
    return await _conditional_update("release", directive_id, stmt) == 1


async def recover_stale_running(tenant: str, older_than: datetime) -> int:
    """Reset ``running`` directives not updated since ``older_than`` to ``requested``.

    Operator recovery for a runner that crashed between claim and finalize.
    The runner never calls this: a directive that is merely slow would be
    executed twice. Returns the number of directives reset.
    """
    now = utcnow()
    stmt = (
        update(Directive)
        .where(
            Directive.tenant == tenant,
            Directive.status == STATUS_RUNNING,
            Directive.updated_at < older_than,
        )
        .values(
            status=STATUS_REQUESTED,
            error={
                "kind": "StaleRunning",
                "message": "directive was running without finalizing and has been released",
                "retryable": True,
                "details": {"released_at": now.isoformat()},
            },
            updated_at=now,
        )
    )
    count = await _conditional_update("recover", "*", stmt)
    if count:
        logger.warning("released stale running directives", extra={"tenant": tenant, "count": count})
    return count
