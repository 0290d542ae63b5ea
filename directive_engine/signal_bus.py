"""Signal Bus: the single entrypoint for emitting tenant-scoped signals.

Signals are immutable facts, so this module only *creates* them. Emission is
best-effort from the caller's point of view: ``SignalBus.emit`` never raises.
A failure is logged, counted, and reported as ``None`` so the caller's
primary operation (a directive finalize, a forum post) is never aborted by
audit plumbing.

Idempotency:
- With a ``dedupe_key`` the first emission creates the row and every later
  emission returns the same id without writing.
- Without a ``dedupe_key`` every call appends a new row.

Fan-out:
- When a publisher is configured, newly created signals are handed to it for
  downstream consumers. Publish failures are logged and never undo the write.

Example:
    >>> bus = SignalBus()
    >>> signal_id = await bus.emit(
    ...     "org_acme", "forum.post.created", {"type": "forum.post", "id": "p1"},
    ...     {"thread_id": "t1"}, dedupe_key="forum.post.created:org_acme:p1",
    ... )
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from directive_engine.config import Settings, is_prod
from directive_engine.errors import EmitError, EngineError, ValidationError
from directive_engine.fanout import FanoutPublisher
from directive_engine.metrics import (
    SIGNAL_EMIT_FAILED_TOTAL,
    SIGNAL_EMITTED_TOTAL,
    SIGNAL_FANOUT_PUBLISHED_TOTAL,
)
from directive_engine.signal_store import insert_signal
from directive_engine.validation import validate_signal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmitResult:
    """Outcome of a strict emission: the signal id and whether it was new."""
    signal_id: str
    created: bool


def _log_dev_error(operation: str, exc: BaseException) -> None:
    """Log full tracebacks outside production; production keeps the one-line warning."""
    if not is_prod():
        logger.exception("signal bus error during %s", operation, exc_info=exc)


class SignalBus:
    """Emit signals through the signal store and optional fan-out publisher.

    Properties:
        - publisher: optional ``FanoutPublisher`` used for new signals
        - settings: ``Settings`` providing payload bounds and the fan-out toggle
    """

    def __init__(self, publisher: Optional[FanoutPublisher] = None, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()
        self.publisher = publisher

    async def emit_strict(
        self,
        tenant: str,
        type: str,
        subject: Optional[Mapping[str, Any]],
        payload: Optional[Mapping[str, Any]],
        dedupe_key: Optional[str] = None,
        *,
        metadata: Optional[Mapping[str, Any]] = None,
        correlation_id: Optional[str] = None,
        causation_id: Optional[str] = None,
        actor: Optional[Mapping[str, Any]] = None,
        source: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        enqueue_fanout: bool = True,
        fanout_args: Optional[Mapping[str, Any]] = None,
    ) -> EmitResult:
        """Emit a signal and raise on failure.

        Raises ``ValidationError`` for bad input and ``EmitError`` when the
        signal could not be persisted.
        """
        draft = validate_signal(
            {
                "tenant": tenant,
                "type": type,
                "subject": dict(subject) if subject is not None else None,
                "payload": dict(payload) if payload is not None else {},
                "metadata": dict(metadata) if metadata is not None else {},
                "dedupe_key": dedupe_key,
                "correlation_id": correlation_id,
                "causation_id": causation_id,
                "actor": dict(actor) if actor is not None else None,
                "source": source,
                "occurred_at": occurred_at,
            },
            self.settings.max_payload_bytes,
        )
        try:
            signal, created = await insert_signal(draft)
        except EngineError as exc:
            raise EmitError(f"failed to persist signal {draft.type}: {exc}", details={"type": draft.type}) from exc

        SIGNAL_EMITTED_TOTAL.labels(result="created" if created else "existing").inc()
        if created and enqueue_fanout:
            await self._publish_fanout(signal.tenant, signal.id, signal.type, fanout_args)
        return EmitResult(signal_id=signal.id, created=created)

    async def emit(
        self,
        tenant: str,
        type: str,
        subject: Optional[Mapping[str, Any]],
        payload: Optional[Mapping[str, Any]],
        dedupe_key: Optional[str] = None,
        **opts: Any,
    ) -> Optional[str]:
        """Emit a signal, fire-and-forget. Returns the signal id or ``None`` on failure."""
        try:
            result = await self.emit_strict(tenant, type, subject, payload, dedupe_key, **opts)
        except ValidationError as exc:
            SIGNAL_EMIT_FAILED_TOTAL.labels(reason="validation").inc()
            logger.warning("signal rejected: %s", exc.message, extra={"tenant": tenant, "signal_type": type})
            return None
        except Exception as exc:  # noqa: BLE001
            SIGNAL_EMIT_FAILED_TOTAL.labels(reason="storage" if isinstance(exc, EmitError) else "unexpected").inc()
            logger.warning("signal emit failed: %s", exc, extra={"tenant": tenant, "signal_type": type})
            _log_dev_error("emit", exc)
            return None
        return result.signal_id

    async def _publish_fanout(self, tenant: str, signal_id: str, signal_type: str,
                              fanout_args: Optional[Mapping[str, Any]]) -> None:
        if self.publisher is None or not self.settings.fanout_enabled:
            return
        try:
            await self.publisher.publish(tenant, signal_id, dict(fanout_args or {}))
            SIGNAL_FANOUT_PUBLISHED_TOTAL.labels(result="ok").inc()
        except Exception as exc:  # noqa: BLE001
            SIGNAL_FANOUT_PUBLISHED_TOTAL.labels(result="error").inc()
            logger.warning(
                "failed to enqueue signal fanout: %s", exc,
                extra={"tenant": tenant, "signal_id": signal_id, "signal_type": signal_type},
            )
