"""Directive Runner: execute one delivery of "please run directive X".

The external scheduler delivers ``execute_directive(tenant, directive_id)``
at least once, any number of times, in any order. The runner makes every
delivery safe:

1. Load the directive (missing -> discarded).
2. Due check (``scheduled_at`` in the future -> snoozed, no transition).
   The runner does not re-enqueue itself; whoever set ``scheduled_at`` or
   the scheduler's redelivery policy owns that. ``retry_after_ms`` on the
   report says how long until the directive is due.
3. Runnable check (terminal without rerun -> discarded, ``running`` ->
   discarded).
4. Claim with a single conditional ``UPDATE`` (see ``directive_store``);
   losing the race -> discarded. A terminal directive with
   ``rerun_requested`` is reopened by the same statement.
5. Derive the subject.
6. Resolve the handler (missing -> ``failed`` with ``UnknownDirectiveType``).
7. Invoke the handler under ``Settings.handler_timeout_s``.
8. Finalize with a conditional update and emit a lifecycle signal.
9. Return an ``ExecutionReport``; the scheduler decides what to do next.

Once claimed, a directive always leaves ``running`` before the runner
returns: every failure after the claim ends in ``succeeded``, ``failed`` or a
release back to ``requested``. The only exception is a storage outage during
that release, which ``scripts/recover_stale.py`` handles.

``execute_directive`` never raises.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from directive_engine.config import Settings, is_prod
from directive_engine.constants import (
    OUTCOME_DISCARDED,
    OUTCOME_FAILED,
    OUTCOME_RETRY,
    OUTCOME_SNOOZED,
    OUTCOME_SUCCEEDED,
    SIGNAL_SUFFIX_FAILED,
    SIGNAL_SUFFIX_STARTED,
    SIGNAL_SUFFIX_SUCCEEDED,
    SOURCE_DIRECTIVE_RUNNER,
    STATUS_FAILED,
    STATUS_REQUESTED,
    STATUS_RUNNING,
    STATUS_SUCCEEDED,
    TERMINAL_STATUSES,
)
from directive_engine.dedup import lifecycle_dedupe_key, lifecycle_signal_type
from directive_engine.directive_store import (
    claim_for_execution,
    get_directive,
    mark_failed,
    mark_succeeded,
    release_for_retry,
)
from directive_engine.errors import EngineError, StorageError, UnknownDirectiveType, ValidationError, error_payload
from directive_engine.metrics import (
    DIRECTIVE_DISCARDED_TOTAL,
    DIRECTIVE_EXECUTION_TOTAL,
    DIRECTIVE_HANDLER_LATENCY_SECONDS,
)
from directive_engine.orm_models import Directive, utcnow
from directive_engine.payloads import ensure_bounded_map
from directive_engine.registry import Handler, HandlerErr, HandlerOk, HandlerRegistry, HandlerResult
from directive_engine.retry import decide_retry, next_delay_ms
from directive_engine.signal_bus import SignalBus
from directive_engine.subject import derive_subject
from directive_engine.tracing import get_tracer
from directive_engine.validation import as_utc

logger = logging.getLogger(__name__)

# Error messages persisted on the directive are cut to this many characters
MAX_ERROR_MESSAGE_CHARS = 2000


@dataclass
class ExecutionReport:
    """What one delivery did, for the scheduler and for logs.

    Attributes
    ----------
    outcome: str
        ``succeeded`` | ``failed`` | ``retry`` | ``discarded`` | ``snoozed``.
    directive_id: str
    directive_type: str | None
        ``None`` when the directive could not be loaded.
    status: str | None
        The directive status the runner left behind (or observed, for
        discards and snoozes).
    attempt: int | None
    reason: str | None
        Short machine-readable reason (``terminal``, ``in_flight``,
        ``claim_lost``, ``not_found``, ``not_due``, error kinds ...).
    retry_after_ms: int | None
        Suggested redelivery delay for ``retry`` and ``snoozed``.
    """
    outcome: str
    directive_id: str
    directive_type: Optional[str] = None
    status: Optional[str] = None
    attempt: Optional[int] = None
    reason: Optional[str] = None
    retry_after_ms: Optional[int] = None

    @property
    def should_redeliver(self) -> bool:
        return self.outcome in {OUTCOME_RETRY, OUTCOME_SNOOZED}


def _log_dev_error(operation: str, exc: BaseException) -> None:
    if not is_prod():
        logger.exception("directive runner error during %s", operation, exc_info=exc)


def _bounded_error(error: Mapping[str, Any], max_bytes: int) -> dict[str, Any]:
    """Return ``error`` as a bounded JSON map, dropping details that do not fit."""
    error = dict(error)
    error["kind"] = str(error.get("kind") or "HandlerError")
    error["message"] = str(error.get("message", ""))[:MAX_ERROR_MESSAGE_CHARS]
    try:
        return ensure_bounded_map(error, max_bytes, field="error")
    except ValidationError:
        return {
            "kind": error["kind"],
            "message": error["message"],
            "retryable": bool(error.get("retryable", True)),
            "details": {"dropped": "details were not JSON-safe or exceeded the size bound"},
        }


class DirectiveRunner:
    """Runs directive deliveries against a ``HandlerRegistry``.

    Properties:
    - ``registry``: handler lookup by directive type
    - ``bus``: ``SignalBus`` used for lifecycle signals (best-effort)
    - ``settings``: handler timeout, payload bounds, retry delays

    Example:
    ```python
    runner = DirectiveRunner(registry, SignalBus(publisher))
    report = await runner.execute_directive("org_acme", directive_id)
    if report.should_redeliver:
        await scheduler.redeliver(directive_id, delay_ms=report.retry_after_ms)
    ```
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        bus: Optional[SignalBus] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or Settings()
        self.bus = bus or SignalBus(settings=self.settings)
        self._clock = clock or utcnow
        self._tracer = get_tracer("directive-runner")

    async def execute_directive(self, tenant: str, directive_id: str) -> ExecutionReport:
        """Execute one delivery; always returns a report."""
        start_ts = time.perf_counter()
        with self._tracer.start_as_current_span("directive.execute") as span:
            span.set_attribute("tenant", tenant)
            span.set_attribute("directive_id", directive_id)
            try:
                report = await self._execute(tenant, directive_id)
            except Exception as exc:  # noqa: BLE001
                logger.error("directive execution crashed: %s", exc,
                             extra={"tenant": tenant, "directive_id": directive_id})
                _log_dev_error("execute", exc)
                report = ExecutionReport(
                    outcome=OUTCOME_RETRY,
                    directive_id=directive_id,
                    reason=type(exc).__name__,
                    retry_after_ms=next_delay_ms(0, self.settings.retry_delays_ms),
                )
            span.set_attribute("outcome", report.outcome)
            if report.reason:
                span.set_attribute("reason", report.reason)

        DIRECTIVE_EXECUTION_TOTAL.labels(outcome=report.outcome, type=report.directive_type or "unknown").inc()
        if report.outcome == OUTCOME_DISCARDED:
            DIRECTIVE_DISCARDED_TOTAL.labels(reason=report.reason or "unknown").inc()
        logger.info(
            "directive delivery %s (%s) in %.3fs", report.outcome, report.reason or "-",
            time.perf_counter() - start_ts,
            extra={"tenant": tenant, "directive_id": directive_id, "attempt": report.attempt},
        )
        return report

    async def _execute(self, tenant: str, directive_id: str) -> ExecutionReport:
        now = self._clock()
        try:
            directive = await get_directive(tenant, directive_id)
        except StorageError as exc:
            logger.warning("failed to load directive; will retry: %s", exc,
                           extra={"tenant": tenant, "directive_id": directive_id})
            return self._storage_retry(directive_id, None, None, exc)

        if directive is None:
            logger.warning("discarding delivery; directive not found",
                           extra={"tenant": tenant, "directive_id": directive_id})
            return ExecutionReport(OUTCOME_DISCARDED, directive_id, reason="not_found")

        guard = self._check_guardrails(directive, now)
        if guard is not None:
            return guard

        if directive.status in TERMINAL_STATUSES:
            logger.info("rerun requested; reopening %s directive", directive.status,
                        extra={"tenant": tenant, "directive_id": directive_id})

        try:
            claimed = await claim_for_execution(tenant, directive_id, now)
        except StorageError as exc:
            logger.warning("failed to claim directive; will retry: %s", exc,
                           extra={"tenant": tenant, "directive_id": directive_id})
            return self._storage_retry(directive_id, directive.type, directive.attempt, exc)

        if claimed is None:
            return ExecutionReport(OUTCOME_DISCARDED, directive_id, directive.type,
                                   status=directive.status, attempt=directive.attempt, reason="claim_lost")

        try:
            return await self._run_claimed(claimed)
        except Exception as exc:  # noqa: BLE001
            logger.error("directive finalize failed after claim; releasing: %s", exc,
                         extra={"tenant": tenant, "directive_id": directive_id, "attempt": claimed.attempt})
            _log_dev_error("finalize", exc)
            return await self._abandon_claim(claimed, exc)

    def _check_guardrails(self, directive: Directive, now: datetime) -> Optional[ExecutionReport]:
        """Return a report when this delivery must not run, else ``None``."""
        if directive.scheduled_at is not None:
            due_at = as_utc(directive.scheduled_at)
            if due_at > as_utc(now):
                wait_ms = int((due_at - as_utc(now)).total_seconds() * 1000)
                return ExecutionReport(OUTCOME_SNOOZED, directive.id, directive.type, status=directive.status,
                                       attempt=directive.attempt, reason="not_due", retry_after_ms=max(wait_ms, 1))

        if directive.status in TERMINAL_STATUSES and not directive.rerun_requested:
            return ExecutionReport(OUTCOME_DISCARDED, directive.id, directive.type, status=directive.status,
                                   attempt=directive.attempt, reason="terminal")

        if directive.status == STATUS_RUNNING:
            # In flight elsewhere, or crashed mid-flight (see recover_stale_running)
            return ExecutionReport(OUTCOME_DISCARDED, directive.id, directive.type, status=directive.status,
                                   attempt=directive.attempt, reason="in_flight")
        return None

    async def _run_claimed(self, directive: Directive) -> ExecutionReport:
        subject = derive_subject(directive.type, directive.payload, directive.id, directive.subject)
        await self._emit_lifecycle(directive, subject, SIGNAL_SUFFIX_STARTED, {
            "directive_id": directive.id,
            "directive_type": directive.type,
            "attempt": directive.attempt,
        })

        handler = self.registry.resolve(directive.type)
        if handler is None:
            exc = UnknownDirectiveType(f"no handler registered for {directive.type}",
                                       details={"type": directive.type})
            return await self._finalize_error(directive, subject, error_payload(exc), retryable=False)

        outcome = await self._invoke(handler, directive, subject)
        if isinstance(outcome, HandlerOk):
            try:
                result = ensure_bounded_map(outcome.result, self.settings.max_payload_bytes, field="result")
            except ValidationError as exc:
                return await self._finalize_error(directive, subject, error_payload(exc), retryable=False)
            return await self._finalize_success(directive, subject, result)
        return await self._finalize_error(directive, subject, outcome.as_error(), retryable=outcome.retryable)

    async def _invoke(self, handler: Handler, directive: Directive, subject: dict[str, str]) -> HandlerResult:
        """Call the handler; exceptions and timeouts come back as ``HandlerErr``."""
        timeout = self.settings.handler_timeout_s
        start_ts = time.perf_counter()
        try:
            with self._tracer.start_as_current_span("directive.handler") as span:
                span.set_attribute("directive_type", directive.type)
                span.set_attribute("attempt", directive.attempt)
                result = await asyncio.wait_for(
                    handler(directive.tenant, dict(directive.payload or {}), dict(subject), directive.id),
                    timeout=timeout if timeout and timeout > 0 else None,
                )
        except asyncio.TimeoutError:
            return HandlerErr("Timeout", f"handler exceeded {timeout}s", retryable=True,
                              details={"timeout_s": timeout})
        except EngineError as exc:
            return HandlerErr(exc.kind, exc.message, retryable=exc.retryable, details=exc.details)
        except Exception as exc:  # noqa: BLE001
            logger.warning("handler raised %s: %s", type(exc).__name__, exc,
                           extra={"tenant": directive.tenant, "directive_id": directive.id})
            _log_dev_error("handler", exc)
            return HandlerErr(type(exc).__name__, str(exc) or repr(exc), retryable=True)
        finally:
            DIRECTIVE_HANDLER_LATENCY_SECONDS.labels(type=directive.type).observe(time.perf_counter() - start_ts)

        if isinstance(result, (HandlerOk, HandlerErr)):
            return result
        return HandlerErr("InvalidHandlerResult", f"handler returned {type(result).__name__}", retryable=False)

    async def _finalize_success(self, directive: Directive, subject: dict[str, str],
                                result: dict[str, Any]) -> ExecutionReport:
        applied = await mark_succeeded(directive.tenant, directive.id, directive.attempt, result, self._clock())
        if not applied:
            return self._finalize_lost(directive)

        await self._emit_lifecycle(directive, subject, SIGNAL_SUFFIX_SUCCEEDED, {
            "directive_id": directive.id,
            "directive_type": directive.type,
            "attempt": directive.attempt,
        })
        return ExecutionReport(OUTCOME_SUCCEEDED, directive.id, directive.type,
                               status=STATUS_SUCCEEDED, attempt=directive.attempt)

    async def _finalize_error(self, directive: Directive, subject: dict[str, str],
                              error: Mapping[str, Any], *, retryable: bool) -> ExecutionReport:
        error = _bounded_error(error, self.settings.max_payload_bytes)
        decision = decide_retry(directive.attempt, directive.max_attempts, retryable, self.settings.retry_delays_ms)
        now = self._clock()

        if decision.should_retry:
            applied = await release_for_retry(directive.tenant, directive.id, directive.attempt, error, now)
            if not applied:
                return self._finalize_lost(directive)
            logger.info("directive attempt %s/%s failed; retryable", directive.attempt, directive.max_attempts,
                        extra={"tenant": directive.tenant, "directive_id": directive.id, "error_kind": error["kind"]})
            return ExecutionReport(OUTCOME_RETRY, directive.id, directive.type, status=STATUS_REQUESTED,
                                   attempt=directive.attempt, reason=error["kind"], retry_after_ms=decision.delay_ms)

        applied = await mark_failed(directive.tenant, directive.id, directive.attempt, error, now)
        if not applied:
            return self._finalize_lost(directive)

        logger.warning("directive failed (%s): %s", decision.reason, error["message"],
                       extra={"tenant": directive.tenant, "directive_id": directive.id, "error_kind": error["kind"]})
        await self._emit_lifecycle(directive, subject, SIGNAL_SUFFIX_FAILED, {
            "directive_id": directive.id,
            "directive_type": directive.type,
            "attempt": directive.attempt,
            "error": {"kind": error["kind"], "message": error["message"]},
        })
        return ExecutionReport(OUTCOME_FAILED, directive.id, directive.type, status=STATUS_FAILED,
                               attempt=directive.attempt, reason=error["kind"])

    def _finalize_lost(self, directive: Directive) -> ExecutionReport:
        # The row left running/attempt N underneath us (operator recovery, a later attempt)
        logger.warning("directive changed during execution; outcome not recorded",
                       extra={"tenant": directive.tenant, "directive_id": directive.id, "attempt": directive.attempt})
        return ExecutionReport(OUTCOME_DISCARDED, directive.id, directive.type,
                               attempt=directive.attempt, reason="finalize_lost")

    def _storage_retry(self, directive_id: str, directive_type: Optional[str], attempt: Optional[int],
                       exc: BaseException) -> ExecutionReport:
        kind = exc.kind if isinstance(exc, EngineError) else type(exc).__name__
        return ExecutionReport(OUTCOME_RETRY, directive_id, directive_type, attempt=attempt, reason=kind,
                               retry_after_ms=next_delay_ms(0, self.settings.retry_delays_ms))

    async def _abandon_claim(self, directive: Directive, exc: BaseException) -> ExecutionReport:
        """Leave ``running`` after a post-claim failure, within the attempt budget.

        Storage failures are retryable: the directive goes back to
        ``requested`` unless this was its last attempt, in which case it is
        marked ``failed``. If the database rejects that write too, the row
        stays ``running`` until ``recover_stale_running``.
        """
        error = _bounded_error(error_payload(exc), self.settings.max_payload_bytes)
        decision = decide_retry(directive.attempt, directive.max_attempts, True, self.settings.retry_delays_ms)
        try:
            if decision.should_retry:
                await release_for_retry(directive.tenant, directive.id, directive.attempt, error, self._clock())
            else:
                if not await mark_failed(directive.tenant, directive.id, directive.attempt, error, self._clock()):
                    return self._finalize_lost(directive)
                subject = derive_subject(directive.type, directive.payload, directive.id, directive.subject)
                await self._emit_lifecycle(directive, subject, SIGNAL_SUFFIX_FAILED, {
                    "directive_id": directive.id,
                    "directive_type": directive.type,
                    "attempt": directive.attempt,
                    "error": {"kind": error["kind"], "message": error["message"]},
                })
                return ExecutionReport(OUTCOME_FAILED, directive.id, directive.type, status=STATUS_FAILED,
                                       attempt=directive.attempt, reason=error["kind"])
        except Exception as release_exc:  # noqa: BLE001
            logger.error("failed to release directive; it stays running until recovered: %s", release_exc,
                         extra={"tenant": directive.tenant, "directive_id": directive.id})
        return self._storage_retry(directive.id, directive.type, directive.attempt, exc)

    async def _emit_lifecycle(self, directive: Directive, subject: dict[str, str], suffix: str,
                              payload: dict[str, Any]) -> Optional[str]:
        """Emit ``<type>.<suffix>``; failures are logged and never change the outcome."""
        dedupe_key = lifecycle_dedupe_key(directive.type, suffix, directive.tenant, subject["id"],
                                          directive.id, directive.attempt)
        actor = {"type": "user", "id": directive.requested_by} if directive.requested_by else None
        try:
            return await self.bus.emit(
                directive.tenant,
                lifecycle_signal_type(directive.type, suffix),
                subject,
                payload,
                dedupe_key,
                correlation_id=directive.correlation_id,
                causation_id=directive.id,
                actor=actor,
                source=SOURCE_DIRECTIVE_RUNNER,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("lifecycle signal emit failed: %s", exc,
                           extra={"tenant": directive.tenant, "directive_id": directive.id, "suffix": suffix})
            return None
