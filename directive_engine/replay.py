"""Signal Replay: re-deliver persisted signals to fan-out consumers.

Replay is an operator tool for debugging and backfilling consumers:

- It re-publishes existing signal ids through a ``FanoutPublisher``.
- It never creates a signal row and never touches directives, so no domain
  mutation is re-triggered (that is exclusively the directive path).
- Ordering is not guaranteed; each publish is independent.

Bulk helpers clamp their limits and return ``{"enqueued", "skipped", "total"}``
counts. A signal whose publish fails is logged and counted as skipped.

Example:
    >>> replay = SignalReplay(InMemoryFanoutPublisher())
    >>> await replay.replay("org_acme", signal_id)
    >>> await replay.replay_recent("org_acme", limit=20, exclude_types=["forum.post.viewed"])
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from directive_engine.config import is_prod
from directive_engine.constants import MAX_SIGNAL_LIST_LIMIT, SOURCE_REPLAY
from directive_engine.errors import EngineError, ReplayError
from directive_engine.fanout import FanoutPublisher
from directive_engine.metrics import SIGNAL_REPLAY_TOTAL
from directive_engine.orm_models import Signal
from directive_engine.signal_store import get_signal, list_signals
from directive_engine.validation import as_utc

logger = logging.getLogger(__name__)

RECENT_DEFAULT_LIMIT, RECENT_MAX_LIMIT = 100, 5_000
BY_TYPE_DEFAULT_LIMIT, BY_TYPE_MAX_LIMIT = 500, 10_000
TIME_RANGE_DEFAULT_LIMIT, TIME_RANGE_MAX_LIMIT = 5_000, MAX_SIGNAL_LIST_LIMIT


def clamp_limit(value: Any, default: int, maximum: int) -> int:
    """Return ``value`` as an int in ``[1, maximum]``; junk becomes ``default``.

    Example:
        >>> clamp_limit("0", 100, 5000), clamp_limit(10**9, 100, 5000), clamp_limit(None, 100, 5000)
        (1, 5000, 100)
    """
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(1, min(number, maximum))


@dataclass
class ReplayReport:
    signal_id: str
    signal_type: str
    tenant: str


class SignalReplay:
    """Re-deliver signals through ``publisher``."""

    def __init__(self, publisher: Optional[FanoutPublisher]) -> None:
        self.publisher = publisher

    def _require_publisher(self) -> FanoutPublisher:
        if self.publisher is None:
            raise ReplayError("no fan-out publisher configured")
        return self.publisher

    async def replay(self, tenant: str, signal_id: str) -> ReplayReport:
        """Re-deliver one signal. Raises ``ReplayError`` when it cannot."""
        publisher = self._require_publisher()
        try:
            signal = await get_signal(tenant, signal_id)
        except EngineError as exc:
            raise ReplayError(f"failed to load signal {signal_id}: {exc}", details={"signal_id": signal_id}) from exc
        if signal is None:
            raise ReplayError(f"signal {signal_id} not found", details={"signal_id": signal_id, "tenant": tenant})

        try:
            await publisher.publish(tenant, signal.id, self._replay_args(signal))
        except Exception as exc:  # noqa: BLE001
            raise ReplayError(f"failed to publish signal {signal_id}: {exc}", details={"signal_id": signal_id}) from exc
        SIGNAL_REPLAY_TOTAL.labels(tenant=tenant).inc()
        logger.info("signal replayed", extra={"tenant": tenant, "signal_id": signal.id, "signal_type": signal.type})
        return ReplayReport(signal_id=signal.id, signal_type=signal.type, tenant=tenant)

    async def replay_recent(
        self,
        tenant: str,
        limit: Any = RECENT_DEFAULT_LIMIT,
        only_types: Sequence[str] | None = None,
        exclude_types: Sequence[str] | None = None,
    ) -> dict[str, int]:
        """Replay the most recent signals, newest first."""
        signals = await self._load(
            tenant,
            types=only_types,
            exclude_types=exclude_types,
            limit=clamp_limit(limit, RECENT_DEFAULT_LIMIT, RECENT_MAX_LIMIT),
            newest_first=True,
        )
        return await self._publish_all(tenant, signals)

    async def replay_by_type(self, tenant: str, signal_type: str, limit: Any = BY_TYPE_DEFAULT_LIMIT) -> dict[str, int]:
        """Replay signals of one type, newest first."""
        if not signal_type or not signal_type.strip():
            raise ReplayError("signal type is required")
        signals = await self._load(
            tenant,
            types=[signal_type.strip()],
            limit=clamp_limit(limit, BY_TYPE_DEFAULT_LIMIT, BY_TYPE_MAX_LIMIT),
            newest_first=True,
        )
        return await self._publish_all(tenant, signals)

    async def replay_by_ids(self, tenant: str, signal_ids: Sequence[str]) -> dict[str, int]:
        """Replay specific signals. Unknown ids are ignored (not counted)."""
        ids = list(dict.fromkeys(str(i).strip() for i in signal_ids if i is not None and str(i).strip()))
        if not ids:
            return {"enqueued": 0, "skipped": 0, "total": 0}
        signals = await self._load(tenant, ids=ids, limit=len(ids), newest_first=False)
        return await self._publish_all(tenant, signals)

    async def replay_time_range(
        self,
        tenant: str,
        start: datetime,
        end: datetime,
        limit: Any = TIME_RANGE_DEFAULT_LIMIT,
        order: str = "asc",
    ) -> dict[str, int]:
        """Replay signals created in ``[start, end]``; ``order`` is ``asc`` or ``desc``."""
        start, end = as_utc(start), as_utc(end)
        if start > end:
            raise ReplayError("time range start is after its end",
                              details={"start": start.isoformat(), "end": end.isoformat()})
        signals = await self._load(
            tenant,
            since=start,
            until=end,
            limit=clamp_limit(limit, TIME_RANGE_DEFAULT_LIMIT, TIME_RANGE_MAX_LIMIT),
            newest_first=str(order).lower() == "desc",
        )
        return await self._publish_all(tenant, signals)

    async def _load(self, tenant: str, **filters: Any) -> list[Signal]:
        self._require_publisher()
        try:
            return await list_signals(tenant, **filters)
        except EngineError as exc:
            raise ReplayError(f"failed to load signals for replay: {exc}") from exc

    async def _publish_all(self, tenant: str, signals: Sequence[Signal]) -> dict[str, int]:
        publisher = self._require_publisher()
        enqueued = skipped = 0
        for signal in signals:
            try:
                await publisher.publish(tenant, signal.id, self._replay_args(signal))
            except Exception as exc:  # noqa: BLE001
                skipped += 1
                logger.warning("failed to replay signal: %s", exc,
                               extra={"tenant": tenant, "signal_id": signal.id, "signal_type": signal.type})
                if not is_prod():
                    logger.exception("replay publish error", exc_info=exc)
                continue
            enqueued += 1
            SIGNAL_REPLAY_TOTAL.labels(tenant=tenant).inc()
        return {"enqueued": enqueued, "skipped": skipped, "total": len(signals)}

    @staticmethod
    def _replay_args(signal: Signal) -> dict[str, Any]:
        return {"replay": True, "source": SOURCE_REPLAY, "signal_type": signal.type}
