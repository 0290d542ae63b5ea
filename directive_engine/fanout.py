"""Signal fan-out: hand persisted signals to downstream consumers.

Publishing side:
- ``FanoutPublisher`` is the interface the Signal Bus and Signal Replay use.
- ``AmqpFanoutPublisher`` publishes to the tenant's ``signals`` exchange.
- ``InMemoryFanoutPublisher`` records publishes (tests, local runs).

Consuming side:
- ``SignalFanout`` loads a signal by id and invokes the configured consumers
  in order. Delivery is at-least-once, so consumers must be idempotent. A
  consumer error stops the chain and the report asks for redelivery.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

from aio_pika.abc import AbstractChannel

from directive_engine.errors import EngineError
from directive_engine.orm_models import Signal
from directive_engine.rabbit import declare_tenant_topology, publish_signal
from directive_engine.signal_store import get_signal

logger = logging.getLogger(__name__)

SignalConsumer = Callable[[Signal, dict[str, Any]], Awaitable[None]]


class FanoutPublisher(Protocol):
    async def publish(self, tenant: str, signal_id: str, extra: dict[str, Any]) -> None:
        ...


class InMemoryFanoutPublisher:
    """Collects ``(tenant, signal_id, extra)`` tuples instead of publishing."""

    def __init__(self) -> None:
        self.published: list[tuple[str, str, dict[str, Any]]] = []

    async def publish(self, tenant: str, signal_id: str, extra: dict[str, Any]) -> None:
        self.published.append((tenant, signal_id, dict(extra)))


class AmqpFanoutPublisher:
    """Publish signal ids to ``tenant.<tenant>.signals`` on an open channel.

    Tenant topology is declared once per process for each tenant seen.
    """

    def __init__(self, channel: AbstractChannel) -> None:
        self._channel = channel
        self._declared_tenants: set[str] = set()

    async def publish(self, tenant: str, signal_id: str, extra: dict[str, Any]) -> None:
        if tenant not in self._declared_tenants:
            await declare_tenant_topology(self._channel, tenant)
            self._declared_tenants.add(tenant)
        await publish_signal(self._channel, tenant, signal_id, extra)


@dataclass
class FanoutReport:
    """Result of dispatching one signal to the consumer chain."""
    status: str  # ok | discarded | error
    signal_id: str
    invoked: int = 0
    error: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def should_redeliver(self) -> bool:
        return self.status == "error"


class SignalFanout:
    """Dispatch a persisted signal to consumers in registration order."""

    def __init__(self, consumers: Sequence[SignalConsumer] = ()) -> None:
        self._consumers: list[SignalConsumer] = list(consumers)

    def register(self, consumer: SignalConsumer) -> SignalConsumer:
        self._consumers.append(consumer)
        return consumer

    @property
    def consumers(self) -> tuple[SignalConsumer, ...]:
        return tuple(self._consumers)

    async def dispatch(self, tenant: str, signal_id: str, extra: Optional[dict[str, Any]] = None) -> FanoutReport:
        try:
            signal = await get_signal(tenant, signal_id)
        except EngineError as exc:
            logger.warning("failed to load signal for fanout; will retry: %s", exc,
                           extra={"tenant": tenant, "signal_id": signal_id})
            return FanoutReport(status="error", signal_id=signal_id, error=str(exc))

        if signal is None:
            logger.warning("discarding fanout; signal not found", extra={"tenant": tenant, "signal_id": signal_id})
            return FanoutReport(status="discarded", signal_id=signal_id)

        context = {**dict(extra or {}), "tenant": tenant, "signal_id": signal.id, "signal_type": signal.type}
        report = FanoutReport(status="ok", signal_id=signal.id, context=context)
        for consumer in self._consumers:
            try:
                await consumer(signal, dict(context))
            except Exception as exc:  # noqa: BLE001
                name = getattr(consumer, "__qualname__", repr(consumer))
                logger.warning("signal consumer %s failed: %s", name, exc,
                               extra={"tenant": tenant, "signal_id": signal.id, "signal_type": signal.type})
                report.status = "error"
                report.error = f"{name}: {exc}"
                return report
            report.invoked += 1
        return report
