"""
Tenant-scoped directive worker.

- Consumes ``tenant.<tenant>.directives.q`` (at-least-once, manual ack)
- Calls ``DirectiveRunner.execute_directive`` for each delivery
- Redelivers ``retry`` and ``snoozed`` outcomes through the tenant's delay
  queues (``tenant.<tenant>.directives.retry.<ms>``), which dead-letter back
  to the directives exchange
- Every other outcome is final for this delivery and simply acked

Handlers come from a ``HandlerRegistry`` named with ``--registry module:attr``.

Examples:
    uv run python -m scripts.directive_worker --tenant org_acme --registry app.directives:registry
    WORKER_CONCURRENCY=8 uv run python -m scripts.directive_worker --tenant org_acme --registry app.directives:registry
"""

import argparse
import asyncio
import importlib
import json
import logging
import os
import signal
from typing import Any

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage
from opentelemetry import context  # type: ignore

from directive_engine.config import Settings
from directive_engine.db import dispose_engine
from directive_engine.fanout import AmqpFanoutPublisher
from directive_engine.metrics import start_metrics_server
from directive_engine.rabbit import (
    connect,
    declare_directive_retry_topology,
    declare_tenant_topology,
    directives_queue,
    schedule_directive_redelivery,
)
from directive_engine.registry import HandlerRegistry
from directive_engine.retry import pick_delay_bucket
from directive_engine.runner import DirectiveRunner
from directive_engine.signal_bus import SignalBus
from directive_engine.tracing import context_from_headers, inject_headers, start_tracing

logger = logging.getLogger(__name__)


def load_registry(target: str | None) -> HandlerRegistry:
    """Import ``module:attr`` and return the ``HandlerRegistry`` it names."""
    if not target:
        return HandlerRegistry()
    module_name, _, attr = target.partition(":")
    registry = getattr(importlib.import_module(module_name), attr or "registry")
    if not isinstance(registry, HandlerRegistry):
        raise TypeError(f"{target} is not a HandlerRegistry")
    return registry


class DirectiveWorker:
    """Consume one tenant's directive deliveries and run them.

    Properties:
    - ``tenant``: tenant whose queue this worker consumes
    - ``registry``: handlers by directive kind
    - concurrency bounded by ``WORKER_CONCURRENCY`` and the channel prefetch
    """

    def __init__(self, tenant: str, registry: HandlerRegistry, settings: Settings | None = None):
        self.tenant = tenant
        self.registry = registry
        self.settings = settings or Settings()
        self._stopping = asyncio.Event()
        self._sem = asyncio.Semaphore(int(os.getenv("WORKER_CONCURRENCY", "4")))
        self._channel: AbstractChannel | None = None
        self._runner: DirectiveRunner | None = None

    async def run(self) -> None:
        port = self.settings.metrics_port
        try:
            start_metrics_server(port)
            print(f"Metrics server listening on :{port} /metrics")
        except OSError:
            # Already started in this process
            pass
        start_tracing("directive-worker")

        connection = await connect(self.settings.rabbitmq_url)
        async with connection:
            channel = await connection.channel()
            await channel.set_qos(prefetch_count=int(os.getenv("WORKER_PREFETCH", "16")))
            await declare_tenant_topology(channel, self.tenant)
            await declare_directive_retry_topology(channel, self.tenant, self.settings.retry_delays_ms)
            self._channel = channel

            bus = SignalBus(publisher=AmqpFanoutPublisher(channel), settings=self.settings)
            self._runner = DirectiveRunner(self.registry, bus, self.settings)

            queue = await channel.get_queue(directives_queue(self.tenant))
            print(f"Directive worker consuming {directives_queue(self.tenant)} "
                  f"({len(self.registry)} handlers registered)")
            await queue.consume(self._on_message, no_ack=False)
            await self._stopping.wait()
        await dispose_engine()

    def stop(self) -> None:
        self._stopping.set()

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        async with self._sem:
            # Requeue only if the handler below crashes; the runner itself never raises
            async with message.process(requeue=True):
                try:
                    body: dict[str, Any] = json.loads(message.body)
                except json.JSONDecodeError:
                    print(f"Dropping malformed delivery: {message.body[:200]!r}")
                    return
                directive_id = str(body.get("directive_id") or "")
                if body.get("tenant") != self.tenant or not directive_id:
                    print(f"Dropping delivery for another tenant or without id: {body}")
                    return

                assert self._runner is not None
                token = context.attach(context_from_headers(message.headers))
                try:
                    report = await self._runner.execute_directive(self.tenant, directive_id)
                    if report.should_redeliver:
                        await self._redeliver(directive_id, report.retry_after_ms or 0)
                finally:
                    context.detach(token)
                print(f"Directive {directive_id}: {report.outcome}"
                      + (f" ({report.reason})" if report.reason else ""))

    async def _redeliver(self, directive_id: str, delay_ms: int) -> None:
        assert self._channel is not None
        bucket = pick_delay_bucket(delay_ms, self.settings.retry_delays_ms)
        await schedule_directive_redelivery(self._channel, self.tenant, directive_id, bucket,
                                            headers=inject_headers())


def main() -> None:
    parser = argparse.ArgumentParser(description="Run directive deliveries for one tenant")
    parser.add_argument("--tenant", default=os.getenv("TENANT", ""), help="Tenant whose queue to consume")
    parser.add_argument("--registry", default=os.getenv("DIRECTIVE_REGISTRY", ""),
                        help="Handler registry as module:attr")
    args = parser.parse_args()
    if not args.tenant:
        parser.error("--tenant (or TENANT) is required")

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    worker = DirectiveWorker(args.tenant, load_registry(args.registry))

    async def _run() -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, worker.stop)
        await worker.run()

    asyncio.run(_run())


if __name__ == "__main__":
    main()
