"""
Tenant-scoped signal fan-out worker.

- Consumes ``tenant.<tenant>.signals.q``
- Loads each signal by id and passes it to the configured consumers in order
- A consumer error nacks the delivery for redelivery; a missing signal is acked

Consumers come from ``--consumers module:attr`` (a list of async callables
``(signal, context) -> None``). Without it every signal is logged.

Examples:
    uv run python -m scripts.fanout_worker --tenant org_acme
    uv run python -m scripts.fanout_worker --tenant org_acme --consumers app.consumers:CONSUMERS
"""

import argparse
import asyncio
import importlib
import json
import logging
import os
import signal
from typing import Any, Sequence

from aio_pika.abc import AbstractIncomingMessage

from directive_engine.config import Settings
from directive_engine.db import dispose_engine
from directive_engine.fanout import SignalConsumer, SignalFanout
from directive_engine.orm_models import Signal
from directive_engine.rabbit import connect, declare_tenant_topology, signals_queue

logger = logging.getLogger(__name__)


async def log_signal(signal_row: Signal, ctx: dict[str, Any]) -> None:
    logger.info("signal %s %s subject=%s replay=%s", signal_row.type, signal_row.id,
                signal_row.subject, bool(ctx.get("replay")))


def load_consumers(target: str | None) -> Sequence[SignalConsumer]:
    if not target:
        return [log_signal]
    module_name, _, attr = target.partition(":")
    return list(getattr(importlib.import_module(module_name), attr or "CONSUMERS"))


async def run(tenant: str, fanout: SignalFanout, stopping: asyncio.Event) -> None:
    settings = Settings()
    connection = await connect(settings.rabbitmq_url)
    async with connection:
        channel = await connection.channel()
        await channel.set_qos(prefetch_count=int(os.getenv("WORKER_PREFETCH", "16")))
        await declare_tenant_topology(channel, tenant)

        async def _on_message(message: AbstractIncomingMessage) -> None:
            try:
                body = json.loads(message.body)
            except json.JSONDecodeError:
                print(f"Dropping malformed fan-out delivery: {message.body[:200]!r}")
                await message.ack()
                return
            extra = {k: v for k, v in body.items() if k not in {"tenant", "signal_id"}}
            report = await fanout.dispatch(tenant, str(body.get("signal_id") or ""), extra)
            if report.should_redeliver:
                await message.nack(requeue=True)
            else:
                await message.ack()
            print(f"Signal {report.signal_id}: {report.status} ({report.invoked} consumers)")

        queue = await channel.get_queue(signals_queue(tenant))
        print(f"Fan-out worker consuming {signals_queue(tenant)} ({len(fanout.consumers)} consumers)")
        await queue.consume(_on_message, no_ack=False)
        await stopping.wait()
    await dispose_engine()


def main() -> None:
    parser = argparse.ArgumentParser(description="Deliver persisted signals to fan-out consumers")
    parser.add_argument("--tenant", default=os.getenv("TENANT", ""))
    parser.add_argument("--consumers", default=os.getenv("SIGNAL_CONSUMERS", ""), help="module:attr list of consumers")
    args = parser.parse_args()
    if not args.tenant:
        parser.error("--tenant (or TENANT) is required")

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    fanout = SignalFanout(load_consumers(args.consumers))

    async def _run() -> None:
        stopping = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stopping.set)
        await run(args.tenant, fanout, stopping)

    asyncio.run(_run())


if __name__ == "__main__":
    main()
