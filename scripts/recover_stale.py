"""Release directives stuck in ``running`` back to ``requested``.

A runner that crashes between claim and finalize leaves its directive in
``running``; every later delivery discards it. This script resets such
directives once they have not been updated for ``STALE_RUNNING_AFTER_S``
seconds (default 900) and optionally re-enqueues them.

Only use a threshold comfortably above the handler timeout: a directive that
is merely slow would otherwise run twice.

Environment:
  - STALE_RUNNING_AFTER_S (default 900)
  - DATABASE_URL, RABBITMQ_URL

Examples:
    uv run python -m scripts.recover_stale --tenant org_acme
    uv run python -m scripts.recover_stale --tenant org_acme --older-than-s 3600 --enqueue
"""

import argparse
import asyncio
from datetime import timedelta

from directive_engine.config import Settings
from directive_engine.constants import STATUS_REQUESTED
from directive_engine.db import dispose_engine
from directive_engine.directive_store import list_directives, recover_stale_running
from directive_engine.orm_models import utcnow
from directive_engine.rabbit import connect, declare_tenant_topology, publish_directive_execution


async def recover(tenant: str, older_than_s: int, enqueue: bool) -> int:
    cutoff = utcnow() - timedelta(seconds=older_than_s)
    released = await recover_stale_running(tenant, cutoff)
    print(f"Released {released} stale running directives for tenant={tenant} (older than {cutoff.isoformat()})")
    if not released or not enqueue:
        return released

    # Released rows carry the StaleRunning error marker
    rows = [d for d in await list_directives(tenant, status=STATUS_REQUESTED, limit=released * 2 + 50)
            if (d.error or {}).get("kind") == "StaleRunning"]
    connection = await connect(Settings().rabbitmq_url)
    async with connection:
        channel = await connection.channel()
        await declare_tenant_topology(channel, tenant)
        for idx, directive in enumerate(rows, start=1):
            await publish_directive_execution(channel, tenant, directive.id)
            print(f"[{idx}/{len(rows)}] Enqueued {directive.type} {directive.id}")
    return released


def main() -> None:
    parser = argparse.ArgumentParser(description="Release directives stuck in running")
    parser.add_argument("--tenant", required=True)
    parser.add_argument("--older-than-s", type=int, default=None, help="Defaults to STALE_RUNNING_AFTER_S")
    parser.add_argument("--enqueue", action="store_true", help="Publish an execution for each released directive")
    args = parser.parse_args()
    older_than_s = args.older_than_s if args.older_than_s is not None else Settings().stale_running_after_s

    async def _run() -> None:
        try:
            await recover(args.tenant, older_than_s, args.enqueue)
        finally:
            await dispose_engine()

    asyncio.run(_run())


if __name__ == "__main__":
    main()
