"""
Schema and topology initializer.

- Creates the ``signals`` and ``directives`` tables if missing
- Declares per-tenant directive, retry and signal topology for ``TENANTS``

Supports a best-effort mode via ``--best-effort`` or ``INIT_BEST_EFFORT=1``
which skips RabbitMQ errors (useful in database-only CI).

Examples:
    uv run python -m scripts.init_db
    TENANTS=org_acme,org_beta uv run python -m scripts.init_db --best-effort
"""

import argparse
import asyncio
import os
from typing import Sequence

from directive_engine.config import Settings
from directive_engine.db import dispose_engine, init_models
from directive_engine.rabbit import connect, declare_directive_retry_topology, declare_tenant_topology


async def main(tenants: Sequence[str], best_effort: bool) -> None:
    """Create tables, then declare RabbitMQ topology for ``tenants``."""
    try:
        await init_models()
        print("[init_db] signals/directives tables ready")
    finally:
        await dispose_engine()

    if not tenants:
        return
    settings = Settings()
    try:
        connection = await connect(settings.rabbitmq_url)
    except Exception as exc:  # noqa: BLE001
        if best_effort:
            print(f"[init_db] Skipping topology: RabbitMQ not reachable ({exc})")
            return
        raise

    async with connection:
        try:
            channel = await connection.channel()
            for tenant in tenants:
                await declare_tenant_topology(channel, tenant)
                await declare_directive_retry_topology(channel, tenant, settings.retry_delays_ms)
                print(f"[init_db] topology declared for tenant={tenant}")
        except Exception as exc:  # noqa: BLE001
            if best_effort:
                print(f"[init_db] Skipping declarations due to error: {exc}")
                return
            raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create tables and declare per-tenant topology")
    parser.add_argument("--best-effort", action="store_true", help="Do not fail if RabbitMQ is unreachable")
    args = parser.parse_args()

    best_effort_env = os.getenv("INIT_BEST_EFFORT", "false").lower() in {"1", "true", "yes"}
    tenants = [t.strip() for t in os.getenv("TENANTS", "").split(",") if t.strip()]
    asyncio.run(main(tenants, bool(args.best_effort or best_effort_env)))
