"""
Replay persisted signals to the tenant's fan-out consumers.

Why:
- Lets operators backfill or debug downstream consumers without creating new
  signals and without re-running any directive.

How:
- Selects signals by id, by type, by time window, or the most recent ones,
  and republishes their ids to ``tenant.<tenant>.signals``.

Usage examples:
- Dry run the 20 most recent signals:
  uv run python -m scripts.replay_signals --tenant org_acme --limit 20 --dry-run

- Replay every ``forum.thread.locked`` signal (bounded):
  uv run python -m scripts.replay_signals --tenant org_acme --type forum.thread.locked --limit 500

- Replay a time window oldest-first:
  uv run python -m scripts.replay_signals --tenant org_acme \
    --since 2026-01-01T00:00:00+00:00 --until 2026-01-02T00:00:00+00:00

- Replay specific ids:
  uv run python -m scripts.replay_signals --tenant org_acme --id 7d1c... --id 9a0b...
"""

import argparse
import asyncio
from datetime import datetime, timezone
from typing import Sequence

from directive_engine.config import Settings
from directive_engine.db import dispose_engine
from directive_engine.fanout import AmqpFanoutPublisher
from directive_engine.rabbit import connect
from directive_engine.replay import RECENT_DEFAULT_LIMIT, RECENT_MAX_LIMIT, SignalReplay, clamp_limit
from directive_engine.signal_store import list_signals


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


async def replay(tenant: str, *, limit: int, signal_type: str | None, ids: Sequence[str],
                 since: str | None, until: str | None, exclude_types: Sequence[str], dry_run: bool) -> None:
    """Select signals and replay them (or print what would be replayed)."""
    start, end = _parse_ts(since), _parse_ts(until)
    if (start is None) != (end is None):
        print("--since and --until must be given together")
        return

    if dry_run:
        rows = await list_signals(
            tenant,
            ids=list(ids) or None,
            types=[signal_type] if signal_type else None,
            exclude_types=list(exclude_types) or None,
            since=start,
            until=end,
            limit=clamp_limit(limit, RECENT_DEFAULT_LIMIT, RECENT_MAX_LIMIT),
        )
        print(f"Dry-run: would replay {len(rows)} signals for tenant={tenant}")
        for idx, row in enumerate(rows, start=1):
            print(f"[{idx}/{len(rows)}] {row.created_at.isoformat()} {row.type} {row.id}")
        return

    connection = await connect(Settings().rabbitmq_url)
    async with connection:
        channel = await connection.channel()
        replayer = SignalReplay(AmqpFanoutPublisher(channel))
        if ids:
            counts = await replayer.replay_by_ids(tenant, ids)
        elif start is not None and end is not None:
            counts = await replayer.replay_time_range(tenant, start, end, limit=limit)
        elif signal_type:
            counts = await replayer.replay_by_type(tenant, signal_type, limit=limit)
        else:
            counts = await replayer.replay_recent(tenant, limit=limit, exclude_types=list(exclude_types) or None)
    print(f"Replayed {counts['enqueued']}/{counts['total']} signals for tenant={tenant} (skipped {counts['skipped']})")


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay persisted signals to fan-out consumers")
    parser.add_argument("--tenant", required=True)
    parser.add_argument("--limit", type=int, default=RECENT_DEFAULT_LIMIT)
    parser.add_argument("--type", dest="signal_type", help="Only signals of this type")
    parser.add_argument("--exclude-type", action="append", default=[], help="Skip this type (repeatable)")
    parser.add_argument("--id", dest="ids", action="append", default=[], help="Signal id (repeatable)")
    parser.add_argument("--since", help="ISO timestamp lower bound (inclusive)")
    parser.add_argument("--until", help="ISO timestamp upper bound (inclusive)")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    async def _run() -> None:
        try:
            await replay(args.tenant, limit=args.limit, signal_type=args.signal_type, ids=args.ids,
                         since=args.since, until=args.until, exclude_types=args.exclude_type,
                         dry_run=args.dry_run)
        finally:
            await dispose_engine()

    asyncio.run(_run())


if __name__ == "__main__":
    main()
