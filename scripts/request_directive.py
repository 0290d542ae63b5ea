"""
Request a directive and enqueue one execution.

- Validates and creates the directive (idempotent on the idempotency key)
- Publishes an execution delivery to ``tenant.<tenant>.directives`` with trace headers

The idempotency key defaults to ``<type>:<tenant>:<subject id>`` so running
the same command twice returns the same directive.

Examples:
    uv run python -m scripts.request_directive --tenant org_acme --type forum.thread.lock \
      --payload '{"thread_id": "t1"}' --subject-id t1
    uv run python -m scripts.request_directive --tenant org_acme --type package.install \
      --payload '{"slug": "crm"}' --key package.install:org_acme:crm --no-enqueue
"""

import argparse
import asyncio
import json

from directive_engine.config import Settings
from directive_engine.db import dispose_engine
from directive_engine.dedup import build_idempotency_key
from directive_engine.directive_store import request_directive
from directive_engine.errors import ValidationError
from directive_engine.rabbit import connect, declare_tenant_topology, publish_directive_execution
from directive_engine.subject import default_subject
from directive_engine.tracing import get_tracer, inject_headers, start_tracing


async def main(args: argparse.Namespace) -> None:
    start_tracing("directive-producer")
    tracer = get_tracer("directive-producer")

    payload = json.loads(args.payload) if args.payload else {}
    subject_id = args.subject_id or (default_subject(args.type, payload) or {}).get("id")
    key = args.key or build_idempotency_key(args.type, args.tenant, subject_id or json.dumps(payload, sort_keys=True))

    try:
        directive = await request_directive(
            args.tenant,
            args.type,
            payload,
            key,
            max_attempts=args.max_attempts,
            requested_by=args.requested_by,
        )
    except ValidationError as exc:
        print(f"Rejected: {exc.message}")
        return
    finally:
        await dispose_engine()
    print(f"Directive {directive.id} status={directive.status} attempt={directive.attempt} key={key}")

    if args.no_enqueue:
        return
    connection = await connect(Settings().rabbitmq_url)
    async with connection:
        channel = await connection.channel(publisher_confirms=True)
        await declare_tenant_topology(channel, args.tenant)
        with tracer.start_as_current_span("publish") as span:
            span.set_attribute("directive_id", directive.id)
            await publish_directive_execution(channel, args.tenant, directive.id, headers=inject_headers())
    print(f"Enqueued execution for {directive.id}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Request a directive and enqueue its execution")
    parser.add_argument("--tenant", required=True)
    parser.add_argument("--type", required=True, help="Directive kind, e.g. forum.thread.lock")
    parser.add_argument("--payload", default="", help="JSON object")
    parser.add_argument("--key", default="", help="Idempotency key (default: <type>:<tenant>:<subject id>)")
    parser.add_argument("--subject-id", default="")
    parser.add_argument("--max-attempts", type=int, default=None)
    parser.add_argument("--requested-by", default=None)
    parser.add_argument("--no-enqueue", action="store_true")
    asyncio.run(main(parser.parse_args()))
