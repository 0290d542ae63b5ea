"""AMQP plumbing for directive deliveries and signal fan-out.

Topology per tenant:
- ``tenant.<tenant>.directives`` (direct) -> ``tenant.<tenant>.directives.q``
- ``tenant.<tenant>.directives.retry`` (direct) -> one TTL queue per delay,
  each dead-lettering back into ``tenant.<tenant>.directives``
- ``tenant.<tenant>.signals`` (fanout) -> ``tenant.<tenant>.signals.q``

Deliveries carry only ids; the database row is the source of truth, so a
duplicated or replayed message is harmless.
"""

import asyncio
import json
import logging
import ssl
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractRobustConnection, HeadersType

from directive_engine.config import Settings

logger = logging.getLogger(__name__)

DIRECTIVES_ROUTING_KEY = "execute"


def directives_exchange(tenant: str) -> str:
    return f"tenant.{tenant}.directives"


def directives_queue(tenant: str) -> str:
    return f"tenant.{tenant}.directives.q"


def signals_exchange(tenant: str) -> str:
    return f"tenant.{tenant}.signals"


def signals_queue(tenant: str) -> str:
    return f"tenant.{tenant}.signals.q"


def _tls_context(settings: Settings) -> Optional[ssl.SSLContext]:
    """TLS context for ``amqps://`` URLs or when any certificate path is set."""
    uses_tls = urlsplit(settings.rabbitmq_url).scheme.lower() == "amqps"
    has_certs = bool(settings.rabbitmq_ssl_ca_path or settings.rabbitmq_ssl_cert_path or settings.rabbitmq_ssl_key_path)
    if not (uses_tls or has_certs):
        return None

    ctx = ssl.create_default_context(cafile=settings.rabbitmq_ssl_ca_path or None)
    if settings.rabbitmq_ssl_cert_path and settings.rabbitmq_ssl_key_path:
        # mTLS client certificate
        ctx.load_cert_chain(settings.rabbitmq_ssl_cert_path, settings.rabbitmq_ssl_key_path)
    verify = settings.rabbitmq_ssl_verify
    ctx.check_hostname = verify and settings.rabbitmq_ssl_check_hostname
    ctx.verify_mode = ssl.CERT_REQUIRED if verify else ssl.CERT_NONE
    return ctx


async def connect(amqp_url: str | None = None, settings: Settings | None = None) -> AbstractRobustConnection:
    """Open a robust connection, retrying with capped exponential backoff.

    Attempts and delays come from ``RABBITMQ_CONNECT_ATTEMPTS``,
    ``RABBITMQ_CONNECT_BASE_DELAY_MS`` and ``RABBITMQ_CONNECT_MAX_DELAY_MS``.
    The last connection error is re-raised once attempts run out.
    """
    settings = settings or Settings()
    url = amqp_url or settings.rabbitmq_url
    ctx = _tls_context(settings)
    kwargs: Dict[str, Any] = {"ssl": True, "ssl_options": ctx} if ctx is not None else {}

    attempts = max(1, settings.rabbitmq_connect_attempts)
    delay_ms = settings.rabbitmq_connect_base_delay_ms
    for attempt in range(1, attempts + 1):
        try:
            return await aio_pika.connect_robust(url, **kwargs)
        except Exception as exc:  # noqa: BLE001
            if attempt >= attempts:
                raise
            logger.warning(
                "amqp connect failed",
                extra={"attempt": attempt, "attempts": attempts, "retry_in_ms": delay_ms, "error": str(exc)},
            )
            await asyncio.sleep(delay_ms / 1000.0)
            delay_ms = min(delay_ms * 2, settings.rabbitmq_connect_max_delay_ms)
    raise RuntimeError("unreachable")


async def declare_tenant_topology(channel: AbstractChannel, tenant: str) -> None:
    """Declare the tenant's directive-execution and signal fan-out exchanges/queues."""
    dir_exchange = await channel.declare_exchange(directives_exchange(tenant), ExchangeType.DIRECT, durable=True)
    dir_queue = await channel.declare_queue(directives_queue(tenant), durable=True)
    await dir_queue.bind(dir_exchange, routing_key=DIRECTIVES_ROUTING_KEY)

    sig_exchange = await channel.declare_exchange(signals_exchange(tenant), ExchangeType.FANOUT, durable=True)
    sig_queue = await channel.declare_queue(signals_queue(tenant), durable=True)
    await sig_queue.bind(sig_exchange)


def _json_message(body: Mapping[str, Any], headers: Optional[HeadersType], persistent: bool = True) -> Message:
    hdrs: Dict[str, Any] = dict(headers) if headers else {}
    return Message(
        body=json.dumps(body, separators=(",", ":")).encode("utf-8"),
        content_type="application/json",
        delivery_mode=DeliveryMode.PERSISTENT if persistent else DeliveryMode.NOT_PERSISTENT,
        headers=hdrs,
    )


async def publish_directive_execution(
    channel: AbstractChannel,
    tenant: str,
    directive_id: str,
    headers: Optional[HeadersType] = None,
) -> None:
    """Ask the tenant's directive workers to execute ``directive_id``."""
    exchange = await channel.get_exchange(directives_exchange(tenant))
    message = _json_message({"tenant": tenant, "directive_id": directive_id}, headers)
    await exchange.publish(message, routing_key=DIRECTIVES_ROUTING_KEY, mandatory=True)


async def publish_signal(
    channel: AbstractChannel,
    tenant: str,
    signal_id: str,
    extra: Optional[Mapping[str, Any]] = None,
    headers: Optional[HeadersType] = None,
) -> None:
    """Publish a persisted signal id to the tenant's fan-out exchange."""
    exchange = await channel.get_exchange(signals_exchange(tenant))
    body = {**dict(extra or {}), "tenant": tenant, "signal_id": signal_id}
    await exchange.publish(_json_message(body, headers), routing_key="")


def directives_retry_exchange(tenant: str) -> str:
    return f"tenant.{tenant}.directives.retry"


async def declare_directive_retry_topology(channel: AbstractChannel, tenant: str,
                                           delays_ms: list[int] | None = None) -> None:
    """Declare the retry exchange and per-delay queues that DLX back to the directives exchange.

    Each delay queue holds a delivery for ``x-message-ttl`` milliseconds and
    then dead-letters it to ``tenant.<tenant>.directives``.
    """
    if delays_ms is None:
        delays_ms = [1000, 2000, 4000, 8000]

    retry_exchange = await channel.declare_exchange(directives_retry_exchange(tenant), ExchangeType.DIRECT, durable=True)
    for delay in delays_ms:
        queue = await channel.declare_queue(
            f"tenant.{tenant}.directives.retry.{delay}",
            durable=True,
            arguments={
                "x-message-ttl": delay,
                "x-dead-letter-exchange": directives_exchange(tenant),
                "x-dead-letter-routing-key": DIRECTIVES_ROUTING_KEY,
            },
        )
        await queue.bind(retry_exchange, routing_key=f"delay_{delay}")


async def schedule_directive_redelivery(
    channel: AbstractChannel,
    tenant: str,
    directive_id: str,
    delay_ms: int,
    headers: Optional[HeadersType] = None,
) -> None:
    """Send a directive delivery to the delay queue for ``delay_ms`` (a declared bucket)."""
    exchange = await channel.get_exchange(directives_retry_exchange(tenant))
    message = _json_message({"tenant": tenant, "directive_id": directive_id}, headers)
    await exchange.publish(message, routing_key=f"delay_{delay_ms}")
