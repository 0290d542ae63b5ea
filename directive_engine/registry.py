"""Handler registry: the closed set of directive kinds and their handlers.

Directive kinds are a ``str`` enum, so a registration for a kind that does not
exist fails when the worker module is imported instead of when the first
delivery arrives.

Handler contract:
- ``async def handler(tenant, payload, subject, directive_id) -> HandlerOk | HandlerErr``
- Expected domain failures are returned as ``HandlerErr``; raising is treated
  the same way by the runner but loses the structured ``kind``.
- The runner's guardrails prevent duplicate invocation, but handlers should
  still mutate idempotently ("set status to X", not "increment").
- Long-running work is split into further directives.

Example:
    >>> registry = HandlerRegistry()
    >>> @registry.handler(DirectiveKind.FORUM_THREAD_LOCK)
    ... async def lock_thread(tenant, payload, subject, directive_id):
    ...     return HandlerOk({"thread_id": payload["thread_id"], "locked": True})
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from directive_engine.errors import UnknownDirectiveType


class DirectiveKind(str, Enum):
    PACKAGE_INSTALL = "package.install"
    PACKAGE_UNINSTALL = "package.uninstall"
    FORUM_THREAD_LOCK = "forum.thread.lock"
    FORUM_THREAD_UNLOCK = "forum.thread.unlock"
    FORUM_POST_HIDE = "forum.post.hide"
    FORUM_POST_UNHIDE = "forum.post.unhide"
    FORUM_POST_DELETE = "forum.post.delete"

    @classmethod
    def parse(cls, value: Union[str, "DirectiveKind"]) -> "DirectiveKind":
        """Return the kind for ``value`` or raise ``UnknownDirectiveType``."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownDirectiveType(
                f"unknown directive type: {value!r}", details={"type": str(value)}
            ) from None


# Error kinds that never succeed on a second try, whatever the handler says
FATAL_ERROR_KINDS = frozenset({"ValidationError", "UnknownDirectiveType", "InvalidHandlerResult"})


@dataclass(frozen=True)
class HandlerOk:
    result: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HandlerErr:
    """A handler failure. ``retryable`` is forced off for ``FATAL_ERROR_KINDS``."""
    kind: str
    message: str
    retryable: bool = True
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind in FATAL_ERROR_KINDS:
            object.__setattr__(self, "retryable", False)

    def as_error(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "details": dict(self.details),
        }


HandlerResult = Union[HandlerOk, HandlerErr]
Handler = Callable[[str, Mapping[str, Any], Dict[str, str], str], Awaitable[HandlerResult]]


class HandlerRegistry:
    """Maps each ``DirectiveKind`` to exactly one handler."""

    def __init__(self) -> None:
        self._handlers: Dict[DirectiveKind, Handler] = {}

    def register(self, kind: Union[str, DirectiveKind], handler: Handler) -> Handler:
        """Register ``handler`` for ``kind``.

        Raises ``UnknownDirectiveType`` for kinds outside ``DirectiveKind`` and
        ``ValueError`` when the kind already has a handler.
        """
        parsed = DirectiveKind.parse(kind)
        if parsed in self._handlers:
            raise ValueError(f"handler already registered for {parsed.value}")
        self._handlers[parsed] = handler
        return handler

    def handler(self, kind: Union[str, DirectiveKind]) -> Callable[[Handler], Handler]:
        def decorator(fn: Handler) -> Handler:
            return self.register(kind, fn)

        return decorator

    def resolve(self, directive_type: str) -> Optional[Handler]:
        """Return the handler for a stored type string, or ``None``."""
        try:
            kind = DirectiveKind(directive_type)
        except ValueError:
            return None
        return self._handlers.get(kind)

    def kinds(self) -> list[DirectiveKind]:
        return sorted(self._handlers, key=lambda k: k.value)

    def __contains__(self, directive_type: object) -> bool:
        return isinstance(directive_type, str) and self.resolve(directive_type) is not None

    def __len__(self) -> int:
        return len(self._handlers)
