"""Idempotency and dedupe key helpers.

Idempotency keys deduplicate *requests to create* a directive; dedupe keys
deduplicate *signal emission*. Both must be deterministic for logically
identical operations, so they are built only from stable identifiers.
"""

from __future__ import annotations

from typing import Any, Optional

from directive_engine.constants import SIGNAL_SUFFIX_STARTED


def normalize_optional_string(value: Any) -> Optional[str]:
    """Return ``value`` as a stripped string, or ``None`` when blank/absent."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_idempotency_key(directive_type: str, tenant: str, *parts: Any) -> str:
    """Return the conventional idempotency key ``<type>:<tenant>:<part>...``.

    Example:
        >>> build_idempotency_key("forum.thread.lock", "org_acme", "t1")
        'forum.thread.lock:org_acme:t1'
    """
    return ":".join([directive_type, tenant, *(str(p) for p in parts)])


def lifecycle_signal_type(directive_type: str, suffix: str) -> str:
    """Return ``<directive_type>.<suffix>``, e.g. ``forum.thread.lock.succeeded``."""
    return f"{directive_type}.{suffix}"


def lifecycle_dedupe_key(directive_type: str, suffix: str, tenant: str, subject_id: str,
                         directive_id: str, attempt: Optional[int] = None) -> str:
    """Return the dedupe key for a runner lifecycle signal.

    Terminal signals are keyed by ``(type, tenant, subject id, directive id)``
    so redeliveries of the same outcome collapse onto one fact. ``started``
    signals also carry the attempt number, one per claimed attempt.

    Example:
        >>> lifecycle_dedupe_key("forum.thread.lock", "succeeded", "org_acme", "t1", "d1")
        'forum.thread.lock.succeeded:org_acme:t1:d1'
    """
    key = f"{lifecycle_signal_type(directive_type, suffix)}:{tenant}:{subject_id}:{directive_id}"
    if suffix == SIGNAL_SUFFIX_STARTED and attempt is not None:
        key = f"{key}:{attempt}"
    return key
