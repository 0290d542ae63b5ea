"""Subject derivation for directives.

The subject is the ``{type, id}`` pair a directive's lifecycle signals are
about. Resolution order:

1. The directive's explicit subject (``subject_type``/``subject_id`` columns).
2. ``payload["subject"]`` when it is a mapping with a usable type and id.
3. A default computed from the directive type and well-known payload ids.
4. ``{"type": "directive", "id": <directive id>}``.

Everything here is pure: same inputs, same subject.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

from directive_engine.dedup import normalize_optional_string
from directive_engine.validation import coerce_subject

# (payload keys, subject type), checked in order when the directive type
# does not pick one first
_ID_FIELDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("thread_id", "threadId"), "forum.thread"),
    (("post_id", "postId"), "forum.post"),
    (("installation_id", "installationId"), "package.installation"),
    (("slug",), "package"),
)

_TYPE_PREFERENCE: dict[str, str] = {
    "forum.thread": "forum.thread",
    "forum.post": "forum.post",
    "package": "package.installation",
}


def _first_id(payload: Mapping[str, Any], keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool):
            text = normalize_optional_string(value)
            if text:
                return text
    return None


def default_subject(directive_type: str, payload: Mapping[str, Any]) -> Optional[dict[str, str]]:
    """Compute a subject from ``directive_type`` and payload ids, or ``None``.

    The directive type decides which id wins when a payload carries several,
    e.g. ``forum.post.hide`` with both ``thread_id`` and ``post_id`` is about
    the post.

    Example:
        >>> default_subject("forum.thread.lock", {"thread_id": "t1"})
        {'type': 'forum.thread', 'id': 't1'}
    """
    preferred = None
    for prefix, subject_type in _TYPE_PREFERENCE.items():
        if directive_type == prefix or directive_type.startswith(prefix + "."):
            preferred = subject_type
            break

    ordered = sorted(_ID_FIELDS, key=lambda item: item[1] != preferred)
    for keys, subject_type in ordered:
        subject_id = _first_id(payload, keys)
        if subject_id is not None:
            return {"type": subject_type, "id": subject_id}
    return None


def derive_subject(
    directive_type: str,
    payload: Optional[Mapping[str, Any]],
    directive_id: str,
    explicit: Optional[Mapping[str, Any]] = None,
) -> dict[str, str]:
    """Return the subject for a directive; never ``None``."""
    payload = payload or {}
    for candidate in (explicit, payload.get("subject")):
        ref = coerce_subject(dict(candidate)) if isinstance(candidate, Mapping) else None
        if ref is not None:
            return {"type": ref.type, "id": ref.id}

    derived = default_subject(directive_type, payload)
    if derived is not None:
        return derived
    return {"type": "directive", "id": directive_id}
