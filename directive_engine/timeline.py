"""Read-only audit timeline for one subject.

Signals and directives about the same ``{type, id}`` are merged into one list
ordered by time, newest first, for rendering an audit trail. A directive is
on the timeline when it carries the subject explicitly or when one of its
lifecycle signals is about the subject (the runner sets the signal's
``causation_id`` to the directive id). Directives sort by ``created_at``,
signals by ``occurred_at``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Union

from directive_engine.constants import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT, SOURCE_DIRECTIVE_RUNNER
from directive_engine.directive_store import list_directives
from directive_engine.orm_models import Directive, Signal
from directive_engine.signal_store import list_signals
from directive_engine.validation import as_utc


@dataclass(frozen=True)
class TimelineEntry:
    kind: str  # signal | directive
    at: datetime
    item: Union[Signal, Directive]


async def subject_timeline(tenant: str, subject_type: str, subject_id: str,
                           limit: int = DEFAULT_LIST_LIMIT) -> list[TimelineEntry]:
    limit = max(1, min(int(limit), MAX_LIST_LIMIT))
    signals = await list_signals(tenant, subject_type=subject_type, subject_id=subject_id, limit=limit)
    directives = {
        d.id: d
        for d in await list_directives(tenant, subject_type=subject_type, subject_id=subject_id, limit=limit)
    }

    caused_by = {
        s.causation_id for s in signals
        if s.source == SOURCE_DIRECTIVE_RUNNER and s.causation_id and s.causation_id not in directives
    }
    if caused_by:
        for d in await list_directives(tenant, ids=sorted(caused_by), limit=len(caused_by)):
            directives[d.id] = d

    entries = [TimelineEntry("signal", as_utc(s.occurred_at or s.created_at), s) for s in signals]
    entries += [TimelineEntry("directive", as_utc(d.created_at), d) for d in directives.values()]
    entries.sort(key=lambda e: (e.at, e.kind, e.item.id), reverse=True)
    return entries[:limit]
