"""Shared constants for directive lifecycle, signal naming, and limits.

These values centralize naming so the store, runner, replay tooling and the
database stay consistent.

States (directives.status):
- ``requested``: Created (or released for retry / reopened by rerun); runnable once due.
- ``running``: Claimed by exactly one execution; handler in flight.
- ``succeeded``: Handler returned a result. Terminal.
- ``failed``: Fatal error or retry budget exhausted. Terminal.
- ``canceled``: Canceled by an operator while still ``requested``. Terminal.

Lifecycle signals (signals.type), emitted by the runner:
- ``<directive type>.started``: A delivery claimed the directive (one per attempt).
- ``<directive type>.succeeded``: The directive reached ``succeeded``.
- ``<directive type>.failed``: The directive reached ``failed``.
"""
import re

STATUS_REQUESTED = "requested"
STATUS_RUNNING = "running"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUS_CANCELED = "canceled"

ALL_STATUSES = (STATUS_REQUESTED, STATUS_RUNNING, STATUS_SUCCEEDED, STATUS_FAILED, STATUS_CANCELED)
TERMINAL_STATUSES = (STATUS_SUCCEEDED, STATUS_FAILED, STATUS_CANCELED)

# Lifecycle signal suffixes
SIGNAL_SUFFIX_STARTED = "started"
SIGNAL_SUFFIX_SUCCEEDED = "succeeded"
SIGNAL_SUFFIX_FAILED = "failed"

# Signal sources
SOURCE_DIRECTIVE_RUNNER = "directive_runner"
SOURCE_REPLAY = "signal_replay"

# Runner outcomes reported back to the scheduler
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_FAILED = "failed"
OUTCOME_RETRY = "retry"
OUTCOME_DISCARDED = "discarded"
OUTCOME_SNOOZED = "snoozed"

# Dotted names: "forum.thread.lock", "package.install.succeeded"
DOTTED_NAME_PATTERN = r"^[a-z0-9_]+(\.[a-z0-9_]+)+$"
DOTTED_NAME_RE = re.compile(DOTTED_NAME_PATTERN)

MAX_NAME_LENGTH = 255
MAX_KEY_LENGTH = 512
MAX_ATTEMPTS_CEILING = 100

# Read/replay limits (clamped)
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 500
# Signal scans also back bulk replay, whose largest window is 50k rows
MAX_SIGNAL_LIST_LIMIT = 50_000
