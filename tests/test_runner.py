import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from directive_engine import directive_store
from directive_engine.config import Settings
from directive_engine.constants import (
    OUTCOME_DISCARDED,
    OUTCOME_FAILED,
    OUTCOME_RETRY,
    OUTCOME_SNOOZED,
    OUTCOME_SUCCEEDED,
    STATUS_FAILED,
    STATUS_REQUESTED,
    STATUS_RUNNING,
    STATUS_SUCCEEDED,
)
from directive_engine.directive_store import (
    cancel_directive,
    claim_for_execution,
    get_directive,
    request_directive,
    request_rerun,
)
from directive_engine.errors import StorageError, ValidationError
from directive_engine.registry import HandlerErr, HandlerOk, HandlerRegistry
from directive_engine.runner import DirectiveRunner
from directive_engine.signal_store import list_signals

TENANT = "org_acme"
KEY = "forum.thread.lock:org_acme:t1"


def make_runner(handler=None, kind="forum.thread.lock", **settings):
    registry = HandlerRegistry()
    calls = []

    async def default_handler(tenant, payload, subject, directive_id):
        calls.append((tenant, dict(payload), dict(subject), directive_id))
        return HandlerOk({"thread_id": payload.get("thread_id"), "locked": True})

    if handler is None:
        registry.register(kind, default_handler)
    else:
        async def wrapped(tenant, payload, subject, directive_id):
            calls.append((tenant, dict(payload), dict(subject), directive_id))
            return await handler(tenant, payload, subject, directive_id)

        registry.register(kind, wrapped)
    settings.setdefault("retry_delays_ms", [10, 20, 40])
    return DirectiveRunner(registry, settings=Settings(**settings)), calls


async def lock_directive(**opts):
    return await request_directive(TENANT, "forum.thread.lock", {"thread_id": "t1"}, KEY, **opts)


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_example_scenario_executes_once_and_signals_once():
    first = await lock_directive()
    second = await lock_directive()
    assert first.id == second.id

    runner, calls = make_runner()
    report = await runner.execute_directive(TENANT, first.id)
    assert report.outcome == OUTCOME_SUCCEEDED
    assert report.attempt == 1

    for _ in range(3):
        again = await runner.execute_directive(TENANT, first.id)
        assert again.outcome == OUTCOME_DISCARDED
        assert again.reason == "terminal"

    assert len(calls) == 1
    assert calls[0] == (TENANT, {"thread_id": "t1"}, {"type": "forum.thread", "id": "t1"}, first.id)

    directive = await get_directive(TENANT, first.id)
    assert directive.status == STATUS_SUCCEEDED
    assert directive.result == {"thread_id": "t1", "locked": True}
    assert directive.completed_at is not None
    assert directive.attempt == 1

    succeeded = await list_signals(TENANT, types=["forum.thread.lock.succeeded"])
    assert len(succeeded) == 1
    assert succeeded[0].dedupe_key == f"forum.thread.lock.succeeded:org_acme:t1:{first.id}"
    assert succeeded[0].subject == {"type": "forum.thread", "id": "t1"}
    assert succeeded[0].causation_id == first.id
    assert succeeded[0].source == "directive_runner"

    started = await list_signals(TENANT, types=["forum.thread.lock.started"])
    assert [s.dedupe_key for s in started] == [f"forum.thread.lock.started:org_acme:t1:{first.id}:1"]


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_missing_directive_is_discarded():
    runner, calls = make_runner()
    report = await runner.execute_directive(TENANT, "does-not-exist")
    assert report.outcome == OUTCOME_DISCARDED
    assert report.reason == "not_found"
    assert calls == []


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_other_tenant_cannot_execute():
    d = await lock_directive()
    runner, calls = make_runner()
    report = await runner.execute_directive("org_other", d.id)
    assert report.reason == "not_found"
    assert (await get_directive(TENANT, d.id)).status == STATUS_REQUESTED


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_snoozed_directive_is_not_transitioned():
    now = datetime.now(timezone.utc)
    d = await lock_directive(scheduled_at=now + timedelta(hours=1))
    runner, calls = make_runner()

    for _ in range(3):
        report = await runner.execute_directive(TENANT, d.id)
        assert report.outcome == OUTCOME_SNOOZED
        assert report.retry_after_ms > 0
    reloaded = await get_directive(TENANT, d.id)
    assert (reloaded.status, reloaded.attempt) == (STATUS_REQUESTED, 0)
    assert calls == []

    later, later_calls = make_runner()
    later._clock = lambda: now + timedelta(hours=2)
    assert (await later.execute_directive(TENANT, d.id)).outcome == OUTCOME_SUCCEEDED
    assert len(later_calls) == 1


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_canceled_directive_is_discarded():
    d = await lock_directive()
    await cancel_directive(TENANT, d.id)
    runner, calls = make_runner()
    report = await runner.execute_directive(TENANT, d.id)
    assert (report.outcome, report.reason) == (OUTCOME_DISCARDED, "terminal")
    assert calls == []


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_running_directive_is_discarded():
    d = await lock_directive()
    await claim_for_execution(TENANT, d.id)
    runner, calls = make_runner()
    report = await runner.execute_directive(TENANT, d.id)
    assert (report.outcome, report.reason) == (OUTCOME_DISCARDED, "in_flight")
    assert calls == []
    assert (await get_directive(TENANT, d.id)).status == STATUS_RUNNING


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_rerun_executes_exactly_once_more():
    d = await lock_directive()
    runner, calls = make_runner()
    await runner.execute_directive(TENANT, d.id)

    assert await request_rerun(TENANT, d.id) is True
    reports = [await runner.execute_directive(TENANT, d.id) for _ in range(3)]
    assert [r.outcome for r in reports] == [OUTCOME_SUCCEEDED, OUTCOME_DISCARDED, OUTCOME_DISCARDED]
    assert len(calls) == 2

    reloaded = await get_directive(TENANT, d.id)
    assert (reloaded.status, reloaded.attempt, reloaded.rerun_requested) == (STATUS_SUCCEEDED, 2, False)
    # Terminal signal key has no attempt, so the rerun's success is the same fact
    assert len(await list_signals(TENANT, types=["forum.thread.lock.succeeded"])) == 1
    assert len(await list_signals(TENANT, types=["forum.thread.lock.started"])) == 2


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_retryable_error_then_exhausted():
    async def flaky(tenant, payload, subject, directive_id):
        return HandlerErr("Unavailable", "forum service unavailable")

    d = await lock_directive(max_attempts=2)
    runner, calls = make_runner(flaky)

    first = await runner.execute_directive(TENANT, d.id)
    assert (first.outcome, first.status, first.attempt) == (OUTCOME_RETRY, STATUS_REQUESTED, 1)
    assert first.retry_after_ms == 10
    reloaded = await get_directive(TENANT, d.id)
    assert reloaded.status == STATUS_REQUESTED
    assert reloaded.error["kind"] == "Unavailable"

    second = await runner.execute_directive(TENANT, d.id)
    assert (second.outcome, second.status, second.attempt) == (OUTCOME_FAILED, STATUS_FAILED, 2)
    reloaded = await get_directive(TENANT, d.id)
    assert reloaded.status == STATUS_FAILED
    assert reloaded.completed_at is not None

    failed = await list_signals(TENANT, types=["forum.thread.lock.failed"])
    assert [s.dedupe_key for s in failed] == [f"forum.thread.lock.failed:org_acme:t1:{d.id}"]

    assert (await runner.execute_directive(TENANT, d.id)).outcome == OUTCOME_DISCARDED
    assert len(calls) == 2


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_fatal_error_fails_immediately():
    async def not_found(tenant, payload, subject, directive_id):
        return HandlerErr("NotFound", "thread t1 does not exist", retryable=False)

    d = await lock_directive(max_attempts=5)
    runner, _ = make_runner(not_found)
    report = await runner.execute_directive(TENANT, d.id)
    assert (report.outcome, report.attempt, report.reason) == (OUTCOME_FAILED, 1, "NotFound")


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_handler_validation_error_is_fatal():
    async def invalid(tenant, payload, subject, directive_id):
        raise ValidationError("thread_id is required")

    d = await lock_directive(max_attempts=5)
    runner, _ = make_runner(invalid)
    report = await runner.execute_directive(TENANT, d.id)
    assert (report.outcome, report.reason) == (OUTCOME_FAILED, "ValidationError")


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_returned_validation_error_is_not_retried():
    async def invalid(tenant, payload, subject, directive_id):
        return HandlerErr("ValidationError", "thread_id is required")

    d = await lock_directive(max_attempts=5)
    runner, calls = make_runner(invalid)
    report = await runner.execute_directive(TENANT, d.id)
    assert (report.outcome, report.reason) == (OUTCOME_FAILED, "ValidationError")
    reloaded = await get_directive(TENANT, d.id)
    assert (reloaded.status, reloaded.attempt) == (STATUS_FAILED, 1)
    assert reloaded.error["retryable"] is False
    assert len(calls) == 1


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_handler_exception_never_leaves_running():
    async def crash(tenant, payload, subject, directive_id):
        raise RuntimeError("handler crashed")

    d = await lock_directive(max_attempts=3)
    runner, _ = make_runner(crash)
    report = await runner.execute_directive(TENANT, d.id)
    assert (report.outcome, report.reason) == (OUTCOME_RETRY, "RuntimeError")
    reloaded = await get_directive(TENANT, d.id)
    assert reloaded.status == STATUS_REQUESTED
    assert reloaded.error["message"] == "handler crashed"


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_handler_timeout_counts_as_error():
    async def slow(tenant, payload, subject, directive_id):
        await asyncio.sleep(5)
        return HandlerOk({})

    d = await lock_directive(max_attempts=1)
    runner, _ = make_runner(slow, handler_timeout_s=0.05)
    report = await runner.execute_directive(TENANT, d.id)
    assert (report.outcome, report.reason) == (OUTCOME_FAILED, "Timeout")


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_unknown_directive_type_is_fatal():
    d = await request_directive(TENANT, "forum.post.hide", {"post_id": "p1"}, "k", max_attempts=5)
    runner, calls = make_runner()  # only forum.thread.lock registered
    report = await runner.execute_directive(TENANT, d.id)
    assert (report.outcome, report.reason) == (OUTCOME_FAILED, "UnknownDirectiveType")
    assert calls == []
    reloaded = await get_directive(TENANT, d.id)
    assert reloaded.error["kind"] == "UnknownDirectiveType"
    assert reloaded.error["retryable"] is False


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_non_json_result_is_fatal():
    async def bad_result(tenant, payload, subject, directive_id):
        return HandlerOk({"when": datetime.now(timezone.utc)})

    d = await lock_directive(max_attempts=5)
    runner, _ = make_runner(bad_result)
    report = await runner.execute_directive(TENANT, d.id)
    assert (report.outcome, report.reason) == (OUTCOME_FAILED, "ValidationError")


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_emit_failure_does_not_change_outcome(monkeypatch):
    async def broken_insert(draft):
        raise StorageError("signals table missing")

    monkeypatch.setattr("directive_engine.signal_bus.insert_signal", broken_insert)
    d = await lock_directive()
    runner, calls = make_runner()
    report = await runner.execute_directive(TENANT, d.id)
    assert report.outcome == OUTCOME_SUCCEEDED
    assert (await get_directive(TENANT, d.id)).status == STATUS_SUCCEEDED
    assert len(calls) == 1


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_storage_failure_before_claim_asks_for_retry(monkeypatch):
    async def broken_load(tenant, directive_id):
        raise StorageError("connection refused")

    monkeypatch.setattr("directive_engine.runner.get_directive", broken_load)
    runner, calls = make_runner()
    report = await runner.execute_directive(TENANT, "d1")
    assert (report.outcome, report.reason) == (OUTCOME_RETRY, "StorageError")
    assert report.retry_after_ms == 10
    assert calls == []


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_storage_failure_on_finalize_releases_claim(monkeypatch):
    async def broken_finalize(*args, **kwargs):
        raise StorageError("connection reset")

    monkeypatch.setattr("directive_engine.runner.mark_succeeded", broken_finalize)
    d = await lock_directive()
    runner, _ = make_runner()
    report = await runner.execute_directive(TENANT, d.id)
    assert report.outcome == OUTCOME_RETRY
    reloaded = await get_directive(TENANT, d.id)
    assert (reloaded.status, reloaded.attempt) == (STATUS_REQUESTED, 1)
    assert reloaded.error["kind"] == "StorageError"


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_failed_read_back_rolls_claim_back(monkeypatch):
    real_select = directive_store._select_directive
    seen = []

    async def flaky_select(session, tenant, directive_id):
        seen.append(directive_id)
        # 1st read is the runner's load, 2nd is the read-back inside the claim
        if len(seen) == 2:
            raise OperationalError("SELECT", {}, Exception("connection lost"))
        return await real_select(session, tenant, directive_id)

    monkeypatch.setattr(directive_store, "_select_directive", flaky_select)
    d = await lock_directive()
    runner, calls = make_runner()

    report = await runner.execute_directive(TENANT, d.id)
    assert (report.outcome, report.reason) == (OUTCOME_RETRY, "StorageError")
    reloaded = await get_directive(TENANT, d.id)
    assert (reloaded.status, reloaded.attempt) == (STATUS_REQUESTED, 0)
    assert calls == []

    again = await runner.execute_directive(TENANT, d.id)
    assert again.outcome == OUTCOME_SUCCEEDED
    assert (await get_directive(TENANT, d.id)).attempt == 1
    assert len(calls) == 1


@pytest.mark.asyncio
@pytest.mark.usefixtures("db")
async def test_storage_failure_on_last_attempt_fails_directive(monkeypatch):
    async def broken_finalize(*args, **kwargs):
        raise StorageError("connection reset")

    monkeypatch.setattr("directive_engine.runner.mark_succeeded", broken_finalize)
    d = await lock_directive(max_attempts=1)
    runner, calls = make_runner()

    report = await runner.execute_directive(TENANT, d.id)
    assert (report.outcome, report.reason) == (OUTCOME_FAILED, "StorageError")
    reloaded = await get_directive(TENANT, d.id)
    assert (reloaded.status, reloaded.attempt) == (STATUS_FAILED, 1)
    assert reloaded.error["kind"] == "StorageError"
    assert len(await list_signals(TENANT, types=["forum.thread.lock.failed"])) == 1

    again = await runner.execute_directive(TENANT, d.id)
    assert (again.outcome, again.reason) == (OUTCOME_DISCARDED, "terminal")
    assert len(calls) == 1


@pytest.mark.asyncio
@pytest.mark.usefixtures("file_db")
async def test_concurrent_deliveries_run_handler_once():
    gate = asyncio.Event()

    async def slow_lock(tenant, payload, subject, directive_id):
        await gate.wait()
        return HandlerOk({"locked": True})

    d = await lock_directive()
    runner, calls = make_runner(slow_lock)
    tasks = [asyncio.create_task(runner.execute_directive(TENANT, d.id)) for _ in range(5)]
    await asyncio.sleep(0.2)
    gate.set()
    reports = await asyncio.gather(*tasks)

    assert sorted(r.outcome for r in reports) == [OUTCOME_DISCARDED] * 4 + [OUTCOME_SUCCEEDED]
    assert len(calls) == 1
    assert (await get_directive(TENANT, d.id)).attempt == 1
