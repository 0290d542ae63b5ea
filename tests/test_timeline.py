import pytest

from directive_engine.directive_store import request_directive
from directive_engine.registry import HandlerOk, HandlerRegistry
from directive_engine.runner import DirectiveRunner
from directive_engine.signal_bus import SignalBus
from directive_engine.timeline import subject_timeline

pytestmark = pytest.mark.usefixtures("db")

TENANT = "org_acme"


@pytest.mark.asyncio
async def test_subject_timeline_interleaves_signals_and_directives():
    bus = SignalBus()
    await bus.emit(TENANT, "forum.thread.created", {"type": "forum.thread", "id": "t1"}, {})
    await bus.emit(TENANT, "forum.thread.created", {"type": "forum.thread", "id": "t2"}, {})

    registry = HandlerRegistry()

    @registry.handler("forum.thread.lock")
    async def lock(tenant, payload, subject, directive_id):
        return HandlerOk({"locked": True})

    # No explicit subject: linked through its lifecycle signals
    derived = await request_directive(TENANT, "forum.thread.lock", {"thread_id": "t1"}, "lock-t1")
    await DirectiveRunner(registry, bus).execute_directive(TENANT, derived.id)
    explicit = await request_directive(TENANT, "forum.thread.unlock", {}, "unlock-t1",
                                       subject={"type": "forum.thread", "id": "t1"})

    entries = await subject_timeline(TENANT, "forum.thread", "t1")
    kinds = [(e.kind, getattr(e.item, "type")) for e in entries]
    assert ("directive", "forum.thread.lock") in kinds
    assert ("directive", "forum.thread.unlock") in kinds
    assert ("signal", "forum.thread.created") in kinds
    assert ("signal", "forum.thread.lock.succeeded") in kinds
    assert all(getattr(e.item, "id") != "t2" for e in entries)
    assert len([k for k in kinds if k == ("signal", "forum.thread.created")]) == 1
    assert {e.item.id for e in entries if e.kind == "directive"} == {derived.id, explicit.id}

    stamps = [e.at for e in entries]
    assert stamps == sorted(stamps, reverse=True)


@pytest.mark.asyncio
async def test_subject_timeline_limit():
    bus = SignalBus()
    for _ in range(5):
        await bus.emit(TENANT, "forum.post.viewed", {"type": "forum.post", "id": "p1"}, {})
    assert len(await subject_timeline(TENANT, "forum.post", "p1", limit=3)) == 3
