from datetime import datetime, timedelta, timezone

import pytest

from directive_engine.errors import ReplayError, StorageError
from directive_engine.fanout import InMemoryFanoutPublisher, SignalFanout
from directive_engine.replay import SignalReplay
from directive_engine.signal_bus import SignalBus
from directive_engine.signal_store import list_signals

pytestmark = pytest.mark.usefixtures("db")

TENANT = "org_acme"
SUBJECT = {"type": "forum.thread", "id": "t1"}


async def seed(*types):
    bus = SignalBus()
    return [await bus.emit(TENANT, t, SUBJECT, {"n": i}) for i, t in enumerate(types)]


@pytest.mark.asyncio
async def test_replay_republishes_without_new_rows():
    (sid,) = await seed("forum.thread.locked")
    publisher = InMemoryFanoutPublisher()
    report = await SignalReplay(publisher).replay(TENANT, sid)

    assert report.signal_id == sid
    assert report.signal_type == "forum.thread.locked"
    assert publisher.published == [
        (TENANT, sid, {"replay": True, "source": "signal_replay", "signal_type": "forum.thread.locked"}),
    ]
    assert len(await list_signals(TENANT)) == 1


@pytest.mark.asyncio
async def test_replay_errors():
    (sid,) = await seed("forum.thread.locked")
    with pytest.raises(ReplayError):
        await SignalReplay(InMemoryFanoutPublisher()).replay(TENANT, "missing")
    with pytest.raises(ReplayError):
        await SignalReplay(InMemoryFanoutPublisher()).replay("org_other", sid)
    with pytest.raises(ReplayError):
        await SignalReplay(None).replay(TENANT, sid)


@pytest.mark.asyncio
async def test_replay_recent_and_by_type():
    await seed("forum.post.created", "forum.post.viewed", "forum.post.created")
    publisher = InMemoryFanoutPublisher()
    replay = SignalReplay(publisher)

    counts = await replay.replay_recent(TENANT, limit=10, exclude_types=["forum.post.viewed"])
    assert counts == {"enqueued": 2, "skipped": 0, "total": 2}

    counts = await replay.replay_by_type(TENANT, "forum.post.viewed")
    assert counts == {"enqueued": 1, "skipped": 0, "total": 1}

    counts = await replay.replay_recent(TENANT, limit=1)
    assert counts["total"] == 1
    assert len(await list_signals(TENANT)) == 3


@pytest.mark.asyncio
async def test_replay_by_ids_ignores_unknown_and_duplicates():
    ids = await seed("forum.post.created", "forum.post.created")
    publisher = InMemoryFanoutPublisher()
    counts = await SignalReplay(publisher).replay_by_ids(TENANT, [ids[0], ids[0], "nope", " "])
    assert counts == {"enqueued": 1, "skipped": 0, "total": 1}
    assert await SignalReplay(publisher).replay_by_ids(TENANT, []) == {"enqueued": 0, "skipped": 0, "total": 0}


@pytest.mark.asyncio
async def test_replay_time_range():
    await seed("forum.post.created", "forum.post.created")
    now = datetime.now(timezone.utc)
    replay = SignalReplay(InMemoryFanoutPublisher())
    counts = await replay.replay_time_range(TENANT, now - timedelta(minutes=5), now + timedelta(minutes=5))
    assert counts["enqueued"] == 2
    counts = await replay.replay_time_range(TENANT, now - timedelta(days=2), now - timedelta(days=1))
    assert counts["total"] == 0
    with pytest.raises(ReplayError):
        await replay.replay_time_range(TENANT, now, now - timedelta(minutes=1))


@pytest.mark.asyncio
async def test_bulk_replay_counts_publish_failures_as_skipped():
    await seed("forum.post.created", "forum.post.created")

    class FlakyPublisher:
        def __init__(self):
            self.calls = 0

        async def publish(self, tenant, signal_id, extra):
            self.calls += 1
            if self.calls == 1:
                raise ConnectionError("channel closed")

    counts = await SignalReplay(FlakyPublisher()).replay_recent(TENANT)
    assert counts == {"enqueued": 1, "skipped": 1, "total": 2}


@pytest.mark.asyncio
async def test_fanout_dispatch_in_order():
    (sid,) = await seed("forum.post.created")
    seen = []

    async def first(signal, ctx):
        seen.append(("first", signal.id, ctx["signal_type"], ctx.get("replay")))

    async def second(signal, ctx):
        seen.append(("second", signal.id, ctx["signal_type"], ctx.get("replay")))

    fanout = SignalFanout([first])
    fanout.register(second)
    report = await fanout.dispatch(TENANT, sid, {"replay": True})
    assert (report.status, report.invoked) == ("ok", 2)
    assert seen == [
        ("first", sid, "forum.post.created", True),
        ("second", sid, "forum.post.created", True),
    ]


@pytest.mark.asyncio
async def test_fanout_consumer_error_stops_chain():
    (sid,) = await seed("forum.post.created")
    seen = []

    async def broken(signal, ctx):
        raise RuntimeError("index unavailable")

    async def after(signal, ctx):
        seen.append(signal.id)

    report = await SignalFanout([broken, after]).dispatch(TENANT, sid)
    assert report.status == "error"
    assert report.should_redeliver is True
    assert "index unavailable" in report.error
    assert seen == []


@pytest.mark.asyncio
async def test_fanout_missing_signal_is_discarded():
    report = await SignalFanout([]).dispatch(TENANT, "missing")
    assert report.status == "discarded"
    assert report.should_redeliver is False


@pytest.mark.asyncio
async def test_fanout_load_failure_asks_for_redelivery(monkeypatch):
    async def broken_get(tenant, signal_id):
        raise StorageError("db down")

    monkeypatch.setattr("directive_engine.fanout.get_signal", broken_get)
    report = await SignalFanout([]).dispatch(TENANT, "any")
    assert report.should_redeliver is True
