import pytest

from directive_engine.config import Settings
from directive_engine.errors import EmitError, StorageError, ValidationError
from directive_engine.fanout import InMemoryFanoutPublisher
from directive_engine.signal_bus import SignalBus
from directive_engine.signal_store import get_signal, list_signals

pytestmark = pytest.mark.usefixtures("db")

SUBJECT = {"type": "forum.post", "id": "p1"}


@pytest.mark.asyncio
async def test_emit_with_dedupe_key_writes_once():
    bus = SignalBus()
    first = await bus.emit("org_acme", "forum.post.created", SUBJECT, {"thread_id": "t1"},
                           dedupe_key="forum.post.created:org_acme:p1")
    second = await bus.emit("org_acme", "forum.post.created", SUBJECT, {"thread_id": "other"},
                            dedupe_key="forum.post.created:org_acme:p1")
    assert first is not None
    assert second == first

    rows = await list_signals("org_acme")
    assert len(rows) == 1
    assert rows[0].payload == {"thread_id": "t1"}
    assert rows[0].subject == SUBJECT


@pytest.mark.asyncio
async def test_dedupe_is_per_tenant():
    bus = SignalBus()
    a = await bus.emit("org_a", "forum.post.created", SUBJECT, {}, dedupe_key="same")
    b = await bus.emit("org_b", "forum.post.created", SUBJECT, {}, dedupe_key="same")
    assert a and b and a != b
    assert await get_signal("org_a", b) is None


@pytest.mark.asyncio
async def test_emit_without_key_appends():
    bus = SignalBus()
    ids = {await bus.emit("org_acme", "forum.post.viewed", SUBJECT, {}) for _ in range(3)}
    # Blank keys are treated as absent
    ids.add(await bus.emit("org_acme", "forum.post.viewed", SUBJECT, {}, dedupe_key="   "))
    assert len(ids) == 4
    assert len(await list_signals("org_acme")) == 4


@pytest.mark.asyncio
async def test_emit_strict_reports_created_flag():
    bus = SignalBus()
    first = await bus.emit_strict("org_acme", "package.installed", {"type": "package", "id": "crm"}, {},
                                  dedupe_key="k1", correlation_id="c1", actor={"type": "user", "id": "u1"})
    again = await bus.emit_strict("org_acme", "package.installed", {"type": "package", "id": "crm"}, {},
                                  dedupe_key="k1")
    assert first.created is True
    assert again.created is False
    assert again.signal_id == first.signal_id

    row = await get_signal("org_acme", first.signal_id)
    assert row.correlation_id == "c1"
    assert (row.actor_type, row.actor_id) == ("user", "u1")


@pytest.mark.asyncio
async def test_oversize_payload_rejected_not_truncated(monkeypatch):
    monkeypatch.setenv("MAX_PAYLOAD_BYTES", "64")
    bus = SignalBus(settings=Settings())
    with pytest.raises(ValidationError):
        await bus.emit_strict("org_acme", "forum.post.created", SUBJECT, {"body": "x" * 500})
    assert await bus.emit("org_acme", "forum.post.created", SUBJECT, {"body": "x" * 500}) is None
    assert await list_signals("org_acme") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("tenant,signal_type", [
    ("", "forum.post.created"),
    ("org_acme", ""),
    ("org_acme", "nodots"),
    ("org_acme", "Forum.Post"),
])
async def test_invalid_input_returns_none(tenant, signal_type):
    bus = SignalBus()
    assert await bus.emit(tenant, signal_type, SUBJECT, {}) is None
    with pytest.raises(ValidationError):
        await bus.emit_strict(tenant, signal_type, SUBJECT, {})


@pytest.mark.asyncio
async def test_emit_never_raises_on_store_failure(monkeypatch):
    async def broken_insert(draft):
        raise StorageError("database is down")

    monkeypatch.setattr("directive_engine.signal_bus.insert_signal", broken_insert)
    bus = SignalBus()
    assert await bus.emit("org_acme", "forum.post.created", SUBJECT, {}, dedupe_key="k") is None
    with pytest.raises(EmitError):
        await bus.emit_strict("org_acme", "forum.post.created", SUBJECT, {}, dedupe_key="k")


@pytest.mark.asyncio
async def test_emit_swallows_unexpected_errors(monkeypatch):
    async def exploding_insert(draft):
        raise RuntimeError("boom")

    monkeypatch.setattr("directive_engine.signal_bus.insert_signal", exploding_insert)
    assert await SignalBus().emit("org_acme", "forum.post.created", SUBJECT, {}) is None


@pytest.mark.asyncio
async def test_fanout_only_for_new_signals():
    publisher = InMemoryFanoutPublisher()
    bus = SignalBus(publisher=publisher)
    sid = await bus.emit("org_acme", "forum.post.created", SUBJECT, {}, dedupe_key="k")
    await bus.emit("org_acme", "forum.post.created", SUBJECT, {}, dedupe_key="k")
    await bus.emit("org_acme", "forum.post.created", SUBJECT, {}, enqueue_fanout=False)
    assert publisher.published == [("org_acme", sid, {})]


@pytest.mark.asyncio
async def test_fanout_failure_keeps_signal():
    class BrokenPublisher:
        async def publish(self, tenant, signal_id, extra):
            raise ConnectionError("broker gone")

    bus = SignalBus(publisher=BrokenPublisher())
    sid = await bus.emit("org_acme", "forum.post.created", SUBJECT, {})
    assert sid is not None
    assert await get_signal("org_acme", sid) is not None


@pytest.mark.asyncio
async def test_fanout_disabled_by_settings(monkeypatch):
    monkeypatch.setenv("SIGNAL_FANOUT_ENABLED", "false")
    publisher = InMemoryFanoutPublisher()
    bus = SignalBus(publisher=publisher, settings=Settings())
    assert await bus.emit("org_acme", "forum.post.created", SUBJECT, {}) is not None
    assert publisher.published == []


@pytest.mark.asyncio
async def test_list_signals_clamps_limit():
    bus = SignalBus()
    for _ in range(3):
        await bus.emit("org_acme", "forum.post.viewed", SUBJECT, {})
    assert len(await list_signals("org_acme", limit=0)) == 1
    assert len(await list_signals("org_acme", limit=-5)) == 1
    assert len(await list_signals("org_acme", limit=10**9)) == 3
