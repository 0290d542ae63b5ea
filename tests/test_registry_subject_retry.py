import pytest

from directive_engine.dedup import build_idempotency_key, lifecycle_dedupe_key
from directive_engine.errors import UnknownDirectiveType
from directive_engine.registry import DirectiveKind, HandlerErr, HandlerOk, HandlerRegistry
from directive_engine.replay import clamp_limit
from directive_engine.retry import decide_retry, next_delay_ms, pick_delay_bucket
from directive_engine.subject import default_subject, derive_subject


async def _noop(tenant, payload, subject, directive_id):
    return HandlerOk({})


def test_register_and_resolve():
    registry = HandlerRegistry()
    registry.register(DirectiveKind.FORUM_THREAD_LOCK, _noop)

    @registry.handler("forum.post.hide")
    async def hide(tenant, payload, subject, directive_id):
        return HandlerOk({"hidden": True})

    assert registry.resolve("forum.thread.lock") is _noop
    assert registry.resolve("forum.post.hide") is hide
    assert registry.resolve("forum.post.delete") is None
    assert registry.resolve("not.a.kind") is None
    assert "forum.post.hide" in registry
    assert len(registry) == 2


def test_register_rejects_unknown_kind():
    registry = HandlerRegistry()
    with pytest.raises(UnknownDirectiveType):
        registry.register("forum.thread.pin", _noop)


def test_register_rejects_duplicates():
    registry = HandlerRegistry()
    registry.register("package.install", _noop)
    with pytest.raises(ValueError):
        registry.register(DirectiveKind.PACKAGE_INSTALL, _noop)


def test_handler_err_as_error():
    err = HandlerErr("NotFound", "no such thread", retryable=False, details={"thread_id": "t1"})
    assert err.as_error() == {
        "kind": "NotFound", "message": "no such thread", "retryable": False, "details": {"thread_id": "t1"},
    }


def test_handler_err_fatal_kinds_are_never_retryable():
    assert HandlerErr("ValidationError", "thread_id is required").retryable is False
    assert HandlerErr("UnknownDirectiveType", "nope", retryable=True).retryable is False
    assert HandlerErr("Conflict", "thread busy").retryable is True


def test_derive_subject_prefers_explicit_then_payload():
    payload = {"thread_id": "t1", "subject": {"type": "forum.category", "id": "c9"}}
    assert derive_subject("forum.thread.lock", payload, "d1", {"type": "forum.thread", "id": "t7"}) == {
        "type": "forum.thread", "id": "t7",
    }
    assert derive_subject("forum.thread.lock", payload, "d1") == {"type": "forum.category", "id": "c9"}


def test_derive_subject_defaults():
    assert derive_subject("forum.thread.lock", {"threadId": " t1 "}, "d1") == {"type": "forum.thread", "id": "t1"}
    assert derive_subject("package.install", {"slug": "crm"}, "d1") == {"type": "package", "id": "crm"}
    assert derive_subject("package.uninstall", {"slug": "crm", "installation_id": "i1"}, "d1") == {
        "type": "package.installation", "id": "i1",
    }
    assert derive_subject("forum.post.hide", {}, "d1") == {"type": "directive", "id": "d1"}


def test_default_subject_uses_type_to_break_ties():
    payload = {"thread_id": "t1", "post_id": "p1"}
    assert default_subject("forum.post.hide", payload) == {"type": "forum.post", "id": "p1"}
    assert default_subject("forum.thread.unlock", payload) == {"type": "forum.thread", "id": "t1"}
    # Ignores malformed payload subjects and blank ids
    assert derive_subject("forum.post.hide", {"subject": {"type": ""}, "post_id": "  "}, "d9") == {
        "type": "directive", "id": "d9",
    }


def test_keys():
    assert build_idempotency_key("forum.thread.lock", "org_acme", "t1") == "forum.thread.lock:org_acme:t1"
    assert lifecycle_dedupe_key("forum.thread.lock", "succeeded", "org_acme", "t1", "d1", 3) == (
        "forum.thread.lock.succeeded:org_acme:t1:d1"
    )
    assert lifecycle_dedupe_key("forum.thread.lock", "started", "org_acme", "t1", "d1", 3) == (
        "forum.thread.lock.started:org_acme:t1:d1:3"
    )


def test_retry_decisions():
    assert next_delay_ms(0, [10, 20]) == 10
    assert next_delay_ms(7, [10, 20]) == 20
    d = decide_retry(attempt=1, max_attempts=3, retryable=True, delays=[10, 20, 40])
    assert (d.should_retry, d.delay_ms, d.reason) == (True, 10, "retryable")
    assert decide_retry(attempt=2, max_attempts=3, retryable=True, delays=[10, 20, 40]).delay_ms == 20
    assert decide_retry(attempt=3, max_attempts=3, retryable=True).reason == "exhausted"
    assert decide_retry(attempt=1, max_attempts=3, retryable=False).reason == "fatal"


def test_pick_delay_bucket():
    assert pick_delay_bucket(1, [1000, 2000]) == 1000
    assert pick_delay_bucket(1500, [2000, 1000]) == 2000
    assert pick_delay_bucket(10_000, [1000, 2000]) == 2000


def test_clamp_limit():
    assert clamp_limit(0, 100, 5000) == 1
    assert clamp_limit(999_999, 100, 5000) == 5000
    assert clamp_limit("junk", 100, 5000) == 100
