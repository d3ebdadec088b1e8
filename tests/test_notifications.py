"""Tests for the NotifiedSet and the NotificationDispatcher."""

import asyncio
import logging
from datetime import datetime, timedelta

import pytest

from streetly.errors import NotificationError, StoreFailure
from streetly.models.match import MatchRecord
from streetly.notify.dispatcher import (
    FALLBACK_NAME,
    MATCH_TITLE,
    InMemorySink,
    LoggingSink,
    NotificationDispatcher,
    NotifiedSet,
    dedup_key,
)
from streetly.store.memory import InMemoryStore


def _make_record(match_id: str = "match_1", score: float = 0.8) -> MatchRecord:
    return MatchRecord(
        match_id=match_id,
        user_id_a="alice",
        user_id_b="bob",
        compatibility_score=score,
        reasoning="Both hike",
        created_at=datetime.utcnow(),
    )


class _FlakySink(InMemorySink):
    """Raises on the first `failures` sends, then behaves."""

    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    async def send(self, title, body, payload):
        if self.failures > 0:
            self.failures -= 1
            raise NotificationError("platform refused")
        return await super().send(title, body, payload)


class _CountingSink(InMemorySink):
    def __init__(self, permitted: bool = True):
        super().__init__(permitted)
        self.permission_checks = 0

    async def ensure_permission(self):
        self.permission_checks += 1
        return await super().ensure_permission()


class _BrokenProfileStore:
    async def get_profile(self, user_id):
        raise StoreFailure("profiles unavailable")


class TestNotifiedSet:
    def test_add_and_contains(self):
        notified = NotifiedSet(capacity=3)
        assert notified.add("a") == []
        assert "a" in notified
        assert "b" not in notified

    def test_evicts_oldest_first(self):
        notified = NotifiedSet(capacity=3)
        for key in ("a", "b", "c"):
            notified.add(key)
        evicted = notified.add("d")

        assert evicted == ["a"]
        assert notified.keys() == ["b", "c", "d"]
        assert len(notified) == 3

    def test_capacity_one_keeps_new_key(self):
        notified = NotifiedSet(capacity=1)
        notified.add("a")
        assert notified.add("b") == ["a"]
        assert "b" in notified

    def test_readding_does_not_evict(self):
        notified = NotifiedSet(capacity=2)
        notified.add("a")
        notified.add("b")
        assert notified.add("a") == []
        assert notified.keys() == ["a", "b"]

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            NotifiedSet(capacity=0)


class TestDedupKey:
    def test_prefers_match_id(self):
        assert dedup_key(_make_record("match_9"), "Bob") == "match_9"

    def test_falls_back_to_name_and_score(self):
        assert dedup_key(_make_record(""), "Bob") == "Bob:0.80"


class TestNotifyIfNew:
    def setup_method(self):
        self.sink = InMemorySink()
        self.dispatcher = NotificationDispatcher(self.sink, capacity=100)

    @pytest.mark.asyncio
    async def test_true_exactly_once_per_key(self):
        record = _make_record()
        results = [await self.dispatcher.notify_if_new(record, "Bob") for _ in range(5)]

        assert results == [True, False, False, False, False]
        assert len(self.sink.outbox) == 1

    @pytest.mark.asyncio
    async def test_message_content(self):
        await self.dispatcher.notify_if_new(_make_record(score=0.85), "Bob")
        sent = self.sink.outbox[0]
        assert sent["title"] == MATCH_TITLE
        assert sent["body"] == "You matched with Bob"
        assert sent["payload"] == "match:Bob:0.85"

    @pytest.mark.asyncio
    async def test_failed_send_is_not_marked(self):
        sink = _FlakySink(failures=1)
        dispatcher = NotificationDispatcher(sink)
        record = _make_record()

        assert await dispatcher.notify_if_new(record, "Bob") is False
        assert record.match_id not in dispatcher.notified
        assert await dispatcher.notify_if_new(record, "Bob") is True
        assert len(sink.outbox) == 1

    @pytest.mark.asyncio
    async def test_permission_refused_sends_nothing(self):
        sink = _CountingSink(permitted=False)
        dispatcher = NotificationDispatcher(sink)

        assert await dispatcher.notify_if_new(_make_record("m1"), "Bob") is False
        assert await dispatcher.notify_if_new(_make_record("m2"), "Cat") is False
        assert sink.outbox == []
        assert len(dispatcher.notified) == 0
        assert sink.permission_checks == 1

    @pytest.mark.asyncio
    async def test_evicted_key_can_notify_again(self):
        dispatcher = NotificationDispatcher(self.sink, capacity=2)
        for match_id in ("m1", "m2", "m3"):
            await dispatcher.notify_if_new(_make_record(match_id), "Bob")

        assert "m1" not in dispatcher.notified
        assert await dispatcher.notify_if_new(_make_record("m1"), "Bob") is True

    @pytest.mark.asyncio
    async def test_reset_forgets_keys(self):
        record = _make_record()
        await self.dispatcher.notify_if_new(record, "Bob")
        self.dispatcher.reset()
        assert await self.dispatcher.notify_if_new(record, "Bob") is True


class TestLoggingSink:
    @pytest.mark.asyncio
    async def test_alert_written_to_log(self, caplog):
        dispatcher = NotificationDispatcher(LoggingSink())
        with caplog.at_level(logging.INFO, logger="streetly.notify.dispatcher"):
            assert await dispatcher.notify_if_new(_make_record(), "Bob") is True
        assert "You matched with Bob" in caplog.text


class TestReconcile:
    def setup_method(self):
        self.store = InMemoryStore()
        self.store.put_user("alice", "Alice")
        self.store.put_user("bob", "Bob")
        self.store.put_user("cat", "Cat")
        self.sink = InMemorySink()
        self.dispatcher = NotificationDispatcher(
            self.sink, matches=self.store, profiles=self.store,
        )

    @pytest.mark.asyncio
    async def test_notifies_matches_created_out_of_band(self):
        await self.store.create_match("alice", "bob", 0.8, "Both hike")
        await self.store.create_match("cat", "alice", 0.6, "Both read")

        sent = await self.dispatcher.reconcile("alice", within=timedelta(hours=24))

        assert sent == 2
        bodies = sorted(n["body"] for n in self.sink.outbox)
        assert bodies == ["You matched with Bob", "You matched with Cat"]

    @pytest.mark.asyncio
    async def test_no_duplicates_against_inline_notifications(self):
        inline = await self.store.create_match("alice", "bob", 0.8, "Both hike")
        await self.dispatcher.notify_if_new(inline, "Bob")
        await self.store.create_match("alice", "cat", 0.6, "Both read")

        sent = await self.dispatcher.reconcile("alice", within=timedelta(hours=24))
        again = await self.dispatcher.reconcile("alice", within=timedelta(hours=24))

        assert sent == 1
        assert again == 0
        assert len(self.sink.outbox) == 2

    @pytest.mark.asyncio
    async def test_lookback_window(self):
        await self.store.create_match("alice", "bob", 0.8, "Both hike")
        later = datetime.utcnow() + timedelta(hours=25)

        sent = await self.dispatcher.reconcile(
            "alice", within=timedelta(hours=24), current_time=later,
        )
        assert sent == 0

    @pytest.mark.asyncio
    async def test_unknown_counterpart_uses_fallback_name(self):
        await self.store.create_match("alice", "zed", 0.9, "Mystery")
        await self.dispatcher.reconcile("alice", within=timedelta(hours=24))
        assert self.sink.outbox[0]["body"] == f"You matched with {FALLBACK_NAME}"

    @pytest.mark.asyncio
    async def test_counterpart_lookup_failure_skips_match(self):
        await self.store.create_match("alice", "bob", 0.8, "Both hike")
        dispatcher = NotificationDispatcher(
            self.sink, matches=self.store, profiles=_BrokenProfileStore(),
        )
        assert await dispatcher.reconcile("alice", within=timedelta(hours=24)) == 0
        assert self.sink.outbox == []


class _SlowSink(InMemorySink):
    """Suspends inside send; optionally raises `error` on the first send."""

    def __init__(self, error: Exception = None):
        super().__init__()
        self.error = error

    async def send(self, title, body, payload):
        await asyncio.sleep(0.01)
        if self.error is not None:
            error, self.error = self.error, None
            raise error
        return await super().send(title, body, payload)


class _PermissionCrashSink(InMemorySink):
    async def ensure_permission(self):
        raise RuntimeError("notification service not bound")


class TestConcurrentNotify:
    @pytest.mark.asyncio
    async def test_concurrent_calls_send_once(self):
        sink = _SlowSink()
        dispatcher = NotificationDispatcher(sink)
        record = _make_record()

        results = await asyncio.gather(
            dispatcher.notify_if_new(record, "Bob"),
            dispatcher.notify_if_new(record, "Bob"),
        )

        assert sorted(results) == [False, True]
        assert len(sink.outbox) == 1

    @pytest.mark.asyncio
    async def test_inline_notify_racing_reconcile_sends_once(self):
        store = InMemoryStore()
        store.put_user("alice", "Alice")
        store.put_user("bob", "Bob")
        record = await store.create_match("alice", "bob", 0.8, "Both hike")
        sink = _SlowSink()
        dispatcher = NotificationDispatcher(sink, matches=store, profiles=store)

        inline, reconciled = await asyncio.gather(
            dispatcher.notify_if_new(record, "Bob"),
            dispatcher.reconcile("alice", within=timedelta(hours=24)),
        )

        assert inline is True
        assert reconciled == 0
        assert len(sink.outbox) == 1

    @pytest.mark.asyncio
    async def test_failed_concurrent_send_releases_key(self):
        sink = _SlowSink(error=NotificationError("platform refused"))
        dispatcher = NotificationDispatcher(sink)
        record = _make_record()

        results = await asyncio.gather(
            dispatcher.notify_if_new(record, "Bob"),
            dispatcher.notify_if_new(record, "Bob"),
        )

        assert results == [False, False]
        assert not dispatcher.is_handled(record.match_id)
        assert await dispatcher.notify_if_new(record, "Bob") is True


class TestSinkCrashes:
    @pytest.mark.asyncio
    async def test_unexpected_send_error_is_a_failed_send(self):
        sink = _SlowSink(error=OSError("notification daemon gone"))
        dispatcher = NotificationDispatcher(sink)
        record = _make_record()

        assert await dispatcher.notify_if_new(record, "Bob") is False
        assert record.match_id not in dispatcher.notified
        assert await dispatcher.notify_if_new(record, "Bob") is True

    @pytest.mark.asyncio
    async def test_permission_check_error_sends_nothing(self):
        sink = _PermissionCrashSink()
        dispatcher = NotificationDispatcher(sink)

        assert await dispatcher.notify_if_new(_make_record(), "Bob") is False
        assert sink.outbox == []
        assert len(dispatcher.notified) == 0

    @pytest.mark.asyncio
    async def test_reconcile_survives_crashing_sink(self):
        store = InMemoryStore()
        store.put_user("bob", "Bob")
        await store.create_match("alice", "bob", 0.8, "Both hike")
        dispatcher = NotificationDispatcher(
            _SlowSink(error=RuntimeError("boom")), matches=store, profiles=store,
        )

        assert await dispatcher.reconcile("alice", within=timedelta(hours=24)) == 0
        assert await dispatcher.reconcile("alice", within=timedelta(hours=24)) == 1


class _IdlessMatchStore:
    """Match store whose records carry no id, as rows from an older schema do."""

    def __init__(self, record: MatchRecord):
        self.record = record

    async def list_matches_for_user(self, user_id, since=None):
        return [self.record]


class TestFallbackKeys:
    @pytest.mark.asyncio
    async def test_reconcile_honours_name_and_score_key(self):
        record = _make_record(match_id="")
        profiles = InMemoryStore()
        profiles.put_user("bob", "Bob")
        sink = InMemorySink()
        dispatcher = NotificationDispatcher(
            sink, matches=_IdlessMatchStore(record), profiles=profiles,
        )

        assert await dispatcher.notify_if_new(record, "Bob") is True
        assert await dispatcher.reconcile("alice", within=timedelta(hours=24)) == 0
        assert len(sink.outbox) == 1
