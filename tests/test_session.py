from __future__ import annotations

import asyncio

from payroute.config import Tier
from payroute.session import SessionConfig, SessionStore, get_session_id


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _store(clock: _FakeClock, timeout: float = 60.0) -> SessionStore:
    return SessionStore(
        SessionConfig(enabled=True, timeout_seconds=timeout), clock=clock
    )


def test_pin_is_honoured_within_timeout_and_lost_after() -> None:
    clock = _FakeClock()
    store = _store(clock)
    store.set("session-1", "openai/gpt-4o", Tier.COMPLEX)

    clock.now += 59
    entry = store.get("session-1")
    assert entry is not None
    assert entry.model == "openai/gpt-4o"
    assert entry.tier == Tier.COMPLEX

    clock.now += 61
    assert store.get("session-1") is None
    assert store.stats()["count"] == 0


def test_touch_extends_the_pin() -> None:
    clock = _FakeClock()
    store = _store(clock)
    store.set("session-1", "openai/gpt-4o", Tier.COMPLEX)

    clock.now += 50
    store.touch("session-1")
    clock.now += 50

    entry = store.get("session-1")
    assert entry is not None
    assert entry.request_count == 2


def test_set_on_existing_session_replaces_model() -> None:
    clock = _FakeClock()
    store = _store(clock)
    store.set("session-1", "openai/gpt-4o", Tier.COMPLEX)
    store.set("session-1", "deepseek/deepseek-chat", Tier.MEDIUM)

    entry = store.get("session-1")
    assert entry is not None
    assert entry.model == "deepseek/deepseek-chat"
    assert entry.tier == Tier.MEDIUM
    assert entry.request_count == 2
    assert entry.created_at == 1_000.0


def test_disabled_store_ignores_everything() -> None:
    store = SessionStore(SessionConfig(enabled=False))
    store.set("session-1", "openai/gpt-4o", Tier.COMPLEX)

    assert store.get("session-1") is None
    assert store.stats()["count"] == 0


def test_missing_session_id_is_ignored() -> None:
    store = _store(_FakeClock())
    store.set(None, "openai/gpt-4o", Tier.COMPLEX)

    assert store.get(None) is None
    assert store.stats()["count"] == 0


def test_clear_and_sweep() -> None:
    clock = _FakeClock()
    store = _store(clock)
    store.set("a", "m/a", Tier.SIMPLE)
    store.set("b", "m/b", Tier.SIMPLE)
    clock.now += 30
    store.set("c", "m/c", Tier.SIMPLE)

    store.clear("a")
    assert store.get("a") is None

    clock.now += 45
    assert store.sweep() == 1
    assert [item["model"] for item in store.stats()["sessions"]] == ["m/c"]

    store.clear()
    assert store.stats()["count"] == 0


def test_stats_truncate_session_ids() -> None:
    clock = _FakeClock()
    store = _store(clock)
    store.set("0123456789abcdef", "m/a", Tier.REASONING)
    clock.now += 12.34

    stats = store.stats()

    assert stats["count"] == 1
    session = stats["sessions"][0]
    assert session["id"] == "01234567..."
    assert session["tier"] == "REASONING"
    assert session["age_seconds"] == 12.3


def test_background_sweeper_starts_and_stops() -> None:
    async def _run() -> None:
        clock = _FakeClock()
        store = SessionStore(
            SessionConfig(
                enabled=True, timeout_seconds=1.0, cleanup_interval_seconds=0.01
            ),
            clock=clock,
        )
        store.set("a", "m/a", Tier.SIMPLE)
        store.start()
        clock.now += 5
        for _ in range(100):
            if store.stats()["count"] == 0:
                break
            await asyncio.sleep(0.01)
        assert store.stats()["count"] == 0
        await store.close()

    asyncio.run(_run())


def test_get_session_id_is_case_insensitive() -> None:
    assert get_session_id({"X-Session-ID": " abc "}) == "abc"
    assert get_session_id({"x-session-id": "abc"}) == "abc"
    assert get_session_id({"x-conversation": "abc"}, "X-Conversation") == "abc"
    assert get_session_id({"x-session-id": "   "}) is None
    assert get_session_id({}) is None
