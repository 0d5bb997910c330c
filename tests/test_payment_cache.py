from __future__ import annotations

from payroute.payment_cache import CachedPaymentParams, PaymentCache


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _params(amount: str = "1000") -> CachedPaymentParams:
    return CachedPaymentParams(pay_to="0x" + "22" * 20, max_amount=amount)


def test_entries_expire_after_ttl() -> None:
    clock = _FakeClock()
    cache = PaymentCache(ttl_seconds=10, clock=clock)
    cache.set("/api/v1/chat/completions", _params())

    clock.now = 9
    cached = cache.get("/api/v1/chat/completions")
    assert cached is not None
    assert cached.max_amount == "1000"
    assert cached.cached_at == 0

    clock.now = 11
    assert cache.get("/api/v1/chat/completions") is None
    assert len(cache) == 0


def test_set_refreshes_timestamp() -> None:
    clock = _FakeClock()
    cache = PaymentCache(ttl_seconds=10, clock=clock)
    cache.set("/p", _params("1"))
    clock.now = 8
    cache.set("/p", _params("2"))
    clock.now = 15

    cached = cache.get("/p")
    assert cached is not None
    assert cached.max_amount == "2"


def test_invalidate_and_clear() -> None:
    cache = PaymentCache()
    cache.set("/a", _params())
    cache.set("/b", _params())

    cache.invalidate("/a")
    cache.invalidate("/missing")
    assert cache.get("/a") is None
    assert cache.get("/b") is not None

    cache.clear()
    assert len(cache) == 0


def test_number_of_paths_is_bounded() -> None:
    cache = PaymentCache(max_entries=2)
    cache.set("/a", _params())
    cache.set("/b", _params())
    cache.get("/a")
    cache.set("/c", _params())

    assert len(cache) == 2
    assert cache.get("/b") is None
    assert cache.get("/a") is not None
    assert cache.get("/c") is not None
