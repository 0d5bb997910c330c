from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from payroute.runtime.bounded_maps import BoundedValueMap


@dataclass(frozen=True, slots=True)
class CachedPaymentParams:
    pay_to: str
    max_amount: str
    scheme: str = "exact"
    network: str = "eip155:8453"
    asset: str = ""
    max_timeout_seconds: int = 300
    resource: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    cached_at: float = 0.0


class PaymentCache:
    """Remembers the last payment terms seen per upstream path.

    Entries only save the initial unpaid round trip; a stale entry is detected
    when the upstream rejects the signed payment, and the caller invalidates it.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 256,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: BoundedValueMap[str, CachedPaymentParams] = BoundedValueMap(
            max_keys=max_entries
        )

    def get(self, path: str) -> CachedPaymentParams | None:
        entry = self._entries.get(path)
        if entry is None:
            return None
        if self._clock() - entry.cached_at > self._ttl_seconds:
            self._entries.pop(path)
            return None
        return entry

    def set(self, path: str, params: CachedPaymentParams) -> None:
        self._entries.set(path, replace(params, cached_at=self._clock()))

    def invalidate(self, path: str) -> None:
        self._entries.pop(path)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
