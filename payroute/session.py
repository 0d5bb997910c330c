from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from payroute.config import Tier

logger = logging.getLogger("uvicorn.error")

DEFAULT_SESSION_HEADER = "x-session-id"


@dataclass(slots=True)
class SessionConfig:
    enabled: bool = False
    timeout_seconds: float = 30 * 60
    header_name: str = DEFAULT_SESSION_HEADER
    cleanup_interval_seconds: float = 5 * 60


@dataclass(slots=True)
class SessionEntry:
    model: str
    tier: Tier
    created_at: float
    last_used_at: float
    request_count: int = 1


class SessionStore:
    """Pins a routed model to a client session so multi-step work stays on one model."""

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or SessionConfig()
        self._clock = clock
        self._sessions: dict[str, SessionEntry] = {}
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def get(self, session_id: str | None) -> SessionEntry | None:
        if not self.enabled or not session_id:
            return None
        entry = self._sessions.get(session_id)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock()):
            del self._sessions[session_id]
            return None
        return entry

    def set(self, session_id: str | None, model: str, tier: Tier) -> None:
        if not self.enabled or not session_id:
            return
        now = self._clock()
        existing = self._sessions.get(session_id)
        if existing is not None and not self._is_expired(existing, now):
            existing.last_used_at = now
            existing.request_count += 1
            if existing.model != model:
                existing.model = model
                existing.tier = tier
            return
        self._sessions[session_id] = SessionEntry(
            model=model,
            tier=tier,
            created_at=now,
            last_used_at=now,
        )

    def touch(self, session_id: str | None) -> None:
        if not self.enabled or not session_id:
            return
        entry = self._sessions.get(session_id)
        if entry is None:
            return
        entry.last_used_at = self._clock()
        entry.request_count += 1

    def clear(self, session_id: str | None = None) -> None:
        if session_id is None:
            self._sessions.clear()
        else:
            self._sessions.pop(session_id, None)

    def sweep(self) -> int:
        now = self._clock()
        expired = [
            session_id
            for session_id, entry in self._sessions.items()
            if self._is_expired(entry, now)
        ]
        for session_id in expired:
            del self._sessions[session_id]
        return len(expired)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "count": len(self._sessions),
            "sessions": [
                {
                    "id": session_id[:8] + "..." if len(session_id) > 8 else session_id,
                    "model": entry.model,
                    "tier": entry.tier.value,
                    "requests": entry.request_count,
                    "age_seconds": round(now - entry.created_at, 1),
                }
                for session_id, entry in self._sessions.items()
            ],
        }

    def start(self) -> None:
        if not self.enabled or self._sweeper is not None:
            return
        self._sweeper = asyncio.create_task(
            self._sweep_loop(), name="payroute-session-sweeper"
        )

    async def close(self) -> None:
        sweeper = self._sweeper
        self._sweeper = None
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        self._sessions.clear()

    async def _sweep_loop(self) -> None:
        interval = max(0.01, float(self.config.cleanup_interval_seconds))
        while True:
            await asyncio.sleep(interval)
            removed = self.sweep()
            if removed:
                logger.info(
                    "session_sweep removed=%d remaining=%d",
                    removed,
                    len(self._sessions),
                )

    def _is_expired(self, entry: SessionEntry, now: float) -> bool:
        return now - entry.last_used_at > self.config.timeout_seconds


def get_session_id(
    headers: Mapping[str, str],
    header_name: str = DEFAULT_SESSION_HEADER,
) -> str | None:
    value = headers.get(header_name)
    if value is None:
        target = header_name.lower()
        for name, raw in headers.items():
            if name.lower() == target:
                value = raw
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None
