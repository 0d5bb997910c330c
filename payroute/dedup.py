from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from fastapi.responses import Response

logger = logging.getLogger("uvicorn.error")

FINGERPRINT_PARAMETERS = (
    "temperature",
    "top_p",
    "max_tokens",
    "max_completion_tokens",
    "tools",
    "tool_choice",
    "response_format",
    "stop",
    "n",
    "seed",
    "stream",
)
_MESSAGE_KEYS = ("role", "name", "tool_call_id", "tool_calls")
_WHITESPACE = re.compile(r"\s+")


@dataclass(slots=True)
class DedupConfig:
    enabled: bool = True
    wait_timeout_seconds: float = 180.0


@dataclass(slots=True)
class CachedResponse:
    status_code: int
    headers: dict[str, str]
    body: bytes

    def to_fastapi_response(self, *, shared: bool = False) -> Response:
        response = Response(
            content=self.body,
            status_code=self.status_code,
            headers=self.headers,
        )
        if shared:
            response.headers["x-payroute-dedup"] = "shared"
        return response


class RequestDeduplicator:
    """Collapses concurrent identical requests onto a single in-flight producer.

    Entries live only while the leader's producer runs. Followers receive the
    leader's result (or exception); nothing is retained after it settles.
    """

    def __init__(self, config: DedupConfig | None = None) -> None:
        self._config = config or DedupConfig()
        self._inflight: dict[str, asyncio.Future[Any]] = {}

    @property
    def in_flight_count(self) -> int:
        return len(self._inflight)

    async def run_deduplicated[T](
        self,
        fingerprint: str,
        producer: Callable[[], Awaitable[T]],
    ) -> T:
        result, _ = await self.run_tracked(fingerprint, producer)
        return result

    async def run_tracked[T](
        self,
        fingerprint: str,
        producer: Callable[[], Awaitable[T]],
    ) -> tuple[T, bool]:
        """Return the result and whether another caller produced it."""
        if not self._config.enabled:
            return await producer(), False

        existing = self._inflight.get(fingerprint)
        if existing is not None:
            try:
                shared = await asyncio.wait_for(
                    asyncio.shield(existing),
                    timeout=self._config.wait_timeout_seconds,
                )
            except TimeoutError:
                logger.warning(
                    "dedup_wait_timeout fingerprint=%s timeout_seconds=%.1f",
                    fingerprint[:19],
                    self._config.wait_timeout_seconds,
                )
                return await producer(), False
            except asyncio.CancelledError:
                task = asyncio.current_task()
                if task is not None and task.cancelling():
                    raise
                # Leader was cancelled; take over with our own producer.
                return await self.run_tracked(fingerprint, producer)
            return shared, True

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._inflight[fingerprint] = future
        try:
            result = await producer()
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved so a leader without followers does not log a warning.
            future.exception()
            raise
        else:
            future.set_result(result)
            return result, False
        finally:
            if not future.done():
                future.cancel()
            if self._inflight.get(fingerprint) is future:
                del self._inflight[fingerprint]


def build_request_fingerprint(
    path: str,
    payload: dict[str, Any],
    models: Sequence[str] | None = None,
) -> str:
    """Hash what makes two requests interchangeable.

    ``models`` is the resolved route; when given it replaces the requested
    model, so ``auto`` requests routed to different chains never collapse.
    """
    material: dict[str, Any] = {
        "path": path,
        "model": list(models) if models else payload.get("model"),
        "messages": _normalize_messages(payload.get("messages")),
        "prompt": _normalize_content(payload.get("prompt")),
    }
    for name in FINGERPRINT_PARAMETERS:
        if name in payload:
            material[name] = payload[name]
    canonical = json.dumps(
        material,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _normalize_messages(messages: Any) -> list[Any]:
    if not isinstance(messages, list):
        return []
    normalized: list[Any] = []
    for message in messages:
        if not isinstance(message, dict):
            normalized.append(message)
            continue
        item = {key: message[key] for key in _MESSAGE_KEYS if key in message}
        item["content"] = _normalize_content(message.get("content"))
        normalized.append(item)
    return normalized


def _normalize_content(content: Any) -> Any:
    if isinstance(content, str):
        return _WHITESPACE.sub(" ", content).strip()
    if isinstance(content, list):
        parts: list[Any] = []
        for part in content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                part = {**part, "text": _WHITESPACE.sub(" ", part["text"]).strip()}
            parts.append(part)
        return parts
    return content
