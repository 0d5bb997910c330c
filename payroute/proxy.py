from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx
from fastapi.responses import Response, StreamingResponse

from payroute.balance import BalanceMonitor, usd_to_usdc_units
from payroute.dedup import CachedResponse
from payroute.errors import (
    EmptyWalletError,
    InsufficientFundsError,
    ProviderError,
    ProxyError,
    RpcError,
)
from payroute.payment import PaymentClient, PaymentHook, PaymentSigner
from payroute.payment_cache import PaymentCache
from payroute.retry import RetryPolicy
from payroute.router_engine import RoutePlan

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
}
DROPPED_REQUEST_HEADERS = {
    "host",
    "connection",
    "transfer-encoding",
    "content-length",
    "accept-encoding",
}

DEFAULT_PROVIDER_ERROR_TYPES = frozenset(
    {
        "provider_error",
        "billing_error",
        "capacity_error",
        "rate_limit_error",
        "overloaded_error",
    }
)
DEFAULT_PROVIDER_ERROR_STATUSES = frozenset({429, 500, 502, 503, 504, 529})

AuditHook = Callable[[dict[str, Any]], None]

logger = logging.getLogger("uvicorn.error")


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    error_message = str(exc).strip() or error_repr
    details: dict[str, Any] = {
        "error": error_message,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        request = exc.request
    except RuntimeError:
        request = None
    if request is not None:
        details["request_method"] = request.method
        details["request_url"] = str(request.url)
    return details


def _filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS:
            filtered[name] = value
    return filtered


def build_upstream_headers(incoming: Mapping[str, str]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for name, value in incoming.items():
        if name.lower() in DROPPED_REQUEST_HEADERS:
            continue
        headers[name] = value
    if not any(name.lower() == "content-type" for name in headers):
        headers["content-type"] = "application/json"
    return headers


def error_type_from_body(body: bytes) -> str | None:
    if not body:
        return None
    try:
        payload = json.loads(body)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if not isinstance(error, dict):
        return None
    error_type = error.get("type")
    if not isinstance(error_type, str):
        return None
    return error_type.strip() or None


def is_provider_error(
    status_code: int,
    body: bytes,
    *,
    error_types: Iterable[str] = DEFAULT_PROVIDER_ERROR_TYPES,
    statuses: Iterable[int] = DEFAULT_PROVIDER_ERROR_STATUSES,
) -> bool:
    """Whether an upstream failure belongs to the model rather than the request.

    402 is the payment channel and never counts. A known provider error type in
    the JSON body or a transient status makes the next model worth trying.
    """
    if status_code < 400 or status_code == 402:
        return False
    if error_type_from_body(body) in set(error_types):
        return True
    return status_code in set(statuses)


@dataclass(slots=True)
class ProxyResult:
    model: str
    status_code: int
    attempted_models: list[str] = field(default_factory=list)
    cached: CachedResponse | None = None
    streaming: StreamingResponse | None = None
    error_type: str | None = None

    @property
    def attempts(self) -> int:
        return len(self.attempted_models)

    @property
    def succeeded(self) -> bool:
        return self.status_code < 400

    @classmethod
    def from_provider_error(
        cls, error: ProviderError, attempted: list[str]
    ) -> ProxyResult:
        return cls(
            model=error.model or "",
            status_code=error.status_code,
            attempted_models=list(attempted),
            cached=CachedResponse(
                status_code=error.status_code, headers=error.headers, body=error.body
            ),
            error_type=error_type_from_body(error.body) or error.error_type,
        )

    def to_response(self, *, shared: bool = False) -> Response:
        if self.streaming is not None:
            return self.streaming
        if self.cached is None:
            raise RuntimeError("proxy result carries no response")
        return self.cached.to_fastapi_response(shared=shared)


class PaymentProxy:
    def __init__(
        self,
        *,
        base_url: str,
        signer: PaymentSigner,
        payment_cache: PaymentCache | None = None,
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float = 180.0,
        connect_timeout_seconds: float = 10.0,
        max_payment_usd: float | None = None,
        balance_monitor: BalanceMonitor | None = None,
        audit_hook: AuditHook | None = None,
        payment_hook: PaymentHook | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        provider_error_types: Iterable[str] = DEFAULT_PROVIDER_ERROR_TYPES,
        provider_error_statuses: Iterable[int] = DEFAULT_PROVIDER_ERROR_STATUSES,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        connect_timeout = max(0.1, float(connect_timeout_seconds))
        read_timeout = max(0.1, float(timeout_seconds))
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=connect_timeout,
                read=read_timeout,
                write=read_timeout,
                pool=connect_timeout,
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
            transport=transport,
        )
        self.payment_cache = payment_cache or PaymentCache()
        self.payments = PaymentClient(
            self.client,
            signer,
            self.payment_cache,
            retry_policy,
            max_payment_usd=max_payment_usd,
            payment_hook=payment_hook,
        )
        self._balance_monitor = balance_monitor
        self._audit_hook = audit_hook
        self._provider_error_types = frozenset(provider_error_types)
        self._provider_error_statuses = frozenset(provider_error_statuses)
        self._empty_wallet_warned = False

    @property
    def wallet_address(self) -> str:
        return self.payments.wallet_address

    async def close(self) -> None:
        await self.client.aclose()

    def _audit(self, event: str, **fields: Any) -> None:
        if self._audit_hook is None:
            return
        try:
            self._audit_hook({"event": event, **fields})
        except Exception as exc:
            logger.debug("audit_write_failed event=%s error=%s", event, exc)

    def upstream_url(self, path: str, query: str = "") -> str:
        url = f"{self.base_url}{path}"
        return f"{url}?{query}" if query else url

    async def ensure_wallet_funded(self, required: int = 0) -> None:
        monitor = self._balance_monitor
        if monitor is None:
            return
        address = self.wallet_address
        try:
            info = await monitor.ensure_sufficient(address, required)
        except EmptyWalletError:
            if not self._empty_wallet_warned:
                self._empty_wallet_warned = True
                logger.warning("balance_empty address=%s", address)
            raise
        except InsufficientFundsError as exc:
            logger.warning(
                "balance_insufficient address=%s balance_usd=%s required_usd=%s",
                address,
                exc.balance_usd,
                exc.required_usd,
            )
            raise
        except RpcError as exc:
            logger.warning("balance_check_failed address=%s error=%s", address, exc)
            return
        if info.is_low:
            logger.warning(
                "balance_low address=%s balance_usd=%s", address, info.balance_usd
            )

    async def forward_with_fallback(
        self,
        *,
        path: str,
        payload: dict[str, Any],
        incoming_headers: Mapping[str, str],
        plan: RoutePlan,
        stream: bool,
        request_id: str,
        query: str = "",
    ) -> ProxyResult:
        await self.ensure_wallet_funded(usd_to_usdc_units(plan.decision.cost_estimate))
        headers = build_upstream_headers(incoming_headers)
        url = self.upstream_url(path, query)
        total = len(plan.models)
        attempted: list[str] = []
        last_error: ProviderError | None = None

        for index, model in enumerate(plan.models, start=1):
            has_more = plan.auto and index < total
            attempted.append(model)
            logger.info(
                "proxy_attempt request_id=%s attempt=%d/%d model=%s tier=%s",
                request_id,
                index,
                total,
                model,
                plan.decision.tier,
            )
            self._audit(
                "proxy_attempt",
                request_id=request_id,
                attempt=index,
                total_attempts=total,
                model=model,
            )
            content = json.dumps({**payload, "model": model}).encode("utf-8")
            upstream = await self._send(
                url,
                headers,
                content,
                stream=stream,
                model=model,
                request_id=request_id,
            )

            if upstream.status_code < 400:
                return await self._relay_success(
                    upstream,
                    model=model,
                    plan=plan,
                    attempted=attempted,
                    stream=stream,
                    request_id=request_id,
                )

            body = await self._read_body(upstream, request_id=request_id)
            error_type = error_type_from_body(body)
            response_headers = self._response_headers(upstream, model, plan, attempted)
            if not is_provider_error(
                upstream.status_code,
                body,
                error_types=self._provider_error_types,
                statuses=self._provider_error_statuses,
            ):
                return ProxyResult(
                    model=model,
                    status_code=upstream.status_code,
                    attempted_models=list(attempted),
                    cached=CachedResponse(
                        status_code=upstream.status_code,
                        headers=response_headers,
                        body=body,
                    ),
                    error_type=error_type,
                )
            last_error = ProviderError(
                f"{model} failed with status {upstream.status_code}",
                model=model,
                status_code=upstream.status_code,
                body=body,
                headers=response_headers,
            )
            if has_more:
                logger.info(
                    "proxy_fallback request_id=%s model=%s status=%d error_type=%s next=%s",
                    request_id,
                    model,
                    upstream.status_code,
                    error_type,
                    plan.models[index],
                )
                self._audit(
                    "proxy_fallback",
                    request_id=request_id,
                    model=model,
                    status=upstream.status_code,
                    error_type=error_type,
                    next_model=plan.models[index],
                )
                continue
            break

        if last_error is None:
            raise ProxyError("No models available for this request")
        result = ProxyResult.from_provider_error(last_error, attempted)
        if plan.auto and total > 1:
            logger.error(
                "proxy_exhausted request_id=%s attempted_models=%s status=%d error=%s",
                request_id,
                ",".join(attempted),
                result.status_code,
                last_error,
            )
            self._audit(
                "proxy_exhausted",
                request_id=request_id,
                attempted_models=list(attempted),
                status=result.status_code,
                error_type=result.error_type,
            )
        return result

    async def forward_raw(
        self,
        *,
        method: str,
        path: str,
        query: str,
        incoming_headers: Mapping[str, str],
        body: bytes | None,
        request_id: str,
    ) -> ProxyResult:
        await self.ensure_wallet_funded()
        upstream = await self._send(
            self.upstream_url(path, query),
            build_upstream_headers(incoming_headers),
            body,
            stream=False,
            model=None,
            request_id=request_id,
            method=method,
        )
        content = await self._read_body(upstream, request_id=request_id)
        headers = _filter_response_headers(upstream.headers)
        return ProxyResult(
            model="",
            status_code=upstream.status_code,
            cached=CachedResponse(
                status_code=upstream.status_code, headers=headers, body=content
            ),
            error_type=error_type_from_body(content)
            if upstream.status_code >= 400
            else None,
        )

    async def _send(
        self,
        url: str,
        headers: Mapping[str, str],
        content: bytes | None,
        *,
        stream: bool,
        model: str | None,
        request_id: str,
        method: str = "POST",
    ) -> httpx.Response:
        try:
            return await self.payments.send(
                method, url, headers, content, stream=stream, model=model
            )
        except httpx.RequestError as exc:
            raise self._transport_failure(
                exc, model=model, request_id=request_id
            ) from exc

    async def _read_body(self, upstream: httpx.Response, *, request_id: str) -> bytes:
        try:
            return await upstream.aread()
        except httpx.RequestError as exc:
            raise self._transport_failure(
                exc, model=None, request_id=request_id
            ) from exc
        finally:
            await upstream.aclose()

    def _transport_failure(
        self,
        exc: httpx.RequestError,
        *,
        model: str | None,
        request_id: str,
    ) -> ProxyError:
        details = _request_error_details(exc)
        logger.warning(
            "proxy_request_error request_id=%s model=%s error_type=%s error=%s",
            request_id,
            model,
            details["error_type"],
            details["error"],
        )
        self._audit("proxy_request_error", request_id=request_id, model=model, **details)
        return ProxyError(f"{details['error_type']}: {details['error']}")

    def _response_headers(
        self,
        upstream: httpx.Response,
        model: str,
        plan: RoutePlan,
        attempted: list[str],
    ) -> dict[str, str]:
        headers = _filter_response_headers(upstream.headers)
        headers["x-payroute-model"] = model
        headers["x-payroute-tier"] = plan.decision.tier.value
        headers["x-payroute-attempts"] = str(len(attempted))
        return headers

    async def _relay_success(
        self,
        upstream: httpx.Response,
        *,
        model: str,
        plan: RoutePlan,
        attempted: list[str],
        stream: bool,
        request_id: str,
    ) -> ProxyResult:
        headers = self._response_headers(upstream, model, plan, attempted)
        if stream:
            media_type = headers.pop("content-type", "text/event-stream")

            async def stream_generator() -> AsyncIterator[bytes]:
                try:
                    async for chunk in upstream.aiter_bytes():
                        yield chunk
                finally:
                    await upstream.aclose()

            return ProxyResult(
                model=model,
                status_code=upstream.status_code,
                attempted_models=list(attempted),
                streaming=StreamingResponse(
                    content=stream_generator(),
                    status_code=upstream.status_code,
                    headers=headers,
                    media_type=media_type,
                ),
            )

        body = await self._read_body(upstream, request_id=request_id)
        return ProxyResult(
            model=model,
            status_code=upstream.status_code,
            attempted_models=list(attempted),
            cached=CachedResponse(
                status_code=upstream.status_code, headers=headers, body=body
            ),
        )


def elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 3)
