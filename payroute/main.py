from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable
from uuid import uuid4

import httpx
import uvicorn
from eth_account.signers.local import LocalAccount
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from payroute.audit import JsonlAuditLogger, UsageHook, UsageRecord
from payroute.balance import BalanceMonitor, BalanceReader, Web3BalanceReader
from payroute.catalogs.core import ModelCatalog, load_model_catalog
from payroute.config import RoutingConfig, load_routing_config
from payroute.dedup import DedupConfig, RequestDeduplicator, build_request_fingerprint
from payroute.errors import (
    ClientError,
    PayrouteError,
    ProxyError,
    RpcError,
    is_balance_error,
)
from payroute.payment import PaymentHook, PaymentSigner
from payroute.payment_cache import PaymentCache
from payroute.proxy import PaymentProxy, ProxyResult, elapsed_ms
from payroute.retry import RetryPolicy
from payroute.router_engine import InvalidRequestPayloadError, RoutePlan, SmartRouter
from payroute.selector import compute_savings, estimate_cost
from payroute.session import SessionConfig, SessionStore, get_session_id
from payroute.settings import Settings, get_settings

logger = logging.getLogger("uvicorn.error")

AuditHook = Callable[[dict[str, Any]], None]
LOOPBACK_HOST = "127.0.0.1"
PASSTHROUGH_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]
ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _build_models_response(
    catalog: ModelCatalog,
    config: RoutingConfig,
    created: int,
) -> dict[str, Any]:
    model_ids = list(dict.fromkeys([*catalog.model_ids, *config.available_models()]))
    data = [
        {"id": "auto", "object": "model", "created": created, "owned_by": "payroute"}
    ]
    for model_id in model_ids:
        owner, _, _ = model_id.partition("/")
        data.append(
            {
                "id": model_id,
                "object": "model",
                "created": created,
                "owned_by": owner if "/" in model_id else "payroute",
            }
        )
    return {"object": "list", "data": data}


def _emit_audit(audit_hook: AuditHook | None, event: dict[str, Any]) -> None:
    if audit_hook is None:
        return
    try:
        audit_hook(event)
    except Exception as exc:
        logger.debug("audit_write_failed event=%s error=%s", event.get("event"), exc)


def _emit_proxy_terminal_event(
    *,
    audit_hook: AuditHook | None,
    request_id: str,
    path: str,
    stream: bool,
    status: int,
    outcome: str,
    plan: RoutePlan | None = None,
    result: ProxyResult | None = None,
    error_type: str | None = None,
    note: str | None = None,
) -> None:
    event: dict[str, Any] = {
        "event": "proxy_terminal",
        "request_id": request_id,
        "path": path,
        "stream": stream,
        "status": int(status),
        "outcome": outcome,
    }
    if plan is not None:
        event.update(
            {
                "requested_model": plan.requested_model,
                "selected_model": plan.decision.model,
                "tier": plan.decision.tier.value,
                "method": plan.decision.method,
            }
        )
    if result is not None:
        event["model"] = result.model
        event["attempts"] = result.attempts
    if error_type:
        event["error_type"] = error_type
    if note:
        event["note"] = note
    _emit_audit(audit_hook, event)


def _terminal_outcome(plan: RoutePlan, result: ProxyResult) -> str:
    if result.succeeded:
        return "success"
    if plan.auto and len(plan.models) > 1 and result.attempts == len(plan.models):
        return "exhausted"
    return "error"


def _record_usage(
    *,
    usage_hook: UsageHook | None,
    router: SmartRouter,
    plan: RoutePlan,
    result: ProxyResult,
    started: float,
    request_id: str,
) -> None:
    if usage_hook is None:
        return
    decision = plan.decision
    cost = decision.cost_estimate
    if result.model != decision.model:
        cost = estimate_cost(
            result.model,
            router.pricing,
            plan.estimated_input_tokens,
            plan.max_output_tokens,
        )
    record = UsageRecord(
        model=result.model,
        tier=decision.tier.value,
        method=decision.method,
        cost_estimate=cost,
        baseline_cost=decision.baseline_cost,
        savings=compute_savings(cost, decision.baseline_cost),
        latency_ms=elapsed_ms(started),
        status=result.status_code,
        attempts=result.attempts,
        request_id=request_id,
    )
    try:
        usage_hook(record)
    except Exception as exc:
        logger.debug("usage_hook_failed request_id=%s error=%s", request_id, exc)


def create_app(
    settings: Settings | None = None,
    *,
    wallet: str | LocalAccount | None = None,
    routing_config: RoutingConfig | None = None,
    catalog: ModelCatalog | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    balance_reader: BalanceReader | None = None,
    usage_hook: UsageHook | None = None,
    payment_hook: PaymentHook | None = None,
) -> FastAPI:
    app = FastAPI(
        title="payroute",
        description="Local x402 payment proxy with cost-aware model routing.",
        version="0.1.0",
    )

    @app.on_event("startup")
    async def startup() -> None:
        resolved = settings or get_settings()
        wallet_source = wallet if wallet is not None else resolved.wallet_key
        if not wallet_source:
            raise ValueError(
                "A wallet key is required: pass wallet=... or set WALLET_KEY."
            )
        config = routing_config or load_routing_config(resolved.routing_config_path)
        model_catalog = catalog or load_model_catalog()
        audit_logger = JsonlAuditLogger(
            path=resolved.audit_log_path,
            enabled=resolved.audit_log_enabled,
        )
        balance_monitor = BalanceMonitor(
            balance_reader
            or Web3BalanceReader(resolved.rpc_url, resolved.usdc_address)
        )
        sessions = SessionStore(
            SessionConfig(
                enabled=resolved.session_enabled,
                timeout_seconds=resolved.session_timeout_seconds,
                header_name=resolved.session_header,
            )
        )
        sessions.start()

        app.state.settings = resolved
        app.state.routing_config = config
        app.state.catalog = model_catalog
        app.state.smart_router = SmartRouter(config, model_catalog)
        app.state.audit_logger = audit_logger
        app.state.audit_event_hook = audit_logger.log
        app.state.usage_hook = usage_hook or audit_logger.log_usage
        app.state.balance_monitor = balance_monitor
        app.state.sessions = sessions
        app.state.deduplicator = RequestDeduplicator(
            DedupConfig(
                enabled=resolved.dedup_enabled,
                wait_timeout_seconds=max(0.1, resolved.dedup_wait_timeout_seconds),
            )
        )
        app.state.started_at = int(time.time())
        app.state.proxy = PaymentProxy(
            base_url=resolved.upstream_base_url,
            signer=PaymentSigner(wallet_source),
            payment_cache=PaymentCache(ttl_seconds=resolved.payment_cache_ttl_seconds),
            retry_policy=RetryPolicy(
                max_attempts=max(1, resolved.retry_max_attempts),
                base_delay_seconds=resolved.retry_base_delay_seconds,
                max_delay_seconds=resolved.retry_max_delay_seconds,
            ),
            timeout_seconds=resolved.upstream_timeout_seconds,
            connect_timeout_seconds=resolved.upstream_connect_timeout_seconds,
            max_payment_usd=resolved.max_payment_usd,
            balance_monitor=balance_monitor
            if resolved.balance_check_enabled
            else None,
            audit_hook=audit_logger.log,
            payment_hook=payment_hook,
            transport=transport,
        )
        logger.info(
            (
                "startup complete upstream=%s wallet=%s models=%d sessions_enabled=%s "
                "dedup_enabled=%s balance_check_enabled=%s audit_log_path=%s"
            ),
            resolved.upstream_base_url,
            app.state.proxy.wallet_address,
            len(model_catalog.model_ids),
            resolved.session_enabled,
            resolved.dedup_enabled,
            resolved.balance_check_enabled,
            resolved.audit_log_path if resolved.audit_log_enabled else None,
        )

    @app.on_event("shutdown")
    async def shutdown() -> None:
        sessions: SessionStore | None = getattr(app.state, "sessions", None)
        if sessions is not None:
            await sessions.close()
        proxy: PaymentProxy | None = getattr(app.state, "proxy", None)
        if proxy is not None:
            await proxy.close()
        audit_logger: JsonlAuditLogger | None = getattr(app.state, "audit_logger", None)
        if audit_logger is not None:
            audit_logger.close()
        logger.info("shutdown complete")

    @app.get("/health")
    async def health(full: bool = False) -> dict[str, Any]:
        proxy: PaymentProxy = app.state.proxy
        address = proxy.wallet_address
        payload: dict[str, Any] = {"status": "ok", "wallet": address}
        if not full:
            return payload
        monitor: BalanceMonitor = app.state.balance_monitor
        try:
            info = await monitor.check_balance(address)
        except RpcError as exc:
            logger.warning("balance_check_failed address=%s error=%s", address, exc)
            payload["balance"] = None
            return payload
        payload["balance"] = info.to_dict()
        if info.is_empty:
            payload["status"] = "empty_wallet"
        elif info.is_low:
            payload["status"] = "low_balance"
        return payload

    @app.get("/v1/models")
    async def models() -> dict[str, Any]:
        return _build_models_response(
            app.state.catalog, app.state.routing_config, app.state.started_at
        )

    async def _proxy_chat_request(request: Request, path: str) -> Response:
        started = time.perf_counter()
        request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
        body = await request.body()
        try:
            payload = json.loads(body) if body else None
        except ValueError as exc:
            raise ClientError(f"Expected JSON body: {exc}") from exc
        if not isinstance(payload, dict):
            raise ClientError("Expected a JSON object request body.")

        router: SmartRouter = app.state.smart_router
        proxy: PaymentProxy = app.state.proxy
        sessions: SessionStore = app.state.sessions
        deduplicator: RequestDeduplicator = app.state.deduplicator
        audit_hook: AuditHook | None = app.state.audit_event_hook
        is_stream = payload.get("stream") is True

        session_id = get_session_id(request.headers, sessions.config.header_name)
        pinned = sessions.get(session_id)
        try:
            plan = router.plan(payload, pinned=pinned)
        except InvalidRequestPayloadError as exc:
            raise ClientError(str(exc)) from exc

        decision = plan.decision
        if not plan.auto and router.catalog.get(plan.requested_model) is None:
            logger.info(
                "unknown_model request_id=%s model=%s suggestions=%s",
                request_id,
                plan.requested_model,
                ",".join(router.catalog.suggest(plan.requested_model)),
            )
        logger.info(
            (
                "route_decision request_id=%s path=%s method=%s requested_model=%s "
                "model=%s tier=%s confidence=%.2f fallback_count=%d reasoning=%s"
            ),
            request_id,
            path,
            decision.method,
            plan.requested_model,
            decision.model,
            decision.tier,
            decision.confidence,
            len(plan.models) - 1,
            decision.reasoning,
        )
        _emit_audit(
            audit_hook,
            {
                "event": "route_decision",
                "request_id": request_id,
                "path": path,
                "requested_model": plan.requested_model,
                "fallback_models": plan.models[1:],
                **decision.to_log_dict(),
            },
        )

        async def produce() -> ProxyResult:
            return await proxy.forward_with_fallback(
                path=path,
                payload=payload,
                incoming_headers=request.headers,
                plan=plan,
                stream=is_stream,
                request_id=request_id,
                query=request.url.query,
            )

        shared = False
        try:
            if is_stream:
                result = await produce()
            else:
                fingerprint = build_request_fingerprint(path, payload, plan.models)
                result, shared = await deduplicator.run_tracked(fingerprint, produce)
        except asyncio.CancelledError:
            _emit_proxy_terminal_event(
                audit_hook=audit_hook,
                request_id=request_id,
                path=path,
                stream=is_stream,
                status=499,
                outcome="cancelled",
                plan=plan,
                error_type="request_cancelled",
            )
            raise
        except PayrouteError as exc:
            _emit_proxy_terminal_event(
                audit_hook=audit_hook,
                request_id=request_id,
                path=path,
                stream=is_stream,
                status=exc.status_code,
                outcome="unfunded" if is_balance_error(exc) else "error",
                plan=plan,
                error_type=exc.error_type,
            )
            raise
        except Exception as exc:
            _emit_proxy_terminal_event(
                audit_hook=audit_hook,
                request_id=request_id,
                path=path,
                stream=is_stream,
                status=502,
                outcome="error",
                plan=plan,
                error_type=exc.__class__.__name__,
            )
            raise

        if result.succeeded and plan.auto:
            if pinned is not None and result.model == pinned.model:
                sessions.touch(session_id)
            else:
                sessions.set(session_id, result.model, decision.tier)
        if not shared:
            _record_usage(
                usage_hook=app.state.usage_hook,
                router=router,
                plan=plan,
                result=result,
                started=started,
                request_id=request_id,
            )
        _emit_proxy_terminal_event(
            audit_hook=audit_hook,
            request_id=request_id,
            path=path,
            stream=is_stream,
            status=result.status_code,
            outcome=_terminal_outcome(plan, result),
            plan=plan,
            result=result,
            error_type=result.error_type,
            note="dedup_shared" if shared else None,
        )
        return result.to_response(shared=shared)

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request) -> Response:
        return await _proxy_chat_request(request, "/v1/chat/completions")

    @app.api_route("/v1/{subpath:path}", methods=PASSTHROUGH_METHODS)
    async def v1_passthrough(subpath: str, request: Request) -> Response:
        proxy: PaymentProxy = app.state.proxy
        request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
        body = await request.body()
        result = await proxy.forward_raw(
            method=request.method,
            path=f"/v1/{subpath}",
            query=request.url.query,
            incoming_headers=request.headers,
            body=body or None,
            request_id=request_id,
        )
        return result.to_response()

    @app.api_route("/{path:path}", methods=ALL_METHODS, include_in_schema=False)
    async def not_found(path: str) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "Not found"})

    @app.exception_handler(PayrouteError)
    async def payroute_error_handler(_: Request, exc: PayrouteError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(FileNotFoundError)
    async def config_missing_handler(_: Request, exc: FileNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("proxy_unhandled_error error_type=%s", exc.__class__.__name__)
        error = ProxyError(str(exc) or exc.__class__.__name__)
        return JSONResponse(status_code=error.status_code, content=error.to_payload())

    return app


@dataclass(slots=True)
class ProxyHandle:
    port: int
    base_url: str
    wallet_address: str
    server: uvicorn.Server
    task: asyncio.Task[None]

    async def close(self) -> None:
        self.server.should_exit = True
        await self.task


async def _serve(server: uvicorn.Server) -> None:
    try:
        await server.serve()
    except SystemExit as exc:
        raise RuntimeError(f"payroute server exited with status {exc.code}") from exc


async def start_proxy(
    wallet_key: str | LocalAccount,
    *,
    settings: Settings | None = None,
    routing_config: RoutingConfig | None = None,
    port: int | None = None,
    catalog: ModelCatalog | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    balance_reader: BalanceReader | None = None,
    usage_hook: UsageHook | None = None,
    payment_hook: PaymentHook | None = None,
    startup_timeout_seconds: float = 10.0,
) -> ProxyHandle:
    """Run the proxy in a background task on loopback and wait until it is bound.

    ``port=0`` asks the OS for a free port; the bound port is on the handle.
    """
    resolved = settings or get_settings()
    app = create_app(
        resolved,
        wallet=wallet_key,
        routing_config=routing_config,
        catalog=catalog,
        transport=transport,
        balance_reader=balance_reader,
        usage_hook=usage_hook,
        payment_hook=payment_hook,
    )
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=LOOPBACK_HOST,
            port=resolved.port if port is None else port,
            # Embedded servers leave the host application's logging untouched.
            log_config=None,
            access_log=False,
        )
    )
    loop = asyncio.get_running_loop()
    task = asyncio.create_task(_serve(server), name="payroute-server")

    deadline = loop.time() + startup_timeout_seconds
    while not server.started and not task.done():
        if loop.time() > deadline:
            break
        await asyncio.sleep(0.01)

    if not server.started:
        server.should_exit = True
        outcome = (await asyncio.gather(task, return_exceptions=True))[0]
        error = (
            outcome
            if isinstance(outcome, Exception)
            else RuntimeError("payroute server did not start")
        )
        raise error

    bound_port = int(server.servers[0].sockets[0].getsockname()[1])
    proxy: PaymentProxy = app.state.proxy
    logger.info("proxy_ready base_url=http://%s:%d", LOOPBACK_HOST, bound_port)
    return ProxyHandle(
        port=bound_port,
        base_url=f"http://{LOOPBACK_HOST}:{bound_port}",
        wallet_address=proxy.wallet_address,
        server=server,
        task=task,
    )


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    run()
