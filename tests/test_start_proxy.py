from __future__ import annotations

import asyncio
import json
import socket

import httpx
import pytest

from payroute.main import start_proxy
from payroute.payment import PaymentSigner
from payroute.settings import Settings
from tests.client_test_utils import TEST_UPSTREAM_BASE_URL, TEST_WALLET_KEY


def _settings() -> Settings:
    return Settings(
        upstream_base_url=TEST_UPSTREAM_BASE_URL,
        audit_log_enabled=False,
        retry_max_attempts=1,
    )


def test_start_proxy_serves_on_loopback_until_closed() -> None:
    upstream_models: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        model = json.loads(request.content)["model"]
        upstream_models.append(model)
        return httpx.Response(200, json={"model": model, "choices": []})

    async def _run() -> tuple[int, dict[str, object], int, str]:
        handle = await start_proxy(
            TEST_WALLET_KEY,
            settings=_settings(),
            port=0,
            transport=httpx.MockTransport(handler),
        )
        try:
            assert handle.base_url == f"http://127.0.0.1:{handle.port}"
            async with httpx.AsyncClient(
                base_url=handle.base_url, trust_env=False
            ) as client:
                health = await client.get("/health")
                completion = await client.post(
                    "/v1/chat/completions",
                    json={
                        "model": "auto",
                        "messages": [{"role": "user", "content": "Hi there"}],
                    },
                )
            return handle.port, health.json(), completion.status_code, handle.wallet_address
        finally:
            await handle.close()

    port, health, status, wallet = asyncio.run(_run())

    assert port > 0
    assert health["wallet"] == PaymentSigner(TEST_WALLET_KEY).address
    assert wallet == health["wallet"]
    assert status == 200
    assert len(upstream_models) == 1


def test_start_proxy_raises_when_the_port_is_taken() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={})

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        taken = blocker.getsockname()[1]

        with pytest.raises(RuntimeError, match="exited with status"):
            asyncio.run(
                start_proxy(
                    TEST_WALLET_KEY,
                    settings=_settings(),
                    port=taken,
                    transport=httpx.MockTransport(handler),
                )
            )
