from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any

import httpx
import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

from payroute.balance import BASE_USDC_ADDRESS
from payroute.errors import PaymentError
from payroute.payment import (
    LEGACY_PAYMENT_HEADER,
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    TRANSFER_WITH_AUTHORIZATION_TYPES,
    PaymentClient,
    PaymentRequirements,
    PaymentSigner,
    decode_payment_header,
    parse_payment_required,
    select_requirement,
)
from payroute.payment_cache import PaymentCache
from payroute.retry import RetryPolicy

WALLET_KEY = "0x" + "11" * 32
PAY_TO = "0x" + "22" * 20
URL = "http://upstream.test/api/v1/chat/completions"
BODY = b'{"model":"openai/gpt-4o","messages":[]}'


def _accept(**overrides: Any) -> dict[str, Any]:
    accept: dict[str, Any] = {
        "scheme": "exact",
        "network": "eip155:8453",
        "amount": "2500",
        "payTo": PAY_TO,
        "asset": BASE_USDC_ADDRESS,
        "maxTimeoutSeconds": 300,
        "extra": {"name": "USD Coin", "version": "2"},
    }
    accept.update(overrides)
    return accept


def _payment_required(*accepts: dict[str, Any], error: str | None = None) -> httpx.Response:
    document: dict[str, Any] = {"x402Version": 2, "accepts": list(accepts or [_accept()])}
    if error:
        document["error"] = error
    encoded = base64.b64encode(json.dumps(document).encode("utf-8")).decode("ascii")
    return httpx.Response(402, headers={PAYMENT_REQUIRED_HEADER: encoded}, json={})


class _Upstream:
    """Charges for every request that does not carry a payment signature."""

    def __init__(self, *, reject_paid: int = 0) -> None:
        self.requests: list[httpx.Request] = []
        self.reject_paid = reject_paid

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if PAYMENT_SIGNATURE_HEADER not in request.headers:
            return _payment_required()
        if self.reject_paid > 0:
            self.reject_paid -= 1
            return _payment_required(error="invalid_signature")
        return httpx.Response(200, json={"ok": True})


def _client(
    upstream: _Upstream,
    cache: PaymentCache | None = None,
    **kwargs: Any,
) -> tuple[PaymentClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    client = PaymentClient(
        http_client,
        PaymentSigner(WALLET_KEY),
        cache or PaymentCache(),
        RetryPolicy(max_attempts=1),
        **kwargs,
    )
    return client, http_client


def _send(client: PaymentClient, http_client: httpx.AsyncClient, times: int = 1) -> list[int]:
    async def _run() -> list[int]:
        statuses = []
        try:
            for _ in range(times):
                response = await client.send(
                    "POST",
                    URL,
                    {"content-type": "application/json"},
                    BODY,
                    model="openai/gpt-4o",
                )
                statuses.append(response.status_code)
        finally:
            await http_client.aclose()
        return statuses

    return asyncio.run(_run())


def test_payment_required_is_signed_and_retried() -> None:
    upstream = _Upstream()
    client, http_client = _client(upstream)

    assert _send(client, http_client) == [200]

    assert len(upstream.requests) == 2
    paid = upstream.requests[1]
    assert paid.headers[PAYMENT_SIGNATURE_HEADER] == paid.headers[LEGACY_PAYMENT_HEADER]
    assert paid.content == BODY

    header = decode_payment_header(paid.headers[PAYMENT_SIGNATURE_HEADER])
    assert header["x402Version"] == 2
    assert header["scheme"] == "exact"
    assert header["network"] == "eip155:8453"
    authorization = header["payload"]["authorization"]
    signer = PaymentSigner(WALLET_KEY)
    assert authorization["from"] == signer.address
    assert authorization["to"].lower() == PAY_TO
    assert authorization["value"] == "2500"
    assert int(authorization["validBefore"]) - int(authorization["validAfter"]) == 900

    signable = encode_typed_data(
        {
            "name": "USD Coin",
            "version": "2",
            "chainId": 8453,
            "verifyingContract": BASE_USDC_ADDRESS,
        },
        TRANSFER_WITH_AUTHORIZATION_TYPES,
        {
            "from": authorization["from"],
            "to": authorization["to"],
            "value": int(authorization["value"]),
            "validAfter": int(authorization["validAfter"]),
            "validBefore": int(authorization["validBefore"]),
            "nonce": bytes.fromhex(authorization["nonce"][2:]),
        },
    )
    recovered = Account.recover_message(
        signable, signature=header["payload"]["signature"]
    )
    assert recovered == signer.address


def test_cached_terms_skip_the_unpaid_round_trip() -> None:
    upstream = _Upstream()
    client, http_client = _client(upstream)

    assert _send(client, http_client, times=2) == [200, 200]

    assert len(upstream.requests) == 3
    assert PAYMENT_SIGNATURE_HEADER in upstream.requests[2].headers


def test_nonces_are_unique_per_payment() -> None:
    upstream = _Upstream()
    client, http_client = _client(upstream)

    _send(client, http_client, times=2)

    nonces = {
        decode_payment_header(request.headers[PAYMENT_SIGNATURE_HEADER])["payload"][
            "authorization"
        ]["nonce"]
        for request in upstream.requests
        if PAYMENT_SIGNATURE_HEADER in request.headers
    }
    assert len(nonces) == 2


def test_stale_cached_terms_are_renegotiated(caplog: Any) -> None:
    upstream = _Upstream(reject_paid=1)
    cache = PaymentCache()
    cache.set("/api/v1/chat/completions", select_requirement(
        PaymentRequirements(x402_version=1, accepts=(_accept(amount="1000"),))
    ))
    client, http_client = _client(upstream, cache)

    with caplog.at_level(logging.INFO, logger="uvicorn.error"):
        assert _send(client, http_client) == [200]

    assert len(upstream.requests) == 2
    assert "payment_terms_stale" in caplog.text
    cached = cache.get("/api/v1/chat/completions")
    assert cached is not None
    assert cached.max_amount == "2500"


def test_rejected_signed_payment_raises() -> None:
    upstream = _Upstream(reject_paid=1)
    cache = PaymentCache()
    client, http_client = _client(upstream, cache)

    with pytest.raises(PaymentError) as exc:
        _send(client, http_client)

    assert "invalid_signature" in exc.value.message
    assert exc.value.error_type == "payment_error"
    assert len(cache) == 0


def test_payment_above_maximum_is_refused() -> None:
    upstream = _Upstream()
    client, http_client = _client(upstream, max_payment_usd=0.001)

    with pytest.raises(PaymentError) as exc:
        _send(client, http_client)

    assert "exceeds the configured maximum" in exc.value.message
    assert len(upstream.requests) == 1


def test_payment_hook_receives_model_and_amount() -> None:
    seen: list[dict[str, Any]] = []
    client, http_client = _client(_Upstream(), payment_hook=seen.append)

    _send(client, http_client)

    assert seen == [{"model": "openai/gpt-4o", "amount": "2500", "network": "eip155:8453"}]


def test_failing_payment_hook_does_not_block_payment() -> None:
    def hook(_: dict[str, Any]) -> None:
        raise RuntimeError("observer down")

    client, http_client = _client(_Upstream(), payment_hook=hook)

    assert _send(client, http_client) == [200]


def test_requirements_can_come_from_the_body() -> None:
    accept = _accept(maxAmountRequired="42")
    del accept["amount"]
    body = json.dumps({"x402Version": 1, "accepts": [accept]}).encode("utf-8")

    requirements = parse_payment_required({}, body)
    params = select_requirement(requirements)

    assert requirements.x402_version == 1
    assert params.max_amount == "42"
    assert params.asset == BASE_USDC_ADDRESS


@pytest.mark.parametrize(
    ("headers", "body"),
    [
        ({}, b""),
        ({}, b"not json"),
        ({}, b'{"accepts": []}'),
        ({PAYMENT_REQUIRED_HEADER: "%%%"}, b""),
    ],
)
def test_missing_or_unreadable_requirements_raise(
    headers: dict[str, str], body: bytes
) -> None:
    with pytest.raises(PaymentError):
        parse_payment_required(headers, body)


def test_unsupported_network_or_scheme_is_rejected() -> None:
    requirements = PaymentRequirements(
        x402_version=1,
        accepts=(
            _accept(network="eip155:1"),
            _accept(scheme="upto"),
        ),
    )

    with pytest.raises(PaymentError) as exc:
        select_requirement(requirements)
    assert "No supported payment option" in exc.value.message


def test_first_supported_option_wins() -> None:
    requirements = PaymentRequirements(
        x402_version=1,
        accepts=(
            _accept(network="solana"),
            _accept(network="base", amount="7"),
            _accept(amount="9"),
        ),
    )

    params = select_requirement(requirements)

    assert params.network == "base"
    assert params.max_amount == "7"
