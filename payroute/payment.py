from __future__ import annotations

import base64
import binascii
import json
import logging
import secrets
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from web3 import Web3

from payroute.balance import USDC_DECIMALS
from payroute.errors import PaymentError
from payroute.payment_cache import CachedPaymentParams, PaymentCache
from payroute.retry import RetryPolicy, send_with_retry

logger = logging.getLogger("uvicorn.error")

PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"
PAYMENT_SIGNATURE_HEADER = "PAYMENT-SIGNATURE"
LEGACY_PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "PAYMENT-RESPONSE"

SUPPORTED_SCHEME = "exact"
BASE_NETWORK = "eip155:8453"
_NETWORK_CHAIN_IDS = {
    BASE_NETWORK: 8453,
    "base": 8453,
}
VALID_AFTER_SKEW_SECONDS = 600

TRANSFER_WITH_AUTHORIZATION_TYPES: dict[str, list[dict[str, str]]] = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ]
}

PaymentHook = Callable[[dict[str, Any]], None]


@dataclass(frozen=True, slots=True)
class PaymentRequirements:
    x402_version: int
    accepts: tuple[dict[str, Any], ...]
    error: str | None = None


def chain_id_for(network: str) -> int:
    normalized = network.strip().lower()
    if normalized in _NETWORK_CHAIN_IDS:
        return _NETWORK_CHAIN_IDS[normalized]
    raise PaymentError(f"Unsupported payment network: {network}")


def amount_to_usd(amount: str | int) -> float:
    return int(amount) / 10**USDC_DECIMALS


def parse_payment_required(
    headers: Mapping[str, str],
    body: bytes,
) -> PaymentRequirements:
    """Read x402 payment terms from a 402 response.

    The ``PAYMENT-REQUIRED`` header (base64 JSON) takes precedence; older
    servers put the same document in the response body.
    """
    document: Any = None
    encoded = headers.get(PAYMENT_REQUIRED_HEADER) or headers.get(
        PAYMENT_REQUIRED_HEADER.lower()
    )
    if encoded:
        try:
            document = json.loads(base64.b64decode(encoded))
        except (binascii.Error, ValueError) as exc:
            raise PaymentError(f"Unreadable {PAYMENT_REQUIRED_HEADER} header") from exc
    elif body:
        try:
            document = json.loads(body)
        except ValueError as exc:
            raise PaymentError("Unreadable payment requirements body") from exc

    if not isinstance(document, dict):
        raise PaymentError("Upstream returned 402 without payment requirements")
    accepts = document.get("accepts")
    if not isinstance(accepts, list) or not accepts:
        raise PaymentError("Upstream returned 402 without payment requirements")

    version = document.get("x402Version", 1)
    error = document.get("error")
    return PaymentRequirements(
        x402_version=version if isinstance(version, int) else 1,
        accepts=tuple(item for item in accepts if isinstance(item, dict)),
        error=str(error) if error else None,
    )


def select_requirement(requirements: PaymentRequirements) -> CachedPaymentParams:
    for accept in requirements.accepts:
        if accept.get("scheme") != SUPPORTED_SCHEME:
            continue
        network = str(accept.get("network") or "")
        if network.strip().lower() not in _NETWORK_CHAIN_IDS:
            continue
        pay_to = accept.get("payTo")
        amount = accept.get("amount", accept.get("maxAmountRequired"))
        if not pay_to or amount is None:
            raise PaymentError("Payment requirements are missing payTo or amount")
        try:
            int(amount)
        except (TypeError, ValueError) as exc:
            raise PaymentError(f"Invalid payment amount: {amount!r}") from exc
        extra = accept.get("extra")
        resource = accept.get("resource")
        return CachedPaymentParams(
            pay_to=str(pay_to),
            max_amount=str(amount),
            scheme=SUPPORTED_SCHEME,
            network=network,
            asset=str(accept.get("asset") or ""),
            max_timeout_seconds=int(accept.get("maxTimeoutSeconds") or 300),
            resource=str(resource) if isinstance(resource, str) else None,
            extra=dict(extra) if isinstance(extra, dict) else {},
        )
    raise PaymentError(
        f"No supported payment option (scheme={SUPPORTED_SCHEME}, network=Base)"
    )


class PaymentSigner:
    """Signs EIP-3009 ``TransferWithAuthorization`` payloads for the exact scheme."""

    def __init__(self, wallet: str | LocalAccount) -> None:
        self.account: LocalAccount = (
            Account.from_key(wallet) if isinstance(wallet, str) else wallet
        )

    @property
    def address(self) -> str:
        return self.account.address

    def sign(
        self,
        params: CachedPaymentParams,
        *,
        x402_version: int = 1,
        now: int | None = None,
    ) -> str:
        if not params.asset:
            raise PaymentError("Payment requirements are missing the token asset")
        issued_at = int(time.time()) if now is None else now
        nonce = secrets.token_bytes(32)
        authorization = {
            "from": self.address,
            "to": Web3.to_checksum_address(params.pay_to),
            "value": int(params.max_amount),
            "validAfter": max(0, issued_at - VALID_AFTER_SKEW_SECONDS),
            "validBefore": issued_at + params.max_timeout_seconds,
            "nonce": nonce,
        }
        domain = {
            "name": str(params.extra.get("name") or "USD Coin"),
            "version": str(params.extra.get("version") or "2"),
            "chainId": chain_id_for(params.network),
            "verifyingContract": Web3.to_checksum_address(params.asset),
        }
        signable = encode_typed_data(
            domain, TRANSFER_WITH_AUTHORIZATION_TYPES, authorization
        )
        signed = self.account.sign_message(signable)

        payload: dict[str, Any] = {
            "x402Version": x402_version,
            "scheme": params.scheme,
            "network": params.network,
            "payload": {
                "signature": "0x" + bytes(signed.signature).hex(),
                "authorization": {
                    "from": authorization["from"],
                    "to": authorization["to"],
                    "value": str(authorization["value"]),
                    "validAfter": str(authorization["validAfter"]),
                    "validBefore": str(authorization["validBefore"]),
                    "nonce": "0x" + nonce.hex(),
                },
            },
        }
        return encode_payment_header(payload)


def encode_payment_header(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=True)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_payment_header(value: str) -> dict[str, Any]:
    decoded = json.loads(base64.b64decode(value))
    if not isinstance(decoded, dict):
        raise ValueError("payment header must decode to a JSON object")
    return decoded


class PaymentClient:
    """Sends upstream requests and settles x402 payment challenges on the way."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        signer: PaymentSigner,
        cache: PaymentCache,
        retry_policy: RetryPolicy | None = None,
        *,
        max_payment_usd: float | None = None,
        payment_hook: PaymentHook | None = None,
    ) -> None:
        self._client = http_client
        self._signer = signer
        self._cache = cache
        self._retry_policy = retry_policy or RetryPolicy()
        self._max_payment_usd = max_payment_usd
        self._payment_hook = payment_hook
        self._x402_versions: dict[str, int] = {}

    @property
    def wallet_address(self) -> str:
        return self._signer.address

    async def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        content: bytes | None,
        *,
        stream: bool = False,
        model: str | None = None,
    ) -> httpx.Response:
        path = httpx.URL(url).path
        cached = self._cache.get(path)
        payment_header = (
            self._sign(path, cached, model=model) if cached is not None else None
        )
        response = await self._send(
            method, url, headers, content, stream=stream, payment_header=payment_header
        )
        if response.status_code != 402:
            self._log_receipt(path, response)
            return response

        requirements = await self._read_requirements(response)
        if cached is not None:
            logger.info("payment_terms_stale path=%s", path)
            self._cache.invalidate(path)

        params = select_requirement(requirements)
        logger.info(
            "payment_required path=%s amount=%s network=%s pay_to=%s",
            path,
            params.max_amount,
            params.network,
            params.pay_to,
        )
        self._cache.set(path, params)
        self._x402_versions[path] = requirements.x402_version
        payment_header = self._sign(path, params, model=model)
        response = await self._send(
            method, url, headers, content, stream=stream, payment_header=payment_header
        )
        if response.status_code == 402:
            rejected = await self._read_requirements_or_none(response)
            self._cache.invalidate(path)
            reason = rejected.error if rejected is not None and rejected.error else None
            raise PaymentError(
                "Upstream rejected the signed payment"
                + (f": {reason}" if reason else "")
            )
        self._log_receipt(path, response)
        return response

    def _sign(
        self,
        path: str,
        params: CachedPaymentParams,
        *,
        model: str | None,
    ) -> str:
        amount_usd = amount_to_usd(params.max_amount)
        if self._max_payment_usd is not None and amount_usd > self._max_payment_usd:
            raise PaymentError(
                f"Payment of ${amount_usd:.6f} exceeds the configured maximum "
                f"of ${self._max_payment_usd:.6f}"
            )
        if self._payment_hook is not None:
            try:
                self._payment_hook(
                    {
                        "model": model,
                        "amount": params.max_amount,
                        "network": params.network,
                    }
                )
            except Exception as exc:
                logger.debug("payment_hook_failed path=%s error=%s", path, exc)
        header = self._signer.sign(
            params, x402_version=self._x402_versions.get(path, 1)
        )
        logger.info(
            "payment_signed path=%s model=%s amount_usd=%.6f",
            path,
            model,
            amount_usd,
        )
        return header

    async def _send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        content: bytes | None,
        *,
        stream: bool,
        payment_header: str | None,
    ) -> httpx.Response:
        outbound = dict(headers)
        if payment_header is not None:
            outbound[PAYMENT_SIGNATURE_HEADER] = payment_header
            outbound[LEGACY_PAYMENT_HEADER] = payment_header

        async def attempt() -> httpx.Response:
            request = self._client.build_request(
                method=method,
                url=url,
                content=content,
                headers=outbound,
            )
            return await self._client.send(request, stream=stream)

        return await send_with_retry(attempt, self._retry_policy)

    async def _read_requirements(self, response: httpx.Response) -> PaymentRequirements:
        try:
            body = await response.aread()
        finally:
            await response.aclose()
        return parse_payment_required(response.headers, body)

    async def _read_requirements_or_none(
        self, response: httpx.Response
    ) -> PaymentRequirements | None:
        try:
            return await self._read_requirements(response)
        except PaymentError:
            return None

    @staticmethod
    def _log_receipt(path: str, response: httpx.Response) -> None:
        receipt = response.headers.get(PAYMENT_RESPONSE_HEADER)
        if receipt:
            logger.info(
                "payment_receipt path=%s status=%d receipt=%s",
                path,
                response.status_code,
                receipt[:64],
            )
