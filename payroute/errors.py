from __future__ import annotations

from typing import Any


class PayrouteError(Exception):
    """Base for errors that map onto a JSON error response with a stable ``type``."""

    error_type = "payroute_error"
    status_code = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def details(self) -> dict[str, Any]:
        return {}

    def to_payload(self) -> dict[str, Any]:
        error: dict[str, Any] = {"message": self.message, "type": self.error_type}
        error.update(self.details())
        return {"error": error}


class ClientError(PayrouteError):
    error_type = "invalid_request"
    status_code = 400


class ProviderError(PayrouteError):
    error_type = "provider_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        model: str | None = None,
        status_code: int | None = None,
        body: bytes = b"",
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.model = model
        self.body = body
        self.headers = headers or {}

    def details(self) -> dict[str, Any]:
        return {"model": self.model} if self.model else {}


class ProxyError(PayrouteError):
    error_type = "proxy_error"
    status_code = 502

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        if not message.startswith("Proxy error:"):
            message = f"Proxy error: {message}"
        super().__init__(message, status_code=status_code)


class PaymentError(ProxyError):
    error_type = "payment_error"


class InsufficientFundsError(PayrouteError):
    error_type = "insufficient_funds"
    status_code = 402

    def __init__(self, *, address: str, balance_usd: str, required_usd: str) -> None:
        self.address = address
        self.balance_usd = balance_usd
        self.required_usd = required_usd
        super().__init__(
            f"Insufficient USDC balance in {address}: have {balance_usd}, "
            f"need {required_usd}. Fund the wallet on Base to continue."
        )

    def details(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "balance_usd": self.balance_usd,
            "required_usd": self.required_usd,
        }


class EmptyWalletError(PayrouteError):
    error_type = "empty_wallet"
    status_code = 402

    def __init__(self, *, address: str) -> None:
        self.address = address
        super().__init__(
            f"No USDC balance in wallet {address}. "
            "Send USDC on Base to this address to continue."
        )

    def details(self) -> dict[str, Any]:
        return {"address": self.address}


class RpcError(PayrouteError):
    error_type = "rpc_error"
    status_code = 503

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


def is_balance_error(error: object) -> bool:
    return isinstance(error, (InsufficientFundsError, EmptyWalletError))