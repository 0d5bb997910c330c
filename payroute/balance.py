from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Protocol

from web3 import AsyncHTTPProvider, AsyncWeb3

from payroute.errors import EmptyWalletError, InsufficientFundsError, RpcError

logger = logging.getLogger("uvicorn.error")

USDC_DECIMALS = 6
BASE_USDC_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
BASE_RPC_URL = "https://mainnet.base.org"
DEFAULT_EMPTY_THRESHOLD = 100
DEFAULT_LOW_THRESHOLD = 1_000_000

ERC20_BALANCE_OF_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "payable": False,
        "stateMutability": "view",
        "type": "function",
    }
]


class BalanceReader(Protocol):
    async def read_balance(self, address: str) -> int: ...


@dataclass(frozen=True, slots=True)
class BalanceInfo:
    balance: int
    balance_usd: str
    is_empty: bool
    is_low: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "balance": str(self.balance),
            "balance_usd": self.balance_usd,
            "is_empty": self.is_empty,
            "is_low": self.is_low,
        }


def format_usdc(amount: int) -> str:
    return f"${amount / 10**USDC_DECIMALS:.2f}"


def usd_to_usdc_units(amount_usd: float) -> int:
    return math.ceil(max(0.0, amount_usd) * 10**USDC_DECIMALS)


class Web3BalanceReader:
    def __init__(
        self,
        rpc_url: str = BASE_RPC_URL,
        token_address: str = BASE_USDC_ADDRESS,
    ) -> None:
        self._w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._contract = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token_address),
            abi=ERC20_BALANCE_OF_ABI,
        )

    async def read_balance(self, address: str) -> int:
        owner = AsyncWeb3.to_checksum_address(address)
        raw = await self._contract.functions.balanceOf(owner).call()
        return int(raw)


class BalanceMonitor:
    def __init__(
        self,
        reader: BalanceReader,
        *,
        empty_threshold: int = DEFAULT_EMPTY_THRESHOLD,
        low_threshold: int = DEFAULT_LOW_THRESHOLD,
    ) -> None:
        if empty_threshold > low_threshold:
            raise ValueError("empty_threshold must not exceed low_threshold")
        self._reader = reader
        self.empty_threshold = empty_threshold
        self.low_threshold = low_threshold

    async def check_balance(self, address: str) -> BalanceInfo:
        try:
            balance = await self._reader.read_balance(address)
        except Exception as exc:
            raise RpcError(
                f"Balance check failed for {address}: {exc}", cause=exc
            ) from exc
        return BalanceInfo(
            balance=balance,
            balance_usd=format_usdc(balance),
            is_empty=balance < self.empty_threshold,
            is_low=balance < self.low_threshold,
        )

    async def ensure_sufficient(self, address: str, required: int = 0) -> BalanceInfo:
        info = await self.check_balance(address)
        if info.is_empty:
            raise EmptyWalletError(address=address)
        if info.balance < required:
            raise InsufficientFundsError(
                address=address,
                balance_usd=info.balance_usd,
                required_usd=format_usdc(required),
            )
        return info
