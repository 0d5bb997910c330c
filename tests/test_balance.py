from __future__ import annotations

import asyncio

import pytest

from payroute.balance import BalanceMonitor, format_usdc, usd_to_usdc_units
from payroute.errors import EmptyWalletError, InsufficientFundsError, RpcError

ADDRESS = "0x" + "ab" * 20


class _StaticReader:
    def __init__(self, balance: int) -> None:
        self.balance = balance
        self.calls: list[str] = []

    async def read_balance(self, address: str) -> int:
        self.calls.append(address)
        return self.balance


class _BrokenReader:
    async def read_balance(self, address: str) -> int:
        raise ConnectionError("rpc unreachable")


@pytest.mark.parametrize(
    ("balance", "is_empty", "is_low", "formatted"),
    [
        (0, True, True, "$0.00"),
        (99, True, True, "$0.00"),
        (100, False, True, "$0.00"),
        (999_999, False, True, "$1.00"),
        (1_000_000, False, False, "$1.00"),
        (12_345_678, False, False, "$12.35"),
    ],
)
def test_check_balance_classifies_thresholds(
    balance: int, is_empty: bool, is_low: bool, formatted: str
) -> None:
    monitor = BalanceMonitor(_StaticReader(balance))

    info = asyncio.run(monitor.check_balance(ADDRESS))

    assert info.balance == balance
    assert info.is_empty is is_empty
    assert info.is_low is is_low
    assert info.balance_usd == formatted
    assert info.to_dict()["balance"] == str(balance)


def test_rpc_failures_are_wrapped() -> None:
    monitor = BalanceMonitor(_BrokenReader())

    with pytest.raises(RpcError) as exc:
        asyncio.run(monitor.check_balance(ADDRESS))

    assert isinstance(exc.value.cause, ConnectionError)
    assert "rpc unreachable" in exc.value.message


def test_ensure_sufficient_rejects_empty_wallet() -> None:
    monitor = BalanceMonitor(_StaticReader(0))

    with pytest.raises(EmptyWalletError) as exc:
        asyncio.run(monitor.ensure_sufficient(ADDRESS))

    assert exc.value.address == ADDRESS
    assert exc.value.to_payload()["error"]["type"] == "empty_wallet"


def test_ensure_sufficient_rejects_short_balance() -> None:
    monitor = BalanceMonitor(_StaticReader(500_000))

    with pytest.raises(InsufficientFundsError) as exc:
        asyncio.run(monitor.ensure_sufficient(ADDRESS, required=2_000_000))

    assert exc.value.balance_usd == "$0.50"
    assert exc.value.required_usd == "$2.00"


def test_ensure_sufficient_returns_info_when_funded() -> None:
    reader = _StaticReader(5_000_000)
    monitor = BalanceMonitor(reader)

    info = asyncio.run(monitor.ensure_sufficient(ADDRESS, required=1_000_000))

    assert not info.is_low
    assert reader.calls == [ADDRESS]


def test_thresholds_must_be_ordered() -> None:
    with pytest.raises(ValueError):
        BalanceMonitor(_StaticReader(0), empty_threshold=10, low_threshold=5)


def test_format_usdc_rounds_to_cents() -> None:
    assert format_usdc(0) == "$0.00"
    assert format_usdc(1_500_000) == "$1.50"
    assert format_usdc(10_005) == "$0.01"


def test_usd_amounts_round_up_to_atomic_units() -> None:
    assert usd_to_usdc_units(0.25) == 250_000
    assert usd_to_usdc_units(0.0000001) == 1
    assert usd_to_usdc_units(0.0) == 0
    assert usd_to_usdc_units(-1.0) == 0
