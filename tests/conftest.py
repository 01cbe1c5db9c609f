"""Shared fixtures: fake time, exchange client doubles, groups."""

import asyncio
import itertools
import os
import random
import tempfile
from decimal import Decimal
from typing import Callable, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

# Логгер создаёт папку логов при импорте
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="hedge-logs-"))

from core.models import Account, Group  # noqa: E402
from core.settings_config import Range, TradingConfig  # noqa: E402
from accounts.account_manager import AccountManager  # noqa: E402


class FakeTime:
    """Injected clock + sleep. Sleeping advances the clock instantly."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps: List[float] = []
        self.on_sleep: Optional[Callable[[float], None]] = None

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep(seconds)
        await asyncio.sleep(0)


def make_client(fills: Optional[List[str]] = None, price: str = "30000") -> AsyncMock:
    """Exchange client double. Each placed order is filled at the next price from `fills`."""
    client = AsyncMock()
    client.get_symbol_price.return_value = {"symbol": "BTCUSDT", "price": price}
    client.set_leverage.return_value = {"leverage": 10}
    fill_iter = iter(fills or [])
    order_ids = itertools.count(1)

    async def place_order(symbol, side, order_type, position_side="BOTH", quantity=None, reduce_only=False):
        return {
            "orderId": next(order_ids),
            "symbol": symbol,
            "side": side,
            "avgPrice": next(fill_iter, price),
            "executedQty": str(quantity),
            "reduceOnly": reduce_only,
        }

    client.place_order.side_effect = place_order
    return client


def make_accounts(count: int, prefix: str = "acc") -> List[Account]:
    return [
        Account(account_name=f"{prefix}_{i}", exchange="Aster", api_key=f"key_{prefix}_{i}",
                secret_key=f"secret_{prefix}_{i}")
        for i in range(1, count + 1)
    ]


def make_group(group_id: str = "group_1", accounts: Optional[List[Account]] = None) -> Group:
    accounts = accounts or make_accounts(4)
    return Group(group_id=group_id, accounts=tuple(accounts), pairs=AccountManager.create_hedge_pairs(accounts))


def published(bus: MagicMock) -> list:
    return [call.args[0] for call in bus.publish.call_args_list]


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def trading_config() -> TradingConfig:
    return TradingConfig(
        leverage=10,
        position_size_range=Range(Decimal("400"), Decimal("600")),
        close_after_minutes_range=Range(Decimal("30"), Decimal("90")),
        delay_range_ms=Range(Decimal("10000"), Decimal("30000")),
        supported_symbols=("BTCUSDT",),
        group_size=6,
    )


@pytest.fixture
def event_bus() -> MagicMock:
    bus = MagicMock()
    bus.publish = AsyncMock()
    return bus


@pytest.fixture
def rng() -> random.Random:
    return random.Random(42)
