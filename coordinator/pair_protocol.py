# coordinator/pair_protocol.py
"""
Протокол открытия и закрытия одной хедж-пары:
лонг на одном аккаунте, пауза, шорт того же объёма на другом.
"""
import asyncio
import random
import time
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Optional

from api.aster_api import AsterAPI
from core.enums import ErrorKind, OrderSide, OrderType, PairOutcome, PositionSide, PositionStatus, SystemConstants
from core.functions import calculate_quantity, format_number, sample_delay_ms, to_decimal
from core.logger import log_error, log_info, log_warning
from core.models import HedgePair, PairOpenResult, PositionPair
from core.settings_config import TradingConfig
from coordinator.error_classifier import classify_error

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


class PairOrderProtocol:
    """Открытие/закрытие хедж-пар одной группы"""

    def __init__(self, group_id: str, clients: Dict[str, AsterAPI], config: TradingConfig,
                 sleep: Sleep = asyncio.sleep, clock: Clock = time.time, rng: Optional[random.Random] = None):
        self.group_id = group_id
        self.clients = clients
        self.config = config
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

    def _client(self, account_name: str) -> AsterAPI:
        client = self.clients.get(account_name)
        if client is None:
            raise KeyError(f"Нет API клиента для аккаунта {account_name}")
        return client

    async def _set_leverage(self, pair: HedgePair, symbol: str):
        """Плечо выставляется по возможности, ошибка не мешает открытию"""
        leverage = self.config.leverage
        try:
            await self._client(pair.long.account_name).set_leverage(symbol, leverage)
            await self._client(pair.short.account_name).set_leverage(symbol, leverage)
            log_info(self.group_id, f"⚙️ Плечо {leverage}x выставлено для {pair.pair_id}", "PairProtocol")
        except Exception as e:
            log_warning(self.group_id, f"⚠️ Не удалось выставить плечо для {pair.pair_id}: {e}", "PairProtocol")

    async def open_pair(self, pair: HedgePair, symbol: str, position_size: Decimal, cycle: int) -> PairOpenResult:
        """
        Открывает пару с повторами.

        Returns:
            OPENED с позицией, INSUFFICIENT_MARGIN сразу при нехватке маржи,
            CRITICAL_ERROR с последней ошибкой после исчерпания попыток.
        """
        max_attempts = SystemConstants.MAX_OPEN_ATTEMPTS
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            long_order = None
            try:
                log_info(self.group_id, f"📈 {pair.pair_id} {symbol}: попытка {attempt}/{max_attempts}",
                         "PairProtocol")
                await self._set_leverage(pair, symbol)

                long_client = self._client(pair.long.account_name)
                short_client = self._client(pair.short.account_name)

                price_data = await long_client.get_symbol_price(symbol)
                price = to_decimal(price_data.get("price"))
                quantity = calculate_quantity(position_size, price, self.config.leverage, symbol)
                log_info(self.group_id, f"{pair.pair_id}: цена {format_number(price)}, размер {position_size} USDT, "
                                        f"объём {format_number(quantity)}", "PairProtocol")

                long_order = await long_client.place_order(
                    symbol, OrderSide.BUY.value, OrderType.MARKET.value,
                    position_side=PositionSide.BOTH.value, quantity=quantity)

                delay_ms = sample_delay_ms(self._rng, self.config.delay_range_ms.min, self.config.delay_range_ms.max)
                log_info(self.group_id, f"Ожидание {delay_ms}ms перед шортом {pair.pair_id}", "PairProtocol")
                await self._sleep(delay_ms / 1000)

                short_order = await short_client.place_order(
                    symbol, OrderSide.SELL.value, OrderType.MARKET.value,
                    position_side=PositionSide.BOTH.value, quantity=quantity)

                position = PositionPair(
                    pair_id=pair.pair_id,
                    group_id=self.group_id,
                    symbol=symbol,
                    quantity=quantity,
                    position_size=position_size,
                    open_price=price,
                    long_account=pair.long.account_name,
                    short_account=pair.short.account_name,
                    long_order=long_order,
                    short_order=short_order,
                    open_time=self._clock(),
                    open_cycle=cycle,
                )
                log_info(self.group_id, f"✅ {pair.pair_id} открыта: {symbol} qty={format_number(quantity)}",
                         "PairProtocol")
                return PairOpenResult(outcome=PairOutcome.OPENED, position=position, attempts=attempt)

            except Exception as e:
                last_error = e
                log_error(self.group_id, f"❌ {pair.pair_id} попытка {attempt}/{max_attempts} неудачна: {e}",
                          "PairProtocol")
                if long_order is not None:
                    log_warning(self.group_id,
                                f"⚠️ {pair.pair_id}: лонг {long_order.get('orderId')} на "
                                f"{pair.long.account_name} остался без шорта", "PairProtocol")

                if classify_error(e) == ErrorKind.INSUFFICIENT_MARGIN:
                    log_warning(self.group_id, f"⚠️ {pair.pair_id}: недостаточно маржи, пропуск", "PairProtocol")
                    return PairOpenResult(outcome=PairOutcome.INSUFFICIENT_MARGIN, error=e, attempts=attempt)

                if attempt < max_attempts:
                    retry_delay = attempt * SystemConstants.RETRY_BASE_DELAY_SECONDS
                    log_info(self.group_id, f"⏳ Повтор через {retry_delay}с", "PairProtocol")
                    await self._sleep(retry_delay)

        return PairOpenResult(outcome=PairOutcome.CRITICAL_ERROR, error=last_error, attempts=max_attempts)

    async def _close_long(self, position: PositionPair):
        if position.close_long_order is not None:
            return
        position.close_long_order = await self._client(position.long_account).place_order(
            position.symbol, OrderSide.SELL.value, OrderType.MARKET.value,
            position_side=PositionSide.BOTH.value, quantity=position.quantity, reduce_only=True)
        log_info(position.long_account, f"✅ Лонг {position.pair_id} {position.symbol} закрыт", "PairProtocol")

    async def _close_short(self, position: PositionPair):
        if position.close_short_order is not None:
            return
        position.close_short_order = await self._client(position.short_account).place_order(
            position.symbol, OrderSide.BUY.value, OrderType.MARKET.value,
            position_side=PositionSide.BOTH.value, quantity=position.quantity, reduce_only=True)
        log_info(position.short_account, f"✅ Шорт {position.pair_id} {position.symbol} закрыт", "PairProtocol")

    async def close_pair(self, position: PositionPair, cycle: int) -> PositionPair:
        """
        Штатное закрытие: reduce-only SELL на лонг-аккаунте, затем BUY на шорт-аккаунте.
        Уже подтверждённая нога повторно не отправляется. Ошибка ноги пробрасывается, позиция остаётся OPEN.
        """
        await self._close_long(position)
        await self._close_short(position)
        position.status = PositionStatus.CLOSED
        position.close_time = self._clock()
        position.close_cycle = cycle
        return position

    async def emergency_close(self, position: PositionPair, cycle: int) -> bool:
        """Аварийное закрытие. True - пара закрыта (EMERGENCY_CLOSED), False - осталась OPEN."""
        legs = (
            ("лонг", position.long_account, self._close_long),
            ("шорт", position.short_account, self._close_short),
        )
        for leg, account, close_leg in legs:
            try:
                await close_leg(position)
            except Exception as e:
                log_error(account, f"❌ Аварийное закрытие ({leg}) {position.pair_id} не удалось: {e}",
                          "PairProtocol")

        if position.close_long_order is None or position.close_short_order is None:
            return False

        position.status = PositionStatus.EMERGENCY_CLOSED
        position.close_time = self._clock()
        position.close_cycle = cycle
        log_info(self.group_id, f"🔄 {position.pair_id} {position.symbol} закрыта аварийно", "PairProtocol")
        return True
