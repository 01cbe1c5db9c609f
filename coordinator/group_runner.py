# coordinator/group_runner.py
"""
GroupRunner - машина состояний одной группы.

ACTIVE → SUSPENDED     все пары упёрлись в нехватку маржи
ACTIVE → QUARANTINED   критическая ошибка пары (после аварийного закрытия открытых в цикле пар)
QUARANTINED → ACTIVE   по истечении карантина, опрос каждые 30 секунд
* → TERMINATED         внешняя остановка или watchdog оркестратора

Каждый раннер единолично владеет своим состоянием и реестром позиций,
оркестратор читает только снимки (snapshot).
"""
import asyncio
import random
import time
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

from api.aster_api import AsterAPI
from core.enums import ErrorKind, GroupState, PairOutcome, SystemConstants
from core.events import (
    CloseErrorEvent, CriticalGroupErrorEvent, CycleCompletedEvent, EventBus, GroupDeactivatedEvent,
    GroupErrorEvent, GroupReactivatedEvent, InsufficientMarginEvent, PnLUpdatedEvent, PositionClosedEvent,
    PositionOpenedEvent,
)
from core.functions import format_currency, sample_hold_minutes, sample_position_size
from core.logger import log_error, log_info, log_warning
from core.models import Group, GroupSnapshot, PositionPair
from core.settings_config import TradingConfig
from coordinator.error_classifier import classify_error
from coordinator.pair_protocol import Clock, PairOrderProtocol, Sleep
from coordinator.position_ledger import PositionLedger

Watchdog = Callable[[], Awaitable[bool]]


class GroupRunner:
    """Торговый цикл одной группы"""

    def __init__(self, group: Group, clients: Dict[str, AsterAPI], config: TradingConfig,
                 event_bus: Optional[EventBus] = None, watchdog: Optional[Watchdog] = None,
                 sleep: Sleep = asyncio.sleep, clock: Clock = time.time, rng: Optional[random.Random] = None):
        self.group = group
        self.group_id = group.group_id
        self.config = config
        self.event_bus = event_bus
        self.watchdog = watchdog
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

        self.protocol = PairOrderProtocol(self.group_id, clients, config, sleep=sleep, clock=clock, rng=self._rng)
        self.ledger = PositionLedger(self.group_id)

        self.state = GroupState.ACTIVE
        self.reason: Optional[str] = None
        self.until: Optional[float] = None
        self.cycle = 0
        self.last_trade_time: Optional[float] = None
        self._stop_requested = False

    # =========================================================================
    # УПРАВЛЕНИЕ
    # =========================================================================

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self):
        """Кооперативная остановка: наблюдается в начале следующей итерации"""
        self._stop_requested = True

    async def resume(self) -> bool:
        """Ручной выход из SUSPENDED"""
        if self.state != GroupState.SUSPENDED:
            return False
        self.state = GroupState.ACTIVE
        self.reason = None
        log_info(self.group_id, "▶️ Группа возобновлена вручную", "GroupRunner")
        await self._emit(GroupReactivatedEvent(group_id=self.group_id, message="manual_resume"))
        return True

    def snapshot(self) -> GroupSnapshot:
        return GroupSnapshot(
            group_id=self.group_id,
            state=self.state,
            reason=self.reason,
            until=self.until,
            cycle=self.cycle,
            last_trade_time=self.last_trade_time,
            total_pnl=self.ledger.pnl.total_pnl,
            open_positions=self.ledger.open_count,
            pair_count=len(self.group.pairs),
        )

    async def _emit(self, event):
        if self.event_bus is not None:
            await self.event_bus.publish(event)

    # =========================================================================
    # ГЛАВНЫЙ ЦИКЛ
    # =========================================================================

    async def run(self):
        """Исключения наружу не выпускаются, чтобы не отменить соседние группы в TaskGroup"""
        log_info(self.group_id, f"🔄 Запуск группы: {len(self.group.accounts)} аккаунтов, "
                                f"{len(self.group.pairs)} пар", "GroupRunner")
        try:
            while not self._stop_requested:
                try:
                    if self.state == GroupState.QUARANTINED:
                        remaining = (self.until or 0) - self._clock()
                        if remaining > 0:
                            log_warning(self.group_id, f"⏳ Карантин, осталось {int(remaining // 60) + 1} мин",
                                        "GroupRunner")
                            await self._sleep(SystemConstants.QUARANTINE_POLL_SECONDS)
                            continue
                        await self._reactivate()

                    if self.watchdog is not None and not await self.watchdog():
                        break

                    if self.state == GroupState.SUSPENDED:
                        await self._close_leftovers()
                        await self._sleep(SystemConstants.QUARANTINE_POLL_SECONDS)
                        continue

                    await self._run_cycle()

                except Exception as e:
                    await self._handle_cycle_error(e)
        finally:
            self.state = GroupState.TERMINATED
            log_info(self.group_id, "🛑 Торговля группы остановлена", "GroupRunner")

    async def _handle_cycle_error(self, error: Exception):
        log_error(self.group_id, f"Ошибка торгового цикла: {error}", "GroupRunner")
        if classify_error(error) == ErrorKind.INSUFFICIENT_MARGIN:
            await self._suspend("insufficient_margin", error)
            return
        await self._emit(GroupErrorEvent(group_id=self.group_id, error=str(error)))
        await self._sleep(SystemConstants.ERROR_BACKOFF_SECONDS)

    async def _run_cycle(self):
        cycle_no = self.cycle + 1
        log_info(self.group_id, f"--- Цикл {cycle_no} ---", "GroupRunner")

        symbol = self._rng.choice(self.config.supported_symbols)
        size_range = self.config.position_size_range
        position_size = sample_position_size(self._rng, size_range.min, size_range.max)
        log_info(self.group_id, f"Инструмент {symbol}, размер позиции {position_size} USDT", "GroupRunner")

        opened = await self._open_phase(symbol, position_size, cycle_no)
        if opened is None:
            return

        if opened:
            hold_range = self.config.close_after_minutes_range
            hold_minutes = sample_hold_minutes(self._rng, hold_range.min, hold_range.max)
            log_info(self.group_id, f"⏰ Удержание {hold_minutes} мин до закрытия", "GroupRunner")
            await self._sleep(hold_minutes * 60)
        else:
            log_warning(self.group_id, "Ни одна пара не открыта, удержание пропущено", "GroupRunner")

        await self._close_phase(cycle_no)
        await self._settle_cycle(cycle_no, symbol)
        await self._sleep(SystemConstants.CYCLE_DELAY_SECONDS)

    async def _open_phase(self, symbol: str, position_size: Decimal, cycle_no: int) -> Optional[List[PositionPair]]:
        """
        Открывает пары по порядку.

        Returns:
            Список открытых пар или None, если группа ушла в SUSPENDED/QUARANTINED.
        """
        opened: List[PositionPair] = []
        margin_blocked = 0

        for pair in self.group.pairs:
            result = await self.protocol.open_pair(pair, symbol, position_size, cycle_no)

            if result.outcome == PairOutcome.OPENED:
                self.ledger.add(result.position)
                opened.append(result.position)
                await self._emit(PositionOpenedEvent(group_id=self.group_id, position=result.position))

            elif result.outcome == PairOutcome.INSUFFICIENT_MARGIN:
                margin_blocked += 1
                await self._emit(InsufficientMarginEvent(
                    group_id=self.group_id, pair_id=pair.pair_id,
                    accounts=[pair.long.account_name, pair.short.account_name], error=str(result.error)))
                if margin_blocked == len(self.group.pairs):
                    await self._suspend("all_pairs_insufficient_margin", result.error)
                    return None

            else:
                log_error(self.group_id, f"🚨 Критическая ошибка пары {pair.pair_id}: {result.error}", "GroupRunner")
                await self._unwind(opened, cycle_no)
                await self._quarantine(pair.pair_id, result.error)
                return None

        return opened

    async def _unwind(self, positions: List[PositionPair], cycle_no: int):
        """Аварийное закрытие пар, открытых в текущем цикле"""
        if not positions:
            return
        log_warning(self.group_id, f"🚨 Аварийное закрытие {len(positions)} пар", "GroupRunner")
        for position in positions:
            await self.protocol.emergency_close(position, cycle_no)

    async def _close_phase(self, cycle_no: int):
        open_positions = self.ledger.open_positions()
        if not open_positions:
            return
        log_info(self.group_id, f"🔄 Закрытие {len(open_positions)} пар", "GroupRunner")
        for position in open_positions:
            try:
                await self.protocol.close_pair(position, cycle_no)
                await self._emit(PositionClosedEvent(group_id=self.group_id, position=position))
            except Exception as e:
                log_error(self.group_id, f"Ошибка закрытия пары {position.pair_id}: {e}", "GroupRunner")
                await self._emit(CloseErrorEvent(group_id=self.group_id, pair_id=position.pair_id, error=str(e)))

    async def _close_leftovers(self):
        """Пары, оставшиеся OPEN после неудачного закрытия, закрываются и в SUSPENDED"""
        if self.ledger.open_count:
            await self._close_phase(self.cycle + 1)

    async def _settle_cycle(self, cycle_no: int, symbol: str):
        cycle_pnl, closed = self.ledger.cycle_pnl(cycle_no)
        now = self._clock()
        self.ledger.record_cycle(cycle_no, now, cycle_pnl, len(closed))
        self.cycle = cycle_no
        self.last_trade_time = now

        total_pnl = self.ledger.pnl.total_pnl
        log_info(self.group_id, f"💰 PnL цикла {cycle_no}: {format_currency(cycle_pnl)}, "
                                f"итого {format_currency(total_pnl)}", "GroupRunner")

        await self._emit(PnLUpdatedEvent(group_id=self.group_id, cycle_pnl=cycle_pnl, total_pnl=total_pnl))
        await self._emit(CycleCompletedEvent(group_id=self.group_id, cycle=cycle_no, symbol=symbol,
                                             cycle_pnl=cycle_pnl, position_count=len(closed),
                                             pnl=self.ledger.pnl))

    # =========================================================================
    # ПЕРЕХОДЫ СОСТОЯНИЙ
    # =========================================================================

    async def _suspend(self, reason: str, error: Optional[BaseException]):
        self.state = GroupState.SUSPENDED
        self.reason = reason
        log_error(self.group_id, f"⛔ Группа остановлена: {reason}", "GroupRunner")
        await self._emit(GroupDeactivatedEvent(group_id=self.group_id, reason=reason,
                                               error=str(error) if error else ""))
        await self._close_leftovers()

    async def _quarantine(self, pair_id: str, error: Optional[BaseException]):
        self.state = GroupState.QUARANTINED
        self.until = self._clock() + SystemConstants.QUARANTINE_SECONDS
        self.reason = "critical_error"
        log_error(self.group_id, f"Группа в карантине на {SystemConstants.QUARANTINE_SECONDS // 60} мин",
                  "GroupRunner")
        await self._emit(CriticalGroupErrorEvent(group_id=self.group_id, pair_id=pair_id,
                                                 error=str(error), retry_after=self.until))

    async def _reactivate(self):
        self.state = GroupState.ACTIVE
        self.until = None
        self.reason = None
        log_info(self.group_id, "🔄 Карантин окончен, группа снова активна", "GroupRunner")
        await self._emit(GroupReactivatedEvent(group_id=self.group_id,
                                               message="Group reactivated after critical error retry period"))
