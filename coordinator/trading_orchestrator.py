# coordinator/trading_orchestrator.py
"""
Оркестратор: запускает GroupRunner на каждую группу под TaskGroup,
следит за числом работоспособных групп и агрегирует статус/PnL.
"""
import asyncio
import random
import time
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence

from api.aster_api import AsterAPI
from core.enums import GroupState, OrderSide, OrderType, SystemConstants
from core.events import EventBus, TradingStartedEvent, TradingStoppedEvent
from core.functions import format_number, to_decimal
from core.logger import log_error, log_info, log_warning
from core.models import Account, CloseAllResult, Group, GroupPnLRecord, GroupSnapshot
from core.settings_config import SystemConfig
from coordinator.group_runner import GroupRunner
from coordinator.pair_protocol import Clock, Sleep

ClientFactory = Callable[[Account], AsterAPI]


class TradingOrchestrator:
    """Управление всеми торговыми группами"""

    def __init__(self, config: SystemConfig, event_bus: Optional[EventBus] = None,
                 client_factory: Optional[ClientFactory] = None, sleep: Sleep = asyncio.sleep,
                 clock: Clock = time.time, rng: Optional[random.Random] = None):
        self.config = config
        self.event_bus = event_bus
        self._client_factory = client_factory or self._default_client
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

        self.runners: Dict[str, GroupRunner] = {}
        self.clients: Dict[str, AsterAPI] = {}
        self.is_running = False
        self._supervisor: Optional[asyncio.Task] = None

    def _default_client(self, account: Account) -> AsterAPI:
        return AsterAPI(account.api_key, account.secret_key, base_url=self.config.api.base_url,
                        account_name=account.account_name, timeout=self.config.api.timeout,
                        proxy_url=account.proxy_url)

    async def _emit(self, event):
        if self.event_bus is not None:
            await self.event_bus.publish(event)

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ
    # =========================================================================

    async def start_trading(self, groups: Sequence[Group]):
        if self.is_running:
            raise RuntimeError("Trading is already running")

        log_info("system", f"🚀 Запуск торговли: {len(groups)} групп", "Orchestrator")

        self.runners = {}
        for group in groups:
            group_clients = {}
            for account in group.accounts:
                if account.account_name not in self.clients:
                    self.clients[account.account_name] = self._client_factory(account)
                group_clients[account.account_name] = self.clients[account.account_name]

            self.runners[group.group_id] = GroupRunner(
                group, group_clients, self.config.trading, event_bus=self.event_bus, watchdog=self._watchdog,
                sleep=self._sleep, clock=self._clock, rng=random.Random(self._rng.random()),
            )

        self.is_running = True
        self._supervisor = asyncio.create_task(self._supervise(), name="group-supervisor")
        await self._emit(TradingStartedEvent(group_id="system", groups=len(groups),
                                             config=self.config.trading.to_dict()))

    async def _supervise(self):
        try:
            async with asyncio.TaskGroup() as task_group:
                for group_id, runner in self.runners.items():
                    task_group.create_task(runner.run(), name=f"runner-{group_id}")
        finally:
            self.is_running = False
            log_info("system", "Все группы завершили работу", "Orchestrator")

    async def _watchdog(self) -> bool:
        """Вызывается раннерами перед каждой итерацией. False - торговля должна остановиться."""
        if not self.is_running:
            return False
        if self.count_active_groups() == 0:
            log_warning("system", "🛑 Нет активных групп, торговля останавливается", "Orchestrator")
            await self.stop_trading(reason="no_active_groups")
            return False
        return True

    async def stop_trading(self, reason: str = "user_request"):
        if not self.is_running:
            return
        log_info("system", f"Остановка торговли ({reason})", "Orchestrator")
        self.is_running = False
        for runner in self.runners.values():
            runner.request_stop()
        await self._emit(TradingStoppedEvent(group_id="system", reason=reason))

    def stop_group(self, group_id: str) -> bool:
        runner = self.runners.get(group_id)
        if runner is None:
            return False
        log_info(group_id, "Остановка группы по запросу", "Orchestrator")
        runner.request_stop()
        return True

    async def resume_group(self, group_id: str) -> bool:
        runner = self.runners.get(group_id)
        if runner is None:
            return False
        return await runner.resume()

    async def join(self):
        """Ожидание завершения всех раннеров"""
        if self._supervisor is not None:
            await self._supervisor

    async def close(self):
        """Закрытие HTTP сессий всех клиентов"""
        for client in self.clients.values():
            await client.close()
        self.clients.clear()

    # =========================================================================
    # СТАТУС И PnL
    # =========================================================================

    def get_group_snapshots(self) -> List[GroupSnapshot]:
        return [runner.snapshot() for runner in self.runners.values()]

    def count_active_groups(self) -> int:
        return sum(1 for snapshot in self.get_group_snapshots() if snapshot.is_active)

    def get_status(self) -> Dict[str, object]:
        return {
            "is_running": self.is_running,
            "total_groups": len(self.runners),
            "active_groups": self.count_active_groups(),
            "total_pnl": self.get_total_pnl(),
        }

    def get_group_pnl(self, group_id: str) -> GroupPnLRecord:
        runner = self.runners.get(group_id)
        return runner.ledger.pnl if runner else GroupPnLRecord()

    def get_all_groups_pnl(self) -> Dict[str, GroupPnLRecord]:
        return {group_id: runner.ledger.pnl for group_id, runner in self.runners.items()}

    def get_total_pnl(self) -> Decimal:
        return sum((runner.ledger.pnl.total_pnl for runner in self.runners.values()), Decimal("0"))

    def reset_pnl(self, group_id: Optional[str] = None) -> bool:
        """Сброс истории PnL одной группы или всех групп"""
        if group_id is not None and group_id not in self.runners:
            return False
        targets = [self.runners[group_id]] if group_id is not None else list(self.runners.values())
        for runner in targets:
            runner.ledger.reset()
        log_info(group_id or "system", "PnL сброшен", "Orchestrator")
        return True

    # =========================================================================
    # РУЧНОЕ ЗАКРЫТИЕ ВСЕХ ПОЗИЦИЙ
    # =========================================================================

    async def close_all_positions(self, accounts: Sequence[Account]) -> CloseAllResult:
        """Reduce-only закрытие всех ненулевых позиций на каждом аккаунте"""
        result = CloseAllResult()
        log_info("system", f"🔄 Закрытие всех позиций: {len(accounts)} аккаунтов", "Orchestrator")

        for account in accounts:
            if not account.has_valid_keys:
                message = f"Account {account.account_name} has invalid API key configuration"
                log_warning(account.account_name, f"⚠️ {message}", "Orchestrator")
                result.errors.append(message)
                continue

            try:
                async with self._client_factory(account) as api:
                    await self._close_account_positions(api, account, result)
            except Exception as e:
                message = f"Account processing failed {account.account_name}: {e}"
                log_error(account.account_name, f"❌ {message}", "Orchestrator")
                result.errors.append(message)
                result.success = False

            await self._sleep(SystemConstants.CLOSE_ALL_ACCOUNT_DELAY)

        log_info("system", f"📊 Итог: закрыто {result.closed_count}, ошибок {len(result.errors)}", "Orchestrator")
        return result

    async def _close_account_positions(self, api: AsterAPI, account: Account, result: CloseAllResult):
        positions = await api.get_positions() or []
        open_positions = [p for p in positions
                          if abs(to_decimal(p.get("positionAmt"))) > SystemConstants.DUST_THRESHOLD]

        if not open_positions:
            log_info(account.account_name, "✅ Открытых позиций нет", "Orchestrator")
            return

        log_info(account.account_name, f"📊 Найдено открытых позиций: {len(open_positions)}", "Orchestrator")
        for position in open_positions:
            symbol = position.get("symbol")
            amount = to_decimal(position.get("positionAmt"))
            close_side = OrderSide.SELL if amount > 0 else OrderSide.BUY
            try:
                await api.place_order(symbol, close_side.value, OrderType.MARKET.value,
                                      quantity=abs(amount), reduce_only=True)
                result.closed_count += 1
                log_info(account.account_name, f"✅ {symbol} {format_number(amount)} закрыта", "Orchestrator")
            except Exception as e:
                message = f"Close failed {symbol} ({account.account_name}): {e}"
                log_error(account.account_name, f"❌ {message}", "Orchestrator")
                result.errors.append(message)
                result.success = False
            await self._sleep(SystemConstants.CLOSE_ALL_POSITION_DELAY)
