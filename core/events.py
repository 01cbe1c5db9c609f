import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.enums import EventType
from core.logger import log_debug, log_error, log_info
from core.models import GroupPnLRecord, PositionPair


@dataclass
class BaseEvent:
    """Базовый класс для всех событий"""
    group_id: str
    # timestamp не участвует в __init__, а создается после
    timestamp: datetime = field(init=False)

    def __post_init__(self):
        """Устанавливает timestamp после создания объекта"""
        self.timestamp = datetime.now()


@dataclass
class TradingStartedEvent(BaseEvent):
    """Событие о запуске торговли (group_id='system')"""
    groups: int
    config: Dict[str, Any] = field(default_factory=dict)
    event_type: EventType = field(default=EventType.TRADING_STARTED, init=False)


@dataclass
class TradingStoppedEvent(BaseEvent):
    """Событие об остановке торговли (group_id='system')"""
    reason: str = "user_request"
    event_type: EventType = field(default=EventType.TRADING_STOPPED, init=False)


@dataclass
class PositionOpenedEvent(BaseEvent):
    """Хедж-пара успешно открыта"""
    position: PositionPair
    event_type: EventType = field(default=EventType.POSITION_OPENED, init=False)


@dataclass
class PositionClosedEvent(BaseEvent):
    """Хедж-пара закрыта по окончании удержания"""
    position: PositionPair
    event_type: EventType = field(default=EventType.POSITION_CLOSED, init=False)


@dataclass
class InsufficientMarginEvent(BaseEvent):
    """Пара не открыта из-за нехватки маржи"""
    pair_id: str
    accounts: List[str]
    error: str
    event_type: EventType = field(default=EventType.INSUFFICIENT_MARGIN, init=False)


@dataclass
class CycleCompletedEvent(BaseEvent):
    """Цикл open → hold → close завершён"""
    cycle: int
    symbol: str
    cycle_pnl: Decimal
    position_count: int
    pnl: GroupPnLRecord
    event_type: EventType = field(default=EventType.CYCLE_COMPLETED, init=False)


@dataclass
class PnLUpdatedEvent(BaseEvent):
    """Обновление PnL группы"""
    cycle_pnl: Decimal
    total_pnl: Decimal
    event_type: EventType = field(default=EventType.PNL_UPDATED, init=False)


@dataclass
class GroupDeactivatedEvent(BaseEvent):
    """Группа переведена в SUSPENDED"""
    reason: str
    error: str = ""
    event_type: EventType = field(default=EventType.GROUP_DEACTIVATED, init=False)


@dataclass
class GroupReactivatedEvent(BaseEvent):
    """Группа вернулась в ACTIVE"""
    message: str = ""
    event_type: EventType = field(default=EventType.GROUP_REACTIVATED, init=False)


@dataclass
class CriticalGroupErrorEvent(BaseEvent):
    """Критическая ошибка открытия пары: группа ушла в карантин"""
    pair_id: str
    error: str
    retry_after: float
    event_type: EventType = field(default=EventType.CRITICAL_GROUP_ERROR, init=False)


@dataclass
class GroupErrorEvent(BaseEvent):
    """Неклассифицированная ошибка цикла"""
    error: str
    event_type: EventType = field(default=EventType.GROUP_ERROR, init=False)


@dataclass
class CloseErrorEvent(BaseEvent):
    """Ошибка закрытия пары"""
    pair_id: str
    error: str
    event_type: EventType = field(default=EventType.CLOSE_ERROR, init=False)


# Типизация для обработчиков
Handler = Callable[[Any], Awaitable[None]]


@dataclass
class Subscription:
    """Хранит информацию о подписке"""
    handler: Handler
    event_type: EventType
    group_id: Optional[str] = None


class EventBus:
    """
    Шина событий оркестратора.
    - Единый список подписчиков.
    - Глобальные подписки и подписки на конкретную группу через один метод.
    - Ошибка в обработчике не влияет на доставку остальным.
    """

    def __init__(self, max_queue_size: int = 10000):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._subscriptions: List[Subscription] = []
        self._running = False
        self._processor_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            return
        self._running = True
        self._processor_task = asyncio.create_task(self._process_events())

    async def stop(self):
        if not self._running:
            return
        if self._processor_task:
            # join учитывает и событие, которое обрабатывается прямо сейчас
            await self._queue.join()
            self._running = False
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
        self._running = False

    async def publish(self, event: Any):
        if not self._running:
            log_debug(getattr(event, 'group_id', 'system'),
                      f"Попытка публикации в остановленную EventBus: {type(event).__name__}", "EventBus")
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            log_error(getattr(event, 'group_id', 'system'),
                      f"EventBus переполнен, событие {type(event).__name__} отброшено", "EventBus")

    async def subscribe(self, event_type: EventType, handler: Handler, group_id: Optional[str] = None):
        """Единый метод подписки. Укажите group_id для подписки на одну группу."""
        async with self._lock:
            for sub in self._subscriptions:
                if sub.handler == handler and sub.event_type == event_type and sub.group_id == group_id:
                    return
            self._subscriptions.append(Subscription(handler=handler, event_type=event_type, group_id=group_id))
            log_info(group_id or "system",
                     f"Новая подписка: {getattr(handler, '__name__', handler)} на {event_type.value}",
                     "EventBus")

    async def unsubscribe(self, handler: Handler):
        """Удаляет ВСЕ подписки, связанные с этим обработчиком."""
        async with self._lock:
            initial_count = len(self._subscriptions)
            self._subscriptions = [sub for sub in self._subscriptions if sub.handler != handler]
            removed_count = initial_count - len(self._subscriptions)
            if removed_count > 0:
                log_info("system", f"Удалено {removed_count} подписок для обработчика "
                                   f"{getattr(handler, '__name__', handler)}", "EventBus")

    async def _process_events(self):
        while self._running:
            try:
                event = await self._queue.get()

                event_type = getattr(event, 'event_type', None)
                if not event_type:
                    self._queue.task_done()
                    continue

                event_group_id = getattr(event, 'group_id', None)

                # Копируем список - подписка может измениться во время доставки
                current_subs = self._subscriptions[:]

                for sub in current_subs:
                    if sub.event_type != event_type:
                        continue
                    if sub.group_id is not None and sub.group_id != event_group_id:
                        continue
                    try:
                        await sub.handler(event)
                    except Exception as e:
                        log_error(event_group_id or "system",
                                  f"Ошибка в обработчике {getattr(sub.handler, '__name__', sub.handler)}: {e}",
                                  "EventBus")

                self._queue.task_done()
            except asyncio.CancelledError:
                break
            except Exception as e:
                log_error("system", f"Критическая ошибка в EventBus: {e}", "EventBus")
                await asyncio.sleep(1)
