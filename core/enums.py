# core/enums.py
"""
Перечисления для оркестратора хедж-групп
Содержит состояния групп, статусы позиций, типы событий и константы системы
"""
from decimal import Decimal
from enum import Enum


class OrderSide(Enum):
    """Стороны ордера"""
    BUY = "BUY"
    SELL = "SELL"


class OrderType(Enum):
    """Типы ордеров"""
    MARKET = "MARKET"


class PositionSide(Enum):
    """Сторона позиции в терминах биржи (one-way режим использует BOTH)"""
    BOTH = "BOTH"
    LONG = "LONG"
    SHORT = "SHORT"


class GroupState(Enum):
    """Состояния группы"""
    ACTIVE = "active"
    SUSPENDED = "suspended"        # Все пары упёрлись в нехватку маржи
    QUARANTINED = "quarantined"    # Критическая ошибка, ждём окончания карантина
    TERMINATED = "terminated"


class PositionStatus(Enum):
    """Статусы пары позиций"""
    OPEN = "open"
    CLOSED = "closed"
    EMERGENCY_CLOSED = "emergency_closed"


class ErrorKind(Enum):
    """Классы ошибок биржи"""
    INSUFFICIENT_MARGIN = "insufficient_margin"
    OTHER = "other"


class PairOutcome(Enum):
    """Результат попытки открыть хедж-пару"""
    OPENED = "opened"
    INSUFFICIENT_MARGIN = "insufficient_margin"
    CRITICAL_ERROR = "critical_error"


class EventType(Enum):
    """Типы событий в системе"""
    # Жизненный цикл торговли
    TRADING_STARTED = "trading_started"
    TRADING_STOPPED = "trading_stopped"

    # События позиций
    POSITION_OPENED = "position_opened"
    POSITION_CLOSED = "position_closed"
    INSUFFICIENT_MARGIN = "insufficient_margin"

    # События циклов
    CYCLE_COMPLETED = "cycle_completed"
    PNL_UPDATED = "pnl_updated"

    # События состояния группы
    GROUP_DEACTIVATED = "group_deactivated"
    GROUP_REACTIVATED = "group_reactivated"
    CRITICAL_GROUP_ERROR = "critical_group_error"
    GROUP_ERROR = "group_error"
    CLOSE_ERROR = "close_error"


# Константы для системы
class SystemConstants:
    """Системные константы"""

    # Протокол открытия пары
    MAX_OPEN_ATTEMPTS = 3
    RETRY_BASE_DELAY_SECONDS = 1.0     # Линейный backoff: попытка × 1 сек

    # Машина состояний группы
    QUARANTINE_SECONDS = 10 * 60        # Карантин после критической ошибки
    QUARANTINE_POLL_SECONDS = 30        # Интервал опроса в неактивном состоянии
    CYCLE_DELAY_SECONDS = 5             # Пауза между циклами
    ERROR_BACKOFF_SECONDS = 10          # Пауза после неклассифицированной ошибки

    # Ручное закрытие всех позиций
    DUST_THRESHOLD = Decimal("0.001")
    CLOSE_ALL_POSITION_DELAY = 0.5
    CLOSE_ALL_ACCOUNT_DELAY = 1.0

    # Точность количества по классу инструмента
    DEFAULT_QUANTITY_PRECISION = 3
    QUANTITY_PRECISION = (
        ("BTC", 3),
        ("ETH", 2),
        ("BNB", 1),
    )
