# core/models.py
"""
Модели данных оркестратора: аккаунты, группы, хедж-пары, позиции и PnL.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from core.enums import GroupState, PairOutcome, PositionStatus


@dataclass(frozen=True)
class Account:
    """Торговый аккаунт биржи"""
    account_name: str
    exchange: str
    api_key: str
    secret_key: str
    proxy_url: str = ""

    @property
    def has_valid_keys(self) -> bool:
        """Одинаковые api/secret ключи - заведомо неверная конфигурация"""
        return bool(self.api_key) and bool(self.secret_key) and self.api_key != self.secret_key


@dataclass(frozen=True)
class HedgePair:
    """Пара аккаунтов: один держит лонг, второй - шорт. Неизменна на всё время жизни группы."""
    pair_id: str
    long: Account
    short: Account


@dataclass(frozen=True)
class Group:
    """Группа аккаунтов, разбитая на хедж-пары при создании"""
    group_id: str
    accounts: Tuple[Account, ...]
    pairs: Tuple[HedgePair, ...]


@dataclass
class PositionPair:
    """Открытая (или закрытая) хедж-позиция по одной паре"""
    pair_id: str
    group_id: str
    symbol: str
    quantity: Decimal
    position_size: Decimal
    open_price: Decimal
    long_account: str
    short_account: str
    long_order: Dict[str, Any]
    short_order: Dict[str, Any]
    open_time: float
    open_cycle: int
    status: PositionStatus = PositionStatus.OPEN
    close_long_order: Optional[Dict[str, Any]] = None
    close_short_order: Optional[Dict[str, Any]] = None
    close_time: Optional[float] = None
    close_cycle: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN


@dataclass
class PairOpenResult:
    """Результат PairOrderProtocol.open_pair"""
    outcome: PairOutcome
    position: Optional[PositionPair] = None
    error: Optional[BaseException] = None
    attempts: int = 0


@dataclass(frozen=True)
class CycleRecord:
    """Запись PnL одного цикла"""
    cycle: int
    timestamp: float
    pnl: Decimal
    position_count: int


@dataclass
class GroupPnLRecord:
    """Накопленный PnL группы"""
    total_pnl: Decimal = Decimal("0")
    trades: List[CycleRecord] = field(default_factory=list)

    @property
    def current_cycle(self) -> int:
        return self.trades[-1].cycle if self.trades else 0


@dataclass(frozen=True)
class GroupSnapshot:
    """Read-only снимок состояния группы для оркестратора"""
    group_id: str
    state: GroupState
    reason: Optional[str]
    until: Optional[float]
    cycle: int
    last_trade_time: Optional[float]
    total_pnl: Decimal
    open_positions: int
    pair_count: int

    @property
    def is_active(self) -> bool:
        """Карантин и SUSPENDED не считаются: группа сейчас не торгует"""
        return self.state == GroupState.ACTIVE


@dataclass
class CloseAllResult:
    """Итог ручного закрытия всех позиций"""
    success: bool = True
    closed_count: int = 0
    errors: List[str] = field(default_factory=list)
