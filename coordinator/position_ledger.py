# coordinator/position_ledger.py
"""
Реестр позиций и PnL одной группы. Принадлежит своему GroupRunner.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from core.enums import PositionSide, PositionStatus
from core.functions import to_decimal
from core.models import CycleRecord, GroupPnLRecord, PositionPair


def _fill_price(order: Optional[Dict[str, Any]]) -> Decimal:
    """Цена исполнения: avgPrice, если он больше нуля, иначе price"""
    if not order:
        return Decimal("0")
    avg_price = to_decimal(order.get("avgPrice"))
    if avg_price > 0:
        return avg_price
    return to_decimal(order.get("price"))


def _fill_quantity(order: Optional[Dict[str, Any]], fallback: Decimal) -> Decimal:
    if order:
        for key in ("executedQty", "origQty"):
            qty = to_decimal(order.get(key))
            if qty > 0:
                return qty
    return fallback


def calculate_leg_pnl(open_order: Optional[Dict[str, Any]], close_order: Optional[Dict[str, Any]],
                      side: PositionSide, fallback_quantity: Decimal) -> Decimal:
    """Упрощённый PnL ноги по ценам из подтверждений ордеров"""
    open_price = _fill_price(open_order)
    close_price = _fill_price(close_order)
    quantity = _fill_quantity(open_order, fallback_quantity)

    if side == PositionSide.LONG:
        return (close_price - open_price) * quantity
    return (open_price - close_price) * quantity


def calculate_pair_pnl(position: PositionPair) -> Decimal:
    long_pnl = calculate_leg_pnl(position.long_order, position.close_long_order,
                                 PositionSide.LONG, position.quantity)
    short_pnl = calculate_leg_pnl(position.short_order, position.close_short_order,
                                  PositionSide.SHORT, position.quantity)
    return long_pnl + short_pnl


class PositionLedger:
    """Позиции группы и накопленный PnL"""

    def __init__(self, group_id: str):
        self.group_id = group_id
        self.positions: List[PositionPair] = []
        self.pnl = GroupPnLRecord()

    def add(self, position: PositionPair):
        self.positions.append(position)

    def open_positions(self) -> List[PositionPair]:
        return [p for p in self.positions if p.is_open]

    def closed_in_cycle(self, cycle: int) -> List[PositionPair]:
        """Только штатно закрытые в этом цикле, аварийные в PnL не входят"""
        return [p for p in self.positions if p.status == PositionStatus.CLOSED and p.close_cycle == cycle]

    def cycle_pnl(self, cycle: int) -> Tuple[Decimal, List[PositionPair]]:
        closed = self.closed_in_cycle(cycle)
        return sum((calculate_pair_pnl(p) for p in closed), Decimal("0")), closed

    def record_cycle(self, cycle: int, timestamp: float, pnl: Decimal, position_count: int) -> CycleRecord:
        record = CycleRecord(cycle=cycle, timestamp=timestamp, pnl=pnl, position_count=position_count)
        self.pnl.total_pnl += pnl
        self.pnl.trades.append(record)
        return record

    def reset(self):
        """Сбрасывает историю PnL. Открытые позиции остаются до следующей фазы закрытия."""
        self.positions = self.open_positions()
        self.pnl = GroupPnLRecord()

    @property
    def open_count(self) -> int:
        return len(self.open_positions())
