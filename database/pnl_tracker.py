"""
Хранилище PnL по циклам групп (SQLite) и статистика поверх него.
Рабочее состояние групп живёт в памяти, на диск пишется только итог каждого цикла.
"""
import asyncio
import time
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiosqlite
import pandas as pd

from core.events import CycleCompletedEvent
from core.logger import log_error, log_info

TRADE_COLUMNS = ["id", "group_id", "timestamp", "pnl", "positions", "symbol", "cycle"]
DateLike = Union[str, datetime, None]


def _empty_metrics() -> Dict[str, Any]:
    return {
        "total_pnl": 0.0,
        "trade_count": 0,
        "win_count": 0,
        "loss_count": 0,
        "win_rate": 0.0,
        "average_return": 0.0,
        "sharpe_ratio": 0.0,
        "max_drawdown": 0.0,
        "max_profit": 0.0,
        "profit_factor": 0.0,
    }


def _metrics(df: pd.DataFrame) -> Dict[str, Any]:
    """Сводные метрики по набору сделок"""
    if df.empty:
        return _empty_metrics()

    pnl = df["pnl"]
    trade_count = len(df)
    total_pnl = float(pnl.sum())
    average_return = total_pnl / trade_count
    variance = float(pnl.var(ddof=0))
    max_profit = max(float(pnl.max()), 0.0)
    max_drawdown = min(float(pnl.min()), 0.0)

    return {
        "total_pnl": total_pnl,
        "trade_count": trade_count,
        "win_count": int((pnl > 0).sum()),
        "loss_count": int((pnl < 0).sum()),
        "win_rate": float((pnl > 0).sum()) / trade_count * 100,
        "average_return": average_return,
        "sharpe_ratio": average_return / variance ** 0.5 if variance > 0 else 0.0,
        "max_drawdown": max_drawdown,
        "max_profit": max_profit,
        "profit_factor": max_profit / abs(max_drawdown) if max_drawdown < 0 else 0.0,
    }


def _to_epoch(value: DateLike) -> Optional[float]:
    if value is None:
        return None
    stamp = pd.Timestamp(value)
    if stamp.tzinfo is None:
        stamp = stamp.tz_localize(timezone.utc)
    return stamp.timestamp()


class PnLTracker:
    """Менеджер SQLite хранилища PnL"""

    def __init__(self, db_path: str = "logs/pnl_data.db"):
        self.db_path = db_path
        self.conn: Optional[aiosqlite.Connection] = None
        self._is_initialized = False
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        async with self._lock:
            if self._is_initialized:
                return
            try:
                log_info("system", f"Инициализация PnL базы: {self.db_path}", "PnLTracker")
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                self.conn = await aiosqlite.connect(self.db_path)
                self.conn.row_factory = aiosqlite.Row
                await self.conn.execute("""
                    CREATE TABLE IF NOT EXISTS trades (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        group_id TEXT NOT NULL,
                        timestamp REAL NOT NULL,
                        pnl REAL NOT NULL,
                        positions INTEGER DEFAULT 0,
                        symbol TEXT DEFAULT 'UNKNOWN',
                        cycle INTEGER DEFAULT 0
                    )
                """)
                await self.conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_group ON trades(group_id)")
                await self.conn.commit()
                self._is_initialized = True
                log_info("system", "✅ PnL база инициализирована", "PnLTracker")
            except Exception as e:
                log_error("system", f"Ошибка инициализации PnL базы: {e}", "PnLTracker")
                raise

    async def close(self):
        if self.conn:
            await self.conn.close()
            self.conn = None
            self._is_initialized = False

    # =========================================================================
    # ЗАПИСЬ
    # =========================================================================

    async def record_trade(self, group_id: str, pnl: Union[Decimal, float], symbol: str = "UNKNOWN",
                           cycle: int = 0, positions: int = 0, timestamp: Optional[float] = None) -> Dict[str, Any]:
        """Сохраняет итог одного цикла группы"""
        timestamp = timestamp if timestamp is not None else time.time()
        cursor = await self.conn.execute(
            "INSERT INTO trades (group_id, timestamp, pnl, positions, symbol, cycle) VALUES (?, ?, ?, ?, ?, ?)",
            (group_id, timestamp, float(pnl), positions, symbol, cycle)
        )
        await self.conn.commit()
        return {
            "id": cursor.lastrowid,
            "group_id": group_id,
            "timestamp": timestamp,
            "pnl": float(pnl),
            "positions": positions,
            "symbol": symbol,
            "cycle": cycle,
        }

    async def handle_cycle_completed(self, event: CycleCompletedEvent):
        """Обработчик CycleCompletedEvent для EventBus"""
        await self.record_trade(event.group_id, event.cycle_pnl, symbol=event.symbol, cycle=event.cycle,
                                positions=event.position_count, timestamp=event.timestamp.timestamp())

    async def reset(self):
        await self.conn.execute("DELETE FROM trades")
        await self.conn.commit()
        log_info("system", "PnL данные сброшены", "PnLTracker")

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def _load_trades(self, where: str = "", params: tuple = ()) -> pd.DataFrame:
        query = f"SELECT {', '.join(TRADE_COLUMNS)} FROM trades {where} ORDER BY timestamp, id"
        try:
            async with self.conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        except Exception as e:
            log_error("system", f"Ошибка чтения PnL: {e}", "PnLTracker")
            return pd.DataFrame(columns=TRADE_COLUMNS)
        df = pd.DataFrame([tuple(row) for row in rows], columns=TRADE_COLUMNS)
        df["pnl"] = df["pnl"].astype(float)
        return df

    async def get_group_summary(self, group_id: str) -> Optional[Dict[str, Any]]:
        df = await self._load_trades("WHERE group_id = ?", (group_id,))
        if df.empty:
            return None
        summary = _metrics(df)
        summary.update({
            "group_id": group_id,
            "last_trade_time": float(df["timestamp"].iloc[-1]),
            "recent_trades": df.tail(5).to_dict("records"),
        })
        return summary

    async def get_overall_summary(self) -> Dict[str, Any]:
        df = await self._load_trades()
        summary = _metrics(df)
        summary.update({
            "start_date": float(df["timestamp"].min()) if not df.empty else None,
            "last_updated": float(df["timestamp"].max()) if not df.empty else None,
            "groups": int(df["group_id"].nunique()),
        })
        return summary

    async def _period_stats(self, period_format: str, key: str, limit: int) -> List[Dict[str, Any]]:
        df = await self._load_trades()
        if df.empty:
            return []
        df[key] = pd.to_datetime(df["timestamp"], unit="s", utc=True).dt.strftime(period_format)
        grouped = df.groupby(key)["pnl"].agg(
            pnl="sum",
            trade_count="count",
            win_count=lambda s: int((s > 0).sum()),
            loss_count=lambda s: int((s < 0).sum()),
        ).reset_index()
        grouped["win_rate"] = grouped["win_count"] / grouped["trade_count"] * 100
        grouped = grouped.sort_values(key, ascending=False).head(limit)
        return grouped.to_dict("records")

    async def get_daily_stats(self, days: int = 30) -> List[Dict[str, Any]]:
        return await self._period_stats("%Y-%m-%d", "date", days)

    async def get_monthly_stats(self, months: int = 12) -> List[Dict[str, Any]]:
        return await self._period_stats("%Y-%m", "month", months)

    async def get_group_comparison(self) -> List[Dict[str, Any]]:
        df = await self._load_trades()
        summaries = []
        for group_id in df["group_id"].unique():
            summary = await self.get_group_summary(group_id)
            if summary:
                summaries.append(summary)
        return sorted(summaries, key=lambda s: s["total_pnl"], reverse=True)

    async def get_recent_trades(self, limit: int = 50) -> List[Dict[str, Any]]:
        df = await self._load_trades()
        if df.empty:
            return []
        recent = df.sort_values(["timestamp", "id"], ascending=False).head(limit).copy()
        recent["date"] = pd.to_datetime(recent["timestamp"], unit="s", utc=True).dt.strftime("%Y-%m-%d %H:%M:%S")
        recent["formatted_pnl"] = recent["pnl"].map(lambda v: f"+{v:.4f}" if v > 0 else f"{v:.4f}")
        return recent.to_dict("records")

    async def get_performance_metrics(self, start_date: DateLike = None, end_date: DateLike = None) -> Dict[str, Any]:
        df = await self._load_trades()
        start, end = _to_epoch(start_date), _to_epoch(end_date)
        if start is not None:
            df = df[df["timestamp"] >= start]
        if end is not None:
            df = df[df["timestamp"] <= end]
        return _metrics(df)

    async def export_to_csv(self, file_path: Optional[str] = None) -> str:
        if not file_path:
            stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d")
            file_path = str(Path(self.db_path).parent / f"pnl-export-{stamp}.csv")

        df = await self._load_trades()
        moments = pd.to_datetime(df["timestamp"], unit="s", utc=True)
        export = pd.DataFrame({
            "Date": moments.dt.strftime("%Y-%m-%d"),
            "Time": moments.dt.strftime("%H:%M:%S"),
            "Group ID": df["group_id"],
            "Symbol": df["symbol"],
            "Cycle": df["cycle"],
            "P&L": df["pnl"].map(lambda v: f"{v:.4f}"),
            "Positions": df["positions"],
        })
        export.to_csv(file_path, index=False)
        log_info("system", f"PnL экспортирован в {file_path}", "PnLTracker")
        return file_path
