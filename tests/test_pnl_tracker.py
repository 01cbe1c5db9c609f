"""Tests for the persisted PnL summary."""

from datetime import datetime, timezone
from decimal import Decimal

import pandas as pd
import pytest

from core.events import CycleCompletedEvent
from core.models import GroupPnLRecord
from database.pnl_tracker import PnLTracker

DAY_ONE = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc).timestamp()
DAY_TWO = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc).timestamp()
NEXT_MONTH = datetime(2026, 4, 5, 12, 0, tzinfo=timezone.utc).timestamp()


@pytest.fixture
async def tracker(tmp_path):
    pnl_tracker = PnLTracker(str(tmp_path / "data" / "pnl.db"))
    await pnl_tracker.initialize()
    yield pnl_tracker
    await pnl_tracker.close()


@pytest.fixture
async def filled(tracker):
    await tracker.record_trade("group_1", Decimal("10"), "BTCUSDT", cycle=1, positions=3, timestamp=DAY_ONE)
    await tracker.record_trade("group_1", Decimal("-5"), "ETHUSDT", cycle=2, positions=3, timestamp=DAY_ONE + 60)
    await tracker.record_trade("group_1", Decimal("20"), "BNBUSDT", cycle=3, positions=3, timestamp=DAY_TWO)
    await tracker.record_trade("group_2", Decimal("-2"), "BTCUSDT", cycle=1, positions=1, timestamp=NEXT_MONTH)
    return tracker


class TestGroupSummary:
    async def test_group_summary(self, filled):
        summary = await filled.get_group_summary("group_1")

        assert summary["total_pnl"] == pytest.approx(25)
        assert summary["trade_count"] == 3
        assert summary["win_count"] == 2
        assert summary["loss_count"] == 1
        assert summary["win_rate"] == pytest.approx(200 / 3)
        assert summary["average_return"] == pytest.approx(25 / 3)
        assert summary["max_profit"] == pytest.approx(20)
        assert summary["max_drawdown"] == pytest.approx(-5)
        assert summary["profit_factor"] == pytest.approx(4)
        assert summary["last_trade_time"] == pytest.approx(DAY_TWO)
        assert [t["cycle"] for t in summary["recent_trades"]] == [1, 2, 3]

    async def test_unknown_group(self, filled):
        assert await filled.get_group_summary("group_9") is None

    async def test_group_comparison_sorted_by_pnl(self, filled):
        comparison = await filled.get_group_comparison()

        assert [g["group_id"] for g in comparison] == ["group_1", "group_2"]


class TestAggregates:
    async def test_overall_summary(self, filled):
        overall = await filled.get_overall_summary()

        assert overall["total_pnl"] == pytest.approx(23)
        assert overall["trade_count"] == 4
        assert overall["groups"] == 2
        assert overall["start_date"] == pytest.approx(DAY_ONE)

    async def test_daily_stats_newest_first(self, filled):
        daily = await filled.get_daily_stats(30)

        assert [d["date"] for d in daily] == ["2026-04-05", "2026-03-02", "2026-03-01"]
        first_day = daily[2]
        assert first_day["pnl"] == pytest.approx(5)
        assert first_day["trade_count"] == 2
        assert first_day["win_rate"] == pytest.approx(50)

    async def test_daily_stats_limit(self, filled):
        assert len(await filled.get_daily_stats(1)) == 1

    async def test_monthly_stats(self, filled):
        monthly = await filled.get_monthly_stats()

        assert [m["month"] for m in monthly] == ["2026-04", "2026-03"]
        assert monthly[1]["pnl"] == pytest.approx(25)

    async def test_recent_trades(self, filled):
        recent = await filled.get_recent_trades(2)

        assert [t["group_id"] for t in recent] == ["group_2", "group_1"]
        assert recent[0]["formatted_pnl"] == "-2.0000"
        assert recent[1]["formatted_pnl"] == "+20.0000"

    async def test_performance_metrics_window(self, filled):
        metrics = await filled.get_performance_metrics("2026-03-01", "2026-03-01T23:59:59")

        assert metrics["trade_count"] == 2
        assert metrics["total_pnl"] == pytest.approx(5)
        # mean 2.5, population std 7.5
        assert metrics["sharpe_ratio"] == pytest.approx(2.5 / 7.5)

    async def test_performance_metrics_empty(self, tracker):
        metrics = await tracker.get_performance_metrics()

        assert metrics["trade_count"] == 0
        assert metrics["sharpe_ratio"] == 0.0


class TestPersistence:
    async def test_export_to_csv(self, filled, tmp_path):
        path = await filled.export_to_csv(str(tmp_path / "export.csv"))

        exported = pd.read_csv(path, dtype=str)
        assert list(exported.columns) == ["Date", "Time", "Group ID", "Symbol", "Cycle", "P&L", "Positions"]
        assert exported["P&L"].tolist() == ["10.0000", "-5.0000", "20.0000", "-2.0000"]
        assert exported["Date"].iloc[0] == "2026-03-01"

    async def test_reset(self, filled):
        await filled.reset()

        assert (await filled.get_overall_summary())["trade_count"] == 0

    async def test_cycle_completed_event_is_recorded(self, tracker):
        event = CycleCompletedEvent(group_id="group_3", cycle=4, symbol="ETHUSDT", cycle_pnl=Decimal("1.5"),
                                    position_count=2, pnl=GroupPnLRecord())

        await tracker.handle_cycle_completed(event)

        recent = await tracker.get_recent_trades()
        assert len(recent) == 1
        assert recent[0]["group_id"] == "group_3"
        assert recent[0]["cycle"] == 4
        assert recent[0]["positions"] == 2
        assert recent[0]["pnl"] == pytest.approx(1.5)

    async def test_data_survives_reopen(self, tmp_path):
        db_path = str(tmp_path / "pnl.db")
        first = PnLTracker(db_path)
        await first.initialize()
        await first.record_trade("group_1", 3.0, "BTCUSDT", 1, 1)
        await first.close()

        second = PnLTracker(db_path)
        await second.initialize()
        try:
            assert (await second.get_overall_summary())["total_pnl"] == pytest.approx(3.0)
        finally:
            await second.close()
